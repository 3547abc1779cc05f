"""
LLM chat using Google Generative AI (Gemini).
Uses LLM_API_KEY from environment (Gemini API key from Google AI Studio).
"""
import asyncio
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.environ.get("LLM_MODEL", "gemini-2.0-flash")


def _get_api_key() -> Optional[str]:
    return os.environ.get("LLM_API_KEY")


def _sync_chat(system_prompt: str, user_text: str, model: str = DEFAULT_MODEL) -> str:
    """Synchronous chat completion using Google Generative AI."""
    import google.generativeai as genai
    api_key = _get_api_key()
    if not api_key:
        raise ValueError("LLM_API_KEY not found in environment")
    genai.configure(api_key=api_key)
    model_name = model if model and "gemini" in model else DEFAULT_MODEL
    gemini = genai.GenerativeModel(
        model_name,
        system_instruction=system_prompt,
    )
    response = gemini.generate_content(user_text)
    if not response or not response.text:
        raise ValueError("Empty response from LLM")
    return response.text


async def chat(
    system_prompt: str,
    user_text: str,
    model: str = DEFAULT_MODEL,
) -> str:
    """Async chat completion. Runs sync SDK in a worker thread."""
    return await asyncio.to_thread(_sync_chat, system_prompt, user_text, model)
