"""
Order Email Templates - Branded HTML + plaintext emails that carry the order
documents to the customer.
Includes: Contract, Operating Manual, CE Warranty

The opening paragraph can be written by Gemini (LLM_API_KEY); without a key,
or when the call fails, the static Italian text is used.
"""
from html import escape
from typing import Dict, Optional, Tuple
import asyncio
import logging
import os

from models import Order
from services.order_workflow import DocumentKind
from utils.llm_chat import chat, _get_api_key

logger = logging.getLogger(__name__)

# Branding constants
COMPANY_NAME = os.getenv("COMPANY_NAME", "Fiordacqua")
BRAND_COLOR_PRIMARY = "#1E293B"  # Slate
BRAND_COLOR_ACCENT = "#00ADEF"   # Water blue
SUPPORT_EMAIL = os.getenv("EMAIL_SENDER", "ordini@fiordacqua.it")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "15"))

DOCUMENT_LABELS: Dict[DocumentKind, str] = {
    DocumentKind.CONTRACT: "il contratto",
    DocumentKind.MANUAL: "il manuale d'uso",
    DocumentKind.WARRANTY: "la garanzia CE",
}

DOCUMENT_SUBJECTS: Dict[DocumentKind, str] = {
    DocumentKind.CONTRACT: "Contratto",
    DocumentKind.MANUAL: "Manuale d'uso",
    DocumentKind.WARRANTY: "Garanzia CE",
}

# What the customer is asked to do with each document
DOCUMENT_INSTRUCTIONS: Dict[DocumentKind, str] = {
    DocumentKind.CONTRACT: "Vi preghiamo di restituirci una copia firmata per accettazione.",
    DocumentKind.MANUAL: "Vi preghiamo di restituirci il manuale controfirmato per presa visione.",
    DocumentKind.WARRANTY: "Conservate questo certificato insieme alla documentazione dell'impianto.",
}


def _build_email_header(title: str, badge_text: Optional[str] = None) -> str:
    """Build consistent branded header."""
    badge_html = ""
    if badge_text:
        badge_html = f'<span style="background-color: {BRAND_COLOR_ACCENT}; color: white; padding: 4px 12px; border-radius: 4px; font-family: monospace; font-size: 12px; margin-left: 10px;">{badge_text}</span>'

    return f"""
        <div style="background-color: {BRAND_COLOR_PRIMARY}; padding: 25px; border-radius: 8px 8px 0 0;">
            <h1 style="color: {BRAND_COLOR_ACCENT}; margin: 0; font-size: 22px; display: inline-block;">{title}</h1>
            {badge_html}
        </div>
    """


def _build_email_footer() -> str:
    """Build consistent branded footer."""
    return f"""
        <hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">
        <p style="color: #64748b; font-size: 13px; margin: 0;">Il Team {COMPANY_NAME}</p>
        <p style="color: #94a3b8; font-size: 11px; margin: 10px 0 0 0;">
            Per qualsiasi domanda scriveteci a <a href="mailto:{SUPPORT_EMAIL}" style="color: {BRAND_COLOR_ACCENT};">{SUPPORT_EMAIL}</a>
        </p>
    """


def _build_text_footer() -> str:
    return f"""
Cordiali saluti,
Il Team {COMPANY_NAME}

Domande? Scriveteci a {SUPPORT_EMAIL}
"""


EMAIL_BODY_PROMPT = f"""Sei l'assistente commerciale di {COMPANY_NAME}, azienda che vende impianti di trattamento acqua.
Scrivi il corpo di un'email professionale in italiano che accompagna un documento allegato.

REQUISITI:
- Tono formale e professionale
- Breve (max 5 righe)
- Indica che il documento è in allegato
- Inizia con "Gentile" seguito dal nome dell'azienda
- NON includere oggetto, saluti finali o firma
- Solo testo semplice, senza HTML né markdown"""


def _static_paragraphs(order: Order, kind: DocumentKind) -> list:
    return [
        f"Gentile {order.company_name},",
        f"In allegato trovate {DOCUMENT_LABELS[kind]} relativo al vostro impianto {order.model.value} "
        f"(matricola {order.serial_number or '-'}).",
    ]


def _paragraph_html(paragraph: str) -> str:
    return f'<p style="margin-bottom: 20px;">{escape(paragraph, quote=False).replace(chr(10), "<br>")}</p>'


def build_document_email(order: Order, kind: DocumentKind, body: Optional[str] = None) -> Tuple[str, str, str]:
    """
    Build the email that accompanies a generated document.

    body replaces the opening paragraphs (plain text, paragraphs separated by
    blank lines). The instructions box and footer are always the same.

    Returns (subject, html_body, text_body).
    """
    kind = DocumentKind(kind)
    instructions = DOCUMENT_INSTRUCTIONS[kind]

    if body and body.strip():
        paragraphs = [p.strip() for p in body.strip().split("\n\n") if p.strip()]
    else:
        paragraphs = _static_paragraphs(order, kind)

    subject = f"{DOCUMENT_SUBJECTS[kind]} - {order.company_name} - {COMPANY_NAME}"

    html = f"""
    <html>
    <body style="font-family: 'Segoe UI', Arial, sans-serif; line-height: 1.6; color: #1e293b; max-width: 600px; margin: 0 auto;">
        {_build_email_header(DOCUMENT_SUBJECTS[kind], escape(order.model.value))}

        <div style="padding: 25px; border: 1px solid #e2e8f0; border-top: none; border-radius: 0 0 8px 8px; background: white;">
            {"".join(_paragraph_html(p) for p in paragraphs)}

            <div style="background-color: #f8fafc; border-left: 4px solid {BRAND_COLOR_ACCENT}; padding: 15px; margin: 20px 0;">
                <p style="margin: 0;">{instructions}</p>
            </div>

            {_build_email_footer()}
        </div>
    </body>
    </html>
    """

    text = "\n\n".join(paragraphs) + f"""

{instructions}
{_build_text_footer()}"""

    return subject, html, text


async def generate_email_body(order: Order, kind: DocumentKind) -> Optional[str]:
    """Opening paragraphs written by Gemini, or None to use the static text."""
    if not _get_api_key():
        return None

    kind = DocumentKind(kind)
    user_text = (
        f"Documento allegato: {DOCUMENT_LABELS[kind]}\n"
        f"Azienda: {order.company_name}\n"
        f"Impianto: {order.model.value} (matricola {order.serial_number or '-'})"
    )
    try:
        body = await asyncio.wait_for(
            chat(system_prompt=EMAIL_BODY_PROMPT, user_text=user_text),
            timeout=LLM_TIMEOUT_SECONDS,
        )
    except Exception as e:
        logger.warning(f"Order {order.id}: AI email body unavailable, using static text: {e}")
        return None

    body = (body or "").strip()
    if not body:
        return None
    logger.info(f"Order {order.id}: {kind.value} email body generated with Gemini")
    return body


async def compose_document_email(order: Order, kind: DocumentKind) -> Tuple[str, str, str]:
    """build_document_email with a Gemini-written opening when available."""
    body = await generate_email_body(order, kind)
    return build_document_email(order, kind, body=body)
