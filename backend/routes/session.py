"""
Delivery session routes - hand the backend a Postmark server token (verified
with Postmark before it is stored), inspect the session, or sign out.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import logging

from services.email_service import EmailDeliveryError, verify_server_token
from services.session_provider import TokenSessionProvider, get_session_provider

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/session", tags=["session"])


class TokenRequest(BaseModel):
    server_token: str = Field(min_length=1)
    expires_in: Optional[int] = Field(default=None, gt=0)


@router.get("")
async def get_session(provider: TokenSessionProvider = Depends(get_session_provider)):
    return provider.describe()


@router.post("/token")
async def save_session_token(
    request: TokenRequest,
    provider: TokenSessionProvider = Depends(get_session_provider),
):
    try:
        valid = await verify_server_token(request.server_token)
    except EmailDeliveryError as e:
        raise HTTPException(status_code=502, detail=f"Could not reach Postmark: {e}")
    if not valid:
        raise HTTPException(status_code=401, detail="Postmark rejected the server token")

    provider.save_token(request.server_token, request.expires_in)
    return provider.describe()


@router.delete("")
async def clear_session(provider: TokenSessionProvider = Depends(get_session_provider)):
    provider.clear_token()
    logger.info("Delivery session cleared")
    return provider.describe()
