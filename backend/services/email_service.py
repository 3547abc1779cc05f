from postmarker.core import PostmarkClient
from datetime import datetime, timezone
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
from typing import Optional, List, Any
import asyncio
import base64
import os
import logging
import uuid

from services.session_provider import CredentialProvider, TokenSessionProvider, session_provider

logger = logging.getLogger(__name__)

# Email sender configuration
# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "ordini@fiordacqua.it")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound")
EMAIL_REPLY_TO = os.getenv("EMAIL_REPLY_TO")


class EmailDeliveryError(Exception):
    """Provider rejected the message."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class EmailTimeoutError(EmailDeliveryError):
    """No response from the provider in time."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


@dataclass
class EmailReceipt:
    recipient: str
    subject: str
    status: str = "sent"           # sent | logged (dev mode)
    message_id: Optional[str] = None
    attachment_names: List[str] = field(default_factory=list)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_transient_error(exc: Exception) -> bool:
    """True if error is retryable (timeout, 5xx)."""
    s = str(exc).lower()
    if "timeout" in s or "timed out" in s:
        return True
    for attr in ("code", "status_code"):
        c = getattr(exc, attr, None)
        if isinstance(c, int) and 500 <= c < 600:
            return True
    return False


def _attachment_payload(attachment: Any) -> dict:
    """Postmark attachment dict from a GeneratedDocument or an already-built dict."""
    if isinstance(attachment, dict):
        return {
            "Name": attachment.get("Name", "file"),
            "Content": attachment.get("Content"),
            "ContentType": attachment.get("ContentType", "application/octet-stream"),
        }
    return {
        "Name": attachment.filename,
        "Content": base64.b64encode(attachment.content).decode("ascii"),
        "ContentType": getattr(attachment, "content_type", "application/octet-stream"),
    }


class EmailSender(ABC):
    """Abstract base class for outbound email."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[List[Any]] = None,
        text_body: Optional[str] = None,
    ) -> EmailReceipt:
        """
        Deliver one message. Returns only once the provider accepted it.
        Raises EmailDeliveryError or EmailTimeoutError.
        """
        pass


class PostmarkEmailSender(EmailSender, CredentialProvider):
    """
    Sends through Postmark with the server token held by the delivery session.
    Without a token nothing can be sent, unless dev mode is on (EMAIL_DEV_MODE),
    in which case messages are logged instead.
    """

    def __init__(
        self,
        session: Optional[TokenSessionProvider] = None,
        timeout: Optional[float] = None,
        dev_mode: Optional[bool] = None,
    ):
        self.session = session if session is not None else session_provider
        self.timeout = timeout
        if dev_mode is None:
            dev_mode = os.getenv("EMAIL_DEV_MODE", "false").lower() in ("1", "true", "yes")
        self.dev_mode = dev_mode
        self.client: Optional[PostmarkClient] = None
        self._client_token: Optional[str] = None
        if not self.session.is_authenticated():
            if self.dev_mode:
                logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            else:
                logger.warning("POSTMARK_SERVER_TOKEN not set - sending is blocked until a delivery session is opened")

    def _get_client(self) -> Optional[PostmarkClient]:
        token = self.session.get_token()
        if not token:
            self.client = None
            self._client_token = None
            return None
        if token != self._client_token:
            self.client = PostmarkClient(server_token=token)
            self._client_token = token
            logger.info("Postmark email client initialized")
        return self.client

    def is_authenticated(self) -> bool:
        return self._get_client() is not None or self.dev_mode

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[List[Any]] = None,
        text_body: Optional[str] = None,
    ) -> EmailReceipt:
        payloads = [_attachment_payload(a) for a in attachments or []]
        payloads = [p for p in payloads if p.get("Content")]
        names = [p["Name"] for p in payloads]

        client = self._get_client()
        if client is None:
            if not self.dev_mode:
                raise EmailDeliveryError("No Postmark server token; open a delivery session first")
            # Dev mode - just log
            logger.info(f"[DEV MODE] Email logged (not sent) to {to}: {subject} {names}")
            return EmailReceipt(
                recipient=to,
                subject=subject,
                status="logged",
                message_id=f"dev-{uuid.uuid4().hex[:12]}",
                attachment_names=names,
            )

        send_kw = dict(
            From=DEFAULT_SENDER,
            To=to,
            Subject=subject,
            HtmlBody=html_body,
            TrackOpens=True,
            TrackLinks="HtmlOnly",
            Tag="order-document",
            MessageStream=POSTMARK_MESSAGE_STREAM,
        )
        if text_body:
            send_kw["TextBody"] = text_body
        if EMAIL_REPLY_TO:
            send_kw["ReplyTo"] = EMAIL_REPLY_TO
        if payloads:
            send_kw["Attachments"] = payloads

        # postmarker is blocking; keep the event loop free
        call = asyncio.to_thread(client.emails.send, **send_kw)
        try:
            if self.timeout:
                response = await asyncio.wait_for(call, timeout=self.timeout)
            else:
                response = await call
        except asyncio.TimeoutError as e:
            logger.error(f"Email to {to} timed out after {self.timeout}s")
            raise EmailTimeoutError(f"Postmark did not respond within {self.timeout}s") from e
        except Exception as e:
            transient = _is_transient_error(e)
            logger.error(f"Failed to send email to {to}: {e}")
            if transient and "time" in str(e).lower():
                raise EmailTimeoutError(str(e)[:500]) from e
            raise EmailDeliveryError(str(e)[:500], transient=transient) from e

        message_id = response.get("MessageID") if isinstance(response, dict) else None
        logger.info(f"Email sent to {to}: {message_id}")
        return EmailReceipt(
            recipient=to,
            subject=subject,
            status="sent",
            message_id=message_id,
            attachment_names=names,
        )


email_sender = PostmarkEmailSender()


async def verify_server_token(server_token: str) -> bool:
    """Ask Postmark whether a server token is valid before the session stores it."""
    client = PostmarkClient(server_token=server_token)
    try:
        await asyncio.to_thread(client.server.get)
    except Exception as e:
        status = getattr(getattr(e, "response", None), "status_code", None)
        if status in (401, 403) or getattr(e, "error_code", None) == 10:
            logger.warning("Postmark rejected the server token")
            return False
        logger.error(f"Could not verify Postmark server token: {e}")
        raise EmailDeliveryError(str(e)[:500], transient=_is_transient_error(e)) from e
    return True
