"""
Order Lifecycle Controller - drives one workflow action end to end:
generate document -> send email -> set flag -> recompute status -> persist.

Collaborators (store, document generator, email sender, credential provider)
are injected; the controller holds no module-level state.

Failure handling:
- Nothing before a confirmed send changes the order.
- A failed read returns StoreUnavailable; nothing has been generated or sent.
- Once the email is accepted the flag commit is recorded as pending and
  persisted under asyncio.shield, so cancelling the caller cannot lose it.
- If the store rejects the commit it stays pending; retry_persist() writes it
  without generating or sending again.
- Every operation returns a WorkflowResult; errors are returned, not raised.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

from models import Order, WorkflowFlags
from services.document_generator import DocumentGenerator, document_generator
from services.email_service import EmailSender, EmailDeliveryError, EmailTimeoutError, email_sender
from services.order_email_templates import compose_document_email
from services.order_store import OrderStore, OrderNotFoundError, get_order_store
from services.order_workflow import (
    CANONICAL_WORKFLOW,
    DocumentKind,
    OrderStatus,
    WorkflowDefinition,
    action_for_document,
    can_perform,
    current_step,
    expected_confirmation,
    get_workflow_definition,
    next_status,
    toggle_suspend,
)
from services.session_provider import CredentialProvider

logger = logging.getLogger(__name__)

DOCUMENT_TIMEOUT_SECONDS = float(os.getenv("DOCUMENT_TIMEOUT_SECONDS", "60"))
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "30"))


# ============================================================================
# ERRORS
# ============================================================================

class WorkflowError(Exception):
    """Base class for workflow failures returned by the controller."""
    error_code = "WORKFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict:
        return {"error_code": self.error_code, "message": self.message, "retryable": self.retryable}


class ActionNotPermitted(WorkflowError):
    error_code = "ACTION_NOT_PERMITTED"


class Unauthenticated(WorkflowError):
    error_code = "UNAUTHENTICATED"


class DocumentGenerationFailed(WorkflowError):
    error_code = "DOCUMENT_GENERATION_FAILED"
    retryable = True


class EmailDeliveryFailed(WorkflowError):
    error_code = "EMAIL_DELIVERY_FAILED"
    retryable = True


class PersistenceFailed(WorkflowError):
    """The email went out but the flag could not be stored."""
    error_code = "PERSISTENCE_FAILED"
    retryable = True


class InvalidFlagTransition(WorkflowError):
    error_code = "INVALID_FLAG_TRANSITION"


class OrderNotFound(WorkflowError):
    error_code = "ORDER_NOT_FOUND"


class StoreUnavailable(WorkflowError):
    """The order could not be read; nothing was generated or sent."""
    error_code = "STORE_UNAVAILABLE"
    retryable = True


@dataclass
class WorkflowResult:
    order: Optional[Order] = None
    error: Optional[WorkflowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PendingCommit:
    """A sent document whose flag has not reached the store yet."""
    order_id: str
    kind: DocumentKind
    flag: str
    order: Order                  # Order as it looked when the send started
    message_id: Optional[str] = None
    filename: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "order_id": self.order_id,
            "kind": self.kind.value,
            "flag": self.flag,
            "message_id": self.message_id,
            "filename": self.filename,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "sent_at": self.sent_at.isoformat(),
        }


@dataclass
class _OrderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _with_flag(order: Order, flag: str, definition: WorkflowDefinition) -> Order:
    """Copy of the order with one flag set and the status recomputed."""
    previous = order.workflow.model_dump()
    flags = dict(previous)
    flags[flag] = True
    status = next_status(flags, order.status, previous_workflow=previous, definition=definition)
    return order.model_copy(update={"workflow": WorkflowFlags(**flags), "status": status})


class OrderLifecycleController:
    def __init__(
        self,
        store: OrderStore,
        document_generator: DocumentGenerator,
        email_sender: EmailSender,
        credential_provider: CredentialProvider,
        definition: WorkflowDefinition = CANONICAL_WORKFLOW,
        generation_timeout: float = DOCUMENT_TIMEOUT_SECONDS,
        send_timeout: float = EMAIL_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.document_generator = document_generator
        self.email_sender = email_sender
        self.credential_provider = credential_provider
        self.definition = definition
        self.generation_timeout = generation_timeout
        self.send_timeout = send_timeout
        self._pending: Dict[Tuple[str, DocumentKind], PendingCommit] = {}
        self._locks: Dict[str, _OrderLock] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> WorkflowResult:
        try:
            return WorkflowResult(order=await self.store.get(order_id))
        except OrderNotFoundError:
            return WorkflowResult(error=OrderNotFound(f"Order not found: {order_id}"))
        except Exception as e:
            logger.error(f"Failed to read order {order_id}: {e}")
            error = StoreUnavailable(f"Failed to read order {order_id}")
            error.__cause__ = e
            return WorkflowResult(error=error)

    async def _refresh(self, order: Order) -> WorkflowResult:
        """Authoritative copy from the store; the given order if not stored yet."""
        result = await self.get_order(order.id)
        if isinstance(result.error, OrderNotFound):
            return WorkflowResult(order=order)
        return result

    def pending_commits(self) -> List[Dict]:
        return [p.to_dict() for p in self._pending.values()]

    def pending_for(self, order_id: str) -> Optional[PendingCommit]:
        for (pending_id, _), pending in self._pending.items():
            if pending_id == order_id:
                return pending
        return None

    # ------------------------------------------------------------------
    # advance
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Mutations of one order run one at a time. The entry is dropped once nobody holds or awaits it."""
        entry = self._locks.get(order_id)
        if entry is None:
            entry = self._locks[order_id] = _OrderLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(order_id, None)

    async def advance(self, order: Order, kind: DocumentKind) -> WorkflowResult:
        """Generate, send and record one document for the order."""
        async with self._order_lock(order.id):
            return await self._advance(order, kind)

    async def _advance(self, order: Order, kind: DocumentKind) -> WorkflowResult:
        try:
            kind = DocumentKind(kind)
        except ValueError:
            return WorkflowResult(order=order, error=ActionNotPermitted(f"Unknown document kind: {kind}"))

        loaded = await self._refresh(order)
        if not loaded.ok:
            return WorkflowResult(order=order, error=loaded.error)
        current = loaded.order

        pending = self._pending.get((current.id, kind))
        if pending is not None:
            logger.info(f"Order {current.id}: {kind.value} already sent, retrying persistence only")
            return await asyncio.shield(self._persist(pending))

        action = action_for_document(kind)
        step = self.definition.step_for_action(action)
        if current.status != OrderStatus.IN_PROGRESS:
            return WorkflowResult(order=current, error=ActionNotPermitted(
                f"Order {current.id} is {current.status.value}; no document can be sent"))
        if step is None or not can_perform(current.workflow, action, self.definition):
            return WorkflowResult(order=current, error=ActionNotPermitted(
                f"{action.value} is not permitted at step {self._step_label(current)}"))

        if not self.credential_provider.is_authenticated():
            return WorkflowResult(order=current, error=Unauthenticated(
                "No valid delivery session; sign in before sending documents"))

        # Generate
        try:
            document = await asyncio.wait_for(
                self.document_generator.generate(current, kind),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Order {current.id}: {kind.value} generation timed out")
            return self._failure(current, DocumentGenerationFailed(
                f"Generating the {kind.value} timed out after {self.generation_timeout}s"), e)
        except Exception as e:
            logger.error(f"Order {current.id}: {kind.value} generation failed: {e}")
            return self._failure(current, DocumentGenerationFailed(
                f"Could not generate the {kind.value}: {e}"), e)

        # Send
        subject, html_body, text_body = await compose_document_email(current, kind)
        try:
            receipt = await asyncio.wait_for(
                self.email_sender.send(
                    to=current.contact_email,
                    subject=subject,
                    html_body=html_body,
                    attachments=[document],
                    text_body=text_body,
                ),
                timeout=self.send_timeout,
            )
        except (asyncio.TimeoutError, EmailTimeoutError) as e:
            logger.error(f"Order {current.id}: {kind.value} email timed out")
            return self._failure(current, EmailDeliveryFailed(
                f"Email delivery timed out; the {kind.value} was not recorded as sent"), e)
        except EmailDeliveryError as e:
            logger.error(f"Order {current.id}: {kind.value} email rejected: {e}")
            return self._failure(current, EmailDeliveryFailed(
                f"Email delivery failed: {e}", retryable=e.transient), e)
        except Exception as e:
            logger.error(f"Order {current.id}: {kind.value} email failed: {e}")
            return self._failure(current, EmailDeliveryFailed(f"Email delivery failed: {e}"), e)

        logger.info(f"Order {current.id}: {document.filename} sent to {current.contact_email}")

        pending = PendingCommit(
            order_id=current.id,
            kind=kind,
            flag=step.flag,
            order=current,
            message_id=getattr(receipt, "message_id", None),
            filename=document.filename,
        )
        self._pending[(current.id, kind)] = pending
        return await asyncio.shield(self._persist(pending))

    async def retry_persist(self, order_id: str, kind: Optional[DocumentKind] = None) -> WorkflowResult:
        """Write a pending commit again. Never regenerates or resends."""
        if kind is not None:
            pending = self._pending.get((order_id, DocumentKind(kind)))
        else:
            pending = self.pending_for(order_id)
        if pending is None:
            return WorkflowResult(error=ActionNotPermitted(f"No pending commit for order {order_id}"))
        return await asyncio.shield(self._locked_persist(pending))

    async def _locked_persist(self, pending: PendingCommit) -> WorkflowResult:
        async with self._order_lock(pending.order_id):
            if self._pending.get((pending.order_id, pending.kind)) is not pending:
                # Already written while waiting for the lock
                loaded = await self.get_order(pending.order_id)
                return WorkflowResult(order=loaded.order, error=loaded.error)
            return await self._persist(pending)

    async def _persist(self, pending: PendingCommit) -> WorkflowResult:
        pending.attempts += 1

        # Apply the flag to the order as stored now, not as it was before the send
        loaded = await self._refresh(pending.order)
        if not loaded.ok:
            pending.last_error = loaded.error.message
            logger.error(
                f"Order {pending.order_id}: {pending.kind.value} was sent but the order "
                f"could not be re-read (attempt {pending.attempts}): {loaded.error.message}"
            )
            return self._failure(pending.order, PersistenceFailed(
                f"The {pending.kind.value} email was sent but the order could not be saved; "
                f"retry saving without resending"), loaded.error)
        base = loaded.order

        updated = _with_flag(base, pending.flag, self.definition)
        try:
            stored = await self.store.upsert(updated)
        except Exception as e:
            pending.last_error = str(e)[:500]
            logger.error(
                f"Order {pending.order_id}: {pending.kind.value} was sent but "
                f"{pending.flag} could not be saved (attempt {pending.attempts}): {e}"
            )
            return self._failure(base, PersistenceFailed(
                f"The {pending.kind.value} email was sent but the order could not be saved; "
                f"retry saving without resending"), e)

        self._pending.pop((pending.order_id, pending.kind), None)
        logger.info(
            f"Order {stored.id}: {pending.flag} set, status {stored.status.value}"
        )
        return WorkflowResult(order=stored)

    # ------------------------------------------------------------------
    # Human gates
    # ------------------------------------------------------------------

    async def set_manual_confirmation(self, order: Order, flag: str) -> WorkflowResult:
        """Record a confirmation (e.g. contract accepted) for the current step."""
        async with self._order_lock(order.id):
            return await self._confirm(order, flag)

    async def _confirm(self, order: Order, flag: str) -> WorkflowResult:
        if flag not in self.definition.confirmation_flags:
            return WorkflowResult(order=order, error=ActionNotPermitted(
                f"{flag} is not a confirmation flag"))

        loaded = await self._refresh(order)
        if not loaded.ok:
            return WorkflowResult(order=order, error=loaded.error)
        current = loaded.order

        if current.status != OrderStatus.IN_PROGRESS:
            return WorkflowResult(order=current, error=ActionNotPermitted(
                f"Order {current.id} is {current.status.value}; confirmations are locked"))

        expected = expected_confirmation(current.workflow, self.definition)
        if flag != expected:
            return WorkflowResult(order=current, error=InvalidFlagTransition(
                f"Cannot set {flag} at step {self._step_label(current)}"
                + (f"; expected {expected}" if expected else "")))

        updated = _with_flag(current, flag, self.definition)
        try:
            stored = await self.store.upsert(updated)
        except Exception as e:
            logger.error(f"Order {current.id}: failed to save {flag}: {e}")
            return self._failure(current, PersistenceFailed(f"Could not save {flag}"), e)

        logger.info(f"Order {stored.id}: {flag} confirmed")
        return WorkflowResult(order=stored)

    async def toggle_suspension(self, order: Order) -> WorkflowResult:
        async with self._order_lock(order.id):
            return await self._toggle(order)

    async def _toggle(self, order: Order) -> WorkflowResult:
        loaded = await self._refresh(order)
        if not loaded.ok:
            return WorkflowResult(order=order, error=loaded.error)
        current = loaded.order

        if current.status == OrderStatus.CONCLUDED:
            logger.warning(f"Order {current.id} is concluded; suspension ignored")
            return WorkflowResult(order=current)

        updated = current.model_copy(update={"status": toggle_suspend(current.status)})
        try:
            stored = await self.store.upsert(updated)
        except Exception as e:
            logger.error(f"Order {current.id}: failed to save suspension: {e}")
            return self._failure(current, PersistenceFailed("Could not save the suspension change"), e)

        logger.info(f"Order {stored.id}: {current.status.value} -> {stored.status.value}")
        return WorkflowResult(order=stored)

    # ------------------------------------------------------------------

    def _step_label(self, order: Order) -> str:
        index = current_step(order.workflow, self.definition)
        step = self.definition.step_at(index)
        return f"{index} ({step.label})" if step else f"{index} (complete)"

    @staticmethod
    def _failure(order: Order, error: WorkflowError, cause: BaseException) -> WorkflowResult:
        error.__cause__ = cause
        return WorkflowResult(order=order, error=error)


# Process-wide controller; the pending-commit table must outlive a request
_controller: Optional[OrderLifecycleController] = None


def get_lifecycle_controller() -> OrderLifecycleController:
    global _controller
    if _controller is None:
        definition = get_workflow_definition(os.getenv("WORKFLOW_VARIANT"))
        _controller = OrderLifecycleController(
            store=get_order_store(),
            document_generator=document_generator,
            email_sender=email_sender,
            credential_provider=email_sender,
            definition=definition,
        )
        logger.info(f"Order lifecycle controller ready (workflow: {definition.name})")
    return _controller


def reset_lifecycle_controller() -> None:
    global _controller
    _controller = None
