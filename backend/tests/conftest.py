"""
Pytest configuration and shared test helpers for backend tests.
"""
import asyncio
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from fastapi.testclient import TestClient

from models import Order, WorkflowFlags
from services.document_generator import DocumentGenerator, GeneratedDocument
from services.email_service import EmailReceipt, EmailSender
from services.order_lifecycle import OrderLifecycleController, get_lifecycle_controller
from services.order_store import InMemoryOrderStore, StoreError, get_order_store
from services.session_provider import StaticCredentialProvider, TokenSessionProvider, get_session_provider


class FakeDocumentGenerator(DocumentGenerator):
    """Records calls; optionally fails or stalls."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.delay = 0

    async def generate(self, order, kind):
        self.calls.append((order.id, kind))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return GeneratedDocument(kind=kind, filename=f"{kind.value}-{order.id}.pdf", content=b"%PDF-1.4 test")


class FakeEmailSender(EmailSender):
    """Records every accepted message; optionally fails or stalls."""

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.fail_with = None
        self.delay = 0

    async def send(self, to, subject, html_body, attachments=None, text_body=None):
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "attachments": attachments or []})
        return EmailReceipt(recipient=to, subject=subject, message_id=f"msg-{len(self.sent)}")


class FlakyOrderStore(InMemoryOrderStore):
    """In-memory store whose next N upserts (or reads) fail."""

    def __init__(self, orders=None):
        super().__init__(orders)
        self.failures_left = 0
        self.read_failures_left = 0
        self.upserts = 0

    async def get(self, order_id):
        if self.read_failures_left > 0:
            self.read_failures_left -= 1
            raise StoreError("connection refused")
        return await super().get(order_id)

    async def upsert(self, order):
        self.upserts += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise StoreError("write concern timeout")
        return await super().upsert(order)


def build_order(**overrides) -> Order:
    flags = overrides.pop("flags", {})
    fields = dict(
        company_name="Acqua Lux Veneto",
        legal_representative="Mario Rossi",
        address="Via delle Terme 1",
        postal_code="35100",
        city="Padova",
        tax_id="01234567890",
        contact_email="cliente0@esempio.it",
        serial_number="SN-F-202600",
        price=2500,
    )
    fields.update(overrides)
    return Order(workflow=WorkflowFlags(**flags), **fields)


@pytest.fixture(autouse=True)
def no_llm_key(monkeypatch):
    """Document emails use the static text unless a test opts in."""
    monkeypatch.delenv("LLM_API_KEY", raising=False)


@pytest.fixture
def make_order():
    return build_order


@pytest.fixture
def store():
    return FlakyOrderStore()


@pytest.fixture
def document_generator():
    return FakeDocumentGenerator()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def credentials():
    return StaticCredentialProvider(authenticated=True)


@pytest.fixture
def controller(store, document_generator, email_sender, credentials):
    return OrderLifecycleController(
        store=store,
        document_generator=document_generator,
        email_sender=email_sender,
        credential_provider=credentials,
        generation_timeout=0.5,
        send_timeout=0.5,
    )


@pytest.fixture
def session():
    provider = TokenSessionProvider()
    provider.save_token("test-token", 3600)
    return provider


@pytest.fixture
def client(store, document_generator, email_sender, session):
    """TestClient for server:app with in-memory collaborators."""
    from server import app

    api_controller = OrderLifecycleController(
        store=store,
        document_generator=document_generator,
        email_sender=email_sender,
        credential_provider=session,
    )
    app.dependency_overrides[get_order_store] = lambda: store
    app.dependency_overrides[get_lifecycle_controller] = lambda: api_controller
    app.dependency_overrides[get_session_provider] = lambda: session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
