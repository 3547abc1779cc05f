"""
Orders and session API, in-process with in-memory collaborators.
"""
from unittest.mock import AsyncMock, patch

from services.document_generator import DocumentGenerationError
from services.email_service import EmailDeliveryError
from services.order_store import StoreError

NEW_ORDER = {
    "company_name": "EcoDose Italia",
    "legal_representative": "Anna Verdi",
    "address": "Via delle Terme 4",
    "postal_code": "35100",
    "city": "Padova",
    "tax_id": "01234567893",
    "contact_email": "cliente3@esempio.it",
    "model": "LEO5",
    "serial_number": "SN-F-202603",
    "contract_type": "GRENKE",
    "price": 2800,
}


def create(client, **overrides):
    response = client.post("/api/orders", json={**NEW_ORDER, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


class TestRegistry:

    def test_create_and_get(self, client):
        order = create(client)
        assert order["status"] == "IN_PROGRESS"
        assert order["workflow"]["contract_sent"] is False

        response = client.get(f"/api/orders/{order['id']}")
        assert response.status_code == 200
        assert response.json()["company_name"] == "EcoDose Italia"

    def test_create_rejects_bad_email(self, client):
        response = client.post("/api/orders", json={**NEW_ORDER, "contact_email": "not-an-email"})
        assert response.status_code == 422

    def test_unknown_order(self, client):
        assert client.get("/api/orders/missing").status_code == 404

    def test_list_search_and_filter(self, client):
        create(client)
        create(client, company_name="Nettuno Tech", model="TITANO")

        assert len(client.get("/api/orders").json()) == 2
        found = client.get("/api/orders", params={"q": "titano"}).json()
        assert [o["company_name"] for o in found] == ["Nettuno Tech"]
        assert client.get("/api/orders", params={"status": "SUSPENDED"}).json() == []

    def test_patch_and_delete(self, client):
        order = create(client)

        response = client.patch(f"/api/orders/{order['id']}", json={"city": "Verona"})
        assert response.status_code == 200
        assert response.json()["city"] == "Verona"

        assert client.delete(f"/api/orders/{order['id']}").status_code == 200
        assert client.delete(f"/api/orders/{order['id']}").status_code == 404

    def test_stats_and_seed(self, client):
        response = client.post("/api/orders/seed", json={"count": 10})
        assert response.status_code == 200
        stats = client.get("/api/orders/stats").json()
        assert stats == {"total": 10, "in_progress": 5, "suspended": 2, "concluded": 3}


class TestWorkflowEndpoints:

    def test_send_contract(self, client, email_sender):
        order = create(client)

        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")

        assert response.status_code == 200, response.text
        assert response.json()["workflow"]["contract_sent"] is True
        assert len(email_sender.sent) == 1

    def test_send_out_of_order_is_409(self, client):
        order = create(client)

        response = client.post(f"/api/orders/{order['id']}/documents/warranty/send")

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "ACTION_NOT_PERMITTED"

    def test_unknown_document_kind_is_422(self, client):
        order = create(client)
        assert client.post(f"/api/orders/{order['id']}/documents/invoice/send").status_code == 422

    def test_generation_failure_is_502(self, client, document_generator):
        order = create(client)
        document_generator.fail_with = DocumentGenerationError("boom")

        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")

        assert response.status_code == 502
        assert response.json()["detail"]["error_code"] == "DOCUMENT_GENERATION_FAILED"
        assert response.json()["detail"]["retryable"] is True

    def test_email_failure_is_502(self, client, email_sender):
        order = create(client)
        email_sender.fail_with = EmailDeliveryError("rejected")

        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")

        assert response.status_code == 502
        assert client.get(f"/api/orders/{order['id']}").json()["workflow"]["contract_sent"] is False

    def test_unauthenticated_is_401(self, client, session):
        order = create(client)
        session.clear_token()

        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "UNAUTHENTICATED"

    def test_persistence_failure_then_retry(self, client, store, email_sender):
        order = create(client)
        store.failures_left = 1

        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")
        assert response.status_code == 500
        assert response.json()["detail"]["error_code"] == "PERSISTENCE_FAILED"

        view = client.get(f"/api/orders/{order['id']}/workflow").json()
        assert view["pending_commit"]["flag"] == "contract_sent"

        response = client.post(f"/api/orders/{order['id']}/retry-persist")
        assert response.status_code == 200
        assert response.json()["workflow"]["contract_sent"] is True
        assert len(email_sender.sent) == 1

    def test_store_read_failure_is_503(self, client, store, email_sender):
        order = create(client)
        original_get = store.get
        reads = []

        async def get_then_fail(order_id):
            reads.append(order_id)
            if len(reads) > 1:
                raise StoreError("connection refused")
            return await original_get(order_id)

        store.get = get_then_fail
        response = client.post(f"/api/orders/{order['id']}/documents/contract/send")

        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "STORE_UNAVAILABLE"
        assert email_sender.sent == []

    def test_retry_without_pending_is_409(self, client):
        order = create(client)
        assert client.post(f"/api/orders/{order['id']}/retry-persist").status_code == 409

    def test_confirmations(self, client):
        order = create(client)
        client.post(f"/api/orders/{order['id']}/documents/contract/send")

        wrong = client.post(f"/api/orders/{order['id']}/confirmations/manual_acknowledged")
        assert wrong.status_code == 409
        assert wrong.json()["detail"]["error_code"] == "INVALID_FLAG_TRANSITION"

        ok = client.post(f"/api/orders/{order['id']}/confirmations/contract_accepted")
        assert ok.status_code == 200
        assert ok.json()["workflow"]["contract_accepted"] is True

    def test_workflow_view(self, client):
        order = create(client)
        view = client.get(f"/api/orders/{order['id']}/workflow").json()
        assert view["current_step"] == 1
        assert view["permitted_actions"] == ["send_contract"]
        assert view["pending_commit"] is None

    def test_suspension_toggle(self, client):
        order = create(client)

        suspended = client.post(f"/api/orders/{order['id']}/suspension")
        assert suspended.json()["status"] == "SUSPENDED"
        blocked = client.post(f"/api/orders/{order['id']}/documents/contract/send")
        assert blocked.status_code == 409

        resumed = client.post(f"/api/orders/{order['id']}/suspension")
        assert resumed.json()["status"] == "IN_PROGRESS"

    def test_preview_does_not_change_flags(self, client, email_sender):
        order = create(client)

        response = client.get(f"/api/orders/{order['id']}/documents/contract")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert email_sender.sent == []
        assert client.get(f"/api/orders/{order['id']}").json()["workflow"]["contract_sent"] is False

    def test_preview_gated(self, client):
        order = create(client)
        assert client.get(f"/api/orders/{order['id']}/documents/manual").status_code == 409


class TestSessionEndpoints:

    def test_session_lifecycle(self, client):
        assert client.get("/api/session").json()["authenticated"] is True

        assert client.delete("/api/session").json()["authenticated"] is False

        with patch("routes.session.verify_server_token", new=AsyncMock(return_value=True)) as verify:
            response = client.post("/api/session/token", json={"server_token": "pm-new", "expires_in": 600})
        assert response.status_code == 200
        assert response.json() == {"authenticated": True, "expires_in": 600}
        verify.assert_awaited_once_with("pm-new")

    def test_rejected_token_is_not_stored(self, client, session):
        session.clear_token()

        with patch("routes.session.verify_server_token", new=AsyncMock(return_value=False)):
            response = client.post("/api/session/token", json={"server_token": "not-a-postmark-token"})

        assert response.status_code == 401
        assert session.is_authenticated() is False

    def test_postmark_unreachable_is_502(self, client, session):
        session.clear_token()
        error = EmailDeliveryError("Connection timed out", transient=True)

        with patch("routes.session.verify_server_token", new=AsyncMock(side_effect=error)):
            response = client.post("/api/session/token", json={"server_token": "pm-new"})

        assert response.status_code == 502
        assert session.is_authenticated() is False

    def test_token_without_expiry(self, client):
        with patch("routes.session.verify_server_token", new=AsyncMock(return_value=True)):
            response = client.post("/api/session/token", json={"server_token": "pm-new"})
        assert response.json() == {"authenticated": True, "expires_in": None}

    def test_token_validation(self, client):
        response = client.post("/api/session/token", json={"server_token": "", "expires_in": 600})
        assert response.status_code == 422


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
