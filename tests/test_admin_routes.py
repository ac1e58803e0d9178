"""
Tests for the operator endpoints.
"""
import pytest

from fulfillment.models import db
from fulfillment.retry.operations import CreateRemoteOrderPayload

from factories import make_order, remote_order

TOKEN_HEADERS = {"X-Admin-Token": "test-admin-token", "X-Admin-Actor": "ops@example.com"}


class TestAuthentication:

    @pytest.mark.parametrize("method, path", [
        ("get", "/admin/health"),
        ("post", "/admin/health"),
        ("get", "/admin/operations"),
        ("post", "/admin/orders/abc/operations/cancel"),
    ])
    def test_requires_token(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/admin/health", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 401

    def test_unconfigured_token_rejects_everything(self, app, client):
        app.config["ADMIN_TOKEN"] = None
        response = client.get("/admin/health", headers=TOKEN_HEADERS)
        assert response.status_code == 401

    def test_liveness_is_public(self, client):
        assert client.get("/health").get_json() == {"status": "ok"}


# ==============================================================================
# Health
# ==============================================================================

class TestHealthEndpoints:

    def test_report(self, client):
        response = client.get("/admin/health?window_hours=6", headers=TOKEN_HEADERS)

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["window_hours"] == 6
        assert set(data["details"]) == {"database", "operations", "orders", "notifications", "provider"}

    def test_report_rejects_bad_window(self, client):
        response = client.get("/admin/health?window_hours=abc", headers=TOKEN_HEADERS)
        assert response.status_code == 400

    def test_unknown_action(self, client):
        response = client.post("/admin/health", json={"action": "reboot"}, headers=TOKEN_HEADERS)
        assert response.status_code == 400

    def test_process_pending_retries(self, client, retry_service, prodigi):
        prodigi.get_order.return_value = remote_order("ord_1", status="InProgress")
        order_id = make_order(provider_order_id="ord_1", status="processing").id
        retry_service.schedule("refresh_remote_status", order_id, {"provider": "prodigi"})
        operation = retry_service.store.list_operations(order_id=order_id)[0]
        operation.next_retry_at = operation.created_at
        db.session.commit()

        response = client.post("/admin/health", json={"action": "process_pending_retries", "limit": 10},
                               headers=TOKEN_HEADERS)

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["action"] == "process_pending_retries"
        assert data["result"]["processed"] == 1
        assert data["result"]["succeeded"] == 1

    def test_reschedule_rejects_unknown_type(self, client):
        response = client.post("/admin/health", headers=TOKEN_HEADERS, json={
            "action": "reschedule_failed_operations",
            "operation_type": "launch_rockets",
        })
        assert response.status_code == 400

    def test_cleanup_old_operations(self, client):
        response = client.post("/admin/health", json={"action": "cleanup_old_operations", "completed_days": 1},
                               headers=TOKEN_HEADERS)

        assert response.status_code == 200
        assert response.get_json()["result"] == {"completed": 0, "failed": 0, "total": 0}

    def test_cleanup_rejects_invalid_days(self, client):
        response = client.post("/admin/health", json={"action": "cleanup_old_operations", "failed_days": 0},
                               headers=TOKEN_HEADERS)
        assert response.status_code == 400


# ==============================================================================
# Operations
# ==============================================================================

class TestOperationEndpoints:

    def test_list_operations_with_filters(self, client, retry_service):
        first = make_order().id
        second = make_order().id
        retry_service.schedule("create_remote_order", first, CreateRemoteOrderPayload())
        retry_service.schedule("create_remote_order", second, CreateRemoteOrderPayload())

        response = client.get(f"/admin/operations?order_id={first}&status=pending", headers=TOKEN_HEADERS)

        assert response.status_code == 200
        data = response.get_json()
        assert data["count"] == 1
        assert data["operations"][0]["order_id"] == first
        assert data["operations"][0]["type"] == "create_remote_order"

    def test_list_operations_rejects_unknown_status(self, client):
        response = client.get("/admin/operations?status=stuck", headers=TOKEN_HEADERS)
        assert response.status_code == 400

    def test_cancel_order_operations(self, client, retry_service):
        order_id = make_order().id
        retry_service.schedule("create_remote_order", order_id, CreateRemoteOrderPayload())

        response = client.post(f"/admin/orders/{order_id}/operations/cancel", headers=TOKEN_HEADERS)

        assert response.status_code == 200
        assert response.get_json() == {"success": True, "order_id": order_id, "cancelled": 1}

    def test_cancel_unknown_order(self, client):
        response = client.post("/admin/orders/missing/operations/cancel", headers=TOKEN_HEADERS)
        assert response.status_code == 404
