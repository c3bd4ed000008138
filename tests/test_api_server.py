"""
Tests for the HTTP transport adapter.

Tests cover:
- Session endpoints and the command endpoints behind them
- Idempotency-Key handling and replay headers
- Mapping engine errors to HTTP status codes
- Reconnect sync over HTTP
- Health, capabilities and Prometheus metrics endpoints
"""

import pytest
from fastapi.testclient import TestClient

from flowstate.api.server import create_app, status_for
from flowstate.config.container import setup_container
from flowstate.config.settings import Settings
from flowstate.core.errors import (
    GuardRejected,
    HandlerFailed,
    InstanceNotFound,
    InternalError,
    InvalidEntities,
    PermissionDenied,
    SessionNotFound,
    UnknownCapability,
    VersionConflict,
)

WRITE = {"X-Permissions": "orders:write, orders:read"}


@pytest.fixture
def container(registry, store, metrics):
    container = setup_container(Settings())
    container.register_singleton("registry", registry)
    container.register_singleton("store", store)
    container.register_singleton("metrics", metrics)
    return container


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


@pytest.fixture
def session_id(client):
    response = client.post("/sessions", json={"session_id": "web-1"}, headers=WRITE)
    assert response.status_code == 200
    return response.json()["session_id"]


def create_order(client, session_id, key="create-1", **entities):
    entities = {"customer_id": "cust-1", "sku": "sku-espresso", **entities}
    return client.post(
        f"/sessions/{session_id}/instances",
        json={"capability_id": "commerce.place_order", "entities": entities},
        headers={**WRITE, "Idempotency-Key": key},
    )


class TestSessions:
    """Test session endpoints."""

    def test_open_session_without_body(self, client):
        response = client.post("/sessions")
        assert response.status_code == 200
        assert len(response.json()["session_id"]) == 32

    def test_resume_session(self, client, session_id):
        response = client.post("/sessions", json={"session_id": session_id})
        assert response.json()["session_id"] == session_id

    def test_unknown_session(self, client):
        response = client.post(
            "/sessions/ghost/instances",
            json={"capability_id": "test.review", "entities": {"title": "x"}},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SessionNotFound"


class TestCommands:
    """Test the command endpoints end to end."""

    def test_order_flow(self, client, session_id):
        created = create_order(client, session_id)
        assert created.status_code == 200
        body = created.json()
        instance_id = body["instance"]["instance_id"]
        assert body["instance"]["state"] == "review"
        assert body["messages"][0]["kind"] == "created"
        assert body["messages"][0]["capability_id"] == "commerce.place_order"

        edited = client.post(
            f"/sessions/{session_id}/instances/{instance_id}/events",
            json={"event": "EDIT", "payload": {"quantity": 2}},
        )
        assert edited.json()["instance"]["render_data"]["total"] == 48.0

        confirmed = client.post(
            f"/sessions/{session_id}/instances/{instance_id}/events",
            json={
                "event": "CONFIRM",
                "payload": {"accept_terms": True, "payment_token": "tok_visa"},
            },
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["instance"]["protocol_state"] == "finalizing"
        assert confirmed.json()["messages"][0]["kind"] == "transitioned"

        dismissed = client.delete(
            f"/sessions/{session_id}/instances/{instance_id}", params={"reason": "seen"}
        )
        assert dismissed.status_code == 200
        assert dismissed.json()["messages"][0]["payload"] == {"reason": "seen"}

        assert client.get(f"/instances/{instance_id}").status_code == 404

    def test_patch_render_data(self, client, session_id):
        instance_id = create_order(client, session_id).json()["instance"]["instance_id"]
        response = client.patch(
            f"/sessions/{session_id}/instances/{instance_id}/render-data",
            json={"patch": {"message": "Ships tomorrow"}},
        )
        assert response.status_code == 200
        assert response.json()["messages"][0]["kind"] == "dataPatched"

    def test_failed_payment_is_a_successful_response(self, client, session_id):
        instance_id = create_order(client, session_id).json()["instance"]["instance_id"]
        response = client.post(
            f"/sessions/{session_id}/instances/{instance_id}/events",
            json={
                "event": "CONFIRM",
                "payload": {"accept_terms": True, "payment_token": "tok_declined"},
            },
        )
        assert response.status_code == 200
        [message] = response.json()["messages"]
        assert message["kind"] == "failed"
        assert message["payload"]["recovery"] == "retry"

    def test_instance_snapshot_lists_children(self, client, session_id):
        parent_id = create_order(client, session_id).json()["instance"]["instance_id"]
        child = client.post(
            f"/sessions/{session_id}/instances",
            json={
                "capability_id": "commerce.track_delivery",
                "entities": {"order_id": "ord-1"},
                "parent_instance_id": parent_id,
            },
        )
        child_id = child.json()["instance"]["instance_id"]

        snapshot = client.get(f"/instances/{parent_id}").json()
        assert snapshot["children"] == [child_id]
        assert snapshot["valid_events"] == ["CONFIRM", "EDIT", "FAILURE"]


class TestIdempotency:
    """Test Idempotency-Key handling."""

    def test_replayed_request(self, client, store, session_id):
        first = create_order(client, session_id, key="same")
        second = create_order(client, session_id, key="same")

        assert first.headers["Idempotency-Key"] == "same"
        assert "Idempotent-Replayed" not in first.headers
        assert second.headers["Idempotent-Replayed"] == "true"
        assert first.json() == second.json()

    def test_generated_key(self, client, session_id):
        response = client.post(
            f"/sessions/{session_id}/instances",
            json={"capability_id": "test.review", "entities": {"title": "x"}},
        )
        assert len(response.headers["Idempotency-Key"]) == 32

    def test_key_reuse_with_different_body(self, client, session_id):
        create_order(client, session_id, key="same")
        response = create_order(client, session_id, key="same", quantity=5)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "InvalidPayload"


class TestErrorMapping:
    """Test engine errors surfacing as HTTP responses."""

    def test_invalid_transition(self, client, session_id):
        instance_id = create_order(client, session_id).json()["instance"]["instance_id"]
        response = client.post(
            f"/sessions/{session_id}/instances/{instance_id}/events", json={"event": "SHIP"}
        )
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "InvalidTransition"
        assert error["valid_events"] == ["CONFIRM", "EDIT", "FAILURE"]

    def test_hydration_failure(self, client, session_id):
        response = create_order(client, session_id, sku="sku-unicorn")
        assert response.status_code == 424
        assert response.json()["error"]["message"] == "That product is no longer available"

    def test_permission_denied(self, client):
        guest = client.post("/sessions").json()["session_id"]
        response = client.post(
            f"/sessions/{guest}/instances",
            json={"capability_id": "test.guarded", "entities": {"title": "x"}},
        )
        assert response.status_code == 403

    def test_invalid_entities(self, client, session_id):
        response = create_order(client, session_id, quantity=0)
        assert response.status_code == 422
        assert response.json()["error"]["errors"][0]["loc"] == ["quantity"]

    def test_unknown_capability(self, client, session_id):
        response = client.post(
            f"/sessions/{session_id}/instances", json={"capability_id": "test.nope"}
        )
        assert response.status_code == 404

    def test_internal_error_hides_details(self, client, session_id):
        created = client.post(
            f"/sessions/{session_id}/instances",
            json={"capability_id": "test.crash", "entities": {"title": "x"}},
        )
        instance_id = created.json()["instance"]["instance_id"]
        response = client.post(
            f"/sessions/{session_id}/instances/{instance_id}/events", json={"event": "BOOM"}
        )
        assert response.status_code == 500
        assert response.headers["Retry-After"] == "2"
        assert "handler bug" not in response.text

    def test_request_validation(self, client, session_id):
        response = client.post(f"/sessions/{session_id}/instances", json={"entities": {}})
        assert response.status_code == 422

    @pytest.mark.parametrize(
        "error,status",
        [
            (InvalidEntities("bad"), 422),
            (GuardRejected("no"), 409),
            (InstanceNotFound("i"), 404),
            (SessionNotFound("s"), 404),
            (UnknownCapability("c"), 404),
            (PermissionDenied("no"), 403),
            (HandlerFailed("declined"), 424),
            (VersionConflict("i", 1, 2), 500),
            (InternalError(), 500),
        ],
    )
    def test_status_for(self, error, status):
        assert status_for(error) == status


class TestSync:
    """Test reconnect sync over HTTP."""

    def test_sync(self, client, session_id):
        instance_id = create_order(client, session_id).json()["instance"]["instance_id"]
        for quantity in (2, 3):
            client.post(
                f"/sessions/{session_id}/instances/{instance_id}/events",
                json={"event": "EDIT", "payload": {"quantity": quantity}},
            )

        response = client.post(
            f"/sessions/{session_id}/sync",
            json={"known": [{"instance_id": instance_id, "last_seen_seq": 1}]},
        )

        assert response.status_code == 200
        messages = response.json()["instances"][instance_id]
        assert [m["message_seq"] for m in messages] == [2, 3]

    def test_sync_reports_dismissed(self, client, session_id):
        response = client.post(
            f"/sessions/{session_id}/sync",
            json={"known": [{"instance_id": "gone", "last_seen_seq": 4}]},
        )
        assert response.json()["instances"]["gone"][0]["kind"] == "dismissed"


class TestOperationalEndpoints:
    """Test health, capabilities and metrics."""

    def test_health(self, client, container):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["config_hash"] == container.settings.config_hash()
        assert body["components"]["store"] == "healthy"

    def test_capabilities(self, client):
        response = client.get("/capabilities")
        ids = [c["capability_id"] for c in response.json()]
        assert "commerce.place_order" in ids
        assert "test.review" in ids

    def test_metrics(self, client, session_id):
        create_order(client, session_id)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "flowstate_operations_total" in response.text

    def test_trace_id_header(self, client):
        traceparent = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
        response = client.get("/health", headers={"traceparent": traceparent})
        assert response.headers["X-Trace-Id"] == "4bf92f3577b34da6a3ce929d0e0e4736"
