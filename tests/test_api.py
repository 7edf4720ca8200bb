"""Tests for the HTTP edge.

Tests cover:
- Bearer token verification
- Route payloads (submit, details, status, history, cancel, health)
- Error kind to status code mapping
"""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from oms_core.api.auth import TokenVerifier
from oms_core.api.http import create_app, status_for
from oms_core.common.errors import ErrorKind, UnauthenticatedError
from oms_core.domain.order import OrderStatus

SECRET = "test-secret-0123456789abcdef0123456789"


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(SECRET)


@pytest.fixture
def client(application, verifier) -> TestClient:
    return TestClient(create_app(application, verifier=verifier))


@pytest.fixture
def headers(verifier) -> dict[str, str]:
    return {"Authorization": f"Bearer {verifier.issue('u1')}"}


def _submit(client: TestClient, headers: dict[str, str], **overrides):
    body = {"symbol": "AAPL", "side": "BUY", "type": "LIMIT", "quantity": "10", "price": "150.50"}
    body.update(overrides)
    return client.post("/orders", json=body, headers=headers)


class TestTokenVerifier:
    """Tests for TokenVerifier."""

    def test_round_trip(self, verifier) -> None:
        """Test issued tokens verify to their subject."""
        assert verifier.verify(verifier.issue("u1")) == "u1"

    def test_expired(self, verifier) -> None:
        """Test expired tokens are rejected."""
        token = verifier.issue("u1", ttl=timedelta(minutes=-5))
        with pytest.raises(UnauthenticatedError, match="expired"):
            verifier.verify(token)

    def test_wrong_secret(self, verifier) -> None:
        """Test tokens signed with another key are rejected."""
        token = TokenVerifier("another-secret-0123456789abcdef0123").issue("u1")
        with pytest.raises(UnauthenticatedError, match="Invalid token"):
            verifier.verify(token)

    def test_missing_subject(self) -> None:
        """Test tokens without sub are rejected."""
        token = jwt.encode({"exp": 9999999999}, SECRET, algorithm="HS256")
        with pytest.raises(UnauthenticatedError):
            TokenVerifier(SECRET).verify(token)

    def test_empty_secret(self) -> None:
        """Test a verifier needs a secret."""
        with pytest.raises(ValueError):
            TokenVerifier("")


class TestStatusMapping:
    """Tests for error kind to HTTP status mapping."""

    @pytest.mark.parametrize(
        ("kind", "status"),
        [
            (ErrorKind.VALIDATION, 400),
            (ErrorKind.INVALID_SYMBOL, 400),
            (ErrorKind.PRICE_OUT_OF_RANGE, 400),
            (ErrorKind.MARKET_CLOSED, 400),
            (ErrorKind.CANNOT_CANCEL, 400),
            (ErrorKind.UNAUTHENTICATED, 401),
            (ErrorKind.FORBIDDEN, 403),
            (ErrorKind.NOT_FOUND, 404),
            (ErrorKind.IN_PROGRESS, 409),
            (ErrorKind.PRIOR_FAILURE, 409),
            (ErrorKind.ILLEGAL_TRANSITION, 409),
            (ErrorKind.MARKET_DATA_UNAVAILABLE, 500),
            (ErrorKind.BROKER_UNAVAILABLE, 500),
            (ErrorKind.STORE_UNAVAILABLE, 500),
        ],
    )
    def test_status_for(self, kind: ErrorKind, status: int) -> None:
        """Test each kind maps to its status code."""
        assert status_for(kind) == status


class TestOrderRoutes:
    """Tests for the order routes."""

    def test_submit(self, client, headers, application) -> None:
        """Test a valid submission is accepted with 202."""
        response = _submit(client, headers)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["estimated_price"] == "150.50"
        assert data["market_price"] == "150.00"
        assert data["submitted_at"].endswith("Z")
        assert "note" not in data
        assert application.repository.find_by_id(data["order_id"]) is not None

    def test_submit_replay(self, client, headers) -> None:
        """Test a duplicate submission returns the original order."""
        first = _submit(client, headers).json()
        second = _submit(client, headers)
        assert second.status_code == 202
        assert second.json()["order_id"] == first["order_id"]
        assert second.json()["note"] == "idempotent replay"

    def test_submit_requires_token(self, client) -> None:
        """Test unauthenticated submissions get 401."""
        response = _submit(client, {})
        assert response.status_code == 401
        assert response.json() == {"error": "UNAUTHENTICATED", "message": "Missing bearer token"}

    def test_submit_bad_token(self, client) -> None:
        """Test garbage tokens get 401."""
        response = _submit(client, {"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_submit_validation_error(self, client, headers) -> None:
        """Test shape errors get 400 VALIDATION."""
        response = _submit(client, headers, quantity="-1")
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION"

    def test_submit_missing_field(self, client, headers) -> None:
        """Test malformed bodies get 400 VALIDATION too."""
        response = client.post("/orders", json={"symbol": "AAPL"}, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION"

    def test_submit_invalid_symbol(self, client, headers) -> None:
        """Test unknown symbols get 400 INVALID_SYMBOL."""
        response = _submit(client, headers, symbol="ZZZZ")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SYMBOL"

    def test_submit_price_out_of_range(self, client, headers) -> None:
        """Test far limit prices get 400 PRICE_OUT_OF_RANGE."""
        response = _submit(client, headers, price="300")
        assert response.status_code == 400
        assert response.json()["error"] == "PRICE_OUT_OF_RANGE"

    def test_prior_failure(self, client, headers) -> None:
        """Test repeating a rejected submission gets 409 PRIOR_FAILURE."""
        _submit(client, headers, price="300")
        response = _submit(client, headers, price="300")
        assert response.status_code == 409
        assert response.json()["error"] == "PRIOR_FAILURE"

    def test_broker_down(self, client, headers, broker) -> None:
        """Test an unconfirmed publish gets 500 BROKER_UNAVAILABLE."""
        broker.fail_publish = True
        response = _submit(client, headers)
        assert response.status_code == 500
        assert response.json()["error"] == "BROKER_UNAVAILABLE"

    def test_details_and_status(self, client, headers) -> None:
        """Test details and status of an owned order."""
        order_id = _submit(client, headers).json()["order_id"]

        details = client.get(f"/orders/{order_id}", headers=headers)
        assert details.status_code == 200
        body = details.json()
        assert body["order_id"] == order_id
        assert body["symbol"] == "AAPL"
        assert body["quantity"] == "10"
        assert body["can_cancel"] is True
        assert body["current_market_price"] == "150.00"

        status = client.get(f"/orders/{order_id}/status", headers=headers)
        assert status.status_code == 200
        assert status.json()["status"] == "PENDING"

    def test_other_users_order(self, client, headers, verifier) -> None:
        """Test another user's order is 404."""
        order_id = _submit(client, headers).json()["order_id"]
        other = {"Authorization": f"Bearer {verifier.issue('u2')}"}
        response = client.get(f"/orders/{order_id}", headers=other)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    def test_cancel(self, client, headers, application) -> None:
        """Test cancel, then a second cancel is refused."""
        order_id = _submit(client, headers).json()["order_id"]

        response = client.put(f"/orders/{order_id}/cancel", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["reason"] == "USER_REQUESTED"
        assert application.repository.find_by_id(order_id).status == OrderStatus.CANCELLED

        again = client.put(f"/orders/{order_id}/cancel", headers=headers)
        assert again.status_code == 400
        assert again.json()["error"] == "CANNOT_CANCEL"

    def test_cancel_with_reason(self, client, headers) -> None:
        """Test the body may carry a cancel reason."""
        order_id = _submit(client, headers).json()["order_id"]
        response = client.put(
            f"/orders/{order_id}/cancel", json={"reason": "expired"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["reason"] == "EXPIRED"

    def test_cancel_with_free_form_reason(self, client, headers, application) -> None:
        """Test a free-form reason is echoed and stored."""
        order_id = _submit(client, headers).json()["order_id"]
        response = client.put(
            f"/orders/{order_id}/cancel", json={"reason": "fat finger"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["reason"] == "fat finger"
        assert application.repository.find_by_id(order_id).failure_reason == "fat finger"

    def test_cancel_reason_too_long(self, client, headers) -> None:
        """Test an oversized reason gets 400 VALIDATION."""
        order_id = _submit(client, headers).json()["order_id"]
        response = client.put(
            f"/orders/{order_id}/cancel", json={"reason": "x" * 300}, headers=headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION"

    def test_submit_oversized_quantity(self, client, headers) -> None:
        """Test quantities beyond decimal precision get 400 VALIDATION."""
        response = _submit(client, headers, quantity="100000000000000000000")
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION"

    def test_history(self, client, headers) -> None:
        """Test history pages and filters."""
        for quantity in ("1", "2", "3"):
            _submit(client, headers, quantity=quantity)
        _submit(client, headers, quantity="4", side="SELL", price="149")

        response = client.get("/orders/history", params={"limit": 2}, headers=headers)
        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 4
        assert len(body["orders"]) == 2
        assert body["has_more"] is True
        assert body["pagination"] == {
            "current_page": 1,
            "total_pages": 2,
            "page_size": 2,
            "total_items": 4,
        }

        sells = client.get("/orders/history", params={"side": "sell"}, headers=headers).json()
        assert sells["total_count"] == 1

    def test_history_bad_filter(self, client, headers) -> None:
        """Test unknown filter values get 400."""
        response = client.get("/orders/history", params={"status": "LOST"}, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION"


class TestHealthRoute:
    """Tests for /health."""

    def test_healthy(self, client) -> None:
        """Test a fresh container reports healthy."""
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["workers"] == "STOPPED"

    def test_degraded(self, client, broker) -> None:
        """Test a closed broker degrades health to 503."""
        broker._closed = True
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["broker"] is False
