import pytest
import asyncio
import httpx
from fastapi.testclient import TestClient
from unittest.mock import patch

from main import app
from services import reset_point_service, get_point_service

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories and the shared service before each test."""
    reset_point_service()


class TestBasicPointOperations:
    """Test basic charge/use/lookup functionality."""

    def test_get_point_success(self):
        """Test balance lookup of a seeded account."""
        response = client.get("/point/1")

        assert response.status_code == 200
        data = response.json()

        assert data["accountId"] == 1
        assert data["balance"] == 100
        assert "updatedAt" in data

    def test_charge_success(self):
        """Charging 100 onto a balance of 100 yields 200 and one CHARGE entry."""
        response = client.patch("/point/1/charge", json={"amount": 100})

        assert response.status_code == 200
        assert response.json()["balance"] == 200

        histories = client.get("/point/1/histories")
        assert histories.status_code == 200
        entries = histories.json()
        assert len(entries) == 1
        assert entries[0]["kind"] == "CHARGE"
        assert entries[0]["amount"] == 100
        assert entries[0]["accountId"] == 1

    def test_use_success(self):
        """Test successful use of points."""
        response = client.patch("/point/2/use", json={"amount": 200})

        assert response.status_code == 200
        assert response.json()["balance"] == 300

    def test_insufficient_balance(self):
        """Using more than the balance fails and changes nothing."""
        response = client.patch("/point/1/use", json={"amount": 150})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INSUFFICIENT_BALANCE"

        assert client.get("/point/1").json()["balance"] == 100
        assert client.get("/point/1/histories").status_code == 404

    def test_balance_limit_exceeded(self):
        """Charging past the maximum balance fails."""
        max_balance = get_point_service().max_balance
        response = client.patch("/point/1/charge", json={"amount": max_balance})

        assert response.status_code == 400
        assert response.json()["error_code"] == "BALANCE_LIMIT_EXCEEDED"
        assert client.get("/point/1").json()["balance"] == 100

    def test_account_not_found(self):
        """Test operations on a non-existent account."""
        response = client.patch("/point/999/charge", json={"amount": 50})

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"

        response = client.get("/point/999")
        assert response.status_code == 404
        assert "Account not found" in response.json()["detail"]

    def test_no_history_found(self):
        """An account without transactions has no history."""
        response = client.get("/point/3/histories")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NO_HISTORY_FOUND"


class TestConcurrency:
    """Test concurrent point mutations."""

    @pytest.mark.asyncio
    async def test_concurrent_charge_and_use_same_account(self):
        """A charge of 300 and a use of 100 on 500 always end at 700."""
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            results = await asyncio.gather(
                ac.patch("/point/2/charge", json={"amount": 300}),
                ac.patch("/point/2/use", json={"amount": 100}),
            )

            assert [r.status_code for r in results] == [200, 200]

            final = await ac.get("/point/2")
            assert final.json()["balance"] == 700

            histories = await ac.get("/point/2/histories")
            assert len(histories.json()) == 2

    @pytest.mark.asyncio
    async def test_concurrent_insufficient_balance(self):
        """Five concurrent uses of 200 against 500: two succeed, three fail."""
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/2/use", json={"amount": 200}) for _ in range(5)]

            results = await asyncio.gather(*tasks)

            successful = [r for r in results if r.status_code == 200]
            failed = [r for r in results if r.status_code == 400]

            assert len(successful) == 2
            assert len(failed) == 3

            final = await ac.get("/point/2")
            assert final.json()["balance"] == 100


class TestValidation:
    """Test input validation."""

    def test_zero_and_negative_amount(self):
        """Non-positive amounts are rejected by the service as INVALID_AMOUNT."""
        for amount in (0, -5):
            response = client.patch("/point/1/charge", json={"amount": amount})
            assert response.status_code == 400
            assert response.json()["error_code"] == "INVALID_AMOUNT"

        response = client.patch("/point/1/use", json={"amount": 0})
        assert response.status_code == 400

    def test_invalid_account_id_format(self):
        """Test non-integer account id."""
        response = client.get("/point/abc")

        assert response.status_code == 422

    def test_fractional_amount(self):
        """Points are whole numbers."""
        response = client.patch("/point/1/charge", json={"amount": 10.5})

        assert response.status_code == 422

    def test_boolean_amount(self):
        response = client.patch("/point/1/charge", json={"amount": True})

        assert response.status_code == 422

    def test_missing_amount(self):
        """Test missing required fields."""
        response = client.patch("/point/1/charge", json={})

        assert response.status_code == 422


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        """Test health check endpoint."""
        client.patch("/point/1/charge", json={"amount": 10})
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()

        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["accounts_count"] == 3  # Initial accounts
        assert data["history_entries"] == 1

    def test_root_endpoint(self):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()

        assert "message" in data
        assert "docs" in data
        assert data["max_balance"] == get_point_service().max_balance
        assert data["operations"]["charge"] == "PATCH /point/{account_id}/charge"


class TestBusinessLogic:
    """Test longer charge/use sequences."""

    def test_transaction_sequence(self):
        """Test a sequence of charges and uses."""
        operations = [
            ("charge", 500),
            ("use", 200),
            ("charge", 150),
            ("use", 100),
        ]

        expected_balances = [600, 400, 550, 450]

        for (operation, amount), expected in zip(operations, expected_balances):
            response = client.patch(f"/point/1/{operation}", json={"amount": amount})

            assert response.status_code == 200
            assert response.json()["balance"] == expected

        entries = client.get("/point/1/histories").json()
        assert [e["kind"] for e in entries] == ["CHARGE", "USE", "CHARGE", "USE"]
        assert [e["entryId"] for e in entries] == sorted(e["entryId"] for e in entries)


class TestErrorHandling:
    """Test error handling scenarios."""

    def test_malformed_json(self):
        """Test malformed JSON handling."""
        response = client.patch(
            "/point/1/charge",
            content="{'invalid': 'json'",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 422

    def test_unexpected_error_returns_ledger_error(self):
        """Unhandled exceptions become a 500 with the ledger error body."""
        failing_client = TestClient(app, raise_server_exceptions=False)

        with patch.object(get_point_service(), "charge", side_effect=RuntimeError("boom")):
            response = failing_client.patch("/point/1/charge", json={"amount": 10})

        assert response.status_code == 500
        data = response.json()
        assert data["error_code"] == "INTERNAL_ERROR"
        assert data["detail"] == "Point ledger failed to process the request"

    @patch('services.logger')
    def test_logging_on_error(self, mock_logger):
        """Test that rejections are logged."""
        response = client.patch("/point/999/use", json={"amount": 10})

        assert response.status_code == 404
        mock_logger.warning.assert_called()
