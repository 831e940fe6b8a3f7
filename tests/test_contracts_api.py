"""Integration tests for the contract and admin API endpoints."""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from coffee_contracts.core.deps import get_db
from coffee_contracts.core.security import get_current_user
from coffee_contracts.main import app
from coffee_contracts.models.commission_refund import CommissionRefund
from tests.fakes import FakeSession, make_contract, make_user

BUYER = make_user(10, "cafe")
SELLER = make_user(20, "roaster")
ADMIN = make_user(1, "admin")


def _override(user, db):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_db] = lambda: db


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture(autouse=True)
def _clear_overrides():
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def first_submit():
    with patch(
        "coffee_contracts.core.idempotency.check_idempotency",
        new=AsyncMock(return_value=True),
    ), patch("coffee_contracts.core.idempotency.release_idempotency", new=AsyncMock()):
        yield


class TestAuth:
    @pytest.mark.asyncio
    async def test_unauthenticated(self):
        async with _client() as client:
            resp = await client.get("/api/contracts")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_stranger_cannot_view(self):
        _override(make_user(99, "farm"), FakeSession(make_contract()))
        async with _client() as client:
            resp = await client.get("/api/contracts/1")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_contract(self):
        _override(BUYER, FakeSession())
        async with _client() as client:
            resp = await client.get("/api/contracts/5")
        assert resp.status_code == 404


class TestProposeContract:
    @pytest.mark.asyncio
    async def test_buyer_proposes(self):
        db = FakeSession(BUYER, SELLER)
        _override(BUYER, db)
        async with _client() as client:
            resp = await client.post("/api/contracts", json={
                "seller_id": 20,
                "items": [{"name": "Brazil Santos", "quantity": "4", "unit_price": "62.50"}],
            })
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending_seller"
        assert data["total_amount"] == "250.00"
        assert data["platform_commission_amount"] == "25.00"
        assert data["seller_net_amount"] == "225.00"
        assert data["version"] == 1

    @pytest.mark.asyncio
    async def test_admin_cannot_trade(self):
        _override(ADMIN, FakeSession(ADMIN, SELLER))
        async with _client() as client:
            resp = await client.post("/api/contracts", json={"seller_id": 20, "items": []})
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_empty_items_is_422(self):
        _override(BUYER, FakeSession(BUYER, SELLER))
        async with _client() as client:
            resp = await client.post("/api/contracts", json={"seller_id": 20, "items": []})
        assert resp.status_code == 422
        assert resp.json()["field"] == "items"


class TestContractDetail:
    @pytest.mark.asyncio
    async def test_seller_sees_actions_and_countdown(self):
        _override(SELLER, FakeSession(make_contract(buyer=BUYER, seller=SELLER)))
        async with _client() as client:
            resp = await client.get("/api/contracts/1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["actor"] == "seller"
        assert set(data["available_actions"]) == {"approve", "reject"}
        assert data["waiting_on"] == "seller"
        assert data["settlement"] == {"commission": "100.00", "net": "900.00"}
        assert data["deadline"]["expired"] is False
        assert data["buyer"]["id"] == 10

    @pytest.mark.asyncio
    async def test_list_my_contracts(self):
        db = FakeSession(
            make_contract(id=1, buyer=BUYER, seller=SELLER),
            make_contract(id=2, buyer=make_user(11), seller=make_user(21)),
        )
        _override(BUYER, db)
        async with _client() as client:
            resp = await client.get("/api/contracts", params={"role": "buyer"})
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()["items"]] == [1]


class TestTransitions:
    @pytest.mark.asyncio
    async def test_approve(self):
        contract = make_contract(buyer=BUYER, seller=SELLER)
        _override(SELLER, FakeSession(contract))
        async with _client() as client:
            resp = await client.post("/api/contracts/1/approve")
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending_buyer_payment"

    @pytest.mark.asyncio
    async def test_repeat_is_409(self):
        contract = make_contract(status="pending_buyer_payment", buyer=BUYER, seller=SELLER)
        _override(SELLER, FakeSession(contract))
        async with _client() as client:
            resp = await client.post("/api/contracts/1/approve")
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "invalid_transition"
        assert body["status"] == "pending_buyer_payment"

    @pytest.mark.asyncio
    async def test_stale_version_is_409(self):
        contract = make_contract(buyer=BUYER, seller=SELLER, version=4)
        _override(SELLER, FakeSession(contract))
        async with _client() as client:
            resp = await client.post("/api/contracts/1/reject", json={"reason": "No stock", "expected_version": 3})
        assert resp.status_code == 409
        assert resp.json()["code"] == "concurrency_conflict"
        assert contract.status == "pending_seller"

    @pytest.mark.asyncio
    async def test_bank_transfer_without_receipt_is_422(self, first_submit):
        contract = make_contract(status="pending_buyer_payment", buyer=BUYER, seller=SELLER)
        _override(BUYER, FakeSession(contract))
        async with _client() as client:
            resp = await client.post("/api/contracts/1/pay-commission", json={"method": "bank_transfer"})
        assert resp.status_code == 422
        assert resp.json()["field"] == "receipt"
        assert contract.status == "pending_buyer_payment"

    @pytest.mark.asyncio
    async def test_online_payment(self, first_submit):
        contract = make_contract(status="pending_buyer_payment", buyer=BUYER, seller=SELLER)
        _override(BUYER, FakeSession(contract))
        async with _client() as client:
            resp = await client.post("/api/contracts/1/pay-commission", json={"method": "online_payment"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "awaiting_seller_sign"

    @pytest.mark.asyncio
    async def test_double_submit_is_refused(self):
        contract = make_contract(status="pending_buyer_payment", buyer=BUYER, seller=SELLER)
        _override(BUYER, FakeSession(contract))
        with patch(
            "coffee_contracts.core.idempotency.check_idempotency",
            new=AsyncMock(return_value=False),
        ):
            async with _client() as client:
                resp = await client.post("/api/contracts/1/pay-commission", json={"method": "online_payment"})
        assert resp.status_code == 409
        assert contract.status == "pending_buyer_payment"

    @pytest.mark.asyncio
    async def test_request_refund(self):
        contract = make_contract(status="seller_rejected", buyer=BUYER, seller=SELLER, commission_paid=True)
        db = FakeSession(contract)
        _override(BUYER, db)
        async with _client() as client:
            resp = await client.post("/api/contracts/1/request-refund", json={
                "bank_details": {"bank": "SNB", "iban": "SA4420000001234567891234", "name": "Cafe Owner"},
            })
        assert resp.status_code == 200
        assert resp.json()["status"] == "refund_pending"
        assert len(db.of_type(CommissionRefund)) == 1


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_queue_requires_admin(self):
        _override(BUYER, FakeSession())
        async with _client() as client:
            resp = await client.get("/api/admin/contracts/queue")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_queue_lists_admin_work(self):
        db = FakeSession(
            make_contract(id=1, status="pending_commission_confirm"),
            make_contract(id=2, status="awaiting_platform_sign"),
            make_contract(id=3, status="pending_seller"),
        )
        _override(ADMIN, db)
        async with _client() as client:
            resp = await client.get("/api/admin/contracts/queue")
        assert resp.status_code == 200
        assert sorted(c["id"] for c in resp.json()["items"]) == [1, 2]

    @pytest.mark.asyncio
    async def test_platform_sign_archives_copies(self):
        contract = make_contract(status="awaiting_platform_sign", buyer=BUYER, seller=SELLER)
        _override(ADMIN, FakeSession(contract))
        with patch(
            "coffee_contracts.services.notification.notify_contract_signed",
            new=AsyncMock(return_value=2),
        ):
            async with _client() as client:
                resp = await client.post("/api/admin/contracts/1/sign", json={"signature": "PLATFORM"})
                copies = await client.get("/api/contracts/1")
        assert resp.status_code == 200
        assert resp.json()["status"] == "awaiting_seller_payment"
        assert {c["user_role"] for c in copies.json()["copies"]} == {"buyer", "seller"}

    @pytest.mark.asyncio
    async def test_complete_refund(self):
        contract = make_contract(status="refund_pending", buyer=BUYER, seller=SELLER, commission_paid=True)
        refund = CommissionRefund(
            contract_id=1, user_id=10, original_amount="100.00", refund_amount="100.00",
            refund_reason="Seller rejected order", bank_details={"bank": "SNB"}, status="approved",
        )
        refund.id = 3
        db = FakeSession(contract, refund)
        await db.flush()
        _override(ADMIN, db)
        async with _client() as client:
            resp = await client.post("/api/admin/refunds/3/complete", json={"receipt": "refund.pdf"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert contract.status == "refunded"
