"""Tests for the contract service: full lifecycles, validation, actors and the version guard."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from coffee_contracts.api.schemas import ContractCreate, LineItemIn
from coffee_contracts.models.audit_log import AuditLog
from coffee_contracts.models.commission_refund import CommissionRefund
from coffee_contracts.models.contract import Contract
from coffee_contracts.models.contract_copy import ContractCopy
from coffee_contracts.models.contract_event import ContractEvent
from coffee_contracts.services import refund as refund_svc
from coffee_contracts.services.contract import (
    DEADLINE_EXPIRED_REASON,
    confirm_commission_receipt,
    confirm_seller_payment,
    create_contract,
    deadline_countdown,
    get_contract,
    get_contract_detail,
    new_contract_number,
    pay_commission,
    request_refund,
    resolve_actor,
    seller_approve,
    seller_reject,
    sign_contract,
)
from coffee_contracts.services.contract_state_machine import (
    Actor,
    ConcurrencyConflictError,
    ContractValidationError,
    InvalidTransitionError,
)
from tests.fakes import FakeSession, make_contract, make_user

BANK = {"bank": "Al Rajhi", "iban": "SA0380000000608010167519", "name": "Cafe Owner"}


@pytest.fixture
def buyer():
    return make_user(10, "cafe")


@pytest.fixture
def seller():
    return make_user(20, "roaster")


@pytest.fixture
def admin():
    return make_user(1, "admin")


@pytest.fixture
def notifier():
    with patch(
        "coffee_contracts.services.notification.notify_contract_signed",
        new=AsyncMock(return_value=2),
    ) as mock:
        yield mock


def _proposal(seller_id: int = 20, **overrides) -> ContractCreate:
    data = dict(
        seller_id=seller_id,
        items=[LineItemIn(name="Ethiopia Yirgacheffe", quantity=Decimal("2"), unit_price=Decimal("500"))],
    )
    data.update(overrides)
    return ContractCreate(**data)


class TestCreateContract:
    @pytest.mark.asyncio
    async def test_creates_pending_contract_with_settlement(self, buyer, seller):
        db = FakeSession(buyer, seller)

        contract = await create_contract(db, buyer, _proposal())
        assert contract.status == "pending_seller"
        assert contract.total_amount == Decimal("1000.00")
        assert contract.platform_commission_amount == Decimal("100.00")
        assert contract.seller_net_amount == Decimal("900.00")
        assert contract.order_type == "cafe_to_roaster"
        assert contract.currency == "SAR"
        assert contract.contract_number.startswith("DSC-")
        assert contract.version == 1
        assert contract.seller_response_deadline > datetime.now(timezone.utc) + timedelta(hours=71)
        assert db.commits == 1
        assert [a.action for a in db.of_type(AuditLog)] == ["contract_created"]

    @pytest.mark.asyncio
    async def test_custom_commission_rate(self, buyer, seller):
        db = FakeSession(buyer, seller)
        contract = await create_contract(db, buyer, _proposal(commission_rate=Decimal("2.5")))
        assert contract.platform_commission_amount == Decimal("25.00")
        assert contract.seller_net_amount == Decimal("975.00")

    @pytest.mark.asyncio
    async def test_rejects_self_contract(self, buyer):
        db = FakeSession(buyer)
        with pytest.raises(ContractValidationError) as exc_info:
            await create_contract(db, buyer, _proposal(seller_id=buyer.id))
        assert exc_info.value.field == "seller_id"

    @pytest.mark.asyncio
    async def test_rejects_unknown_seller(self, buyer):
        db = FakeSession(buyer)
        with pytest.raises(ContractValidationError):
            await create_contract(db, buyer, _proposal(seller_id=404))
        assert db.of_type(Contract) == []

    @pytest.mark.asyncio
    async def test_rejects_admin_as_seller(self, buyer, admin):
        db = FakeSession(buyer, admin)
        with pytest.raises(ContractValidationError):
            await create_contract(db, buyer, _proposal(seller_id=admin.id))

    @pytest.mark.asyncio
    async def test_rejects_rate_out_of_range(self, buyer, seller):
        db = FakeSession(buyer, seller)
        with pytest.raises(ContractValidationError):
            await create_contract(db, buyer, _proposal(commission_rate=Decimal("120")))

    @pytest.mark.asyncio
    async def test_rejects_empty_items(self, buyer, seller):
        db = FakeSession(buyer, seller)
        with pytest.raises(ContractValidationError):
            await create_contract(db, buyer, _proposal(items=[]))
        assert db.commits == 0

    def test_contract_number_format(self):
        number = new_contract_number(datetime(2026, 10, 19, tzinfo=timezone.utc))
        assert number.startswith("DSC-20261019-")
        assert len(number.split("-")[-1]) == 6


class TestResolveActor:
    def test_parties_and_admin(self, buyer, seller, admin):
        contract = make_contract(buyer=buyer, seller=seller)
        assert resolve_actor(contract, buyer) == Actor.BUYER
        assert resolve_actor(contract, seller) == Actor.SELLER
        assert resolve_actor(contract, admin) == Actor.ADMIN
        assert resolve_actor(contract, admin, as_admin=True) == Actor.ADMIN

    def test_stranger_is_forbidden(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        with pytest.raises(HTTPException) as exc_info:
            resolve_actor(contract, make_user(99, "farm"))
        assert exc_info.value.status_code == 403

    def test_as_admin_requires_admin(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        with pytest.raises(HTTPException) as exc_info:
            resolve_actor(contract, buyer, as_admin=True)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_get_contract_not_found(self, buyer):
        db = FakeSession(buyer)
        with pytest.raises(HTTPException) as exc_info:
            await get_contract(db, 12345, buyer)
        assert exc_info.value.status_code == 404


class TestBankTransferLifecycle:
    @pytest.mark.asyncio
    async def test_full_lifecycle_to_completed(self, buyer, seller, admin, notifier):
        db = FakeSession(buyer, seller, admin)
        contract = await create_contract(db, buyer, _proposal())
        cid = contract.id

        await seller_approve(db, cid, seller)
        assert contract.status == "pending_buyer_payment"

        await pay_commission(db, cid, buyer, "bank_transfer", "receipts/commission-1.jpg")
        assert contract.status == "pending_commission_confirm"
        assert contract.commission_paid is True

        await confirm_commission_receipt(db, cid, admin)
        assert contract.status == "awaiting_seller_sign"
        assert contract.commission_confirmed_by == admin.id

        await sign_contract(db, cid, seller, "data:image/png;base64,SELLER")
        await sign_contract(db, cid, buyer, "data:image/png;base64,BUYER")
        assert contract.status == "awaiting_platform_sign"
        assert db.of_type(ContractCopy) == []

        await sign_contract(db, cid, admin, "data:image/png;base64,PLATFORM", as_admin=True)
        assert contract.status == "awaiting_seller_payment"
        assert contract.platform_signed_by == admin.id
        assert len(db.of_type(ContractCopy)) == 2
        notifier.assert_awaited_once()

        await confirm_seller_payment(db, cid, buyer, "receipts/payout-1.jpg")
        assert contract.status == "completed"
        assert contract.seller_payment_confirmed is True

        copies = db.of_type(ContractCopy)
        assert sorted((c.user_role, c.user_id) for c in copies) == [("buyer", 10), ("seller", 20)]
        assert notifier.await_count == 1
        assert all(e.processed_at is not None for e in db.of_type(ContractEvent))

    @pytest.mark.asyncio
    async def test_signatures_are_append_only(self, buyer, seller, notifier):
        contract = make_contract(status="awaiting_seller_sign", buyer=buyer, seller=seller)
        db = FakeSession(contract)

        await sign_contract(db, 1, seller, "SELLER-SIG")
        first_signed_at = contract.seller_signed_at
        await sign_contract(db, 1, buyer, "BUYER-SIG")

        assert contract.seller_signature == "SELLER-SIG"
        assert contract.seller_signed_at == first_signed_at
        assert contract.buyer_signature == "BUYER-SIG"

        with pytest.raises(InvalidTransitionError):
            await sign_contract(db, 1, seller, "SELLER-AGAIN")
        assert contract.seller_signature == "SELLER-SIG"

    @pytest.mark.asyncio
    async def test_admin_confirmation_rearms_deadline(self, admin, buyer, seller):
        contract = make_contract(
            status="pending_commission_confirm", buyer=buyer, seller=seller,
            seller_response_deadline=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        db = FakeSession(contract)
        await confirm_commission_receipt(db, 1, admin)
        assert contract.seller_response_deadline > datetime.now(timezone.utc) + timedelta(hours=71)

    @pytest.mark.asyncio
    async def test_party_cannot_use_admin_actions(self, buyer, seller):
        contract = make_contract(status="pending_commission_confirm", buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(HTTPException) as exc_info:
            await confirm_commission_receipt(db, 1, buyer)
        assert exc_info.value.status_code == 403


class TestEndToEndScenarios:
    @pytest.mark.asyncio
    async def test_scenario_a_online_payment_to_completed(self, buyer, seller, admin, notifier):
        db = FakeSession(buyer, seller, admin)
        contract = await create_contract(db, buyer, _proposal(commission_rate=Decimal("5")))
        cid = contract.id
        assert contract.total_amount == Decimal("1000.00")
        assert contract.platform_commission_amount == Decimal("50.00")
        assert contract.seller_net_amount == Decimal("950.00")

        await seller_approve(db, cid, seller)
        await pay_commission(db, cid, buyer, "online_payment")
        assert contract.status == "awaiting_seller_sign"
        assert contract.commission_paid is True

        await sign_contract(db, cid, seller, "SELLER-SIG")
        await sign_contract(db, cid, buyer, "BUYER-SIG")
        await sign_contract(db, cid, admin, "PLATFORM-SIG", as_admin=True)
        assert contract.status == "awaiting_seller_payment"

        await confirm_seller_payment(db, cid, buyer, "receipts/payout.pdf")
        assert contract.status == "completed"
        assert contract.seller_paid_at is not None

        assert sorted(c.user_role for c in db.of_type(ContractCopy)) == ["buyer", "seller"]
        notifier.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scenario_c_bank_transfer_needs_receipt_then_admin(self, buyer, seller, admin):
        db = FakeSession(buyer, seller, admin)
        items = [LineItemIn(name="Colombia Huila", quantity=Decimal("1"), unit_price=Decimal("500"))]
        contract = await create_contract(
            db, buyer, _proposal(items=items, commission_rate=Decimal("10"))
        )
        cid = contract.id
        assert contract.platform_commission_amount == Decimal("50.00")
        assert contract.seller_net_amount == Decimal("450.00")
        await seller_approve(db, cid, seller)

        with pytest.raises(ContractValidationError) as exc_info:
            await pay_commission(db, cid, buyer, "bank_transfer")
        assert exc_info.value.field == "receipt"
        assert contract.status == "pending_buyer_payment"
        assert contract.commission_paid is False

        await pay_commission(db, cid, buyer, "bank_transfer", "receipts/commission.jpg")
        assert contract.status == "pending_commission_confirm"
        assert contract.commission_transfer_receipt == "receipts/commission.jpg"

        await confirm_commission_receipt(db, cid, admin)
        assert contract.status == "awaiting_seller_sign"


class TestOnlinePaymentAndRefund:
    @pytest.mark.asyncio
    async def test_online_payment_then_seller_rejects_and_buyer_is_refunded(self, buyer, seller, admin):
        contract = make_contract(status="pending_buyer_payment", buyer=buyer, seller=seller)
        db = FakeSession(contract, buyer, seller, admin)

        await pay_commission(db, 1, buyer, "online_payment")
        assert contract.status == "awaiting_seller_sign"
        assert contract.commission_transfer_receipt is None

        await seller_reject(db, 1, seller, "Out of stock for this harvest")
        assert contract.status == "seller_rejected"
        assert contract.rejected_from_status == "awaiting_seller_sign"
        assert contract.rejected_by == seller.id

        await request_refund(db, 1, buyer, BANK)
        assert contract.status == "refund_pending"
        assert contract.commission_refund_status == "requested"
        [refund] = db.of_type(CommissionRefund)
        assert refund.refund_amount == Decimal("100.00")
        assert refund.refund_reason == "Seller rejected order"
        assert refund.status == "pending"

        await refund_svc.complete_refund(db, refund.id, admin, "receipts/refund-1.jpg")
        assert contract.status == "refunded"
        assert refund.status == "completed"
        assert contract.commission_refund_receipt == "receipts/refund-1.jpg"

    @pytest.mark.asyncio
    async def test_refund_reason_after_deadline_expiry(self, buyer, seller):
        contract = make_contract(
            status="seller_rejected", buyer=buyer, seller=seller, commission_paid=True,
            seller_rejection_reason=DEADLINE_EXPIRED_REASON, rejected_by=None,
        )
        db = FakeSession(contract)
        await request_refund(db, 1, buyer, BANK)
        [refund] = db.of_type(CommissionRefund)
        assert refund.refund_reason == DEADLINE_EXPIRED_REASON

    @pytest.mark.asyncio
    async def test_refund_needs_bank_details(self, buyer, seller):
        contract = make_contract(status="seller_rejected", buyer=buyer, seller=seller, commission_paid=True)
        db = FakeSession(contract)
        with pytest.raises(ContractValidationError) as exc_info:
            await request_refund(db, 1, buyer, {"bank": "Al Rajhi", "iban": " "})
        assert exc_info.value.field == "bank_details"
        assert contract.status == "seller_rejected"
        assert db.of_type(CommissionRefund) == []


class TestValidationBeforeMutation:
    @pytest.mark.asyncio
    async def test_bank_transfer_without_receipt(self, buyer, seller):
        contract = make_contract(status="pending_buyer_payment", buyer=buyer, seller=seller)
        db = FakeSession(contract)

        with pytest.raises(ContractValidationError) as exc_info:
            await pay_commission(db, 1, buyer, "bank_transfer", None)
        assert exc_info.value.field == "receipt"
        assert contract.status == "pending_buyer_payment"
        assert contract.commission_paid is False
        assert db.commits == 0

    @pytest.mark.asyncio
    async def test_missing_payment_method(self, buyer, seller):
        contract = make_contract(status="pending_buyer_payment", buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(ContractValidationError):
            await pay_commission(db, 1, buyer, None)
        assert contract.commission_payment_method is None

    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(ContractValidationError):
            await seller_reject(db, 1, seller, "   ")
        assert contract.status == "pending_seller"
        assert contract.seller_rejection_reason is None

    @pytest.mark.asyncio
    async def test_sign_needs_signature(self, buyer, seller):
        contract = make_contract(status="awaiting_seller_sign", buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(ContractValidationError):
            await sign_contract(db, 1, seller, "")
        assert contract.seller_signature is None
        assert contract.status == "awaiting_seller_sign"

    @pytest.mark.asyncio
    async def test_payout_needs_receipt(self, buyer, seller):
        contract = make_contract(status="awaiting_seller_payment", buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(ContractValidationError):
            await confirm_seller_payment(db, 1, buyer, None)
        assert contract.status == "awaiting_seller_payment"


class TestRejectionBeforeApproval:
    @pytest.mark.asyncio
    async def test_no_refund_without_paid_commission(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)

        await seller_reject(db, 1, seller, "Cannot deliver to this city")
        assert contract.status == "seller_rejected"
        assert contract.seller_response_deadline is None

        with pytest.raises(InvalidTransitionError):
            await request_refund(db, 1, buyer, BANK)
        assert contract.status == "seller_rejected"
        assert db.of_type(CommissionRefund) == []


class TestRepeatsAndActors:
    @pytest.mark.asyncio
    async def test_second_approve_fails_without_side_effects(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)

        await seller_approve(db, 1, seller)
        commits = db.commits
        audits = len(db.of_type(AuditLog))

        with pytest.raises(InvalidTransitionError):
            await seller_approve(db, 1, seller)
        assert contract.status == "pending_buyer_payment"
        assert db.commits == commits
        assert len(db.of_type(AuditLog)) == audits

    @pytest.mark.asyncio
    async def test_buyer_cannot_approve(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(InvalidTransitionError):
            await seller_approve(db, 1, buyer)
        assert contract.status == "pending_seller"

    @pytest.mark.asyncio
    async def test_stranger_gets_403(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(HTTPException) as exc_info:
            await seller_approve(db, 1, make_user(99, "farm"))
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_completed_contract_accepts_nothing(self, buyer, seller, admin):
        contract = make_contract(status="completed", buyer=buyer, seller=seller)
        db = FakeSession(contract)
        with pytest.raises(InvalidTransitionError):
            await confirm_seller_payment(db, 1, buyer, "receipt")
        with pytest.raises(InvalidTransitionError):
            await sign_contract(db, 1, admin, "sig", as_admin=True)


class TestVersionGuard:
    @pytest.mark.asyncio
    async def test_stale_expected_version_is_refused(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller, version=3)
        db = FakeSession(contract)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await seller_approve(db, 1, seller, expected_version=2)
        assert exc_info.value.expected_version == 2
        assert contract.status == "pending_seller"
        assert db.commits == 0

    @pytest.mark.asyncio
    async def test_matching_expected_version_passes(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller, version=3)
        db = FakeSession(contract)
        await seller_approve(db, 1, seller, expected_version=3)
        assert contract.status == "pending_buyer_payment"

    @pytest.mark.asyncio
    async def test_lost_race_at_flush_rolls_back(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)
        db.stale = True

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await seller_approve(db, 1, seller)
        assert exc_info.value.contract_id == 1
        assert db.rollbacks == 1
        assert db.commits == 0
        assert db.of_type(AuditLog) == []

        await db.refresh(contract)
        assert contract.status == "pending_seller"

    @pytest.mark.asyncio
    async def test_lost_race_drops_staged_platform_event(self, buyer, seller, admin):
        contract = make_contract(status="awaiting_platform_sign", buyer=buyer, seller=seller)
        db = FakeSession(contract, admin)
        db.stale = True

        with pytest.raises(ConcurrencyConflictError):
            await sign_contract(db, 1, admin, "PLATFORM-SIG", as_admin=True)
        assert db.of_type(ContractEvent) == []
        assert db.of_type(ContractCopy) == []

        await db.refresh(contract)
        assert contract.platform_signature is None
        assert contract.status == "awaiting_platform_sign"


class TestContractDetail:
    @pytest.mark.asyncio
    async def test_buyer_view(self, buyer, seller):
        contract = make_contract(status="pending_buyer_payment", buyer=buyer, seller=seller)
        db = FakeSession(contract)

        detail = await get_contract_detail(db, 1, buyer)
        assert detail["actor"] == "buyer"
        assert detail["available_actions"] == ["pay_commission"]
        assert detail["waiting_on"] == "buyer"
        assert detail["settlement"] == {"commission": Decimal("100.00"), "net": Decimal("900.00")}
        assert detail["deadline"] is None
        assert detail["copies"] == []

    @pytest.mark.asyncio
    async def test_seller_view_has_countdown(self, buyer, seller):
        contract = make_contract(buyer=buyer, seller=seller)
        db = FakeSession(contract)
        detail = await get_contract_detail(db, 1, seller)
        assert set(detail["available_actions"]) == {"approve", "reject"}
        assert detail["deadline"]["expired"] is False
        assert detail["deadline"]["hours_left"] in (71, 72)

    def test_countdown_expired(self):
        contract = make_contract(
            seller_response_deadline=datetime.now(timezone.utc) - timedelta(minutes=5)
        )
        countdown = deadline_countdown(contract)
        assert countdown["expired"] is True
        assert countdown["hours_left"] == 0

    def test_countdown_hours_left(self):
        now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        contract = make_contract(seller_response_deadline=now + timedelta(hours=5, minutes=30))
        assert deadline_countdown(contract, now)["hours_left"] == 5
