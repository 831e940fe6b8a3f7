"""Contract lifecycle service: the persisted aggregate behind the state machine.

Every operation follows the same shape: load the contract, resolve the typed
actor once, validate the transition, validate inputs, mutate, commit. The
commit is guarded by the contract's ``version`` column (optimistic lock), so a
write based on a stale read fails with ConcurrencyConflictError instead of
overwriting someone else's change. Watchers and post-transition handlers only
run after the commit succeeded.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from coffee_contracts.api.schemas import ContractCreate
from coffee_contracts.core.config import settings
from coffee_contracts.models.commission_refund import CommissionRefund
from coffee_contracts.models.contract import Contract
from coffee_contracts.models.contract_copy import ContractCopy
from coffee_contracts.models.contract_event import ContractEvent
from coffee_contracts.models.user import User
from coffee_contracts.services.contract_events import (
    EVENT_COMPLETED,
    EVENT_PLATFORM_SIGNED,
    dispatch_after_commit,
    record_event,
)
from coffee_contracts.services.contract_state_machine import (
    ADMIN_QUEUE_STATUSES,
    DEADLINE_STATUSES,
    SIGNATURE_SLOTS,
    Actor,
    ConcurrencyConflictError,
    ContractAction,
    ContractStatus,
    ContractValidationError,
    InvalidTransitionError,
    PaymentMethod,
    get_available_actions,
    validate_transition,
    waiting_on,
)
from coffee_contracts.services.settlement import build_line_items, compute_settlement

logger = logging.getLogger(__name__)

DEADLINE_EXPIRED_REASON = "Seller response deadline expired"
REQUIRED_BANK_FIELDS = ("bank", "iban", "name")

# Signature slot → (signature column, timestamp column)
_SLOT_COLUMNS: dict[Actor, tuple[str, str]] = {
    Actor.SELLER: ("seller_signature", "seller_signed_at"),
    Actor.BUYER: ("buyer_signature", "buyer_signed_at"),
    Actor.ADMIN: ("platform_signature", "platform_signed_at"),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _response_deadline(now: datetime) -> datetime:
    return now + timedelta(hours=settings.seller_response_hours)


def _require_text(value: str | None, field: str, message: str) -> str:
    if value is None or not value.strip():
        raise ContractValidationError(message, field=field)
    return value.strip()


def new_contract_number(created_at: datetime) -> str:
    return f"DSC-{created_at:%Y%m%d}-{secrets.token_hex(3).upper()}"


# ---------------------------------------------------------------------------
# Loading & actor resolution
# ---------------------------------------------------------------------------


def resolve_actor(contract: Contract, user: User, *, as_admin: bool = False) -> Actor:
    """Map a user to their role in this contract.

    ``as_admin`` is set by the admin endpoints; it requires an admin user and
    always yields ``Actor.ADMIN`` even if that admin is also a party.
    """
    if as_admin:
        if not user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This action requires a platform admin",
            )
        return Actor.ADMIN
    if user.id == contract.buyer_id:
        return Actor.BUYER
    if user.id == contract.seller_id:
        return Actor.SELLER
    if user.is_admin:
        return Actor.ADMIN
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You are not a party to this contract",
    )


async def _load_contract(db: AsyncSession, contract_id: int) -> Contract:
    result = await db.execute(select(Contract).where(Contract.id == contract_id))
    contract = result.scalar_one_or_none()
    if not contract:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contract not found")
    return contract


async def get_contract(db: AsyncSession, contract_id: int, user: User) -> Contract:
    """Return a contract the user is a party to (admins see all)."""
    contract = await _load_contract(db, contract_id)
    resolve_actor(contract, user)
    return contract


async def _prepare(
    db: AsyncSession,
    contract_id: int,
    user: User,
    expected_version: int | None,
    *,
    as_admin: bool = False,
) -> tuple[Contract, Actor]:
    contract = await _load_contract(db, contract_id)
    actor = resolve_actor(contract, user, as_admin=as_admin)
    if expected_version is not None and contract.version != expected_version:
        raise ConcurrencyConflictError(contract.id, expected_version)
    return contract, actor


async def commit_transition(
    db: AsyncSession,
    contract: Contract,
    *,
    action: ContractAction,
    new_status: ContractStatus,
    actor: Actor,
    user_id: int | None,
    events: tuple[str, ...] = (),
    audit_details: dict | None = None,
) -> Contract:
    """Apply the new status, stage events + audit entry, commit under the version guard.

    Field changes specific to the action must already be set on ``contract``.
    """
    from coffee_contracts.core.websocket_manager import watchers
    from coffee_contracts.services.audit import log_audit

    contract_id = contract.id
    old_status = contract.status
    contract.status = new_status.value
    contract.last_activity_at = _now()

    staged: list[ContractEvent] = [
        record_event(db, contract, event_type, actor=actor.value) for event_type in events
    ]

    try:
        # The UPDATE carries "WHERE version = :old"; a lost race surfaces here
        await db.flush()
        await log_audit(
            db,
            action=f"contract_{action.value}",
            entity_type="contract",
            entity_id=contract_id,
            user_id=user_id,
            actor=actor.value,
            details={"from_status": old_status, "to_status": new_status.value, **(audit_details or {})},
        )
        await db.commit()
    except StaleDataError:
        # Rollback expires the instance; only locals from here on
        await db.rollback()
        logger.warning(
            "Contract write lost the optimistic lock",
            extra={"contract_id": contract_id, "action": action.value, "actor": actor.value},
        )
        raise ConcurrencyConflictError(contract_id)
    await db.refresh(contract)

    logger.info(
        "Contract transition",
        extra={
            "contract_id": contract.id,
            "action": action.value,
            "actor": actor.value,
            "from_status": old_status,
            "to_status": contract.status,
        },
    )

    # Only announce what is durable
    await watchers.publish(contract)
    if staged:
        await dispatch_after_commit(db, contract, staged)
    return contract


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def create_contract(db: AsyncSession, buyer: User, data: ContractCreate) -> Contract:
    """Propose a contract from ``buyer`` to ``data.seller_id``; starts in pending_seller."""
    from coffee_contracts.services.audit import log_audit
    from coffee_contracts.services.user import get_trading_partner

    if data.seller_id == buyer.id:
        raise ContractValidationError("You cannot contract with yourself", field="seller_id")

    seller = await get_trading_partner(db, data.seller_id)
    if seller is None:
        raise ContractValidationError("Seller not found", field="seller_id")

    rate = Decimal(str(data.commission_rate)) if data.commission_rate is not None else settings.platform_commission_percent
    if rate < 0 or rate > 100:
        raise ContractValidationError("Commission rate must be between 0 and 100", field="commission_rate")

    items, total = build_line_items([item.model_dump() for item in data.items])
    settlement = compute_settlement(total, rate)

    now = _now()
    contract = Contract(
        contract_number=new_contract_number(now),
        buyer_id=buyer.id,
        seller_id=seller.id,
        buyer_role=buyer.role,
        seller_role=seller.role,
        order_type=f"{buyer.role}_to_{seller.role}",
        items=items,
        total_amount=total,
        currency=data.currency or settings.default_currency,
        platform_commission_rate=rate,
        platform_commission_amount=settlement.commission,
        seller_net_amount=settlement.net,
        notes=data.notes,
        status=ContractStatus.PENDING_SELLER.value,
        commission_paid=False,
        seller_payment_confirmed=False,
        seller_response_deadline=_response_deadline(now),
        last_activity_at=now,
    )
    db.add(contract)
    await db.flush()

    await log_audit(
        db,
        action="contract_created",
        entity_type="contract",
        entity_id=contract.id,
        user_id=buyer.id,
        actor=Actor.BUYER.value,
        details={"total_amount": total, "commission_rate": rate},
    )
    await db.commit()
    await db.refresh(contract)

    logger.info(
        "Contract proposed",
        extra={"contract_id": contract.id, "buyer_id": buyer.id, "seller_id": seller.id},
    )
    return contract


async def seller_approve(
    db: AsyncSession, contract_id: int, user: User, *, expected_version: int | None = None
) -> Contract:
    contract, actor = await _prepare(db, contract_id, user, expected_version)
    new_status = validate_transition(contract.status, ContractAction.APPROVE, actor)

    return await commit_transition(
        db, contract,
        action=ContractAction.APPROVE, new_status=new_status, actor=actor, user_id=user.id,
    )


async def seller_reject(
    db: AsyncSession,
    contract_id: int,
    user: User,
    reason: str | None,
    *,
    expected_version: int | None = None,
) -> Contract:
    """Reject before approval or instead of signing; the stage decides refund eligibility."""
    contract, actor = await _prepare(db, contract_id, user, expected_version)
    new_status = validate_transition(contract.status, ContractAction.REJECT, actor)
    reason = _require_text(reason, "reason", "Please provide a rejection reason")

    now = _now()
    rejected_from = contract.status
    contract.seller_rejection_reason = reason
    contract.rejected_by = user.id
    contract.rejected_from_status = rejected_from
    contract.rejected_at = now
    contract.seller_response_deadline = None

    return await commit_transition(
        db, contract,
        action=ContractAction.REJECT, new_status=new_status, actor=actor, user_id=user.id,
        audit_details={"reason": reason},
    )


async def pay_commission(
    db: AsyncSession,
    contract_id: int,
    user: User,
    method: str | None,
    receipt: str | None = None,
    *,
    expected_version: int | None = None,
) -> Contract:
    """Buyer pays the platform commission.

    Online payments go straight to the signature chain; bank transfers need a
    receipt and wait for an admin to confirm it.
    """
    contract, actor = await _prepare(db, contract_id, user, expected_version)
    validate_transition(contract.status, ContractAction.PAY_COMMISSION, actor)

    try:
        payment_method = PaymentMethod(method)
    except ValueError:
        raise ContractValidationError("Select a payment method", field="method")
    if payment_method == PaymentMethod.BANK_TRANSFER:
        receipt = _require_text(receipt, "receipt", "Upload the transfer receipt")

    new_status = validate_transition(
        contract.status, ContractAction.PAY_COMMISSION, actor, payment_method=payment_method
    )

    now = _now()
    contract.commission_payment_method = payment_method.value
    contract.commission_paid = True
    contract.commission_paid_at = now
    contract.commission_transfer_receipt = receipt or None
    if new_status == ContractStatus.AWAITING_SELLER_SIGN:
        contract.seller_response_deadline = _response_deadline(now)

    return await commit_transition(
        db, contract,
        action=ContractAction.PAY_COMMISSION, new_status=new_status, actor=actor, user_id=user.id,
        audit_details={"method": payment_method.value, "amount": contract.platform_commission_amount},
    )


async def confirm_commission_receipt(
    db: AsyncSession, contract_id: int, admin: User, *, expected_version: int | None = None
) -> Contract:
    contract, actor = await _prepare(db, contract_id, admin, expected_version, as_admin=True)
    new_status = validate_transition(contract.status, ContractAction.CONFIRM_COMMISSION, actor)

    now = _now()
    contract.commission_confirmed_at = now
    contract.commission_confirmed_by = admin.id
    contract.seller_response_deadline = _response_deadline(now)

    return await commit_transition(
        db, contract,
        action=ContractAction.CONFIRM_COMMISSION, new_status=new_status, actor=actor, user_id=admin.id,
    )


async def sign_contract(
    db: AsyncSession,
    contract_id: int,
    user: User,
    signature_image: str | None,
    *,
    as_admin: bool = False,
    expected_version: int | None = None,
) -> Contract:
    """Write the acting party's signature slot and advance the signature chain.

    The platform signature additionally stages the platform_signed event
    (archive both copies, notify both parties) in the same transaction.
    """
    contract, actor = await _prepare(db, contract_id, user, expected_version, as_admin=as_admin)
    new_status = validate_transition(contract.status, ContractAction.SIGN, actor)
    signature_image = _require_text(signature_image, "signature", "A signature is required")

    slot = SIGNATURE_SLOTS[ContractStatus(contract.status)]
    signature_col, signed_at_col = _SLOT_COLUMNS[slot]
    if getattr(contract, signature_col):
        raise InvalidTransitionError(contract.status, ContractAction.SIGN, actor, "already signed")

    setattr(contract, signature_col, signature_image)
    setattr(contract, signed_at_col, _now())
    events: tuple[str, ...] = ()
    if slot == Actor.ADMIN:
        contract.platform_signed_by = user.id
        events = (EVENT_PLATFORM_SIGNED,)
    if slot == Actor.SELLER:
        contract.seller_response_deadline = None

    return await commit_transition(
        db, contract,
        action=ContractAction.SIGN, new_status=new_status, actor=actor, user_id=user.id,
        events=events, audit_details={"slot": slot.value},
    )


async def confirm_seller_payment(
    db: AsyncSession,
    contract_id: int,
    user: User,
    receipt: str | None,
    *,
    expected_version: int | None = None,
) -> Contract:
    """Buyer reports the payout of the net amount; completes the contract."""
    contract, actor = await _prepare(db, contract_id, user, expected_version)
    new_status = validate_transition(contract.status, ContractAction.CONFIRM_SELLER_PAYMENT, actor)
    receipt = _require_text(receipt, "receipt", "Upload the transfer receipt")

    contract.seller_payment_confirmed = True
    contract.seller_transfer_receipt = receipt
    contract.seller_paid_at = _now()

    return await commit_transition(
        db, contract,
        action=ContractAction.CONFIRM_SELLER_PAYMENT, new_status=new_status, actor=actor,
        user_id=user.id, events=(EVENT_COMPLETED,),
        audit_details={"amount": contract.seller_net_amount},
    )


def _refund_reason(contract: Contract) -> str:
    if contract.seller_rejection_reason == DEADLINE_EXPIRED_REASON and contract.rejected_by is None:
        return DEADLINE_EXPIRED_REASON
    return "Seller rejected order"


async def request_refund(
    db: AsyncSession,
    contract_id: int,
    user: User,
    bank_details: dict | None,
    *,
    expected_version: int | None = None,
) -> Contract:
    """Buyer asks for the paid commission back after a seller rejection."""
    contract, actor = await _prepare(db, contract_id, user, expected_version)
    new_status = validate_transition(contract.status, ContractAction.REQUEST_REFUND, actor)
    if not contract.commission_paid:
        raise InvalidTransitionError(
            contract.status, ContractAction.REQUEST_REFUND, actor, "no commission was paid"
        )

    bank_details = dict(bank_details or {})
    missing = [f for f in REQUIRED_BANK_FIELDS if not str(bank_details.get(f) or "").strip()]
    if missing:
        raise ContractValidationError(
            f"Please enter bank details: {', '.join(missing)}", field="bank_details"
        )

    now = _now()
    refund = CommissionRefund(
        contract_id=contract.id,
        user_id=user.id,
        original_amount=contract.platform_commission_amount,
        refund_amount=contract.platform_commission_amount,
        refund_reason=_refund_reason(contract),
        bank_details={f: str(bank_details[f]).strip() for f in REQUIRED_BANK_FIELDS},
        status="pending",
    )
    db.add(refund)
    contract.commission_refund_status = "requested"
    contract.commission_refund_requested_at = now

    return await commit_transition(
        db, contract,
        action=ContractAction.REQUEST_REFUND, new_status=new_status, actor=actor, user_id=user.id,
        audit_details={"amount": contract.platform_commission_amount},
    )


async def expire_contract(db: AsyncSession, contract: Contract) -> Contract:
    """System rejection of a contract whose seller let the response deadline pass."""
    new_status = validate_transition(contract.status, ContractAction.EXPIRE, Actor.SYSTEM)

    contract.seller_rejection_reason = DEADLINE_EXPIRED_REASON
    contract.rejected_by = None
    contract.rejected_from_status = contract.status
    contract.rejected_at = _now()
    contract.seller_response_deadline = None

    return await commit_transition(
        db, contract,
        action=ContractAction.EXPIRE, new_status=new_status, actor=Actor.SYSTEM, user_id=None,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_contracts_by_user(
    db: AsyncSession,
    user_id: int,
    *,
    role: str | None = None,
    status_filter: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Contract]:
    if role == "buyer":
        condition = Contract.buyer_id == user_id
    elif role == "seller":
        condition = Contract.seller_id == user_id
    else:
        condition = or_(Contract.buyer_id == user_id, Contract.seller_id == user_id)

    query = select(Contract).where(condition)
    if status_filter:
        query = query.where(Contract.status == status_filter)
    result = await db.execute(
        query.order_by(Contract.id.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def get_admin_queue(db: AsyncSession, offset: int = 0, limit: int = 50) -> list[Contract]:
    """Contracts that wait on a platform admin, oldest activity first."""
    result = await db.execute(
        select(Contract)
        .where(Contract.status.in_([s.value for s in ADMIN_QUEUE_STATUSES]))
        .order_by(Contract.last_activity_at.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_contracts_past_deadline(db: AsyncSession, now: datetime) -> list[Contract]:
    """Contracts still waiting on the seller after their response deadline."""
    result = await db.execute(
        select(Contract).where(
            Contract.status.in_([s.value for s in DEADLINE_STATUSES]),
            Contract.seller_response_deadline.isnot(None),
            Contract.seller_response_deadline < now,
        )
    )
    return list(result.scalars().all())


async def get_user_copies(db: AsyncSession, user_id: int) -> list[ContractCopy]:
    result = await db.execute(
        select(ContractCopy)
        .where(ContractCopy.user_id == user_id)
        .order_by(ContractCopy.created_at.desc())
    )
    return list(result.scalars().all())


def deadline_countdown(contract: Contract, now: datetime | None = None) -> dict | None:
    """Hours left before the seller response deadline, for the countdown banner."""
    deadline = contract.seller_response_deadline
    if deadline is None or contract.status not in {s.value for s in DEADLINE_STATUSES}:
        return None
    now = now or _now()
    seconds_left = (deadline - now).total_seconds()
    if seconds_left <= 0:
        return {"deadline": deadline, "expired": True, "hours_left": 0}
    return {"deadline": deadline, "expired": False, "hours_left": int(seconds_left // 3600)}


async def get_contract_detail(db: AsyncSession, contract_id: int, user: User) -> dict:
    """Contract + the viewer's role, available actions, settlement, deadline and copies."""
    contract = await _load_contract(db, contract_id)
    actor = resolve_actor(contract, user)
    actions = get_available_actions(
        contract.status, actor, commission_paid=bool(contract.commission_paid)
    )
    settlement = compute_settlement(contract.total_amount, contract.platform_commission_rate)

    copies_result = await db.execute(
        select(ContractCopy).where(ContractCopy.contract_id == contract.id)
    )
    copies = list(copies_result.scalars().all())
    party = waiting_on(contract.status)

    return {
        "contract": contract,
        "actor": actor.value,
        "available_actions": actions,
        "waiting_on": party.value if party else None,
        "settlement": {"commission": settlement.commission, "net": settlement.net},
        "deadline": deadline_countdown(contract),
        "copies": copies,
    }
