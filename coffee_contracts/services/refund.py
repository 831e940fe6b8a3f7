"""Admin refund desk for commissions paid on rejected contracts.

A refund record moves pending → approved → completed, or to denied from
pending/approved. Completing or denying also closes the contract through the
state machine (refunded / cancelled), under the same version guard as every
other contract transition.
"""

import logging
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.models.commission_refund import CommissionRefund
from coffee_contracts.models.contract import Contract
from coffee_contracts.models.user import User
from coffee_contracts.services.contract import commit_transition
from coffee_contracts.services.contract_state_machine import (
    Actor,
    ContractAction,
    ContractValidationError,
    InvalidTransitionError,
    validate_transition,
)

logger = logging.getLogger(__name__)

REFUND_STATUSES = ("pending", "approved", "completed", "denied")
OPEN_REFUND_STATUSES = ("pending", "approved")


async def list_refunds(
    db: AsyncSession,
    *,
    status_filter: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[CommissionRefund]:
    query = select(CommissionRefund)
    if status_filter:
        if status_filter not in REFUND_STATUSES:
            raise ContractValidationError(f"Unknown refund status {status_filter}", field="status")
        query = query.where(CommissionRefund.status == status_filter)
    result = await db.execute(
        query.order_by(CommissionRefund.created_at.asc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def _load_refund(db: AsyncSession, refund_id: int, admin: User) -> CommissionRefund:
    if not admin.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    result = await db.execute(select(CommissionRefund).where(CommissionRefund.id == refund_id))
    refund = result.scalar_one_or_none()
    if not refund:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Refund not found")
    return refund


async def _load_refund_contract(db: AsyncSession, refund: CommissionRefund) -> Contract:
    result = await db.execute(select(Contract).where(Contract.id == refund.contract_id))
    contract = result.scalar_one_or_none()
    if not contract:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contract not found")
    return contract


async def approve_refund(
    db: AsyncSession, refund_id: int, admin: User, notes: str | None = None
) -> CommissionRefund:
    """Mark a pending refund as approved; the money has not moved yet."""
    refund = await _load_refund(db, refund_id, admin)
    if refund.status != "pending":
        raise InvalidTransitionError(refund.status, "approve_refund", Actor.ADMIN, "refund is not pending")

    refund.status = "approved"
    refund.processed_by = admin.id
    if notes:
        refund.admin_notes = notes

    from coffee_contracts.services.audit import log_audit

    await log_audit(
        db,
        action="refund_approved",
        entity_type="commission_refund",
        entity_id=refund.id,
        user_id=admin.id,
        actor=Actor.ADMIN.value,
        details={"contract_id": refund.contract_id, "amount": refund.refund_amount},
    )
    await db.commit()
    await db.refresh(refund)
    logger.info("Refund approved", extra={"refund_id": refund.id, "contract_id": refund.contract_id})
    return refund


async def deny_refund(
    db: AsyncSession, refund_id: int, admin: User, notes: str | None
) -> CommissionRefund:
    """Deny the refund and cancel the contract. A reason is required."""
    refund = await _load_refund(db, refund_id, admin)
    if refund.status not in OPEN_REFUND_STATUSES:
        raise InvalidTransitionError(refund.status, ContractAction.DENY_REFUND, Actor.ADMIN, "refund is closed")
    contract = await _load_refund_contract(db, refund)
    new_status = validate_transition(contract.status, ContractAction.DENY_REFUND, Actor.ADMIN)
    if not notes or not notes.strip():
        raise ContractValidationError("Please provide a reason for the denial", field="notes")

    now = datetime.now(timezone.utc)
    refund.status = "denied"
    refund.admin_notes = notes.strip()
    refund.processed_by = admin.id
    refund.processed_at = now
    contract.commission_refund_status = "denied"
    contract.commission_refund_processed_at = now

    await commit_transition(
        db, contract,
        action=ContractAction.DENY_REFUND, new_status=new_status, actor=Actor.ADMIN,
        user_id=admin.id, audit_details={"refund_id": refund.id},
    )
    await db.refresh(refund)
    return refund


async def complete_refund(
    db: AsyncSession,
    refund_id: int,
    admin: User,
    receipt: str | None = None,
    notes: str | None = None,
) -> CommissionRefund:
    """Record the refund transfer and close the contract as refunded.

    The transfer receipt is optional; without one only the transfer itself is recorded.
    """
    refund = await _load_refund(db, refund_id, admin)
    if refund.status not in OPEN_REFUND_STATUSES:
        raise InvalidTransitionError(refund.status, ContractAction.COMPLETE_REFUND, Actor.ADMIN, "refund is closed")
    contract = await _load_refund_contract(db, refund)
    new_status = validate_transition(contract.status, ContractAction.COMPLETE_REFUND, Actor.ADMIN)
    receipt = receipt.strip() if receipt and receipt.strip() else None

    now = datetime.now(timezone.utc)
    refund.status = "completed"
    refund.refund_method = "bank_transfer"
    refund.transfer_receipt = receipt
    refund.processed_by = admin.id
    refund.processed_at = now
    if notes:
        refund.admin_notes = notes
    contract.commission_refund_status = "refunded"
    contract.commission_refund_processed_at = now
    contract.commission_refund_receipt = receipt

    await commit_transition(
        db, contract,
        action=ContractAction.COMPLETE_REFUND, new_status=new_status, actor=Actor.ADMIN,
        user_id=admin.id, audit_details={"refund_id": refund.id, "amount": refund.refund_amount},
    )
    await db.refresh(refund)
    return refund
