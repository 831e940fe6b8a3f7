"""Platform admin endpoints: commission confirmation, platform signature, refund desk."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.api.schemas import (
    CommissionRefundResponse,
    ContractResponse,
    PaginatedContractResponse,
    RefundCompleteRequest,
    RefundDecisionRequest,
    ReplayResponse,
    SignRequest,
    VersionedRequest,
)
from coffee_contracts.core.deps import Page, get_db, pagination
from coffee_contracts.core.rbac import require_admin
from coffee_contracts.models.user import User
from coffee_contracts.services import contract as contract_svc
from coffee_contracts.services import refund as refund_svc

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/contracts/queue", response_model=PaginatedContractResponse)
async def admin_queue(
    page: Page = Depends(pagination),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    contracts = await contract_svc.get_admin_queue(db, offset=page.offset, limit=page.limit + 1)
    return PaginatedContractResponse(
        items=contracts[:page.limit],
        offset=page.offset,
        limit=page.limit,
        has_more=len(contracts) > page.limit,
    )


@router.post("/contracts/{contract_id}/confirm-commission", response_model=ContractResponse)
async def confirm_commission(
    contract_id: int,
    body: VersionedRequest | None = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.confirm_commission_receipt(
        db, contract_id, admin, expected_version=body.expected_version if body else None
    )


@router.post("/contracts/{contract_id}/sign", response_model=ContractResponse)
async def platform_sign(
    contract_id: int,
    body: SignRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.sign_contract(
        db, contract_id, admin, body.signature,
        as_admin=True, expected_version=body.expected_version,
    )


@router.post("/contracts/{contract_id}/replay-events", response_model=ReplayResponse)
async def replay_events(
    contract_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-run unfinished post-transition handlers (copies, e-mails) of one contract."""
    from coffee_contracts.services.contract_events import process_pending_events

    contract = await contract_svc.get_contract(db, contract_id, admin)
    processed, failed = await process_pending_events(db, contract_id=contract.id)
    return ReplayResponse(contract_id=contract.id, processed=processed, failed=failed)


# ---------------------------------------------------------------------------
# Refund desk
# ---------------------------------------------------------------------------


@router.get("/refunds", response_model=list[CommissionRefundResponse])
async def list_refunds(
    status_filter: str | None = Query(default=None, alias="status"),
    page: Page = Depends(pagination),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await refund_svc.list_refunds(
        db, status_filter=status_filter, offset=page.offset, limit=page.limit
    )


@router.post("/refunds/{refund_id}/approve", response_model=CommissionRefundResponse)
async def approve_refund(
    refund_id: int,
    body: RefundDecisionRequest | None = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await refund_svc.approve_refund(db, refund_id, admin, body.notes if body else None)


@router.post("/refunds/{refund_id}/deny", response_model=CommissionRefundResponse)
async def deny_refund(
    refund_id: int,
    body: RefundDecisionRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await refund_svc.deny_refund(db, refund_id, admin, body.notes)


@router.post("/refunds/{refund_id}/complete", response_model=CommissionRefundResponse)
async def complete_refund(
    refund_id: int,
    body: RefundCompleteRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await refund_svc.complete_refund(db, refund_id, admin, body.receipt, body.notes)
