"""Contract endpoints for buyers and sellers, plus the live watch socket."""

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    WebSocketException,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.api.schemas import (
    ContractCopyResponse,
    ContractCreate,
    ContractDetailResponse,
    ContractResponse,
    PaginatedContractResponse,
    PayCommissionRequest,
    RefundRequest,
    ReceiptRequest,
    RejectRequest,
    SignRequest,
    UserBrief,
    VersionedRequest,
)
from coffee_contracts.core.config import settings
from coffee_contracts.core.deps import Page, get_db, pagination
from coffee_contracts.core.rate_limit import limiter
from coffee_contracts.core.rbac import require_trader
from coffee_contracts.core.security import get_current_user, get_websocket_user
from coffee_contracts.core.websocket_manager import watchers
from coffee_contracts.models.user import User
from coffee_contracts.services import contract as contract_svc

router = APIRouter(prefix="/contracts", tags=["contracts"])


def build_detail_response(detail: dict) -> ContractDetailResponse:
    contract = detail["contract"]
    base = ContractResponse.model_validate(contract).model_dump()
    return ContractDetailResponse(
        **base,
        buyer=UserBrief.model_validate(contract.buyer) if contract.buyer else None,
        seller=UserBrief.model_validate(contract.seller) if contract.seller else None,
        actor=detail["actor"],
        available_actions=detail["available_actions"],
        waiting_on=detail["waiting_on"],
        settlement=detail["settlement"],
        deadline=detail["deadline"],
        copies=[ContractCopyResponse.model_validate(c) for c in detail["copies"]],
    )


@router.post("", response_model=ContractResponse, status_code=201)
async def propose_contract(
    body: ContractCreate,
    user: User = Depends(require_trader),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.create_contract(db, user, body)


@router.get("", response_model=PaginatedContractResponse)
async def list_contracts(
    role: str | None = Query(default=None, pattern="^(buyer|seller)$"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: Page = Depends(pagination),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    contracts = await contract_svc.get_contracts_by_user(
        db, user.id, role=role, status_filter=status_filter, offset=page.offset, limit=page.limit + 1
    )
    return PaginatedContractResponse(
        items=contracts[:page.limit],
        offset=page.offset,
        limit=page.limit,
        has_more=len(contracts) > page.limit,
    )


@router.get("/copies", response_model=list[ContractCopyResponse])
async def list_my_copies(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.get_user_copies(db, user.id)


@router.get("/{contract_id}", response_model=ContractDetailResponse)
async def get_contract(
    contract_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    detail = await contract_svc.get_contract_detail(db, contract_id, user)
    return build_detail_response(detail)


# ---------------------------------------------------------------------------
# Seller
# ---------------------------------------------------------------------------


@router.post("/{contract_id}/approve", response_model=ContractResponse)
async def approve_contract(
    contract_id: int,
    body: VersionedRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.seller_approve(
        db, contract_id, user, expected_version=body.expected_version if body else None
    )


@router.post("/{contract_id}/reject", response_model=ContractResponse)
async def reject_contract(
    contract_id: int,
    body: RejectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.seller_reject(
        db, contract_id, user, body.reason, expected_version=body.expected_version
    )


# ---------------------------------------------------------------------------
# Buyer
# ---------------------------------------------------------------------------


@router.post("/{contract_id}/pay-commission", response_model=ContractResponse)
@limiter.limit(settings.rate_limit_payment)
async def pay_commission(
    request: Request,
    contract_id: int,
    body: PayCommissionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Pay the platform commission. Double submits within a minute are refused."""
    from coffee_contracts.core.idempotency import check_idempotency, release_idempotency

    key = f"contract:pay:{contract_id}:{user.id}"
    if not await check_idempotency(key, ttl=60):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A commission payment for this contract is already being processed",
        )
    try:
        return await contract_svc.pay_commission(
            db, contract_id, user, body.method, body.receipt,
            expected_version=body.expected_version,
        )
    except Exception:
        # Nothing was recorded, let the buyer try again right away
        await release_idempotency(key)
        raise


@router.post("/{contract_id}/confirm-seller-payment", response_model=ContractResponse)
async def confirm_seller_payment(
    contract_id: int,
    body: ReceiptRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.confirm_seller_payment(
        db, contract_id, user, body.receipt, expected_version=body.expected_version
    )


@router.post("/{contract_id}/request-refund", response_model=ContractResponse)
async def request_refund(
    contract_id: int,
    body: RefundRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    bank_details = body.bank_details.model_dump() if body.bank_details else None
    return await contract_svc.request_refund(
        db, contract_id, user, bank_details, expected_version=body.expected_version
    )


# ---------------------------------------------------------------------------
# Either party
# ---------------------------------------------------------------------------


@router.post("/{contract_id}/sign", response_model=ContractResponse)
async def sign_contract(
    contract_id: int,
    body: SignRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await contract_svc.sign_contract(
        db, contract_id, user, body.signature, expected_version=body.expected_version
    )


@router.websocket("/{contract_id}/watch")
async def watch_contract(
    websocket: WebSocket,
    contract_id: int,
    user: User = Depends(get_websocket_user),
    db: AsyncSession = Depends(get_db),
):
    """Push ``contract.updated`` messages to a participant or admin while connected."""
    try:
        contract = await contract_svc.get_contract(db, contract_id, user)
    except HTTPException as exc:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail) from exc
    await watchers.connect(contract.id, user.id, websocket)
    await websocket.send_json({
        "type": "contract.snapshot",
        "contract_id": contract.id,
        "status": contract.status,
        "version": contract.version,
    })
    # Release the connection; the socket can stay open for a long time
    await db.close()
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        watchers.disconnect(contract.id, user.id, websocket)
