from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


class UserBrief(BaseModel):
    id: int
    email: str
    full_name: str | None
    role: str

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class LineItemIn(BaseModel):
    name: str = Field(..., max_length=255)
    quantity: Decimal
    unit_price: Decimal


class ContractCreate(BaseModel):
    seller_id: int
    items: list[LineItemIn]
    commission_rate: Decimal | None = None
    currency: str | None = Field(default=None, max_length=10)
    notes: str | None = None


class VersionedRequest(BaseModel):
    """Optional optimistic-lock token; a stale value is rejected with 409."""

    expected_version: int | None = None


class RejectRequest(VersionedRequest):
    reason: str | None = None


class PayCommissionRequest(VersionedRequest):
    method: Literal["bank_transfer", "online_payment"] | None = None
    receipt: str | None = None


class SignRequest(VersionedRequest):
    signature: str | None = None


class ReceiptRequest(VersionedRequest):
    receipt: str | None = None


class BankDetails(BaseModel):
    bank: str | None = None
    iban: str | None = None
    name: str | None = None


class RefundRequest(VersionedRequest):
    bank_details: BankDetails | None = None


class ContractResponse(BaseModel):
    id: int
    contract_number: str
    buyer_id: int
    seller_id: int
    buyer_role: str
    seller_role: str
    order_type: str
    items: list[dict]
    total_amount: Decimal
    currency: str
    platform_commission_rate: Decimal
    platform_commission_amount: Decimal
    seller_net_amount: Decimal
    notes: str | None = None
    status: str
    version: int
    commission_payment_method: str | None = None
    commission_paid: bool = False
    commission_paid_at: datetime | None = None
    commission_confirmed_at: datetime | None = None
    seller_signed_at: datetime | None = None
    buyer_signed_at: datetime | None = None
    platform_signed_at: datetime | None = None
    seller_payment_confirmed: bool = False
    seller_paid_at: datetime | None = None
    seller_response_deadline: datetime | None = None
    seller_rejection_reason: str | None = None
    rejected_from_status: str | None = None
    commission_refund_status: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SettlementResponse(BaseModel):
    commission: Decimal
    net: Decimal


class DeadlineResponse(BaseModel):
    deadline: datetime
    expired: bool
    hours_left: int


class ContractCopyResponse(BaseModel):
    id: int
    contract_id: int
    user_id: int
    user_role: str
    snapshot: dict
    pdf_url: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ContractDetailResponse(ContractResponse):
    buyer: UserBrief | None = None
    seller: UserBrief | None = None
    actor: str
    available_actions: list[str] = []
    waiting_on: str | None = None
    settlement: SettlementResponse
    deadline: DeadlineResponse | None = None
    copies: list[ContractCopyResponse] = []


class PaginatedContractResponse(BaseModel):
    items: list[ContractResponse]
    offset: int
    limit: int
    has_more: bool


# ---------------------------------------------------------------------------
# Refund desk
# ---------------------------------------------------------------------------


class CommissionRefundResponse(BaseModel):
    id: int
    contract_id: int
    user_id: int
    original_amount: Decimal
    refund_amount: Decimal
    refund_reason: str
    bank_details: dict
    status: str
    refund_method: str | None = None
    transfer_receipt: str | None = None
    admin_notes: str | None = None
    processed_by: int | None = None
    processed_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class RefundDecisionRequest(BaseModel):
    notes: str | None = None


class RefundCompleteRequest(BaseModel):
    receipt: str | None = None
    notes: str | None = None


class ReplayResponse(BaseModel):
    contract_id: int
    processed: int
    failed: int
