from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coffee_contracts.db.base import Base, utcnow


class Contract(Base):
    __tablename__ = "contracts"

    contract_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    # Parties
    buyer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    seller_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    buyer_role: Mapped[str] = mapped_column(String(30), nullable=False)
    seller_role: Mapped[str] = mapped_column(String(30), nullable=False)
    order_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Commercial terms
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="SAR", server_default="SAR")
    platform_commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    platform_commission_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    seller_net_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Commission payment
    commission_payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    commission_paid: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    commission_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    commission_transfer_receipt: Mapped[str | None] = mapped_column(Text, nullable=True)
    commission_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    commission_confirmed_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Signatures (append-only)
    seller_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    seller_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    buyer_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    platform_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    platform_signed_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Seller payout
    seller_payment_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    seller_transfer_receipt: Mapped[str | None] = mapped_column(Text, nullable=True)
    seller_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(40), default="pending_seller", server_default="pending_seller", index=True
    )
    seller_response_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    seller_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    rejected_from_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Commission refund
    commission_refund_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    commission_refund_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    commission_refund_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    commission_refund_receipt: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
    )

    # Optimistic concurrency token, bumped by the ORM on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_contracts_status_deadline", "status", "seller_response_deadline"),
    )

    # Relationships
    buyer = relationship("User", foreign_keys=[buyer_id], lazy="selectin")
    seller = relationship("User", foreign_keys=[seller_id], lazy="selectin")
