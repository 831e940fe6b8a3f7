"""create users, contracts, copies, refunds, events and audit tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(30), server_default="cafe", nullable=False),
        sa.Column("locale", sa.String(10), server_default="en", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("contract_number", sa.String(32), nullable=False, unique=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("buyer_role", sa.String(30), nullable=False),
        sa.Column("seller_role", sa.String(30), nullable=False),
        sa.Column("order_type", sa.String(50), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(10), server_default="SAR", nullable=False),
        sa.Column("platform_commission_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("platform_commission_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("seller_net_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("commission_payment_method", sa.String(30), nullable=True),
        sa.Column("commission_paid", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("commission_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_transfer_receipt", sa.Text(), nullable=True),
        sa.Column("commission_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_confirmed_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("seller_signature", sa.Text(), nullable=True),
        sa.Column("seller_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("buyer_signature", sa.Text(), nullable=True),
        sa.Column("buyer_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_signature", sa.Text(), nullable=True),
        sa.Column("platform_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_signed_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("seller_payment_confirmed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("seller_transfer_receipt", sa.Text(), nullable=True),
        sa.Column("seller_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(40), server_default="pending_seller", nullable=False, index=True),
        sa.Column("seller_response_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seller_rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("rejected_from_status", sa.String(40), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_refund_status", sa.String(20), nullable=True),
        sa.Column("commission_refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_refund_receipt", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_contracts_status_deadline", "contracts", ["status", "seller_response_deadline"])

    op.create_table(
        "contract_copies",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("user_role", sa.String(20), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("pdf_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("contract_id", "user_role", name="uq_contract_copies_contract_role"),
    )

    op.create_table(
        "commission_refunds",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("original_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("refund_reason", sa.Text(), nullable=False),
        sa.Column("bank_details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False, index=True),
        sa.Column("refund_method", sa.String(30), nullable=True),
        sa.Column("transfer_receipt", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("processed_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "contract_events",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("event_type", sa.String(60), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("pending_handlers", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_contract_events_unprocessed", "contract_events", ["processed_at", "created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("actor", sa.String(20), nullable=True),
        sa.Column("action", sa.String(100), nullable=False, index=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("contract_events")
    op.drop_table("commission_refunds")
    op.drop_table("contract_copies")
    op.drop_table("contracts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
