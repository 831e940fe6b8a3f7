from sqlalchemy import JSON, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coffee_contracts.db.base import Base


class ContractCopy(Base):
    """Immutable archival snapshot of a contract kept in one party's records."""

    __tablename__ = "contract_copies"

    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_role: Mapped[str] = mapped_column(String(20), nullable=False)  # buyer / seller
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    pdf_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    contract = relationship("Contract", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("contract_id", "user_role", name="uq_contract_copies_contract_role"),
    )
