from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from coffee_contracts.db.base import Base

# Trading roles a party can hold; "admin" is the platform itself
TRADING_ROLES = ("supplier", "roaster", "cafe", "farm", "maintenance")


class User(Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(30), default="cafe", server_default="cafe")
    locale: Mapped[str] = mapped_column(String(10), default="en", server_default="en")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        return self.full_name or self.email
