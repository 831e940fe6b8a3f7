from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.models.user import TRADING_ROLES, User


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(
        select(User).where(User.id == user_id, User.is_active == True)  # noqa: E712
    )
    return result.scalar_one_or_none()


async def get_trading_partner(db: AsyncSession, user_id: int) -> User | None:
    """Active user allowed to sit on either side of a contract, or None.

    Platform admins are never a contract party.
    """
    user = await get_user_by_id(db, user_id)
    if user is None or user.role not in TRADING_ROLES:
        return None
    return user
