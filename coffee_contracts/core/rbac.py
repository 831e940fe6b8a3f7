"""Role-based access control dependencies."""

from fastapi import Depends, HTTPException, status

from coffee_contracts.core.security import get_current_user
from coffee_contracts.models.user import TRADING_ROLES, User


def require_role(*roles: str):
    """Return a FastAPI dependency that enforces one of the given user roles."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This endpoint requires one of the roles: {', '.join(roles)}",
            )
        return user

    return _check


require_admin = require_role("admin")
require_trader = require_role(*TRADING_ROLES)
