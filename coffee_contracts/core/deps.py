from collections.abc import AsyncGenerator
from typing import NamedTuple

from fastapi import Query
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.db.session import async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    Work left uncommitted by a failed request is rolled back; the session is
    closed when the request finishes.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class Page(NamedTuple):
    offset: int
    limit: int


def pagination(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> Page:
    """Shared offset/limit query parameters for list endpoints."""
    return Page(offset=offset, limit=limit)
