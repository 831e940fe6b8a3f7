from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from coffee_contracts.core.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# expire_on_commit=False: services return ORM objects after commit
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
