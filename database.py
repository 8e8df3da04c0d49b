from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings

# Create declarative base for models
Base = declarative_base()


def create_engine_for_url(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    SQLite is refused in production; PostgreSQL URLs are routed to asyncpg.
    """
    url = database_url or settings.database_url or "sqlite+aiosqlite:///./app.db"
    if settings.is_production and "sqlite" in url.lower():
        raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=False, future=True, connect_args=connect_args)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine):
    """Create the users and subscriptions tables if missing. Runs in the app lifespan."""
    async with engine.begin() as conn:
        # models must be imported so their tables are on Base.metadata
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields a database session from the session
    factory built at startup.

    Example:
        @router.get("/me")
        async def me(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = request.app.state.services.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
