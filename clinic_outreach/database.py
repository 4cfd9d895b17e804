import logging
from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import AsyncAdaptedQueuePool

from clinic_outreach.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# ---------------------------------------------------------------------------
# Connection pool tuning
# ---------------------------------------------------------------------------
# pool_size:       Persistent connections kept open.
# max_overflow:    Extra connections allowed when the pool is exhausted.
# pool_timeout:    Seconds to wait for a connection before raising.
# pool_recycle:    Recycle connections after N seconds to avoid stale TCP.
# pool_pre_ping:   Lightweight "SELECT 1" before handing out a connection.
# ---------------------------------------------------------------------------
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
    poolclass=AsyncAdaptedQueuePool,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=settings.DB_POOL_TIMEOUT,
    pool_recycle=1800,
    pool_pre_ping=True,
    connect_args={
        "command_timeout": 30,
        "server_settings": {"statement_timeout": "30000"},
    },
)

_sync_engine = engine.sync_engine


@event.listens_for(_sync_engine, "checkin")
def _on_checkin(dbapi_conn, connection_rec):
    pool = _sync_engine.pool
    if pool.overflow() > pool.size() * 0.5:
        logger.warning(
            "db_pool: high overflow, size=%s, checkedin=%s, overflow=%s (>50%% of pool_size)",
            pool.size(), pool.checkedin(), pool.overflow(),
        )


AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session scoped to the request lifecycle.

    Service functions own their transactions and commit explicitly, so
    read-only endpoints never commit.  On exception the session is rolled
    back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
