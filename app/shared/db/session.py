from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy import event
from app.shared.core.config import get_settings
import structlog
import sys
import time

logger = structlog.get_logger()
settings = get_settings()

# Critical Startup Error Handling
if not settings.DATABASE_URL:
    logger.critical("startup_failed_missing_db_url",
                    msg="DATABASE_URL is not set. The application cannot start.")
    sys.exit(1)

connect_args = {}
if "postgresql" in settings.DATABASE_URL:
    connect_args["statement_cache_size"] = 0  # Required behind pgbouncer/Supavisor

# Pool Configuration: Use NullPool for testing to avoid connection leaks across loops
pool_args = {}
if settings.TESTING or "sqlite" in settings.DATABASE_URL:
    from sqlalchemy.pool import NullPool
    pool_args["poolclass"] = NullPool
else:
    pool_args["pool_size"] = settings.DB_POOL_SIZE
    pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args=connect_args,
    **pool_args
)

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


def before_cursor_execute(conn, _cursor, _statement, _parameters, _context, _executemany):
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(conn, _cursor, statement, parameters, _context, _executemany):
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None
        )


def instrument_engine(target_engine) -> None:
    """Attach slow-query logging to an async engine."""
    event.listen(target_engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(target_engine.sync_engine, "after_cursor_execute", after_cursor_execute)


instrument_engine(engine)

# Session Factory: Creates new database sessions
# - expire_on_commit=False: Prevents lazy loading issues in async code
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """FastAPI dependency that provides a request-scoped database session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
