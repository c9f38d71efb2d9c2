from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from measured_in_btc.config import settings

Base = declarative_base()

# Connection execution option naming the SQLite BEGIN mode (DEFERRED or IMMEDIATE)
SQLITE_BEGIN = "sqlite_begin"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _use_explicit_sqlite_transactions(engine: AsyncEngine) -> None:
    # pysqlite only emits BEGIN ahead of DML, so the reads before a write run
    # outside any transaction. Take transaction control away from the driver.
    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        # Open readers must not block a writer's commit
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        mode = conn.get_execution_options().get(SQLITE_BEGIN, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {}
    if url.startswith("postgresql+asyncpg"):
        # Transaction-mode poolers (PgBouncer, Supabase) break prepared statement caching
        connect_args["statement_cache_size"] = 0
    engine = create_async_engine(
        url,
        echo=echo,
        future=True,
        connect_args=connect_args,
        poolclass=NullPool,
    )
    if url.startswith("sqlite"):
        _use_explicit_sqlite_transactions(engine)
    return engine


def build_sessionmaker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.sql_echo)
AsyncSessionLocal = build_sessionmaker(engine)


async def begin_write(session: AsyncSession) -> None:
    """Start the session's transaction holding the database write lock.

    SQLite gets BEGIN IMMEDIATE, which serialises writers the way the user-row
    ``SELECT ... FOR UPDATE`` does on PostgreSQL, where the option is ignored.
    Must be called before the session has run any statement.
    """
    await session.connection(execution_options={SQLITE_BEGIN: "IMMEDIATE"})


async def init_models(bind: AsyncEngine) -> None:
    # Import for the side effect of registering the tables on Base.metadata
    from measured_in_btc import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
