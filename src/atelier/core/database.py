"""Database session factory setup."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    PostgreSQL (postgresql+psycopg://...) is the production target. SQLite
    (sqlite+aiosqlite://...) is supported for local runs and tests; every SQLite
    transaction is opened with BEGIN IMMEDIATE so concurrent writers queue on the
    database lock instead of failing on a read-to-write upgrade.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    if db_url.startswith("sqlite"):
        engine = create_async_engine(
            db_url,
            connect_args={"timeout": 30},
            echo=False,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        engine = create_async_engine(
            db_url,
            pool_size=pool_size,
            max_overflow=0,  # No overflow beyond pool_size
            pool_pre_ping=True,  # Verify connections before using
            echo=False,  # Don't log SQL queries (use structlog instead)
        )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory


async def init_models(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Create all tables registered on SQLModel metadata (idempotent).

    Args:
        session_factory: Session factory whose engine receives the DDL
    """
    # Register tables on the metadata
    from atelier import models  # noqa: F401

    async with session_factory() as session:
        conn = await session.connection()
        await conn.run_sync(SQLModel.metadata.create_all)
        await session.commit()
