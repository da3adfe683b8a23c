"""
Database session management.

Async engine/session factory construction plus the unit-of-work boundary
used by the persistence phase: every write of one analysis run happens
inside a single transaction that commits as a whole or not at all.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mailsense.common.exceptions import TransactionError
from mailsense.config.models import DatabaseConfig
from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

SLOW_QUERY_THRESHOLD_SECONDS = 1.0
HASH_PREFIX_LEN = 8

logger = logging.getLogger(__name__)


def _hash_text(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:HASH_PREFIX_LEN]


def create_engine_from_config(
    db_config: DatabaseConfig | None = None, url: str | None = None
) -> AsyncEngine:
    """
    Build the async engine.

    SQLite URLs (tests, local runs) get a StaticPool so an in-memory
    database survives across sessions; everything else uses the
    configured pool sizing.
    """
    db_config = db_config or DatabaseConfig()
    db_url = url or db_config.url
    if not db_url:
        raise TransactionError(
            "Database configuration missing database.url",
            error_code="DB_URL_MISSING",
        )

    engine_args: dict[str, Any] = {"echo": db_config.echo}
    if make_url(db_url).get_backend_name() == "sqlite":
        engine_args["poolclass"] = StaticPool
        engine_args["connect_args"] = {"check_same_thread": False}
    else:
        engine_args["pool_pre_ping"] = True
        engine_args["pool_size"] = db_config.pool_size
        engine_args["max_overflow"] = db_config.max_overflow

    engine = create_async_engine(db_url, **engine_args)
    if make_url(db_url).get_backend_name() == "sqlite":
        _install_sqlite_transactions(engine)
    _install_query_timing(engine)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


def _install_sqlite_transactions(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN on its own; take over so SAVEPOINTs nest correctly
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _install_query_timing(engine: AsyncEngine) -> None:
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after(conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get("query_start_time")
        if not start_times:
            return
        total_time = time.perf_counter() - start_times.pop()
        if total_time > SLOW_QUERY_THRESHOLD_SECONDS:
            statement_text = statement or ""
            logger.warning(
                "Slow query (%.2fs) hash=%s length=%s",
                total_time,
                _hash_text(str(statement_text)),
                len(statement_text),
            )

    @event.listens_for(sync_engine, "handle_error")
    def _on_error(exception_context):
        connection = getattr(exception_context, "connection", None)
        if connection is None:
            return
        start_times = connection.info.get("query_start_time")
        if start_times:
            start_times.pop()


async def set_session_tenant(session: AsyncSession, tenant_id: str) -> None:
    """
    Set the Postgres RLS tenant context for a session.

    No-op on other backends.
    """
    if not tenant_id:
        raise TransactionError(
            "tenant_id is required for RLS", error_code="RLS_TENANT_REQUIRED"
        )
    # Validate tenant_id format to prevent SQL injection
    if not re.match(r"^[a-zA-Z0-9_.@-]+$", tenant_id):
        raise TransactionError(
            "Invalid tenant_id format",
            error_code="RLS_TENANT_INVALID",
            context={"tenant_hash": _hash_text(tenant_id)},
        )
    if session.get_bind().dialect.name != "postgresql":
        return
    try:
        await session.execute(
            text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
            {"tenant_id": tenant_id},
        )
        logger.debug("Set RLS tenant context: %s", _hash_text(tenant_id))
    except Exception as e:
        raise TransactionError(
            "Failed to set RLS tenant",
            error_code="RLS_SET_FAILED",
            context={"tenant_hash": _hash_text(tenant_id)},
        ) from e


class UnitOfWork:
    """
    Handle on an open transaction.

    Writers take a UnitOfWork rather than a bare session so that a write
    outside the transaction boundary fails loudly instead of autocommitting.
    """

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self._active = True

    @property
    def is_active(self) -> bool:
        return self._active

    def require_active(self) -> AsyncSession:
        if not self._active:
            raise TransactionError(
                "Unit of work is no longer active",
                error_code="TRANSACTION_INACTIVE",
            )
        return self.session

    def close(self) -> None:
        self._active = False


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str | None = None,
) -> AsyncIterator[UnitOfWork]:
    """
    Open a transaction; commit when the block exits cleanly, roll back otherwise.

    Raises:
        TransactionError: wrapping whatever made the block or the commit fail
    """
    async with session_factory() as session:
        uow = UnitOfWork(session, tenant_id)
        try:
            await session.begin()
            if tenant_id:
                await set_session_tenant(session, tenant_id)
            yield uow
            await session.commit()
        except Exception as e:
            try:
                await session.rollback()
            except Exception:
                logger.error("Rollback failed", exc_info=True)
            if isinstance(e, TransactionError):
                raise
            raise TransactionError(
                "Database transaction failed",
                error_code="TRANSACTION_FAILED",
                context={"tenant_id": tenant_id, "cause": type(e).__name__},
            ) from e
        finally:
            uow.close()


@asynccontextmanager
async def savepoint(uow: UnitOfWork, label: str) -> AsyncIterator[None]:
    """
    Run a non-fatal step inside a SAVEPOINT.

    A failure rolls back only the step and is logged; the surrounding
    transaction carries on.
    """
    session = uow.require_active()
    nested = await session.begin_nested()
    try:
        yield
        await nested.commit()
    except Exception as e:
        await nested.rollback()
        logger.warning("Non-fatal step %s failed and was rolled back: %s", label, e)
