"""Async database engine and session management.

SQLite is the default store. Watermark and quota rows are written by
concurrent poll fan-out and send requests, so connections run in WAL mode
with a generous busy timeout, and writers retry on lock contention.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _is_lock_error(error_msg: str) -> bool:
    lower_msg = error_msg.lower()
    return any(phrase in lower_msg for phrase in ("database is locked", "database is busy", "locked"))


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 4.0,
) -> Callable[..., Any]:
    """Retry an async function on SQLite lock errors with exponential backoff and jitter.

    Non-lock ``OperationalError``s and exhausted retries re-raise the original error.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__name__", "<callable>")
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    if not _is_lock_error(error_msg) or attempt >= max_retries:
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    # +/-25% jitter
                    total_delay = max(0.01, delay + delay * 0.25 * (2 * random.random() - 1))
                    _logger.warning(
                        "db.locked",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    from sqlalchemy import event
    from sqlalchemy.engine import make_url

    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # SQLite reports "unable to open database file" when the directory is missing.
        parsed = make_url(settings.url)
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"timeout": 30.0, "check_same_thread": False}

    engine_kwargs: dict[str, Any] = {
        "echo": settings.echo,
        "future": True,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }
    if settings.pool_size is not None:
        engine_kwargs["pool_size"] = settings.pool_size
    if settings.max_overflow is not None:
        engine_kwargs["max_overflow"] = settings.max_overflow
    if settings.pool_timeout is not None:
        engine_kwargs["pool_timeout"] = settings.pool_timeout

    engine = create_async_engine(settings.url, **engine_kwargs)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
            finally:
                cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    _engine = _build_engine(resolved_settings.database)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async session that is closed even under task cancellation."""
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


@retry_on_db_lock(max_retries=5, base_delay=0.1)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables from the SQLModel metadata (idempotent)."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        # Register tables on the metadata before create_all.
        from . import models  # noqa: F401

        init_engine(settings)
        async with get_engine().begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to dispose the engine and forget schema/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not None and running.is_running():
                # Cannot block inside a running loop; dispose the pool synchronously.
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    clear_settings_cache()
