import asyncio
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, TypeVar

from fastapi import Request
import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.exc import OperationalError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from secure_booking.domain.errors import LockTimeout
from secure_booking.infra.metrics import metrics
from secure_booking.infra.tracing import instrument_sqlalchemy
from secure_booking.settings import settings

# Shared type definition to avoid circular imports - MUST be defined BEFORE Base and models
UUID_TYPE = sa.Uuid(as_uuid=True)

Base = declarative_base()

# Register every mapped table on Base.metadata.
import secure_booking.infra.models  # noqa: F401,E402

_engine = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (OperationalError, TimeoutError, LockTimeout)


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        is_postgres = settings.database_url.startswith(("postgresql://", "postgresql+"))

        engine_kwargs: dict[str, Any] = {
            "pool_pre_ping": True,
        }

        if is_postgres:
            engine_kwargs.update({
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_timeout": settings.database_pool_timeout_seconds,
                "connect_args": {
                    "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}",
                },
            })

        _engine = create_async_engine(settings.database_url, **engine_kwargs)
        _configure_logging(_engine)
        instrument_sqlalchemy(_engine.sync_engine)
        _session_factory = async_sessionmaker(
            _engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )
    return _session_factory


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_factory = getattr(request.app.state, "db_session_factory", None) or _get_session_factory()
    try:
        async with session_factory() as session:
            yield session
    except TimeoutError as exc:
        logger.warning("db_pool_timeout", exc_info=exc)
        raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _get_session_factory()


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def retry_db_operation(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> T:
    """Run ``operation`` retrying transient infrastructure failures.

    Pool exhaustion, dropped connections and lock waits that ran out are retried
    with exponential backoff; the session is rolled back between attempts. The
    last failure is re-raised once the attempts are used up.
    """

    max_attempts = attempts or settings.db_retry_attempts
    delay = settings.db_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    attempt = 1
    while True:
        try:
            return await operation()
        except RETRYABLE_ERRORS as exc:
            await session.rollback()
            metrics.record_db_retry(name, type(exc).__name__)
            if attempt >= max_attempts:
                logger.warning(
                    "db_retry_exhausted",
                    extra={"extra": {"operation": name, "attempts": attempt, "error": type(exc).__name__}},
                )
                raise
            logger.info(
                "db_retry",
                extra={"extra": {"operation": name, "attempt": attempt, "error": type(exc).__name__}},
            )
            await asyncio.sleep(delay * (2 ** (attempt - 1)))
            attempt += 1


def _configure_logging(engine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"operation": str(context.statement) if context.statement else None}},
            )
