"""
Atomic Units of Work - commit-or-rollback with bounded conflict retries.

Every state-changing operation runs through run_atomic: the operation's
reads and writes share one transaction that is committed on success and
rolled back on any failure.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.config import settings
from fable_ledger.exceptions import (
    DataIntegrityError,
    OperationTimeoutError,
    StorageConflictError,
)
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics
from fable_ledger.observability.tracing import trace_operation

logger = get_logger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATE codes treated as transient write conflicts
UNIQUE_VIOLATION = "23505"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
TRANSIENT_SQLSTATES = frozenset({UNIQUE_VIOLATION, SERIALIZATION_FAILURE, DEADLOCK_DETECTED})


def sqlstate_of(error: DBAPIError) -> str | None:
    """Extract the PostgreSQL SQLSTATE from a wrapped driver error."""
    orig = error.orig
    if orig is None:
        return None
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


def is_transient_conflict(error: DBAPIError) -> bool:
    """Check whether a database error is a lost race that may succeed on retry."""
    return sqlstate_of(error) in TRANSIENT_SQLSTATES


async def run_atomic(
    session: AsyncSession,
    name: str,
    operation: Callable[[], Awaitable[T]],
    max_retries: int | None = None,
    timeout_seconds: float | None = None,
) -> T:
    """
    Run operation in one transaction and commit it.

    Storage conflicts are retried up to max_retries times with a fresh
    transaction; after that StorageConflictError reaches the caller.
    Each attempt is bounded by timeout_seconds.

    Raises:
        StorageConflictError: Conflict persisted after all retries
        OperationTimeoutError: An attempt exceeded its deadline
        DataIntegrityError: A non-transient constraint violation
    """
    retries = settings.storage_conflict_max_retries if max_retries is None else max_retries
    timeout = settings.operation_timeout_seconds if timeout_seconds is None else timeout_seconds
    attempts = retries + 1

    for attempt in range(1, attempts + 1):
        start = time.perf_counter()
        with trace_operation(f"atomic.{name}", attempt=attempt):
            try:
                async with asyncio.timeout(timeout):
                    result = await operation()
                    await session.commit()
            except TimeoutError as e:
                await session.rollback()
                metrics.record_error("OperationTimeoutError", name)
                logger.error("atomic_operation_timeout", operation=name, timeout=timeout)
                raise OperationTimeoutError(name, timeout) from e
            except StorageConflictError:
                await session.rollback()
                conflict_error: Exception | None = None
            except IntegrityError as e:
                await session.rollback()
                if not is_transient_conflict(e):
                    metrics.record_error("DataIntegrityError", name)
                    logger.error(
                        "atomic_constraint_violation",
                        operation=name,
                        sqlstate=sqlstate_of(e),
                    )
                    raise DataIntegrityError(f"{name}: {e.orig}") from e
                conflict_error = e
            except DBAPIError as e:
                await session.rollback()
                if not is_transient_conflict(e):
                    raise
                conflict_error = e
            except BaseException:
                await session.rollback()
                raise
            else:
                metrics.record_atomic(name, time.perf_counter() - start)
                return result

        metrics.record_storage_conflict(name)
        logger.warning(
            "atomic_storage_conflict",
            operation=name,
            attempt=attempt,
            max_attempts=attempts,
            sqlstate=sqlstate_of(conflict_error) if isinstance(conflict_error, DBAPIError) else None,
        )

    metrics.record_error("StorageConflictError", name)
    raise StorageConflictError(name, attempts)
