"""
Tests for run_atomic.

Commit on success, rollback on failure, bounded retries for transient
storage conflicts and per-attempt deadlines.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError

from fable_ledger.db.atomic import is_transient_conflict, run_atomic, sqlstate_of
from fable_ledger.exceptions import (
    DataIntegrityError,
    InsufficientCreditsError,
    OperationTimeoutError,
    StorageConflictError,
)


class FakeAsyncpgError(Exception):
    """Driver error exposing sqlstate like asyncpg."""

    def __init__(self, sqlstate: str) -> None:
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


class FakePsycopgError(Exception):
    """Driver error exposing pgcode like psycopg2."""

    def __init__(self, pgcode: str) -> None:
        super().__init__(f"pgcode {pgcode}")
        self.pgcode = pgcode


def integrity_error(sqlstate: str) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, FakeAsyncpgError(sqlstate))


def dbapi_error(sqlstate: str) -> DBAPIError:
    return DBAPIError("UPDATE ...", {}, FakeAsyncpgError(sqlstate))


class TestSqlstate:
    """Tests for SQLSTATE extraction."""

    def test_asyncpg_style(self):
        """sqlstate attribute is read."""
        assert sqlstate_of(integrity_error("23505")) == "23505"

    def test_psycopg_style(self):
        """pgcode attribute is read."""
        assert sqlstate_of(IntegrityError("x", {}, FakePsycopgError("40001"))) == "40001"

    @pytest.mark.parametrize(
        "sqlstate,transient",
        [("23505", True), ("40001", True), ("40P01", True), ("23503", False), ("23514", False)],
    )
    def test_transient_classification(self, sqlstate, transient):
        """Unique violations, serialization failures and deadlocks are transient."""
        assert is_transient_conflict(integrity_error(sqlstate)) is transient


class TestRunAtomic:
    """Tests for the unit-of-work runner."""

    async def test_commits_and_returns(self, db_session):
        """A successful operation is committed once."""
        operation = AsyncMock(return_value="done")

        assert await run_atomic(db_session, "op", operation) == "done"

        db_session.commit.assert_awaited_once()
        db_session.rollback.assert_not_awaited()

    async def test_domain_error_rolls_back(self, db_session):
        """Domain errors roll back and propagate without retry."""
        operation = AsyncMock(side_effect=InsufficientCreditsError(balance=0, required=1))

        with pytest.raises(InsufficientCreditsError):
            await run_atomic(db_session, "op", operation)

        operation.assert_awaited_once()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_unexpected_error_rolls_back(self, db_session):
        """Any exception rolls back."""
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await run_atomic(db_session, "op", operation)

        db_session.rollback.assert_awaited_once()

    async def test_storage_conflict_retried(self, db_session):
        """A lost race is retried in a fresh transaction."""
        operation = AsyncMock(side_effect=[StorageConflictError("op"), "second"])

        assert await run_atomic(db_session, "op", operation, max_retries=3) == "second"

        assert operation.await_count == 2
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    async def test_transient_integrity_error_retried(self, db_session):
        """A unique violation from a concurrent insert is retried."""
        operation = AsyncMock(side_effect=[integrity_error("23505"), 7])

        assert await run_atomic(db_session, "op", operation) == 7

    async def test_serialization_failure_retried(self, db_session):
        """A serialization failure is retried."""
        operation = AsyncMock(side_effect=[dbapi_error("40001"), dbapi_error("40P01"), "ok"])

        assert await run_atomic(db_session, "op", operation, max_retries=2) == "ok"

        assert operation.await_count == 3

    async def test_retries_exhausted(self, db_session):
        """Persistent conflicts surface as StorageConflictError after max_retries + 1 attempts."""
        operation = AsyncMock(side_effect=StorageConflictError("op"))

        with pytest.raises(StorageConflictError) as exc_info:
            await run_atomic(db_session, "ledger_append", operation, max_retries=2)

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "ledger_append"
        assert exc_info.value.retryable is True
        assert operation.await_count == 3
        assert db_session.rollback.await_count == 3
        db_session.commit.assert_not_awaited()

    async def test_constraint_violation_not_retried(self, db_session):
        """A non-transient constraint violation becomes DataIntegrityError."""
        operation = AsyncMock(side_effect=integrity_error("23514"))

        with pytest.raises(DataIntegrityError):
            await run_atomic(db_session, "op", operation)

        operation.assert_awaited_once()

    async def test_other_database_error_propagates(self, db_session):
        """Non-transient driver errors are re-raised as-is."""
        operation = AsyncMock(side_effect=dbapi_error("42P01"))

        with pytest.raises(DBAPIError):
            await run_atomic(db_session, "op", operation)

        operation.assert_awaited_once()
        db_session.rollback.assert_awaited_once()

    async def test_timeout(self, db_session):
        """An attempt past its deadline rolls back and raises OperationTimeoutError."""

        async def slow() -> None:
            await asyncio.sleep(5)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await run_atomic(db_session, "slow_op", slow, timeout_seconds=0.01)

        assert exc_info.value.operation == "slow_op"
        assert exc_info.value.retryable is True
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()
