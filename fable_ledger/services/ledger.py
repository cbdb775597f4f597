"""
Ledger Service - Append-only credit ledger and its cached balance projection.

NO DICTIONARIES - All operations use strongly typed domain models.

The ledger is the single source of truth for credit balances. The account's
credit_balance is a cache that only changes in the same transaction as the
ledger entry that justifies it.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.db.atomic import run_atomic
from fable_ledger.db.models import Account, LedgerEntry, utc_now
from fable_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
)
from fable_ledger.models.domain import (
    AppendResult,
    BalanceReconciliation,
    LedgerEntryData,
    LedgerEntryIntent,
)
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics

logger = get_logger(__name__)


def entry_to_domain(entry: LedgerEntry) -> LedgerEntryData:
    """Convert ORM ledger entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        user_id=entry.user_id,
        amount=entry.amount,
        reason=entry.reason,
        external_ref=entry.external_ref,
        description=entry.description,
        balance_after=entry.balance_after,
        created_at=entry.created_at,
    )


class BalanceProjector:
    """
    Maintains the cached per-account credit balance.

    A projection whose balance_projected_at is NULL has never been derived
    from the ledger and is recomputed before it is trusted.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def ensure_account(
        self,
        user_id: str,
        email: str | None = None,
        display_name: str | None = None,
    ) -> bool:
        """
        Create a zero-balance account if none exists.

        Returns True when this call created the account.
        """

        async def _ensure() -> bool:
            return await self.ensure_account_in_transaction(user_id, email, display_name)

        return await run_atomic(self.session, "ensure_account", _ensure)

    async def ensure_account_in_transaction(
        self,
        user_id: str,
        email: str | None = None,
        display_name: str | None = None,
    ) -> bool:
        """Get-or-create the account row inside the caller's transaction."""
        now = utc_now()
        stmt = (
            pg_insert(Account)
            .values(
                user_id=user_id,
                email=email,
                display_name=display_name,
                credit_balance=0,
                balance_projected_at=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[Account.user_id])
            .returning(Account.user_id)
        )
        result = await self.session.execute(stmt)
        created = result.scalar_one_or_none() is not None
        if created:
            logger.info("account_created", user_id=user_id)
        return created

    async def account_exists(self, user_id: str) -> bool:
        """Check whether an account exists."""
        return await self._find_account(user_id) is not None

    async def get_balance(self, user_id: str) -> int:
        """
        Get the user's credit balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        if account.balance_projected_at is None:
            logger.info("balance_projection_stale", user_id=user_id)
            reconciliation = await self.recompute(user_id)
            return reconciliation.recomputed_balance

        return account.credit_balance

    async def recompute(self, user_id: str) -> BalanceReconciliation:
        """
        Recompute the cached balance from the ledger sum.

        Raises:
            AccountNotFoundError: Account doesn't exist
            DataIntegrityError: Ledger sums to a negative balance
        """

        async def _recompute() -> BalanceReconciliation:
            account = await self._lock_account_for_update(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            previous = account.credit_balance
            recomputed = await ledger_sum(self.session, user_id)
            if recomputed < 0:
                raise DataIntegrityError(f"Ledger for {user_id} sums to {recomputed}")

            account.credit_balance = recomputed
            account.balance_projected_at = utc_now()
            await self.session.flush()
            return BalanceReconciliation(
                user_id=user_id, previous_balance=previous, recomputed_balance=recomputed
            )

        reconciliation = await run_atomic(self.session, "recompute_balance", _recompute)

        metrics.record_recomputation(reconciliation.drift)
        log = logger.warning if reconciliation.drift else logger.info
        log(
            "balance_recomputed",
            user_id=user_id,
            previous_balance=reconciliation.previous_balance,
            recomputed_balance=reconciliation.recomputed_balance,
            drift=reconciliation.drift,
        )
        return reconciliation

    async def balance_in_transaction(self, user_id: str) -> int:
        """Read the balance under the account lock inside the caller's transaction."""
        account = await self._lock_account_for_update(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        await self.refresh_if_stale(account)
        return account.credit_balance

    async def refresh_if_stale(self, account: Account) -> None:
        """Rebuild a never-projected balance from the ledger; account must be locked."""
        if account.balance_projected_at is not None:
            return
        account.credit_balance = await ledger_sum(self.session, account.user_id)
        account.balance_projected_at = utc_now()

    def apply_delta(self, account: Account, amount: int, projected_at: datetime) -> int:
        """
        Move the cached balance by a ledger entry's amount.

        Only called by LedgerStore with the account row locked, in the same
        transaction that inserts the entry.
        """
        account.credit_balance = account.credit_balance + amount
        account.balance_projected_at = projected_at
        return account.credit_balance

    async def _find_account(self, user_id: str) -> Account | None:
        """Find account by user id."""
        stmt = select(Account).where(Account.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, user_id: str) -> Account | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        return await lock_account_for_update(self.session, user_id)


class LedgerStore:
    """
    Append-only ledger of credit changes.

    Entries are never updated or deleted. Appends for one user are
    serialized by the account row lock.
    """

    def __init__(self, session: AsyncSession, projector: BalanceProjector | None = None) -> None:
        self.session = session
        self.projector = projector or BalanceProjector(session)

    async def append(self, intent: LedgerEntryIntent) -> AppendResult:
        """
        Append an entry in its own transaction.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InsufficientCreditsError: Debit exceeds the balance
        """

        async def _append() -> AppendResult:
            return await self.append_in_transaction(intent)

        return await run_atomic(self.session, "ledger_append", _append)

    async def append_in_transaction(self, intent: LedgerEntryIntent) -> AppendResult:
        """
        Append an entry inside the caller's transaction.

        With an external_ref the append is idempotent: an existing entry for
        (user_id, external_ref) is returned with created=False and nothing is
        written.
        """
        account = await self._lock_account_for_update(intent.user_id)
        if account is None:
            raise AccountNotFoundError(intent.user_id)

        if intent.external_ref is not None:
            existing = await self._find_entry_by_external_ref(intent.user_id, intent.external_ref)
            if existing is not None:
                await self.projector.refresh_if_stale(account)
                metrics.record_ledger_entry(intent.reason.value, intent.amount, created=False)
                logger.info(
                    "ledger_entry_replayed",
                    user_id=intent.user_id,
                    entry_id=str(existing.id),
                    external_ref=intent.external_ref,
                )
                return AppendResult(
                    entry=entry_to_domain(existing),
                    created=False,
                    balance=account.credit_balance,
                )

        await self.projector.refresh_if_stale(account)

        balance_before = account.credit_balance
        balance_after = balance_before + intent.amount
        if balance_after < 0:
            raise InsufficientCreditsError(balance=balance_before, required=-intent.amount)

        now = utc_now()
        entry = LedgerEntry(
            id=uuid4(),
            user_id=intent.user_id,
            amount=intent.amount,
            reason=intent.reason,
            external_ref=intent.external_ref,
            description=intent.description,
            balance_after=balance_after,
            created_at=now,
        )
        self.session.add(entry)

        projected = self.projector.apply_delta(account, intent.amount, now)
        if projected != balance_after:
            raise DataIntegrityError(
                f"Balance mismatch: expected {balance_after}, got {projected}"
            )
        await self.session.flush()

        metrics.record_ledger_entry(intent.reason.value, intent.amount, created=True)
        logger.info(
            "ledger_entry_appended",
            user_id=intent.user_id,
            entry_id=str(entry.id),
            amount=intent.amount,
            reason=intent.reason.value,
            balance_after=balance_after,
        )
        return AppendResult(entry=entry_to_domain(entry), created=True, balance=balance_after)

    async def sum_for_user(self, user_id: str) -> int:
        """Sum of all ledger amounts for a user (0 when there are none)."""
        return await ledger_sum(self.session, user_id)

    async def list_for_user(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        """List a user's entries newest first, with the total entry count."""
        count_stmt = select(func.count()).select_from(LedgerEntry).where(
            LedgerEntry.user_id == user_id
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        entries = [entry_to_domain(e) for e in result.scalars().all()]
        return entries, int(total)

    async def _lock_account_for_update(self, user_id: str) -> Account | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        return await lock_account_for_update(self.session, user_id)

    async def _find_entry_by_external_ref(
        self, user_id: str, external_ref: str
    ) -> LedgerEntry | None:
        """Find entry by (user_id, external_ref)."""
        stmt = select(LedgerEntry).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.external_ref == external_ref,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


async def ledger_sum(session: AsyncSession, user_id: str) -> int:
    """SUM(amount) over a user's ledger entries."""
    stmt = select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
        LedgerEntry.user_id == user_id
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def lock_account_for_update(session: AsyncSession, user_id: str) -> Account | None:
    """Lock account row for update (SELECT FOR UPDATE), refreshing loaded state."""
    stmt = (
        select(Account)
        .where(Account.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
