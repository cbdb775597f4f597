"""
Content Unlocks - spends credits to unlock content, once per user and content.

NO DICTIONARIES - All operations use strongly typed domain models.

An unlock is a ledger debit keyed by the content id, so a repeated unlock
replays the original entry instead of charging again.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.db.atomic import run_atomic
from fable_ledger.db.models import LedgerEntry
from fable_ledger.exceptions import LedgerError
from fable_ledger.models.api import LedgerReason
from fable_ledger.models.domain import LedgerEntryIntent, UnlockedContent, UnlockResult
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics
from fable_ledger.services.ledger import LedgerStore

logger = get_logger(__name__)

UNLOCK_REF_PREFIX = "unlock:"


def unlock_ref(content_id: str) -> str:
    """Ledger external_ref identifying a user's unlock of content_id."""
    return f"{UNLOCK_REF_PREFIX}{content_id}"


class ContentUnlocker:
    """Debits credits for content unlocks through the ledger."""

    def __init__(self, session: AsyncSession, ledger: LedgerStore | None = None) -> None:
        self.session = session
        self.ledger = ledger or LedgerStore(session)

    async def unlock_content(self, user_id: str, content_id: str, cost: int) -> UnlockResult:
        """
        Unlock content for a user by spending cost credits.

        Unlocking content the user already owns returns the original unlock
        with unlocked=False and charges nothing, even if the balance has
        since dropped below cost.

        Raises:
            InsufficientCreditsError: Balance doesn't cover cost
        """
        if not content_id:
            raise ValueError("content_id cannot be empty")
        if cost <= 0:
            raise ValueError("cost must be positive")

        async def _unlock() -> UnlockResult:
            await self.ledger.projector.ensure_account_in_transaction(user_id)
            appended = await self.ledger.append_in_transaction(
                LedgerEntryIntent(
                    user_id=user_id,
                    amount=-cost,
                    reason=LedgerReason.UNLOCK,
                    description=f"Unlocked {content_id}",
                    external_ref=unlock_ref(content_id),
                )
            )
            return UnlockResult(
                unlocked=appended.created,
                content_id=content_id,
                credits_spent=-appended.entry.amount,
                new_balance=appended.balance,
                ledger_entry_id=appended.entry.entry_id,
                unlocked_at=appended.entry.created_at,
            )

        try:
            result = await run_atomic(self.session, "unlock_content", _unlock)
        except LedgerError as e:
            metrics.record_unlock(e.code)
            raise

        metrics.record_unlock("unlocked" if result.unlocked else "already_unlocked")
        logger.info(
            "content_unlocked" if result.unlocked else "content_already_unlocked",
            user_id=user_id,
            content_id=content_id,
            credits_spent=result.credits_spent,
            new_balance=result.new_balance,
        )
        return result

    async def list_unlocked(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[UnlockedContent], int]:
        """List a user's unlocked content newest first, with the total count."""
        conditions = (
            LedgerEntry.user_id == user_id,
            LedgerEntry.reason == LedgerReason.UNLOCK,
        )
        count_stmt = select(func.count()).select_from(LedgerEntry).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        unlocked = [
            UnlockedContent(
                content_id=(entry.external_ref or "").removeprefix(UNLOCK_REF_PREFIX),
                credits_spent=-entry.amount,
                unlocked_at=entry.created_at,
            )
            for entry in result.scalars().all()
        ]
        return unlocked, int(total)
