"""
Tests for ContentUnlocker.

Unlocks debit credits once per user and content; repeated unlocks are free
replays and an unaffordable unlock writes nothing.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fable_ledger.exceptions import InsufficientCreditsError
from fable_ledger.models.api import LedgerReason
from fable_ledger.services.unlocks import ContentUnlocker, unlock_ref
from tests.conftest import create_mock_account, create_mock_entry, mock_result


class InMemoryUnlockLedger:
    """One account and its ledger entries kept in memory."""

    def __init__(self, db_session, balance: int) -> None:
        self.account = create_mock_account(credit_balance=balance)
        self.entries: list = []
        db_session.add = MagicMock(side_effect=self.entries.append)

    def wire(self, unlocker: ContentUnlocker) -> ContentUnlocker:
        async def find_entry(user_id, external_ref):
            for entry in self.entries:
                if entry.user_id == user_id and entry.external_ref == external_ref:
                    return entry
            return None

        unlocker.ledger._lock_account_for_update = AsyncMock(return_value=self.account)
        unlocker.ledger._find_entry_by_external_ref = find_entry
        unlocker.ledger.projector.ensure_account_in_transaction = AsyncMock(return_value=False)
        return unlocker


class TestUnlockContent:
    """Tests for spending credits on content."""

    async def test_first_unlock_debits_cost(self, db_session):
        """The first unlock appends an unlock debit keyed by the content id."""
        ledger = InMemoryUnlockLedger(db_session, balance=100)
        unlocker = ledger.wire(ContentUnlocker(db_session))

        result = await unlocker.unlock_content("user-123", "series-1/episode-3", 3)

        assert result.unlocked is True
        assert result.credits_spent == 3
        assert result.new_balance == 97
        assert ledger.account.credit_balance == 97
        entry = ledger.entries[0]
        assert entry.amount == -3
        assert entry.reason == LedgerReason.UNLOCK
        assert entry.external_ref == "unlock:series-1/episode-3"
        assert result.ledger_entry_id == entry.id
        db_session.commit.assert_awaited_once()

    async def test_repeat_unlock_charges_once(self, db_session):
        """Unlocking owned content replays the original unlock."""
        ledger = InMemoryUnlockLedger(db_session, balance=100)
        unlocker = ledger.wire(ContentUnlocker(db_session))

        first = await unlocker.unlock_content("user-123", "series-1/episode-3", 3)
        second = await unlocker.unlock_content("user-123", "series-1/episode-3", 3)

        assert second.unlocked is False
        assert second.ledger_entry_id == first.ledger_entry_id
        assert second.credits_spent == 3
        assert second.new_balance == 97
        assert len(ledger.entries) == 1

    async def test_owned_content_replays_with_empty_balance(self, db_session):
        """An owned unlock is still reported after the balance is spent."""
        ledger = InMemoryUnlockLedger(db_session, balance=3)
        unlocker = ledger.wire(ContentUnlocker(db_session))
        await unlocker.unlock_content("user-123", "series-1/episode-3", 3)

        result = await unlocker.unlock_content("user-123", "series-1/episode-3", 3)

        assert result.unlocked is False
        assert result.new_balance == 0

    async def test_each_content_charged_separately(self, db_session):
        """Different content ids are separate unlocks."""
        ledger = InMemoryUnlockLedger(db_session, balance=10)
        unlocker = ledger.wire(ContentUnlocker(db_session))

        await unlocker.unlock_content("user-123", "series-1/episode-1", 2)
        result = await unlocker.unlock_content("user-123", "series-1/episode-2", 2)

        assert result.unlocked is True
        assert result.new_balance == 6
        assert [e.external_ref for e in ledger.entries] == [
            "unlock:series-1/episode-1",
            "unlock:series-1/episode-2",
        ]

    async def test_insufficient_credits(self, db_session):
        """An unaffordable unlock writes nothing and rolls back."""
        ledger = InMemoryUnlockLedger(db_session, balance=2)
        unlocker = ledger.wire(ContentUnlocker(db_session))

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await unlocker.unlock_content("user-123", "series-1/episode-3", 3)

        assert exc_info.value.balance == 2
        assert exc_info.value.required == 3
        assert ledger.entries == []
        assert ledger.account.credit_balance == 2
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.parametrize("content_id,cost", [("", 1), ("series-1/episode-3", 0)])
    async def test_invalid_arguments(self, db_session, content_id, cost):
        """Content id and a positive cost are required."""
        with pytest.raises(ValueError):
            await ContentUnlocker(db_session).unlock_content("user-123", content_id, cost)


class TestListUnlocked:
    """Tests for listing unlocked content."""

    async def test_lists_content_ids(self, db_session):
        """Unlock entries are listed by content id with the total count."""
        entries = [
            create_mock_entry(
                amount=-3,
                reason=LedgerReason.UNLOCK,
                external_ref=unlock_ref("series-1/episode-2"),
                balance_after=94,
            ),
            create_mock_entry(
                amount=-3,
                reason=LedgerReason.UNLOCK,
                external_ref=unlock_ref("series-1/episode-1"),
                balance_after=97,
            ),
        ]
        db_session.execute = AsyncMock(
            side_effect=[mock_result(scalar=2), mock_result(scalars=entries)]
        )

        unlocked, total = await ContentUnlocker(db_session).list_unlocked("user-123")

        assert total == 2
        assert [u.content_id for u in unlocked] == ["series-1/episode-2", "series-1/episode-1"]
        assert [u.credits_spent for u in unlocked] == [3, 3]
