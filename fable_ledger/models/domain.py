"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from fable_ledger.models.api import LedgerReason, VoteAllowanceBody, VoteTier


@dataclass(frozen=True)
class Principal:
    """Authenticated acting user, resolved once per request."""

    user_id: str
    email: str | None = None
    name: str | None = None
    is_admin: bool = False

    def __post_init__(self) -> None:
        """Validate principal."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class LedgerEntryIntent:
    """Domain model for a ledger entry before persistence - immutable intent."""

    user_id: str
    amount: int
    reason: LedgerReason
    description: str
    external_ref: str | None = None

    def __post_init__(self) -> None:
        """Validate ledger entry constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.amount == 0:
            raise ValueError("Ledger entry amount cannot be zero")
        if not isinstance(self.reason, LedgerReason):
            raise ValueError(f"Invalid ledger reason: {self.reason}")
        if not self.description:
            raise ValueError("Description cannot be empty")
        if self.external_ref is not None and not self.external_ref:
            raise ValueError("external_ref cannot be an empty string")


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    user_id: str
    amount: int
    reason: LedgerReason
    external_ref: str | None
    description: str
    balance_after: int
    created_at: datetime


@dataclass(frozen=True)
class AppendResult:
    """
    Outcome of a ledger append; created is False for an idempotent replay.

    balance is the account's balance after the call, which for a replay can
    differ from entry.balance_after.
    """

    entry: LedgerEntryData
    created: bool
    balance: int


@dataclass(frozen=True)
class BalanceReconciliation:
    """Cached balance compared with the ledger sum."""

    user_id: str
    previous_balance: int
    recomputed_balance: int

    @property
    def drift(self) -> int:
        """Difference the recompute corrected (ledger sum minus cached value)."""
        return self.recomputed_balance - self.previous_balance


@dataclass(frozen=True)
class VoteAllowance:
    """Remaining votes per tier for one user in one contest."""

    free: int
    premium: int
    super: int

    def __post_init__(self) -> None:
        """Validate allowance counts."""
        for tier in VoteTier:
            if self.remaining(tier) < 0:
                raise ValueError(f"Remaining {tier.value} votes cannot be negative")

    def remaining(self, tier: VoteTier) -> int:
        """Get remaining count for a tier."""
        return int(getattr(self, tier.value))

    def to_body(self) -> VoteAllowanceBody:
        """Convert to API body."""
        return VoteAllowanceBody(free=self.free, premium=self.premium, super=self.super)


@dataclass(frozen=True)
class VoteResult:
    """Outcome of an admitted vote."""

    vote_id: UUID
    user_id: str
    contest_id: str
    submission_id: str
    tier: VoteTier
    weight: int
    votes_remaining: VoteAllowance
    submission_votes_total: int
    submission_weighted_total: int
    credits_spent: int
    cast_at: datetime


@dataclass(frozen=True)
class DailyClaimResult:
    """Outcome of a daily free-vote claim."""

    votes_added: int
    bonus_votes: int
    streak: int
    votes_remaining: VoteAllowance


@dataclass(frozen=True)
class VotePackageResult:
    """Outcome of a vote package purchase."""

    applied: bool
    package_id: str
    credits_spent: int
    new_balance: int
    votes_remaining: VoteAllowance


@dataclass(frozen=True)
class LeaderboardEntry:
    """Submission standing in a contest."""

    rank: int
    submission_id: str
    title: str
    author_id: str
    votes: int
    weighted_votes: int
    views: int


@dataclass(frozen=True)
class UnlockResult:
    """Outcome of a content unlock; unlocked is True only for the call that paid."""

    unlocked: bool
    content_id: str
    credits_spent: int
    new_balance: int
    ledger_entry_id: UUID
    unlocked_at: datetime


@dataclass(frozen=True)
class UnlockedContent:
    """Content a user has paid for."""

    content_id: str
    credits_spent: int
    unlocked_at: datetime


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a payment settlement; applied is True exactly once per session."""

    applied: bool
    new_balance: int
    session_id: str
    credits: int
    ledger_entry_id: UUID


@dataclass(frozen=True)
class ViewResult:
    """Outcome of a view de-duplication check."""

    counted: bool
    total_views: int
