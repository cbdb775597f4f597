"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fable_ledger.models.api import LedgerReason, VoteTier


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str, length: int) -> SQLEnum:
    """String-backed enum column storing the enum values."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Account(Base):
    """
    ORM model for accounts table.

    credit_balance is a cached projection of the ledger; the ledger is the
    source of truth.
    """

    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # NULL until the projection has been computed from (or kept in step with) the ledger
    balance_projected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_credit_balance_non_negative"),
        Index("idx_accounts_email", "email", postgresql_where=(email.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(user_id={self.user_id}, credit_balance={self.credit_balance})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only, immutable record of every balance change.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.user_id", ondelete="RESTRICT"), nullable=False
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[LedgerReason] = mapped_column(
        _enum_column(LedgerReason, "ledger_reason", 30), nullable=False
    )
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Balance snapshot (denormalized for auditing)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        UniqueConstraint("user_id", "external_ref", name="uq_ledger_user_external_ref"),
        Index("idx_ledger_entries_user_created", "user_id", "created_at"),
        Index("idx_ledger_entries_reason", "reason"),
        Index("idx_ledger_entries_user_reason", "user_id", "reason", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, reason={self.reason})>"
        )


class Contest(Base):
    """ORM model for contests table."""

    __tablename__ = "contests"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    voting_starts_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    voting_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'upcoming', 'submission', 'voting', 'ended', 'announced')",
            name="ck_contest_status",
        ),
        Index("idx_contests_status", "status"),
    )


class Submission(Base):
    """
    ORM model for submissions table.

    Vote counters are only changed by atomic increments.
    """

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    contest_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("contests.id", ondelete="RESTRICT"), nullable=False
    )
    author_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    votes_free: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    votes_premium: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    votes_super: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    votes_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    votes_weighted_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'disqualified')",
            name="ck_submission_status",
        ),
        CheckConstraint("votes_total >= 0", name="ck_submission_votes_total_non_negative"),
        CheckConstraint(
            "votes_weighted_total >= 0", name="ck_submission_weighted_total_non_negative"
        ),
        Index(
            "idx_submissions_contest_weighted",
            "contest_id",
            "votes_weighted_total",
        ),
    )


class VoteAllowanceRecord(Base):
    """
    ORM model for vote_allowances table.

    One row per (user, contest); created lazily with the default allotment.
    """

    __tablename__ = "vote_allowances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contest_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("contests.id", ondelete="RESTRICT"), nullable=False
    )

    free_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    premium_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    super_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    free_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    premium_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    super_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Daily claim tracking
    daily_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_claim_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    last_vote_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("free_remaining >= 0", name="ck_allowance_free_non_negative"),
        CheckConstraint("premium_remaining >= 0", name="ck_allowance_premium_non_negative"),
        CheckConstraint("super_remaining >= 0", name="ck_allowance_super_non_negative"),
        UniqueConstraint("user_id", "contest_id", name="uq_allowance_user_contest"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<VoteAllowanceRecord(user_id={self.user_id}, contest_id={self.contest_id}, "
            f"free={self.free_remaining}, premium={self.premium_remaining}, "
            f"super={self.super_remaining})>"
        )


class Vote(Base):
    """ORM model for votes table."""

    __tablename__ = "votes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contest_id: Mapped[str] = mapped_column(String(128), nullable=False)
    submission_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("submissions.id", ondelete="RESTRICT"), nullable=False
    )
    tier: Mapped[VoteTier] = mapped_column(_enum_column(VoteTier, "vote_tier", 10), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    cast_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("weight > 0", name="ck_vote_weight_positive"),
        Index("idx_votes_submission", "submission_id"),
        Index("idx_votes_user_contest", "user_id", "contest_id"),
    )


class ViewFingerprint(Base):
    """
    ORM model for view_fingerprints table.

    At most one row per (content, client, day); the primary key is the dedup gate.
    """

    __tablename__ = "view_fingerprints"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    content_id: Mapped[str] = mapped_column(String(128), nullable=False)
    view_day: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_view_fingerprints_day", "view_day"),)


class ViewCounter(Base):
    """ORM model for view_counters table."""

    __tablename__ = "view_counters"

    content_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    views: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("views >= 0", name="ck_view_counter_non_negative"),)


class PaymentSettlement(Base):
    """
    ORM model for payment_settlements table.

    One row per external payment session; its presence makes settlement a no-op.
    """

    __tablename__ = "payment_settlements"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ledger_entry_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("ledger_entries.id", ondelete="RESTRICT"), nullable=False
    )
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_settlement_credits_positive"),
        Index("idx_payment_settlements_user", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentSettlement(session_id={self.session_id}, user_id={self.user_id}, "
            f"credits={self.credits})>"
        )
