"""
Voting Service - vote admission, daily claims, vote packages and leaderboards.

NO DICTIONARIES - All operations use strongly typed domain models.

A vote is admitted only when the user's allowance for the tier is positive.
The allowance decrement, the vote record, the submission tally and any
credit debit commit together or not at all.
"""

from datetime import date, datetime, timedelta
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.config import Settings, get_settings
from fable_ledger.db.atomic import run_atomic
from fable_ledger.db.models import (
    Contest,
    Submission,
    ViewCounter,
    Vote,
    VoteAllowanceRecord,
    utc_now,
)
from fable_ledger.exceptions import (
    AllowanceExhaustedError,
    ContestNotFoundError,
    ContestNotVotableError,
    DailyVoteAlreadyClaimedError,
    LedgerError,
    SubmissionNotFoundError,
)
from fable_ledger.models.api import (
    ContestStatus,
    LedgerReason,
    SubmissionStatus,
    VoteTier,
)
from fable_ledger.models.domain import (
    DailyClaimResult,
    LeaderboardEntry,
    LedgerEntryIntent,
    VoteAllowance,
    VotePackageResult,
    VoteResult,
)
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics
from fable_ledger.services.ledger import LedgerStore
from fable_ledger.services.packages import get_vote_package

logger = get_logger(__name__)

CLOSED_CONTEST_STATUSES = frozenset({ContestStatus.ENDED.value, ContestStatus.ANNOUNCED.value})


# ============================================================================
# Pure rules
# ============================================================================


def tier_weight(tier: VoteTier, config: Settings) -> int:
    """Weight a vote of this tier adds to a submission's weighted total."""
    weights = {
        VoteTier.FREE: config.vote_weight_free,
        VoteTier.PREMIUM: config.vote_weight_premium,
        VoteTier.SUPER: config.vote_weight_super,
    }
    return weights[tier]


def tier_cost(tier: VoteTier, config: Settings) -> int:
    """Credits debited for casting a vote of this tier."""
    costs = {
        VoteTier.FREE: config.vote_cost_free,
        VoteTier.PREMIUM: config.vote_cost_premium,
        VoteTier.SUPER: config.vote_cost_super,
    }
    return costs[tier]


def default_allowance(config: Settings) -> VoteAllowance:
    """Allotment a user starts with in a contest."""
    return VoteAllowance(
        free=config.default_free_votes,
        premium=config.default_premium_votes,
        super=config.default_super_votes,
    )


def ensure_votable(
    contest_id: str,
    status: str,
    voting_starts_at: datetime | None,
    voting_ends_at: datetime | None,
    now: datetime,
) -> None:
    """
    Raise unless the contest is in its voting phase and window.

    Raises:
        ContestNotVotableError: Contest is not accepting votes
    """
    if status != ContestStatus.VOTING.value:
        raise ContestNotVotableError(contest_id, f"status is {status}")
    if voting_starts_at is not None and now < voting_starts_at:
        raise ContestNotVotableError(contest_id, "voting has not started")
    if voting_ends_at is not None and now >= voting_ends_at:
        raise ContestNotVotableError(contest_id, "voting has ended")


def next_streak(last_claim_on: date | None, streak: int, today: date) -> int:
    """Streak after claiming today: grows on consecutive days, otherwise restarts at 1."""
    if last_claim_on is not None and last_claim_on == today - timedelta(days=1):
        return streak + 1
    return 1


def streak_bonus(streak: int, interval: int) -> int:
    """Bonus free votes earned on this streak day."""
    return 1 if streak > 0 and streak % interval == 0 else 0


def allowance_to_domain(record: VoteAllowanceRecord) -> VoteAllowance:
    """Convert ORM allowance record to domain model."""
    return VoteAllowance(
        free=record.free_remaining,
        premium=record.premium_remaining,
        super=record.super_remaining,
    )


# ============================================================================
# Vote admission
# ============================================================================


class VoteAdmissionController:
    """
    Admits votes against per-(user, contest) allowances.

    Allowance rows are created lazily with the default allotment and locked
    (SELECT FOR UPDATE) for every change.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or LedgerStore(session)
        self.config = config or get_settings()

    async def cast_vote(
        self, user_id: str, contest_id: str, submission_id: str, tier: VoteTier
    ) -> VoteResult:
        """
        Cast one vote of a tier for a submission.

        Raises:
            ContestNotFoundError: Contest doesn't exist
            ContestNotVotableError: Contest is outside its voting window
            SubmissionNotFoundError: Submission isn't an approved entry of the contest
            AllowanceExhaustedError: No votes of this tier remain
            InsufficientCreditsError: Tier has a credit cost the user can't cover
        """

        async def _cast() -> VoteResult:
            now = utc_now()

            contest = await self._find_contest(contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)
            ensure_votable(
                contest_id, contest.status, contest.voting_starts_at, contest.voting_ends_at, now
            )

            submission = await self._find_submission(contest_id, submission_id)
            if submission is None or submission.status != SubmissionStatus.APPROVED.value:
                raise SubmissionNotFoundError(submission_id)

            allowance = await self._lock_allowance_for_update(user_id, contest_id)
            if allowance_to_domain(allowance).remaining(tier) <= 0:
                raise AllowanceExhaustedError(user_id, contest_id, tier.value)

            self._consume(allowance, tier, now)

            weight = tier_weight(tier, self.config)
            vote = Vote(
                id=uuid4(),
                user_id=user_id,
                contest_id=contest_id,
                submission_id=submission_id,
                tier=tier,
                weight=weight,
                cast_at=now,
            )
            self.session.add(vote)
            await self.session.flush()

            tally = await self._increment_tally(contest_id, submission_id, tier, weight, now)
            if tally is None:
                raise SubmissionNotFoundError(submission_id)
            votes_total, weighted_total = tally

            credits_spent = tier_cost(tier, self.config)
            if credits_spent > 0:
                await self.ledger.projector.ensure_account_in_transaction(user_id)
                await self.ledger.append_in_transaction(
                    LedgerEntryIntent(
                        user_id=user_id,
                        amount=-credits_spent,
                        reason=LedgerReason.VOTE_CAST,
                        description=f"{tier.value.capitalize()} vote in contest {contest_id}",
                        external_ref=f"vote:{vote.id}",
                    )
                )

            return VoteResult(
                vote_id=vote.id,
                user_id=user_id,
                contest_id=contest_id,
                submission_id=submission_id,
                tier=tier,
                weight=weight,
                votes_remaining=allowance_to_domain(allowance),
                submission_votes_total=votes_total,
                submission_weighted_total=weighted_total,
                credits_spent=credits_spent,
                cast_at=now,
            )

        try:
            result = await run_atomic(self.session, "cast_vote", _cast)
        except LedgerError as e:
            metrics.record_vote(tier.value, e.code)
            logger.info(
                "vote_rejected",
                user_id=user_id,
                contest_id=contest_id,
                submission_id=submission_id,
                tier=tier.value,
                code=e.code,
            )
            raise

        metrics.record_vote(tier.value, "admitted")
        logger.info(
            "vote_cast",
            user_id=user_id,
            contest_id=contest_id,
            submission_id=submission_id,
            tier=tier.value,
            weight=result.weight,
            vote_id=str(result.vote_id),
        )
        return result

    async def get_votes_remaining(self, user_id: str, contest_id: str) -> VoteAllowance:
        """
        Remaining votes per tier; the default allotment when none recorded yet.

        Raises:
            ContestNotFoundError: Contest doesn't exist
        """
        contest = await self._find_contest(contest_id)
        if contest is None:
            raise ContestNotFoundError(contest_id)

        record = await self._find_allowance(user_id, contest_id)
        if record is None:
            return default_allowance(self.config)
        return allowance_to_domain(record)

    async def claim_daily_vote(self, user_id: str, contest_id: str) -> DailyClaimResult:
        """
        Claim the once-per-UTC-day free vote.

        Raises:
            ContestNotFoundError: Contest doesn't exist
            ContestNotVotableError: Contest is outside its voting window
            DailyVoteAlreadyClaimedError: Already claimed today
        """

        async def _claim() -> DailyClaimResult:
            now = utc_now()
            today = now.date()

            contest = await self._find_contest(contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)
            ensure_votable(
                contest_id, contest.status, contest.voting_starts_at, contest.voting_ends_at, now
            )

            allowance = await self._lock_allowance_for_update(user_id, contest_id)
            if allowance.last_daily_claim_on == today:
                raise DailyVoteAlreadyClaimedError(user_id, contest_id)

            streak = next_streak(allowance.last_daily_claim_on, allowance.daily_streak, today)
            bonus = streak_bonus(streak, self.config.daily_claim_bonus_interval)
            votes_added = 1 + bonus

            allowance.free_remaining = allowance.free_remaining + votes_added
            allowance.daily_streak = streak
            allowance.last_daily_claim_on = today
            allowance.updated_at = now
            await self.session.flush()

            return DailyClaimResult(
                votes_added=votes_added,
                bonus_votes=bonus,
                streak=streak,
                votes_remaining=allowance_to_domain(allowance),
            )

        try:
            result = await run_atomic(self.session, "claim_daily_vote", _claim)
        except LedgerError as e:
            metrics.record_daily_claim(e.code)
            raise

        metrics.record_daily_claim("claimed")
        logger.info(
            "daily_vote_claimed",
            user_id=user_id,
            contest_id=contest_id,
            streak=result.streak,
            bonus_votes=result.bonus_votes,
        )
        return result

    async def purchase_vote_package(
        self, user_id: str, contest_id: str, package_id: str, request_id: str
    ) -> VotePackageResult:
        """
        Buy a vote package for a contest with credits.

        Retries with the same request_id are applied once.

        Raises:
            PackageNotFoundError: Unknown package id
            ContestNotFoundError: Contest doesn't exist
            ContestNotVotableError: Contest has ended
            InsufficientCreditsError: Balance doesn't cover the package
        """
        package = get_vote_package(package_id)

        async def _purchase() -> VotePackageResult:
            contest = await self._find_contest(contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)
            if contest.status in CLOSED_CONTEST_STATUSES:
                raise ContestNotVotableError(contest_id, f"status is {contest.status}")

            await self.ledger.projector.ensure_account_in_transaction(user_id)
            allowance = await self._lock_allowance_for_update(user_id, contest_id)

            appended = await self.ledger.append_in_transaction(
                LedgerEntryIntent(
                    user_id=user_id,
                    amount=-package.credit_cost,
                    reason=LedgerReason.VOTE_PACKAGE,
                    description=f"{package.name} for contest {contest_id}",
                    external_ref=f"vote-package:{request_id}",
                )
            )
            if appended.created:
                allowance.premium_remaining = allowance.premium_remaining + package.premium_votes
                allowance.super_remaining = allowance.super_remaining + package.super_votes
                allowance.updated_at = utc_now()
                await self.session.flush()

            return VotePackageResult(
                applied=appended.created,
                package_id=package.package_id,
                credits_spent=package.credit_cost,
                new_balance=appended.balance,
                votes_remaining=allowance_to_domain(allowance),
            )

        result = await run_atomic(self.session, "purchase_vote_package", _purchase)

        logger.info(
            "vote_package_purchased" if result.applied else "vote_package_replayed",
            user_id=user_id,
            contest_id=contest_id,
            package_id=package_id,
            request_id=request_id,
            new_balance=result.new_balance,
        )
        return result

    # ========================================================================
    # Internals
    # ========================================================================

    def _consume(self, allowance: VoteAllowanceRecord, tier: VoteTier, now: datetime) -> None:
        """Move one vote of a tier from remaining to used."""
        if tier == VoteTier.FREE:
            allowance.free_remaining = allowance.free_remaining - 1
            allowance.free_used = allowance.free_used + 1
        elif tier == VoteTier.PREMIUM:
            allowance.premium_remaining = allowance.premium_remaining - 1
            allowance.premium_used = allowance.premium_used + 1
        else:
            allowance.super_remaining = allowance.super_remaining - 1
            allowance.super_used = allowance.super_used + 1
        allowance.last_vote_at = now
        allowance.updated_at = now

    async def _increment_tally(
        self,
        contest_id: str,
        submission_id: str,
        tier: VoteTier,
        weight: int,
        now: datetime,
    ) -> tuple[int, int] | None:
        """Atomically add one vote to the submission counters; None if the row is gone."""
        tier_column = {
            VoteTier.FREE: Submission.votes_free,
            VoteTier.PREMIUM: Submission.votes_premium,
            VoteTier.SUPER: Submission.votes_super,
        }[tier]
        stmt = (
            update(Submission)
            .where(Submission.id == submission_id, Submission.contest_id == contest_id)
            .values(
                {
                    tier_column: tier_column + 1,
                    Submission.votes_total: Submission.votes_total + 1,
                    Submission.votes_weighted_total: Submission.votes_weighted_total + weight,
                    Submission.updated_at: now,
                }
            )
            .returning(Submission.votes_total, Submission.votes_weighted_total)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    async def _lock_allowance_for_update(
        self, user_id: str, contest_id: str
    ) -> VoteAllowanceRecord:
        """Get-or-create the allowance row, then lock it (SELECT FOR UPDATE)."""
        now = utc_now()
        defaults = default_allowance(self.config)
        insert_stmt = (
            pg_insert(VoteAllowanceRecord)
            .values(
                id=uuid4(),
                user_id=user_id,
                contest_id=contest_id,
                free_remaining=defaults.free,
                premium_remaining=defaults.premium,
                super_remaining=defaults.super,
                free_used=0,
                premium_used=0,
                super_used=0,
                daily_streak=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[VoteAllowanceRecord.user_id, VoteAllowanceRecord.contest_id]
            )
        )
        await self.session.execute(insert_stmt)

        stmt = (
            select(VoteAllowanceRecord)
            .where(
                VoteAllowanceRecord.user_id == user_id,
                VoteAllowanceRecord.contest_id == contest_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def _find_allowance(self, user_id: str, contest_id: str) -> VoteAllowanceRecord | None:
        """Find allowance record without locking."""
        stmt = select(VoteAllowanceRecord).where(
            VoteAllowanceRecord.user_id == user_id,
            VoteAllowanceRecord.contest_id == contest_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_contest(self, contest_id: str) -> Contest | None:
        """Find contest by id."""
        return await find_contest(self.session, contest_id)

    async def _find_submission(self, contest_id: str, submission_id: str) -> Submission | None:
        """Find submission within a contest."""
        stmt = select(Submission).where(
            Submission.id == submission_id, Submission.contest_id == contest_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


# ============================================================================
# Leaderboard
# ============================================================================


class LeaderboardService:
    """Ranks a contest's approved submissions by weighted votes."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def leaderboard(self, contest_id: str, limit: int = 50) -> list[LeaderboardEntry]:
        """
        Approved submissions ordered by weighted total, then raw total.

        Raises:
            ContestNotFoundError: Contest doesn't exist
        """
        contest = await find_contest(self.session, contest_id)
        if contest is None:
            raise ContestNotFoundError(contest_id)

        stmt = (
            select(Submission, ViewCounter.views)
            .outerjoin(ViewCounter, ViewCounter.content_id == Submission.id)
            .where(
                Submission.contest_id == contest_id,
                Submission.status == SubmissionStatus.APPROVED.value,
            )
            .order_by(
                Submission.votes_weighted_total.desc(),
                Submission.votes_total.desc(),
                Submission.created_at.asc(),
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)

        return [
            LeaderboardEntry(
                rank=rank,
                submission_id=submission.id,
                title=submission.title,
                author_id=submission.author_id,
                votes=submission.votes_total,
                weighted_votes=submission.votes_weighted_total,
                views=int(views or 0),
            )
            for rank, (submission, views) in enumerate(result.all(), start=1)
        ]


async def find_contest(session: AsyncSession, contest_id: str) -> Contest | None:
    """Find contest by id."""
    stmt = select(Contest).where(Contest.id == contest_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
