"""
API Routes - FastAPI endpoints for voting, views and credits.

NO DICTIONARIES - All requests/responses use Pydantic models.

Domain errors propagate to the application's LedgerError handler.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.api.dependencies import (
    get_client_identifier,
    get_payment_provider,
    get_principal,
)
from fable_ledger.config import settings
from fable_ledger.db.session import get_db
from fable_ledger.exceptions import PaymentNotConfirmedError, WebhookVerificationError
from fable_ledger.models.api import (
    BalanceResponse,
    CastVoteRequest,
    CastVoteResponse,
    CheckoutRequest,
    CheckoutResponse,
    CreditPackageItem,
    CreditPackagesResponse,
    DailyClaimResponse,
    HealthResponse,
    LeaderboardItem,
    LeaderboardResponse,
    LedgerEntryItem,
    LedgerListResponse,
    RecordViewRequest,
    RecordViewResponse,
    SettlePaymentRequest,
    SettlePaymentResponse,
    UnlockedContentItem,
    UnlockListResponse,
    UnlockRequest,
    UnlockResponse,
    VotePackageRequest,
    VotePackageResponse,
    VotesRemainingResponse,
    WebhookResponse,
)
from fable_ledger.models.domain import LedgerEntryData, Principal
from fable_ledger.observability.logging import get_logger
from fable_ledger.services.ledger import BalanceProjector, LedgerStore
from fable_ledger.services.packages import CREDIT_PACKAGES, get_credit_package
from fable_ledger.services.payment_provider import CheckoutIntent, PaymentProvider
from fable_ledger.services.settlement import PaymentSettlementReconciler
from fable_ledger.services.stripe_provider import SETTLEMENT_EVENTS
from fable_ledger.services.unlocks import ContentUnlocker
from fable_ledger.services.views import ViewDeduplicationGate
from fable_ledger.services.voting import LeaderboardService, VoteAdmissionController

logger = get_logger(__name__)

router = APIRouter()


def ledger_entry_item(entry: LedgerEntryData) -> LedgerEntryItem:
    """Convert domain ledger entry to API item."""
    return LedgerEntryItem(
        entry_id=entry.entry_id,
        amount=entry.amount,
        reason=entry.reason,
        external_ref=entry.external_ref,
        description=entry.description,
        balance_after=entry.balance_after,
        created_at=entry.created_at.isoformat(),
    )


# =============================================================================
# Voting
# =============================================================================


@router.post("/v1/contests/{contest_id}/votes", response_model=CastVoteResponse)
async def cast_vote(
    contest_id: str,
    request: CastVoteRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> CastVoteResponse:
    """Cast one vote of a tier for a contest submission."""
    controller = VoteAdmissionController(db)
    result = await controller.cast_vote(
        user_id=principal.user_id,
        contest_id=contest_id,
        submission_id=request.submission_id,
        tier=request.tier,
    )

    return CastVoteResponse(
        vote_id=result.vote_id,
        contest_id=result.contest_id,
        submission_id=result.submission_id,
        tier=result.tier,
        weight=result.weight,
        votes_remaining=result.votes_remaining.to_body(),
        submission_votes_total=result.submission_votes_total,
        submission_weighted_total=result.submission_weighted_total,
        credits_spent=result.credits_spent,
        cast_at=result.cast_at.isoformat(),
    )


@router.get(
    "/v1/contests/{contest_id}/votes/remaining", response_model=VotesRemainingResponse
)
async def get_votes_remaining(
    contest_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> VotesRemainingResponse:
    """Remaining votes per tier for the caller in a contest."""
    controller = VoteAdmissionController(db)
    allowance = await controller.get_votes_remaining(principal.user_id, contest_id)
    return VotesRemainingResponse(contest_id=contest_id, votes_remaining=allowance.to_body())


@router.post(
    "/v1/contests/{contest_id}/votes/daily-claim", response_model=DailyClaimResponse
)
async def claim_daily_vote(
    contest_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> DailyClaimResponse:
    """Claim today's free vote for a contest."""
    controller = VoteAdmissionController(db)
    result = await controller.claim_daily_vote(principal.user_id, contest_id)
    return DailyClaimResponse(
        votes_added=result.votes_added,
        bonus_votes=result.bonus_votes,
        streak=result.streak,
        votes_remaining=result.votes_remaining.to_body(),
    )


@router.post("/v1/contests/{contest_id}/votes/packages", response_model=VotePackageResponse)
async def purchase_vote_package(
    contest_id: str,
    request: VotePackageRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> VotePackageResponse:
    """Buy premium/super votes for a contest with credits."""
    controller = VoteAdmissionController(db)
    result = await controller.purchase_vote_package(
        user_id=principal.user_id,
        contest_id=contest_id,
        package_id=request.package_id,
        request_id=request.request_id,
    )
    return VotePackageResponse(
        applied=result.applied,
        package_id=result.package_id,
        credits_spent=result.credits_spent,
        new_balance=result.new_balance,
        votes_remaining=result.votes_remaining.to_body(),
    )


@router.get("/v1/contests/{contest_id}/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    contest_id: str,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> LeaderboardResponse:
    """Approved submissions ranked by weighted votes."""
    service = LeaderboardService(db)
    entries = await service.leaderboard(contest_id, limit=limit)
    return LeaderboardResponse(
        contest_id=contest_id,
        submissions=[
            LeaderboardItem(
                rank=e.rank,
                submission_id=e.submission_id,
                title=e.title,
                author_id=e.author_id,
                votes=e.votes,
                weighted_votes=e.weighted_votes,
                views=e.views,
            )
            for e in entries
        ],
    )


# =============================================================================
# Views
# =============================================================================


@router.post("/v1/views", response_model=RecordViewResponse)
async def record_view(
    request: RecordViewRequest,
    db: AsyncSession = Depends(get_db),
    client_id: str = Depends(get_client_identifier),
) -> RecordViewResponse:
    """Record a content view; repeated views from one client count once per day."""
    gate = ViewDeduplicationGate(db)
    result = await gate.record_view(request.content_id, client_id)
    return RecordViewResponse(counted=result.counted, total_views=result.total_views)


# =============================================================================
# Credits
# =============================================================================


@router.get("/v1/credits/balance", response_model=BalanceResponse)
async def get_balance(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> BalanceResponse:
    """Caller's credit balance."""
    projector = BalanceProjector(db)
    await projector.ensure_account(principal.user_id, principal.email, principal.name)
    balance = await projector.get_balance(principal.user_id)
    return BalanceResponse(user_id=principal.user_id, balance=balance)


@router.get("/v1/credits/transactions", response_model=LedgerListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> LedgerListResponse:
    """Caller's ledger history, newest first."""
    store = LedgerStore(db)
    entries, total = await store.list_for_user(principal.user_id, limit=limit, offset=offset)
    return LedgerListResponse(
        user_id=principal.user_id,
        entries=[ledger_entry_item(e) for e in entries],
        total_count=total,
        has_more=offset + len(entries) < total,
    )


@router.get("/v1/credits/packages", response_model=CreditPackagesResponse)
async def list_credit_packages() -> CreditPackagesResponse:
    """Credit packages available for purchase."""
    return CreditPackagesResponse(
        packages=[
            CreditPackageItem(
                package_id=p.package_id,
                name=p.name,
                credits=p.credits,
                price_minor=p.price_minor,
                currency=p.currency,
                popular=p.popular,
                description=p.description,
            )
            for p in CREDIT_PACKAGES.values()
        ]
    )


@router.post("/v1/credits/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutResponse:
    """Start a hosted checkout for a credit package."""
    package = get_credit_package(request.package_id)

    projector = BalanceProjector(db)
    await projector.ensure_account(principal.user_id, principal.email, principal.name)

    session = await provider.create_checkout_session(
        CheckoutIntent(
            user_id=principal.user_id,
            package_id=package.package_id,
            package_name=package.name,
            credits=package.credits,
            price_minor=package.price_minor,
            currency=package.currency,
            customer_email=principal.email,
        )
    )

    logger.info(
        "checkout_created",
        user_id=principal.user_id,
        package_id=package.package_id,
        session_id=session.session_id,
    )

    return CheckoutResponse(
        session_id=session.session_id,
        checkout_url=session.checkout_url,
        package_id=package.package_id,
        credits=package.credits,
        price_minor=package.price_minor,
    )


@router.post("/v1/credits/settle", response_model=SettlePaymentResponse)
async def settle_payment(
    request: SettlePaymentRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SettlePaymentResponse:
    """Apply a paid checkout session's credits; repeat calls are no-ops."""
    reconciler = PaymentSettlementReconciler(db, provider)
    result = await reconciler.settle_from_provider(principal.user_id, request.session_id)
    return SettlePaymentResponse(
        applied=result.applied,
        new_balance=result.new_balance,
        session_id=result.session_id,
        credits=result.credits,
        ledger_entry_id=result.ledger_entry_id,
    )


@router.post("/v1/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookResponse:
    """
    Stripe webhook receiver.

    checkout.session.completed and checkout.session.async_payment_succeeded
    settle the session; other events are acknowledged. A completed checkout
    whose delayed payment has not cleared is settled by the later
    async_payment_succeeded event.
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    payload = await request.body()
    event = await provider.verify_webhook(payload, signature)

    if event.event_type not in SETTLEMENT_EVENTS or event.session is None:
        logger.info("webhook_ignored", event_id=event.event_id, event_type=event.event_type)
        return WebhookResponse(event_type=event.event_type)

    reconciler = PaymentSettlementReconciler(db, provider)
    try:
        result = await reconciler.settle_verified(event.session)
    except PaymentNotConfirmedError as exc:
        # Delayed payment methods complete checkout before funds arrive
        logger.info(
            "webhook_settlement_deferred",
            event_id=event.event_id,
            session_id=exc.session_id,
            reason=exc.reason,
        )
        return WebhookResponse(event_type=event.event_type)

    return WebhookResponse(event_type=event.event_type, settled=result.applied)


# =============================================================================
# Unlocks
# =============================================================================


@router.post("/v1/unlocks", response_model=UnlockResponse)
async def unlock_content(
    request: UnlockRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> UnlockResponse:
    """Spend credits to unlock content; unlocking owned content charges nothing."""
    unlocker = ContentUnlocker(db)
    await unlocker.ledger.projector.ensure_account(
        principal.user_id, principal.email, principal.name
    )
    result = await unlocker.unlock_content(
        principal.user_id, request.content_id, settings.unlock_credit_cost
    )
    return UnlockResponse(
        unlocked=result.unlocked,
        content_id=result.content_id,
        credits_spent=result.credits_spent,
        new_balance=result.new_balance,
        ledger_entry_id=result.ledger_entry_id,
        unlocked_at=result.unlocked_at.isoformat(),
    )


@router.get("/v1/unlocks", response_model=UnlockListResponse)
async def list_unlocked_content(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> UnlockListResponse:
    """Content the caller has unlocked, newest first."""
    unlocker = ContentUnlocker(db)
    unlocked, total = await unlocker.list_unlocked(principal.user_id, limit=limit, offset=offset)
    return UnlockListResponse(
        user_id=principal.user_id,
        unlocked=[
            UnlockedContentItem(
                content_id=u.content_id,
                credits_spent=u.credits_spent,
                unlocked_at=u.unlocked_at.isoformat(),
            )
            for u in unlocked
        ],
        total_count=total,
        has_more=offset + len(unlocked) < total,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database disconnected",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
