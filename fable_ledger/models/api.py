"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class VoteTier(str, Enum):
    """Vote category; each tier carries a fixed weight."""

    FREE = "free"
    PREMIUM = "premium"
    SUPER = "super"


class LedgerReason(str, Enum):
    """Why a ledger entry changed a balance."""

    PURCHASE = "purchase"
    VOTE_CAST = "vote-cast"
    VOTE_PACKAGE = "vote-package"
    UNLOCK = "unlock"
    ADMIN_GRANT = "admin-grant"
    ADMIN_CORRECTION = "admin-correction"


class ContestStatus(str, Enum):
    """Contest lifecycle phase."""

    DRAFT = "draft"
    UPCOMING = "upcoming"
    SUBMISSION = "submission"
    VOTING = "voting"
    ENDED = "ended"
    ANNOUNCED = "announced"


class SubmissionStatus(str, Enum):
    """Contest submission moderation status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISQUALIFIED = "disqualified"


class PaymentStatus(str, Enum):
    """Payment status as reported by the payment processor."""

    PAID = "paid"
    UNPAID = "unpaid"
    UNKNOWN = "unknown"


# ============================================================================
# Shared
# ============================================================================


class ErrorBody(BaseModel):
    """Error details in a failed response."""

    code: str
    message: str
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Discriminated failure response."""

    success: bool = False
    error: ErrorBody


class VoteAllowanceBody(BaseModel):
    """Remaining votes per tier."""

    free: int = Field(..., ge=0)
    premium: int = Field(..., ge=0)
    super: int = Field(..., ge=0)


# ============================================================================
# Voting Models
# ============================================================================


class CastVoteRequest(BaseModel):
    """POST /v1/contests/{contest_id}/votes request body."""

    submission_id: str = Field(..., min_length=1, max_length=128)
    tier: VoteTier = VoteTier.FREE


class CastVoteResponse(BaseModel):
    """POST /v1/contests/{contest_id}/votes response."""

    success: bool = True
    vote_id: UUID
    contest_id: str
    submission_id: str
    tier: VoteTier
    weight: int
    votes_remaining: VoteAllowanceBody
    submission_votes_total: int
    submission_weighted_total: int
    credits_spent: int = 0
    cast_at: str  # ISO 8601 timestamp


class VotesRemainingResponse(BaseModel):
    """GET /v1/contests/{contest_id}/votes/remaining response."""

    success: bool = True
    contest_id: str
    votes_remaining: VoteAllowanceBody


class DailyClaimResponse(BaseModel):
    """POST /v1/contests/{contest_id}/votes/daily-claim response."""

    success: bool = True
    votes_added: int
    bonus_votes: int
    streak: int
    votes_remaining: VoteAllowanceBody


class VotePackageRequest(BaseModel):
    """POST /v1/contests/{contest_id}/votes/packages request body."""

    package_id: str = Field(..., min_length=1, max_length=50)
    request_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Client-generated key; retries with the same key are applied once",
    )


class VotePackageResponse(BaseModel):
    """POST /v1/contests/{contest_id}/votes/packages response."""

    success: bool = True
    applied: bool
    package_id: str
    credits_spent: int
    new_balance: int
    votes_remaining: VoteAllowanceBody


class LeaderboardItem(BaseModel):
    """Single submission in a leaderboard."""

    rank: int
    submission_id: str
    title: str
    author_id: str
    votes: int
    weighted_votes: int
    views: int


class LeaderboardResponse(BaseModel):
    """GET /v1/contests/{contest_id}/leaderboard response."""

    success: bool = True
    contest_id: str
    submissions: list[LeaderboardItem]


# ============================================================================
# View Models
# ============================================================================


class RecordViewRequest(BaseModel):
    """POST /v1/views request body."""

    content_id: str = Field(..., min_length=1, max_length=128)


class RecordViewResponse(BaseModel):
    """POST /v1/views response."""

    success: bool = True
    counted: bool
    total_views: int


# ============================================================================
# Credit Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    success: bool = True
    user_id: str
    balance: int


class LedgerEntryItem(BaseModel):
    """Single ledger entry in a listing."""

    entry_id: UUID
    amount: int
    reason: LedgerReason
    external_ref: str | None
    description: str
    balance_after: int
    created_at: str


class LedgerListResponse(BaseModel):
    """Ledger history response."""

    success: bool = True
    user_id: str
    entries: list[LedgerEntryItem]
    total_count: int
    has_more: bool
    ledger_sum: int | None = None


class UnlockRequest(BaseModel):
    """POST /v1/unlocks request body."""

    content_id: str = Field(
        ..., min_length=1, max_length=200, description="Content being unlocked, e.g. series-1/episode-3"
    )


class UnlockResponse(BaseModel):
    """POST /v1/unlocks response."""

    success: bool = True
    unlocked: bool = Field(..., description="False when the content was already unlocked")
    content_id: str
    credits_spent: int
    new_balance: int
    ledger_entry_id: UUID
    unlocked_at: str


class UnlockedContentItem(BaseModel):
    """Single unlocked content item."""

    content_id: str
    credits_spent: int
    unlocked_at: str


class UnlockListResponse(BaseModel):
    """GET /v1/unlocks response."""

    success: bool = True
    user_id: str
    unlocked: list[UnlockedContentItem]
    total_count: int
    has_more: bool


class CreditPackageItem(BaseModel):
    """Credit package offered for purchase."""

    package_id: str
    name: str
    credits: int
    price_minor: int
    currency: str
    popular: bool
    description: str


class CreditPackagesResponse(BaseModel):
    """GET /v1/credits/packages response."""

    success: bool = True
    packages: list[CreditPackageItem]


class CheckoutRequest(BaseModel):
    """POST /v1/credits/checkout request body."""

    package_id: str = Field(..., min_length=1, max_length=50)


class CheckoutResponse(BaseModel):
    """POST /v1/credits/checkout response."""

    success: bool = True
    session_id: str
    checkout_url: str
    package_id: str
    credits: int
    price_minor: int


class SettlePaymentRequest(BaseModel):
    """POST /v1/credits/settle request body."""

    session_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v: str) -> str:
        """Reject mock session ids from the legacy client."""
        if v.startswith("mock_"):
            raise ValueError("mock session ids cannot be settled")
        return v


class SettlePaymentResponse(BaseModel):
    """POST /v1/credits/settle response."""

    success: bool = True
    applied: bool
    new_balance: int
    session_id: str
    credits: int
    ledger_entry_id: UUID


class WebhookResponse(BaseModel):
    """POST /v1/webhooks/stripe response."""

    success: bool = True
    received: bool = True
    event_type: str
    settled: bool = False


# ============================================================================
# Admin Models
# ============================================================================


# Largest credit change an admin can make in one entry
MAX_ADMIN_CREDIT_CHANGE = 1_000_000_000


class AdminGrantRequest(BaseModel):
    """POST /v1/admin/credits/grant request body."""

    user_id: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(..., gt=0, le=MAX_ADMIN_CREDIT_CHANGE)
    description: str = Field("Credits granted by admin", min_length=1, max_length=500)
    idempotency_key: str | None = Field(None, max_length=255)


class AdminCorrectionRequest(BaseModel):
    """POST /v1/admin/credits/correction request body."""

    user_id: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(
        ...,
        ge=-MAX_ADMIN_CREDIT_CHANGE,
        le=MAX_ADMIN_CREDIT_CHANGE,
        description="Signed correction; must not be zero",
    )
    description: str = Field(..., min_length=1, max_length=500)
    idempotency_key: str | None = Field(None, max_length=255)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        """Corrections must change the balance."""
        if v == 0:
            raise ValueError("amount cannot be zero")
        return v


class AdminLedgerEntryResponse(BaseModel):
    """Admin grant/correction response."""

    success: bool = True
    created: bool
    entry: LedgerEntryItem
    new_balance: int


class ReconcileResponse(BaseModel):
    """POST /v1/admin/accounts/{user_id}/reconcile response."""

    success: bool = True
    user_id: str
    previous_balance: int
    recomputed_balance: int
    drift: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
