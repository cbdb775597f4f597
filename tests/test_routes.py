"""
Tests for API Routes.

Endpoints are exercised through TestClient with the database, principal
and payment provider overridden; services are patched at the class.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

from fable_ledger.api.dependencies import get_payment_provider
from fable_ledger.config import settings
from fable_ledger.exceptions import (
    AllowanceExhaustedError,
    ContestNotFoundError,
    DailyVoteAlreadyClaimedError,
    InsufficientCreditsError,
    PaymentNotConfirmedError,
    StorageConflictError,
)
from fable_ledger.models.api import LedgerReason, PaymentStatus, VoteTier
from fable_ledger.models.domain import (
    DailyClaimResult,
    LeaderboardEntry,
    LedgerEntryData,
    SettlementResult,
    UnlockedContent,
    UnlockResult,
    ViewResult,
    VoteAllowance,
    VotePackageResult,
    VoteResult,
)
from fable_ledger.services.ledger import BalanceProjector, LedgerStore
from fable_ledger.services.payment_provider import (
    CheckoutSession,
    CheckoutSessionStatus,
    WebhookEvent,
)
from fable_ledger.services.settlement import PaymentSettlementReconciler
from fable_ledger.services.unlocks import ContentUnlocker
from fable_ledger.services.views import ViewDeduplicationGate
from fable_ledger.services.voting import LeaderboardService, VoteAdmissionController

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


def vote_result(tier: VoteTier = VoteTier.PREMIUM, weight: int = 2) -> VoteResult:
    return VoteResult(
        vote_id=uuid4(),
        user_id="user-123",
        contest_id="contest-1",
        submission_id="sub-1",
        tier=tier,
        weight=weight,
        votes_remaining=VoteAllowance(free=1, premium=4, super=0),
        submission_votes_total=10,
        submission_weighted_total=17,
        credits_spent=0,
        cast_at=NOW,
    )


def entry_data(amount: int = 100, balance_after: int = 100) -> LedgerEntryData:
    return LedgerEntryData(
        entry_id=uuid4(),
        user_id="user-123",
        amount=amount,
        reason=LedgerReason.PURCHASE,
        external_ref="cs_test_1",
        description="Purchased 100 credits",
        balance_after=balance_after,
        created_at=NOW,
    )


def use_provider(app, provider) -> None:
    app.dependency_overrides[get_payment_provider] = lambda: provider


# ============================================================================
# Voting
# ============================================================================


class TestCastVoteRoute:
    """POST /v1/contests/{contest_id}/votes"""

    def test_cast_vote(self, user_client):
        """A cast vote returns the weight and remaining allowance."""
        with patch.object(
            VoteAdmissionController, "cast_vote", new_callable=AsyncMock, return_value=vote_result()
        ) as mock_cast:
            response = user_client.post(
                "/v1/contests/contest-1/votes", json={"submission_id": "sub-1", "tier": "premium"}
            )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["weight"] == 2
        assert data["votes_remaining"] == {"free": 1, "premium": 4, "super": 0}
        assert data["submission_weighted_total"] == 17
        assert mock_cast.await_args.kwargs == {
            "user_id": "user-123",
            "contest_id": "contest-1",
            "submission_id": "sub-1",
            "tier": VoteTier.PREMIUM,
        }

    def test_tier_defaults_to_free(self, user_client):
        """Omitting the tier casts a free vote."""
        with patch.object(
            VoteAdmissionController,
            "cast_vote",
            new_callable=AsyncMock,
            return_value=vote_result(VoteTier.FREE, 1),
        ) as mock_cast:
            user_client.post("/v1/contests/contest-1/votes", json={"submission_id": "sub-1"})

        assert mock_cast.await_args.kwargs["tier"] == VoteTier.FREE

    def test_exhausted_allowance(self, user_client):
        """An exhausted tier is a 409 with a stable code."""
        with patch.object(
            VoteAdmissionController,
            "cast_vote",
            new_callable=AsyncMock,
            side_effect=AllowanceExhaustedError("user-123", "contest-1", "free"),
        ):
            response = user_client.post(
                "/v1/contests/contest-1/votes", json={"submission_id": "sub-1"}
            )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "allowance_exhausted"
        assert body["error"]["retryable"] is False

    def test_unknown_tier_rejected(self, user_client):
        """Unknown tiers fail validation."""
        response = user_client.post(
            "/v1/contests/contest-1/votes", json={"submission_id": "sub-1", "tier": "gold"}
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_requires_authentication(self, client):
        """Voting without a token is a 401."""
        response = client.post("/v1/contests/contest-1/votes", json={"submission_id": "sub-1"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_storage_conflict_is_retryable(self, user_client):
        """Exhausted conflict retries are a retryable 503."""
        with patch.object(
            VoteAdmissionController,
            "cast_vote",
            new_callable=AsyncMock,
            side_effect=StorageConflictError("cast_vote", 4),
        ):
            response = user_client.post(
                "/v1/contests/contest-1/votes", json={"submission_id": "sub-1"}
            )

        assert response.status_code == 503
        assert response.json()["error"]["retryable"] is True


class TestVoteAllowanceRoutes:
    """Votes remaining, daily claim and vote packages."""

    def test_votes_remaining(self, user_client):
        """Remaining votes are returned per tier."""
        with patch.object(
            VoteAdmissionController,
            "get_votes_remaining",
            new_callable=AsyncMock,
            return_value=VoteAllowance(free=1, premium=0, super=0),
        ):
            response = user_client.get("/v1/contests/contest-1/votes/remaining")

        assert response.status_code == 200
        assert response.json()["votes_remaining"] == {"free": 1, "premium": 0, "super": 0}

    def test_votes_remaining_unknown_contest(self, user_client):
        """Unknown contests are a 404."""
        with patch.object(
            VoteAdmissionController,
            "get_votes_remaining",
            new_callable=AsyncMock,
            side_effect=ContestNotFoundError("nope"),
        ):
            response = user_client.get("/v1/contests/nope/votes/remaining")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_daily_claim(self, user_client):
        """A daily claim reports the added votes and streak."""
        result = DailyClaimResult(
            votes_added=2,
            bonus_votes=1,
            streak=3,
            votes_remaining=VoteAllowance(free=2, premium=0, super=0),
        )
        with patch.object(
            VoteAdmissionController, "claim_daily_vote", new_callable=AsyncMock, return_value=result
        ):
            response = user_client.post("/v1/contests/contest-1/votes/daily-claim")

        assert response.status_code == 200
        assert response.json()["streak"] == 3
        assert response.json()["bonus_votes"] == 1

    def test_daily_claim_twice(self, user_client):
        """A second claim the same day is a 409."""
        with patch.object(
            VoteAdmissionController,
            "claim_daily_vote",
            new_callable=AsyncMock,
            side_effect=DailyVoteAlreadyClaimedError("user-123", "contest-1"),
        ):
            response = user_client.post("/v1/contests/contest-1/votes/daily-claim")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "daily_vote_already_claimed"

    def test_vote_package(self, user_client):
        """A package purchase returns the new balance and votes."""
        result = VotePackageResult(
            applied=True,
            package_id="pro",
            credits_spent=25,
            new_balance=75,
            votes_remaining=VoteAllowance(free=1, premium=10, super=1),
        )
        with patch.object(
            VoteAdmissionController,
            "purchase_vote_package",
            new_callable=AsyncMock,
            return_value=result,
        ) as mock_purchase:
            response = user_client.post(
                "/v1/contests/contest-1/votes/packages",
                json={"package_id": "pro", "request_id": "req-1"},
            )

        assert response.status_code == 200
        assert response.json()["new_balance"] == 75
        assert mock_purchase.await_args.kwargs["request_id"] == "req-1"

    def test_vote_package_insufficient_credits(self, user_client):
        """An unaffordable package is a 402."""
        with patch.object(
            VoteAdmissionController,
            "purchase_vote_package",
            new_callable=AsyncMock,
            side_effect=InsufficientCreditsError(balance=3, required=25),
        ):
            response = user_client.post(
                "/v1/contests/contest-1/votes/packages",
                json={"package_id": "pro", "request_id": "req-1"},
            )

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "insufficient_credits"

    def test_vote_package_requires_request_id(self, user_client):
        """request_id is mandatory."""
        response = user_client.post(
            "/v1/contests/contest-1/votes/packages", json={"package_id": "pro"}
        )

        assert response.status_code == 422


class TestLeaderboardRoute:
    """GET /v1/contests/{contest_id}/leaderboard"""

    def test_leaderboard_is_public(self, client):
        """The leaderboard needs no authentication."""
        entries = [
            LeaderboardEntry(
                rank=1,
                submission_id="sub-a",
                title="The Fox and the Lantern",
                author_id="author-1",
                votes=3,
                weighted_votes=7,
                views=12,
            )
        ]
        with patch.object(
            LeaderboardService, "leaderboard", new_callable=AsyncMock, return_value=entries
        ) as mock_board:
            response = client.get("/v1/contests/contest-1/leaderboard?limit=10")

        assert response.status_code == 200
        assert response.json()["submissions"][0]["weighted_votes"] == 7
        mock_board.assert_awaited_once_with("contest-1", limit=10)

    def test_limit_bounds(self, client):
        """limit outside 1..100 fails validation."""
        assert client.get("/v1/contests/contest-1/leaderboard?limit=0").status_code == 422
        assert client.get("/v1/contests/contest-1/leaderboard?limit=101").status_code == 422


# ============================================================================
# Views
# ============================================================================


class TestRecordViewRoute:
    """POST /v1/views"""

    def test_authenticated_view(self, user_client):
        """Authenticated viewers are identified by uid."""
        with patch.object(
            ViewDeduplicationGate,
            "record_view",
            new_callable=AsyncMock,
            return_value=ViewResult(counted=True, total_views=5),
        ) as mock_record:
            response = user_client.post("/v1/views", json={"content_id": "story-1"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "counted": True, "total_views": 5}
        mock_record.assert_awaited_once_with("story-1", "user:user-123")

    def test_anonymous_view_ignores_spoofed_forwarded_for(self, client):
        """Without trusted proxies, anonymous viewers are identified by the peer."""
        with patch.object(
            ViewDeduplicationGate,
            "record_view",
            new_callable=AsyncMock,
            return_value=ViewResult(counted=False, total_views=5),
        ) as mock_record:
            response = client.post(
                "/v1/views",
                json={"content_id": "story-1"},
                headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"},
            )

        assert response.status_code == 200
        assert response.json()["counted"] is False
        mock_record.assert_awaited_once_with("story-1", "testclient")

    def test_anonymous_view_behind_trusted_proxy(self, client):
        """Behind a trusted proxy, the hop it appended identifies the viewer."""
        with (
            patch.object(settings, "trusted_proxy_hops", 1),
            patch.object(
                ViewDeduplicationGate,
                "record_view",
                new_callable=AsyncMock,
                return_value=ViewResult(counted=True, total_views=1),
            ) as mock_record,
        ):
            response = client.post(
                "/v1/views",
                json={"content_id": "story-1"},
                headers={"X-Forwarded-For": "10.9.9.9, 203.0.113.5"},
            )

        assert response.status_code == 200
        mock_record.assert_awaited_once_with("story-1", "203.0.113.5")

    def test_missing_content_id(self, client):
        """content_id is required."""
        assert client.post("/v1/views", json={}).status_code == 422


# ============================================================================
# Credits
# ============================================================================


class TestCreditRoutes:
    """Balance, history and packages."""

    def test_balance(self, user_client):
        """Balance ensures the account and returns its balance."""
        with (
            patch.object(
                BalanceProjector, "ensure_account", new_callable=AsyncMock, return_value=False
            ) as mock_ensure,
            patch.object(BalanceProjector, "get_balance", new_callable=AsyncMock, return_value=250),
        ):
            response = user_client.get("/v1/credits/balance")

        assert response.status_code == 200
        assert response.json() == {"success": True, "user_id": "user-123", "balance": 250}
        mock_ensure.assert_awaited_once_with("user-123", "reader@example.com", "Test Reader")

    def test_transactions(self, user_client):
        """History pages report whether more entries exist."""
        with patch.object(
            LedgerStore,
            "list_for_user",
            new_callable=AsyncMock,
            return_value=([entry_data()], 3),
        ) as mock_list:
            response = user_client.get("/v1/credits/transactions?limit=1&offset=0")

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 3
        assert data["has_more"] is True
        assert data["entries"][0]["reason"] == "purchase"
        assert data["ledger_sum"] is None
        mock_list.assert_awaited_once_with("user-123", limit=1, offset=0)

    def test_transactions_last_page(self, user_client):
        """The last page has no more entries."""
        with patch.object(
            LedgerStore, "list_for_user", new_callable=AsyncMock, return_value=([entry_data()], 3)
        ):
            response = user_client.get("/v1/credits/transactions?limit=1&offset=2")

        assert response.json()["has_more"] is False

    def test_packages(self, client):
        """Credit packages are public."""
        response = client.get("/v1/credits/packages")

        assert response.status_code == 200
        packages = response.json()["packages"]
        assert [p["package_id"] for p in packages] == ["starter", "popular", "premium"]
        assert sum(1 for p in packages if p["popular"]) == 1


class TestCheckoutRoute:
    """POST /v1/credits/checkout"""

    def test_checkout(self, app, user_client):
        """Checkout creates a provider session for the package."""
        provider = AsyncMock()
        provider.create_checkout_session = AsyncMock(
            return_value=CheckoutSession(session_id="cs_test_1", checkout_url="https://pay/cs_test_1")
        )
        use_provider(app, provider)

        with patch.object(BalanceProjector, "ensure_account", new_callable=AsyncMock):
            response = user_client.post("/v1/credits/checkout", json={"package_id": "popular"})

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "cs_test_1"
        assert data["credits"] == 100
        assert data["price_minor"] == 999
        intent = provider.create_checkout_session.await_args.args[0]
        assert intent.user_id == "user-123"
        assert intent.credits == 100

    def test_unknown_package(self, app, user_client):
        """Unknown packages are a 404."""
        use_provider(app, AsyncMock())

        response = user_client.post("/v1/credits/checkout", json={"package_id": "mega"})

        assert response.status_code == 404


class TestSettleRoute:
    """POST /v1/credits/settle"""

    def test_settle(self, app, user_client):
        """A paid session is settled for the caller."""
        use_provider(app, AsyncMock())
        result = SettlementResult(
            applied=True,
            new_balance=100,
            session_id="cs_test_1",
            credits=100,
            ledger_entry_id=uuid4(),
        )
        with patch.object(
            PaymentSettlementReconciler,
            "settle_from_provider",
            new_callable=AsyncMock,
            return_value=result,
        ) as mock_settle:
            response = user_client.post("/v1/credits/settle", json={"session_id": "cs_test_1"})

        assert response.status_code == 200
        assert response.json()["applied"] is True
        mock_settle.assert_awaited_once_with("user-123", "cs_test_1")

    def test_unpaid(self, app, user_client):
        """An unpaid session is a 402."""
        use_provider(app, AsyncMock())
        with patch.object(
            PaymentSettlementReconciler,
            "settle_from_provider",
            new_callable=AsyncMock,
            side_effect=PaymentNotConfirmedError("cs_test_1", "payment status is unpaid"),
        ):
            response = user_client.post("/v1/credits/settle", json={"session_id": "cs_test_1"})

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "payment_not_confirmed"

    def test_mock_session_rejected(self, app, user_client):
        """Mock session ids fail validation."""
        use_provider(app, AsyncMock())

        response = user_client.post("/v1/credits/settle", json={"session_id": "mock_123"})

        assert response.status_code == 422


class TestStripeWebhookRoute:
    """POST /v1/webhooks/stripe"""

    def completed_event(self, event_type: str = "checkout.session.completed") -> WebhookEvent:
        return WebhookEvent(
            event_id="evt_1",
            event_type=event_type,
            session=CheckoutSessionStatus(
                session_id="cs_test_1",
                payment_status=PaymentStatus.PAID,
                user_id="user-123",
                package_id="popular",
                credits=100,
            ),
        )

    def test_missing_signature(self, app, client):
        """Webhooks without a signature are a 400."""
        use_provider(app, AsyncMock())

        response = client.post("/v1/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "webhook_verification_failed"

    def test_completed_checkout_settles(self, app, client):
        """checkout.session.completed settles the session."""
        provider = AsyncMock()
        provider.verify_webhook = AsyncMock(return_value=self.completed_event())
        use_provider(app, provider)
        result = SettlementResult(
            applied=True,
            new_balance=100,
            session_id="cs_test_1",
            credits=100,
            ledger_entry_id=uuid4(),
        )

        with patch.object(
            PaymentSettlementReconciler,
            "settle_verified",
            new_callable=AsyncMock,
            return_value=result,
        ):
            response = client.post(
                "/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=sig"}
            )

        assert response.status_code == 200
        assert response.json()["settled"] is True
        provider.verify_webhook.assert_awaited_once_with(b"{}", "t=1,v1=sig")

    def test_unpaid_checkout_acknowledged(self, app, client):
        """A completed checkout awaiting funds is acknowledged and deferred."""
        provider = AsyncMock()
        provider.verify_webhook = AsyncMock(return_value=self.completed_event())
        use_provider(app, provider)

        with patch.object(
            PaymentSettlementReconciler,
            "settle_verified",
            new_callable=AsyncMock,
            side_effect=PaymentNotConfirmedError("cs_test_1", "payment status is unpaid"),
        ):
            response = client.post(
                "/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=sig"}
            )

        assert response.status_code == 200
        assert response.json()["settled"] is False

    def test_async_payment_succeeded_settles(self, app, client):
        """A delayed payment that clears later settles the deferred session."""
        provider = AsyncMock()
        provider.verify_webhook = AsyncMock(
            return_value=self.completed_event("checkout.session.async_payment_succeeded")
        )
        use_provider(app, provider)
        result = SettlementResult(
            applied=True,
            new_balance=100,
            session_id="cs_test_1",
            credits=100,
            ledger_entry_id=uuid4(),
        )

        with patch.object(
            PaymentSettlementReconciler,
            "settle_verified",
            new_callable=AsyncMock,
            return_value=result,
        ) as mock_settle:
            response = client.post(
                "/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=sig"}
            )

        assert response.status_code == 200
        assert response.json()["settled"] is True
        assert mock_settle.await_args.args[0].session_id == "cs_test_1"

    def test_other_events_acknowledged(self, app, client):
        """Unhandled event types are acknowledged without settling."""
        provider = AsyncMock()
        provider.verify_webhook = AsyncMock(
            return_value=WebhookEvent(event_id="evt_2", event_type="charge.refunded", session=None)
        )
        use_provider(app, provider)

        with patch.object(
            PaymentSettlementReconciler, "settle_verified", new_callable=AsyncMock
        ) as mock_settle:
            response = client.post(
                "/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=sig"}
            )

        assert response.status_code == 200
        assert response.json()["event_type"] == "charge.refunded"
        mock_settle.assert_not_awaited()


# ============================================================================
# Unlocks
# ============================================================================


class TestUnlockRoutes:
    """POST/GET /v1/unlocks"""

    def unlock_result(self, unlocked: bool = True) -> UnlockResult:
        return UnlockResult(
            unlocked=unlocked,
            content_id="series-1/episode-3",
            credits_spent=1,
            new_balance=99,
            ledger_entry_id=uuid4(),
            unlocked_at=NOW,
        )

    def test_unlock(self, user_client):
        """Unlocking charges the configured cost for the caller."""
        with (
            patch.object(BalanceProjector, "ensure_account", new_callable=AsyncMock),
            patch.object(
                ContentUnlocker,
                "unlock_content",
                new_callable=AsyncMock,
                return_value=self.unlock_result(),
            ) as mock_unlock,
        ):
            response = user_client.post("/v1/unlocks", json={"content_id": "series-1/episode-3"})

        assert response.status_code == 200
        data = response.json()
        assert data["unlocked"] is True
        assert data["new_balance"] == 99
        mock_unlock.assert_awaited_once_with(
            "user-123", "series-1/episode-3", settings.unlock_credit_cost
        )

    def test_already_unlocked(self, user_client):
        """Owned content is reported without a charge."""
        with (
            patch.object(BalanceProjector, "ensure_account", new_callable=AsyncMock),
            patch.object(
                ContentUnlocker,
                "unlock_content",
                new_callable=AsyncMock,
                return_value=self.unlock_result(unlocked=False),
            ),
        ):
            response = user_client.post("/v1/unlocks", json={"content_id": "series-1/episode-3"})

        assert response.status_code == 200
        assert response.json()["unlocked"] is False

    def test_insufficient_credits(self, user_client):
        """Unaffordable unlocks are a 402."""
        with (
            patch.object(BalanceProjector, "ensure_account", new_callable=AsyncMock),
            patch.object(
                ContentUnlocker,
                "unlock_content",
                new_callable=AsyncMock,
                side_effect=InsufficientCreditsError(balance=0, required=1),
            ),
        ):
            response = user_client.post("/v1/unlocks", json={"content_id": "series-1/episode-3"})

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "insufficient_credits"

    def test_cost_not_client_controlled(self, user_client):
        """A cost in the request body is ignored."""
        with (
            patch.object(BalanceProjector, "ensure_account", new_callable=AsyncMock),
            patch.object(
                ContentUnlocker,
                "unlock_content",
                new_callable=AsyncMock,
                return_value=self.unlock_result(),
            ) as mock_unlock,
        ):
            user_client.post(
                "/v1/unlocks", json={"content_id": "series-1/episode-3", "credit_cost": 0}
            )

        assert mock_unlock.await_args.args[2] == settings.unlock_credit_cost

    def test_requires_authentication(self, client):
        """Unlocking without a token is a 401."""
        assert client.post("/v1/unlocks", json={"content_id": "x"}).status_code == 401

    def test_list_unlocked(self, user_client):
        """Unlocked content is listed for the caller."""
        unlocked = [UnlockedContent(content_id="series-1/episode-3", credits_spent=1, unlocked_at=NOW)]
        with patch.object(
            ContentUnlocker,
            "list_unlocked",
            new_callable=AsyncMock,
            return_value=(unlocked, 1),
        ):
            response = user_client.get("/v1/unlocks")

        assert response.status_code == 200
        data = response.json()
        assert data["unlocked"][0]["content_id"] == "series-1/episode-3"
        assert data["total_count"] == 1
        assert data["has_more"] is False


# ============================================================================
# Health
# ============================================================================


class TestHealthRoute:
    """GET /health"""

    def test_healthy(self, user_client):
        """A reachable database is healthy."""
        response = user_client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, user_client, db_session):
        """An unreachable database is a 503."""
        db_session.execute = AsyncMock(side_effect=ConnectionError("refused"))

        response = user_client.get("/health")

        assert response.status_code == 503
