"""
Metrics Collection with Prometheus.

Exposes ledger, voting and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from fable_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    REASON = "reason"
    TIER = "tier"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Fable Ledger API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Ledger appends (by reason, created vs replayed)
    - Votes (by tier and outcome)
    - Settlements and views
    - Atomic units (duration, storage conflicts)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "fable_ledger_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "fable_ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "fable_ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "fable_ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_entries_total = Counter(
            "fable_ledger_entries_total",
            "Ledger appends by reason; created=False means idempotent replay",
            [MetricLabels.REASON, "created"],
        )

        self.ledger_credit_amount = Histogram(
            "fable_ledger_entry_amount_credits",
            "Absolute ledger entry amounts in credits",
            [MetricLabels.REASON],
            buckets=(1, 5, 10, 25, 50, 100, 200, 500, 1000, 5000),
        )

        self.balance_recomputations_total = Counter(
            "fable_ledger_balance_recomputations_total",
            "Balance projections recomputed from the ledger",
            ["drift"],
        )

        # ====================================================================
        # Voting Metrics
        # ====================================================================
        self.votes_total = Counter(
            "fable_ledger_votes_total",
            "Vote admission attempts by tier and outcome",
            [MetricLabels.TIER, MetricLabels.OUTCOME],
        )

        self.daily_claims_total = Counter(
            "fable_ledger_daily_claims_total",
            "Daily free-vote claims by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Settlement Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "fable_ledger_settlements_total",
            "Payment settlements by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Unlock Metrics
        # ====================================================================
        self.unlocks_total = Counter(
            "fable_ledger_unlocks_total",
            "Content unlock attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # View Metrics
        # ====================================================================
        self.views_total = Counter(
            "fable_ledger_views_total",
            "View submissions by whether they were counted",
            ["counted"],
        )

        # ====================================================================
        # Atomic Unit Metrics
        # ====================================================================
        self.atomic_duration_seconds = Histogram(
            "fable_ledger_atomic_duration_seconds",
            "Atomic unit duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.storage_conflicts_total = Counter(
            "fable_ledger_storage_conflicts_total",
            "Storage conflicts by operation",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "fable_ledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_ledger_entry(self, reason: str, amount: int, created: bool) -> None:
        """Record a ledger append."""
        self.ledger_entries_total.labels(reason=reason, created=str(created)).inc()
        if created:
            self.ledger_credit_amount.labels(reason=reason).observe(abs(amount))

    def record_recomputation(self, drift: int) -> None:
        """Record a balance recompute."""
        self.balance_recomputations_total.labels(drift=str(drift != 0)).inc()

    def record_vote(self, tier: str, outcome: str) -> None:
        """Record a vote admission attempt."""
        self.votes_total.labels(tier=tier, outcome=outcome).inc()

    def record_daily_claim(self, outcome: str) -> None:
        """Record a daily claim attempt."""
        self.daily_claims_total.labels(outcome=outcome).inc()

    def record_settlement(self, outcome: str) -> None:
        """Record a settlement attempt."""
        self.settlements_total.labels(outcome=outcome).inc()

    def record_unlock(self, outcome: str) -> None:
        """Record a content unlock attempt."""
        self.unlocks_total.labels(outcome=outcome).inc()

    def record_view(self, counted: bool) -> None:
        """Record a view submission."""
        self.views_total.labels(counted=str(counted)).inc()

    def record_atomic(self, operation: str, duration: float) -> None:
        """Record atomic unit duration."""
        self.atomic_duration_seconds.labels(operation=operation).observe(duration)

    def record_storage_conflict(self, operation: str) -> None:
        """Record a storage conflict."""
        self.storage_conflicts_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
