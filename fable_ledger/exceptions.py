"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
Every error carries a stable code and whether the caller may retry.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    code = "ledger_error"
    retryable = False


class UnauthenticatedError(LedgerError):
    """Raised when no valid principal can be resolved."""

    code = "unauthenticated"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AdminRequiredError(LedgerError):
    """Raised when an authenticated user lacks admin rights."""

    code = "admin_required"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} is not an admin")


class ResourceNotFoundError(LedgerError):
    """Raised when a referenced account, contest or submission doesn't exist."""

    code = "not_found"

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class AccountNotFoundError(ResourceNotFoundError):
    """Raised when account doesn't exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("Account", user_id)


class ContestNotFoundError(ResourceNotFoundError):
    """Raised when contest doesn't exist."""

    def __init__(self, contest_id: str) -> None:
        self.contest_id = contest_id
        super().__init__("Contest", contest_id)


class SubmissionNotFoundError(ResourceNotFoundError):
    """Raised when submission doesn't exist in the contest."""

    def __init__(self, submission_id: str) -> None:
        self.submission_id = submission_id
        super().__init__("Submission", submission_id)


class PackageNotFoundError(ResourceNotFoundError):
    """Raised when a credit or vote package id is unknown."""

    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__("Package", package_id)


class AllowanceExhaustedError(LedgerError):
    """Raised when the vote tier allowance is zero."""

    code = "allowance_exhausted"

    def __init__(self, user_id: str, contest_id: str, tier: str) -> None:
        self.user_id = user_id
        self.contest_id = contest_id
        self.tier = tier
        super().__init__(f"No {tier} votes remaining for contest {contest_id}")


class ContestNotVotableError(LedgerError):
    """Raised when the contest is outside its voting window."""

    code = "contest_not_votable"

    def __init__(self, contest_id: str, reason: str) -> None:
        self.contest_id = contest_id
        self.reason = reason
        super().__init__(f"Contest {contest_id} is not open for voting: {reason}")


class DailyVoteAlreadyClaimedError(LedgerError):
    """Raised when the daily free vote was already claimed today."""

    code = "daily_vote_already_claimed"

    def __init__(self, user_id: str, contest_id: str) -> None:
        self.user_id = user_id
        self.contest_id = contest_id
        super().__init__(f"Daily vote already claimed today for contest {contest_id}")


class InsufficientCreditsError(LedgerError):
    """Raised when a debit would take the balance below zero."""

    code = "insufficient_credits"

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class PaymentNotConfirmedError(LedgerError):
    """Raised when settlement is attempted before the processor confirms payment."""

    code = "payment_not_confirmed"

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Payment {session_id} not confirmed: {reason}")


class StorageConflictError(LedgerError):
    """Raised when an atomic write lost a race or the store reported a transient conflict."""

    code = "storage_conflict"
    retryable = True

    def __init__(self, operation: str, attempts: int = 1) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Storage conflict in {operation} after {attempts} attempt(s)")


class OperationTimeoutError(LedgerError):
    """Raised when an operation exceeded its deadline; its effect is unknown until verified."""

    code = "operation_timeout"
    retryable = True

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation {operation} timed out after {timeout_seconds}s")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    code = "data_integrity"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class PaymentProviderError(LedgerError):
    """Raised when payment provider operation fails."""

    code = "payment_provider_error"
    retryable = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(LedgerError):
    """Raised when webhook verification fails."""

    code = "webhook_verification_failed"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
