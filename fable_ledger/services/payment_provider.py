"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from fable_ledger.models.api import PaymentStatus


@dataclass(frozen=True)
class CheckoutIntent:
    """
    Provider-agnostic checkout request.

    Represents a hosted checkout for one credit package.
    """

    user_id: str
    package_id: str
    package_name: str
    credits: int
    price_minor: int
    currency: str
    customer_email: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    """Created hosted checkout session."""

    session_id: str
    checkout_url: str


@dataclass(frozen=True)
class CheckoutSessionStatus:
    """
    Payment state of a checkout session as reported by the processor.

    user_id, package_id and credits come from the metadata attached when
    the session was created.
    """

    session_id: str
    payment_status: PaymentStatus
    user_id: str | None
    package_id: str | None
    credits: int | None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    session is set for checkout completion events.
    """

    event_id: str
    event_type: str
    session: CheckoutSessionStatus | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment processor must implement this interface so settlement stays
    provider-agnostic.
    """

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    async def get_session_status(self, session_id: str) -> CheckoutSessionStatus:
        """
        Get payment status of a checkout session.

        Raises:
            PaymentProviderError: If the processor cannot be reached
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
