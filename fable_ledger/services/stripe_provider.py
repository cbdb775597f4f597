"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Any

import stripe

from fable_ledger.exceptions import PaymentProviderError, WebhookVerificationError
from fable_ledger.models.api import PaymentStatus
from fable_ledger.observability.logging import get_logger
from fable_ledger.services.payment_provider import (
    CheckoutIntent,
    CheckoutSession,
    CheckoutSessionStatus,
    WebhookEvent,
)

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"

# Events that carry a checkout session ready to settle
SETTLEMENT_EVENTS = frozenset({CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED})


def map_payment_status(value: str | None) -> PaymentStatus:
    """Map Stripe's checkout payment_status onto PaymentStatus."""
    if value == "paid":
        return PaymentStatus.PAID
    if value in ("unpaid", "no_payment_required"):
        return PaymentStatus.UNPAID
    return PaymentStatus.UNKNOWN


def _parse_credits(raw: Any) -> int | None:
    """Parse credits metadata; Stripe metadata values are strings."""
    if raw is None:
        return None
    try:
        credits = int(raw)
    except (TypeError, ValueError):
        return None
    return credits if credits > 0 else None


def session_to_status(session: Any) -> CheckoutSessionStatus:
    """Convert a Stripe Checkout Session object to CheckoutSessionStatus."""
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id") or session.get("client_reference_id")
    return CheckoutSessionStatus(
        session_id=session["id"],
        payment_status=map_payment_status(session.get("payment_status")),
        user_id=user_id or None,
        package_id=metadata.get("package_id") or None,
        credits=_parse_credits(metadata.get("credits")),
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol with Stripe Checkout Sessions.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            success_url: Redirect after payment; may contain {CHECKOUT_SESSION_ID}
            cancel_url: Redirect when the customer abandons checkout
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        stripe.api_key = api_key

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a Stripe Checkout Session for a credit package.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=intent.user_id,
                package_id=intent.package_id,
                price_minor=intent.price_minor,
            )

            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": intent.currency.lower(),
                            "product_data": {
                                "name": intent.package_name,
                                "description": f"{intent.credits} credits",
                            },
                            "unit_amount": intent.price_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                client_reference_id=intent.user_id,
                customer_email=intent.customer_email,
                metadata={
                    "user_id": intent.user_id,
                    "package_id": intent.package_id,
                    "credits": str(intent.credits),
                },
            )

            logger.info("stripe_checkout_session_created", session_id=session.id)

            return CheckoutSession(session_id=session.id, checkout_url=session.url or "")

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

    async def get_session_status(self, session_id: str) -> CheckoutSessionStatus:
        """
        Get current payment status of a Checkout Session from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as exc:
            # Unknown session ids are reported as unknown, not as an outage
            logger.warning(
                "stripe_checkout_session_not_found", session_id=session_id, error=str(exc)
            )
            return CheckoutSessionStatus(
                session_id=session_id,
                payment_status=PaymentStatus.UNKNOWN,
                user_id=None,
                package_id=None,
                credits=None,
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_status_failed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get session status: {exc}") from exc

        status = session_to_status(session)
        logger.info(
            "stripe_checkout_status_retrieved",
            session_id=session_id,
            payment_status=status.payment_status.value,
        )
        return status

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        session = None
        if event.type in SETTLEMENT_EVENTS:
            session = session_to_status(event.data.object)

        return WebhookEvent(event_id=event.id, event_type=event.type, session=session)
