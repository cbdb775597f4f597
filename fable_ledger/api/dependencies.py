"""
FastAPI Dependencies - Authentication, authorization and collaborators.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import Mapping
from functools import lru_cache

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fable_ledger.config import settings
from fable_ledger.exceptions import AdminRequiredError, UnauthenticatedError
from fable_ledger.models.domain import Principal
from fable_ledger.observability.logging import get_logger
from fable_ledger.services.identity import FirebaseTokenVerifier, IdentityAliasResolver
from fable_ledger.services.payment_provider import PaymentProvider
from fable_ledger.services.stripe_provider import StripeProvider
from fable_ledger.services.views import UNKNOWN_CLIENT

logger = get_logger(__name__)

# Bearer token scheme for Firebase ID tokens
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Collaborators (built once per process)
# ============================================================================


@lru_cache(maxsize=1)
def get_token_verifier() -> FirebaseTokenVerifier:
    """Firebase token verifier configured from settings."""
    return FirebaseTokenVerifier(
        project_id=settings.firebase_project_id,
        aliases=IdentityAliasResolver(settings.uid_alias_map),
        admin_emails=settings.admin_email_set,
        cache_size=settings.token_cache_size,
    )


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    """Stripe payment provider configured from settings."""
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
    )


# ============================================================================
# Authentication
# ============================================================================


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    verifier: FirebaseTokenVerifier = Depends(get_token_verifier),
) -> Principal:
    """
    Resolve the acting user from Authorization: Bearer {firebase_id_token}.

    Raises:
        UnauthenticatedError: No token or invalid token
    """
    if credentials is None:
        raise UnauthenticatedError("Authorization header required")
    return verifier.verify(credentials.credentials)


async def get_optional_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    verifier: FirebaseTokenVerifier = Depends(get_token_verifier),
) -> Principal | None:
    """Resolve the acting user when a valid token is present; anonymous otherwise."""
    if credentials is None:
        return None
    try:
        return verifier.verify(credentials.credentials)
    except UnauthenticatedError:
        logger.info("optional_auth_rejected_token")
        return None


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """
    Require an admin principal.

    Raises:
        AdminRequiredError: Authenticated user is not an admin
    """
    if not principal.is_admin:
        logger.warning("admin_access_denied", user_id=principal.user_id)
        raise AdminRequiredError(principal.user_id)
    return principal


# ============================================================================
# Client identification
# ============================================================================


def client_identifier(
    principal: Principal | None,
    headers: Mapping[str, str],
    peer_host: str | None,
    trusted_proxy_hops: int = 0,
) -> str:
    """
    Identify the viewing client.

    Authenticated user id first. Anonymous clients are identified by the
    socket peer unless trusted_proxy_hops proxies sit in front of the API;
    then the address the outermost trusted proxy saw is used (the Nth
    X-Forwarded-For hop from the right, else X-Real-IP). Entries left of
    that hop are client-supplied and ignored.
    """
    if principal is not None:
        return f"user:{principal.user_id}"

    if trusted_proxy_hops > 0:
        hops = [hop.strip() for hop in (headers.get("x-forwarded-for") or "").split(",")]
        hops = [hop for hop in hops if hop]
        if hops:
            return hops[max(len(hops) - trusted_proxy_hops, 0)]

        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip

    return peer_host or UNKNOWN_CLIENT


async def get_client_identifier(
    request: Request,
    principal: Principal | None = Depends(get_optional_principal),
) -> str:
    """FastAPI dependency wrapping client_identifier."""
    peer_host = request.client.host if request.client else None
    return client_identifier(
        principal, request.headers, peer_host, trusted_proxy_hops=settings.trusted_proxy_hops
    )
