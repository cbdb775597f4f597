"""
Identity - Firebase ID token verification and uid aliasing.

NO DICTIONARIES - Verified identities are returned as Principal objects.
"""

import time
from collections.abc import Mapping

import google.auth.exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from fable_ledger.exceptions import UnauthenticatedError
from fable_ledger.models.domain import Principal
from fable_ledger.observability.logging import get_logger

logger = get_logger(__name__)

# Seconds shaved off a token's exp before a cached verification is discarded
CACHE_EXPIRY_BUFFER = 60


class IdentityAliasResolver:
    """
    Maps aliased uids onto their canonical uid.

    Built once at startup; consulted once per authentication.
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._aliases = dict(aliases or {})

    def resolve(self, user_id: str) -> str:
        """Canonical uid for user_id (itself when not aliased)."""
        canonical = self._aliases.get(user_id, user_id)
        if canonical != user_id:
            logger.debug("uid_alias_resolved", user_id=user_id, canonical_user_id=canonical)
        return canonical

    def __len__(self) -> int:
        return len(self._aliases)


class FirebaseTokenVerifier:
    """
    Verifies Firebase ID tokens against Google's public keys.

    Verified tokens are cached until shortly before they expire; the cache
    is bounded and owned by this instance.
    """

    def __init__(
        self,
        project_id: str,
        aliases: IdentityAliasResolver | None = None,
        admin_emails: frozenset[str] = frozenset(),
        cache_size: int = 10000,
    ) -> None:
        self.project_id = project_id
        self.aliases = aliases or IdentityAliasResolver()
        self.admin_emails = frozenset(email.lower() for email in admin_emails)
        self.cache_size = cache_size
        self._cache: dict[str, tuple[Principal, float]] = {}
        self._request = google_requests.Request()  # type: ignore[no-untyped-call]

    def verify(self, token: str) -> Principal:
        """
        Verify a Firebase ID token and resolve the acting principal.

        Raises:
            UnauthenticatedError: Token missing, invalid, expired or for another project
        """
        if not token:
            raise UnauthenticatedError("Authorization token required")

        cached = self._cache.get(token)
        if cached is not None:
            principal, expiry = cached
            if time.time() < expiry:
                return principal
            del self._cache[token]

        if not self.project_id:
            raise UnauthenticatedError("Token verification is not configured")

        try:
            claims = id_token.verify_firebase_token(  # type: ignore[no-untyped-call]
                token, self._request, audience=self.project_id
            )
        except (ValueError, google.auth.exceptions.GoogleAuthError) as exc:
            logger.info("firebase_token_rejected", error=str(exc))
            raise UnauthenticatedError("Invalid or expired token") from exc

        if not claims:
            raise UnauthenticatedError("Invalid token")

        principal = self.principal_from_claims(claims)

        expiry = float(claims.get("exp", time.time() + 3600)) - CACHE_EXPIRY_BUFFER
        self._remember(token, principal, expiry)
        return principal

    def principal_from_claims(self, claims: Mapping[str, object]) -> Principal:
        """
        Build the principal from verified token claims.

        Raises:
            UnauthenticatedError: Token carries no uid
        """
        uid = claims.get("user_id") or claims.get("sub")
        if not isinstance(uid, str) or not uid:
            raise UnauthenticatedError("Invalid token: missing user ID")

        email = claims.get("email")
        email = email if isinstance(email, str) else None
        name = claims.get("name")
        name = name if isinstance(name, str) else None

        is_admin = claims.get("admin") is True or (
            email is not None and email.lower() in self.admin_emails
        )

        return Principal(
            user_id=self.aliases.resolve(uid),
            email=email,
            name=name,
            is_admin=is_admin,
        )

    def _remember(self, token: str, principal: Principal, expiry: float) -> None:
        """Cache a verification, evicting expired then oldest entries when full."""
        if len(self._cache) >= self.cache_size:
            now = time.time()
            for key in [k for k, (_, exp) in self._cache.items() if exp < now]:
                del self._cache[key]
            while len(self._cache) >= self.cache_size:
                del self._cache[next(iter(self._cache))]
        self._cache[token] = (principal, expiry)
