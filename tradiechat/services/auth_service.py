"""
Credential verification for the chat service.

Tokens are issued by the account service; chat only verifies them.  Uses
PyJWT with the shared secret from settings.  ``create_access_token`` exists
for service-to-service tooling and tests.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from tradiechat.core.config import settings
from tradiechat.core.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Identity extracted from a verified bearer token."""

    user_id: uuid.UUID
    scopes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# JWT token generation
# ---------------------------------------------------------------------------

def create_access_token(
    user_id: uuid.UUID,
    scopes: Optional[list[str]] = None,
    expires_in: Optional[timedelta] = None,
) -> str:
    """Create a signed access token for ``user_id``."""
    now = datetime.now(timezone.utc)
    expires_at = now + (expires_in or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {
        "sub": str(user_id),
        "type": "access",
        "scopes": scopes or [],
        "exp": expires_at,
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def strip_bearer(token: Optional[str]) -> Optional[str]:
    """Remove an optional ``Bearer `` prefix from a raw credential."""
    if not token:
        return None
    token = token.strip()
    scheme, _, credential = token.partition(" ")
    if scheme.lower() == "bearer":
        token = credential.strip()
    return token or None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_access_token(token: Optional[str]) -> TokenClaims:
    """Verify a bearer token and return its claims.

    Raises:
        UnauthorizedError: If the token is missing, expired, malformed, or
            lacks a usable ``sub`` claim.
    """
    token = strip_bearer(token)
    if token is None:
        raise UnauthorizedError("No authentication token provided")

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise UnauthorizedError("Token has expired")
    except jwt.InvalidTokenError as exc:
        logger.warning("Invalid JWT token: %s", exc)
        raise UnauthorizedError("Invalid token")

    if payload.get("type", "access") != "access":
        raise UnauthorizedError("Invalid token type")

    try:
        user_id = uuid.UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        logger.warning("JWT missing or malformed sub claim")
        raise UnauthorizedError("Invalid token")

    scopes = payload.get("scopes") or []
    if not isinstance(scopes, list):
        scopes = [str(scopes)]
    return TokenClaims(user_id=user_id, scopes=[str(s) for s in scopes])
