"""JWT helpers for the bearer tokens issued by the authentication service."""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from cabinet_scheduler.config import settings


def create_access_token(
    subject: str,
    role: str,
    cabinets: Iterable[str] = (),
    permissions: Iterable[str] = (),
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token carrying tenant claims.

    The authentication service is the real issuer; this is used by operator
    scripts and tests.

    Args:
        subject: User identifier (`sub` claim)
        role: Actor role
        cabinets: Cabinet identifiers the user is assigned to
        permissions: Explicit `<resource>:<operation>` grants
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

    to_encode = {
        "sub": subject,
        "role": role,
        "cabinets": sorted(cabinets),
        "permissions": sorted(permissions),
        "exp": expire,
        "iat": now,
        "type": "access",
    }

    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Decoded payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )

        # Verify token type
        if payload.get("type") != "access":
            return None

        return payload
    except JWTError:
        return None
