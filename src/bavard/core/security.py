# src/bavard/core/security.py
"""Helpers for auth-provider bearer tokens."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from bavard.core.settings import settings


@dataclass(frozen=True)
class TokenIdentity:
    """Identity claims carried by a verified token."""

    user_id: str
    display_name: str | None
    email: str | None
    avatar_url: str | None


class InvalidTokenError(ValueError):
    """Raised when a bearer token cannot be verified."""


def create_access_token(
    subject: str,
    extra_claims: dict[str, Any] | None = None,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed token in the auth provider's format.

    Production tokens are minted by the provider; this is used by tooling and tests.
    """
    to_encode: dict[str, Any] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    minutes = settings.access_token_expire_minutes if expires_minutes is None else expires_minutes
    to_encode["exp"] = datetime.now(UTC) + timedelta(minutes=minutes)
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> TokenIdentity:
    """Verify a bearer token and return its identity claims.

    Raises:
        InvalidTokenError: If the signature, expiry or subject is invalid.
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as err:
        raise InvalidTokenError("Could not validate credentials") from err

    subject = payload.get("sub")
    if not subject:
        raise InvalidTokenError("Token has no subject")

    return TokenIdentity(
        user_id=str(subject),
        display_name=payload.get("name"),
        email=payload.get("email"),
        avatar_url=payload.get("picture"),
    )
