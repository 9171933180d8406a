"""
Password hashing & JWT helpers.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).
- Access tokens carry user_id, email, role and session_id; refresh
  tokens carry user_id and session_id with a `type: refresh` tag.
- Every token gets a random `jti` so a rotated pair never repeats the
  previous one, even within the same second.
- Per-request session validation lives in `rbac.dependencies`; it
  checks the registry on EVERY request (hybrid stateful JWT).
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi import HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from agency_crm.core.config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# ── Password hashing ────────────────────────────────────────────────


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── JWT ──────────────────────────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def _encode(
    data: dict[str, Any],
    expires_delta: timedelta,
    issued_at: datetime | None,
    secret_key: str | None,
    algorithm: str | None,
) -> str:
    to_encode = data.copy()
    now = issued_at or datetime.now(timezone.utc)
    to_encode.update({
        "iat": now,
        "exp": now + expires_delta,
        "jti": secrets.token_hex(8),
    })
    return jwt.encode(
        to_encode,
        secret_key or settings.SECRET_KEY,
        algorithm=algorithm or settings.JWT_ALGORITHM,
    )


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
    *,
    issued_at: datetime | None = None,
    secret_key: str | None = None,
    algorithm: str | None = None,
) -> str:
    return _encode(
        {**data, "type": ACCESS_TOKEN_TYPE},
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        issued_at,
        secret_key,
        algorithm,
    )


def create_refresh_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
    *,
    issued_at: datetime | None = None,
    secret_key: str | None = None,
    algorithm: str | None = None,
) -> str:
    """Create a long-lived refresh token bound to a session id."""
    return _encode(
        {**data, "type": REFRESH_TOKEN_TYPE},
        expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        issued_at,
        secret_key,
        algorithm,
    )


def decode_token(
    token: str,
    *,
    secret_key: str | None = None,
    algorithm: str | None = None,
) -> dict[str, Any]:
    """Verify signature & expiry.  Raises `JWTError` on failure."""
    return jwt.decode(
        token,
        secret_key or settings.SECRET_KEY,
        algorithms=[algorithm or settings.JWT_ALGORITHM],
    )


def decode_access_token(
    token: str,
    *,
    secret_key: str | None = None,
    algorithm: str | None = None,
) -> dict[str, Any]:
    """Decode & validate an access JWT.  Raises HTTPException on failure."""
    try:
        payload = decode_token(token, secret_key=secret_key, algorithm=algorithm)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload
