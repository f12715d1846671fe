"""
auth/tokens.py -- JWT access tokens, password hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (account id), sid (session id), and expiry. The token alone never
       authenticates anyone -- the sid must still resolve to a live session,
       so logout and account deletion revoke a token before it expires.
       Verification returns None on any failure; the dependency layer turns
       that into "unauthenticated".

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in AuthService.login() so response time does not reveal
       whether an email has an account.

  SECRET_KEY: sourced from core.config.get_settings() unless the caller
       passes one. Settings validates the key at startup (>= 32 chars).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import Settings, get_settings

logger = logging.getLogger("ideabridge.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters, and the rest of the contract does not depend on the tail.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        logger.warning("Stored password hash could not be parsed")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("ideabridge_timing_dummy")


def equalize_password_timing(plain: str) -> None:
    """Burn one bcrypt check when there is no real hash to verify against."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    account_id: str,
    session_id: str,
    *,
    secret_key: str | None = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed JWT binding an account to one session.

    Args:
        account_id:     Stored as the sub claim.
        session_id:     Stored as the sid claim; resolved on every request.
        secret_key:     Signing key. Defaults to Settings.secret_key.
        expire_seconds: Token lifetime. If 0, Settings.access_token_ttl_seconds.
    """
    if not secret_key or expire_seconds <= 0:
        settings = get_settings()
        secret_key = secret_key or settings.secret_key
        expire_seconds = expire_seconds if expire_seconds > 0 else settings.access_token_ttl_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "sid": session_id,
        "iat": now,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, *, secret_key: str | None = None) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, secret_key or get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("sid"), str):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, settings: Settings | None = None) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    settings = settings or get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )


def clear_session_cookie(response, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        path="/",
    )
