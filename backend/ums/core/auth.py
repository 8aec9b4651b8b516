"""Password hashing, opaque tokens and JWT issuance/verification."""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Literal

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from ums.config import settings

TokenKind = Literal["access", "refresh"]


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str
    role: str


def hash_password(password: str) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit); no passlib re-encoding."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))


def generate_opaque_token(nbytes: int = 32) -> str:
    """Random hex token for email verification, password reset and CSRF."""
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    """SHA256 hex digest; tokens are stored and compared by hash."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _signing_key(kind: TokenKind) -> str:
    return settings.jwt_secret if kind == "access" else settings.jwt_refresh_secret


def _expires_delta(kind: TokenKind) -> timedelta:
    if kind == "access":
        return timedelta(minutes=settings.access_token_expire_minutes)
    return timedelta(days=settings.refresh_token_expire_days)


def _issue(kind: TokenKind, user_id: int, email: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "type": kind,
        "iat": now,
        "exp": now + _expires_delta(kind),
        # unique per issuance so two tokens signed in the same second never collide
        "jti": secrets.token_hex(16),
    }
    result = jwt.encode(payload, _signing_key(kind), algorithm=settings.jwt_algorithm)
    return result if isinstance(result, str) else result.decode("utf-8")


def issue_access_token(user_id: int, email: str, role: str) -> str:
    return _issue("access", user_id, email, role)


def issue_refresh_token(user_id: int, email: str, role: str) -> str:
    return _issue("refresh", user_id, email, role)


def verify_token(token: str, kind: TokenKind) -> TokenClaims:
    """
    Verify signature and expiry with the key of the given kind and return the identity claims.
    Raises TokenExpiredError for an expired (but otherwise valid) token, TokenInvalidError otherwise.
    """
    try:
        payload = jwt.decode(token, _signing_key(kind), algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as e:
        raise TokenExpiredError(f"{kind.capitalize()} token has expired") from e
    except JWTError as e:
        raise TokenInvalidError(f"Invalid {kind} token") from e
    if payload.get("type") != kind:
        raise TokenInvalidError(f"Invalid {kind} token")
    try:
        user_id = int(payload["sub"])
        email = str(payload["email"])
        role = str(payload["role"])
    except (KeyError, TypeError, ValueError) as e:
        raise TokenInvalidError(f"Invalid {kind} token") from e
    return TokenClaims(user_id=user_id, email=email, role=role)
