"""Password hashing, signed session tokens and the FastAPI auth dependencies.

Sessions are stateless: a signed, time-limited JWT carried in an HTTP-only
cookie.  There is no revocation list; logging out only clears the cookie.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, Response

from wheelhouse.config import get_settings

log = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    secret = password.encode("utf-8")[:72]
    return bcrypt.hashpw(secret, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("ascii"))
    except ValueError:
        log.warning("Stored password hash is malformed")
        return False


@dataclass
class TokenPayload:
    user_id: str
    email: str
    name: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_token(user: dict[str, Any]) -> str:
    settings = get_settings()
    now = datetime.now(UTC)
    claims = {
        "sub": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "iat": now,
        "exp": now + timedelta(days=settings.token_ttl_days),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenPayload | None:
    """Verify signature and expiry; ``None`` for anything that does not check out."""
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError:
        return None
    try:
        return TokenPayload(
            user_id=claims["sub"], email=claims["email"],
            name=claims["name"], role=claims["role"],
        )
    except KeyError:
        return None


def set_auth_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=settings.token_ttl_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().cookie_name, path="/")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def current_user(request: Request) -> TokenPayload:
    token = request.cookies.get(get_settings().cookie_name)
    if not token:
        raise HTTPException(401, "Unauthorized")
    payload = decode_token(token)
    if payload is None:
        raise HTTPException(401, "Session is invalid or has expired")
    return payload


def require_admin(user: TokenPayload = Depends(current_user)) -> TokenPayload:
    if not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user
