"""Password hashing, session tokens and the session cookie.

Tokens are HS256 JWTs whose subject is the user id. They are delivered in an
HTTP-only ``SameSite=Lax`` cookie valid for seven days and re-issued on every
login or registration.
"""
import logging
import time
from typing import Optional

import bcrypt
import jwt
from fastapi import Cookie, Response

from config import (
    COOKIE_SECURE,
    JWT_ALGORITHM,
    JWT_SECRET_KEY,
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
)
from errors import AuthenticationError, InternalError

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError as exc:
        logger.error(f"Stored password hash is malformed: {exc}")
        raise InternalError("Error during password verification") from exc


def _secret() -> str:
    if not JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY environment variable not set")
        raise InternalError("Session signing is not configured")
    return JWT_SECRET_KEY


def sign_token(user_id: int, now: Optional[int] = None) -> str:
    issued_at = int(time.time()) if now is None else now
    claims = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + SESSION_TTL_SECONDS,
    }
    return jwt.encode(claims, _secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> int:
    """Return the user id carried by ``token``; raise AuthenticationError otherwise."""
    try:
        claims = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
        return int(claims["sub"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Session expired") from exc
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        logger.warning(f"Rejected session token: {exc}")
        raise AuthenticationError("Invalid session") from exc


def resolve_identity(token: Optional[str]) -> int:
    if not token:
        raise AuthenticationError("No session cookie found")
    return verify_token(token)


def set_session_cookie(response: Response, user_id: int) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=sign_token(user_id),
        max_age=SESSION_TTL_SECONDS,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


def current_user_id(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> int:
    """FastAPI dependency resolving the session cookie to a user id."""
    return resolve_identity(session_token)
