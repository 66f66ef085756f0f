"""
Bearer token authentication.

Issues and verifies HS256 JWTs and checks bcrypt password hashes.
Stateless: logout is handled by the client discarding its token.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import bcrypt
import jwt

from mcpchat.config import settings
from mcpchat.errors import Unauthenticated

logger = logging.getLogger(__name__)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_token(user_id: int, username: str, role: str, expires_hours: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "username": username,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours or settings.jwt_expires_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: Optional[str]) -> dict[str, Any]:
    """Decode a token and return its claims. Raises Unauthenticated."""
    if not token:
        raise Unauthenticated("Token required")
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as e:
        logger.info("Rejected token: %s", e)
        raise Unauthenticated("Invalid token") from e
    if "id" not in claims:
        raise Unauthenticated("Invalid token")
    return claims


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
