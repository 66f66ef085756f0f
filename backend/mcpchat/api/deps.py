"""
Shared FastAPI dependencies.
"""
from typing import Optional

from fastapi import Header, HTTPException

from mcpchat.errors import StreamingError, Unauthenticated
from mcpchat.services.auth import extract_bearer, verify_token


async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """Claims of the authenticated caller. 401 when the bearer token is missing or invalid."""
    try:
        return verify_token(extract_bearer(authorization))
    except Unauthenticated as e:
        raise HTTPException(status_code=401, detail=e.message)


def http_error(error: StreamingError) -> HTTPException:
    return HTTPException(status_code=error.status_code or 500, detail=error.message)
