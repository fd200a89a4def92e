"""FastAPI authentication dependencies."""

from __future__ import annotations

import secrets

import jwt
from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from uncharted.auth.jwt import verify_token
from uncharted.config import get_settings

_bearer = HTTPBearer()


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
) -> str:
    """
    Extract and verify the bearer JWT, return the external user id.

    Raises 401 on failure.
    """
    try:
        payload = verify_token(credentials.credentials, expected_type="access")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    return str(payload["sub"])


async def require_internal_caller(
    x_internal_key: str | None = Header(default=None),
) -> None:
    """Gate for service-to-service endpoints (booking/review handlers awarding XP)."""
    expected = get_settings().internal_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Internal endpoints are disabled")
    if x_internal_key is None or not secrets.compare_digest(x_internal_key, expected):
        raise HTTPException(status_code=403, detail="Invalid internal key")
