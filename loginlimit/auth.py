"""
API access control: shared token sent by the host authentication pipeline.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request, status

from loginlimit.config import get_settings

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-API-Token"


def token_matches(expected: str, supplied: str | None) -> bool:
    """Constant-time comparison of the configured and supplied tokens."""
    if not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


async def require_token(request: Request) -> None:
    """FastAPI dependency: require a valid API token when one is configured."""
    settings = get_settings()
    if not settings.api_token:
        return

    if not token_matches(settings.api_token, request.headers.get(TOKEN_HEADER)):
        logger.warning("Rejected API call without valid token from %s", _peer(request))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )


def _peer(request: Request) -> str:
    return request.client.host if request.client else "unknown"
