"""Request authentication dependencies for operator and internal routes."""

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from coliving_platform.app.config import get_settings

logger = logging.getLogger(__name__)


async def require_operator(request: Request) -> str:
    """Dependency: operator API bearer token. Returns the token subject label."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    token = auth_header.removeprefix("Bearer ")
    if not hmac.compare_digest(token, get_settings().operator_api_token):
        logger.warning("Rejected operator request to %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
    return "operator"


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if not hmac.compare_digest(x_internal_token, settings.internal_token):
        raise HTTPException(status_code=401, detail="Invalid internal token")
