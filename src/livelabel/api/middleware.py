"""Middleware: API key authentication for the status surface.

Label displays and scripts that poll ``/api/v1/label`` often cannot set an
``Authorization`` header, so the key is accepted either as a bearer token or
in an ``X-API-Key`` header. Without ``LIVELABEL_API_KEY`` every request
passes.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from livelabel.config import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _presented_key(bearer: HTTPAuthorizationCredentials | None, header_key: str | None) -> str | None:
    if bearer is not None:
        return bearer.credentials
    return header_key


async def verify_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it carries the configured key."""
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    presented = _presented_key(bearer, header_key)
    if presented is not None and secrets.compare_digest(presented.encode(), settings.api_key.encode()):
        return

    client = request.client.host if request.client is not None else "unknown"
    logger.warning(
        "Rejected %s %s from %s: %s API key",
        request.method,
        request.url.path,
        client,
        "missing" if presented is None else "wrong",
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
