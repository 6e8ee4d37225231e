"""Admin authentication — static bearer token.

Admin routes fail closed: with no token configured every request is 401.
Webhook routes authenticate by provider signature instead.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> str | None:
    """Return the token from an ``Authorization: Bearer`` header."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def require_admin(request: Request) -> None:
    """FastAPI dependency guarding admin routes (constant-time compare)."""
    expected = request.app.state.services.settings.admin_token
    token = extract_bearer_token(request)
    if not expected:
        logger.warning("Admin token not configured — rejecting %s", request.url.path)
        raise HTTPException(status_code=401, detail="unauthorized")
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="unauthorized")
