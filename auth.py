from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from config import Settings

ADMIN_HEADER = "x-admin-secret"


def verify_admin_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of the admin header against the configured secret."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(request: Request, settings: Settings) -> None:
    if not settings.admin_secret:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled.")
    if not verify_admin_secret(request.headers.get(ADMIN_HEADER), settings.admin_secret):
        raise HTTPException(status_code=403, detail="Forbidden.")
