"""FastAPI dependencies: service lookup and admin authentication."""

from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from techhelp.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Accept only ``Authorization: Bearer <admin_token>``."""
    expected = services.settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin token is not configured",
        )
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
