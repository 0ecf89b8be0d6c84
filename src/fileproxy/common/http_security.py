"""Request guards for operational and write endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status


def _bearer_matches(request: Request, token: str) -> bool:
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return False
    return hmac.compare_digest(auth_header, f"Bearer {token}")


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow metrics scraping with the configured token, or from loopback when none is set."""
    if token:
        if not _bearer_matches(request, token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")

    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def require_upload_access(request: Request, token: Optional[str]) -> None:
    """Guard mutating file operations when an upload token is configured."""
    if not token:
        return
    if not _bearer_matches(request, token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid upload token",
            headers={"WWW-Authenticate": "Bearer"},
        )
