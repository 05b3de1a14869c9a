"""Shared FastAPI dependencies."""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ..services.container import AppServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> AppServices:
    """Services built at startup and stored on app.state."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


async def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    services: AppServices = Depends(get_services),
):
    """Require X-Admin-Key when an admin key is configured."""
    expected = services.settings.admin_api_key
    if not expected:
        return
    if not x_admin_key or not secrets.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("Rejected admin request with missing or invalid key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
