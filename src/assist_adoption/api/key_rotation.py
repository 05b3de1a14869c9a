"""Key rotation control endpoint."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..security.secrets import SecretNotFoundError
from ..services.container import AppServices
from .deps import get_services, require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter()


@router.api_route(
    "/key-rotation",
    methods=["GET", "POST"],
    dependencies=[Depends(require_admin_key)],
)
async def key_rotation(
    mode: str = Query(default=""),
    new_key_secret_name: Optional[str] = Query(default=None, alias="newKeySecretName"),
    key_vault_secret_name: Optional[str] = Query(
        default=None, alias="newKeyVaultEncryptionKeySecretName"
    ),
    services: AppServices = Depends(get_services),
):
    """Two modes: prepare rotates every table and leaves ingestion paused, confirm resumes."""
    mode = mode.strip().lower()

    if mode == "prepare":
        try:
            reports = await services.rotation.prepare(
                new_key_secret_name or key_vault_secret_name or ""
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SecretNotFoundError:
            raise HTTPException(status_code=400, detail="New key secret not found")
        except Exception:
            logger.exception("Key rotation prepare failed")
            raise HTTPException(status_code=500, detail="Key rotation failed")

        return {
            "status": "prepared",
            "paused": True,
            "processed": sum(r.processed for r in reports),
            "skipped": sum(r.skipped for r in reports),
            "errors": sum(r.errors for r in reports),
            "tables": [r.to_dict() for r in reports],
        }

    if mode == "confirm":
        try:
            await services.rotation.confirm()
        except Exception:
            logger.exception("Key rotation confirm failed")
            raise HTTPException(status_code=500, detail="Key rotation confirm failed")
        return {"status": "confirmed", "paused": False}

    raise HTTPException(
        status_code=400, detail="Invalid mode specified. Use 'prepare' or 'confirm'."
    )
