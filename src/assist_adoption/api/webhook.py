"""Interaction webhook.

Order of checks: pause flag (503), Webhook-AuthID header (400), then
either the subscription handshake or a list of interaction records.
"""

import json
import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from pydantic import TypeAdapter, ValidationError

from ..models.usage import InteractionRecord
from ..services.container import AppServices
from ..services.pause_state import IngestionPausedError
from .deps import get_services

logger = logging.getLogger(__name__)

router = APIRouter()

_records_adapter = TypeAdapter(List[InteractionRecord])


@router.post("/webhook")
async def receive_events(
    request: Request,
    webhook_auth_id: Optional[str] = Header(default=None, alias="Webhook-AuthID"),
    validation_code_header: Optional[str] = Header(default=None, alias="Webhook-ValidationCode"),
    services: AppServices = Depends(get_services),
):
    if await services.pause_state.is_paused():
        logger.info("Webhook called while paused")
        return Response(status_code=503)

    expected = services.settings.webhook_auth_id
    if (
        not webhook_auth_id
        or not expected
        or not secrets.compare_digest(webhook_auth_id.encode(), expected.encode())
    ):
        logger.error("Invalid Webhook-AuthID header")
        raise HTTPException(status_code=400, detail="Invalid Webhook-AuthID header.")

    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    if isinstance(payload, dict):
        validation_code = payload.get("validationCode")
        if not validation_code:
            raise HTTPException(status_code=400, detail="Expected a validation request or a list of records")
        if validation_code_header != validation_code:
            logger.error("Invalid Webhook-ValidationCode header")
            raise HTTPException(status_code=400, detail="Invalid Webhook-ValidationCode header.")
        return Response(status_code=200)

    try:
        records = _records_adapter.validate_python(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Malformed interaction records")

    try:
        encryption = await services.encryption()
        email_filter = await services.email_filter()
        result = await services.ingestor.ingest(records, encryption, email_filter=email_filter)
    except IngestionPausedError:
        return Response(status_code=503)
    except Exception:
        logger.exception("Interaction ingestion failed")
        raise HTTPException(status_code=500, detail="Ingestion failed")

    return {
        "records": result.records,
        "filtered": result.filtered,
        "classified": result.classified,
        "unhandled": result.unhandled,
        "users": result.users,
        "errors": result.errors,
    }
