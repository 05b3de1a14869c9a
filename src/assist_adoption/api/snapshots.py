"""Daily usage snapshot submission and agent totals."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..models.usage import UsageSnapshot, parse_date
from ..services.container import AppServices
from ..services.pause_state import IngestionPausedError
from .deps import get_services, require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/daily-snapshots", dependencies=[Depends(require_admin_key)])
async def submit_daily_snapshots(
    snapshots: List[UsageSnapshot],
    queue: bool = Query(default=False, description="Fan out per-user work items instead of applying inline"),
    services: AppServices = Depends(get_services),
):
    """Apply a day's usage snapshots, directly or through the aggregation queue."""
    try:
        encryption = await services.encryption()
        email_filter = await services.email_filter()
        if queue:
            count = await services.engine.queue_daily_snapshots(
                snapshots, encryption, services.dispatcher, email_filter=email_filter
            )
            return {"received": len(snapshots), "queued": count}

        count = await services.engine.apply_daily_snapshots(
            snapshots, encryption, email_filter=email_filter
        )
        return {"received": len(snapshots), "processed": count}

    except IngestionPausedError:
        raise HTTPException(status_code=503, detail="Ingestion is paused")
    except Exception:
        logger.exception("Snapshot submission failed")
        raise HTTPException(status_code=500, detail="Snapshot processing failed")


@router.post("/agent-totals/{day}", dependencies=[Depends(require_admin_key)])
async def apply_agent_totals(day: str, services: AppServices = Depends(get_services)):
    """Add a day of agent interactions to the per-agent totals."""
    try:
        parse_date(day)
    except ValueError:
        raise HTTPException(status_code=400, detail="day must be yyyy-MM-dd")

    try:
        agents = await services.engine.apply_agent_totals(day)
    except IngestionPausedError:
        raise HTTPException(status_code=503, detail="Ingestion is paused")
    except Exception:
        logger.exception("Agent totals failed for %s", day)
        raise HTTPException(status_code=500, detail="Agent totals failed")

    return {"day": day, "agents": agents}
