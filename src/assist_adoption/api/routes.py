"""Main API routes for Assist Adoption."""

from fastapi import APIRouter

from .key_rotation import router as key_rotation_router
from .snapshots import router as snapshots_router
from .webhook import router as webhook_router

# Main API router
router = APIRouter()

# Include sub-routers
router.include_router(key_rotation_router, prefix="/admin", tags=["admin"])
router.include_router(snapshots_router, prefix="/admin", tags=["admin"])
router.include_router(webhook_router, tags=["webhook"])
