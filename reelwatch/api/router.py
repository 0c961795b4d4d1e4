from __future__ import annotations

from fastapi import APIRouter

from reelwatch.api.routers import harvests

router = APIRouter(prefix="/api/v1")
router.include_router(harvests.router)
