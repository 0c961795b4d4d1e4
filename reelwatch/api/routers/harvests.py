from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from reelwatch.api.errors import ApiException
from reelwatch.api.responses import success_payload, success_response
from reelwatch.api.runtime_deps import get_scheduler
from reelwatch.api.schemas import (
    HarvestAcceptedEnvelope,
    HarvestRequest,
    SchedulerStatusEnvelope,
)
from reelwatch.logging_utils import structured_log
from reelwatch.services.harvest.types import HarvestKind
from reelwatch.services.scheduler import CycleResult, HarvestScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["harvests"])


def _serialize_cycle(cycle: CycleResult | None) -> dict[str, Any] | None:
    if cycle is None:
        return None
    return {
        "cycle_id": cycle.cycle_id,
        "found": cycle.found,
        "saved": cycle.saved,
        "duplicates": cycle.duplicates,
        "cancelled": cycle.cancelled,
        "harvest_failed": cycle.harvest_failed,
        "persistence_failed": cycle.persistence_failed,
        "videos_marked_delivered": (
            cycle.delivery.videos_marked_delivered if cycle.delivery is not None else None
        ),
        "duration_ms": cycle.duration_ms,
    }


@router.post(
    "/harvests",
    status_code=202,
    response_model=HarvestAcceptedEnvelope,
    responses={409: {"description": "Another harvest holds the run gate."}},
)
async def trigger_harvest(
    payload: HarvestRequest,
    request: Request,
    scheduler: HarvestScheduler = Depends(get_scheduler),
):
    keyword = payload.keyword.strip()
    if payload.kind != HarvestKind.NEW and not keyword:
        raise ApiException(
            status_code=400,
            code="keyword_required",
            message=f"A keyword is required for '{payload.kind.value}' harvests.",
        )
    ticket = scheduler.submit_manual_harvest(payload.kind, keyword, limit=payload.limit)
    if not ticket.accepted:
        structured_log(
            logger,
            "info",
            "api.harvests.rejected_in_progress",
            kind=payload.kind.value,
            keyword=keyword,
        )
        raise ApiException(
            status_code=409,
            code="harvest_in_progress",
            message="A harvest is already running.",
        )
    structured_log(
        logger,
        "info",
        "api.harvests.accepted",
        kind=payload.kind.value,
        keyword=keyword,
        limit=payload.limit,
    )
    return success_response(
        request,
        data={"accepted": True, "kind": payload.kind.value, "keyword": keyword},
        status_code=202,
    )


@router.get(
    "/scheduler",
    response_model=SchedulerStatusEnvelope,
)
async def get_scheduler_status(
    request: Request,
    scheduler: HarvestScheduler = Depends(get_scheduler),
):
    return success_payload(
        request,
        data={
            "state": scheduler.state.value,
            "running": scheduler.is_running,
            "uptime_seconds": round(scheduler.uptime_seconds, 3),
            "last_cycle": _serialize_cycle(scheduler.last_cycle),
        },
    )
