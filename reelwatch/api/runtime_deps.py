from __future__ import annotations

from fastapi import Depends, Request

from reelwatch.api.errors import ApiException
from reelwatch.runtime import Runtime
from reelwatch.services.scheduler import HarvestScheduler


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ApiException(
            status_code=503,
            code="runtime_unavailable",
            message="Service is starting up.",
        )
    return runtime


def get_scheduler(runtime: Runtime = Depends(get_runtime)) -> HarvestScheduler:
    return runtime.scheduler
