from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from reelwatch.services.harvest.types import HarvestKind


class ApiMeta(BaseModel):
    request_id: str | None = None

    model_config = ConfigDict(extra="forbid")


class ApiErrorData(BaseModel):
    code: str
    message: str
    details: Any | None = None

    model_config = ConfigDict(extra="forbid")


class ApiErrorEnvelope(BaseModel):
    error: ApiErrorData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class HarvestRequest(BaseModel):
    kind: HarvestKind = HarvestKind.NEW
    keyword: str = Field(default="", max_length=255)
    limit: int | None = Field(default=None, ge=1, le=200)

    model_config = ConfigDict(extra="forbid")


class HarvestAcceptedData(BaseModel):
    accepted: bool
    kind: HarvestKind
    keyword: str

    model_config = ConfigDict(extra="forbid")


class HarvestAcceptedEnvelope(BaseModel):
    data: HarvestAcceptedData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class LastCycleData(BaseModel):
    cycle_id: str
    found: int
    saved: int
    duplicates: int
    cancelled: bool
    harvest_failed: bool
    persistence_failed: bool
    videos_marked_delivered: int | None = None
    duration_ms: int

    model_config = ConfigDict(extra="forbid")


class SchedulerStatusData(BaseModel):
    state: str
    running: bool
    uptime_seconds: float
    last_cycle: LastCycleData | None = None

    model_config = ConfigDict(extra="forbid")


class SchedulerStatusEnvelope(BaseModel):
    data: SchedulerStatusData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
