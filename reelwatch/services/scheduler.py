from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from secrets import token_urlsafe
from typing import Any

from reelwatch.logging_context import set_cycle_id
from reelwatch.logging_utils import structured_log
from reelwatch.services.cancellation import CancelScope, OperationCancelledError
from reelwatch.services.delivery.application import DeliveryService, SweepSummary
from reelwatch.services.harvest.application import RetryingHarvester
from reelwatch.services.harvest.types import HarvestCancelledError, HarvestKind, VideoRecord
from reelwatch.services.store.base import SaveResult, VideoStore

logger = logging.getLogger(__name__)


class SchedulerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class CycleResult:
    cycle_id: str
    found: int
    saved: int
    duplicates: int
    cancelled: bool
    harvest_failed: bool
    persistence_failed: bool
    delivery: SweepSummary | None
    duration_ms: int


@dataclass(frozen=True)
class ManualHarvestResult:
    kind: HarvestKind
    keyword: str
    found: int
    saved: int
    duplicates: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ManualHarvestTicket:
    """Handle for a manual harvest: ``accepted`` is known immediately, the result when awaited."""

    def __init__(self, *, accepted: bool, task: asyncio.Task[ManualHarvestResult] | None = None) -> None:
        self.accepted = accepted
        self._task = task

    async def result(self) -> ManualHarvestResult | None:
        if self._task is None:
            return None
        return await self._task

    def done(self) -> bool:
        return self._task is None or self._task.done()


class HarvestScheduler:
    """Runs harvest-persist-deliver cycles on a timer and on demand, one at a time."""

    def __init__(
        self,
        *,
        harvester: RetryingHarvester,
        store: VideoStore,
        delivery: DeliveryService | None,
        enabled: bool = True,
        interval_seconds: float = 900.0,
        initial_delay_seconds: float = 5.0,
        initial_pages: int = 2,
        manual_limit: int = 20,
    ) -> None:
        self._harvester = harvester
        self._store = store
        self._delivery = delivery
        self._enabled = enabled
        self._interval_seconds = max(0.0, float(interval_seconds))
        self._initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self._initial_pages = max(1, int(initial_pages))
        self._manual_limit = max(1, int(manual_limit))
        # Non-blocking try-acquire only; losers are told "skipped", never queued.
        self._gate = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._started_at = time.time()
        self._last_cycle: CycleResult | None = None

    @property
    def is_running(self) -> bool:
        return self._gate.locked()

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self.is_running else SchedulerState.IDLE

    @property
    def last_cycle(self) -> CycleResult | None:
        return self._last_cycle

    @property
    def uptime_seconds(self) -> float:
        return max(time.time() - self._started_at, 0.0)

    # ── Timer loop ────────────────────────────────────────────────────

    async def start(self) -> None:
        if not self._enabled:
            structured_log(logger, "info", "scheduler.disabled")
            return
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="reelwatch-scheduler")
        structured_log(
            logger,
            "info",
            "scheduler.started",
            interval_seconds=self._interval_seconds,
            initial_delay_seconds=self._initial_delay_seconds,
            initial_pages=self._initial_pages,
        )

    async def stop(self) -> None:
        if self._task is not None and self._stop_event is not None:
            self._stop_event.set()
            try:
                await self._task
            finally:
                self._task = None
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        structured_log(logger, "info", "scheduler.stopped")

    async def _wait_or_stop(self, seconds: float) -> bool:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _run_loop(self) -> None:
        if await self._wait_or_stop(self._initial_delay_seconds):
            return
        while True:
            try:
                await self.try_run()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduler.tick_failed")
            if await self._wait_or_stop(self._interval_seconds):
                return

    # ── Triggers ──────────────────────────────────────────────────────

    async def try_run(
        self,
        *,
        pages: int | None = None,
        cancel: CancelScope | None = None,
    ) -> bool:
        if not self._gate.acquire(blocking=False):
            structured_log(logger, "info", "scheduler.cycle_skipped_already_running")
            return False
        try:
            self._last_cycle = await self.run_cycle(pages=pages or self._initial_pages, cancel=cancel)
        finally:
            self._gate.release()
        return True

    def submit_manual_harvest(
        self,
        kind: HarvestKind,
        keyword: str = "",
        *,
        limit: int | None = None,
    ) -> ManualHarvestTicket:
        if not self._gate.acquire(blocking=False):
            structured_log(
                logger,
                "info",
                "scheduler.manual_harvest_skipped_already_running",
                kind=kind.value,
                keyword=keyword,
            )
            return ManualHarvestTicket(accepted=False)
        try:
            task = asyncio.create_task(
                self._manual_harvest_holding_gate(kind, keyword, limit or self._manual_limit),
                name=f"reelwatch-manual-{kind.value}",
            )
        except BaseException:
            self._gate.release()
            raise
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return ManualHarvestTicket(accepted=True, task=task)

    async def _manual_harvest_holding_gate(
        self,
        kind: HarvestKind,
        keyword: str,
        limit: int,
    ) -> ManualHarvestResult:
        try:
            return await self.run_manual_harvest(kind, keyword, limit=limit)
        finally:
            self._gate.release()

    async def run_manual_harvest(
        self,
        kind: HarvestKind,
        keyword: str,
        *,
        limit: int,
    ) -> ManualHarvestResult:
        structured_log(
            logger,
            "info",
            "scheduler.manual_harvest_started",
            kind=kind.value,
            keyword=keyword,
            limit=limit,
        )
        try:
            records = await self._harvester.harvest(
                kind,
                keyword,
                limit=limit,
                pages=self._initial_pages,
            )
        except HarvestCancelledError as exc:
            records = exc.records
        except Exception as exc:
            logger.exception(
                "scheduler.manual_harvest_failed",
                extra={"kind": kind.value, "keyword": keyword},
            )
            return ManualHarvestResult(kind=kind, keyword=keyword, found=0, saved=0, duplicates=0, error=str(exc))
        try:
            save_result = await self._store.save_videos(records) if records else SaveResult(saved=0, duplicates=0)
        except Exception as exc:
            logger.exception(
                "scheduler.manual_harvest_persist_failed",
                extra={"kind": kind.value, "keyword": keyword},
            )
            return ManualHarvestResult(
                kind=kind, keyword=keyword, found=len(records), saved=0, duplicates=0, error=str(exc)
            )
        structured_log(
            logger,
            "info",
            "scheduler.manual_harvest_completed",
            kind=kind.value,
            keyword=keyword,
            found=len(records),
            saved=save_result.saved,
            duplicates=save_result.duplicates,
        )
        return ManualHarvestResult(
            kind=kind,
            keyword=keyword,
            found=len(records),
            saved=save_result.saved,
            duplicates=save_result.duplicates,
        )

    # ── One cycle ─────────────────────────────────────────────────────

    async def run_cycle(
        self,
        *,
        pages: int,
        cancel: CancelScope | None = None,
    ) -> CycleResult:
        cycle_id = token_urlsafe(6)
        set_cycle_id(cycle_id)
        started = time.perf_counter()
        try:
            return await self._run_cycle_stages(cycle_id, pages=pages, started=started, cancel=cancel)
        finally:
            set_cycle_id(None)

    async def _run_cycle_stages(
        self,
        cycle_id: str,
        *,
        pages: int,
        started: float,
        cancel: CancelScope | None,
    ) -> CycleResult:
        structured_log(logger, "info", "scheduler.cycle_started", pages=pages)
        records: list[VideoRecord] = []
        cancelled = False
        harvest_failed = False
        try:
            records = await self._harvester.harvest_new_listing(pages, cancel=cancel)
        except HarvestCancelledError as exc:
            records = exc.records
            cancelled = True
            structured_log(
                logger,
                "warning",
                "scheduler.harvest_cancelled",
                partial_count=len(records),
                reason=exc.reason,
            )
        except Exception:
            harvest_failed = True
            logger.exception("scheduler.harvest_failed")

        try:
            save_result = await self._store.save_videos(records) if records else SaveResult(saved=0, duplicates=0)
        except Exception:
            logger.exception("scheduler.persist_failed", extra={"record_count": len(records)})
            return self._finish(
                cycle_id,
                found=len(records),
                save_result=SaveResult(saved=0, duplicates=0),
                cancelled=cancelled,
                harvest_failed=harvest_failed,
                persistence_failed=True,
                delivery=None,
                started=started,
            )
        structured_log(
            logger,
            "info",
            "scheduler.batch_persisted",
            found=len(records),
            saved=save_result.saved,
            duplicates=save_result.duplicates,
        )

        delivery: SweepSummary | None = None
        if cancelled:
            structured_log(logger, "info", "scheduler.delivery_skipped_cancelled")
        elif self._delivery is None:
            structured_log(logger, "debug", "scheduler.delivery_disabled")
        else:
            try:
                delivery = await self._delivery.sweep_unsent(cancel=cancel)
            except OperationCancelledError as exc:
                cancelled = True
                structured_log(logger, "warning", "scheduler.delivery_cancelled", reason=exc.reason)
            except Exception:
                logger.exception("scheduler.delivery_failed")

        return self._finish(
            cycle_id,
            found=len(records),
            save_result=save_result,
            cancelled=cancelled,
            harvest_failed=harvest_failed,
            persistence_failed=False,
            delivery=delivery,
            started=started,
        )

    @staticmethod
    def _finish(
        cycle_id: str,
        *,
        found: int,
        save_result: SaveResult,
        cancelled: bool,
        harvest_failed: bool,
        persistence_failed: bool,
        delivery: SweepSummary | None,
        started: float,
    ) -> CycleResult:
        result = CycleResult(
            cycle_id=cycle_id,
            found=found,
            saved=save_result.saved,
            duplicates=save_result.duplicates,
            cancelled=cancelled,
            harvest_failed=harvest_failed,
            persistence_failed=persistence_failed,
            delivery=delivery,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        structured_log(
            logger,
            "info",
            "scheduler.cycle_completed",
            found=result.found,
            saved=result.saved,
            duplicates=result.duplicates,
            cancelled=result.cancelled,
            harvest_failed=result.harvest_failed,
            persistence_failed=result.persistence_failed,
            duration_ms=result.duration_ms,
        )
        return result
