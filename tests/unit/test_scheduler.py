from __future__ import annotations

import asyncio

import pytest

from reelwatch.db.models import SubscriptionRule
from reelwatch.services.cancellation import CancelScope
from reelwatch.services.delivery.application import DeliveryService
from reelwatch.services.harvest.rate_limit import TokenBucketRateLimiter
from reelwatch.services.harvest.types import HarvestCancelledError, HarvestKind, VideoRecord
from reelwatch.services.scheduler import HarvestScheduler, SchedulerState
from tests.fakes import GatedHarvester, InMemoryVideoStore, RecordingTransport

RECORDS = [VideoRecord(code="ABC-001", title="first"), VideoRecord(code="ABC-002", title="second")]


def _delivery(store: InMemoryVideoStore, transport: RecordingTransport) -> DeliveryService:
    return DeliveryService(
        store=store,
        transport=transport,
        send_limiter=TokenBucketRateLimiter(1000.0, burst=100),
        same_chat_delay_seconds=0.0,
    )


def _scheduler(harvester, store: InMemoryVideoStore, delivery: DeliveryService | None = None, **kwargs) -> HarvestScheduler:
    return HarvestScheduler(harvester=harvester, store=store, delivery=delivery, **kwargs)


class CancelledHarvester:
    async def harvest_new_listing(self, page_count: int, *, cancel: CancelScope | None = None) -> list[VideoRecord]:
        raise HarvestCancelledError(RECORDS[:1], "shutdown")


class FailingHarvester:
    async def harvest_new_listing(self, page_count: int, *, cancel: CancelScope | None = None) -> list[VideoRecord]:
        raise RuntimeError("listing exploded")


@pytest.mark.asyncio
async def test_overlapping_cycles_are_skipped_not_queued(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester(RECORDS)
    scheduler = _scheduler(harvester, memory_store)

    first = asyncio.create_task(scheduler.try_run())
    await harvester.started.wait()
    assert scheduler.state == SchedulerState.RUNNING

    assert await scheduler.try_run() is False

    harvester.release.set()
    assert await first is True
    assert harvester.max_active == 1
    assert len(harvester.calls) == 1
    assert scheduler.state == SchedulerState.IDLE


@pytest.mark.asyncio
async def test_manual_harvest_rejected_while_cycle_runs(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester(RECORDS)
    scheduler = _scheduler(harvester, memory_store)

    cycle = asyncio.create_task(scheduler.try_run())
    await harvester.started.wait()

    ticket = scheduler.submit_manual_harvest(HarvestKind.ACTOR, "Yua")

    assert ticket.accepted is False
    assert await ticket.result() is None
    harvester.release.set()
    await cycle


@pytest.mark.asyncio
async def test_cycle_rejected_while_manual_harvest_runs(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester(RECORDS)
    scheduler = _scheduler(harvester, memory_store)

    ticket = scheduler.submit_manual_harvest(HarvestKind.SEARCH, "rain")
    assert ticket.accepted is True
    await harvester.started.wait()

    assert await scheduler.try_run() is False

    harvester.release.set()
    result = await ticket.result()
    assert result is not None and result.ok
    assert scheduler.is_running is False


@pytest.mark.asyncio
async def test_manual_harvest_saves_without_delivering(
    memory_store: InMemoryVideoStore,
    transport: RecordingTransport,
) -> None:
    await memory_store.save_video(RECORDS[0])
    await memory_store.upsert_subscription(chat_id=10, chat_type="private", rule=SubscriptionRule.ALL, keyword="")
    harvester = GatedHarvester(RECORDS)
    harvester.release.set()
    scheduler = _scheduler(harvester, memory_store, _delivery(memory_store, transport))

    ticket = scheduler.submit_manual_harvest(HarvestKind.ACTOR, "Yua", limit=5)
    result = await ticket.result()

    assert result is not None
    assert (result.found, result.saved, result.duplicates) == (2, 1, 1)
    assert harvester.calls == [("actor", "Yua")]
    assert transport.sent == []


@pytest.mark.asyncio
async def test_manual_harvest_failure_is_reported(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester()
    harvester.error = RuntimeError("site down")
    harvester.release.set()
    scheduler = _scheduler(harvester, memory_store)

    result = await scheduler.submit_manual_harvest(HarvestKind.CODE, "ABC-001").result()

    assert result is not None
    assert not result.ok
    assert result.error == "site down"
    assert scheduler.is_running is False


@pytest.mark.asyncio
async def test_cycle_persists_then_delivers(
    memory_store: InMemoryVideoStore,
    transport: RecordingTransport,
) -> None:
    await memory_store.upsert_subscription(chat_id=10, chat_type="private", rule=SubscriptionRule.ALL, keyword="")
    harvester = GatedHarvester(RECORDS)
    harvester.release.set()
    scheduler = _scheduler(harvester, memory_store, _delivery(memory_store, transport))

    assert await scheduler.try_run() is True

    cycle = scheduler.last_cycle
    assert cycle is not None
    assert (cycle.found, cycle.saved, cycle.duplicates) == (2, 2, 0)
    assert cycle.delivery is not None
    assert cycle.delivery.videos_marked_delivered == 2
    assert [message.chat_id for message in transport.sent] == [10, 10]


@pytest.mark.asyncio
async def test_cancelled_cycle_keeps_partial_records_and_skips_delivery(
    memory_store: InMemoryVideoStore,
    transport: RecordingTransport,
) -> None:
    await memory_store.upsert_subscription(chat_id=10, chat_type="private", rule=SubscriptionRule.ALL, keyword="")
    scheduler = _scheduler(CancelledHarvester(), memory_store, _delivery(memory_store, transport))

    result = await scheduler.run_cycle(pages=2)

    assert result.cancelled is True
    assert result.saved == 1
    assert result.delivery is None
    assert await memory_store.exists_by_code("ABC-001")
    assert transport.sent == []


@pytest.mark.asyncio
async def test_persist_failure_skips_delivery(
    memory_store: InMemoryVideoStore,
    transport: RecordingTransport,
) -> None:
    memory_store.fail_saves = True
    harvester = GatedHarvester(RECORDS)
    harvester.release.set()
    scheduler = _scheduler(harvester, memory_store, _delivery(memory_store, transport))

    result = await scheduler.run_cycle(pages=1)

    assert result.persistence_failed is True
    assert result.delivery is None
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_harvest_failure_still_sweeps_pending_deliveries(
    memory_store: InMemoryVideoStore,
    transport: RecordingTransport,
) -> None:
    await memory_store.save_video(RECORDS[0])
    await memory_store.upsert_subscription(chat_id=10, chat_type="private", rule=SubscriptionRule.ALL, keyword="")
    scheduler = _scheduler(FailingHarvester(), memory_store, _delivery(memory_store, transport))

    result = await scheduler.run_cycle(pages=1)

    assert result.harvest_failed is True
    assert result.found == 0
    assert result.delivery is not None
    assert [message.chat_id for message in transport.sent] == [10]


@pytest.mark.asyncio
async def test_timer_loop_runs_first_cycle_and_stops(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester(RECORDS)
    harvester.release.set()
    scheduler = _scheduler(harvester, memory_store, initial_delay_seconds=0.0, interval_seconds=3600.0)

    await scheduler.start()
    await asyncio.wait_for(harvester.started.wait(), timeout=1)
    for _ in range(20):
        if scheduler.last_cycle is not None:
            break
        await asyncio.sleep(0.01)
    await asyncio.wait_for(scheduler.stop(), timeout=1)

    assert scheduler.last_cycle is not None
    assert harvester.calls == [("new", "")]


@pytest.mark.asyncio
async def test_disabled_scheduler_never_starts_a_cycle(memory_store: InMemoryVideoStore) -> None:
    harvester = GatedHarvester(RECORDS)
    scheduler = _scheduler(harvester, memory_store, enabled=False, initial_delay_seconds=0.0)

    await scheduler.start()
    await asyncio.sleep(0.01)
    await scheduler.stop()

    assert harvester.calls == []
