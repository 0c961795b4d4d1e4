from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from reelwatch.http.middleware import REQUEST_ID_HEADER
from reelwatch.main import create_app
from reelwatch.services.harvest.types import VideoRecord
from reelwatch.services.scheduler import HarvestScheduler
from reelwatch.settings import settings
from tests.fakes import GatedHarvester, InMemoryVideoStore


class UnreachableStore(InMemoryVideoStore):
    async def ping(self) -> bool:
        return False


class FakeRuntime:
    def __init__(self, store: InMemoryVideoStore | None = None) -> None:
        self.store = store or InMemoryVideoStore()
        self.harvester = GatedHarvester([VideoRecord(code="ABC-001")])
        self.scheduler = HarvestScheduler(
            harvester=self.harvester,
            store=self.store,
            delivery=None,
            enabled=False,
        )
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.harvester.release.set()
        await self.scheduler.stop()
        self.stopped = True


def _client(runtime: FakeRuntime) -> TestClient:
    app = create_app(
        config=replace(settings, bot_enabled=False, bot_token=""),
        runtime_factory=lambda config: runtime,
    )
    return TestClient(app)


def test_lifespan_starts_and_stops_runtime() -> None:
    runtime = FakeRuntime()

    with _client(runtime) as client:
        assert runtime.started is True
        assert client.get("/healthz").status_code == 200

    assert runtime.stopped is True


def test_healthz_reports_database_state() -> None:
    with _client(FakeRuntime()) as client:
        healthy = client.get("/healthz")
    with _client(FakeRuntime(UnreachableStore())) as client:
        unhealthy = client.get("/healthz")

    assert healthy.status_code == 200
    assert healthy.json()["status"] == "ok"
    assert unhealthy.status_code == 503
    assert unhealthy.json()["database"] == "unavailable"


def test_request_id_header_is_echoed() -> None:
    with _client(FakeRuntime()) as client:
        response = client.get("/healthz", headers={REQUEST_ID_HEADER: "request-123"})

    assert response.headers[REQUEST_ID_HEADER] == "request-123"


def test_trigger_harvest_is_accepted_then_conflicts() -> None:
    runtime = FakeRuntime()

    with _client(runtime) as client:
        accepted = client.post(
            "/api/v1/harvests",
            json={"kind": "actor", "keyword": " Yua ", "limit": 5},
            headers={REQUEST_ID_HEADER: "req-1"},
        )
        status = client.get("/api/v1/scheduler")
        conflict = client.post("/api/v1/harvests", json={"kind": "new"})

    assert accepted.status_code == 202
    assert accepted.json() == {
        "data": {"accepted": True, "kind": "actor", "keyword": "Yua"},
        "meta": {"request_id": "req-1"},
    }
    assert status.json()["data"]["state"] == "running"
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "harvest_in_progress"
    assert runtime.harvester.calls == [("actor", "Yua")]


def test_trigger_harvest_requires_keyword_for_targeted_kinds() -> None:
    with _client(FakeRuntime()) as client:
        response = client.post("/api/v1/harvests", json={"kind": "code", "keyword": "  "})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "keyword_required"


@pytest.mark.parametrize(
    "payload",
    [
        {"kind": "bogus"},
        {"kind": "new", "limit": 0},
        {"kind": "new", "unexpected": True},
    ],
)
def test_trigger_harvest_validates_payload(payload: dict) -> None:
    with _client(FakeRuntime()) as client:
        response = client.post("/api/v1/harvests", json=payload)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_scheduler_status_when_idle() -> None:
    with _client(FakeRuntime()) as client:
        response = client.get("/api/v1/scheduler")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["state"] == "idle"
    assert data["running"] is False
    assert data["last_cycle"] is None


def test_routes_report_unavailable_before_startup() -> None:
    client = TestClient(create_app(runtime_factory=lambda config: FakeRuntime()))

    scheduler = client.get("/api/v1/scheduler")
    health = client.get("/healthz")

    assert scheduler.status_code == 503
    assert scheduler.json()["error"]["code"] == "runtime_unavailable"
    assert health.status_code == 503
