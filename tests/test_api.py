"""Test the FastAPI endpoints."""
import threading
import pytest
from httpx import ASGITransport, AsyncClient
import api.app as api_module
from api.app import app, install_runtime
from engine.config import EngineConfig
from engine.model import CITIES, now_ms
from storage.memory_repo import MemoryStore
from conftest import athens, sparta


@pytest.fixture
def runtime():
    """Fresh in-memory runtime for each test."""
    store = MemoryStore()
    store.put_record(CITIES, "athens", athens())
    store.put_record(CITIES, "sparta", sparta())
    poller = install_runtime(store, EngineConfig(rng_seed=11))
    yield store, poller
    api_module.poller = None
    api_module.store = None
    api_module.processor = None


def client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_root(runtime):
    async with client() as ac:
        response = await ac.get("/")

    assert response.status_code == 200
    assert response.json()["world_speed_factor"] == 5


@pytest.mark.asyncio
async def test_dispatch_rush_and_tick(runtime):
    """A dispatched attack resolves after a rush and a manual tick."""
    store, _ = runtime
    async with client() as ac:
        response = await ac.post("/admin/movements", json={
            "type": "attack",
            "origin_settlement_id": "athens",
            "target_settlement_id": "sparta",
            "units": {"hoplite": 100},
            "departure_ms": 0,
        })
        assert response.status_code == 200
        created = response.json()
        # 5 tiles at hoplite speed 6 and world speed 5 take ten minutes
        assert created["departure_ms"] == 0
        assert created["arrival_ms"] == 600_000

        listed = await ac.get("/movements", params={"owner_id": "p2"})
        assert [m["id"] for m in listed.json()["movements"]] == [created["id"]]

        rushed = await ac.post(f"/admin/movements/{created['id']}/rush")
        assert rushed.status_code == 200

        tick = await ac.post("/admin/tick")
        assert tick.status_code == 200
        assert tick.json()["resolved"] == 1

        reports = await ac.get("/reports/p1")
        events = await ac.get("/events", params={"since": 0})

    assert len(reports.json()["reports"]) == 1
    assert reports.json()["reports"][0]["type"] == "attack"
    body = events.json()
    assert body["next_offset"] == 1
    assert body["events"][0]["kind"] == "MovementResolved"


@pytest.mark.asyncio
async def test_scout_uses_flat_schedule(runtime):
    async with client() as ac:
        response = await ac.post("/admin/movements", json={
            "type": "scout",
            "origin_settlement_id": "athens",
            "target_settlement_id": "sparta",
            "resources": {"silver": 500},
            "departure_ms": 1_000,
        })

    assert response.status_code == 200
    # 5 tiles at 15 seconds each, whatever the units
    assert response.json()["arrival_ms"] == 76_000


@pytest.mark.asyncio
async def test_unknown_targets_are_404(runtime):
    async with client() as ac:
        missing_origin = await ac.post("/admin/movements", json={
            "type": "attack", "origin_settlement_id": "carthage",
            "target_settlement_id": "sparta", "units": {"hoplite": 1},
        })
        missing_target = await ac.post("/admin/movements", json={
            "type": "attack_village", "origin_settlement_id": "athens",
            "target_village_id": "v404", "units": {"hoplite": 1},
        })
        rush = await ac.post("/admin/movements/nope/rush")

    assert missing_origin.status_code == 404
    assert missing_target.status_code == 404
    assert rush.status_code == 404


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(runtime):
    async with client() as ac:
        bad_type = await ac.post("/admin/movements", json={
            "type": "pillage", "origin_settlement_id": "athens", "target_settlement_id": "sparta",
        })
        no_units = await ac.post("/admin/movements", json={
            "type": "attack", "origin_settlement_id": "athens", "target_settlement_id": "sparta",
        })

    assert bad_type.status_code == 422
    assert no_units.status_code == 400


@pytest.mark.asyncio
async def test_requires_runtime():
    api_module.poller = None
    api_module.store = None
    async with client() as ac:
        response = await ac.post("/admin/tick")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_future_departure_is_rejected(runtime):
    async with client() as ac:
        response = await ac.post("/admin/movements", json={
            "type": "attack", "origin_settlement_id": "athens", "target_settlement_id": "sparta",
            "units": {"hoplite": 1}, "departure_ms": now_ms() + 3_600_000,
        })

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_same_tile_trip_still_takes_a_millisecond(runtime):
    store, _ = runtime
    store.put_record(CITIES, "piraeus", athens())
    async with client() as ac:
        response = await ac.post("/admin/movements", json={
            "type": "reinforce", "origin_settlement_id": "athens",
            "target_settlement_id": "piraeus", "units": {"hoplite": 3}, "departure_ms": 5_000,
        })

    assert response.status_code == 200
    assert response.json()["departure_ms"] == 5_000
    assert response.json()["arrival_ms"] == 5_001


class _ThreadRecordingStore(MemoryStore):
    """Remembers which threads touched it."""

    def __init__(self):
        super().__init__()
        self.threads = set()

    def get_record(self, collection, key):
        self.threads.add(threading.get_ident())
        return super().get_record(collection, key)

    def movements_for(self, owner_id):
        self.threads.add(threading.get_ident())
        return super().movements_for(owner_id)

    def reports_for(self, owner_id):
        self.threads.add(threading.get_ident())
        return super().reports_for(owner_id)


@pytest.mark.asyncio
async def test_store_calls_stay_off_the_event_loop():
    store = _ThreadRecordingStore()
    store.put_record(CITIES, "athens", athens())
    store.put_record(CITIES, "sparta", sparta())
    install_runtime(store, EngineConfig(rng_seed=11))
    try:
        async with client() as ac:
            created = await ac.post("/admin/movements", json={
                "type": "attack", "origin_settlement_id": "athens",
                "target_settlement_id": "sparta", "units": {"hoplite": 5}, "departure_ms": 0,
            })
            await ac.post(f"/admin/movements/{created.json()['id']}/rush")
            await ac.get("/movements", params={"owner_id": "p1"})
            await ac.get("/reports/p1")
    finally:
        api_module.poller = None
        api_module.store = None
        api_module.processor = None

    assert created.status_code == 200
    assert store.threads
    assert threading.get_ident() not in store.threads
