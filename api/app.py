import asyncio
import logging
import uuid
from dataclasses import dataclass
from fastapi import FastAPI, HTTPException
from engine.config import EngineConfig
from engine.model import (
    CITIES, GOD_TOWNS, MOVEMENTS, RUINS, VILLAGES, Formation, Movement, MovementStatus,
    MovementType, now_ms,
)
from engine.processor import MovementProcessor
from engine.rng import DRNG
from engine.travel import calculate_distance, calculate_travel_seconds, format_travel_time, slowest_speed
from runtime.runner import MovementPoller
from storage.config import get_store
from storage.repository import Store
from .schemas import EventsResponse, MovementCreated, MovementIn, TickResponse
import math

logger = logging.getLogger(__name__)

app = FastAPI(title="Movement Engine API")
store: Store | None = None
processor: MovementProcessor | None = None
poller: MovementPoller | None = None
config: EngineConfig = EngineConfig()

# Where each movement type looks up its target
_TARGETS = {
    MovementType.ATTACK: (CITIES, "target_settlement_id"),
    MovementType.SCOUT: (CITIES, "target_settlement_id"),
    MovementType.REINFORCE: (CITIES, "target_settlement_id"),
    MovementType.TRADE: (CITIES, "target_settlement_id"),
    MovementType.ATTACK_VILLAGE: (VILLAGES, "target_village_id"),
    MovementType.ATTACK_RUIN: (RUINS, "target_ruin_id"),
    MovementType.ATTACK_GOD_TOWN: (GOD_TOWNS, "target_town_id"),
}


@dataclass
class _Position:
    x: float
    y: float


def install_runtime(new_store: Store, new_config: EngineConfig | None = None) -> MovementPoller:
    """Wire store, processor and poller together; replaces any previous runtime."""
    global store, processor, poller, config
    config = new_config or EngineConfig()
    store = new_store
    processor = MovementProcessor(store, rng=DRNG(config.rng_seed))
    poller = MovementPoller(processor, store, tick_interval_s=config.tick_interval_seconds)
    return poller


def _require_runtime() -> MovementPoller:
    if poller is None or store is None:
        raise HTTPException(400, "Runtime not started")
    return poller


@app.get("/")
async def root():
    """API root endpoint."""
    return {
        "message": "Movement Engine API",
        "running": bool(poller and poller.running),
        "tick_interval_seconds": config.tick_interval_seconds,
        "world_speed_factor": config.world_speed_factor,
    }


@app.on_event("startup")
async def startup():
    """Build the runtime from the environment and start polling."""
    if poller is None:
        install_runtime(get_store(), EngineConfig.from_env())
    await poller.start()


@app.on_event("shutdown")
async def shutdown():
    """Stop polling on app shutdown."""
    if poller:
        await poller.stop()


@app.post("/admin/movements", response_model=MovementCreated)
async def create_movement(req: MovementIn):
    """Store a dispatched movement with its arrival derived from distance and speed."""
    _require_runtime()
    return await asyncio.to_thread(_dispatch, req)


def _dispatch(req: MovementIn) -> MovementCreated:
    now = now_ms()
    if req.departure_ms is not None and req.departure_ms > now:
        raise HTTPException(400, "Departure cannot lie in the future")

    origin = store.get_record(CITIES, req.origin_settlement_id)
    if origin is None:
        raise HTTPException(404, f"Origin settlement {req.origin_settlement_id} not found")

    collection, id_field = _TARGETS[req.type]
    target_id = getattr(req, id_field)
    target = store.get_record(collection, target_id) if target_id else None
    if target is None:
        raise HTTPException(404, f"Target {collection}/{target_id} not found")

    distance = calculate_distance(
        _Position(origin.get("x", 0.0), origin.get("y", 0.0)),
        _Position(target.get("x", 0.0), target.get("y", 0.0)),
    )
    seconds = calculate_travel_seconds(distance, slowest_speed(req.units), req.type, config)
    if math.isinf(seconds):
        raise HTTPException(400, "Movement carries no units that can travel")

    departure = req.departure_ms if req.departure_ms is not None else now
    target_owner = target.get("owner_id") if collection == CITIES else None
    parties = [origin.get("owner_id", "")]
    if target_owner and target_owner not in parties:
        parties.append(target_owner)

    movement = Movement(
        id=uuid.uuid4().hex,
        type=req.type,
        status=MovementStatus.MOVING,
        origin_settlement_id=req.origin_settlement_id,
        origin_owner_id=origin.get("owner_id", ""),
        origin_owner_username=origin.get("owner_username", ""),
        departure_ms=departure,
        # Same-tile trips still take a millisecond
        arrival_ms=departure + max(1, int(round(seconds * 1000))),
        target_settlement_id=req.target_settlement_id,
        target_village_id=req.target_village_id,
        target_ruin_id=req.target_ruin_id,
        target_town_id=req.target_town_id,
        target_owner_id=target_owner,
        target_owner_username=target.get("owner_username", "") if target_owner else "",
        units=dict(req.units),
        resources=dict(req.resources),
        attack_formation=Formation(**req.attack_formation.model_dump()) if req.attack_formation else None,
        cross_domain=req.cross_domain or req.type == MovementType.ATTACK_RUIN,
        involved_parties=parties,
    )
    record = movement.to_record()
    del record["id"]
    store.put_record(MOVEMENTS, movement.id, record)
    logger.info(f"Movement {movement.id} ({req.type.value}) dispatched, arrives at {movement.arrival_ms}")

    return MovementCreated(
        id=movement.id,
        departure_ms=movement.departure_ms,
        arrival_ms=movement.arrival_ms,
        travel_time=format_travel_time(seconds),
    )


@app.post("/admin/movements/{movement_id}/rush")
async def rush_movement(movement_id: str):
    """Make a pending movement due now; the next tick resolves it."""
    runner = _require_runtime()
    if not await asyncio.to_thread(runner.rush, movement_id):
        raise HTTPException(404, f"Movement {movement_id} not found")
    return {"rushed": movement_id}


@app.post("/admin/tick", response_model=TickResponse)
async def run_tick():
    """Run one poll tick now instead of waiting for the loop."""
    runner = _require_runtime()
    summary = await runner.tick()
    return TickResponse(**summary.to_record())


@app.get("/movements")
async def list_movements(owner_id: str):
    """Movements the owner is involved in."""
    _require_runtime()
    return {"movements": await asyncio.to_thread(store.movements_for, owner_id)}


@app.get("/reports/{owner_id}")
async def list_reports(owner_id: str):
    """Reports delivered to the owner, newest first."""
    _require_runtime()
    return {"reports": await asyncio.to_thread(store.reports_for, owner_id)}


@app.get("/events", response_model=EventsResponse)
async def get_events(since: int = 0, limit: int = 500):
    """Get poller events since offset."""
    runner = _require_runtime()
    evts, next_offset = runner.events.since(since, limit)
    return EventsResponse(
        next_offset=next_offset,
        events=[{"kind": e.kind, "ts_ms": e.ts_ms, "data": e.data} for e in evts]
    )
