"""Shared fixtures: a small world of two cities and helpers to dispatch movements."""
import pytest
from engine.model import CITIES, MOVEMENTS
from engine.processor import MovementProcessor
from engine.rng import DRNG
from storage.memory_repo import MemoryStore

NOW = 100_000


def athens() -> dict:
    return {
        "owner_id": "p1",
        "owner_username": "alice",
        "city_name": "Athens",
        "x": 0.0,
        "y": 0.0,
        "resources": {"wood": 100, "stone": 100, "silver": 100},
        "units": {"swordsman": 5},
        "wounded": {},
        "buildings": {"senate": 3},
        "cave": {"silver": 0},
        "god": "athena",
        "research": {},
    }


def sparta() -> dict:
    return {
        "owner_id": "p2",
        "owner_username": "bob",
        "city_name": "Sparta",
        "x": 3.0,
        "y": 4.0,
        "resources": {"wood": 1000, "stone": 400, "silver": 200},
        "units": {"swordsman": 15, "archer": 10},
        "wounded": {},
        "buildings": {"barracks": 2},
        "cave": {"silver": 0},
        "god": "zeus",
        "research": {},
    }


def put_movement(store, movement_id: str = "m1", **fields) -> dict:
    """Store a movement record and return it as the poller would see it."""
    record = {
        "type": "attack",
        "status": "moving",
        "origin_settlement_id": "athens",
        "origin_owner_id": "p1",
        "origin_owner_username": "alice",
        "departure_ms": 1_000,
        "arrival_ms": 61_000,
        "target_settlement_id": "sparta",
        "target_owner_id": "p2",
        "target_owner_username": "bob",
        "units": {"hoplite": 100},
        "resources": {},
        "wounded": {},
        "attack_formation": None,
        "cross_domain": False,
        "involved_parties": ["p1", "p2"],
    }
    record.update(fields)
    store.put_record(MOVEMENTS, movement_id, record)
    return dict(record, id=movement_id)


@pytest.fixture
def store():
    """In-memory store seeded with two cities."""
    s = MemoryStore()
    s.put_record(CITIES, "athens", athens())
    s.put_record(CITIES, "sparta", sparta())
    return s


@pytest.fixture
def processor(store):
    """Processor with a fixed scouting seed."""
    return MovementProcessor(store, rng=DRNG(7))
