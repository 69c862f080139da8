"""Test travel time derivation."""
import math
from engine.config import EngineConfig
from engine.model import MovementType, Settlement
from engine.travel import calculate_distance, calculate_travel_seconds, format_travel_time, slowest_speed


def test_distance():
    a = Settlement(id="a", owner_id="p1", x=0, y=0)
    b = Settlement(id="b", owner_id="p2", x=3, y=4)

    assert calculate_distance(a, b) == 5.0
    assert calculate_distance(a, None) == 0.0


def test_slowest_unit_sets_the_pace():
    assert slowest_speed({"cavalry": 10, "hoplite": 1}) == 6
    assert slowest_speed({"cavalry": 10, "catapult": 0}) == 22
    assert slowest_speed({}) == 0.0


def test_travel_seconds():
    assert calculate_travel_seconds(10, 20) == 360.0
    config = EngineConfig(world_speed_factor=1)
    assert calculate_travel_seconds(10, 20, config=config) == 1800.0
    assert math.isinf(calculate_travel_seconds(10, 0))


def test_scout_and_trade_use_flat_schedule():
    for movement_type in (MovementType.SCOUT, MovementType.TRADE):
        assert calculate_travel_seconds(0.5, 0, movement_type) == 15
        assert calculate_travel_seconds(4, 0, movement_type) == 60
        assert calculate_travel_seconds(1000, 22, movement_type) == 300

    slow = EngineConfig(scout_trade_tile_seconds=30)
    assert calculate_travel_seconds(4, 0, MovementType.SCOUT, slow) == 120


def test_format_travel_time():
    assert format_travel_time(3725) == "01:02:05"
    assert format_travel_time(0) == "00:00:00"
    assert format_travel_time(math.inf) == "N/A"
    assert format_travel_time(math.nan) == "Invalid Time"
