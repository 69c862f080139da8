import math
from typing import Mapping, Optional
from .config import EngineConfig
from .model import MovementType, UNIT_TYPES, UnitCounts, UnitType

FLAT_SCHEDULE_TYPES = (MovementType.SCOUT, MovementType.TRADE)


def calculate_distance(a, b) -> float:
    """Euclidean distance in map tiles between two objects with x/y attributes."""
    if a is None or b is None:
        return 0.0
    dx = a.x - b.x
    dy = a.y - b.y
    return math.sqrt(dx * dx + dy * dy)


def slowest_speed(units: UnitCounts, catalog: Mapping[str, UnitType] = UNIT_TYPES) -> float:
    """A force moves at the pace of its slowest unit kind."""
    speeds = [catalog[kind].speed for kind, count in units.items() if count > 0 and kind in catalog]
    return min(speeds) if speeds else 0.0


def calculate_travel_seconds(distance: float, speed: float,
                             movement_type: Optional[MovementType] = None,
                             config: Optional[EngineConfig] = None) -> float:
    """Seconds needed to cover ``distance`` tiles at ``speed`` tiles per hour."""
    config = config or EngineConfig()
    if movement_type in FLAT_SCHEDULE_TYPES:
        raw = distance * config.scout_trade_tile_seconds
        return max(config.scout_trade_min_seconds, min(config.scout_trade_max_seconds, raw))

    if speed <= 0:
        return math.inf
    hours = distance / (speed * config.world_speed_factor)
    return hours * 3600


def format_travel_time(total_seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    if math.isinf(total_seconds):
        return "N/A"
    if math.isnan(total_seconds):
        return "Invalid Time"
    hours = int(total_seconds // 3600)
    minutes = int((total_seconds % 3600) // 60)
    seconds = int(total_seconds % 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
