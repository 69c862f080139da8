import math
from dataclasses import dataclass, field
from typing import Dict, Optional
from .model import ResourceAmounts, Settlement, UnitCounts
from .rng import DRNG

# Below parity the spy is always caught, whatever the draw
SUCCESS_THRESHOLD = 0.5
CAVE_SECURITY_MULTIPLIER = 2
DEFENDER_COMPENSATION_RATE = 0.5


@dataclass
class ScoutingResult:
    success: bool
    chance: float
    message: str
    target_city_name: str = ""
    target_owner_username: str = ""
    resources: ResourceAmounts = field(default_factory=dict)
    units: UnitCounts = field(default_factory=dict)
    buildings: Dict[str, int] = field(default_factory=dict)
    god: Optional[str] = None
    silver_gained: int = 0

    def to_record(self) -> Dict:
        if not self.success:
            return {"success": False, "message": self.message, "silver_gained": self.silver_gained}
        return {
            "success": True,
            "message": self.message,
            "target_city_name": self.target_city_name,
            "target_owner_username": self.target_owner_username,
            "resources": dict(self.resources),
            "units": dict(self.units),
            "buildings": dict(self.buildings),
            "god": self.god or "None",
        }


def success_chance(attacking_silver: int, cave_silver: int) -> float:
    """Chance that a spy carrying ``attacking_silver`` slips past the cave."""
    security_bonus = cave_silver * CAVE_SECURITY_MULTIPLIER
    return (attacking_silver + 1) / (attacking_silver + security_bonus + 1)


def resolve_scouting(target: Settlement, attacking_silver: int, rng: DRNG) -> ScoutingResult:
    """Resolve an espionage mission. The only entry point of the core that draws randomness."""
    attacking_silver = max(0, attacking_silver)
    chance = success_chance(attacking_silver, max(0, target.cave_silver))
    roll = rng.random()

    if roll < chance and chance > SUCCESS_THRESHOLD:
        return ScoutingResult(
            success=True,
            chance=chance,
            message="Scouting successful! Detailed report obtained.",
            target_city_name=target.city_name,
            target_owner_username=target.owner_username or "Unknown",
            resources=dict(target.resources),
            units=dict(target.units),
            buildings=dict(target.buildings),
            god=target.god,
        )

    # Spent silver is gone either way; the defender pockets half of it
    return ScoutingResult(
        success=False,
        chance=chance,
        message="Scouting failed! Your spy was detected.",
        silver_gained=math.floor(attacking_silver * DEFENDER_COMPENSATION_RATE),
    )
