import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import UnknownMovementType

UnitCounts = Dict[str, int]
ResourceAmounts = Dict[str, int]

# Store collections touched by the movement core
MOVEMENTS = "movements"
CITIES = "cities"
VILLAGES = "villages"
RUINS = "ruins"
GOD_TOWNS = "god_towns"
REPORTS = "reports"
CONQUERED_VILLAGES = "conquered_villages"
CONQUERED_RUINS = "conquered_ruins"
GOD_TOWN_PROGRESS = "god_town_progress"


def now_ms() -> int:
    """Wall clock in epoch milliseconds, the only time type used by the core."""
    return int(time.time() * 1000)


class UnitDomain(Enum):
    """Which sub-battle a unit kind fights in"""
    LAND = "land"
    NAVAL = "naval"


@dataclass(frozen=True)
class UnitType:
    """Static balance data for one unit kind"""
    name: str
    domain: UnitDomain
    attack: float
    defense: float
    speed: float  # tiles per hour
    counters: Tuple[str, ...] = ()
    mythical: bool = False
    population: int = 1


# Predefined unit kinds, loaded once and never mutated
UNIT_TYPES: Mapping[str, UnitType] = MappingProxyType({
    "swordsman": UnitType(
        name="Swordsman", domain=UnitDomain.LAND,
        attack=5, defense=14, speed=8,
        counters=("archer",), population=1,
    ),
    "slinger": UnitType(
        name="Slinger", domain=UnitDomain.LAND,
        attack=23, defense=7, speed=14,
        counters=("hoplite",), population=1,
    ),
    "archer": UnitType(
        name="Archer", domain=UnitDomain.LAND,
        attack=8, defense=10, speed=12,
        counters=("slinger",), population=1,
    ),
    "hoplite": UnitType(
        name="Hoplite", domain=UnitDomain.LAND,
        attack=16, defense=12, speed=6,
        counters=("cavalry", "chariot"), population=1,
    ),
    "cavalry": UnitType(
        name="Horseman", domain=UnitDomain.LAND,
        attack=60, defense=18, speed=22,
        counters=("archer", "slinger"), population=3,
    ),
    "chariot": UnitType(
        name="Chariot", domain=UnitDomain.LAND,
        attack=56, defense=76, speed=18,
        counters=("swordsman",), population=4,
    ),
    "catapult": UnitType(
        name="Catapult", domain=UnitDomain.LAND,
        attack=100, defense=30, speed=2,
        population=15,
    ),
    "minotaur": UnitType(
        name="Minotaur", domain=UnitDomain.LAND,
        attack=650, defense=750, speed=10,
        counters=("hoplite",), mythical=True, population=30,
    ),
    "manticore": UnitType(
        name="Manticore", domain=UnitDomain.LAND,
        attack=1010, defense=170, speed=22,
        counters=("cavalry",), mythical=True, population=45,
    ),
    "medusa": UnitType(
        name="Medusa", domain=UnitDomain.LAND,
        attack=425, defense=480, speed=6,
        counters=("swordsman", "hoplite"), mythical=True, population=18,
    ),
    "transport_ship": UnitType(
        name="Transport Boat", domain=UnitDomain.NAVAL,
        attack=0, defense=0, speed=8,
        population=7,
    ),
    "bireme": UnitType(
        name="Bireme", domain=UnitDomain.NAVAL,
        attack=24, defense=160, speed=15,
        counters=("light_ship",), population=8,
    ),
    "light_ship": UnitType(
        name="Light Ship", domain=UnitDomain.NAVAL,
        attack=200, defense=60, speed=13,
        counters=("transport_ship",), population=10,
    ),
    "fire_ship": UnitType(
        name="Fire Ship", domain=UnitDomain.NAVAL,
        attack=20, defense=1, speed=5,
        counters=("light_ship",), population=10,
    ),
    "trireme": UnitType(
        name="Trireme", domain=UnitDomain.NAVAL,
        attack=200, defense=250, speed=15,
        counters=("transport_ship",), population=16,
    ),
    "hydra": UnitType(
        name="Hydra", domain=UnitDomain.NAVAL,
        attack=1000, defense=715, speed=13,
        counters=("trireme",), mythical=True, population=50,
    ),
})


class MovementType(Enum):
    ATTACK = "attack"
    ATTACK_VILLAGE = "attack_village"
    ATTACK_RUIN = "attack_ruin"
    ATTACK_GOD_TOWN = "attack_god_town"
    SCOUT = "scout"
    REINFORCE = "reinforce"
    TRADE = "trade"

    @classmethod
    def parse(cls, raw: str) -> "MovementType":
        try:
            return cls(raw)
        except ValueError:
            raise UnknownMovementType(raw) from None


class MovementStatus(Enum):
    MOVING = "moving"
    RETURNING = "returning"


@dataclass
class Formation:
    """Role assignment of unit kinds inside an attacking force"""
    front: Optional[str] = None  # phalanx
    mid: Optional[str] = None    # support
    back: Optional[str] = None

    @classmethod
    def from_record(cls, data: Optional[Dict]) -> Optional["Formation"]:
        if not data:
            return None
        return cls(front=data.get("front"), mid=data.get("mid"), back=data.get("back"))

    def to_record(self) -> Dict:
        return {"front": self.front, "mid": self.mid, "back": self.back}


@dataclass
class Movement:
    id: str
    type: MovementType
    status: MovementStatus
    origin_settlement_id: str
    origin_owner_id: str
    departure_ms: int
    arrival_ms: int
    origin_owner_username: str = ""
    target_settlement_id: Optional[str] = None
    target_village_id: Optional[str] = None
    target_ruin_id: Optional[str] = None
    target_town_id: Optional[str] = None
    target_owner_id: Optional[str] = None
    target_owner_username: str = ""
    units: UnitCounts = field(default_factory=dict)
    resources: ResourceAmounts = field(default_factory=dict)
    wounded: UnitCounts = field(default_factory=dict)
    attack_formation: Optional[Formation] = None
    cross_domain: bool = False
    involved_parties: List[str] = field(default_factory=list)

    def return_arrival_ms(self) -> int:
        """Return leg takes exactly as long as the outbound leg."""
        return self.arrival_ms + (self.arrival_ms - self.departure_ms)

    @classmethod
    def from_record(cls, data: Dict) -> "Movement":
        return cls(
            id=data["id"],
            type=MovementType.parse(data["type"]),
            status=MovementStatus(data.get("status", "moving")),
            origin_settlement_id=data["origin_settlement_id"],
            origin_owner_id=data["origin_owner_id"],
            origin_owner_username=data.get("origin_owner_username", ""),
            departure_ms=int(data["departure_ms"]),
            arrival_ms=int(data["arrival_ms"]),
            target_settlement_id=data.get("target_settlement_id"),
            target_village_id=data.get("target_village_id"),
            target_ruin_id=data.get("target_ruin_id"),
            target_town_id=data.get("target_town_id"),
            target_owner_id=data.get("target_owner_id"),
            target_owner_username=data.get("target_owner_username", ""),
            units=dict(data.get("units") or {}),
            resources=dict(data.get("resources") or {}),
            wounded=dict(data.get("wounded") or {}),
            attack_formation=Formation.from_record(data.get("attack_formation")),
            cross_domain=bool(data.get("cross_domain", False)),
            involved_parties=list(data.get("involved_parties") or []),
        )

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "origin_settlement_id": self.origin_settlement_id,
            "origin_owner_id": self.origin_owner_id,
            "origin_owner_username": self.origin_owner_username,
            "departure_ms": self.departure_ms,
            "arrival_ms": self.arrival_ms,
            "target_settlement_id": self.target_settlement_id,
            "target_village_id": self.target_village_id,
            "target_ruin_id": self.target_ruin_id,
            "target_town_id": self.target_town_id,
            "target_owner_id": self.target_owner_id,
            "target_owner_username": self.target_owner_username,
            "units": dict(self.units),
            "resources": dict(self.resources),
            "wounded": dict(self.wounded),
            "attack_formation": self.attack_formation.to_record() if self.attack_formation else None,
            "cross_domain": self.cross_domain,
            "involved_parties": list(self.involved_parties),
        }


@dataclass
class Settlement:
    """A player city as seen by the movement core"""
    id: str
    owner_id: str
    owner_username: str = ""
    city_name: str = ""
    x: float = 0.0
    y: float = 0.0
    resources: ResourceAmounts = field(default_factory=dict)
    units: UnitCounts = field(default_factory=dict)
    wounded: UnitCounts = field(default_factory=dict)
    buildings: Dict[str, int] = field(default_factory=dict)  # read-only here
    cave: Dict[str, int] = field(default_factory=dict)  # espionage reserve
    god: Optional[str] = None
    research: Dict[str, bool] = field(default_factory=dict)

    @property
    def cave_silver(self) -> int:
        return int(self.cave.get("silver", 0))

    @classmethod
    def from_record(cls, key: str, data: Dict) -> "Settlement":
        return cls(
            id=key,
            owner_id=data.get("owner_id", ""),
            owner_username=data.get("owner_username", ""),
            city_name=data.get("city_name", ""),
            x=data.get("x", 0.0),
            y=data.get("y", 0.0),
            resources=dict(data.get("resources") or {}),
            units=dict(data.get("units") or {}),
            wounded=dict(data.get("wounded") or {}),
            buildings=dict(data.get("buildings") or {}),
            cave=dict(data.get("cave") or {}),
            god=data.get("god"),
            research=dict(data.get("research") or {}),
        )


@dataclass
class Village:
    id: str
    name: str = ""
    level: int = 1
    troops: UnitCounts = field(default_factory=dict)
    resources: ResourceAmounts = field(default_factory=dict)

    @classmethod
    def from_record(cls, key: str, data: Dict) -> "Village":
        return cls(
            id=key,
            name=data.get("name", ""),
            level=int(data.get("level") or 1),
            troops=dict(data.get("troops") or {}),
            resources=dict(data.get("resources") or {}),
        )


@dataclass
class Ruin:
    id: str
    name: str = ""
    troops: UnitCounts = field(default_factory=dict)
    owner_id: Optional[str] = None
    research_reward: Optional[str] = None

    @classmethod
    def from_record(cls, key: str, data: Dict) -> "Ruin":
        return cls(
            id=key,
            name=data.get("name", ""),
            troops=dict(data.get("troops") or {}),
            owner_id=data.get("owner_id"),
            research_reward=data.get("research_reward"),
        )


@dataclass
class GodTown:
    """World boss: a neutral town that is worn down over many attacks"""
    id: str
    name: str = ""
    stage: str = "city"
    health: int = 10000
    troops: UnitCounts = field(default_factory=dict)

    @classmethod
    def from_record(cls, key: str, data: Dict) -> "GodTown":
        return cls(
            id=key,
            name=data.get("name", ""),
            stage=data.get("stage", "city"),
            health=int(data.get("health", 10000)),
            troops=dict(data.get("troops") or {}),
        )


@dataclass
class CombatResult:
    attacker_won: bool
    attacker_losses: UnitCounts = field(default_factory=dict)
    defender_losses: UnitCounts = field(default_factory=dict)
    plunder: ResourceAmounts = field(default_factory=dict)
    wounded: UnitCounts = field(default_factory=dict)

    def to_record(self) -> Dict:
        return {
            "attacker_won": self.attacker_won,
            "attacker_losses": dict(self.attacker_losses),
            "defender_losses": dict(self.defender_losses),
            "plunder": dict(self.plunder),
            "wounded": dict(self.wounded),
        }


@dataclass
class Report:
    """Immutable notification delivered to a single owner"""
    recipient_id: str
    type: str
    title: str
    ts_ms: int
    payload: Dict = field(default_factory=dict)
    read: bool = False

    def to_record(self) -> Dict:
        return {
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "ts_ms": self.ts_ms,
            "read": self.read,
            "payload": self.payload,
        }


@dataclass
class Event:
    kind: str
    ts_ms: int
    data: Dict
