from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator
from engine.model import MovementType

class FormationIn(BaseModel):
    """Role assignment of an attacking force."""
    front: Optional[str] = None
    mid: Optional[str] = None
    back: Optional[str] = None

class MovementIn(BaseModel):
    """Dispatch request for a new movement."""
    type: MovementType
    origin_settlement_id: str
    target_settlement_id: Optional[str] = None
    target_village_id: Optional[str] = None
    target_ruin_id: Optional[str] = None
    target_town_id: Optional[str] = None
    units: Dict[str, int] = Field(default_factory=dict)
    resources: Dict[str, int] = Field(default_factory=dict)
    attack_formation: Optional[FormationIn] = None
    cross_domain: bool = False
    departure_ms: Optional[int] = None  # defaults to now

    @field_validator("units", "resources")
    @classmethod
    def _non_negative(cls, v: Dict[str, int]) -> Dict[str, int]:
        for kind, amount in v.items():
            if amount < 0:
                raise ValueError(f"{kind} must not be negative")
        return {kind: amount for kind, amount in v.items() if amount > 0}

class MovementCreated(BaseModel):
    """Stored movement and its computed schedule."""
    id: str
    departure_ms: int
    arrival_ms: int
    travel_time: str

class TickResponse(BaseModel):
    """Counts from one poll tick."""
    now_ms: int
    resolved: int
    skipped: int
    discarded: int
    failed: int

class EventsResponse(BaseModel):
    """Events response schema."""
    next_offset: int
    events: list[dict]
