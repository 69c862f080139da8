"""Tunable parameters of the movement core.

Only three knobs are exposed to operators: the poll cadence, the world speed
and the per-tile schedule for scouts and traders. Values come from the
environment when present:

    MOVEMENT_ENGINE_TICK_INTERVAL_SECONDS   poll cadence (default 5)
    MOVEMENT_ENGINE_WORLD_SPEED             travel speed multiplier (default 5)
    MOVEMENT_ENGINE_SCOUT_TRADE_TILE_SECONDS  seconds per tile for scout/trade (default 15)
    MOVEMENT_ENGINE_RNG_SEED                fixed seed for the scouting RNG (unset = random)
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "MOVEMENT_ENGINE_"


class EngineConfig(BaseModel):
    """Immutable runtime configuration."""

    model_config = {"frozen": True}

    tick_interval_seconds: float = Field(default=5.0, gt=0)
    world_speed_factor: float = Field(default=5.0, gt=0)
    scout_trade_tile_seconds: float = Field(default=15.0, ge=15, le=300)
    scout_trade_min_seconds: float = Field(default=15.0, gt=0)
    scout_trade_max_seconds: float = Field(default=300.0, gt=0)
    rng_seed: Optional[int] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "EngineConfig":
        if self.scout_trade_min_seconds > self.scout_trade_max_seconds:
            raise ValueError("scout_trade_min_seconds must not exceed scout_trade_max_seconds")
        return self

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from MOVEMENT_ENGINE_* environment variables."""
        values = {}
        mapping = {
            "TICK_INTERVAL_SECONDS": "tick_interval_seconds",
            "WORLD_SPEED": "world_speed_factor",
            "SCOUT_TRADE_TILE_SECONDS": "scout_trade_tile_seconds",
            "RNG_SEED": "rng_seed",
        }
        for env_name, field_name in mapping.items():
            raw = os.environ.get(ENV_PREFIX + env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        return cls(**values)
