"""Movement processor: the state machine behind every arrival.

A movement is ``moving`` until it reaches its target, where it is either
deleted (scouts, reinforcements, trades, wiped-out attacks) or rewritten as
``returning`` with survivors, wounded and loot aboard. A returning movement is
merged back into its origin settlement and deleted. Each arrival is resolved
inside one unit of work spanning the movement, the origin, the target and the
reports, so the outcome is applied completely or not at all.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from storage.repository import Store, UnitOfWork
from .combat import get_village_troops, resolve_combat
from .errors import OriginVanished, TargetVanished, UnknownMovementType
from .model import (
    CITIES, CONQUERED_RUINS, CONQUERED_VILLAGES, GOD_TOWN_PROGRESS, GOD_TOWNS, MOVEMENTS,
    REPORTS, RUINS, UNIT_TYPES, VILLAGES, CombatResult, Formation, GodTown, Movement,
    MovementStatus, MovementType, Report, ResourceAmounts, Ruin, Settlement, UnitCounts,
    UnitDomain, UnitType, Village,
)
from .rng import DRNG
from .scouting import resolve_scouting

logger = logging.getLogger(__name__)

GOD_TOWN_DAMAGE_PER_KILL = 5

VANISHED_MESSAGES = {
    MovementType.ATTACK: "The city was no longer there.",
    MovementType.ATTACK_VILLAGE: "The village was no longer there.",
    MovementType.ATTACK_RUIN: "The ruins crumbled into the sea before your fleet arrived.",
    MovementType.ATTACK_GOD_TOWN: "The City of the Gods has already vanished from the world.",
    MovementType.SCOUT: "Your spy found nothing but an empty island.",
}


class Outcome(Enum):
    RESOLVED = "resolved"    # committed a state transition
    SKIPPED = "skipped"      # record no longer matches the snapshot, nothing to do
    DISCARDED = "discarded"  # record dropped without resolution


def warehouse_capacity(buildings: Dict[str, int]) -> Optional[int]:
    """Resource ceiling per kind; None when the settlement has no warehouse."""
    level = buildings.get("warehouse")
    if not level:
        return None
    return math.floor(1000 * 1.5 ** (level - 1))


def hospital_capacity(buildings: Dict[str, int]) -> int:
    """Total wounded a settlement can hold."""
    return int(buildings.get("hospital") or 0) * 1000


@dataclass(frozen=True)
class Capacities:
    """Capacity formulas owned by the settlement economy, injected here."""
    warehouse: Callable[[Dict[str, int]], Optional[int]] = warehouse_capacity
    hospital: Callable[[Dict[str, int]], int] = hospital_capacity


@dataclass
class _Arrival:
    uow: UnitOfWork
    movement: Movement
    origin: Settlement
    now_ms: int


def _subtract(units: UnitCounts, losses: UnitCounts) -> UnitCounts:
    return {kind: max(0, count - losses.get(kind, 0)) for kind, count in units.items()}


def _add(base: Dict[str, int], extra: Dict[str, int]) -> Dict[str, int]:
    merged = dict(base)
    for kind, amount in extra.items():
        merged[kind] = merged.get(kind, 0) + amount
    return merged


def _survivors(sent: UnitCounts, result: CombatResult) -> UnitCounts:
    survivors = {}
    for kind, count in sent.items():
        left = count - result.attacker_losses.get(kind, 0) - result.wounded.get(kind, 0)
        if left > 0:
            survivors[kind] = left
    return survivors


class MovementProcessor:
    """Resolves arrived movements, one unit of work per arrival."""

    def __init__(self, store: Store, catalog: Mapping[str, UnitType] = UNIT_TYPES,
                 rng: Optional[DRNG] = None, capacities: Optional[Capacities] = None):
        self.store = store
        self.catalog = catalog
        self.rng = rng or DRNG()
        self.capacities = capacities or Capacities()

    def process(self, snapshot: Dict, now_ms: int) -> Outcome:
        """Resolve one movement previously returned by the due-movement query.

        The stored record is re-read inside the unit of work; if its status or
        arrival time no longer match the snapshot, another tick already handled
        it and nothing is applied.

        Raises:
            TransientCommitFailure: If the commit lost a race; retry later
        """
        movement_id = snapshot["id"]
        with self.store.begin() as uow:
            stored = uow.get(MOVEMENTS, movement_id)
            if (stored is None
                    or stored.get("status") != snapshot.get("status")
                    or stored.get("arrival_ms") != snapshot.get("arrival_ms")
                    or int(stored.get("arrival_ms", 0)) > now_ms):
                logger.info(f"Movement {movement_id} already handled, skipping")
                return Outcome.SKIPPED

            try:
                movement = Movement.from_record(dict(stored, id=movement_id))
            except UnknownMovementType as e:
                logger.warning(f"Discarding movement {movement_id}: {e}")
                uow.delete(MOVEMENTS, movement_id)
                uow.commit()
                return Outcome.DISCARDED

            try:
                origin = self._load_origin(uow, movement)
            except OriginVanished as e:
                # Nobody left to notify
                logger.info(f"Discarding movement {movement_id}: {e}")
                uow.delete(MOVEMENTS, movement_id)
                uow.commit()
                return Outcome.DISCARDED

            arrival = _Arrival(uow=uow, movement=movement, origin=origin, now_ms=now_ms)
            if movement.status == MovementStatus.RETURNING:
                self._handle_return(arrival)
            else:
                handler = _MOVING_HANDLERS[movement.type]
                try:
                    handler(self, arrival)
                except TargetVanished as e:
                    self._handle_vanished(arrival, e)

            uow.commit()

        logger.info(f"Movement {movement_id} ({movement.type.value}, {movement.status.value}) resolved")
        return Outcome.RESOLVED

    # ------------------------------------------------------------------
    # Loading

    def _load_origin(self, uow: UnitOfWork, movement: Movement) -> Settlement:
        data = uow.get(CITIES, movement.origin_settlement_id)
        if data is None:
            raise OriginVanished(movement.origin_settlement_id)
        return Settlement.from_record(movement.origin_settlement_id, data)

    def _find_city(self, uow: UnitOfWork, key: Optional[str]) -> Optional[Settlement]:
        data = uow.get(CITIES, key)
        return Settlement.from_record(key, data) if data is not None else None

    def _load_city(self, uow: UnitOfWork, key: Optional[str]) -> Settlement:
        city = self._find_city(uow, key)
        if city is None:
            raise TargetVanished(CITIES, key)
        return city

    def _load_village(self, uow: UnitOfWork, key: Optional[str]) -> Village:
        data = uow.get(VILLAGES, key)
        if data is None:
            raise TargetVanished(VILLAGES, key)
        return Village.from_record(key, data)

    def _load_ruin(self, uow: UnitOfWork, key: Optional[str]) -> Ruin:
        data = uow.get(RUINS, key)
        if data is None:
            raise TargetVanished(RUINS, key)
        return Ruin.from_record(key, data)

    def _load_god_town(self, uow: UnitOfWork, key: Optional[str]) -> GodTown:
        data = uow.get(GOD_TOWNS, key)
        if data is None:
            raise TargetVanished(GOD_TOWNS, key)
        return GodTown.from_record(key, data)

    # ------------------------------------------------------------------
    # Staging helpers

    def _report(self, arrival: _Arrival, recipient_id: Optional[str], report_type: str,
                title: str, payload: Dict) -> None:
        if not recipient_id:
            return
        report = Report(recipient_id=recipient_id, type=report_type, title=title,
                        ts_ms=arrival.now_ms, payload=payload)
        arrival.uow.set(REPORTS, uuid.uuid4().hex, report.to_record())

    def _send_home(self, arrival: _Arrival, units: UnitCounts, resources: ResourceAmounts,
                   wounded: UnitCounts) -> None:
        m = arrival.movement
        arrival.uow.set(MOVEMENTS, m.id, {
            "status": MovementStatus.RETURNING.value,
            "units": units,
            "resources": resources,
            "wounded": wounded,
            "arrival_ms": m.return_arrival_ms(),
            "involved_parties": [m.origin_owner_id],
        })

    def _finish(self, arrival: _Arrival) -> None:
        arrival.uow.delete(MOVEMENTS, arrival.movement.id)

    def _conclude_attack(self, arrival: _Arrival, result: CombatResult,
                         loot: ResourceAmounts) -> None:
        """Send survivors and wounded home with their loot, or close the movement."""
        survivors = _survivors(arrival.movement.units, result)
        if survivors or result.wounded:
            self._send_home(arrival, survivors, loot, result.wounded)
        else:
            self._finish(arrival)

    def _formation(self, movement: Movement) -> Formation:
        return movement.attack_formation or Formation()

    # ------------------------------------------------------------------
    # Moving handlers

    def _handle_vanished(self, arrival: _Arrival, error: TargetVanished) -> None:
        m = arrival.movement
        logger.warning(f"Movement {m.id}: {error}")
        self._finish(arrival)
        self._report(arrival, m.origin_owner_id, m.type.value, "Target vanished", {
            "message": VANISHED_MESSAGES.get(m.type, "The target no longer exists."),
        })

    def _handle_city_attack(self, arrival: _Arrival) -> None:
        m = arrival.movement
        uow = arrival.uow
        target = self._load_city(uow, m.target_settlement_id)
        formation = self._formation(m)

        result = resolve_combat(
            m.units, target.units, target.resources, m.cross_domain,
            formation.front, formation.mid, catalog=self.catalog,
        )

        defender_fields = {"units": _subtract(target.units, result.defender_losses)}
        if result.attacker_won:
            defender_fields["resources"] = {
                resource: max(0, amount - result.plunder.get(resource, 0))
                for resource, amount in target.resources.items()
            }
        uow.set(CITIES, target.id, defender_fields)

        survivors = _survivors(m.units, result)
        saw_battle = any(
            kind in self.catalog
            and (self.catalog[kind].domain == UnitDomain.LAND or self.catalog[kind].mythical)
            for kind in survivors
        )

        defender_owner = target.owner_id or m.target_owner_id
        attacker_side = {
            "city_name": arrival.origin.city_name,
            "units": dict(m.units),
            "losses": dict(result.attacker_losses),
            "owner_id": m.origin_owner_id,
            "username": m.origin_owner_username or "Unknown Player",
            "x": arrival.origin.x,
            "y": arrival.origin.y,
        }
        defender_side = {
            "city_name": target.city_name,
            "units": dict(target.units),
            "losses": dict(result.defender_losses),
            "owner_id": defender_owner,
            "username": target.owner_username or m.target_owner_username or "Unknown Player",
            "x": target.x,
            "y": target.y,
        }

        outcome = result.to_record()
        if saw_battle:
            attacker_view = defender_side
        else:
            outcome["message"] = ("Your forces were annihilated. "
                                  "No information could be gathered from the battle.")
            attacker_view = {"city_name": target.city_name, "units": {}, "losses": {}}

        self._report(arrival, m.origin_owner_id, "attack", f"Attack on {target.city_name}", {
            "outcome": outcome,
            "attacker": attacker_side,
            "defender": attacker_view,
        })
        self._report(arrival, defender_owner, "attack",
                     f"Defense against {arrival.origin.city_name}", {
                         "outcome": dict(result.to_record(), attacker_won=not result.attacker_won),
                         "attacker": attacker_side,
                         "defender": defender_side,
                     })

        self._conclude_attack(arrival, result, result.plunder)

    def _handle_village_attack(self, arrival: _Arrival) -> None:
        m = arrival.movement
        uow = arrival.uow
        village = self._load_village(uow, m.target_village_id)
        garrison = get_village_troops(village.troops, village.level)
        formation = self._formation(m)

        result = resolve_combat(
            m.units, garrison, village.resources, False,
            formation.front, formation.mid, catalog=self.catalog,
        )

        if result.attacker_won:
            uow.set(CONQUERED_VILLAGES, f"{m.origin_owner_id}:{village.id}", {
                "owner_id": m.origin_owner_id,
                "village_id": village.id,
                "level": village.level,
                "last_collected_ms": arrival.now_ms,
                "happiness": 100,
                "happiness_updated_ms": arrival.now_ms,
            })

        self._report(arrival, m.origin_owner_id, "attack_village", f"Attack on {village.name}", {
            "outcome": result.to_record(),
            "attacker": {
                "city_name": arrival.origin.city_name,
                "units": dict(m.units),
                "losses": dict(result.attacker_losses),
            },
            "defender": {
                "village_name": village.name,
                "troops": garrison,
                "losses": dict(result.defender_losses),
            },
        })

        self._conclude_attack(arrival, result, result.plunder)

    def _handle_ruin_attack(self, arrival: _Arrival) -> None:
        m = arrival.movement
        uow = arrival.uow
        ruin = self._load_ruin(uow, m.target_ruin_id)

        if ruin.owner_id:
            self._send_home(arrival, dict(m.units), {}, dict(m.wounded))
            self._report(arrival, m.origin_owner_id, "attack_ruin", f"Attack on {ruin.name}", {
                "message": "The ruins had already been claimed. Your fleet turned back.",
            })
            return

        formation = self._formation(m)
        # Ruins lie out at sea
        result = resolve_combat(
            m.units, ruin.troops, {}, True,
            formation.front, formation.mid, catalog=self.catalog,
        )

        if result.attacker_won:
            if ruin.research_reward:
                research = dict(arrival.origin.research)
                research[ruin.research_reward] = True
                uow.set(CITIES, arrival.origin.id, {"research": research})
            uow.set(RUINS, ruin.id, {
                "owner_id": m.origin_owner_id,
                "owner_username": m.origin_owner_username,
            })
            uow.set(CONQUERED_RUINS, f"{m.origin_owner_id}:{ruin.id}", {
                "owner_id": m.origin_owner_id,
                "ruin_id": ruin.id,
                "conquered_ms": arrival.now_ms,
                "research_reward": ruin.research_reward,
            })
        else:
            uow.set(RUINS, ruin.id, {"troops": _subtract(ruin.troops, result.defender_losses)})

        self._report(arrival, m.origin_owner_id, "attack_ruin", f"Attack on {ruin.name}", {
            "outcome": result.to_record(),
            "attacker": {
                "city_name": arrival.origin.city_name,
                "units": dict(m.units),
                "losses": dict(result.attacker_losses),
                "owner_id": m.origin_owner_id,
                "username": m.origin_owner_username or "Unknown Player",
            },
            "defender": {
                "ruin_name": ruin.name,
                "troops": dict(ruin.troops),
                "losses": dict(result.defender_losses),
            },
            "reward": ruin.research_reward if result.attacker_won else None,
        })

        self._conclude_attack(arrival, result, {})

    def _handle_god_town_attack(self, arrival: _Arrival) -> None:
        m = arrival.movement
        uow = arrival.uow
        town = self._load_god_town(uow, m.target_town_id)

        if town.stage != "city":
            self._send_home(arrival, dict(m.units), {}, dict(m.wounded))
            self._report(arrival, m.origin_owner_id, "attack_god_town", f"Attack on {town.name}", {
                "message": "The City of the Gods has not risen yet. Your troops turned back.",
            })
            return

        formation = self._formation(m)
        result = resolve_combat(
            m.units, town.troops, {}, False,
            formation.front, formation.mid, catalog=self.catalog,
        )

        damage = sum(result.defender_losses.values()) * GOD_TOWN_DAMAGE_PER_KILL
        new_health = max(0, town.health - damage)
        war_points = damage // 10
        rewards = {"wood": war_points * 10, "stone": war_points * 10, "silver": war_points * 5}

        progress_key = f"{town.id}:{m.origin_owner_id}"
        progress = uow.get(GOD_TOWN_PROGRESS, progress_key) or {}
        uow.set(GOD_TOWN_PROGRESS, progress_key, {
            "town_id": town.id,
            "owner_id": m.origin_owner_id,
            "damage_dealt": int(progress.get("damage_dealt", 0)) + damage,
        })

        report_rewards = {"war_points": war_points, "resources": rewards}
        if new_health == 0:
            uow.delete(GOD_TOWNS, town.id)
            report_rewards["message"] = ("You have vanquished the City of the Gods! "
                                         "It has vanished from the world.")
        else:
            uow.set(GOD_TOWNS, town.id, {
                "health": new_health,
                "troops": _subtract(town.troops, result.defender_losses),
            })

        payload = {
            "outcome": result.to_record(),
            "damage_dealt": damage,
            "health_left": new_health,
            "rewards": report_rewards,
        }
        self._report(arrival, m.origin_owner_id, "attack_god_town", f"Attack on {town.name}", payload)
        self._report(arrival, m.target_owner_id, "attack_god_town",
                     f"Defense of {town.name}",
                     dict(payload, outcome=dict(result.to_record(),
                                                attacker_won=not result.attacker_won)))

        self._conclude_attack(arrival, result, rewards)

    def _handle_scout(self, arrival: _Arrival) -> None:
        m = arrival.movement
        uow = arrival.uow
        target = self._load_city(uow, m.target_settlement_id)
        result = resolve_scouting(target, int(m.resources.get("silver", 0)), self.rng)

        if result.success:
            self._report(arrival, m.origin_owner_id, "scout",
                         f"Scout report of {target.city_name}", result.to_record())
        else:
            cave = dict(target.cave)
            cave["silver"] = target.cave_silver + result.silver_gained
            uow.set(CITIES, target.id, {"cave": cave})
            self._report(arrival, m.origin_owner_id, "scout",
                         f"Scouting {target.city_name} failed", result.to_record())
            self._report(arrival, target.owner_id or m.target_owner_id, "spy_caught",
                         f"Caught a spy from {arrival.origin.city_name}!", {
                             "origin_city": arrival.origin.city_name,
                             "silver_gained": result.silver_gained,
                         })

        # Spies never come home
        self._finish(arrival)

    def _handle_reinforce(self, arrival: _Arrival) -> None:
        m = arrival.movement
        target = self._find_city(arrival.uow, m.target_settlement_id)
        if target is None:
            logger.info(f"Movement {m.id}: reinforcement target is gone, dropping")
            self._finish(arrival)
            return

        arrival.uow.set(CITIES, target.id, {"units": _add(target.units, m.units)})
        self._report(arrival, m.origin_owner_id, "reinforce",
                     f"Reinforcement to {target.city_name}", {"units": dict(m.units)})
        self._report(arrival, target.owner_id or m.target_owner_id, "reinforce",
                     f"Reinforcements from {arrival.origin.city_name}", {"units": dict(m.units)})
        self._finish(arrival)

    def _handle_trade(self, arrival: _Arrival) -> None:
        m = arrival.movement
        target = self._find_city(arrival.uow, m.target_settlement_id)
        if target is None:
            logger.info(f"Movement {m.id}: trade partner is gone, dropping")
            self._finish(arrival)
            return

        arrival.uow.set(CITIES, target.id, {"resources": _add(target.resources, m.resources)})
        payload = {
            "resources": dict(m.resources),
            "origin_city_name": arrival.origin.city_name,
            "target_city_name": target.city_name,
        }
        self._report(arrival, m.origin_owner_id, "trade", f"Trade to {target.city_name}", payload)
        self._report(arrival, target.owner_id or m.target_owner_id, "trade",
                     f"Trade from {arrival.origin.city_name}", payload)
        self._finish(arrival)

    # ------------------------------------------------------------------
    # Returning

    def _handle_return(self, arrival: _Arrival) -> None:
        m = arrival.movement
        origin = arrival.origin

        units = _add(origin.units, m.units)

        ceiling = self.capacities.warehouse(origin.buildings)
        resources = dict(origin.resources)
        for resource, amount in m.resources.items():
            current = resources.get(resource, 0)
            total = current + amount
            if ceiling is not None:
                # Never shrink a stock that already sits above the ceiling
                total = max(current, min(ceiling, total))
            resources[resource] = total

        capacity = self.capacities.hospital(origin.buildings)
        wounded = dict(origin.wounded)
        in_hospital = sum(wounded.values())
        dropped: UnitCounts = {}
        for kind, count in m.wounded.items():
            admitted = min(count, max(0, capacity - in_hospital))
            if admitted > 0:
                wounded[kind] = wounded.get(kind, 0) + admitted
                in_hospital += admitted
            if count > admitted:
                dropped[kind] = count - admitted
        if dropped:
            logger.warning(
                f"Movement {m.id}: hospital of {origin.id} is full "
                f"(capacity {capacity}), dropping wounded {dropped}"
            )

        arrival.uow.set(CITIES, origin.id, {
            "units": units,
            "resources": resources,
            "wounded": wounded,
        })
        self._report(arrival, m.origin_owner_id, "return",
                     f"Troops returned to {origin.city_name}", {
                         "units": dict(m.units),
                         "resources": dict(m.resources),
                         "wounded": dict(m.wounded),
                         "wounded_dropped": dropped,
                     })
        self._finish(arrival)


_MOVING_HANDLERS: Dict[MovementType, Callable[[MovementProcessor, _Arrival], None]] = {
    MovementType.ATTACK: MovementProcessor._handle_city_attack,
    MovementType.ATTACK_VILLAGE: MovementProcessor._handle_village_attack,
    MovementType.ATTACK_RUIN: MovementProcessor._handle_ruin_attack,
    MovementType.ATTACK_GOD_TOWN: MovementProcessor._handle_god_town_attack,
    MovementType.SCOUT: MovementProcessor._handle_scout,
    MovementType.REINFORCE: MovementProcessor._handle_reinforce,
    MovementType.TRADE: MovementProcessor._handle_trade,
}

# Every movement type must have a handler; a new type fails at import, not at runtime
_unhandled = set(MovementType) - set(_MOVING_HANDLERS)
if _unhandled:
    raise RuntimeError(f"movement types without a handler: {sorted(t.value for t in _unhandled)}")
