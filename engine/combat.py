import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set
from .model import CombatResult, ResourceAmounts, UNIT_TYPES, UnitCounts, UnitDomain, UnitType

Catalog = Mapping[str, UnitType]

# Role weighting of the opening clash
SUPPORT_WEIGHT = 0.5
OTHER_WEIGHT = 0.2

# Share of the loss budget absorbed by each role
PHALANX_SHARE = 0.6
SUPPORT_SHARE = 0.3

COUNTER_ATTACK_BONUS = 1.2
COUNTER_DEFENSE_PENALTY = 0.8

PLUNDER_RATE = 0.25
WOUNDED_RATE = 0.15

# Garrison of an untouched neutral village by level
VILLAGE_GARRISONS: Dict[int, UnitCounts] = {
    1: {"swordsman": 15, "archer": 10},
    2: {"swordsman": 25, "archer": 15, "slinger": 5},
    3: {"swordsman": 40, "archer": 25, "slinger": 10, "hoplite": 5},
    4: {"swordsman": 60, "archer": 40, "slinger": 20, "hoplite": 15, "cavalry": 5},
    5: {"swordsman": 100, "archer": 75, "slinger": 50, "hoplite": 40, "cavalry": 20},
}


def get_village_troops(troops: Optional[UnitCounts], level: int) -> UnitCounts:
    """Village garrison: stored troops if any, otherwise the default for its level."""
    if troops:
        return dict(troops)
    return dict(VILLAGE_GARRISONS.get(level, VILLAGE_GARRISONS[1]))


@dataclass
class BattleOutcome:
    """Result of a single-domain sub-battle"""
    attacker_won: bool
    attacker_losses: UnitCounts = field(default_factory=dict)
    defender_losses: UnitCounts = field(default_factory=dict)


@dataclass
class _Power:
    total: float = 0.0
    phalanx: float = 0.0
    support: float = 0.0
    other: float = 0.0

    @property
    def initial(self) -> float:
        """Engagement power of the opening clash; the phalanx leads."""
        return self.phalanx + self.support * SUPPORT_WEIGHT + self.other * OTHER_WEIGHT


def _in_domain(kind: str, domain: UnitDomain, catalog: Catalog) -> bool:
    info = catalog.get(kind)
    return info is not None and info.domain == domain


def _subtract(units: UnitCounts, losses: UnitCounts) -> UnitCounts:
    return {kind: max(0, count - losses.get(kind, 0)) for kind, count in units.items()}


def _merge_into(total: UnitCounts, extra: UnitCounts) -> None:
    for kind, count in extra.items():
        total[kind] = total.get(kind, 0) + count


def _effective_power(units: UnitCounts, opponents: UnitCounts, is_attacker: bool,
                     domain: UnitDomain, catalog: Catalog,
                     phalanx: Optional[str] = None, support: Optional[str] = None) -> _Power:
    """Sum attack (or defense) of one side, applying counter modifiers."""
    power = _Power()
    present = [kind for kind, count in opponents.items() if count > 0]

    for kind, count in units.items():
        if count <= 0:
            continue
        info = catalog.get(kind)
        if info is None or info.domain != domain:
            continue

        attack = info.attack
        defense = info.defense
        # One modifier per opposing kind present, not per opposing unit
        for opponent in present:
            if opponent in info.counters:
                attack *= COUNTER_ATTACK_BONUS
            opponent_info = catalog.get(opponent)
            if opponent_info is not None and kind in opponent_info.counters:
                defense *= COUNTER_DEFENSE_PENALTY

        unit_power = count * (attack if is_attacker else defense)
        if kind == phalanx:
            power.phalanx += unit_power
        elif kind == support:
            power.support += unit_power
        else:
            power.other += unit_power
        power.total += unit_power

    return power


def _apply_losses(units: UnitCounts, loss_ratio: float, domain: UnitDomain, catalog: Catalog,
                  phalanx: Optional[str], support: Optional[str]) -> UnitCounts:
    """Spread a side's loss budget over its kinds: phalanx first, then support, then the rest.

    The budget is taken over the whole roster; only this domain's kinds absorb it.
    """
    in_play = {kind: count for kind, count in units.items()
               if count > 0 and _in_domain(kind, domain, catalog)}
    if not in_play:
        return {}
    total_units = sum(count for count in units.values() if count > 0)

    losses: UnitCounts = {}
    remaining = math.floor(total_units * loss_ratio)

    if phalanx in in_play and remaining > 0:
        loss = min(in_play[phalanx], math.ceil(remaining * PHALANX_SHARE))
        losses[phalanx] = loss
        remaining -= loss

    # A kind holding both roles takes both shares
    if support in in_play and remaining > 0:
        loss = min(in_play[support] - losses.get(support, 0), math.ceil(remaining * SUPPORT_SHARE))
        losses[support] = losses.get(support, 0) + loss
        remaining -= loss

    others = [kind for kind in in_play if kind != phalanx and kind != support]
    if remaining > 0 and others:
        pool_total = sum(in_play[kind] for kind in others)
        budget = remaining
        for kind in others:
            share = min(in_play[kind], budget * in_play[kind] // pool_total)
            if share > 0:
                losses[kind] = share
                remaining -= share

        # Rounding remainder goes to whichever kind still has the most units
        while remaining > 0:
            standing = {kind: in_play[kind] - losses.get(kind, 0) for kind in others}
            largest = max(standing, key=standing.get)
            if standing[largest] <= 0:
                break
            extra = min(remaining, standing[largest])
            losses[largest] = losses.get(largest, 0) + extra
            remaining -= extra

    return {kind: loss for kind, loss in losses.items() if loss > 0}


def resolve_battle(attacking_units: UnitCounts, defending_units: UnitCounts, domain: UnitDomain,
                   attacker_front: Optional[str] = None, attacker_mid: Optional[str] = None,
                   defender_front: Optional[str] = None, defender_mid: Optional[str] = None,
                   catalog: Catalog = UNIT_TYPES) -> BattleOutcome:
    """Resolve one domain's clash between two rosters. Pure and deterministic."""
    attacking_units = attacking_units or {}
    defending_units = defending_units or {}

    has_attackers = any(
        count > 0 and _in_domain(kind, domain, catalog) and catalog[kind].attack > 0
        for kind, count in attacking_units.items()
    )
    has_defenders = any(
        count > 0 and _in_domain(kind, domain, catalog)
        for kind, count in defending_units.items()
    )

    # An absent defense is a win, not a draw
    if not has_defenders:
        return BattleOutcome(attacker_won=True)
    if not has_attackers:
        return BattleOutcome(attacker_won=False)

    attacker = _effective_power(attacking_units, defending_units, True, domain, catalog,
                                attacker_front, attacker_mid)
    defender = _effective_power(defending_units, attacking_units, False, domain, catalog,
                                defender_front, defender_mid)

    attacker_ratio = min(1.0, defender.initial / (attacker.initial or 1))
    defender_ratio = min(1.0, attacker.initial / (defender.initial or 1))

    attacker_losses = _apply_losses(attacking_units, attacker_ratio, domain, catalog,
                                    attacker_front, attacker_mid)
    defender_losses = _apply_losses(defending_units, defender_ratio, domain, catalog,
                                    defender_front, defender_mid)

    attackers_left = _subtract(attacking_units, attacker_losses)
    defenders_left = _subtract(defending_units, defender_losses)

    final_attacker = _effective_power(attackers_left, defenders_left, True, domain, catalog).total
    final_defender = _effective_power(defenders_left, attackers_left, False, domain, catalog).total

    # Ties favor the attacker
    return BattleOutcome(
        attacker_won=final_attacker >= final_defender,
        attacker_losses=attacker_losses,
        defender_losses=defender_losses,
    )


def resolve_combat(attacking_units: UnitCounts, defending_units: UnitCounts,
                   defending_resources: Optional[ResourceAmounts] = None,
                   cross_domain: bool = False,
                   attacker_front: Optional[str] = None, attacker_mid: Optional[str] = None,
                   defender_front: Optional[str] = None, defender_mid: Optional[str] = None,
                   catalog: Catalog = UNIT_TYPES) -> CombatResult:
    """Resolve a full attack: optional naval phase, land phase, plunder and wounded."""
    attacking_units = dict(attacking_units or {})
    defending_units = dict(defending_units or {})

    attacker_losses: UnitCounts = {}
    defender_losses: UnitCounts = {}
    drowned: Set[str] = set()

    if cross_domain:
        # No formations at sea
        naval = resolve_battle(attacking_units, defending_units, UnitDomain.NAVAL, catalog=catalog)
        _merge_into(attacker_losses, naval.attacker_losses)
        _merge_into(defender_losses, naval.defender_losses)

        if naval.attacker_won:
            survivors = _subtract(attacking_units, naval.attacker_losses)
            land = resolve_battle(survivors, defending_units, UnitDomain.LAND,
                                  attacker_front, attacker_mid, defender_front, defender_mid,
                                  catalog=catalog)
            _merge_into(attacker_losses, land.attacker_losses)
            _merge_into(defender_losses, land.defender_losses)
            attacker_won = land.attacker_won
        else:
            # The transport fleet went down with everyone aboard
            attacker_won = False
            for kind, count in attacking_units.items():
                if count > 0 and _in_domain(kind, UnitDomain.LAND, catalog):
                    attacker_losses[kind] = attacker_losses.get(kind, 0) + count
                    drowned.add(kind)
    else:
        land = resolve_battle(attacking_units, defending_units, UnitDomain.LAND,
                              attacker_front, attacker_mid, defender_front, defender_mid,
                              catalog=catalog)
        _merge_into(attacker_losses, land.attacker_losses)
        _merge_into(defender_losses, land.defender_losses)
        attacker_won = land.attacker_won

    plunder: ResourceAmounts = {}
    if attacker_won:
        for resource, amount in (defending_resources or {}).items():
            stock = max(0, amount)
            plunder[resource] = min(int(stock), math.floor(stock * PLUNDER_RATE))

    # Only land, non-mythical casualties can be carried home wounded
    wounded: UnitCounts = {}
    for kind, lost in list(attacker_losses.items()):
        info = catalog.get(kind)
        if info is None or info.domain != UnitDomain.LAND or info.mythical or kind in drowned:
            continue
        count = math.floor(lost * WOUNDED_RATE)
        if count > 0:
            wounded[kind] = count
            attacker_losses[kind] = lost - count

    return CombatResult(
        attacker_won=attacker_won,
        attacker_losses=attacker_losses,
        defender_losses=defender_losses,
        plunder=plunder,
        wounded=wounded,
    )
