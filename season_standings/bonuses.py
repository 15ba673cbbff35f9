from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from season_standings.exceptions import DataIntegrityError
from season_standings.rules import TOP_TEN, BonusRule, RaceSheet, ResultEntry, RoundConfig


logger = logging.getLogger(__name__)

FASTEST_LAP = "fastest_lap"
POLE = "pole"


@dataclass(frozen=True)
class BonusAward:
    kind: str
    driver_id: int
    team_id: Optional[int]
    division_id: Optional[int]
    race_id: int
    points: float
    awarded: bool
    race_position: Optional[int]


def _single_flagged(
    round_config: RoundConfig,
    races: Sequence[RaceSheet],
    kind: str,
) -> Optional[Tuple[RaceSheet, ResultEntry]]:
    """
    The one entry carrying the bonus flag, or None.
    Two flagged entries in one round are never resolved by picking one.
    """
    flagged: list[Tuple[RaceSheet, ResultEntry]] = []
    for race in races:
        if kind == FASTEST_LAP and race.is_qualifier:
            continue
        for entry in race.entries:
            if (entry.fastest_lap if kind == FASTEST_LAP else entry.pole_position):
                flagged.append((race, entry))

    if len(flagged) > 1:
        drivers = ", ".join(str(entry.driver_id) for _, entry in flagged)
        raise DataIntegrityError(
            f"Round {round_config.round_number} has {len(flagged)} entries flagged for {kind} "
            f"(drivers {drivers})"
        )
    return flagged[0] if flagged else None


def race_finish_for_driver(races: Sequence[RaceSheet], driver_id: int) -> Optional[int]:
    """Driver's finish in the first race of the round they took part in."""
    for race in sorted(races, key=lambda r: r.race_number):
        if race.is_qualifier:
            continue
        for entry in race.entries:
            if entry.driver_id == driver_id:
                return entry.position if entry.is_classified else None
    return None


def passes_top10_gate(rule: BonusRule, race_position: Optional[int]) -> bool:
    if not rule.top10_only:
        return True
    return race_position is not None and race_position <= TOP_TEN


def _resolve_one(
    round_config: RoundConfig,
    races: Sequence[RaceSheet],
    kind: str,
    rule: BonusRule,
) -> Optional[BonusAward]:
    if not rule.enabled:
        return None
    found = _single_flagged(round_config, races, kind)
    if found is None:
        return None
    race, entry = found

    if kind == FASTEST_LAP or not race.is_qualifier:
        race_position = entry.position if entry.is_classified else None
    else:
        # Pole is gated by the race result, not the qualifying position.
        race_position = race_finish_for_driver(races, entry.driver_id)

    awarded = passes_top10_gate(rule, race_position)
    if not awarded:
        logger.debug(
            "Round %s: %s bonus withheld from driver %s (race position %s)",
            round_config.round_number,
            kind,
            entry.driver_id,
            race_position,
        )
    return BonusAward(
        kind=kind,
        driver_id=entry.driver_id,
        team_id=entry.team_id,
        division_id=entry.division_id,
        race_id=race.race_id,
        points=float(rule.points_value or 0.0) if awarded else 0.0,
        awarded=awarded,
        race_position=race_position,
    )


def resolve_bonuses(round_config: RoundConfig, races: Sequence[RaceSheet]) -> List[BonusAward]:
    """
    Fastest-lap and pole awards for one round.

    `races` are the round's counted races; flags inside excluded races are
    not looked at. Flags for a disabled bonus are ignored.
    """
    fastest_rule = round_config.fastest_lap.validated("Fastest lap")
    pole_rule = round_config.pole.validated("Pole position")

    awards: list[BonusAward] = []
    for kind, rule in ((FASTEST_LAP, fastest_rule), (POLE, pole_rule)):
        award = _resolve_one(round_config, races, kind, rule)
        if award is not None:
            awards.append(award)
    return awards
