from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from season_standings.bonuses import BonusAward, resolve_bonuses
from season_standings.rules import (
    PointsSystem,
    RaceSheet,
    ResultEntry,
    RoundConfig,
    SeasonConfig,
    points_for_entry,
    resolve_points_system,
    round_score,
    validate_entry,
)


RACE = "race"
QUALIFYING = "qualifying"


@dataclass(frozen=True)
class Contribution:
    round_id: int
    round_number: int
    race_id: int
    race_number: int
    driver_id: int
    team_id: Optional[int]
    division_id: Optional[int]
    points: float
    source: str  # race, qualifying, fastest_lap, pole
    position: Optional[int] = None


@dataclass(frozen=True)
class ExcludedRace:
    round_id: int
    round_number: int
    race_id: int
    race_number: int
    reason: str


@dataclass(frozen=True)
class RoundScore:
    round_id: int
    round_number: int
    points_source: str
    contributions: Tuple[Contribution, ...]
    bonuses: Tuple[BonusAward, ...]
    excluded_races: Tuple[ExcludedRace, ...]


def session_points_system(
    race: RaceSheet, round_config: RoundConfig, points_system: PointsSystem
) -> Optional[PointsSystem]:
    if race.is_qualifier:
        return round_config.qualifying_points_system
    return points_system


def earns_points(
    entry: ResultEntry,
    race: RaceSheet,
    round_config: RoundConfig,
    points_system: Optional[PointsSystem],
) -> bool:
    """Whether an entry can put points on the table: a scoring finish or an enabled bonus flag."""
    if entry.pole_position and round_config.pole.enabled:
        return True
    if entry.fastest_lap and round_config.fastest_lap.enabled and not race.is_qualifier:
        return True
    if not entry.is_classified or points_system is None:
        return False
    return points_system.points_for(entry.position) > 0


def orphan_reason(
    race: RaceSheet,
    season: SeasonConfig,
    round_config: RoundConfig,
    points_system: PointsSystem,
) -> Optional[str]:
    if race.orphaned:
        return "race has unresolved orphaned results"
    table = session_points_system(race, round_config, points_system)
    for entry in race.entries:
        if not earns_points(entry, race, round_config, table):
            continue
        if season.team_championship_enabled and entry.team_id is None:
            return f"result for driver {entry.driver_id} has no team"
        if season.divisions_enabled and entry.division_id is None:
            return f"result for driver {entry.driver_id} has no division"
    return None


def split_races(
    round_config: RoundConfig,
    season: SeasonConfig,
    points_system: PointsSystem,
) -> Tuple[List[RaceSheet], List[ExcludedRace]]:
    counted: list[RaceSheet] = []
    excluded: list[ExcludedRace] = []
    for race in sorted(round_config.races, key=lambda r: r.race_number):
        reason = orphan_reason(race, season, round_config, points_system)
        if reason is None:
            counted.append(race)
            continue
        excluded.append(
            ExcludedRace(
                round_id=round_config.round_id,
                round_number=round_config.round_number,
                race_id=race.race_id,
                race_number=race.race_number,
                reason=reason,
            )
        )
    return counted, excluded


def score_round(round_config: RoundConfig, season: SeasonConfig) -> RoundScore:
    """
    Base points and bonuses for one completed round.
    The points table is chosen once, before any entry is scored; qualifying
    uses the round's qualifying table when it has one.
    """
    resolved = resolve_points_system(round_config, season)
    counted, excluded = split_races(round_config, season, resolved.points_system)

    contributions: list[Contribution] = []
    for race in counted:
        table = session_points_system(race, round_config, resolved.points_system)
        source = QUALIFYING if race.is_qualifier else RACE
        for entry in race.entries:
            if table is None:
                validate_entry(entry)
                points = 0.0
            else:
                points = points_for_entry(entry, table)
            contributions.append(
                Contribution(
                    round_id=round_config.round_id,
                    round_number=round_config.round_number,
                    race_id=race.race_id,
                    race_number=race.race_number,
                    driver_id=entry.driver_id,
                    team_id=entry.team_id,
                    division_id=entry.division_id,
                    points=points,
                    source=source,
                    position=entry.position if entry.is_classified else None,
                )
            )

    awards = resolve_bonuses(round_config, counted)
    race_numbers = {race.race_id: race.race_number for race in counted}
    for award in awards:
        if not award.awarded:
            continue
        contributions.append(
            Contribution(
                round_id=round_config.round_id,
                round_number=round_config.round_number,
                race_id=award.race_id,
                race_number=race_numbers[award.race_id],
                driver_id=award.driver_id,
                team_id=award.team_id,
                division_id=award.division_id,
                points=award.points,
                source=award.kind,
            )
        )

    return RoundScore(
        round_id=round_config.round_id,
        round_number=round_config.round_number,
        points_source=resolved.source,
        contributions=tuple(contributions),
        bonuses=tuple(awards),
        excluded_races=tuple(excluded),
    )


@dataclass
class EntityTally:
    entity_id: int
    per_round: Dict[int, float] = field(default_factory=dict)
    # (round_number, race_number, position) for classified race finishes
    race_finishes: List[Tuple[int, int, int]] = field(default_factory=list)
    qualifying_positions: List[int] = field(default_factory=list)
    dropped_rounds: Tuple[int, ...] = ()

    @property
    def total(self) -> float:
        return round_score(
            sum(points for round_number, points in self.per_round.items() if round_number not in self.dropped_rounds)
        )

    def breakdown(self) -> Tuple[Tuple[int, float], ...]:
        return tuple((rn, round_score(points)) for rn, points in sorted(self.per_round.items()))


def entity_key(contribution: Contribution, scope: str) -> Optional[int]:
    if scope == "team":
        return contribution.team_id
    if scope == "division":
        return contribution.division_id
    return contribution.driver_id


def aggregate(contributions: Iterable[Contribution], scope: str) -> Dict[int, EntityTally]:
    """
    Running totals per entity for one scope.
    Team and division tallies are built from the same driver contributions.
    """
    tallies: dict[int, EntityTally] = {}
    for c in contributions:
        key = entity_key(c, scope)
        if key is None:
            continue
        tally = tallies.get(key)
        if tally is None:
            tally = tallies[key] = EntityTally(entity_id=key)
        tally.per_round[c.round_number] = tally.per_round.get(c.round_number, 0.0) + c.points
        if c.position is None:
            continue
        if c.source == QUALIFYING:
            tally.qualifying_positions.append(c.position)
        elif c.source == RACE:
            tally.race_finishes.append((c.round_number, c.race_number, c.position))
    return tallies


def rounds_to_drop(per_round: Mapping[int, float], count: int) -> Tuple[int, ...]:
    """
    Lowest-scoring rounds to leave out of a total.
    Never drops every round; on equal points the earlier round goes first.
    """
    if count <= 0 or len(per_round) <= 1:
        return ()
    count = min(count, len(per_round) - 1)
    ranked = sorted(per_round.items(), key=lambda item: (item[1], item[0]))
    return tuple(sorted(round_number for round_number, _ in ranked[:count]))


def apply_drop_rounds(tallies: Mapping[int, EntityTally], count: int) -> None:
    for tally in tallies.values():
        tally.dropped_rounds = rounds_to_drop(tally.per_round, count)


def contributions_by_division(contributions: Sequence[Contribution]) -> Dict[int, List[Contribution]]:
    grouped: dict[int, list[Contribution]] = defaultdict(list)
    for c in contributions:
        if c.division_id is not None:
            grouped[c.division_id].append(c)
    return dict(grouped)


def scope_total(tallies: Mapping[int, EntityTally]) -> float:
    """Sum of all contributions in a scope, before any dropped rounds."""
    return round_score(sum(sum(t.per_round.values()) for t in tallies.values()))
