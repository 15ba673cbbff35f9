from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Tuple

from season_standings.exceptions import ConfigurationError, DataIntegrityError


SCORE_DECIMALS = 2
TOP_TEN = 10
# Sort sentinel for "no classified position", larger than any real grid.
UNPLACED = 9999

FINISHED = "finished"
NON_COUNTING_STATUSES = frozenset({"dnf", "dns", "dsq", "excluded"})
RESULT_STATUSES = NON_COUNTING_STATUSES | {FINISHED}

ROUND_COMPLETED = "completed"
SCOPES = ("driver", "team", "division")


def round_score(value: float) -> float:
    return round(float(value), SCORE_DECIMALS)


@dataclass(frozen=True)
class PointsSystem:
    """Finishing position -> points, ordered by position."""

    table: Tuple[Tuple[int, float], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[Any, Any]]) -> "PointsSystem":
        if mapping is None:
            raise ConfigurationError("Points system is missing")
        if not isinstance(mapping, Mapping):
            raise ConfigurationError("Points system must be a mapping of position to points")

        table: dict[int, float] = {}
        for raw_position, raw_points in mapping.items():
            try:
                position = int(raw_position)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Points system position {raw_position!r} is not an integer")
            if isinstance(raw_position, float) and raw_position != position:
                raise ConfigurationError(f"Points system position {raw_position!r} is not an integer")
            if position < 1:
                raise ConfigurationError(f"Points system position {position} must be positive")
            if isinstance(raw_points, bool) or not isinstance(raw_points, (int, float)):
                raise ConfigurationError(f"Points for position {position} must be a number")
            if raw_points < 0:
                raise ConfigurationError(f"Points for position {position} must not be negative")
            if position in table:
                raise ConfigurationError(f"Points system lists position {position} twice")
            table[position] = float(raw_points)
        return cls(table=tuple(sorted(table.items())))

    def points_for(self, position: int) -> float:
        for pos, points in self.table:
            if pos == position:
                return points
        return 0.0

    def as_dict(self) -> dict[int, float]:
        return dict(self.table)


@dataclass(frozen=True)
class BonusRule:
    enabled: bool = False
    points_value: Optional[float] = None
    top10_only: bool = False

    def validated(self, label: str) -> "BonusRule":
        if not self.enabled:
            return self
        if self.points_value is None:
            raise ConfigurationError(f"{label} bonus is enabled without a points value")
        if self.points_value < 0:
            raise ConfigurationError(f"{label} bonus points must not be negative")
        return self


@dataclass(frozen=True)
class TiebreakRule:
    kind: str
    order: int


@dataclass(frozen=True)
class ResultEntry:
    driver_id: int
    position: Optional[int] = None
    status: str = FINISHED
    team_id: Optional[int] = None
    division_id: Optional[int] = None
    fastest_lap: bool = False
    pole_position: bool = False

    @property
    def is_classified(self) -> bool:
        return self.status == FINISHED and self.position is not None


@dataclass(frozen=True)
class RaceSheet:
    race_id: int
    race_number: int
    entries: Tuple[ResultEntry, ...] = ()
    is_qualifier: bool = False
    orphaned: bool = False


@dataclass(frozen=True)
class RoundConfig:
    round_id: int
    round_number: int
    status: str = "scheduled"
    uses_override_points: bool = False
    override_points_system: Optional[PointsSystem] = None
    # Separate table for the qualifying session; without one qualifying scores nothing.
    qualifying_points_system: Optional[PointsSystem] = None
    fastest_lap: BonusRule = field(default_factory=BonusRule)
    pole: BonusRule = field(default_factory=BonusRule)
    races: Tuple[RaceSheet, ...] = ()

    @property
    def is_completed(self) -> bool:
        return self.status == ROUND_COMPLETED


@dataclass(frozen=True)
class SeasonConfig:
    season_id: int
    default_points_system: PointsSystem
    tiebreak_rules: Tuple[TiebreakRule, ...] = ()
    team_championship_enabled: bool = False
    divisions_enabled: bool = False
    drop_rounds: int = 0
    team_drop_rounds: int = 0

    def ordered_tiebreak_rules(self) -> Tuple[TiebreakRule, ...]:
        """
        Rules sorted by their configured order.
        Two rules claiming the same slot make the priority ambiguous.
        """
        seen: dict[int, str] = {}
        for rule in self.tiebreak_rules:
            if rule.order in seen and seen[rule.order] != rule.kind:
                raise DataIntegrityError(
                    f"Tiebreak rules {seen[rule.order]!r} and {rule.kind!r} share order {rule.order}"
                )
            seen[rule.order] = rule.kind
        ordered = sorted(self.tiebreak_rules, key=lambda r: (r.order, r.kind))
        # Identical duplicates collapse to one rule.
        unique: list[TiebreakRule] = []
        for rule in ordered:
            if not unique or unique[-1] != rule:
                unique.append(rule)
        return tuple(unique)


@dataclass(frozen=True)
class StandingsRow:
    entity_id: int
    scope: str
    total_points: float
    per_round_breakdown: Tuple[Tuple[int, float], ...]
    dropped_rounds: Tuple[int, ...]
    tiebreak_vector: Tuple[Any, ...]
    rank: int
    tied: bool


@dataclass(frozen=True)
class ResolvedPointsSystem:
    """The points table a round scores with, tagged with where it came from."""

    source: str  # "round" or "season"
    points_system: PointsSystem


def resolve_points_system(round_config: RoundConfig, season_config: SeasonConfig) -> ResolvedPointsSystem:
    if round_config.uses_override_points is True:
        if round_config.override_points_system is None:
            raise ConfigurationError(
                f"Round {round_config.round_number} uses override points but has no points system"
            )
        return ResolvedPointsSystem(source="round", points_system=round_config.override_points_system)
    return ResolvedPointsSystem(source="season", points_system=season_config.default_points_system)


def validate_entry(entry: ResultEntry) -> None:
    if entry.status not in RESULT_STATUSES:
        raise ConfigurationError(f"Driver {entry.driver_id} has unknown result status {entry.status!r}")
    if entry.position is not None and entry.position < 1:
        raise ConfigurationError(
            f"Driver {entry.driver_id} has invalid position {entry.position}; positions start at 1"
        )
    if entry.status == FINISHED and entry.position is None:
        raise ConfigurationError(f"Driver {entry.driver_id} finished without a position")


def points_for_position(position: int, points_system: PointsSystem) -> float:
    if position < 1:
        raise ConfigurationError(f"Invalid position {position}; positions start at 1")
    return points_system.points_for(position)


def points_for_entry(entry: ResultEntry, points_system: PointsSystem) -> float:
    """
    Base points for one race result.
    DNF, DNS, DSQ, excluded and unmapped positions score 0.
    """
    validate_entry(entry)
    if not entry.is_classified:
        return 0.0
    return points_for_position(entry.position, points_system)


def best_position(positions: Sequence[int]) -> int:
    return min(positions) if positions else UNPLACED
