from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from season_standings.aggregation import (
    Contribution,
    EntityTally,
    ExcludedRace,
    aggregate,
    apply_drop_rounds,
    contributions_by_division,
    score_round,
)
from season_standings.config import RECALC_CONFLICT_POLICY, RECALC_LOCK_TIMEOUT_SECONDS
from season_standings.database import SessionLocal
from season_standings.exceptions import (
    ConcurrencyConflict,
    ConfigurationError,
    DataIntegrityError,
    NotFoundError,
    RecalculationError,
)
from season_standings.locks import SeasonLockRegistry
from season_standings.models import Race, RaceResult, Round, Season, StandingsSnapshot, utcnow
from season_standings.rules import (
    ROUND_COMPLETED,
    BonusRule,
    PointsSystem,
    RaceSheet,
    ResultEntry,
    RoundConfig,
    SeasonConfig,
    StandingsRow,
    TiebreakRule,
)
from season_standings.schemas import (
    ExcludedRaceOut,
    PublishedStandingsOut,
    StandingsPayload,
    StandingsRowOut,
)
from season_standings.tiebreak import rank_entities


logger = logging.getLogger(__name__)

ROUND_SCHEDULED = "scheduled"

# Process-wide registry shared by the API and the round lifecycle hooks.
season_locks = SeasonLockRegistry()


def get_or_404(db: Session, model: Any, obj_id: int, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise NotFoundError(label, obj_id)
    return obj


def get_season_or_404(db: Session, season_id: int) -> Season:
    return get_or_404(db, Season, season_id, "Season")


def get_round_or_404(db: Session, round_id: int) -> Round:
    return get_or_404(db, Round, round_id, "Round")


def _tiebreak_rules(raw_rules: Sequence[Any]) -> Tuple[TiebreakRule, ...]:
    rules: list[TiebreakRule] = []
    for index, item in enumerate(raw_rules or [], start=1):
        try:
            rules.append(TiebreakRule(kind=str(item["kind"]), order=int(item.get("order", index))))
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Skipping malformed tiebreak rule %r", item)
    return tuple(rules)


def season_config_from_model(season: Season) -> SeasonConfig:
    try:
        default_points = PointsSystem.from_mapping(season.default_points_system)
    except ConfigurationError as exc:
        raise RecalculationError(season.id, exc) from exc
    return SeasonConfig(
        season_id=season.id,
        default_points_system=default_points,
        tiebreak_rules=_tiebreak_rules(season.tiebreak_rules),
        team_championship_enabled=season.team_championship_enabled,
        divisions_enabled=season.divisions_enabled,
        drop_rounds=max(season.drop_rounds or 0, 0),
        team_drop_rounds=max(season.team_drop_rounds or 0, 0),
    )


def round_config_from_model(
    round_: Round,
    races: Sequence[RaceSheet],
    qualifying_points: Optional[dict[str, Any]] = None,
) -> RoundConfig:
    override: Optional[PointsSystem] = None
    qualifying: Optional[PointsSystem] = None
    try:
        if round_.uses_override_points and round_.points_system is not None:
            override = PointsSystem.from_mapping(round_.points_system)
        if qualifying_points is not None:
            qualifying = PointsSystem.from_mapping(qualifying_points)
    except ConfigurationError as exc:
        raise RecalculationError(round_.season_id, exc, round_.id, round_.round_number) from exc
    return RoundConfig(
        round_id=round_.id,
        round_number=round_.round_number,
        status=round_.status,
        uses_override_points=round_.uses_override_points,
        override_points_system=override,
        qualifying_points_system=qualifying,
        fastest_lap=BonusRule(
            enabled=round_.fastest_lap_enabled,
            points_value=round_.fastest_lap_points,
            top10_only=round_.fastest_lap_top_10,
        ),
        pole=BonusRule(
            enabled=round_.qualifying_pole_enabled,
            points_value=round_.qualifying_pole_points,
            top10_only=round_.qualifying_pole_top_10,
        ),
        races=tuple(races),
    )


def load_season_inputs(db: Session, season_id: int) -> Tuple[SeasonConfig, List[RoundConfig]]:
    """
    Snapshot everything one recalculation needs.
    Only completed rounds are read; results are batch-fetched per season.
    """
    season = get_season_or_404(db, season_id)
    season_config = season_config_from_model(season)

    rounds = db.scalars(
        select(Round)
        .where(Round.season_id == season_id, Round.status == ROUND_COMPLETED)
        .order_by(Round.round_number.asc())
    ).all()
    if not rounds:
        return season_config, []

    races = db.scalars(
        select(Race)
        .where(Race.round_id.in_([r.id for r in rounds]))
        .order_by(Race.round_id.asc(), Race.race_number.asc())
    ).all()
    results = (
        db.scalars(
            select(RaceResult)
            .where(RaceResult.race_id.in_([r.id for r in races]))
            .order_by(RaceResult.race_id.asc(), RaceResult.driver_id.asc())
        ).all()
        if races
        else []
    )

    entries_by_race: dict[int, list[ResultEntry]] = defaultdict(list)
    for row in results:
        entries_by_race[row.race_id].append(
            ResultEntry(
                driver_id=row.driver_id,
                position=row.position,
                status=row.status,
                team_id=row.team_id,
                division_id=row.division_id,
                fastest_lap=row.fastest_lap,
                pole_position=row.pole_position,
            )
        )

    qualifying_points: dict[int, dict[str, Any]] = {}
    sheets_by_round: dict[int, list[RaceSheet]] = defaultdict(list)
    for race in races:
        if race.is_qualifier and race.points_system is not None:
            qualifying_points[race.round_id] = race.points_system
        sheets_by_round[race.round_id].append(
            RaceSheet(
                race_id=race.id,
                race_number=race.race_number,
                entries=tuple(entries_by_race[race.id]),
                is_qualifier=race.is_qualifier,
                orphaned=race.has_orphaned_results,
            )
        )

    return season_config, [
        round_config_from_model(r, sheets_by_round[r.id], qualifying_points.get(r.id)) for r in rounds
    ]


@dataclass(frozen=True)
class SeasonStandings:
    season_id: int
    drivers: Tuple[StandingsRow, ...]
    teams: Tuple[StandingsRow, ...]
    divisions: Tuple[StandingsRow, ...]
    drivers_by_division: Tuple[Tuple[int, Tuple[StandingsRow, ...]], ...]
    recalculated_count: int
    excluded_races: Tuple[ExcludedRace, ...]

    @property
    def rows(self) -> Tuple[StandingsRow, ...]:
        return self.drivers + self.teams + self.divisions


def build_standings(season: SeasonConfig, rounds: Sequence[RoundConfig]) -> SeasonStandings:
    """
    Pure resolution pipeline: points, bonuses, aggregation, tie-breaks.
    Any round that cannot be resolved aborts the whole season.
    """
    try:
        rules = season.ordered_tiebreak_rules()
    except DataIntegrityError as exc:
        raise RecalculationError(season.season_id, exc) from exc

    contributions: list[Contribution] = []
    excluded: list[ExcludedRace] = []
    counted_rounds = 0
    for round_config in sorted(rounds, key=lambda r: r.round_number):
        if not round_config.is_completed:
            continue
        try:
            score = score_round(round_config, season)
        except (ConfigurationError, DataIntegrityError) as exc:
            raise RecalculationError(
                season.season_id, exc, round_config.round_id, round_config.round_number
            ) from exc
        contributions.extend(score.contributions)
        excluded.extend(score.excluded_races)
        counted_rounds += 1

    drivers = aggregate(contributions, "driver")
    apply_drop_rounds(drivers, season.drop_rounds)

    teams: dict[int, EntityTally] = {}
    if season.team_championship_enabled:
        teams = aggregate(contributions, "team")
        apply_drop_rounds(teams, season.team_drop_rounds)

    divisions: dict[int, EntityTally] = {}
    drivers_by_division: list[Tuple[int, Tuple[StandingsRow, ...]]] = []
    if season.divisions_enabled:
        divisions = aggregate(contributions, "division")
        for division_id, division_contributions in sorted(contributions_by_division(contributions).items()):
            tallies = aggregate(division_contributions, "driver")
            apply_drop_rounds(tallies, season.drop_rounds)
            drivers_by_division.append((division_id, tuple(rank_entities(tallies, rules, "driver"))))

    return SeasonStandings(
        season_id=season.season_id,
        drivers=tuple(rank_entities(drivers, rules, "driver")),
        teams=tuple(rank_entities(teams, rules, "team")),
        divisions=tuple(rank_entities(divisions, rules, "division")),
        drivers_by_division=tuple(drivers_by_division),
        recalculated_count=counted_rounds,
        excluded_races=tuple(excluded),
    )


def _row_out(row: StandingsRow) -> StandingsRowOut:
    return StandingsRowOut(
        entity_id=row.entity_id,
        scope=row.scope,
        rank=row.rank,
        total_points=row.total_points,
        tied=row.tied,
        per_round_breakdown=dict(row.per_round_breakdown),
        dropped_rounds=list(row.dropped_rounds),
        tiebreak_vector=list(row.tiebreak_vector),
    )


def _excluded_out(race: ExcludedRace) -> ExcludedRaceOut:
    return ExcludedRaceOut(
        round_id=race.round_id,
        round_number=race.round_number,
        race_id=race.race_id,
        race_number=race.race_number,
        reason=race.reason,
    )


def standings_payload(standings: SeasonStandings) -> str:
    """Serialized standings. Identical inputs give an identical string."""
    payload = StandingsPayload(
        drivers=[_row_out(r) for r in standings.drivers],
        teams=[_row_out(r) for r in standings.teams],
        divisions=[_row_out(r) for r in standings.divisions],
        drivers_by_division={
            division_id: [_row_out(r) for r in rows] for division_id, rows in standings.drivers_by_division
        },
        recalculated_count=standings.recalculated_count,
        excluded_races=[_excluded_out(r) for r in standings.excluded_races],
    )
    return payload.model_dump_json()


def publish_snapshot(db: Session, season_id: int, payload: str) -> StandingsSnapshot:
    """
    Swap the season's published standings in one commit.
    Re-publishing an unchanged, non-stale payload keeps the current version.
    """
    snapshot = db.scalar(select(StandingsSnapshot).where(StandingsSnapshot.season_id == season_id))
    if snapshot is None:
        snapshot = StandingsSnapshot(season_id=season_id, version=1, payload=payload, is_stale=False)
        db.add(snapshot)
    elif snapshot.payload != payload or snapshot.is_stale:
        snapshot.payload = payload
        snapshot.version += 1
        snapshot.is_stale = False
        snapshot.published_at = utcnow()
    db.commit()
    db.refresh(snapshot)
    return snapshot


def mark_snapshot_stale(db: Session, season_id: int) -> bool:
    snapshot = db.scalar(select(StandingsSnapshot).where(StandingsSnapshot.season_id == season_id))
    if snapshot is None or snapshot.is_stale:
        return False
    snapshot.is_stale = True
    return True


def get_published_standings(db: Session, season_id: int) -> Optional[PublishedStandingsOut]:
    get_season_or_404(db, season_id)
    snapshot = db.scalar(select(StandingsSnapshot).where(StandingsSnapshot.season_id == season_id))
    if snapshot is None:
        return None
    return PublishedStandingsOut(
        season_id=season_id,
        version=snapshot.version,
        is_stale=snapshot.is_stale,
        published_at=snapshot.published_at,
        standings=StandingsPayload.model_validate_json(snapshot.payload),
    )


def _set_round_status(db: Session, round_: Round, status: str, locks: SeasonLockRegistry) -> None:
    """
    Commit a status change and invalidate the season as one step under the
    publish lock. A recalculation that read the old status then fails its
    generation check instead of publishing.
    """
    season_id = round_.season_id
    with locks.publishing(season_id):
        round_.status = status
        mark_snapshot_stale(db, season_id)
        db.commit()
        locks.invalidate(season_id)


def complete_round(db: Session, round_id: int, locks: SeasonLockRegistry = season_locks) -> Round:
    round_ = get_round_or_404(db, round_id)
    if round_.status == ROUND_COMPLETED:
        return round_
    _set_round_status(db, round_, ROUND_COMPLETED, locks)
    logger.info("Round %s of season %s completed", round_.round_number, round_.season_id)
    return round_


def uncomplete_round(db: Session, round_id: int, locks: SeasonLockRegistry = season_locks) -> Round:
    """
    Reopen a completed round. The season's published standings turn stale
    until the next successful recalculation.
    """
    round_ = get_round_or_404(db, round_id)
    if round_.status != ROUND_COMPLETED:
        return round_
    _set_round_status(db, round_, ROUND_SCHEDULED, locks)
    logger.info("Round %s of season %s reopened", round_.round_number, round_.season_id)
    return round_


@dataclass(frozen=True)
class RecalculationResult:
    season_id: int
    version: int
    standings: SeasonStandings
    payload: str

    @property
    def rows(self) -> Tuple[StandingsRow, ...]:
        return self.standings.rows

    @property
    def recalculated_count(self) -> int:
        return self.standings.recalculated_count

    @property
    def excluded_races(self) -> Tuple[ExcludedRace, ...]:
        return self.standings.excluded_races


class StandingsRecalculator:
    """
    Full recompute of one season's standings, at most one in flight per season.

    A round reopened while a recalculation runs makes that result stale: it is
    not published and one further recalculation runs straight away.
    """

    max_attempts = 2

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        locks: Optional[SeasonLockRegistry] = None,
        conflict_policy: str = RECALC_CONFLICT_POLICY,
        lock_timeout: float = RECALC_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks if locks is not None else season_locks
        self.conflict_policy = conflict_policy
        self.lock_timeout = lock_timeout

    def recalculate(self, season_id: int) -> RecalculationResult:
        with self.locks.hold(season_id, self.conflict_policy, self.lock_timeout):
            for attempt in range(1, self.max_attempts + 1):
                result = self._attempt(season_id, attempt)
                if result is not None:
                    return result
                logger.warning("Season %s: inputs changed during recalculation, running again", season_id)
        raise ConcurrencyConflict(
            season_id,
            f"Season {season_id} inputs kept changing during recalculation; nothing was published",
        )

    def _attempt(self, season_id: int, attempt: int) -> Optional[RecalculationResult]:
        start = time.monotonic()
        generation = self.locks.generation(season_id)
        logger.info("Season %s: recalculation started (attempt %d)", season_id, attempt)

        with self.session_factory() as db:
            try:
                season_config, rounds = load_season_inputs(db, season_id)
                standings = build_standings(season_config, rounds)
            except RecalculationError as exc:
                logger.error("Season %s: recalculation failed: %s", season_id, exc)
                raise
            payload = standings_payload(standings)

            with self.locks.publishing(season_id):
                if self.locks.generation(season_id) != generation:
                    return None
                snapshot = publish_snapshot(db, season_id, payload)
                version = snapshot.version

        for excluded in standings.excluded_races:
            logger.warning(
                "Season %s: round %s race %s excluded: %s",
                season_id,
                excluded.round_number,
                excluded.race_number,
                excluded.reason,
            )
        logger.info(
            "Season %s: published version %s, %d rounds, %d rows (%.3fs)",
            season_id,
            version,
            standings.recalculated_count,
            len(standings.rows),
            time.monotonic() - start,
        )
        return RecalculationResult(
            season_id=season_id,
            version=version,
            standings=standings,
            payload=payload,
        )
