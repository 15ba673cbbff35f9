import json

import pytest

import season_standings.services as services
from season_standings.exceptions import ConcurrencyConflict, RecalculationError
from season_standings.models import Round, StandingsSnapshot
from season_standings.services import (
    StandingsRecalculator,
    get_published_standings,
    uncomplete_round,
)


def _finish(driver_id, position, team_id=None, division_id=None, **kwargs):
    return dict(driver_id=driver_id, position=position, team_id=team_id, division_id=division_id, **kwargs)


def _recalculator(session_factory, locks, **kwargs) -> StandingsRecalculator:
    return StandingsRecalculator(session_factory=session_factory, locks=locks, **kwargs)


def _snapshot(db, season_id) -> StandingsSnapshot:
    db.expire_all()
    return db.query(StandingsSnapshot).filter_by(season_id=season_id).one()


def test_recalculate_publishes_ranked_standings(db, session_factory, locks, make_season, add_round):
    season = make_season(tiebreak_rules=[{"kind": "most_wins", "order": 1}])
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2), _finish(3, 3)]])
    add_round(season, 2, [[_finish(2, 1), _finish(1, 2), _finish(3, 3, fastest_lap=True)]],
              fastest_lap_enabled=True, fastest_lap_points=1)
    add_round(season, 3, [[_finish(3, 1)]], status="scheduled")

    result = _recalculator(session_factory, locks).recalculate(season.id)

    assert result.recalculated_count == 2
    assert result.version == 1
    assert [(r.entity_id, r.total_points, r.rank) for r in result.standings.drivers] == [
        (1, 43.0, 1),
        (2, 43.0, 2),
        (3, 31.0, 3),
    ]
    # 1 and 2 both have one win, so only the id separates them
    assert result.standings.drivers[0].tied

    published = get_published_standings(db, season.id)
    assert published.version == 1
    assert not published.is_stale
    assert [row.entity_id for row in published.standings.drivers] == [1, 2, 3]
    assert published.standings.drivers[2].per_round_breakdown == {1: 15.0, 2: 16.0}


def test_recalculate_is_idempotent(db, session_factory, locks, make_season, add_round):
    season = make_season(team_championship_enabled=True)
    add_round(season, 1, [[_finish(1, 1, team_id=10), _finish(2, 2, team_id=20), _finish(3, 2, team_id=10, status="dnf")]])
    add_round(season, 2, [[_finish(2, 1, team_id=20), _finish(1, 2, team_id=10)]])
    recalculator = _recalculator(session_factory, locks)

    first = recalculator.recalculate(season.id)
    second = recalculator.recalculate(season.id)

    assert first.payload == second.payload
    assert first.rows == second.rows
    assert second.version == 1
    assert _snapshot(db, season.id).payload == first.payload


def test_equal_points_empty_rules_never_flip(session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(8, 1), _finish(3, 2)]])
    add_round(season, 2, [[_finish(3, 1), _finish(8, 2)]])
    recalculator = _recalculator(session_factory, locks)

    orders = {tuple(r.entity_id for r in recalculator.recalculate(season.id).standings.drivers) for _ in range(5)}
    assert orders == {(3, 8)}


def test_team_and_division_scopes(session_factory, locks, make_season, add_round):
    season = make_season(team_championship_enabled=True, divisions_enabled=True)
    add_round(
        season,
        1,
        [[
            _finish(1, 1, team_id=10, division_id=1),
            _finish(2, 2, team_id=10, division_id=2),
            _finish(3, 3, team_id=20, division_id=1),
            _finish(4, 4, team_id=20, division_id=2),
        ]],
    )

    standings = _recalculator(session_factory, locks).recalculate(season.id).standings

    driver_sum = sum(r.total_points for r in standings.drivers)
    assert sum(r.total_points for r in standings.teams) == driver_sum
    assert sum(r.total_points for r in standings.divisions) == driver_sum
    assert [(r.entity_id, r.total_points) for r in standings.teams] == [(10, 43.0), (20, 27.0)]
    division_tables = dict(standings.drivers_by_division)
    assert [r.entity_id for r in division_tables[2]] == [2, 4]
    assert [r.rank for r in division_tables[2]] == [1, 2]


def test_orphaned_race_is_excluded_without_failing(session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)], [_finish(2, 1), _finish(1, 2)]], orphaned_races=[2])

    result = _recalculator(session_factory, locks).recalculate(season.id)

    assert [(r.entity_id, r.total_points) for r in result.standings.drivers] == [(1, 25.0), (2, 18.0)]
    [excluded] = result.excluded_races
    assert excluded.race_number == 2
    assert json.loads(result.payload)["excluded_races"][0]["race_number"] == 2


def test_failed_round_keeps_prior_snapshot(db, session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)]])
    recalculator = _recalculator(session_factory, locks)
    published = recalculator.recalculate(season.id)

    bad = add_round(
        season,
        2,
        [[_finish(1, 1, fastest_lap=True), _finish(2, 2, fastest_lap=True)]],
        fastest_lap_enabled=True,
        fastest_lap_points=1,
    )

    with pytest.raises(RecalculationError) as excinfo:
        recalculator.recalculate(season.id)
    assert excinfo.value.round_id == bad.id
    assert excinfo.value.round_number == 2
    assert type(excinfo.value.cause).__name__ == "DataIntegrityError"

    snapshot = _snapshot(db, season.id)
    assert snapshot.payload == published.payload
    assert snapshot.version == 1


def test_invalid_position_aborts_with_round_identified(session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1)]])
    add_round(season, 2, [[_finish(1, 0)]])

    with pytest.raises(RecalculationError) as excinfo:
        _recalculator(session_factory, locks).recalculate(season.id)
    assert excinfo.value.round_number == 2
    assert type(excinfo.value.cause).__name__ == "ConfigurationError"


def test_malformed_season_points_abort(session_factory, locks, make_season, add_round):
    season = make_season(default_points_system={"1": -25})
    add_round(season, 1, [[_finish(1, 1)]])

    with pytest.raises(RecalculationError) as excinfo:
        _recalculator(session_factory, locks).recalculate(season.id)
    assert excinfo.value.round_id is None


def test_round_override_points(session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)]])
    add_round(season, 2, [[_finish(1, 1), _finish(2, 2)]], uses_override_points=True, points_system={"1": 10})
    add_round(season, 3, [[_finish(1, 1), _finish(2, 2)]], points_system={"1": 99})

    drivers = _recalculator(session_factory, locks).recalculate(season.id).standings.drivers

    assert dict(drivers[0].per_round_breakdown) == {1: 25.0, 2: 10.0, 3: 25.0}
    assert dict(drivers[1].per_round_breakdown) == {1: 18.0, 2: 0.0, 3: 18.0}


def test_drop_rounds_from_season_config(session_factory, locks, make_season, add_round):
    season = make_season(drop_rounds=1)
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)]])
    add_round(season, 2, [[_finish(2, 1), _finish(1, 9)]])
    add_round(season, 3, [[_finish(1, 1), _finish(2, 2)]])

    drivers = _recalculator(session_factory, locks).recalculate(season.id).standings.drivers

    assert [(r.entity_id, r.total_points, r.dropped_rounds) for r in drivers] == [
        (1, 50.0, (2,)),
        (2, 43.0, (1,)),
    ]


def test_uncomplete_marks_snapshot_stale_until_recalculated(db, session_factory, locks, make_season, add_round):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)]])
    second = add_round(season, 2, [[_finish(2, 1), _finish(1, 2)]])
    recalculator = _recalculator(session_factory, locks)
    recalculator.recalculate(season.id)

    uncomplete_round(db, second.id, locks)

    assert db.get(Round, second.id).status == "scheduled"
    assert get_published_standings(db, season.id).is_stale

    result = recalculator.recalculate(season.id)
    assert result.recalculated_count == 1
    assert result.version == 2
    db.expire_all()
    published = get_published_standings(db, season.id)
    assert not published.is_stale
    assert published.standings.recalculated_count == 1


def test_round_reopened_mid_flight_triggers_one_rerun(
    db, session_factory, locks, make_season, add_round, monkeypatch
):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1), _finish(2, 2)]])
    second = add_round(season, 2, [[_finish(2, 1), _finish(1, 2)]])

    real_build = services.build_standings
    calls = []

    def build_then_reopen(season_config, rounds):
        calls.append(len(rounds))
        standings = real_build(season_config, rounds)
        if len(calls) == 1:
            uncomplete_round(db, second.id, locks)
        return standings

    monkeypatch.setattr(services, "build_standings", build_then_reopen)

    result = _recalculator(session_factory, locks).recalculate(season.id)

    assert calls == [2, 1]
    assert result.recalculated_count == 1
    assert _snapshot(db, season.id).version == 1


def test_inputs_changing_on_every_attempt_is_a_conflict(
    db, session_factory, locks, make_season, add_round, monkeypatch
):
    season = make_season()
    add_round(season, 1, [[_finish(1, 1)]])
    real_build = services.build_standings

    def build_and_invalidate(season_config, rounds):
        with locks.publishing(season.id):
            locks.invalidate(season.id)
        return real_build(season_config, rounds)

    monkeypatch.setattr(services, "build_standings", build_and_invalidate)

    with pytest.raises(ConcurrencyConflict):
        _recalculator(session_factory, locks).recalculate(season.id)
    assert db.query(StandingsSnapshot).count() == 0


def test_teamless_retirement_keeps_race_counted(session_factory, locks, make_season, add_round):
    season = make_season(team_championship_enabled=True)
    add_round(
        season,
        1,
        [[_finish(1, 1, team_id=10), _finish(2, 2, team_id=20), _finish(3, None, status="dnf")]],
    )

    result = _recalculator(session_factory, locks).recalculate(season.id)

    assert result.excluded_races == ()
    assert [(r.entity_id, r.total_points) for r in result.standings.drivers] == [(1, 25.0), (2, 18.0), (3, 0.0)]
    assert [(r.entity_id, r.total_points) for r in result.standings.teams] == [(10, 25.0), (20, 18.0)]


def test_qualifying_points_table_on_the_qualifier(session_factory, locks, make_season, add_round):
    season = make_season(tiebreak_rules=[{"kind": "highest_qualifying_position", "order": 1}])
    add_round(
        season,
        1,
        [[_finish(1, 1), _finish(2, 2)]],
        qualifying=[_finish(2, 1), _finish(1, 2)],
        qualifying_points={"1": 3, "2": 2},
    )

    drivers = _recalculator(session_factory, locks).recalculate(season.id).standings.drivers

    assert [(r.entity_id, r.total_points) for r in drivers] == [(1, 27.0), (2, 21.0)]


def test_malformed_qualifying_points_abort_with_round(session_factory, locks, make_season, add_round):
    season = make_season()
    bad = add_round(season, 1, [[_finish(1, 1)]], qualifying=[_finish(1, 1)], qualifying_points={"1": -3})

    with pytest.raises(RecalculationError) as excinfo:
        _recalculator(session_factory, locks).recalculate(season.id)
    assert excinfo.value.round_id == bad.id
