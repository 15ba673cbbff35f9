"""Shared fixtures: a throwaway SQLite database and season/round builders."""

from __future__ import annotations

from typing import Any, Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from season_standings.database import Base
from season_standings.locks import SeasonLockRegistry
from season_standings.models import Race, RaceResult, Round, Season


F1_POINTS = {"1": 25, "2": 18, "3": 15, "4": 12, "5": 10, "6": 8, "7": 6, "8": 4, "9": 2, "10": 1}


@pytest.fixture
def session_factory(tmp_path):
    # File-backed so worker threads get their own connections.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'standings.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=True, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def locks() -> SeasonLockRegistry:
    return SeasonLockRegistry()


@pytest.fixture
def make_season(db):
    def _make(**fields: Any) -> Season:
        fields.setdefault("name", "GT3 Sprint Cup")
        fields.setdefault("default_points_system", dict(F1_POINTS))
        season = Season(**fields)
        db.add(season)
        db.commit()
        return season

    return _make


@pytest.fixture
def add_round(db):
    """
    Add a round with its races.
    `races` is a list of result lists, one per race, numbered from 1;
    `qualifying` is an optional result list stored as race 0, scored with
    `qualifying_points` when given.
    """

    def _add(
        season: Season,
        round_number: int,
        races: Sequence[Sequence[dict]],
        qualifying: Optional[Sequence[dict]] = None,
        qualifying_points: Optional[dict] = None,
        status: str = "completed",
        orphaned_races: Sequence[int] = (),
        **fields: Any,
    ) -> Round:
        round_ = Round(season_id=season.id, round_number=round_number, status=status, **fields)
        db.add(round_)
        db.flush()

        sheets = [(0, True, qualifying)] if qualifying is not None else []
        sheets += [(number, False, results) for number, results in enumerate(races, start=1)]
        for race_number, is_qualifier, results in sheets:
            race = Race(
                round_id=round_.id,
                race_number=race_number,
                is_qualifier=is_qualifier,
                has_orphaned_results=race_number in orphaned_races,
                points_system=qualifying_points if is_qualifier else None,
            )
            db.add(race)
            db.flush()
            for result in results:
                db.add(RaceResult(race_id=race.id, **result))
        db.commit()
        return round_

    return _add
