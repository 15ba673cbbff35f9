from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from season_standings.config import LOG_LEVEL
from season_standings.database import Base, engine, get_db
from season_standings.exceptions import ConcurrencyConflict, NotFoundError, RecalculationError
from season_standings.schemas import (
    ExcludedRaceOut,
    PublishedStandingsOut,
    RecalculationOut,
    RoundStatusOut,
)
from season_standings.services import (
    StandingsRecalculator,
    complete_round,
    get_published_standings,
    season_locks,
    uncomplete_round,
)


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

app = FastAPI(
    title="Season Standings - Points Resolution Engine",
    version="1.0.0",
    description=(
        "Recalculates and publishes season standings: points tables, fastest lap "
        "and pole bonuses, driver/team/division totals and tie-breaks."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

recalculator = StandingsRecalculator(locks=season_locks)


def get_recalculator() -> StandingsRecalculator:
    return recalculator


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


def _round_status(db: Session, round_id: int, action) -> RoundStatusOut:
    try:
        round_ = action(db, round_id, season_locks)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    snapshot = get_published_standings(db, round_.season_id)
    return RoundStatusOut(
        id=round_.id,
        season_id=round_.season_id,
        round_number=round_.round_number,
        status=round_.status,
        snapshot_stale=snapshot.is_stale if snapshot is not None else None,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/seasons/{season_id}/recalculate", response_model=RecalculationOut)
def recalculate_season(
    season_id: int,
    service: StandingsRecalculator = Depends(get_recalculator),
):
    try:
        result = service.recalculate(season_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ConcurrencyConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except RecalculationError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "message": str(exc.cause),
                "error": type(exc.cause).__name__,
                "round_id": exc.round_id,
                "round_number": exc.round_number,
            },
        )
    return RecalculationOut(
        season_id=season_id,
        version=result.version,
        recalculated_count=result.recalculated_count,
        row_count=len(result.rows),
        excluded_races=[
            ExcludedRaceOut(
                round_id=r.round_id,
                round_number=r.round_number,
                race_id=r.race_id,
                race_number=r.race_number,
                reason=r.reason,
            )
            for r in result.excluded_races
        ],
    )


@app.get("/seasons/{season_id}/standings", response_model=PublishedStandingsOut)
def get_season_standings(
    season_id: int,
    scope: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    if scope is not None and scope not in {"driver", "team", "division"}:
        raise HTTPException(status_code=400, detail="Scope must be driver, team or division")
    try:
        published = get_published_standings(db, season_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if published is None:
        raise HTTPException(status_code=404, detail="No standings published for this season yet")

    if scope is None:
        return published
    standings = published.standings
    # Narrow the payload to the requested table; the others come back empty.
    narrowed = standings.model_copy(
        update={
            "drivers": standings.drivers if scope == "driver" else [],
            "teams": standings.teams if scope == "team" else [],
            "divisions": standings.divisions if scope == "division" else [],
            "drivers_by_division": standings.drivers_by_division if scope == "division" else {},
        }
    )
    return published.model_copy(update={"standings": narrowed})


@app.post("/rounds/{round_id}/complete", response_model=RoundStatusOut)
def mark_round_completed(round_id: int, db: Session = Depends(get_db)):
    return _round_status(db, round_id, complete_round)


@app.post("/rounds/{round_id}/uncomplete", response_model=RoundStatusOut)
def reopen_round(round_id: int, db: Session = Depends(get_db)):
    return _round_status(db, round_id, uncomplete_round)
