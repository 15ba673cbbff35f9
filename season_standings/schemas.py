from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class StandingsRowOut(BaseModel):
    entity_id: int
    scope: str
    rank: int = Field(ge=1)
    total_points: float
    tied: bool
    per_round_breakdown: dict[int, float]
    dropped_rounds: list[int]
    tiebreak_vector: list[Any]


class ExcludedRaceOut(BaseModel):
    round_id: int
    round_number: int
    race_id: int
    race_number: int
    reason: str


class StandingsPayload(BaseModel):
    drivers: list[StandingsRowOut]
    teams: list[StandingsRowOut]
    divisions: list[StandingsRowOut]
    drivers_by_division: dict[int, list[StandingsRowOut]]
    recalculated_count: int
    excluded_races: list[ExcludedRaceOut]


class PublishedStandingsOut(BaseModel):
    season_id: int
    version: int
    is_stale: bool
    published_at: datetime
    standings: StandingsPayload


class RecalculationOut(BaseModel):
    season_id: int
    version: int
    recalculated_count: int
    row_count: int
    excluded_races: list[ExcludedRaceOut]


class RoundStatusOut(BaseModel):
    id: int
    season_id: int
    round_number: int
    status: str
    snapshot_stale: Optional[bool] = None
