from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from season_standings.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # {"1": 25, "2": 18, ...}
    default_points_system: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    # [{"kind": "most_wins", "order": 1}, ...]
    tiebreak_rules: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    team_championship_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    divisions_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    drop_rounds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    team_drop_rounds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    rounds: Mapped[list["Round"]] = relationship(
        "Round", back_populates="season", cascade="all, delete-orphan"
    )


class Round(Base):
    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default="scheduled", nullable=False
    )  # scheduled, in_progress, completed, cancelled
    uses_override_points: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    points_system: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    fastest_lap_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fastest_lap_points: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fastest_lap_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    qualifying_pole_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    qualifying_pole_points: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    qualifying_pole_top_10: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="rounds")
    races: Mapped[list["Race"]] = relationship(
        "Race", back_populates="round", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("season_id", "round_number", name="uq_round_number_per_season"),)


class Race(Base):
    __tablename__ = "races"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    round_id: Mapped[int] = mapped_column(ForeignKey("rounds.id"), nullable=False, index=True)
    race_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 for the qualifier
    is_qualifier: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Qualifying points table; race sessions score with the round or season table.
    points_system: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    has_orphaned_results: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    round: Mapped[Round] = relationship("Round", back_populates="races")
    results: Mapped[list["RaceResult"]] = relationship(
        "RaceResult", back_populates="race", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("round_id", "race_number", name="uq_race_number_per_round"),)


class RaceResult(Base):
    __tablename__ = "race_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    race_id: Mapped[int] = mapped_column(ForeignKey("races.id"), nullable=False, index=True)
    driver_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    team_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    division_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default="finished", nullable=False
    )  # finished, dnf, dns, dsq, excluded
    fastest_lap: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pole_position: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    race: Mapped[Race] = relationship("Race", back_populates="results")

    __table_args__ = (UniqueConstraint("race_id", "driver_id", name="uq_race_result_driver"),)


class StandingsSnapshot(Base):
    __tablename__ = "standings_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(ForeignKey("seasons.id"), nullable=False, unique=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
