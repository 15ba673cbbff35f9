"""
Error taxonomy for standings resolution.

- ConfigurationError: malformed points map, invalid position, conflicting
  bonus configuration
- DataIntegrityError: duplicate bonus flags, ambiguous tie-break order
- ConcurrencyConflict: a same-season recalculation is already in flight
- RecalculationError: a season recalculation aborted on a specific round
"""

from __future__ import annotations

from typing import Optional


class StandingsError(Exception):
    """Base exception for all standings engine errors."""


class ConfigurationError(StandingsError):
    """Scoring configuration is malformed or contradictory."""


class DataIntegrityError(StandingsError):
    """Stored results cannot be resolved unambiguously."""


class ConcurrencyConflict(StandingsError):
    """A recalculation for the same season could not proceed."""

    def __init__(self, season_id: int, message: str) -> None:
        self.season_id = season_id
        super().__init__(message)


class NotFoundError(StandingsError):
    def __init__(self, label: str, obj_id: int) -> None:
        self.label = label
        self.obj_id = obj_id
        super().__init__(f"{label} {obj_id} not found")


class RecalculationError(StandingsError):
    """A season recalculation failed; nothing was published."""

    def __init__(
        self,
        season_id: int,
        cause: StandingsError,
        round_id: Optional[int] = None,
        round_number: Optional[int] = None,
    ) -> None:
        self.season_id = season_id
        self.round_id = round_id
        self.round_number = round_number
        self.cause = cause
        where = f"round {round_number} (id {round_id})" if round_id is not None else "season configuration"
        super().__init__(f"Season {season_id}: {where}: {cause}")
