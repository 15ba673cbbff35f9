from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from season_standings.exceptions import ConcurrencyConflict


logger = logging.getLogger(__name__)

QUEUE = "queue"
REJECT = "reject"
POLICIES = (QUEUE, REJECT)


@dataclass
class SeasonState:
    recalc_lock: threading.Lock = field(default_factory=threading.Lock)
    # Guards the stale check + publish against a concurrent round reopen.
    publish_lock: threading.Lock = field(default_factory=threading.Lock)
    generation: int = 0


class SeasonLockRegistry:
    """
    One recalculation lock per season id, plus an input generation counter
    that round reopening bumps. Unrelated seasons never wait on each other.
    """

    def __init__(self) -> None:
        self._seasons: dict[int, SeasonState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, season_id: int) -> SeasonState:
        with self._registry_lock:
            state = self._seasons.get(season_id)
            if state is None:
                state = self._seasons[season_id] = SeasonState()
            return state

    def in_flight(self, season_id: int) -> bool:
        return self._state(season_id).recalc_lock.locked()

    @contextmanager
    def hold(self, season_id: int, policy: str = QUEUE, timeout: float = 30.0) -> Iterator[None]:
        if policy not in POLICIES:
            raise ValueError(f"Unknown conflict policy {policy!r}")
        lock = self._state(season_id).recalc_lock

        if policy == REJECT:
            acquired = lock.acquire(blocking=False)
            if not acquired:
                logger.info("Season %s: rejecting recalculation, one is already in flight", season_id)
                raise ConcurrencyConflict(season_id, f"Recalculation already in progress for season {season_id}")
        else:
            if lock.locked():
                logger.info("Season %s: recalculation queued behind the one in flight", season_id)
            acquired = lock.acquire(timeout=timeout)
            if not acquired:
                raise ConcurrencyConflict(
                    season_id,
                    f"Timed out after {timeout}s waiting for the in-flight recalculation of season {season_id}",
                )
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def publishing(self, season_id: int) -> Iterator[None]:
        with self._state(season_id).publish_lock:
            yield

    def generation(self, season_id: int) -> int:
        return self._state(season_id).generation

    def invalidate(self, season_id: int) -> int:
        """Record that the season's inputs changed. Call inside `publishing`."""
        state = self._state(season_id)
        state.generation += 1
        return state.generation
