"""
Tie resolution for equal point totals.

Every rule kind is a key function ``(tally, tied_group) -> value`` where a
smaller value ranks higher. Rules are applied lexicographically in their
configured order, and the entity id is the final fallback so the published
order is always strict.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from season_standings.aggregation import EntityTally
from season_standings.rules import UNPLACED, StandingsRow, TiebreakRule, best_position


logger = logging.getLogger(__name__)

TieKey = Callable[[EntityTally, Sequence[EntityTally]], Any]


def _positions(tally: EntityTally) -> List[int]:
    return [position for _, _, position in tally.race_finishes]


def most_wins(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    return -sum(1 for p in _positions(tally) if p == 1)


def most_podiums(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    return -sum(1 for p in _positions(tally) if p <= 3)


def _finishes_by_race(tally: EntityTally) -> Dict[Tuple[int, int], List[int]]:
    races: dict[Tuple[int, int], list[int]] = defaultdict(list)
    for round_number, race_number, position in tally.race_finishes:
        races[(round_number, race_number)].append(position)
    return races


def head_to_head(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    """Sum of finishing positions over races every tied entity was classified in."""
    per_member = [_finishes_by_race(member) for member in group]
    shared = set(per_member[0])
    for races in per_member[1:]:
        shared &= set(races)
    mine = _finishes_by_race(tally)
    return sum(min(mine[race]) for race in shared)


def most_recent_round(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    """Best finish in the latest round where every tied entity was classified."""
    shared = {rn for rn, _, _ in group[0].race_finishes}
    for member in group[1:]:
        shared &= {rn for rn, _, _ in member.race_finishes}
    if not shared:
        return 0
    latest = max(shared)
    return best_position([p for rn, _, p in tally.race_finishes if rn == latest])


def best_result_countback(tally: EntityTally, group: Sequence[EntityTally]) -> Tuple[int, ...]:
    """Best finish, then second best, and so on. Missing results count as unplaced."""
    depth = max(len(member.race_finishes) for member in group)
    ordered = sorted(_positions(tally))
    return tuple(ordered + [UNPLACED] * (depth - len(ordered)))


def race_1_best_result(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    """Best finish in race 1 of any round."""
    return best_position([p for _, race_number, p in tally.race_finishes if race_number == 1])


def highest_qualifying_position(tally: EntityTally, group: Sequence[EntityTally]) -> int:
    return best_position(tally.qualifying_positions)


TIEBREAK_RULES: Dict[str, TieKey] = {
    "most_wins": most_wins,
    "most_podiums": most_podiums,
    "head_to_head": head_to_head,
    "most_recent_round": most_recent_round,
    "best_result_countback": best_result_countback,
    "race_1_best_result": race_1_best_result,
    "highest_qualifying_position": highest_qualifying_position,
}


def active_rules(rules: Sequence[TiebreakRule]) -> List[Tuple[str, TieKey]]:
    active: list[Tuple[str, TieKey]] = []
    for rule in rules:
        key_fn = TIEBREAK_RULES.get(rule.kind)
        if key_fn is None:
            logger.warning("Skipping unknown tiebreak rule kind %r", rule.kind)
            continue
        active.append((rule.kind, key_fn))
    return active


def break_tie(
    group: Sequence[EntityTally],
    rules: Sequence[Tuple[str, TieKey]],
) -> List[Tuple[EntityTally, Tuple[Any, ...], bool]]:
    """
    Order entities that share a points total.
    Returns (tally, tiebreak vector, tied) in ranking order; ``tied`` marks
    entities whose vector matches another one, i.e. only the id separated them.
    """
    members = sorted(group, key=lambda t: t.entity_id)
    vectors = {t.entity_id: tuple(key_fn(t, members) for _, key_fn in rules) for t in members}
    counts = Counter(vectors.values())
    ordered = sorted(members, key=lambda t: (vectors[t.entity_id], t.entity_id))
    if len(members) == 1:
        return [(ordered[0], vectors[ordered[0].entity_id], False)]
    return [(t, vectors[t.entity_id], counts[vectors[t.entity_id]] > 1) for t in ordered]


def rank_entities(
    tallies: Mapping[int, EntityTally],
    rules: Sequence[TiebreakRule],
    scope: str,
) -> List[StandingsRow]:
    active = active_rules(rules)

    groups: dict[float, list[EntityTally]] = defaultdict(list)
    for tally in tallies.values():
        groups[tally.total].append(tally)

    rows: list[StandingsRow] = []
    for total in sorted(groups, reverse=True):
        for tally, vector, tied in break_tie(groups[total], active):
            rows.append(
                StandingsRow(
                    entity_id=tally.entity_id,
                    scope=scope,
                    total_points=total,
                    per_round_breakdown=tally.breakdown(),
                    dropped_rounds=tally.dropped_rounds,
                    tiebreak_vector=vector,
                    rank=len(rows) + 1,
                    tied=tied,
                )
            )
    return rows
