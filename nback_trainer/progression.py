from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta

from .domain import LevelConfig, SessionResult, UserProgress
from .levels import LEVELS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressionUpdate:
    progress: UserProgress
    newly_unlocked: tuple[str, ...]


def best_accuracy_by_level(sessions: Iterable[SessionResult]) -> dict[str, float]:
    """Best combined accuracy per level over completed sessions only."""

    best: dict[str, float] = {}
    for s in sessions:
        if not s.completed:
            continue
        prev = best.get(s.level_id)
        if prev is None or s.combined_accuracy > prev:
            best[s.level_id] = s.combined_accuracy
    return best


def evaluate_unlocks(
    progress: UserProgress,
    all_sessions: Iterable[SessionResult],
    levels: Sequence[LevelConfig] = LEVELS,
) -> frozenset[str]:
    best = best_accuracy_by_level(all_sessions)
    unlocked = set(progress.unlocked_levels)
    for level in levels:
        criteria = level.unlock_criteria
        if criteria is None:
            unlocked.add(level.id)
            continue
        achieved = best.get(criteria.required_level)
        if achieved is not None and achieved >= criteria.min_accuracy:
            unlocked.add(level.id)
    return frozenset(unlocked)


def update_streak(progress: UserProgress, today: date) -> UserProgress:
    last = progress.last_session_date
    if last is None:
        streak = 1
    elif last == today:
        streak = progress.current_streak
    elif last == today - timedelta(days=1):
        streak = progress.current_streak + 1
    else:
        streak = 1
    return dataclasses.replace(
        progress,
        current_streak=streak,
        longest_streak=max(progress.longest_streak, streak),
        last_session_date=today,
    )


def apply_session(
    progress: UserProgress,
    session: SessionResult,
    all_sessions: Iterable[SessionResult],
    levels: Sequence[LevelConfig] = LEVELS,
    *,
    today: date,
) -> ProgressionUpdate:
    """Fold one finished session into the user's progress.

    ``all_sessions`` should already contain ``session``; it is added if not.
    """

    sessions = list(all_sessions)
    if all(s.session_id != session.session_id for s in sessions):
        sessions.append(session)

    updated = dataclasses.replace(
        progress,
        total_sessions=progress.total_sessions + 1,
        total_time_ms=progress.total_time_ms + session.duration_ms,
    )
    updated = update_streak(updated, today)

    unlocked = evaluate_unlocks(updated, sessions, levels)
    order = {level.id: i for i, level in enumerate(levels)}
    newly = tuple(sorted(unlocked - progress.unlocked_levels, key=lambda lid: (order.get(lid, len(order)), lid)))
    updated = dataclasses.replace(updated, unlocked_levels=unlocked)

    for level_id in newly:
        logger.info("level unlocked: %s", level_id)
    return ProgressionUpdate(progress=updated, newly_unlocked=newly)
