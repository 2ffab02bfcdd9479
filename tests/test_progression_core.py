from __future__ import annotations

import itertools
from datetime import UTC, date, datetime, timedelta

import pytest

from nback_trainer.domain import PerformanceStats, SessionResult, TrainingMode, UserProgress
from nback_trainer.levels import LEVELS, get_level_by_id, level_id_for, next_level_id, starter_levels
from nback_trainer.progression import apply_session, best_accuracy_by_level, evaluate_unlocks, update_streak

_counter = itertools.count()


def _session(level_id: str, accuracy: float, *, completed: bool = True, duration_ms: float = 60000.0) -> SessionResult:
    level = get_level_by_id(level_id)
    assert level is not None
    return SessionResult(
        session_id=f"s{next(_counter)}",
        level_id=level_id,
        mode=level.mode,
        n_back=level.n_back,
        timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        duration_ms=duration_ms,
        trials=(),
        position_stats=PerformanceStats.empty(),
        audio_stats=PerformanceStats.empty(),
        combined_accuracy=accuracy,
        completed=completed,
    )


def _initial() -> UserProgress:
    return UserProgress.initial(level.id for level in starter_levels())


def test_starter_levels_are_always_unlocked() -> None:
    progress = _initial()
    assert progress.unlocked_levels == frozenset({"position-1", "audio-1"})
    assert evaluate_unlocks(progress, []) == frozenset({"position-1", "audio-1"})


def test_dual_2_unlocks_at_exactly_75_on_position_2() -> None:
    progress = _initial()
    below = evaluate_unlocks(progress, [_session("position-2", 74.9)])
    assert "dual-2" not in below

    at = evaluate_unlocks(progress, [_session("position-2", 74.9), _session("position-2", 75.0)])
    assert "dual-2" in at


def test_abandoned_sessions_never_unlock() -> None:
    unlocked = evaluate_unlocks(_initial(), [_session("position-1", 100.0, completed=False)])
    assert "position-2" not in unlocked


def test_unlocks_are_monotonic() -> None:
    progress = UserProgress(current_level="dual-3", unlocked_levels=frozenset({"position-1", "audio-1", "dual-3"}))
    # dual-3's requirement is not met by any session, it stays unlocked anyway.
    unlocked = evaluate_unlocks(progress, [_session("dual-2", 10.0)])
    assert progress.unlocked_levels <= unlocked


def test_best_accuracy_by_level_ignores_abandoned() -> None:
    best = best_accuracy_by_level(
        [
            _session("audio-1", 60.0),
            _session("audio-1", 85.0),
            _session("audio-1", 99.0, completed=False),
            _session("position-1", 40.0),
        ]
    )
    assert best == {"audio-1": 85.0, "position-1": 40.0}


def test_streak_rules() -> None:
    today = date(2026, 5, 10)
    first = update_streak(_initial(), today)
    assert (first.current_streak, first.longest_streak, first.last_session_date) == (1, 1, today)

    same_day = update_streak(first, today)
    assert same_day.current_streak == 1

    next_day = update_streak(same_day, today + timedelta(days=1))
    assert next_day.current_streak == 2
    assert next_day.longest_streak == 2

    after_gap = update_streak(next_day, today + timedelta(days=4))
    assert after_gap.current_streak == 1
    assert after_gap.longest_streak == 2
    assert after_gap.last_session_date == today + timedelta(days=4)


def test_apply_session_updates_totals_streak_and_unlocks() -> None:
    progress = _initial()
    session = _session("position-1", 80.0, duration_ms=45000.0)
    update = apply_session(progress, session, [], today=date(2026, 1, 2))

    assert update.newly_unlocked == ("position-2",)
    assert update.progress.total_sessions == 1
    assert update.progress.total_time_ms == pytest.approx(45000.0)
    assert update.progress.current_streak == 1
    assert "position-2" in update.progress.unlocked_levels


def test_apply_session_abandoned_counts_time_but_does_not_unlock() -> None:
    progress = _initial()
    session = _session("audio-1", 100.0, completed=False, duration_ms=5000.0)
    update = apply_session(progress, session, [session], today=date(2026, 1, 2))

    assert update.newly_unlocked == ()
    assert update.progress.total_sessions == 1
    assert update.progress.total_time_ms == pytest.approx(5000.0)
    assert update.progress.unlocked_levels == progress.unlocked_levels


def test_apply_session_orders_multiple_unlocks_by_catalogue() -> None:
    progress = _initial()
    history = [_session("position-1", 90.0), _session("audio-1", 90.0)]
    update = apply_session(progress, _session("position-2", 76.0), history, today=date(2026, 1, 2))
    assert update.newly_unlocked == ("position-2", "audio-2", "dual-2")


def test_level_catalogue_helpers() -> None:
    assert [level.id for level in LEVELS] == ["position-1", "position-2", "audio-1", "audio-2", "dual-2", "dual-3"]
    assert level_id_for(2, TrainingMode.DUAL) == "dual-2"
    assert level_id_for(1, TrainingMode.SINGLE_AUDIO) == "audio-1"
    assert next_level_id("dual-2") == "dual-3"
    assert next_level_id("position-9") is None
    assert next_level_id("bogus") is None
    assert get_level_by_id("nope") is None
