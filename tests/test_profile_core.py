from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from nback_trainer.domain import Classification, PerformanceStats, SessionResult, TrainingMode, TrialResult
from nback_trainer.profile import (
    ErrorKind,
    ProfileAnalyzer,
    StrongerModality,
    Trend,
    profile_summary,
)

C = Classification
_BASE = datetime(2026, 4, 1, 9, 0, tzinfo=UTC)


def _stats(accuracy: float, *, hits: int = 0, misses: int = 0, fas: int = 0, crs: int = 0) -> PerformanceStats:
    signal = hits + misses
    noise = fas + crs
    return PerformanceStats(
        hits=hits,
        misses=misses,
        false_alarms=fas,
        correct_rejections=crs,
        hit_rate=hits / signal if signal else 0.0,
        false_alarm_rate=fas / noise if noise else 0.0,
        d_prime=0.0,
        accuracy=accuracy,
        avg_response_time=None,
    )


def _session(
    i: int,
    accuracy: float,
    *,
    mode: TrainingMode = TrainingMode.DUAL,
    n_back: int = 2,
    level_id: str = "dual-2",
    position: PerformanceStats | None = None,
    audio: PerformanceStats | None = None,
    trials: tuple[TrialResult, ...] = (),
) -> SessionResult:
    return SessionResult(
        session_id=f"s{i}",
        level_id=level_id,
        mode=mode,
        n_back=n_back,
        timestamp=_BASE + timedelta(hours=i),
        duration_ms=60000.0,
        trials=trials,
        position_stats=position if position is not None else _stats(accuracy),
        audio_stats=audio if audio is not None else _stats(accuracy),
        combined_accuracy=accuracy,
        completed=True,
    )


def _trial(idx: int, pos: Classification, aud: Classification, rt: float | None = None) -> TrialResult:
    return TrialResult(
        trial_index=idx,
        position=0,
        letter="C",
        is_position_match=pos in (C.HIT, C.MISS),
        is_audio_match=aud in (C.HIT, C.MISS),
        position_response=pos in (C.HIT, C.FALSE_ALARM),
        audio_response=aud in (C.HIT, C.FALSE_ALARM),
        position_classification=pos,
        audio_classification=aud,
        position_response_time_ms=rt,
    )


def test_empty_history_is_neutral() -> None:
    profile = ProfileAnalyzer().analyze([])
    assert profile.session_count == 0
    assert profile.overall_trend is Trend.STABLE
    assert profile.stronger_modality is StrongerModality.BALANCED
    assert profile.consistently_struggles_at is None
    assert profile.consistently_excels_at is None
    assert profile.average_accuracy == 0.0
    assert profile.average_response_time_ms is None
    assert profile.error_patterns == ()
    assert profile.plateau_detected is False
    assert profile.recommended_next_level is None


def test_trend_uses_half_means_with_tolerance() -> None:
    improving = [_session(i, acc) for i, acc in enumerate([60, 62, 64, 70, 72, 74])]
    assert ProfileAnalyzer().analyze(improving).overall_trend is Trend.IMPROVING

    declining = [_session(i, acc) for i, acc in enumerate([80, 78, 76, 60, 58, 56])]
    assert ProfileAnalyzer().analyze(declining).overall_trend is Trend.DECLINING

    # +3 exactly is within tolerance.
    flat = [_session(i, acc) for i, acc in enumerate([70, 70, 73, 73])]
    assert ProfileAnalyzer().analyze(flat).overall_trend is Trend.STABLE
    assert ProfileAnalyzer(tolerance=1.0).analyze(flat).overall_trend is Trend.IMPROVING


def test_sessions_are_ordered_by_timestamp_before_analysis() -> None:
    sessions = [_session(i, acc) for i, acc in enumerate([60, 62, 64, 70, 72, 74])]
    profile = ProfileAnalyzer().analyze(list(reversed(sessions)))
    assert profile.overall_trend is Trend.IMPROVING
    assert profile.recent_accuracies == (60, 62, 64, 70, 72, 74)


def test_stronger_modality_compares_active_modalities() -> None:
    sessions = [_session(i, 70.0, position=_stats(85.0), audio=_stats(60.0)) for i in range(4)]
    assert ProfileAnalyzer().analyze(sessions).stronger_modality is StrongerModality.POSITION

    sessions = [_session(i, 70.0, position=_stats(60.0), audio=_stats(85.0)) for i in range(4)]
    assert ProfileAnalyzer().analyze(sessions).stronger_modality is StrongerModality.AUDIO

    # Position-only history has no audio data to compare against.
    only_position = [
        _session(i, 90.0, mode=TrainingMode.SINGLE_POSITION, level_id="position-2", audio=PerformanceStats.empty())
        for i in range(4)
    ]
    assert ProfileAnalyzer().analyze(only_position).stronger_modality is StrongerModality.BALANCED


def test_level_extremes_need_two_sessions_and_break_ties_low() -> None:
    sessions = [
        _session(0, 90.0, n_back=1, level_id="dual-1"),
        _session(1, 90.0, n_back=1, level_id="dual-1"),
        _session(2, 50.0, n_back=3, level_id="dual-3"),
        _session(3, 60.0, n_back=3, level_id="dual-3"),
        _session(4, 10.0, n_back=4, level_id="dual-4"),
    ]
    profile = ProfileAnalyzer().analyze(sessions)
    # 4-back has a single session and is ignored.
    assert profile.consistently_struggles_at == 3
    assert profile.consistently_excels_at == 1

    tied = [
        _session(0, 70.0, n_back=2),
        _session(1, 70.0, n_back=2),
        _session(2, 70.0, n_back=3, level_id="dual-3"),
        _session(3, 70.0, n_back=3, level_id="dual-3"),
    ]
    profile = ProfileAnalyzer().analyze(tied)
    assert profile.consistently_struggles_at == 2
    assert profile.consistently_excels_at == 2


def test_plateau_requires_ten_flat_sessions_below_80() -> None:
    flat = [_session(i, 70.0 + (i % 2)) for i in range(10)]
    assert ProfileAnalyzer().analyze(flat).plateau_detected is True
    assert ProfileAnalyzer().analyze(flat[:9]).plateau_detected is False

    high = [_session(i, 85.0) for i in range(10)]
    assert ProfileAnalyzer().analyze(high).plateau_detected is False

    noisy = [_session(i, 60.0 if i % 2 else 75.0) for i in range(10)]
    assert ProfileAnalyzer().analyze(noisy).plateau_detected is False


def test_recommended_next_level_after_strong_recent_sessions() -> None:
    sessions = [_session(i, acc) for i, acc in enumerate([40, 50, 80, 85, 90, 80, 85])]
    profile = ProfileAnalyzer().analyze(sessions, current_level="dual-2")
    assert profile.recommended_next_level == "dual-3"

    weak = [_session(i, acc) for i, acc in enumerate([90, 90, 60, 70, 75, 80, 85])]
    assert ProfileAnalyzer().analyze(weak, current_level="dual-2").recommended_next_level is None

    # Without an explicit level the newest session's level is used.
    assert ProfileAnalyzer().analyze(sessions).recommended_next_level == "dual-3"


def test_error_patterns_count_against_all_trials() -> None:
    trials = tuple(
        _trial(i, C.MISS if i < 2 else C.CORRECT_REJECTION, C.FALSE_ALARM if i < 3 else C.CORRECT_REJECTION)
        for i in range(10)
    )
    profile = ProfileAnalyzer().analyze([_session(0, 70.0, trials=trials)])
    kinds = {p.kind: p.frequency for p in profile.error_patterns}
    assert kinds[ErrorKind.POSITION_MISS] == pytest.approx(0.2)
    assert kinds[ErrorKind.AUDIO_FALSE_ALARM] == pytest.approx(0.3)
    assert ErrorKind.AUDIO_MISS not in kinds
    assert ErrorKind.POSITION_FALSE_ALARM not in kinds


def test_severe_fatigue_and_early_performance() -> None:
    good = [_trial(i, C.HIT, C.CORRECT_REJECTION, rt=500.0) for i in range(10)]
    bad = [_trial(10 + i, C.MISS, C.FALSE_ALARM) for i in range(10)]
    session = _session(0, 50.0, trials=tuple(good + bad))

    profile = ProfileAnalyzer().analyze([session])
    (indicator,) = profile.fatigue_indicators
    assert indicator.session_id == "s0"
    assert indicator.onset_trial == 10
    assert indicator.accuracy_drop == pytest.approx(100.0)
    assert indicator.severity == "severe"
    assert profile.performs_better_early is True
    assert profile.performs_better_late is False
    assert profile.average_response_time_ms == pytest.approx(500.0)


def test_short_sessions_are_skipped_for_fatigue() -> None:
    trials = tuple([_trial(0, C.HIT, C.HIT)] * 4 + [_trial(1, C.MISS, C.MISS)] * 4)
    profile = ProfileAnalyzer().analyze([_session(0, 50.0, trials=trials)])
    assert profile.fatigue_indicators == ()


def test_response_tendencies_use_recent_rates() -> None:
    trigger_happy = [
        _session(i, 60.0, position=_stats(60.0, hits=5, fas=5, crs=5), audio=_stats(60.0, hits=5, fas=4, crs=6))
        for i in range(5)
    ]
    profile = ProfileAnalyzer().analyze(trigger_happy)
    assert profile.tends_to_press_match_too_often is True
    assert profile.tends_to_press_match_too_rarely is False

    hesitant = [
        _session(i, 60.0, position=_stats(60.0, hits=2, misses=6, crs=10), audio=_stats(60.0, hits=3, misses=5, crs=10))
        for i in range(5)
    ]
    profile = ProfileAnalyzer().analyze(hesitant)
    assert profile.tends_to_press_match_too_often is False
    assert profile.tends_to_press_match_too_rarely is True


def test_window_limits_sessions_considered() -> None:
    sessions = [_session(i, 10.0) for i in range(5)] + [_session(5 + i, 90.0) for i in range(5)]
    profile = ProfileAnalyzer(window=5).analyze(sessions)
    assert profile.session_count == 5
    assert profile.average_accuracy == pytest.approx(90.0)


def test_invalid_analyzer_settings() -> None:
    with pytest.raises(ValueError):
        ProfileAnalyzer(window=0)
    with pytest.raises(ValueError):
        ProfileAnalyzer(tolerance=-1.0)


def test_profile_summary_mentions_findings() -> None:
    sessions = [_session(i, 85.0, position=_stats(95.0), audio=_stats(75.0)) for i in range(6)]
    text = profile_summary(ProfileAnalyzer().analyze(sessions, current_level="dual-2"))
    assert "Sessions analysed: 6" in text
    assert "Average accuracy: 85.0%" in text
    assert "Stronger at: position tasks" in text
    assert "Excels at: 2-back" in text
    assert "Ready to try: dual-3" in text
    assert "Plateau" not in text
