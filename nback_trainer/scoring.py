from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from scipy.stats import norm

from .domain import Classification, Modality, PerformanceStats, TrainingMode, TrialResult

ADVANCEMENT_D_PRIME = 2.0


class PerformanceLevel(StrEnum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


@dataclass(frozen=True, slots=True)
class ScoringResult:
    position_stats: PerformanceStats
    audio_stats: PerformanceStats
    combined_accuracy: float
    combined_d_prime: float


def d_prime(hit_rate: float, false_alarm_rate: float, n: int) -> float:
    """Sensitivity index z(HR) - z(FAR).

    Rates are clamped to [1/(2n), 1 - 1/(2n)] so perfect or empty rates stay
    finite. With n < 1 the bounds collapse to 0.5 and d' is 0.
    """

    n = max(1, int(n))
    lo = 1.0 / (2.0 * n)
    hi = 1.0 - lo
    hr = min(max(hit_rate, lo), hi)
    far = min(max(false_alarm_rate, lo), hi)
    return float(norm.ppf(hr) - norm.ppf(far))


def calculate_stats(trials: Sequence[TrialResult], modality: Modality) -> PerformanceStats:
    hits = misses = false_alarms = correct_rejections = 0
    response_times: list[float] = []

    for trial in trials:
        c = trial.classification_for(modality)
        if c is None:
            continue
        if c is Classification.HIT:
            hits += 1
        elif c is Classification.MISS:
            misses += 1
        elif c is Classification.FALSE_ALARM:
            false_alarms += 1
        else:
            correct_rejections += 1
        rt = trial.response_time_for(modality)
        if rt is not None:
            response_times.append(rt)

    signal = hits + misses
    noise = false_alarms + correct_rejections
    classified = signal + noise

    hit_rate = hits / signal if signal else 0.0
    false_alarm_rate = false_alarms / noise if noise else 0.0
    accuracy = (hits + correct_rejections) / classified * 100.0 if classified else 0.0
    avg_rt = sum(response_times) / len(response_times) if response_times else None

    return PerformanceStats(
        hits=hits,
        misses=misses,
        false_alarms=false_alarms,
        correct_rejections=correct_rejections,
        hit_rate=hit_rate,
        false_alarm_rate=false_alarm_rate,
        d_prime=d_prime(hit_rate, false_alarm_rate, classified),
        accuracy=accuracy,
        avg_response_time=avg_rt,
    )


def score(trials: Sequence[TrialResult], mode: TrainingMode) -> ScoringResult:
    position_stats = (
        calculate_stats(trials, Modality.POSITION) if mode.includes_position else PerformanceStats.empty()
    )
    audio_stats = calculate_stats(trials, Modality.AUDIO) if mode.includes_audio else PerformanceStats.empty()

    active = [s for m, s in ((Modality.POSITION, position_stats), (Modality.AUDIO, audio_stats)) if mode.is_active(m)]
    combined_accuracy = sum(s.accuracy for s in active) / len(active)
    combined_d_prime = sum(s.d_prime for s in active) / len(active)

    return ScoringResult(
        position_stats=position_stats,
        audio_stats=audio_stats,
        combined_accuracy=combined_accuracy,
        combined_d_prime=combined_d_prime,
    )


def performance_level(d: float) -> PerformanceLevel:
    if d < 1.0:
        return PerformanceLevel.POOR
    if d < 2.0:
        return PerformanceLevel.FAIR
    if d < 3.0:
        return PerformanceLevel.GOOD
    return PerformanceLevel.EXCELLENT


def meets_advancement_criteria(d: float, threshold: float = ADVANCEMENT_D_PRIME) -> bool:
    return d >= threshold
