from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from statistics import fmean, pvariance

from .domain import Classification, Modality, SessionResult, TrialResult
from .levels import next_level_id

MISS_PATTERN_THRESHOLD = 0.15
FALSE_ALARM_PATTERN_THRESHOLD = 0.10
FATIGUE_MIN_TRIALS = 10
FATIGUE_DROP = 15.0
FATIGUE_SEVERE_DROP = 25.0
TENDENCY_RATE = 0.30
EARLY_LATE_MARGIN = 5.0
PLATEAU_SESSIONS = 10
PLATEAU_MAX_VARIANCE = 5.0
PLATEAU_MAX_MEAN = 80.0
RECOMMEND_SESSIONS = 5
RECOMMEND_MIN_ACCURACY = 80.0


class Trend(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class StrongerModality(StrEnum):
    POSITION = "position"
    AUDIO = "audio"
    BALANCED = "balanced"


class ErrorKind(StrEnum):
    POSITION_MISS = "position_miss"
    AUDIO_MISS = "audio_miss"
    POSITION_FALSE_ALARM = "position_false_alarm"
    AUDIO_FALSE_ALARM = "audio_false_alarm"


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    kind: ErrorKind
    frequency: float  # fraction of trials
    context: str


@dataclass(frozen=True, slots=True)
class FatigueIndicator:
    session_id: str
    onset_trial: int
    accuracy_drop: float
    severity: str  # "moderate" | "severe"


@dataclass(frozen=True, slots=True)
class UserBehavioralProfile:
    """Derived view over recent sessions. Never stored as the source of truth."""

    session_count: int
    overall_trend: Trend
    position_trend: Trend
    audio_trend: Trend
    stronger_modality: StrongerModality
    consistently_struggles_at: int | None
    consistently_excels_at: int | None
    average_accuracy: float
    recent_accuracies: tuple[float, ...]
    average_response_time_ms: float | None
    error_patterns: tuple[ErrorPattern, ...]
    fatigue_indicators: tuple[FatigueIndicator, ...]
    tends_to_press_match_too_often: bool
    tends_to_press_match_too_rarely: bool
    performs_better_early: bool
    performs_better_late: bool
    plateau_detected: bool
    recommended_next_level: str | None


def _mean(values: Sequence[float]) -> float:
    return fmean(values) if values else 0.0


def _trial_accuracy(trials: Sequence[TrialResult]) -> float:
    total = 0
    correct = 0
    for t in trials:
        for c in (t.position_classification, t.audio_classification):
            if c is None:
                continue
            total += 1
            if c.is_correct:
                correct += 1
    return correct / total * 100.0 if total else 0.0


def _half_accuracies(session: SessionResult) -> tuple[float, float]:
    mid = len(session.trials) // 2
    return _trial_accuracy(session.trials[:mid]), _trial_accuracy(session.trials[mid:])


class ProfileAnalyzer:
    """Turns a window of recent sessions into a behavioral profile.

    Sessions are ordered oldest to newest by timestamp and only the newest
    ``window`` are considered. Trends compare the mean of the first half of
    the window with the second half; differences within ``tolerance``
    accuracy points count as stable.
    """

    def __init__(self, *, window: int = 20, tolerance: float = 3.0) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        if tolerance < 0.0:
            raise ValueError("tolerance must be >= 0")
        self._window = int(window)
        self._tolerance = float(tolerance)

    def analyze(
        self,
        recent_sessions: Sequence[SessionResult],
        *,
        current_level: str | None = None,
    ) -> UserBehavioralProfile:
        sessions = sorted(recent_sessions, key=lambda s: s.timestamp)[-self._window :]
        combined = [s.combined_accuracy for s in sessions]
        pos_acc = self._modality_accuracies(sessions, Modality.POSITION)
        aud_acc = self._modality_accuracies(sessions, Modality.AUDIO)

        early, late = self._early_late(sessions)
        level = current_level if current_level is not None else (sessions[-1].level_id if sessions else None)

        return UserBehavioralProfile(
            session_count=len(sessions),
            overall_trend=self._trend(combined),
            position_trend=self._trend(pos_acc),
            audio_trend=self._trend(aud_acc),
            stronger_modality=self._stronger_modality(pos_acc, aud_acc),
            consistently_struggles_at=self._level_extreme(sessions, lowest=True),
            consistently_excels_at=self._level_extreme(sessions, lowest=False),
            average_accuracy=_mean(combined),
            recent_accuracies=tuple(combined[-10:]),
            average_response_time_ms=self._average_response_time(sessions),
            error_patterns=self._error_patterns(sessions),
            fatigue_indicators=self._fatigue(sessions),
            tends_to_press_match_too_often=self._false_alarm_tendency(sessions),
            tends_to_press_match_too_rarely=self._miss_tendency(sessions),
            performs_better_early=early,
            performs_better_late=late,
            plateau_detected=self._plateau(combined),
            recommended_next_level=self._recommend(combined, level),
        )

    def _trend(self, values: Sequence[float]) -> Trend:
        if len(values) < 2:
            return Trend.STABLE
        mid = len(values) // 2
        diff = _mean(values[mid:]) - _mean(values[:mid])
        if diff > self._tolerance:
            return Trend.IMPROVING
        if diff < -self._tolerance:
            return Trend.DECLINING
        return Trend.STABLE

    @staticmethod
    def _modality_accuracies(sessions: Sequence[SessionResult], modality: Modality) -> list[float]:
        out: list[float] = []
        for s in sessions:
            acc = s.accuracy_for(modality)
            if acc is not None:
                out.append(acc)
        return out

    def _stronger_modality(self, pos_acc: Sequence[float], aud_acc: Sequence[float]) -> StrongerModality:
        if not pos_acc or not aud_acc:
            return StrongerModality.BALANCED
        diff = _mean(pos_acc) - _mean(aud_acc)
        if diff > self._tolerance:
            return StrongerModality.POSITION
        if diff < -self._tolerance:
            return StrongerModality.AUDIO
        return StrongerModality.BALANCED

    @staticmethod
    def _level_extreme(sessions: Sequence[SessionResult], *, lowest: bool) -> int | None:
        by_level: dict[int, list[float]] = defaultdict(list)
        for s in sessions:
            by_level[s.n_back].append(s.combined_accuracy)
        candidates = [(fmean(accs), n) for n, accs in by_level.items() if len(accs) >= 2]
        if not candidates:
            return None
        # Ties go to the lower n-back level.
        if lowest:
            return min(candidates, key=lambda c: (c[0], c[1]))[1]
        return min(candidates, key=lambda c: (-c[0], c[1]))[1]

    @staticmethod
    def _average_response_time(sessions: Sequence[SessionResult]) -> float | None:
        times: list[float] = []
        for s in sessions:
            for t in s.trials:
                for rt in (t.position_response_time_ms, t.audio_response_time_ms):
                    if rt is not None:
                        times.append(rt)
        return fmean(times) if times else None

    @staticmethod
    def _error_patterns(sessions: Sequence[SessionResult]) -> tuple[ErrorPattern, ...]:
        counts = dict.fromkeys(ErrorKind, 0)
        total = 0
        for s in sessions:
            for t in s.trials:
                total += 1
                if t.position_classification is Classification.MISS:
                    counts[ErrorKind.POSITION_MISS] += 1
                elif t.position_classification is Classification.FALSE_ALARM:
                    counts[ErrorKind.POSITION_FALSE_ALARM] += 1
                if t.audio_classification is Classification.MISS:
                    counts[ErrorKind.AUDIO_MISS] += 1
                elif t.audio_classification is Classification.FALSE_ALARM:
                    counts[ErrorKind.AUDIO_FALSE_ALARM] += 1
        if total == 0:
            return ()

        contexts = {
            ErrorKind.POSITION_MISS: (MISS_PATTERN_THRESHOLD, "Frequently missing position matches"),
            ErrorKind.AUDIO_MISS: (MISS_PATTERN_THRESHOLD, "Frequently missing audio matches"),
            ErrorKind.POSITION_FALSE_ALARM: (FALSE_ALARM_PATTERN_THRESHOLD, "Frequent false alarms on position"),
            ErrorKind.AUDIO_FALSE_ALARM: (FALSE_ALARM_PATTERN_THRESHOLD, "Frequent false alarms on audio"),
        }
        patterns: list[ErrorPattern] = []
        for kind, (threshold, context) in contexts.items():
            freq = counts[kind] / total
            if freq > threshold:
                patterns.append(ErrorPattern(kind=kind, frequency=freq, context=context))
        return tuple(patterns)

    @staticmethod
    def _fatigue(sessions: Sequence[SessionResult]) -> tuple[FatigueIndicator, ...]:
        indicators: list[FatigueIndicator] = []
        for s in sessions:
            if len(s.trials) < FATIGUE_MIN_TRIALS:
                continue
            first, second = _half_accuracies(s)
            drop = first - second
            if drop > FATIGUE_DROP:
                indicators.append(
                    FatigueIndicator(
                        session_id=s.session_id,
                        onset_trial=len(s.trials) // 2,
                        accuracy_drop=drop,
                        severity="severe" if drop > FATIGUE_SEVERE_DROP else "moderate",
                    )
                )
        return tuple(indicators)

    @staticmethod
    def _false_alarm_tendency(sessions: Sequence[SessionResult]) -> bool:
        rates: list[float] = []
        for s in sessions[-RECOMMEND_SESSIONS:]:
            active = [
                stats.false_alarm_rate
                for modality, stats in ((Modality.POSITION, s.position_stats), (Modality.AUDIO, s.audio_stats))
                if s.mode.is_active(modality) and stats.false_alarms + stats.correct_rejections > 0
            ]
            if active:
                rates.append(fmean(active))
        return bool(rates) and fmean(rates) > TENDENCY_RATE

    @staticmethod
    def _miss_tendency(sessions: Sequence[SessionResult]) -> bool:
        rates: list[float] = []
        for s in sessions[-RECOMMEND_SESSIONS:]:
            active = [
                1.0 - stats.hit_rate
                for modality, stats in ((Modality.POSITION, s.position_stats), (Modality.AUDIO, s.audio_stats))
                if s.mode.is_active(modality) and stats.hits + stats.misses > 0
            ]
            if active:
                rates.append(fmean(active))
        return bool(rates) and fmean(rates) > TENDENCY_RATE

    @staticmethod
    def _early_late(sessions: Sequence[SessionResult]) -> tuple[bool, bool]:
        early = 0
        late = 0
        for s in sessions[-RECOMMEND_SESSIONS:]:
            if len(s.trials) < FATIGUE_MIN_TRIALS:
                continue
            first, second = _half_accuracies(s)
            if first > second + EARLY_LATE_MARGIN:
                early += 1
            elif second > first + EARLY_LATE_MARGIN:
                late += 1
        return early > late, late > early

    @staticmethod
    def _plateau(combined: Sequence[float]) -> bool:
        if len(combined) < PLATEAU_SESSIONS:
            return False
        recent = combined[-PLATEAU_SESSIONS:]
        return pvariance(recent) < PLATEAU_MAX_VARIANCE and fmean(recent) < PLATEAU_MAX_MEAN

    @staticmethod
    def _recommend(combined: Sequence[float], current_level: str | None) -> str | None:
        if not combined or current_level is None:
            return None
        if fmean(combined[-RECOMMEND_SESSIONS:]) >= RECOMMEND_MIN_ACCURACY:
            return next_level_id(current_level)
        return None


def profile_summary(profile: UserBehavioralProfile) -> str:
    lines = [f"Sessions analysed: {profile.session_count}"]
    if profile.session_count:
        lines.append(f"Average accuracy: {profile.average_accuracy:.1f}%")
    if profile.overall_trend is not Trend.STABLE:
        lines.append(f"Performance trend: {profile.overall_trend}")
    if profile.stronger_modality is not StrongerModality.BALANCED:
        lines.append(f"Stronger at: {profile.stronger_modality} tasks")
    if profile.consistently_struggles_at is not None:
        lines.append(f"Struggles most at: {profile.consistently_struggles_at}-back")
    if profile.consistently_excels_at is not None:
        lines.append(f"Excels at: {profile.consistently_excels_at}-back")
    if profile.tends_to_press_match_too_often:
        lines.append("Tendency: over-reports matches (false alarms)")
    elif profile.tends_to_press_match_too_rarely:
        lines.append("Tendency: under-reports matches (misses)")
    for pattern in profile.error_patterns:
        lines.append(f"{pattern.context} ({pattern.frequency:.0%} of trials)")
    if profile.fatigue_indicators:
        lines.append(f"Accuracy drops late in {len(profile.fatigue_indicators)} session(s)")
    if profile.plateau_detected:
        lines.append("Plateau detected: accuracy flat below 80%")
    if profile.recommended_next_level is not None:
        lines.append(f"Ready to try: {profile.recommended_next_level}")
    return "\n".join(lines)
