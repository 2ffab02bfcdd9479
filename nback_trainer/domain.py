from __future__ import annotations

import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum

from .config import GRID_SIZE, LETTERS, MAX_N_BACK_LEVEL, TOTAL_POSITIONS
from .errors import ConfigurationError


class TrainingMode(StrEnum):
    SINGLE_POSITION = "single-position"
    SINGLE_AUDIO = "single-audio"
    DUAL = "dual"

    @property
    def includes_position(self) -> bool:
        return self is not TrainingMode.SINGLE_AUDIO

    @property
    def includes_audio(self) -> bool:
        return self is not TrainingMode.SINGLE_POSITION

    @property
    def active_modalities(self) -> tuple["Modality", ...]:
        active: list[Modality] = []
        if self.includes_position:
            active.append(Modality.POSITION)
        if self.includes_audio:
            active.append(Modality.AUDIO)
        return tuple(active)

    def is_active(self, modality: "Modality") -> bool:
        return modality in self.active_modalities


class Modality(StrEnum):
    POSITION = "position"
    AUDIO = "audio"


class Classification(StrEnum):
    HIT = "hit"
    MISS = "miss"
    FALSE_ALARM = "false_alarm"
    CORRECT_REJECTION = "correct_rejection"

    @property
    def is_correct(self) -> bool:
        return self in (Classification.HIT, Classification.CORRECT_REJECTION)


def classify(*, responded: bool, is_match: bool) -> Classification:
    if is_match:
        return Classification.HIT if responded else Classification.MISS
    return Classification.FALSE_ALARM if responded else Classification.CORRECT_REJECTION


def validate_n_back(n_back: int) -> int:
    if isinstance(n_back, bool) or not isinstance(n_back, int):
        raise ConfigurationError(f"n_back must be an int, got {n_back!r}")
    if not (1 <= n_back <= MAX_N_BACK_LEVEL):
        raise ConfigurationError(f"n_back must be in [1, {MAX_N_BACK_LEVEL}], got {n_back}")
    return n_back


@dataclass(frozen=True, slots=True)
class Position:
    """Cell on the 3x3 grid, numbered row-major from the top-left."""

    index: int

    def __post_init__(self) -> None:
        if not (0 <= self.index < TOTAL_POSITIONS):
            raise ConfigurationError(f"position index must be in [0, {TOTAL_POSITIONS - 1}]")

    @property
    def row(self) -> int:
        return self.index // GRID_SIZE

    @property
    def column(self) -> int:
        return self.index % GRID_SIZE

    @classmethod
    def from_row_column(cls, row: int, column: int) -> "Position":
        if not (0 <= row < GRID_SIZE and 0 <= column < GRID_SIZE):
            raise ConfigurationError(f"row/column out of range: ({row}, {column})")
        return cls(row * GRID_SIZE + column)


def letter_index(letter: str) -> int:
    try:
        return LETTERS.index(letter)
    except ValueError:
        raise ConfigurationError(f"unknown letter stimulus {letter!r}") from None


def letter_at(index: int) -> str:
    return LETTERS[index]


class SeededRng:
    """Seeded RNG wrapper to keep deterministic streams explicit.

    ``seed=None`` draws from OS entropy, for live sessions.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(None if seed is None else int(seed))

    def random(self) -> float:
        return self._rng.random()

    def randrange(self, stop: int) -> int:
        return self._rng.randrange(stop)

    def randint(self, a: int, b: int) -> int:
        return self._rng.randint(a, b)

    def choice(self, seq: Sequence[str]) -> str:
        return self._rng.choice(seq)


@dataclass(frozen=True, slots=True)
class GeneratedTrial:
    index: int
    position: int
    letter: str
    is_position_match: bool = False
    is_audio_match: bool = False

    @property
    def grid_position(self) -> Position:
        return Position(self.position)


@dataclass(frozen=True, slots=True)
class TrialResult:
    trial_index: int
    position: int
    letter: str
    is_position_match: bool
    is_audio_match: bool
    position_response: bool = False
    audio_response: bool = False
    position_classification: Classification | None = None
    audio_classification: Classification | None = None
    position_response_time_ms: float | None = None
    audio_response_time_ms: float | None = None

    @property
    def response_time_ms(self) -> float | None:
        times = [t for t in (self.position_response_time_ms, self.audio_response_time_ms) if t is not None]
        return min(times) if times else None

    def classification_for(self, modality: Modality) -> Classification | None:
        if modality is Modality.POSITION:
            return self.position_classification
        return self.audio_classification

    def response_time_for(self, modality: Modality) -> float | None:
        if modality is Modality.POSITION:
            return self.position_response_time_ms
        return self.audio_response_time_ms


@dataclass(frozen=True, slots=True)
class PerformanceStats:
    hits: int
    misses: int
    false_alarms: int
    correct_rejections: int
    hit_rate: float
    false_alarm_rate: float
    d_prime: float
    accuracy: float  # percent, 0-100
    avg_response_time: float | None  # ms

    @property
    def classified(self) -> int:
        return self.hits + self.misses + self.false_alarms + self.correct_rejections

    @classmethod
    def empty(cls) -> "PerformanceStats":
        return cls(
            hits=0,
            misses=0,
            false_alarms=0,
            correct_rejections=0,
            hit_rate=0.0,
            false_alarm_rate=0.0,
            d_prime=0.0,
            accuracy=0.0,
            avg_response_time=None,
        )


@dataclass(frozen=True, slots=True)
class SessionResult:
    session_id: str
    level_id: str
    mode: TrainingMode
    n_back: int
    timestamp: datetime
    duration_ms: float
    trials: tuple[TrialResult, ...]
    position_stats: PerformanceStats
    audio_stats: PerformanceStats
    combined_accuracy: float
    completed: bool
    combined_d_prime: float = 0.0

    def accuracy_for(self, modality: Modality) -> float | None:
        """Accuracy of one modality, or None if it was not trained."""

        if not self.mode.is_active(modality):
            return None
        stats = self.position_stats if modality is Modality.POSITION else self.audio_stats
        return stats.accuracy


@dataclass(frozen=True, slots=True)
class UnlockCriteria:
    required_level: str
    min_accuracy: float


@dataclass(frozen=True, slots=True)
class LevelConfig:
    id: str
    name: str
    n_back: int
    mode: TrainingMode
    description: str
    unlock_criteria: UnlockCriteria | None = None


@dataclass(frozen=True, slots=True)
class UserProgress:
    current_level: str
    unlocked_levels: frozenset[str] = field(default_factory=frozenset)
    total_sessions: int = 0
    total_time_ms: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0
    last_session_date: date | None = None

    @classmethod
    def initial(cls, starter_level_ids: Iterable[str]) -> "UserProgress":
        starters = tuple(starter_level_ids)
        if not starters:
            raise ConfigurationError("at least one starter level is required")
        return cls(current_level=starters[0], unlocked_levels=frozenset(starters))

    def is_unlocked(self, level_id: str) -> bool:
        return level_id in self.unlocked_levels
