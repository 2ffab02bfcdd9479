from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

from .config import DEFAULT_TRIALS_PER_SESSION, LETTERS, TARGET_MATCH_PERCENTAGE, TOTAL_POSITIONS
from .domain import GeneratedTrial, Modality, SeededRng, TrainingMode, validate_n_back
from .errors import ConfigurationError


class RandomSource(Protocol):
    def random(self) -> float:
        ...

    def randrange(self, stop: int) -> int:
        ...


@dataclass(frozen=True, slots=True)
class SequenceConfig:
    n_back: int
    mode: TrainingMode
    trial_count: int = DEFAULT_TRIALS_PER_SESSION
    target_match_percentage: float = TARGET_MATCH_PERCENTAGE
    seed: int | None = None

    def __post_init__(self) -> None:
        validate_n_back(self.n_back)
        if not isinstance(self.mode, TrainingMode):
            raise ConfigurationError(f"unknown training mode {self.mode!r}")
        if self.trial_count <= self.n_back:
            raise ConfigurationError(
                f"trial_count ({self.trial_count}) must exceed n_back ({self.n_back})"
            )
        if not (0.0 < self.target_match_percentage < 1.0):
            raise ConfigurationError("target_match_percentage must be in (0, 1)")


class SequenceGenerator:
    """Produces stimulus streams with a controlled n-back match rate.

    From trial ``n_back`` onwards each active modality flips an independent
    coin with probability ``target_match_percentage``. A match copies the
    stimulus ``n_back`` steps back; anything else is drawn from the remaining
    values, so there are never accidental matches. Inactive modalities still
    get a stimulus (the UI shows it) drawn the same non-matching way.
    """

    def __init__(self, rng: RandomSource | None = None) -> None:
        self._rng = rng

    def generate(self, config: SequenceConfig) -> list[GeneratedTrial]:
        return list(self.iter_trials(config))

    def iter_trials(self, config: SequenceConfig) -> Iterator[GeneratedTrial]:
        rng = self._rng if self._rng is not None else SeededRng(config.seed)
        n = config.n_back
        p = config.target_match_percentage
        use_position = config.mode.includes_position
        use_audio = config.mode.includes_audio

        positions: deque[int] = deque(maxlen=n)
        letters: deque[int] = deque(maxlen=n)

        for i in range(config.trial_count):
            if i < n:
                pos = rng.randrange(TOTAL_POSITIONS)
                let = rng.randrange(len(LETTERS))
                pos_match = False
                aud_match = False
            else:
                # positions[0] is the stimulus exactly n_back steps back.
                pos_match = use_position and rng.random() < p
                aud_match = use_audio and rng.random() < p
                pos = positions[0] if pos_match else _draw_excluding(rng, TOTAL_POSITIONS, positions[0])
                let = letters[0] if aud_match else _draw_excluding(rng, len(LETTERS), letters[0])

            positions.append(pos)
            letters.append(let)
            yield GeneratedTrial(
                index=i,
                position=pos,
                letter=LETTERS[let],
                is_position_match=pos_match,
                is_audio_match=aud_match,
            )


def _draw_excluding(rng: RandomSource, size: int, excluded: int) -> int:
    r = rng.randrange(size - 1)
    return r + 1 if r >= excluded else r


def generate_sequence(config: SequenceConfig) -> list[GeneratedTrial]:
    return SequenceGenerator(SeededRng(config.seed)).generate(config)


def realized_match_rate(trials: Sequence[GeneratedTrial], n_back: int, modality: Modality) -> float:
    """Fraction of eligible trials (index >= n_back) whose stimulus repeats n_back back."""

    eligible = 0
    matches = 0
    for i in range(n_back, len(trials)):
        eligible += 1
        if modality is Modality.POSITION:
            same = trials[i].position == trials[i - n_back].position
        else:
            same = trials[i].letter == trials[i - n_back].letter
        if same:
            matches += 1
    if eligible == 0:
        return 0.0
    return matches / eligible
