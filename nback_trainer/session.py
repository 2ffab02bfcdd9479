from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from .clock import Clock, utc_now
from .config import DEFAULT_TRIALS_PER_SESSION, SessionTimingConfig
from .domain import GeneratedTrial, Modality, SessionResult, TrainingMode, TrialResult, classify
from .errors import StateError
from .events import DomainEvent, SessionStarted, TrialCompleted
from .levels import level_id_for
from .ports import AudioPlayer, NullAudioPlayer
from .scoring import score
from .sequence import RandomSource, SequenceConfig, SequenceGenerator

logger = logging.getLogger(__name__)

_POSITION_COMMANDS = ("A", "POS", "POSITION")
_AUDIO_COMMANDS = ("L", "AUD", "AUDIO")


class SessionState(StrEnum):
    IDLE = "idle"
    PRESENTING = "presenting"
    AWAITING_RESPONSE = "awaiting_response"
    SCORED = "scored"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABANDONED)


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """View model for the UI (pure data)."""

    title: str
    state: SessionState
    mode: TrainingMode
    n_back: int
    trial_index: int
    total_trials: int
    trials_scored: int
    position: int | None
    letter: str | None
    time_remaining_s: float | None
    position_responded: bool
    audio_responded: bool
    progress: float
    input_hint: str


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None:
        ...


class NBackSession:
    """Clock-driven n-back session.

    IDLE -> PRESENTING(i) -> AWAITING_RESPONSE(i) -> SCORED(i) -> next trial,
    COMPLETED or ABANDONED. The response window opens at stimulus onset and
    closes ``timing.window_s`` later; ``update()`` scores every window that
    has closed since the previous call, in order.

    The one exception is a stall: if ``timing.inactivity_timeout_s`` has
    passed since the current stimulus onset, ``update()`` abandons the
    session with reason ``"timeout"`` and scores nothing more. Paused time
    never counts toward the timeout.
    """

    def __init__(
        self,
        *,
        config: SequenceConfig,
        clock: Clock,
        level_id: str | None = None,
        timing: SessionTimingConfig | None = None,
        audio: AudioPlayer | None = None,
        events: EventPublisher | None = None,
        rng: RandomSource | None = None,
        session_id: str | None = None,
        strict: bool = False,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock
        self._timing = timing or SessionTimingConfig()
        self._audio = audio if audio is not None else NullAudioPlayer()
        self._events = events
        self._strict = bool(strict)
        self._wall_clock = wall_clock

        self._session_id = session_id or uuid.uuid4().hex
        self._level_id = level_id or level_id_for(config.n_back, config.mode)
        self._trials: list[GeneratedTrial] = SequenceGenerator(rng).generate(config)

        self._state = SessionState.IDLE
        self._index = 0
        self._onset_s = 0.0
        self._responses: dict[Modality, float] = {}
        self._results: list[TrialResult] = []

        self._timestamp = self._wall_clock()
        self._started_at_s: float | None = None
        self._ended_at_s: float | None = None
        self._paused_at_s: float | None = None
        self._paused_total_s = 0.0
        self._abandon_reason: str | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def level_id(self) -> str:
        return self._level_id

    @property
    def config(self) -> SequenceConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def trials(self) -> list[GeneratedTrial]:
        return list(self._trials)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def abandon_reason(self) -> str | None:
        return self._abandon_reason

    def trial_results(self) -> list[TrialResult]:
        return list(self._results)

    def can_exit(self) -> bool:
        return self._state in (SessionState.IDLE, SessionState.COMPLETED, SessionState.ABANDONED)

    def start(self) -> bool:
        if self._state is not SessionState.IDLE:
            return self._reject(f"start() in state {self._state}")
        now = self._clock.now()
        self._started_at_s = now
        self._timestamp = self._wall_clock()
        self._publish(
            SessionStarted(
                aggregate_id=self._session_id,
                level_id=self._level_id,
                n_back=self._config.n_back,
                mode=str(self._config.mode),
                trial_count=len(self._trials),
            )
        )
        self._present(0, now)
        return True

    def update(self) -> None:
        if self._state not in (SessionState.PRESENTING, SessionState.AWAITING_RESPONSE, SessionState.SCORED):
            return
        now = self._clock.now()

        if now - self._onset_s >= self._timing.inactivity_timeout_s:
            self._abandon(now, reason="timeout")
            return

        if self._state is SessionState.PRESENTING:
            self._state = SessionState.AWAITING_RESPONSE

        window = self._timing.window_s
        while self._state is SessionState.AWAITING_RESPONSE:
            closes = self._onset_s + window
            if now < closes:
                return
            self._score_current()
            next_index = self._index + 1
            if next_index >= len(self._trials):
                self._complete(closes)
                return
            self._present(next_index, closes)
            if now < closes + window:
                return
            self._state = SessionState.AWAITING_RESPONSE

    def respond(self, modality: Modality) -> bool:
        """Register a match claim for the current trial. Returns True if accepted."""

        self.update()
        if self._state not in (SessionState.PRESENTING, SessionState.AWAITING_RESPONSE):
            return self._reject(f"{modality} response with no open window (state={self._state})")
        if not self._config.mode.is_active(modality):
            return self._reject(f"{modality} response in {self._config.mode} mode")
        if modality in self._responses:
            logger.debug("duplicate %s response on trial %d ignored", modality, self._index)
            return False

        rt_ms = max(0.0, (self._clock.now() - self._onset_s) * 1000.0)
        self._responses[modality] = rt_ms
        self._state = SessionState.AWAITING_RESPONSE

        if self._timing.feedback:
            trial = self._trials[self._index]
            is_match = trial.is_position_match if modality is Modality.POSITION else trial.is_audio_match
            self._audio.play_feedback("correct" if is_match else "incorrect")
        return True

    def respond_position(self) -> bool:
        return self.respond(Modality.POSITION)

    def respond_audio(self) -> bool:
        return self.respond(Modality.AUDIO)

    def submit_answer(self, raw: str) -> bool:
        command = str(raw).strip().upper()
        if command in _POSITION_COMMANDS:
            return self.respond(Modality.POSITION)
        if command in _AUDIO_COMMANDS:
            return self.respond(Modality.AUDIO)
        return False

    def pause(self) -> bool:
        self.update()
        if self._state not in (SessionState.PRESENTING, SessionState.AWAITING_RESPONSE):
            return self._reject(f"pause() in state {self._state}")
        self._paused_at_s = self._clock.now()
        self._state = SessionState.PAUSED
        logger.debug("session %s paused on trial %d", self._session_id, self._index)
        return True

    def resume(self) -> bool:
        if self._state is not SessionState.PAUSED:
            return self._reject(f"resume() in state {self._state}")
        now = self._clock.now()
        assert self._paused_at_s is not None
        self._paused_total_s += now - self._paused_at_s
        self._paused_at_s = None
        # The interrupted trial is shown again with a fresh window.
        self._present(self._index, now)
        return True

    def stop(self, *, reason: str = "stopped") -> None:
        if self._state.is_terminal:
            return
        self._abandon(self._clock.now(), reason=reason)

    def time_remaining_s(self) -> float | None:
        if self._state not in (SessionState.PRESENTING, SessionState.AWAITING_RESPONSE):
            return None
        remaining = self._onset_s + self._timing.window_s - self._clock.now()
        return max(0.0, remaining)

    def duration_ms(self) -> float:
        if self._started_at_s is None:
            return 0.0
        end = self._ended_at_s
        if end is None:
            end = self._paused_at_s if self._paused_at_s is not None else self._clock.now()
        return max(0.0, (end - self._started_at_s - self._paused_total_s) * 1000.0)

    def result(self) -> SessionResult:
        """Score the trials closed so far. ``completed`` is only True once COMPLETED."""

        scored = score(self._results, self._config.mode)
        return SessionResult(
            session_id=self._session_id,
            level_id=self._level_id,
            mode=self._config.mode,
            n_back=self._config.n_back,
            timestamp=self._timestamp,
            duration_ms=self.duration_ms(),
            trials=tuple(self._results),
            position_stats=scored.position_stats,
            audio_stats=scored.audio_stats,
            combined_accuracy=scored.combined_accuracy,
            completed=self._state is SessionState.COMPLETED,
            combined_d_prime=scored.combined_d_prime,
        )

    def snapshot(self) -> SessionSnapshot:
        showing = self._state in (SessionState.PRESENTING, SessionState.AWAITING_RESPONSE)
        trial = self._trials[self._index] if showing else None
        mode = self._config.mode
        hints = []
        if mode.includes_position:
            hints.append("A=position match")
        if mode.includes_audio:
            hints.append("L=letter match")
        hints.append("Esc=stop")
        return SessionSnapshot(
            title=f"{self._config.n_back}-Back {_MODE_TITLES[mode]}",
            state=self._state,
            mode=mode,
            n_back=self._config.n_back,
            trial_index=self._index,
            total_trials=len(self._trials),
            trials_scored=len(self._results),
            position=None if trial is None or not mode.includes_position else trial.position,
            letter=None if trial is None or not mode.includes_audio else trial.letter,
            time_remaining_s=self.time_remaining_s(),
            position_responded=Modality.POSITION in self._responses,
            audio_responded=Modality.AUDIO in self._responses,
            progress=len(self._results) / len(self._trials),
            input_hint="  ".join(hints),
        )

    def _present(self, index: int, onset_s: float) -> None:
        self._index = index
        self._onset_s = onset_s
        self._responses = {}
        self._state = SessionState.PRESENTING
        trial = self._trials[index]
        logger.debug("session %s presenting trial %d at %.3f", self._session_id, index, onset_s)
        if self._config.mode.includes_audio:
            self._audio.play_letter(trial.letter)

    def _score_current(self) -> None:
        trial = self._trials[self._index]
        mode = self._config.mode
        pos_rt = self._responses.get(Modality.POSITION)
        aud_rt = self._responses.get(Modality.AUDIO)

        pos_cls = None
        if mode.includes_position:
            pos_cls = classify(responded=pos_rt is not None, is_match=trial.is_position_match)
        aud_cls = None
        if mode.includes_audio:
            aud_cls = classify(responded=aud_rt is not None, is_match=trial.is_audio_match)

        result = TrialResult(
            trial_index=trial.index,
            position=trial.position,
            letter=trial.letter,
            is_position_match=trial.is_position_match,
            is_audio_match=trial.is_audio_match,
            position_response=pos_rt is not None,
            audio_response=aud_rt is not None,
            position_classification=pos_cls,
            audio_classification=aud_cls,
            position_response_time_ms=pos_rt,
            audio_response_time_ms=aud_rt,
        )
        self._results.append(result)
        self._state = SessionState.SCORED
        self._publish(
            TrialCompleted(
                aggregate_id=self._session_id,
                trial_index=trial.index,
                position_correct=None if pos_cls is None else pos_cls.is_correct,
                audio_correct=None if aud_cls is None else aud_cls.is_correct,
                response_time_ms=result.response_time_ms,
            )
        )

    def _complete(self, at_s: float) -> None:
        self._ended_at_s = at_s
        self._state = SessionState.COMPLETED
        logger.debug("session %s completed after %d trials", self._session_id, len(self._results))

    def _abandon(self, at_s: float, *, reason: str) -> None:
        if self._state is SessionState.IDLE:
            self._started_at_s = at_s
        elif self._state is SessionState.PAUSED and self._paused_at_s is not None:
            self._paused_total_s += at_s - self._paused_at_s
            self._paused_at_s = None
        self._ended_at_s = at_s
        self._state = SessionState.ABANDONED
        self._abandon_reason = reason
        logger.warning(
            "session %s abandoned (%s) after %d of %d trials",
            self._session_id,
            reason,
            len(self._results),
            len(self._trials),
        )

    def _reject(self, reason: str) -> bool:
        if self._strict:
            raise StateError(reason)
        logger.debug("ignored input: %s", reason)
        return False

    def _publish(self, event: DomainEvent) -> None:
        if self._events is not None:
            self._events.publish(event)


_MODE_TITLES = {
    TrainingMode.SINGLE_POSITION: "Position",
    TrainingMode.SINGLE_AUDIO: "Audio",
    TrainingMode.DUAL: "Dual",
}


def build_nback_session(
    *,
    clock: Clock,
    n_back: int,
    mode: TrainingMode,
    trial_count: int = DEFAULT_TRIALS_PER_SESSION,
    seed: int | None = None,
    level_id: str | None = None,
    timing: SessionTimingConfig | None = None,
    audio: AudioPlayer | None = None,
    events: EventPublisher | None = None,
    strict: bool = False,
) -> NBackSession:
    config = SequenceConfig(n_back=n_back, mode=mode, trial_count=trial_count, seed=seed)
    return NBackSession(
        config=config,
        clock=clock,
        level_id=level_id,
        timing=timing,
        audio=audio,
        events=events,
        strict=strict,
    )
