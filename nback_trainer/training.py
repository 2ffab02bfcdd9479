from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from .clock import Clock, RealClock, local_today
from .config import DEFAULT_TRIALS_PER_SESSION, AppSettings, SessionTimingConfig
from .domain import LevelConfig, SessionResult, UserProgress
from .errors import ConfigurationError, PersistenceError, StateError
from .events import LevelUnlocked, SessionAbandoned, SessionCompleted
from .levels import LEVELS, get_level_by_id, starter_levels
from .persistence import SqliteProgressRepository, SqliteSessionRepository, open_db
from .ports import AudioPlayer, ServiceRegistry, build_registry
from .profile import ProfileAnalyzer, UserBehavioralProfile
from .progression import apply_session
from .sequence import SequenceConfig
from .session import NBackSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FinishOutcome:
    result: SessionResult
    progress: UserProgress
    newly_unlocked: tuple[str, ...]
    persistence_error: PersistenceError | None = None


class TrainingService:
    """Composition of session, scoring, persistence and progression for one user."""

    def __init__(
        self,
        registry: ServiceRegistry,
        *,
        clock: Clock | None = None,
        levels: Sequence[LevelConfig] = LEVELS,
        timing: SessionTimingConfig | None = None,
        analyzer: ProfileAnalyzer | None = None,
    ) -> None:
        self._registry = registry
        self._clock = clock or RealClock()
        self._levels = tuple(levels)
        self._timing = timing or SessionTimingConfig()
        self._analyzer = analyzer or ProfileAnalyzer()
        self._finished: dict[str, FinishOutcome] = {}

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def levels(self) -> tuple[LevelConfig, ...]:
        return self._levels

    def progress(self) -> UserProgress:
        stored = self._registry.progress.get()
        if stored is not None:
            return stored
        return UserProgress.initial(level.id for level in starter_levels(self._levels))

    def unlocked_levels(self) -> list[LevelConfig]:
        unlocked = self.progress().unlocked_levels
        return [level for level in self._levels if level.id in unlocked]

    def start_session(
        self,
        level_id: str,
        *,
        trial_count: int = DEFAULT_TRIALS_PER_SESSION,
        seed: int | None = None,
    ) -> NBackSession:
        level = get_level_by_id(level_id, self._levels)
        if level is None:
            raise ConfigurationError(f"unknown level {level_id!r}")
        if not self.progress().is_unlocked(level_id):
            raise ConfigurationError(f"level {level_id!r} is locked")

        session = NBackSession(
            config=SequenceConfig(n_back=level.n_back, mode=level.mode, trial_count=trial_count, seed=seed),
            clock=self._clock,
            level_id=level.id,
            timing=self._timing,
            audio=self._registry.audio,
            events=self._registry.events,
        )
        session.start()
        return session

    def finish_session(self, session: NBackSession, *, today: date | None = None) -> FinishOutcome:
        """Publish, persist and apply a terminal session. Repeat calls return the first outcome."""

        if not session.state.is_terminal:
            raise StateError(f"session {session.session_id} is still running ({session.state})")
        done = self._finished.get(session.session_id)
        if done is not None:
            logger.debug("session %s already finished", session.session_id)
            return done

        result = session.result()
        day = today or local_today()
        bus = self._registry.events
        prior = self.progress()

        if result.completed:
            bus.publish(
                SessionCompleted(
                    aggregate_id=result.session_id,
                    level_id=result.level_id,
                    combined_accuracy=result.combined_accuracy,
                    combined_d_prime=result.combined_d_prime,
                    duration_ms=result.duration_ms,
                )
            )
        else:
            bus.publish(
                SessionAbandoned(
                    aggregate_id=result.session_id,
                    level_id=result.level_id,
                    trials_scored=len(result.trials),
                    reason=session.abandon_reason or "stopped",
                )
            )

        error: PersistenceError | None = None
        history: list[SessionResult] = []
        try:
            self._registry.sessions.save(result)
            history = self._registry.sessions.find_all()
        except PersistenceError as exc:
            logger.warning("could not persist session %s: %s", result.session_id, exc)
            error = exc

        update = apply_session(prior, result, history, self._levels, today=day)
        progress = update.progress
        if result.completed:
            progress = dataclasses.replace(progress, current_level=result.level_id)

        if error is None:
            try:
                self._registry.progress.save(progress)
            except PersistenceError as exc:
                logger.warning("could not persist progress: %s", exc)
                error = exc

        for level_id in update.newly_unlocked:
            bus.publish(LevelUnlocked(aggregate_id=result.session_id, level_id=level_id))

        outcome = FinishOutcome(
            result=result,
            progress=progress,
            newly_unlocked=update.newly_unlocked,
            persistence_error=error,
        )
        self._finished[result.session_id] = outcome
        return outcome

    def build_profile(self, limit: int = 20) -> UserBehavioralProfile:
        recent = self._registry.sessions.find_recent(limit)
        return self._analyzer.analyze(recent, current_level=self.progress().current_level)

    def session_feedback(self, result: SessionResult) -> str | None:
        feedback = self._registry.feedback
        if feedback is None:
            return None
        return feedback.session_feedback(result, self.build_profile())


def build_training_service(
    settings: AppSettings | None = None,
    *,
    clock: Clock | None = None,
    timing: SessionTimingConfig | None = None,
    registry: ServiceRegistry | None = None,
    audio: AudioPlayer | None = None,
) -> TrainingService:
    """Desktop composition root: SQLite repositories under ``settings.db_path``."""

    if registry is None:
        cfg = settings or AppSettings.from_env()
        conn = open_db(cfg.db_path)
        registry = build_registry(
            sessions=SqliteSessionRepository(conn),
            progress=SqliteProgressRepository(conn),
            audio=audio,
        )
    return TrainingService(registry, clock=clock, timing=timing)
