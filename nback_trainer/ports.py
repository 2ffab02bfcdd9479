from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from .domain import SessionResult, UserProgress
from .events import ALL_EVENTS, DomainEvent, EventHandler, EventType, LocalEventBus
from .persistence import InMemoryProgressRepository, InMemorySessionRepository

if TYPE_CHECKING:
    from .profile import UserBehavioralProfile

logger = logging.getLogger(__name__)


class SessionRepository(Protocol):
    def save(self, session: SessionResult) -> None:
        ...

    def find_by_id(self, session_id: str) -> SessionResult | None:
        ...

    def find_by_level(self, level_id: str) -> list[SessionResult]:
        ...

    def find_recent(self, limit: int) -> list[SessionResult]:
        """Newest first."""
        ...

    def find_by_date_range(self, start: datetime, end: datetime) -> list[SessionResult]:
        ...

    def find_all(self) -> list[SessionResult]:
        ...

    def count(self) -> int:
        ...

    def clear(self) -> None:
        ...


class ProgressRepository(Protocol):
    def get(self) -> UserProgress | None:
        ...

    def save(self, progress: UserProgress) -> None:
        ...

    def reset(self) -> None:
        ...


class AnalyticsSink(Protocol):
    def publish(self, event: DomainEvent) -> None:
        ...


class AudioPlayer(Protocol):
    def play_letter(self, letter: str) -> None:
        ...

    def play_feedback(self, kind: str) -> None:
        """``kind`` is one of correct, incorrect, tick, complete."""
        ...

    def set_volume(self, volume: float) -> None:
        ...

    def get_volume(self) -> float:
        ...

    def mute(self) -> None:
        ...

    def unmute(self) -> None:
        ...

    def is_muted(self) -> bool:
        ...

    def stop(self) -> None:
        ...


class FeedbackService(Protocol):
    def session_feedback(self, result: SessionResult, profile: "UserBehavioralProfile") -> str:
        ...


class EventBus(Protocol):
    def publish(self, event: DomainEvent) -> None:
        ...

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Callable[[], None]:
        ...


class NullAudioPlayer:
    """Silent player that still tracks volume/mute so hosts behave the same."""

    def __init__(self) -> None:
        self._volume = 1.0
        self._muted = False
        self.played_letters: list[str] = []
        self.played_feedback: list[str] = []

    def play_letter(self, letter: str) -> None:
        self.played_letters.append(letter)

    def play_feedback(self, kind: str) -> None:
        self.played_feedback.append(kind)

    def set_volume(self, volume: float) -> None:
        self._volume = max(0.0, min(1.0, float(volume)))

    def get_volume(self) -> float:
        return self._volume

    def mute(self) -> None:
        self._muted = True

    def unmute(self) -> None:
        self._muted = False

    def is_muted(self) -> bool:
        return self._muted

    def stop(self) -> None:
        return None


class NullAnalyticsSink:
    def publish(self, event: DomainEvent) -> None:
        logger.debug("analytics event dropped: %s", event.type)


@dataclass
class RecordingAnalyticsSink:
    events: list[DomainEvent] = field(default_factory=list)

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)


@dataclass(frozen=True, slots=True)
class ServiceRegistry:
    """Port adapters for one deployment, assembled by the composition root."""

    sessions: SessionRepository
    progress: ProgressRepository
    audio: AudioPlayer
    analytics: AnalyticsSink
    events: EventBus
    feedback: FeedbackService | None = None


def build_registry(
    *,
    sessions: SessionRepository | None = None,
    progress: ProgressRepository | None = None,
    audio: AudioPlayer | None = None,
    analytics: AnalyticsSink | None = None,
    events: EventBus | None = None,
    feedback: FeedbackService | None = None,
) -> ServiceRegistry:
    """Fill unset ports with in-memory/null adapters and wire analytics to the bus."""

    bus = events if events is not None else LocalEventBus()
    sink = analytics if analytics is not None else NullAnalyticsSink()
    bus.subscribe(ALL_EVENTS, sink.publish)
    return ServiceRegistry(
        sessions=sessions if sessions is not None else InMemorySessionRepository(),
        progress=progress if progress is not None else InMemoryProgressRepository(),
        audio=audio if audio is not None else NullAudioPlayer(),
        analytics=sink,
        events=bus,
        feedback=feedback,
    )
