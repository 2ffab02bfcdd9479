from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .clock import utc_now

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class EventType(StrEnum):
    SESSION_STARTED = "SESSION_STARTED"
    TRIAL_COMPLETED = "TRIAL_COMPLETED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    SESSION_ABANDONED = "SESSION_ABANDONED"
    LEVEL_UNLOCKED = "LEVEL_UNLOCKED"


@dataclass(frozen=True, slots=True)
class SessionStarted:
    aggregate_id: str
    level_id: str
    n_back: int
    mode: str
    trial_count: int
    timestamp: datetime = field(default_factory=utc_now)
    type: EventType = EventType.SESSION_STARTED


@dataclass(frozen=True, slots=True)
class TrialCompleted:
    aggregate_id: str
    trial_index: int
    position_correct: bool | None
    audio_correct: bool | None
    response_time_ms: float | None
    timestamp: datetime = field(default_factory=utc_now)
    type: EventType = EventType.TRIAL_COMPLETED


@dataclass(frozen=True, slots=True)
class SessionCompleted:
    aggregate_id: str
    level_id: str
    combined_accuracy: float
    combined_d_prime: float
    duration_ms: float
    timestamp: datetime = field(default_factory=utc_now)
    type: EventType = EventType.SESSION_COMPLETED


@dataclass(frozen=True, slots=True)
class SessionAbandoned:
    aggregate_id: str
    level_id: str
    trials_scored: int
    reason: str
    timestamp: datetime = field(default_factory=utc_now)
    type: EventType = EventType.SESSION_ABANDONED


@dataclass(frozen=True, slots=True)
class LevelUnlocked:
    aggregate_id: str
    level_id: str
    timestamp: datetime = field(default_factory=utc_now)
    type: EventType = EventType.LEVEL_UNLOCKED


DomainEvent = SessionStarted | TrialCompleted | SessionCompleted | SessionAbandoned | LevelUnlocked
EventHandler = Callable[[DomainEvent], None]


class LocalEventBus:
    """In-process publish/subscribe.

    Handlers run synchronously in subscription order. A failing handler is
    logged and does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Callable[[], None]:
        key = str(event_type)
        self._handlers[key].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: DomainEvent) -> None:
        handlers = list(self._handlers.get(str(event.type), ())) + list(self._handlers.get(ALL_EVENTS, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s", event.type)

    def clear(self) -> None:
        self._handlers.clear()
