from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError

DEFAULT_TRIAL_DURATION_MS = 3000
DEFAULT_TRIALS_PER_SESSION = 20
MIN_ACCURACY_FOR_PROGRESSION = 80.0
TARGET_MATCH_PERCENTAGE = 0.35
SESSION_TIMEOUT_MS = 30000

GRID_SIZE = 3
TOTAL_POSITIONS = GRID_SIZE * GRID_SIZE
MAX_N_BACK_LEVEL = 9

# Phonetically distinct when spoken (no B/D, M/N, F/S style pairs).
LETTERS: tuple[str, ...] = ("C", "H", "K", "L", "Q", "R", "S", "T")

DB_PATH_ENV = "NBACK_DB_PATH"
LOG_LEVEL_ENV = "NBACK_LOG_LEVEL"


@dataclass(frozen=True, slots=True)
class SessionTimingConfig:
    trial_duration_s: float = DEFAULT_TRIAL_DURATION_MS / 1000.0
    # Extra time after the trial duration before the window closes.
    response_grace_s: float = 0.0
    inactivity_timeout_s: float = SESSION_TIMEOUT_MS / 1000.0
    feedback: bool = True

    def __post_init__(self) -> None:
        if self.trial_duration_s <= 0.0:
            raise ConfigurationError("trial_duration_s must be > 0")
        if self.response_grace_s < 0.0:
            raise ConfigurationError("response_grace_s must be >= 0")
        if self.inactivity_timeout_s <= self.window_s:
            raise ConfigurationError("inactivity_timeout_s must exceed the response window")

    @property
    def window_s(self) -> float:
        return self.trial_duration_s + self.response_grace_s


@dataclass(frozen=True, slots=True)
class AppSettings:
    db_path: Path
    log_level: str = "WARNING"

    @classmethod
    def default_db_path(cls) -> Path:
        return Path.home() / ".nback_trainer" / "nback.sqlite3"

    @classmethod
    def from_env(cls) -> "AppSettings":
        raw_path = os.environ.get(DB_PATH_ENV, "").strip()
        db_path = Path(raw_path).expanduser() if raw_path else cls.default_db_path()
        level = os.environ.get(LOG_LEVEL_ENV, "WARNING").strip().upper() or "WARNING"
        return cls(db_path=db_path, log_level=level)


def configure_logging(level: str | int = "WARNING") -> None:
    """Install a basic stderr handler for the application process.

    Library modules only create loggers; the entry point calls this once.
    """

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            resolved = logging.WARNING
    else:
        resolved = int(level)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
