from __future__ import annotations

import re

from .config import MAX_N_BACK_LEVEL
from .domain import LevelConfig, TrainingMode, UnlockCriteria

LEVELS: tuple[LevelConfig, ...] = (
    LevelConfig(
        id="position-1",
        name="1-Back Position",
        n_back=1,
        mode=TrainingMode.SINGLE_POSITION,
        description="Match positions from 1 step ago",
    ),
    LevelConfig(
        id="position-2",
        name="2-Back Position",
        n_back=2,
        mode=TrainingMode.SINGLE_POSITION,
        description="Match positions from 2 steps ago",
        unlock_criteria=UnlockCriteria(required_level="position-1", min_accuracy=80.0),
    ),
    LevelConfig(
        id="audio-1",
        name="1-Back Audio",
        n_back=1,
        mode=TrainingMode.SINGLE_AUDIO,
        description="Match letters from 1 step ago",
    ),
    LevelConfig(
        id="audio-2",
        name="2-Back Audio",
        n_back=2,
        mode=TrainingMode.SINGLE_AUDIO,
        description="Match letters from 2 steps ago",
        unlock_criteria=UnlockCriteria(required_level="audio-1", min_accuracy=80.0),
    ),
    LevelConfig(
        id="dual-2",
        name="Dual 2-Back",
        n_back=2,
        mode=TrainingMode.DUAL,
        description="Match both position and audio from 2 steps ago",
        unlock_criteria=UnlockCriteria(required_level="position-2", min_accuracy=75.0),
    ),
    LevelConfig(
        id="dual-3",
        name="Dual 3-Back",
        n_back=3,
        mode=TrainingMode.DUAL,
        description="Match both position and audio from 3 steps ago",
        unlock_criteria=UnlockCriteria(required_level="dual-2", min_accuracy=80.0),
    ),
)

_LEVEL_ID_RE = re.compile(r"^(?P<family>[a-z]+)-(?P<n>\d+)$")

_FAMILY_BY_MODE = {
    TrainingMode.SINGLE_POSITION: "position",
    TrainingMode.SINGLE_AUDIO: "audio",
    TrainingMode.DUAL: "dual",
}


def level_id_for(n_back: int, mode: TrainingMode) -> str:
    return f"{_FAMILY_BY_MODE[mode]}-{int(n_back)}"


def get_level_by_id(level_id: str, levels: tuple[LevelConfig, ...] = LEVELS) -> LevelConfig | None:
    for level in levels:
        if level.id == level_id:
            return level
    return None


def starter_levels(levels: tuple[LevelConfig, ...] = LEVELS) -> list[LevelConfig]:
    return [level for level in levels if level.unlock_criteria is None]


def next_level_id(level_id: str) -> str | None:
    """``dual-2`` -> ``dual-3``; None past the top level or for unknown ids."""

    m = _LEVEL_ID_RE.match(level_id)
    if m is None:
        return None
    n = int(m.group("n"))
    if n >= MAX_N_BACK_LEVEL:
        return None
    return f"{m.group('family')}-{n + 1}"
