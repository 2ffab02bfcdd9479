from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path

from .domain import (
    Classification,
    Modality,
    PerformanceStats,
    SessionResult,
    TrainingMode,
    TrialResult,
    UserProgress,
)
from .errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def open_db(path: Path | str) -> sqlite3.Connection:
    """Open (and migrate) the training database. ``":memory:"`` is accepted."""

    if isinstance(path, Path):
        path.parent.mkdir(parents=True, exist_ok=True)
    try:
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        _migrate(conn)
    except sqlite3.Error as exc:
        raise PersistenceError(f"cannot open database {path}: {exc}") from exc
    return conn


def _migrate(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version;").fetchone()
    ver = int(row[0]) if row else 0
    if ver > SCHEMA_VERSION:
        raise PersistenceError(f"database schema version {ver} is newer than supported {SCHEMA_VERSION}")
    if ver >= SCHEMA_VERSION:
        return

    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session (
                id TEXT PRIMARY KEY,
                level_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                n_back INTEGER NOT NULL,
                timestamp_utc TEXT NOT NULL,
                duration_ms REAL NOT NULL,
                combined_accuracy REAL NOT NULL,
                combined_d_prime REAL NOT NULL,
                completed INTEGER NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stats (
                session_id TEXT NOT NULL REFERENCES session(id) ON DELETE CASCADE,
                modality TEXT NOT NULL,
                hits INTEGER NOT NULL,
                misses INTEGER NOT NULL,
                false_alarms INTEGER NOT NULL,
                correct_rejections INTEGER NOT NULL,
                hit_rate REAL NOT NULL,
                false_alarm_rate REAL NOT NULL,
                d_prime REAL NOT NULL,
                accuracy REAL NOT NULL,
                avg_response_time REAL,
                PRIMARY KEY (session_id, modality)
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trial (
                session_id TEXT NOT NULL REFERENCES session(id) ON DELETE CASCADE,
                trial_index INTEGER NOT NULL,
                position INTEGER NOT NULL,
                letter TEXT NOT NULL,
                is_position_match INTEGER NOT NULL,
                is_audio_match INTEGER NOT NULL,
                position_response INTEGER NOT NULL,
                audio_response INTEGER NOT NULL,
                position_classification TEXT,
                audio_classification TEXT,
                position_rt_ms REAL,
                audio_rt_ms REAL,
                PRIMARY KEY (session_id, trial_index)
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS progress (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                current_level TEXT NOT NULL,
                unlocked_levels TEXT NOT NULL,
                total_sessions INTEGER NOT NULL,
                total_time_ms REAL NOT NULL,
                current_streak INTEGER NOT NULL,
                longest_streak INTEGER NOT NULL,
                last_session_date TEXT
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session_timestamp ON session(timestamp_utc);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session_level ON session(level_id);")
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


@contextmanager
def _wrap_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, ValueError) as exc:
        # ValueError covers rows that no longer decode (JSON, enums, dates).
        logger.warning("sqlite %s failed: %s", action, exc)
        raise PersistenceError(f"{action} failed: {exc}") from exc


def _as_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _to_utc_iso(ts: datetime) -> str:
    return _as_utc(ts).isoformat(timespec="microseconds")


def _opt_float(value: object) -> float | None:
    return None if value is None else float(value)


def _opt_classification(value: object) -> Classification | None:
    return None if value is None else Classification(str(value))


class SqliteSessionRepository:
    """Session results: one ``session`` row, a ``stats`` row per modality, ``trial`` rows."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def save(self, session: SessionResult) -> None:
        with _wrap_errors(f"save session {session.session_id}"), self._conn:
            self._conn.execute("DELETE FROM trial WHERE session_id = ?", (session.session_id,))
            self._conn.execute("DELETE FROM stats WHERE session_id = ?", (session.session_id,))
            self._conn.execute("DELETE FROM session WHERE id = ?", (session.session_id,))
            self._conn.execute(
                """
                INSERT INTO session(
                    id, level_id, mode, n_back, timestamp_utc, duration_ms,
                    combined_accuracy, combined_d_prime, completed
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    session.level_id,
                    str(session.mode),
                    int(session.n_back),
                    _to_utc_iso(session.timestamp),
                    float(session.duration_ms),
                    float(session.combined_accuracy),
                    float(session.combined_d_prime),
                    1 if session.completed else 0,
                ),
            )
            for modality, stats in ((Modality.POSITION, session.position_stats), (Modality.AUDIO, session.audio_stats)):
                self._conn.execute(
                    """
                    INSERT INTO stats(
                        session_id, modality, hits, misses, false_alarms, correct_rejections,
                        hit_rate, false_alarm_rate, d_prime, accuracy, avg_response_time
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.session_id,
                        str(modality),
                        stats.hits,
                        stats.misses,
                        stats.false_alarms,
                        stats.correct_rejections,
                        float(stats.hit_rate),
                        float(stats.false_alarm_rate),
                        float(stats.d_prime),
                        float(stats.accuracy),
                        stats.avg_response_time,
                    ),
                )
            self._conn.executemany(
                """
                INSERT INTO trial(
                    session_id, trial_index, position, letter, is_position_match, is_audio_match,
                    position_response, audio_response, position_classification, audio_classification,
                    position_rt_ms, audio_rt_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        session.session_id,
                        t.trial_index,
                        t.position,
                        t.letter,
                        1 if t.is_position_match else 0,
                        1 if t.is_audio_match else 0,
                        1 if t.position_response else 0,
                        1 if t.audio_response else 0,
                        None if t.position_classification is None else str(t.position_classification),
                        None if t.audio_classification is None else str(t.audio_classification),
                        t.position_response_time_ms,
                        t.audio_response_time_ms,
                    )
                    for t in session.trials
                ],
            )

    def find_by_id(self, session_id: str) -> SessionResult | None:
        rows = self._select("WHERE id = ?", (session_id,))
        return rows[0] if rows else None

    def find_by_level(self, level_id: str) -> list[SessionResult]:
        return self._select("WHERE level_id = ? ORDER BY timestamp_utc ASC, rowid ASC", (level_id,))

    def find_recent(self, limit: int) -> list[SessionResult]:
        return self._select("ORDER BY timestamp_utc DESC, rowid DESC LIMIT ?", (max(0, int(limit)),))

    def find_by_date_range(self, start: datetime, end: datetime) -> list[SessionResult]:
        return self._select(
            "WHERE timestamp_utc >= ? AND timestamp_utc <= ? ORDER BY timestamp_utc ASC, rowid ASC",
            (_to_utc_iso(start), _to_utc_iso(end)),
        )

    def find_all(self) -> list[SessionResult]:
        return self._select("ORDER BY timestamp_utc ASC, rowid ASC", ())

    def count(self) -> int:
        with _wrap_errors("count sessions"):
            row = self._conn.execute("SELECT COUNT(*) FROM session").fetchone()
        return int(row[0])

    def clear(self) -> None:
        with _wrap_errors("clear sessions"), self._conn:
            self._conn.execute("DELETE FROM trial")
            self._conn.execute("DELETE FROM stats")
            self._conn.execute("DELETE FROM session")

    def _select(self, clause: str, params: tuple[object, ...]) -> list[SessionResult]:
        with _wrap_errors("load sessions"):
            rows = self._conn.execute(f"SELECT * FROM session {clause}", params).fetchall()
            return [self._load(row) for row in rows]

    def _load(self, row: sqlite3.Row) -> SessionResult:
        sid = str(row["id"])
        stats_rows = {
            str(r["modality"]): r
            for r in self._conn.execute("SELECT * FROM stats WHERE session_id = ?", (sid,)).fetchall()
        }
        trial_rows = self._conn.execute(
            "SELECT * FROM trial WHERE session_id = ? ORDER BY trial_index ASC", (sid,)
        ).fetchall()
        return SessionResult(
            session_id=sid,
            level_id=str(row["level_id"]),
            mode=TrainingMode(str(row["mode"])),
            n_back=int(row["n_back"]),
            timestamp=datetime.fromisoformat(str(row["timestamp_utc"])),
            duration_ms=float(row["duration_ms"]),
            trials=tuple(self._load_trial(r) for r in trial_rows),
            position_stats=self._load_stats(stats_rows.get(str(Modality.POSITION))),
            audio_stats=self._load_stats(stats_rows.get(str(Modality.AUDIO))),
            combined_accuracy=float(row["combined_accuracy"]),
            completed=bool(row["completed"]),
            combined_d_prime=float(row["combined_d_prime"]),
        )

    @staticmethod
    def _load_stats(row: sqlite3.Row | None) -> PerformanceStats:
        if row is None:
            return PerformanceStats.empty()
        return PerformanceStats(
            hits=int(row["hits"]),
            misses=int(row["misses"]),
            false_alarms=int(row["false_alarms"]),
            correct_rejections=int(row["correct_rejections"]),
            hit_rate=float(row["hit_rate"]),
            false_alarm_rate=float(row["false_alarm_rate"]),
            d_prime=float(row["d_prime"]),
            accuracy=float(row["accuracy"]),
            avg_response_time=_opt_float(row["avg_response_time"]),
        )

    @staticmethod
    def _load_trial(row: sqlite3.Row) -> TrialResult:
        return TrialResult(
            trial_index=int(row["trial_index"]),
            position=int(row["position"]),
            letter=str(row["letter"]),
            is_position_match=bool(row["is_position_match"]),
            is_audio_match=bool(row["is_audio_match"]),
            position_response=bool(row["position_response"]),
            audio_response=bool(row["audio_response"]),
            position_classification=_opt_classification(row["position_classification"]),
            audio_classification=_opt_classification(row["audio_classification"]),
            position_response_time_ms=_opt_float(row["position_rt_ms"]),
            audio_response_time_ms=_opt_float(row["audio_rt_ms"]),
        )


class SqliteProgressRepository:
    """Single-row progress store; unlocked levels are kept as a sorted JSON list."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self) -> UserProgress | None:
        with _wrap_errors("load progress"):
            row = self._conn.execute("SELECT * FROM progress WHERE id = 1").fetchone()
            if row is None:
                return None
            last = row["last_session_date"]
            return UserProgress(
                current_level=str(row["current_level"]),
                unlocked_levels=frozenset(json.loads(row["unlocked_levels"])),
                total_sessions=int(row["total_sessions"]),
                total_time_ms=float(row["total_time_ms"]),
                current_streak=int(row["current_streak"]),
                longest_streak=int(row["longest_streak"]),
                last_session_date=None if last is None else date.fromisoformat(str(last)),
            )

    def save(self, progress: UserProgress) -> None:
        with _wrap_errors("save progress"), self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO progress(
                    id, current_level, unlocked_levels, total_sessions, total_time_ms,
                    current_streak, longest_streak, last_session_date
                )
                VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    progress.current_level,
                    json.dumps(sorted(progress.unlocked_levels)),
                    int(progress.total_sessions),
                    float(progress.total_time_ms),
                    int(progress.current_streak),
                    int(progress.longest_streak),
                    None if progress.last_session_date is None else progress.last_session_date.isoformat(),
                ),
            )

    def reset(self) -> None:
        with _wrap_errors("reset progress"), self._conn:
            self._conn.execute("DELETE FROM progress")


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionResult] = {}

    def save(self, session: SessionResult) -> None:
        self._sessions[session.session_id] = session

    def find_by_id(self, session_id: str) -> SessionResult | None:
        return self._sessions.get(session_id)

    def find_by_level(self, level_id: str) -> list[SessionResult]:
        return [s for s in self.find_all() if s.level_id == level_id]

    def find_recent(self, limit: int) -> list[SessionResult]:
        newest_first = list(reversed(self.find_all()))
        return newest_first[: max(0, int(limit))]

    def find_by_date_range(self, start: datetime, end: datetime) -> list[SessionResult]:
        lo, hi = _as_utc(start), _as_utc(end)
        return [s for s in self.find_all() if lo <= _as_utc(s.timestamp) <= hi]

    def find_all(self) -> list[SessionResult]:
        # sorted() is stable, so equal timestamps keep insertion order.
        return sorted(self._sessions.values(), key=lambda s: _as_utc(s.timestamp))

    def count(self) -> int:
        return len(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()


class InMemoryProgressRepository:
    def __init__(self, progress: UserProgress | None = None) -> None:
        self._progress = progress

    def get(self) -> UserProgress | None:
        return self._progress

    def save(self, progress: UserProgress) -> None:
        self._progress = progress

    def reset(self) -> None:
        self._progress = None
