# -*- coding: utf-8 -*-
"""
SQLite store shared by the bot and the Mini App API.

One connection per operation, WAL journal so the API thread can read while
the bot writes. Lock contention is retried with exponential backoff until the
busy budget runs out, then StorageBusy is raised.
"""
import json
import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .locations import is_location, is_valid_route
from .normalize import is_placeholder_answer, normalize_answer, normalize_password

logger = logging.getLogger(__name__)

MIN_HINT_LEVEL = 1
MAX_HINT_LEVEL = 3

_LOCK_MARKERS = ("database is locked", "database is busy", "database table is locked")

SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    route TEXT NOT NULL,
    completed TEXT NOT NULL DEFAULT '[]',
    unlocked TEXT NOT NULL DEFAULT '[]',
    hints_used INTEGER NOT NULL DEFAULT 0 CHECK (hints_used >= 0),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS players (
    id INTEGER PRIMARY KEY,
    username TEXT,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT,
    team_id TEXT REFERENCES teams(id),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_activity DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS missions (
    location TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    answer TEXT NOT NULL,
    answer_normalized TEXT NOT NULL CHECK (answer_normalized <> ''),
    image_url TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS location_passwords (
    location TEXT PRIMARY KEY,
    password TEXT NOT NULL,
    normalized TEXT NOT NULL CHECK (normalized <> ''),
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS hints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    location TEXT NOT NULL,
    hint_level INTEGER NOT NULL CHECK (hint_level BETWEEN 1 AND 3),
    text TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(location, hint_level)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    team_id TEXT,
    user_id INTEGER,
    location TEXT,
    data TEXT DEFAULT '{}',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_players_team ON players(team_id);
CREATE INDEX IF NOT EXISTS idx_events_team ON events(team_id);
CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id);
"""


class StorageBusy(Exception):
    """The database stayed locked for the whole retry budget."""


class ContentIntegrityError(ValueError):
    """Admin content that would break answer/password checks."""


def _is_lock_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _LOCK_MARKERS)


def _loads(raw: Optional[str], fallback):
    if not raw:
        return fallback
    return json.loads(raw)


def _team_from_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    team = dict(row)
    team["route"] = _loads(team.get("route"), [])
    team["completed"] = _loads(team.get("completed"), [])
    team["unlocked"] = _loads(team.get("unlocked"), [])
    return team


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _check_location(location: str) -> None:
    if not is_location(location):
        raise ValueError(f"Unknown location: {location!r}")


class QuestStore:
    def __init__(self, path: str, busy_timeout: float = 30.0,
                 backoff_start: float = 0.05, backoff_max: float = 2.0):
        self.path = path
        self.busy_timeout = busy_timeout
        self.backoff_start = backoff_start
        self.backoff_max = backoff_max

    # =========================
    # CONNECTIONS
    # =========================
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=1.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=1000")
        return conn

    def _run(self, op: Callable[[sqlite3.Connection], Any]) -> Any:
        deadline = time.monotonic() + self.busy_timeout
        delay = self.backoff_start
        attempt = 0
        while True:
            attempt += 1
            conn = None
            try:
                conn = self._connect()
                result = op(conn)
                conn.commit()
                return result
            except sqlite3.OperationalError as e:
                if conn is not None:
                    conn.rollback()
                if not _is_lock_error(e):
                    raise
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.error(f"SQLite still locked after {attempt} attempts: {e}")
                    raise StorageBusy("Database is busy, try again later") from e
                logger.warning(f"SQLite locked (attempt {attempt}), retrying in {delay:.2f}s")
                time.sleep(min(delay, remaining))
                delay = min(delay * 2, self.backoff_max)
            finally:
                if conn is not None:
                    conn.close()

    def init_db(self) -> None:
        def op(conn):
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)

        self._run(op)
        logger.info(f"Database initialized: {self.path}")

    # =========================
    # PLAYERS
    # =========================
    def get_player(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: _row(
            conn.execute("SELECT * FROM players WHERE id = ?", (user_id,)).fetchone()
        ))

    def upsert_player(self, user_id: int, username: Optional[str] = None,
                      first_name: Optional[str] = None, last_name: Optional[str] = None) -> Dict[str, Any]:
        def op(conn):
            conn.execute(
                """
                INSERT INTO players (id, username, first_name, last_name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    last_activity = CURRENT_TIMESTAMP
                """,
                (user_id, username, first_name or "", last_name),
            )
            return _row(conn.execute("SELECT * FROM players WHERE id = ?", (user_id,)).fetchone())

        return self._run(op)

    def set_player_team(self, user_id: int, team_id: Optional[str]) -> None:
        self._run(lambda conn: conn.execute(
            "UPDATE players SET team_id = ?, last_activity = CURRENT_TIMESTAMP WHERE id = ?",
            (team_id, user_id),
        ))

    def team_members(self, team_id: str) -> List[Dict[str, Any]]:
        return self._run(lambda conn: [
            dict(r) for r in conn.execute(
                "SELECT * FROM players WHERE team_id = ? ORDER BY created_at, id", (team_id,)
            ).fetchall()
        ])

    def count_players(self) -> int:
        return self._run(lambda conn: conn.execute("SELECT COUNT(*) FROM players").fetchone()[0])

    # =========================
    # TEAMS / PROGRESS
    # =========================
    def create_team(self, team_id: str, name: str, route: List[str]) -> Dict[str, Any]:
        if not is_valid_route(route):
            raise ValueError(f"Route must be a permutation of all locations: {route!r}")

        def op(conn):
            conn.execute(
                "INSERT INTO teams (id, name, route) VALUES (?, ?, ?)",
                (team_id, name, json.dumps(route)),
            )
            return _team_from_row(conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone())

        team = self._run(op)
        logger.info(f"Team {team_id} created, route: {' -> '.join(route)}")
        return team

    def get_team(self, team_id: str) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: _team_from_row(
            conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
        ))

    def list_teams(self) -> List[Dict[str, Any]]:
        return self._run(lambda conn: [
            _team_from_row(r) for r in conn.execute("SELECT * FROM teams ORDER BY created_at, id").fetchall()
        ])

    def _locked_team(self, conn: sqlite3.Connection, team_id: str) -> Optional[Dict[str, Any]]:
        conn.execute("BEGIN IMMEDIATE")
        return _team_from_row(conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone())

    def unlock_location(self, team_id: str, location: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Unlock the next route entry. Returns (team, changed)."""
        def op(conn):
            team = self._locked_team(conn, team_id)
            if team is None:
                return None, False
            completed, route, unlocked = team["completed"], team["route"], team["unlocked"]
            if len(completed) >= len(route) or route[len(completed)] != location:
                return team, False
            if location in unlocked:
                return team, False
            unlocked = completed + [location]
            conn.execute(
                "UPDATE teams SET unlocked = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (json.dumps(unlocked), team_id),
            )
            team["unlocked"] = unlocked
            return team, True

        return self._run(op)

    def complete_location(self, team_id: str, location: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Append the current route entry to completed and open the next one."""
        def op(conn):
            team = self._locked_team(conn, team_id)
            if team is None:
                return None, False
            completed, route = team["completed"], team["route"]
            if len(completed) >= len(route) or route[len(completed)] != location:
                return team, False
            completed = completed + [location]
            unlocked = list(completed)
            if len(completed) < len(route):
                unlocked.append(route[len(completed)])
            conn.execute(
                "UPDATE teams SET completed = ?, unlocked = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (json.dumps(completed), json.dumps(unlocked), team_id),
            )
            team["completed"] = completed
            team["unlocked"] = unlocked
            return team, True

        return self._run(op)

    def use_hint(self, team_id: str, max_hints: int) -> Optional[int]:
        """Spend one hint. Returns the new hints_used, or None when the cap is reached."""
        def op(conn):
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                "UPDATE teams SET hints_used = hints_used + 1, updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND hints_used < ?",
                (team_id, max_hints),
            )
            if cur.rowcount != 1:
                return None
            return conn.execute("SELECT hints_used FROM teams WHERE id = ?", (team_id,)).fetchone()[0]

        return self._run(op)

    # =========================
    # PASSWORDS
    # =========================
    def set_password(self, location: str, password: str) -> Dict[str, str]:
        _check_location(location)
        clean = (password or "").strip()
        normalized = normalize_password(clean)
        if not normalized:
            raise ContentIntegrityError(
                f"Пароль для «{location}» пуст после нормализации (допустимы a-z, 0-9, _): {clean!r}"
            )

        self._run(lambda conn: conn.execute(
            """
            INSERT INTO location_passwords (location, password, normalized)
            VALUES (?, ?, ?)
            ON CONFLICT(location) DO UPDATE SET
                password = excluded.password,
                normalized = excluded.normalized,
                updated_at = CURRENT_TIMESTAMP
            """,
            (location, clean, normalized),
        ))
        logger.info(f"Password for {location} updated")
        return {"original": clean, "normalized": normalized}

    def get_password(self, location: str) -> Optional[Dict[str, str]]:
        row = self._run(lambda conn: conn.execute(
            "SELECT password, normalized FROM location_passwords WHERE location = ?", (location,)
        ).fetchone())
        if row is None:
            return None
        return {"original": row["password"], "normalized": row["normalized"]}

    def all_passwords(self) -> List[Dict[str, Any]]:
        return self._run(lambda conn: [
            dict(r) for r in conn.execute("SELECT * FROM location_passwords ORDER BY location").fetchall()
        ])

    def delete_password(self, location: str) -> bool:
        return self._run(lambda conn: conn.execute(
            "DELETE FROM location_passwords WHERE location = ?", (location,)
        ).rowcount == 1)

    # =========================
    # MISSIONS
    # =========================
    def set_mission(self, location: str, text: str, answer: str,
                    image_url: Optional[str] = None) -> Dict[str, Any]:
        _check_location(location)
        text = (text or "").strip()
        if not text:
            raise ContentIntegrityError(f"Текст задания для «{location}» пуст")
        if is_placeholder_answer(answer):
            raise ContentIntegrityError(
                f"Ответ для «{location}» отклонён: {answer!r} пуст после нормализации"
            )
        answer = answer.strip()
        image_url = (image_url or "").strip() or None

        def op(conn):
            conn.execute(
                """
                INSERT INTO missions (location, text, answer, answer_normalized, image_url)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(location) DO UPDATE SET
                    text = excluded.text,
                    answer = excluded.answer,
                    answer_normalized = excluded.answer_normalized,
                    image_url = excluded.image_url,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (location, text, answer, normalize_answer(answer), image_url),
            )
            return _row(conn.execute("SELECT * FROM missions WHERE location = ?", (location,)).fetchone())

        mission = self._run(op)
        logger.info(f"Mission for {location} updated")
        return mission

    def get_mission(self, location: str) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: _row(
            conn.execute("SELECT * FROM missions WHERE location = ?", (location,)).fetchone()
        ))

    def all_missions(self) -> List[Dict[str, Any]]:
        return self._run(lambda conn: [
            dict(r) for r in conn.execute("SELECT * FROM missions ORDER BY location").fetchall()
        ])

    def delete_mission(self, location: str) -> bool:
        return self._run(lambda conn: conn.execute(
            "DELETE FROM missions WHERE location = ?", (location,)
        ).rowcount == 1)

    # =========================
    # HINTS
    # =========================
    def set_hint(self, location: str, level: int, text: str) -> Dict[str, Any]:
        _check_location(location)
        if not MIN_HINT_LEVEL <= level <= MAX_HINT_LEVEL:
            raise ValueError(f"Hint level must be {MIN_HINT_LEVEL}..{MAX_HINT_LEVEL}, got {level}")
        text = (text or "").strip()
        if not text:
            raise ContentIntegrityError(f"Подсказка {level} для «{location}» пуста")

        def op(conn):
            conn.execute(
                """
                INSERT INTO hints (location, hint_level, text) VALUES (?, ?, ?)
                ON CONFLICT(location, hint_level) DO UPDATE SET
                    text = excluded.text,
                    created_at = CURRENT_TIMESTAMP
                """,
                (location, level, text),
            )
            return _row(conn.execute(
                "SELECT * FROM hints WHERE location = ? AND hint_level = ?", (location, level)
            ).fetchone())

        return self._run(op)

    def get_hint(self, location: str, level: int) -> Optional[Dict[str, Any]]:
        """Highest configured hint at or below `level`."""
        return self._run(lambda conn: _row(conn.execute(
            """
            SELECT * FROM hints
            WHERE location = ? AND hint_level <= ?
            ORDER BY hint_level DESC
            LIMIT 1
            """,
            (location, level),
        ).fetchone()))

    def hints_for_location(self, location: str) -> List[Dict[str, Any]]:
        return self._run(lambda conn: [
            dict(r) for r in conn.execute(
                "SELECT * FROM hints WHERE location = ? ORDER BY hint_level", (location,)
            ).fetchall()
        ])

    def count_hints(self) -> int:
        return self._run(lambda conn: conn.execute("SELECT COUNT(*) FROM hints").fetchone()[0])

    def delete_hint(self, location: str, level: int) -> bool:
        return self._run(lambda conn: conn.execute(
            "DELETE FROM hints WHERE location = ? AND hint_level = ?", (location, level)
        ).rowcount == 1)

    # =========================
    # EVENTS
    # =========================
    def log_event(self, event_type: str, team_id: Optional[str] = None, user_id: Optional[int] = None,
                  location: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self._run(lambda conn: conn.execute(
            "INSERT INTO events (type, team_id, user_id, location, data) VALUES (?, ?, ?, ?, ?)",
            (event_type, team_id, user_id, location, json.dumps(data or {}, ensure_ascii=False)),
        ))

    def recent_events(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self._run(lambda conn: conn.execute(
            "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall())
        events = []
        for r in rows:
            ev = dict(r)
            ev["data"] = _loads(ev.get("data"), {})
            events.append(ev)
        return events

    def admin_stats(self, total_locations: int, recent: int = 10) -> Dict[str, Any]:
        teams = self.list_teams()
        return {
            "total_players": self.count_players(),
            "total_teams": len(teams),
            "completed_teams": sum(1 for t in teams if len(t["completed"]) >= total_locations),
            "missions": len(self.all_missions()),
            "passwords": len(self.all_passwords()),
            "hints": self.count_hints(),
            "recent_events": self.recent_events(recent),
        }
