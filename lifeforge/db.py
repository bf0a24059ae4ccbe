from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from lifeforge.errors import NoRowsError, PersistenceError

logger = logging.getLogger(__name__)

TABLES = {
    "users": (
        "id", "name", "email", "hp", "max_hp", "xp", "level", "credits", "streak",
        "phone_number", "whatsapp_reminders_active", "whatsapp_reminder_time", "created_at",
    ),
    "routines": (
        "id", "user_id", "title", "type", "difficulty", "habit_type", "recurrence",
        "is_pomodoro", "pomodoro_time", "active", "created_at",
    ),
    "routine_logs": ("id", "user_id", "routine_id", "date", "status", "created_at"),
    "shop_items": ("id", "user_id", "name", "description", "cost", "type", "created_at"),
    "inventory": ("id", "user_id", "item_id", "quantity", "purchased_at"),
    "inventory_usage": ("id", "user_id", "inventory_id", "used_at"),
    "reminder_log": ("id", "user_id", "date", "sent_at"),
}

APPEND_ONLY = {"routine_logs", "inventory_usage", "reminder_log"}

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT 'Hero',
    email TEXT NOT NULL DEFAULT '',
    hp REAL NOT NULL DEFAULT 100,
    max_hp REAL NOT NULL DEFAULT 100,
    xp REAL NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    credits INTEGER NOT NULL DEFAULT 0,
    streak INTEGER NOT NULL DEFAULT 0,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS routines (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'daily',
    difficulty TEXT NOT NULL DEFAULT 'medium',
    habit_type TEXT,
    recurrence TEXT,
    is_pomodoro INTEGER NOT NULL DEFAULT 0,
    pomodoro_time INTEGER NOT NULL DEFAULT 25,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS routine_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    routine_id TEXT NOT NULL,
    date TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS shop_items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    cost INTEGER NOT NULL DEFAULT 0,
    type TEXT NOT NULL DEFAULT 'consumable',
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS inventory (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    purchased_at TEXT
);

CREATE TABLE IF NOT EXISTS inventory_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    inventory_id TEXT NOT NULL,
    used_at TEXT
);

CREATE TABLE IF NOT EXISTS reminder_log (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    UNIQUE (user_id, date)
);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    if column not in {c[1] for c in cols}:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _columns(table: str, values: dict) -> list[str]:
    if table not in TABLES:
        raise PersistenceError(f"Unknown table {table!r}")
    unknown = set(values) - set(TABLES[table])
    if unknown:
        raise PersistenceError(f"Unknown columns for {table}: {sorted(unknown)}")
    return [c for c in TABLES[table] if c in values]


class Backend:
    """Row store every Store action persists through. Rows are plain dicts keyed by column."""

    def select(self, table: str, **filters) -> list[dict]:
        raise NotImplementedError

    def select_one(self, table: str, row_id: str) -> dict:
        raise NotImplementedError

    def insert(self, table: str, row: dict) -> dict:
        raise NotImplementedError

    def update(self, table: str, row_id: str, values: dict) -> dict:
        raise NotImplementedError

    def delete(self, table: str, row_id: str) -> None:
        raise NotImplementedError


class SqliteBackend(Backend):
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    def get_conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        conn = self.get_conn()
        try:
            conn.executescript(SCHEMA)
            _ensure_column(conn, "users", "phone_number", "TEXT NOT NULL DEFAULT ''")
            _ensure_column(conn, "users", "whatsapp_reminders_active", "INTEGER NOT NULL DEFAULT 0")
            _ensure_column(conn, "users", "whatsapp_reminder_time", "TEXT NOT NULL DEFAULT '09:00'")
            conn.commit()
        finally:
            conn.close()

    def select(self, table: str, **filters) -> list[dict]:
        cols = _columns(table, filters)
        where = " AND ".join(f"{c} = ?" for c in cols) or "1 = 1"
        conn = self.get_conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY rowid",
                tuple(filters[c] for c in cols),
            ).fetchall()
            return [dict(r) for r in rows]
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def select_one(self, table: str, row_id: str) -> dict:
        rows = self.select(table, id=row_id)
        if not rows:
            raise NoRowsError(f"No row {row_id!r} in {table}")
        return rows[0]

    def insert(self, table: str, row: dict) -> dict:
        values = dict(row)
        if "created_at" in TABLES.get(table, ()) and not values.get("created_at"):
            values["created_at"] = utc_now_iso()
        cols = _columns(table, values)
        conn = self.get_conn()
        try:
            # Ids are chosen by the caller, so replaying an insert is harmless.
            conn.execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) ON CONFLICT DO NOTHING",
                tuple(values[c] for c in cols),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()
        return self.select_one(table, values["id"])

    def update(self, table: str, row_id: str, values: dict) -> dict:
        if table in APPEND_ONLY:
            raise PersistenceError(f"{table} is append-only")
        cols = _columns(table, values)
        if not cols:
            return self.select_one(table, row_id)
        conn = self.get_conn()
        try:
            cur = conn.execute(
                f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
                (*[values[c] for c in cols], row_id),
            )
            updated = cur.rowcount
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()
        if updated == 0:
            raise NoRowsError(f"No row {row_id!r} in {table}")
        return self.select_one(table, row_id)

    def delete(self, table: str, row_id: str) -> None:
        if table in APPEND_ONLY:
            raise PersistenceError(f"{table} is append-only")
        _columns(table, {})
        conn = self.get_conn()
        try:
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def reminder_candidates(self) -> list[dict]:
        conn = self.get_conn()
        try:
            rows = conn.execute(
                """
                SELECT id, phone_number, whatsapp_reminder_time
                FROM users
                WHERE whatsapp_reminders_active = 1 AND phone_number != ''
                ORDER BY rowid
                """
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def was_reminder_sent(self, user_id: str, for_date: str) -> bool:
        return bool(self.select("reminder_log", user_id=user_id, date=for_date))

    def mark_reminder_sent(self, user_id: str, for_date: str) -> None:
        self.insert("reminder_log", {"id": f"{user_id}:{for_date}", "user_id": user_id, "date": for_date, "sent_at": utc_now_iso()})
