from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import random
import secrets
import sqlite3
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterator, TypeVar

from app import config
from app.workflow import Transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def today_iso() -> str:
    return date.today().isoformat()


def _json_load(s: str | None) -> Any:
    return json.loads(s) if s else None


def _json_dump(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def db(path: str | None = None) -> sqlite3.Connection:
    """Open a connection to the configured DB.

    Notes:
    - FastAPI sync routes run in a threadpool; we open a fresh connection per request.
    - SQLite is single-writer; WAL + a busy timeout bounds how long a writer waits
      for the lock before sqlite raises OperationalError.
    """
    path = path or config.DB_PATH
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    conn = sqlite3.connect(path, timeout=config.LOCK_TIMEOUT)
    conn.row_factory = sqlite3.Row

    # Pragmas are per-connection.
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {int(config.LOCK_TIMEOUT * 1000)}")
    return conn


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg or "deadlock" in msg


@contextmanager
def _immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    # BEGIN IMMEDIATE takes the write lock up front, so the read half of a
    # read-modify-write unit already runs under the lock.
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def run_locked(conn: sqlite3.Connection, fn: Callable[[sqlite3.Connection], T], *, what: str = "write") -> T:
    """Run `fn(conn)` as one atomic unit holding the write lock.

    Lock-wait failures are retried with exponential backoff plus jitter, up to
    config.LOCK_ATTEMPTS attempts, then surface as Transient. Any other
    exception rolls the unit back and propagates unchanged.
    """
    attempts = config.LOCK_ATTEMPTS
    for attempt in range(attempts):
        try:
            with _immediate(conn):
                return fn(conn)
        except sqlite3.OperationalError as e:
            if not _is_lock_error(e):
                raise
            if attempt == attempts - 1:
                logger.warning("%s: lock contention after %d attempts: %s", what, attempts, e)
                raise Transient(f"Resource busy, please retry ({what})") from e
            delay = config.LOCK_BACKOFF * (2**attempt) + random.uniform(0, config.LOCK_BACKOFF)
            logger.warning("%s: lock busy (attempt %d/%d), retrying in %.3fs", what, attempt + 1, attempts, delay)
            time.sleep(delay)
    raise Transient(f"Resource busy, please retry ({what})")


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == column for r in rows)


def init_db_path(db_path: str | None = None) -> None:
    with db(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS groups (
              name TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              username TEXT NOT NULL UNIQUE,
              email TEXT NOT NULL DEFAULT '',
              password_salt_hex TEXT NOT NULL,
              password_hash_hex TEXT NOT NULL,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL,
              disabled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS user_groups (
              user_id INTEGER NOT NULL,
              group_name TEXT NOT NULL,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL,
              PRIMARY KEY (user_id, group_name),
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
              FOREIGN KEY (group_name) REFERENCES groups(name) ON DELETE RESTRICT
            );

            CREATE TABLE IF NOT EXISTS sessions (
              token TEXT PRIMARY KEY,
              user_id INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              revoked_at TEXT,
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS applications (
              acronym TEXT PRIMARY KEY,
              description TEXT NOT NULL DEFAULT '',
              start_date TEXT,
              end_date TEXT,
              task_counter INTEGER NOT NULL DEFAULT 0 CHECK (task_counter >= 0),

              permit_create_json TEXT NOT NULL DEFAULT '[]',
              permit_open_json TEXT NOT NULL DEFAULT '[]',
              permit_todo_json TEXT NOT NULL DEFAULT '[]',
              permit_doing_json TEXT NOT NULL DEFAULT '[]',
              permit_done_json TEXT NOT NULL DEFAULT '[]',

              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              updated_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS plans (
              app_acronym TEXT NOT NULL,
              name TEXT NOT NULL,
              start_date TEXT NOT NULL,
              end_date TEXT NOT NULL,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL,
              PRIMARY KEY (app_acronym, name),
              FOREIGN KEY (app_acronym) REFERENCES applications(acronym) ON DELETE RESTRICT
            );

            CREATE TABLE IF NOT EXISTS tasks (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              description TEXT NOT NULL DEFAULT '',
              plan TEXT,
              app_acronym TEXT NOT NULL,
              state TEXT NOT NULL,
              owner TEXT NOT NULL,
              creator TEXT NOT NULL,
              create_date TEXT NOT NULL,
              notes_json TEXT NOT NULL DEFAULT '[]',
              updated_at TEXT NOT NULL,
              FOREIGN KEY (app_acronym) REFERENCES applications(acronym) ON DELETE RESTRICT
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_app ON tasks(app_acronym);
            CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);
            """
        )

        # lightweight migrations
        if not _column_exists(conn, "users", "email"):
            conn.execute("ALTER TABLE users ADD COLUMN email TEXT NOT NULL DEFAULT ''")


# --- Passwords + sessions ---


def _hash_password(password: str, salt_hex: str) -> str:
    pw = (password or "").encode("utf-8")
    salt = bytes.fromhex(salt_hex)
    dk = hashlib.pbkdf2_hmac("sha256", pw, salt, 200_000)
    return dk.hex()


def _verify_password(password: str, salt_hex: str, hash_hex: str) -> bool:
    return hmac.compare_digest(_hash_password(password, salt_hex), hash_hex)


def _new_salt() -> str:
    return secrets.token_bytes(16).hex()


def _new_session_token() -> str:
    return secrets.token_urlsafe(32)
