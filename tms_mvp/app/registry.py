"""Collaborators of the task engine: identities, groups, applications, plans.

These are plain CRUD helpers over the shared sqlite DB. The engine only
consumes `load_application`, `plan_exists` and the principal lookups; the
rest backs the admin/project-lead/project-manager API routes.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from datetime import date
from typing import Any

from app.db import (
    _hash_password,
    _json_dump,
    _json_load,
    _new_salt,
    _new_session_token,
    _verify_password,
    utc_now_iso,
)
from app.workflow import PERMIT_COLUMNS, Forbidden, Gate, InvalidInput, InvalidReference, NotFound, PermitTable, Principal

ADMIN_GROUP = "admin"
PROJECT_LEAD_GROUP = "project lead"
PROJECT_MANAGER_GROUP = "project manager"

NAME_MAX = 50
DESCRIPTION_MAX = 255

# The account every deployment starts from; it always keeps the admin group.
ADMIN_USER = "admin"

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
GROUP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _-]{0,49}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_RE = re.compile(r"""^[A-Za-z0-9!@#$%^&*()_+\-=\[\]{};':",.<>/?]{8,10}$""")


# --- Field parsing ---


def clean_text(value: Any, field: str, max_len: int, *, required: bool = True) -> str:
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise InvalidInput(f"Invalid {field}")
    text = value.strip()
    if required and not text:
        raise InvalidInput(f"{field} is required")
    if len(text) > max_len:
        raise InvalidInput(f"Invalid {field} (max {max_len} chars)")
    return text


def parse_date(value: str | None, field: str, *, required: bool = True) -> str | None:
    raw = (value or "").strip()
    if not raw:
        if required:
            raise InvalidInput(f"{field} is required")
        return None
    if not DATE_RE.match(raw):
        raise InvalidInput(f"{field} must be in YYYY-MM-DD format")
    try:
        date.fromisoformat(raw)
    except ValueError:
        raise InvalidInput(f"{field} is not a valid date")
    return raw


def check_date_range(start: str | None, end: str | None) -> None:
    if start and end and date.fromisoformat(start) > date.fromisoformat(end):
        raise InvalidInput("Start date must be before or equal to end date")


def parse_groups(text: str | None) -> list[str]:
    raw = (text or "").strip()
    if not raw:
        return []
    parts = [p.strip() for p in raw.split(",")]
    return sorted({p for p in parts if p})


def check_email(value: str | None) -> str:
    email = (value or "").strip()
    if not EMAIL_RE.match(email):
        raise InvalidInput("Invalid email format")
    return email


def check_password(value: str | None) -> str:
    """8-10 characters: letters, digits and common punctuation."""
    password = value or ""
    if not PASSWORD_RE.match(password):
        raise InvalidInput("Password does not meet requirements (8-10 letters, digits or symbols)")
    return password


# --- Groups ---


def list_groups(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT name FROM groups ORDER BY name ASC").fetchall()
    return [str(r["name"]) for r in rows]


def create_group(conn: sqlite3.Connection, name: str, actor: str) -> str:
    name = (name or "").strip()
    if not GROUP_NAME_RE.match(name):
        raise InvalidInput("Invalid group name (max 50 chars; letters, digits, space, _ and -)")
    try:
        conn.execute(
            "INSERT INTO groups(name, created_at, created_by) VALUES (?,?,?)",
            (name, utc_now_iso(), actor),
        )
    except sqlite3.IntegrityError:
        raise InvalidInput(f"Group '{name}' already exists")
    return name


def _require_groups_exist(conn: sqlite3.Connection, groups: list[str]) -> None:
    known = set(list_groups(conn))
    missing = [g for g in groups if g not in known]
    if missing:
        raise InvalidReference(f"Unknown group(s): {', '.join(missing)}")


# --- Users + principals ---


def _groups_for_user_id(conn: sqlite3.Connection, user_id: int) -> frozenset[str]:
    rows = conn.execute("SELECT group_name FROM user_groups WHERE user_id=?", (user_id,)).fetchall()
    return frozenset(str(r["group_name"]) for r in rows)


def load_principal(conn: sqlite3.Connection, username: str) -> Principal | None:
    row = conn.execute("SELECT id, username, disabled_at FROM users WHERE username=?", (username,)).fetchone()
    if not row:
        return None
    return Principal(
        username=str(row["username"]),
        groups=_groups_for_user_id(conn, int(row["id"])),
        active=row["disabled_at"] is None,
    )


def principal_for_session(conn: sqlite3.Connection, token: str) -> Principal | None:
    row = conn.execute(
        """
        SELECT u.username
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token=? AND s.revoked_at IS NULL
        """,
        (token,),
    ).fetchone()
    if not row:
        return None
    return load_principal(conn, str(row["username"]))


def open_session(conn: sqlite3.Connection, username: str, password: str) -> str:
    u = conn.execute(
        "SELECT id, password_salt_hex, password_hash_hex, disabled_at FROM users WHERE username=?",
        (username,),
    ).fetchone()
    if not u or not _verify_password(password, str(u["password_salt_hex"]), str(u["password_hash_hex"])):
        raise Forbidden("Invalid credentials")
    if u["disabled_at"] is not None:
        raise Forbidden("Account is disabled")

    token = _new_session_token()
    conn.execute(
        "INSERT INTO sessions(token, user_id, created_at) VALUES (?,?,?)",
        (token, int(u["id"]), utc_now_iso()),
    )
    return token


def revoke_session(conn: sqlite3.Connection, token: str) -> None:
    conn.execute("UPDATE sessions SET revoked_at=? WHERE token=? AND revoked_at IS NULL", (utc_now_iso(), token))


def _user_row(conn: sqlite3.Connection, username: str) -> sqlite3.Row:
    row = conn.execute("SELECT id, username, email, disabled_at FROM users WHERE username=?", (username,)).fetchone()
    if not row:
        raise NotFound(f"User '{username}' not found")
    return row


def user_dict(conn: sqlite3.Connection, username: str) -> dict[str, Any]:
    row = _user_row(conn, username)
    return {
        "username": str(row["username"]),
        "email": str(row["email"] or ""),
        "groups": sorted(_groups_for_user_id(conn, int(row["id"]))),
        "active": row["disabled_at"] is None,
    }


def list_users(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute("SELECT username FROM users ORDER BY username ASC").fetchall()
    return [user_dict(conn, str(r["username"])) for r in rows]


def _require_unique_email(conn: sqlite3.Connection, email: str, username: str | None = None) -> None:
    row = conn.execute(
        "SELECT username FROM users WHERE lower(email)=lower(?) AND username IS NOT ?",
        (email, username),
    ).fetchone()
    if row:
        raise InvalidInput(f"Email '{email}' is already in use")


def create_user(
    conn: sqlite3.Connection,
    username: str,
    password: str,
    actor: str,
    *,
    email: str,
    groups: list[str],
) -> dict[str, Any]:
    """Create an account. Email, a policy-conforming password and at least one group are required."""
    username = clean_text(username, "username", NAME_MAX)
    email = check_email(email)
    password = check_password(password)
    if not groups:
        raise InvalidInput("At least one group is required")
    _require_groups_exist(conn, groups)
    _require_unique_email(conn, email)

    salt = _new_salt()
    now = utc_now_iso()
    try:
        cur = conn.execute(
            """
            INSERT INTO users(username, email, password_salt_hex, password_hash_hex, created_at, created_by)
            VALUES (?,?,?,?,?,?)
            """,
            (username, email, salt, _hash_password(password, salt), now, actor),
        )
    except sqlite3.IntegrityError:
        raise InvalidInput(f"User '{username}' already exists")
    uid = int(cur.lastrowid)
    for g in groups:
        conn.execute(
            "INSERT INTO user_groups(user_id, group_name, created_at, created_by) VALUES (?,?,?,?)",
            (uid, g, now, actor),
        )
    return user_dict(conn, username)


def set_user_groups(conn: sqlite3.Connection, username: str, groups: list[str], actor: str) -> dict[str, Any]:
    row = _user_row(conn, username)
    if not groups:
        raise InvalidInput("At least one group is required")
    if username == ADMIN_USER and ADMIN_GROUP not in groups:
        raise InvalidInput(f"Cannot remove the '{ADMIN_GROUP}' group from user '{ADMIN_USER}'")
    _require_groups_exist(conn, groups)
    uid = int(row["id"])
    conn.execute("DELETE FROM user_groups WHERE user_id=?", (uid,))
    now = utc_now_iso()
    for g in groups:
        conn.execute(
            "INSERT INTO user_groups(user_id, group_name, created_at, created_by) VALUES (?,?,?,?)",
            (uid, g, now, actor),
        )
    return user_dict(conn, username)


def set_user_active(conn: sqlite3.Connection, username: str, active: bool) -> dict[str, Any]:
    row = _user_row(conn, username)
    if active:
        conn.execute("UPDATE users SET disabled_at=NULL WHERE id=?", (int(row["id"]),))
    else:
        now = utc_now_iso()
        conn.execute("UPDATE users SET disabled_at=? WHERE id=?", (now, int(row["id"])))
        conn.execute("UPDATE sessions SET revoked_at=? WHERE user_id=? AND revoked_at IS NULL", (now, int(row["id"])))
    return user_dict(conn, username)


def set_user_email(conn: sqlite3.Connection, username: str, email: str) -> dict[str, Any]:
    row = _user_row(conn, username)
    email = check_email(email)
    _require_unique_email(conn, email, username)
    conn.execute("UPDATE users SET email=? WHERE id=?", (email, int(row["id"])))
    return user_dict(conn, username)


def reset_password(conn: sqlite3.Connection, username: str, password: str) -> None:
    row = _user_row(conn, username)
    password = check_password(password)
    salt = _new_salt()
    conn.execute(
        "UPDATE users SET password_salt_hex=?, password_hash_hex=? WHERE id=?",
        (salt, _hash_password(password, salt), int(row["id"])),
    )
    # Revoke sessions
    conn.execute("UPDATE sessions SET revoked_at=? WHERE user_id=? AND revoked_at IS NULL", (utc_now_iso(), int(row["id"])))


def update_profile(
    conn: sqlite3.Connection,
    username: str,
    *,
    email: str | None = None,
    password: str | None = None,
    current_password: str | None = None,
) -> dict[str, Any]:
    """Self-service edit of the caller's own email and/or password.

    A new password is only accepted together with the current one. Existing
    sessions stay valid.
    """
    if email is None and password is None:
        raise InvalidInput("No updatable fields provided")

    row = conn.execute(
        "SELECT id, password_salt_hex, password_hash_hex FROM users WHERE username=?",
        (username,),
    ).fetchone()
    if not row:
        raise NotFound(f"User '{username}' not found")

    if email is not None:
        email = check_email(email)
        _require_unique_email(conn, email, username)
    if password is not None:
        password = check_password(password)
        if not current_password:
            raise InvalidInput("Current password is required to set a new password")
        if not _verify_password(current_password, str(row["password_salt_hex"]), str(row["password_hash_hex"])):
            raise InvalidInput("Current password is incorrect")

    if email is not None:
        conn.execute("UPDATE users SET email=? WHERE id=?", (email, int(row["id"])))
    if password is not None:
        salt = _new_salt()
        conn.execute(
            "UPDATE users SET password_salt_hex=?, password_hash_hex=? WHERE id=?",
            (salt, _hash_password(password, salt), int(row["id"])),
        )
    return user_dict(conn, username)


# --- Applications ---


@dataclass(frozen=True)
class Application:
    acronym: str
    description: str
    start_date: str | None
    end_date: str | None
    task_counter: int
    permits: PermitTable

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Application":
        return cls(
            acronym=str(row["acronym"]),
            description=str(row["description"] or ""),
            start_date=row["start_date"],
            end_date=row["end_date"],
            task_counter=int(row["task_counter"]),
            permits=PermitTable.from_row(row, _json_load),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "acronym": self.acronym,
            "description": self.description,
            "start_date": self.start_date or "",
            "end_date": self.end_date or "",
            "task_counter": self.task_counter,
            "permits": self.permits.as_dict(),
        }


def load_application(conn: sqlite3.Connection, acronym: str) -> Application | None:
    row = conn.execute("SELECT * FROM applications WHERE acronym=?", (acronym,)).fetchone()
    return Application.from_row(row) if row else None


def list_applications(conn: sqlite3.Connection) -> list[Application]:
    rows = conn.execute("SELECT * FROM applications ORDER BY acronym ASC").fetchall()
    return [Application.from_row(r) for r in rows]


def _permit_params(conn: sqlite3.Connection, permits: dict[Gate, list[str]]) -> list[str]:
    for groups in permits.values():
        _require_groups_exist(conn, groups)
    return [_json_dump(sorted(set(permits.get(gate, [])))) for gate in PERMIT_COLUMNS]


def create_application(
    conn: sqlite3.Connection,
    acronym: str,
    actor: str,
    *,
    description: str = "",
    start_date: str | None = None,
    end_date: str | None = None,
    permits: dict[Gate, list[str]] | None = None,
) -> Application:
    acronym = clean_text(acronym, "acronym", NAME_MAX)
    if "_" in acronym:
        # Task ids are <acronym>_<seq>; keep the split unambiguous.
        raise InvalidInput("acronym must not contain '_'")
    description = clean_text(description, "description", DESCRIPTION_MAX, required=False)
    start = parse_date(start_date, "start_date", required=False)
    end = parse_date(end_date, "end_date", required=False)
    check_date_range(start, end)
    permit_values = _permit_params(conn, permits or {})

    now = utc_now_iso()
    columns = ", ".join(PERMIT_COLUMNS.values())
    try:
        conn.execute(
            f"""
            INSERT INTO applications(
              acronym, description, start_date, end_date, task_counter,
              {columns},
              created_at, created_by, updated_at, updated_by
            ) VALUES (?,?,?,?,0,?,?,?,?,?,?,?,?,?)
            """,
            (acronym, description, start, end, *permit_values, now, actor, now, actor),
        )
    except sqlite3.IntegrityError:
        raise InvalidInput(f"Application '{acronym}' already exists")
    row = conn.execute("SELECT * FROM applications WHERE acronym=?", (acronym,)).fetchone()
    return Application.from_row(row)


def update_application(
    conn: sqlite3.Connection,
    acronym: str,
    actor: str,
    *,
    description: str = "",
    start_date: str | None = None,
    end_date: str | None = None,
    permits: dict[Gate, list[str]] | None = None,
) -> Application:
    """Edit everything except the acronym and the task counter."""
    if load_application(conn, acronym) is None:
        raise NotFound(f"Application '{acronym}' not found")
    description = clean_text(description, "description", DESCRIPTION_MAX, required=False)
    start = parse_date(start_date, "start_date", required=False)
    end = parse_date(end_date, "end_date", required=False)
    check_date_range(start, end)
    permit_values = _permit_params(conn, permits or {})

    assignments = ", ".join(f"{col}=?" for col in PERMIT_COLUMNS.values())
    conn.execute(
        f"""
        UPDATE applications
        SET description=?, start_date=?, end_date=?, {assignments}, updated_at=?, updated_by=?
        WHERE acronym=?
        """,
        (description, start, end, *permit_values, utc_now_iso(), actor, acronym),
    )
    row = conn.execute("SELECT * FROM applications WHERE acronym=?", (acronym,)).fetchone()
    return Application.from_row(row)


# --- Plans ---


def plan_exists(conn: sqlite3.Connection, app_acronym: str, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM plans WHERE app_acronym=? AND name=? LIMIT 1",
        (app_acronym, name),
    ).fetchone()
    return bool(row)


def _plan_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "name": str(row["name"]),
        "app_acronym": str(row["app_acronym"]),
        "start_date": str(row["start_date"]),
        "end_date": str(row["end_date"]),
    }


def list_plans(conn: sqlite3.Connection, app_acronym: str | None = None) -> list[dict[str, Any]]:
    # Latest plans first.
    if app_acronym:
        rows = conn.execute(
            "SELECT * FROM plans WHERE app_acronym=? ORDER BY start_date DESC, name ASC",
            (app_acronym,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM plans ORDER BY start_date DESC, name ASC").fetchall()
    return [_plan_dict(r) for r in rows]


def create_plan(
    conn: sqlite3.Connection,
    app_acronym: str,
    name: str,
    start_date: str,
    end_date: str,
    actor: str,
) -> dict[str, Any]:
    name = clean_text(name, "plan name", NAME_MAX)
    app_acronym = clean_text(app_acronym, "app_acronym", NAME_MAX)
    start = parse_date(start_date, "start_date")
    end = parse_date(end_date, "end_date")
    check_date_range(start, end)
    if load_application(conn, app_acronym) is None:
        raise InvalidReference(f"Application '{app_acronym}' does not exist")
    try:
        conn.execute(
            "INSERT INTO plans(app_acronym, name, start_date, end_date, created_at, created_by) VALUES (?,?,?,?,?,?)",
            (app_acronym, name, start, end, utc_now_iso(), actor),
        )
    except sqlite3.IntegrityError:
        raise InvalidInput(f"Plan '{name}' already exists in application '{app_acronym}'")
    row = conn.execute("SELECT * FROM plans WHERE app_acronym=? AND name=?", (app_acronym, name)).fetchone()
    return _plan_dict(row)


# --- Notification recipients ---


def review_recipients(conn: sqlite3.Connection, app_acronym: str) -> list[dict[str, str]]:
    """Active users allowed to act on Done tasks of the application (the approvers)."""
    app = load_application(conn, app_acronym)
    if app is None:
        return []
    groups = app.permits.for_gate(Gate.DONE)
    if not groups:
        return []
    placeholders = ",".join("?" for _ in groups)
    rows = conn.execute(
        f"""
        SELECT DISTINCT u.username, u.email
        FROM users u
        JOIN user_groups ug ON ug.user_id = u.id
        WHERE u.disabled_at IS NULL AND ug.group_name IN ({placeholders})
        ORDER BY u.username ASC
        """,
        tuple(sorted(groups)),
    ).fetchall()
    return [{"username": str(r["username"]), "email": str(r["email"] or "")} for r in rows]
