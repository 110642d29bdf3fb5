from __future__ import annotations

import sqlite3
from types import SimpleNamespace

import pytest

from app import config
from app.db import db, init_db_path
from app.registry import create_application, create_group, create_plan, create_user, load_principal
from app.workflow import Gate


PASSWORDS = {
    "alice": "alice-pw1",
    "bob": "bob-pw12",
    "lead": "lead-pw1",
    "pm": "pm-pw123",
    "admin": "admin-pw1",
    "carol": "carol-pw1",
}
USER_GROUPS = {
    "alice": ["dev"],
    "bob": ["dev"],
    "lead": ["project lead"],
    "pm": ["project manager"],
    "admin": ["admin"],
    "carol": ["qa"],
}


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "tms.db")
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(config, "LOCK_BACKOFF", 0.01)
    monkeypatch.setattr(config, "SEED_DEMO", False)
    init_db_path(path)
    return path


@pytest.fixture
def conn(db_path):
    c = db(db_path)
    yield c
    c.close()


def _seed_board(conn: sqlite3.Connection) -> None:
    for g in ("dev", "project lead", "project manager", "admin", "qa"):
        create_group(conn, g, "test")

    for username, groups in USER_GROUPS.items():
        create_user(conn, username, PASSWORDS[username], "test", email=f"{username}@example.com", groups=groups)

    create_application(
        conn,
        "APP1",
        "test",
        permits={
            Gate.CREATE: ["dev"],
            Gate.OPEN: ["dev", "project manager"],
            Gate.TODO: ["dev"],
            Gate.DOING: ["dev"],
            Gate.DONE: ["project lead"],
        },
    )
    create_application(conn, "APP2", "test", permits={Gate.CREATE: ["dev"]})

    create_plan(conn, "APP1", "Q1", "2026-01-01", "2026-03-31", "test")
    create_plan(conn, "APP1", "Q2", "2026-04-01", "2026-06-30", "test")
    create_plan(conn, "APP2", "Other", "2026-01-01", "2026-12-31", "test")
    conn.commit()


@pytest.fixture
def passwords():
    return dict(PASSWORDS)


@pytest.fixture
def seeded(conn):
    _seed_board(conn)
    return conn


@pytest.fixture
def board(conn):
    """APP1 (Create=[dev], Open=[dev, pm], ToDo/Doing=[dev], Done=[lead]) with plans Q1/Q2."""
    _seed_board(conn)
    return SimpleNamespace(
        conn=conn,
        alice=load_principal(conn, "alice"),
        bob=load_principal(conn, "bob"),
        lead=load_principal(conn, "lead"),
        pm=load_principal(conn, "pm"),
        carol=load_principal(conn, "carol"),
    )
