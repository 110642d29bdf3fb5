#!/usr/bin/env python3
"""Validate that a DB adheres to the task id / counter contract.

Rules checked, per application:
1. Every task id has the form <acronym>_<positive int>.
2. No task sequence exceeds the application's task_counter.
3. Every task sits in a known workflow state.
4. Every note ledger is a JSON list of {author, status, datetime, message}.
"""

import argparse
import json
import re
import sqlite3
import sys
from pathlib import Path

# Add project root to sys.path
# If this file is at tms_mvp/scripts/validate_counters.py
# parents[0] = scripts
# parents[1] = tms_mvp
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import config
from app.workflow import WorkflowState

TASK_ID_RE = re.compile(r"^(?P<acronym>.+)_(?P<seq>[1-9][0-9]*)$")
NOTE_KEYS = {"author", "status", "datetime", "message"}


def validate_db(db_path: str) -> int:
    """Return the number of violated rules (0 = clean)."""
    print(f"Validating {db_path}...")

    if not Path(db_path).exists():
        print(f"DB file not found: {db_path}")
        return 1

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    failures = 0
    states = {s.value for s in WorkflowState}
    counters = {str(r["acronym"]): int(r["task_counter"]) for r in conn.execute("SELECT acronym, task_counter FROM applications")}

    rows = conn.execute("SELECT id, app_acronym, state, notes_json FROM tasks ORDER BY rowid ASC").fetchall()
    for r in rows:
        task_id = str(r["id"])
        m = TASK_ID_RE.match(task_id)
        if not m or m.group("acronym") != r["app_acronym"]:
            print(f"[FAIL] {task_id}: id does not match <{r['app_acronym']}>_<seq>")
            failures += 1
            continue

        counter = counters.get(str(r["app_acronym"]))
        if counter is None:
            print(f"[FAIL] {task_id}: application {r['app_acronym']} missing")
            failures += 1
        elif int(m.group("seq")) > counter:
            print(f"[FAIL] {task_id}: sequence ahead of task_counter {counter}")
            failures += 1

        if r["state"] not in states:
            print(f"[FAIL] {task_id}: unknown state {r['state']!r}")
            failures += 1

        try:
            notes = json.loads(r["notes_json"] or "[]")
        except ValueError:
            notes = None
        if not isinstance(notes, list) or any(not isinstance(n, dict) or set(n) != NOTE_KEYS for n in notes):
            print(f"[FAIL] {task_id}: malformed notes ledger")
            failures += 1

    conn.close()

    if failures == 0:
        print(f"[OK] {len(rows)} task(s) across {len(counters)} application(s) are consistent.")
    else:
        print(f"[FAIL] {failures} rule violation(s) found.")
    return failures


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Validate task ids against application counters.")
    parser.add_argument("--db", default=config.DB_PATH, help="SQLite DB path")
    args = parser.parse_args()

    sys.exit(0 if validate_db(args.db) == 0 else 1)
