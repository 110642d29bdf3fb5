"""Seed the local SQLite DB with a small, coherent demo board.

Creates one application (DEMO) with plans and a handful of tasks spread over
the workflow, driving every task through the real engine so ids, owners and
notes look exactly like production data.

Run:
  cd tms_mvp
  source .venv/bin/activate
  python3 seed/seed_demo.py

Then start the app:
  uvicorn app.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    # Import app init to guarantee schema + demo users are present
    from app import config
    from app.db import db
    from app.main import init_db
    from app.registry import create_application, create_plan, load_application, load_principal, plan_exists
    from app.tasks import append_note, change_plan, create_task, transition_task
    from app.workflow import Gate

    config.SEED_DEMO = True
    init_db()

    actor = "seed"
    with db() as conn:
        if load_application(conn, "DEMO") is None:
            create_application(
                conn,
                "DEMO",
                actor,
                description="Demo application",
                start_date="2026-01-01",
                end_date="2026-12-31",
                permits={
                    Gate.CREATE: ["project lead"],
                    Gate.OPEN: ["project manager"],
                    Gate.TODO: ["dev"],
                    Gate.DOING: ["dev"],
                    Gate.DONE: ["project lead"],
                },
            )
        for name, start, end in (
            ("Sprint 1", "2026-01-05", "2026-01-16"),
            ("Sprint 2", "2026-01-19", "2026-01-30"),
        ):
            if not plan_exists(conn, "DEMO", name):
                create_plan(conn, "DEMO", name, start, end, actor)
        # Engine calls open their own write transactions.
        conn.commit()

        demo = load_application(conn, "DEMO")
        if demo and demo.task_counter > 0:
            print(f"{config.DB_PATH}: DEMO already has {demo.task_counter} task(s), skipping task seed")
            return

        lead = load_principal(conn, "lead")
        pm = load_principal(conn, "pm")
        alice = load_principal(conn, "alice")
        assert lead and pm and alice, "demo users missing"

        # Open, unplanned
        create_task(conn, lead, name="Write onboarding guide", description="New joiner docs", app_acronym="DEMO")

        # ToDo
        t = create_task(conn, lead, name="Login page", description="Session cookie login form", app_acronym="DEMO")
        change_plan(conn, pm, t.id, "Sprint 1")
        transition_task(conn, pm, t.id, "ToDo")

        # Doing, with a note
        t = create_task(conn, lead, name="Task board", plan="Sprint 1", app_acronym="DEMO")
        transition_task(conn, pm, t.id, "ToDo")
        transition_task(conn, alice, t.id, "Doing")
        append_note(conn, alice, t.id, "Columns render; drag and drop next.")

        # Done (awaiting approval)
        t = create_task(conn, lead, name="Plan filter", plan="Sprint 1", app_acronym="DEMO")
        transition_task(conn, pm, t.id, "ToDo")
        transition_task(conn, alice, t.id, "Doing")
        transition_task(conn, alice, t.id, "Done")

        # Closed
        t = create_task(conn, lead, name="Project skeleton", plan="Sprint 1", app_acronym="DEMO")
        transition_task(conn, pm, t.id, "ToDo")
        transition_task(conn, alice, t.id, "Doing")
        transition_task(conn, alice, t.id, "Done")
        transition_task(conn, lead, t.id, "Closed")

        demo = load_application(conn, "DEMO")

    print(f"Seeded {config.DB_PATH}: application DEMO, task counter {demo.task_counter if demo else '?'}")


if __name__ == "__main__":
    main()
