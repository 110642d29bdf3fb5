"""Task engine: creation, state transitions, plan changes and notes.

Every mutation is one `run_locked` unit: the task (and, for creation, the
application counter) is read, checked and written while the sqlite write
lock is held, and either all of it commits or none of it does.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from app.db import _json_dump, _json_load, run_locked, today_iso, utc_now_iso
from app.registry import DESCRIPTION_MAX, NAME_MAX, Application, clean_text, load_application, plan_exists
from app.workflow import (
    UNASSIGNED,
    Edge,
    Forbidden,
    Gate,
    InvalidInput,
    InvalidReference,
    InvalidTransition,
    Note,
    NoteLedger,
    NotFound,
    Principal,
    Task,
    Transient,
    WorkflowState,
    can_act,
    edge_for,
    transition_message,
)

logger = logging.getLogger(__name__)

# notifier(task_id, actor_username)
Notifier = Callable[[str, str], None]

PLAN_MAX = NAME_MAX


def _row_to_task(row: sqlite3.Row) -> Task:
    state = WorkflowState.parse(str(row["state"]))
    if state is None:
        raise ValueError(f"task {row['id']} has unknown state {row['state']!r}")
    return Task(
        id=str(row["id"]),
        name=str(row["name"]),
        description=str(row["description"] or ""),
        plan=row["plan"] or None,
        app_acronym=str(row["app_acronym"]),
        state=state,
        owner=str(row["owner"]),
        creator=str(row["creator"]),
        create_date=str(row["create_date"]),
        notes=NoteLedger.from_json(_json_load(row["notes_json"])),
    )


def _load_task(conn: sqlite3.Connection, task_id: str) -> Task:
    row = conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
    if not row:
        raise NotFound(f"Task '{task_id}' not found")
    return _row_to_task(row)


def _application(conn: sqlite3.Connection, acronym: str) -> Application:
    app = load_application(conn, acronym)
    if app is None:
        raise InvalidReference(f"Application '{acronym}' does not exist")
    return app


def _require_mutable(task: Task) -> None:
    if task.state is WorkflowState.CLOSED:
        raise Forbidden(f"Task '{task.id}' is Closed and can no longer be changed")


def _require_permit(principal: Principal, app: Application, task: Task) -> None:
    gate = Gate.for_state(task.state)
    if not can_act(principal, app.permits, gate):
        raise Forbidden(f"Not authorized to act on {task.state.value} tasks in application '{app.acronym}'")


def _check_plan(conn: sqlite3.Connection, app_acronym: str, plan: str) -> None:
    """Empty clears the plan; anything else must be a plan of the same application."""
    if len(plan) > PLAN_MAX:
        raise InvalidInput(f"Invalid plan (max {PLAN_MAX} chars)")
    if plan and not plan_exists(conn, app_acronym, plan):
        raise InvalidReference(f"Plan '{plan}' does not exist in application '{app_acronym}'")


def _write(conn: sqlite3.Connection, task_id: str, **fields: object) -> None:
    fields["updated_at"] = utc_now_iso()
    assignments = ", ".join(f"{k}=?" for k in fields)
    conn.execute(f"UPDATE tasks SET {assignments} WHERE id=?", (*fields.values(), task_id))


# --- Reads ---


def get_task(conn: sqlite3.Connection, task_id: str) -> Task:
    return _load_task(conn, task_id)


def list_tasks(conn: sqlite3.Connection, app_acronym: str | None = None) -> list[Task]:
    # create_date is a day; rowid keeps same-day tasks in creation order.
    if app_acronym:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE app_acronym=? ORDER BY create_date ASC, rowid ASC",
            (app_acronym,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM tasks ORDER BY create_date ASC, rowid ASC").fetchall()
    return [_row_to_task(r) for r in rows]


# --- Creation ---


def create_task(
    conn: sqlite3.Connection,
    principal: Principal,
    *,
    name: str,
    description: str = "",
    plan: str = "",
    app_acronym: str,
) -> Task:
    """Create a task in Open with the next id from the application's counter.

    The counter bump and the insert share one transaction, so a failed
    creation never consumes a sequence number.
    """
    name = clean_text(name, "name", NAME_MAX)
    description = clean_text(description, "description", DESCRIPTION_MAX, required=False)
    plan = clean_text(plan, "plan", PLAN_MAX, required=False)
    acronym = clean_text(app_acronym, "app_acronym", NAME_MAX)

    def _create(conn: sqlite3.Connection) -> Task:
        app = _application(conn, acronym)
        if not can_act(principal, app.permits, Gate.CREATE):
            raise Forbidden(f"Not authorized to create tasks in application '{acronym}'")

        next_seq = app.task_counter + 1
        task_id = f"{acronym}_{next_seq}"
        _check_plan(conn, acronym, plan)

        now = utc_now_iso()
        try:
            conn.execute(
                """
                INSERT INTO tasks(
                  id, name, description, plan, app_acronym, state,
                  owner, creator, create_date, notes_json, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    task_id,
                    name,
                    description,
                    plan or None,
                    acronym,
                    WorkflowState.OPEN.value,
                    UNASSIGNED,
                    principal.username,
                    today_iso(),
                    _json_dump(NoteLedger().to_json()),
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise InvalidInput(f"Task '{task_id}' already exists")

        cur = conn.execute(
            "UPDATE applications SET task_counter=? WHERE acronym=? AND task_counter=?",
            (next_seq, acronym, app.task_counter),
        )
        if cur.rowcount != 1:
            raise Transient(f"Task counter of '{acronym}' moved during creation")
        return _load_task(conn, task_id)

    task = run_locked(conn, _create, what=f"create task in {acronym}")
    logger.info("task %s created by %s", task.id, principal.username)
    return task


# --- Transitions ---


def _owner_after(edge: Edge, task: Task, principal: Principal) -> str:
    if edge in (Edge.RELEASE, Edge.DROP):
        return UNASSIGNED
    if edge is Edge.PICK_UP:
        return principal.username
    return task.owner


def _plan_after(
    conn: sqlite3.Connection,
    task: Task,
    edge: Edge,
    plan: str | None,
    expected_plan: str | None,
) -> str:
    """Apply the plan rules of one edge and return the plan the task ends up with.

    `plan` is the caller's staged value and `expected_plan` the value its edit
    session started from; None means "not supplied" for both.
    """
    current = task.plan or ""
    staged = None if plan is None else plan.strip()
    expected = None if expected_plan is None else expected_plan.strip()
    changed = staged is not None and staged != current

    if edge in (Edge.APPROVE, Edge.REJECT) and expected is not None and expected != current:
        raise Forbidden(f"Plan of '{task.id}' changed since editing began (now '{current}')")

    if edge is Edge.RELEASE:
        result = current
        if changed:
            _check_plan(conn, task.app_acronym, staged)
            result = staged
        if not result:
            raise InvalidInput("A plan is required to release a task")
        return result

    if edge is Edge.APPROVE:
        if changed:
            raise Forbidden("A plan change is pending; reject the task to apply it instead of approving")
        return current

    if edge is Edge.REJECT:
        if changed:
            _check_plan(conn, task.app_acronym, staged)
            return staged
        return current

    if changed:
        raise Forbidden(f"Plan is read-only while a task is {task.state.value}")
    return current


def transition_task(
    conn: sqlite3.Connection,
    principal: Principal,
    task_id: str,
    target_state: str,
    *,
    plan: str | None = None,
    expected_plan: str | None = None,
    notifier: Notifier | None = None,
) -> Task:
    """Move a task along one edge of the workflow.

    Authorization is checked against the state being left. A system note is
    appended for every transition. Entering Done fires `notifier` after the
    commit; its failures are logged only.
    """

    def _transition(conn: sqlite3.Connection) -> tuple[Task, Edge, WorkflowState]:
        task = _load_task(conn, task_id)
        _require_mutable(task)

        target = WorkflowState.parse(target_state)
        edge = edge_for(task.state, target) if target is not None else None
        if target is None or edge is None:
            raise InvalidTransition(f"Cannot move task from {task.state.value} to {target_state}")

        app = _application(conn, task.app_acronym)
        _require_permit(principal, app, task)

        new_plan = _plan_after(conn, task, edge, plan, expected_plan)
        note = Note(
            author=principal.username,
            status=task.state.value,
            datetime=utc_now_iso(),
            message=transition_message(task.state, target),
        )
        _write(
            conn,
            task.id,
            state=target.value,
            owner=_owner_after(edge, task, principal),
            plan=new_plan or None,
            notes_json=_json_dump(task.notes.append(note).to_json()),
        )
        return _load_task(conn, task.id), edge, task.state

    task, edge, before = run_locked(conn, _transition, what=f"transition {task_id}")
    logger.info("task %s: %s (%s -> %s) by %s", task.id, edge.value, before.value, task.state.value, principal.username)

    if edge is Edge.REVIEW and notifier is not None:
        try:
            notifier(task.id, principal.username)
        except Exception:
            logger.exception("review notifier for %s failed", task.id)
    return task


# --- Plan changes ---


def change_plan(conn: sqlite3.Connection, principal: Principal, task_id: str, new_plan: str) -> Task:
    """Set or clear the plan of an Open task immediately.

    Done tasks take plan changes only as a staged value on the Reject edge;
    every other state is read-only.
    """
    value = clean_text(new_plan, "plan", PLAN_MAX, required=False)

    def _change(conn: sqlite3.Connection) -> Task:
        task = _load_task(conn, task_id)
        _require_mutable(task)
        if task.state is WorkflowState.DONE:
            raise Forbidden("Plan changes on Done tasks are applied by rejecting the task")
        if task.state is not WorkflowState.OPEN:
            raise Forbidden(f"Plan is read-only while a task is {task.state.value}")

        app = _application(conn, task.app_acronym)
        _require_permit(principal, app, task)

        if value == (task.plan or ""):
            return task
        _check_plan(conn, task.app_acronym, value)
        _write(conn, task.id, plan=value or None)
        return _load_task(conn, task.id)

    task = run_locked(conn, _change, what=f"plan {task_id}")
    logger.info("task %s: plan set to %r by %s", task.id, task.plan or "", principal.username)
    return task


# --- Notes ---


def append_note(conn: sqlite3.Connection, principal: Principal, task_id: str, message: str) -> Task:
    if not isinstance(message, str) or not message.strip():
        raise InvalidInput("message is required")
    message = message.strip()

    def _append(conn: sqlite3.Connection) -> Task:
        task = _load_task(conn, task_id)
        _require_mutable(task)
        app = _application(conn, task.app_acronym)
        _require_permit(principal, app, task)

        note = Note(
            author=principal.username,
            status=task.state.value,
            datetime=utc_now_iso(),
            message=message,
        )
        _write(conn, task.id, notes_json=_json_dump(task.notes.append(note).to_json()))
        return _load_task(conn, task.id)

    task = run_locked(conn, _append, what=f"note {task_id}")
    logger.info("task %s: note added by %s", task.id, principal.username)
    return task
