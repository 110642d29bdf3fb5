from __future__ import annotations

import logging
import sqlite3

from fastapi import BackgroundTasks, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app import config
from app.db import _hash_password, _new_salt, db, init_db_path, utc_now_iso
from app.notify import notify_review
from app.registry import (
    ADMIN_GROUP,
    PROJECT_LEAD_GROUP,
    PROJECT_MANAGER_GROUP,
    create_application,
    create_group,
    create_plan,
    create_user,
    list_applications,
    list_groups,
    list_plans,
    list_users,
    open_session,
    parse_groups,
    principal_for_session,
    reset_password,
    revoke_session,
    set_user_active,
    set_user_email,
    set_user_groups,
    update_application,
    update_profile,
    user_dict,
)
from app.tasks import append_note, change_plan, create_task, get_task, list_tasks, transition_task
from app.workflow import Gate, Principal, WorkflowError

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Task Management System")


@app.exception_handler(WorkflowError)
async def _workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.detail})


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all so API clients get *some* error text instead of a bare 500."""
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Unhandled error: {type(exc).__name__}: {exc}"},
    )


# --- Auth ---

SESSION_COOKIE = "tms_session"


def _is_public_path(path: str) -> bool:
    return path in ("/api/login", "/api/logout")


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.principal = None

        if not _is_public_path(str(request.url.path)):
            token = (request.cookies.get(SESSION_COOKIE) or "").strip()
            if token:
                with db() as conn:
                    request.state.principal = principal_for_session(conn, token)

            principal = request.state.principal
            if principal is None or not principal.active:
                # Don't raise inside middleware (can produce noisy exception groups).
                return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

        return await call_next(request)


app.add_middleware(AuthMiddleware)


def _principal(request: Request) -> Principal:
    return request.state.principal


def require_group(request: Request, group: str) -> Principal:
    principal = _principal(request)
    if group not in principal.groups:
        raise HTTPException(status_code=403, detail=f"Forbidden: requires group '{group}'")
    return principal


# --- Startup ---

DEMO_GROUPS = [ADMIN_GROUP, PROJECT_LEAD_GROUP, PROJECT_MANAGER_GROUP, "dev"]


def _seed_demo_users(conn: sqlite3.Connection) -> None:
    now = utc_now_iso()

    # Demo credentials are intentionally obvious.
    demo = [
        ("admin", "Admin123!", [ADMIN_GROUP]),
        ("lead", "Lead123!", [PROJECT_LEAD_GROUP]),
        ("pm", "Pm12345!", [PROJECT_MANAGER_GROUP]),
        ("alice", "Alice123!", ["dev"]),
        ("bob", "Bob1234!", ["dev"]),
    ]

    for g in DEMO_GROUPS:
        conn.execute("INSERT OR IGNORE INTO groups(name, created_at, created_by) VALUES (?,?,?)", (g, now, "seed"))

    # Ensure each demo user exists (idempotent).
    for username, pw, groups in demo:
        row = conn.execute("SELECT id FROM users WHERE username=?", (username,)).fetchone()
        if row:
            continue
        salt = _new_salt()
        cur = conn.execute(
            """
            INSERT INTO users(username, email, password_salt_hex, password_hash_hex, created_at, created_by)
            VALUES (?,?,?,?,?,?)
            """,
            (username, f"{username}@example.com", salt, _hash_password(pw, salt), now, "seed"),
        )
        for g in groups:
            conn.execute(
                "INSERT OR IGNORE INTO user_groups(user_id, group_name, created_at, created_by) VALUES (?,?,?,?)",
                (int(cur.lastrowid), g, now, "seed"),
            )


def init_db() -> None:
    init_db_path(config.DB_PATH)
    if config.SEED_DEMO:
        with db() as conn:
            _seed_demo_users(conn)


@app.on_event("startup")
def _startup() -> None:
    init_db()


# --- Routes: session ---


@app.post("/api/login")
def login_run(username: str = Form(""), password: str = Form("")):
    username = (username or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")

    with db() as conn:
        token = open_session(conn, username, password or "")
        me = user_dict(conn, username)

    resp = JSONResponse(content=me)
    resp.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax")
    return resp


@app.post("/api/logout")
def logout(request: Request):
    token = (request.cookies.get(SESSION_COOKIE) or "").strip()
    if token:
        with db() as conn:
            revoke_session(conn, token)

    resp = JSONResponse(content={"ok": True})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@app.get("/api/me")
def me(request: Request):
    principal = _principal(request)
    with db() as conn:
        return user_dict(conn, principal.username)


@app.post("/api/me")
def me_update(
    request: Request,
    email: str | None = Form(None),
    password: str | None = Form(None),
    current_password: str | None = Form(None),
):
    """Self-service profile edit; a new password needs the current one."""
    principal = _principal(request)
    with db() as conn:
        return update_profile(
            conn,
            principal.username,
            email=email,
            password=password,
            current_password=current_password,
        )


# --- Routes: users + groups (admin) ---


@app.get("/api/groups")
def groups_list(request: Request):
    with db() as conn:
        return list_groups(conn)


@app.post("/api/groups", status_code=201)
def groups_create(request: Request, name: str = Form("")):
    actor = require_group(request, ADMIN_GROUP)
    with db() as conn:
        return {"name": create_group(conn, name, actor.username)}


@app.get("/api/users")
def users_list(request: Request):
    require_group(request, ADMIN_GROUP)
    with db() as conn:
        return list_users(conn)


@app.post("/api/users", status_code=201)
def users_create(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    email: str = Form(""),
    groups: str = Form(""),
):
    actor = require_group(request, ADMIN_GROUP)
    with db() as conn:
        return create_user(conn, username, password, actor.username, email=email, groups=parse_groups(groups))


@app.post("/api/users/{username}/groups")
def users_set_groups(request: Request, username: str, groups: str = Form("")):
    actor = require_group(request, ADMIN_GROUP)
    with db() as conn:
        return set_user_groups(conn, username, parse_groups(groups), actor.username)


@app.post("/api/users/{username}/active")
def users_set_active(request: Request, username: str, active: bool = Form(...)):
    actor = require_group(request, ADMIN_GROUP)
    if not active and username == actor.username:
        raise HTTPException(status_code=400, detail="cannot disable the current user")
    with db() as conn:
        return set_user_active(conn, username, active)


@app.post("/api/users/{username}/email")
def users_set_email(request: Request, username: str, email: str = Form("")):
    require_group(request, ADMIN_GROUP)
    with db() as conn:
        return set_user_email(conn, username, email)


@app.post("/api/users/{username}/password")
def users_reset_password(request: Request, username: str, password: str = Form("")):
    require_group(request, ADMIN_GROUP)
    with db() as conn:
        reset_password(conn, username, password)
    return {"ok": True}


# --- Routes: applications (project lead) ---


def _permits_from_form(create: str, open_: str, todo: str, doing: str, done: str) -> dict[Gate, list[str]]:
    return {
        Gate.CREATE: parse_groups(create),
        Gate.OPEN: parse_groups(open_),
        Gate.TODO: parse_groups(todo),
        Gate.DOING: parse_groups(doing),
        Gate.DONE: parse_groups(done),
    }


@app.get("/api/applications")
def applications_list(request: Request):
    with db() as conn:
        return [a.as_dict() for a in list_applications(conn)]


@app.post("/api/applications", status_code=201)
def applications_create(
    request: Request,
    acronym: str = Form(""),
    description: str = Form(""),
    start_date: str = Form(""),
    end_date: str = Form(""),
    permit_create: str = Form(""),
    permit_open: str = Form(""),
    permit_todo: str = Form(""),
    permit_doing: str = Form(""),
    permit_done: str = Form(""),
):
    actor = require_group(request, PROJECT_LEAD_GROUP)
    permits = _permits_from_form(permit_create, permit_open, permit_todo, permit_doing, permit_done)
    with db() as conn:
        created = create_application(
            conn,
            acronym,
            actor.username,
            description=description,
            start_date=start_date,
            end_date=end_date,
            permits=permits,
        )
    return created.as_dict()


@app.post("/api/applications/{acronym}")
def applications_update(
    request: Request,
    acronym: str,
    description: str = Form(""),
    start_date: str = Form(""),
    end_date: str = Form(""),
    permit_create: str = Form(""),
    permit_open: str = Form(""),
    permit_todo: str = Form(""),
    permit_doing: str = Form(""),
    permit_done: str = Form(""),
):
    actor = require_group(request, PROJECT_LEAD_GROUP)
    permits = _permits_from_form(permit_create, permit_open, permit_todo, permit_doing, permit_done)
    with db() as conn:
        updated = update_application(
            conn,
            acronym,
            actor.username,
            description=description,
            start_date=start_date,
            end_date=end_date,
            permits=permits,
        )
    return updated.as_dict()


# --- Routes: plans (project manager) ---


@app.get("/api/plans")
def plans_list(request: Request, app_acronym: str | None = None):
    with db() as conn:
        return list_plans(conn, app_acronym)


@app.post("/api/plans", status_code=201)
def plans_create(
    request: Request,
    name: str = Form(""),
    app_acronym: str = Form(""),
    start_date: str = Form(""),
    end_date: str = Form(""),
):
    actor = require_group(request, PROJECT_MANAGER_GROUP)
    with db() as conn:
        return create_plan(conn, app_acronym, name, start_date, end_date, actor.username)


# --- Routes: tasks ---


@app.get("/api/tasks")
def tasks_list(request: Request, app_acronym: str | None = None):
    with db() as conn:
        return [t.as_dict() for t in list_tasks(conn, app_acronym)]


@app.get("/api/tasks/{task_id}")
def task_view(request: Request, task_id: str):
    with db() as conn:
        return get_task(conn, task_id).as_dict()


@app.post("/api/tasks", status_code=201)
def task_create(
    request: Request,
    name: str = Form(""),
    description: str = Form(""),
    plan: str = Form(""),
    app_acronym: str = Form(""),
):
    principal = _principal(request)
    with db() as conn:
        task = create_task(
            conn,
            principal,
            name=name,
            description=description,
            plan=plan,
            app_acronym=app_acronym,
        )
    return task.as_dict()


@app.post("/api/tasks/{task_id}/state")
def task_transition(
    request: Request,
    task_id: str,
    background_tasks: BackgroundTasks,
    target_state: str = Form(""),
    plan: str | None = Form(None),
    expected_plan: str | None = Form(None),
    clear_plan: bool = Form(False),
):
    """Move a task along one workflow edge.

    `plan` carries a staged plan value (Release/Reject apply it, Approve refuses
    it when it differs). Empty form values arrive as "not supplied", so clearing
    the plan on Reject is requested with `clear_plan=true`.
    """
    principal = _principal(request)
    if clear_plan:
        plan = ""

    def _notify(tid: str, actor: str) -> None:
        background_tasks.add_task(notify_review, tid, actor)

    with db() as conn:
        task = transition_task(
            conn,
            principal,
            task_id,
            target_state,
            plan=plan,
            expected_plan=expected_plan,
            notifier=_notify,
        )
    return task.as_dict()


@app.post("/api/tasks/{task_id}/plan")
def task_change_plan(request: Request, task_id: str, plan: str = Form("")):
    principal = _principal(request)
    with db() as conn:
        task = change_plan(conn, principal, task_id, plan)
    return task.as_dict()


@app.post("/api/tasks/{task_id}/notes")
def task_add_note(request: Request, task_id: str, message: str = Form("")):
    principal = _principal(request)
    with db() as conn:
        task = append_note(conn, principal, task_id, message)
    return task.as_dict()
