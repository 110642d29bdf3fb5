import pytest
from fastapi.testclient import TestClient

from app import main

@pytest.fixture
def login(seeded, passwords):
    clients = []

    def _login(username):
        client = TestClient(main.app)
        r = client.post("/api/login", data={"username": username, "password": passwords[username]})
        assert r.status_code == 200, r.text
        clients.append(client)
        return client

    yield _login
    for c in clients:
        c.close()


def test_requires_session(seeded):
    client = TestClient(main.app)
    assert client.get("/api/tasks").status_code == 401


def test_bad_credentials(seeded):
    client = TestClient(main.app)
    r = client.post("/api/login", data={"username": "alice", "password": "wrong"})
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_me_and_logout(login):
    alice = login("alice")
    me = alice.get("/api/me").json()
    assert me["username"] == "alice"
    assert me["groups"] == ["dev"]

    assert alice.post("/api/logout").status_code == 200
    assert alice.get("/api/me").status_code == 401


def test_task_lifecycle_over_http(login, monkeypatch):
    reviews = []
    monkeypatch.setattr(main, "notify_review", lambda task_id, actor: reviews.append((task_id, actor)))
    alice, lead = login("alice"), login("lead")

    r = alice.post("/api/tasks", data={"name": "Login page", "description": "form", "app_acronym": "APP1"})
    assert r.status_code == 201, r.text
    task = r.json()
    assert task["id"] == "APP1_1"
    assert task["state"] == "Open"
    assert task["owner"] == "(unassigned)"
    assert task["notes"] == []

    r = alice.post("/api/tasks/APP1_1/state", data={"target_state": "ToDo"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_input"

    assert alice.post("/api/tasks/APP1_1/plan", data={"plan": "Q1"}).json()["plan"] == "Q1"
    r = alice.post("/api/tasks/APP1_1/state", data={"target_state": "ToDo"})
    assert r.status_code == 200
    assert len(r.json()["notes"]) == 1

    task = alice.post("/api/tasks/APP1_1/state", data={"target_state": "Doing"}).json()
    assert task["owner"] == "alice"
    assert len(task["notes"]) == 2

    task = alice.post("/api/tasks/APP1_1/state", data={"target_state": "Done"}).json()
    assert task["state"] == "Done"
    assert reviews == [("APP1_1", "alice")]

    r = lead.post("/api/tasks/APP1_1/state", data={"target_state": "Closed", "plan": "Q2"})
    assert r.status_code == 403

    task = lead.post("/api/tasks/APP1_1/state", data={"target_state": "Doing", "plan": "Q2"}).json()
    assert task["state"] == "Doing"
    assert task["plan"] == "Q2"

    r = alice.post("/api/tasks/APP1_1/notes", data={"message": "picking this back up"})
    assert r.status_code == 200
    assert r.json()["notes"][-1]["author"] == "alice"

    listed = alice.get("/api/tasks", params={"app_acronym": "APP1"}).json()
    assert [t["id"] for t in listed] == ["APP1_1"]


def test_error_mapping(login):
    alice = login("alice")
    alice.post("/api/tasks", data={"name": "t", "app_acronym": "APP1"})

    r = alice.post("/api/tasks/APP1_1/state", data={"target_state": "Closed"})
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"

    assert alice.get("/api/tasks/APP1_9").status_code == 404
    assert alice.post("/api/tasks", data={"name": "t", "app_acronym": "NOPE"}).status_code == 400
    assert alice.post("/api/tasks", data={"name": "x" * 51, "app_acronym": "APP1"}).json()["error"] == "invalid_input"


def test_create_forbidden_without_create_permit(login):
    pm = login("pm")
    r = pm.post("/api/tasks", data={"name": "t", "app_acronym": "APP1"})
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_group_gated_collaborator_routes(login):
    alice, lead, pm, admin = login("alice"), login("lead"), login("pm"), login("admin")

    assert alice.get("/api/users").status_code == 403
    assert alice.post("/api/applications", data={"acronym": "NEW"}).status_code == 403
    assert alice.post("/api/plans", data={"name": "P", "app_acronym": "APP1"}).status_code == 403

    r = lead.post(
        "/api/applications",
        data={"acronym": "NEW", "permit_create": "dev", "permit_done": "project lead"},
    )
    assert r.status_code == 201, r.text
    assert r.json()["task_counter"] == 0
    assert r.json()["permits"]["Create"] == ["dev"]

    r = lead.post("/api/applications", data={"acronym": "BAD", "permit_create": "ghosts"})
    assert r.status_code == 400

    r = pm.post(
        "/api/plans",
        data={"name": "S1", "app_acronym": "NEW", "start_date": "2026-02-01", "end_date": "2026-01-01"},
    )
    assert r.status_code == 400
    r = pm.post(
        "/api/plans",
        data={"name": "S1", "app_acronym": "NEW", "start_date": "2026-01-01", "end_date": "2026-02-01"},
    )
    assert r.status_code == 201
    assert [p["name"] for p in pm.get("/api/plans", params={"app_acronym": "NEW"}).json()] == ["S1"]

    r = admin.post(
        "/api/users",
        data={"username": "dave", "password": "dave-pw12", "email": "dave@example.com", "groups": "dev"},
    )
    assert r.status_code == 201
    assert r.json()["groups"] == ["dev"]


def test_disabled_user_loses_session(login, passwords):
    alice, admin = login("alice"), login("admin")
    assert admin.post("/api/users/alice/active", data={"active": "false"}).json()["active"] is False
    assert alice.get("/api/tasks").status_code == 401

    client = TestClient(main.app)
    r = client.post("/api/login", data={"username": "alice", "password": passwords["alice"]})
    assert r.status_code == 403


def test_reject_can_clear_plan_over_http(login, monkeypatch):
    monkeypatch.setattr(main, "notify_review", lambda task_id, actor: None)
    alice, lead = login("alice"), login("lead")

    alice.post("/api/tasks", data={"name": "t", "plan": "Q1", "app_acronym": "APP1"})
    for target in ("ToDo", "Doing", "Done"):
        assert alice.post("/api/tasks/APP1_1/state", data={"target_state": target}).status_code == 200

    r = lead.post("/api/tasks/APP1_1/state", data={"target_state": "Doing", "clear_plan": "true"})
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "Doing"
    assert r.json()["plan"] == ""
    assert alice.get("/api/tasks/APP1_1").json()["plan"] == ""


def test_admin_user_creation_rules(login):
    admin = login("admin")
    base = {"username": "dave", "password": "dave-pw12", "email": "dave@example.com", "groups": "dev"}

    for override in (
        {"password": "short"},
        {"password": "much-too-long-1"},
        {"password": "no spaces1"},
        {"email": ""},
        {"email": "not-an-email"},
        {"email": "alice@example.com"},
        {"groups": ""},
    ):
        r = admin.post("/api/users", data={**base, **override})
        assert r.status_code == 400, override
        assert r.json()["error"] == "invalid_input"

    assert admin.post("/api/users", data=base).status_code == 201


def test_admin_keeps_admin_group_and_edits_email(login):
    admin = login("admin")

    r = admin.post("/api/users/admin/groups", data={"groups": "dev"})
    assert r.status_code == 400
    r = admin.post("/api/users/admin/groups", data={"groups": "admin,dev"})
    assert r.json()["groups"] == ["admin", "dev"]
    assert admin.post("/api/users/alice/groups", data={"groups": ""}).status_code == 400

    r = admin.post("/api/users/alice/email", data={"email": "alice@corp.example"})
    assert r.status_code == 200
    assert r.json()["email"] == "alice@corp.example"
    assert admin.post("/api/users/alice/email", data={"email": "bob@example.com"}).status_code == 400
    assert admin.post("/api/users/alice/email", data={"email": "nope"}).status_code == 400


def test_self_service_profile(login, passwords):
    alice = login("alice")

    r = alice.post("/api/me", data={"email": "alice@home.example"})
    assert r.status_code == 200
    assert r.json()["email"] == "alice@home.example"

    assert alice.post("/api/me").status_code == 400
    assert alice.post("/api/me", data={"password": "new-pass1"}).status_code == 400
    r = alice.post("/api/me", data={"password": "new-pass1", "current_password": "wrong-pw1"})
    assert r.status_code == 400
    assert alice.post("/api/me", data={"password": "tiny", "current_password": passwords["alice"]}).status_code == 400

    r = alice.post("/api/me", data={"password": "new-pass1", "current_password": passwords["alice"]})
    assert r.status_code == 200
    # The session that changed the password stays valid.
    assert alice.get("/api/me").json()["email"] == "alice@home.example"

    fresh = TestClient(main.app)
    assert fresh.post("/api/login", data={"username": "alice", "password": passwords["alice"]}).status_code == 403
    assert fresh.post("/api/login", data={"username": "alice", "password": "new-pass1"}).status_code == 200
