from app.registry import load_application, open_session
from app.tasks import list_tasks
from app.workflow import WorkflowState
from seed.seed_demo import main as seed_demo


def test_seed_demo_covers_every_state_and_is_rerunnable(conn):
    seed_demo()
    first = [(t.id, t.state) for t in list_tasks(conn, "DEMO")]

    seed_demo()

    assert [(t.id, t.state) for t in list_tasks(conn, "DEMO")] == first
    assert load_application(conn, "DEMO").task_counter == 5
    assert {state for _, state in first} == set(WorkflowState)
    assert open_session(conn, "alice", "Alice123!")
