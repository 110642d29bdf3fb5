import threading

from app.db import db
from app.registry import load_application
from app.tasks import append_note, create_task, get_task, transition_task
from app.workflow import InvalidTransition, WorkflowState

WORKERS = 8


def _run_parallel(db_path, fn):
    barrier = threading.Barrier(WORKERS)
    results, errors = [], []
    lock = threading.Lock()

    def worker(i):
        conn = db(db_path)
        try:
            barrier.wait()
            out = fn(conn, i)
            with lock:
                results.append(out)
        except Exception as e:  # collected and asserted on below
            with lock:
                errors.append(e)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


def test_concurrent_creations_get_distinct_contiguous_ids(board, db_path):
    create_task(board.conn, board.alice, name="warmup", app_acronym="APP1")

    results, errors = _run_parallel(
        db_path,
        lambda conn, i: create_task(conn, board.alice, name=f"parallel {i}", app_acronym="APP1").id,
    )

    assert errors == []
    assert sorted(results, key=lambda tid: int(tid.split("_")[1])) == [f"APP1_{n}" for n in range(2, WORKERS + 2)]
    assert load_application(board.conn, "APP1").task_counter == WORKERS + 1


def test_concurrent_notes_are_all_kept(board, db_path):
    task = create_task(board.conn, board.alice, name="busy", app_acronym="APP1")

    results, errors = _run_parallel(
        db_path,
        lambda conn, i: append_note(conn, board.bob, task.id, f"note {i}"),
    )

    assert errors == []
    messages = [n["message"] for n in get_task(board.conn, task.id).notes.to_json()]
    assert sorted(messages) == sorted(f"note {i}" for i in range(WORKERS))


def test_concurrent_pick_up_has_one_winner(board, db_path):
    task = create_task(board.conn, board.alice, name="contested", plan="Q1", app_acronym="APP1")
    transition_task(board.conn, board.alice, task.id, "ToDo")
    devs = [board.alice, board.bob]

    results, errors = _run_parallel(
        db_path,
        lambda conn, i: transition_task(conn, devs[i % 2], task.id, "Doing"),
    )

    assert len(results) == 1
    assert len(errors) == WORKERS - 1
    assert all(isinstance(e, InvalidTransition) for e in errors)

    final = get_task(board.conn, task.id)
    assert final.state is WorkflowState.DOING
    assert final.owner == results[0].owner
    # Release plus exactly one pick-up.
    assert len(final.notes) == 2
