"""Task workflow: states, gates, the edge table and permission resolution.

Everything here is pure (no DB access). The engine in `app.tasks` loads rows,
builds these values and asks them questions.

State machine:

    Open  --Release-->  ToDo
    ToDo  --PickUp-->   Doing
    Doing --Review-->   Done
    Doing --Drop-->     ToDo
    Done  --Approve-->  Closed
    Done  --Reject-->   Doing

Closed is terminal and has no permission set: a Closed task cannot be
transitioned, annotated or re-planned by anyone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator

UNASSIGNED = "(unassigned)"


# --- Errors ---


class WorkflowError(Exception):
    """Base for every failure the task engine reports to callers."""

    status_code = 500
    kind = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Forbidden(WorkflowError):
    status_code = 403
    kind = "forbidden"


class InvalidInput(WorkflowError):
    status_code = 400
    kind = "invalid_input"


class InvalidReference(WorkflowError):
    status_code = 400
    kind = "invalid_reference"


class InvalidTransition(WorkflowError):
    status_code = 409
    kind = "invalid_transition"


class NotFound(WorkflowError):
    status_code = 404
    kind = "not_found"


class Transient(WorkflowError):
    """Lock contention outlasted the retry budget; the whole request may be retried."""

    status_code = 503
    kind = "transient"


# --- States, gates, edges ---


class WorkflowState(str, Enum):
    OPEN = "Open"
    TODO = "ToDo"
    DOING = "Doing"
    DONE = "Done"
    CLOSED = "Closed"

    @classmethod
    def parse(cls, raw: str) -> "WorkflowState | None":
        raw = (raw or "").strip()
        for s in cls:
            if s.value == raw:
                return s
        return None


class Gate(str, Enum):
    """A checkpoint with its own group permission set."""

    CREATE = "Create"
    OPEN = "Open"
    TODO = "ToDo"
    DOING = "Doing"
    DONE = "Done"

    @classmethod
    def for_state(cls, state: WorkflowState) -> "Gate | None":
        # Closed deliberately has no gate.
        return _STATE_GATES.get(state)


_STATE_GATES: dict[WorkflowState, Gate] = {
    WorkflowState.OPEN: Gate.OPEN,
    WorkflowState.TODO: Gate.TODO,
    WorkflowState.DOING: Gate.DOING,
    WorkflowState.DONE: Gate.DONE,
}

# Explicit enum -> column map for the applications table.
PERMIT_COLUMNS: dict[Gate, str] = {
    Gate.CREATE: "permit_create_json",
    Gate.OPEN: "permit_open_json",
    Gate.TODO: "permit_todo_json",
    Gate.DOING: "permit_doing_json",
    Gate.DONE: "permit_done_json",
}


class Edge(str, Enum):
    RELEASE = "Release"
    PICK_UP = "PickUp"
    REVIEW = "Review"
    DROP = "Drop"
    APPROVE = "Approve"
    REJECT = "Reject"


EDGES: dict[WorkflowState, dict[WorkflowState, Edge]] = {
    WorkflowState.OPEN: {WorkflowState.TODO: Edge.RELEASE},
    WorkflowState.TODO: {WorkflowState.DOING: Edge.PICK_UP},
    WorkflowState.DOING: {WorkflowState.DONE: Edge.REVIEW, WorkflowState.TODO: Edge.DROP},
    WorkflowState.DONE: {WorkflowState.CLOSED: Edge.APPROVE, WorkflowState.DOING: Edge.REJECT},
    WorkflowState.CLOSED: {},
}


def edge_for(current: WorkflowState, target: WorkflowState) -> Edge | None:
    return EDGES.get(current, {}).get(target)


def transition_message(before: WorkflowState, after: WorkflowState) -> str:
    return f"Task state changed from {before.value} to {after.value}"


# --- Principal + permissions ---


@dataclass(frozen=True)
class Principal:
    username: str
    groups: frozenset[str] = frozenset()
    active: bool = True

    def in_any(self, groups: Iterable[str]) -> bool:
        return bool(self.groups.intersection(groups))


@dataclass(frozen=True)
class PermitTable:
    """Group names allowed through each gate of one application.

    Loaded fresh from the applications row for every operation.
    """

    groups: dict[Gate, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any, loads) -> "PermitTable":
        groups: dict[Gate, frozenset[str]] = {}
        for gate, column in PERMIT_COLUMNS.items():
            raw = loads(row[column]) or []
            groups[gate] = frozenset(str(g).strip() for g in raw if str(g).strip())
        return cls(groups=groups)

    def for_gate(self, gate: Gate) -> frozenset[str]:
        return self.groups.get(gate, frozenset())

    def as_dict(self) -> dict[str, list[str]]:
        return {gate.value: sorted(self.for_gate(gate)) for gate in Gate}


def can_act(principal: Principal, permits: PermitTable, gate: Gate | None) -> bool:
    """True iff the principal is active and in at least one group listed for the gate.

    `gate=None` is what a Closed task maps to, so it is always refused.
    """
    if gate is None:
        return False
    if not principal.active:
        return False
    return principal.in_any(permits.for_gate(gate))


# --- Note ledger ---


@dataclass(frozen=True)
class Note:
    author: str
    status: str
    datetime: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {
            "author": self.author,
            "status": self.status,
            "datetime": self.datetime,
            "message": self.message,
        }


@dataclass(frozen=True)
class NoteLedger:
    """Append-only, insertion-ordered task notes.

    `append` returns a new ledger; there is no way to edit or drop an entry.
    """

    entries: tuple[Note, ...] = ()

    @classmethod
    def from_json(cls, raw: Any) -> "NoteLedger":
        if not isinstance(raw, list):
            return cls()
        notes: list[Note] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            notes.append(
                Note(
                    author=str(item.get("author", "")),
                    status=str(item.get("status", "")),
                    datetime=str(item.get("datetime", "")),
                    message=str(item.get("message", "")),
                )
            )
        return cls(entries=tuple(notes))

    def append(self, note: Note) -> "NoteLedger":
        return NoteLedger(entries=self.entries + (note,))

    def to_json(self) -> list[dict[str, str]]:
        return [n.as_dict() for n in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Note]:
        return iter(self.entries)


# --- Task snapshot ---


@dataclass(frozen=True)
class Task:
    id: str
    name: str
    description: str
    plan: str | None
    app_acronym: str
    state: WorkflowState
    owner: str
    creator: str
    create_date: str
    notes: NoteLedger

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "plan": self.plan or "",
            "app_acronym": self.app_acronym,
            "state": self.state.value,
            "owner": self.owner,
            "creator": self.creator,
            "create_date": self.create_date,
            "notes": self.notes.to_json(),
        }
