"""Agent task records: one row per phase attempt."""

import json
import sqlite3

from pipeline_orchestrator.core.errors import NotFoundError
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import AGENT_TYPES, TASK_STATUSES, Task

_UNSET = object()


def create_task(
    db: sqlite3.Connection,
    session_id: str,
    agent_type: str,
    input: dict,
    requirement_id: str | None = None,
) -> Task:
    """Create a pending task for one agent invocation."""
    if agent_type not in AGENT_TYPES:
        raise ValueError(f"Unknown agent type: {agent_type}")
    task_id = new_id()
    with transaction(db):
        db.execute(
            """INSERT INTO tasks (id, session_id, requirement_id, agent_type, input, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (task_id, session_id, requirement_id, agent_type, json.dumps(input), now_iso()),
        )
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    session_id: str,
    status: str | None = None,
    agent_type: str | None = None,
) -> list[Task]:
    query = "SELECT * FROM tasks WHERE session_id = ?"
    params: list = [session_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    if agent_type:
        query += " AND agent_type = ?"
        params.append(agent_type)
    query += " ORDER BY created_at ASC, rowid ASC"
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def list_tasks_for_requirement(db: sqlite3.Connection, requirement_id: str) -> list[Task]:
    rows = db.execute(
        "SELECT * FROM tasks WHERE requirement_id = ? ORDER BY created_at ASC, rowid ASC",
        (requirement_id,),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def get_pending_tasks(db: sqlite3.Connection, session_id: str) -> list[Task]:
    return list_tasks(db, session_id, status="pending")


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str | None = None,
    output=_UNSET,
    error_message=_UNSET,
    retry_count: int | None = None,
) -> Task:
    """Update a task's status and results.

    Moving to running stamps started_at; moving to completed or failed
    stamps completed_at.
    """
    updates: dict = {}
    if status is not None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        updates["status"] = status
        if status == "running":
            updates["started_at"] = now_iso()
        elif status in ("completed", "failed"):
            updates["completed_at"] = now_iso()
    if output is not _UNSET:
        updates["output"] = json.dumps(output) if output is not None else None
    if error_message is not _UNSET:
        updates["error_message"] = error_message
    if retry_count is not None:
        updates["retry_count"] = retry_count

    if not updates:
        task = get_task(db, task_id)
        if not task:
            raise NotFoundError("Task", task_id)
        return task

    set_parts = [f"{k} = ?" for k in updates]
    values = list(updates.values()) + [task_id]
    with transaction(db):
        cur = db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)
        if cur.rowcount == 0:
            raise NotFoundError("Task", task_id)
    return get_task(db, task_id)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        session_id=row["session_id"],
        requirement_id=row["requirement_id"],
        agent_type=row["agent_type"],
        input=json.loads(row["input"]),
        output=json.loads(row["output"]) if row["output"] else None,
        status=row["status"],
        retry_count=row["retry_count"],
        error_message=row["error_message"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        created_at=parse_dt(row["created_at"]),
    )
