"""Append-only phase checkpoints.

Checkpoints are never updated or deleted; the newest one for a session
describes where a run last got to.
"""

import json
import sqlite3

from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import Checkpoint


def create_checkpoint(
    db: sqlite3.Connection,
    session_id: str,
    phase: str,
    state: dict,
    task_id: str | None = None,
) -> Checkpoint:
    checkpoint_id = new_id()
    with transaction(db):
        db.execute(
            """INSERT INTO checkpoints (id, session_id, phase, task_id, state, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (checkpoint_id, session_id, phase, task_id, json.dumps(state), now_iso()),
        )
    return get_checkpoint(db, checkpoint_id)


def get_checkpoint(db: sqlite3.Connection, checkpoint_id: str) -> Checkpoint | None:
    row = db.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
    if not row:
        return None
    return _row_to_checkpoint(row)


def get_latest_checkpoint(db: sqlite3.Connection, session_id: str) -> Checkpoint | None:
    row = db.execute(
        "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
        (session_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_checkpoint(row)


def list_checkpoints(db: sqlite3.Connection, session_id: str) -> list[Checkpoint]:
    rows = db.execute(
        "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
        (session_id,),
    ).fetchall()
    return [_row_to_checkpoint(r) for r in rows]


def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        session_id=row["session_id"],
        phase=row["phase"],
        task_id=row["task_id"],
        state=json.loads(row["state"]),
        created_at=parse_dt(row["created_at"]),
    )
