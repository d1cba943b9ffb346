"""Session management operations."""

import json
import sqlite3
from pathlib import Path

from pipeline_orchestrator.core.errors import NotFoundError
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import DEFAULT_TECH_STACK, PHASES, SESSION_STATUSES, Session


def create_session(
    db: sqlite3.Connection,
    project_path: str | Path,
    project_name: str | None = None,
    tech_stack: dict | None = None,
) -> Session:
    """Create a session for a project directory."""
    project_path = str(Path(project_path).resolve())
    if get_session_by_path(db, project_path):
        raise ValueError(f"Session already exists for {project_path}")

    session_id = new_id()
    stack = dict(DEFAULT_TECH_STACK)
    if tech_stack:
        stack.update(tech_stack)
    now = now_iso()

    with transaction(db):
        db.execute(
            """INSERT INTO sessions (id, project_path, project_name, tech_stack, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (session_id, project_path, project_name or Path(project_path).name, json.dumps(stack), now, now),
        )
    return get_session(db, session_id)


def get_session(db: sqlite3.Connection, session_id: str) -> Session | None:
    row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def get_session_by_path(db: sqlite3.Connection, project_path: str | Path) -> Session | None:
    row = db.execute(
        "SELECT * FROM sessions WHERE project_path = ?",
        (str(Path(project_path).resolve()),),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def list_sessions(db: sqlite3.Connection, status: str | None = None) -> list[Session]:
    query = "SELECT * FROM sessions"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC"
    return [_row_to_session(r) for r in db.execute(query, params).fetchall()]


def update_session(
    db: sqlite3.Connection,
    session_id: str,
    current_phase: str | None = None,
    status: str | None = None,
    tech_stack: dict | None = None,
) -> Session:
    """Update session fields. Raises NotFoundError for an unknown session."""
    updates: dict = {}
    if current_phase is not None:
        if current_phase not in PHASES:
            raise ValueError(f"Unknown phase: {current_phase}")
        updates["current_phase"] = current_phase
    if status is not None:
        if status not in SESSION_STATUSES:
            raise ValueError(f"Unknown session status: {status}")
        updates["status"] = status
    if tech_stack is not None:
        updates["tech_stack"] = json.dumps(tech_stack)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = ?")
    values = list(updates.values()) + [now_iso(), session_id]

    with transaction(db):
        cur = db.execute(f"UPDATE sessions SET {', '.join(set_parts)} WHERE id = ?", values)
        if cur.rowcount == 0:
            raise NotFoundError("Session", session_id)
    return get_session(db, session_id)


def resume_session(db: sqlite3.Connection, project_path: str | Path) -> Session | None:
    """Reactivate the session for a project, if one exists."""
    session = get_session_by_path(db, project_path)
    if not session:
        return None
    if session.status != "active":
        session = update_session(db, session.id, status="active")
    return session


def delete_session(db: sqlite3.Connection, session_id: str) -> bool:
    """Delete a session and everything it owns."""
    with transaction(db):
        cur = db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    return cur.rowcount > 0


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        project_path=row["project_path"],
        project_name=row["project_name"],
        tech_stack=json.loads(row["tech_stack"]),
        current_phase=row["current_phase"],
        status=row["status"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
