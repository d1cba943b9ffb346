"""Requirement management operations."""

import json
import sqlite3

from pipeline_orchestrator.core.errors import InvalidTransitionError, NotFoundError
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import Requirement, RequirementEvent, StructuredSpec

# Allowed forward moves; re-asserting the current status is always accepted.
TRANSITIONS = {
    "pending": {"in_progress"},
    "in_progress": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def create_requirement(
    db: sqlite3.Connection,
    session_id: str,
    raw_input: str,
    priority: int = 0,
    depends_on: list[str] | None = None,
    structured_spec: StructuredSpec | None = None,
) -> Requirement:
    """Create a new pending requirement."""
    requirement_id = new_id()
    now = now_iso()
    spec_json = json.dumps(structured_spec.to_dict()) if structured_spec else None

    with transaction(db):
        db.execute(
            """INSERT INTO requirements
               (id, session_id, raw_input, structured_spec, priority, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (requirement_id, session_id, raw_input, spec_json, priority, now, now),
        )
        for dep_id in depends_on or []:
            if not get_requirement(db, dep_id):
                raise NotFoundError("Requirement", dep_id)
            db.execute(
                "INSERT INTO requirement_dependencies (requirement_id, depends_on_id) VALUES (?, ?)",
                (requirement_id, dep_id),
            )
        log_requirement_event(db, requirement_id, "created", None, "pending")
    return get_requirement(db, requirement_id)


def get_requirement(db: sqlite3.Connection, requirement_id: str) -> Requirement | None:
    """Get a requirement by ID with its dependencies."""
    row = db.execute("SELECT * FROM requirements WHERE id = ?", (requirement_id,)).fetchone()
    if not row:
        return None
    requirement = _row_to_requirement(row)
    requirement.depends_on = _dependencies(db, requirement_id)
    return requirement


def list_requirements(
    db: sqlite3.Connection,
    session_id: str,
    status: str | None = None,
) -> list[Requirement]:
    """List a session's requirements, highest priority first."""
    query = "SELECT * FROM requirements WHERE session_id = ?"
    params: list = [session_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY priority DESC, created_at ASC, rowid ASC"

    requirements = []
    for row in db.execute(query, params).fetchall():
        requirement = _row_to_requirement(row)
        requirement.depends_on = _dependencies(db, requirement.id)
        requirements.append(requirement)
    return requirements


def get_pending_requirements(db: sqlite3.Connection, session_id: str) -> list[Requirement]:
    return list_requirements(db, session_id, status="pending")


def get_resumable_requirements(db: sqlite3.Connection, session_id: str) -> list[Requirement]:
    """Pending requirements plus ones a previous run left in progress."""
    return [
        r for r in list_requirements(db, session_id)
        if r.status in ("pending", "in_progress")
    ]


def update_requirement_status(
    db: sqlite3.Connection,
    requirement_id: str,
    status: str,
) -> Requirement:
    """Move a requirement to a new status.

    Raises NotFoundError for an unknown requirement and InvalidTransitionError
    for a move outside pending -> in_progress -> completed/failed.
    """
    with transaction(db):
        requirement = get_requirement(db, requirement_id)
        if not requirement:
            raise NotFoundError("Requirement", requirement_id)

        old_status = requirement.status
        if old_status == status:
            return requirement
        if status not in TRANSITIONS.get(old_status, set()):
            raise InvalidTransitionError(requirement_id, old_status, status)

        db.execute(
            "UPDATE requirements SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_iso(), requirement_id),
        )
        log_requirement_event(db, requirement_id, "status_changed", old_status, status)
    return get_requirement(db, requirement_id)


def update_structured_spec(
    db: sqlite3.Connection,
    requirement_id: str,
    spec: StructuredSpec,
) -> Requirement:
    with transaction(db):
        cur = db.execute(
            "UPDATE requirements SET structured_spec = ?, updated_at = ? WHERE id = ?",
            (json.dumps(spec.to_dict()), now_iso(), requirement_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Requirement", requirement_id)
        log_requirement_event(db, requirement_id, "spec_updated", None, spec.title)
    return get_requirement(db, requirement_id)


def add_dependency(
    db: sqlite3.Connection,
    requirement_id: str,
    depends_on_id: str,
) -> Requirement:
    """Add a dependency to an existing requirement."""
    with transaction(db):
        requirement = get_requirement(db, requirement_id)
        if not requirement:
            raise NotFoundError("Requirement", requirement_id)
        if not get_requirement(db, depends_on_id):
            raise NotFoundError("Requirement", depends_on_id)
        if depends_on_id == requirement_id:
            raise ValueError(f"Requirement cannot depend on itself: {requirement_id}")
        if depends_on_id in requirement.depends_on:
            return requirement
        db.execute(
            "INSERT INTO requirement_dependencies (requirement_id, depends_on_id) VALUES (?, ?)",
            (requirement_id, depends_on_id),
        )
        log_requirement_event(db, requirement_id, "dependency_added", None, depends_on_id)
    return get_requirement(db, requirement_id)


def log_requirement_event(
    db: sqlite3.Connection,
    requirement_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    with transaction(db):
        db.execute(
            """INSERT INTO requirement_events (requirement_id, event_type, old_value, new_value, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (requirement_id, event_type, old_value, new_value, now_iso()),
        )


def get_requirement_events(db: sqlite3.Connection, requirement_id: str) -> list[RequirementEvent]:
    """Get the event history for a requirement."""
    rows = db.execute(
        "SELECT * FROM requirement_events WHERE requirement_id = ? ORDER BY id",
        (requirement_id,),
    ).fetchall()
    return [
        RequirementEvent(
            id=r["id"],
            requirement_id=r["requirement_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _dependencies(db: sqlite3.Connection, requirement_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_id FROM requirement_dependencies WHERE requirement_id = ?",
        (requirement_id,),
    ).fetchall()
    return [r["depends_on_id"] for r in rows]


def _row_to_requirement(row: sqlite3.Row) -> Requirement:
    spec = row["structured_spec"]
    return Requirement(
        id=row["id"],
        session_id=row["session_id"],
        raw_input=row["raw_input"],
        structured_spec=StructuredSpec.from_dict(json.loads(spec)) if spec else None,
        status=row["status"],
        priority=row["priority"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
