"""Job records: one scheduled run of a requirement."""

import sqlite3

from pipeline_orchestrator.core.errors import NotFoundError
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import JOB_STATUSES, Job

_UNSET = object()


def create_job(
    db: sqlite3.Connection,
    session_id: str,
    requirement_id: str,
    worktree_id: str | None = None,
) -> Job:
    job_id = new_id()
    with transaction(db):
        db.execute(
            """INSERT INTO jobs (id, session_id, requirement_id, worktree_id, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (job_id, session_id, requirement_id, worktree_id, now_iso()),
        )
    return get_job(db, job_id)


def get_job(db: sqlite3.Connection, job_id: str) -> Job | None:
    row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(db: sqlite3.Connection, session_id: str, status: str | None = None) -> list[Job]:
    query = "SELECT * FROM jobs WHERE session_id = ?"
    params: list = [session_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, rowid ASC"
    return [_row_to_job(r) for r in db.execute(query, params).fetchall()]


def get_running_jobs(db: sqlite3.Connection, session_id: str) -> list[Job]:
    return list_jobs(db, session_id, status="running")


def count_running_jobs(db: sqlite3.Connection, session_id: str) -> int:
    row = db.execute(
        "SELECT COUNT(*) FROM jobs WHERE session_id = ? AND status = 'running'",
        (session_id,),
    ).fetchone()
    return row[0]


def get_jobs_for_requirement(db: sqlite3.Connection, requirement_id: str) -> list[Job]:
    rows = db.execute(
        "SELECT * FROM jobs WHERE requirement_id = ? ORDER BY created_at ASC, rowid ASC",
        (requirement_id,),
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def update_job(
    db: sqlite3.Connection,
    job_id: str,
    status: str | None = None,
    phase: str | None = None,
    error_message=_UNSET,
) -> Job:
    """Update a job. Raises NotFoundError for an unknown job."""
    updates: dict = {}
    if status is not None:
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        updates["status"] = status
        if status == "running":
            updates["started_at"] = now_iso()
        elif status in ("completed", "failed", "cancelled"):
            updates["completed_at"] = now_iso()
    if phase is not None:
        updates["phase"] = phase
    if error_message is not _UNSET:
        updates["error_message"] = error_message

    if not updates:
        job = get_job(db, job_id)
        if not job:
            raise NotFoundError("Job", job_id)
        return job

    set_parts = [f"{k} = ?" for k in updates]
    values = list(updates.values()) + [job_id]
    with transaction(db):
        cur = db.execute(f"UPDATE jobs SET {', '.join(set_parts)} WHERE id = ?", values)
        if cur.rowcount == 0:
            raise NotFoundError("Job", job_id)
    return get_job(db, job_id)


def close_interrupted_jobs(
    db: sqlite3.Connection,
    session_id: str,
    error_message: str = "Interrupted before completion",
) -> list[Job]:
    """Fail every queued or running job left behind by a process that died.

    Only safe while no scheduler is running for the session.
    """
    with transaction(db):
        stale = [
            _row_to_job(r)
            for r in db.execute(
                """SELECT * FROM jobs WHERE session_id = ? AND status IN ('queued', 'running')
                   ORDER BY created_at ASC, rowid ASC""",
                (session_id,),
            ).fetchall()
        ]
        for job in stale:
            update_job(db, job.id, status="failed", error_message=error_message)
    return [get_job(db, job.id) for job in stale]


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        session_id=row["session_id"],
        requirement_id=row["requirement_id"],
        worktree_id=row["worktree_id"],
        phase=row["phase"],
        status=row["status"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        error_message=row["error_message"],
        created_at=parse_dt(row["created_at"]),
    )
