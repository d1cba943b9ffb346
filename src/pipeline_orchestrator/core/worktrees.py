"""Git worktree lifecycle management tied to requirements."""

import asyncio
import logging
import re
import shutil
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from pipeline_orchestrator.config import STATE_DIR
from pipeline_orchestrator.core.errors import NotFoundError
from pipeline_orchestrator.db.engine import new_id, now_iso, parse_dt, transaction
from pipeline_orchestrator.db.models import WORKTREE_STATUSES, Worktree
from pipeline_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    checkout,
    conflict_files,
    get_current_branch,
    is_git_repo,
    merge_abort,
    merge_branch,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)


def slugify(text: str, max_length: int = 30) -> str:
    """Lowercase, collapse non-alphanumerics to single dashes, trim."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return slug.strip("-")[:max_length]


def branch_name_for(requirement_id: str, slug: str) -> str:
    return f"feature/{requirement_id[:8]}-{slugify(slug)}"


# ── Records ───────────────────────────────────────────────────────────


def create_worktree(
    db: sqlite3.Connection,
    session_id: str,
    requirement_id: str | None,
    branch_name: str,
    worktree_path: str,
) -> Worktree:
    worktree_id = new_id()
    with transaction(db):
        db.execute(
            """INSERT INTO worktrees (id, session_id, requirement_id, branch_name, worktree_path, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (worktree_id, session_id, requirement_id, branch_name, worktree_path, now_iso()),
        )
    return get_worktree(db, worktree_id)


def get_worktree(db: sqlite3.Connection, worktree_id: str) -> Worktree | None:
    row = db.execute("SELECT * FROM worktrees WHERE id = ?", (worktree_id,)).fetchone()
    if not row:
        return None
    return _row_to_worktree(row)


def list_worktrees(db: sqlite3.Connection, session_id: str, status: str | None = None) -> list[Worktree]:
    query = "SELECT * FROM worktrees WHERE session_id = ?"
    params: list = [session_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, rowid ASC"
    return [_row_to_worktree(r) for r in db.execute(query, params).fetchall()]


def get_active_worktrees(db: sqlite3.Connection, session_id: str) -> list[Worktree]:
    return list_worktrees(db, session_id, status="active")


def update_worktree_status(db: sqlite3.Connection, worktree_id: str, status: str) -> Worktree:
    if status not in WORKTREE_STATUSES:
        raise ValueError(f"Unknown worktree status: {status}")
    merged_at = now_iso() if status == "merged" else None
    with transaction(db):
        cur = db.execute(
            "UPDATE worktrees SET status = ?, merged_at = COALESCE(?, merged_at) WHERE id = ?",
            (status, merged_at, worktree_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Worktree", worktree_id)
    return get_worktree(db, worktree_id)


def _row_to_worktree(row: sqlite3.Row) -> Worktree:
    return Worktree(
        id=row["id"],
        session_id=row["session_id"],
        requirement_id=row["requirement_id"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        status=row["status"],
        created_at=parse_dt(row["created_at"]),
        merged_at=parse_dt(row["merged_at"]),
    )


# ── Manager ───────────────────────────────────────────────────────────


@dataclass
class MergeResult:
    success: bool
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


class WorktreeManager:
    """Creates one git worktree per requirement under the project's state dir.

    Git calls are synchronous and run on a worker thread so the event loop
    stays free while they execute.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        project_path: str | Path,
        worktree_dir: str = f"{STATE_DIR}/worktrees",
    ):
        self.db = db
        self.project_path = Path(project_path)
        self.worktrees_dir = self.project_path / worktree_dir

    async def is_git_repo(self) -> bool:
        return await asyncio.to_thread(is_git_repo, self.project_path)

    async def create(self, session_id: str, requirement_id: str, slug: str) -> Worktree:
        """Create a worktree on branch feature/<id8>-<slug> based on the current branch.

        An active worktree left behind by an interrupted run of the same
        requirement is handed back instead.
        """
        for existing in get_active_worktrees(self.db, session_id):
            if existing.requirement_id == requirement_id and Path(existing.worktree_path).is_dir():
                logger.info("Reusing worktree %s for %s", existing.worktree_path, requirement_id)
                return existing

        branch = branch_name_for(requirement_id, slug)
        wt_path = self.worktrees_dir / requirement_id
        await asyncio.to_thread(self._add, branch, wt_path)
        # sqlite connections stay on the loop thread
        return create_worktree(self.db, session_id, requirement_id, branch, str(wt_path))

    def _add(self, branch: str, wt_path: Path) -> None:
        if not is_git_repo(self.project_path):
            raise GitError(f"Not a git repository: {self.project_path}")

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        base_branch = get_current_branch(self.project_path)
        create_branch = not branch_exists(self.project_path, branch)
        worktree_add(self.project_path, wt_path, branch, base_branch, create_branch=create_branch)
        logger.info("Created worktree %s on %s", wt_path, branch)

    async def list(self, session_id: str) -> list[Worktree]:
        return list_worktrees(self.db, session_id)

    async def merge(self, worktree_id: str, target_branch: str | None = None) -> MergeResult:
        """Merge a worktree's branch into `target_branch` (default: the checked-out branch).

        On conflict the merge is aborted and the conflicting files reported.
        A successful merge marks the worktree merged and removes it.
        """
        worktree = get_worktree(self.db, worktree_id)
        if not worktree:
            return MergeResult(success=False, error=f"Worktree not found: {worktree_id}")

        result = await asyncio.to_thread(self._merge, worktree, target_branch)
        if result.success:
            update_worktree_status(self.db, worktree_id, "merged")
            await self.cleanup(worktree_id)
        return result

    def _merge(self, worktree: Worktree, target_branch: str | None) -> MergeResult:
        try:
            target = target_branch or get_current_branch(self.project_path)
            checkout(self.project_path, target)
        except GitError as e:
            return MergeResult(success=False, error=f"Failed to checkout {target_branch or 'HEAD'}: {e}")

        try:
            merge_branch(self.project_path, worktree.branch_name, target)
        except GitError as e:
            files = conflict_files(self.project_path)
            if files:
                try:
                    merge_abort(self.project_path)
                except GitError:
                    logger.warning("merge --abort failed in %s", self.project_path)
                return MergeResult(
                    success=False,
                    conflict_files=files,
                    error=f"Merge conflict in files: {', '.join(files)}",
                )
            return MergeResult(success=False, error=f"Merge failed: {e}")

        logger.info("Merged %s into %s", worktree.branch_name, target)
        return MergeResult(success=True)

    async def cleanup(self, worktree_id: str) -> None:
        """Remove a worktree from disk. Active worktrees become abandoned."""
        worktree = get_worktree(self.db, worktree_id)
        if not worktree:
            raise NotFoundError("Worktree", worktree_id)

        await asyncio.to_thread(self._remove, worktree)
        if worktree.status == "active":
            update_worktree_status(self.db, worktree_id, "abandoned")

    def _remove(self, worktree: Worktree) -> None:
        wt_path = Path(worktree.worktree_path)
        registered = False
        try:
            registered = any(
                Path(info.path).resolve() == wt_path.resolve()
                for info in worktree_list(self.project_path)
            )
        except GitError as e:
            logger.warning("Could not list worktrees: %s", e)

        if registered:
            try:
                worktree_remove(self.project_path, wt_path, force=True)
            except GitError as e:
                logger.warning("git worktree remove failed for %s: %s", wt_path, e)

        if wt_path.exists():
            shutil.rmtree(wt_path, ignore_errors=True)

        try:
            worktree_prune(self.project_path)
        except GitError as e:
            logger.debug("git worktree prune failed: %s", e)
