"""Thin git CLI wrappers used for requirement worktrees and merging them back."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails or git cannot be run."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    is_detached: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run `git <args>` in `cwd` and return stripped stdout."""
    try:
        proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e
    return proc.stdout.strip()


def _succeeds(args: list[str], cwd: str | Path) -> bool:
    try:
        run_git(args, cwd=cwd)
    except GitError:
        return False
    return True


def is_git_repo(path: str | Path) -> bool:
    return _succeeds(["rev-parse", "--git-dir"], path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    return _succeeds(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo_path)


def get_current_branch(repo_path: str | Path) -> str:
    """Name of the checked-out branch ("HEAD" when detached)."""
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_path)


def checkout(repo_path: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=repo_path)


# ── Worktrees ─────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base: str = "HEAD",
    create_branch: bool = True,
) -> str:
    """Check `branch` out into a new worktree, creating it from `base` if asked."""
    if create_branch:
        args = ["worktree", "add", "-b", branch, str(worktree_path), base]
    else:
        args = ["worktree", "add", str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """Registered worktrees, parsed from `git worktree list --porcelain`."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    infos = []
    for block in output.split("\n\n"):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value
        if "worktree" not in fields:
            continue
        infos.append(
            WorktreeInfo(
                path=fields["worktree"],
                branch=fields.get("branch", "").removeprefix("refs/heads/"),
                head=fields.get("HEAD", ""),
                is_bare="bare" in fields,
                is_detached="detached" in fields,
            )
        )
    return infos


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    """Forget worktrees whose directories no longer exist."""
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Merging ───────────────────────────────────────────────────────────


def merge_branch(repo_path: str | Path, branch: str, target: str) -> str:
    """Merge `branch` into the checked-out `target` with a merge commit."""
    return run_git(["merge", "--no-ff", "-m", f"Merge {branch} into {target}", branch], cwd=repo_path)


def conflict_files(repo_path: str | Path) -> list[str]:
    """Paths left unmerged by a failed merge."""
    try:
        output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=repo_path)
    except GitError:
        return []
    return output.splitlines()


def merge_abort(repo_path: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=repo_path)
