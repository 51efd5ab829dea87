"""Git worktree lifecycle for session workspaces.

Each code-modifying session works in its own worktree bound 1:1 to a
branch, at ``<base_path>/.worktrees/<repo_name>/<branch_name>``, so
concurrent sessions never share a checkout and need no locking.

Creation is idempotent by filesystem path: an existing directory at the
target location is returned as-is, which also covers a restart after a
crash mid-create. Removal is forced, prunes stale metadata, treats
"already removed" as success, and never raises.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

WORKTREES_DIR = ".worktrees"


class WorktreeError(RuntimeError):
    """A git operation needed to provision a workspace failed."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class Worktree:
    """An isolated checkout bound to one branch."""

    path: Path
    branch_name: str
    base_branch: str
    created: bool


@dataclass
class WorktreeStatus:
    is_clean: bool
    current_branch: str


def worktree_path(base_path: str | Path, repo_name: str, branch_name: str) -> Path:
    return Path(base_path) / WORKTREES_DIR / repo_name / branch_name


def generate_branch_name(ticket_id: str, prefix: str = "ticket") -> str:
    """Turn a ticket identifier into a branch name, e.g. 'ENG-12' → 'ticket/eng-12'."""
    sanitized = re.sub(r"[^a-z0-9-]", "-", ticket_id.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return f"{prefix}/{sanitized}"


class WorktreeManager:
    """Creates, removes, commits and pushes session worktrees."""

    def __init__(self, *, remote: str = "origin", git_exe: str = "git", timeout: int = 120):
        self.remote = remote
        self.git_exe = git_exe
        self.timeout = timeout

    async def create(
        self,
        base_path: str | Path,
        repo_name: str,
        branch_name: str,
        base_branch: str,
    ) -> Worktree:
        """Create (or reuse) the worktree for ``branch_name``.

        If a remote branch with that name exists the worktree tracks it,
        picking up prior work; otherwise a new branch is cut from the
        freshly fetched base branch.

        Raises:
            WorktreeError: git failed. Fetch failures are retryable.
        """
        path = worktree_path(base_path, repo_name, branch_name)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            logger.info("Worktree already exists: %s", path)
            return Worktree(path=path, branch_name=branch_name, base_branch=base_branch, created=False)

        main_repo = Path(base_path) / repo_name

        rc, _, stderr = await self._run_git(main_repo, "fetch", self.remote, base_branch)
        if rc != 0:
            raise WorktreeError(
                f"git fetch {self.remote} {base_branch} failed: {stderr.strip()}",
                retryable=True,
            )

        if await self._local_branch_exists(main_repo, branch_name):
            args = ["worktree", "add", str(path), branch_name]
            source = "existing local branch"
        elif await self._remote_branch_exists(main_repo, branch_name):
            rc, _, stderr = await self._run_git(main_repo, "fetch", self.remote, branch_name)
            if rc != 0:
                raise WorktreeError(
                    f"git fetch {self.remote} {branch_name} failed: {stderr.strip()}",
                    retryable=True,
                )
            args = [
                "worktree",
                "add",
                "--track",
                "-b",
                branch_name,
                str(path),
                f"{self.remote}/{branch_name}",
            ]
            source = "existing remote branch"
        else:
            args = ["worktree", "add", "-b", branch_name, str(path), f"{self.remote}/{base_branch}"]
            source = f"{self.remote}/{base_branch}"

        rc, _, stderr = await self._run_git(main_repo, *args)
        if rc != 0:
            raise WorktreeError(f"git worktree add failed for {branch_name}: {stderr.strip()}")

        logger.info("Created worktree %s (branch=%s, from %s)", path, branch_name, source)
        return Worktree(path=path, branch_name=branch_name, base_branch=base_branch, created=True)

    async def remove(self, base_path: str | Path, repo_name: str, branch_name: str) -> None:
        """Force-remove a worktree and prune stale references. Never raises."""
        path = worktree_path(base_path, repo_name, branch_name)
        main_repo = Path(base_path) / repo_name

        try:
            if path.exists():
                rc, _, stderr = await self._run_git(
                    main_repo, "worktree", "remove", "--force", str(path)
                )
                if rc != 0:
                    logger.warning("git worktree remove failed for %s: %s", path, stderr.strip())
                if path.exists():
                    # Half-created or never registered with git.
                    shutil.rmtree(path, ignore_errors=True)
                logger.info("Removed worktree: %s", path)
            else:
                logger.info("Worktree not found or already removed: %s", path)

            rc, _, stderr = await self._run_git(main_repo, "worktree", "prune")
            if rc != 0:
                logger.debug("git worktree prune failed: %s", stderr.strip())
        except Exception:
            logger.warning("Failed to remove worktree %s", path, exc_info=True)

    async def commit_and_push(self, worktree: str | Path, message: str) -> str | None:
        """Stage everything, commit and push the current branch.

        Returns the commit SHA, or None when there was nothing to commit.

        Raises:
            WorktreeError: A git step failed.
        """
        cwd = Path(worktree)

        await self._checked(cwd, "add", "-A")
        status = await self.worktree_status(cwd)
        if status.is_clean:
            logger.info("Nothing to commit in %s", cwd)
            return None

        await self._checked(cwd, "commit", "-m", message)
        sha = (await self._checked(cwd, "rev-parse", "HEAD")).strip()
        await self._checked(
            cwd, "push", "--set-upstream", self.remote, status.current_branch, timeout=300
        )
        logger.info("Committed and pushed %s on %s", sha[:12], status.current_branch)
        return sha

    async def worktree_status(self, worktree: str | Path) -> WorktreeStatus:
        cwd = Path(worktree)
        porcelain = await self._checked(cwd, "status", "--porcelain")
        branch = (await self._checked(cwd, "rev-parse", "--abbrev-ref", "HEAD")).strip()
        return WorktreeStatus(is_clean=not porcelain.strip(), current_branch=branch)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _local_branch_exists(self, repo: Path, branch_name: str) -> bool:
        rc, _, _ = await self._run_git(
            repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"
        )
        return rc == 0

    async def _remote_branch_exists(self, repo: Path, branch_name: str) -> bool:
        rc, stdout, _ = await self._run_git(
            repo, "ls-remote", "--heads", self.remote, branch_name
        )
        return rc == 0 and bool(stdout.strip())

    async def _checked(self, cwd: Path, *args: str, timeout: int | None = None) -> str:
        rc, stdout, stderr = await self._run_git(cwd, *args, timeout=timeout)
        if rc != 0:
            raise WorktreeError(f"git {args[0]} failed in {cwd}: {stderr.strip()}")
        return stdout

    async def _run_git(
        self, cwd: Path, *args: str, timeout: int | None = None
    ) -> tuple[int, str, str]:
        """Run a git command in ``cwd`` without blocking the event loop.

        Returns (returncode, stdout, stderr).
        """
        proc = await asyncio.create_subprocess_exec(
            self.git_exe,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.timeout
            )
        except (asyncio.TimeoutError, asyncio.CancelledError):
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout_bytes or b"").decode(errors="replace"),
            (stderr_bytes or b"").decode(errors="replace"),
        )
