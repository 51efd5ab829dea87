"""Tests for the worktree lifecycle manager."""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from codingbot.worktree import (
    WorktreeError,
    WorktreeManager,
    generate_branch_name,
    worktree_path,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    """A bare 'origin' plus a main checkout at <base>/widgets on branch main."""
    remote = tmp_path / "origin.git"
    _git(tmp_path, "init", "--bare", str(remote))

    base = tmp_path / "repos"
    base.mkdir()
    _git(base, "clone", str(remote), "widgets")
    main = base / "widgets"
    _git(main, "config", "user.email", "bot@example.com")
    _git(main, "config", "user.name", "Bot")
    _git(main, "config", "commit.gpgsign", "false")
    _git(main, "symbolic-ref", "HEAD", "refs/heads/main")
    (main / "README.md").write_text("hello\n")
    _git(main, "add", "README.md")
    _git(main, "commit", "-m", "initial")
    _git(main, "push", "-u", "origin", "main")
    return base


@pytest.fixture
def manager() -> WorktreeManager:
    return WorktreeManager()


class TestBranchNaming:
    def test_sanitizes_ticket_id(self):
        assert generate_branch_name("ENG-123") == "ticket/eng-123"
        assert generate_branch_name("ENG 12: Fix/login!", prefix="feat") == "feat/eng-12-fix-login"
        assert generate_branch_name("--A__B--") == "ticket/a-b"

    def test_worktree_path_layout(self):
        path = worktree_path("/srv", "widgets", "ticket/eng-1")
        assert path == Path("/srv/.worktrees/widgets/ticket/eng-1")


class TestCreateWithoutGit:
    async def test_existing_path_skips_git(self, tmp_path, manager):
        existing = worktree_path(tmp_path, "widgets", "ticket/eng-1")
        existing.mkdir(parents=True)
        manager._run_git = AsyncMock()

        result = await manager.create(tmp_path, "widgets", "ticket/eng-1", "main")

        assert result.created is False
        assert result.path == existing
        manager._run_git.assert_not_called()

    async def test_fetch_failure_is_retryable(self, tmp_path, manager):
        manager._run_git = AsyncMock(return_value=(128, "", "fatal: could not read from remote"))

        with pytest.raises(WorktreeError) as exc_info:
            await manager.create(tmp_path, "widgets", "ticket/eng-1", "main")

        assert exc_info.value.retryable is True
        args = manager._run_git.call_args_list[0].args
        assert args[1:] == ("fetch", "origin", "main")

    async def test_worktree_add_failure_not_retryable(self, tmp_path, manager):
        async def fake_git(cwd, *args, timeout=None):
            if args[0] == "worktree":
                return 128, "", "fatal: invalid reference"
            if args[0] == "rev-parse":
                return 1, "", ""
            return 0, "", ""

        manager._run_git = fake_git
        with pytest.raises(WorktreeError) as exc_info:
            await manager.create(tmp_path, "widgets", "ticket/eng-1", "main")
        assert exc_info.value.retryable is False

    async def test_remove_never_raises(self, tmp_path, manager):
        target = worktree_path(tmp_path, "widgets", "ticket/eng-1")
        target.mkdir(parents=True)
        manager._run_git = AsyncMock(side_effect=OSError("git exploded"))

        await manager.remove(tmp_path, "widgets", "ticket/eng-1")


@requires_git
class TestCreateWithGit:
    async def test_new_branch_from_base(self, base_path, manager):
        result = await manager.create(base_path, "widgets", "ticket/eng-1", "main")

        assert result.created is True
        assert result.path == base_path / ".worktrees" / "widgets" / "ticket" / "eng-1"
        assert (result.path / "README.md").read_text() == "hello\n"
        assert _git(result.path, "rev-parse", "--abbrev-ref", "HEAD").strip() == "ticket/eng-1"

    async def test_create_is_idempotent(self, base_path, manager):
        first = await manager.create(base_path, "widgets", "ticket/eng-1", "main")

        calls = []
        real_run_git = manager._run_git

        async def counting(cwd, *args, timeout=None):
            calls.append(args)
            return await real_run_git(cwd, *args, timeout=timeout)

        manager._run_git = counting
        second = await manager.create(base_path, "widgets", "ticket/eng-1", "main")

        assert second.path == first.path
        assert second.created is False
        assert calls == []

    async def test_tracks_existing_remote_branch(self, base_path, manager):
        main = base_path / "widgets"
        _git(main, "checkout", "-b", "ticket/eng-2")
        (main / "prior.txt").write_text("earlier work\n")
        _git(main, "add", "prior.txt")
        _git(main, "commit", "-m", "prior work")
        _git(main, "push", "origin", "ticket/eng-2")
        _git(main, "checkout", "main")
        _git(main, "branch", "-D", "ticket/eng-2")

        result = await manager.create(base_path, "widgets", "ticket/eng-2", "main")

        assert result.created is True
        assert (result.path / "prior.txt").read_text() == "earlier work\n"

    async def test_reuses_local_branch_after_path_lost(self, base_path, manager):
        first = await manager.create(base_path, "widgets", "ticket/eng-3", "main")
        shutil.rmtree(first.path)
        _git(base_path / "widgets", "worktree", "prune")

        again = await manager.create(base_path, "widgets", "ticket/eng-3", "main")
        assert again.created is True
        assert again.path.exists()


@requires_git
class TestRemoveWithGit:
    async def test_remove_deletes_worktree(self, base_path, manager):
        wt = await manager.create(base_path, "widgets", "ticket/eng-1", "main")
        (wt.path / "scratch.txt").write_text("uncommitted\n")

        await manager.remove(base_path, "widgets", "ticket/eng-1")

        assert not wt.path.exists()
        assert str(wt.path) not in _git(base_path / "widgets", "worktree", "list")

    async def test_remove_already_removed(self, base_path, manager):
        await manager.create(base_path, "widgets", "ticket/eng-1", "main")
        await manager.remove(base_path, "widgets", "ticket/eng-1")
        await manager.remove(base_path, "widgets", "ticket/eng-1")

    async def test_remove_half_created_directory(self, base_path, manager):
        target = worktree_path(base_path, "widgets", "ticket/eng-9")
        target.mkdir(parents=True)
        (target / "partial").write_text("x")

        await manager.remove(base_path, "widgets", "ticket/eng-9")

        assert not target.exists()


@requires_git
class TestCommitAndPush:
    async def test_commit_and_push(self, base_path, manager):
        wt = await manager.create(base_path, "widgets", "ticket/eng-1", "main")
        (wt.path / "feature.py").write_text("print('hi')\n")

        sha = await manager.commit_and_push(wt.path, "ENG-1: automated changes")

        assert sha is not None and len(sha) == 40
        remote_heads = _git(base_path / "widgets", "ls-remote", "--heads", "origin", "ticket/eng-1")
        assert sha in remote_heads
        status = await manager.worktree_status(wt.path)
        assert status.is_clean is True
        assert status.current_branch == "ticket/eng-1"

    async def test_nothing_to_commit(self, base_path, manager):
        wt = await manager.create(base_path, "widgets", "ticket/eng-1", "main")
        assert await manager.commit_and_push(wt.path, "ENG-1: automated changes") is None

    async def test_dirty_status(self, base_path, manager):
        wt = await manager.create(base_path, "widgets", "ticket/eng-1", "main")
        (wt.path / "README.md").write_text("changed\n")
        status = await manager.worktree_status(wt.path)
        assert status.is_clean is False
