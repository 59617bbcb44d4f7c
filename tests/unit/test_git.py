"""Unit tests for GitOps with a mocked subprocess layer."""

from unittest.mock import AsyncMock, patch

import pytest

from rover_autopilot.utils.env_files import copy_environment_files
from rover_autopilot.utils.git import GitError, GitOps


def _result(stdout="", success=True, exit_code=0, stderr=""):
    return {
        "success": success,
        "output": stdout + stderr,
        "stdout": stdout,
        "stderr": stderr,
        "exit_code": exit_code,
        "timed_out": False,
    }


@pytest.fixture
def git(tmp_path):
    return GitOps(tmp_path)


@pytest.mark.asyncio
async def test_run_git_failure_raises(git):
    """Test a failing git command raises GitError with its details."""
    with patch.object(git.manager, "run", AsyncMock(return_value=_result(success=False, exit_code=128, stderr="fatal: bad"))):
        with pytest.raises(GitError) as exc_info:
            await git.run_git(["commit", "-m", "x"])

    assert exc_info.value.exit_code == 128
    assert exc_info.value.stderr == "fatal: bad"
    assert exc_info.value.command == "git commit -m x"


@pytest.mark.asyncio
async def test_current_branch_detached_falls_back(git):
    """Test a detached HEAD falls back to rev-parse."""
    run = AsyncMock(side_effect=[_result(""), _result("HEAD\n")])
    with patch.object(git.manager, "run", run):
        assert await git.get_current_branch() == "HEAD"

    assert run.call_args_list[1].args[0] == ["git", "rev-parse", "--abbrev-ref", "HEAD"]


@pytest.mark.asyncio
async def test_create_worktree_new_branch(git, tmp_path):
    """Test a worktree on a new branch starts from the given base."""
    run = AsyncMock(side_effect=[_result(success=False, exit_code=1), _result()])
    worktree = tmp_path / "tasks" / "1" / "workspace"
    with patch.object(git.manager, "run", run):
        await git.create_worktree(worktree, "rover/task-1-abcd", "main")

    assert run.call_args_list[1].args[0] == [
        "git", "worktree", "add", "-b", "rover/task-1-abcd", str(worktree), "main",
    ]


@pytest.mark.asyncio
async def test_create_worktree_existing_branch(git, tmp_path):
    """Test an existing branch is checked out as-is."""
    run = AsyncMock(side_effect=[_result(), _result()])
    worktree = tmp_path / "workspace"
    with patch.object(git.manager, "run", run):
        await git.create_worktree(worktree, "rover/task-1-abcd")

    assert run.call_args_list[1].args[0] == ["git", "worktree", "add", str(worktree), "rover/task-1-abcd"]


@pytest.mark.asyncio
async def test_has_uncommitted_changes(git, tmp_path):
    """Test porcelain status output means changes."""
    with patch.object(git.manager, "run", AsyncMock(return_value=_result(" M app.py\n"))):
        assert await git.has_uncommitted_changes(tmp_path) is True
    with patch.object(git.manager, "run", AsyncMock(return_value=_result(""))):
        assert await git.has_uncommitted_changes(tmp_path) is False


@pytest.mark.asyncio
async def test_add_and_commit_returns_hash(git, tmp_path):
    """Test staging, committing and resolving HEAD in the worktree."""
    run = AsyncMock(side_effect=[_result(), _result(), _result("abc123\n")])
    with patch.object(git.manager, "run", run):
        sha = await git.add_and_commit("Add login\n\nCo-Authored-By: Rover <noreply@endor.dev>", tmp_path)

    assert sha == "abc123"
    commands = [call.args[0] for call in run.call_args_list]
    assert commands[0] == ["git", "add", "-A"]
    assert commands[1][:3] == ["git", "commit", "-m"]
    assert all(call.kwargs["cwd"] == tmp_path for call in run.call_args_list)


@pytest.mark.asyncio
async def test_recent_commits_unreadable_history(git):
    """Test an unreadable history yields no commits."""
    with patch.object(git.manager, "run", AsyncMock(return_value=_result(success=False, exit_code=128))):
        assert await git.get_recent_commits(5) == []
    with patch.object(git.manager, "run", AsyncMock(return_value=_result("Add a\nFix b\n"))):
        assert await git.get_recent_commits(5) == ["Add a", "Fix b"]


@pytest.mark.asyncio
async def test_sparse_checkout_noop_without_patterns(git, tmp_path):
    """Test no patterns means no git calls."""
    run = AsyncMock()
    with patch.object(git.manager, "run", run):
        await git.setup_sparse_checkout(tmp_path, [])
    run.assert_not_called()


@pytest.mark.asyncio
async def test_sparse_checkout_patterns(git, tmp_path):
    """Test excludes are negated after a match-all pattern."""
    run = AsyncMock(return_value=_result())
    with patch.object(git.manager, "run", run):
        await git.setup_sparse_checkout(tmp_path, ["docs/", "*.bin"])

    assert run.call_args_list[1].args[0] == [
        "git", "sparse-checkout", "set", "--no-cone", "/*", "!docs/", "!*.bin",
    ]


def test_copy_environment_files(tmp_path):
    """Test env files are copied once and missing ones are skipped."""
    source, worktree = tmp_path / "repo", tmp_path / "ws"
    source.mkdir()
    worktree.mkdir()
    (source / ".env").write_text("A=1")
    (worktree / ".env.local").write_text("keep")
    (source / ".env.local").write_text("B=2")

    copied = copy_environment_files(source, worktree, [".env", ".env.local", ".env.test"])

    assert copied == [worktree / ".env"]
    assert (worktree / ".env.local").read_text() == "keep"


def test_copy_environment_files_default_glob(tmp_path):
    """Test without names every top-level .env* file is copied."""
    source, worktree = tmp_path / "repo", tmp_path / "ws"
    source.mkdir()
    worktree.mkdir()
    (source / ".env").write_text("A=1")
    (source / ".env.production").write_text("B=2")

    copied = copy_environment_files(source, worktree)

    assert sorted(p.name for p in copied) == [".env", ".env.production"]
