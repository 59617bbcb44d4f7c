"""Git operations wrapper."""

import logging
import shutil
from pathlib import Path

from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Git operation error.

    Carries enough of the failed invocation for a resolver to reason about it.
    """

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class GitOps:
    """Git operations wrapper."""

    def __init__(self, repo_root: Path, timeout_sec: int = 30):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
        """
        self.repo_root = repo_root
        self.timeout_sec = timeout_sec
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
    ) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code
            cwd: Working directory (defaults to the repository root)

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        display = " ".join(command)
        try:
            result = await self.manager.run(command, cwd=cwd or self.repo_root)
        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {e}", command=display, exit_code=e.exit_code)

        if check and not result["success"]:
            stderr = result["stderr"].strip() or result["stdout"].strip()
            raise GitError(
                f"Git command failed: {' '.join(args)}\n{stderr}",
                command=display,
                exit_code=result["exit_code"],
                stderr=stderr,
            )

        return result

    async def get_current_branch(self) -> str:
        """Get current branch name.

        Returns:
            Branch name
        """
        result = await self.run_git(["branch", "--show-current"])
        branch = result["stdout"].strip()

        if not branch:
            # Detached HEAD
            result = await self.run_git(["rev-parse", "--abbrev-ref", "HEAD"])
            branch = result["stdout"].strip()

        return branch or "main"

    async def branch_exists(self, branch: str) -> bool:
        """Check if a local branch exists."""
        result = await self.run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return result["success"]

    async def create_worktree(
        self,
        worktree_path: Path,
        branch: str,
        base: str | None = None,
    ) -> None:
        """Create a worktree on a new branch.

        Args:
            worktree_path: Path for new worktree
            branch: Branch to create (checked out as-is if it already exists)
            base: Start point for the new branch (defaults to current branch)

        Raises:
            GitError: If worktree creation fails
        """
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        if worktree_path.exists():
            # Stale directory from a prior failed attempt
            logger.warning("Removing stale worktree directory: %s", worktree_path)
            shutil.rmtree(worktree_path, ignore_errors=True)
            await self.run_git(["worktree", "prune"], check=False)

        if await self.branch_exists(branch):
            args = ["worktree", "add", str(worktree_path), branch]
        else:
            start_point = base or await self.get_current_branch()
            args = ["worktree", "add", "-b", branch, str(worktree_path), start_point]

        await self.run_git(args)
        logger.info("Created worktree: %s (branch: %s)", worktree_path, branch)

    async def get_commit_hash(self, ref: str = "HEAD", worktree: Path | None = None) -> str:
        """Resolve a ref to a full commit hash.

        Args:
            ref: Branch, tag or commit-ish
            worktree: Worktree to resolve in

        Returns:
            Commit hash
        """
        result = await self.run_git(["rev-parse", ref], cwd=worktree)
        return result["stdout"].strip()

    async def has_uncommitted_changes(self, worktree: Path) -> bool:
        """Check a worktree for staged, unstaged or untracked changes."""
        result = await self.run_git(["status", "--porcelain"], cwd=worktree)
        return bool(result["stdout"].strip())

    async def add_and_commit(self, message: str, worktree: Path) -> str:
        """Stage everything in a worktree and commit it.

        Args:
            message: Commit message
            worktree: Worktree to commit in

        Returns:
            Commit hash

        Raises:
            GitError: If staging or committing fails
        """
        await self.run_git(["add", "-A"], cwd=worktree)
        await self.run_git(["commit", "-m", message], cwd=worktree)

        commit_hash = await self.get_commit_hash("HEAD", worktree=worktree)
        logger.info("Committed: %s - %s", commit_hash[:8], message.split("\n")[0])
        return commit_hash

    async def get_recent_commits(self, count: int = 10, worktree: Path | None = None) -> list[str]:
        """Get subjects of the most recent commits.

        Args:
            count: Number of commits
            worktree: Worktree to read history from

        Returns:
            Commit subjects, newest first (empty if the history is unreadable)
        """
        result = await self.run_git(
            ["log", f"-{count}", "--pretty=format:%s"],
            check=False,
            cwd=worktree,
        )
        if not result["success"]:
            return []
        return [line.strip() for line in result["stdout"].split("\n") if line.strip()]

    async def setup_sparse_checkout(self, worktree: Path, exclude_patterns: list[str]) -> None:
        """Exclude paths from a worktree with a non-cone sparse checkout.

        Args:
            worktree: Worktree path
            exclude_patterns: Gitignore-style patterns to leave out
        """
        if not exclude_patterns:
            return

        patterns = ["/*"] + [f"!{pattern}" for pattern in exclude_patterns]
        await self.run_git(["sparse-checkout", "init", "--no-cone"], cwd=worktree)
        await self.run_git(["sparse-checkout", "set", "--no-cone", *patterns], cwd=worktree)
        logger.info("Applied %s sparse-checkout excludes in %s", len(exclude_patterns), worktree)
