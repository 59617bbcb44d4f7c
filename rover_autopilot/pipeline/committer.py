"""Committer: turn a finished task's worktree into a commit."""

import logging
from pathlib import Path
from typing import Optional

from ..agents.base import AIAgent
from ..config.models import AutopilotConfig
from ..state.models import (
    ActionKind,
    CommitError,
    CommitMeta,
    PendingAction,
    ResolveMeta,
    SpanStatus,
    StepStatus,
)
from ..state.store import ActionStore
from ..state.traces import TraceBook
from ..tasks.manager import TaskManager
from ..tasks.models import TaskRecord, TaskStatus
from ..utils.git import GitError, GitOps
from .stage import PROCESSED, ClaimSet, Stage, StageError

logger = logging.getLogger(__name__)

ATTRIBUTION_TRAILER = "Co-Authored-By: Rover <noreply@endor.dev>"


def iteration_summaries(iterations_path: Path) -> list[str]:
    """Collect ``summary.md`` of every iteration, oldest first."""
    if not iterations_path.exists():
        return []

    numbers = sorted(int(p.name) for p in iterations_path.iterdir() if p.is_dir() and p.name.isdigit())
    summaries = []
    for number in numbers:
        summary_path = iterations_path / str(number) / "summary.md"
        try:
            text = summary_path.read_text().strip()
        except OSError:
            continue
        if text:
            summaries.append(f"Iteration {number}: {text}")
    return summaries


class Committer(Stage):
    """Commits task results, or passes failed tasks straight to the resolver.

    Git failures never raise out of this stage. They are captured as
    ``commit_error`` on the resolve action.
    """

    kind = ActionKind.COMMIT

    def __init__(
        self,
        store: ActionStore,
        traces: TraceBook,
        task_manager: TaskManager,
        git: GitOps,
        agent: Optional[AIAgent],
        config: AutopilotConfig,
        claims: Optional[ClaimSet] = None,
    ):
        """Initialize committer.

        Args:
            store: Action store
            traces: Trace ledger
            task_manager: Task manager
            git: Git operations
            agent: Agent used for commit messages (None uses the task title)
            config: Autopilot configuration
            claims: Claimed-action set
        """
        super().__init__(store, traces, claims)
        self.task_manager = task_manager
        self.git = git
        self.agent = agent
        self.config = config

    async def _commit_message(self, task: TaskRecord) -> str:
        """Ask the agent for a commit message, falling back to the title."""
        message = None
        if self.agent is not None:
            try:
                recent = await self.git.get_recent_commits(
                    self.config.commit.recent_commits,
                    worktree=Path(task.worktree_path),
                )
                message = await self.agent.generate_commit_message(
                    task.title,
                    task.description,
                    recent,
                    iteration_summaries(self.task_manager.iterations_path(task.id)),
                )
            except Exception as e:
                logger.warning("Commit message generation failed for task #%s: %s", task.id, e)
                message = None

        message = (message or "").strip() or task.title
        if self.config.commit.attribution:
            message = f"{message}\n\n{ATTRIBUTION_TRAILER}"
        return message

    async def commit_task(self, task: TaskRecord) -> tuple[bool, Optional[str], Optional[CommitError]]:
        """Commit pending changes in a task's worktree.

        Returns:
            (committed, commit_sha, commit_error)
        """
        if not task.worktree_path:
            raise StageError(f"Task #{task.id} has no worktree")
        worktree = Path(task.worktree_path)

        try:
            if not await self.git.has_uncommitted_changes(worktree):
                return False, None, None
            message = await self._commit_message(task)
            sha = await self.git.add_and_commit(message, worktree)
            return True, sha, None
        except GitError as e:
            logger.warning("Commit failed for task #%s: %s", task.id, e.message)
            return False, None, CommitError(
                message=e.message,
                exit_code=e.exit_code,
                stderr=e.stderr,
                command=e.command or "git",
            )

    async def process(self, action: PendingAction) -> str:
        meta: CommitMeta = action.meta
        self.begin(action)

        task = self.task_manager.get_task(meta.task_id)
        if task is None:
            raise StageError(f"Task #{meta.task_id} not found")

        committed, commit_sha, commit_error = False, None, None
        if meta.task_status == TaskStatus.FAILED or task.status == TaskStatus.FAILED:
            task_status = TaskStatus.FAILED
            summary = f"task #{task.id}: failed, commit skipped"
            span_status = SpanStatus.SKIPPED
        else:
            task_status = TaskStatus.COMPLETED
            committed, commit_sha, commit_error = await self.commit_task(task)
            if commit_error:
                summary = f"task #{task.id}: commit failed: {commit_error.message}"
                span_status = SpanStatus.FAILED
            else:
                summary = f"task #{task.id}: {'committed ' + commit_sha[:8] if committed else 'no changes'}"
                span_status = SpanStatus.COMPLETED

        span_meta = {
            "task_id": task.id,
            "branch_name": meta.branch_name,
            "committed": committed,
            "commit_sha": commit_sha,
            "task_status": task_status.value,
        }
        if commit_error:
            span_meta["commit_error"] = commit_error.model_dump()
        span = self.write_span(action, span_status, summary, span_meta)

        resolve = self.new_action(
            action.trace_id,
            span,
            ResolveMeta(
                source_action_id=meta.source_action_id,
                task_id=task.id,
                branch_name=meta.branch_name,
                workflow=meta.workflow,
                title=meta.title,
                task_status=task_status,
                committed=committed,
                commit_sha=commit_sha,
                commit_error=commit_error,
            ),
            summary=f"resolve: {meta.title}",
            reasoning=f"Resolve task #{task.id}: {meta.title} ({summary})",
        )
        self.finish(action, StepStatus.FAILED if commit_error else StepStatus.COMPLETED, summary)
        self.store.advance(action.action_id, [resolve])
        self.log(action, f"{summary}, resolve enqueued", span_id=span.id)

        logger.info(summary, extra={"trace_id": action.trace_id})
        return PROCESSED
