"""Workflow Runner: admit workflow intents and launch tasks."""

import logging
import secrets
from pathlib import Path
from typing import Optional

from ..config.models import AutopilotConfig
from ..sandbox.base import SandboxFactory
from ..state.models import (
    Action,
    ActionKind,
    PendingAction,
    ReviewMeta,
    Span,
    SpanStatus,
    StepStatus,
    TaskMapping,
    WorkflowMeta,
)
from ..state.store import ActionStore
from ..state.traces import TraceBook
from ..tasks.manager import TaskManager, active_task_count
from ..tasks.models import TaskRecord, TaskStatus
from ..utils.env_files import copy_environment_files
from ..utils.git import GitOps
from .stage import PROCESSED, ClaimSet, Stage, StageError

logger = logging.getLogger(__name__)


def generate_branch_name(task_id: int) -> str:
    return f"rover/task-{task_id}-{secrets.token_hex(4)}"


def enqueue_workflow(
    store: ActionStore,
    traces: TraceBook,
    meta: WorkflowMeta,
    summary: str | None = None,
) -> PendingAction:
    """Start a new trace with a workflow intent.

    Args:
        store: Action store
        traces: Trace ledger
        meta: Workflow to run
        summary: Trace summary (defaults to the title)

    Returns:
        The queued workflow action
    """
    summary = summary or meta.title
    root = store.write_span(Span(step="enqueue", summary=summary, meta={"title": meta.title}))
    action = PendingAction(
        trace_id=root.id,
        span_id=root.id,
        kind=ActionKind.WORKFLOW,
        summary=f"workflow: {meta.title}",
        meta=meta,
    )
    store.write_action(
        Action(
            id=action.action_id,
            kind=action.kind,
            span_id=root.id,
            reasoning=summary,
            meta=meta.model_dump(mode="json"),
        )
    )
    traces.ensure(action.trace_id, summary)
    traces.add_step(action.trace_id, action.action_id, action.kind)
    store.add_pending(action)
    logger.info("Queued workflow %s: %s", action.action_id[:8], meta.title, extra={"trace_id": action.trace_id})
    return action


class WorkflowRunner(Stage):
    """Creates tasks, worktrees and sandboxes for queued workflow actions.

    Admission honours dependencies (branch chaining) and the cap on
    simultaneously running tasks.
    """

    kind = ActionKind.WORKFLOW

    def __init__(
        self,
        store: ActionStore,
        traces: TraceBook,
        task_manager: TaskManager,
        git: GitOps,
        sandbox_factory: Optional[SandboxFactory],
        config: AutopilotConfig,
        claims: Optional[ClaimSet] = None,
    ):
        """Initialize runner.

        Args:
            store: Action store
            traces: Trace ledger
            task_manager: Task manager
            git: Git operations on the project repository
            sandbox_factory: Builds a sandbox per task (None disables sandboxes)
            config: Autopilot configuration
            claims: Claimed-action set
        """
        super().__init__(store, traces, claims)
        self.task_manager = task_manager
        self.git = git
        self.sandbox_factory = sandbox_factory
        self.config = config

    # Admission

    def _dependency_task(self, meta: WorkflowMeta) -> Optional[TaskRecord]:
        mapping = self.store.get_task_mapping(meta.depends_on_action_id)
        if mapping is None:
            return None
        return self.task_manager.get_task(mapping.task_id)

    def _own_task(self, action: PendingAction) -> Optional[TaskRecord]:
        """Task this action already runs on: a replayed launch or a retry."""
        task = self.task_manager.find_task_by_source_action(action.action_id)
        if task is None and action.meta.retry_task_id is not None:
            task = self.task_manager.get_task(action.meta.retry_task_id)
        return task

    def available_slots(self) -> int:
        """Free slots for new tasks. Every active task holds one, parked or not."""
        return self.config.pipeline.max_running_tasks - active_task_count(self.task_manager)

    def admit(self, pending: list[PendingAction]) -> list[PendingAction]:
        eligible = []
        for action in pending:
            meta: WorkflowMeta = action.meta
            if not meta.depends_on_action_id:
                eligible.append(action)
                continue

            dependency = self._dependency_task(meta)
            if dependency is None:
                continue
            if dependency.status == TaskStatus.COMPLETED:
                eligible.append(action)
            elif dependency.status == TaskStatus.FAILED:
                self.cascade_failure(action, dependency)

        # An action whose task is already active reuses that task's slot.
        resuming, fresh = [], []
        for action in eligible:
            task = self._own_task(action)
            (resuming if task is not None and task.is_active else fresh).append(action)

        slots = max(self.available_slots(), 0)
        if fresh and slots < len(fresh):
            logger.info(
                "No free task slots (max %s); %s workflow action(s) wait",
                self.config.pipeline.max_running_tasks,
                len(fresh) - slots,
            )
        return resuming + fresh[:slots]

    def cascade_failure(self, action: PendingAction, dependency: TaskRecord) -> None:
        """Fail an action whose dependency's task failed, without admitting it."""
        reason = f"dependency failed: task #{dependency.id} ({dependency.title})"
        logger.warning(
            "Dropping workflow %s: %s",
            action.action_id[:8],
            reason,
            extra={"trace_id": action.trace_id},
        )
        self.finish(action, StepStatus.FAILED, reason)
        span = self.write_span(
            action,
            SpanStatus.FAILED,
            reason,
            {"depends_on_action_id": action.meta.depends_on_action_id, "dependency_task_id": dependency.id},
        )
        self.store.remove_pending(action.action_id)
        self.log(action, reason, span_id=span.id)

    # Processing

    async def _resolve_base_branch(self, meta: WorkflowMeta) -> str:
        if meta.depends_on_action_id:
            mapping = self.store.get_task_mapping(meta.depends_on_action_id)
            if mapping is not None:
                return mapping.branch_name
        return await self.git.get_current_branch()

    async def _prepare_task(self, action: PendingAction) -> tuple[TaskRecord, str]:
        """Create a task with its worktree, branch and first iteration."""
        meta: WorkflowMeta = action.meta
        base_branch = await self._resolve_base_branch(meta)

        task = self.task_manager.create_task(
            title=meta.title,
            description=meta.description or meta.title,
            workflow=meta.workflow,
            source_branch=base_branch,
            source_action_id=action.action_id,
        )
        await self._setup_workspace(task, meta, base_branch)
        return task, base_branch

    async def _setup_workspace(self, task: TaskRecord, meta: WorkflowMeta, base_branch: str) -> None:
        """Give a created task its worktree, branch and first iteration."""
        worktree = self.task_manager.workspace_path(task.id)
        branch_name = generate_branch_name(task.id)
        await self.git.create_worktree(worktree, branch_name, base_branch)
        task.base_commit = await self.git.get_commit_hash("HEAD", worktree=worktree)

        copy_environment_files(Path(self.config.project.root), worktree, self.config.workspace.env_files)
        await self.git.setup_sparse_checkout(worktree, self.config.workspace.exclude_patterns)

        if task.iterations == 0:
            self.task_manager.create_iteration(task, meta.title, meta.description or meta.title)
        task.set_workspace(str(worktree), branch_name)
        task.agent_image = self.config.sandbox.image
        task.mark_in_progress()
        self.task_manager.save_task(task)

    async def _resume_task(
        self,
        action: PendingAction,
        task: TaskRecord,
    ) -> tuple[str, Optional[str], Optional[str]]:
        """Pick up a task created by an earlier run of the same action.

        The workspace is finished if the task never got a branch. The sandbox
        is started if the task is still active without a container. A task
        reset to NEW by a failed sandbox start stays as it is.

        Returns:
            (base_branch, container_id, sandbox_error)
        """
        meta: WorkflowMeta = action.meta
        logger.info(
            "Reusing task #%s created by action %s",
            task.id,
            action.action_id[:8],
            extra={"trace_id": action.trace_id},
        )
        base_branch = task.source_branch or await self._resolve_base_branch(meta)
        if not task.branch_name:
            await self._setup_workspace(task, meta, base_branch)

        if task.is_active and not task.container_id:
            container_id, sandbox_error = await self._start_sandbox(task)
            return base_branch, container_id, sandbox_error
        return base_branch, task.container_id, None

    async def _start_sandbox(self, task: TaskRecord) -> tuple[Optional[str], Optional[str]]:
        """Start the task's sandbox.

        Returns:
            (container_id, error); a failed start resets the task to NEW
        """
        if self.sandbox_factory is None:
            return None, None

        try:
            container_id = await self.sandbox_factory(task).create_and_start()
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("Sandbox for task #%s failed to start: %s", task.id, error)
            task.reset_to_new()
            self.task_manager.save_task(task)
            return None, error

        task.container_id = container_id
        self.task_manager.save_task(task)
        return container_id, None

    async def process(self, action: PendingAction) -> str:
        meta: WorkflowMeta = action.meta
        self.begin(action)

        container_id = None
        sandbox_error = None
        task = self.task_manager.find_task_by_source_action(action.action_id)

        if task is not None:
            base_branch, container_id, sandbox_error = await self._resume_task(action, task)
        elif meta.retry_task_id is not None:
            task = self.task_manager.get_task(meta.retry_task_id)
            if task is None:
                raise StageError(f"Retry target task #{meta.retry_task_id} not found")
            base_branch = task.source_branch
            container_id, sandbox_error = await self._start_sandbox(task)
        else:
            task, base_branch = await self._prepare_task(action)
            container_id, sandbox_error = await self._start_sandbox(task)

        if not task.branch_name:
            raise StageError(f"Task #{task.id} has no branch")

        launched = "sandbox failed" if sandbox_error else "launched"
        summary = f"task #{task.id}: {meta.title} (branch: {task.branch_name}) {launched}"
        span_meta = {
            "task_id": task.id,
            "branch_name": task.branch_name,
            "worktree_path": task.worktree_path,
            "container_id": container_id,
            "workflow": meta.workflow,
            "title": meta.title,
            "base_branch": base_branch,
            "iteration": task.iterations,
        }
        if sandbox_error:
            span_meta["sandbox_error"] = sandbox_error
        span = self.write_span(
            action,
            SpanStatus.ERROR if sandbox_error else SpanStatus.COMPLETED,
            summary,
            span_meta,
        )

        review = self.new_action(
            action.trace_id,
            span,
            ReviewMeta(
                source_action_id=action.action_id,
                task_id=task.id,
                branch_name=task.branch_name,
                workflow=meta.workflow,
                title=meta.title,
            ),
            summary=f"review: {meta.title}",
        )
        self.store.set_task_mapping(
            action.action_id,
            TaskMapping(task_id=task.id, branch_name=task.branch_name, trace_id=action.trace_id),
        )
        self.finish(
            action,
            StepStatus.COMPLETED,
            f"sandbox failed to start: {sandbox_error}" if sandbox_error else summary,
        )
        self.store.advance(action.action_id, [review])
        self.log(action, summary, span_id=span.id)

        logger.info(summary, extra={"trace_id": action.trace_id})
        return PROCESSED

