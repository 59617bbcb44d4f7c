"""Task Watcher: forward finished tasks from review to commit."""

import logging
from typing import Optional

from ..state.models import ActionKind, CommitMeta, PendingAction, ReviewMeta, SpanStatus, StepStatus
from ..state.store import ActionStore
from ..state.traces import TraceBook
from ..tasks.manager import TaskManager
from ..tasks.models import TaskStatus
from .stage import DEFERRED, PROCESSED, ClaimSet, Stage, StageError

logger = logging.getLogger(__name__)


class TaskWatcher(Stage):
    """Built-in reviewer.

    Waits for the task behind a ``review`` action to reach COMPLETED or
    FAILED, then enqueues ``commit`` carrying that status. Anything else
    leaves the action pending for the next cycle.
    """

    kind = ActionKind.REVIEW

    def __init__(
        self,
        store: ActionStore,
        traces: TraceBook,
        task_manager: TaskManager,
        claims: Optional[ClaimSet] = None,
    ):
        super().__init__(store, traces, claims)
        self.task_manager = task_manager

    async def process(self, action: PendingAction) -> str:
        meta: ReviewMeta = action.meta

        mapping = self.store.get_task_mapping(meta.source_action_id)
        task_id = mapping.task_id if mapping else meta.task_id
        task = self.task_manager.get_task(task_id)
        if task is None:
            raise StageError(f"Task #{task_id} not found")

        if task.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            if task.is_active:
                self.begin(action)
            return DEFERRED

        if task.status == TaskStatus.COMPLETED:
            summary = f"task #{task.id} completed"
            span_status, step_status, reasoning = SpanStatus.COMPLETED, StepStatus.COMPLETED, summary
        else:
            summary = f"task #{task.id} failed: {task.error or 'unknown error'}"
            span_status, step_status = SpanStatus.FAILED, StepStatus.FAILED
            reasoning = task.error or "Task failed"

        span = self.write_span(
            action,
            span_status,
            summary,
            {"task_id": task.id, "task_status": task.status.value, "error": task.error},
        )
        commit = self.new_action(
            action.trace_id,
            span,
            CommitMeta(
                source_action_id=meta.source_action_id,
                task_id=task.id,
                branch_name=meta.branch_name,
                workflow=meta.workflow,
                title=meta.title,
                task_status=task.status,
            ),
            summary=f"commit: {meta.title}",
        )
        self.finish(action, step_status, reasoning)
        self.store.advance(action.action_id, [commit])
        self.log(action, summary, span_id=span.id)

        logger.info("Review of task #%s done (%s)", task.id, task.status.value, extra={"trace_id": action.trace_id})
        return PROCESSED
