"""Resolver: decide wait, push, iterate or fail for a trace."""

import logging
from typing import Optional

from ..state.models import (
    ActionKind,
    ActionTrace,
    PendingAction,
    PushMeta,
    ResolveMeta,
    SpanStatus,
    StepStatus,
    TERMINAL_KINDS,
    WorkflowContext,
    WorkflowMeta,
)
from ..state.store import ActionStore
from ..state.traces import TraceBook
from ..tasks.manager import TaskManager
from .arbitration import Arbitrator, Decision, build_context, fallback_decision
from .stage import DROPPED, PROCESSED, ClaimSet, Stage

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

ACTIVE_STEP_STATUSES = (StepStatus.PENDING, StepStatus.RUNNING)


def quick_decision(trace: ActionTrace, max_retries: int = MAX_RETRIES) -> Optional[Decision]:
    """Settle unambiguous traces without an arbitrator.

    Only the steps of the current attempt are considered.

    Args:
        trace: Trace to inspect
        max_retries: Retry budget

    Returns:
        Decision, or None when arbitration is needed
    """
    steps = trace.current_attempt()
    task_steps = [s for s in steps if s.kind not in TERMINAL_KINDS]
    commit_steps = [s for s in steps if s.kind == ActionKind.COMMIT]

    if any(s.status in ACTIVE_STEP_STATUSES for s in task_steps):
        return Decision(decision="wait", reason="task steps still running or pending")

    if any(s.status in ACTIVE_STEP_STATUSES for s in commit_steps):
        return Decision(decision="wait", reason="commit steps still active")

    failed = [s for s in task_steps if s.status == StepStatus.FAILED]
    if commit_steps and not failed and all(s.status == StepStatus.COMPLETED for s in commit_steps):
        return Decision(decision="push", reason="all commits completed")

    if failed and trace.retry_count >= max_retries:
        return Decision(decision="fail", reason=f"max retries ({max_retries}) exceeded")

    return None


class Resolver(Stage):
    """Decision engine closing each attempt of a trace."""

    kind = ActionKind.RESOLVE

    def __init__(
        self,
        store: ActionStore,
        traces: TraceBook,
        task_manager: Optional[TaskManager],
        arbitrator: Arbitrator,
        max_retries: int = MAX_RETRIES,
        claims: Optional[ClaimSet] = None,
    ):
        """Initialize resolver.

        Args:
            store: Action store
            traces: Trace ledger
            task_manager: Task manager (None makes iterate degrade to fail)
            arbitrator: Arbitrator for ambiguous traces
            max_retries: Iterate decisions allowed per trace
            claims: Claimed-action set
        """
        super().__init__(store, traces, claims)
        self.task_manager = task_manager
        self.arbitrator = arbitrator
        self.max_retries = max_retries

    def admit(self, pending: list[PendingAction]) -> list[PendingAction]:
        """Keep the first resolve action of each trace, drop the rest."""
        admitted = []
        seen: set[str] = set()
        for action in pending:
            if action.trace_id in seen:
                self.drop_duplicate(action)
                continue
            seen.add(action.trace_id)
            admitted.append(action)
        return admitted

    def drop_duplicate(self, action: PendingAction) -> None:
        logger.info(
            "Dropping duplicate resolve %s",
            action.action_id[:8],
            extra={"trace_id": action.trace_id},
        )
        self.finish(action, StepStatus.COMPLETED, "duplicate resolve for trace")
        self.store.remove_pending(action.action_id)
        self.log(action, "duplicate resolve dropped")

    async def decide(self, action: PendingAction, trace: ActionTrace) -> Decision:
        meta: ResolveMeta = action.meta

        if meta.commit_error is not None:
            return Decision(decision="fail", reason=f"commit failed: {meta.commit_error.message}")

        decision = quick_decision(trace, self.max_retries)
        if decision is not None:
            return decision

        context = build_context(trace, action, self.store, self.task_manager, self.max_retries)
        try:
            decision = await self.arbitrator.decide(context)
        except Exception as e:
            logger.warning("Arbitrator raised: %s", e, extra={"trace_id": action.trace_id})
            return fallback_decision(e)

        if decision.decision not in ("iterate", "fail"):
            return fallback_decision(ValueError(f"arbitrator returned {decision.decision}"))
        return decision

    async def process(self, action: PendingAction) -> str:
        self.begin(action)
        trace = self.traces.ensure(action.trace_id, action.summary)

        decision = await self.decide(action, trace)
        logger.info(
            "Resolved %s: %s (%s)",
            trace.summary,
            decision.decision,
            decision.reason,
            extra={"trace_id": action.trace_id},
        )

        if decision.decision == "wait":
            return self.apply_wait(action, decision)
        if decision.decision == "push":
            return self.apply_push(action, decision)
        if decision.decision == "iterate":
            return self.apply_iterate(action, trace, decision)
        return self.apply_fail(action, decision)

    def apply_wait(self, action: PendingAction, decision: Decision) -> str:
        self.finish(action, StepStatus.COMPLETED, f"wait: {decision.reason}")
        self.store.remove_pending(action.action_id)
        self.log(action, f"wait: {decision.reason}")
        return DROPPED

    def apply_push(self, action: PendingAction, decision: Decision) -> str:
        meta: ResolveMeta = action.meta
        span = self.write_span(
            action,
            SpanStatus.COMPLETED,
            f"push task #{meta.task_id}: {decision.reason}",
            {"decision": "push", "reason": decision.reason, "task_id": meta.task_id, "commit_sha": meta.commit_sha},
        )
        push = self.new_action(
            action.trace_id,
            span,
            PushMeta(
                source_action_id=meta.source_action_id,
                task_id=meta.task_id,
                branch_name=meta.branch_name,
                workflow=meta.workflow,
                title=meta.title,
                commit_sha=meta.commit_sha,
            ),
            summary=f"push: {meta.title}",
            reasoning=decision.reason,
        )
        self.finish(action, StepStatus.COMPLETED, f"push: {decision.reason}")
        self.store.advance(action.action_id, [push])
        self.log(action, f"push: {decision.reason}", span_id=span.id)
        return PROCESSED

    def _failure_context(self, trace: ActionTrace) -> str:
        for step in trace.current_attempt():
            if step.status == StepStatus.FAILED and step.kind not in TERMINAL_KINDS:
                return step.reasoning or "unknown error"
        return "unknown error"

    def apply_iterate(self, action: PendingAction, trace: ActionTrace, decision: Decision) -> str:
        meta: ResolveMeta = action.meta

        if self.task_manager is None:
            return self.apply_fail(action, Decision(decision="fail", reason="cannot iterate: no task manager"))
        mapping = self.store.get_task_mapping(meta.source_action_id)
        if mapping is None:
            return self.apply_fail(action, Decision(decision="fail", reason="cannot iterate: no task mapping"))
        task = self.task_manager.get_task(mapping.task_id)
        if task is None:
            return self.apply_fail(
                action,
                Decision(decision="fail", reason=f"cannot iterate: task #{mapping.task_id} not found"),
            )

        retry_count = self.traces.increment_retry(action.trace_id)

        error_context = self._failure_context(trace)
        instructions = decision.iterate_instructions or (
            f"Previous attempt failed: {error_context}\n\nRetry the task, addressing that failure."
        )
        previous_iteration = task.iterations
        iteration = self.task_manager.create_iteration(
            task,
            f"Retry: {task.title}",
            instructions,
            {"summary": error_context, "iteration_number": previous_iteration},
        )
        task.mark_iterating()
        self.task_manager.save_task(task)

        span = self.write_span(
            action,
            SpanStatus.COMPLETED,
            f"iterating task #{task.id}: {decision.reason}",
            {
                "decision": "iterate",
                "reason": decision.reason,
                "task_id": task.id,
                "iteration": iteration.number,
                "retry_count": retry_count,
            },
        )

        original = self.store.read_action(meta.source_action_id)
        original_meta = original.meta if original is not None else {}
        workflow = self.new_action(
            action.trace_id,
            span,
            WorkflowMeta(
                workflow=meta.workflow,
                title=task.title,
                description=instructions,
                acceptance_criteria=original_meta.get("acceptance_criteria", []),
                context=WorkflowContext(**original_meta.get("context", {})),
                retry_task_id=task.id,
            ),
            summary=f"workflow: {task.title} (retry {retry_count})",
            reasoning=decision.reason,
        )
        self.finish(action, StepStatus.COMPLETED, f"iterate: {decision.reason}")
        self.traces.start_attempt(action.trace_id, workflow.action_id)
        self.store.advance(action.action_id, [workflow])
        self.log(
            action,
            f"iterate task #{task.id} (retry {retry_count}/{self.max_retries}): {decision.reason}",
            span_id=span.id,
        )
        return PROCESSED

    def apply_fail(self, action: PendingAction, decision: Decision) -> str:
        meta: ResolveMeta = action.meta
        span = self.write_span(
            action,
            SpanStatus.FAILED,
            f"task #{meta.task_id} failed: {decision.reason}",
            {"decision": "fail", "reason": decision.reason, "task_id": meta.task_id},
        )
        self.finish(action, StepStatus.COMPLETED, f"fail: {decision.reason}")
        self.traces.fail_pending_steps(action.trace_id, decision.reason)
        self.store.remove_pending(action.action_id)
        self.log(action, f"fail: {decision.reason}", span_id=span.id)
        return PROCESSED
