"""Stage base class: claim, process and hand off pending actions."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..state.models import (
    Action,
    ActionKind,
    LogEntry,
    PendingAction,
    Span,
    SpanStatus,
    StepStatus,
)
from ..state.store import ActionStore
from ..state.traces import StepTransitionError, TraceBook

logger = logging.getLogger(__name__)

# Outcomes returned by Stage.process
PROCESSED = "processed"
DEFERRED = "deferred"
DROPPED = "dropped"
FAILED = "failed"


class StageError(Exception):
    """A stage could not process an action."""

    pass


class ClaimSet:
    """Action ids a stage is currently working on.

    Lives only as long as the loop that owns it. After a restart every
    pending action is claimable again.
    """

    def __init__(self):
        self._claimed: set[str] = set()

    def claim(self, action_id: str) -> bool:
        """Claim an action.

        Returns:
            False if it was already claimed
        """
        if action_id in self._claimed:
            return False
        self._claimed.add(action_id)
        return True

    def release(self, action_id: str) -> None:
        self._claimed.discard(action_id)

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._claimed

    def __len__(self) -> int:
        return len(self._claimed)


class Stage(ABC):
    """One phase of the autopilot pipeline.

    Subclasses set ``kind`` and implement ``process``. A poll collects
    unclaimed pending actions of that kind, lets ``admit`` choose which to
    run, and processes them concurrently. An exception while processing one
    action fails only that action.
    """

    kind: ActionKind

    def __init__(
        self,
        store: ActionStore,
        traces: TraceBook,
        claims: Optional[ClaimSet] = None,
    ):
        """Initialize stage.

        Args:
            store: Durable action store
            traces: Trace ledger shared by all stages of the loop
            claims: Claimed-action set (one per stage)
        """
        self.store = store
        self.traces = traces
        self.claims = claims or ClaimSet()

    @property
    def name(self) -> str:
        return self.kind.value

    def collect(self) -> list[PendingAction]:
        """Pending actions for this stage that nobody is working on."""
        return [
            action
            for action in self.store.get_pending()
            if action.kind == self.kind and action.action_id not in self.claims
        ]

    def admit(self, pending: list[PendingAction]) -> list[PendingAction]:
        """Choose which collected actions to process this cycle."""
        return pending

    @abstractmethod
    async def process(self, action: PendingAction) -> str:
        """Process one action.

        Returns:
            One of PROCESSED, DEFERRED, DROPPED
        """
        pass

    async def poll(self) -> dict[str, int]:
        """Run one poll cycle.

        Returns:
            Count of actions per outcome
        """
        counts = {PROCESSED: 0, DEFERRED: 0, DROPPED: 0, FAILED: 0}

        admitted = [a for a in self.admit(self.collect()) if self.claims.claim(a.action_id)]
        if not admitted:
            return counts

        logger.debug("%s: processing %s action(s)", self.name, len(admitted))
        results = await asyncio.gather(
            *(self._run(action) for action in admitted),
            return_exceptions=True,
        )

        for action, result in zip(admitted, results):
            if isinstance(result, BaseException):
                # _run handles failures itself; this only guards the handler's handler.
                logger.error(
                    "%s: unhandled error for %s: %s",
                    self.name,
                    action.action_id,
                    result,
                    extra={"trace_id": action.trace_id},
                )
                result = FAILED
            counts[result] = counts.get(result, 0) + 1

        return counts

    async def _run(self, action: PendingAction) -> str:
        try:
            return await self.process(action)
        except Exception as e:
            logger.exception(
                "%s: failed to process action %s",
                self.name,
                action.action_id,
                extra={"trace_id": action.trace_id},
            )
            self.fail_action(action, f"{type(e).__name__}: {e}")
            return FAILED
        finally:
            self.claims.release(action.action_id)

    # Helpers shared by stages

    def begin(self, action: PendingAction) -> None:
        """Mark the action's step running unless a replay already finished it."""
        trace = self.traces.ensure(action.trace_id, action.summary)
        step = trace.find_step(action.action_id)
        if step is None or step.status == StepStatus.PENDING:
            self.traces.set_step_status(
                action.trace_id,
                action.action_id,
                StepStatus.RUNNING,
                kind=action.kind,
            )

    def finish(
        self,
        action: PendingAction,
        status: StepStatus,
        reasoning: str | None = None,
    ) -> None:
        self.traces.set_step_status(
            action.trace_id,
            action.action_id,
            status,
            reasoning=reasoning,
            kind=action.kind,
        )

    def write_span(
        self,
        action: PendingAction,
        status: SpanStatus,
        summary: str,
        meta: dict | None = None,
    ) -> Span:
        """Write this stage's span as a child of the action's span."""
        return self.store.write_span(
            Span(
                step=self.name,
                parent=action.span_id,
                status=status,
                summary=summary,
                meta=meta or {},
            )
        )

    def new_action(
        self,
        trace_id: str,
        span: Span,
        meta,
        summary: str,
        reasoning: str = "",
    ) -> PendingAction:
        """Create the next stage's action and record its pending step.

        The returned action is not queued yet; pass it to ``store.advance``.
        """
        pending = PendingAction(
            trace_id=trace_id,
            span_id=span.id,
            kind=ActionKind(meta.kind),
            summary=summary,
            meta=meta,
        )
        self.store.write_action(
            Action(
                id=pending.action_id,
                kind=pending.kind,
                span_id=span.id,
                reasoning=reasoning or summary,
                meta=meta.model_dump(mode="json"),
            )
        )
        self.traces.add_step(trace_id, pending.action_id, pending.kind)
        return pending

    def log(self, action: PendingAction, summary: str, span_id: str | None = None) -> None:
        self.store.append_log(
            LogEntry(
                trace_id=action.trace_id,
                span_id=span_id,
                action_id=action.action_id,
                step=self.name,
                action=action.kind.value,
                summary=summary,
            )
        )

    def fail_action(self, action: PendingAction, reason: str) -> None:
        """Fail one action: failed step, error span, dropped and logged."""
        try:
            self.finish(action, StepStatus.FAILED, reason)
        except StepTransitionError as e:
            logger.warning("%s", e, extra={"trace_id": action.trace_id})

        span = self.write_span(action, SpanStatus.ERROR, reason, {"error": reason})
        self.store.remove_pending(action.action_id)
        self.log(action, f"error: {reason}", span_id=span.id)
