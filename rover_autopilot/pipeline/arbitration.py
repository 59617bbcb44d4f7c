"""Arbitration of ambiguous resolve decisions."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel

from ..agents.base import AgentError, AIAgent
from ..agents.parsing import parse_json_response
from ..state.models import ActionTrace, PendingAction, StepStatus, TERMINAL_KINDS
from ..state.store import ActionStore
from ..tasks.manager import TaskManager

logger = logging.getLogger(__name__)

RESOLVE_SYSTEM_PROMPT = """You are the resolver of an autonomous coding pipeline.
A task attempt has failed and the pipeline needs to decide whether to retry it.

You receive a JSON document with the trace summary, the retry count and budget,
every step of the trace with its status and reasoning, details of the failed
steps (task title, description, status, error, whether anything was committed)
and the causal history of spans.

Decide:
- "iterate" when another attempt with better instructions is likely to succeed.
  Write concrete instructions for the agent in "iterate_instructions".
- "fail" when retrying cannot help (missing requirements, impossible task,
  repeated identical failures). Explain why in "fail_reason".

Reply with JSON only:
{"decision": "iterate" | "fail", "reasoning": "...", "iterate_instructions": "...", "fail_reason": "..."}"""


class Decision(BaseModel):
    """Outcome of resolving a trace."""

    decision: Literal["wait", "push", "iterate", "fail"]
    reason: str = ""
    iterate_instructions: Optional[str] = None


def interpret_answer(answer: dict) -> Decision:
    """Turn an arbitrator's JSON answer into a decision.

    Anything other than ``iterate`` or ``fail`` becomes ``iterate``. Missing
    instructions stay None so the resolver can write them from the failure.

    Args:
        answer: Parsed agent answer

    Returns:
        Decision
    """
    decision = answer.get("decision")
    reasoning = str(answer.get("reasoning") or "")
    instructions = answer.get("iterate_instructions") or None

    if decision == "iterate":
        return Decision(
            decision="iterate",
            reason=reasoning or "arbitrator chose to iterate",
            iterate_instructions=instructions,
        )
    if decision == "fail":
        return Decision(
            decision="fail",
            reason=str(answer.get("fail_reason") or reasoning or "arbitrator chose to fail"),
        )

    return Decision(
        decision="iterate",
        reason=f'unexpected decision "{decision}", defaulting to iterate',
        iterate_instructions=instructions,
    )


def fallback_decision(error: Exception) -> Decision:
    """Decision used when arbitration itself breaks."""
    return Decision(
        decision="iterate",
        reason=f"arbitration failed ({type(error).__name__}: {error}), defaulting to iterate",
    )


def build_context(
    trace: ActionTrace,
    action: PendingAction,
    store: ActionStore,
    task_manager: Optional[TaskManager],
    max_retries: int,
) -> dict:
    """Collect what an arbitrator needs to judge a trace.

    Args:
        trace: Trace being resolved
        action: The resolve action
        store: Action store (task mappings and spans)
        task_manager: Task manager for failed-step task details
        max_retries: Retry budget

    Returns:
        JSON-serializable context
    """
    meta = action.meta
    task = None
    mapping = store.get_task_mapping(meta.source_action_id)
    if mapping is not None and task_manager is not None:
        task = task_manager.get_task(mapping.task_id)

    failed_steps = []
    for step in trace.current_attempt():
        if step.status != StepStatus.FAILED or step.kind in TERMINAL_KINDS:
            continue
        detail = {
            "action": step.kind.value,
            "reasoning": step.reasoning or "unknown error",
            "task_status": meta.task_status.value,
            "committed": meta.committed,
        }
        if task is not None:
            detail.update(
                task_title=task.title,
                task_description=task.description,
                task_status=task.status.value,
                error=task.error,
            )
        failed_steps.append(detail)

    spans = store.get_span_trace(action.span_id)
    return {
        "trace_summary": trace.summary,
        "retry_count": trace.retry_count,
        "max_retries": max_retries,
        "steps": [
            {"action": s.kind.value, "status": s.status.value, "reasoning": s.reasoning}
            for s in trace.steps
        ],
        "failed_steps": failed_steps,
        "spans": [
            {
                "id": s.id,
                "step": s.step,
                "status": s.status.value,
                "timestamp": s.timestamp,
                "summary": s.summary,
                "meta": s.meta,
            }
            for s in spans
        ],
    }


class Arbitrator(ABC):
    """Decides iterate or fail for traces the fast path cannot settle."""

    @abstractmethod
    async def decide(self, context: dict) -> Decision:
        pass


class StaticArbitrator(Arbitrator):
    """Arbitrator returning a fixed decision. Records every context it sees."""

    def __init__(self, decision: str = "iterate", reason: str = "static decision", instructions: str | None = None):
        self.answer = {
            "decision": decision,
            "reasoning": reason,
            "iterate_instructions": instructions,
        }
        self.calls: list[dict] = []

    async def decide(self, context: dict) -> Decision:
        self.calls.append(context)
        return interpret_answer(self.answer)


class AgentArbitrator(Arbitrator):
    """Arbitrator backed by an AI agent."""

    def __init__(self, agent: AIAgent, cwd: Path | None = None):
        """Initialize arbitrator.

        Args:
            agent: Agent to consult
            cwd: Working directory for the agent (project root)
        """
        self.agent = agent
        self.cwd = cwd

    async def decide(self, context: dict) -> Decision:
        """Ask the agent. Malformed output or agent failure means iterate."""
        prompt = "```json\n" + json.dumps(context, indent=2, default=str) + "\n```"
        try:
            output = await self.agent.invoke(
                prompt,
                json_output=True,
                cwd=self.cwd,
                system_prompt=RESOLVE_SYSTEM_PROMPT,
            )
            answer = parse_json_response(output, required_keys=("decision",))
        except AgentError as e:
            logger.warning("Arbitration failed: %s", e)
            return fallback_decision(e)

        return interpret_answer(answer)
