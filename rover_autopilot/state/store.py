"""Durable per-project action store."""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..tasks.models import utc_now
from .models import (
    Action,
    ActionTrace,
    AutopilotState,
    LogEntry,
    PendingAction,
    Span,
    TaskMapping,
)
from .persistence import create_json, load_json, save_json

logger = logging.getLogger(__name__)

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_MAX_ROTATED = 3


class StoreError(Exception):
    """Action store error."""

    pass


class ActionStore:
    """Pending queue, task mappings, audit log and trace records for a project.

    Layout under ``<data_dir>/projects/<project_id>/``::

        autopilot/state.json     pending actions and task mappings
        autopilot/log.jsonl      audit log (plus log.1..3.jsonl)
        autopilot/traces.json    trace ledger snapshot
        spans/<id>.json          write-once spans
        actions/<id>.json        write-once actions

    There must be a single writer per project. Every state write replaces the
    file atomically, so readers never observe a partial document.
    """

    def __init__(self, data_dir: Path, project_id: str):
        """Initialize store.

        Args:
            data_dir: Rover data directory
            project_id: Project identifier
        """
        self.project_id = project_id
        self.project_dir = Path(data_dir) / "projects" / project_id
        self.base_path = self.project_dir / "autopilot"
        self.state_path = self.base_path / "state.json"
        self.log_path = self.base_path / "log.jsonl"
        self.traces_path = self.base_path / "traces.json"
        self.spans_dir = self.project_dir / "spans"
        self.actions_dir = self.project_dir / "actions"

    @property
    def tasks_dir(self) -> Path:
        return self.project_dir / "tasks"

    def ensure_dir(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.spans_dir.mkdir(parents=True, exist_ok=True)
        self.actions_dir.mkdir(parents=True, exist_ok=True)
        if not self.state_path.exists():
            self._save_state(AutopilotState())

    # State

    def _load_state(self) -> AutopilotState:
        data = load_json(self.state_path)
        if data is None:
            return AutopilotState()
        try:
            return AutopilotState(**data)
        except (TypeError, ValidationError) as e:
            logger.warning("Ignoring corrupt state file %s: %s", self.state_path, e)
            return AutopilotState()

    def _save_state(self, state: AutopilotState) -> None:
        state.updated_at = utc_now()
        save_json(state.model_dump(mode="json"), self.state_path)

    def get_pending(self) -> list[PendingAction]:
        """Snapshot of pending actions in insertion order."""
        return self._load_state().pending

    def get_pending_action(self, action_id: str) -> Optional[PendingAction]:
        for pending in self.get_pending():
            if pending.action_id == action_id:
                return pending
        return None

    @staticmethod
    def _upsert(state: AutopilotState, action: PendingAction) -> None:
        for index, existing in enumerate(state.pending):
            if existing.action_id == action.action_id:
                state.pending[index] = action
                return
        state.pending.append(action)

    def add_pending(self, action: PendingAction) -> None:
        """Add a pending action.

        Re-adding an existing action id replaces it in place.
        """
        state = self._load_state()
        self._upsert(state, action)
        self._save_state(state)

    def remove_pending(self, action_id: str) -> None:
        """Remove a pending action (no-op if absent)."""
        state = self._load_state()
        remaining = [p for p in state.pending if p.action_id != action_id]
        if len(remaining) == len(state.pending):
            return
        state.pending = remaining
        self._save_state(state)

    def advance(self, consumed_id: str, enqueued: Iterable[PendingAction] = ()) -> None:
        """Drop a consumed action and enqueue its successors in one write.

        Args:
            consumed_id: Action the calling stage finished
            enqueued: Actions for the next stage(s)
        """
        state = self._load_state()
        state.pending = [p for p in state.pending if p.action_id != consumed_id]
        for action in enqueued:
            self._upsert(state, action)
        self._save_state(state)

    def set_task_mapping(self, action_id: str, mapping: TaskMapping) -> None:
        state = self._load_state()
        state.task_mappings[action_id] = mapping
        self._save_state(state)

    def get_task_mapping(self, action_id: str) -> Optional[TaskMapping]:
        return self._load_state().task_mappings.get(action_id)

    def get_all_task_mappings(self) -> dict[str, TaskMapping]:
        return self._load_state().task_mappings

    # Audit log

    def append_log(self, entry: LogEntry) -> None:
        """Append an entry to the audit log, rotating first if needed."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed()
        with open(self.log_path, "a") as f:
            f.write(json.dumps(entry.model_dump(mode="json")) + "\n")

    def _rotated_path(self, index: int) -> Path:
        return self.base_path / f"log.{index}.jsonl"

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size < LOG_MAX_BYTES:
                return
        except FileNotFoundError:
            return

        oldest = self._rotated_path(LOG_MAX_ROTATED)
        if oldest.exists():
            oldest.unlink()
        for index in range(LOG_MAX_ROTATED, 1, -1):
            source = self._rotated_path(index - 1)
            if source.exists():
                source.replace(self._rotated_path(index))
        self.log_path.replace(self._rotated_path(1))
        logger.debug("Rotated audit log %s", self.log_path)

    def read_logs(self, max_entries: int = 500) -> list[LogEntry]:
        """Read audit entries, oldest first, across rotated files.

        Args:
            max_entries: Return at most this many (the most recent)

        Returns:
            Log entries
        """
        paths = [self._rotated_path(i) for i in range(LOG_MAX_ROTATED, 0, -1)]
        paths.append(self.log_path)

        entries: list[LogEntry] = []
        for path in paths:
            if not path.exists():
                continue
            with open(path, "r") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entries.append(LogEntry(**json.loads(line)))
                    except (json.JSONDecodeError, TypeError, ValidationError):
                        logger.debug("Skipping malformed log line in %s", path)

        if max_entries <= 0:
            return []
        return entries[-max_entries:]

    # Spans and actions

    def write_span(self, span: Span) -> Span:
        """Persist a span. Spans are immutable once written.

        Raises:
            StoreError: If a span with the same id already exists
        """
        try:
            create_json(span.model_dump(mode="json"), self.spans_dir / f"{span.id}.json")
        except FileExistsError:
            raise StoreError(f"Span already written: {span.id}")
        return span

    def read_span(self, span_id: str) -> Optional[Span]:
        data = load_json(self.spans_dir / f"{span_id}.json")
        if data is None:
            return None
        try:
            return Span(**data)
        except (TypeError, ValidationError):
            logger.warning("Unreadable span %s", span_id)
            return None

    def get_span_trace(self, span_id: str) -> list[Span]:
        """Walk parent links from a span back to its root.

        Args:
            span_id: Leaf span id

        Returns:
            Spans ordered root first (stops at the first missing parent)
        """
        chain: list[Span] = []
        seen: set[str] = set()
        current: Optional[str] = span_id

        while current and current not in seen:
            seen.add(current)
            span = self.read_span(current)
            if span is None:
                break
            chain.append(span)
            current = span.parent

        chain.reverse()
        return chain

    def write_action(self, action: Action) -> Action:
        """Persist an action record. Actions are immutable once written.

        Raises:
            StoreError: If an action with the same id already exists
        """
        try:
            create_json(action.model_dump(mode="json"), self.actions_dir / f"{action.id}.json")
        except FileExistsError:
            raise StoreError(f"Action already written: {action.id}")
        return action

    def read_action(self, action_id: str) -> Optional[Action]:
        data = load_json(self.actions_dir / f"{action_id}.json")
        if data is None:
            return None
        try:
            return Action(**data)
        except (TypeError, ValidationError):
            logger.warning("Unreadable action %s", action_id)
            return None

    # Traces

    def save_traces(self, traces: dict[str, ActionTrace]) -> None:
        save_json(
            {trace_id: trace.model_dump(mode="json") for trace_id, trace in traces.items()},
            self.traces_path,
        )

    def load_traces(self) -> dict[str, ActionTrace]:
        data = load_json(self.traces_path, default={})
        if not isinstance(data, dict):
            return {}

        traces = {}
        for trace_id, raw in data.items():
            try:
                traces[trace_id] = ActionTrace(**raw)
            except (TypeError, ValidationError):
                logger.warning("Dropping unreadable trace %s", trace_id)
        return traces
