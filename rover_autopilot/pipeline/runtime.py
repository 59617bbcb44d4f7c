"""Autopilot runtime: wire collaborators, stages and the scheduler."""

import logging
from pathlib import Path
from typing import Optional

from ..agents.base import AIAgent
from ..agents.claude import ClaudeAgent
from ..config.models import AutopilotConfig
from ..sandbox.base import SandboxFactory
from ..sandbox.docker import DockerSandboxFactory
from ..state.models import ActionKind, PendingAction, WorkflowContext, WorkflowMeta
from ..state.store import ActionStore
from ..state.traces import TraceBook
from ..tasks.manager import FileTaskManager, TaskManager
from ..utils.git import GitOps
from .arbitration import AgentArbitrator, Arbitrator
from .committer import Committer
from .resolver import Resolver
from .review import TaskWatcher
from .scheduler import Scheduler
from .workflow import WorkflowRunner, enqueue_workflow

logger = logging.getLogger(__name__)


class AutopilotRuntime:
    """Hosts one autopilot loop for a project.

    Per-loop state (claimed sets, the trace ledger cache) is created here and
    rebuilt from the store on every start.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        task_manager: Optional[TaskManager] = None,
        git: Optional[GitOps] = None,
        agent: Optional[AIAgent] = None,
        sandbox_factory: Optional[SandboxFactory] = None,
        arbitrator: Optional[Arbitrator] = None,
    ):
        """Initialize runtime.

        Collaborators left as None get the reference implementations.

        Args:
            config: Autopilot configuration
            task_manager: Task manager
            git: Git operations on the project root
            agent: AI agent for commit messages and arbitration
            sandbox_factory: Sandbox factory (ignored when sandboxes are disabled)
            arbitrator: Arbitrator for ambiguous resolve decisions
        """
        self.config = config
        root = Path(config.project.root)

        self.store = ActionStore(config.project.data_dir, config.project.project_id)
        self.store.ensure_dir()

        self.task_manager = task_manager or FileTaskManager(self.store.tasks_dir)
        self.git = git or GitOps(root)
        self.agent = agent or ClaudeAgent(config.agent.model_dump())
        if config.sandbox.enabled:
            self.sandbox_factory = sandbox_factory or DockerSandboxFactory(config.sandbox, self.task_manager)
        else:
            self.sandbox_factory = None
        self.arbitrator = arbitrator or AgentArbitrator(self.agent, cwd=root)

        self.traces = TraceBook(self.store)
        self.traces.reconcile(self.store.get_pending())

        self.workflow_runner = WorkflowRunner(
            self.store,
            self.traces,
            self.task_manager,
            self.git,
            self.sandbox_factory,
            config,
        )
        self.task_watcher = TaskWatcher(self.store, self.traces, self.task_manager)
        self.committer = Committer(self.store, self.traces, self.task_manager, self.git, self.agent, config)
        self.resolver = Resolver(
            self.store,
            self.traces,
            self.task_manager,
            self.arbitrator,
            max_retries=config.pipeline.max_retries,
        )

        pipeline = config.pipeline
        self.scheduler = Scheduler(
            interval_sec=pipeline.poll_interval_sec,
            initial_delay_sec=pipeline.initial_delay_sec,
            stagger_sec=pipeline.stage_stagger_sec,
        )
        for stage in (self.workflow_runner, self.task_watcher, self.committer, self.resolver):
            self.scheduler.register(stage)

    def enqueue(
        self,
        title: str,
        description: str = "",
        workflow: str = "swe",
        depends_on_action_id: str | None = None,
        acceptance_criteria: list[str] | None = None,
        files: list[str] | None = None,
    ) -> PendingAction:
        """Queue a workflow intent as a new trace."""
        meta = WorkflowMeta(
            workflow=workflow,
            title=title,
            description=description,
            acceptance_criteria=acceptance_criteria or [],
            context=WorkflowContext(files=files or []),
            depends_on_action_id=depends_on_action_id,
        )
        return enqueue_workflow(self.store, self.traces, meta)

    async def run_once(self) -> dict[str, dict[str, int]]:
        return await self.scheduler.run_once()

    async def run(self) -> None:
        await self.scheduler.run()

    def stop(self) -> None:
        self.scheduler.stop()

    def status(self) -> dict:
        """Snapshot of queue, traces and tasks for display."""
        pending = self.store.get_pending()
        by_kind = {kind.value: 0 for kind in ActionKind}
        for action in pending:
            by_kind[action.kind.value] += 1

        return {
            "project_id": self.store.project_id,
            "pending": by_kind,
            "traces": self.traces.all(),
            "tasks": self.task_manager.list_tasks(),
        }
