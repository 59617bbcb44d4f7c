"""Shared fixtures and fake collaborators for pipeline tests."""

from pathlib import Path

import pytest

from rover_autopilot.agents.base import AgentError, AIAgent
from rover_autopilot.config.models import AutopilotConfig, PipelineConfig, ProjectConfig
from rover_autopilot.pipeline.arbitration import StaticArbitrator
from rover_autopilot.pipeline.runtime import AutopilotRuntime
from rover_autopilot.sandbox.base import Sandbox, SandboxError
from rover_autopilot.state.persistence import save_json
from rover_autopilot.state.store import ActionStore
from rover_autopilot.state.traces import TraceBook
from rover_autopilot.tasks.manager import FileTaskManager
from rover_autopilot.utils.git import GitError


class FakeGit:
    """In-memory stand-in for GitOps."""

    def __init__(self, branch: str = "main"):
        self.branch = branch
        self.worktrees: list[tuple[Path, str, str | None]] = []
        self.sparse: list[tuple[Path, list[str]]] = []
        self.dirty: set[str] = set()
        self.commits: list[tuple[Path, str]] = []
        self.commit_error = False
        self.recent = ["Add parser", "Fix typo in README"]

    async def get_current_branch(self) -> str:
        return self.branch

    async def create_worktree(self, worktree_path: Path, branch: str, base: str | None = None) -> None:
        worktree_path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append((worktree_path, branch, base))

    async def get_commit_hash(self, ref: str = "HEAD", worktree: Path | None = None) -> str:
        return f"{len(self.commits):040d}"

    async def setup_sparse_checkout(self, worktree: Path, exclude_patterns: list[str]) -> None:
        self.sparse.append((worktree, exclude_patterns))

    async def has_uncommitted_changes(self, worktree: Path) -> bool:
        return str(worktree) in self.dirty

    async def add_and_commit(self, message: str, worktree: Path) -> str:
        if self.commit_error:
            raise GitError(
                "Git command failed: commit -m\nfatal: cannot lock ref",
                command="git commit -m",
                exit_code=128,
                stderr="fatal: cannot lock ref",
            )
        self.commits.append((worktree, message))
        self.dirty.discard(str(worktree))
        return f"{len(self.commits):040d}"

    async def get_recent_commits(self, count: int = 10, worktree: Path | None = None) -> list[str]:
        return self.recent[:count]


class FakeSandbox(Sandbox):
    def __init__(self, task, factory: "FakeSandboxFactory"):
        super().__init__(task)
        self.factory = factory

    async def create_and_start(self) -> str:
        if self.factory.fail:
            raise SandboxError("docker: image not found")
        self.factory.started.append((self.task.id, self.task.iterations))
        return f"container-{self.task.id}-{self.task.iterations}"


class FakeSandboxFactory:
    """Records every sandbox start; ``fail`` makes starts raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.started: list[tuple[int, int]] = []

    def __call__(self, task) -> Sandbox:
        return FakeSandbox(task, self)


class FakeAgent(AIAgent):
    """Agent returning canned output."""

    def __init__(self, response: str = "", commit_message: str | None = "Implement feature"):
        super().__init__({})
        self.response = response
        self.commit_message = commit_message
        self.prompts: list[str] = []
        self.fail = False

    async def invoke(self, prompt, json_output=False, cwd=None, system_prompt=None) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise AgentError("agent unavailable")
        return self.response

    async def generate_commit_message(self, title, description, recent_commits, summaries):
        return self.commit_message


@pytest.fixture
def config(tmp_path):
    """Autopilot configuration rooted in a temporary directory."""
    root = tmp_path / "repo"
    root.mkdir()
    return AutopilotConfig(
        project=ProjectConfig(root=root, id="test-project", data_dir=tmp_path / "data"),
        pipeline=PipelineConfig(max_running_tasks=3, max_retries=3),
    )


@pytest.fixture
def store(config):
    store = ActionStore(config.project.data_dir, config.project.project_id)
    store.ensure_dir()
    return store


@pytest.fixture
def traces(store):
    return TraceBook(store)


@pytest.fixture
def task_manager(store):
    return FileTaskManager(store.tasks_dir)


@pytest.fixture
def git():
    return FakeGit()


@pytest.fixture
def sandbox_factory():
    return FakeSandboxFactory()


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def arbitrator():
    return StaticArbitrator(decision="iterate", reason="tests are fixable", instructions="Fix the failing test")


@pytest.fixture
def runtime(config, task_manager, git, agent, sandbox_factory, arbitrator):
    """Runtime wired with fake collaborators."""
    return AutopilotRuntime(
        config,
        task_manager=task_manager,
        git=git,
        agent=agent,
        sandbox_factory=sandbox_factory,
        arbitrator=arbitrator,
    )


@pytest.fixture
def finish_task(task_manager):
    """Write the sandbox's status report for a task's latest iteration."""

    def _finish(task_id: int, status: str = "completed", error: str | None = None, summary: str | None = None):
        task = task_manager.get_task(task_id)
        iteration_dir = task_manager.iterations_path(task_id) / str(task.iterations)
        save_json({"status": status, "error": error}, iteration_dir / "status.json")
        if summary is not None:
            (iteration_dir / "summary.md").write_text(summary)

    return _finish
