"""Configuration models for Rover Autopilot."""

import hashlib
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def default_project_id(root: Path) -> str:
    """Derive a stable project id from the repository root."""
    resolved = Path(root).resolve()
    slug = re.sub(r"[^a-z0-9]+", "-", resolved.name.lower()).strip("-") or "project"
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


class ProjectConfig(BaseModel):
    """Project configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    root: Path = Field(description="Root directory of the repository")
    id: Optional[str] = Field(default=None, description="Project id (derived from root if unset)")
    data_dir: Path = Field(
        default=Path("~/.rover/data").expanduser(),
        description="Directory holding per-project autopilot data",
    )

    @property
    def project_id(self) -> str:
        return self.id or default_project_id(self.root)


class PipelineConfig(BaseModel):
    """Autopilot pipeline limits and scheduling."""

    max_running_tasks: int = Field(default=3, ge=1, description="Max tasks running at once")
    max_retries: int = Field(default=3, ge=0, description="Max iterate decisions per trace")
    poll_interval_sec: float = Field(default=30.0, gt=0, description="Seconds between stage polls")
    initial_delay_sec: float = Field(default=15.0, ge=0, description="Delay before first poll")
    stage_stagger_sec: float = Field(
        default=5.0,
        ge=0,
        description="Offset between consecutive stages' first poll",
    )


class AgentConfig(BaseModel):
    """AI agent configuration."""

    cli_path: str = Field(default="claude", description="Claude Code CLI path")
    timeout_sec: int = Field(default=300, description="Timeout for arbitration calls")
    commit_message_timeout_sec: int = Field(default=60, description="Timeout for commit messages")
    permission_mode: str = Field(default="bypassPermissions", description="Claude permission mode")


class SandboxConfig(BaseModel):
    """Sandboxed execution configuration."""

    enabled: bool = Field(default=True, description="Start a container per task")
    docker_cli: str = Field(default="docker", description="Docker CLI path")
    image: str = Field(default="ghcr.io/endorhq/rover/agent:latest", description="Agent image")
    start_timeout_sec: int = Field(default=120, description="Container start timeout")


class CommitConfig(BaseModel):
    """Commit policy."""

    attribution: bool = Field(default=True, description="Append Co-Authored-By trailer")
    recent_commits: int = Field(default=10, description="Recent commits given to the agent")


class WorkspaceConfig(BaseModel):
    """Task workspace setup."""

    exclude_patterns: list[str] = Field(
        default_factory=list,
        description="Sparse-checkout exclude patterns",
    )
    env_files: list[str] = Field(
        default_factory=lambda: [".env", ".env.local"],
        description="Environment files copied into each worktree",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Path = Field(default=Path(".rover/logs"), description="Log directory")
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")


class AutopilotConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    project: ProjectConfig
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    commit: CommitConfig = Field(default_factory=CommitConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
