"""Runtime configuration for the store, reconcilers and controller loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_IMAGE = "ghcr.io/agent-tasks/agent:latest"
DEFAULT_GIT_SYNC_IMAGE = "registry.k8s.io/git-sync/git-sync:v4.4.0"


@dataclass(slots=True)
class ProfileDefaults:
    """Built-in execution profile used when a namespace defines none."""

    profile_name: str = "default"
    image: str = DEFAULT_AGENT_IMAGE
    workspace_dir: str = "/workspace"
    service_account: str = "agent-tasks-agent"


@dataclass(slots=True)
class TaskLifecycleSettings:
    """Task execution and cleanup settings."""

    ttl_seconds_after_finished: int = 604_800
    keep_alive_seconds: int = 3_600
    git_sync_image: str = DEFAULT_GIT_SYNC_IMAGE


@dataclass(slots=True)
class ControllerSettings:
    """Reconcile loop settings."""

    poll_interval_seconds: float = 1.0
    batch_requeue_seconds: int = 10
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 300.0
    change_retention: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    profile: ProfileDefaults = field(default_factory=ProfileDefaults)
    lifecycle: TaskLifecycleSettings = field(default_factory=TaskLifecycleSettings)
    controller: ControllerSettings = field(default_factory=ControllerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with local-development defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_TASKS_DB_PATH", ".agent_tasks.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_TASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            profile=ProfileDefaults(
                profile_name=os.getenv("AGENT_TASKS_DEFAULT_PROFILE", "default"),
                image=os.getenv("AGENT_TASKS_DEFAULT_IMAGE", DEFAULT_AGENT_IMAGE),
                workspace_dir=os.getenv("AGENT_TASKS_WORKSPACE_DIR", "/workspace"),
                service_account=os.getenv("AGENT_TASKS_SERVICE_ACCOUNT", "agent-tasks-agent"),
            ),
            lifecycle=TaskLifecycleSettings(
                ttl_seconds_after_finished=int(
                    os.getenv("AGENT_TASKS_TASK_TTL_SECONDS", "604800"),
                ),
                keep_alive_seconds=int(os.getenv("AGENT_TASKS_KEEP_ALIVE_SECONDS", "3600")),
                git_sync_image=os.getenv("AGENT_TASKS_GIT_SYNC_IMAGE", DEFAULT_GIT_SYNC_IMAGE),
            ),
            controller=ControllerSettings(
                poll_interval_seconds=float(
                    os.getenv("AGENT_TASKS_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                batch_requeue_seconds=int(os.getenv("AGENT_TASKS_BATCH_REQUEUE_SECONDS", "10")),
                retry_base_seconds=float(os.getenv("AGENT_TASKS_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("AGENT_TASKS_RETRY_MAX_SECONDS", "300.0")),
                change_retention=int(os.getenv("AGENT_TASKS_CHANGE_RETENTION", "1000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the controller cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_TASKS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.profile.workspace_dir.startswith("/"):
            raise ValueError(
                "AGENT_TASKS_WORKSPACE_DIR must be an absolute path: "
                f"{self.profile.workspace_dir!r}",
            )
        if not self.profile.image.strip():
            raise ValueError("AGENT_TASKS_DEFAULT_IMAGE must not be empty.")
        if self.lifecycle.ttl_seconds_after_finished < 0:
            raise ValueError("AGENT_TASKS_TASK_TTL_SECONDS must be >= 0 (0 disables cleanup).")
        if self.lifecycle.keep_alive_seconds <= 0:
            raise ValueError("AGENT_TASKS_KEEP_ALIVE_SECONDS must be > 0.")
        if self.controller.poll_interval_seconds < 0:
            raise ValueError("AGENT_TASKS_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.controller.batch_requeue_seconds <= 0:
            raise ValueError("AGENT_TASKS_BATCH_REQUEUE_SECONDS must be > 0.")
        if self.controller.change_retention < 0:
            raise ValueError("AGENT_TASKS_CHANGE_RETENTION must be >= 0.")
        if self.controller.retry_base_seconds < 0:
            raise ValueError("AGENT_TASKS_RETRY_BASE_SECONDS must be >= 0.")
        if self.controller.retry_max_seconds < self.controller.retry_base_seconds:
            raise ValueError(
                "AGENT_TASKS_RETRY_MAX_SECONDS must be >= AGENT_TASKS_RETRY_BASE_SECONDS.",
            )
