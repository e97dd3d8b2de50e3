"""Controllers for agent-tasks CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter

from agent_tasks.api.manifests import (
    dump_job_status,
    read_batch_run_spec,
    read_batch_run_status,
    read_batch_template,
    read_cron_task_spec,
    read_cron_task_status,
    read_job_status,
    read_profile,
    read_reusable_context,
    read_task_spec,
    read_task_status,
    resource_from_document,
    resource_to_document,
)
from agent_tasks.api.types import (
    ANNOTATION_PAUSE,
    BATCH_KIND,
    BATCH_RUN_KIND,
    CONFIG_MAP_KIND,
    CONTEXT_KIND,
    CRON_TASK_KIND,
    JOB_KIND,
    PROFILE_KIND,
    SECRET_KIND,
    TASK_KIND,
    JobStatus,
    Resource,
)
from agent_tasks.config import Settings
from agent_tasks.errors import ManifestError
from agent_tasks.manager import build_manager
from agent_tasks.storage.repository import SqliteResourceStore

KIND_ALIASES = {
    "task": TASK_KIND,
    "tasks": TASK_KIND,
    "batch": BATCH_KIND,
    "batches": BATCH_KIND,
    "batchrun": BATCH_RUN_KIND,
    "batchruns": BATCH_RUN_KIND,
    "crontask": CRON_TASK_KIND,
    "crontasks": CRON_TASK_KIND,
    "executionprofile": PROFILE_KIND,
    "executionprofiles": PROFILE_KIND,
    "profile": PROFILE_KIND,
    "profiles": PROFILE_KIND,
    "context": CONTEXT_KIND,
    "contexts": CONTEXT_KIND,
    "configmap": CONFIG_MAP_KIND,
    "configmaps": CONFIG_MAP_KIND,
    "secret": SECRET_KIND,
    "secrets": SECRET_KIND,
    "job": JOB_KIND,
    "jobs": JOB_KIND,
}


@dataclass(slots=True)
class ApplyCommand:
    """CLI input for creating or updating resources from manifest files."""

    db_path: Path | None
    files: tuple[Path, ...]


@dataclass(slots=True)
class GetCommand:
    """CLI input for listing resources of one kind."""

    db_path: Path | None
    kind: str
    namespace: str | None
    name: str | None = None


@dataclass(slots=True)
class ResourceCommand:
    """CLI input addressing one resource."""

    db_path: Path | None
    kind: str
    namespace: str
    name: str


@dataclass(slots=True)
class JobReportCommand:
    """CLI input for recording execution backend counters on a Job."""

    db_path: Path | None
    namespace: str
    name: str
    succeeded: int
    failed: int
    active: int


@dataclass(slots=True)
class BatchPauseCommand:
    db_path: Path | None
    namespace: str
    name: str
    paused: bool


@dataclass(slots=True)
class ControllerRunCommand:
    """CLI input for the reconcile loop."""

    db_path: Path | None
    once: bool
    max_passes: int | None = None
    max_idle_polls: int | None = None


def normalize_kind(value: str) -> str:
    """Map a CLI kind argument (any case, singular or plural) onto a stored kind."""

    kind = KIND_ALIASES.get(value.strip().lower())
    if kind is None:
        raise ManifestError(f"Unknown resource kind: {value!r}")
    return kind


def load_manifests(path: Path) -> list[Resource]:
    """Parse a YAML file that may hold several documents separated by ``---``."""

    with path.open(encoding="utf-8") as handle:
        try:
            documents = [item for item in yaml.safe_load_all(handle) if item is not None]
        except yaml.YAMLError as error:
            raise ManifestError(f"{path}: invalid YAML: {error}") from error
    resources = []
    for document in documents:
        resource = resource_from_document(document)
        validate_resource(resource)
        resources.append(resource)
    return resources


def validate_resource(resource: Resource) -> None:
    """Reject manifests whose spec cannot be read for their kind."""

    where = f"{resource.kind} {resource.namespace}/{resource.name}"
    if resource.kind == TASK_KIND:
        read_task_spec(resource.spec, where=f"{where}.spec")
    elif resource.kind == PROFILE_KIND:
        read_profile(resource)
    elif resource.kind == CONTEXT_KIND:
        read_reusable_context(resource)
    elif resource.kind == BATCH_KIND:
        read_batch_template(resource.spec, where=f"{where}.spec")
    elif resource.kind == BATCH_RUN_KIND:
        read_batch_run_spec(resource.spec, where=f"{where}.spec")
    elif resource.kind == CRON_TASK_KIND:
        spec = read_cron_task_spec(resource.spec, where=f"{where}.spec")
        if not croniter.is_valid(spec.schedule):
            raise ManifestError(f"{where}.spec.schedule is not a valid cron expression")
    elif resource.kind not in (CONFIG_MAP_KIND, SECRET_KIND, JOB_KIND):
        raise ManifestError(f"Unsupported resource kind: {resource.kind}")


class AgentTasksCliController:
    """Application controller for resource and controller-loop commands."""

    def apply(self, command: ApplyCommand) -> list[str]:
        resources = [resource for path in command.files for resource in load_manifests(path)]
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        with _store(settings) as store:
            for resource in resources:
                label = f"{resource.kind.lower()}/{resource.name} ({resource.namespace})"
                existing = store.try_get(resource.kind, resource.namespace, resource.name)
                if existing is None:
                    store.create(resource)
                    lines.append(f"{label} created")
                    continue
                if (
                    existing.spec == resource.spec
                    and existing.metadata.labels == resource.metadata.labels
                    and existing.metadata.annotations == resource.metadata.annotations
                ):
                    lines.append(f"{label} unchanged")
                    continue
                existing.spec = resource.spec
                existing.metadata.labels = resource.metadata.labels
                existing.metadata.annotations = resource.metadata.annotations
                store.update(existing)
                lines.append(f"{label} configured")
        return lines

    def get(self, command: GetCommand) -> list[str]:
        kind = normalize_kind(command.kind)
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            if command.name is not None:
                found = store.try_get(kind, command.namespace or "default", command.name)
                resources = [found] if found is not None else []
            else:
                resources = store.list(kind, command.namespace)

        lines = [f"{kind}: {len(resources)}"]
        for resource in resources:
            lines.append(f"  {resource.namespace}/{resource.name} {_summary(resource)}")
        return lines

    def describe(self, command: ResourceCommand) -> list[str]:
        kind = normalize_kind(command.kind)
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            resource = store.try_get(kind, command.namespace, command.name)
        if resource is None:
            return [f"{kind} not found: {command.namespace}/{command.name}"]
        rendered = yaml.safe_dump(
            resource_to_document(resource),
            sort_keys=False,
            allow_unicode=True,
        )
        return rendered.rstrip("\n").splitlines()

    def delete(self, command: ResourceCommand) -> list[str]:
        kind = normalize_kind(command.kind)
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            deleted = store.delete(kind, command.namespace, command.name)
        if not deleted:
            return [f"{kind} not found: {command.namespace}/{command.name}"]
        return [f"{kind.lower()}/{command.name} ({command.namespace}) deleted"]

    def report_job(self, command: JobReportCommand) -> list[str]:
        """Record job counters the way an execution backend would."""

        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            job = store.get(JOB_KIND, command.namespace, command.name)
            job.status = dump_job_status(
                JobStatus(
                    succeeded=command.succeeded,
                    failed=command.failed,
                    active=command.active,
                ),
            )
            store.update_status(job)
        return [
            f"Job {command.namespace}/{command.name} reported: "
            f"succeeded={command.succeeded} failed={command.failed} active={command.active}",
        ]

    def set_batch_paused(self, command: BatchPauseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            run = store.get(BATCH_RUN_KIND, command.namespace, command.name)
            if command.paused:
                run.metadata.annotations[ANNOTATION_PAUSE] = "true"
            else:
                run.metadata.annotations.pop(ANNOTATION_PAUSE, None)
            store.update(run)
        action = "paused" if command.paused else "resumed"
        return [f"BatchRun {command.namespace}/{command.name} {action}"]

    def run_controller(self, command: ControllerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _store(settings) as store:
            manager = build_manager(store, settings)
            summary = (
                manager.run_once()
                if command.once
                else manager.run_loop(
                    max_passes=command.max_passes,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Controller summary: "
            f"reconciled={summary.reconciled} requeued={summary.requeued} "
            f"errors={summary.errors} idle_polls={summary.idle_polls}",
        ]


def _summary(resource: Resource) -> str:
    if resource.kind == TASK_KIND:
        status = read_task_status(resource.status)
        phase = status.phase.value if status.phase is not None else "-"
        return f"phase={phase} job={status.job_name or '-'}"
    if resource.kind == BATCH_RUN_KIND:
        run_status = read_batch_run_status(resource.status)
        phase = run_status.phase.value if run_status.phase is not None else "-"
        progress = run_status.progress
        return (
            f"phase={phase} total={progress.total} pending={progress.pending} "
            f"running={progress.running} completed={progress.completed} failed={progress.failed}"
        )
    if resource.kind == CRON_TASK_KIND:
        cron_status = read_cron_task_status(resource.status)
        last = (
            cron_status.last_schedule_time.isoformat()
            if cron_status.last_schedule_time is not None
            else "-"
        )
        return f"last_schedule={last} active={len(cron_status.active)}"
    if resource.kind == JOB_KIND:
        job_status = read_job_status(resource.status)
        return (
            f"succeeded={job_status.succeeded} failed={job_status.failed} "
            f"active={job_status.active}"
        )
    data: Any = resource.spec.get("data")
    if isinstance(data, dict):
        return f"keys={len(data)}"
    return f"rv={resource.metadata.resource_version}"


@contextmanager
def _store(settings: Settings) -> Iterator[SqliteResourceStore]:
    store = SqliteResourceStore(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
