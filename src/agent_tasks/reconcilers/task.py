"""Single-task state machine: start the job, observe it, expire the task."""

from __future__ import annotations

import logging
from datetime import timedelta

from agent_tasks.api.manifests import (
    dump_job_status,
    dump_task_status,
    read_job_status,
    read_profile,
    read_task_spec,
    read_task_status,
)
from agent_tasks.api.types import (
    CONFIG_MAP_KIND,
    JOB_KIND,
    LABEL_APP,
    LABEL_APP_VALUE,
    LABEL_TASK,
    PROFILE_KIND,
    TASK_KIND,
    Condition,
    ExecutionProfile,
    JobStatus,
    ObjectMeta,
    Resource,
    ResourceKey,
    TaskPhase,
    TaskSpec,
    TaskStatus,
)
from agent_tasks.config import Settings
from agent_tasks.contexts.aggregator import ContentAggregator, ContentBundle
from agent_tasks.contexts.resolver import ContextResolver
from agent_tasks.errors import AlreadyExistsError, ConfigurationError, ManifestError
from agent_tasks.jobs.builder import JobBuilder
from agent_tasks.reconcilers.base import (
    Clock,
    ReconcileResult,
    set_condition,
    write_status_if_changed,
)
from agent_tasks.storage.common import utc_now
from agent_tasks.storage.repository import ResourceStore

logger = logging.getLogger(__name__)

CONDITION_FAILED = "Failed"
CONDITION_COMPLETED = "Completed"


def job_name_for(task_name: str) -> str:
    return f"{task_name}-job"


def context_config_map_for(task_name: str) -> str:
    return f"{task_name}-context"


class TaskReconciler:
    """Drives one Task from creation to a terminal phase and, after TTL, deletion.

    Everything needed on a pass is read back from the stored Task and its Job;
    nothing is kept in memory between passes.
    """

    kind = TASK_KIND

    def __init__(
        self,
        store: ResourceStore,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.resolver = ContextResolver(store)
        self.builder = JobBuilder(settings.lifecycle)

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        task = self.store.try_get(TASK_KIND, key.namespace, key.name)
        if task is None:
            return ReconcileResult.done()
        status = read_task_status(task.status)
        if status.phase in (None, TaskPhase.PENDING):
            return self._start(task, status)
        if status.phase == TaskPhase.RUNNING:
            return self._observe(task, status)
        return self._expire(task, status)

    # Phase handlers

    def _start(self, task: Resource, status: TaskStatus) -> ReconcileResult:
        job_name = job_name_for(task.name)
        existing_job = self.store.try_get(JOB_KIND, task.namespace, job_name)
        if existing_job is not None:
            # Crash between job creation and status write: adopt the job.
            status.phase = TaskPhase.RUNNING
            status.job_name = job_name
            status.start_time = existing_job.metadata.created_at or self.clock()
            write_status_if_changed(self.store, task, dump_task_status(status))
            logger.info("Task %s adopted existing job %s", task.key, job_name)
            return ReconcileResult.done()

        try:
            spec = read_task_spec(task.spec)
            profile = self._resolve_profile(task, spec)
            bundle = self._build_bundle(task, spec, profile)
        except ManifestError as error:
            return self._fail(task, status, reason="InvalidSpec", message=str(error))
        except ConfigurationError as error:
            return self._fail(task, status, reason=error.reason, message=str(error))

        config_map_name = context_config_map_for(task.name) if bundle.files else None
        if config_map_name is not None:
            self._apply_context_config_map(task, config_map_name, bundle)

        descriptor = self.builder.build(
            task=task,
            spec=spec,
            profile=profile,
            bundle=bundle,
            job_name=job_name,
            context_config_map=config_map_name,
        )
        try:
            job = self.store.create(
                Resource(
                    kind=JOB_KIND,
                    metadata=ObjectMeta(
                        name=descriptor.name,
                        namespace=descriptor.namespace,
                        labels=dict(descriptor.labels),
                        owner=descriptor.owner,
                    ),
                    spec=descriptor.to_spec(),
                    status=dump_job_status(JobStatus()),
                ),
            )
        except AlreadyExistsError:
            logger.debug("Job %s already exists for task %s", job_name, task.key)
            job = self.store.get(JOB_KIND, task.namespace, job_name)

        status.phase = TaskPhase.RUNNING
        status.job_name = job_name
        status.start_time = job.metadata.created_at or self.clock()
        write_status_if_changed(self.store, task, dump_task_status(status))
        logger.info("Task %s started job %s (profile=%s)", task.key, job_name, profile.name)
        return ReconcileResult.done()

    def _observe(self, task: Resource, status: TaskStatus) -> ReconcileResult:
        job_name = status.job_name or job_name_for(task.name)
        job = self.store.try_get(JOB_KIND, task.namespace, job_name)
        if job is None:
            return self._fail(
                task,
                status,
                reason="JobNotFound",
                message=f"Job {task.namespace}/{job_name} no longer exists",
            )
        job_status = read_job_status(job.status)
        if job_status.succeeded > 0:
            now = self.clock()
            status.phase = TaskPhase.COMPLETED
            status.completion_time = now
            status.conditions = set_condition(
                status.conditions,
                Condition(
                    type=CONDITION_COMPLETED,
                    status="True",
                    reason="JobSucceeded",
                    message=f"Job {job_name} succeeded",
                    last_transition_time=now,
                ),
            )
            write_status_if_changed(self.store, task, dump_task_status(status))
            logger.info("Task %s completed", task.key)
            return self._ttl_result(task, status)
        if job_status.failed > 0:
            return self._fail(
                task,
                status,
                reason="JobFailed",
                message=f"Job {job_name} reported {job_status.failed} failed run(s)",
            )
        return ReconcileResult.done()

    def _expire(self, task: Resource, status: TaskStatus) -> ReconcileResult:
        result = self._ttl_result(task, status)
        if result.wake_at is None or result.wake_at > self.clock():
            return result
        self.store.delete(TASK_KIND, task.namespace, task.name)
        logger.info(
            "Task %s deleted after TTL of %ss",
            task.key,
            self.settings.lifecycle.ttl_seconds_after_finished,
        )
        return ReconcileResult.done()

    # Helpers

    def _fail(
        self,
        task: Resource,
        status: TaskStatus,
        *,
        reason: str,
        message: str,
    ) -> ReconcileResult:
        now = self.clock()
        status.phase = TaskPhase.FAILED
        status.completion_time = now
        status.conditions = set_condition(
            status.conditions,
            Condition(
                type=CONDITION_FAILED,
                status="True",
                reason=reason,
                message=message,
                last_transition_time=now,
            ),
        )
        write_status_if_changed(self.store, task, dump_task_status(status))
        logger.warning("Task %s failed: %s (%s)", task.key, message, reason)
        return self._ttl_result(task, status)

    def _ttl_result(self, task: Resource, status: TaskStatus) -> ReconcileResult:
        ttl = self.settings.lifecycle.ttl_seconds_after_finished
        if ttl <= 0 or status.completion_time is None:
            return ReconcileResult.done()
        expires_at = status.completion_time + timedelta(seconds=ttl)
        logger.debug("Task %s expires at %s", task.key, expires_at.isoformat())
        return ReconcileResult.wake(expires_at)

    def _resolve_profile(self, task: Resource, spec: TaskSpec) -> ExecutionProfile:
        """Explicit profileRef, else the namespace default profile, else built-in defaults."""

        if spec.profile_ref is not None:
            resource = self.store.try_get(PROFILE_KIND, task.namespace, spec.profile_ref)
            if resource is None:
                raise ConfigurationError(
                    f"ExecutionProfile {task.namespace}/{spec.profile_ref} not found",
                    reason="ProfileNotFound",
                )
            return self._read_profile(resource)

        defaults = self.settings.profile
        resource = self.store.try_get(PROFILE_KIND, task.namespace, defaults.profile_name)
        if resource is not None:
            return self._read_profile(resource)
        return ExecutionProfile(
            name=defaults.profile_name,
            namespace=task.namespace,
            image=defaults.image,
            workspace_dir=defaults.workspace_dir,
            service_account_name=defaults.service_account,
        )

    def _read_profile(self, resource: Resource) -> ExecutionProfile:
        try:
            return read_profile(resource)
        except ManifestError as error:
            raise ConfigurationError(str(error), reason="InvalidProfile") from error

    def _build_bundle(
        self,
        task: Resource,
        spec: TaskSpec,
        profile: ExecutionProfile,
    ) -> ContentBundle:
        resolved = self.resolver.resolve_all(
            [*profile.default_contexts, *spec.contexts],
            namespace=task.namespace,
        )
        aggregator = ContentAggregator(profile.workspace_dir)
        return aggregator.aggregate(resolved, description=spec.description)

    def _apply_context_config_map(
        self,
        task: Resource,
        name: str,
        bundle: ContentBundle,
    ) -> None:
        data = bundle.config_data()
        existing = self.store.try_get(CONFIG_MAP_KIND, task.namespace, name)
        if existing is None:
            try:
                self.store.create(
                    Resource(
                        kind=CONFIG_MAP_KIND,
                        metadata=ObjectMeta(
                            name=name,
                            namespace=task.namespace,
                            labels={LABEL_APP: LABEL_APP_VALUE, LABEL_TASK: task.name},
                            owner=task.owner_reference(),
                        ),
                        spec={"data": data},
                    ),
                )
                return
            except AlreadyExistsError:
                existing = self.store.get(CONFIG_MAP_KIND, task.namespace, name)
        if existing.spec.get("data") != data:
            existing.spec = {"data": data}
            self.store.update(existing)
