"""Batch fan-out: one Task per variable context set, with aggregate progress."""

from __future__ import annotations

import logging
from typing import Any

from agent_tasks.api.manifests import (
    dump_batch_run_status,
    read_batch_run_spec,
    read_batch_run_status,
    read_batch_template,
    read_task_status,
)
from agent_tasks.api.types import (
    ANNOTATION_PAUSE,
    BATCH_KIND,
    BATCH_RUN_KIND,
    LABEL_BATCH_RUN,
    TASK_KIND,
    TERMINAL_BATCH_PHASES,
    TERMINAL_TASK_PHASES,
    BatchProgress,
    BatchRunPhase,
    BatchRunStatus,
    BatchTaskRecord,
    BatchTemplate,
    Condition,
    ObjectMeta,
    Resource,
    ResourceKey,
    TaskPhase,
)
from agent_tasks.config import Settings
from agent_tasks.errors import AlreadyExistsError, ConfigurationError, ManifestError
from agent_tasks.reconcilers.base import (
    Clock,
    ReconcileResult,
    remove_condition,
    set_condition,
    write_status_if_changed,
)
from agent_tasks.storage.common import utc_now
from agent_tasks.storage.repository import ResourceStore

logger = logging.getLogger(__name__)

CONDITION_FAILED = "Failed"
CONDITION_PAUSED = "Paused"


def batch_task_name(batch_run_name: str, index: int) -> str:
    return f"{batch_run_name}-task-{index}"


def expand_template(template: BatchTemplate) -> list[list[dict[str, Any]]]:
    """Per-task context lists: constant contexts followed by that task's variable set."""

    return [
        [*template.constant_context, *variable] for variable in template.variable_contexts
    ]


def is_paused(resource: Resource) -> bool:
    return resource.metadata.annotations.get(ANNOTATION_PAUSE) == "true"


class BatchReconciler:
    """Expands a BatchRun into Tasks and rolls their phases up into counters.

    Counters are always recomputed from the per-index records, so
    ``total == pending + running + completed + failed`` holds after every pass.
    While paused, pending indices are left uncreated but running ones are
    still observed to completion.
    """

    kind = BATCH_RUN_KIND

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

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        run = self.store.try_get(BATCH_RUN_KIND, key.namespace, key.name)
        if run is None:
            return ReconcileResult.done()
        status = read_batch_run_status(run.status)
        if status.phase in TERMINAL_BATCH_PHASES:
            return ReconcileResult.done()

        try:
            if status.phase is None:
                return self._initialize(run, status, self._load_template(run))
            return self._advance(run, status)
        except ConfigurationError as error:
            return self._fail_invalid(run, status, reason=error.reason, message=str(error))

    def _initialize(
        self,
        run: Resource,
        status: BatchRunStatus,
        template: BatchTemplate,
    ) -> ReconcileResult:
        status.phase = BatchRunPhase.PENDING
        status.start_time = self.clock()
        status.tasks = [
            BatchTaskRecord(index=index, contexts=contexts)
            for index, contexts in enumerate(expand_template(template))
        ]
        status.progress = _count(status.tasks)
        write_status_if_changed(self.store, run, dump_batch_run_status(status))
        logger.info("BatchRun %s initialized with %d task(s)", run.key, len(status.tasks))
        return ReconcileResult.requeue(0)

    def _advance(self, run: Resource, status: BatchRunStatus) -> ReconcileResult:
        now = self.clock()
        paused = is_paused(run)

        for record in status.tasks:
            if record.phase == TaskPhase.RUNNING:
                self._observe(run, record)

        pending = [record for record in status.tasks if record.phase == TaskPhase.PENDING]
        if pending and not paused:
            profile_ref = self._load_template(run).profile_ref
            for record in pending:
                self._create_task(run, record, profile_ref=profile_ref)

        status.progress = _count(status.tasks)
        progress = status.progress
        if progress.pending == 0 and progress.running == 0:
            status.conditions = remove_condition(status.conditions, CONDITION_PAUSED)
            status.completion_time = now
            if progress.failed:
                status.phase = BatchRunPhase.FAILED
                status.conditions = set_condition(
                    status.conditions,
                    Condition(
                        type=CONDITION_FAILED,
                        status="True",
                        reason="TasksFailed",
                        message=f"{progress.failed} of {progress.total} task(s) failed",
                        last_transition_time=now,
                    ),
                )
            else:
                status.phase = BatchRunPhase.SUCCEEDED
            write_status_if_changed(self.store, run, dump_batch_run_status(status))
            logger.info(
                "BatchRun %s finished: %s (completed=%d failed=%d)",
                run.key,
                status.phase.value,
                progress.completed,
                progress.failed,
            )
            return ReconcileResult.done()

        if paused:
            status.phase = BatchRunPhase.PAUSED
            status.conditions = set_condition(
                status.conditions,
                Condition(
                    type=CONDITION_PAUSED,
                    status="True",
                    reason="PauseRequested",
                    message=f"{progress.pending} pending task(s) held back",
                    last_transition_time=now,
                ),
            )
        else:
            started = progress.running or progress.completed or progress.failed
            status.phase = BatchRunPhase.RUNNING if started else BatchRunPhase.PENDING
            status.conditions = remove_condition(status.conditions, CONDITION_PAUSED)
        write_status_if_changed(self.store, run, dump_batch_run_status(status))
        return ReconcileResult.requeue(self.settings.controller.batch_requeue_seconds)

    def _observe(self, run: Resource, record: BatchTaskRecord) -> None:
        task_name = record.task_name or batch_task_name(run.name, record.index)
        task = self.store.try_get(TASK_KIND, run.namespace, task_name)
        if task is None:
            logger.warning("BatchRun %s lost task %s; counting it as failed", run.key, task_name)
            record.phase = TaskPhase.FAILED
            record.completion_time = self.clock()
            return
        task_status = read_task_status(task.status)
        if task_status.phase in TERMINAL_TASK_PHASES:
            record.phase = task_status.phase
            record.completion_time = task_status.completion_time or self.clock()

    def _create_task(
        self,
        run: Resource,
        record: BatchTaskRecord,
        *,
        profile_ref: str | None,
    ) -> None:
        task_name = batch_task_name(run.name, record.index)
        spec: dict[str, Any] = {"contexts": list(record.contexts)}
        if profile_ref is not None:
            spec["profileRef"] = profile_ref
        try:
            self.store.create(
                Resource(
                    kind=TASK_KIND,
                    metadata=ObjectMeta(
                        name=task_name,
                        namespace=run.namespace,
                        labels={LABEL_BATCH_RUN: run.name},
                        owner=run.owner_reference(),
                    ),
                    spec=spec,
                ),
            )
        except AlreadyExistsError:
            logger.debug("Task %s already exists for BatchRun %s", task_name, run.key)
        record.phase = TaskPhase.RUNNING
        record.task_name = task_name
        record.start_time = self.clock()

    def _load_template(self, run: Resource) -> BatchTemplate:
        try:
            spec = read_batch_run_spec(run.spec)
        except ManifestError as error:
            raise ConfigurationError(str(error), reason="InvalidSpec") from error
        if spec.template is not None:
            return spec.template
        batch = self.store.try_get(BATCH_KIND, run.namespace, spec.batch_ref or "")
        if batch is None:
            raise ConfigurationError(
                f"Batch {run.namespace}/{spec.batch_ref} not found",
                reason="BatchNotFound",
            )
        try:
            return read_batch_template(batch.spec, where=f"Batch {batch.name}.spec")
        except ManifestError as error:
            raise ConfigurationError(str(error), reason="InvalidBatch") from error

    def _fail_invalid(
        self,
        run: Resource,
        status: BatchRunStatus,
        *,
        reason: str,
        message: str,
    ) -> ReconcileResult:
        now = self.clock()
        status.phase = BatchRunPhase.FAILED
        status.start_time = status.start_time or now
        status.completion_time = now
        status.progress = _count(status.tasks)
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
        write_status_if_changed(self.store, run, dump_batch_run_status(status))
        logger.warning("BatchRun %s failed: %s (%s)", run.key, message, reason)
        return ReconcileResult.done()


def _count(records: list[BatchTaskRecord]) -> BatchProgress:
    progress = BatchProgress(total=len(records))
    for record in records:
        if record.phase == TaskPhase.PENDING:
            progress.pending += 1
        elif record.phase == TaskPhase.RUNNING:
            progress.running += 1
        elif record.phase == TaskPhase.COMPLETED:
            progress.completed += 1
        else:
            progress.failed += 1
    return progress
