"""Cron recurrence: fire Tasks on schedule under a concurrency policy."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from croniter import croniter

from agent_tasks.api.manifests import (
    dump_cron_task_status,
    read_cron_task_spec,
    read_cron_task_status,
    read_task_status,
)
from agent_tasks.api.types import (
    ANNOTATION_SCHEDULED_TIME,
    CRON_TASK_KIND,
    LABEL_CRON_TASK,
    TASK_KIND,
    ConcurrencyPolicy,
    Condition,
    CronTaskSpec,
    CronTaskStatus,
    ObjectMeta,
    Resource,
    ResourceKey,
    TaskPhase,
)
from agent_tasks.errors import AlreadyExistsError
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

CONDITION_INVALID = "InvalidSchedule"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def cron_task_name(cron_name: str, scheduled_at: datetime) -> str:
    return f"{cron_name}-{int(scheduled_at.timestamp())}"


def most_recent_fire_time(schedule: str, *, after: datetime, now: datetime) -> datetime | None:
    """Latest fire time in ``(after, now]``, or ``None`` when nothing is due."""

    # get_prev excludes its start time; the following fire time covers ``now`` itself.
    latest = croniter(schedule, now).get_prev(datetime)
    following = croniter(schedule, latest).get_next(datetime)
    if following <= now:
        latest = following
    if latest <= after:
        return None
    return latest


def next_fire_time(schedule: str, *, now: datetime) -> datetime:
    return croniter(schedule, now).get_next(datetime)


class CronReconciler:
    """Creates scheduled Task instances and prunes their history.

    Firing is decided from the stored ``lastScheduleTime`` (or the CronTask's
    creation time), so restarts neither skip nor repeat a schedule. Only the
    most recent missed fire time is acted on.
    """

    kind = CRON_TASK_KIND

    def __init__(self, store: ResourceStore, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        cron = self.store.try_get(CRON_TASK_KIND, key.namespace, key.name)
        if cron is None:
            return ReconcileResult.done()
        status = read_cron_task_status(cron.status)
        now = self.clock()

        try:
            spec = read_cron_task_spec(cron.spec)
            upcoming = next_fire_time(spec.schedule, now=now)
        except ValueError as error:
            status.conditions = set_condition(
                status.conditions,
                Condition(
                    type=CONDITION_INVALID,
                    status="True",
                    reason="InvalidSpec",
                    message=str(error),
                    last_transition_time=now,
                ),
            )
            write_status_if_changed(self.store, cron, dump_cron_task_status(status))
            logger.warning("CronTask %s has an invalid spec: %s", cron.key, error)
            return ReconcileResult.done()

        owned = self.store.list(TASK_KIND, cron.namespace, owner_uid=cron.metadata.uid)
        if spec.suspend:
            self._prune_history(cron, spec, owned)
            return ReconcileResult.wake(upcoming)

        status.conditions = remove_condition(status.conditions, CONDITION_INVALID)
        active = [task for task in owned if not _is_finished(task)]
        status.active = [task.name for task in active]
        status.last_successful_time = _latest_success(owned, status.last_successful_time)

        base = status.last_schedule_time or cron.metadata.created_at or now
        due = most_recent_fire_time(spec.schedule, after=base, now=now)
        if due is not None:
            self._fire(cron, spec, status, due=due, now=now, active=active)

        write_status_if_changed(self.store, cron, dump_cron_task_status(status))
        self._prune_history(
            cron,
            spec,
            self.store.list(TASK_KIND, cron.namespace, owner_uid=cron.metadata.uid),
        )
        return ReconcileResult.wake(upcoming)

    def _fire(  # noqa: PLR0913
        self,
        cron: Resource,
        spec: CronTaskSpec,
        status: CronTaskStatus,
        *,
        due: datetime,
        now: datetime,
        active: list[Resource],
    ) -> None:
        if spec.starting_deadline_seconds is not None:
            late_by = (now - due).total_seconds()
            if late_by > spec.starting_deadline_seconds:
                logger.info(
                    "CronTask %s missed %s by %.0fs (deadline %ss); skipping",
                    cron.key,
                    due.isoformat(),
                    late_by,
                    spec.starting_deadline_seconds,
                )
                return

        if spec.concurrency_policy == ConcurrencyPolicy.FORBID and active:
            logger.info(
                "CronTask %s skipped %s: %d instance(s) still active",
                cron.key,
                due.isoformat(),
                len(active),
            )
            return
        if spec.concurrency_policy == ConcurrencyPolicy.REPLACE:
            for task in active:
                self.store.delete(TASK_KIND, task.namespace, task.name)
                logger.info("CronTask %s replaced active instance %s", cron.key, task.name)
            status.active = []

        task_name = cron_task_name(cron.name, due)
        try:
            self.store.create(
                Resource(
                    kind=TASK_KIND,
                    metadata=ObjectMeta(
                        name=task_name,
                        namespace=cron.namespace,
                        labels={LABEL_CRON_TASK: cron.name},
                        annotations={ANNOTATION_SCHEDULED_TIME: due.isoformat()},
                        owner=cron.owner_reference(),
                    ),
                    spec=dict(spec.task_template),
                ),
            )
            logger.info("CronTask %s created %s for %s", cron.key, task_name, due.isoformat())
        except AlreadyExistsError:
            logger.debug("Task %s already exists for CronTask %s", task_name, cron.key)
        if task_name not in status.active:
            status.active.append(task_name)
        status.last_schedule_time = due

    def _prune_history(self, cron: Resource, spec: CronTaskSpec, owned: list[Resource]) -> None:
        completed = [task for task in owned if _phase(task) == TaskPhase.COMPLETED]
        failed = [task for task in owned if _phase(task) == TaskPhase.FAILED]
        for finished, limit in (
            (completed, spec.successful_history_limit),
            (failed, spec.failed_history_limit),
        ):
            excess = len(finished) - limit
            if excess <= 0:
                continue
            finished.sort(key=lambda task: (task.metadata.created_at or _EPOCH, task.name))
            for task in finished[:excess]:
                self.store.delete(TASK_KIND, task.namespace, task.name)
                logger.info("CronTask %s pruned history instance %s", cron.key, task.name)


def _phase(task: Resource) -> TaskPhase | None:
    return read_task_status(task.status).phase


def _is_finished(task: Resource) -> bool:
    return read_task_status(task.status).is_terminal


def _latest_success(owned: list[Resource], current: datetime | None) -> datetime | None:
    latest = current
    for task in owned:
        task_status = read_task_status(task.status)
        if task_status.phase != TaskPhase.COMPLETED or task_status.completion_time is None:
            continue
        if latest is None or task_status.completion_time > latest:
            latest = task_status.completion_time
    return latest
