from __future__ import annotations

from datetime import timedelta

import allure

from agent_tasks.api.manifests import dump_task_status, read_cron_task_status
from agent_tasks.api.types import ResourceKey, TaskPhase, TaskStatus
from agent_tasks.reconcilers.crontask import (
    CronReconciler,
    cron_task_name,
    most_recent_fire_time,
)
from helpers import T0, make_resource

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Cron Reconciler"),
]

KEY = ResourceKey(kind="CronTask", namespace="default", name="nightly")
MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)


def _cron(store, **spec_overrides) -> None:
    spec = {
        "schedule": "* * * * *",
        "taskTemplate": {"spec": {"description": "Summarize logs"}},
    }
    spec.update(spec_overrides)
    store.create(make_resource("CronTask", "nightly", spec=spec))


def _status(store):
    return read_cron_task_status(store.get("CronTask", "default", "nightly").status)


def _tasks(store) -> list[str]:
    return [task.name for task in store.list("Task", "default")]


def _finish(store, name: str, phase: TaskPhase, clock) -> None:
    task = store.get("Task", "default", name)
    task.status = dump_task_status(TaskStatus(phase=phase, completion_time=clock()))
    store.update_status(task)


def test_most_recent_fire_time_window() -> None:
    assert most_recent_fire_time("* * * * *", after=T0, now=T0) is None
    assert most_recent_fire_time("* * * * *", after=T0, now=T0 + MINUTE) == T0 + MINUTE
    assert (
        most_recent_fire_time("* * * * *", after=T0, now=T0 + 3 * MINUTE + timedelta(seconds=5))
        == T0 + 3 * MINUTE
    )


def test_most_recent_fire_time_just_before_next_boundary() -> None:
    assert (
        most_recent_fire_time("* * * * *", after=T0, now=T0 + MINUTE + timedelta(seconds=59.5))
        == T0 + MINUTE
    )
    assert (
        most_recent_fire_time("0 * * * *", after=T0, now=T0 + 2 * HOUR - timedelta(seconds=0.5))
        == T0 + HOUR
    )


def test_nothing_fires_before_first_schedule(store, clock) -> None:
    _cron(store)
    reconciler = CronReconciler(store, clock=clock)

    result = reconciler.reconcile(KEY)

    assert _tasks(store) == []
    assert result.wake_at == T0 + MINUTE


def test_fires_task_from_template(store, clock) -> None:
    _cron(store)
    reconciler = CronReconciler(store, clock=clock)

    clock.set(T0 + MINUTE)
    result = reconciler.reconcile(KEY)

    name = cron_task_name("nightly", T0 + MINUTE)
    task = store.get("Task", "default", name)
    assert task.spec == {"description": "Summarize logs"}
    assert task.metadata.labels["agent-tasks.io/cron-task"] == "nightly"
    assert task.metadata.annotations["agent-tasks.io/scheduled-at"] == (T0 + MINUTE).isoformat()
    assert task.metadata.owner is not None
    status = _status(store)
    assert status.last_schedule_time == T0 + MINUTE
    assert status.active == [name]
    assert result.wake_at == T0 + 2 * MINUTE

    reconciler.reconcile(KEY)
    assert _tasks(store) == [name]


def test_only_most_recent_missed_time_fires(store, clock) -> None:
    _cron(store)

    clock.set(T0 + 5 * MINUTE + timedelta(seconds=10))
    CronReconciler(store, clock=clock).reconcile(KEY)

    assert _tasks(store) == [cron_task_name("nightly", T0 + 5 * MINUTE)]


def test_forbid_skips_while_active_and_keeps_last_schedule(store, clock) -> None:
    _cron(store, concurrencyPolicy="Forbid")
    reconciler = CronReconciler(store, clock=clock)
    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)

    clock.set(T0 + 2 * MINUTE)
    reconciler.reconcile(KEY)

    assert _tasks(store) == [cron_task_name("nightly", T0 + MINUTE)]
    assert _status(store).last_schedule_time == T0 + MINUTE


def test_replace_deletes_active_instance(store, clock) -> None:
    _cron(store, concurrencyPolicy="Replace")
    reconciler = CronReconciler(store, clock=clock)
    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)

    clock.set(T0 + 2 * MINUTE)
    reconciler.reconcile(KEY)

    second = cron_task_name("nightly", T0 + 2 * MINUTE)
    assert _tasks(store) == [second]
    assert _status(store).active == [second]


def test_allow_runs_instances_concurrently(store, clock) -> None:
    _cron(store)
    reconciler = CronReconciler(store, clock=clock)
    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)
    clock.set(T0 + 2 * MINUTE)
    reconciler.reconcile(KEY)

    assert len(_tasks(store)) == 2
    assert len(_status(store).active) == 2


def test_starting_deadline_skips_late_fire(store, clock) -> None:
    _cron(store, startingDeadlineSeconds=30)

    clock.set(T0 + MINUTE + timedelta(seconds=45))
    CronReconciler(store, clock=clock).reconcile(KEY)

    assert _tasks(store) == []
    assert _status(store).last_schedule_time is None


def test_suspended_cron_does_not_fire(store, clock) -> None:
    _cron(store, suspend=True)

    clock.set(T0 + MINUTE)
    result = CronReconciler(store, clock=clock).reconcile(KEY)

    assert _tasks(store) == []
    assert result.wake_at == T0 + 2 * MINUTE


def test_suspend_leaves_status_untouched(store, clock) -> None:
    _cron(store)
    reconciler = CronReconciler(store, clock=clock)
    first = cron_task_name("nightly", T0 + MINUTE)
    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)
    cron = store.get("CronTask", "default", "nightly")
    cron.spec["suspend"] = True
    version = store.update(cron).metadata.resource_version

    clock.set(T0 + 3 * MINUTE)
    reconciler.reconcile(KEY)

    assert store.get("CronTask", "default", "nightly").metadata.resource_version == version
    status = _status(store)
    assert status.last_schedule_time == T0 + MINUTE
    assert status.active == [first]
    assert _tasks(store) == [first]


def test_reconcile_just_before_boundary_fires_missed_slot(store, clock) -> None:
    _cron(store, schedule="0 * * * *")

    clock.set(T0 + 2 * HOUR - timedelta(seconds=0.5))
    CronReconciler(store, clock=clock).reconcile(KEY)

    assert _tasks(store) == [cron_task_name("nightly", T0 + HOUR)]
    assert _status(store).last_schedule_time == T0 + HOUR


def test_history_limits_prune_oldest_finished(store, clock) -> None:
    _cron(store, successfulTasksHistoryLimit=1)
    reconciler = CronReconciler(store, clock=clock)
    first = cron_task_name("nightly", T0 + MINUTE)
    second = cron_task_name("nightly", T0 + 2 * MINUTE)

    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)
    _finish(store, first, TaskPhase.COMPLETED, clock)
    clock.set(T0 + 2 * MINUTE)
    reconciler.reconcile(KEY)
    _finish(store, second, TaskPhase.COMPLETED, clock)
    clock.set(T0 + 3 * MINUTE)
    reconciler.reconcile(KEY)

    assert _tasks(store) == [second, cron_task_name("nightly", T0 + 3 * MINUTE)]
    status = _status(store)
    assert status.last_successful_time == T0 + 2 * MINUTE
    assert status.active == [cron_task_name("nightly", T0 + 3 * MINUTE)]


def test_failed_history_keeps_newest_by_default(store, clock) -> None:
    _cron(store, concurrencyPolicy="Forbid")
    reconciler = CronReconciler(store, clock=clock)
    first = cron_task_name("nightly", T0 + MINUTE)
    second = cron_task_name("nightly", T0 + 2 * MINUTE)

    clock.set(T0 + MINUTE)
    reconciler.reconcile(KEY)
    _finish(store, first, TaskPhase.FAILED, clock)
    clock.set(T0 + 2 * MINUTE)
    reconciler.reconcile(KEY)
    _finish(store, second, TaskPhase.FAILED, clock)
    reconciler.reconcile(KEY)

    assert _tasks(store) == [second]
    assert _status(store).active == []


def test_invalid_schedule_sets_condition(store, clock) -> None:
    _cron(store, schedule="every now and then")

    result = CronReconciler(store, clock=clock).reconcile(KEY)

    status = _status(store)
    assert result.wake_at is None
    assert status.conditions[0].type == "InvalidSchedule"
    assert _tasks(store) == []
