from __future__ import annotations

import allure

from agent_tasks.api.manifests import (
    dump_batch_run_status,
    dump_task_status,
    read_batch_run_status,
)
from agent_tasks.api.types import (
    BatchProgress,
    BatchRunPhase,
    BatchRunStatus,
    BatchTaskRecord,
    ResourceKey,
    TaskPhase,
    TaskStatus,
)
from agent_tasks.reconcilers.batchrun import BatchReconciler, batch_task_name
from helpers import make_resource

pytestmark = [
    allure.epic("Batch Processing"),
    allure.feature("Batch Reconciler"),
]

KEY = ResourceKey(kind="BatchRun", namespace="default", name="review")

TEMPLATE = {
    "constantContext": [{"inline": "shared"}],
    "variableContexts": [
        [{"inline": "file a"}],
        [{"inline": "file b"}],
        [{"inline": "file c"}],
    ],
    "profileRef": "reviewer",
}


def _status(store) -> BatchRunStatus:
    return read_batch_run_status(store.get("BatchRun", "default", "review").status)


def _finish(store, name: str, phase: TaskPhase, clock) -> None:
    task = store.get("Task", "default", name)
    task.status = dump_task_status(TaskStatus(phase=phase, completion_time=clock()))
    store.update_status(task)


def _assert_counters(status: BatchRunStatus) -> None:
    progress = status.progress
    assert progress.total == len(status.tasks)
    assert progress.total == (
        progress.pending + progress.running + progress.completed + progress.failed
    )


def test_initialize_then_create_one_task_per_variable_set(store, settings, clock) -> None:
    store.create(make_resource("Batch", "nightly", spec=TEMPLATE))
    store.create(make_resource("BatchRun", "review", spec={"batchRef": "nightly"}))
    reconciler = BatchReconciler(store, settings, clock=clock)

    first = reconciler.reconcile(KEY)
    status = _status(store)
    assert first.requeue_after == 0
    assert status.phase == BatchRunPhase.PENDING
    assert status.progress == BatchProgress(total=3, pending=3)
    _assert_counters(status)

    second = reconciler.reconcile(KEY)
    status = _status(store)
    assert second.requeue_after == settings.controller.batch_requeue_seconds
    assert status.phase == BatchRunPhase.RUNNING
    assert status.progress == BatchProgress(total=3, running=3)
    _assert_counters(status)

    tasks = store.list("Task", "default", labels={"agent-tasks.io/batch-run": "review"})
    assert [task.name for task in tasks] == [batch_task_name("review", i) for i in range(3)]
    assert tasks[1].spec == {
        "contexts": [{"inline": "shared"}, {"inline": "file b"}],
        "profileRef": "reviewer",
    }
    assert tasks[0].metadata.owner is not None
    assert tasks[0].metadata.owner.kind == "BatchRun"


def test_reconcile_twice_creates_no_duplicate_tasks(store, settings, clock) -> None:
    store.create(make_resource("BatchRun", "review", spec=TEMPLATE))
    reconciler = BatchReconciler(store, settings, clock=clock)

    for _ in range(4):
        reconciler.reconcile(KEY)

    assert len(store.list("Task", "default")) == 3


def test_run_finishes_failed_when_any_task_failed(store, settings, clock) -> None:
    store.create(make_resource("BatchRun", "review", spec=TEMPLATE))
    reconciler = BatchReconciler(store, settings, clock=clock)
    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)

    _finish(store, "review-task-0", TaskPhase.COMPLETED, clock)
    _finish(store, "review-task-1", TaskPhase.FAILED, clock)
    clock.advance(5)
    reconciler.reconcile(KEY)
    status = _status(store)
    assert status.phase == BatchRunPhase.RUNNING
    assert status.progress == BatchProgress(total=3, running=1, completed=1, failed=1)
    _assert_counters(status)

    _finish(store, "review-task-2", TaskPhase.COMPLETED, clock)
    result = reconciler.reconcile(KEY)
    status = _status(store)
    assert result.requeue_after is None
    assert status.phase == BatchRunPhase.FAILED
    assert status.completion_time == clock()
    assert status.conditions[0].reason == "TasksFailed"
    assert status.progress == BatchProgress(total=3, completed=2, failed=1)


def test_all_completed_succeeds(store, settings, clock) -> None:
    spec = {"variableContexts": [[{"inline": "only"}]]}
    store.create(make_resource("BatchRun", "review", spec=spec))
    reconciler = BatchReconciler(store, settings, clock=clock)
    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)
    _finish(store, "review-task-0", TaskPhase.COMPLETED, clock)

    reconciler.reconcile(KEY)

    assert _status(store).phase == BatchRunPhase.SUCCEEDED


def test_empty_variable_contexts_succeed_immediately(store, settings, clock) -> None:
    store.create(make_resource("BatchRun", "review", spec={"variableContexts": []}))
    reconciler = BatchReconciler(store, settings, clock=clock)

    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)

    status = _status(store)
    assert status.phase == BatchRunPhase.SUCCEEDED
    assert status.progress == BatchProgress()


def test_pause_blocks_creation_but_not_completion(store, settings, clock) -> None:
    run = store.create(
        make_resource(
            "BatchRun",
            "review",
            spec=TEMPLATE,
            annotations={"agent-tasks.io/pause": "true"},
        ),
    )
    store.create(make_resource("Task", "review-task-0", owner=run.owner_reference()))
    run.status = dump_batch_run_status(
        BatchRunStatus(
            phase=BatchRunPhase.RUNNING,
            start_time=clock(),
            progress=BatchProgress(total=3, pending=2, running=1),
            tasks=[
                BatchTaskRecord(
                    index=0,
                    contexts=[{"inline": "file a"}],
                    phase=TaskPhase.RUNNING,
                    task_name="review-task-0",
                ),
                BatchTaskRecord(index=1, contexts=[{"inline": "file b"}]),
                BatchTaskRecord(index=2, contexts=[{"inline": "file c"}]),
            ],
        ),
    )
    store.update_status(run)
    reconciler = BatchReconciler(store, settings, clock=clock)

    reconciler.reconcile(KEY)
    status = _status(store)
    assert status.phase == BatchRunPhase.PAUSED
    assert status.conditions[0].type == "Paused"
    assert len(store.list("Task", "default")) == 1

    _finish(store, "review-task-0", TaskPhase.COMPLETED, clock)
    reconciler.reconcile(KEY)
    status = _status(store)
    assert status.progress == BatchProgress(total=3, pending=2, completed=1)
    assert status.phase == BatchRunPhase.PAUSED
    assert len(store.list("Task", "default")) == 1

    resumed = store.get("BatchRun", "default", "review")
    resumed.metadata.annotations = {}
    store.update(resumed)
    reconciler.reconcile(KEY)
    status = _status(store)
    assert status.phase == BatchRunPhase.RUNNING
    assert status.progress == BatchProgress(total=3, running=2, completed=1)
    assert [item.type for item in status.conditions] == []


def test_missing_batch_fails_run(store, settings, clock) -> None:
    store.create(make_resource("BatchRun", "review", spec={"batchRef": "ghost"}))

    result = BatchReconciler(store, settings, clock=clock).reconcile(KEY)

    status = _status(store)
    assert result.requeue_after is None
    assert status.phase == BatchRunPhase.FAILED
    assert status.conditions[0].reason == "BatchNotFound"


def test_lost_task_counts_as_failed(store, settings, clock) -> None:
    spec = {"variableContexts": [[{"inline": "only"}]]}
    store.create(make_resource("BatchRun", "review", spec=spec))
    reconciler = BatchReconciler(store, settings, clock=clock)
    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)
    store.delete("Task", "default", "review-task-0")

    reconciler.reconcile(KEY)

    status = _status(store)
    assert status.phase == BatchRunPhase.FAILED
    assert status.progress == BatchProgress(total=1, failed=1)


def test_terminal_run_is_left_alone(store, settings, clock) -> None:
    store.create(make_resource("BatchRun", "review", spec={"variableContexts": []}))
    reconciler = BatchReconciler(store, settings, clock=clock)
    reconciler.reconcile(KEY)
    reconciler.reconcile(KEY)
    version = store.get("BatchRun", "default", "review").metadata.resource_version

    clock.advance(60)
    reconciler.reconcile(KEY)

    assert store.get("BatchRun", "default", "review").metadata.resource_version == version
