"""Controller loop: turn store changes into serialized reconcile passes."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from agent_tasks.api.types import ResourceKey
from agent_tasks.config import Settings
from agent_tasks.errors import TransientError, is_transient
from agent_tasks.reconcilers.base import Clock, ReconcileResult, Reconciler
from agent_tasks.reconcilers.batchrun import BatchReconciler
from agent_tasks.reconcilers.crontask import CronReconciler
from agent_tasks.reconcilers.task import TaskReconciler
from agent_tasks.storage.common import utc_now
from agent_tasks.storage.repository import SqliteResourceStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ManagerRunSummary:
    """Aggregate loop counters for CLI reporting."""

    reconciled: int = 0
    requeued: int = 0
    errors: int = 0
    idle_polls: int = 0


class ControllerManager:
    """Level-triggered work queue over the store change feed.

    Each pass reads changes since the last seen revision and enqueues the
    changed resource (when a reconciler owns its kind) and its owner. Keys
    whose time has come are reconciled one at a time, so passes for the same
    resource never overlap. Failures are requeued with capped exponential
    backoff; nothing about the queue is persisted, so a restart simply lists
    everything again.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: SqliteResourceStore,
        reconcilers: Sequence[Reconciler],
        poll_interval_seconds: float = 1.0,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 300.0,
        change_retention: int = 1_000,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.reconcilers = {reconciler.kind: reconciler for reconciler in reconcilers}
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.change_retention = change_retention
        self.clock = clock
        self._random = random.Random()  # noqa: S311
        self._due: dict[ResourceKey, datetime] = {}
        self._failures: dict[ResourceKey, int] = {}
        self._revision: int | None = None
        self._stop_requested = False

    @property
    def pending(self) -> dict[ResourceKey, datetime]:
        """Queued keys and the time each becomes due."""

        return dict(self._due)

    def enqueue(self, key: ResourceKey, at: datetime | None = None) -> None:
        """Queue a key; an earlier due time wins over a later one."""

        if key.kind not in self.reconcilers:
            return
        when = at or self.clock()
        current = self._due.get(key)
        if current is None or when < current:
            self._due[key] = when

    def run_once(self) -> ManagerRunSummary:
        """Pick up changes, then reconcile every key that is due now."""

        summary = ManagerRunSummary()
        try:
            self._sync()
        except TransientError as error:
            summary.errors += 1
            logger.warning("Change feed unavailable; retrying next pass: %s", error)
            return summary
        now = self.clock()
        ready = sorted(
            (key for key, when in self._due.items() if when <= now),
            key=lambda key: (self._due[key], key),
        )
        if not ready:
            summary.idle_polls = 1
            return summary
        for key in ready:
            if self._stop_requested:
                break
            self._due.pop(key, None)
            self._process(key, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_passes: int | None = None,
        max_idle_polls: int | None = None,
    ) -> ManagerRunSummary:
        """Run until stopped by a signal, ``max_passes`` or ``max_idle_polls``."""

        aggregate = ManagerRunSummary()
        consecutive_idle = 0
        passes = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_passes is not None and passes >= max_passes:
                    break
                summary = self.run_once()
                passes += 1
                aggregate.reconciled += summary.reconciled
                aggregate.requeued += summary.requeued
                aggregate.errors += summary.errors
                aggregate.idle_polls += summary.idle_polls
                if summary.reconciled == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        if self._stop_requested:
            logger.info("Controller manager stopped")
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    # Internals

    def _sync(self) -> None:
        if self._revision is None:
            self._prime()
            return
        seen = self._revision
        for change in self.store.changes_since(self._revision):
            self.enqueue(change.key)
            if change.owner is not None:
                self.enqueue(change.owner)
            self._revision = change.revision
        if self._revision > seen:
            self.store.prune_changes(self._revision - self.change_retention)

    def _prime(self) -> None:
        # Revision is recorded only after the full listing, so a failed prime reruns.
        revision = self.store.latest_revision()
        for kind in self.reconcilers:
            for resource in self.store.list(kind):
                self.enqueue(resource.key)
        self._revision = revision
        logger.info(
            "Controller manager primed at revision %s with %d key(s)",
            self._revision,
            len(self._due),
        )

    def _process(self, key: ResourceKey, *, summary: ManagerRunSummary) -> None:
        reconciler = self.reconcilers[key.kind]
        try:
            result = reconciler.reconcile(key)
        except Exception as error:  # noqa: BLE001
            summary.errors += 1
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self._compute_retry_delay(retry_number=failures)
            if is_transient(error):
                logger.warning(
                    "Reconcile of %s hit a transient error (retry %d in %.1fs): %s",
                    key,
                    failures,
                    delay,
                    error,
                )
            else:
                logger.exception("Reconcile of %s failed (retry %d in %.1fs)", key, failures, delay)
            self.enqueue(key, self.clock() + timedelta(seconds=delay))
            summary.requeued += 1
            return

        summary.reconciled += 1
        self._failures.pop(key, None)
        self._schedule(key, result, summary=summary)

    def _schedule(
        self,
        key: ResourceKey,
        result: ReconcileResult,
        *,
        summary: ManagerRunSummary,
    ) -> None:
        if result.requeue_after is not None:
            self.enqueue(key, self.clock() + timedelta(seconds=result.requeue_after))
            summary.requeued += 1
        elif result.wake_at is not None:
            self.enqueue(key, result.wake_at)
            summary.requeued += 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(max_delay / 2, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; finishing current pass", name)
            self.request_stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def build_manager(
    store: SqliteResourceStore,
    settings: Settings,
    *,
    clock: Clock = utc_now,
) -> ControllerManager:
    """Wire the Task, BatchRun and CronTask reconcilers onto one manager."""

    return ControllerManager(
        store=store,
        reconcilers=[
            TaskReconciler(store, settings, clock=clock),
            BatchReconciler(store, settings, clock=clock),
            CronReconciler(store, clock=clock),
        ],
        poll_interval_seconds=settings.controller.poll_interval_seconds,
        retry_base_seconds=settings.controller.retry_base_seconds,
        retry_max_seconds=settings.controller.retry_max_seconds,
        change_retention=settings.controller.change_retention,
        clock=clock,
    )
