"""Shared reconcile result type and status helpers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from agent_tasks.api.types import Condition, Resource, ResourceKey
from agent_tasks.storage.repository import ResourceStore

Clock = Callable[[], datetime]


@dataclass(slots=True, frozen=True)
class ReconcileResult:
    """What the caller should do next for this resource.

    ``requeue_after`` asks for another pass after a relative delay,
    ``wake_at`` for a pass at an absolute time. Neither means wait for the
    next change.
    """

    requeue_after: float | None = None
    wake_at: datetime | None = None

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls()

    @classmethod
    def requeue(cls, seconds: float) -> ReconcileResult:
        return cls(requeue_after=max(0.0, seconds))

    @classmethod
    def wake(cls, at: datetime) -> ReconcileResult:
        return cls(wake_at=at)


class Reconciler(Protocol):
    kind: str

    def reconcile(self, key: ResourceKey) -> ReconcileResult: ...


def set_condition(conditions: list[Condition], condition: Condition) -> list[Condition]:
    """Replace the condition of the same type, keeping its transition time if unchanged."""

    result: list[Condition] = []
    replaced = False
    for existing in conditions:
        if existing.type != condition.type:
            result.append(existing)
            continue
        replaced = True
        if existing.status == condition.status and existing.last_transition_time is not None:
            condition.last_transition_time = existing.last_transition_time
        result.append(condition)
    if not replaced:
        result.append(condition)
    return result


def remove_condition(conditions: list[Condition], condition_type: str) -> list[Condition]:
    return [item for item in conditions if item.type != condition_type]


def write_status_if_changed(
    store: ResourceStore,
    resource: Resource,
    status: dict[str, Any],
) -> Resource:
    """Persist status only when it differs from what is stored."""

    if status == resource.status:
        return resource
    resource.status = status
    return store.update_status(resource)
