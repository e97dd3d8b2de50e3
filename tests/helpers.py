"""Shared test values and builders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from agent_tasks.api.types import ObjectMeta, OwnerReference, Resource

T0 = datetime(2026, 10, 18, 10, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock shared by the store and reconcilers."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


def make_resource(  # noqa: PLR0913
    kind: str,
    name: str,
    *,
    spec: dict[str, Any] | None = None,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    owner: OwnerReference | None = None,
) -> Resource:
    return Resource(
        kind=kind,
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
            owner=owner,
        ),
        spec=dict(spec or {}),
    )
