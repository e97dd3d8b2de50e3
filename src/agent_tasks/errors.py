"""Error taxonomy shared by the store, resolvers and reconcilers."""

from __future__ import annotations


class StoreError(Exception):
    """Base error raised by resource store operations."""


class NotFoundError(StoreError):
    """Requested resource does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class AlreadyExistsError(StoreError):
    """Resource with the same kind/namespace/name is already stored."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(StoreError):
    """Write was based on a stale resource version."""

    def __init__(self, kind: str, namespace: str, name: str, *, expected: int) -> None:
        super().__init__(
            f"{kind} {namespace}/{name} was modified concurrently "
            f"(expected resource_version={expected})",
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.expected = expected


class TransientError(Exception):
    """Infrastructure failure that should be retried by requeueing."""


class ConfigurationError(Exception):
    """Permanent error that requires operator correction.

    ``reason`` is a short CamelCase token surfaced as the condition reason on
    the owning resource status.
    """

    def __init__(self, message: str, *, reason: str = "InvalidConfiguration") -> None:
        super().__init__(message)
        self.reason = reason


class ManifestError(ValueError):
    """Manifest document does not match the expected resource shape."""


def is_transient(error: BaseException) -> bool:
    """Whether a reconcile failure should be retried by requeueing."""

    return isinstance(error, TransientError | ConflictError)
