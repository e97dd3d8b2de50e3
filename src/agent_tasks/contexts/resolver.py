"""Resolve context references into literal content or mount descriptors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from agent_tasks.api.manifests import read_reusable_context
from agent_tasks.api.types import (
    CONTEXT_KIND,
    BulkSource,
    ContextMount,
    ContextReference,
    ContextSource,
    InlineSource,
    KeyValueSource,
    RepositorySource,
    UnsupportedSource,
)
from agent_tasks.errors import ConfigurationError, ManifestError
from agent_tasks.storage.repository import ResourceStore

logger = logging.getLogger(__name__)

RESOLUTION_FAILED = "ContextResolutionFailed"


@dataclass(slots=True)
class ResolvedContent:
    """Literal content headed for an aggregated file.

    ``name`` is ``None`` for anonymous inline content, which is labelled by
    ``index`` instead.
    """

    content: str
    source_type: str
    index: int
    name: str | None = None
    namespace: str | None = None
    mount_path: str | None = None


@dataclass(slots=True, frozen=True)
class DirectoryMount:
    """Whole key-value store mounted as a directory; bypasses aggregation."""

    store_kind: str
    name: str
    mount_path: str
    optional: bool = False


@dataclass(slots=True, frozen=True)
class RepositoryMount:
    """Repository clone exposed at a path; bypasses aggregation."""

    source: RepositorySource
    mount_path: str


@dataclass(slots=True)
class ResolvedContexts:
    contents: list[ResolvedContent] = field(default_factory=list)
    dir_mounts: list[DirectoryMount] = field(default_factory=list)
    repo_mounts: list[RepositoryMount] = field(default_factory=list)


class ContextResolver:
    """Turns ordered context mounts into content and mount descriptors.

    Lookups go through the store passed in; nothing is cached between calls.
    Any failure of a required reference raises :class:`ConfigurationError`.
    """

    def __init__(self, store: ResourceStore) -> None:
        self.store = store

    def resolve_all(self, mounts: list[ContextMount], *, namespace: str) -> ResolvedContexts:
        """Resolve mounts in order, preserving that order in the result."""

        resolved = ResolvedContexts()
        for index, mount in enumerate(mounts):
            self._resolve_into(resolved, mount, namespace=namespace, index=index)
        return resolved

    def _resolve_into(
        self,
        resolved: ResolvedContexts,
        mount: ContextMount,
        *,
        namespace: str,
        index: int,
    ) -> None:
        name: str | None = None
        source_namespace = namespace
        if isinstance(mount.source, ContextReference):
            name = mount.source.name
            source_namespace = mount.source.namespace or namespace
            source = self._load_reusable(name=name, namespace=source_namespace)
        else:
            source = mount.source

        if isinstance(source, InlineSource):
            resolved.contents.append(
                ResolvedContent(
                    content=source.content,
                    source_type="Inline",
                    index=index,
                    name=name,
                    namespace=source_namespace if name is not None else None,
                    mount_path=mount.mount_path,
                ),
            )
        elif isinstance(source, KeyValueSource):
            value = self._lookup_key(source, namespace=source_namespace)
            if value is None:
                return
            resolved.contents.append(
                ResolvedContent(
                    content=value,
                    source_type=source.store_kind,
                    index=index,
                    name=name or source.name,
                    namespace=source_namespace,
                    mount_path=mount.mount_path,
                ),
            )
        elif isinstance(source, BulkSource):
            if mount.mount_path:
                resolved.dir_mounts.append(
                    DirectoryMount(
                        store_kind=source.store_kind,
                        name=source.name,
                        mount_path=mount.mount_path,
                        optional=source.optional,
                    ),
                )
                return
            content = self._aggregate_store(source, namespace=source_namespace)
            if content is None:
                return
            resolved.contents.append(
                ResolvedContent(
                    content=content,
                    source_type=source.store_kind,
                    index=index,
                    name=name or source.name,
                    namespace=source_namespace,
                ),
            )
        elif isinstance(source, RepositorySource):
            if not mount.mount_path:
                raise ConfigurationError(
                    f"Repository context {name or source.url!r} requires a mountPath",
                    reason=RESOLUTION_FAILED,
                )
            resolved.repo_mounts.append(
                RepositoryMount(source=source, mount_path=mount.mount_path),
            )
        elif isinstance(source, UnsupportedSource):
            raise ConfigurationError(
                f"Context type {source.type_tag!r} is not supported",
                reason=RESOLUTION_FAILED,
            )
        else:
            raise TypeError(f"Unhandled context source: {source!r}")

    def _load_reusable(self, *, name: str, namespace: str) -> ContextSource:
        resource = self.store.try_get(CONTEXT_KIND, namespace, name)
        if resource is None:
            raise ConfigurationError(
                f"Context {namespace}/{name} not found",
                reason=RESOLUTION_FAILED,
            )
        try:
            return read_reusable_context(resource).source
        except ManifestError as error:
            raise ConfigurationError(str(error), reason=RESOLUTION_FAILED) from error

    def _lookup_key(self, source: KeyValueSource, *, namespace: str) -> str | None:
        data = self._store_data(source.store_kind, source.name, namespace=namespace)
        if data is None:
            if source.optional:
                logger.debug(
                    "Optional %s %s/%s missing; skipping",
                    source.store_kind,
                    namespace,
                    source.name,
                )
                return None
            raise ConfigurationError(
                f"{source.store_kind} {namespace}/{source.name} not found",
                reason=RESOLUTION_FAILED,
            )
        if source.key not in data:
            if source.optional:
                return None
            raise ConfigurationError(
                f"Key {source.key!r} not found in {source.store_kind} {namespace}/{source.name}",
                reason=RESOLUTION_FAILED,
            )
        return str(data[source.key])

    def _aggregate_store(self, source: BulkSource, *, namespace: str) -> str | None:
        data = self._store_data(source.store_kind, source.name, namespace=namespace)
        if data is None:
            if source.optional:
                return None
            raise ConfigurationError(
                f"{source.store_kind} {namespace}/{source.name} not found",
                reason=RESOLUTION_FAILED,
            )
        if not data:
            return None
        return "\n\n".join(
            f'<file name="{key}">\n{data[key]}\n</file>' for key in sorted(data)
        )

    def _store_data(self, kind: str, name: str, *, namespace: str) -> dict[str, str] | None:
        resource = self.store.try_get(kind, namespace, name)
        if resource is None:
            return None
        data = resource.spec.get("data", {})
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"{kind} {namespace}/{name} data must be an object",
                reason=RESOLUTION_FAILED,
            )
        return data
