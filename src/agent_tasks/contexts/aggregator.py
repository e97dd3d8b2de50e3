"""Merge resolved context content into one string per target file."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field

from agent_tasks.contexts.resolver import (
    DirectoryMount,
    RepositoryMount,
    ResolvedContent,
    ResolvedContexts,
)

DEFAULT_FILE_NAME = "task.md"


def storage_key(path: str) -> str:
    """Config-data key for a mount path.

    One leading ``/`` is stripped and remaining separators become dashes.
    Distinct paths that only differ by ``/`` versus ``-`` share a key.
    """

    return path.removeprefix("/").replace("/", "-")


@dataclass(slots=True)
class ContentBundle:
    """Everything the job needs to materialize contexts in the container."""

    files: dict[str, str] = field(default_factory=dict)
    dir_mounts: list[DirectoryMount] = field(default_factory=list)
    repo_mounts: list[RepositoryMount] = field(default_factory=list)

    def config_data(self) -> dict[str, str]:
        """Aggregated files keyed by storage key, as stored in the context ConfigMap."""

        return {storage_key(path): content for path, content in self.files.items()}


class ContentAggregator:
    """Groups content by target path and applies the wrapping rules.

    The description always leads the default file and is never wrapped. A
    group holding a single item (and, for the default file, no description)
    is emitted as-is; otherwise every item is wrapped in a ``<context>`` tag
    carrying its provenance and items are separated by a blank line.
    """

    def __init__(self, workspace_dir: str) -> None:
        self.workspace_dir = workspace_dir.rstrip("/") or "/"

    @property
    def default_path(self) -> str:
        return posixpath.join(self.workspace_dir, DEFAULT_FILE_NAME)

    def aggregate(
        self,
        resolved: ResolvedContexts,
        *,
        description: str | None = None,
    ) -> ContentBundle:
        groups: dict[str, list[ResolvedContent]] = {}
        if description:
            groups[self.default_path] = []
        for item in resolved.contents:
            groups.setdefault(self._target_path(item.mount_path), []).append(item)

        files: dict[str, str] = {}
        for path, items in groups.items():
            lead = description if description and path == self.default_path else None
            files[path] = _render_group(items, lead=lead)
        return ContentBundle(
            files=files,
            dir_mounts=list(resolved.dir_mounts),
            repo_mounts=list(resolved.repo_mounts),
        )

    def _target_path(self, mount_path: str | None) -> str:
        if not mount_path:
            return self.default_path
        if mount_path.startswith("/"):
            return mount_path
        return posixpath.join(self.workspace_dir, mount_path)


def _render_group(items: list[ResolvedContent], *, lead: str | None) -> str:
    if lead is None and len(items) == 1:
        return items[0].content
    pieces = [lead] if lead is not None else []
    pieces.extend(_wrap(item, position=position) for position, item in enumerate(items))
    return "\n\n".join(pieces)


def _wrap(item: ResolvedContent, *, position: int) -> str:
    if item.name is None:
        attributes = f'index="{position}" type="{item.source_type}"'
    else:
        attributes = (
            f'name="{item.name}" namespace="{item.namespace or ""}" type="{item.source_type}"'
        )
    return f"<context {attributes}>\n{item.content}\n</context>"
