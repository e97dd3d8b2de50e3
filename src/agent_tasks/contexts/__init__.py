"""Context resolution and aggregation."""

from agent_tasks.contexts.aggregator import ContentAggregator, ContentBundle, storage_key
from agent_tasks.contexts.resolver import (
    ContextResolver,
    DirectoryMount,
    RepositoryMount,
    ResolvedContent,
    ResolvedContexts,
)

__all__ = [
    "ContentAggregator",
    "ContentBundle",
    "ContextResolver",
    "DirectoryMount",
    "RepositoryMount",
    "ResolvedContent",
    "ResolvedContexts",
    "storage_key",
]
