from __future__ import annotations

import allure
import pytest

from agent_tasks.api.types import (
    BulkSource,
    ContextMount,
    ContextReference,
    InlineSource,
    KeyValueSource,
    RepositorySource,
    UnsupportedSource,
)
from agent_tasks.contexts.aggregator import ContentAggregator
from agent_tasks.contexts.resolver import RESOLUTION_FAILED, ContextResolver
from agent_tasks.errors import ConfigurationError
from helpers import make_resource

pytestmark = [
    allure.epic("Context Resolution"),
    allure.feature("Context Resolver"),
]


def test_inline_and_key_value_sources_resolve_in_order(store) -> None:
    store.create(make_resource("ConfigMap", "guides", spec={"data": {"style": "Be brief."}}))

    resolved = ContextResolver(store).resolve_all(
        [
            ContextMount(source=InlineSource(content="first")),
            ContextMount(source=KeyValueSource(store_kind="ConfigMap", name="guides", key="style")),
        ],
        namespace="default",
    )

    assert [item.content for item in resolved.contents] == ["first", "Be brief."]
    assert resolved.contents[0].name is None
    assert resolved.contents[1].name == "guides"
    assert resolved.contents[1].source_type == "ConfigMap"


def test_optional_missing_key_is_skipped(store) -> None:
    resolved = ContextResolver(store).resolve_all(
        [
            ContextMount(
                source=KeyValueSource(
                    store_kind="Secret",
                    name="absent",
                    key="token",
                    optional=True,
                ),
            ),
        ],
        namespace="default",
    )

    assert resolved.contents == []


def test_required_missing_key_fails_resolution(store) -> None:
    store.create(make_resource("ConfigMap", "guides", spec={"data": {"style": "x"}}))

    with pytest.raises(ConfigurationError, match="Key 'tone' not found") as error:
        ContextResolver(store).resolve_all(
            [
                ContextMount(
                    source=KeyValueSource(store_kind="ConfigMap", name="guides", key="tone"),
                ),
            ],
            namespace="default",
        )

    assert error.value.reason == RESOLUTION_FAILED


def test_bulk_source_without_mount_path_is_aggregated_per_key(store) -> None:
    store.create(make_resource("ConfigMap", "docs", spec={"data": {"b.md": "B", "a.md": "A"}}))

    resolved = ContextResolver(store).resolve_all(
        [ContextMount(source=BulkSource(store_kind="ConfigMap", name="docs"))],
        namespace="default",
    )

    assert resolved.contents[0].content == (
        '<file name="a.md">\nA\n</file>\n\n<file name="b.md">\nB\n</file>'
    )


def test_bulk_source_with_mount_path_becomes_directory_mount(store) -> None:
    resolved = ContextResolver(store).resolve_all(
        [
            ContextMount(
                source=BulkSource(store_kind="Secret", name="keys", optional=True),
                mount_path="/keys",
            ),
        ],
        namespace="default",
    )

    assert resolved.contents == []
    assert resolved.dir_mounts[0].store_kind == "Secret"
    assert resolved.dir_mounts[0].mount_path == "/keys"
    assert resolved.dir_mounts[0].optional is True


def test_repository_requires_mount_path(store) -> None:
    resolver = ContextResolver(store)
    source = RepositorySource(url="https://git.example.com/repo.git")

    with pytest.raises(ConfigurationError, match="requires a mountPath"):
        resolver.resolve_all([ContextMount(source=source)], namespace="default")

    resolved = resolver.resolve_all(
        [ContextMount(source=source, mount_path="/src")],
        namespace="default",
    )
    assert resolved.repo_mounts[0].mount_path == "/src"


def test_unsupported_source_fails_resolution(store) -> None:
    with pytest.raises(ConfigurationError, match="'S3' is not supported"):
        ContextResolver(store).resolve_all(
            [ContextMount(source=UnsupportedSource(type_tag="S3"))],
            namespace="default",
        )


def test_reusable_context_reference_uses_its_own_namespace(store) -> None:
    store.create(make_resource("Context", "shared", namespace="team", spec={"inline": "C"}))

    resolved = ContextResolver(store).resolve_all(
        [ContextMount(source=ContextReference(name="shared", namespace="team"))],
        namespace="default",
    )

    assert resolved.contents[0].name == "shared"
    assert resolved.contents[0].namespace == "team"


def test_missing_reusable_context_fails_resolution(store) -> None:
    with pytest.raises(ConfigurationError, match="Context default/ghost not found"):
        ContextResolver(store).resolve_all(
            [ContextMount(source=ContextReference(name="ghost"))],
            namespace="default",
        )


def test_description_and_named_context_render_end_to_end(store) -> None:
    store.create(make_resource("Context", "c1", spec={"inline": "C"}))

    resolved = ContextResolver(store).resolve_all(
        [ContextMount(source=ContextReference(name="c1"))],
        namespace="default",
    )
    bundle = ContentAggregator("/workspace").aggregate(resolved, description="D")

    assert bundle.files["/workspace/task.md"] == (
        'D\n\n<context name="c1" namespace="default" type="Inline">\nC\n</context>'
    )
