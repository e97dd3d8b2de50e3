from __future__ import annotations

import allure

from agent_tasks.contexts.aggregator import ContentAggregator, storage_key
from agent_tasks.contexts.resolver import DirectoryMount, ResolvedContent, ResolvedContexts

pytestmark = [
    allure.epic("Context Resolution"),
    allure.feature("Content Aggregation"),
]


def _inline(content: str, index: int, mount_path: str | None = None) -> ResolvedContent:
    return ResolvedContent(
        content=content,
        source_type="Inline",
        index=index,
        mount_path=mount_path,
    )


def test_storage_key_strips_leading_slash_and_flattens_separators() -> None:
    assert storage_key("/workspace/task.md") == "workspace-task.md"
    assert storage_key("docs/a.md") == "docs-a.md"


def test_single_item_without_description_is_not_wrapped() -> None:
    bundle = ContentAggregator("/workspace").aggregate(
        ResolvedContexts(contents=[_inline("only", 0)]),
    )

    assert bundle.files == {"/workspace/task.md": "only"}


def test_description_leads_and_items_are_wrapped_in_order() -> None:
    bundle = ContentAggregator("/workspace").aggregate(
        ResolvedContexts(
            contents=[
                _inline("first", 0),
                ResolvedContent(
                    content="second",
                    source_type="ConfigMap",
                    index=1,
                    name="guides",
                    namespace="team",
                ),
            ],
        ),
        description="D",
    )

    assert bundle.files["/workspace/task.md"] == (
        "D\n\n"
        '<context index="0" type="Inline">\nfirst\n</context>\n\n'
        '<context name="guides" namespace="team" type="ConfigMap">\nsecond\n</context>'
    )


def test_description_alone_is_emitted_verbatim() -> None:
    bundle = ContentAggregator("/workspace").aggregate(ResolvedContexts(), description="Only D")

    assert bundle.files == {"/workspace/task.md": "Only D"}


def test_items_group_by_target_path() -> None:
    bundle = ContentAggregator("/workspace/").aggregate(
        ResolvedContexts(
            contents=[
                _inline("a", 0, mount_path="notes/a.md"),
                _inline("b", 1, mount_path="/etc/agent/b.md"),
                _inline("c", 2, mount_path="notes/a.md"),
            ],
            dir_mounts=[DirectoryMount(store_kind="ConfigMap", name="cm", mount_path="/cfg")],
        ),
    )

    assert bundle.files["/etc/agent/b.md"] == "b"
    assert bundle.files["/workspace/notes/a.md"] == (
        '<context index="0" type="Inline">\na\n</context>\n\n'
        '<context index="1" type="Inline">\nc\n</context>'
    )
    assert "/workspace/task.md" not in bundle.files
    assert bundle.dir_mounts[0].mount_path == "/cfg"
    assert bundle.config_data() == {
        "workspace-notes-a.md": bundle.files["/workspace/notes/a.md"],
        "etc-agent-b.md": "b",
    }
