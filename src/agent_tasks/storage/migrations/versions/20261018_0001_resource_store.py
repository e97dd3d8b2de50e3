"""Resource store baseline: resources plus change feed."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "resources",
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_uid", sa.String(), nullable=True),
        sa.Column("owner_kind", sa.String(), nullable=True),
        sa.Column("owner_name", sa.String(), nullable=True),
        sa.Column("labels_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("annotations_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("spec_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("resource_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_uid"], ["resources.uid"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("uid"),
        sa.UniqueConstraint("kind", "namespace", "name", name="uq_resources_kind_namespace_name"),
    )
    op.create_index("ix_resources_kind", "resources", ["kind"])
    op.create_index("ix_resources_namespace", "resources", ["namespace"])
    op.create_index("ix_resources_owner_uid", "resources", ["owner_uid"])
    op.create_index("ix_resources_resource_version", "resources", ["resource_version"])

    op.create_table(
        "resource_changes",
        sa.Column("revision", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_kind", sa.String(), nullable=True),
        sa.Column("owner_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("revision"),
    )
    op.create_index("ix_resource_changes_kind", "resource_changes", ["kind"])


def downgrade() -> None:
    op.drop_index("ix_resource_changes_kind", table_name="resource_changes")
    op.drop_table("resource_changes")
    op.drop_index("ix_resources_resource_version", table_name="resources")
    op.drop_index("ix_resources_owner_uid", table_name="resources")
    op.drop_index("ix_resources_namespace", table_name="resources")
    op.drop_index("ix_resources_kind", table_name="resources")
    op.drop_table("resources")
