"""SQLModel ORM tables for the resource store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ResourceRow(SQLModel, table=True):
    __tablename__ = "resources"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("kind", "namespace", "name", name="uq_resources_kind_namespace_name"),
    )

    uid: str = Field(primary_key=True)
    kind: str = Field(index=True)
    namespace: str = Field(index=True)
    name: str
    owner_uid: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("resources.uid", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    owner_kind: str | None = None
    owner_name: str | None = None
    labels_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    annotations_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    spec_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    resource_version: int = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResourceChangeRow(SQLModel, table=True):
    """Append-only change feed; ``revision`` doubles as the resource version."""

    __tablename__ = "resource_changes"  # type: ignore[bad-override]

    revision: int | None = Field(default=None, primary_key=True)
    change_type: str
    kind: str = Field(index=True)
    namespace: str
    name: str
    owner_kind: str | None = None
    owner_name: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
