"""Persistent resource store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from agent_tasks.api.types import ObjectMeta, OwnerReference, Resource, ResourceKey
from agent_tasks.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    TransientError,
)
from agent_tasks.storage.alembic_runner import upgrade_head
from agent_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_tasks.storage.sqlmodel_models import ResourceChangeRow, ResourceRow

logger = logging.getLogger(__name__)


class ChangeType:
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class ResourceChange:
    """One entry of the store change feed."""

    revision: int
    change_type: str
    key: ResourceKey
    owner: ResourceKey | None


class ResourceStore(Protocol):
    """Store access passed explicitly into every component."""

    def get(self, kind: str, namespace: str, name: str) -> Resource: ...

    def try_get(self, kind: str, namespace: str, name: str) -> Resource | None: ...

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        *,
        labels: dict[str, str] | None = None,
        owner_uid: str | None = None,
    ) -> list[Resource]: ...

    def create(self, resource: Resource) -> Resource: ...

    def update(self, resource: Resource) -> Resource: ...

    def update_status(self, resource: Resource) -> Resource: ...

    def delete(self, kind: str, namespace: str, name: str) -> bool: ...


class SqliteResourceStore:
    """Resource persistence facade with optimistic concurrency and owner cascade.

    Every write appends one row to ``resource_changes``; that row's revision
    becomes the written resource's ``resource_version``. Updates must present
    the version they were read at, otherwise :class:`ConflictError` is raised.
    Deleting a resource deletes every resource it transitively owns. Consumed
    change feed rows are dropped with :meth:`prune_changes`.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Reads

    def get(self, kind: str, namespace: str, name: str) -> Resource:
        resource = self.try_get(kind, namespace, name)
        if resource is None:
            raise NotFoundError(kind, namespace, name)
        return resource

    def try_get(self, kind: str, namespace: str, name: str) -> Resource | None:
        with self._session() as session:
            row = self._find_row(session, kind=kind, namespace=namespace, name=name)
            return _to_resource(row) if row is not None else None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        *,
        labels: dict[str, str] | None = None,
        owner_uid: str | None = None,
    ) -> list[Resource]:
        """List resources of one kind ordered by creation time then name."""

        with self._session() as session:
            statement = select(ResourceRow).where(ResourceRow.kind == kind)
            if namespace is not None:
                statement = statement.where(ResourceRow.namespace == namespace)
            if owner_uid is not None:
                statement = statement.where(col(ResourceRow.owner_uid) == owner_uid)
            rows = session.exec(
                statement.order_by(col(ResourceRow.created_at).asc(), col(ResourceRow.name).asc()),
            ).all()
            resources = [_to_resource(row) for row in rows]
        if labels:
            resources = [
                resource
                for resource in resources
                if all(resource.metadata.labels.get(key) == value for key, value in labels.items())
            ]
        return resources

    def latest_revision(self) -> int:
        with self._session() as session:
            value = session.exec(select(func.max(ResourceChangeRow.revision))).one()
            return int(value or 0)

    def changes_since(self, revision: int) -> list[ResourceChange]:
        """Change feed entries with revision strictly greater than ``revision``."""

        with self._session() as session:
            rows = session.exec(
                select(ResourceChangeRow)
                .where(col(ResourceChangeRow.revision) > revision)
                .order_by(col(ResourceChangeRow.revision).asc()),
            ).all()
            return [
                ResourceChange(
                    revision=int(row.revision or 0),
                    change_type=row.change_type,
                    key=ResourceKey(kind=row.kind, namespace=row.namespace, name=row.name),
                    owner=(
                        ResourceKey(
                            kind=row.owner_kind,
                            namespace=row.namespace,
                            name=row.owner_name,
                        )
                        if row.owner_kind is not None and row.owner_name is not None
                        else None
                    ),
                )
                for row in rows
            ]

    def prune_changes(self, up_to_revision: int) -> int:
        """Delete change feed rows at or below ``up_to_revision``.

        The newest row always survives: revisions are rowids, so it keeps the
        next revision (and therefore every resource version) increasing.
        """

        with self._session() as session:
            latest = int(session.exec(select(func.max(ResourceChangeRow.revision))).one() or 0)
            limit = min(up_to_revision, latest - 1)
            if limit <= 0:
                return 0
            result = session.exec(
                sa_delete(ResourceChangeRow).where(col(ResourceChangeRow.revision) <= limit),
            )
            session.commit()
            deleted = int(result.rowcount or 0)
        if deleted:
            logger.debug("Pruned %d change feed row(s) up to revision %d", deleted, limit)
        return deleted

    # Writes

    def create(self, resource: Resource) -> Resource:
        """Insert a new resource; raises AlreadyExistsError on a name clash."""

        now = self.clock()
        owner = resource.metadata.owner
        with self._session() as session:
            if self._find_row(
                session,
                kind=resource.kind,
                namespace=resource.namespace,
                name=resource.name,
            ):
                raise AlreadyExistsError(resource.kind, resource.namespace, resource.name)
            if owner is not None and session.get(ResourceRow, owner.uid) is None:
                raise NotFoundError(owner.kind, resource.namespace, owner.name)
            revision = self._record_change(
                session,
                change_type=ChangeType.ADDED,
                resource=resource,
                now=now,
            )
            row = ResourceRow(
                uid=str(uuid4()),
                kind=resource.kind,
                namespace=resource.namespace,
                name=resource.name,
                owner_uid=owner.uid if owner is not None else None,
                owner_kind=owner.kind if owner is not None else None,
                owner_name=owner.name if owner is not None else None,
                labels_json=_dump_json(resource.metadata.labels),
                annotations_json=_dump_json(resource.metadata.annotations),
                spec_json=_dump_json(resource.spec),
                status_json=_dump_json(resource.status),
                resource_version=revision,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise AlreadyExistsError(
                    resource.kind,
                    resource.namespace,
                    resource.name,
                ) from error
            session.refresh(row)
            logger.debug("Created %s (rv=%s)", resource.key, revision)
            return _to_resource(row)

    def update(self, resource: Resource) -> Resource:
        """Replace labels, annotations and spec at the presented resource version."""

        return self._versioned_write(
            resource,
            values={
                "labels_json": _dump_json(resource.metadata.labels),
                "annotations_json": _dump_json(resource.metadata.annotations),
                "spec_json": _dump_json(resource.spec),
            },
        )

    def update_status(self, resource: Resource) -> Resource:
        """Replace status at the presented resource version."""

        return self._versioned_write(
            resource,
            values={"status_json": _dump_json(resource.status)},
        )

    def delete(self, kind: str, namespace: str, name: str) -> bool:
        """Delete a resource and, transitively, everything it owns."""

        now = self.clock()
        with self._session() as session:
            row = self._find_row(session, kind=kind, namespace=namespace, name=name)
            if row is None:
                return False
            doomed = self._collect_owned(session, root=row)
            for item in doomed:
                self._record_change(
                    session,
                    change_type=ChangeType.DELETED,
                    resource=_to_resource(item),
                    now=now,
                )
            session.exec(sa_delete(ResourceRow).where(col(ResourceRow.uid) == row.uid))
            session.commit()
        logger.debug(
            "Deleted %s/%s/%s with %d owned resource(s)",
            kind,
            namespace,
            name,
            len(doomed) - 1,
        )
        return True

    # Internals

    def _versioned_write(self, resource: Resource, *, values: dict[str, str]) -> Resource:
        now = self.clock()
        expected = resource.metadata.resource_version
        with self._session() as session:
            current = self._find_row(
                session,
                kind=resource.kind,
                namespace=resource.namespace,
                name=resource.name,
            )
            if current is None:
                raise NotFoundError(resource.kind, resource.namespace, resource.name)
            if current.resource_version != expected:
                raise ConflictError(
                    resource.kind,
                    resource.namespace,
                    resource.name,
                    expected=expected,
                )
            revision = self._record_change(
                session,
                change_type=ChangeType.MODIFIED,
                resource=_to_resource(current),
                now=now,
            )
            result = session.exec(
                sa_update(ResourceRow)
                .where(
                    col(ResourceRow.uid) == current.uid,
                    col(ResourceRow.resource_version) == expected,
                )
                .values(
                    **values,
                    resource_version=revision,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    resource.kind,
                    resource.namespace,
                    resource.name,
                    expected=expected,
                )
            session.commit()
            refreshed = session.exec(
                select(ResourceRow).where(ResourceRow.uid == current.uid),
            ).one()
            return _to_resource(refreshed)

    def _find_row(
        self,
        session: Session,
        *,
        kind: str,
        namespace: str,
        name: str,
    ) -> ResourceRow | None:
        return session.exec(
            select(ResourceRow).where(
                ResourceRow.kind == kind,
                ResourceRow.namespace == namespace,
                ResourceRow.name == name,
            ),
        ).one_or_none()

    def _collect_owned(self, session: Session, *, root: ResourceRow) -> list[ResourceRow]:
        collected = [root]
        frontier = [root.uid]
        while frontier:
            children = session.exec(
                select(ResourceRow).where(col(ResourceRow.owner_uid).in_(frontier)),
            ).all()
            collected.extend(children)
            frontier = [child.uid for child in children]
        return collected

    def _record_change(
        self,
        session: Session,
        *,
        change_type: str,
        resource: Resource,
        now: datetime,
    ) -> int:
        owner = resource.metadata.owner
        change = ResourceChangeRow(
            change_type=change_type,
            kind=resource.kind,
            namespace=resource.namespace,
            name=resource.name,
            owner_kind=owner.kind if owner is not None else None,
            owner_name=owner.name if owner is not None else None,
            created_at=to_db_datetime(now),
        )
        session.add(change)
        session.flush()
        return int(change.revision or 0)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise TransientError(f"Resource store unavailable: {error}") from error


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _to_resource(row: ResourceRow) -> Resource:
    owner = (
        OwnerReference(kind=row.owner_kind, name=row.owner_name, uid=row.owner_uid)
        if row.owner_uid is not None and row.owner_kind is not None and row.owner_name is not None
        else None
    )
    return Resource(
        kind=row.kind,
        metadata=ObjectMeta(
            name=row.name,
            namespace=row.namespace,
            uid=row.uid,
            labels=json.loads(row.labels_json),
            annotations=json.loads(row.annotations_json),
            owner=owner,
            resource_version=row.resource_version,
            created_at=to_utc_aware_datetime(row.created_at),
        ),
        spec=json.loads(row.spec_json),
        status=json.loads(row.status_json),
    )
