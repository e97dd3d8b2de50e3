"""Parse and serialize resource documents (camelCase wire shape)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from agent_tasks.api.types import (
    KEY_VALUE_KINDS,
    BatchProgress,
    BatchRunPhase,
    BatchRunSpec,
    BatchRunStatus,
    BatchTaskRecord,
    BatchTemplate,
    BulkSource,
    ConcurrencyPolicy,
    Condition,
    ContextMount,
    ContextReference,
    ContextSource,
    CronTaskSpec,
    CronTaskStatus,
    Credential,
    ExecutionProfile,
    InlineSource,
    JobStatus,
    KeepAlive,
    KeyValueSource,
    ObjectMeta,
    PodScheduling,
    RepositorySource,
    Resource,
    ReusableContext,
    TaskPhase,
    TaskSpec,
    TaskStatus,
    UnsupportedSource,
)
from agent_tasks.errors import ManifestError
from agent_tasks.storage.common import from_iso

_SOURCE_KEYS = {
    "inline": "Inline",
    "configMap": "ConfigMap",
    "secret": "Secret",
    "repository": "Repository",
}
_TYPE_TAGS = {tag.lower(): key for key, tag in _SOURCE_KEYS.items()}


def resource_from_document(document: dict[str, Any]) -> Resource:
    """Build a resource envelope from a manifest document."""

    if not isinstance(document, dict):
        raise ManifestError("Manifest document must be an object")
    kind = document.get("kind")
    if not isinstance(kind, str) or not kind.strip():
        raise ManifestError("Manifest kind must be a non-empty string")
    metadata = _mapping(document.get("metadata"), where="metadata")
    name = metadata.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{kind}.metadata.name must be a non-empty string")
    namespace = metadata.get("namespace", "default")
    if not isinstance(namespace, str) or not namespace.strip():
        raise ManifestError(f"{kind}.metadata.namespace must be a non-empty string")
    spec = document.get("spec")
    if spec is None and kind in KEY_VALUE_KINDS:
        spec = {"data": document.get("data", {})}
    return Resource(
        kind=kind,
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels=_str_mapping(metadata.get("labels"), where=f"{kind}.metadata.labels"),
            annotations=_str_mapping(
                metadata.get("annotations"),
                where=f"{kind}.metadata.annotations",
            ),
        ),
        spec=_mapping(spec, where=f"{kind}.spec"),
        status=_mapping(document.get("status"), where=f"{kind}.status"),
    )


def resource_to_document(resource: Resource) -> dict[str, Any]:
    """Render a resource envelope back into manifest shape."""

    metadata: dict[str, Any] = {
        "name": resource.metadata.name,
        "namespace": resource.metadata.namespace,
        "uid": resource.metadata.uid,
        "resourceVersion": resource.metadata.resource_version,
    }
    if resource.metadata.created_at is not None:
        metadata["creationTimestamp"] = _dump_time(resource.metadata.created_at)
    if resource.metadata.labels:
        metadata["labels"] = dict(resource.metadata.labels)
    if resource.metadata.annotations:
        metadata["annotations"] = dict(resource.metadata.annotations)
    if resource.metadata.owner is not None:
        metadata["ownerReference"] = {
            "kind": resource.metadata.owner.kind,
            "name": resource.metadata.owner.name,
            "uid": resource.metadata.owner.uid,
        }
    document: dict[str, Any] = {
        "kind": resource.kind,
        "metadata": metadata,
        "spec": resource.spec,
    }
    if resource.status:
        document["status"] = resource.status
    return document


# Contexts


def read_context_mount(raw: Any, *, where: str) -> ContextMount:
    """Parse one context mount: a stored-context reference or an inline source."""

    payload = _mapping(raw, where=where)
    mount_path = _optional_str(payload.get("mountPath"), where=f"{where}.mountPath")
    name = payload.get("name")
    if name is not None:
        if not isinstance(name, str) or not name.strip():
            raise ManifestError(f"{where}.name must be a non-empty string")
        present = [key for key in _SOURCE_KEYS if key in payload]
        if present:
            raise ManifestError(
                f"{where} must not combine a context name with an inline source ({present[0]})",
            )
        return ContextMount(
            source=ContextReference(
                name=name,
                namespace=_optional_str(payload.get("namespace"), where=f"{where}.namespace"),
            ),
            mount_path=mount_path,
        )
    return ContextMount(source=read_context_source(payload, where=where), mount_path=mount_path)


def read_context_mounts(raw: Any, *, where: str) -> list[ContextMount]:
    return [
        read_context_mount(item, where=f"{where}[{index}]")
        for index, item in enumerate(_list(raw, where=where))
    ]


def read_context_source(raw: dict[str, Any], *, where: str) -> ContextSource:
    """Parse the single source block of a context; unknown type tags stay explicit."""

    type_tag = raw.get("type")
    if type_tag is not None and not isinstance(type_tag, str):
        raise ManifestError(f"{where}.type must be a string")
    present = [key for key in _SOURCE_KEYS if key in raw]
    if type_tag is not None and type_tag.lower() not in _TYPE_TAGS:
        return UnsupportedSource(type_tag=type_tag)
    if len(present) != 1:
        raise ManifestError(
            f"{where} must define exactly one of: {', '.join(_SOURCE_KEYS)}",
        )
    source_key = present[0]
    if type_tag is not None and _TYPE_TAGS[type_tag.lower()] != source_key:
        raise ManifestError(f"{where}.type {type_tag!r} does not match source {source_key!r}")

    value = raw[source_key]
    if source_key == "inline":
        if isinstance(value, dict):
            value = value.get("content")
        if not isinstance(value, str):
            raise ManifestError(f"{where}.inline must be a string")
        return InlineSource(content=value)
    if source_key == "repository":
        return _read_repository(value, where=f"{where}.repository")
    return _read_key_value(
        value,
        store_kind=_SOURCE_KEYS[source_key],
        where=f"{where}.{source_key}",
    )


def read_reusable_context(resource: Resource) -> ReusableContext:
    return ReusableContext(
        name=resource.name,
        namespace=resource.namespace,
        source=read_context_source(resource.spec, where=f"Context {resource.name}.spec"),
    )


def _read_key_value(raw: Any, *, store_kind: str, where: str) -> KeyValueSource | BulkSource:
    payload = _mapping(raw, where=where)
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{where}.name must be a non-empty string")
    optional = _bool(payload.get("optional", False), where=f"{where}.optional")
    key = _optional_str(payload.get("key"), where=f"{where}.key")
    if key is None:
        return BulkSource(store_kind=store_kind, name=name, optional=optional)
    return KeyValueSource(store_kind=store_kind, name=name, key=key, optional=optional)


def _read_repository(raw: Any, *, where: str) -> RepositorySource:
    payload = _mapping(raw, where=where)
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ManifestError(f"{where}.url must be a non-empty string")
    depth = payload.get("depth", 1)
    if not isinstance(depth, int) or isinstance(depth, bool):
        raise ManifestError(f"{where}.depth must be an integer")
    secret_ref = payload.get("secretRef")
    secret_name: str | None = None
    if secret_ref is not None:
        secret_name = _mapping(secret_ref, where=f"{where}.secretRef").get("name")
        if not isinstance(secret_name, str) or not secret_name.strip():
            raise ManifestError(f"{where}.secretRef.name must be a non-empty string")
    return RepositorySource(
        url=url,
        ref=_optional_str(payload.get("ref"), where=f"{where}.ref") or "HEAD",
        path=_optional_str(payload.get("path"), where=f"{where}.path") or "",
        depth=depth if depth > 0 else 1,
        secret_name=secret_name,
    )


# Execution profile


def read_profile(resource: Resource) -> ExecutionProfile:
    """Parse an ExecutionProfile resource."""

    spec = resource.spec
    where = f"ExecutionProfile {resource.name}.spec"
    image = spec.get("image")
    if not isinstance(image, str) or not image.strip():
        raise ManifestError(f"{where}.image must be a non-empty string")
    service_account = spec.get("serviceAccountName")
    if not isinstance(service_account, str) or not service_account.strip():
        raise ManifestError(f"{where}.serviceAccountName must be a non-empty string")
    workspace_dir = spec.get("workspaceDir", "/workspace")
    if not isinstance(workspace_dir, str) or not workspace_dir.startswith("/"):
        raise ManifestError(f"{where}.workspaceDir must be an absolute path")
    command = _list(spec.get("command"), where=f"{where}.command")
    if not all(isinstance(part, str) for part in command):
        raise ManifestError(f"{where}.command must be a list of strings")

    scheduling_raw = spec.get("scheduling")
    scheduling: PodScheduling | None = None
    if scheduling_raw is not None:
        scheduling_map = _mapping(scheduling_raw, where=f"{where}.scheduling")
        affinity = scheduling_map.get("affinity")
        scheduling = PodScheduling(
            node_selector=_str_mapping(
                scheduling_map.get("nodeSelector"),
                where=f"{where}.scheduling.nodeSelector",
            ),
            tolerations=[
                _mapping(item, where=f"{where}.scheduling.tolerations")
                for item in _list(
                    scheduling_map.get("tolerations"),
                    where=f"{where}.scheduling.tolerations",
                )
            ],
            affinity=(
                _mapping(affinity, where=f"{where}.scheduling.affinity")
                if affinity is not None
                else None
            ),
        )

    return ExecutionProfile(
        name=resource.name,
        namespace=resource.namespace,
        image=image,
        workspace_dir=workspace_dir.rstrip("/") or "/",
        service_account_name=service_account,
        command=tuple(command),
        default_contexts=read_context_mounts(
            spec.get("defaultContexts"),
            where=f"{where}.defaultContexts",
        ),
        credentials=[
            _read_credential(item, where=f"{where}.credentials[{index}]")
            for index, item in enumerate(
                _list(spec.get("credentials"), where=f"{where}.credentials"),
            )
        ],
        pod_labels=_str_mapping(spec.get("podLabels"), where=f"{where}.podLabels"),
        scheduling=scheduling,
        runtime_class_name=_optional_str(
            spec.get("runtimeClassName"),
            where=f"{where}.runtimeClassName",
        ),
    )


def _read_credential(raw: Any, *, where: str) -> Credential:
    payload = _mapping(raw, where=where)
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{where}.name must be a non-empty string")
    secret_ref = _mapping(payload.get("secretRef"), where=f"{where}.secretRef")
    secret_name = secret_ref.get("name")
    secret_key = secret_ref.get("key")
    if not isinstance(secret_name, str) or not secret_name.strip():
        raise ManifestError(f"{where}.secretRef.name must be a non-empty string")
    if not isinstance(secret_key, str) or not secret_key.strip():
        raise ManifestError(f"{where}.secretRef.key must be a non-empty string")
    file_mode = payload.get("fileMode")
    if file_mode is not None and (not isinstance(file_mode, int) or isinstance(file_mode, bool)):
        raise ManifestError(f"{where}.fileMode must be an integer")
    return Credential(
        name=name,
        secret_name=secret_name,
        secret_key=secret_key,
        env=_optional_str(payload.get("env"), where=f"{where}.env"),
        mount_path=_optional_str(payload.get("mountPath"), where=f"{where}.mountPath"),
        file_mode=file_mode,
    )


# Task


def read_task_spec(raw: dict[str, Any], *, where: str = "Task.spec") -> TaskSpec:
    keep_alive_raw = raw.get("keepAlive")
    keep_alive: KeepAlive | None = None
    if keep_alive_raw is not None:
        keep_alive_map = _mapping(keep_alive_raw, where=f"{where}.keepAlive")
        seconds = keep_alive_map.get("seconds")
        if seconds is not None and (
            not isinstance(seconds, int) or isinstance(seconds, bool) or seconds <= 0
        ):
            raise ManifestError(f"{where}.keepAlive.seconds must be a positive integer")
        keep_alive = KeepAlive(
            enabled=_bool(keep_alive_map.get("enabled", False), where=f"{where}.keepAlive.enabled"),
            seconds=seconds,
        )
    return TaskSpec(
        contexts=read_context_mounts(raw.get("contexts"), where=f"{where}.contexts"),
        description=_optional_str(raw.get("description"), where=f"{where}.description"),
        profile_ref=_optional_str(raw.get("profileRef"), where=f"{where}.profileRef"),
        keep_alive=keep_alive,
    )


def read_task_status(raw: dict[str, Any]) -> TaskStatus:
    phase = raw.get("phase")
    return TaskStatus(
        phase=TaskPhase(phase) if phase else None,
        job_name=raw.get("jobName"),
        start_time=_load_time(raw.get("startTime")),
        completion_time=_load_time(raw.get("completionTime")),
        conditions=[_load_condition(item) for item in raw.get("conditions", [])],
    )


def dump_task_status(status: TaskStatus) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if status.phase is not None:
        payload["phase"] = status.phase.value
    if status.job_name is not None:
        payload["jobName"] = status.job_name
    if status.start_time is not None:
        payload["startTime"] = _dump_time(status.start_time)
    if status.completion_time is not None:
        payload["completionTime"] = _dump_time(status.completion_time)
    if status.conditions:
        payload["conditions"] = [_dump_condition(item) for item in status.conditions]
    return payload


# Batch


def read_batch_template(raw: dict[str, Any], *, where: str) -> BatchTemplate:
    """Parse constant + variable context sets, validating each mount eagerly."""

    constant = _list(raw.get("constantContext"), where=f"{where}.constantContext")
    read_context_mounts(constant, where=f"{where}.constantContext")
    variable_raw = raw.get("variableContexts")
    if variable_raw is None:
        raise ManifestError(f"{where}.variableContexts is required")
    variable: list[list[dict[str, Any]]] = []
    for index, item in enumerate(_list(variable_raw, where=f"{where}.variableContexts")):
        context_set = _list(item, where=f"{where}.variableContexts[{index}]")
        read_context_mounts(context_set, where=f"{where}.variableContexts[{index}]")
        variable.append([dict(entry) for entry in context_set])
    return BatchTemplate(
        constant_context=[dict(entry) for entry in constant],
        variable_contexts=variable,
        profile_ref=_optional_str(raw.get("profileRef"), where=f"{where}.profileRef"),
    )


def read_batch_run_spec(raw: dict[str, Any], *, where: str = "BatchRun.spec") -> BatchRunSpec:
    batch_ref = _optional_str(raw.get("batchRef"), where=f"{where}.batchRef")
    has_inline = "variableContexts" in raw or "constantContext" in raw
    if batch_ref is not None and has_inline:
        raise ManifestError(f"{where} must not combine batchRef with an inline template")
    if batch_ref is None and not has_inline:
        raise ManifestError(f"{where} must define either batchRef or variableContexts")
    return BatchRunSpec(
        batch_ref=batch_ref,
        template=read_batch_template(raw, where=where) if has_inline else None,
    )


def read_batch_run_status(raw: dict[str, Any]) -> BatchRunStatus:
    phase = raw.get("phase")
    progress = raw.get("progress", {})
    return BatchRunStatus(
        phase=BatchRunPhase(phase) if phase else None,
        start_time=_load_time(raw.get("startTime")),
        completion_time=_load_time(raw.get("completionTime")),
        progress=BatchProgress(
            total=int(progress.get("total", 0)),
            pending=int(progress.get("pending", 0)),
            running=int(progress.get("running", 0)),
            completed=int(progress.get("completed", 0)),
            failed=int(progress.get("failed", 0)),
        ),
        tasks=[
            BatchTaskRecord(
                index=int(item.get("index", position)),
                contexts=list(item.get("contexts", [])),
                phase=TaskPhase(item.get("status", TaskPhase.PENDING.value)),
                task_name=item.get("taskName"),
                start_time=_load_time(item.get("startTime")),
                completion_time=_load_time(item.get("completionTime")),
            )
            for position, item in enumerate(raw.get("tasks", []))
        ],
        conditions=[_load_condition(item) for item in raw.get("conditions", [])],
    )


def dump_batch_run_status(status: BatchRunStatus) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "progress": {
            "total": status.progress.total,
            "pending": status.progress.pending,
            "running": status.progress.running,
            "completed": status.progress.completed,
            "failed": status.progress.failed,
        },
        "tasks": [_dump_batch_record(record) for record in status.tasks],
    }
    if status.phase is not None:
        payload["phase"] = status.phase.value
    if status.start_time is not None:
        payload["startTime"] = _dump_time(status.start_time)
    if status.completion_time is not None:
        payload["completionTime"] = _dump_time(status.completion_time)
    if status.conditions:
        payload["conditions"] = [_dump_condition(item) for item in status.conditions]
    return payload


def _dump_batch_record(record: BatchTaskRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": record.index,
        "contexts": record.contexts,
        "status": record.phase.value,
    }
    if record.task_name is not None:
        payload["taskName"] = record.task_name
    if record.start_time is not None:
        payload["startTime"] = _dump_time(record.start_time)
    if record.completion_time is not None:
        payload["completionTime"] = _dump_time(record.completion_time)
    return payload


# CronTask


def read_cron_task_spec(raw: dict[str, Any], *, where: str = "CronTask.spec") -> CronTaskSpec:
    schedule = raw.get("schedule")
    if not isinstance(schedule, str) or not schedule.strip():
        raise ManifestError(f"{where}.schedule must be a non-empty string")
    policy_raw = raw.get("concurrencyPolicy", ConcurrencyPolicy.ALLOW.value)
    try:
        policy = ConcurrencyPolicy(policy_raw)
    except ValueError as error:
        raise ManifestError(
            f"{where}.concurrencyPolicy must be one of "
            f"{', '.join(item.value for item in ConcurrencyPolicy)}",
        ) from error
    template = _mapping(raw.get("taskTemplate"), where=f"{where}.taskTemplate")
    template_spec = _mapping(template.get("spec", template), where=f"{where}.taskTemplate.spec")
    read_task_spec(template_spec, where=f"{where}.taskTemplate.spec")
    return CronTaskSpec(
        schedule=schedule,
        task_template=dict(template_spec),
        concurrency_policy=policy,
        suspend=_bool(raw.get("suspend", False), where=f"{where}.suspend"),
        starting_deadline_seconds=_optional_non_negative(
            raw.get("startingDeadlineSeconds"),
            where=f"{where}.startingDeadlineSeconds",
        ),
        successful_history_limit=_non_negative_or(
            raw.get("successfulTasksHistoryLimit"),
            default=3,
            where=f"{where}.successfulTasksHistoryLimit",
        ),
        failed_history_limit=_non_negative_or(
            raw.get("failedTasksHistoryLimit"),
            default=1,
            where=f"{where}.failedTasksHistoryLimit",
        ),
    )


def read_cron_task_status(raw: dict[str, Any]) -> CronTaskStatus:
    return CronTaskStatus(
        last_schedule_time=_load_time(raw.get("lastScheduleTime")),
        last_successful_time=_load_time(raw.get("lastSuccessfulTime")),
        active=[str(item) for item in raw.get("active", [])],
        conditions=[_load_condition(item) for item in raw.get("conditions", [])],
    )


def dump_cron_task_status(status: CronTaskStatus) -> dict[str, Any]:
    payload: dict[str, Any] = {"active": list(status.active)}
    if status.last_schedule_time is not None:
        payload["lastScheduleTime"] = _dump_time(status.last_schedule_time)
    if status.last_successful_time is not None:
        payload["lastSuccessfulTime"] = _dump_time(status.last_successful_time)
    if status.conditions:
        payload["conditions"] = [_dump_condition(item) for item in status.conditions]
    return payload


# Job


def read_job_status(raw: dict[str, Any]) -> JobStatus:
    return JobStatus(
        succeeded=int(raw.get("succeeded", 0)),
        failed=int(raw.get("failed", 0)),
        active=int(raw.get("active", 0)),
    )


def dump_job_status(status: JobStatus) -> dict[str, Any]:
    return {"succeeded": status.succeeded, "failed": status.failed, "active": status.active}


# Helpers


def _dump_condition(condition: Condition) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": condition.type,
        "status": condition.status,
        "reason": condition.reason,
        "message": condition.message,
    }
    if condition.last_transition_time is not None:
        payload["lastTransitionTime"] = _dump_time(condition.last_transition_time)
    return payload


def _load_condition(raw: dict[str, Any]) -> Condition:
    return Condition(
        type=str(raw.get("type", "")),
        status=str(raw.get("status", "")),
        reason=str(raw.get("reason", "")),
        message=str(raw.get("message", "")),
        last_transition_time=_load_time(raw.get("lastTransitionTime")),
    )


def _dump_time(value: datetime) -> str:
    return value.isoformat()


def _load_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return from_iso(str(value))


def _mapping(value: Any, *, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"{where} must be an object")
    return value


def _list(value: Any, *, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestError(f"{where} must be an array")
    return value


def _str_mapping(value: Any, *, where: str) -> dict[str, str]:
    payload = _mapping(value, where=where)
    if not all(isinstance(key, str) and isinstance(item, str) for key, item in payload.items()):
        raise ManifestError(f"{where} must map strings to strings")
    return dict(payload)


def _optional_str(value: Any, *, where: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ManifestError(f"{where} must be a string when provided")
    return value or None


def _optional_non_negative(value: Any, *, where: str) -> int | None:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ManifestError(f"{where} must be a non-negative integer")
    return value


def _non_negative_or(value: Any, *, default: int, where: str) -> int:
    parsed = _optional_non_negative(value, where=where)
    return default if parsed is None else parsed


def _bool(value: Any, *, where: str) -> bool:
    if not isinstance(value, bool):
        raise ManifestError(f"{where} must be a boolean")
    return value
