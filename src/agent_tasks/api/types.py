"""Typed views over stored resources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TASK_KIND = "Task"
BATCH_KIND = "Batch"
BATCH_RUN_KIND = "BatchRun"
CRON_TASK_KIND = "CronTask"
PROFILE_KIND = "ExecutionProfile"
CONTEXT_KIND = "Context"
CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
JOB_KIND = "Job"

KEY_VALUE_KINDS = (CONFIG_MAP_KIND, SECRET_KIND)

LABEL_APP = "app"
LABEL_APP_VALUE = "agent-tasks"
LABEL_TASK = "agent-tasks.io/task"
LABEL_BATCH_RUN = "agent-tasks.io/batch-run"
LABEL_CRON_TASK = "agent-tasks.io/cron-task"
ANNOTATION_PAUSE = "agent-tasks.io/pause"
ANNOTATION_SCHEDULED_TIME = "agent-tasks.io/scheduled-at"


class TaskPhase(str, Enum):
    """Single task lifecycle states."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_TASK_PHASES = frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED})


class BatchRunPhase(str, Enum):
    """Aggregate batch lifecycle states."""

    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


TERMINAL_BATCH_PHASES = frozenset({BatchRunPhase.SUCCEEDED, BatchRunPhase.FAILED})


class ConcurrencyPolicy(str, Enum):
    """Whether a scheduled instance may start while a prior one is active."""

    ALLOW = "Allow"
    FORBID = "Forbid"
    REPLACE = "Replace"


@dataclass(slots=True, frozen=True)
class OwnerReference:
    """Parent resource whose deletion cascades to the child."""

    kind: str
    name: str
    uid: str


@dataclass(slots=True)
class ObjectMeta:
    """Identity and bookkeeping shared by every stored resource."""

    name: str
    namespace: str = "default"
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner: OwnerReference | None = None
    resource_version: int = 0
    created_at: datetime | None = None


@dataclass(slots=True)
class Resource:
    """Stored resource envelope: metadata plus free-form spec and status."""

    kind: str
    metadata: ObjectMeta
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, namespace=self.namespace, name=self.name)

    def owner_reference(self) -> OwnerReference:
        """Reference used to make another resource a child of this one."""

        return OwnerReference(kind=self.kind, name=self.name, uid=self.metadata.uid)


@dataclass(slots=True, frozen=True, order=True)
class ResourceKey:
    """Kind-qualified resource name used by the work queue."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


# Context sources: one variant per source kind.


@dataclass(slots=True, frozen=True)
class InlineSource:
    content: str


@dataclass(slots=True, frozen=True)
class KeyValueSource:
    """Single key looked up in a ConfigMap or Secret."""

    store_kind: str
    name: str
    key: str
    optional: bool = False


@dataclass(slots=True, frozen=True)
class BulkSource:
    """Whole ConfigMap or Secret, mounted as a directory or aggregated per key."""

    store_kind: str
    name: str
    optional: bool = False


@dataclass(slots=True, frozen=True)
class RepositorySource:
    """Remote git repository cloned by the job's init stage."""

    url: str
    ref: str = "HEAD"
    path: str = ""
    depth: int = 1
    secret_name: str | None = None


@dataclass(slots=True, frozen=True)
class UnsupportedSource:
    """Source type tag this controller does not know how to resolve."""

    type_tag: str


ContextSource = InlineSource | KeyValueSource | BulkSource | RepositorySource | UnsupportedSource


@dataclass(slots=True, frozen=True)
class ContextReference:
    """Reference to a stored reusable ``Context`` resource."""

    name: str
    namespace: str | None = None


@dataclass(slots=True, frozen=True)
class ContextMount:
    """Context content plus its placement in the execution container."""

    source: ContextSource | ContextReference
    mount_path: str | None = None


@dataclass(slots=True)
class ReusableContext:
    """Named content object; placement comes from whoever mounts it."""

    name: str
    namespace: str
    source: ContextSource


@dataclass(slots=True)
class Credential:
    """Secret key exposed to the agent as an env var and/or a file."""

    name: str
    secret_name: str
    secret_key: str
    env: str | None = None
    mount_path: str | None = None
    file_mode: int | None = None


@dataclass(slots=True)
class PodScheduling:
    """Scheduling constraints copied verbatim onto the pod template."""

    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None


@dataclass(slots=True)
class ExecutionProfile:
    """Reusable execution environment: image, identity, defaults."""

    name: str
    namespace: str
    image: str
    workspace_dir: str
    service_account_name: str
    command: tuple[str, ...] = ()
    default_contexts: list[ContextMount] = field(default_factory=list)
    credentials: list[Credential] = field(default_factory=list)
    pod_labels: dict[str, str] = field(default_factory=dict)
    scheduling: PodScheduling | None = None
    runtime_class_name: str | None = None


@dataclass(slots=True)
class KeepAlive:
    enabled: bool = False
    seconds: int | None = None


@dataclass(slots=True)
class TaskSpec:
    contexts: list[ContextMount] = field(default_factory=list)
    description: str | None = None
    profile_ref: str | None = None
    keep_alive: KeepAlive | None = None


@dataclass(slots=True)
class Condition:
    """Human-readable status condition attached to a resource."""

    type: str
    status: str
    reason: str
    message: str
    last_transition_time: datetime | None = None


@dataclass(slots=True)
class TaskStatus:
    phase: TaskPhase | None = None
    job_name: str | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None
    conditions: list[Condition] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_TASK_PHASES


@dataclass(slots=True)
class BatchTemplate:
    """Constant context shared by every task plus one variable set per task."""

    constant_context: list[dict[str, Any]] = field(default_factory=list)
    variable_contexts: list[list[dict[str, Any]]] = field(default_factory=list)
    profile_ref: str | None = None


@dataclass(slots=True)
class BatchRunSpec:
    batch_ref: str | None = None
    template: BatchTemplate | None = None


@dataclass(slots=True)
class BatchTaskRecord:
    """Per-index status of one generated task."""

    index: int
    contexts: list[dict[str, Any]]
    phase: TaskPhase = TaskPhase.PENDING
    task_name: str | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None


@dataclass(slots=True)
class BatchProgress:
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class BatchRunStatus:
    phase: BatchRunPhase | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None
    progress: BatchProgress = field(default_factory=BatchProgress)
    tasks: list[BatchTaskRecord] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


@dataclass(slots=True)
class CronTaskSpec:
    schedule: str
    task_template: dict[str, Any]
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW
    suspend: bool = False
    starting_deadline_seconds: int | None = None
    successful_history_limit: int = 3
    failed_history_limit: int = 1


@dataclass(slots=True)
class CronTaskStatus:
    last_schedule_time: datetime | None = None
    last_successful_time: datetime | None = None
    active: list[str] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


@dataclass(slots=True)
class JobStatus:
    """Counters reported by the execution backend."""

    succeeded: int = 0
    failed: int = 0
    active: int = 0
