"""Assemble the unit-of-work descriptor for a resolved task."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agent_tasks.api.types import (
    LABEL_APP,
    LABEL_APP_VALUE,
    LABEL_TASK,
    ExecutionProfile,
    OwnerReference,
    Resource,
    TaskSpec,
)
from agent_tasks.config import TaskLifecycleSettings
from agent_tasks.contexts.aggregator import ContentBundle, storage_key
from agent_tasks.contexts.resolver import RepositoryMount

AGENT_CONTAINER_NAME = "agent"
CONTEXT_VOLUME_NAME = "context-files"
CREDENTIAL_FILE_NAME = "secret-file"
DEFAULT_CREDENTIAL_FILE_MODE = 0o600
GIT_ROOT = "/git"
GIT_LINK = "repo"
KEEP_ALIVE_ENV = "AGENT_TASKS_KEEP_ALIVE_SECONDS"


@dataclass(slots=True)
class SecretKeyRef:
    name: str
    key: str
    optional: bool | None = None

    def to_spec(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "key": self.key}
        if self.optional is not None:
            payload["optional"] = self.optional
        return payload


@dataclass(slots=True)
class EnvVar:
    """Plain value or indirect secret reference; never both."""

    name: str
    value: str | None = None
    secret_ref: SecretKeyRef | None = None

    def to_spec(self) -> dict[str, Any]:
        if self.secret_ref is not None:
            return {"name": self.name, "valueFrom": {"secretKeyRef": self.secret_ref.to_spec()}}
        return {"name": self.name, "value": self.value or ""}


@dataclass(slots=True)
class VolumeMount:
    name: str
    mount_path: str
    sub_path: str | None = None

    def to_spec(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "mountPath": self.mount_path}
        if self.sub_path is not None:
            payload["subPath"] = self.sub_path
        return payload


@dataclass(slots=True)
class Volume:
    """Named volume; ``source`` is the single volume-source block."""

    name: str
    source: dict[str, Any]

    def to_spec(self) -> dict[str, Any]:
        return {"name": self.name, **self.source}


@dataclass(slots=True)
class Container:
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)

    def to_spec(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "image": self.image,
            "imagePullPolicy": "IfNotPresent",
            "env": [item.to_spec() for item in self.env],
            "volumeMounts": [item.to_spec() for item in self.volume_mounts],
        }
        if self.command:
            payload["command"] = list(self.command)
        return payload


@dataclass(slots=True)
class JobDescriptor:
    """Complete unit-of-work description; persisted as the ``Job`` spec."""

    name: str
    namespace: str
    labels: dict[str, str]
    owner: OwnerReference
    pod_labels: dict[str, str]
    service_account_name: str
    container: Container
    init_containers: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None
    runtime_class_name: str | None = None
    restart_policy: str = "Never"

    def to_spec(self) -> dict[str, Any]:
        pod_spec: dict[str, Any] = {
            "serviceAccountName": self.service_account_name,
            "restartPolicy": self.restart_policy,
            "containers": [self.container.to_spec()],
            "volumes": [item.to_spec() for item in self.volumes],
        }
        if self.init_containers:
            pod_spec["initContainers"] = [item.to_spec() for item in self.init_containers]
        if self.node_selector:
            pod_spec["nodeSelector"] = dict(self.node_selector)
        if self.tolerations:
            pod_spec["tolerations"] = list(self.tolerations)
        if self.affinity is not None:
            pod_spec["affinity"] = self.affinity
        if self.runtime_class_name is not None:
            pod_spec["runtimeClassName"] = self.runtime_class_name
        return {
            "template": {
                "metadata": {"labels": dict(self.pod_labels)},
                "spec": pod_spec,
            },
        }


class JobBuilder:
    """Pure descriptor assembly; creating the job is the caller's job."""

    def __init__(self, lifecycle: TaskLifecycleSettings) -> None:
        self.lifecycle = lifecycle

    def build(  # noqa: PLR0913
        self,
        *,
        task: Resource,
        spec: TaskSpec,
        profile: ExecutionProfile,
        bundle: ContentBundle,
        job_name: str,
        context_config_map: str | None,
    ) -> JobDescriptor:
        keep_alive_seconds = self._keep_alive_seconds(spec)
        env = [
            EnvVar(name="TASK_NAME", value=task.name),
            EnvVar(name="TASK_NAMESPACE", value=task.namespace),
            EnvVar(name="WORKSPACE_DIR", value=profile.workspace_dir),
        ]
        if keep_alive_seconds is not None:
            env.append(EnvVar(name=KEEP_ALIVE_ENV, value=str(keep_alive_seconds)))

        volumes: list[Volume] = []
        mounts: list[VolumeMount] = []
        self._wire_credentials(profile, env=env, volumes=volumes, mounts=mounts)

        if context_config_map is not None and bundle.files:
            volumes.append(
                Volume(
                    name=CONTEXT_VOLUME_NAME,
                    source={"configMap": {"name": context_config_map}},
                ),
            )
            mounts.extend(
                VolumeMount(name=CONTEXT_VOLUME_NAME, mount_path=path, sub_path=storage_key(path))
                for path in bundle.files
            )

        for index, dir_mount in enumerate(bundle.dir_mounts):
            volume_name = f"dir-mount-{index}"
            volume_key = "configMap" if dir_mount.store_kind == "ConfigMap" else "secret"
            name_field = "name" if volume_key == "configMap" else "secretName"
            volumes.append(
                Volume(
                    name=volume_name,
                    source={
                        volume_key: {name_field: dir_mount.name, "optional": dir_mount.optional},
                    },
                ),
            )
            mounts.append(VolumeMount(name=volume_name, mount_path=dir_mount.mount_path))

        init_containers: list[Container] = []
        for index, repo_mount in enumerate(bundle.repo_mounts):
            volume_name = f"git-context-{index}"
            volumes.append(Volume(name=volume_name, source={"emptyDir": {}}))
            init_containers.append(
                self._git_sync_container(repo_mount, volume_name=volume_name, index=index),
            )
            mounts.append(
                VolumeMount(
                    name=volume_name,
                    mount_path=repo_mount.mount_path,
                    sub_path=_repository_sub_path(repo_mount.source.path),
                ),
            )

        labels = {LABEL_APP: LABEL_APP_VALUE, LABEL_TASK: task.name}
        scheduling = profile.scheduling
        return JobDescriptor(
            name=job_name,
            namespace=task.namespace,
            labels=labels,
            owner=task.owner_reference(),
            pod_labels={**labels, **profile.pod_labels},
            service_account_name=profile.service_account_name,
            container=Container(
                name=AGENT_CONTAINER_NAME,
                image=profile.image,
                command=self._command(profile.command, keep_alive_seconds),
                env=env,
                volume_mounts=mounts,
            ),
            init_containers=init_containers,
            volumes=volumes,
            node_selector=dict(scheduling.node_selector) if scheduling else {},
            tolerations=list(scheduling.tolerations) if scheduling else [],
            affinity=scheduling.affinity if scheduling else None,
            runtime_class_name=profile.runtime_class_name,
        )

    def _keep_alive_seconds(self, spec: TaskSpec) -> int | None:
        if spec.keep_alive is None or not spec.keep_alive.enabled:
            return None
        return spec.keep_alive.seconds or self.lifecycle.keep_alive_seconds

    def _command(self, command: tuple[str, ...], keep_alive_seconds: int | None) -> list[str]:
        if not command:
            return []
        if keep_alive_seconds is None:
            return list(command)
        script = (
            f"{' '.join(command)}; EXIT_CODE=$?; "
            f'echo "Keep-alive: keeping container alive for {keep_alive_seconds} seconds."; '
            f"sleep {keep_alive_seconds}; exit $EXIT_CODE"
        )
        return ["sh", "-c", script]

    def _wire_credentials(
        self,
        profile: ExecutionProfile,
        *,
        env: list[EnvVar],
        volumes: list[Volume],
        mounts: list[VolumeMount],
    ) -> None:
        for index, credential in enumerate(profile.credentials):
            if credential.env:
                env.append(
                    EnvVar(
                        name=credential.env,
                        secret_ref=SecretKeyRef(
                            name=credential.secret_name,
                            key=credential.secret_key,
                        ),
                    ),
                )
            if credential.mount_path:
                volume_name = f"credential-{index}"
                mode = (
                    credential.file_mode
                    if credential.file_mode is not None
                    else DEFAULT_CREDENTIAL_FILE_MODE
                )
                volumes.append(
                    Volume(
                        name=volume_name,
                        source={
                            "secret": {
                                "secretName": credential.secret_name,
                                "items": [
                                    {
                                        "key": credential.secret_key,
                                        "path": CREDENTIAL_FILE_NAME,
                                        "mode": mode,
                                    },
                                ],
                                "defaultMode": mode,
                            },
                        },
                    ),
                )
                mounts.append(
                    VolumeMount(
                        name=volume_name,
                        mount_path=credential.mount_path,
                        sub_path=CREDENTIAL_FILE_NAME,
                    ),
                )

    def _git_sync_container(
        self,
        repo_mount: RepositoryMount,
        *,
        volume_name: str,
        index: int,
    ) -> Container:
        source = repo_mount.source
        env = [
            EnvVar(name="GITSYNC_REPO", value=source.url),
            EnvVar(name="GITSYNC_REF", value=source.ref or "HEAD"),
            EnvVar(name="GITSYNC_ONE_TIME", value="true"),
            EnvVar(name="GITSYNC_DEPTH", value=str(source.depth if source.depth > 0 else 1)),
            EnvVar(name="GITSYNC_ROOT", value=GIT_ROOT),
            EnvVar(name="GITSYNC_LINK", value=GIT_LINK),
        ]
        if source.secret_name:
            env.extend(
                EnvVar(
                    name=env_name,
                    secret_ref=SecretKeyRef(name=source.secret_name, key=key, optional=True),
                )
                for env_name, key in (
                    ("GITSYNC_USERNAME", "username"),
                    ("GITSYNC_PASSWORD", "password"),
                )
            )
        return Container(
            name=f"git-sync-{index}",
            image=self.lifecycle.git_sync_image,
            env=env,
            volume_mounts=[VolumeMount(name=volume_name, mount_path=GIT_ROOT)],
        )


def _repository_sub_path(path: str) -> str:
    trimmed = path.removeprefix("/")
    return f"{GIT_LINK}/{trimmed}" if trimmed else GIT_LINK
