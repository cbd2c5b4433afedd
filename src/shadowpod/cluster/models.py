"""Data model for shadow pods.

Pods observed from the cluster are plain ``kubernetes.client.V1Pod``
snapshots; this module holds what the caller declares (``ResourceMeta``,
``DesiredInstanceSpec``), the typed watch events and the annotation and
label keys that carry sideband state on a pod.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from kubernetes import client


ANNOTATION_PREFIX = "shadowpod.io"
REF_COUNT_ANNOTATION = f"{ANNOTATION_PREFIX}/ref-count"
HEARTBEAT_ANNOTATION = f"{ANNOTATION_PREFIX}/last-heartbeat"

COMPONENT_LABEL = f"{ANNOTATION_PREFIX}/component"
ROLE_LABEL = f"{ANNOTATION_PREFIX}/role"
MANAGED_BY_LABEL = f"{ANNOTATION_PREFIX}/managed-by"
MANAGED_BY_VALUE = "shadowpod"
ROLE_LEAF = "leaf"
ROLE_ROUTER = "router"

DEFAULT_CONTAINER_NAME = "standalone"


class PodPhase(str, Enum):
    """Phase reported in a pod's status."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def of(cls, pod: client.V1Pod) -> PodPhase:
        """Phase of a pod snapshot; a missing or unrecognised phase is UNKNOWN."""
        phase = pod.status.phase if pod.status else None
        try:
            return cls(phase)
        except ValueError:
            return cls.UNKNOWN


class WatchEventType(str, Enum):
    """Kinds of change delivered by a pod watch."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A single change to a watched pod."""

    type: WatchEventType
    pod: client.V1Pod

    @property
    def name(self) -> str | None:
        """Name of the pod the event is about."""
        return self.pod.metadata.name if self.pod.metadata else None


@dataclass
class ResourceMeta:
    """Identity and sideband maps of a pod."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class DesiredInstanceSpec:
    """Declarative target for a shadow pod to create."""

    meta: ResourceMeta
    image: str
    envs: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)
    is_leaf: bool = False

    def to_pod(self, image_pull_secret: str | None = None) -> client.V1Pod:
        """Build the pod manifest for this spec.

        The pod starts with one reference and a fresh heartbeat.
        """
        labels = {
            **self.meta.labels,
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
            ROLE_LABEL: ROLE_LEAF if self.is_leaf else ROLE_ROUTER,
        }
        annotations = {
            **self.meta.annotations,
            REF_COUNT_ANNOTATION: "1",
            HEARTBEAT_ANNOTATION: heartbeat_timestamp(),
        }
        container = client.V1Container(
            name=DEFAULT_CONTAINER_NAME,
            image=self.image,
            image_pull_policy="IfNotPresent",
            env=[client.V1EnvVar(name=key, value=value) for key, value in self.envs.items()],
            ports=[
                client.V1ContainerPort(container_port=port, protocol="TCP")
                for port in self.ports
            ],
        )
        spec = client.V1PodSpec(containers=[container], restart_policy="Always")
        if image_pull_secret:
            attach_image_pull_secret(spec, image_pull_secret)
        return client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(
                name=self.meta.name,
                namespace=self.meta.namespace,
                labels=labels,
                annotations=annotations,
            ),
            spec=spec,
        )


def attach_image_pull_secret(spec: client.V1PodSpec, secret_name: str) -> None:
    """Make ``secret_name`` the pod's only image pull secret."""
    spec.image_pull_secrets = [client.V1LocalObjectReference(name=secret_name)]


def heartbeat_timestamp(now: float | None = None) -> str:
    """Heartbeat annotation value: Unix seconds as a string."""
    return str(int(time.time() if now is None else now))


def pod_annotations(pod: client.V1Pod) -> dict[str, str]:
    """Annotations of a pod, creating the map when the pod has none."""
    if pod.metadata is None:
        pod.metadata = client.V1ObjectMeta()
    if pod.metadata.annotations is None:
        pod.metadata.annotations = {}
    return pod.metadata.annotations


def is_terminating(pod: client.V1Pod) -> bool:
    """Whether deletion of the pod is in progress."""
    return bool(pod.metadata and pod.metadata.deletion_timestamp)


def pod_name(pod: client.V1Pod) -> str:
    """Name of a pod snapshot (empty when metadata is missing)."""
    return (pod.metadata.name if pod.metadata else None) or ""


__all__ = [
    "DEFAULT_CONTAINER_NAME",
    "HEARTBEAT_ANNOTATION",
    "REF_COUNT_ANNOTATION",
    "DesiredInstanceSpec",
    "PodPhase",
    "ResourceMeta",
    "WatchEvent",
    "WatchEventType",
    "attach_image_pull_secret",
    "heartbeat_timestamp",
    "is_terminating",
    "pod_annotations",
    "pod_name",
]
