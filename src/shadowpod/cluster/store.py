"""Pod store backed by the Kubernetes API.

``PodStore`` is the narrow set of pod primitives the lifecycle components
rely on. ``KubernetesPodStore`` implements it over ``CoreV1Api`` and turns
``ApiException`` into the shadowpod error taxonomy. All methods block;
async callers run them with ``asyncio.to_thread``.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Protocol, cast

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from shadowpod.cluster.errors import PodConflictError, PodNotFoundError, PodStoreError
from shadowpod.config.settings import KubernetesSettings, get_settings
from shadowpod.observability._logging import get_logger


log = get_logger(__name__)

# HTTP Status codes
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_GONE = 410


def build_label_selector(labels: Mapping[str, str]) -> str:
    """Render a label map as an equality-based selector string."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def translate_api_exception(
    exc: ApiException,
    *,
    operation: str,
    name: str | None = None,
    namespace: str | None = None,
) -> PodStoreError:
    """Map an ``ApiException`` onto the store error hierarchy."""
    target = f"{namespace}/{name}" if name else namespace or ""
    details = {"name": name, "namespace": namespace, "reason": exc.reason}
    if exc.status == HTTP_NOT_FOUND:
        return PodNotFoundError(
            f"pod {target} not found",
            status=exc.status,
            operation=operation,
            details=details,
        )
    if exc.status == HTTP_CONFLICT:
        return PodConflictError(
            f"pod {target} was modified concurrently",
            status=exc.status,
            operation=operation,
            details=details,
        )
    return PodStoreError(
        f"{operation} failed for pod {target}: {exc.status} {exc.reason}",
        status=exc.status,
        operation=operation,
        details=details,
    )


def load_api_client(k8s_settings: KubernetesSettings | None = None) -> client.ApiClient:
    """Load Kubernetes config into a dedicated ApiClient."""
    k8s_settings = k8s_settings or get_settings().kubernetes
    config_obj = client.Configuration()
    if k8s_settings.in_cluster:
        config.load_incluster_config(client_configuration=config_obj)
        log.info("k8s_config_loaded", mode="in_cluster")
    else:
        config.load_kube_config(
            config_file=k8s_settings.kubeconfig_path,
            context=k8s_settings.context,
            client_configuration=config_obj,
        )
        log.info("k8s_config_loaded", mode="kubeconfig", context=k8s_settings.context)
    return client.ApiClient(config_obj)


class PodWatchStream(Protocol):
    """Iterator of ``(event_type, pod)`` pairs that can be closed early."""

    def __iter__(self) -> Iterator[tuple[str, client.V1Pod]]: ...

    def close(self) -> None: ...


class PodStore(Protocol):
    """Pod primitives consumed by the lifecycle components."""

    def get_pod(self, name: str, namespace: str) -> client.V1Pod: ...

    def list_pods(self, labels: Mapping[str, str], namespace: str) -> list[client.V1Pod]: ...

    def create_pod(self, pod: client.V1Pod) -> client.V1Pod: ...

    def update_pod(self, pod: client.V1Pod) -> client.V1Pod: ...

    def patch_pod_annotations(
        self, name: str, namespace: str, annotations: Mapping[str, str]
    ) -> None: ...

    def delete_pod(self, name: str, namespace: str) -> None: ...

    def watch_pods(
        self,
        namespace: str,
        *,
        name: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
    ) -> PodWatchStream: ...


class KubernetesWatchStream:
    """Adapter from ``kubernetes.watch.Watch`` to ``PodWatchStream``."""

    def __init__(self, namespace: str, events: Iterator[dict[str, Any]], watcher: watch.Watch):
        self._namespace = namespace
        self._events = events
        self._watcher = watcher

    def __iter__(self) -> Iterator[tuple[str, client.V1Pod]]:
        try:
            for event in self._events:
                yield event["type"], event["object"]
        except ApiException as e:
            raise translate_api_exception(
                e, operation="watch_pods", namespace=self._namespace
            ) from e

    def close(self) -> None:
        self._watcher.stop()


class KubernetesPodStore:
    """``PodStore`` over the Kubernetes core API."""

    def __init__(self, core_api: client.CoreV1Api) -> None:
        self._core_api = core_api

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> KubernetesPodStore:
        return cls(client.CoreV1Api(api_client))

    def get_pod(self, name: str, namespace: str) -> client.V1Pod:
        try:
            return cast(client.V1Pod, self._core_api.read_namespaced_pod(name, namespace))
        except ApiException as e:
            raise translate_api_exception(
                e, operation="get_pod", name=name, namespace=namespace
            ) from e

    def list_pods(self, labels: Mapping[str, str], namespace: str) -> list[client.V1Pod]:
        try:
            pods = cast(
                client.V1PodList,
                self._core_api.list_namespaced_pod(
                    namespace,
                    label_selector=build_label_selector(labels),
                ),
            )
        except ApiException as e:
            raise translate_api_exception(e, operation="list_pods", namespace=namespace) from e
        return list(pods.items or [])

    def create_pod(self, pod: client.V1Pod) -> client.V1Pod:
        namespace = pod.metadata.namespace
        try:
            return cast(client.V1Pod, self._core_api.create_namespaced_pod(namespace, pod))
        except ApiException as e:
            raise translate_api_exception(
                e, operation="create_pod", name=pod.metadata.name, namespace=namespace
            ) from e

    def update_pod(self, pod: client.V1Pod) -> client.V1Pod:
        """Replace the pod; the snapshot's resourceVersion guards the write."""
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        try:
            return cast(
                client.V1Pod,
                self._core_api.replace_namespaced_pod(name, namespace, pod),
            )
        except ApiException as e:
            raise translate_api_exception(
                e, operation="update_pod", name=name, namespace=namespace
            ) from e

    def patch_pod_annotations(
        self, name: str, namespace: str, annotations: Mapping[str, str]
    ) -> None:
        body = {"metadata": {"annotations": dict(annotations)}}
        try:
            self._core_api.patch_namespaced_pod(name, namespace, body)
        except ApiException as e:
            raise translate_api_exception(
                e, operation="patch_pod", name=name, namespace=namespace
            ) from e

    def delete_pod(self, name: str, namespace: str) -> None:
        try:
            self._core_api.delete_namespaced_pod(
                name,
                namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as e:
            raise translate_api_exception(
                e, operation="delete_pod", name=name, namespace=namespace
            ) from e

    def watch_pods(
        self,
        namespace: str,
        *,
        name: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
    ) -> KubernetesWatchStream:
        kwargs: dict[str, Any] = {}
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if label_selector:
            kwargs["label_selector"] = label_selector
        if resource_version:
            kwargs["resource_version"] = resource_version
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds

        watcher = watch.Watch()
        events = watcher.stream(self._core_api.list_namespaced_pod, namespace, **kwargs)
        return KubernetesWatchStream(namespace, events, watcher)


__all__ = [
    "HTTP_GONE",
    "KubernetesPodStore",
    "KubernetesWatchStream",
    "PodStore",
    "PodWatchStream",
    "build_label_selector",
    "load_api_client",
    "translate_api_exception",
]
