"""Pytest configuration and fixtures for shadowpod tests."""

from __future__ import annotations

import copy
import os
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from kubernetes import client

from shadowpod.cluster.errors import PodConflictError, PodNotFoundError, PodStoreError

if TYPE_CHECKING:
    from collections.abc import Generator


# Ensure we're using test configuration
os.environ.setdefault("SHADOWPOD_ENVIRONMENT", "development")
os.environ.setdefault("SHADOWPOD_OBSERVABILITY_LOG_FORMAT", "console")


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from shadowpod.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_pod(
    name: str,
    namespace: str = "default",
    phase: str | None = "Running",
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    deletion_timestamp: datetime | None = None,
    resource_version: str = "1",
) -> client.V1Pod:
    """Build a pod snapshot as the API would return it."""
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            deletion_timestamp=deletion_timestamp,
            resource_version=resource_version,
        ),
        status=client.V1PodStatus(phase=phase),
    )


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that returns at once."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeWatchStream:
    """Finite watch stream; optionally fails after its events."""

    def __init__(
        self,
        events: list[tuple[str, client.V1Pod]],
        error: Exception | None = None,
    ) -> None:
        self.events = events
        self.error = error
        self.closed = False

    def __iter__(self) -> Iterator[tuple[str, client.V1Pod]]:
        yield from self.events
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.closed = True


class FakePodStore:
    """In-memory ``PodStore`` with scripted responses.

    ``get_script[name]`` and ``list_script`` are consumed one response per
    call (a pod, a list of pods, or an exception to raise) before falling
    back to the stored pods.
    """

    def __init__(self) -> None:
        self.pods: dict[tuple[str, str], client.V1Pod] = {}
        self.get_script: dict[str, list[Any]] = {}
        self.list_script: list[Any] = []
        self.watch_script: list[Any] = []
        self.update_conflicts = 0
        self.patch_error: Exception | None = None

        self.get_calls: list[tuple[str, str]] = []
        self.list_calls: list[tuple[dict[str, str], str]] = []
        self.updates: list[client.V1Pod] = []
        self.created: list[client.V1Pod] = []
        self.patches: list[tuple[str, str, dict[str, str]]] = []
        self.deleted: list[tuple[str, str]] = []
        self.watch_calls: list[dict[str, Any]] = []

    def add(self, pod: client.V1Pod) -> client.V1Pod:
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = pod
        return pod

    def stored(self, name: str, namespace: str = "default") -> client.V1Pod:
        return self.pods[(namespace, name)]

    def get_pod(self, name: str, namespace: str) -> client.V1Pod:
        self.get_calls.append((name, namespace))
        script = self.get_script.get(name)
        if script:
            response = script.pop(0)
            if isinstance(response, Exception):
                raise response
            return copy.deepcopy(response)
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise PodNotFoundError(f"pod {namespace}/{name} not found", status=404)
        return copy.deepcopy(pod)

    def list_pods(self, labels: Mapping[str, str], namespace: str) -> list[client.V1Pod]:
        self.list_calls.append((dict(labels), namespace))
        if self.list_script:
            response = self.list_script.pop(0)
            if isinstance(response, Exception):
                raise response
            return copy.deepcopy(response)
        return [
            copy.deepcopy(pod)
            for (ns, _), pod in self.pods.items()
            if ns == namespace
            and all((pod.metadata.labels or {}).get(k) == v for k, v in labels.items())
        ]

    def create_pod(self, pod: client.V1Pod) -> client.V1Pod:
        key = (pod.metadata.namespace, pod.metadata.name)
        if key in self.pods:
            raise PodConflictError(f"pod {key[0]}/{key[1]} already exists", status=409)
        self.created.append(pod)
        self.pods[key] = copy.deepcopy(pod)
        return pod

    def update_pod(self, pod: client.V1Pod) -> client.V1Pod:
        if self.update_conflicts > 0:
            self.update_conflicts -= 1
            raise PodConflictError(f"pod {pod.metadata.name} was modified", status=409)
        self.updates.append(copy.deepcopy(pod))
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = copy.deepcopy(pod)
        return pod

    def patch_pod_annotations(
        self, name: str, namespace: str, annotations: Mapping[str, str]
    ) -> None:
        if self.patch_error is not None:
            raise self.patch_error
        self.patches.append((name, namespace, dict(annotations)))

    def delete_pod(self, name: str, namespace: str) -> None:
        if (namespace, name) not in self.pods:
            raise PodNotFoundError(f"pod {namespace}/{name} not found", status=404)
        self.deleted.append((name, namespace))
        del self.pods[(namespace, name)]

    def watch_pods(
        self,
        namespace: str,
        *,
        name: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
    ) -> FakeWatchStream:
        self.watch_calls.append(
            {
                "namespace": namespace,
                "name": name,
                "label_selector": label_selector,
                "resource_version": resource_version,
                "timeout_seconds": timeout_seconds,
            }
        )
        if not self.watch_script:
            raise PodStoreError("no more watch streams", status=500)
        response = self.watch_script.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def store() -> FakePodStore:
    """Empty fake pod store."""
    return FakePodStore()


@pytest.fixture
def sleep() -> RecordingSleep:
    """Sleep replacement that records requested delays."""
    return RecordingSleep()


@pytest.fixture
def deleting_since() -> datetime:
    """A deletion timestamp for terminating pods."""
    return datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
def pod_factory() -> Callable[..., client.V1Pod]:
    """Factory for pod snapshots (see ``make_pod``)."""
    return make_pod


@pytest.fixture
def stream_factory() -> type[FakeWatchStream]:
    """Factory for finite watch streams."""
    return FakeWatchStream
