"""Bounded-retry waits on pod lifecycle phases.

Each wait polls the pod store at a fixed interval until the pod reaches
the target state or the attempt budget runs out:

- ``wait_until_running``: one named pod reaches ``Running``
- ``wait_until_set_ready``: enough pods matching a label map are ``Running``
- ``wait_until_terminated``: a deleted pod disappears

The running and set-ready waits derive their budget from the caller's
timeout (``timeout_sec // interval`` retries after the first fetch). The
terminate wait always uses ``terminate_max_attempts``, whatever timeout
the surrounding operation has.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

from kubernetes import client

from shadowpod.cluster.errors import PodNotFoundError, PodTimeoutError
from shadowpod.cluster.models import PodPhase, is_terminating, pod_name
from shadowpod.cluster.store import PodStore, build_label_selector
from shadowpod.config.settings import LifecycleSettings, get_settings
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import (
    pod_polls_total,
    pod_wait_duration_seconds,
    pod_waits_total,
)


log = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


class PollState(str, Enum):
    """State of a bounded poll."""

    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"


def max_retries(timeout_sec: int, interval: int) -> int:
    """Retries allowed after the first fetch for a timeout."""
    return max(timeout_sec, 0) // interval


class LifecyclePoller:
    """Waits for pods to reach a lifecycle phase."""

    def __init__(
        self,
        store: PodStore,
        lifecycle: LifecycleSettings | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        lifecycle = lifecycle or get_settings().lifecycle
        self._store = store
        self.interval = lifecycle.poll_interval_seconds
        self.terminate_max_attempts = lifecycle.terminate_max_attempts
        self._sleep = sleep or asyncio.sleep

    async def wait_until_running(
        self, name: str, namespace: str, timeout_sec: int
    ) -> client.V1Pod:
        """Wait until the named pod is ``Running`` and return it.

        Raises:
            PodTimeoutError: The pod is still not running after
                ``timeout_sec // interval + 1`` fetches.
            PodStoreError: A fetch failed (including ``PodNotFoundError``).
        """
        operation = "wait_until_running"
        budget = max_retries(timeout_sec, self.interval)
        state = PollState.POLLING
        attempt = 0
        pod: client.V1Pod | None = None
        start = time.monotonic()

        while state is PollState.POLLING:
            pod = await self._fetch(operation, name, namespace)
            if PodPhase.of(pod) is PodPhase.RUNNING:
                state = PollState.SUCCEEDED
            elif attempt >= budget:
                state = PollState.TIMED_OUT
            else:
                log.info("waiting_for_pod", pod=name, namespace=namespace, attempt=attempt + 1)
                await self._sleep(self.interval)
                attempt += 1

        self._record(operation, state, start)
        if state is PollState.TIMED_OUT:
            raise PodTimeoutError(
                f"pod {name} failed to start",
                operation=operation,
                details={"name": name, "namespace": namespace, "attempts": attempt + 1},
            )

        log.info("pod_ready", pod=name, namespace=namespace)
        return pod

    async def wait_until_set_ready(
        self,
        labels: Mapping[str, str],
        namespace: str,
        timeout_sec: int,
        min_count: int = 1,
    ) -> list[client.V1Pod]:
        """Wait until at least ``min_count`` pods matching ``labels`` are running.

        Returns the running subset of the last listing.

        Raises:
            PodNotFoundError: Budget exhausted and some listing came back empty.
            PodTimeoutError: Budget exhausted with pods present but not running.
        """
        operation = "wait_until_set_ready"
        selector = build_label_selector(labels)
        budget = max_retries(timeout_sec, self.interval)
        state = PollState.POLLING
        attempt = 0
        seen_empty = False
        pods: list[client.V1Pod] = []
        running: list[client.V1Pod] = []
        start = time.monotonic()

        while state is PollState.POLLING:
            pods = await asyncio.to_thread(self._store.list_pods, labels, namespace)
            pod_polls_total.labels(operation=operation).inc()
            seen_empty = seen_empty or not pods
            running = [pod for pod in pods if PodPhase.of(pod) is PodPhase.RUNNING]
            if running and len(running) >= min_count:
                state = PollState.SUCCEEDED
            elif attempt >= budget:
                state = PollState.TIMED_OUT
            else:
                log.info(
                    "waiting_for_shadow_pods",
                    selector=selector,
                    namespace=namespace,
                    found=len(pods),
                    running=len(running),
                )
                await self._sleep(self.interval)
                attempt += 1

        self._record(operation, state, start)
        if state is PollState.TIMED_OUT:
            details = {"selector": selector, "namespace": namespace, "attempts": attempt + 1}
            if seen_empty:
                raise PodNotFoundError(
                    f"pod with label {selector} not found",
                    operation=operation,
                    details=details,
                )
            not_ready = next(
                (pod for pod in pods if PodPhase.of(pod) is not PodPhase.RUNNING), pods[0]
            )
            raise PodTimeoutError(
                f"pod {pod_name(not_ready)} failed to start",
                operation=operation,
                details=details,
            )

        log.info("pod_ready", pod=pod_name(running[0]), selector=selector, running=len(running))
        return running

    async def wait_until_terminated(self, name: str, namespace: str) -> client.V1Pod | None:
        """Wait for a deleted pod to go away.

        Returns ``None`` once the pod is gone. If the pod is present without a
        deletion timestamp (it was recreated, or its deletion was cancelled)
        that snapshot is returned instead.

        Raises:
            PodTimeoutError: The pod is still terminating after
                ``terminate_max_attempts`` polls.
        """
        operation = "wait_until_terminated"
        state = PollState.POLLING
        attempt = 0
        pod: client.V1Pod | None = None
        start = time.monotonic()

        while state is PollState.POLLING:
            if attempt >= self.terminate_max_attempts:
                state = PollState.TIMED_OUT
                break
            log.info("pod_terminating", pod=name, namespace=namespace, attempt=attempt + 1)
            await self._sleep(self.interval)
            attempt += 1
            try:
                pod = await self._fetch(operation, name, namespace)
            except PodNotFoundError:
                pod = None
                state = PollState.SUCCEEDED
                continue
            if not is_terminating(pod):
                state = PollState.SUCCEEDED

        self._record(operation, state, start)
        if state is PollState.TIMED_OUT:
            raise PodTimeoutError(
                f"pod '{name}' still terminating, please try again later",
                operation=operation,
                details={"name": name, "namespace": namespace, "attempts": attempt},
            )

        if pod is None:
            log.info("pod_terminated", pod=name, namespace=namespace)
        else:
            log.info("pod_not_terminating", pod=name, namespace=namespace)
        return pod

    async def _fetch(self, operation: str, name: str, namespace: str) -> client.V1Pod:
        pod_polls_total.labels(operation=operation).inc()
        return await asyncio.to_thread(self._store.get_pod, name, namespace)

    @staticmethod
    def _record(operation: str, state: PollState, start: float) -> None:
        pod_waits_total.labels(operation=operation, result=state.value).inc()
        pod_wait_duration_seconds.labels(operation=operation).observe(time.monotonic() - start)


__all__ = ["LifecyclePoller", "PollState", "Sleeper", "max_retries"]
