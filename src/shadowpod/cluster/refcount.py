"""Reference counting for shared shadow pods.

Several logical clients can share one shadow pod. The number of clients
is kept in the ``shadowpod.io/ref-count`` annotation on the pod itself and
changed with a read-modify-write of the whole pod. The write carries the
``resourceVersion`` of the snapshot it was computed from, so a concurrent
writer makes it fail with a conflict; ``ConflictRetryPolicy`` decides how
often the read-modify-write is repeated before the conflict is raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from kubernetes import client

from shadowpod.cluster.errors import (
    PodConflictError,
    RefCountContractError,
    RefCountParseError,
)
from shadowpod.cluster.models import REF_COUNT_ANNOTATION, pod_annotations
from shadowpod.cluster.poller import Sleeper
from shadowpod.cluster.store import PodStore
from shadowpod.config.settings import RefCountSettings, get_settings
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import refcount_conflicts_total, refcount_updates_total


log = get_logger(__name__)

T = TypeVar("T")

LAST_REFERENCE = "1"


@dataclass(frozen=True)
class ConflictRetryPolicy:
    """How often a conflicting ref-count write is retried."""

    max_attempts: int = 5
    backoff_seconds: float = 0.2

    @classmethod
    def from_settings(cls, refcount: RefCountSettings) -> ConflictRetryPolicy:
        return cls(max_attempts=refcount.max_attempts, backoff_seconds=refcount.backoff_seconds)


def parse_ref_count(raw: str | None, name: str) -> int:
    """Parse a ref-count annotation value.

    Raises:
        RefCountParseError: The value is missing, not an integer, or negative.
    """
    try:
        count = int(raw) if raw is not None else None
    except ValueError:
        count = None
    if count is None or count < 0:
        log.error(
            "ref_count_parse_failed",
            pod=name,
            annotation=REF_COUNT_ANNOTATION,
            value=raw,
        )
        raise RefCountParseError(
            f"failed to parse annotation {REF_COUNT_ANNOTATION} of pod {name} "
            f"with value {raw!r}",
            operation="parse_ref_count",
            details={"name": name, "value": raw},
        )
    return count


class RefCountManager:
    """Increments and decrements the ref count of a shared pod."""

    def __init__(
        self,
        store: PodStore,
        policy: ConflictRetryPolicy | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self._store = store
        self.policy = policy or ConflictRetryPolicy.from_settings(get_settings().refcount)
        self._sleep = sleep or asyncio.sleep

    async def increment(self, name: str, namespace: str) -> int:
        """Add one reference to the pod and return the new count.

        Raises:
            RefCountParseError: The annotation is malformed; nothing is written.
            PodConflictError: Every attempt lost a race with another writer.
        """

        async def attempt() -> int:
            pod = await self._get(name, namespace)
            annotations = pod_annotations(pod)
            count = parse_ref_count(annotations.get(REF_COUNT_ANNOTATION), name) + 1
            annotations[REF_COUNT_ANNOTATION] = str(count)
            await asyncio.to_thread(self._store.update_pod, pod)
            log.info("ref_count_increased", pod=name, namespace=namespace, count=count)
            return count

        return await self._with_retry("increment", name, attempt)

    async def decrement(self, name: str, namespace: str) -> bool:
        """Release one reference to the pod.

        Returns ``True`` when the caller held the last reference. The pod is
        left untouched in that case and the caller is expected to delete it.

        Raises:
            RefCountParseError: The annotation is malformed.
            RefCountContractError: The pod holds no reference to release.
            PodConflictError: Every attempt lost a race with another writer.
        """

        async def attempt() -> bool:
            pod = await self._get(name, namespace)
            annotations = pod_annotations(pod)
            raw = annotations.get(REF_COUNT_ANNOTATION)
            if raw == LAST_REFERENCE:
                log.info("ref_count_last_reference", pod=name, namespace=namespace)
                return True

            count = parse_ref_count(raw, name)
            if count <= 0:
                raise RefCountContractError(
                    f"pod {name} has no reference to release (ref count {raw!r})",
                    operation="decrement",
                    details={"name": name, "namespace": namespace, "value": raw},
                )
            annotations[REF_COUNT_ANNOTATION] = str(count - 1)
            await asyncio.to_thread(self._store.update_pod, pod)
            log.info(
                "ref_count_decreased",
                pod=name,
                namespace=namespace,
                previous=count,
                count=count - 1,
            )
            return False

        return await self._with_retry("decrement", name, attempt)

    async def _get(self, name: str, namespace: str) -> client.V1Pod:
        return await asyncio.to_thread(self._store.get_pod, name, namespace)

    async def _with_retry(
        self, operation: str, name: str, attempt: Callable[[], Awaitable[T]]
    ) -> T:
        tries = 0
        while True:
            tries += 1
            try:
                result = await attempt()
            except PodConflictError:
                refcount_conflicts_total.labels(operation=operation).inc()
                if tries >= self.policy.max_attempts:
                    refcount_updates_total.labels(operation=operation, result="conflict").inc()
                    log.warning("ref_count_conflict_exhausted", pod=name, attempts=tries)
                    raise
                log.debug("ref_count_conflict_retry", pod=name, attempt=tries)
                await self._sleep(self.policy.backoff_seconds)
                continue
            except Exception:
                refcount_updates_total.labels(operation=operation, result="error").inc()
                raise
            refcount_updates_total.labels(operation=operation, result="success").inc()
            return result


__all__ = ["LAST_REFERENCE", "ConflictRetryPolicy", "RefCountManager", "parse_ref_count"]
