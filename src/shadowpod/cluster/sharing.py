"""Shared shadow pods.

A shadow pod is created once and then shared by every client that asks
for the same pod name. Each client holds one reference in the pod's
ref-count annotation; the pod is deleted when the last reference is
released.

Features:
- Reuse a running shadow pod by adding a reference
- Wait out a pod that is still terminating before recreating it
- Create a fresh pod with a single reference
- Delete the pod on release of the last reference
"""

from __future__ import annotations

import asyncio
from collections import Counter

from kubernetes import client

from shadowpod.cluster.errors import PodConflictError, PodNotFoundError, ShadowPodError
from shadowpod.cluster.models import DesiredInstanceSpec, is_terminating
from shadowpod.cluster.poller import LifecyclePoller
from shadowpod.cluster.refcount import RefCountManager
from shadowpod.cluster.store import PodStore
from shadowpod.config.settings import get_settings
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import shared_pods_acquired


log = get_logger(__name__)


class SharedPodManager:
    """Acquires and releases references to shared shadow pods."""

    def __init__(
        self,
        store: PodStore,
        poller: LifecyclePoller,
        refcount: RefCountManager,
        image_pull_secret: str | None = None,
    ) -> None:
        self._store = store
        self._poller = poller
        self._refcount = refcount
        if image_pull_secret is None:
            image_pull_secret = get_settings().kubernetes.image_pull_secret
        self.image_pull_secret = image_pull_secret
        # references taken by this manager, keyed by (namespace, name)
        self._held: Counter[tuple[str, str]] = Counter()

    async def acquire(
        self,
        spec: DesiredInstanceSpec,
        timeout_sec: int,
        image_pull_secret: str | None = None,
    ) -> client.V1Pod:
        """Get a running shadow pod for ``spec``, holding one reference to it.

        Args:
            spec: Desired pod; its name identifies the shared pod
            timeout_sec: How long to wait for the pod to be running
            image_pull_secret: Secret attached to a newly created pod; defaults
                to the manager's ``image_pull_secret``

        Returns:
            V1Pod: The running pod
        """
        name = spec.meta.name
        namespace = spec.meta.namespace

        try:
            existing = await asyncio.to_thread(self._store.get_pod, name, namespace)
        except PodNotFoundError:
            existing = None

        if existing is not None and is_terminating(existing):
            log.info("shared_pod_terminating", pod=name, namespace=namespace)
            existing = await self._poller.wait_until_terminated(name, namespace)

        if existing is not None:
            count = await self._refcount.increment(name, namespace)
            log.info("shared_pod_reused", pod=name, namespace=namespace, ref_count=count)
        else:
            await self._create(spec, image_pull_secret or self.image_pull_secret)

        try:
            pod = await self._poller.wait_until_running(name, namespace, timeout_sec)
        except Exception:
            log.exception("shared_pod_start_failed", pod=name, namespace=namespace)
            await self._best_effort_release(name, namespace)
            raise

        self._held[(namespace, name)] += 1
        shared_pods_acquired.inc()
        return pod

    async def release(self, name: str, namespace: str) -> bool:
        """Drop one reference; delete the pod when it was the last one.

        Returns:
            bool: True if the pod was deleted
        """
        should_cleanup = await self._refcount.decrement(name, namespace)
        if self._held[(namespace, name)] > 0:
            self._held[(namespace, name)] -= 1
            shared_pods_acquired.dec()
        if not should_cleanup:
            return False

        log.info("shared_pod_removing", pod=name, namespace=namespace)
        try:
            await asyncio.to_thread(self._store.delete_pod, name, namespace)
        except PodNotFoundError:
            log.debug("shared_pod_already_removed", pod=name, namespace=namespace)
        return True

    async def _create(self, spec: DesiredInstanceSpec, image_pull_secret: str | None) -> None:
        pod = spec.to_pod(image_pull_secret=image_pull_secret)
        try:
            await asyncio.to_thread(self._store.create_pod, pod)
        except PodConflictError:
            # Another client created it between our read and create
            count = await self._refcount.increment(spec.meta.name, spec.meta.namespace)
            log.info("shared_pod_reused", pod=spec.meta.name, ref_count=count)
            return
        log.info(
            "shared_pod_created",
            pod=spec.meta.name,
            namespace=spec.meta.namespace,
            image=spec.image,
        )

    async def _best_effort_release(self, name: str, namespace: str) -> None:
        """Give back the reference taken by a failed acquire."""
        try:
            should_cleanup = await self._refcount.decrement(name, namespace)
            if should_cleanup:
                await asyncio.to_thread(self._store.delete_pod, name, namespace)
        except ShadowPodError:
            log.warning("shared_pod_release_failed", pod=name, namespace=namespace)


__all__ = ["SharedPodManager"]
