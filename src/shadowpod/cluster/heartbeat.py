"""Heartbeat annotation for shadow pods.

The heartbeat is advisory: it tells outside monitoring that a client still
uses the pod. A failed patch is logged and dropped.
"""

from __future__ import annotations

import asyncio
import contextlib

from urllib3.exceptions import HTTPError

from shadowpod.cluster.errors import PodStoreError
from shadowpod.cluster.models import HEARTBEAT_ANNOTATION, heartbeat_timestamp
from shadowpod.cluster.store import PodStore
from shadowpod.config.settings import HeartbeatSettings, get_settings
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import heartbeat_failures_total


log = get_logger(__name__)


class HeartbeatUpdater:
    """Patches the heartbeat annotation of a pod."""

    def __init__(self, store: PodStore, heartbeat: HeartbeatSettings | None = None) -> None:
        self._store = store
        self.interval = (heartbeat or get_settings().heartbeat).interval_seconds

    async def tick(self, name: str, namespace: str) -> bool:
        """Write the current time to the heartbeat annotation.

        Returns whether the patch was accepted.
        """
        timestamp = heartbeat_timestamp()
        log.debug("heartbeat_tick", pod=name, namespace=namespace, timestamp=timestamp)
        try:
            await asyncio.to_thread(
                self._store.patch_pod_annotations,
                name,
                namespace,
                {HEARTBEAT_ANNOTATION: timestamp},
            )
        except (PodStoreError, HTTPError) as e:
            heartbeat_failures_total.inc()
            log.warning("heartbeat_update_failed", pod=name, namespace=namespace, error=str(e))
            return False
        return True

    async def run(self, name: str, namespace: str, stop: asyncio.Event) -> None:
        """Tick every ``interval`` seconds until ``stop`` is set."""
        while not stop.is_set():
            await self.tick(name, namespace)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.interval)


__all__ = ["HeartbeatUpdater"]
