"""Pod watch dispatcher.

A ``WatchSubscription`` reads the store's watch stream on a background
task and delivers typed ``WatchEvent``s, in stream order, over an asyncio
queue. Consumers iterate the subscription; ``PodWatcher.watch_pod`` layers
optional per-event-type callbacks on top.

Reconnect policy:
- a stream closed cleanly by the server is resubscribed from the last
  seen resourceVersion when ``resubscribe_on_close`` is set, otherwise the
  subscription ends;
- a failed stream is resubscribed after ``reconnect_backoff_seconds``, from
  scratch when the resourceVersion expired (410);
- more than ``max_reconnect_attempts`` consecutive failures fail the
  subscription closed: iteration raises ``WatchStreamError``.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from kubernetes import client
from urllib3.exceptions import HTTPError

from shadowpod.cluster.errors import PodStoreError, WatchStreamError
from shadowpod.cluster.models import WatchEvent, WatchEventType, pod_name
from shadowpod.cluster.poller import Sleeper
from shadowpod.cluster.store import HTTP_GONE, PodStore, PodWatchStream, build_label_selector
from shadowpod.config.settings import WatchSettings, get_settings
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import (
    watch_events_total,
    watch_reconnects_total,
    watch_subscriptions_active,
)


log = get_logger(__name__)

PodCallback = Callable[[client.V1Pod], Awaitable[None] | None]

_END = object()
_DONE = object()


class WatchSubscription:
    """Ordered stream of events for one watch scope."""

    def __init__(
        self,
        store: PodStore,
        namespace: str,
        *,
        name: str | None = None,
        label_selector: str | None = None,
        policy: WatchSettings,
        sleep: Sleeper,
        max_queue_size: int = 0,
    ) -> None:
        self._store = store
        self.namespace = namespace
        self.name = name
        self.label_selector = label_selector
        self._policy = policy
        self._sleep = sleep
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)
        self._stream: PodWatchStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._finished = False
        self._received = False
        self.resource_version: str | None = None

    @property
    def scope(self) -> str:
        return self.name or self.label_selector or "*"

    def start(self) -> WatchSubscription:
        """Start reading the watch stream on a background task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"watch-pods-{self.scope}")
            watch_subscriptions_active.inc()
        return self

    async def close(self) -> None:
        """Stop the background task and the underlying stream."""
        if self._stream is not None:
            self._stream.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._finished = True

    def __aiter__(self) -> WatchSubscription:
        return self

    async def __anext__(self) -> WatchEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, WatchStreamError):
            self._finished = True
            raise item
        return item

    async def __aenter__(self) -> WatchSubscription:
        return self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _run(self) -> None:
        failures = 0
        try:
            while True:
                try:
                    await self._consume_stream()
                except (PodStoreError, HTTPError) as e:
                    failures = 1 if self._received else failures + 1
                    expired = isinstance(e, PodStoreError) and e.status == HTTP_GONE
                    if expired:
                        self.resource_version = None
                    if failures > self._policy.max_reconnect_attempts:
                        log.error(
                            "watch_stream_failed",
                            scope=self.scope,
                            namespace=self.namespace,
                            failures=failures,
                            error=str(e),
                        )
                        raise WatchStreamError(
                            f"watch on pods {self.scope} in {self.namespace} failed "
                            f"after {failures} attempts: {e}",
                            operation="watch_pods",
                            details={"scope": self.scope, "namespace": self.namespace},
                        ) from e
                    reason = "expired" if expired else "error"
                    log.warning(
                        "watch_stream_reconnecting",
                        scope=self.scope,
                        namespace=self.namespace,
                        reason=reason,
                        attempt=failures,
                        error=str(e),
                    )
                    watch_reconnects_total.labels(reason=reason).inc()
                    await self._sleep(self._policy.reconnect_backoff_seconds)
                    continue

                failures = 0
                if not self._policy.resubscribe_on_close:
                    log.info("watch_stream_closed", scope=self.scope, namespace=self.namespace)
                    break
                log.debug(
                    "watch_stream_resubscribing",
                    scope=self.scope,
                    resource_version=self.resource_version,
                )
                watch_reconnects_total.labels(reason="closed").inc()
        except WatchStreamError as e:
            await self._queue.put(e)
            return
        finally:
            watch_subscriptions_active.dec()
        await self._queue.put(_END)

    async def _consume_stream(self) -> None:
        self._received = False
        stream = await asyncio.to_thread(
            self._store.watch_pods,
            self.namespace,
            name=self.name,
            label_selector=self.label_selector,
            resource_version=self.resource_version,
            timeout_seconds=self._policy.server_timeout_seconds,
        )
        self._stream = stream
        events = iter(stream)
        try:
            while True:
                item = await asyncio.to_thread(next, events, _DONE)
                if item is _DONE:
                    return
                event_type, pod = item
                if event_type == "ERROR":
                    raise PodStoreError(
                        f"watch on pods {self.scope} returned an error event",
                        operation="watch_pods",
                        details={"object": str(pod)},
                    )
                if pod.metadata and pod.metadata.resource_version:
                    self.resource_version = pod.metadata.resource_version
                try:
                    kind = WatchEventType(event_type)
                except ValueError:
                    continue
                watch_events_total.labels(event_type=kind.value).inc()
                self._received = True
                await self._queue.put(WatchEvent(type=kind, pod=pod))
        finally:
            stream.close()
            self._stream = None


class PodWatcher:
    """Opens watch subscriptions on pods."""

    def __init__(
        self,
        store: PodStore,
        policy: WatchSettings | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self._store = store
        self.policy = policy or get_settings().watch
        self._sleep = sleep or asyncio.sleep

    def subscribe(
        self,
        namespace: str,
        *,
        name: str | None = None,
        labels: Mapping[str, str] | None = None,
        max_queue_size: int = 0,
    ) -> WatchSubscription:
        """Create a subscription scoped to one pod name or a label map.

        The subscription starts reading when entered with ``async with`` or
        when ``start()`` is called.
        """
        return WatchSubscription(
            self._store,
            namespace,
            name=name,
            label_selector=build_label_selector(labels) if labels else None,
            policy=self.policy,
            sleep=self._sleep,
            max_queue_size=max_queue_size,
        )

    def watch_pod(
        self,
        name: str,
        namespace: str,
        on_added: PodCallback | None = None,
        on_deleted: PodCallback | None = None,
        on_modified: PodCallback | None = None,
    ) -> asyncio.Task[None]:
        """Dispatch changes of one pod to callbacks on a background task."""
        return self._dispatch(
            self.subscribe(namespace, name=name),
            {
                WatchEventType.ADDED: on_added,
                WatchEventType.DELETED: on_deleted,
                WatchEventType.MODIFIED: on_modified,
            },
        )

    def watch_pods(
        self,
        labels: Mapping[str, str],
        namespace: str,
        on_added: PodCallback | None = None,
        on_deleted: PodCallback | None = None,
        on_modified: PodCallback | None = None,
    ) -> asyncio.Task[None]:
        """Dispatch changes of pods matching ``labels`` to callbacks."""
        return self._dispatch(
            self.subscribe(namespace, labels=labels),
            {
                WatchEventType.ADDED: on_added,
                WatchEventType.DELETED: on_deleted,
                WatchEventType.MODIFIED: on_modified,
            },
        )

    def _dispatch(
        self,
        subscription: WatchSubscription,
        callbacks: dict[WatchEventType, PodCallback | None],
    ) -> asyncio.Task[None]:
        async def dispatch() -> None:
            async with subscription:
                async for event in subscription:
                    callback = callbacks.get(event.type)
                    if callback is None:
                        continue
                    log.debug(f"pod_{event.type.value.lower()}", pod=pod_name(event.pod))
                    result = callback(event.pod)
                    if inspect.isawaitable(result):
                        await result

        return asyncio.create_task(dispatch(), name=f"dispatch-pods-{subscription.scope}")


__all__ = ["PodCallback", "PodWatcher", "WatchSubscription"]
