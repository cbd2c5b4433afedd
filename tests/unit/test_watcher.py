"""Tests for the pod watch dispatcher."""

from __future__ import annotations

import asyncio

import pytest

from shadowpod.cluster.errors import PodStoreError, WatchStreamError
from shadowpod.cluster.models import WatchEventType
from shadowpod.cluster.watcher import PodWatcher
from shadowpod.config.settings import WatchSettings


def policy(**overrides) -> WatchSettings:
    values = {
        "resubscribe_on_close": False,
        "max_reconnect_attempts": 2,
        "reconnect_backoff_seconds": 0,
    }
    values.update(overrides)
    return WatchSettings(**values)


async def collect(subscription) -> list:
    events = []
    async with subscription:
        async for event in subscription:
            events.append(event)
    return events


class TestWatchSubscription:
    """Event delivery and the reconnect policy."""

    @pytest.mark.asyncio
    async def test_delivers_events_in_stream_order(
        self, store, sleep, pod_factory, stream_factory
    ):
        stream = stream_factory(
            [
                ("ADDED", pod_factory("shadow", phase="Pending", resource_version="5")),
                ("MODIFIED", pod_factory("shadow", resource_version="6")),
                ("DELETED", pod_factory("shadow", resource_version="7")),
            ]
        )
        store.watch_script = [stream]
        watcher = PodWatcher(store, policy(), sleep)

        events = await collect(watcher.subscribe("default", name="shadow"))

        assert [event.type for event in events] == [
            WatchEventType.ADDED,
            WatchEventType.MODIFIED,
            WatchEventType.DELETED,
        ]
        assert [event.name for event in events] == ["shadow"] * 3
        assert store.watch_calls[0]["name"] == "shadow"
        assert store.watch_calls[0]["resource_version"] is None
        assert stream.closed

    @pytest.mark.asyncio
    async def test_label_scope_is_rendered_as_selector(self, store, sleep, stream_factory):
        store.watch_script = [stream_factory([])]
        watcher = PodWatcher(store, policy(), sleep)

        await collect(watcher.subscribe("dev", labels={"tier": "leaf", "app": "shadow"}))

        assert store.watch_calls[0]["namespace"] == "dev"
        assert store.watch_calls[0]["label_selector"] == "app=shadow,tier=leaf"

    @pytest.mark.asyncio
    async def test_bookmarks_are_skipped(self, store, sleep, pod_factory, stream_factory):
        store.watch_script = [
            stream_factory(
                [
                    ("BOOKMARK", pod_factory("shadow", resource_version="4")),
                    ("ADDED", pod_factory("shadow", resource_version="5")),
                ]
            )
        ]
        watcher = PodWatcher(store, policy(), sleep)

        events = await collect(watcher.subscribe("default", name="shadow"))

        assert [event.type for event in events] == [WatchEventType.ADDED]

    @pytest.mark.asyncio
    async def test_resubscribes_from_last_resource_version(
        self, store, sleep, pod_factory, stream_factory
    ):
        store.watch_script = [
            stream_factory([("ADDED", pod_factory("shadow", resource_version="5"))]),
            stream_factory([("MODIFIED", pod_factory("shadow", resource_version="8"))]),
        ]
        watcher = PodWatcher(store, policy(resubscribe_on_close=True, max_reconnect_attempts=0), sleep)
        subscription = watcher.subscribe("default", name="shadow")
        events = []

        with pytest.raises(WatchStreamError):
            async with subscription:
                async for event in subscription:
                    events.append(event)

        assert [event.type for event in events] == [
            WatchEventType.ADDED,
            WatchEventType.MODIFIED,
        ]
        assert [call["resource_version"] for call in store.watch_calls] == [None, "5", "8"]

    @pytest.mark.asyncio
    async def test_expired_resource_version_restarts_from_scratch(
        self, store, sleep, pod_factory, stream_factory
    ):
        store.watch_script = [
            stream_factory(
                [("ADDED", pod_factory("shadow", resource_version="5"))],
                error=PodStoreError("too old resource version", status=410),
            ),
            stream_factory([("MODIFIED", pod_factory("shadow", resource_version="9"))]),
        ]
        watcher = PodWatcher(store, policy(), sleep)

        events = await collect(watcher.subscribe("default", name="shadow"))

        assert len(events) == 2
        assert store.watch_calls[1]["resource_version"] is None
        assert sleep.calls == [0]

    @pytest.mark.asyncio
    async def test_fails_closed_after_consecutive_failures(self, store, sleep):
        watcher = PodWatcher(store, policy(max_reconnect_attempts=2), sleep)
        subscription = watcher.subscribe("default", name="shadow")

        with pytest.raises(WatchStreamError) as exc_info:
            await collect(subscription)

        assert "after 3 attempts" in exc_info.value.message
        assert len(store.watch_calls) == 3
        assert sleep.calls == [0, 0]

    @pytest.mark.asyncio
    async def test_fails_closed_when_reopen_keeps_failing_after_events(
        self, store, sleep, pod_factory, stream_factory
    ):
        store.watch_script = [
            stream_factory(
                [("ADDED", pod_factory("shadow", resource_version="5"))],
                error=PodStoreError("stream reset", status=500),
            )
        ]
        watcher = PodWatcher(store, policy(max_reconnect_attempts=2), sleep)
        subscription = watcher.subscribe("default", name="shadow")
        events = []

        async def follow() -> None:
            async with subscription:
                async for event in subscription:
                    events.append(event)

        with pytest.raises(WatchStreamError) as exc_info:
            await asyncio.wait_for(follow(), timeout=5)

        assert "after 3 attempts" in exc_info.value.message
        assert [event.type for event in events] == [WatchEventType.ADDED]
        assert len(store.watch_calls) == 3

    @pytest.mark.asyncio
    async def test_bounded_queue_delivers_end_of_stream(
        self, store, sleep, pod_factory, stream_factory
    ):
        store.watch_script = [
            stream_factory(
                [
                    ("ADDED", pod_factory("shadow", resource_version="5")),
                    ("MODIFIED", pod_factory("shadow", resource_version="6")),
                ]
            )
        ]
        watcher = PodWatcher(store, policy(), sleep)
        subscription = watcher.subscribe("default", name="shadow", max_queue_size=1).start()
        await asyncio.sleep(0.3)

        async def drain() -> list:
            return [event async for event in subscription]

        events = await asyncio.wait_for(drain(), timeout=5)
        await subscription.close()

        assert [event.type for event in events] == [
            WatchEventType.ADDED,
            WatchEventType.MODIFIED,
        ]

    @pytest.mark.asyncio
    async def test_error_event_counts_as_failure(self, store, sleep, pod_factory, stream_factory):
        store.watch_script = [stream_factory([("ERROR", pod_factory("shadow"))])]
        watcher = PodWatcher(store, policy(max_reconnect_attempts=0), sleep)

        with pytest.raises(WatchStreamError):
            await collect(watcher.subscribe("default", name="shadow"))

    @pytest.mark.asyncio
    async def test_ends_on_close_without_resubscribe(self, store, sleep, stream_factory):
        store.watch_script = [stream_factory([]), stream_factory([])]
        watcher = PodWatcher(store, policy(resubscribe_on_close=False), sleep)

        assert await collect(watcher.subscribe("default", name="shadow")) == []
        assert len(store.watch_calls) == 1

    @pytest.mark.asyncio
    async def test_close_stops_iteration(self, store, sleep, pod_factory, stream_factory):
        store.watch_script = [
            stream_factory([("ADDED", pod_factory("shadow", resource_version="5"))])
        ]
        watcher = PodWatcher(store, policy(resubscribe_on_close=True), sleep)
        subscription = watcher.subscribe("default", name="shadow").start()

        first = await subscription.__anext__()
        await subscription.close()

        assert first.type is WatchEventType.ADDED
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()


class TestCallbacks:
    """Per-event-type callback dispatch."""

    @pytest.mark.asyncio
    async def test_watch_pod_dispatches_by_type(self, store, sleep, pod_factory, stream_factory):
        store.watch_script = [
            stream_factory(
                [
                    ("ADDED", pod_factory("shadow", resource_version="1")),
                    ("MODIFIED", pod_factory("shadow", resource_version="2")),
                    ("DELETED", pod_factory("shadow", resource_version="3")),
                ]
            )
        ]
        watcher = PodWatcher(store, policy(), sleep)
        added: list[str] = []
        deleted: list[str] = []

        async def on_deleted(pod) -> None:
            deleted.append(pod.metadata.resource_version)

        task = watcher.watch_pod(
            "shadow",
            "default",
            on_added=lambda pod: added.append(pod.metadata.resource_version),
            on_deleted=on_deleted,
        )
        await asyncio.wait_for(task, timeout=5)

        assert added == ["1"]
        assert deleted == ["3"]

    @pytest.mark.asyncio
    async def test_watch_pods_uses_label_scope(self, store, sleep, pod_factory, stream_factory):
        store.watch_script = [
            stream_factory([("MODIFIED", pod_factory("a")), ("MODIFIED", pod_factory("b"))])
        ]
        watcher = PodWatcher(store, policy(), sleep)
        modified: list[str] = []

        task = watcher.watch_pods(
            {"app": "shadow"},
            "default",
            on_modified=lambda pod: modified.append(pod.metadata.name),
        )
        await asyncio.wait_for(task, timeout=5)

        assert modified == ["a", "b"]
        assert store.watch_calls[0]["label_selector"] == "app=shadow"
        assert store.watch_calls[0]["name"] is None
