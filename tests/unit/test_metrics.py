"""Tests for Prometheus metrics."""

from __future__ import annotations

import pytest

from shadowpod.cluster.poller import LifecyclePoller
from shadowpod.config.settings import LifecycleSettings
from shadowpod.observability._metrics import initialize_metrics, registry


def sample(name: str, **labels: str) -> float:
    return registry.get_sample_value(name, labels) or 0.0


class TestMetrics:
    """Metrics recorded by lifecycle operations."""

    def test_initialize_metrics(self) -> None:
        initialize_metrics()

        assert registry.get_sample_value(
            "shadowpod_pod_polls_total", {"operation": "wait_until_running"}
        ) is not None
        assert sample("shadowpod_shared_pods_acquired") == 0.0

    @pytest.mark.asyncio
    async def test_wait_records_polls_and_outcome(self, store, sleep, pod_factory) -> None:
        poller = LifecyclePoller(store, LifecycleSettings(poll_interval_seconds=6), sleep)
        store.get_script["shadow"] = [pod_factory("shadow", phase="Pending"), pod_factory("shadow")]
        polls = sample("shadowpod_pod_polls_total", operation="wait_until_running")
        waits = sample(
            "shadowpod_pod_waits_total", operation="wait_until_running", result="succeeded"
        )

        await poller.wait_until_running("shadow", "default", 60)

        assert sample("shadowpod_pod_polls_total", operation="wait_until_running") == polls + 2
        assert (
            sample("shadowpod_pod_waits_total", operation="wait_until_running", result="succeeded")
            == waits + 1
        )
