"""shadowpod cluster package.

Pod store, lifecycle waits, watch dispatch, ref counting, heartbeat and
the exec bridge.
"""

from shadowpod.cluster.errors import (
    ExecTransportError,
    PodConflictError,
    PodNotFoundError,
    PodStoreError,
    PodTimeoutError,
    RefCountContractError,
    RefCountParseError,
    RemoteCommandError,
    ShadowPodError,
    WatchStreamError,
)
from shadowpod.cluster.exec_bridge import ExecBridge, ExecResult, WebSocketExecTransport
from shadowpod.cluster.heartbeat import HeartbeatUpdater
from shadowpod.cluster.models import (
    DesiredInstanceSpec,
    PodPhase,
    ResourceMeta,
    WatchEvent,
    WatchEventType,
)
from shadowpod.cluster.poller import LifecyclePoller, PollState
from shadowpod.cluster.refcount import ConflictRetryPolicy, RefCountManager
from shadowpod.cluster.sharing import SharedPodManager
from shadowpod.cluster.store import KubernetesPodStore, PodStore, load_api_client
from shadowpod.cluster.watcher import PodWatcher, WatchSubscription


__all__ = [
    "ConflictRetryPolicy",
    "DesiredInstanceSpec",
    "ExecBridge",
    "ExecResult",
    "ExecTransportError",
    "HeartbeatUpdater",
    "KubernetesPodStore",
    "LifecyclePoller",
    "PodConflictError",
    "PodNotFoundError",
    "PodPhase",
    "PodStore",
    "PodStoreError",
    "PodTimeoutError",
    "PodWatcher",
    "PollState",
    "RefCountContractError",
    "RefCountManager",
    "RefCountParseError",
    "RemoteCommandError",
    "ResourceMeta",
    "SharedPodManager",
    "ShadowPodError",
    "WatchEvent",
    "WatchEventType",
    "WatchStreamError",
    "WatchSubscription",
    "WebSocketExecTransport",
    "load_api_client",
]
