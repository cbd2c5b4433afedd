"""Structured errors for shadow pod lifecycle operations."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


class ShadowPodError(RuntimeError):
    """Base exception for shadow pod operations."""

    default_code = "shadowpod_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        operation: str = "shadowpod",
        details: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.operation = operation
        self.message = message
        self.details = details or {}
        self.timestamp = timestamp or datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/status surfaces."""
        return {
            "code": self.code,
            "operation": self.operation,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the error as a compact JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


class PodStoreError(ShadowPodError):
    """The Kubernetes API rejected a pod operation."""

    default_code = "pod_store_error"

    def __init__(self, message: str, *, status: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status = status


class PodNotFoundError(PodStoreError):
    """A pod, or every pod matching a selector, is absent."""

    default_code = "pod_not_found"


class PodConflictError(PodStoreError):
    """An update was rejected because the pod changed since it was read."""

    default_code = "pod_conflict"


class PodTimeoutError(ShadowPodError):
    """A lifecycle wait used up its retry budget."""

    default_code = "pod_timeout"


class RefCountParseError(ShadowPodError):
    """The ref-count annotation is missing or not a non-negative integer."""

    default_code = "ref_count_parse_error"


class RefCountContractError(ShadowPodError):
    """A decrement was requested on a pod that holds no reference."""

    default_code = "ref_count_contract_violation"


class RemoteCommandError(ShadowPodError):
    """A command executed in a pod failed."""

    default_code = "remote_command_failed"

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.stdout = stdout
        self.stderr = stderr


class ExecTransportError(RemoteCommandError):
    """The exec stream itself reported a failure."""

    default_code = "exec_transport_failed"


class WatchStreamError(ShadowPodError):
    """A watch subscription could not be kept open."""

    default_code = "watch_stream_failed"


__all__ = [
    "ExecTransportError",
    "PodConflictError",
    "PodNotFoundError",
    "PodStoreError",
    "PodTimeoutError",
    "RefCountContractError",
    "RefCountParseError",
    "RemoteCommandError",
    "ShadowPodError",
    "WatchStreamError",
]
