"""Run commands inside running pods.

``ExecBridge`` builds an exec request (stdin off, stdout/stderr captured,
no TTY), hands it to an ``ExecTransport`` and normalizes what comes back:
colour escapes and surrounding whitespace are removed, and stderr is
scanned for an embedded error message. Tools running in shadow pods report
failures on stderr while still exiting cleanly, so a transport that
succeeded does not mean the command did.

No timeout is applied here; a hung command holds the caller until the
transport gives up.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import ERROR_CHANNEL
from websocket import WebSocketException

from shadowpod.cluster.errors import ExecTransportError, RemoteCommandError
from shadowpod.observability._logging import get_logger
from shadowpod.observability._metrics import exec_commands_total, exec_duration_seconds


log = get_logger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
LOGFMT_ERROR = re.compile(r'\berror="((?:[^"\\]|\\.)*)"')
LEVEL_ERROR_LINE = re.compile(
    r"^(?:(?:\d{4}-\d{2}-\d{2}[T ])?\d{2}:\d{2}:\d{2}\S*\s+)?(?:ERR|ERROR|FTL|FATAL)\s+(.+)$",
    re.MULTILINE,
)
ERROR_PREFIX_LINE = re.compile(r"^error:\s*(.+)$", re.MULTILINE | re.IGNORECASE)
UPDATE_TIMEOUT_SECONDS = 1
STATUS_SUCCESS = "Success"


def remove_color(text: str) -> str:
    """Strip ANSI escape sequences."""
    return ANSI_ESCAPE.sub("", text)


def extract_error_message(stderr: str) -> str:
    """Find the error message a remote tool embedded in its stderr.

    Recognised, first match wins:
    - a logfmt field ``error="..."``
    - a log line led by the level token ``ERR``, ``ERROR``, ``FTL`` or
      ``FATAL``, optionally after a timestamp
    - a line starting with ``error:``

    Returns an empty string when stderr carries no error.
    """
    match = LOGFMT_ERROR.search(stderr)
    if match:
        return match.group(1).replace('\\"', '"').strip()
    for pattern in (LEVEL_ERROR_LINE, ERROR_PREFIX_LINE):
        match = pattern.search(stderr)
        if match:
            return match.group(1).strip()
    return ""


@dataclass(frozen=True)
class ExecRequest:
    """A command to run in one container of a pod."""

    container: str
    pod: str
    namespace: str
    command: tuple[str, ...]
    stdin: bool = False
    stdout: bool = True
    stderr: bool = True
    tty: bool = False


@dataclass
class ExecResult:
    """Normalized output of a command run in a pod."""

    stdout: str
    stderr: str
    error: RemoteCommandError | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> ExecResult:
        """Raise the command's error, if any; otherwise return self."""
        if self.error is not None:
            raise self.error
        return self


class ExecTransport(Protocol):
    """Opens the exec stream and blocks until the command finishes.

    Returns raw ``(stdout, stderr)``; a failing stream raises
    ``ExecTransportError`` carrying whatever output was captured.
    """

    def run(self, request: ExecRequest) -> tuple[str, str]: ...


class WebSocketExecTransport:
    """Exec transport over the Kubernetes websocket exec endpoint."""

    def __init__(self, configuration: client.Configuration) -> None:
        self._configuration = configuration

    def run(self, request: ExecRequest) -> tuple[str, str]:
        # stream() patches the request method of the client it is given
        api_client = client.ApiClient(self._configuration)
        core_api = client.CoreV1Api(api_client)
        stdout: list[str] = []
        stderr: list[str] = []
        try:
            try:
                resp = stream(
                    core_api.connect_get_namespaced_pod_exec,
                    request.pod,
                    request.namespace,
                    container=request.container,
                    command=list(request.command),
                    stdin=request.stdin,
                    stdout=request.stdout,
                    stderr=request.stderr,
                    tty=request.tty,
                    _preload_content=False,
                )
            except (ApiException, WebSocketException, OSError) as e:
                raise ExecTransportError(
                    f"failed to open exec stream to {request.namespace}/{request.pod}: {e}",
                    operation="exec",
                    details={"pod": request.pod, "container": request.container},
                ) from e

            try:
                while resp.is_open():
                    resp.update(timeout=UPDATE_TIMEOUT_SECONDS)
                    if resp.peek_stdout():
                        stdout.append(resp.read_stdout())
                    if resp.peek_stderr():
                        stderr.append(resp.read_stderr())
                stdout.append(resp.read_stdout())
                stderr.append(resp.read_stderr())
                status = self._parse_status(resp.read_channel(ERROR_CHANNEL))
            except (WebSocketException, OSError) as e:
                raise ExecTransportError(
                    f"exec stream to {request.namespace}/{request.pod} broke: {e}",
                    operation="exec",
                    stdout="".join(stdout),
                    stderr="".join(stderr),
                ) from e
            finally:
                resp.close()
        finally:
            api_client.close()

        out, err = "".join(stdout), "".join(stderr)
        if status and status.get("status") != STATUS_SUCCESS:
            raise ExecTransportError(
                status.get("message") or f"command failed: {status.get('reason')}",
                operation="exec",
                stdout=out,
                stderr=err,
                details={
                    "reason": status.get("reason"),
                    "exit_code": self._exit_code(status),
                },
            )
        return out, err

    @staticmethod
    def _parse_status(raw: str | None) -> dict[str, Any]:
        if not raw:
            return {}
        data = yaml.safe_load(raw)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _exit_code(status: dict[str, Any]) -> int | None:
        causes = (status.get("details") or {}).get("causes") or []
        for cause in causes:
            if cause.get("reason") == "ExitCode":
                try:
                    return int(cause.get("message"))
                except (TypeError, ValueError):
                    return None
        return None


class ExecBridge:
    """Runs commands in pods and reports normalized results."""

    def __init__(self, transport: ExecTransport) -> None:
        self._transport = transport

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> ExecBridge:
        return cls(WebSocketExecTransport(api_client.configuration))

    async def exec_in_pod(
        self,
        container: str,
        pod: str,
        namespace: str,
        command: Sequence[str],
    ) -> ExecResult:
        """Run ``command`` in a container and wait for it to finish.

        The returned result carries an error when the transport failed or
        when stderr embeds an error message; the error message is the
        embedded one when present.
        """
        request = ExecRequest(
            container=container,
            pod=pod,
            namespace=namespace,
            command=tuple(command),
        )
        log.debug("exec_command", command=list(command), pod=pod, container=container)

        start = time.monotonic()
        transport_error: ExecTransportError | None = None
        try:
            raw_stdout, raw_stderr = await asyncio.to_thread(self._transport.run, request)
        except ExecTransportError as e:
            transport_error = e
            raw_stdout, raw_stderr = e.stdout, e.stderr
        duration = time.monotonic() - start

        stdout = remove_color(raw_stdout).strip()
        stderr = remove_color(raw_stderr).strip()
        embedded = extract_error_message(stderr)

        error: RemoteCommandError | None = None
        if transport_error is not None:
            error = ExecTransportError(
                embedded or transport_error.message,
                operation="exec",
                stdout=stdout,
                stderr=stderr,
                details={**transport_error.details, "pod": pod, "container": container},
            )
        elif embedded:
            error = RemoteCommandError(
                embedded,
                operation="exec",
                stdout=stdout,
                stderr=stderr,
                details={"pod": pod, "container": container},
            )

        exec_duration_seconds.observe(duration)
        exec_commands_total.labels(result="success" if error is None else "failure").inc()
        if error is not None:
            log.warning("exec_command_failed", pod=pod, container=container, error=error.message)

        return ExecResult(stdout=stdout, stderr=stderr, error=error, duration_seconds=duration)


__all__ = [
    "ExecBridge",
    "ExecRequest",
    "ExecResult",
    "ExecTransport",
    "WebSocketExecTransport",
    "extract_error_message",
    "remove_color",
]
