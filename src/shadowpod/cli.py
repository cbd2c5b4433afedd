"""shadowpod command line interface.

Operator commands for waiting on shadow pods, running commands in them,
adjusting their ref count and following their changes.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING

from shadowpod.cluster.errors import ShadowPodError
from shadowpod.cluster.exec_bridge import ExecBridge
from shadowpod.cluster.heartbeat import HeartbeatUpdater
from shadowpod.cluster.models import DEFAULT_CONTAINER_NAME, PodPhase, pod_name
from shadowpod.cluster.poller import LifecyclePoller
from shadowpod.cluster.refcount import RefCountManager
from shadowpod.cluster.store import KubernetesPodStore, load_api_client
from shadowpod.cluster.watcher import PodWatcher
from shadowpod.config.settings import get_settings
from shadowpod.observability._logging import configure_logging
from shadowpod.version import __version__

if TYPE_CHECKING:
    from argparse import Namespace

    from kubernetes import client


def parse_labels(values: list[str] | None) -> dict[str, str]:
    """Turn repeated ``key=value`` arguments into a label map."""
    labels: dict[str, str] = {}
    for value in values or []:
        key, sep, label_value = value.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"invalid label '{value}', expected key=value")
        labels[key] = label_value
    return labels


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="shadowpod",
        description="shadowpod - lifecycle and exec bridge for shadow pods",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  shadowpod wait running shadow-abc -n dev     Wait for a pod to be running
  shadowpod wait ready -l app=shadow -n dev    Wait for any labelled pod
  shadowpod exec shadow-abc -- ls /            Run a command in a pod
  shadowpod ref dec shadow-abc                 Release one reference
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_namespace(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "-n",
            "--namespace",
            type=str,
            default=None,
            help="Kubernetes namespace (default from settings)",
        )

    # Wait command
    wait_parser = subparsers.add_parser("wait", help="Wait for a pod lifecycle phase")
    wait_sub = wait_parser.add_subparsers(dest="target", required=True)

    running_parser = wait_sub.add_parser("running", help="Wait until a pod is running")
    running_parser.add_argument("name", help="Pod name")
    running_parser.add_argument("--timeout", type=int, default=None, help="Timeout in seconds")
    add_namespace(running_parser)

    ready_parser = wait_sub.add_parser("ready", help="Wait until labelled pods are running")
    ready_parser.add_argument(
        "-l",
        "--label",
        action="append",
        required=True,
        help="Label selector entry key=value (repeatable)",
    )
    ready_parser.add_argument("--timeout", type=int, default=None, help="Timeout in seconds")
    ready_parser.add_argument("--min-count", type=int, default=1, help="Running pods required")
    add_namespace(ready_parser)

    terminated_parser = wait_sub.add_parser("terminated", help="Wait until a pod is gone")
    terminated_parser.add_argument("name", help="Pod name")
    add_namespace(terminated_parser)

    # Exec command
    exec_parser = subparsers.add_parser("exec", help="Run a command in a pod")
    exec_parser.add_argument("pod", help="Pod name")
    exec_parser.add_argument(
        "-c",
        "--container",
        default=DEFAULT_CONTAINER_NAME,
        help="Container name",
    )
    add_namespace(exec_parser)

    # Ref command
    ref_parser = subparsers.add_parser("ref", help="Change the ref count of a shared pod")
    ref_parser.add_argument("action", choices=["inc", "dec"])
    ref_parser.add_argument("name", help="Pod name")
    add_namespace(ref_parser)

    # Heartbeat command
    heartbeat_parser = subparsers.add_parser("heartbeat", help="Tick a pod's heartbeat")
    heartbeat_parser.add_argument("name", help="Pod name")
    add_namespace(heartbeat_parser)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Print changes of pods")
    watch_parser.add_argument("name", nargs="?", default=None, help="Pod name")
    watch_parser.add_argument(
        "-l",
        "--label",
        action="append",
        help="Label selector entry key=value (repeatable)",
    )
    add_namespace(watch_parser)

    return parser


def _namespace(args: Namespace) -> str:
    return args.namespace or get_settings().kubernetes.namespace


def _api_client() -> client.ApiClient:
    return load_api_client(get_settings().kubernetes)


def _store() -> KubernetesPodStore:
    return KubernetesPodStore.from_api_client(_api_client())


def run_wait(args: Namespace) -> int:
    """Run one of the lifecycle waits."""
    labels = parse_labels(args.label) if args.target == "ready" else {}
    poller = LifecyclePoller(_store())
    namespace = _namespace(args)
    timeout = getattr(args, "timeout", None)
    if timeout is None:
        timeout = get_settings().lifecycle.default_timeout_seconds

    if args.target == "running":
        pod = asyncio.run(poller.wait_until_running(args.name, namespace, timeout))
        print(f"Pod {pod_name(pod)} is {PodPhase.of(pod).value}")
    elif args.target == "ready":
        pods = asyncio.run(
            poller.wait_until_set_ready(labels, namespace, timeout, min_count=args.min_count)
        )
        for pod in pods:
            print(f"Pod {pod_name(pod)} is {PodPhase.of(pod).value}")
    else:
        pod = asyncio.run(poller.wait_until_terminated(args.name, namespace))
        if pod is None:
            print(f"Pod {args.name} terminated")
        else:
            print(f"Pod {args.name} is still present and not terminating")
    return 0


def run_exec(args: Namespace) -> int:
    """Run a command in a pod and relay its output."""
    command = list(args.cmd)
    if not command:
        print("Error: no command given, use: shadowpod exec POD -- COMMAND", file=sys.stderr)
        return 2

    bridge = ExecBridge.from_api_client(_api_client())
    result = asyncio.run(bridge.exec_in_pod(args.container, args.pod, _namespace(args), command))
    if result.stdout:
        print(result.stdout)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    if result.error is not None:
        print(f"Error: {result.error.message}", file=sys.stderr)
        return 1
    return 0


def run_ref(args: Namespace) -> int:
    """Increment or decrement a pod's ref count."""
    manager = RefCountManager(_store())
    namespace = _namespace(args)
    if args.action == "inc":
        count = asyncio.run(manager.increment(args.name, namespace))
        print(f"Pod {args.name} ref count: {count}")
    else:
        should_cleanup = asyncio.run(manager.decrement(args.name, namespace))
        if should_cleanup:
            print(f"Pod {args.name} has no remaining reference and can be removed")
        else:
            print(f"Pod {args.name} ref count decreased")
    return 0


def run_heartbeat(args: Namespace) -> int:
    """Tick a pod's heartbeat once."""
    updater = HeartbeatUpdater(_store())
    accepted = asyncio.run(updater.tick(args.name, _namespace(args)))
    return 0 if accepted else 1


def run_watch(args: Namespace) -> int:
    """Print pod changes until interrupted."""
    labels = parse_labels(args.label)
    if not args.name and not labels:
        print("Error: give a pod name or at least one --label", file=sys.stderr)
        return 2

    watcher = PodWatcher(_store())

    async def follow() -> None:
        subscription = watcher.subscribe(_namespace(args), name=args.name, labels=labels or None)
        async with subscription:
            async for event in subscription:
                print(f"{event.type.value}\t{event.name}\t{PodPhase.of(event.pod).value}")

    try:
        asyncio.run(follow())
    except KeyboardInterrupt:
        return 0
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    command: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, command = argv[:split], argv[split + 1 :]
    args = parser.parse_args(argv)
    args.cmd = command

    if args.verbose:
        configure_logging(level="DEBUG")

    if args.command is None:
        parser.print_help()
        return 0

    command_handlers = {
        "wait": run_wait,
        "exec": run_exec,
        "ref": run_ref,
        "heartbeat": run_heartbeat,
        "watch": run_watch,
    }

    handler = command_handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except ShadowPodError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
