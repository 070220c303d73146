"""Command line entry point: ``netns-topology``."""

from __future__ import annotations

import argparse
import enum
import fcntl
import logging
import signal
import sys
from contextlib import ExitStack, contextmanager
from pathlib import Path
from threading import Event
from typing import Iterator

import yaml
from oslo_config import cfg

from netns_topology.backends import NamespaceCommandRunner, NetlinkBackend, NetworkBackend
from netns_topology.errors import ApplyCancelled, PrivilegeError
from netns_topology.executor import ApplyResult, TopologyExecutor
from netns_topology.model import Topology
from netns_topology.planner import plan
from netns_topology.teardown import TopologyTeardown
from netns_topology.validator import validate

from .config import load_topology
from .options import ProvisionerSettings, load_settings

LOG = logging.getLogger(__name__)


class ExitCode(enum.IntEnum):
    OK = 0
    USAGE = 1
    VALIDATION = 2
    APPLY_FAILED = 3
    ROLLBACK_FAILED = 4
    PRIVILEGE = 5
    TEARDOWN_INCOMPLETE = 6
    CANCELLED = 130


class LockBusy(RuntimeError):
    """Another apply or teardown holds the host lock."""


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netns-topology",
        description="Provision network-namespace test topologies",
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="INI file with a [provisioner] section",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--workers",
        type=_positive_int,
        default=None,
        help="Apply independent operations on this many threads",
    )
    parser.add_argument(
        "command",
        choices=("apply", "teardown", "validate", "plan"),
        help="Action to perform",
    )
    parser.add_argument(
        "topology",
        type=Path,
        help="Path to the YAML topology description",
    )
    return parser


def build_backend(settings: ProvisionerSettings) -> NetworkBackend:
    runner = NamespaceCommandRunner(
        ip_command=settings.ip_command, timeout=settings.command_timeout
    )
    return NetlinkBackend(
        runner,
        iptables_command=settings.iptables_command,
        ethtool_command=settings.ethtool_command,
    )


@contextmanager
def host_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``path`` for the duration."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise LockBusy(f"{path} is held by another run") from exc
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


@contextmanager
def _cancel_on_signals(cancel_event: Event) -> Iterator[None]:
    def _cancel(signum, frame):  # pragma: no cover - signal handler
        LOG.warning("received signal %s, cancelling", signum)
        cancel_event.set()

    previous = {
        signum: signal.signal(signum, _cancel) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _apply_exit_code(result: ApplyResult) -> ExitCode:
    if result.ok:
        return ExitCode.OK
    if result.rollback_error is not None:
        return ExitCode.ROLLBACK_FAILED
    if isinstance(result.error, ApplyCancelled):
        return ExitCode.CANCELLED
    if isinstance(result.error, PrivilegeError):
        return ExitCode.PRIVILEGE
    return ExitCode.APPLY_FAILED


def _run_apply(topology: Topology, backend: NetworkBackend, settings: ProvisionerSettings) -> ExitCode:
    cancel_event = Event()
    executor = TopologyExecutor(
        backend,
        max_retries=settings.max_retries,
        retry_interval=settings.retry_interval,
        workers=settings.workers,
        cancel_event=cancel_event,
    )
    with _cancel_on_signals(cancel_event):
        result = executor.apply(plan(topology))
    print(result.summary())
    return _apply_exit_code(result)


def _run_teardown(topology: Topology, backend: NetworkBackend, settings: ProvisionerSettings) -> ExitCode:
    teardown = TopologyTeardown(
        backend,
        max_retries=settings.max_retries,
        retry_interval=settings.retry_interval,
    )
    result = teardown.teardown(topology)
    if result.ok:
        print(f"removed {len(result.removed)} artifact(s), {len(result.absent)} already absent")
        return ExitCode.OK
    for operation, error in result.failures:
        print(f"left behind: {operation}: {error}")
    if any(isinstance(error, PrivilegeError) for _, error in result.failures):
        return ExitCode.PRIVILEGE
    return ExitCode.TEARDOWN_INCOMPLETE


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return ExitCode.OK if exc.code == 0 else ExitCode.USAGE
    _setup_logging(args.verbose)

    try:
        settings = load_settings(args.config_file, workers=args.workers)
    except cfg.Error as exc:
        LOG.error("Invalid configuration: %s", exc)
        return ExitCode.USAGE

    try:
        topology = load_topology(args.topology)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        LOG.error("Cannot load topology %s: %s", args.topology, exc)
        return ExitCode.USAGE

    report = validate(topology)
    if not report.ok:
        for violation in report.violations:
            print(violation)
        LOG.error("Topology %s has %d violation(s)", args.topology, len(report.violations))
        return ExitCode.VALIDATION

    if args.command == "validate":
        print(f"{args.topology}: topology is valid")
        return ExitCode.OK

    if args.command == "plan":
        for idx, operation in enumerate(plan(topology), start=1):
            print(f"{idx:3d}. {operation}")
        return ExitCode.OK

    backend = build_backend(settings)
    try:
        backend.preflight()
    except PrivilegeError as exc:
        LOG.error("%s", exc)
        return ExitCode.PRIVILEGE

    with ExitStack() as stack:
        try:
            stack.enter_context(host_lock(settings.lock_path))
        except (LockBusy, OSError) as exc:
            LOG.error("Cannot take host lock: %s", exc)
            return ExitCode.USAGE
        if args.command == "apply":
            return _run_apply(topology, backend, settings)
        return _run_teardown(topology, backend, settings)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
