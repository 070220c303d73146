"""Run ``sysctl``/``iptables``/``ethtool`` inside a namespace.

pyroute2 covers links, addresses and routes over netlink.  Forwarding flags,
firewall rules and offload settings have no netlink equivalent we can rely on,
so they go through ``ip netns exec``.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Optional

from ..errors import OperationFailed, PrivilegeError, RejectedError, TransientOSError
from ..planner import Operation

LOG = logging.getLogger(__name__)

PRIVILEGE_MARKERS = (
    "permission denied",
    "operation not permitted",
    "you must be root",
)
TRANSIENT_MARKERS = (
    "resource temporarily unavailable",
    "xtables lock",
    "another app is currently holding",
    "device or resource busy",
)


class NamespaceCommandRunner:
    """Execute commands inside a named network namespace."""

    def __init__(self, ip_command: str = "ip", timeout: float = 10.0) -> None:
        self._ip_command = ip_command
        self._timeout = timeout

    def command(self, namespace: Optional[str], *args: str) -> list[str]:
        if namespace is None:
            return list(args)
        return [self._ip_command, "netns", "exec", namespace, *args]

    def run(
        self,
        namespace: Optional[str],
        *args: str,
        operation: Optional[Operation] = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = self.command(namespace, *args)
        LOG.debug("Executing: %s", " ".join(cmd))
        try:
            return subprocess.run(
                cmd,
                check=False,
                text=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientOSError(
                f"'{' '.join(cmd)}' timed out after {self._timeout}s", operation
            ) from exc
        except FileNotFoundError as exc:
            raise RejectedError(f"command not found: {exc.filename}", operation) from exc

    def check(
        self,
        namespace: Optional[str],
        *args: str,
        operation: Optional[Operation] = None,
    ) -> str:
        """Run a command and return its stdout, raising a typed error on failure."""

        result = self.run(namespace, *args, operation=operation)
        if result.returncode != 0:
            raise classify_command_failure(result, operation)
        return result.stdout


def classify_command_failure(
    result: subprocess.CompletedProcess[str],
    operation: Optional[Operation] = None,
) -> OperationFailed:
    """Map a failed command to the error taxonomy using its stderr."""

    stderr = (result.stderr or "").strip()
    lowered = stderr.lower()
    cmd = " ".join(result.args) if isinstance(result.args, list) else str(result.args)
    message = f"'{cmd}' exited with {result.returncode}: {stderr or 'no output'}"

    if any(marker in lowered for marker in PRIVILEGE_MARKERS):
        return PrivilegeError(message, operation)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientOSError(message, operation)
    return RejectedError(message, operation)
