"""Error taxonomy for topology provisioning.

The executor reacts differently to each class, so callers should raise the
most specific one they can:

* :class:`ValidationError` is raised before any OS state is touched;
* :class:`AlreadySatisfied` is not a failure at all, it drives idempotence;
* :class:`PrivilegeError`, :class:`ConflictError` and :class:`RejectedError`
  abort an apply and trigger rollback of the journal;
* :class:`TransientOSError` is retried a bounded number of times first;
* :class:`RollbackError` is reported next to the original failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .planner import Operation
    from .validator import ValidationReport


class TopologyError(Exception):
    """Base class for all provisioning errors."""


class ValidationError(TopologyError):
    """The declared topology is structurally invalid."""

    def __init__(self, report: "ValidationReport") -> None:
        self.report = report
        count = len(report.violations)
        super().__init__(f"topology has {count} violation(s)")


class AlreadySatisfied(TopologyError):
    """The resource is already in the desired state (or already absent)."""


class OperationFailed(TopologyError):
    """An OS-level operation was rejected."""

    def __init__(self, message: str, operation: Optional["Operation"] = None) -> None:
        super().__init__(message)
        self.operation = operation

    def __str__(self) -> str:
        message = super().__str__()
        if self.operation is not None:
            return f"{self.operation.describe()}: {message}"
        return message


class PrivilegeError(OperationFailed):
    """The process lacks the capability to manipulate network state."""


class ConflictError(OperationFailed):
    """The resource exists in a different, incompatible state."""


class TransientOSError(OperationFailed):
    """A temporary failure that may succeed when retried."""


class RejectedError(OperationFailed):
    """The OS rejected the request (invalid argument, missing device, ...)."""


class ApplyCancelled(TopologyError):
    """The cancellation signal was raised while an apply was in progress."""


class RollbackError(TopologyError):
    """One or more journal entries could not be undone."""

    def __init__(self, failures: Sequence[Tuple["Operation", Exception]]) -> None:
        self.failures = list(failures)
        details = "; ".join(f"{op.describe()}: {exc}" for op, exc in self.failures)
        super().__init__(f"rollback left {len(self.failures)} artifact(s): {details}")
