"""Abstract interface for the OS networking primitives."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..planner import Operation


class NetworkBackend(ABC):
    """Apply and revert single planned operations against live network state.

    Implementations must report outcomes through exceptions only:

    * return normally when the state was changed;
    * raise :class:`~netns_topology.errors.AlreadySatisfied` when ``apply``
      finds the desired state already present, or ``revert`` finds the
      artifact already gone;
    * raise a subclass of :class:`~netns_topology.errors.OperationFailed`
      for every other outcome.
    """

    def preflight(self) -> None:
        """Raise :class:`~netns_topology.errors.PrivilegeError` if the process
        cannot manipulate network state."""

    @abstractmethod
    def apply(self, operation: Operation) -> None:
        """Bring the OS into the state described by ``operation``."""

    @abstractmethod
    def revert(self, operation: Operation) -> None:
        """Remove whatever ``operation`` put in place."""
