"""Inverse planner: remove every artifact of a topology or of a journal.

Teardown walks operations in reverse dependency order, so firewall rules and
offload settings go first and namespaces go last.  Artifacts that are already
gone count as removed, which makes teardown idempotent and lets the executor
reuse it for rollback.  A failure never stops the walk: everything that can
be removed is removed and the leftovers are reported together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .backends.base import NetworkBackend
from .errors import AlreadySatisfied, OperationFailed, RejectedError, RollbackError
from .model import Topology
from .planner import Operation, OperationPlanner
from .retry import call_with_retries

LOG = logging.getLogger(__name__)


@dataclass
class TeardownResult:
    """Outcome of a teardown or rollback.

    Attributes
    ----------
    removed:
        Operations whose artifacts were removed by this run.
    absent:
        Operations whose artifacts were already gone.
    failures:
        ``(operation, error)`` pairs for artifacts that could not be removed.
    """

    removed: List[Operation] = field(default_factory=list)
    absent: List[Operation] = field(default_factory=list)
    failures: List[Tuple[Operation, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def error(self) -> Optional[RollbackError]:
        if self.ok:
            return None
        return RollbackError(self.failures)


class TopologyTeardown:
    """Remove provisioned artifacts through a :class:`NetworkBackend`."""

    def __init__(
        self,
        backend: NetworkBackend,
        *,
        planner: Optional[OperationPlanner] = None,
        max_retries: int = 3,
        retry_interval: float = 0.5,
    ) -> None:
        self._backend = backend
        self._planner = planner or OperationPlanner()
        self._max_retries = max_retries
        self._retry_interval = retry_interval

    def teardown(self, topology: Topology) -> TeardownResult:
        """Remove everything ``topology`` would create."""

        plan = self._planner.plan(topology)
        LOG.info("Tearing down topology (%d operations)", len(plan))
        return self.revert(plan.operations)

    def revert(self, operations: Sequence[Operation]) -> TeardownResult:
        """Undo ``operations`` (in apply order) from last to first."""

        result = TeardownResult()
        for operation in reversed(operations):
            try:
                call_with_retries(
                    self._backend.revert,
                    operation,
                    max_retries=self._max_retries,
                    interval=self._retry_interval,
                )
            except AlreadySatisfied:
                LOG.debug("Already absent: %s", operation)
                result.absent.append(operation)
            except OperationFailed as exc:
                LOG.error("Could not undo %s: %s", operation, exc)
                result.failures.append((operation, exc))
            except Exception as exc:
                LOG.exception("Unexpected error undoing %s", operation)
                error = RejectedError(str(exc), operation)
                error.__cause__ = exc
                result.failures.append((operation, error))
            else:
                LOG.debug("Undone: %s", operation)
                result.removed.append(operation)

        if result.failures:
            LOG.warning("%d artifact(s) left behind", len(result.failures))
        return result
