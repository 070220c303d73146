"""Apply a plan against the OS with a journal and rollback.

The executor is the only component (next to teardown) that touches live
network state.  It runs planned operations in order, records every operation
that actually changed something in a :class:`Journal`, and on a fatal failure
hands the journal to :class:`~netns_topology.teardown.TopologyTeardown` so the
kernel ends up as if the topology had never been applied.

Outcomes per operation:

* success: journaled;
* :class:`~netns_topology.errors.AlreadySatisfied`: counted as success but not
  journaled, so rollback never removes state that predates this apply;
* :class:`~netns_topology.errors.TransientOSError`: retried a bounded number
  of times, then fatal;
* any other :class:`~netns_topology.errors.OperationFailed`: fatal, the apply
  stops and the journal is rolled back.  Unexpected exceptions from a backend
  are wrapped in :class:`~netns_topology.errors.RejectedError` and handled the
  same way.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .backends.base import NetworkBackend
from .errors import (
    AlreadySatisfied,
    ApplyCancelled,
    OperationFailed,
    RejectedError,
    RollbackError,
)
from .planner import Operation, Plan
from .retry import call_with_retries
from .teardown import TeardownResult, TopologyTeardown

LOG = logging.getLogger(__name__)


class Journal:
    """Thread-safe, ordered record of operations that changed OS state."""

    def __init__(self) -> None:
        self._entries: List[Operation] = []
        self._lock = threading.Lock()

    def record(self, operation: Operation) -> None:
        with self._lock:
            self._entries.append(operation)

    def operations(self) -> List[Operation]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class ApplyResult:
    """Outcome of :meth:`TopologyExecutor.apply`.

    ``error`` holds the first fatal failure and ``rollback`` the outcome of
    undoing the journal.  A rollback problem is reported next to the original
    error, never instead of it.
    """

    executed: List[Operation] = field(default_factory=list)
    satisfied: List[Operation] = field(default_factory=list)
    failed: Optional[Operation] = None
    error: Optional[Exception] = None
    rollback: Optional[TeardownResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def rollback_error(self) -> Optional[RollbackError]:
        if self.rollback is None:
            return None
        return self.rollback.error()

    def summary(self) -> str:
        if self.ok:
            return (
                f"applied {len(self.executed)} operation(s), "
                f"{len(self.satisfied)} already satisfied"
            )
        lines = [f"apply failed: {self.error}"]
        if self.rollback is not None:
            lines.append(
                f"rolled back {len(self.rollback.removed)} "
                f"of {len(self.executed)} journaled operation(s), "
                f"{len(self.rollback.absent)} already absent"
            )
            rollback_error = self.rollback_error
            if rollback_error is not None:
                lines.append(f"rollback failed: {rollback_error}")
        return "\n".join(lines)


class TopologyExecutor:
    """Reconcile live network state with a :class:`~netns_topology.planner.Plan`.

    Parameters
    ----------
    backend:
        OS primitives used to apply operations.
    teardown:
        Used for rollback; built from ``backend`` when omitted.
    max_retries / retry_interval:
        Bound on retries of transient failures and the pause between them.
    workers:
        ``1`` applies operations one at a time in plan order.  Larger values
        run each dependency level of the plan on a thread pool; writes to the
        same namespace or interface are still serialised.
    cancel_event:
        Once set, no further operation is issued and the journal is rolled
        back.
    """

    def __init__(
        self,
        backend: NetworkBackend,
        *,
        teardown: Optional[TopologyTeardown] = None,
        max_retries: int = 3,
        retry_interval: float = 0.5,
        workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._backend = backend
        self._teardown = teardown or TopologyTeardown(
            backend, max_retries=max_retries, retry_interval=retry_interval
        )
        self._max_retries = max_retries
        self._retry_interval = retry_interval
        self._workers = max(1, workers)
        self._cancel = cancel_event or threading.Event()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def cancel(self) -> None:
        self._cancel.set()

    def apply(self, plan: Plan) -> ApplyResult:
        journal = Journal()
        satisfied: List[Operation] = []
        LOG.info("Applying %d operations (workers=%d)", len(plan), self._workers)

        try:
            if self._workers == 1:
                self._run_serial(plan, journal, satisfied)
            else:
                self._run_parallel(plan, journal, satisfied)
        except (OperationFailed, ApplyCancelled) as exc:
            failed = getattr(exc, "operation", None)
            if isinstance(exc, ApplyCancelled):
                LOG.warning("Apply cancelled after %d operation(s)", len(journal))
            else:
                LOG.error("Apply failed: %s", exc)
            executed = journal.operations()
            LOG.info("Rolling back %d journaled operation(s)", len(executed))
            rollback = self._teardown.revert(executed)
            return ApplyResult(
                executed=executed,
                satisfied=satisfied,
                failed=failed,
                error=exc,
                rollback=rollback,
            )

        result = ApplyResult(executed=journal.operations(), satisfied=satisfied)
        LOG.info("Topology applied: %s", result.summary())
        return result

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _run_serial(self, plan: Plan, journal: Journal, satisfied: List[Operation]) -> None:
        for operation in plan:
            self._check_cancelled()
            if self._run_one(operation):
                journal.record(operation)
            else:
                satisfied.append(operation)

    def _run_parallel(self, plan: Plan, journal: Journal, satisfied: List[Operation]) -> None:
        satisfied_lock = threading.Lock()

        def task(operation: Operation) -> None:
            self._check_cancelled()
            with self._locked(operation):
                changed = self._run_one(operation)
            if changed:
                journal.record(operation)
            else:
                with satisfied_lock:
                    satisfied.append(operation)

        with ThreadPoolExecutor(max_workers=self._workers) as pool:
            for level in plan.levels():
                self._check_cancelled()
                futures = [(op, pool.submit(task, op)) for op in level]
                # Wait for the whole batch so every completed operation is
                # journaled before rollback starts.
                errors = []
                for _, future in futures:
                    exc = future.exception()
                    if exc is not None:
                        errors.append(exc)
                if errors:
                    raise errors[0]

    def _run_one(self, operation: Operation) -> bool:
        """Apply ``operation``; return ``False`` when it was already satisfied."""

        try:
            call_with_retries(
                self._backend.apply,
                operation,
                max_retries=self._max_retries,
                interval=self._retry_interval,
            )
        except AlreadySatisfied:
            LOG.debug("Already satisfied: %s", operation)
            return False
        except OperationFailed as exc:
            if exc.operation is None:
                exc.operation = operation
            raise
        except Exception as exc:
            LOG.exception("Unexpected error applying %s", operation)
            raise RejectedError(str(exc), operation) from exc
        LOG.debug("Applied: %s", operation)
        return True

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise ApplyCancelled("apply cancelled before completion")

    def _locked(self, operation: Operation) -> ExitStack:
        stack = ExitStack()
        with self._locks_guard:
            locks = [self._locks[key] for key in sorted(operation.resources())]
        for lock in locks:
            stack.enter_context(lock)
        return stack
