"""Declarative provisioning of Linux network-namespace test topologies.

A topology (namespaces, veth pairs, addresses, routes, forwarding flags,
firewall rules and NIC offload settings) is described once, checked by
:func:`netns_topology.validator.validate`, expanded by the planner into an
ordered list of atomic operations and then reconciled against the kernel by
:class:`netns_topology.executor.TopologyExecutor`.  The executor journals every
change it makes so a failure part way through is rolled back, and
:class:`netns_topology.teardown.TopologyTeardown` removes a whole topology
again.

Kernel access is isolated behind :class:`netns_topology.backends.NetworkBackend`
so everything above the backend runs in unit tests without root.
"""

from .errors import (  # noqa: F401
    AlreadySatisfied,
    ApplyCancelled,
    ConflictError,
    OperationFailed,
    PrivilegeError,
    RejectedError,
    RollbackError,
    TopologyError,
    TransientOSError,
    ValidationError,
)
from .executor import ApplyResult, TopologyExecutor  # noqa: F401
from .model import Topology, TopologyBuilder  # noqa: F401
from .planner import OpKind, Operation, Plan, plan  # noqa: F401
from .teardown import TeardownResult, TopologyTeardown  # noqa: F401
from .validator import ValidationReport, Violation, validate  # noqa: F401

__all__ = [
    "AlreadySatisfied",
    "ApplyCancelled",
    "ApplyResult",
    "ConflictError",
    "OpKind",
    "Operation",
    "OperationFailed",
    "Plan",
    "PrivilegeError",
    "RejectedError",
    "RollbackError",
    "TeardownResult",
    "Topology",
    "TopologyBuilder",
    "TopologyError",
    "TopologyExecutor",
    "TopologyTeardown",
    "TransientOSError",
    "ValidationError",
    "ValidationReport",
    "Violation",
    "plan",
    "validate",
]
