"""Expand a validated topology into an ordered list of atomic operations.

Every operation maps to exactly one OS interaction.  The planner records the
dependency edges between operations (a veth endpoint must exist before it is
moved, must be moved before it is brought up, and so on) and derives a total
order with Kahn's algorithm.  Ties are broken by declaration order and the
operations are declared phase by phase:

1. create namespaces
2. create link pairs in the root namespace
3. move endpoints into their namespaces
4. bring endpoints and loopback devices up
5. assign addresses
6. install routes
7. set forwarding flags
8. install firewall rules
9. apply NIC offload settings

so the default order reads like a hand-written setup script.  Executors are only
bound by the dependency partial order, which :meth:`Plan.levels` exposes as
batches that may run concurrently.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Set

from .errors import ValidationError
from .model import Assignment, Endpoint, Topology
from .validator import validate

LOG = logging.getLogger(__name__)

LOOPBACK = "lo"


class OpKind(str, Enum):
    CREATE_NAMESPACE = "create-namespace"
    CREATE_LINK_PAIR = "create-link-pair"
    MOVE_ENDPOINT = "move-endpoint"
    LINK_UP = "link-up"
    LOOPBACK_UP = "loopback-up"
    ADD_ADDRESS = "add-address"
    ADD_ROUTE = "add-route"
    SET_FORWARDING = "set-forwarding"
    ADD_FIREWALL_RULE = "add-firewall-rule"
    SET_OFFLOAD = "set-offload"


@dataclass(frozen=True)
class Operation:
    """A single provisioning step.

    ``target`` is the model entity the step realises (a
    :class:`~netns_topology.model.Namespace`, a
    :class:`~netns_topology.model.LinkPair`, an
    :class:`~netns_topology.model.Address`, ...).  ``namespace`` is the
    namespace the step runs in, or ``None`` for the root namespace.
    """

    kind: OpKind
    target: Any
    namespace: Optional[str] = None

    @property
    def device(self) -> Optional[str]:
        if self.kind == OpKind.LOOPBACK_UP:
            return LOOPBACK
        if isinstance(self.target, Endpoint):
            return self.target.name
        if isinstance(self.target, Assignment):
            return self.target.endpoint
        return getattr(self.target, "interface", None)

    def resources(self) -> FrozenSet[str]:
        """Return the lock keys this operation writes to."""

        keys: Set[str] = set()
        if self.namespace is not None:
            keys.add(f"ns:{self.namespace}")
        if self.kind == OpKind.CREATE_LINK_PAIR:
            keys.update(f"dev:{ep.name}" for ep in self.target.endpoints)
        elif self.device is not None and self.device != LOOPBACK:
            keys.add(f"dev:{self.device}")
        return frozenset(keys)

    def describe(self) -> str:
        kind = self.kind
        target = self.target
        if kind == OpKind.CREATE_NAMESPACE:
            detail = target.name
        elif kind == OpKind.CREATE_LINK_PAIR:
            detail = target.name
        elif kind == OpKind.MOVE_ENDPOINT:
            detail = f"{target.endpoint} -> {target.namespace}"
        elif kind in (OpKind.LINK_UP, OpKind.LOOPBACK_UP):
            detail = f"{self.namespace}/{self.device}"
        elif kind == OpKind.ADD_ADDRESS:
            detail = f"{target.namespace}/{target.interface} {target.cidr}"
        elif kind == OpKind.ADD_ROUTE:
            detail = f"{target.namespace} {target.destination} via {target.via}"
        elif kind == OpKind.SET_FORWARDING:
            detail = f"{target.name}={int(bool(target.forwarding))}"
        elif kind == OpKind.ADD_FIREWALL_RULE:
            detail = f"{target.namespace} {target.chain} {' '.join(target.rule_spec())}"
        else:
            settings = " ".join(
                f"{name} {'on' if enabled else 'off'}" for name, enabled in target.offload
            )
            detail = f"{self.namespace}/{target.name} {settings}"
        return f"{kind.value} {detail}"

    def __str__(self) -> str:
        return self.describe()


@dataclass
class Plan:
    """Totally ordered operations plus the dependency partial order."""

    operations: List[Operation]
    dependencies: Dict[Operation, FrozenSet[Operation]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def depends_on(self, operation: Operation) -> FrozenSet[Operation]:
        return self.dependencies.get(operation, frozenset())

    def levels(self) -> List[List[Operation]]:
        """Group operations into batches whose members are independent.

        Every operation lands one level after its deepest prerequisite, so
        running the batches in sequence respects the partial order.
        """

        depth: Dict[Operation, int] = {}
        for op in self.operations:
            prereqs = self.depends_on(op)
            depth[op] = 1 + max((depth[d] for d in prereqs), default=-1)

        levels: List[List[Operation]] = []
        for op in self.operations:
            while len(levels) <= depth[op]:
                levels.append([])
            levels[depth[op]].append(op)
        return levels


class OperationPlanner:
    """Build a :class:`Plan` from a topology."""

    def plan(self, topology: Topology) -> Plan:
        report = validate(topology)
        if not report.ok:
            raise ValidationError(report)

        operations: List[Operation] = []
        dependencies: Dict[Operation, Set[Operation]] = {}

        def declare(op: Operation, *prereqs: Optional[Operation]) -> Operation:
            operations.append(op)
            dependencies[op] = {p for p in prereqs if p is not None}
            return op

        created_ns: Dict[str, Operation] = {}
        for ns in topology.namespaces:
            created_ns[ns.name] = declare(Operation(OpKind.CREATE_NAMESPACE, ns))

        created_link: Dict[str, Operation] = {}
        for link in topology.links:
            op = declare(Operation(OpKind.CREATE_LINK_PAIR, link))
            for endpoint in link.endpoints:
                created_link[endpoint.name] = op

        moved: Dict[str, Operation] = {}
        for endpoint in topology.endpoints():
            owner = topology.owner_of(endpoint.name)
            moved[endpoint.name] = declare(
                Operation(OpKind.MOVE_ENDPOINT, Assignment(endpoint.name, owner), owner),
                created_link[endpoint.name],
                created_ns.get(owner),
            )

        raised: Dict[str, Operation] = {}
        for endpoint in topology.endpoints():
            owner = topology.owner_of(endpoint.name)
            raised[endpoint.name] = declare(
                Operation(OpKind.LINK_UP, endpoint, owner), moved[endpoint.name]
            )
        for ns in topology.namespaces:
            if topology.endpoints_in(ns.name):
                declare(Operation(OpKind.LOOPBACK_UP, ns, ns.name), created_ns[ns.name])

        addressed: Dict[str, List[Operation]] = defaultdict(list)
        for address in topology.addresses:
            op = declare(
                Operation(OpKind.ADD_ADDRESS, address, address.namespace),
                moved.get(address.interface),
                raised.get(address.interface),
            )
            addressed[address.namespace].append(op)

        for route in topology.routes:
            declare(
                Operation(OpKind.ADD_ROUTE, route, route.namespace),
                created_ns.get(route.namespace),
                *addressed[route.namespace],
            )

        for ns in topology.namespaces:
            if ns.forwarding is not None:
                declare(Operation(OpKind.SET_FORWARDING, ns, ns.name), created_ns[ns.name])

        for rule in topology.firewall_rules:
            declare(
                Operation(OpKind.ADD_FIREWALL_RULE, rule, rule.namespace),
                created_ns.get(rule.namespace),
            )

        for endpoint in topology.endpoints():
            if endpoint.offload:
                declare(
                    Operation(OpKind.SET_OFFLOAD, endpoint, topology.owner_of(endpoint.name)),
                    raised[endpoint.name],
                )

        frozen = {op: frozenset(prereqs) for op, prereqs in dependencies.items()}
        ordered = _topological_order(operations, frozen)
        LOG.debug("Planned %d operations", len(ordered))
        return Plan(operations=ordered, dependencies=frozen)


def plan(topology: Topology) -> Plan:
    """Validate ``topology`` and return its provisioning plan."""

    return OperationPlanner().plan(topology)


def _topological_order(
    operations: List[Operation],
    dependencies: Dict[Operation, FrozenSet[Operation]],
) -> List[Operation]:
    index = {op: idx for idx, op in enumerate(operations)}
    pending = {op: len(dependencies[op]) for op in operations}
    dependents: Dict[Operation, List[Operation]] = defaultdict(list)
    for op in operations:
        for prereq in dependencies[op]:
            dependents[prereq].append(op)

    ready = [index[op] for op in operations if pending[op] == 0]
    heapq.heapify(ready)
    ordered: List[Operation] = []
    while ready:
        op = operations[heapq.heappop(ready)]
        ordered.append(op)
        for child in dependents[op]:
            pending[child] -= 1
            if pending[child] == 0:
                heapq.heappush(ready, index[child])

    if len(ordered) != len(operations):
        raise RuntimeError("operation dependency graph contains a cycle")
    return ordered


__all__ = ["LOOPBACK", "OpKind", "Operation", "OperationPlanner", "Plan", "plan"]
