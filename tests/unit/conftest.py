from __future__ import annotations

import ipaddress
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from netns_topology.backends.base import NetworkBackend
from netns_topology.errors import (
    AlreadySatisfied,
    ConflictError,
    PrivilegeError,
    RejectedError,
    TransientOSError,
)
from netns_topology.model import OFFLOAD_FEATURES, Topology, TopologyBuilder
from netns_topology.planner import LOOPBACK, OpKind, Operation


class FakeKernel(NetworkBackend):
    """In-memory stand-in for the kernel's network state.

    It follows the same contract as the netlink backend (inspect first, raise
    ``AlreadySatisfied`` when nothing needs doing) and mirrors the kernel
    side effects the provisioner relies on: deleting a namespace destroys the
    veth pairs inside it, and moving an interface flushes its addresses and
    link state.
    """

    def __init__(self) -> None:
        self.namespaces: Set[str] = set()
        self.devices: Dict[str, Optional[str]] = {}
        self.peers: Dict[str, str] = {}
        self.up: Set[Tuple[str, str]] = set()
        self.addresses: Set[Tuple[str, str, str]] = set()
        self.routes: Dict[Tuple[str, str], str] = {}
        self.forwarding: Dict[str, bool] = {}
        self.rules: Set[Tuple[str, str, str, Tuple[str, ...]]] = set()
        self.offload: Dict[str, Dict[str, bool]] = {}

        self.calls: List[Tuple[str, Operation]] = []
        self.privileged = True
        self.fail_apply_at: Optional[int] = None
        self.apply_failures: Dict[OpKind, Exception] = {}
        self.revert_failures: Dict[OpKind, Exception] = {}
        self.transient: Dict[OpKind, int] = {}
        self.before_apply: Optional[Callable[[Operation], None]] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # NetworkBackend
    # ------------------------------------------------------------------
    def preflight(self) -> None:
        if not self.privileged:
            raise PrivilegeError("missing CAP_NET_ADMIN")

    def apply(self, operation: Operation) -> None:
        with self._lock:
            attempt = len(self.applied_calls())
            self.calls.append(("apply", operation))
            if self.before_apply is not None:
                self.before_apply(operation)
            if self.fail_apply_at == attempt:
                raise RejectedError("injected failure")
            if operation.kind in self.apply_failures:
                raise self.apply_failures[operation.kind]
            if self.transient.get(operation.kind, 0) > 0:
                self.transient[operation.kind] -= 1
                raise TransientOSError("injected transient failure")
            getattr(self, f"_apply_{operation.kind.name.lower()}")(operation)

    def revert(self, operation: Operation) -> None:
        with self._lock:
            self.calls.append(("revert", operation))
            if operation.kind in self.revert_failures:
                raise self.revert_failures[operation.kind]
            getattr(self, f"_revert_{operation.kind.name.lower()}")(operation)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def applied_calls(self) -> List[Operation]:
        return [op for verb, op in self.calls if verb == "apply"]

    def reverted_calls(self) -> List[Operation]:
        return [op for verb, op in self.calls if verb == "revert"]

    def snapshot(self):
        return (
            frozenset(self.namespaces),
            tuple(sorted(self.devices.items(), key=lambda item: item[0])),
            frozenset(self.up),
            frozenset(self.addresses),
            tuple(sorted(self.routes.items())),
            tuple(sorted(self.forwarding.items())),
            frozenset(self.rules),
            tuple(sorted((dev, tuple(sorted(f.items()))) for dev, f in self.offload.items())),
        )

    def is_empty(self) -> bool:
        return not any(
            (
                self.namespaces,
                self.devices,
                self.up,
                self.addresses,
                self.routes,
                any(self.forwarding.values()),
                self.rules,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_namespace(self, op: Operation) -> None:
        if op.namespace not in self.namespaces:
            raise RejectedError(f"namespace '{op.namespace}' does not exist", op)

    def _require_device(self, op: Operation, device: str) -> None:
        self._require_namespace(op)
        if self.devices.get(device) != op.namespace:
            raise RejectedError(f"no device '{device}' in '{op.namespace}'", op)

    def _forget_device(self, device: str) -> None:
        self.devices.pop(device, None)
        self.offload.pop(device, None)
        self._flush_device(device)

    def _flush_device(self, device: str) -> None:
        self.up = {key for key in self.up if key[1] != device}
        self.addresses = {key for key in self.addresses if key[1] != device}

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------
    def _apply_create_namespace(self, op: Operation) -> None:
        if op.target.name in self.namespaces:
            raise AlreadySatisfied("namespace exists")
        self.namespaces.add(op.target.name)

    def _revert_create_namespace(self, op: Operation) -> None:
        name = op.target.name
        if name not in self.namespaces:
            raise AlreadySatisfied("namespace absent")
        self.namespaces.discard(name)
        for device, where in list(self.devices.items()):
            if where == name:
                self._forget_device(device)
                peer = self.peers.pop(device, None)
                if peer is not None:
                    self.peers.pop(peer, None)
                    self._forget_device(peer)
        self.up = {key for key in self.up if key[0] != name}
        self.addresses = {key for key in self.addresses if key[0] != name}
        self.routes = {key: via for key, via in self.routes.items() if key[0] != name}
        self.forwarding.pop(name, None)
        self.rules = {rule for rule in self.rules if rule[0] != name}

    # ------------------------------------------------------------------
    # Link pairs and membership
    # ------------------------------------------------------------------
    def _apply_create_link_pair(self, op: Operation) -> None:
        left, right = (ep.name for ep in op.target.endpoints)
        present = [name for name in (left, right) if name in self.devices]
        if len(present) == 2 and self.peers.get(left) == right:
            raise AlreadySatisfied("veth pair exists")
        if present:
            raise ConflictError(f"'{present[0]}' exists without its peer", op)
        self.devices[left] = self.devices[right] = None
        self.peers[left], self.peers[right] = right, left

    def _revert_create_link_pair(self, op: Operation) -> None:
        left, right = (ep.name for ep in op.target.endpoints)
        if left not in self.devices and right not in self.devices:
            raise AlreadySatisfied("veth pair absent")
        for name in (left, right):
            self._forget_device(name)
            self.peers.pop(name, None)

    def _apply_move_endpoint(self, op: Operation) -> None:
        device, target = op.target.endpoint, op.target.namespace
        if device not in self.devices:
            raise RejectedError(f"no device '{device}'", op)
        if target not in self.namespaces:
            raise RejectedError(f"namespace '{target}' does not exist", op)
        where = self.devices[device]
        if where == target:
            raise AlreadySatisfied("already moved")
        if where is not None:
            raise ConflictError(f"'{device}' belongs to '{where}'", op)
        self.devices[device] = target
        self._flush_device(device)

    def _revert_move_endpoint(self, op: Operation) -> None:
        device, target = op.target.endpoint, op.target.namespace
        if self.devices.get(device, None) != target:
            raise AlreadySatisfied("not in namespace")
        self.devices[device] = None
        self._flush_device(device)

    # ------------------------------------------------------------------
    # Link state
    # ------------------------------------------------------------------
    def _apply_link_up(self, op: Operation) -> None:
        self._require_device(op, op.device)
        if (op.namespace, op.device) in self.up:
            raise AlreadySatisfied("up")
        self.up.add((op.namespace, op.device))

    def _revert_link_up(self, op: Operation) -> None:
        if (op.namespace, op.device) not in self.up:
            raise AlreadySatisfied("down")
        self.up.discard((op.namespace, op.device))

    def _apply_loopback_up(self, op: Operation) -> None:
        self._require_namespace(op)
        if (op.namespace, LOOPBACK) in self.up:
            raise AlreadySatisfied("up")
        self.up.add((op.namespace, LOOPBACK))

    _revert_loopback_up = _revert_link_up

    # ------------------------------------------------------------------
    # Addresses and routes
    # ------------------------------------------------------------------
    def _apply_add_address(self, op: Operation) -> None:
        address = op.target
        self._require_device(op, address.interface)
        key = (address.namespace, address.interface, address.cidr)
        if key in self.addresses:
            raise AlreadySatisfied("address present")
        for namespace, interface, cidr in self.addresses:
            if namespace == address.namespace and ipaddress.ip_interface(cidr).ip == address.ip:
                raise ConflictError(f"{address.ip} already on '{interface}'", op)
        self.addresses.add(key)

    def _revert_add_address(self, op: Operation) -> None:
        address = op.target
        key = (address.namespace, address.interface, address.cidr)
        if key not in self.addresses:
            raise AlreadySatisfied("address absent")
        self.addresses.discard(key)

    def _apply_add_route(self, op: Operation) -> None:
        route = op.target
        self._require_namespace(op)
        reachable = any(
            namespace == route.namespace
            and route.next_hop in ipaddress.ip_interface(cidr).network
            for namespace, _, cidr in self.addresses
        )
        if not reachable:
            raise RejectedError("Nexthop has invalid gateway", op)
        key = (route.namespace, route.prefix)
        if key in self.routes:
            if self.routes[key] == route.via:
                raise AlreadySatisfied("route present")
            raise ConflictError(f"route points at {self.routes[key]}", op)
        self.routes[key] = route.via

    def _revert_add_route(self, op: Operation) -> None:
        route = op.target
        key = (route.namespace, route.prefix)
        if self.routes.get(key) != route.via:
            raise AlreadySatisfied("route absent")
        del self.routes[key]

    # ------------------------------------------------------------------
    # Forwarding, firewall and offload
    # ------------------------------------------------------------------
    def _apply_set_forwarding(self, op: Operation) -> None:
        self._require_namespace(op)
        desired = bool(op.target.forwarding)
        if self.forwarding.get(op.namespace, False) == desired:
            raise AlreadySatisfied("forwarding unchanged")
        self.forwarding[op.namespace] = desired

    def _revert_set_forwarding(self, op: Operation) -> None:
        if not self.forwarding.get(op.namespace, False):
            raise AlreadySatisfied("forwarding disabled")
        self.forwarding[op.namespace] = False

    def _apply_add_firewall_rule(self, op: Operation) -> None:
        self._require_namespace(op)
        rule = op.target
        key = (rule.namespace, rule.table, rule.chain, tuple(rule.rule_spec()))
        if key in self.rules:
            raise AlreadySatisfied("rule present")
        self.rules.add(key)

    def _revert_add_firewall_rule(self, op: Operation) -> None:
        rule = op.target
        key = (rule.namespace, rule.table, rule.chain, tuple(rule.rule_spec()))
        if key not in self.rules:
            raise AlreadySatisfied("rule absent")
        self.rules.discard(key)

    def _apply_set_offload(self, op: Operation) -> None:
        self._require_device(op, op.device)
        current = self.offload.setdefault(op.device, {name: True for name in OFFLOAD_FEATURES})
        desired = op.target.offload_settings()
        if all(current[name] == enabled for name, enabled in desired.items()):
            raise AlreadySatisfied("offload unchanged")
        current.update(desired)

    def _revert_set_offload(self, op: Operation) -> None:
        current = self.offload.get(op.device)
        if current is None or all(current[name] for name in op.target.offload_settings()):
            raise AlreadySatisfied("offload defaults")
        current.update({name: True for name in op.target.offload_settings()})


def build_two_hosts() -> Topology:
    return (
        TopologyBuilder()
        .namespace("host1")
        .namespace("router", forwarding=True)
        .namespace("host2")
        .link("host1-veth1", "router-veth1", left_offload={"tx": False})
        .link("host2-veth1", "router-veth2", left_offload={"tx": False})
        .assign("host1-veth1", "host1")
        .assign("router-veth1", "router")
        .assign("host2-veth1", "host2")
        .assign("router-veth2", "router")
        .address("host1", "host1-veth1", "10.0.0.1/24")
        .address("router", "router-veth1", "10.0.0.254/24")
        .address("router", "router-veth2", "10.0.1.254/24")
        .address("host2", "host2-veth1", "10.0.1.1/24")
        .route("host1", "default", "10.0.0.254")
        .route("host2", "default", "10.0.1.254")
        .suppress_resets("host1")
        .suppress_resets("host2")
        .build()
    )


@pytest.fixture
def kernel() -> FakeKernel:
    return FakeKernel()


@pytest.fixture
def two_hosts() -> Topology:
    return build_two_hosts()


@pytest.fixture
def kernel_factory() -> Callable[[], FakeKernel]:
    return FakeKernel
