"""Structural validation of a :class:`~netns_topology.model.Topology`.

Validation never touches the kernel and never stops at the first problem:
``validate`` walks the whole topology and returns every violated invariant so
an operator can fix a description in one pass.
"""

from __future__ import annotations

import ipaddress
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Set

from .model import OFFLOAD_FEATURES, FirewallRule, Topology

IFNAMSIZ = 15
FIREWALL_TABLES = ("filter", "nat", "mangle", "raw")
FIREWALL_CHAINS = ("INPUT", "OUTPUT", "FORWARD", "PREROUTING", "POSTROUTING")
FIREWALL_ACTIONS = ("ACCEPT", "DROP", "REJECT", "RETURN", "LOG")


@dataclass(frozen=True)
class Violation:
    """A single broken invariant.

    ``code`` is a stable identifier (``overlapping-address``, ...) suitable
    for tests and tooling; ``subject`` names the offending entity.
    """

    code: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"[{self.code}] {self.subject}: {self.message}"


@dataclass
class ValidationReport:
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def add(self, code: str, subject: str, message: str) -> None:
        self.violations.append(Violation(code, subject, message))

    def codes(self) -> List[str]:
        return [v.code for v in self.violations]


def validate(topology: Topology) -> ValidationReport:
    """Check ``topology`` for internal consistency."""

    report = ValidationReport()
    _check_namespaces(topology, report)
    _check_endpoints(topology, report)
    _check_assignments(topology, report)
    _check_addresses(topology, report)
    _check_routes(topology, report)
    _check_firewall(topology, report)
    return report


def _check_namespaces(topology: Topology, report: ValidationReport) -> None:
    counts = Counter(ns.name for ns in topology.namespaces)
    for name, count in counts.items():
        if not name:
            report.add("invalid-namespace", "<empty>", "namespace name cannot be empty")
        elif count > 1:
            report.add("duplicate-namespace", name, f"declared {count} times")


def _check_endpoints(topology: Topology, report: ValidationReport) -> None:
    counts = Counter(ep.name for ep in topology.endpoints())
    for name, count in counts.items():
        if count > 1:
            report.add("duplicate-endpoint", name, f"declared {count} times across link pairs")

    for endpoint in topology.endpoints():
        if not _valid_ifname(endpoint.name):
            report.add(
                "invalid-interface-name",
                endpoint.name or "<empty>",
                f"interface names must be 1-{IFNAMSIZ} characters without '/' or "
                "whitespace and must not be 'lo'",
            )
        for feature, _ in endpoint.offload:
            if feature not in OFFLOAD_FEATURES:
                report.add(
                    "invalid-offload",
                    endpoint.name,
                    f"unknown offload feature '{feature}' "
                    f"(known: {', '.join(sorted(OFFLOAD_FEATURES))})",
                )


def _check_assignments(topology: Topology, report: ValidationReport) -> None:
    known_namespaces = {ns.name for ns in topology.namespaces}
    known_endpoints = {ep.name for ep in topology.endpoints()}

    intents: Dict[str, List[str]] = defaultdict(list)
    for assignment in topology.assignments:
        intents[assignment.endpoint].append(assignment.namespace)
        if assignment.endpoint not in known_endpoints:
            report.add(
                "unknown-endpoint",
                assignment.endpoint,
                f"assigned to '{assignment.namespace}' but not part of any link pair",
            )
        if assignment.namespace not in known_namespaces:
            report.add(
                "unknown-namespace",
                assignment.endpoint,
                f"assigned to undeclared namespace '{assignment.namespace}'",
            )

    for endpoint, namespaces in intents.items():
        if len(namespaces) > 1:
            report.add(
                "duplicate-assignment",
                endpoint,
                f"assigned more than once ({', '.join(namespaces)}); "
                "endpoints move into exactly one namespace",
            )

    for endpoint in known_endpoints - set(intents):
        report.add("unassigned-endpoint", endpoint, "endpoint is not assigned to a namespace")


def _check_addresses(topology: Topology, report: ValidationReport) -> None:
    known_namespaces = {ns.name for ns in topology.namespaces}
    holders: Dict[str, List[str]] = defaultdict(list)
    valid_by_namespace: Dict[str, list] = defaultdict(list)

    for address in topology.addresses:
        subject = f"{address.namespace}/{address.interface}/{address.cidr}"
        if address.namespace not in known_namespaces:
            report.add(
                "unknown-namespace", subject, f"namespace '{address.namespace}' is not declared"
            )
        owner = topology.owner_of(address.interface)
        if topology.endpoint(address.interface) is None or owner != address.namespace:
            report.add(
                "interface-not-in-namespace",
                subject,
                f"interface '{address.interface}' is not an endpoint assigned to "
                f"'{address.namespace}'",
            )
        if "/" not in address.cidr:
            report.add("invalid-address", subject, "address must be written in CIDR notation")
            continue
        try:
            iface = address.interface_address
        except ValueError as exc:
            report.add("invalid-address", subject, str(exc))
            continue
        holders[str(iface.ip)].append(f"{address.namespace}/{address.interface}")
        valid_by_namespace[address.namespace].append(address)

    for ip, owners in holders.items():
        if len(owners) > 1:
            report.add(
                "duplicate-address",
                ip,
                f"held by more than one interface ({', '.join(owners)})",
            )

    for namespace, addresses in valid_by_namespace.items():
        for idx, first in enumerate(addresses):
            for second in addresses[idx + 1:]:
                if first.interface == second.interface:
                    continue
                if first.network.version != second.network.version:
                    continue
                if first.network.overlaps(second.network):
                    report.add(
                        "overlapping-address",
                        f"{namespace}/{first.cidr}",
                        f"overlaps {second.cidr} on '{second.interface}' "
                        f"(declared on '{first.interface}')",
                    )


def _check_routes(topology: Topology, report: ValidationReport) -> None:
    known_namespaces = {ns.name for ns in topology.namespaces}
    seen: Set[tuple] = set()

    for route in topology.routes:
        subject = f"{route.namespace}/{route.destination}"
        if route.namespace not in known_namespaces:
            report.add(
                "unknown-namespace", subject, f"namespace '{route.namespace}' is not declared"
            )
        try:
            prefix = route.prefix
            next_hop = route.next_hop
        except ValueError as exc:
            report.add("invalid-address", subject, str(exc))
            continue
        if ipaddress.ip_network(prefix).version != next_hop.version:
            report.add(
                "invalid-address", subject, "destination and next hop use different IP versions"
            )
            continue

        key = (route.namespace, prefix)
        if key in seen:
            report.add("duplicate-route", subject, "destination declared more than once")
        seen.add(key)

        networks = []
        for address in topology.addresses_in(route.namespace):
            try:
                networks.append(address.network)
            except ValueError:
                continue
        if not any(
            net.version == next_hop.version and next_hop in net for net in networks
        ):
            report.add(
                "unreachable-next-hop",
                subject,
                f"next hop {route.via} is not inside any address declared in "
                f"'{route.namespace}'",
            )
        elif any(next_hop == _host(a) for a in topology.addresses_in(route.namespace)):
            report.add(
                "unreachable-next-hop",
                subject,
                f"next hop {route.via} is a local address of '{route.namespace}'",
            )


def _check_firewall(topology: Topology, report: ValidationReport) -> None:
    known_namespaces = {ns.name for ns in topology.namespaces}
    seen: Set[FirewallRule] = set()
    for rule in topology.firewall_rules:
        subject = f"{rule.namespace}/{rule.table}/{rule.chain}"
        if rule in seen:
            report.add("duplicate-firewall-rule", subject, "rule declared more than once")
        seen.add(rule)
        if rule.namespace not in known_namespaces:
            report.add(
                "unknown-namespace", subject, f"namespace '{rule.namespace}' is not declared"
            )
        if rule.table not in FIREWALL_TABLES:
            report.add("invalid-firewall-rule", subject, f"unknown table '{rule.table}'")
        if rule.chain not in FIREWALL_CHAINS:
            report.add("invalid-firewall-rule", subject, f"unknown chain '{rule.chain}'")
        if rule.action not in FIREWALL_ACTIONS:
            report.add("invalid-firewall-rule", subject, f"unknown action '{rule.action}'")
        if not rule.match:
            report.add("invalid-firewall-rule", subject, "rule needs a match predicate")


def _valid_ifname(name: str) -> bool:
    if not name or len(name) > IFNAMSIZ or name == "lo":
        return False
    return not any(ch == "/" or ch.isspace() for ch in name)


def _host(address) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return address.ip
    except ValueError:
        return None
