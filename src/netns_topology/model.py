"""Declarative topology model.

These frozen dataclasses describe the namespaces, veth pairs, addresses,
routes and policy rules of a test topology.  They carry no behaviour beyond
read-only lookups: the validator checks them, the planner expands them and
only the executor/teardown ever touch the kernel.

A :class:`Topology` is built wholesale, either through
:class:`TopologyBuilder` or the YAML loader in :mod:`topology_agent.config`,
and is immutable afterwards so a validation result cannot go stale while a
plan is being executed.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

DEFAULT_ROUTE = "0.0.0.0/0"

# iptables match used to keep the kernel from resetting connections that
# belong to the user-space TCP stack.
RST_MATCH = ("-p", "tcp", "--tcp-flags", "RST", "RST")

# ethtool -K short names mapped to the names printed by ethtool -k.
OFFLOAD_FEATURES = {
    "rx": "rx-checksumming",
    "tx": "tx-checksumming",
    "sg": "scatter-gather",
    "tso": "tcp-segmentation-offload",
    "gso": "generic-segmentation-offload",
    "gro": "generic-receive-offload",
    "lro": "large-receive-offload",
}


@dataclass(frozen=True)
class Namespace:
    """A network namespace owned by the topology.

    Attributes
    ----------
    name:
        Namespace name as shown by ``ip netns list``.
    forwarding:
        Desired ``net.ipv4.ip_forward`` value.  ``None`` leaves the kernel
        default untouched.
    """

    name: str
    forwarding: Optional[bool] = None


@dataclass(frozen=True)
class Endpoint:
    """One side of a veth pair."""

    name: str
    offload: Tuple[Tuple[str, bool], ...] = ()

    def offload_settings(self) -> Dict[str, bool]:
        return dict(self.offload)


@dataclass(frozen=True)
class LinkPair:
    """Two veth endpoints that are always created and destroyed together."""

    left: Endpoint
    right: Endpoint

    @property
    def endpoints(self) -> Tuple[Endpoint, Endpoint]:
        return self.left, self.right

    @property
    def name(self) -> str:
        return f"{self.left.name}<->{self.right.name}"


@dataclass(frozen=True)
class Assignment:
    """Intent to move ``endpoint`` from the root namespace into ``namespace``."""

    endpoint: str
    namespace: str


@dataclass(frozen=True)
class Address:
    namespace: str
    interface: str
    cidr: str

    @property
    def interface_address(self) -> ipaddress.IPv4Interface | ipaddress.IPv6Interface:
        return ipaddress.ip_interface(self.cidr)

    @property
    def ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return self.interface_address.ip

    @property
    def network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return self.interface_address.network

    @property
    def prefixlen(self) -> int:
        return self.interface_address.network.prefixlen


@dataclass(frozen=True)
class Route:
    """A static route inside a namespace.

    ``destination`` accepts ``default`` as an alias for ``0.0.0.0/0``.
    """

    namespace: str
    destination: str
    via: str

    @property
    def prefix(self) -> str:
        if self.destination == "default":
            return "::/0" if self.next_hop.version == 6 else DEFAULT_ROUTE
        return str(ipaddress.ip_network(self.destination, strict=False))

    @property
    def is_default(self) -> bool:
        return self.prefix in (DEFAULT_ROUTE, "::/0")

    @property
    def next_hop(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return ipaddress.ip_address(self.via)


@dataclass(frozen=True)
class FirewallRule:
    """An iptables rule scoped to one namespace."""

    namespace: str
    chain: str
    match: Tuple[str, ...]
    action: str
    table: str = "filter"

    @classmethod
    def drop_outbound_resets(cls, namespace: str) -> "FirewallRule":
        return cls(namespace=namespace, chain="OUTPUT", match=RST_MATCH, action="DROP")

    def rule_spec(self) -> List[str]:
        """Return the rule as ``iptables`` arguments following the chain name."""

        return [*self.match, "-j", self.action]


@dataclass(frozen=True)
class Topology:
    """Aggregate root of a test topology."""

    namespaces: Tuple[Namespace, ...] = ()
    links: Tuple[LinkPair, ...] = ()
    assignments: Tuple[Assignment, ...] = ()
    addresses: Tuple[Address, ...] = ()
    routes: Tuple[Route, ...] = ()
    firewall_rules: Tuple[FirewallRule, ...] = ()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def namespace(self, name: str) -> Optional[Namespace]:
        return next((ns for ns in self.namespaces if ns.name == name), None)

    def endpoints(self) -> Iterator[Endpoint]:
        for link in self.links:
            yield from link.endpoints

    def endpoint(self, name: str) -> Optional[Endpoint]:
        return next((ep for ep in self.endpoints() if ep.name == name), None)

    def link_of(self, endpoint: str) -> Optional[LinkPair]:
        return next(
            (link for link in self.links if endpoint in (link.left.name, link.right.name)),
            None,
        )

    def owner_of(self, endpoint: str) -> Optional[str]:
        """Return the namespace of the first assign intent for ``endpoint``."""

        return next(
            (a.namespace for a in self.assignments if a.endpoint == endpoint), None
        )

    def endpoints_in(self, namespace: str) -> List[Endpoint]:
        return [ep for ep in self.endpoints() if self.owner_of(ep.name) == namespace]

    def addresses_in(self, namespace: str) -> List[Address]:
        return [a for a in self.addresses if a.namespace == namespace]

    def routes_in(self, namespace: str) -> List[Route]:
        return [r for r in self.routes if r.namespace == namespace]

    def forwarding_flags(self) -> Dict[str, bool]:
        return {
            ns.name: ns.forwarding for ns in self.namespaces if ns.forwarding is not None
        }


@dataclass
class TopologyBuilder:
    """Collect topology entities in declaration order.

    The builder performs no validation; that is the validator's job, and it
    needs to see duplicate or dangling declarations in order to report them.
    """

    _namespaces: List[Namespace] = field(default_factory=list)
    _links: List[LinkPair] = field(default_factory=list)
    _assignments: List[Assignment] = field(default_factory=list)
    _addresses: List[Address] = field(default_factory=list)
    _routes: List[Route] = field(default_factory=list)
    _firewall_rules: List[FirewallRule] = field(default_factory=list)

    def namespace(self, name: str, forwarding: Optional[bool] = None) -> "TopologyBuilder":
        self._namespaces.append(Namespace(name=name, forwarding=forwarding))
        return self

    def link(
        self,
        left: str,
        right: str,
        *,
        left_offload: Optional[Mapping[str, bool]] = None,
        right_offload: Optional[Mapping[str, bool]] = None,
    ) -> "TopologyBuilder":
        self._links.append(
            LinkPair(
                left=Endpoint(left, _offload_tuple(left_offload)),
                right=Endpoint(right, _offload_tuple(right_offload)),
            )
        )
        return self

    def assign(self, endpoint: str, namespace: str) -> "TopologyBuilder":
        self._assignments.append(Assignment(endpoint=endpoint, namespace=namespace))
        return self

    def address(self, namespace: str, interface: str, cidr: str) -> "TopologyBuilder":
        self._addresses.append(Address(namespace=namespace, interface=interface, cidr=cidr))
        return self

    def route(self, namespace: str, destination: str, via: str) -> "TopologyBuilder":
        self._routes.append(Route(namespace=namespace, destination=destination, via=via))
        return self

    def firewall(
        self,
        namespace: str,
        match: Sequence[str],
        action: str = "DROP",
        chain: str = "OUTPUT",
        table: str = "filter",
    ) -> "TopologyBuilder":
        self._firewall_rules.append(
            FirewallRule(
                namespace=namespace,
                chain=chain,
                match=tuple(match),
                action=action,
                table=table,
            )
        )
        return self

    def suppress_resets(self, namespace: str) -> "TopologyBuilder":
        self._firewall_rules.append(FirewallRule.drop_outbound_resets(namespace))
        return self

    def build(self) -> Topology:
        return Topology(
            namespaces=tuple(self._namespaces),
            links=tuple(self._links),
            assignments=tuple(self._assignments),
            addresses=tuple(self._addresses),
            routes=tuple(self._routes),
            firewall_rules=tuple(self._firewall_rules),
        )


def _offload_tuple(settings: Optional[Mapping[str, bool]]) -> Tuple[Tuple[str, bool], ...]:
    if not settings:
        return ()
    return tuple((str(name), bool(enabled)) for name, enabled in settings.items())
