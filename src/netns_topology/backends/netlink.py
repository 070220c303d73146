"""Kernel backend built on pyroute2.

Namespaces, veth pairs, link state, addresses and routes are programmed over
netlink.  Forwarding flags, iptables rules and NIC offload settings are
delegated to :class:`~netns_topology.backends.shell.NamespaceCommandRunner`.

Every handler inspects the current state before changing anything.  That is
what makes re-applying a topology a no-op, and what makes retries of a
transient failure safe: a retried step never repeats a change the kernel
already accepted.
"""

from __future__ import annotations

import errno
import ipaddress
import logging
import os
import socket
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Tuple

from pyroute2 import IPRoute, NetlinkError, NetNS, netns

from ..errors import (
    AlreadySatisfied,
    ConflictError,
    PrivilegeError,
    RejectedError,
    TopologyError,
    TransientOSError,
)
from ..model import OFFLOAD_FEATURES
from ..planner import OpKind, Operation
from .base import NetworkBackend
from .shell import NamespaceCommandRunner, classify_command_failure

LOG = logging.getLogger(__name__)

IFF_UP = 0x1
RT_TABLE_MAIN = 254
CAP_NET_ADMIN = 12
CAP_SYS_ADMIN = 21
FORWARDING_SYSCTL = "net.ipv4.ip_forward"

TRANSIENT_ERRNOS = frozenset(
    {errno.EBUSY, errno.EAGAIN, errno.ENOBUFS, errno.EINTR, errno.ETIMEDOUT}
)
PRIVILEGE_ERRNOS = frozenset({errno.EPERM, errno.EACCES})
ABSENT_ERRNOS = frozenset(
    {errno.ENOENT, errno.ENODEV, errno.ESRCH, errno.EADDRNOTAVAIL}
)

Handler = Callable[[Operation], None]


def classify_errno(
    code: int,
    message: str,
    operation: Optional[Operation] = None,
    *,
    reverting: bool = False,
) -> TopologyError:
    """Translate a netlink/OS errno into the error taxonomy."""

    if code == errno.EEXIST and not reverting:
        return AlreadySatisfied(message)
    if code in ABSENT_ERRNOS and reverting:
        return AlreadySatisfied(message)
    if code in PRIVILEGE_ERRNOS:
        return PrivilegeError(message, operation)
    if code in TRANSIENT_ERRNOS:
        return TransientOSError(message, operation)
    if code == errno.EEXIST:
        return ConflictError(message, operation)
    return RejectedError(message, operation)


class NetlinkBackend(NetworkBackend):
    """Provision topologies on the local kernel."""

    def __init__(
        self,
        runner: Optional[NamespaceCommandRunner] = None,
        *,
        iptables_command: str = "iptables",
        ethtool_command: str = "ethtool",
        sysctl_command: str = "sysctl",
    ) -> None:
        self._runner = runner or NamespaceCommandRunner()
        self._iptables = iptables_command
        self._ethtool = ethtool_command
        self._sysctl = sysctl_command
        self._handlers: Dict[OpKind, Tuple[Handler, Handler]] = {
            OpKind.CREATE_NAMESPACE: (self._create_namespace, self._delete_namespace),
            OpKind.CREATE_LINK_PAIR: (self._create_link_pair, self._delete_link_pair),
            OpKind.MOVE_ENDPOINT: (self._move_endpoint, self._return_endpoint),
            OpKind.LINK_UP: (self._link_up, self._link_down),
            OpKind.LOOPBACK_UP: (self._link_up, self._link_down),
            OpKind.ADD_ADDRESS: (self._add_address, self._del_address),
            OpKind.ADD_ROUTE: (self._add_route, self._del_route),
            OpKind.SET_FORWARDING: (self._set_forwarding, self._reset_forwarding),
            OpKind.ADD_FIREWALL_RULE: (self._add_rule, self._del_rule),
            OpKind.SET_OFFLOAD: (self._set_offload, self._reset_offload),
        }

    # ------------------------------------------------------------------
    # NetworkBackend
    # ------------------------------------------------------------------
    def preflight(self) -> None:
        missing = [
            name
            for name, bit in (("CAP_NET_ADMIN", CAP_NET_ADMIN), ("CAP_SYS_ADMIN", CAP_SYS_ADMIN))
            if not _has_capability(bit)
        ]
        if missing:
            raise PrivilegeError(
                f"missing {', '.join(missing)}; run as root or grant the capabilities"
            )

    def apply(self, operation: Operation) -> None:
        handler, _ = self._handlers[operation.kind]
        with _translated(operation, reverting=False):
            handler(operation)

    def revert(self, operation: Operation) -> None:
        _, handler = self._handlers[operation.kind]
        with _translated(operation, reverting=True):
            handler(operation)

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------
    def _create_namespace(self, op: Operation) -> None:
        name = op.target.name
        if name in netns.listnetns():
            raise AlreadySatisfied(f"namespace '{name}' exists")
        netns.create(name)
        LOG.info("Created namespace '%s'", name)

    def _delete_namespace(self, op: Operation) -> None:
        name = op.target.name
        if name not in netns.listnetns():
            raise AlreadySatisfied(f"namespace '{name}' is absent")
        netns.remove(name)
        LOG.info("Removed namespace '%s'", name)

    # ------------------------------------------------------------------
    # Link pairs
    # ------------------------------------------------------------------
    def _create_link_pair(self, op: Operation) -> None:
        left, right = (ep.name for ep in op.target.endpoints)
        found = {name: self._locate(name) for name in (left, right)}
        present = {name: loc for name, loc in found.items() if loc is not None}

        if len(present) == 2:
            kinds = {name: kind for name, (_, kind) in present.items()}
            if all(kind == "veth" for kind in kinds.values()):
                raise AlreadySatisfied(f"veth pair {op.target.name} exists")
            raise ConflictError(f"interfaces exist but are not veth: {kinds}", op)
        if present:
            name, (where, _) = next(iter(present.items()))
            raise ConflictError(
                f"'{name}' exists in {where or 'the root namespace'} without its peer",
                op,
            )

        with IPRoute() as ipr:
            ipr.link("add", ifname=left, kind="veth", peer={"ifname": right})
        LOG.info("Created veth pair %s", op.target.name)

    def _delete_link_pair(self, op: Operation) -> None:
        for endpoint in op.target.endpoints:
            location = self._locate(endpoint.name)
            if location is None:
                continue
            where, _ = location
            with _route_socket(where) as ipr:
                ipr.link("del", index=_index(ipr, endpoint.name))
            LOG.info("Removed veth pair %s", op.target.name)
            return
        raise AlreadySatisfied(f"veth pair {op.target.name} is absent")

    def _locate(self, ifname: str) -> Optional[Tuple[Optional[str], Optional[str]]]:
        """Return ``(namespace, kind)`` of ``ifname`` or ``None`` if absent."""

        for where in (None, *netns.listnetns()):
            with _route_socket(where) as ipr:
                indexes = ipr.link_lookup(ifname=ifname)
                if indexes:
                    return where, _link_kind(ipr, indexes[0])
        return None

    # ------------------------------------------------------------------
    # Namespace membership
    # ------------------------------------------------------------------
    def _move_endpoint(self, op: Operation) -> None:
        ifname, target = op.target.endpoint, op.target.namespace
        location = self._locate(ifname)
        if location is None:
            raise RejectedError(f"interface '{ifname}' does not exist", op)
        where, _ = location
        if where == target:
            raise AlreadySatisfied(f"'{ifname}' already in namespace '{target}'")
        if where is not None:
            raise ConflictError(f"'{ifname}' already belongs to namespace '{where}'", op)

        with IPRoute() as ipr:
            ipr.link("set", index=_index(ipr, ifname), net_ns_fd=target)
        LOG.info("Moved '%s' into namespace '%s'", ifname, target)

    def _return_endpoint(self, op: Operation) -> None:
        ifname, target = op.target.endpoint, op.target.namespace
        if target not in netns.listnetns():
            raise AlreadySatisfied(f"namespace '{target}' is absent")
        with _route_socket(target) as ipr:
            if not ipr.link_lookup(ifname=ifname):
                raise AlreadySatisfied(f"'{ifname}' is not in namespace '{target}'")
            ipr.link("set", index=_index(ipr, ifname), net_ns_pid=os.getpid())
        LOG.info("Moved '%s' from namespace '%s' back to the root namespace", ifname, target)

    # ------------------------------------------------------------------
    # Link state
    # ------------------------------------------------------------------
    def _link_up(self, op: Operation) -> None:
        with self._namespace_socket(op) as ipr:
            index = ipr.link_lookup(ifname=op.device)
            if not index:
                raise RejectedError(f"interface '{op.device}' does not exist", op)
            if ipr.get_links(index[0])[0]["flags"] & IFF_UP:
                raise AlreadySatisfied(f"'{op.device}' is up")
            ipr.link("set", index=index[0], state="up")
        LOG.info("Brought up %s/%s", op.namespace, op.device)

    def _link_down(self, op: Operation) -> None:
        with self._namespace_socket(op, absent_ok=True) as ipr:
            index = ipr.link_lookup(ifname=op.device)
            if not index or not ipr.get_links(index[0])[0]["flags"] & IFF_UP:
                raise AlreadySatisfied(f"'{op.device}' is down or absent")
            ipr.link("set", index=index[0], state="down")
        LOG.info("Brought down %s/%s", op.namespace, op.device)

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------
    def _add_address(self, op: Operation) -> None:
        address = op.target
        ip, prefixlen = str(address.ip), address.prefixlen
        with self._namespace_socket(op) as ipr:
            index = ipr.link_lookup(ifname=address.interface)
            if not index:
                raise RejectedError(f"interface '{address.interface}' does not exist", op)
            for msg in ipr.get_addr():
                if msg.get_attr("IFA_ADDRESS") != ip:
                    continue
                if msg["index"] == index[0] and msg["prefixlen"] == prefixlen:
                    raise AlreadySatisfied(f"{address.cidr} present on {address.interface}")
                raise ConflictError(
                    f"{ip} already configured as /{msg['prefixlen']} on ifindex {msg['index']}",
                    op,
                )
            ipr.addr("add", index=index[0], address=ip, prefixlen=prefixlen)
        LOG.info("Assigned %s to %s/%s", address.cidr, address.namespace, address.interface)

    def _del_address(self, op: Operation) -> None:
        address = op.target
        ip, prefixlen = str(address.ip), address.prefixlen
        with self._namespace_socket(op, absent_ok=True) as ipr:
            index = ipr.link_lookup(ifname=address.interface)
            present = index and any(
                msg.get_attr("IFA_ADDRESS") == ip and msg["prefixlen"] == prefixlen
                for msg in ipr.get_addr(index=index[0])
            )
            if not present:
                raise AlreadySatisfied(f"{address.cidr} absent from {address.interface}")
            ipr.addr("del", index=index[0], address=ip, prefixlen=prefixlen)
        LOG.info("Removed %s from %s/%s", address.cidr, address.namespace, address.interface)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    def _add_route(self, op: Operation) -> None:
        route = op.target
        with self._namespace_socket(op) as ipr:
            existing = _find_route(ipr, route.prefix)
            if existing is not None:
                gateway = existing.get_attr("RTA_GATEWAY")
                if _same_ip(gateway, route.next_hop):
                    raise AlreadySatisfied(f"route {route.prefix} via {route.via} present")
                raise ConflictError(f"route {route.prefix} already points at {gateway}", op)
            ipr.route("add", dst=route.prefix, gateway=route.via)
        LOG.info("Added route %s via %s in '%s'", route.prefix, route.via, route.namespace)

    def _del_route(self, op: Operation) -> None:
        route = op.target
        with self._namespace_socket(op, absent_ok=True) as ipr:
            existing = _find_route(ipr, route.prefix)
            if existing is None:
                raise AlreadySatisfied(f"route {route.prefix} absent")
            gateway = existing.get_attr("RTA_GATEWAY")
            if not _same_ip(gateway, route.next_hop):
                LOG.warning(
                    "Route %s in '%s' points at %s, not %s; leaving it in place",
                    route.prefix,
                    route.namespace,
                    gateway,
                    route.via,
                )
                raise AlreadySatisfied(f"route {route.prefix} via {route.via} absent")
            ipr.route("del", dst=route.prefix, gateway=route.via)
        LOG.info("Removed route %s via %s in '%s'", route.prefix, route.via, route.namespace)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------
    def _read_forwarding(self, op: Operation) -> bool:
        out = self._runner.check(op.namespace, self._sysctl, "-n", FORWARDING_SYSCTL, operation=op)
        return out.strip() == "1"

    def _write_forwarding(self, op: Operation, enabled: bool) -> None:
        self._runner.check(
            op.namespace,
            self._sysctl,
            "-w",
            f"{FORWARDING_SYSCTL}={int(enabled)}",
            operation=op,
        )

    def _set_forwarding(self, op: Operation) -> None:
        self._require_namespace(op)
        desired = bool(op.target.forwarding)
        if self._read_forwarding(op) == desired:
            raise AlreadySatisfied(f"forwarding already {int(desired)} in '{op.namespace}'")
        self._write_forwarding(op, desired)
        LOG.info("Set %s=%d in '%s'", FORWARDING_SYSCTL, desired, op.namespace)

    def _reset_forwarding(self, op: Operation) -> None:
        if op.namespace not in netns.listnetns() or not self._read_forwarding(op):
            raise AlreadySatisfied(f"forwarding already disabled in '{op.namespace}'")
        self._write_forwarding(op, False)
        LOG.info("Reset %s in '%s'", FORWARDING_SYSCTL, op.namespace)

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------
    def _rule_present(self, op: Operation) -> bool:
        rule = op.target
        result = self._runner.run(
            op.namespace,
            self._iptables,
            "-w",
            "-t",
            rule.table,
            "-C",
            rule.chain,
            *rule.rule_spec(),
            operation=op,
        )
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise classify_command_failure(result, op)

    def _add_rule(self, op: Operation) -> None:
        self._require_namespace(op)
        rule = op.target
        if self._rule_present(op):
            raise AlreadySatisfied(f"rule present in '{op.namespace}'")
        self._runner.check(
            op.namespace,
            self._iptables,
            "-w",
            "-t",
            rule.table,
            "-A",
            rule.chain,
            *rule.rule_spec(),
            operation=op,
        )
        LOG.info("Installed firewall rule in '%s': %s", op.namespace, op.describe())

    def _del_rule(self, op: Operation) -> None:
        rule = op.target
        if op.namespace not in netns.listnetns() or not self._rule_present(op):
            raise AlreadySatisfied(f"rule absent from '{op.namespace}'")
        self._runner.check(
            op.namespace,
            self._iptables,
            "-w",
            "-t",
            rule.table,
            "-D",
            rule.chain,
            *rule.rule_spec(),
            operation=op,
        )
        LOG.info("Removed firewall rule in '%s': %s", op.namespace, op.describe())

    # ------------------------------------------------------------------
    # Offload
    # ------------------------------------------------------------------
    def _read_offload(self, op: Operation) -> Dict[str, bool]:
        out = self._runner.check(op.namespace, self._ethtool, "-k", op.device, operation=op)
        return parse_offload_features(out)

    def _write_offload(self, op: Operation, changes: Dict[str, bool]) -> None:
        args = []
        for feature, enabled in changes.items():
            args.extend([feature, "on" if enabled else "off"])
        self._runner.check(op.namespace, self._ethtool, "-K", op.device, *args, operation=op)

    def _offload_changes(self, op: Operation, desired: Dict[str, bool]) -> Dict[str, bool]:
        current = self._read_offload(op)
        return {
            feature: enabled
            for feature, enabled in desired.items()
            if current.get(OFFLOAD_FEATURES[feature]) != enabled
        }

    def _set_offload(self, op: Operation) -> None:
        self._require_namespace(op)
        changes = self._offload_changes(op, op.target.offload_settings())
        if not changes:
            raise AlreadySatisfied(f"offload settings already applied on '{op.device}'")
        self._write_offload(op, changes)
        LOG.info("Set offload on %s/%s: %s", op.namespace, op.device, changes)

    def _reset_offload(self, op: Operation) -> None:
        if op.namespace not in netns.listnetns():
            raise AlreadySatisfied(f"namespace '{op.namespace}' is absent")
        with _route_socket(op.namespace) as ipr:
            if not ipr.link_lookup(ifname=op.device):
                raise AlreadySatisfied(f"'{op.device}' is absent")
        defaults = {feature: True for feature in op.target.offload_settings()}
        changes = self._offload_changes(op, defaults)
        if not changes:
            raise AlreadySatisfied(f"offload defaults already restored on '{op.device}'")
        self._write_offload(op, changes)
        LOG.info("Restored offload defaults on %s/%s", op.namespace, op.device)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_namespace(self, op: Operation) -> None:
        if op.namespace not in netns.listnetns():
            raise RejectedError(f"namespace '{op.namespace}' does not exist", op)

    @contextmanager
    def _namespace_socket(self, op: Operation, *, absent_ok: bool = False) -> Iterator:
        if op.namespace not in netns.listnetns():
            if absent_ok:
                raise AlreadySatisfied(f"namespace '{op.namespace}' is absent")
            raise RejectedError(f"namespace '{op.namespace}' does not exist", op)
        with _route_socket(op.namespace) as ipr:
            yield ipr


@contextmanager
def _route_socket(namespace: Optional[str]) -> Iterator:
    """Open a netlink socket in ``namespace`` (root when ``None``).

    ``flags=0`` keeps pyroute2 from silently creating a missing namespace.
    """

    sock = IPRoute() if namespace is None else NetNS(namespace, flags=0)
    try:
        yield sock
    finally:
        sock.close()


@contextmanager
def _translated(operation: Operation, *, reverting: bool) -> Iterator[None]:
    try:
        yield
    except NetlinkError as exc:
        raise classify_errno(
            exc.code, f"netlink error {exc.code}: {exc}", operation, reverting=reverting
        ) from exc
    except OSError as exc:
        if exc.errno is None:
            raise RejectedError(str(exc), operation) from exc
        raise classify_errno(exc.errno, str(exc), operation, reverting=reverting) from exc


def _index(ipr, ifname: str) -> int:
    indexes = ipr.link_lookup(ifname=ifname)
    if not indexes:
        raise NetlinkError(errno.ENODEV, f"no such device: {ifname}")
    return indexes[0]


def _link_kind(ipr, index: int) -> Optional[str]:
    link = ipr.get_links(index)[0]
    info = link.get_attr("IFLA_LINKINFO")
    if info is None:
        return None
    return info.get_attr("IFLA_INFO_KIND")


def _find_route(ipr, prefix: str):
    network = ipaddress.ip_network(prefix)
    family = socket.AF_INET if network.version == 4 else socket.AF_INET6
    unspecified = "0.0.0.0" if network.version == 4 else "::"
    for msg in ipr.get_routes(family=family, table=RT_TABLE_MAIN):
        if msg["dst_len"] != network.prefixlen:
            continue
        dst = msg.get_attr("RTA_DST") or unspecified
        if dst == str(network.network_address):
            return msg
    return None


def _same_ip(value: Optional[str], expected) -> bool:
    if not value:
        return False
    return ipaddress.ip_address(value) == expected


def parse_offload_features(output: str) -> Dict[str, bool]:
    """Parse ``ethtool -k`` output into ``{feature: enabled}``."""

    features: Dict[str, bool] = {}
    for line in output.splitlines():
        if ":" not in line or line.startswith("Features for"):
            continue
        name, _, value = line.partition(":")
        state = value.split()
        if state:
            features[name.strip()] = state[0] == "on"
    return features


def _has_capability(bit: int) -> bool:
    try:
        with open("/proc/self/status", encoding="ascii") as fh:
            for line in fh:
                if line.startswith("CapEff:"):
                    return bool(int(line.split()[1], 16) & (1 << bit))
    except OSError:
        LOG.debug("Could not read capabilities, falling back to euid check")
    return os.geteuid() == 0


__all__ = ["NetlinkBackend", "classify_errno", "parse_offload_features"]
