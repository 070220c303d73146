#!/usr/bin/env python3
"""Check a provisioned topology after ``netns-topology apply``.

Every namespace that does not forward is treated as a host: each host must
be able to ping the addresses of every other host, and every firewall rule
declared for it must be present.
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, Iterable, List

from netns_topology.model import Topology
from topology_agent.config import load_topology


class ValidationError(RuntimeError):
    pass


def run(cmd: Iterable[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(cmd, capture_output=True, text=True, check=False)


def netns_exec(namespace: str, *args: str) -> subprocess.CompletedProcess[str]:
    return run(["ip", "netns", "exec", namespace, *args])


def ensure_namespace(name: str) -> None:
    result = run(["ip", "netns", "list"])
    names = {line.split()[0] for line in result.stdout.splitlines() if line.strip()}
    if name not in names:
        raise ValidationError(f"namespace '{name}' does not exist")


def host_addresses(topology: Topology) -> Dict[str, List[str]]:
    return {
        ns.name: [str(a.ip) for a in topology.addresses_in(ns.name)]
        for ns in topology.namespaces
        if not ns.forwarding
    }


def check_ping(source: str, destination: str) -> None:
    result = netns_exec(source, "ping", "-c", "1", "-W", "2", destination)
    if result.returncode != 0:
        raise ValidationError(f"{source} cannot reach {destination}")


def check_firewall(topology: Topology, namespace: str) -> None:
    for rule in topology.firewall_rules:
        if rule.namespace != namespace:
            continue
        result = netns_exec(
            namespace, "iptables", "-w", "-t", rule.table, "-C", rule.chain, *rule.rule_spec()
        )
        if result.returncode != 0:
            raise ValidationError(
                f"{namespace} is missing iptables rule {rule.chain} {' '.join(rule.rule_spec())}"
            )


def main() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    topology_file = Path(
        os.environ.get("TOPOLOGY_FILE", repo_root / "deploy/topology/two-hosts.yaml")
    )
    if not topology_file.exists():
        raise SystemExit(f"topology description not found: {topology_file}")

    topology = load_topology(topology_file)
    for ns in topology.namespaces:
        ensure_namespace(ns.name)

    hosts = host_addresses(topology)
    for source in hosts:
        check_firewall(topology, source)
        for peer, addresses in hosts.items():
            if peer == source:
                continue
            for address in addresses:
                check_ping(source, address)

    print("topology reachability check succeeded")


if __name__ == "__main__":
    try:
        main()
    except ValidationError as exc:
        print(f"[check_reachability] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
