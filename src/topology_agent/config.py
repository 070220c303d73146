"""YAML loader for topology descriptions."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from netns_topology.model import Topology, TopologyBuilder

SECTIONS = ("namespaces", "links", "addresses", "routes", "firewall", "assignments")


def _require(entry: Mapping[str, Any], key: str, section: str) -> Any:
    if key not in entry or entry[key] is None:
        raise ValueError(f"'{section}' entry is missing '{key}': {dict(entry)}")
    return entry[key]


def _entries(data: Mapping[str, Any], section: str) -> List[Mapping[str, Any]]:
    raw = data.get(section) or []
    if not isinstance(raw, list):
        raise ValueError(f"'{section}' section must be a list")
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError(f"'{section}' entries must be mappings, got {entry!r}")
    return raw


def _parse_bool(value: Any, field: str, section: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{section}' field '{field}' must be true or false, got {value!r}")
    return value


def _parse_offload(entry: Mapping[str, Any]) -> Optional[Dict[str, bool]]:
    offload = entry.get("offload")
    if offload is None:
        return None
    if not isinstance(offload, dict):
        raise ValueError("link endpoint 'offload' must be a mapping if provided")
    return {
        str(feature): _parse_bool(enabled, f"offload.{feature}", "links")
        for feature, enabled in offload.items()
    }


def _parse_match(value: Any) -> List[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(token) for token in value]
    raise ValueError(f"firewall 'match' must be a string or a list, got {value!r}")


def _parse_namespaces(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        name = str(_require(entry, "name", "namespaces"))
        forwarding = entry.get("forwarding")
        if forwarding is not None:
            forwarding = _parse_bool(forwarding, "forwarding", "namespaces")
        builder.namespace(name, forwarding=forwarding)
        if _parse_bool(entry.get("suppress_resets", False), "suppress_resets", "namespaces"):
            builder.suppress_resets(name)


def _parse_links(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        endpoints = _require(entry, "endpoints", "links")
        if not isinstance(endpoints, list) or len(endpoints) != 2:
            raise ValueError("each link needs exactly two 'endpoints'")
        if not all(isinstance(ep, dict) for ep in endpoints):
            raise ValueError("link 'endpoints' must be mappings")
        left, right = endpoints
        builder.link(
            str(_require(left, "name", "links")),
            str(_require(right, "name", "links")),
            left_offload=_parse_offload(left),
            right_offload=_parse_offload(right),
        )
        for endpoint in endpoints:
            if endpoint.get("namespace") is not None:
                builder.assign(str(endpoint["name"]), str(endpoint["namespace"]))


def _parse_addresses(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        builder.address(
            str(_require(entry, "namespace", "addresses")),
            str(_require(entry, "interface", "addresses")),
            str(_require(entry, "cidr", "addresses")),
        )


def _parse_routes(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        builder.route(
            str(_require(entry, "namespace", "routes")),
            str(_require(entry, "destination", "routes")),
            str(_require(entry, "via", "routes")),
        )


def _parse_firewall(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        builder.firewall(
            str(_require(entry, "namespace", "firewall")),
            _parse_match(_require(entry, "match", "firewall")),
            action=str(entry.get("action", "DROP")),
            chain=str(entry.get("chain", "OUTPUT")),
            table=str(entry.get("table", "filter")),
        )


def _parse_assignments(builder: TopologyBuilder, entries: Iterable[Mapping[str, Any]]) -> None:
    for entry in entries:
        builder.assign(
            str(_require(entry, "endpoint", "assignments")),
            str(_require(entry, "namespace", "assignments")),
        )


def parse_topology(data: Any) -> Topology:
    """Build a :class:`Topology` from already decoded YAML data.

    Only the shape of the document is checked here; consistency between
    entities is left to :func:`netns_topology.validator.validate` so every
    problem is reported at once.
    """
    if not isinstance(data, dict):
        raise ValueError("Topology description must be a mapping")
    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise ValueError(f"Unknown topology section(s): {', '.join(map(str, unknown))}")
    if not data.get("namespaces"):
        raise ValueError("Topology missing 'namespaces' section")

    builder = TopologyBuilder()
    _parse_namespaces(builder, _entries(data, "namespaces"))
    _parse_links(builder, _entries(data, "links"))
    _parse_addresses(builder, _entries(data, "addresses"))
    _parse_routes(builder, _entries(data, "routes"))
    _parse_firewall(builder, _entries(data, "firewall"))
    _parse_assignments(builder, _entries(data, "assignments"))
    return builder.build()


def load_topology(path: Path) -> Topology:
    return parse_topology(yaml.safe_load(path.read_text()))
