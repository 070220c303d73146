import pytest

from netns_topology.errors import ValidationError
from netns_topology.model import TopologyBuilder
from netns_topology.planner import plan
from netns_topology.teardown import TopologyTeardown
from netns_topology.validator import validate


def build_pair(left_cidr="10.0.0.1/24", right_cidr="10.0.0.2/24") -> TopologyBuilder:
    return (
        TopologyBuilder()
        .namespace("a")
        .namespace("b")
        .link("a-veth", "b-veth")
        .assign("a-veth", "a")
        .assign("b-veth", "b")
        .address("a", "a-veth", left_cidr)
        .address("b", "b-veth", right_cidr)
    )


def test_example_topology_is_valid(two_hosts):
    report = validate(two_hosts)

    assert report.ok, [str(v) for v in report.violations]


def test_overlapping_addresses_rejected_before_any_backend_call(kernel):
    topology = (
        TopologyBuilder()
        .namespace("a")
        .namespace("b")
        .link("a-1", "b-1")
        .link("a-2", "b-2")
        .assign("a-1", "a")
        .assign("a-2", "a")
        .assign("b-1", "b")
        .assign("b-2", "b")
        .address("a", "a-1", "10.0.0.1/24")
        .address("a", "a-2", "10.0.0.2/16")
        .build()
    )

    assert validate(topology).codes() == ["overlapping-address"]
    with pytest.raises(ValidationError) as excinfo:
        plan(topology)
    assert excinfo.value.report.codes() == ["overlapping-address"]
    with pytest.raises(ValidationError):
        TopologyTeardown(kernel).teardown(topology)
    assert kernel.calls == []


def test_every_violation_is_reported():
    topology = (
        TopologyBuilder()
        .namespace("x")
        .namespace("x")
        .link("bad/name", "ok-1")
        .assign("ok-1", "x")
        .assign("ghost", "nowhere")
        .address("x", "ok-1", "10.0.0.300/24")
        .route("x", "default", "192.168.1.1")
        .firewall("x", [], action="EXPLODE")
        .build()
    )

    report = validate(topology)

    assert set(report.codes()) == {
        "duplicate-namespace",
        "invalid-interface-name",
        "unknown-endpoint",
        "unknown-namespace",
        "unassigned-endpoint",
        "invalid-address",
        "unreachable-next-hop",
        "invalid-firewall-rule",
    }
    assert report.codes().count("invalid-firewall-rule") == 2


def test_endpoint_assigned_twice():
    topology = build_pair().assign("a-veth", "b").build()

    assert "duplicate-assignment" in validate(topology).codes()


def test_same_host_address_in_two_namespaces():
    topology = build_pair(right_cidr="10.0.0.1/24").build()

    assert validate(topology).codes() == ["duplicate-address"]


def test_address_must_sit_on_an_endpoint_of_its_namespace():
    topology = build_pair().address("b", "a-veth", "10.9.0.1/24").build()

    assert validate(topology).codes() == ["interface-not-in-namespace"]


def test_address_requires_cidr_notation():
    topology = build_pair(left_cidr="10.0.0.1").build()

    assert validate(topology).codes() == ["invalid-address"]


def test_next_hop_must_be_on_link():
    topology = build_pair().route("a", "default", "10.1.0.1").build()

    assert validate(topology).codes() == ["unreachable-next-hop"]


def test_next_hop_cannot_be_a_local_address():
    topology = build_pair().route("a", "default", "10.0.0.1").build()

    assert validate(topology).codes() == ["unreachable-next-hop"]


def test_duplicate_route_destination():
    topology = (
        build_pair()
        .route("a", "default", "10.0.0.2")
        .route("a", "0.0.0.0/0", "10.0.0.2")
        .build()
    )

    assert validate(topology).codes() == ["duplicate-route"]


def test_route_ip_version_mismatch():
    topology = build_pair().route("a", "fd00::/64", "10.0.0.2").build()

    assert validate(topology).codes() == ["invalid-address"]


def test_unknown_offload_feature():
    topology = (
        TopologyBuilder()
        .namespace("a")
        .link("a-veth", "b-veth", left_offload={"warp": False})
        .assign("a-veth", "a")
        .assign("b-veth", "a")
        .build()
    )

    assert validate(topology).codes() == ["invalid-offload"]


def test_interface_name_length_limit():
    topology = (
        TopologyBuilder()
        .namespace("a")
        .link("x" * 16, "lo")
        .assign("x" * 16, "a")
        .assign("lo", "a")
        .build()
    )

    assert validate(topology).codes() == ["invalid-interface-name", "invalid-interface-name"]


def test_duplicate_firewall_rule():
    topology = build_pair().suppress_resets("a").suppress_resets("a").build()

    assert validate(topology).codes() == ["duplicate-firewall-rule"]
