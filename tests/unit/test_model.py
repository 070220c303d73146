from netns_topology.model import (
    RST_MATCH,
    FirewallRule,
    Route,
    TopologyBuilder,
)


def test_builder_keeps_declaration_order(two_hosts):
    assert [ns.name for ns in two_hosts.namespaces] == ["host1", "router", "host2"]
    assert [ep.name for ep in two_hosts.endpoints()] == [
        "host1-veth1",
        "router-veth1",
        "host2-veth1",
        "router-veth2",
    ]
    assert two_hosts.forwarding_flags() == {"router": True}


def test_topology_lookups(two_hosts):
    assert two_hosts.owner_of("router-veth2") == "router"
    assert [ep.name for ep in two_hosts.endpoints_in("router")] == ["router-veth1", "router-veth2"]
    assert two_hosts.link_of("router-veth1").name == "host1-veth1<->router-veth1"
    assert two_hosts.endpoint("host1-veth1").offload_settings() == {"tx": False}
    assert [a.cidr for a in two_hosts.addresses_in("router")] == ["10.0.0.254/24", "10.0.1.254/24"]
    assert two_hosts.namespace("missing") is None


def test_default_route_alias():
    route = Route(namespace="host1", destination="default", via="10.0.0.254")

    assert route.prefix == "0.0.0.0/0"
    assert route.is_default

    v6 = Route(namespace="host1", destination="default", via="fd00::1")
    assert v6.prefix == "::/0"


def test_route_prefix_is_normalised():
    route = Route(namespace="host1", destination="10.0.1.7/24", via="10.0.0.254")

    assert route.prefix == "10.0.1.0/24"
    assert not route.is_default


def test_suppress_resets_adds_rst_drop_rule():
    topology = TopologyBuilder().namespace("host1").suppress_resets("host1").build()

    (rule,) = topology.firewall_rules
    assert rule == FirewallRule.drop_outbound_resets("host1")
    assert rule.chain == "OUTPUT"
    assert rule.rule_spec() == [*RST_MATCH, "-j", "DROP"]


def test_address_properties(two_hosts):
    address = two_hosts.addresses[0]

    assert str(address.ip) == "10.0.0.1"
    assert address.prefixlen == 24
    assert str(address.network) == "10.0.0.0/24"
