import pytest

from schedplugins.allocatable import ResourceSpec
from schedplugins.framework import (
    CPU,
    MAX_NODE_SCORE,
    MEMORY,
    Code,
    Container,
    Node,
    NodeInfo,
    Pod,
    QOSClass,
    Quantity,
    Status,
)
from schedplugins.strategies import ScoringStrategyType
from schedplugins.topology import (
    TopologyManagerPolicy,
    TopologyMatch,
    is_numa_node_suitable,
    res_match_numa_nodes,
    resource_found_on_node,
    score_for_each_numa_node,
)
from schedplugins.topology_helpers import (
    NodeResourceTopology,
    NUMANode,
    Zone,
    make_pod_by_resource_list,
    make_pod_by_resource_list_with_many_containers,
    make_resource_list_from_zones,
    make_topology_res_info as res,
)

HUGEPAGES_2MI = "hugepages-2Mi"
NIC = "vendor/nic1"
NOT_EXISTING_NIC = "vendor/notexistingnic"
CONTAINER_NAME = "container1"

CONTAINER = TopologyManagerPolicy.SINGLE_NUMA_NODE_CONTAINER_LEVEL.value
POD = TopologyManagerPolicy.SINGLE_NUMA_NODE_POD_LEVEL.value


def q(text):
    return Quantity.parse(text)


def _filter_topologies():
    return [
        NodeResourceTopology("node1", [CONTAINER], [
            Zone("node-0", "Node", [res(CPU, "20", "4"), res(MEMORY, "8Gi", "8Gi"), res(NIC, "30", "10")]),
            Zone("node-1", "Node", [res(CPU, "30", "8"), res(MEMORY, "8Gi", "8Gi"), res(NIC, "30", "10")]),
        ]),
        NodeResourceTopology("node2", [CONTAINER], [
            Zone("node-0", "Node", [res(CPU, "20", "2"), res(MEMORY, "8Gi", "4Gi"),
                                    res(HUGEPAGES_2MI, "128Mi", "128Mi"), res(NIC, "30", "5")]),
            Zone("node-1", "Node", [res(CPU, "30", "4"), res(MEMORY, "8Gi", "4Gi"),
                                    res(HUGEPAGES_2MI, "128Mi", "128Mi"), res(NIC, "30", "2")]),
        ]),
        NodeResourceTopology("node3", [POD], [
            Zone("node-0", "Node", [res(CPU, "20", "2"), res(MEMORY, "8Gi", "4Gi"), res(NIC, "30", "5")]),
            Zone("node-1", "Node", [res(CPU, "30", "4"), res(MEMORY, "8Gi", "4Gi"), res(NIC, "30", "2")]),
        ]),
        NodeResourceTopology("badly_formed_node", [POD], [
            Zone("node-0", "Node", [res(CPU, "20", "2"), res(MEMORY, "8Gi", "4Gi"), res(NIC, "30", "5")]),
            Zone("node-75", "Node", [res(CPU, "30", "4"), res(MEMORY, "8Gi", "4Gi"), res(NIC, "30", "2")]),
        ]),
    ]


def _node_for(topology):
    resources = make_resource_list_from_zones(topology.zones)
    return Node(name=topology.name, capacity=dict(resources), allocatable=dict(resources))


def _available(topology, zone_index, name):
    for info in topology.zones[zone_index].resources:
        if info.name == name:
            return info.available
    return Quantity()


FILTER_TOPOLOGIES = _filter_topologies()
FILTER_NODES = [_node_for(t) for t in FILTER_TOPOLOGIES]


def _cases():
    t = FILTER_TOPOLOGIES
    ok = Status()
    no_container = Status(Code.UNSCHEDULABLE, f"cannot align container: {CONTAINER_NAME}")
    no_pod = Status(Code.UNSCHEDULABLE, "cannot align pod: ")
    return [
        ("best effort fit", Pod(), 0, ok),
        ("guaranteed minimal fit", make_pod_by_resource_list({CPU: q("2"), MEMORY: q("2Gi")}), 0, ok),
        ("guaranteed saturating zone fit", make_pod_by_resource_list(
            {CPU: _available(t[0], 1, CPU), MEMORY: _available(t[0], 1, MEMORY)}), 0, ok),
        ("guaranteed zero unavailable fit", make_pod_by_resource_list(
            {CPU: q("2"), MEMORY: q("2Gi"), HUGEPAGES_2MI: q("0"), NIC: q("3")}), 0, ok),
        ("guaranteed fit", make_pod_by_resource_list({CPU: q("2"), MEMORY: q("2Gi"), NIC: q("3")}), 1, ok),
        ("guaranteed hugepages fit", make_pod_by_resource_list(
            {CPU: q("2"), MEMORY: q("2Gi"), HUGEPAGES_2MI: q("64Mi"), NIC: q("3")}), 1, ok),
        ("burstable fit", make_pod_by_resource_list({CPU: q("4"), NIC: q("3")}), 1, ok),
        ("burstable cpu exceeded still fits", make_pod_by_resource_list({CPU: q("14"), NIC: q("3")}), 1, ok),
        ("burstable nic exceeded", make_pod_by_resource_list({CPU: q("4"), NIC: q("11")}), 1, no_container),
        ("guaranteed hugepages no fit", make_pod_by_resource_list(
            {CPU: q("2"), MEMORY: q("2Gi"), HUGEPAGES_2MI: q("256Mi"), NIC: q("3")}), 1, no_container),
        ("guaranteed no fit", make_pod_by_resource_list(
            {CPU: q("9"), MEMORY: q("1Gi"), NIC: q("3")}), 0, no_container),
        ("guaranteed zero not existing nic fit", make_pod_by_resource_list(
            {CPU: q("2"), MEMORY: q("1Gi"), NOT_EXISTING_NIC: q("0")}), 0, ok),
        ("pod scope no fit", make_pod_by_resource_list_with_many_containers(
            {CPU: q("3"), MEMORY: q("1Gi"), NOT_EXISTING_NIC: q("0")}, 3), 2, no_pod),
        ("pod scope minimal fit", make_pod_by_resource_list({CPU: q("1"), MEMORY: q("1Gi")}), 2, ok),
        ("pod scope saturating zone fit", make_pod_by_resource_list(
            {CPU: _available(t[3], 0, CPU), MEMORY: _available(t[3], 0, MEMORY)}), 3, ok),
        ("pod scope fit", make_pod_by_resource_list_with_many_containers(
            {CPU: q("1"), MEMORY: q("1Gi"), NOT_EXISTING_NIC: q("0")}, 3), 2, ok),
        ("pod scope invalid node", make_pod_by_resource_list_with_many_containers(
            {CPU: q("1"), MEMORY: q("1Gi"), NOT_EXISTING_NIC: q("0")}, 3), 3, no_pod),
    ]


@pytest.mark.parametrize("name,pod,node_index,want", _cases(), ids=[c[0] for c in _cases()])
def test_filter(name, pod, node_index, want):
    tm = TopologyMatch(FILTER_TOPOLOGIES)
    if pod.containers:
        pod.containers[0].name = CONTAINER_NAME
    got = tm.filter(pod, NodeInfo(FILTER_NODES[node_index]))
    assert got == want


def test_filter_without_node_is_error():
    got = TopologyMatch(FILTER_TOPOLOGIES).filter(Pod(), NodeInfo())
    assert got == Status(Code.ERROR, "node not found")


def test_filter_node_without_topology_passes():
    pod = make_pod_by_resource_list({CPU: q("100"), MEMORY: q("100Gi")})
    got = TopologyMatch(FILTER_TOPOLOGIES).filter(pod, NodeInfo(Node(name="unknown")))
    assert got.is_success()


def test_filter_unknown_policy_ignored():
    topology = NodeResourceTopology("n", ["none"], [Zone("node-0", "Node", [res(CPU, "1", "1")])])
    pod = make_pod_by_resource_list({CPU: q("8"), MEMORY: q("1Gi")})
    got = TopologyMatch([topology]).filter(pod, NodeInfo(_node_for(topology)))
    assert got.is_success()


def _score_topologies():
    def topo(name, cpu, mem):
        return NodeResourceTopology(name, [CONTAINER], [
            Zone("node-0", "Node", [res(CPU, cpu, cpu), res(MEMORY, mem, mem)]),
            Zone("node-1", "Node", [res(CPU, cpu, cpu), res(MEMORY, mem, mem)]),
        ])
    return [topo("Node1", "4", "500Mi"), topo("Node2", "2", "50Mi"), topo("Node3", "6", "60Mi")]


def _score_pod():
    return make_pod_by_resource_list({CPU: Quantity(2), MEMORY: Quantity(20 * 1024 * 1024)})


@pytest.mark.parametrize(
    "strategy,want_node,want_score",
    [
        (ScoringStrategyType.MOST_ALLOCATED, "Node2", 70),
        (ScoringStrategyType.BALANCED_ALLOCATION, "Node3", 100),
        (ScoringStrategyType.LEAST_ALLOCATED, "Node1", 73),
    ],
)
def test_score_selects_node(strategy, want_node, want_score):
    topologies = _score_topologies()
    tm = TopologyMatch(topologies, strategy)
    pod = _score_pod()
    scores = {t.name: tm.score(pod, t.name) for t in topologies}
    best = max(scores, key=scores.get)
    assert best == want_node
    assert scores[best] == want_score


def test_score_non_guaranteed_is_max():
    tm = TopologyMatch(_score_topologies())
    pod = make_pod_by_resource_list({CPU: q("2")})
    assert tm.score(pod, "Node1") == MAX_NODE_SCORE


def test_score_missing_topology_is_zero():
    assert TopologyMatch(_score_topologies()).score(_score_pod(), "absent") == 0


def test_score_weights_change_result():
    topologies = _score_topologies()
    plain = TopologyMatch(topologies, ScoringStrategyType.MOST_ALLOCATED)
    weighted = TopologyMatch(topologies, ScoringStrategyType.MOST_ALLOCATED, [ResourceSpec(CPU, 3)])
    assert weighted.score(_score_pod(), "Node2") > plain.score(_score_pod(), "Node2")


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError, match="illegal scoring strategy found"):
        TopologyMatch([], "Nope")


def test_is_numa_node_suitable_rules():
    assert is_numa_node_suitable(QOSClass.BURSTABLE, CPU, q("10"), q("1"))
    assert is_numa_node_suitable(QOSClass.BURSTABLE, HUGEPAGES_2MI, q("10"), None)
    assert not is_numa_node_suitable(QOSClass.GUARANTEED, CPU, q("10"), q("1"))
    assert is_numa_node_suitable(QOSClass.GUARANTEED, NIC, q("0"), None)
    assert is_numa_node_suitable(QOSClass.GUARANTEED, NIC, q("3"), q("3"))


def test_res_match_numa_nodes():
    nodes = [NUMANode(0, {CPU: q("2")}), NUMANode(1, {CPU: q("4")})]
    info = NodeInfo(Node(name="n", allocatable={CPU: q("6")}))
    assert not res_match_numa_nodes(nodes, {CPU: q("3")}, QOSClass.GUARANTEED, info)
    assert res_match_numa_nodes(nodes, {CPU: q("5")}, QOSClass.GUARANTEED, info)
    assert not res_match_numa_nodes(nodes, {}, QOSClass.GUARANTEED, info)


def test_resource_found_on_node():
    info = NodeInfo(Node(name="n", allocatable={NIC: q("5")}))
    assert resource_found_on_node(NIC, q("5"), info)
    assert not resource_found_on_node(NIC, q("6"), info)
    assert not resource_found_on_node(NOT_EXISTING_NIC, q("1"), info)


def test_score_for_each_numa_node_skips_zero():
    nodes = [NUMANode(0, {"s": Quantity(0)}), NUMANode(1, {"s": Quantity(40)}), NUMANode(2, {"s": Quantity(30)})]

    def strategy(requested, allocatable, weights):
        return allocatable["s"].value()

    assert score_for_each_numa_node({}, nodes, strategy, {}) == 30
    assert score_for_each_numa_node({}, [], strategy, {}) == 0


def test_container_scope_averages_init_and_regular():
    topology = NodeResourceTopology("n", [CONTAINER], [
        Zone("node-0", "Node", [res(CPU, "4", "4"), res(MEMORY, "4Gi", "4Gi")]),
    ])
    full = {CPU: q("4"), MEMORY: q("4Gi")}
    pod = Pod(
        containers=[Container(requests=dict(full), limits=dict(full))],
        init_containers=[Container(requests={CPU: q("1"), MEMORY: q("1Gi")},
                                   limits={CPU: q("1"), MEMORY: q("1Gi")})],
    )
    tm = TopologyMatch([topology], ScoringStrategyType.MOST_ALLOCATED)
    assert tm.score(pod, "n") == (100 + 25) // 2