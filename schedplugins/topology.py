"""Filter and score plugin that aligns pods with the NUMA topology of nodes."""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping

from .allocatable import ResourceSpec
from .framework import (
    CPU,
    HUGEPAGES_PREFIX,
    MAX_NODE_SCORE,
    MEMORY,
    Code,
    NodeInfo,
    Pod,
    QOSClass,
    Quantity,
    Status,
    pod_effective_request,
    pod_qos,
)
from .strategies import ScoreStrategy, ScoringStrategyType, get_scoring_strategy_function
from .topology_helpers import (
    MAX_NUMA_ID,
    NodeResourceTopology,
    NUMANode,
    Zone,
    create_numa_node_list,
)

log = logging.getLogger(__name__)

TOPOLOGY_MATCH_NAME = "NodeResourceTopologyMatch"

_ALL_NUMA_IDS = frozenset(range(MAX_NUMA_ID + 1))


class TopologyManagerPolicy(str, Enum):
    SINGLE_NUMA_NODE_POD_LEVEL = "SingleNUMANodePodLevel"
    SINGLE_NUMA_NODE_CONTAINER_LEVEL = "SingleNUMANodeContainerLevel"


def resource_found_on_node(resource: str, quantity: Quantity, node_info: NodeInfo) -> bool:
    """Whether the node itself offers the resource in at least the given quantity."""
    available = node_info.allocatable_resource_list().get(resource)
    return available is not None and available >= quantity


def is_numa_node_suitable(
    qos: QOSClass, resource: str, quantity: Quantity, numa_quantity: Quantity | None
) -> bool:
    """Whether a NUMA node may host the requested quantity of a resource."""
    if qos is not QOSClass.GUARANTEED:
        if resource in (MEMORY, CPU) or resource.startswith(HUGEPAGES_PREFIX):
            return True
    if quantity.is_zero():
        return True
    return (numa_quantity or Quantity()) >= quantity


def res_match_numa_nodes(
    numa_nodes: Iterable[NUMANode],
    resources: Mapping[str, Quantity],
    qos: QOSClass,
    node_info: NodeInfo,
) -> bool:
    """True when no single NUMA node can satisfy all the resources together."""
    numa_nodes = list(numa_nodes)
    candidates = set(_ALL_NUMA_IDS)
    for resource, quantity in resources.items():
        fitting = set()
        for numa_node in numa_nodes:
            numa_quantity = numa_node.resources.get(resource)
            if (
                numa_quantity is None
                and not resource_found_on_node(resource, quantity, node_info)
                and not quantity.is_zero()
            ):
                continue
            if not is_numa_node_suitable(qos, resource, quantity, numa_quantity):
                continue
            fitting.add(numa_node.numa_id)
        candidates &= fitting
        if not candidates:
            return True
    return not candidates


def score_for_each_numa_node(
    requested: Mapping[str, Quantity],
    numa_list: Iterable[NUMANode],
    strategy: ScoreStrategy,
    weights: Mapping[str, int],
) -> int:
    """The lowest non-zero score over the NUMA nodes, or 0 when none fits."""
    min_score = 0
    numa_scores: dict[int, int] = {}
    for numa in numa_list:
        numa_score = strategy(requested, numa.resources, weights)
        if min_score == 0 or (numa_score != 0 and numa_score < min_score):
            min_score = numa_score
        numa_scores[numa.numa_id] = numa_score
    log.debug("Score for NUMA nodes %s, node score %d", numa_scores, min_score)
    return min_score


def _single_numa_container_level_filter(pod: Pod, zones: list[Zone], node_info: NodeInfo) -> Status:
    nodes = create_numa_node_list(zones)
    qos = pod_qos(pod)
    for container in [*pod.init_containers, *pod.containers]:
        if res_match_numa_nodes(nodes, container.requests, qos, node_info):
            return Status(Code.UNSCHEDULABLE, f"cannot align container: {container.name}")
    return Status()


def _single_numa_pod_level_filter(pod: Pod, zones: list[Zone], node_info: NodeInfo) -> Status:
    resources = pod_effective_request(pod)
    if res_match_numa_nodes(create_numa_node_list(zones), resources, pod_qos(pod), node_info):
        return Status(Code.UNSCHEDULABLE, f"cannot align pod: {pod.name}")
    return Status()


def _pod_scope_score(
    pod: Pod, zones: list[Zone], strategy: ScoreStrategy, weights: Mapping[str, int]
) -> int:
    resources = pod_effective_request(pod)
    return score_for_each_numa_node(resources, create_numa_node_list(zones), strategy, weights)


def _container_scope_score(
    pod: Pod, zones: list[Zone], strategy: ScoreStrategy, weights: Mapping[str, int]
) -> int:
    containers = [*pod.init_containers, *pod.containers]
    if not containers:
        return 0
    numa_nodes = create_numa_node_list(zones)
    scores = [
        float(score_for_each_numa_node(container.requests, numa_nodes, strategy, weights))
        for container in containers
    ]
    return int(statistics.fmean(scores))


@dataclass(frozen=True)
class _ScopeHandler:
    filter: Callable[[Pod, list[Zone], NodeInfo], Status]
    score: Callable[[Pod, list[Zone], ScoreStrategy, Mapping[str, int]], int]


_POLICY_HANDLERS: dict[TopologyManagerPolicy, _ScopeHandler] = {
    TopologyManagerPolicy.SINGLE_NUMA_NODE_POD_LEVEL: _ScopeHandler(
        _single_numa_pod_level_filter, _pod_scope_score
    ),
    TopologyManagerPolicy.SINGLE_NUMA_NODE_CONTAINER_LEVEL: _ScopeHandler(
        _single_numa_container_level_filter, _container_scope_score
    ),
}


def _handler_for(policy_name: str) -> _ScopeHandler | None:
    try:
        return _POLICY_HANDLERS[TopologyManagerPolicy(policy_name)]
    except ValueError:
        log.debug("Policy handler not found: %s", policy_name)
        return None


class TopologyMatch:
    """A simplified topology manager admit check used for filtering and scoring nodes."""

    name = TOPOLOGY_MATCH_NAME

    def __init__(
        self,
        topologies: Iterable[NodeResourceTopology] = (),
        scoring_strategy: ScoringStrategyType | str = ScoringStrategyType.LEAST_ALLOCATED,
        resources: Iterable[ResourceSpec] = (),
    ) -> None:
        self._topologies = {topology.name: topology for topology in topologies}
        self.scorer = get_scoring_strategy_function(scoring_strategy)
        self.resource_to_weight = {spec.name: spec.weight for spec in resources}

    def filter(self, pod: Pod, node_info: NodeInfo) -> Status:
        """Reject the node when a single NUMA node cannot host the pod as its policy demands."""
        if node_info.node is None:
            return Status(Code.ERROR, "node not found")
        if pod_qos(pod) is QOSClass.BEST_EFFORT:
            return Status()
        topology = self._topologies.get(node_info.node.name)
        if topology is None:
            return Status()
        for policy_name in topology.topology_policies:
            handler = _handler_for(policy_name)
            if handler is None:
                continue
            status = handler.filter(pod, topology.zones, node_info)
            if not status.is_success():
                return status
        return Status()

    def score(self, pod: Pod, node_name: str) -> int:
        """Score a node for a guaranteed pod by the fit of its NUMA nodes."""
        if pod_qos(pod) is not QOSClass.GUARANTEED:
            return MAX_NODE_SCORE
        topology = self._topologies.get(node_name)
        if topology is None:
            return 0
        for policy_name in topology.topology_policies:
            handler = _handler_for(policy_name)
            if handler is not None:
                return handler.score(pod, topology.zones, self.scorer, self.resource_to_weight)
        return 0