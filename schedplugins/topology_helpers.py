"""NUMA topology objects and helpers for building node and pod fixtures."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .framework import Container, Pod, Quantity, ResourceList

log = logging.getLogger(__name__)

NUMA_ZONE_TYPE = "Node"
MAX_NUMA_ID = 63

_ZONE_NAME_RE = re.compile(r"node-([+-]?\d+)")


@dataclass
class ResourceInfo:
    name: str
    capacity: Quantity = field(default_factory=Quantity)
    available: Quantity = field(default_factory=Quantity)


@dataclass
class Zone:
    name: str
    type: str = NUMA_ZONE_TYPE
    resources: list[ResourceInfo] = field(default_factory=list)


@dataclass
class NodeResourceTopology:
    """Per-node report of topology manager policies and NUMA zones."""

    name: str
    topology_policies: list[str] = field(default_factory=list)
    zones: list[Zone] = field(default_factory=list)


@dataclass
class NUMANode:
    numa_id: int
    resources: ResourceList = field(default_factory=dict)


def make_topology_res_info(name: str, capacity: str, available: str) -> ResourceInfo:
    """Build a ResourceInfo from textual quantities; raises ValueError when malformed."""
    return ResourceInfo(name=name, capacity=Quantity.parse(capacity), available=Quantity.parse(available))


def extract_resources(zone: Zone) -> ResourceList:
    """The available amount of each resource in a zone."""
    return {info.name: info.available for info in zone.resources}


def create_numa_node_list(zones: Iterable[Zone]) -> list[NUMANode]:
    """NUMA nodes from zones of type Node named node-<id>, with id in 0..63."""
    nodes: list[NUMANode] = []
    for zone in zones:
        if zone.type != NUMA_ZONE_TYPE:
            continue
        match = _ZONE_NAME_RE.match(zone.name)
        if match is None:
            log.error("Invalid zone format: %s", zone.name)
            continue
        numa_id = int(match.group(1))
        if not 0 <= numa_id <= MAX_NUMA_ID:
            log.error("Invalid NUMA id range: %d", numa_id)
            continue
        nodes.append(NUMANode(numa_id=numa_id, resources=extract_resources(zone)))
    return nodes


def make_resource_list_from_zones(zones: Iterable[Zone]) -> ResourceList:
    """Sum of the available resources over all zones."""
    result: ResourceList = {}
    for zone in zones:
        for info in zone.resources:
            result[info.name] = result.get(info.name, Quantity()) + info.available
    return result


def make_pod_by_resource_list(resources: Mapping[str, Quantity]) -> Pod:
    """A pod with one container whose requests and limits both equal the given resources."""
    return make_pod_by_resource_list_with_many_containers(resources, 1)


def make_pod_by_resource_list_with_many_containers(
    resources: Mapping[str, Quantity], container_count: int
) -> Pod:
    """A pod with container_count identical containers requesting and limited to resources."""
    return Pod(
        containers=[
            Container(requests=dict(resources), limits=dict(resources))
            for _ in range(container_count)
        ]
    )