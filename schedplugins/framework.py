"""Core scheduling types: resource quantities, pods, nodes and cluster snapshots."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from fractions import Fraction
from typing import Iterable, Mapping

CPU = "cpu"
MEMORY = "memory"
PODS = "pods"
EPHEMERAL_STORAGE = "ephemeral-storage"
HUGEPAGES_PREFIX = "hugepages-"

MAX_NODE_SCORE = 100
MIN_NODE_SCORE = 0

# Requests assumed for a container that does not state cpu or memory.
DEFAULT_MILLI_CPU_REQUEST = 100
DEFAULT_MEMORY_REQUEST = 200 * 1024 * 1024

_QOS_RESOURCES = frozenset({CPU, MEMORY})

_SUFFIXES: dict[str, Fraction] = {
    "": Fraction(1),
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 1000),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
    "Ki": Fraction(2**10),
    "Mi": Fraction(2**20),
    "Gi": Fraction(2**30),
    "Ti": Fraction(2**40),
    "Pi": Fraction(2**50),
    "Ei": Fraction(2**60),
}

_QUANTITY_RE = re.compile(
    r"([+-]?)(\d+\.?\d*|\.\d+)(?:([eE][+-]?\d+)|(Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE]))?"
)


@dataclass(frozen=True, order=True)
class Quantity:
    """An exact resource amount, such as ``500m`` cpu or ``1Gi`` memory."""

    amount: Fraction = Fraction(0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", Fraction(self.amount))

    @classmethod
    def parse(cls, text: str) -> Quantity:
        """Parse the textual quantity form; raises ValueError when malformed."""
        match = _QUANTITY_RE.fullmatch(text.strip())
        if match is None:
            raise ValueError(f"invalid quantity: {text!r}")
        sign, number, exponent, suffix = match.groups()
        if number.endswith("."):
            number = number[:-1]
        amount = Fraction(number)
        if exponent:
            amount *= Fraction(10) ** int(exponent[1:])
        amount *= _SUFFIXES[suffix or ""]
        return cls(-amount if sign == "-" else amount)

    def value(self) -> int:
        """The amount as a whole number, rounded up."""
        return math.ceil(self.amount)

    def milli_value(self) -> int:
        """The amount in thousandths, rounded up."""
        return math.ceil(self.amount * 1000)

    def is_zero(self) -> bool:
        return self.amount == 0

    def __add__(self, other: Quantity) -> Quantity:
        return Quantity(self.amount + other.amount)

    def __sub__(self, other: Quantity) -> Quantity:
        return Quantity(self.amount - other.amount)

    def __neg__(self) -> Quantity:
        return Quantity(-self.amount)

    def __str__(self) -> str:
        if self.amount.denominator == 1:
            return str(self.amount.numerator)
        milli = self.amount * 1000
        if milli.denominator == 1:
            return f"{milli.numerator}m"
        return str(float(self.amount))


ResourceList = dict[str, Quantity]


class Code(IntEnum):
    SUCCESS = 0
    ERROR = 1
    UNSCHEDULABLE = 2
    UNSCHEDULABLE_AND_UNRESOLVABLE = 3
    WAIT = 4
    SKIP = 5


@dataclass
class Status:
    """Outcome of a plugin at an extension point."""

    code: Code = Code.SUCCESS
    message: str = ""

    def is_success(self) -> bool:
        return self.code is Code.SUCCESS


class QOSClass(Enum):
    GUARANTEED = "Guaranteed"
    BURSTABLE = "Burstable"
    BEST_EFFORT = "BestEffort"


@dataclass
class Container:
    name: str = ""
    requests: ResourceList = field(default_factory=dict)
    limits: ResourceList = field(default_factory=dict)


@dataclass
class Pod:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    priority: int | None = None
    node_name: str = ""
    containers: list[Container] = field(default_factory=list)
    init_containers: list[Container] = field(default_factory=list)
    overhead: ResourceList | None = None
    creation_timestamp: datetime | None = None

    def priority_value(self) -> int:
        """The pod's priority, zero when none is set."""
        return self.priority if self.priority is not None else 0


def _add_into(total: ResourceList, resources: Mapping[str, Quantity]) -> None:
    for name, quantity in resources.items():
        total[name] = total.get(name, Quantity()) + quantity


def pod_qos(pod: Pod) -> QOSClass:
    """The quality-of-service class of a pod, judged on cpu and memory."""
    requests: ResourceList = {}
    limits: ResourceList = {}
    guaranteed = True
    for container in [*pod.containers, *pod.init_containers]:
        for name, quantity in container.requests.items():
            if name in _QOS_RESOURCES and quantity.amount > 0:
                _add_into(requests, {name: quantity})
        found = set()
        for name, quantity in container.limits.items():
            if name in _QOS_RESOURCES and quantity.amount > 0:
                found.add(name)
                _add_into(limits, {name: quantity})
        if not _QOS_RESOURCES <= found:
            guaranteed = False
    if not requests and not limits:
        return QOSClass.BEST_EFFORT
    if guaranteed and any(limits.get(name) != req for name, req in requests.items()):
        guaranteed = False
    if guaranteed and len(requests) == len(limits):
        return QOSClass.GUARANTEED
    return QOSClass.BURSTABLE


def pod_effective_request(pod: Pod) -> ResourceList:
    """max(sum of container requests, any init container request) plus overhead."""
    result: ResourceList = {}
    for container in pod.containers:
        _add_into(result, container.requests)
    for container in pod.init_containers:
        for name, quantity in container.requests.items():
            if name not in result or quantity > result[name]:
                result[name] = quantity
    if pod.overhead:
        _add_into(result, pod.overhead)
    return result


def is_scalar_resource_name(name: str) -> bool:
    """Whether a resource is tracked as a scalar (extended, hugepages, volumes)."""
    prefixed_native = "kubernetes.io/" in name
    native = "/" not in name or prefixed_native
    extended = not native and not name.startswith("requests.")
    return (
        extended
        or name.startswith(HUGEPAGES_PREFIX)
        or prefixed_native
        or name.startswith("attachable-volumes-")
    )


@dataclass
class Resource:
    """Aggregated resource amounts in scheduler units (millicores, bytes)."""

    milli_cpu: int = 0
    memory: int = 0
    ephemeral_storage: int = 0
    allowed_pod_number: int = 0
    scalar_resources: dict[str, int] = field(default_factory=dict)

    @classmethod
    def _from_resource_list(cls, resources: Mapping[str, Quantity]) -> Resource:
        result = cls()
        result._add_resource_list(resources)
        return result

    def _add_resource_list(self, resources: Mapping[str, Quantity]) -> None:
        for name, quantity in resources.items():
            if name == CPU:
                self.milli_cpu += quantity.milli_value()
            elif name == MEMORY:
                self.memory += quantity.value()
            elif name == PODS:
                self.allowed_pod_number += quantity.value()
            elif name == EPHEMERAL_STORAGE:
                self.ephemeral_storage += quantity.value()
            elif is_scalar_resource_name(name):
                self.scalar_resources[name] = self.scalar_resources.get(name, 0) + quantity.value()

    def _set_max(self, resources: Mapping[str, Quantity]) -> None:
        for name, quantity in resources.items():
            if name == CPU:
                self.milli_cpu = max(self.milli_cpu, quantity.milli_value())
            elif name == MEMORY:
                self.memory = max(self.memory, quantity.value())
            elif name == EPHEMERAL_STORAGE:
                self.ephemeral_storage = max(self.ephemeral_storage, quantity.value())
            elif is_scalar_resource_name(name):
                self.scalar_resources[name] = max(self.scalar_resources.get(name, 0), quantity.value())

    def _combine(self, other: Resource, sign: int) -> None:
        self.milli_cpu += sign * other.milli_cpu
        self.memory += sign * other.memory
        self.ephemeral_storage += sign * other.ephemeral_storage
        for name, value in other.scalar_resources.items():
            self.scalar_resources[name] = self.scalar_resources.get(name, 0) + sign * value

    def _copy(self) -> Resource:
        return replace(self, scalar_resources=dict(self.scalar_resources))

    def _to_resource_list(self) -> ResourceList:
        result: ResourceList = {
            CPU: Quantity(Fraction(self.milli_cpu, 1000)),
            MEMORY: Quantity(self.memory),
            PODS: Quantity(self.allowed_pod_number),
            EPHEMERAL_STORAGE: Quantity(self.ephemeral_storage),
        }
        for name, value in self.scalar_resources.items():
            result[name] = Quantity(value)
        return result


@dataclass
class Node:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    capacity: ResourceList = field(default_factory=dict)
    allocatable: ResourceList = field(default_factory=dict)


def _get_request_for_resource(resource: str, requests: Mapping[str, Quantity], non_zero: bool) -> int:
    if resource == CPU:
        if resource not in requests:
            return DEFAULT_MILLI_CPU_REQUEST if non_zero else 0
        return requests[resource].milli_value()
    if resource == MEMORY:
        if resource not in requests:
            return DEFAULT_MEMORY_REQUEST if non_zero else 0
        return requests[resource].value()
    quantity = requests.get(resource)
    return quantity.value() if quantity is not None else 0


def _calculate_resource(pod: Pod) -> tuple[Resource, int, int]:
    result = Resource()
    non_zero_cpu = 0
    non_zero_memory = 0
    for container in pod.containers:
        result._add_resource_list(container.requests)
        non_zero_cpu += _get_request_for_resource(CPU, container.requests, True)
        non_zero_memory += _get_request_for_resource(MEMORY, container.requests, True)
    for container in pod.init_containers:
        result._set_max(container.requests)
        non_zero_cpu = max(non_zero_cpu, _get_request_for_resource(CPU, container.requests, True))
        non_zero_memory = max(non_zero_memory, _get_request_for_resource(MEMORY, container.requests, True))
    if pod.overhead:
        result._add_resource_list(pod.overhead)
        if CPU in pod.overhead:
            non_zero_cpu += pod.overhead[CPU].milli_value()
        if MEMORY in pod.overhead:
            non_zero_memory += pod.overhead[MEMORY].value()
    return result, non_zero_cpu, non_zero_memory


class NodeInfo:
    """A node together with the pods placed on it and their aggregate requests."""

    def __init__(self, node: Node | None = None, pods: Iterable[Pod] = ()) -> None:
        self.node = node
        self.pods: list[Pod] = []
        self.allocatable = Resource._from_resource_list(node.allocatable) if node else Resource()
        self.requested = Resource()
        self.non_zero_requested = Resource()
        for pod in pods:
            self.add_pod(pod)

    def add_pod(self, pod: Pod) -> None:
        resource, non_zero_cpu, non_zero_memory = _calculate_resource(pod)
        self.requested._combine(resource, 1)
        self.non_zero_requested.milli_cpu += non_zero_cpu
        self.non_zero_requested.memory += non_zero_memory
        self.pods.append(pod)

    def remove_pod(self, pod: Pod) -> None:
        """Remove a pod; raises LookupError if it is not on this node."""
        for index, existing in enumerate(self.pods):
            if existing is pod or (pod.uid and existing.uid == pod.uid):
                del self.pods[index]
                resource, non_zero_cpu, non_zero_memory = _calculate_resource(existing)
                self.requested._combine(resource, -1)
                self.non_zero_requested.milli_cpu -= non_zero_cpu
                self.non_zero_requested.memory -= non_zero_memory
                return
        node_name = self.node.name if self.node else ""
        raise LookupError(f"no corresponding pod {pod.name} in pods of node {node_name}")

    def clone(self) -> NodeInfo:
        """A copy sharing pod objects but with independent bookkeeping."""
        copy = NodeInfo.__new__(NodeInfo)
        copy.node = self.node
        copy.pods = list(self.pods)
        copy.allocatable = self.allocatable._copy()
        copy.requested = self.requested._copy()
        copy.non_zero_requested = self.non_zero_requested._copy()
        return copy

    def allocatable_resource_list(self) -> ResourceList:
        return self.allocatable._to_resource_list()


@dataclass
class NodeScore:
    name: str
    score: int


class Snapshot:
    """A point-in-time view of the cluster's nodes."""

    def __init__(self, node_infos: Iterable[NodeInfo] = ()) -> None:
        self._node_infos = list(node_infos)
        self._by_name = {info.node.name: info for info in self._node_infos if info.node is not None}

    def get(self, node_name: str) -> NodeInfo:
        try:
            return self._by_name[node_name]
        except KeyError:
            raise KeyError(f"nodeinfo not found for node name {node_name!r}") from None

    def list(self) -> list[NodeInfo]:
        return list(self._node_infos)


def calculate_pod_resource_request(pod: Pod, resource: str) -> int:
    """Total non-zero request: max(sum of containers, any init container) plus overhead."""
    request = sum(_get_request_for_resource(resource, c.requests, True) for c in pod.containers)
    for container in pod.init_containers:
        request = max(request, _get_request_for_resource(resource, container.requests, True))
    if pod.overhead and resource in pod.overhead:
        request += pod.overhead[resource].value()
    return request


def calculate_resource_allocatable_request(node_info: NodeInfo, pod: Pod, resource: str) -> tuple[int, int]:
    """The node's allocatable amount and the requested amount including the pod."""
    pod_request = calculate_pod_resource_request(pod, resource)
    if resource == CPU:
        return node_info.allocatable.milli_cpu, node_info.non_zero_requested.milli_cpu + pod_request
    if resource == MEMORY:
        return node_info.allocatable.memory, node_info.non_zero_requested.memory + pod_request
    if resource == EPHEMERAL_STORAGE:
        return node_info.allocatable.ephemeral_storage, node_info.requested.ephemeral_storage + pod_request
    if is_scalar_resource_name(resource):
        return (
            node_info.allocatable.scalar_resources.get(resource, 0),
            node_info.requested.scalar_resources.get(resource, 0) + pod_request,
        )
    return 0, 0