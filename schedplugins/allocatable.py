"""Score plugin that favours nodes by their weighted allocatable resources."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .framework import (
    CPU,
    MAX_NODE_SCORE,
    MEMORY,
    MIN_NODE_SCORE,
    NodeScore,
    Pod,
    Snapshot,
    calculate_resource_allocatable_request,
)

ALLOCATABLE_NAME = "NodeResourcesAllocatable"

# A millicore weighs the same as one MiB of memory.
DEFAULT_RESOURCES_TO_WEIGHT: dict[str, int] = {MEMORY: 1, CPU: 1 << 20}


class Mode(str, Enum):
    LEAST = "Least"
    MOST = "Most"


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    weight: int


@dataclass
class AllocatableArgs:
    mode: str = ""
    resources: list[ResourceSpec] = field(default_factory=list)


def validate_resources(resources: list[ResourceSpec]) -> None:
    """Raise ValueError unless every weight is positive."""
    for resource in resources:
        if resource.weight <= 0:
            raise ValueError(
                f"resource Weight of {resource.name} should be a positive value, got {resource.weight}"
            )


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator < 0) == (denominator < 0) else -quotient


class Allocatable:
    """Scores nodes with least (negative) or most (positive) allocatable resources."""

    name = ALLOCATABLE_NAME

    def __init__(self, snapshot: Snapshot, args: AllocatableArgs | None = None) -> None:
        mode = Mode.LEAST
        weights = dict(DEFAULT_RESOURCES_TO_WEIGHT)
        if args is not None:
            if not isinstance(args, AllocatableArgs):
                raise TypeError(
                    f"want args to be of type NodeResourcesAllocatableArgs, got {type(args).__name__}"
                )
            if args.mode:
                try:
                    mode = Mode(args.mode)
                except ValueError:
                    raise ValueError(f"invalid mode, got {args.mode}") from None
            if args.resources:
                validate_resources(args.resources)
                weights = {resource.name: resource.weight for resource in args.resources}
        self.snapshot = snapshot
        self.mode = mode
        self.resource_to_weight = weights

    def _mode_score(self, capacity: int) -> int:
        return -capacity if self.mode is Mode.LEAST else capacity

    def score(self, pod: Pod, node_name: str) -> int:
        """Weighted average of the node's allocatable resources, signed by mode."""
        try:
            node_info = self.snapshot.get(node_name)
        except KeyError as exc:
            raise LookupError(f"getting node {node_name!r} from Snapshot: {exc.args[0]}") from exc
        if node_info.node is None:
            raise ValueError("node not found")
        node_score = 0
        weight_sum = 0
        for resource, weight in self.resource_to_weight.items():
            allocatable, _ = calculate_resource_allocatable_request(node_info, pod, resource)
            node_score += self._mode_score(allocatable) * weight
            weight_sum += weight
        return _trunc_div(node_score, weight_sum)

    def normalize_score(self, scores: list[NodeScore]) -> list[NodeScore]:
        """Rescale scores linearly onto the framework's node score range."""
        if not scores:
            return []
        highest = max(s.score for s in scores)
        lowest = min(s.score for s in scores)
        old_range = highest - lowest
        new_range = MAX_NODE_SCORE - MIN_NODE_SCORE
        return [
            NodeScore(
                s.name,
                MIN_NODE_SCORE
                if old_range == 0
                else (s.score - lowest) * new_range // old_range + MIN_NODE_SCORE,
            )
            for s in scores
        ]