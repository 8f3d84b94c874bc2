"""Per-NUMA-zone scoring strategies: least, most and balanced allocation."""

from __future__ import annotations

import statistics
from enum import Enum
from typing import Callable, Mapping

from .framework import MAX_NODE_SCORE, Quantity

DEFAULT_WEIGHT = 1

ScoreStrategy = Callable[[Mapping[str, Quantity], Mapping[str, Quantity], Mapping[str, int]], int]


class ScoringStrategyType(str, Enum):
    MOST_ALLOCATED = "MostAllocated"
    LEAST_ALLOCATED = "LeastAllocated"
    BALANCED_ALLOCATION = "BalancedAllocation"


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator < 0) == (denominator < 0) else -quotient


def resource_weight(weights: Mapping[str, int], name: str) -> int:
    """The weight of a resource, or the default weight when unset or below one."""
    weight = weights.get(name)
    if weight is None or weight < 1:
        return DEFAULT_WEIGHT
    return weight


def fraction_of_capacity(requested: Quantity, capacity: Quantity) -> float:
    """requested / capacity, or 1 when the capacity is zero."""
    if capacity.value() == 0:
        return 1.0
    return requested.value() / capacity.value()


def balanced_allocation_score_strategy(
    requested: Mapping[str, Quantity],
    allocatable: Mapping[str, Quantity],
    weights: Mapping[str, int],
) -> int:
    """Higher score for a lower variance of requested fractions; 0 if anything overflows."""
    fractions = []
    for name, quantity in requested.items():
        fraction = fraction_of_capacity(quantity, allocatable.get(name, Quantity()))
        if fraction > 1:
            return 0
        fractions.append(fraction)
    variance = statistics.variance(fractions) if len(fractions) >= 2 else 0.0
    return int((1 - variance) * MAX_NODE_SCORE)


def least_allocated_score(requested: Quantity, numa_capacity: Quantity) -> int:
    """0..MAX_NODE_SCORE, higher when less of the zone would be used."""
    if numa_capacity.is_zero() or requested > numa_capacity:
        return 0
    capacity = numa_capacity.value()
    return _trunc_div((capacity - requested.value()) * MAX_NODE_SCORE, capacity)


def most_allocated_score(requested: Quantity, numa_capacity: Quantity) -> int:
    """0..MAX_NODE_SCORE, higher when more of the zone would be used."""
    if numa_capacity.is_zero() or requested > numa_capacity:
        return 0
    return _trunc_div(requested.value() * MAX_NODE_SCORE, numa_capacity.value())


def _weighted_strategy(
    per_resource: Callable[[Quantity, Quantity], int],
    requested: Mapping[str, Quantity],
    allocatable: Mapping[str, Quantity],
    weights: Mapping[str, int],
) -> int:
    zone_score = 0
    weight_sum = 0
    for name, quantity in requested.items():
        weight = resource_weight(weights, name)
        zone_score += per_resource(quantity, allocatable.get(name, Quantity())) * weight
        weight_sum += weight
    return _trunc_div(zone_score, weight_sum)


def least_allocated_score_strategy(
    requested: Mapping[str, Quantity],
    allocatable: Mapping[str, Quantity],
    weights: Mapping[str, int],
) -> int:
    """Weighted average of least-allocated scores over the requested resources."""
    return _weighted_strategy(least_allocated_score, requested, allocatable, weights)


def most_allocated_score_strategy(
    requested: Mapping[str, Quantity],
    allocatable: Mapping[str, Quantity],
    weights: Mapping[str, int],
) -> int:
    """Weighted average of most-allocated scores over the requested resources."""
    return _weighted_strategy(most_allocated_score, requested, allocatable, weights)


_STRATEGIES: dict[ScoringStrategyType, ScoreStrategy] = {
    ScoringStrategyType.MOST_ALLOCATED: most_allocated_score_strategy,
    ScoringStrategyType.LEAST_ALLOCATED: least_allocated_score_strategy,
    ScoringStrategyType.BALANCED_ALLOCATION: balanced_allocation_score_strategy,
}


def get_scoring_strategy_function(strategy: ScoringStrategyType | str) -> ScoreStrategy:
    """The scoring function for a strategy; raises ValueError for unknown ones."""
    try:
        return _STRATEGIES[ScoringStrategyType(strategy)]
    except ValueError:
        raise ValueError("illegal scoring strategy found") from None