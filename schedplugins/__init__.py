"""Scheduling plugins: allocatable scoring, NUMA topology matching and pod-group coscheduling."""

__version__ = "0.1.0"

__all__ = [
    "framework",
    "allocatable",
    "topology_helpers",
    "strategies",
    "topology",
    "podgroups",
    "coscheduling",
]