"""Pod group bookkeeping for gang scheduling: admission checks, permits and status."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping, Protocol

from .framework import PODS, NodeInfo, Pod, Quantity, Resource, ResourceList, Snapshot

log = logging.getLogger(__name__)

POD_GROUP_LABEL = "pod-group.scheduling.sigs.k8s.io"

# Expiration used by the caches when an entry is added without its own.
_DEFAULT_CACHE_EXPIRATION = 3.0


class PermitStatus(str, Enum):
    POD_GROUP_NOT_SPECIFIED = "PodGroup not specified"
    POD_GROUP_NOT_FOUND = "PodGroup not found"
    SUCCESS = "Success"
    WAIT = "Wait"


class PodGroupPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SCHEDULING = "Scheduling"
    SCHEDULED = "Scheduled"
    UNKNOWN = "Unknown"
    FINISHED = "Finished"
    FAILED = "Failed"


@dataclass
class PodGroup:
    """A set of pods that must be scheduled together, at least min_member of them."""

    name: str
    namespace: str = ""
    min_member: int = 0
    min_resources: ResourceList | None = None
    schedule_timeout_seconds: int | None = None
    creation_timestamp: datetime | None = None
    phase: PodGroupPhase | None = None
    scheduled: int = 0
    schedule_start_time: datetime | None = None


class _Named(Protocol):
    name: str
    namespace: str


def get_namespaced_name(obj: _Named) -> str:
    """The ``<namespace>/<name>`` key of an object."""
    return f"{obj.namespace}/{obj.name}"


def pod_group_label(pod: Pod) -> str:
    """The name of the pod group a pod belongs to, or an empty string."""
    return pod.labels.get(POD_GROUP_LABEL, "")


def pod_group_full_name(pod: Pod) -> str:
    """``<namespace>/<pod group>`` for a grouped pod, an empty string otherwise."""
    name = pod_group_label(pod)
    return f"{pod.namespace}/{name}" if name else ""


class _ExpiringCache:
    """A set of keys that each vanish after their own expiration time."""

    def __init__(self, default_expiration: float = _DEFAULT_CACHE_EXPIRATION) -> None:
        self._default = default_expiration
        self._entries: dict[str, float | None] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> bool:
        deadline = self._entries.get(key, 0.0) if key in self._entries else 0.0
        if key not in self._entries:
            return False
        if deadline is None or deadline > now:
            return True
        del self._entries[key]
        return False

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self._live(key, time.monotonic())

    def add(self, key: str, expiration: float) -> None:
        """Add a key unless it is already present; 0 means the default, < 0 never expires."""
        with self._lock:
            now = time.monotonic()
            if self._live(key, now):
                return
            if expiration < 0:
                self._entries[key] = None
            else:
                self._entries[key] = now + (expiration or self._default)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


def _node_left_resource(info: NodeInfo, desired_pod_group_name: str) -> Resource:
    """What is left on a node once the pods of the desired group are taken off it."""
    node_clone = info.clone()
    for pod in info.pods:
        if pod is None or pod_group_full_name(pod) != desired_pod_group_name:
            continue
        node_clone.remove_pod(pod)
    allocatable = node_clone.allocatable
    requested = node_clone.requested
    left = Resource(
        milli_cpu=allocatable.milli_cpu - requested.milli_cpu,
        memory=allocatable.memory - requested.memory,
        ephemeral_storage=allocatable.ephemeral_storage - requested.ephemeral_storage,
        allowed_pod_number=allocatable.allowed_pod_number - len(node_clone.pods),
        scalar_resources={
            name: value - requested.scalar_resources.get(name, 0)
            for name, value in allocatable.scalar_resources.items()
        },
    )
    log.debug("Node %s left resource %s", info.node.name if info.node else "", left)
    return left


def check_cluster_resource(
    node_list: Iterable[NodeInfo | None],
    resource_request: Mapping[str, Quantity],
    desired_pod_group_name: str,
) -> None:
    """Raise ValueError naming the gap unless the nodes together cover the request."""
    remaining: ResourceList = dict(resource_request)
    for info in node_list:
        if info is None or info.node is None:
            continue
        node_resource = _node_left_resource(info, desired_pod_group_name)._to_resource_list()
        for name, quantity in list(remaining.items()):
            left = quantity - node_resource.get(name, Quantity())
            if left.amount <= 0:
                del remaining[name]
            else:
                remaining[name] = left
        if not remaining:
            return
    gap = {name: str(quantity) for name, quantity in remaining.items()}
    raise ValueError(f"resource gap: {gap}")


class PodGroupManager:
    """Tracks pod groups, their denials and permits, and the pods that belong to them."""

    def __init__(
        self,
        pod_groups: Iterable[PodGroup],
        pods: Iterable[Pod],
        snapshot: Snapshot,
        schedule_timeout: float,
        denied_pg_expiration: float,
    ) -> None:
        self._pod_groups = {(pg.namespace, pg.name): pg for pg in pod_groups}
        self.pods: list[Pod] = list(pods)
        self.snapshot = snapshot
        self.schedule_timeout = schedule_timeout
        self.denied_pg_expiration = denied_pg_expiration
        self._last_denied = _ExpiringCache()
        self._permitted = _ExpiringCache()
        self._lock = threading.Lock()

    def _group_members(self, namespace: str, group_name: str) -> list[Pod]:
        return [
            p
            for p in self.pods
            if p.namespace == namespace and p.labels.get(POD_GROUP_LABEL) == group_name
        ]

    def activate_siblings(self, pod: Pod, pods_to_activate: dict[str, Pod] | None) -> dict[str, Pod]:
        """Record the other pods of the pod's group in pods_to_activate and return them."""
        group_name = pod_group_label(pod)
        if not group_name:
            return {}
        siblings = self._group_members(pod.namespace, group_name)
        for index, sibling in enumerate(siblings):
            if sibling.uid == pod.uid:
                del siblings[index]
                break
        found = {get_namespaced_name(sibling): sibling for sibling in siblings}
        if found and pods_to_activate is not None:
            pods_to_activate.update(found)
        return found

    def pre_filter(self, pod: Pod) -> None:
        """Raise ValueError if the pod's group was recently denied, is short of pods,
        or cannot fit its minimum resources in the cluster."""
        full_name, pg = self.get_pod_group(pod)
        if pg is None:
            return
        if full_name in self._last_denied:
            raise ValueError(f"pod with pgName: {full_name} last failed in 3s, deny")
        members = self._group_members(pod.namespace, pod_group_label(pod))
        if len(members) < pg.min_member:
            raise ValueError(
                f"pre-filter pod {pod.name} cannot find enough sibling pods, "
                f"current pods number: {len(members)}, minMember of group: {pg.min_member}"
            )
        if pg.min_resources is None:
            return
        if full_name in self._permitted:
            return
        min_resources: ResourceList = dict(pg.min_resources)
        min_resources[PODS] = Quantity(pg.min_member)
        try:
            check_cluster_resource(self.snapshot.list(), min_resources, full_name)
        except ValueError:
            log.error("Failed to PreFilter pod group %s", full_name)
            self.add_denied_pod_group(full_name)
            raise
        self._permitted.add(full_name, self.schedule_timeout)

    def permit(self, pod: Pod) -> PermitStatus:
        """Whether the pod may proceed now, must wait, or has no usable group."""
        full_name, pg = self.get_pod_group(pod)
        if not full_name:
            return PermitStatus.POD_GROUP_NOT_SPECIFIED
        if pg is None:
            return PermitStatus.POD_GROUP_NOT_FOUND
        # The current pod is not yet part of the snapshot.
        assigned = self.calculate_assigned_pods(pg.name, pg.namespace)
        if assigned + 1 >= pg.min_member:
            return PermitStatus.SUCCESS
        return PermitStatus.WAIT

    def post_bind(self, pod: Pod, node_name: str) -> None:
        """Count the bound pod in its group's status and move the group's phase on."""
        with self._lock:
            full_name, pg = self.get_pod_group(pod)
            if not full_name or pg is None:
                return
            scheduled = pg.scheduled + 1
            if scheduled >= pg.min_member:
                phase = PodGroupPhase.SCHEDULED
            else:
                phase = PodGroupPhase.SCHEDULING
            if phase != pg.phase:
                if phase is PodGroupPhase.SCHEDULING and pg.schedule_start_time is None:
                    pg.schedule_start_time = datetime.now()
                pg.phase = phase
            pg.scheduled = scheduled

    def get_creation_timestamp(self, pod: Pod, ts: datetime) -> datetime:
        """The creation time of the pod's group, or ts when the pod has no known group."""
        group_name = pod_group_label(pod)
        if not group_name:
            return ts
        pg = self._pod_groups.get((pod.namespace, group_name))
        if pg is None:
            return ts
        return pg.creation_timestamp or datetime.min

    def add_denied_pod_group(self, full_name: str) -> None:
        self._last_denied.add(full_name, self.denied_pg_expiration)

    def delete_permitted_pod_group(self, full_name: str) -> None:
        self._permitted.delete(full_name)

    def get_pod_group(self, pod: Pod) -> tuple[str, PodGroup | None]:
        """The group's full name and the group itself, which is None when unknown."""
        group_name = pod_group_label(pod)
        if not group_name:
            return "", None
        full_name = f"{pod.namespace}/{group_name}"
        return full_name, self._pod_groups.get((pod.namespace, group_name))

    def calculate_assigned_pods(self, pod_group_name: str, namespace: str) -> int:
        """How many pods of the group already have a node, assumed or bound."""
        return sum(
            1
            for info in self.snapshot.list()
            for p in info.pods
            if p.labels.get(POD_GROUP_LABEL) == pod_group_name
            and p.namespace == namespace
            and p.node_name
        )