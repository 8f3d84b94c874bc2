"""Gang-scheduling plugin: pods of a group are admitted together or not at all."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .framework import Code, Pod, Status
from .podgroups import (
    POD_GROUP_LABEL,
    PermitStatus,
    PodGroup,
    PodGroupManager,
    get_namespaced_name,
    pod_group_full_name,
)

log = logging.getLogger(__name__)

COSCHEDULING_NAME = "Coscheduling"

# Below this share of missing members, later pods may still complete the group.
_SMALL_GAP = 0.1


@dataclass
class QueuedPodInfo:
    """A pod in the scheduling queue with the time it was first tried."""

    pod: Pod
    initial_attempt_timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class WaitingPod:
    """A pod held at the permit stage until its group is complete."""

    pod: Pod
    allowed_by: set[str] = field(default_factory=set)
    rejected_by: str | None = None
    rejection_message: str = ""

    def allow(self, plugin_name: str) -> None:
        """Record that a plugin lets the pod go on to binding."""
        self.allowed_by.add(plugin_name)

    def reject(self, plugin_name: str, message: str) -> None:
        """Record that a plugin turned the pod away."""
        self.rejected_by = plugin_name
        self.rejection_message = message

    @property
    def rejected(self) -> bool:
        return self.rejected_by is not None


def _wait_time(pg: PodGroup | None, default: float) -> float:
    if pg is not None and pg.schedule_timeout_seconds:
        return float(pg.schedule_timeout_seconds)
    return default


class Coscheduling:
    """Queue sort, pre-filter, post-filter, permit, unreserve and post-bind for pod groups."""

    name = COSCHEDULING_NAME

    def __init__(
        self,
        pg_manager: PodGroupManager,
        waiting_pods: list[WaitingPod] | None = None,
        schedule_timeout: float = 0.0,
    ) -> None:
        self.pg_manager = pg_manager
        self.waiting_pods: list[WaitingPod] = waiting_pods if waiting_pods is not None else []
        self.schedule_timeout = schedule_timeout

    def less(self, info1: QueuedPodInfo, info2: QueuedPodInfo) -> bool:
        """Order by priority (higher first), then creation time, then namespaced name."""
        prio1 = info1.pod.priority_value()
        prio2 = info2.pod.priority_value()
        if prio1 != prio2:
            return prio1 > prio2
        created1 = self.pg_manager.get_creation_timestamp(info1.pod, info1.initial_attempt_timestamp)
        created2 = self.pg_manager.get_creation_timestamp(info2.pod, info2.initial_attempt_timestamp)
        if created1 == created2:
            return get_namespaced_name(info1.pod) < get_namespaced_name(info2.pod)
        return created1 < created2

    def pre_filter(self, pod: Pod) -> Status:
        """Unschedulable when the pod's group is denied, incomplete or too large for the cluster."""
        try:
            self.pg_manager.pre_filter(pod)
        except ValueError as exc:
            log.error("PreFilter failed for pod %s: %s", get_namespaced_name(pod), exc)
            return Status(Code.UNSCHEDULABLE, str(exc))
        return Status(Code.SUCCESS, "")

    def _reject_group(self, pod: Pod, pg: PodGroup, full_name: str, message: str) -> None:
        for waiting in self._group_waiting_pods(pod.namespace, pg.name):
            log.debug("Rejecting pod %s of group %s", get_namespaced_name(waiting.pod), full_name)
            waiting.reject(self.name, message)
        self.pg_manager.add_denied_pod_group(full_name)
        self.pg_manager.delete_permitted_pod_group(full_name)

    def _group_waiting_pods(self, namespace: str, group_name: str) -> Iterable[WaitingPod]:
        return [
            waiting
            for waiting in self.waiting_pods
            if waiting.pod.namespace == namespace
            and waiting.pod.labels.get(POD_GROUP_LABEL, "") == group_name
        ]

    def post_filter(self, pod: Pod) -> Status:
        """Reject the whole group when a member cannot be placed and the group is far from complete."""
        full_name, pg = self.pg_manager.get_pod_group(pod)
        if pg is None:
            log.debug("Pod %s does not belong to any group", get_namespaced_name(pod))
            return Status(Code.UNSCHEDULABLE, "can not find pod group")

        assigned = self.pg_manager.calculate_assigned_pods(pg.name, pod.namespace)
        if assigned >= pg.min_member:
            log.debug("Group %s has %d assigned pods", full_name, assigned)
            return Status(Code.UNSCHEDULABLE)

        not_assigned = (pg.min_member - assigned) / pg.min_member
        if not_assigned <= _SMALL_GAP:
            log.debug("Small gap of pods to reach the quorum of %s: %s", full_name, not_assigned)
            return Status(Code.UNSCHEDULABLE)

        self._reject_group(pod, pg, full_name, "optimistic rejection in PostFilter")
        return Status(
            Code.UNSCHEDULABLE,
            f"PodGroup {full_name} gets rejected due to Pod {pod.name} "
            "is unschedulable even after PostFilter",
        )

    def permit(
        self, pod: Pod, node_name: str, pods_to_activate: dict[str, Pod] | None = None
    ) -> tuple[Status, float]:
        """The permit verdict and how many seconds to wait for the rest of the group."""
        wait_time = self.schedule_timeout
        verdict = self.pg_manager.permit(pod)
        if verdict is PermitStatus.POD_GROUP_NOT_SPECIFIED:
            return Status(Code.SUCCESS, ""), 0.0
        if verdict is PermitStatus.POD_GROUP_NOT_FOUND:
            return Status(Code.UNSCHEDULABLE, "PodGroup not found"), 0.0
        if verdict is PermitStatus.WAIT:
            log.info("Pod %s is waiting to be scheduled to node %s", get_namespaced_name(pod), node_name)
            _, pg = self.pg_manager.get_pod_group(pod)
            wait_time = _wait_time(pg, self.schedule_timeout)
            self.pg_manager.activate_siblings(pod, pods_to_activate)
            return Status(Code.WAIT), wait_time
        full_name = pod_group_full_name(pod)
        for waiting in self.waiting_pods:
            if pod_group_full_name(waiting.pod) == full_name:
                log.debug("Permit allows pod %s", get_namespaced_name(waiting.pod))
                waiting.allow(self.name)
        log.debug("Permit allows pod %s", get_namespaced_name(pod))
        return Status(Code.SUCCESS), 0.0

    def reserve(self, pod: Pod, node_name: str) -> Status:
        return Status()

    def unreserve(self, pod: Pod, node_name: str) -> None:
        """Reject every waiting member of the pod's group and deny the group for a while."""
        full_name, pg = self.pg_manager.get_pod_group(pod)
        if pg is None:
            return
        self._reject_group(pod, pg, full_name, "rejection in Unreserve")

    def post_bind(self, pod: Pod, node_name: str) -> None:
        """Update the group's status once a member is bound."""
        log.debug("PostBind pod %s", get_namespaced_name(pod))
        self.pg_manager.post_bind(pod, node_name)

    def _reject_pod(self, uid: str) -> None:
        for waiting in self.waiting_pods:
            if waiting.pod.uid == uid:
                waiting.reject(self.name, "")
                return