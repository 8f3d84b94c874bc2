# schedplugins

Scheduling logic for container-cluster schedulers. It uses only the standard library.
Everything works on plain in-memory objects: pods, nodes, pod groups and a snapshot of
the cluster.

## Modules

- `schedplugins.framework` holds the shared types.
  - `Quantity` is an exact resource amount. `Quantity.parse` accepts the usual forms,
    such as `"500m"`, `"2"` and `"1Gi"`.
  - `Pod`, `Container`, `Node`, `NodeInfo` and `Snapshot` describe the cluster.
    `NodeInfo` keeps the requested-resource totals of the pods placed on a node.
  - `Status` and `Code` report the outcome of a scheduling step.
  - `pod_qos` gives a pod's quality-of-service class. `pod_effective_request` gives a
    pod's combined request.
- `schedplugins.allocatable` provides `Allocatable`. It scores nodes by their weighted
  allocatable resources.
  - `Mode.LEAST` prefers the smallest nodes and `Mode.MOST` the largest.
  - The default weights count one millicore the same as one MiB of memory.
  - `normalize_score` rescales a list of `NodeScore` onto the range 0–100.
  - A weight of zero or less raises `ValueError`, and so does an unknown mode.
- `schedplugins.topology_helpers` holds the NUMA topology objects: `NodeResourceTopology`,
  `Zone`, `ResourceInfo` and `NUMANode`. It also has helpers for building them and for
  building test pods.
- `schedplugins.strategies` holds the per-zone scoring strategies `MostAllocated`,
  `LeastAllocated` and `BalancedAllocation`. `get_scoring_strategy_function` raises
  `ValueError` for an unknown strategy.
- `schedplugins.topology` provides `TopologyMatch`.
  - `filter` rejects a node when no single NUMA node can hold the pod. Under the
    `SingleNUMANodeContainerLevel` policy this is judged per container, and under
    `SingleNUMANodePodLevel` per pod.
  - `score` rates a node for Guaranteed pods with the chosen strategy.
- `schedplugins.podgroups` provides `PodGroupManager`, which tracks pod groups for gang
  scheduling.
  - `pre_filter` raises `ValueError` in three cases: the group was denied recently, it
    has fewer pods than `min_member`, or the cluster cannot hold its `min_resources`.
  - `permit` returns a `PermitStatus`.
  - `post_bind` advances the group's `phase` and its `scheduled` count.
  - Membership is set by the label `pod-group.scheduling.sigs.k8s.io`.
- `schedplugins.coscheduling` provides `Coscheduling`, which builds on the manager.
  - `less` sets the queue order: by priority, then by the group's or the pod's creation
    time, then by `<namespace>/<name>`.
  - It also provides `pre_filter`, `post_filter`, `permit`, `reserve`, `unreserve` and
    `post_bind`.
  - The pods held at the permit stage are `WaitingPod` objects, which record who allowed
    or rejected them.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Allocatable scoring:

```python
from schedplugins.framework import Container, Node, NodeInfo, NodeScore, Pod, Quantity, Snapshot
from schedplugins.allocatable import Allocatable, AllocatableArgs, Mode

small = NodeInfo(Node(name="small", allocatable={"cpu": Quantity.parse("4"),
                                                 "memory": Quantity.parse("8Gi")}))
large = NodeInfo(Node(name="large", allocatable={"cpu": Quantity.parse("16"),
                                                 "memory": Quantity.parse("64Gi")}))
snapshot = Snapshot([small, large])

plugin = Allocatable(snapshot, AllocatableArgs(mode=Mode.MOST))
pod = Pod(name="web", containers=[Container(name="web",
                                            requests={"cpu": Quantity.parse("500m")})])
raw = [NodeScore(info.node.name, plugin.score(pod, info.node.name)) for info in snapshot.list()]
scores = plugin.normalize_score(raw)   # "large" gets 100, "small" gets 0
```

NUMA topology matching:

```python
from schedplugins.framework import Node, NodeInfo, Quantity
from schedplugins.strategies import ScoringStrategyType
from schedplugins.topology import TopologyMatch
from schedplugins.topology_helpers import (
    NodeResourceTopology, Zone, make_pod_by_resource_list,
    make_resource_list_from_zones, make_topology_res_info,
)

zones = [
    Zone("node-0", resources=[make_topology_res_info("cpu", "4", "4"),
                              make_topology_res_info("memory", "8Gi", "8Gi")]),
    Zone("node-1", resources=[make_topology_res_info("cpu", "4", "2"),
                              make_topology_res_info("memory", "8Gi", "8Gi")]),
]
topology = NodeResourceTopology("worker-1", ["SingleNUMANodeContainerLevel"], zones)
node = NodeInfo(Node(name="worker-1", allocatable=make_resource_list_from_zones(zones)))

match = TopologyMatch([topology], ScoringStrategyType.LEAST_ALLOCATED)
pod = make_pod_by_resource_list({"cpu": Quantity.parse("3"), "memory": Quantity.parse("1Gi")})
match.filter(pod, node).is_success()   # True: node-0 can hold the container
match.score(pod, "worker-1")
```

Gang scheduling:

```python
from schedplugins.framework import Pod, Snapshot
from schedplugins.podgroups import POD_GROUP_LABEL, PodGroup, PodGroupManager
from schedplugins.coscheduling import Coscheduling

group = PodGroup("trainers", namespace="ml", min_member=2)
members = [Pod(name=f"t{i}", namespace="ml", uid=f"t{i}",
               labels={POD_GROUP_LABEL: "trainers"}) for i in range(2)]
manager = PodGroupManager([group], members, Snapshot(), schedule_timeout=10.0,
                          denied_pg_expiration=3.0)
plugin = Coscheduling(manager, schedule_timeout=10.0)

plugin.pre_filter(members[0]).is_success()        # True: enough members exist
status, wait_seconds = plugin.permit(members[0], "node-a")
# status.code is Code.WAIT until the snapshot holds enough assigned members.
```

Configuration errors are raised as exceptions. Scheduling outcomes come back as
`Status` values, whose `Code` is `SUCCESS`, `WAIT`, `UNSCHEDULABLE`, `ERROR` and so on.

## What this package does not do

- It has no command-line program.
- It does not connect to a cluster. Nodes, pods, pod groups and node resource
  topologies are passed in by the caller.
- It does not plug into a running scheduler. You call the plugins' methods yourself.
- `PodGroupManager.post_bind` updates the `PodGroup` objects in memory only. Nothing
  is written back to a server.
- Waiting pods are only marked as allowed or rejected. The package keeps no timers
  that release them.