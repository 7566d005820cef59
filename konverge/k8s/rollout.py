"""Rollout strategies for workload kinds.

Each strategy turns a workload's desired spec and its observed pods into
ordered batches of pod actions. Only the first batch reflects observed
availability exactly; later batches are simulated, assuming every pod the
plan has touched becomes available before the next batch starts. The
reconciler executes one batch per pass and re-plans from fresh state, so the
simulated tail only has to be a faithful preview.

Strategies:
- Deployment: RollingUpdate bounded by maxSurge/maxUnavailable, or Recreate
- StatefulSet: ordinal sequencing (create low to high, terminate high to low),
  one pod per batch unless podManagementPolicy is Parallel
- DaemonSet: one pod per eligible node, rolling replacement by maxUnavailable
- Job: pods up to parallelism until completions succeed or backoffLimit is hit
"""

import copy
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from konverge.core.schema.action import Action
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.selectors import matches, selector_labels
from konverge.k8s.constants import (
    JOB_NAME_LABEL,
    MANAGED_BY_ANNOTATION,
    MANAGED_BY_VALUE,
    POD_FAILED,
    POD_SUCCEEDED,
    POD_TEMPLATE_HASH_LABEL,
    RETAIN_ANNOTATION,
    STATEFULSET_POD_NAME_LABEL,
)
from konverge.k8s.utils import (
    dig,
    get_pod_template_labels,
    is_available,
    pod_phase,
    resolve_int_or_percent,
    template_hash,
)

logger = logging.getLogger(__name__)

Batch = List[Action]


@dataclass
class _Pod:
    """Simulated pod used while previewing later batches."""
    name: str
    current: bool
    available: bool
    record: Optional[ResourceRecord] = None
    node: str = ""


def workload_steps(
    desired: ResourceRecord,
    children: Iterable[ResourceRecord],
    nodes: Optional[Iterable[ResourceRecord]] = None,
    claims: Optional[Iterable[ResourceRecord]] = None,
) -> List[Batch]:
    """Pod-level batches for a workload.

    Args:
        desired: Workload record (Deployment, StatefulSet, DaemonSet or Job)
        children: Observed records owned by the workload
        nodes: Observed Node records (DaemonSet)
        claims: Observed PersistentVolumeClaims in the namespace (StatefulSet)

    Returns:
        Ordered batches; empty when the pods already match the spec
    """
    pods = [
        c for c in children
        if c.kind == "Pod" and c.is_owned_by(desired.identity) and not c.is_deleting
    ]
    if desired.kind == "Deployment":
        return deployment_steps(desired, pods)
    elif desired.kind == "StatefulSet":
        return statefulset_steps(desired, pods, claims or ())
    elif desired.kind == "DaemonSet":
        return daemonset_steps(desired, pods, nodes or ())
    elif desired.kind == "Job":
        return job_steps(desired, pods)
    return []


# -- shared helpers -------------------------------------------------------------


def build_pod(
    owner: ResourceRecord,
    name: str,
    extra_labels: Optional[Dict[str, str]] = None,
    spec_overrides: Optional[Dict] = None,
) -> ResourceRecord:
    """Pod record stamped from a workload's pod template.

    The pod carries the template labels plus the pod-template-hash label,
    the managed-by annotation and an owner reference to the workload.
    """
    template = owner.spec.get("template") or {}
    labels = get_pod_template_labels(owner.spec)
    labels[POD_TEMPLATE_HASH_LABEL] = template_hash(template)
    labels.update(extra_labels or {})
    annotations = dict(dig(template, "metadata", "annotations", default={}) or {})
    annotations[MANAGED_BY_ANNOTATION] = MANAGED_BY_VALUE
    spec = copy.deepcopy(template.get("spec") or {})
    spec.update(spec_overrides or {})
    return ResourceRecord(
        identity=ResourceIdentity("Pod", owner.namespace, name),
        spec=spec,
        labels=labels,
        annotations=annotations,
        owner_references=frozenset({owner.identity}),
    )


def _create(record: ResourceRecord, reason: str) -> Action:
    return Action("Create", record.identity, record, reason=reason)


def _delete(namespace: str, pod: _Pod, reason: str) -> Action:
    identity = pod.record.identity if pod.record else ResourceIdentity("Pod", namespace, pod.name)
    return Action("Delete", identity, pod.record, reason=reason)


def _observe(pods: Iterable[ResourceRecord], current_hash: str) -> List[_Pod]:
    return [
        _Pod(
            name=p.name,
            current=p.labels.get(POD_TEMPLATE_HASH_LABEL) == current_hash,
            available=is_available(p),
            record=p,
            node=p.spec.get("nodeName", ""),
        )
        for p in sorted(pods, key=lambda r: r.identity)
    ]


def _next_name(prefix: str, used: Set[str]) -> str:
    index = 0
    while f"{prefix}-{index}" in used:
        index += 1
    name = f"{prefix}-{index}"
    used.add(name)
    return name


def _replicas(spec: dict) -> int:
    return int(spec.get("replicas", 1))


def _deletion_order(pods: List[_Pod]) -> List[_Pod]:
    """Unavailable pods first, then by name descending."""
    by_name = sorted(pods, key=lambda p: p.name, reverse=True)
    return sorted(by_name, key=lambda p: p.available)


def _settle(state: Iterable[_Pod]) -> None:
    for pod in state:
        pod.available = True


# -- Deployment -----------------------------------------------------------------


def rolling_bounds(spec: dict, replicas: int) -> Tuple[int, int]:
    """Resolve (maxSurge, maxUnavailable) for a Deployment.

    Percentages resolve against replicas; surge rounds up and unavailable
    rounds down. Both resolving to zero would stall the rollout, so
    unavailable is raised to one.
    """
    rolling = dig(spec, "strategy", "rollingUpdate", default={}) or {}
    surge = resolve_int_or_percent(rolling.get("maxSurge"), replicas, "25%", round_up=True)
    unavailable = resolve_int_or_percent(rolling.get("maxUnavailable"), replicas, "25%", round_up=False)
    if surge == 0 and unavailable == 0:
        unavailable = 1
    return surge, unavailable


def deployment_steps(desired: ResourceRecord, pods: List[ResourceRecord]) -> List[Batch]:
    """Batches replacing out-of-date pods and fixing the replica count.

    Within a batch, creations come before deletions. At any instant the
    number of pods stays at or below replicas + maxSurge, and at most
    maxUnavailable of the desired replicas are unavailable.
    """
    spec = desired.spec
    replicas = _replicas(spec)
    current_hash = template_hash(spec.get("template") or {})
    state = _observe(pods, current_hash)
    used = {p.name for p in state}
    prefix = f"{desired.name}-{current_hash}"

    if dig(spec, "strategy", "type") == "Recreate":
        return _recreate_steps(desired, state, replicas, prefix, used)

    surge, unavailable = rolling_bounds(spec, replicas)
    steps: List[Batch] = []
    while True:
        batch = _rolling_batch(desired, state, replicas, surge, unavailable, prefix, used)
        if not batch:
            break
        steps.append(batch)
        _settle(state)
    if steps:
        logger.debug(f"Rolling plan for {desired.identity}: {len(steps)} batches "
                     f"(replicas={replicas}, maxSurge={surge}, maxUnavailable={unavailable})")
    return steps


def _rolling_batch(
    desired: ResourceRecord,
    state: List[_Pod],
    replicas: int,
    surge: int,
    unavailable: int,
    prefix: str,
    used: Set[str],
) -> Batch:
    new = [p for p in state if p.current]
    old = [p for p in state if not p.current]
    available = sum(1 for p in state if p.available)
    batch: Batch = []

    creates = max(0, min(replicas - len(new), replicas + surge - len(state)))
    for _ in range(creates):
        record = build_pod(desired, _next_name(prefix, used))
        batch.append(_create(record, "scale up" if not old else "rollout"))
        state.append(_Pod(record.name, current=True, available=False, record=record))

    # Pods created above are unavailable, so only pods counted in `available`
    # can keep the floor of replicas - maxUnavailable
    budget = max(0, available - (replicas - unavailable))
    surplus = _deletion_order(new)[: max(0, len(new) - replicas)]
    for pod in surplus + _deletion_order(old):
        if pod.available:
            if budget == 0:
                continue
            budget -= 1
        batch.append(_delete(desired.namespace, pod, "rollout" if not pod.current else "scale down"))
        state.remove(pod)
    return batch


def _recreate_steps(
    desired: ResourceRecord, state: List[_Pod], replicas: int, prefix: str, used: Set[str]
) -> List[Batch]:
    steps: List[Batch] = []
    old = [p for p in state if not p.current]
    if old:
        steps.append([_delete(desired.namespace, p, "recreate") for p in _deletion_order(old)])
        for pod in old:
            state.remove(pod)

    new = [p for p in state if p.current]
    batch: Batch = []
    for _ in range(max(0, replicas - len(new))):
        batch.append(_create(build_pod(desired, _next_name(prefix, used)), "recreate"))
    for pod in _deletion_order(new)[: max(0, len(new) - replicas)]:
        batch.append(_delete(desired.namespace, pod, "scale down"))
    if batch:
        steps.append(batch)
    return steps


# -- StatefulSet ----------------------------------------------------------------


def claim_name(template_name: str, statefulset: str, ordinal: int) -> str:
    return f"{template_name}-{statefulset}-{ordinal}"


def build_claims(desired: ResourceRecord, ordinal: int, existing: Set[str]) -> List[ResourceRecord]:
    """Missing PersistentVolumeClaims for one StatefulSet ordinal.

    Claims carry the selector labels and no owner reference: they outlive
    the pod and the StatefulSet, so scaling back up reattaches the same data.
    """
    claims = []
    labels = selector_labels(desired.spec.get("selector"))
    for template in desired.spec.get("volumeClaimTemplates") or []:
        name = claim_name(dig(template, "metadata", "name"), desired.name, ordinal)
        if name in existing:
            continue
        existing.add(name)
        claims.append(ResourceRecord(
            identity=ResourceIdentity("PersistentVolumeClaim", desired.namespace, name),
            spec=copy.deepcopy(template.get("spec") or {}),
            labels=dict(labels),
            annotations={MANAGED_BY_ANNOTATION: MANAGED_BY_VALUE, RETAIN_ANNOTATION: "true"},
        ))
    return claims


def _ordinal(statefulset: str, pod_name: str) -> Optional[int]:
    prefix = f"{statefulset}-"
    suffix = pod_name[len(prefix):] if pod_name.startswith(prefix) else ""
    return int(suffix) if suffix.isdigit() else None


def statefulset_steps(
    desired: ResourceRecord, pods: List[ResourceRecord], claims: Iterable[ResourceRecord]
) -> List[Batch]:
    """Ordinal-sequenced batches for a StatefulSet.

    OrderedReady (default): the lowest missing ordinal is created once every
    lower ordinal is available; the highest surplus ordinal terminates first;
    one pod per batch. Parallel: all creations, or all terminations, in one
    batch. RollingUpdate replaces out-of-date pods from the highest ordinal
    down to ``partition``, one at a time; OnDelete never replaces.
    """
    spec = desired.spec
    replicas = _replicas(spec)
    current_hash = template_hash(spec.get("template") or {})
    parallel = spec.get("podManagementPolicy") == "Parallel"
    update = spec.get("updateStrategy") or {}
    on_delete = update.get("type") == "OnDelete"
    partition = int(dig(update, "rollingUpdate", "partition", default=0) or 0)
    claim_names = {c.name for c in claims if c.kind == "PersistentVolumeClaim"}

    by_ordinal: Dict[int, _Pod] = {}
    strays: List[_Pod] = []
    for pod in _observe(pods, current_hash):
        ordinal = _ordinal(desired.name, pod.name)
        if ordinal is None:
            strays.append(pod)
        else:
            by_ordinal[ordinal] = pod

    steps: List[Batch] = []
    batch = [_delete(desired.namespace, p, "not an ordinal pod") for p in strays]
    while True:
        batch.extend(_statefulset_batch(
            desired, by_ordinal, replicas, parallel, on_delete, partition, claim_names
        ))
        if not batch:
            break
        steps.append(batch)
        _settle(by_ordinal.values())
        batch = []
    return steps


def _statefulset_pod(desired: ResourceRecord, ordinal: int) -> ResourceRecord:
    name = f"{desired.name}-{ordinal}"
    overrides = {"hostname": name}
    if desired.spec.get("serviceName"):
        overrides["subdomain"] = desired.spec["serviceName"]
    return build_pod(desired, name, {STATEFULSET_POD_NAME_LABEL: name}, overrides)


def _statefulset_batch(
    desired: ResourceRecord,
    by_ordinal: Dict[int, _Pod],
    replicas: int,
    parallel: bool,
    on_delete: bool,
    partition: int,
    claim_names: Set[str],
) -> Batch:
    batch: Batch = []

    missing = [i for i in range(replicas) if i not in by_ordinal]
    if missing:
        if not parallel:
            lowest = missing[0]
            if not all(by_ordinal[i].available for i in range(lowest)):
                return []
            missing = [lowest]
        for ordinal in missing:
            for claim in build_claims(desired, ordinal, claim_names):
                batch.append(_create(claim, f"claim for ordinal {ordinal}"))
            record = _statefulset_pod(desired, ordinal)
            batch.append(_create(record, f"ordinal {ordinal}"))
            by_ordinal[ordinal] = _Pod(record.name, current=True, available=False, record=record)
        return batch

    surplus = sorted((i for i in by_ordinal if i >= replicas), reverse=True)
    if surplus:
        if not parallel:
            surplus = surplus[:1]
        for ordinal in surplus:
            batch.append(_delete(desired.namespace, by_ordinal.pop(ordinal), f"scale down ordinal {ordinal}"))
        return batch

    if on_delete:
        return []
    stale = sorted(
        (i for i, pod in by_ordinal.items() if partition <= i < replicas and not pod.current),
        reverse=True,
    )
    if not stale or not all(pod.available for pod in by_ordinal.values()):
        return []
    ordinal = stale[0]
    record = _statefulset_pod(desired, ordinal)
    batch.append(_delete(desired.namespace, by_ordinal[ordinal], f"update ordinal {ordinal}"))
    batch.append(_create(record, f"update ordinal {ordinal}"))
    by_ordinal[ordinal] = _Pod(record.name, current=True, available=False, record=record)
    return batch


# -- DaemonSet ------------------------------------------------------------------


def eligible_nodes(desired: ResourceRecord, nodes: Iterable[ResourceRecord]) -> List[str]:
    """Names of schedulable nodes matching the pod template's nodeSelector."""
    node_selector = dig(desired.spec, "template", "spec", "nodeSelector", default={}) or {}
    return sorted(
        n.name for n in nodes
        if n.kind == "Node" and matches(node_selector, n.labels) and not n.spec.get("unschedulable")
    )


def daemonset_steps(
    desired: ResourceRecord, pods: List[ResourceRecord], nodes: Iterable[ResourceRecord]
) -> List[Batch]:
    """One pod per eligible node.

    The first batch deletes pods on ineligible nodes and duplicates, and
    creates pods on uncovered nodes. Out-of-date pods are then replaced
    (delete, then create) on at most maxUnavailable nodes at a time.
    """
    spec = desired.spec
    current_hash = template_hash(spec.get("template") or {})
    eligible = eligible_nodes(desired, nodes)
    update = spec.get("updateStrategy") or {}
    on_delete = update.get("type") == "OnDelete"
    max_unavailable = max(1, resolve_int_or_percent(
        dig(update, "rollingUpdate", "maxUnavailable"), len(eligible), 1, round_up=False
    ))

    by_node: Dict[str, _Pod] = {}
    first: Batch = []
    for pod in sorted(_observe(pods, current_hash), key=lambda p: (not p.current, not p.available, p.name)):
        if pod.node not in eligible:
            first.append(_delete(desired.namespace, pod, f"node {pod.node or '<none>'} not eligible"))
        elif pod.node in by_node:
            first.append(_delete(desired.namespace, pod, f"duplicate on node {pod.node}"))
        else:
            by_node[pod.node] = pod

    for node in eligible:
        if node not in by_node:
            record = _daemon_pod(desired, node, current_hash)
            first.append(_create(record, f"node {node}"))
            by_node[node] = _Pod(record.name, current=True, available=False, record=record, node=node)

    steps: List[Batch] = []
    batch = first
    while True:
        if not on_delete:
            batch.extend(_daemon_replacements(desired, by_node, max_unavailable, current_hash))
        if not batch:
            break
        steps.append(batch)
        _settle(by_node.values())
        batch = []
    return steps


def _daemon_pod(desired: ResourceRecord, node: str, current_hash: str) -> ResourceRecord:
    return build_pod(desired, f"{desired.name}-{node}-{current_hash[:5]}", spec_overrides={"nodeName": node})


def _daemon_replacements(
    desired: ResourceRecord, by_node: Dict[str, _Pod], max_unavailable: int, current_hash: str
) -> Batch:
    budget = max_unavailable - sum(1 for pod in by_node.values() if not pod.available)
    batch: Batch = []
    for node in sorted(n for n, pod in by_node.items() if not pod.current):
        if budget <= 0:
            break
        record = _daemon_pod(desired, node, current_hash)
        batch.append(_delete(desired.namespace, by_node[node], f"update on node {node}"))
        batch.append(_create(record, f"update on node {node}"))
        by_node[node] = _Pod(record.name, current=True, available=False, record=record, node=node)
        budget -= 1
    return batch


# -- Job ------------------------------------------------------------------------


def job_counts(pods: Iterable[ResourceRecord]) -> Dict[str, int]:
    """Active, succeeded and failed pod counts of a Job."""
    counts = {"active": 0, "succeeded": 0, "failed": 0}
    for pod in pods:
        phase = pod_phase(pod)
        if phase == POD_SUCCEEDED:
            counts["succeeded"] += 1
        elif phase == POD_FAILED:
            counts["failed"] += 1
        elif not pod.is_deleting:
            counts["active"] += 1
    return counts


def job_failed(spec: dict, counts: Dict[str, int]) -> bool:
    return counts["failed"] > int(spec.get("backoffLimit", 6))


def job_steps(desired: ResourceRecord, pods: List[ResourceRecord]) -> List[Batch]:
    """Run pods up to ``parallelism`` until ``completions`` pods succeed.

    Failed pods are kept for inspection and never replaced once more than
    ``backoffLimit`` have failed; at that point active pods are terminated.
    """
    spec = desired.spec
    completions = int(spec.get("completions", 1))
    parallelism = int(spec.get("parallelism", 1))
    counts = job_counts(pods)
    active = [p for p in pods if pod_phase(p) not in (POD_SUCCEEDED, POD_FAILED)]

    if job_failed(spec, counts):
        batch = [
            Action("Delete", p.identity, p, reason="backoffLimit exceeded")
            for p in sorted(active, key=lambda r: r.identity)
        ]
        return [batch] if batch else []

    wanted = min(parallelism, completions - counts["succeeded"]) - counts["active"]
    if wanted <= 0:
        return []
    used = {p.name for p in pods}
    batch = [
        _create(build_pod(desired, _next_name(desired.name, used), {JOB_NAME_LABEL: desired.name}), "job pod")
        for _ in range(wanted)
    ]
    return [batch]
