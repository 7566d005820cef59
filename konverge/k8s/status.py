"""Status documents written back to desired records by the reconciler.

Status flows from observed state to the store, never the other way. Every
status carries ``observedGeneration`` and a ``conditions`` list with the
Ready, Progressing and Degraded types. Conditions carry no timestamps, so an
unchanged situation produces an identical status and the store write is a
no-op.
"""

from typing import Any, Dict, Iterable, List, Optional

from konverge.core.schema.record import ResourceRecord
from konverge.k8s.constants import (
    CONDITION_DEGRADED,
    CONDITION_PROGRESSING,
    CONDITION_READY,
    POD_TEMPLATE_HASH_LABEL,
)
from konverge.k8s.rollout import eligible_nodes, job_counts, job_failed
from konverge.k8s.utils import is_available, template_hash


def condition(kind: str, status: bool, reason: str = "", message: str = "") -> Dict[str, str]:
    return {
        "type": kind,
        "status": "True" if status else "False",
        "reason": reason,
        "message": message,
    }


def get_condition(status: Dict[str, Any], kind: str) -> Optional[Dict[str, str]]:
    """Find a condition by type in a status document."""
    for entry in status.get("conditions") or []:
        if entry.get("type") == kind:
            return entry
    return None


def is_condition_true(status: Dict[str, Any], kind: str) -> bool:
    entry = get_condition(status, kind)
    return entry is not None and entry.get("status") == "True"


def compute_status(
    desired: ResourceRecord,
    observed: Optional[ResourceRecord],
    children: Iterable[ResourceRecord] = (),
    nodes: Iterable[ResourceRecord] = (),
    progressing: bool = False,
    degraded: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Status of a desired record after a reconciliation pass.

    Args:
        desired: The desired record
        observed: Its live counterpart, if any
        children: Observed records owned by it
        nodes: Observed Node records (DaemonSet)
        progressing: Whether the plan has batches left to execute
        degraded: ``{"reason": ..., "message": ...}`` when the record is degraded

    Returns:
        Status document
    """
    pods = [c for c in children if c.kind == "Pod" and c.is_owned_by(desired.identity)]
    status: Dict[str, Any] = {"observedGeneration": desired.generation}

    kind = desired.kind
    if kind == "Deployment":
        ready = _deployment_status(desired, pods, status)
    elif kind == "StatefulSet":
        ready = _statefulset_status(desired, pods, status)
    elif kind == "DaemonSet":
        ready = _daemonset_status(desired, pods, nodes, status)
    elif kind == "Job":
        ready = _job_status(desired, pods, status)
    else:
        ready = observed is not None and observed.spec == desired.spec

    degraded = degraded or _failed_job(desired, status)
    conditions: List[Dict[str, str]] = [
        condition(CONDITION_READY, ready and not progressing),
        condition(CONDITION_PROGRESSING, progressing, "RolloutInProgress" if progressing else ""),
    ]
    if degraded:
        conditions.append(condition(CONDITION_DEGRADED, True, degraded.get("reason", ""),
                                    degraded.get("message", "")))
    else:
        conditions.append(condition(CONDITION_DEGRADED, False))
    status["conditions"] = conditions
    return status


def _deployment_status(desired: ResourceRecord, pods: List[ResourceRecord], status: Dict[str, Any]) -> bool:
    replicas = int(desired.spec.get("replicas", 1))
    current_hash = template_hash(desired.spec.get("template") or {})
    live = [p for p in pods if not p.is_deleting]
    available = sum(1 for p in live if is_available(p))
    updated = sum(1 for p in live if p.labels.get(POD_TEMPLATE_HASH_LABEL) == current_hash)
    status.update({
        "replicas": len(live),
        "updatedReplicas": updated,
        "readyReplicas": available,
        "availableReplicas": available,
        "unavailableReplicas": max(0, replicas - available),
    })
    return len(live) == replicas and updated == replicas and available == replicas


def _statefulset_status(desired: ResourceRecord, pods: List[ResourceRecord], status: Dict[str, Any]) -> bool:
    replicas = int(desired.spec.get("replicas", 1))
    update_revision = template_hash(desired.spec.get("template") or {})
    live = [p for p in pods if not p.is_deleting]
    ready = sum(1 for p in live if is_available(p))
    updated = sum(1 for p in live if p.labels.get(POD_TEMPLATE_HASH_LABEL) == update_revision)
    revisions = sorted({p.labels.get(POD_TEMPLATE_HASH_LABEL, "") for p in live} - {update_revision})
    status.update({
        "replicas": len(live),
        "readyReplicas": ready,
        "updatedReplicas": updated,
        "currentRevision": revisions[0] if revisions else update_revision,
        "updateRevision": update_revision,
    })
    return len(live) == replicas and ready == replicas and updated == replicas


def _daemonset_status(
    desired: ResourceRecord, pods: List[ResourceRecord], nodes: Iterable[ResourceRecord], status: Dict[str, Any]
) -> bool:
    eligible = eligible_nodes(desired, nodes)
    current_hash = template_hash(desired.spec.get("template") or {})
    live = [p for p in pods if not p.is_deleting]
    scheduled = {p.spec.get("nodeName") for p in live} & set(eligible)
    ready = sum(1 for p in live if is_available(p) and p.spec.get("nodeName") in scheduled)
    updated = sum(1 for p in live if p.labels.get(POD_TEMPLATE_HASH_LABEL) == current_hash)
    status.update({
        "desiredNumberScheduled": len(eligible),
        "currentNumberScheduled": len(scheduled),
        "numberReady": ready,
        "updatedNumberScheduled": updated,
    })
    return len(scheduled) == len(eligible) and ready == len(eligible) and updated == len(eligible)


def _job_status(desired: ResourceRecord, pods: List[ResourceRecord], status: Dict[str, Any]) -> bool:
    counts = job_counts(pods)
    status.update(counts)
    completions = int(desired.spec.get("completions", 1))
    return counts["succeeded"] >= completions


def _failed_job(desired: ResourceRecord, status: Dict[str, Any]) -> Optional[Dict[str, str]]:
    if desired.kind == "Job" and job_failed(desired.spec, status):
        return {"reason": "BackoffLimitExceeded",
                "message": f"{status['failed']} pods failed"}
    return None


def with_condition(status: Dict[str, Any], entry: Dict[str, str]) -> Dict[str, Any]:
    """Copy of a status document with one condition set (replacing its type)."""
    updated = dict(status)
    conditions = [c for c in status.get("conditions") or [] if c.get("type") != entry["type"]]
    conditions.append(entry)
    updated["conditions"] = conditions
    return updated
