"""Diff/Plan Engine.

``plan`` compares one desired record with its observed counterpart (and,
for workloads, the observed children) and returns the ActionPlan that moves
the cluster toward the desired state. It is a pure function: same inputs,
same plan, no side effects.

Decision table:
- desired present, observed absent   -> Create (plus workload pods)
- desired absent or finalizing,
  observed present                   -> Delete, owned descendants first
- both present, spec differs         -> Update (workloads: rolling batches)
- immutable ConfigMap/Secret differs -> Reject(ImmutableViolation)
- both present, spec identical       -> nothing (status is never planned)
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from konverge.core.schema.action import Action, ActionPlan
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.store import is_immutable
from konverge.k8s.constants import MANAGED_BY_ANNOTATION, MANAGED_BY_VALUE, WORKLOAD_KINDS
from konverge.k8s.rollout import workload_steps

logger = logging.getLogger(__name__)

IMMUTABLE_VIOLATION = "ImmutableViolation"


def plan(
    desired: Optional[ResourceRecord],
    observed: Optional[ResourceRecord],
    children: Optional[Iterable[ResourceRecord]] = None,
    nodes: Optional[Iterable[ResourceRecord]] = None,
    claims: Optional[Iterable[ResourceRecord]] = None,
) -> ActionPlan:
    """Compute the actions moving ``observed`` toward ``desired``.

    Args:
        desired: Desired record, or None when the resource should not exist
        observed: Live record, or None when absent
        children: Observed descendants (owned records, transitively). None
                  means children are not considered; a missing observed
                  record implies no children.
        nodes: Observed Node records, for DaemonSets
        claims: Observed PersistentVolumeClaims, for StatefulSets

    Returns:
        ActionPlan whose steps are executed one batch at a time

    Example:
        >>> plan(record, None).actions
        [Create(ConfigMap/default/settings)]
        >>> plan(record, record).is_empty
        True
    """
    if desired is not None and desired.is_deleting:
        desired = None

    if desired is None:
        return _deletion_plan(observed, list(children or ()))

    result = ActionPlan(meta={"kind": desired.kind})
    first: List[Action] = []
    target = to_backend_record(desired, observed)

    if observed is None:
        first.append(Action("Create", desired.identity, target))
        if children is None:
            children = ()
    elif differs(target, observed):
        if is_immutable(observed) and observed.spec != desired.spec:
            logger.info(f"Rejecting change to immutable {desired.identity}")
            result.add_step([Action("Reject", desired.identity, desired, reason=IMMUTABLE_VIOLATION)])
            return result
        first.append(Action("Update", desired.identity, target))

    if desired.kind in WORKLOAD_KINDS and children is not None:
        batches = workload_steps(desired, children, nodes, claims)
        if batches:
            first.extend(batches[0])
            result.add_step(first)
            for batch in batches[1:]:
                result.add_step(batch)
            return result

    result.add_step(first)
    return result


def _deletion_plan(observed: Optional[ResourceRecord], children: List[ResourceRecord]) -> ActionPlan:
    """One batch deleting descendants deepest first, then the parent."""
    result = ActionPlan(meta={"kind": observed.kind if observed else None})
    root = observed.identity if observed is not None else None
    depths = _depths(root, children)
    ordered = sorted(children, key=lambda r: (-depths.get(r.identity, 1), r.identity))
    batch = [Action("Delete", r.identity, r, reason="cascade") for r in ordered if not r.is_deleting]
    if observed is not None:
        batch.append(Action("Delete", observed.identity, observed))
    result.add_step(batch)
    return result


def _depths(root: Optional[ResourceIdentity], children: List[ResourceRecord]) -> Dict[ResourceIdentity, int]:
    """Depth of every child below the root, following owner references."""
    by_identity = {c.identity: c for c in children}
    depths: Dict[ResourceIdentity, int] = {}

    def depth(identity: ResourceIdentity, seen: frozenset) -> int:
        if identity in depths:
            return depths[identity]
        record = by_identity.get(identity)
        parents = [o for o in record.owner_references if o in by_identity and o not in seen] if record else []
        value = 1 + max((depth(p, seen | {identity}) for p in parents), default=0)
        depths[identity] = value
        return value

    for identity in by_identity:
        if identity != root:
            depth(identity, frozenset())
    return depths


def to_backend_record(desired: ResourceRecord, observed: Optional[ResourceRecord]) -> ResourceRecord:
    """The record written to the backend for a desired record.

    The backend copy carries the managed-by annotation, keeps the live
    status, and has no finalizers of its own.
    """
    annotations = dict(desired.annotations)
    annotations[MANAGED_BY_ANNOTATION] = MANAGED_BY_VALUE
    return replace(
        desired,
        status=dict(observed.status) if observed is not None else {},
        annotations=annotations,
        finalizers=(),
        deletion_timestamp=None,
        resource_version=observed.resource_version if observed is not None else "",
    )


def _user_annotations(record: ResourceRecord) -> Dict[str, str]:
    return {k: v for k, v in record.annotations.items() if k != MANAGED_BY_ANNOTATION}


def differs(desired: ResourceRecord, observed: ResourceRecord) -> bool:
    """True when spec or user-facing metadata differ.

    Status, versions, finalizers and the managed-by annotation are ignored.
    """
    return (
        desired.spec != observed.spec
        or desired.labels != observed.labels
        or _user_annotations(desired) != _user_annotations(observed)
        or desired.owner_references != observed.owner_references
    )


def find_orphans(
    records: Iterable[ResourceRecord], exists: Callable[[ResourceIdentity], bool]
) -> List[ResourceRecord]:
    """Records that have owners, none of which exist any more.

    Args:
        records: Candidate records
        exists: Whether an identity is still alive (desired or observed)

    Returns:
        Orphaned records, sorted by identity
    """
    return sorted(
        (r for r in records
         if r.owner_references and not any(exists(owner) for owner in r.owner_references)),
        key=lambda r: r.identity,
    )
