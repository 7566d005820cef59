"""Resource record: one persisted version of a resource.

Records are values. Every mutation (apply, status write, delete) produces a
new record through ``dataclasses.replace``; readers holding an old record
never see it change underneath them.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from konverge.core.schema.identity import ResourceIdentity


@dataclass(frozen=True)
class ResourceRecord:
    """A resource as stored by the desired-state store or reported by the backend.

    Attributes:
        identity: (kind, namespace, name) key
        spec: Specification document, owned by the submitter
        status: Status document, written only by reconcilers
        generation: Incremented on every spec change, never on status writes
        resource_version: Opaque token for optimistic concurrency,
                          changed on every persisted mutation
        labels: String to string label mapping
        annotations: String to string annotation mapping
        owner_references: Owners of this record (for cascading deletion)
        finalizers: Pending finalizers; a deleting record is purged when empty
        deletion_timestamp: ISO-8601 time the delete was requested, None if live
    """
    identity: ResourceIdentity
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    generation: int = 1
    resource_version: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner_references: FrozenSet[ResourceIdentity] = frozenset()
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.identity.kind

    @property
    def namespace(self) -> str:
        return self.identity.namespace

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def is_owned_by(self, owner: ResourceIdentity) -> bool:
        return owner in self.owner_references

    def same_intent(self, other: "ResourceRecord") -> bool:
        """True when spec and user-facing metadata are identical.

        Status, versions and deletion state are ignored; this is the
        comparison used to decide whether an apply or an update is a no-op.
        """
        return (
            self.spec == other.spec
            and self.labels == other.labels
            and self.annotations == other.annotations
            and self.owner_references == other.owner_references
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize record for JSON storage."""
        return {
            "identity": str(self.identity),
            "spec": self.spec,
            "status": self.status,
            "generation": self.generation,
            "resourceVersion": self.resource_version,
            "labels": self.labels,
            "annotations": self.annotations,
            "ownerReferences": sorted(str(o) for o in self.owner_references),
            "finalizers": list(self.finalizers),
            "deletionTimestamp": self.deletion_timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResourceRecord":
        """Deserialize record from JSON storage."""
        return cls(
            identity=ResourceIdentity.parse(d["identity"]),
            spec=d.get("spec", {}),
            status=d.get("status", {}),
            generation=d.get("generation", 1),
            resource_version=d.get("resourceVersion", ""),
            labels=d.get("labels", {}),
            annotations=d.get("annotations", {}),
            owner_references=frozenset(
                ResourceIdentity.parse(o) for o in d.get("ownerReferences", [])
            ),
            finalizers=tuple(d.get("finalizers", [])),
            deletion_timestamp=d.get("deletionTimestamp"),
        )

    def copy_spec(self) -> Dict[str, Any]:
        """Deep copy of the spec, safe to mutate."""
        return copy.deepcopy(self.spec)
