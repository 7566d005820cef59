"""Desired-State Store: the latest applied specification per resource.

The store is the submitter-facing side of the system:
- apply() validates and records intent, with optimistic concurrency
- update_status() is the controller-only status write
- delete() starts finalization; the record is purged once finalizers clear

State can optionally be persisted to a JSON file, so a restarted process
resumes from the same generations and resource versions.
"""

import copy
import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from konverge.core.config import DEFAULT_FINALIZER
from konverge.core.errors import Conflict, ImmutableViolation, NotFound
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.k8s.constants import IMMUTABLE_CAPABLE_KINDS
from konverge.k8s.validation import validate

logger = logging.getLogger(__name__)

# Change notifications carry one of these reasons
APPLIED = "apply"
STATUS = "status"
DELETING = "delete"
PURGED = "purge"

Listener = Callable[[ResourceIdentity, str], None]


def is_immutable(record: ResourceRecord) -> bool:
    """True for ConfigMaps/Secrets frozen with ``immutable: true``."""
    return record.kind in IMMUTABLE_CAPABLE_KINDS and record.spec.get("immutable") is True


class DesiredStateStore:
    """Holds the latest applied specification per resource identity.

    Example:
        >>> store = DesiredStateStore()
        >>> identity = ResourceIdentity("ConfigMap", "default", "settings")
        >>> record = store.apply(identity, {"data": {"mode": "fast"}})
        >>> record.generation
        1
        >>> store.apply(identity, {"data": {"mode": "fast"}}) is record
        True
    """

    def __init__(self, file_path: Optional[str] = None, finalizers: Iterable[str] = (DEFAULT_FINALIZER,)):
        """Initialize the store.

        Args:
            file_path: Path to JSON file for persistence (None disables persistence)
            finalizers: Finalizers attached to every newly created record
        """
        self.file_path = file_path
        self.finalizers: Tuple[str, ...] = tuple(finalizers)
        self._records: Dict[ResourceIdentity, ResourceRecord] = {}
        self._next_version = 1
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []

        if file_path and Path(file_path).exists():
            self.load()
            logger.info(f"Loaded desired state from {file_path} with {len(self._records)} records")

    # -- reads -----------------------------------------------------------------

    def get(self, identity: ResourceIdentity) -> ResourceRecord:
        """Return the current record.

        Raises:
            NotFound: If the identity is unknown
        """
        record = self._records.get(identity)
        if record is None:
            raise NotFound(identity)
        return record

    def find(self, identity: ResourceIdentity) -> Optional[ResourceRecord]:
        """Return the current record, or None."""
        return self._records.get(identity)

    def list(self, kind: Optional[str] = None, namespace: Optional[str] = None) -> List[ResourceRecord]:
        """Records filtered by kind and namespace, sorted by identity."""
        records = list(self._records.values())
        return sorted(
            (r for r in records
             if (kind is None or r.kind == kind) and (namespace is None or r.namespace == namespace)),
            key=lambda r: r.identity,
        )

    def __len__(self) -> int:
        return len(self._records)

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked as listener(identity, reason) after each change."""
        self._listeners.append(listener)

    # -- writes ----------------------------------------------------------------

    def apply(
        self,
        identity: ResourceIdentity,
        spec: Dict[str, Any],
        expected_version: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        owner_references: Optional[Iterable[ResourceIdentity]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> ResourceRecord:
        """Record a desired-state write.

        Applying an identical spec and metadata is a no-op: the current record
        is returned unchanged, with no generation bump, no new version and no
        notification.

        Args:
            identity: Target identity
            spec: Specification document
            expected_version: If given, must equal the current resource version
            labels: Labels (None means no labels)
            owner_references: Owners of the record
            annotations: Annotations (None means no annotations)

        Returns:
            The stored record

        Raises:
            ValidationError: If the spec is invalid (nothing is persisted)
            Conflict: If expected_version is stale, or the record is being deleted
            ImmutableViolation: If an immutable ConfigMap/Secret would change
        """
        validate(identity.kind, spec, identity)
        candidate = ResourceRecord(
            identity=identity,
            spec=copy.deepcopy(spec or {}),
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
            owner_references=frozenset(owner_references or ()),
        )

        with self._lock:
            existing = self._records.get(identity)
            self._check_version(identity, existing, expected_version)

            if existing is None:
                record = replace(
                    candidate,
                    generation=1,
                    resource_version=self._bump(),
                    finalizers=self.finalizers,
                )
                logger.info(f"Created {identity} (generation 1)")
            else:
                if existing.is_deleting:
                    raise Conflict(identity, message=f"{identity} is being deleted")
                if existing.same_intent(candidate):
                    logger.debug(f"Apply of {identity} is a no-op")
                    return existing
                spec_changed = existing.spec != candidate.spec
                if spec_changed and is_immutable(existing):
                    raise ImmutableViolation(identity)
                record = replace(
                    existing,
                    spec=candidate.spec,
                    labels=candidate.labels,
                    annotations=candidate.annotations,
                    owner_references=candidate.owner_references,
                    generation=existing.generation + 1 if spec_changed else existing.generation,
                    resource_version=self._bump(),
                )
                logger.info(f"Updated {identity} (generation {record.generation})")

            self._records[identity] = record
            self.save()
        self._notify(identity, APPLIED)
        return record

    def update_status(
        self,
        identity: ResourceIdentity,
        status: Dict[str, Any],
        expected_version: Optional[str] = None,
    ) -> ResourceRecord:
        """Controller-side status write.

        Bumps the resource version but never the generation. Writing the
        status already stored is a no-op.

        Raises:
            NotFound: If the identity is unknown
            Conflict: If expected_version is stale
        """
        with self._lock:
            existing = self._records.get(identity)
            if existing is None:
                raise NotFound(identity)
            self._check_version(identity, existing, expected_version)
            if existing.status == status:
                return existing
            record = replace(existing, status=copy.deepcopy(status), resource_version=self._bump())
            self._records[identity] = record
            self.save()
        self._notify(identity, STATUS)
        return record

    def delete(self, identity: ResourceIdentity, expected_version: Optional[str] = None) -> Optional[ResourceRecord]:
        """Request deletion.

        Sets the deletion timestamp. The record stays in a finalizing state
        until every finalizer is removed; without finalizers it is purged
        immediately.

        Returns:
            The finalizing record, or None if it was purged

        Raises:
            NotFound: If the identity is unknown
            Conflict: If expected_version is stale
        """
        with self._lock:
            existing = self._records.get(identity)
            if existing is None:
                raise NotFound(identity)
            self._check_version(identity, existing, expected_version)
            if existing.is_deleting:
                return existing
            record = replace(
                existing,
                deletion_timestamp=datetime.now(timezone.utc).isoformat(),
                resource_version=self._bump(),
            )
            if not record.finalizers:
                del self._records[identity]
                self.save()
                reason = PURGED
                record = None
                logger.info(f"Deleted {identity}")
            else:
                self._records[identity] = record
                self.save()
                reason = DELETING
                logger.info(f"Deleting {identity}, waiting on finalizers {list(existing.finalizers)}")
        self._notify(identity, reason)
        return record

    def remove_finalizer(self, identity: ResourceIdentity, finalizer: str) -> Optional[ResourceRecord]:
        """Remove one finalizer; a deleting record without finalizers is purged.

        Returns:
            The updated record, or None if it was purged (or never existed)
        """
        with self._lock:
            existing = self._records.get(identity)
            if existing is None or finalizer not in existing.finalizers:
                return existing
            remaining = tuple(f for f in existing.finalizers if f != finalizer)
            if existing.is_deleting and not remaining:
                del self._records[identity]
                self.save()
                record = None
                reason = PURGED
                logger.info(f"Purged {identity}")
            else:
                record = replace(existing, finalizers=remaining, resource_version=self._bump())
                self._records[identity] = record
                self.save()
                reason = STATUS
        self._notify(identity, reason)
        return record

    # -- internals -------------------------------------------------------------

    def _check_version(
        self, identity: ResourceIdentity, existing: Optional[ResourceRecord], expected: Optional[str]
    ) -> None:
        if expected is None:
            return
        actual = existing.resource_version if existing is not None else None
        if actual != expected:
            raise Conflict(identity, expected, actual)

    def _bump(self) -> str:
        version = str(self._next_version)
        self._next_version += 1
        return version

    def _notify(self, identity: ResourceIdentity, reason: str) -> None:
        for listener in list(self._listeners):
            listener(identity, reason)

    def save(self) -> None:
        """Persist the store to its JSON file."""
        if not self.file_path:
            return

        data = {
            "version": "1.0",
            "nextVersion": self._next_version,
            "records": [r.to_dict() for r in sorted(self._records.values(), key=lambda r: r.identity)],
        }

        # Pretty-print for git-friendly diffs
        json_str = json.dumps(data, indent=2, sort_keys=True)
        Path(self.file_path).write_text(json_str)

        logger.debug(f"Saved desired state to {self.file_path}")

    def load(self) -> None:
        """Load the store from its JSON file."""
        if not self.file_path:
            return

        try:
            data = json.loads(Path(self.file_path).read_text())
            records = [ResourceRecord.from_dict(r) for r in data.get("records", [])]
            self._records = {r.identity: r for r in records}
            self._next_version = int(data.get("nextVersion", len(records) + 1))
            logger.info(f"Loaded {len(self._records)} records from desired state")
        except Exception as e:
            logger.error(f"Failed to load desired state: {e}")
            self._records = {}
            self._next_version = 1
