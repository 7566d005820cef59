"""In-memory implementation of the Backend protocol.

Stands in for the cluster API server in tests, simulations and the CLI:
- a global, monotonically increasing resource version
- one event queue per open watch stream
- fault injection (failed writes, dropped streams)
- a minimal kubelet: created pods can be moved to Running automatically
"""

import copy
import logging
import queue
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from konverge.core.errors import Conflict, NotFound
from konverge.core.schema.event import EventType, WatchEvent
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.k8s.constants import POD_RUNNING

logger = logging.getLogger(__name__)

# Sentinel pushed into a stream queue to end the stream
_CLOSED = object()


class InMemoryBackend:
    """Thread-safe in-memory cluster state.

    Example:
        >>> backend = InMemoryBackend()
        >>> identity = ResourceIdentity("Node", "", "node-a")
        >>> backend.write(identity, ResourceRecord(identity), None)
        '1'
        >>> [str(r.identity) for r in backend.list("Node")]
        ['Node//node-a']
    """

    def __init__(self, auto_run_pods: bool = True, watch_timeout: float = 0.1):
        """Initialize the backend.

        Args:
            auto_run_pods: Report newly created pods as Running, like a healthy kubelet
            watch_timeout: Seconds between bookmark events on an idle watch stream
        """
        self.auto_run_pods = auto_run_pods
        self.watch_timeout = watch_timeout
        self._records: Dict[ResourceIdentity, ResourceRecord] = {}
        self._version = 0
        self._lock = threading.RLock()
        self._streams: Dict[str, List[queue.Queue]] = defaultdict(list)
        self._failures: List[Exception] = []
        self.history: List[Tuple[str, ResourceIdentity]] = []

    # -- Backend protocol ------------------------------------------------------

    def list(self, kind: str) -> List[ResourceRecord]:
        with self._lock:
            return sorted(
                (r for r in self._records.values() if r.kind == kind), key=lambda r: r.identity
            )

    def watch(self, kind: str) -> "WatchStream":
        """Open a watch stream; ends when the kind is disconnected.

        The stream is registered immediately, so events written between
        this call and the first ``next()`` are not lost. Callers close the
        stream when they stop reading it.
        """
        stream: queue.Queue = queue.Queue()
        with self._lock:
            self._streams[kind].append(stream)
        return WatchStream(self, kind, stream)

    def _unregister(self, kind: str, stream: queue.Queue) -> None:
        with self._lock:
            if stream in self._streams[kind]:
                self._streams[kind].remove(stream)

    def write(self, identity: ResourceIdentity, record: ResourceRecord, expected_version: Optional[str]) -> str:
        with self._lock:
            self._maybe_fail("write", identity)
            existing = self._records.get(identity)
            if expected_version is None:
                if existing is not None:
                    raise Conflict(identity, None, existing.resource_version,
                                   message=f"{identity} already exists")
                event_type = EventType.ADDED
            else:
                if existing is None:
                    raise NotFound(identity)
                if existing.resource_version != expected_version:
                    raise Conflict(identity, expected_version, existing.resource_version)
                event_type = EventType.MODIFIED

            status = copy.deepcopy(record.status)
            if event_type == EventType.ADDED and identity.kind == "Pod" and self.auto_run_pods:
                status.setdefault("phase", POD_RUNNING)
            stored = replace(
                record,
                identity=identity,
                status=status,
                resource_version=self._bump(),
                deletion_timestamp=None,
            )
            self._records[identity] = stored
            self.history.append((event_type.value, identity))
            self._publish(WatchEvent(event_type, identity.kind, stored, stored.resource_version))
            logger.debug(f"Backend {event_type.value} {identity} at version {stored.resource_version}")
            return stored.resource_version

    def delete(self, identity: ResourceIdentity, expected_version: Optional[str]) -> None:
        with self._lock:
            self._maybe_fail("delete", identity)
            existing = self._records.get(identity)
            if existing is None:
                raise NotFound(identity)
            if expected_version is not None and existing.resource_version != expected_version:
                raise Conflict(identity, expected_version, existing.resource_version)
            del self._records[identity]
            version = self._bump()
            self.history.append((EventType.DELETED.value, identity))
            self._publish(WatchEvent(EventType.DELETED, identity.kind, existing, version))
            logger.debug(f"Backend Deleted {identity} at version {version}")

    # -- test and simulation hooks ---------------------------------------------

    def get(self, identity: ResourceIdentity) -> Optional[ResourceRecord]:
        with self._lock:
            return self._records.get(identity)

    def records(self) -> List[ResourceRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.identity)

    def set_status(self, identity: ResourceIdentity, status: Dict) -> str:
        """Replace the status of a live record (what a kubelet or cloud controller would do)."""
        with self._lock:
            existing = self._records.get(identity)
            if existing is None:
                raise NotFound(identity)
            stored = replace(existing, status=dict(status), resource_version=self._bump())
            self._records[identity] = stored
            self.history.append((EventType.MODIFIED.value, identity))
            self._publish(WatchEvent(EventType.MODIFIED, identity.kind, stored, stored.resource_version))
            return stored.resource_version

    def set_pod_phase(self, identity: ResourceIdentity, phase: str) -> str:
        """Report a pod phase (Pending, Running, Succeeded, Failed)."""
        with self._lock:
            existing = self._records.get(identity)
            if existing is None:
                raise NotFound(identity)
            status = dict(existing.status)
            status["phase"] = phase
            return self.set_status(identity, status)

    def remove(self, identity: ResourceIdentity) -> None:
        """Delete a record behind the controller's back (node failure, manual kubectl delete)."""
        self.delete(identity, None)

    def fail_next(self, count: int = 1, exc: Optional[Exception] = None) -> None:
        """Make the next ``count`` write/delete calls raise ``exc``."""
        error = exc or ConnectionError("injected backend failure")
        with self._lock:
            self._failures.extend([error] * count)

    def disconnect(self, kind: Optional[str] = None) -> None:
        """Close every open watch stream of a kind (all kinds when None)."""
        with self._lock:
            kinds = [kind] if kind is not None else list(self._streams)
            for name in kinds:
                for stream in self._streams.get(name, []):
                    stream.put(_CLOSED)
                self._streams[name] = []
        logger.info(f"Disconnected watch streams for {kind or 'all kinds'}")

    def watchers(self, kind: str) -> int:
        with self._lock:
            return len(self._streams.get(kind, []))

    def count(self, op: str, kind: Optional[str] = None) -> int:
        """How many Added/Modified/Deleted operations the history holds."""
        return sum(1 for event, identity in self.history
                   if event == op and (kind is None or identity.kind == kind))

    # -- internals -------------------------------------------------------------

    def _bump(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self, call: str, identity: ResourceIdentity) -> None:
        if self._failures:
            error = self._failures.pop(0)
            logger.warning(f"Injected failure on {call} {identity}: {error}")
            raise error

    def _publish(self, event: WatchEvent) -> None:
        for stream in self._streams.get(event.kind, []):
            stream.put(event)


class WatchStream:
    """Iterator over the events of one open watch.

    Idle streams yield bookmark events every ``watch_timeout`` seconds, like
    an API server. ``close()`` unregisters the stream; it is called on
    disconnect and is safe to call more than once.
    """

    def __init__(self, backend: InMemoryBackend, kind: str, events: queue.Queue):
        self._backend = backend
        self._kind = kind
        self._events = events
        self.closed = False

    def __iter__(self) -> Iterator[WatchEvent]:
        return self

    def __next__(self) -> WatchEvent:
        if self.closed:
            raise StopIteration
        try:
            item = self._events.get(timeout=self._backend.watch_timeout)
        except queue.Empty:
            return WatchEvent(EventType.BOOKMARK, self._kind, None, str(self._backend._version))
        if item is _CLOSED:
            self.close()
            raise StopIteration
        return item

    def close(self) -> None:
        self.closed = True
        self._backend._unregister(self._kind, self._events)
