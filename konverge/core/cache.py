"""Observed-State Cache: an eventually-consistent mirror of live cluster state.

The cache is fed by one WatchConsumer per kind (the single writer of that
kind) and read by many reconciler workers. Readers take no locks: each entry
is replaced by assigning a new record object, so a reader always sees some
complete, last-delivered record.

Ordering: resource versions are a monotonic per-identity ordering key. An
event older than what the cache already holds for that identity (including
a remembered delete) is discarded, which makes out-of-order delivery within
the resync window harmless.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from konverge.core.schema.backend import Backend
from konverge.core.schema.event import EventType, WatchEvent
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.selectors import matches

logger = logging.getLogger(__name__)

Listener = Callable[[EventType, ResourceRecord], None]
VersionKey = Tuple[int, Union[int, str]]


def version_key(resource_version: str) -> VersionKey:
    """Ordering key of a resource version.

    Versions are opaque tokens, but every backend in practice hands out
    increasing integers; those compare numerically, anything else compares
    as text after all numeric versions.
    """
    if resource_version.isdigit():
        return (0, int(resource_version))
    return (1, resource_version)


class ObservedStateCache:
    """In-memory mapping identity -> last-known live record.

    Example:
        >>> cache = ObservedStateCache()
        >>> cache.subscribe(lambda event_type, record: print(event_type.value, record.identity))
        >>> cache.handle(WatchEvent(EventType.ADDED, "Pod", pod, pod.resource_version))
        Added Pod/default/web-0
        True
    """

    def __init__(self) -> None:
        self._entries: Dict[ResourceIdentity, ResourceRecord] = {}
        self._tombstones: Dict[ResourceIdentity, str] = {}
        self._bookmarks: Dict[str, str] = {}
        self._listeners: List[Listener] = []
        self._changed = threading.Condition()

    # -- reads -----------------------------------------------------------------

    def get(self, identity: ResourceIdentity) -> Optional[ResourceRecord]:
        return self._entries.get(identity)

    def list(self, kind: str, namespace: Optional[str] = None) -> List[ResourceRecord]:
        """Records of a kind (optionally one namespace), sorted by identity."""
        records = list(self._entries.values())
        return sorted(
            (r for r in records
             if r.kind == kind and (namespace is None or r.namespace == namespace)),
            key=lambda r: r.identity,
        )

    def all(self) -> List[ResourceRecord]:
        return sorted(self._entries.values(), key=lambda r: r.identity)

    def owned_by(self, owner: ResourceIdentity) -> List[ResourceRecord]:
        """Records naming ``owner`` in their owner references."""
        records = list(self._entries.values())
        return sorted((r for r in records if r.is_owned_by(owner)), key=lambda r: r.identity)

    def descendants(self, owner: ResourceIdentity) -> List[ResourceRecord]:
        """Every record transitively owned by ``owner``, parents before children."""
        result: List[ResourceRecord] = []
        seen = {owner}
        frontier = [owner]
        while frontier:
            current = frontier.pop(0)
            for child in self.owned_by(current):
                if child.identity in seen:
                    continue
                seen.add(child.identity)
                result.append(child)
                frontier.append(child.identity)
        return result

    def select(self, kind: str, namespace: str, selector: Optional[Mapping]) -> List[ResourceRecord]:
        """Records of a kind in a namespace whose labels match the selector.

        Membership is recomputed on every call and never cached.
        """
        return [r for r in self.list(kind, namespace) if matches(selector, r.labels)]

    def kinds(self) -> List[str]:
        return sorted({identity.kind for identity in list(self._entries)})

    def bookmark(self, kind: str) -> Optional[str]:
        """Last bookmark version seen on a kind's stream."""
        return self._bookmarks.get(kind)

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, listener: Listener) -> None:
        """Register listener(event_type, record), called for every applied change."""
        self._listeners.append(listener)

    # -- writes (single writer per kind) ---------------------------------------

    def handle(self, event: WatchEvent) -> bool:
        """Apply one watch event.

        Returns:
            True if the event changed the cache, False if it was discarded
        """
        if event.type == EventType.BOOKMARK:
            self._bookmarks[event.kind] = event.resource_version
            return False

        record = event.record
        if record is None:
            logger.warning(f"Ignoring {event.type.value} event without a record on {event.kind}")
            return False

        identity = record.identity
        incoming = event.resource_version or record.resource_version
        if self._is_stale(identity, incoming):
            logger.warning(f"Discarding stale {event.type.value} for {identity} at version {incoming}")
            return False

        if event.type == EventType.DELETED:
            last = self._entries.get(identity, record)
            self._tombstones[identity] = incoming
            self._set(identity, None)
            self._emit(EventType.DELETED, last)
        else:
            self._tombstones.pop(identity, None)
            event_type = EventType.MODIFIED if identity in self._entries else EventType.ADDED
            self._set(identity, record)
            self._emit(event_type, record)
        return True

    def replace(self, kind: str, records: Iterable[ResourceRecord]) -> int:
        """Reconcile one kind against a full relist.

        Identities present locally but missing from the relist are treated as
        deleted; new or changed records are treated as added/modified.

        Returns:
            Number of identities that changed
        """
        fresh = {r.identity: r for r in records if r.kind == kind}
        changed = 0

        for identity, record in list(self._entries.items()):
            if identity.kind == kind and identity not in fresh:
                self._tombstones.pop(identity, None)
                self._set(identity, None)
                logger.info(f"Relist of {kind}: {identity} is gone")
                self._emit(EventType.DELETED, record)
                changed += 1

        for identity, record in fresh.items():
            current = self._entries.get(identity)
            self._tombstones.pop(identity, None)
            if current is not None and current.resource_version == record.resource_version:
                continue
            self._set(identity, record)
            self._emit(EventType.ADDED if current is None else EventType.MODIFIED, record)
            changed += 1

        logger.debug(f"Relist of {kind}: {len(fresh)} records, {changed} changed")
        return changed

    def wait_for(self, identity: ResourceIdentity, resource_version: Optional[str], timeout: float) -> bool:
        """Block until the cache reflects a write.

        Args:
            identity: Identity that was written
            resource_version: Version written, or None to wait for absence
            timeout: Seconds to wait

        Returns:
            True if the cache caught up before the timeout
        """

        def caught_up() -> bool:
            current = self._entries.get(identity)
            if resource_version is None:
                return current is None
            if current is None:
                return identity in self._tombstones and not self._is_stale(identity, resource_version)
            return version_key(current.resource_version) >= version_key(resource_version)

        with self._changed:
            return self._changed.wait_for(caught_up, timeout=timeout)

    # -- internals -------------------------------------------------------------

    def _is_stale(self, identity: ResourceIdentity, incoming: str) -> bool:
        if not incoming:
            return False
        current = self._entries.get(identity)
        known = current.resource_version if current is not None else self._tombstones.get(identity)
        if not known:
            return False
        return version_key(incoming) <= version_key(known)

    def _set(self, identity: ResourceIdentity, record: Optional[ResourceRecord]) -> None:
        with self._changed:
            if record is None:
                self._entries.pop(identity, None)
            else:
                self._entries[identity] = record
            self._changed.notify_all()

    def _emit(self, event_type: EventType, record: ResourceRecord) -> None:
        for listener in list(self._listeners):
            listener(event_type, record)


class WatchConsumer(threading.Thread):
    """Single writer of one kind: relist, then follow the watch stream.

    When the stream ends (disconnect, server timeout), the consumer relists
    and reconciles the cache by diffing identity sets before watching again.
    Failed relists are retried after ``retry_seconds``.
    """

    def __init__(self, backend: Backend, kind: str, cache: ObservedStateCache, retry_seconds: float = 1.0):
        super().__init__(name=f"watch-{kind}", daemon=True)
        self.backend = backend
        self.kind = kind
        self.cache = cache
        self.retry_seconds = retry_seconds
        self.synced = threading.Event()
        self._stop_event = threading.Event()

    def relist(self) -> int:
        return self.cache.replace(self.kind, self.backend.list(self.kind))

    def run(self) -> None:
        logger.info(f"Watch consumer for {self.kind} started")
        while not self._stop_event.is_set():
            try:
                # Open the stream first; events racing the relist are replayed
                # afterwards and dropped as stale
                stream = self.backend.watch(self.kind)
                try:
                    self.relist()
                    self.synced.set()
                    for event in stream:
                        if self._stop_event.is_set():
                            break
                        self.cache.handle(event)
                finally:
                    close = getattr(stream, "close", None)
                    if close is not None:
                        close()
                if not self._stop_event.is_set():
                    logger.info(f"Watch stream for {self.kind} ended, relisting")
            except Exception:
                logger.exception(f"Watch consumer for {self.kind} failed, retrying in {self.retry_seconds}s")
                self._stop_event.wait(self.retry_seconds)
        logger.info(f"Watch consumer for {self.kind} stopped")

    def stop(self) -> None:
        self._stop_event.set()

    def wait_synced(self, timeout: Optional[float] = None) -> bool:
        return self.synced.wait(timeout)
