"""Backend protocol for the external cluster persistence/API layer."""

from typing import Iterator, List, Optional, Protocol

from konverge.core.schema.event import WatchEvent
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord


class Backend(Protocol):
    """External state backend interface.

    The reconciliation core never stores live cluster state itself. It
    reads it through ``list``/``watch`` and changes it through
    ``write``/``delete``. Implementations can be a real API server client or
    the in-memory backend used in tests and simulations.

    Example:
        class MyBackend:
            def watch(self, kind): ...
            def list(self, kind): ...
            def write(self, identity, record, expected_version): ...
            def delete(self, identity, expected_version): ...
    """

    def watch(self, kind: str) -> Iterator[WatchEvent]:
        """Stream of change events for one kind.

        The iterator ends when the stream disconnects; the caller relists
        and watches again. If the iterator has a ``close()`` method the
        caller invokes it once it stops reading.
        """
        ...

    def list(self, kind: str) -> List[ResourceRecord]:
        """Every live record of a kind (used for relisting)."""
        ...

    def write(
        self, identity: ResourceIdentity, record: ResourceRecord, expected_version: Optional[str]
    ) -> str:
        """Create or update a record and return its new resource version.

        ``expected_version=None`` means create-only.

        Raises:
            Conflict: If the record exists with another version (or exists at
                      all, for a create)
        """
        ...

    def delete(self, identity: ResourceIdentity, expected_version: Optional[str]) -> None:
        """Delete a record; ``expected_version=None`` deletes unconditionally.

        Raises:
            NotFound: If the record does not exist
            Conflict: If the record has another version
        """
        ...
