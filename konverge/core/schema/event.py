"""Watch events delivered by the backend."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from konverge.core.schema.record import ResourceRecord


class EventType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    BOOKMARK = "Bookmark"


@dataclass(frozen=True)
class WatchEvent:
    """One entry of a per-kind watch stream.

    Attributes:
        type: Added, Modified, Deleted or Bookmark
        kind: Kind of the watched stream
        record: The record after the change (last known state for Deleted);
                None for bookmarks
        resource_version: Version carried by the event; for Deleted events
                          this is the version of the delete itself
    """
    type: EventType
    kind: str
    record: Optional[ResourceRecord] = None
    resource_version: str = ""
