"""
Core schema definitions for identities, records, actions, events and the backend.

These kind-agnostic dataclasses and protocols form the foundation
of the Konverge system.
"""

from konverge.core.schema.action import Action, ActionPlan
from konverge.core.schema.backend import Backend
from konverge.core.schema.event import EventType, WatchEvent
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.schema.violation import FieldViolation

__all__ = [
    "Action",
    "ActionPlan",
    "Backend",
    "EventType",
    "FieldViolation",
    "ResourceIdentity",
    "ResourceRecord",
    "WatchEvent",
]
