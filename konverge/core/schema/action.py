"""Action plans: the output of the diff/plan engine.

An ActionPlan is an ordered list of steps. Each step is a batch of actions
that may be executed together; the next step is only valid once the previous
one has been observed. Inside a step, actions run in list order.

Example::

    ActionPlan(steps=[
        [Action("Update", Deployment/default/web, record=...),
         Action("Create", Pod/default/web-5d8c7f-3, record=...)],
        [Action("Delete", Pod/default/web-81a2b0-0)],
    ])
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord

Op = Literal["Create", "Update", "Delete", "Reject"]


@dataclass(frozen=True)
class Action:
    """Single atomic change against the backend.

    Attributes:
        op: "Create", "Update", "Delete" or "Reject"
        identity: Target of the action
        record: Record to write (Create/Update), or the last known record (Delete)
        reason: Why the action was planned ("ImmutableViolation" for rejects)
    """
    op: Op
    identity: ResourceIdentity
    record: Optional[ResourceRecord] = None
    reason: str = ""

    def __repr__(self) -> str:
        if self.reason:
            return f"{self.op}({self.identity}: {self.reason})"
        return f"{self.op}({self.identity})"


@dataclass
class ActionPlan:
    """Ordered batches of actions moving observed state toward desired state.

    Attributes:
        steps: Batches of actions, executed one batch at a time
        meta: Optional metadata (strategy name, replica counts, ...)
    """
    steps: List[List[Action]] = field(default_factory=list)
    meta: Optional[Dict[str, Any]] = None

    @property
    def actions(self) -> List[Action]:
        """All actions in execution order."""
        return [action for step in self.steps for action in step]

    @property
    def is_empty(self) -> bool:
        return not any(self.steps)

    @property
    def rejected(self) -> Optional[Action]:
        """The Reject action, if the plan refuses the change."""
        for action in self.actions:
            if action.op == "Reject":
                return action
        return None

    def add_step(self, actions: List[Action]) -> None:
        """Append a batch, ignoring empty ones."""
        if actions:
            self.steps.append(list(actions))

    def count(self, op: str, kind: Optional[str] = None) -> int:
        return sum(
            1 for a in self.actions
            if a.op == op and (kind is None or a.identity.kind == kind)
        )
