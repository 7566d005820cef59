"""Field violation model for reporting specification problems."""

from dataclasses import dataclass
from typing import List


@dataclass
class FieldViolation:
    """A single problem found while validating a specification.

    Attributes:
        field: Dotted path of the field (e.g. "spec.template.spec.containers[0].image")
        reason: Human-readable description of the problem
        severity: Severity level - "error" or "warning"
    """

    field: str
    reason: str
    severity: str = "error"

    @property
    def path(self) -> List[str]:
        """Field path as a list of segments."""
        return [part for part in self.field.split(".") if part]

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"
