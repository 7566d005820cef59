"""Konverge exceptions for error handling.

Validation, conflict, not-found and immutability errors are raised
synchronously to callers of the desired-state store. Execution errors are
raised inside the reconciler and turned into retries plus a status condition.
"""

from typing import Any, List, Optional


class KonvergeError(Exception):
    """Base class for every Konverge error."""


class ValidationError(KonvergeError):
    """Raised when a specification is malformed or incomplete.

    The first problem found is exposed as ``field``/``reason``; every problem
    is kept in ``violations`` so callers can report them all at once.

    Attributes:
        field: Dotted path of the offending field (e.g. "spec.replicas")
        reason: Human-readable description of the problem
        violations: All FieldViolations found (optional)
    """

    def __init__(self, field: str, reason: str, violations: Optional[List[Any]] = None) -> None:
        """Initialize ValidationError exception.

        Args:
            field: Dotted path of the offending field
            reason: Description of the problem
            violations: All field violations found (optional)
        """
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason
        self.violations = list(violations) if violations else []


class Conflict(KonvergeError):
    """Raised when a write names a stale resource version.

    The caller must re-read the record and retry; a conflicting write never
    overwrites.

    Attributes:
        identity: Identity being written
        expected: Version named by the caller
        actual: Current version (None when the record does not exist)
    """

    def __init__(
        self,
        identity: Any,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            message = f"{identity}: expected version {expected!r}, current is {actual!r}"
        super().__init__(message)
        self.identity = identity
        self.expected = expected
        self.actual = actual


class NotFound(KonvergeError):
    """Raised when an operation names an unknown identity."""

    def __init__(self, identity: Any) -> None:
        super().__init__(f"{identity} not found")
        self.identity = identity


class ImmutableViolation(KonvergeError):
    """Raised when a frozen record (immutable ConfigMap/Secret) would change."""

    def __init__(self, identity: Any) -> None:
        super().__init__(f"{identity} is immutable; only an identical re-apply is allowed")
        self.identity = identity


class ActionExecutionError(KonvergeError):
    """Raised when a backend call fails while executing a plan.

    Attributes:
        action: The Action that failed
        cause: The underlying exception (optional)
    """

    def __init__(self, message: str, action: Optional[Any] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.action = action
        self.cause = cause
