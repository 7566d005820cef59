"""Label selectors.

Selector relations (Service to Pods, Deployment to Pods) are derived: they
are evaluated against current labels every time and never stored.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

_OPERATORS = {"In", "NotIn", "Exists", "DoesNotExist"}


def matches(selector: Optional[Mapping[str, Any]], labels: Mapping[str, str]) -> bool:
    """Check labels against a selector.

    Accepts both selector forms found in manifests:

    - ``{"matchLabels": {...}, "matchExpressions": [...]}`` (Deployment, NetworkPolicy)
    - a plain ``{"app": "web"}`` mapping (Service, nodeSelector)

    An empty or missing selector matches everything.

    Raises:
        ValueError: If a match expression uses an unknown operator
    """
    if not selector:
        return True

    if "matchLabels" in selector or "matchExpressions" in selector:
        match_labels = selector.get("matchLabels") or {}
        expressions = selector.get("matchExpressions") or []
    else:
        match_labels = selector
        expressions = []

    for key, value in match_labels.items():
        if labels.get(key) != value:
            return False

    for expr in expressions:
        if not _matches_expression(expr, labels):
            return False

    return True


def _matches_expression(expr: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    key = expr.get("key")
    operator = expr.get("operator")
    values = expr.get("values") or []

    if operator not in _OPERATORS:
        raise ValueError(f"Unknown selector operator: {operator}")

    if operator == "In":
        return key in labels and labels[key] in values
    if operator == "NotIn":
        return key not in labels or labels[key] not in values
    if operator == "Exists":
        return key in labels
    return key not in labels


def select(records: Iterable[Any], selector: Optional[Mapping[str, Any]]) -> List[Any]:
    """Records whose labels match the selector, in input order."""
    return [r for r in records if matches(selector, r.labels)]


def selector_labels(selector: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Equality part of a selector (matchLabels, or the plain mapping)."""
    if not selector:
        return {}
    if "matchLabels" in selector or "matchExpressions" in selector:
        return dict(selector.get("matchLabels") or {})
    return dict(selector)
