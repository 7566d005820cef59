"""Shared utility functions for K8s specifications.

This module provides common helper functions used across the validation,
rollout and status modules to avoid code duplication.
"""

import hashlib
import json
import math
from typing import Any, Dict, Optional, Union

from konverge.k8s.constants import (
    MANAGED_BY_ANNOTATION,
    MANAGED_BY_VALUE,
    POD_PENDING,
    POD_RUNNING,
)


def dig(document: Any, *keys: Any, default: Any = None) -> Any:
    """Walk nested dicts/lists, returning default on any missing step.

    Example:
        >>> dig({"spec": {"ports": [{"port": 80}]}}, "spec", "ports", 0, "port")
        80
    """
    value = document
    for key in keys:
        if isinstance(value, dict):
            if key not in value:
                return default
            value = value[key]
        elif isinstance(value, list) and isinstance(key, int):
            if key >= len(value) or key < -len(value):
                return default
            value = value[key]
        else:
            return default
    return value


def get_pod_template_labels(spec: dict) -> Dict[str, str]:
    """Extract labels from a workload's pod template.

    Args:
        spec: Workload spec (Deployment, StatefulSet, DaemonSet, Job)

    Returns:
        Label mapping, empty dict if not found
    """
    return dict(dig(spec, "template", "metadata", "labels", default={}) or {})


def get_containers(pod_spec: dict) -> list:
    """Extract containers list from a pod spec.

    Args:
        pod_spec: Pod spec dict (a Pod's spec or a template's spec)

    Returns:
        List of container dicts, empty list if not found
    """
    return list(pod_spec.get("containers", []) or [])


def get_images(pod_spec: dict) -> list:
    """Container images of a pod spec, in container order."""
    return [c.get("image") for c in get_containers(pod_spec)]


def template_hash(template: dict) -> str:
    """Stable short hash of a pod template.

    Pods carry this value in the pod-template-hash label; a pod whose hash
    differs from the workload's current template is out of date.
    """
    canonical = json.dumps(template, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:10]


def pod_phase(record: Any) -> str:
    """Phase of a pod record, Pending when the kubelet has not reported yet."""
    return dig(record.status, "phase", default=POD_PENDING)


def is_available(record: Any) -> bool:
    """A pod counts as available when it runs and is not being deleted."""
    return pod_phase(record) == POD_RUNNING and not record.is_deleting


def is_managed(record: Any) -> bool:
    """True for backend objects written by the controller."""
    return record.annotations.get(MANAGED_BY_ANNOTATION) == MANAGED_BY_VALUE


def resolve_int_or_percent(
    value: Optional[Union[int, str]], total: int, default: Union[int, str], round_up: bool
) -> int:
    """Resolve an int-or-percent field (maxSurge, maxUnavailable) against a total.

    Args:
        value: Absolute int, percent string such as "25%", or None
        total: Replica count the percentage applies to
        default: Value used when ``value`` is None
        round_up: Round percentages up (maxSurge) or down (maxUnavailable)

    Returns:
        Absolute non-negative count

    Raises:
        ValueError: If the value is neither an int nor a percent string
    """
    if value is None:
        value = default
    if isinstance(value, bool):
        raise ValueError(f"invalid int-or-percent value: {value!r}")
    if isinstance(value, int):
        return max(0, value)
    text = str(value).strip()
    if text.endswith("%"):
        percent = int(text[:-1])
        scaled = percent * total / 100.0
        return max(0, math.ceil(scaled) if round_up else math.floor(scaled))
    return max(0, int(text))
