"""Per-kind validation of resource specifications.

Each checker walks one kind's spec and collects FieldViolations; nothing is
raised until ``validate`` has seen the whole document, so a caller gets every
problem in one pass. Validation is pure and has no side effects.
"""

import base64
import binascii
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from konverge.core.errors import ValidationError
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.violation import FieldViolation
from konverge.k8s.constants import CLUSTER_SCOPED_KINDS
from konverge.k8s.quantity import canonical, parse_positive_quantity
from konverge.k8s.utils import dig, resolve_int_or_percent

_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_CONFIG_KEY_RE = re.compile(r"^[-._a-zA-Z0-9]+$")
_CRON_FIELD_RE = re.compile(r"^[\d*/,\-A-Za-z?]+$")

ACCESS_MODES = {"ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany", "ReadWriteOncePod"}
SERVICE_TYPES = {"ClusterIP", "NodePort", "LoadBalancer", "ExternalName"}
PATH_TYPES = {"Exact", "Prefix", "ImplementationSpecific"}
RECLAIM_POLICIES = {"Retain", "Delete", "Recycle"}
VPA_UPDATE_MODES = {"Off", "Initial", "Recreate", "Auto"}
CRON_MACROS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}

Checker = Callable[[dict, str, List[FieldViolation]], None]


def _fail(violations: List[FieldViolation], field: str, reason: str) -> None:
    violations.append(FieldViolation(field=field, reason=reason))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_non_negative_int(spec: dict, key: str, prefix: str, violations: List[FieldViolation],
                            minimum: int = 0) -> None:
    if key not in spec:
        return
    value = spec[key]
    if not _is_int(value) or value < minimum:
        _fail(violations, f"{prefix}.{key}", f"must be an integer >= {minimum}, got {value!r}")


def _check_enum(value: Any, allowed: set, field: str, violations: List[FieldViolation]) -> None:
    if value is not None and (not isinstance(value, str) or value not in allowed):
        _fail(violations, field, f"must be one of {sorted(allowed)}, got {value!r}")


def _mapping(value: Any, field: str, violations: List[FieldViolation]) -> dict:
    """A nested section as a dict; anything but a mapping or null is reported and read as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        _fail(violations, field, "must be a mapping")
        return {}
    return value


def _entries(value: Any, field: str, violations: List[FieldViolation]) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        _fail(violations, field, "must be a list")
        return []
    return value


def _mappings(value: Any, field: str, violations: List[FieldViolation]) -> Iterator[Tuple[int, dict]]:
    """Yield ``(index, entry)`` for the mapping entries of a list, reporting the rest."""
    for i, entry in enumerate(_entries(value, field, violations)):
        if isinstance(entry, dict):
            yield i, entry
        else:
            _fail(violations, f"{field}[{i}]", "must be a mapping")


def _check_resources(resources: dict, prefix: str, violations: List[FieldViolation]) -> None:
    """Requests and limits must parse, and a request may not exceed its limit."""
    parsed: Dict[str, Dict[str, int]] = {"requests": {}, "limits": {}}
    for section in ("requests", "limits"):
        for name, value in _mapping(resources.get(section), f"{prefix}.{section}", violations).items():
            field = f"{prefix}.{section}.{name}"
            try:
                parsed[section][name] = canonical(name, value, field)
            except ValidationError as e:
                _fail(violations, e.field, e.reason)
    for name, request in parsed["requests"].items():
        limit = parsed["limits"].get(name)
        if limit is not None and request > limit:
            _fail(violations, f"{prefix}.requests.{name}",
                  f"request {resources['requests'][name]!r} exceeds limit {resources['limits'][name]!r}")


def _check_pod(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    containers = list(_mappings(spec.get("containers"), f"{prefix}.containers", violations))
    if not spec.get("containers"):
        _fail(violations, f"{prefix}.containers", "at least one container is required")
    init_containers = list(_mappings(spec.get("initContainers"), f"{prefix}.initContainers", violations))
    seen = set()
    for group, entries in (("containers", containers), ("initContainers", init_containers)):
        for i, container in entries:
            field = f"{prefix}.{group}[{i}]"
            name = container.get("name")
            if not name or not isinstance(name, str):
                _fail(violations, f"{field}.name", "container name is required")
            elif name in seen:
                _fail(violations, f"{field}.name", f"duplicate container name {name!r}")
            else:
                seen.add(name)
            if not container.get("image") or not isinstance(container["image"], str):
                _fail(violations, f"{field}.image", "container image is required")
            resources = _mapping(container.get("resources"), f"{field}.resources", violations)
            if resources:
                _check_resources(resources, f"{field}.resources", violations)
    _check_enum(spec.get("restartPolicy"), {"Always", "OnFailure", "Never"},
                f"{prefix}.restartPolicy", violations)


def _check_selector_and_template(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    """Shared workload rules: non-empty selector that matches the template labels."""
    selector = _mapping(spec.get("selector"), f"{prefix}.selector", violations)
    if "matchLabels" in selector or "matchExpressions" in selector:
        match_labels = _mapping(selector.get("matchLabels"), f"{prefix}.selector.matchLabels", violations)
    else:
        match_labels = selector
    template_labels = _mapping(dig(spec, "template", "metadata", "labels"),
                               f"{prefix}.template.metadata.labels", violations)
    if not match_labels and not selector.get("matchExpressions"):
        _fail(violations, f"{prefix}.selector.matchLabels", "selector must not be empty")
    for key, value in match_labels.items():
        if template_labels.get(key) != value:
            _fail(violations, f"{prefix}.template.metadata.labels",
                  f"selector {key}={value} does not match template labels")
    template_spec = dig(spec, "template", "spec")
    if not isinstance(template_spec, dict):
        _fail(violations, f"{prefix}.template.spec", "pod template spec is required")
    else:
        _check_pod(template_spec, f"{prefix}.template.spec", violations)


def _check_deployment(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    _check_non_negative_int(spec, "replicas", prefix, violations)
    _check_selector_and_template(spec, prefix, violations)

    strategy = _mapping(spec.get("strategy"), f"{prefix}.strategy", violations)
    _check_enum(strategy.get("type"), {"RollingUpdate", "Recreate"}, f"{prefix}.strategy.type", violations)
    rolling = _mapping(strategy.get("rollingUpdate"), f"{prefix}.strategy.rollingUpdate", violations)
    if rolling:
        replicas = spec.get("replicas", 1) if _is_int(spec.get("replicas", 1)) else 1
        try:
            resolve_int_or_percent(rolling.get("maxSurge"), replicas, "25%", round_up=True)
            resolve_int_or_percent(rolling.get("maxUnavailable"), replicas, "25%", round_up=False)
        except ValueError as e:
            _fail(violations, f"{prefix}.strategy.rollingUpdate", str(e))
        else:
            zero_surge = rolling.get("maxSurge") in (0, "0", "0%")
            zero_unavailable = rolling.get("maxUnavailable") in (0, "0", "0%")
            if zero_surge and zero_unavailable:
                _fail(violations, f"{prefix}.strategy.rollingUpdate",
                      "maxSurge and maxUnavailable may not both be zero")


def _check_pvc(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    modes = _entries(spec.get("accessModes"), f"{prefix}.accessModes", violations)
    if not modes:
        _fail(violations, f"{prefix}.accessModes", "at least one access mode is required")
    for mode in modes:
        _check_enum(mode, ACCESS_MODES, f"{prefix}.accessModes", violations)
    storage = dig(spec, "resources", "requests", "storage")
    field = f"{prefix}.resources.requests.storage"
    if storage is None:
        _fail(violations, field, "storage request is required")
    else:
        try:
            parse_positive_quantity(storage, field)
        except ValidationError as e:
            _fail(violations, e.field, e.reason)


def _check_statefulset(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    _check_non_negative_int(spec, "replicas", prefix, violations)
    _check_selector_and_template(spec, prefix, violations)
    if not spec.get("serviceName"):
        _fail(violations, f"{prefix}.serviceName", "serviceName is required")
    _check_enum(spec.get("podManagementPolicy"), {"OrderedReady", "Parallel"},
                f"{prefix}.podManagementPolicy", violations)
    update = _mapping(spec.get("updateStrategy"), f"{prefix}.updateStrategy", violations)
    _check_enum(update.get("type"), {"RollingUpdate", "OnDelete"},
                f"{prefix}.updateStrategy.type", violations)
    rolling_field = f"{prefix}.updateStrategy.rollingUpdate"
    _check_non_negative_int(_mapping(update.get("rollingUpdate"), rolling_field, violations), "partition",
                            rolling_field, violations)
    claims_field = f"{prefix}.volumeClaimTemplates"
    for i, claim in _mappings(spec.get("volumeClaimTemplates"), claims_field, violations):
        field = f"{claims_field}[{i}]"
        if not dig(claim, "metadata", "name"):
            _fail(violations, f"{field}.metadata.name", "claim template name is required")
        _check_pvc(_mapping(claim.get("spec"), f"{field}.spec", violations), f"{field}.spec", violations)


def _check_daemonset(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    _check_selector_and_template(spec, prefix, violations)
    update = _mapping(spec.get("updateStrategy"), f"{prefix}.updateStrategy", violations)
    _check_enum(update.get("type"), {"RollingUpdate", "OnDelete"},
                f"{prefix}.updateStrategy.type", violations)
    rolling = _mapping(update.get("rollingUpdate"), f"{prefix}.updateStrategy.rollingUpdate", violations)
    if "maxUnavailable" in rolling:
        try:
            resolve_int_or_percent(rolling["maxUnavailable"], 1, 1, round_up=False)
        except ValueError as e:
            _fail(violations, f"{prefix}.updateStrategy.rollingUpdate.maxUnavailable", str(e))


def _check_service(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    service_type = spec.get("type", "ClusterIP")
    _check_enum(service_type, SERVICE_TYPES, f"{prefix}.type", violations)
    if service_type == "ExternalName":
        if not spec.get("externalName"):
            _fail(violations, f"{prefix}.externalName", "externalName is required for ExternalName services")
        return
    if not spec.get("ports"):
        _fail(violations, f"{prefix}.ports", "at least one port is required")
    for i, port in _mappings(spec.get("ports"), f"{prefix}.ports", violations):
        field = f"{prefix}.ports[{i}]"
        number = port.get("port")
        if not _is_int(number) or not 1 <= number <= 65535:
            _fail(violations, f"{field}.port", f"must be in 1..65535, got {number!r}")
        node_port = port.get("nodePort")
        if node_port is not None:
            if service_type not in ("NodePort", "LoadBalancer"):
                _fail(violations, f"{field}.nodePort", f"nodePort is not allowed for {service_type}")
            elif not _is_int(node_port) or not 30000 <= node_port <= 32767:
                _fail(violations, f"{field}.nodePort", f"must be in 30000..32767, got {node_port!r}")
        _check_enum(port.get("protocol"), {"TCP", "UDP", "SCTP"}, f"{field}.protocol", violations)


def _check_configmap(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    sections = {section: _mapping(spec.get(section), section, violations) for section in ("data", "binaryData")}
    for section, payload in sections.items():
        for key in payload:
            if not _CONFIG_KEY_RE.match(str(key)):
                _fail(violations, f"{section}.{key}", "invalid key")
    overlap = set(sections["data"]) & set(sections["binaryData"])
    for key in sorted(overlap):
        _fail(violations, f"binaryData.{key}", "key duplicated in data")


def _check_secret(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    for key, value in _mapping(spec.get("data"), "data", violations).items():
        if not _CONFIG_KEY_RE.match(str(key)):
            _fail(violations, f"data.{key}", "invalid key")
            continue
        try:
            base64.b64decode(str(value), validate=True)
        except (binascii.Error, ValueError):
            _fail(violations, f"data.{key}", "value must be base64 encoded")
    if "type" in spec and not isinstance(spec["type"], str):
        _fail(violations, "type", "must be a string")


def _check_pv(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    storage = dig(spec, "capacity", "storage")
    field = f"{prefix}.capacity.storage"
    if storage is None:
        _fail(violations, field, "capacity is required")
    else:
        try:
            parse_positive_quantity(storage, field)
        except ValidationError as e:
            _fail(violations, e.field, e.reason)
    if not spec.get("accessModes"):
        _fail(violations, f"{prefix}.accessModes", "at least one access mode is required")
    for mode in _entries(spec.get("accessModes"), f"{prefix}.accessModes", violations):
        _check_enum(mode, ACCESS_MODES, f"{prefix}.accessModes", violations)
    _check_enum(spec.get("persistentVolumeReclaimPolicy"), RECLAIM_POLICIES,
                f"{prefix}.persistentVolumeReclaimPolicy", violations)


def _check_ingress(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    if not spec.get("rules") and not spec.get("defaultBackend"):
        _fail(violations, f"{prefix}.rules", "rules or defaultBackend is required")
    for i, rule in _mappings(spec.get("rules"), f"{prefix}.rules", violations):
        http = _mapping(rule.get("http"), f"{prefix}.rules[{i}].http", violations)
        paths_field = f"{prefix}.rules[{i}].http.paths"
        for j, path in _mappings(http.get("paths"), paths_field, violations):
            field = f"{paths_field}[{j}]"
            value = path.get("path", "")
            if not isinstance(value, str) or not value.startswith("/"):
                _fail(violations, f"{field}.path", "path must start with '/'")
            path_type = path.get("pathType")
            if not isinstance(path_type, str) or path_type not in PATH_TYPES:
                _fail(violations, f"{field}.pathType",
                      f"must be one of {sorted(PATH_TYPES)}, got {path_type!r}")
            if not dig(path, "backend", "service", "name"):
                _fail(violations, f"{field}.backend.service.name", "backend service name is required")


def _check_target_ref(ref: Any, field: str, violations: List[FieldViolation]) -> None:
    if not isinstance(ref, dict) or not ref.get("kind") or not ref.get("name"):
        _fail(violations, field, "kind and name are required")


def _check_hpa(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    _check_target_ref(spec.get("scaleTargetRef"), f"{prefix}.scaleTargetRef", violations)
    _check_non_negative_int(spec, "minReplicas", prefix, violations, minimum=1)
    max_replicas = spec.get("maxReplicas")
    if not _is_int(max_replicas) or max_replicas < 1:
        _fail(violations, f"{prefix}.maxReplicas", f"must be an integer >= 1, got {max_replicas!r}")
    elif _is_int(spec.get("minReplicas", 1)) and max_replicas < spec.get("minReplicas", 1):
        _fail(violations, f"{prefix}.maxReplicas", "must be >= minReplicas")


def _check_vpa(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    _check_target_ref(spec.get("targetRef"), f"{prefix}.targetRef", violations)
    _check_enum(dig(spec, "updatePolicy", "updateMode"), VPA_UPDATE_MODES,
                f"{prefix}.updatePolicy.updateMode", violations)


def _check_network_policy(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    if "podSelector" not in spec:
        _fail(violations, f"{prefix}.podSelector", "podSelector is required (use {} for all pods)")
    for policy_type in _entries(spec.get("policyTypes"), f"{prefix}.policyTypes", violations):
        _check_enum(policy_type, {"Ingress", "Egress"}, f"{prefix}.policyTypes", violations)


def _check_job(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    template_spec = dig(spec, "template", "spec")
    if not isinstance(template_spec, dict):
        _fail(violations, f"{prefix}.template.spec", "pod template spec is required")
    else:
        _check_pod(template_spec, f"{prefix}.template.spec", violations)
        restart = template_spec.get("restartPolicy")
        if restart not in ("Never", "OnFailure"):
            _fail(violations, f"{prefix}.template.spec.restartPolicy",
                  f"must be Never or OnFailure, got {restart!r}")
    _check_non_negative_int(spec, "completions", prefix, violations, minimum=1)
    _check_non_negative_int(spec, "parallelism", prefix, violations)
    _check_non_negative_int(spec, "backoffLimit", prefix, violations)


def _check_cronjob(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    schedule = spec.get("schedule")
    if not isinstance(schedule, str) or not schedule.strip():
        _fail(violations, f"{prefix}.schedule", "schedule is required")
    elif schedule.strip() not in CRON_MACROS:
        fields = schedule.split()
        if len(fields) != 5 or not all(_CRON_FIELD_RE.match(f) for f in fields):
            _fail(violations, f"{prefix}.schedule", f"expected five cron fields, got {schedule!r}")
    _check_enum(spec.get("concurrencyPolicy"), {"Allow", "Forbid", "Replace"},
                f"{prefix}.concurrencyPolicy", violations)
    job_spec = dig(spec, "jobTemplate", "spec")
    if not isinstance(job_spec, dict):
        _fail(violations, f"{prefix}.jobTemplate.spec", "job template is required")
    else:
        _check_job(job_spec, f"{prefix}.jobTemplate.spec", violations)


def _check_namespace(spec: dict, prefix: str, violations: List[FieldViolation]) -> None:
    pass


CHECKS: Dict[str, Checker] = {
    "Pod": _check_pod,
    "Deployment": _check_deployment,
    "StatefulSet": _check_statefulset,
    "DaemonSet": _check_daemonset,
    "Service": _check_service,
    "ConfigMap": _check_configmap,
    "Secret": _check_secret,
    "PersistentVolumeClaim": _check_pvc,
    "PersistentVolume": _check_pv,
    "Ingress": _check_ingress,
    "HorizontalPodAutoscaler": _check_hpa,
    "VerticalPodAutoscaler": _check_vpa,
    "NetworkPolicy": _check_network_policy,
    "Job": _check_job,
    "CronJob": _check_cronjob,
    "Namespace": _check_namespace,
}


def check(kind: str, spec: Any) -> List[FieldViolation]:
    """Collect every validation problem of a spec.

    Unknown kinds are accepted with an opaque spec.

    Args:
        kind: Resource kind
        spec: Specification document

    Returns:
        List of FieldViolations (empty if the spec is valid)
    """
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        return [FieldViolation(field="spec", reason="spec must be a mapping")]
    checker = CHECKS.get(kind)
    if checker is None:
        return []
    violations: List[FieldViolation] = []
    checker(spec, "spec", violations)
    return violations


def check_identity(identity: ResourceIdentity) -> List[FieldViolation]:
    """Name and namespace rules shared by all kinds."""
    violations: List[FieldViolation] = []
    if not identity.kind:
        _fail(violations, "kind", "kind is required")
    if not identity.name or len(identity.name) > 253 or not _DNS_SUBDOMAIN_RE.match(identity.name):
        _fail(violations, "metadata.name", f"invalid name {identity.name!r}")
    if identity.kind in CLUSTER_SCOPED_KINDS:
        if identity.namespace:
            _fail(violations, "metadata.namespace", f"{identity.kind} is cluster-scoped")
    elif not identity.namespace:
        _fail(violations, "metadata.namespace", f"{identity.kind} requires a namespace")
    elif not _DNS_SUBDOMAIN_RE.match(identity.namespace):
        _fail(violations, "metadata.namespace", f"invalid namespace {identity.namespace!r}")
    return violations


def validate(kind: str, spec: Any, identity: Optional[ResourceIdentity] = None) -> None:
    """Validate a spec, raising on the first problem found.

    Raises:
        ValidationError: ``field``/``reason`` of the first problem; every
                         problem is available in ``violations``
    """
    violations = check_identity(identity) if identity is not None else []
    violations.extend(check(kind, spec))
    if violations:
        first = violations[0]
        raise ValidationError(first.field, first.reason, violations)
