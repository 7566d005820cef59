"""Kubernetes YAML manifests as desired-state records.

This module provides the ManifestBundle class that holds one or more
(possibly multi-document) YAML files, and the conversions between a
manifest document and a ResourceRecord.
"""

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List

from ruamel.yaml import YAML

from konverge.core.errors import ValidationError
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.k8s.constants import API_VERSIONS, CLUSTER_SCOPED_KINDS, TOP_LEVEL_PAYLOAD_KINDS

DEFAULT_NAMESPACE = "default"

# Top-level manifest keys that are never part of a ConfigMap/Secret payload
_ENVELOPE_KEYS = {"apiVersion", "kind", "metadata", "status"}


def _create_yaml_instance() -> YAML:
    """Create configured ruamel.yaml instance for manifest I/O.

    Returns:
        YAML instance that:
        - Loads plain Python dicts and lists (safe loader)
        - Does not wrap long strings such as image references
        - Writes block style
    """
    yaml = YAML(typ="safe", pure=True)
    yaml.width = 4096
    yaml.default_flow_style = False
    yaml.allow_unicode = True
    return yaml


def _plain(value: Any) -> Any:
    """Deep-convert loader output to plain dicts/lists/scalars."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def load_documents(content: str, source: str = "<string>") -> List[Dict[str, Any]]:
    """Parse every non-empty document of a YAML stream.

    Raises:
        ValidationError: If the YAML is malformed or a document is not a mapping
    """
    yaml = _create_yaml_instance()
    try:
        documents = [_plain(doc) for doc in yaml.load_all(content) if doc is not None]
    except Exception as e:
        raise ValidationError(source, f"invalid YAML: {e}") from e
    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ValidationError(f"{source}[{index}]", "manifest document must be a mapping")
    return documents


def record_from_manifest(doc: Dict[str, Any]) -> ResourceRecord:
    """Build a desired-state record from a manifest document.

    The spec is ``doc["spec"]``, except for ConfigMap and Secret whose payload
    (data, binaryData, stringData, type, immutable) sits at the top level.
    Namespaced kinds default to the ``default`` namespace.

    Owner references name ``kind/namespace/name`` identities; a reference
    without namespace inherits the document's namespace.

    Raises:
        ValidationError: If kind or metadata.name is missing, or metadata is
                         not shaped like a Kubernetes object's
    """
    kind = doc.get("kind")
    metadata = doc.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata", "must be a mapping")
    name = metadata.get("name")
    if not kind or not isinstance(kind, str):
        raise ValidationError("kind", "kind is required")
    if not name or not isinstance(name, str):
        raise ValidationError("metadata.name", "name is required")

    if kind in CLUSTER_SCOPED_KINDS:
        namespace = metadata.get("namespace", "") or ""
    else:
        namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
    if not isinstance(namespace, str):
        raise ValidationError("metadata.namespace", "must be a string")

    if kind in TOP_LEVEL_PAYLOAD_KINDS:
        spec = {k: v for k, v in doc.items() if k not in _ENVELOPE_KEYS}
    else:
        spec = doc.get("spec") or {}

    refs = metadata.get("ownerReferences") or []
    if not isinstance(refs, list):
        raise ValidationError("metadata.ownerReferences", "must be a list")
    owners = set()
    for i, ref in enumerate(refs):
        if not isinstance(ref, dict) or not ref.get("kind") or not ref.get("name"):
            raise ValidationError(f"metadata.ownerReferences[{i}]", "kind and name are required")
        owners.add(ResourceIdentity(ref["kind"], ref.get("namespace", namespace), ref["name"]))

    for key in ("labels", "annotations"):
        if not isinstance(metadata.get(key) or {}, dict):
            raise ValidationError(f"metadata.{key}", "must be a mapping")

    return ResourceRecord(
        identity=ResourceIdentity(kind, namespace, name),
        spec=spec,
        status=doc.get("status") or {},
        labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
        annotations={str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()},
        owner_references=frozenset(owners),
    )


def record_to_manifest(record: ResourceRecord, include_status: bool = True) -> Dict[str, Any]:
    """Render a record as a manifest document (apiVersion/kind/metadata/spec/status)."""
    metadata: Dict[str, Any] = {"name": record.name}
    if record.namespace:
        metadata["namespace"] = record.namespace
    if record.labels:
        metadata["labels"] = dict(record.labels)
    if record.annotations:
        metadata["annotations"] = dict(record.annotations)
    if record.owner_references:
        metadata["ownerReferences"] = [
            {"kind": o.kind, "namespace": o.namespace, "name": o.name}
            for o in sorted(record.owner_references)
        ]
    if record.resource_version:
        metadata["resourceVersion"] = record.resource_version
    metadata["generation"] = record.generation

    doc: Dict[str, Any] = {
        "apiVersion": API_VERSIONS.get(record.kind, "v1"),
        "kind": record.kind,
        "metadata": metadata,
    }
    if record.kind in TOP_LEVEL_PAYLOAD_KINDS:
        doc.update(record.spec)
    elif record.spec:
        doc["spec"] = record.spec
    if include_status and record.status:
        doc["status"] = record.status
    return doc


def dump_documents(documents: List[Dict[str, Any]]) -> str:
    """Serialize documents as a multi-document YAML stream."""
    yaml = _create_yaml_instance()
    stream = io.StringIO()
    yaml.dump_all(documents, stream)
    return stream.getvalue()


@dataclass(frozen=True)
class ManifestBundle:
    """One or more Kubernetes YAML files.

    Attributes:
        files: Mapping from file path to YAML content as string.
               Example: ``{"web.yaml": "apiVersion: apps/v1\\n..."}``

    Example:
        >>> bundle = ManifestBundle(files={"settings.yaml": SETTINGS_CONFIGMAP})
        >>> [str(r.identity) for r in bundle.records()]
        ['ConfigMap/default/settings']
    """
    files: Dict[str, str]

    def documents(self) -> Iterator[Dict[str, Any]]:
        """Every manifest document, in file order then document order."""
        for path in sorted(self.files):
            yield from load_documents(self.files[path], source=path)

    def records(self) -> List[ResourceRecord]:
        """Desired-state records for every document.

        Raises:
            ValidationError: If a document is malformed, or two documents
                             share an identity
        """
        records: Dict[ResourceIdentity, ResourceRecord] = {}
        for doc in self.documents():
            record = record_from_manifest(doc)
            if record.identity in records:
                raise ValidationError("metadata.name", f"duplicate resource {record.identity}")
            records[record.identity] = record
        return list(records.values())

    def write_to_dir(self, dir_path: str) -> None:
        """Write every file below a directory, creating it if needed."""
        root = Path(dir_path)
        root.mkdir(parents=True, exist_ok=True)
        for rel_path, content in self.files.items():
            file_path = root / rel_path
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")

    @classmethod
    def from_records(cls, records: List[ResourceRecord], include_status: bool = True) -> "ManifestBundle":
        """One file per kind, named ``<kind>.yaml`` in lower case."""
        by_kind: Dict[str, List[Dict[str, Any]]] = {}
        for record in sorted(records, key=lambda r: r.identity):
            by_kind.setdefault(record.kind, []).append(record_to_manifest(record, include_status))
        return cls(files={f"{kind.lower()}.yaml": dump_documents(docs) for kind, docs in by_kind.items()})

    @classmethod
    def from_paths(cls, paths: List[str], pattern: str = "*.yaml") -> "ManifestBundle":
        """Load files and directories (directories contribute files matching ``pattern``).

        Files are keyed by their path as reached from the argument, so equally
        named files in different directories are all kept.
        """
        files: Dict[str, str] = {}
        for raw in paths:
            path = Path(raw)
            if path.is_dir():
                for rel_path, content in cls.from_dir(str(path), pattern).files.items():
                    files[str(path / rel_path)] = content
            else:
                files[str(path)] = path.read_text(encoding="utf-8")
        return cls(files=files)

    @classmethod
    def from_dir(cls, dir_path: str, pattern: str = "*.yaml") -> "ManifestBundle":
        """Load every file matching ``pattern`` below a directory.

        Args:
            dir_path: Directory containing YAML files
            pattern: Glob pattern for files to include (default: ``*.yaml``)
        """
        root = Path(dir_path)
        files = {}
        for file_path in sorted(root.rglob(pattern)):
            if file_path.is_file():
                files[str(file_path.relative_to(root))] = file_path.read_text(encoding="utf-8")
        return cls(files=files)
