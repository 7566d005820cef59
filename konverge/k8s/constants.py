"""K8s constants used across the validation, planning and manifest modules.

This module contains constants that are shared across multiple modules
to avoid circular import issues.
"""

# apiVersion written back when a record is rendered as a manifest
API_VERSIONS = {
    "Pod": "v1",
    "Service": "v1",
    "ConfigMap": "v1",
    "Secret": "v1",
    "Namespace": "v1",
    "Node": "v1",
    "PersistentVolume": "v1",
    "PersistentVolumeClaim": "v1",
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "Ingress": "networking.k8s.io/v1",
    "NetworkPolicy": "networking.k8s.io/v1",
    "HorizontalPodAutoscaler": "autoscaling/v2",
    "VerticalPodAutoscaler": "autoscaling.k8s.io/v1",
    "Job": "batch/v1",
    "CronJob": "batch/v1",
}

# Cluster-scoped resource kinds that don't belong to a namespace
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "Node",
    "PersistentVolume",
    "StorageClass",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
}

# Kinds whose payload sits at the top level of the manifest instead of under spec
TOP_LEVEL_PAYLOAD_KINDS = {"ConfigMap", "Secret"}

# Kinds that may be frozen with `immutable: true`
IMMUTABLE_CAPABLE_KINDS = {"ConfigMap", "Secret"}

# Kinds whose pods are planned by konverge.k8s.rollout
WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "Job"}

# Kinds the controller watches by default
WATCHED_KINDS = tuple(sorted(set(API_VERSIONS)))

# Label carrying the hash of the pod template a pod was created from
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

# Label carrying a StatefulSet pod's own name (stable network identity)
STATEFULSET_POD_NAME_LABEL = "statefulset.kubernetes.io/pod-name"

# Annotation marking backend objects written by the controller
MANAGED_BY_ANNOTATION = "konverge.io/managed-by"
MANAGED_BY_VALUE = "konverge"

# Pod phases reported by the kubelet
POD_PENDING = "Pending"
POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"

# Status condition types
CONDITION_READY = "Ready"
CONDITION_PROGRESSING = "Progressing"
CONDITION_DEGRADED = "Degraded"

# Label carrying the owning Job's name
JOB_NAME_LABEL = "job-name"

# Annotation on records the controller keeps after their creator is gone
# (StatefulSet volume claims)
RETAIN_ANNOTATION = "konverge.io/retain"
