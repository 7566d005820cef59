"""Kubernetes (K8s) resource kinds for Konverge.

This package provides the kind-specific parts of the reconciliation core:
- validation: per-kind spec rules and quantity parsing
- rollout: pod batches for Deployment, StatefulSet, DaemonSet and Job
- status: status documents written back by the reconciler
- manifest: YAML manifests to and from records
"""
