"""
Core kind-agnostic components for Konverge.

This package contains the resource schemas, the desired-state store, the
observed-state cache, the work queue and the reconciliation loop. The
Kubernetes-specific rules (validation, rollout strategies, manifests) live
in konverge.k8s.
"""

__all__ = []
