"""
Konverge: a declarative Kubernetes-style reconciliation core.

Takes desired-state resource specifications (Deployments, StatefulSets,
Services, ConfigMaps, ...) and drives the observed state reported by an
external backend toward them through a level-triggered control loop.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
