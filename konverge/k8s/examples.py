"""Example K8s manifests for testing and demos.

This module provides sample manifests covering the workload kinds, plus a
cluster of nodes for DaemonSet scheduling.
"""

from typing import List

from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord

# Deployment rolled from image A to image B in the demo
WEB_DEPLOYMENT = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: default
  labels:
    app: web
spec:
  replicas: 3
  selector:
    matchLabels:
      app: web
  strategy:
    type: RollingUpdate
    rollingUpdate:
      maxSurge: 1
      maxUnavailable: 1
  template:
    metadata:
      labels:
        app: web
    spec:
      containers:
      - name: web
        image: registry.example.com/web:1.0.0
        ports:
        - containerPort: 8080
        resources:
          requests:
            cpu: "250m"
            memory: "128Mi"
          limits:
            cpu: "500m"
            memory: "256Mi"
"""

WEB_SERVICE = """apiVersion: v1
kind: Service
metadata:
  name: web
  namespace: default
spec:
  type: ClusterIP
  selector:
    app: web
  ports:
  - port: 80
    targetPort: 8080
    protocol: TCP
"""

SETTINGS_CONFIGMAP = """apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  namespace: default
data:
  LOG_LEVEL: info
  FEATURE_FLAGS: "search,checkout"
immutable: true
"""

DB_SECRET = """apiVersion: v1
kind: Secret
metadata:
  name: db-credentials
  namespace: default
type: Opaque
data:
  username: YWRtaW4=
  password: czNjcjN0
"""

DB_STATEFULSET = """apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: db
  namespace: default
spec:
  serviceName: db
  replicas: 3
  selector:
    matchLabels:
      app: db
  template:
    metadata:
      labels:
        app: db
    spec:
      containers:
      - name: postgres
        image: postgres:16
        resources:
          requests:
            cpu: "500m"
            memory: "1Gi"
  volumeClaimTemplates:
  - metadata:
      name: data
    spec:
      accessModes: ["ReadWriteOnce"]
      resources:
        requests:
          storage: 10Gi
"""

LOG_DAEMONSET = """apiVersion: apps/v1
kind: DaemonSet
metadata:
  name: log-agent
  namespace: kube-system
spec:
  selector:
    matchLabels:
      app: log-agent
  updateStrategy:
    type: RollingUpdate
    rollingUpdate:
      maxUnavailable: 1
  template:
    metadata:
      labels:
        app: log-agent
    spec:
      nodeSelector:
        kubernetes.io/os: linux
      containers:
      - name: agent
        image: fluent/fluent-bit:3.0
"""

MIGRATE_JOB = """apiVersion: batch/v1
kind: Job
metadata:
  name: migrate
  namespace: default
spec:
  completions: 1
  parallelism: 1
  backoffLimit: 3
  template:
    metadata:
      labels:
        app: migrate
    spec:
      restartPolicy: Never
      containers:
      - name: migrate
        image: registry.example.com/migrate:1.0.0
"""

ALL_EXAMPLES = {
    "web-deployment.yaml": WEB_DEPLOYMENT,
    "web-service.yaml": WEB_SERVICE,
    "settings-configmap.yaml": SETTINGS_CONFIGMAP,
    "db-secret.yaml": DB_SECRET,
    "db-statefulset.yaml": DB_STATEFULSET,
    "log-daemonset.yaml": LOG_DAEMONSET,
    "migrate-job.yaml": MIGRATE_JOB,
}


def example_nodes(count: int = 3) -> List[ResourceRecord]:
    """Linux worker nodes named node-0 .. node-N."""
    return [
        ResourceRecord(
            identity=ResourceIdentity("Node", "", f"node-{i}"),
            labels={"kubernetes.io/os": "linux", "kubernetes.io/hostname": f"node-{i}"},
        )
        for i in range(count)
    ]
