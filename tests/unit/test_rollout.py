"""Tests for workload rollout strategies."""

from dataclasses import replace

import pytest

from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.k8s.constants import (
    JOB_NAME_LABEL,
    MANAGED_BY_ANNOTATION,
    POD_TEMPLATE_HASH_LABEL,
    RETAIN_ANNOTATION,
    STATEFULSET_POD_NAME_LABEL,
)
from konverge.k8s.examples import DB_STATEFULSET, LOG_DAEMONSET, MIGRATE_JOB, WEB_DEPLOYMENT, example_nodes
from konverge.k8s.manifest import load_documents, record_from_manifest
from konverge.k8s.rollout import (
    build_pod,
    daemonset_steps,
    deployment_steps,
    eligible_nodes,
    job_steps,
    rolling_bounds,
    statefulset_steps,
    workload_steps,
)
from konverge.k8s.utils import template_hash


def _record(manifest):
    return record_from_manifest(load_documents(manifest)[0])


def _with_image(record, image):
    spec = record.copy_spec()
    spec["template"]["spec"]["containers"][0]["image"] = image
    return replace(record, spec=spec)


def _with_spec(record, **changes):
    spec = record.copy_spec()
    spec.update(changes)
    return replace(record, spec=spec)


def _running(pod, phase="Running"):
    return replace(pod, status={"phase": phase})


def _ops(batch):
    return [(a.op, a.identity.name) for a in batch]


# ============================================================================
# Deployment
# ============================================================================


class TestRollingBounds:
    """Tests for maxSurge/maxUnavailable resolution."""

    @pytest.mark.parametrize("rolling,replicas,expected", [
        ({}, 4, (1, 1)),
        ({}, 10, (3, 2)),
        ({"maxSurge": 1, "maxUnavailable": 1}, 3, (1, 1)),
        ({"maxSurge": "50%", "maxUnavailable": "50%"}, 3, (2, 1)),
        ({"maxSurge": 0, "maxUnavailable": 0}, 3, (0, 1)),
        ({"maxSurge": 2, "maxUnavailable": "10%"}, 3, (2, 0)),
    ])
    def test_bounds(self, rolling, replicas, expected):
        """Test defaults, percentages and the both-zero guard."""
        spec = {"strategy": {"type": "RollingUpdate", "rollingUpdate": rolling}}
        assert rolling_bounds(spec, replicas) == expected


class TestDeploymentSteps:
    """Tests for deployment_steps()."""

    def test_scale_from_zero(self):
        """Test a new Deployment creates every replica in one batch."""
        desired = _record(WEB_DEPLOYMENT)
        steps = deployment_steps(desired, [])

        assert len(steps) == 1
        assert [a.op for a in steps[0]] == ["Create"] * 3
        pod = steps[0][0].record
        assert pod.identity.kind == "Pod"
        assert pod.is_owned_by(desired.identity)
        assert pod.labels["app"] == "web"
        assert pod.labels[POD_TEMPLATE_HASH_LABEL] == template_hash(desired.spec["template"])
        assert MANAGED_BY_ANNOTATION in pod.annotations

    def test_converged_is_empty(self):
        """Test matching pods produce no batches."""
        desired = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(desired, [])[0]]
        assert deployment_steps(desired, pods) == []

    def test_rolling_update_respects_bounds(self):
        """Test 3 replicas, maxSurge=1, maxUnavailable=1, image A to B."""
        old = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(old, [])[0]]
        desired = _with_image(old, "registry.example.com/web:2.0.0")
        new_hash = template_hash(desired.spec["template"])

        steps = deployment_steps(desired, pods)

        assert len(steps) == 3
        live = {p.name: True for p in pods}
        for batch in steps:
            creates = [a for a in batch if a.op == "Create"]
            deletes = [a for a in batch if a.op == "Delete"]
            assert len(creates) == 1 and len(deletes) == 1
            # creations first within the batch
            assert batch.index(creates[0]) < batch.index(deletes[0])

            for action in creates:
                assert action.record.labels[POD_TEMPLATE_HASH_LABEL] == new_hash
                live[action.identity.name] = False
            assert len(live) <= 3 + 1
            for action in deletes:
                assert live[action.identity.name], "only available pods count against the floor"
                del live[action.identity.name]
            assert sum(1 for available in live.values() if available) >= 3 - 1
            live = {name: True for name in live}

        assert all(
            a.record.labels[POD_TEMPLATE_HASH_LABEL] != new_hash for batch in steps for a in batch if a.op == "Delete"
        )

    def test_waits_for_new_pods_to_become_available(self):
        """Test the first batch only: unavailable new pods block further deletes."""
        old = _record(WEB_DEPLOYMENT)
        old_pods = [_running(a.record) for a in deployment_steps(old, [])[0]]
        desired = _with_image(old, "registry.example.com/web:2.0.0")
        first = deployment_steps(desired, old_pods)[0]

        deleted = {a.identity for a in first if a.op == "Delete"}
        pending = [a.record for a in first if a.op == "Create"]
        state = [p for p in old_pods if p.identity not in deleted] + pending

        # One more pod may be surged, but no available old pod may go
        batch = deployment_steps(desired, state)[0]
        assert [a.op for a in batch] == ["Create"]

        state += [a.record for a in batch]
        assert deployment_steps(desired, state) == []

    def test_unavailable_pods_are_deleted_first(self):
        """Test that crashed old pods are replaced before healthy ones."""
        old = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(old, [])[0]]
        pods[0] = _running(pods[0], "Failed")
        desired = _with_image(old, "registry.example.com/web:2.0.0")

        first = deployment_steps(desired, pods)[0]
        deleted = [a.identity.name for a in first if a.op == "Delete"]
        assert deleted == [pods[0].name]

    def test_scale_down_removes_unavailable_then_highest_names(self):
        """Test surplus pods of the current template."""
        desired = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(desired, [])[0]]
        smaller = _with_spec(desired, replicas=1)

        steps = deployment_steps(smaller, pods)
        assert len(steps) == 1
        assert sorted(a.identity.name for a in steps[0]) == sorted(p.name for p in pods[1:])
        assert all(a.op == "Delete" for a in steps[0])

    def test_recreate(self):
        """Test Recreate deletes every old pod before creating."""
        old = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(old, [])[0]]
        desired = _with_image(_with_spec(old, strategy={"type": "Recreate"}), "web:2")

        steps = deployment_steps(desired, pods)
        assert [a.op for a in steps[0]] == ["Delete"] * 3
        assert [a.op for a in steps[1]] == ["Create"] * 3


# ============================================================================
# StatefulSet
# ============================================================================


class TestStatefulSetSteps:
    """Tests for statefulset_steps()."""

    def _converged(self, desired):
        """Every pod and claim a fresh StatefulSet ends up with."""
        pods, claims = [], []
        for batch in statefulset_steps(desired, [], []):
            for action in batch:
                if action.identity.kind == "Pod":
                    pods.append(_running(action.record))
                else:
                    claims.append(action.record)
        return pods, claims

    def test_ordered_creation(self):
        """Test ordinals are created one per batch, lowest first, claim before pod."""
        desired = _record(DB_STATEFULSET)
        steps = statefulset_steps(desired, [], [])

        assert [_ops(batch) for batch in steps] == [
            [("Create", "data-db-0"), ("Create", "db-0")],
            [("Create", "data-db-1"), ("Create", "db-1")],
            [("Create", "data-db-2"), ("Create", "db-2")],
        ]
        pod = steps[0][1].record
        assert pod.spec["hostname"] == "db-0"
        assert pod.spec["subdomain"] == "db"
        assert pod.labels[STATEFULSET_POD_NAME_LABEL] == "db-0"

        claim = steps[0][0].record
        assert claim.identity.kind == "PersistentVolumeClaim"
        assert claim.owner_references == frozenset()
        assert claim.annotations[RETAIN_ANNOTATION] == "true"
        assert claim.spec["resources"]["requests"]["storage"] == "10Gi"

    def test_next_ordinal_waits_for_readiness(self):
        """Test ordinal 1 is not created while ordinal 0 is pending."""
        desired = _record(DB_STATEFULSET)
        first = statefulset_steps(desired, [], [])[0]
        pending_pod = first[1].record
        claims = [first[0].record]

        assert statefulset_steps(desired, [pending_pod], claims) == []
        steps = statefulset_steps(desired, [_running(pending_pod)], claims)
        assert _ops(steps[0]) == [("Create", "data-db-1"), ("Create", "db-1")]

    def test_existing_claims_are_reused(self):
        """Test scaling back up reattaches retained claims."""
        desired = _record(DB_STATEFULSET)
        pods, claims = self._converged(desired)
        steps = statefulset_steps(desired, pods[:1], claims)
        assert _ops(steps[0]) == [("Create", "db-1")]

    def test_rolling_update_highest_ordinal_first(self):
        """Test out-of-date pods are replaced from the highest ordinal down."""
        old = _record(DB_STATEFULSET)
        pods, claims = self._converged(old)
        desired = _with_image(old, "postgres:17")

        steps = statefulset_steps(desired, pods, claims)
        assert [_ops(batch) for batch in steps] == [
            [("Delete", "db-2"), ("Create", "db-2")],
            [("Delete", "db-1"), ("Create", "db-1")],
            [("Delete", "db-0"), ("Create", "db-0")],
        ]

    def test_partition(self):
        """Test ordinals below the partition keep the old template."""
        old = _record(DB_STATEFULSET)
        pods, claims = self._converged(old)
        desired = _with_spec(_with_image(old, "postgres:17"),
                             updateStrategy={"type": "RollingUpdate", "rollingUpdate": {"partition": 2}})
        steps = statefulset_steps(desired, pods, claims)
        assert [_ops(batch) for batch in steps] == [[("Delete", "db-2"), ("Create", "db-2")]]

    def test_on_delete_never_replaces(self):
        """Test OnDelete leaves running pods alone."""
        old = _record(DB_STATEFULSET)
        pods, claims = self._converged(old)
        desired = _with_spec(_with_image(old, "postgres:17"), updateStrategy={"type": "OnDelete"})
        assert statefulset_steps(desired, pods, claims) == []

    def test_scale_down_highest_first(self):
        """Test surplus ordinals terminate one per batch, highest first."""
        old = _record(DB_STATEFULSET)
        pods, claims = self._converged(old)
        desired = _with_spec(old, replicas=1)
        steps = statefulset_steps(desired, pods, claims)
        assert [_ops(batch) for batch in steps] == [[("Delete", "db-2")], [("Delete", "db-1")]]

    def test_parallel(self):
        """Test Parallel creates every ordinal at once."""
        desired = _with_spec(_record(DB_STATEFULSET), podManagementPolicy="Parallel")
        steps = statefulset_steps(desired, [], [])
        assert len(steps) == 1
        assert sum(1 for a in steps[0] if a.identity.kind == "Pod") == 3

    def test_stray_pods_are_deleted(self):
        """Test pods without an ordinal name are removed first."""
        desired = _record(DB_STATEFULSET)
        pods, claims = self._converged(desired)
        stray = build_pod(desired, "db-extra")
        steps = statefulset_steps(desired, pods + [_running(stray)], claims)
        assert _ops(steps[0]) == [("Delete", "db-extra")]


# ============================================================================
# DaemonSet
# ============================================================================


def _nodes():
    nodes = example_nodes(3)
    windows = ResourceRecord(ResourceIdentity("Node", "", "win-0"), labels={"kubernetes.io/os": "windows"})
    cordoned = ResourceRecord(ResourceIdentity("Node", "", "node-9"),
                              spec={"unschedulable": True}, labels={"kubernetes.io/os": "linux"})
    return nodes + [windows, cordoned]


class TestDaemonSetSteps:
    """Tests for daemonset_steps()."""

    def test_eligible_nodes(self):
        """Test nodeSelector and unschedulable nodes."""
        desired = _record(LOG_DAEMONSET)
        assert eligible_nodes(desired, _nodes()) == ["node-0", "node-1", "node-2"]

    def test_one_pod_per_node(self):
        """Test initial placement."""
        desired = _record(LOG_DAEMONSET)
        steps = daemonset_steps(desired, [], _nodes())
        assert len(steps) == 1
        assert sorted(a.record.spec["nodeName"] for a in steps[0]) == ["node-0", "node-1", "node-2"]
        assert all(a.identity.namespace == "kube-system" for a in steps[0])

    def test_rolling_replacement(self):
        """Test one node at a time with maxUnavailable=1."""
        old = _record(LOG_DAEMONSET)
        pods = [_running(a.record) for a in daemonset_steps(old, [], _nodes())[0]]
        desired = _with_image(old, "fluent/fluent-bit:3.1")

        steps = daemonset_steps(desired, pods, _nodes())
        assert len(steps) == 3
        for batch in steps:
            assert [a.op for a in batch] == ["Delete", "Create"]

    def test_pods_on_ineligible_nodes_are_removed(self):
        """Test a pod left on a node that no longer matches."""
        desired = _record(LOG_DAEMONSET)
        pods = [_running(a.record) for a in daemonset_steps(desired, [], _nodes())[0]]
        remaining = [n for n in _nodes() if n.name != "node-2"]

        steps = daemonset_steps(desired, pods, remaining)
        assert [(a.op, a.record.spec["nodeName"]) for a in steps[0]] == [("Delete", "node-2")]

    def test_new_node_gets_a_pod(self):
        """Test scheduling onto an added node."""
        desired = _record(LOG_DAEMONSET)
        pods = [_running(a.record) for a in daemonset_steps(desired, [], example_nodes(2))[0]]
        steps = daemonset_steps(desired, pods, example_nodes(3))
        assert [(a.op, a.record.spec["nodeName"]) for a in steps[0]] == [("Create", "node-2")]


# ============================================================================
# Job
# ============================================================================


class TestJobSteps:
    """Tests for job_steps()."""

    def _job(self, **changes):
        return _with_spec(_record(MIGRATE_JOB), **changes)

    def test_parallelism(self):
        """Test pods up to parallelism."""
        desired = self._job(completions=3, parallelism=2)
        steps = job_steps(desired, [])
        assert _ops(steps[0]) == [("Create", "migrate-0"), ("Create", "migrate-1")]
        assert steps[0][0].record.labels[JOB_NAME_LABEL] == "migrate"

    def test_remaining_completions(self):
        """Test succeeded pods count toward completions."""
        desired = self._job(completions=3, parallelism=2)
        done = _running(build_pod(desired, "migrate-0"), "Succeeded")
        active = _running(build_pod(desired, "migrate-1"))
        steps = job_steps(desired, [done, active])
        assert _ops(steps[0]) == [("Create", "migrate-2")]

    def test_complete(self):
        """Test nothing is planned once completions are reached."""
        desired = self._job()
        done = _running(build_pod(desired, "migrate-0"), "Succeeded")
        assert job_steps(desired, [done]) == []

    def test_failed_pods_are_retried(self):
        """Test failures below backoffLimit get a fresh pod."""
        desired = self._job(backoffLimit=2)
        failed = _running(build_pod(desired, "migrate-0"), "Failed")
        assert _ops(job_steps(desired, [failed])[0]) == [("Create", "migrate-1")]

    def test_backoff_limit(self):
        """Test active pods are terminated once the limit is exceeded."""
        desired = self._job(backoffLimit=1, parallelism=2, completions=2)
        failed = [_running(build_pod(desired, f"migrate-{i}"), "Failed") for i in range(2)]
        active = _running(build_pod(desired, "migrate-2"))
        steps = job_steps(desired, failed + [active])
        assert _ops(steps[0]) == [("Delete", "migrate-2")]


class TestWorkloadSteps:
    """Tests for dispatch in workload_steps()."""

    def test_ignores_foreign_and_deleting_pods(self):
        """Test only live pods owned by the workload count."""
        desired = _record(WEB_DEPLOYMENT)
        pods = [_running(a.record) for a in deployment_steps(desired, [])[0]]
        foreign = replace(pods[0], identity=ResourceIdentity("Pod", "default", "other"),
                          owner_references=frozenset())
        deleting = replace(pods[1], deletion_timestamp="2024-01-01T00:00:00+00:00")

        steps = workload_steps(desired, [pods[0], pods[2], foreign, deleting])
        assert [a.op for a in steps[0]] == ["Create"]

    def test_non_workload(self):
        """Test kinds without pods."""
        record = ResourceRecord(ResourceIdentity("Service", "default", "web"))
        assert workload_steps(record, []) == []

    def test_template_copy_is_independent(self):
        """Test built pods never share the template dict."""
        desired = _record(WEB_DEPLOYMENT)
        pod = build_pod(desired, "web-x")
        pod.spec["containers"].append({"name": "sidecar"})
        assert len(desired.spec["template"]["spec"]["containers"]) == 1
