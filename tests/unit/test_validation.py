"""Tests for per-kind spec validation."""

import copy

import pytest

from konverge.core.errors import ValidationError
from konverge.core.schema.identity import ResourceIdentity
from konverge.k8s.examples import ALL_EXAMPLES
from konverge.k8s.manifest import load_documents, record_from_manifest
from konverge.k8s.validation import check, check_identity, validate

DEPLOYMENT_SPEC = {
    "replicas": 2,
    "selector": {"matchLabels": {"app": "web"}},
    "template": {
        "metadata": {"labels": {"app": "web"}},
        "spec": {
            "containers": [{
                "name": "web",
                "image": "web:1.0.0",
                "resources": {
                    "requests": {"cpu": "250m", "memory": "128Mi"},
                    "limits": {"cpu": "500m", "memory": "256Mi"},
                },
            }],
        },
    },
}


def _fields(violations):
    return [v.field for v in violations]


class TestExamples:
    """Every bundled example manifest is valid."""

    @pytest.mark.parametrize("name", sorted(ALL_EXAMPLES))
    def test_example_is_valid(self, name):
        """Test example manifests pass identity and spec checks."""
        record = record_from_manifest(load_documents(ALL_EXAMPLES[name])[0])
        assert check_identity(record.identity) == []
        assert check(record.kind, record.spec) == []


class TestWorkloads:
    """Tests for Deployment, StatefulSet, DaemonSet and Job rules."""

    def test_valid_deployment(self):
        """Test a complete Deployment spec."""
        assert check("Deployment", DEPLOYMENT_SPEC) == []

    def test_negative_replicas(self):
        """Test replicas must be a non-negative integer."""
        spec = dict(DEPLOYMENT_SPEC, replicas=-1)
        assert "spec.replicas" in _fields(check("Deployment", spec))

    def test_selector_must_match_template(self):
        """Test selector/template label agreement."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["selector"] = {"matchLabels": {"app": "api"}}
        assert "spec.template.metadata.labels" in _fields(check("Deployment", spec))

    def test_empty_selector(self):
        """Test that a selector is required."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        del spec["selector"]
        assert "spec.selector.matchLabels" in _fields(check("Deployment", spec))

    def test_missing_containers(self):
        """Test at least one container is required."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["template"]["spec"]["containers"] = []
        assert "spec.template.spec.containers" in _fields(check("Deployment", spec))

    def test_missing_image(self):
        """Test every container needs an image."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        del spec["template"]["spec"]["containers"][0]["image"]
        assert "spec.template.spec.containers[0].image" in _fields(check("Deployment", spec))

    def test_request_exceeds_limit(self):
        """Test a request above its limit is rejected."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["template"]["spec"]["containers"][0]["resources"]["requests"]["memory"] = "1Gi"
        fields = _fields(check("Deployment", spec))
        assert "spec.template.spec.containers[0].resources.requests.memory" in fields

    def test_invalid_quantity(self):
        """Test unparseable quantities are reported with their path."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["template"]["spec"]["containers"][0]["resources"]["limits"]["cpu"] = "fast"
        fields = _fields(check("Deployment", spec))
        assert "spec.template.spec.containers[0].resources.limits.cpu" in fields

    def test_surge_and_unavailable_both_zero(self):
        """Test a rolling update that could never progress."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["strategy"] = {"type": "RollingUpdate", "rollingUpdate": {"maxSurge": 0, "maxUnavailable": "0%"}}
        assert "spec.strategy.rollingUpdate" in _fields(check("Deployment", spec))

    def test_unknown_strategy(self):
        """Test strategy type enum."""
        spec = dict(DEPLOYMENT_SPEC, strategy={"type": "BlueGreen"})
        assert "spec.strategy.type" in _fields(check("Deployment", spec))

    def test_statefulset_requires_service_name(self):
        """Test serviceName is required."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        assert "spec.serviceName" in _fields(check("StatefulSet", spec))

    def test_statefulset_claim_storage(self):
        """Test claim templates need a positive storage request."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["serviceName"] = "db"
        spec["volumeClaimTemplates"] = [{
            "metadata": {"name": "data"},
            "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "0"}}},
        }]
        fields = _fields(check("StatefulSet", spec))
        assert fields == ["spec.volumeClaimTemplates[0].spec.resources.requests.storage"]

    def test_job_restart_policy(self):
        """Test Job pods may not restart Always."""
        spec = {"template": copy.deepcopy(DEPLOYMENT_SPEC["template"])}
        spec["template"]["spec"]["restartPolicy"] = "Always"
        assert "spec.template.spec.restartPolicy" in _fields(check("Job", spec))

    def test_cronjob_schedule(self):
        """Test cron schedules need five fields or a macro."""
        job = {"spec": {"template": copy.deepcopy(DEPLOYMENT_SPEC["template"])}}
        job["spec"]["template"]["spec"]["restartPolicy"] = "OnFailure"
        assert check("CronJob", {"schedule": "@hourly", "jobTemplate": job}) == []
        assert check("CronJob", {"schedule": "*/5 * * * *", "jobTemplate": job}) == []
        assert "spec.schedule" in _fields(check("CronJob", {"schedule": "often", "jobTemplate": job}))


class TestOtherKinds:
    """Tests for Service, ConfigMap, Secret and friends."""

    def test_service_port_range(self):
        """Test port numbers are bounded."""
        violations = check("Service", {"selector": {"app": "web"}, "ports": [{"port": 70000}]})
        assert _fields(violations) == ["spec.ports[0].port"]

    def test_node_port_only_for_node_port_services(self):
        """Test nodePort on a ClusterIP service."""
        violations = check("Service", {"ports": [{"port": 80, "nodePort": 30080}]})
        assert _fields(violations) == ["spec.ports[0].nodePort"]

    def test_external_name(self):
        """Test ExternalName services need no ports."""
        assert check("Service", {"type": "ExternalName", "externalName": "db.example.com"}) == []

    def test_configmap_invalid_key(self):
        """Test ConfigMap key characters."""
        assert _fields(check("ConfigMap", {"data": {"bad key!": "x"}})) == ["data.bad key!"]

    def test_configmap_duplicate_key(self):
        """Test a key in both data and binaryData."""
        spec = {"data": {"a": "x"}, "binaryData": {"a": "eA=="}}
        assert _fields(check("ConfigMap", spec)) == ["binaryData.a"]

    def test_secret_requires_base64(self):
        """Test Secret data must be base64."""
        assert check("Secret", {"data": {"password": "czNjcjN0"}}) == []
        assert _fields(check("Secret", {"data": {"password": "not base64!"}})) == ["data.password"]

    def test_hpa_bounds(self):
        """Test maxReplicas >= minReplicas."""
        spec = {"scaleTargetRef": {"kind": "Deployment", "name": "web"}, "minReplicas": 5, "maxReplicas": 2}
        assert _fields(check("HorizontalPodAutoscaler", spec)) == ["spec.maxReplicas"]

    def test_ingress_paths(self):
        """Test ingress paths must be absolute."""
        spec = {"rules": [{"http": {"paths": [
            {"path": "api", "pathType": "Prefix", "backend": {"service": {"name": "api"}}},
        ]}}]}
        assert _fields(check("Ingress", spec)) == ["spec.rules[0].http.paths[0].path"]

    def test_unknown_kind_is_opaque(self):
        """Test kinds without rules accept any mapping."""
        assert check("Widget", {"anything": [1, 2, 3]}) == []

    def test_spec_must_be_mapping(self):
        """Test non-mapping specs."""
        assert _fields(check("Widget", ["a"])) == ["spec"]


class TestMalformedShapes:
    """Lists and sections of the wrong type are violations, never crashes."""

    def test_container_entry_must_be_mapping(self):
        """Test a bare image string in place of a container."""
        assert _fields(check("Pod", {"containers": ["nginx"]})) == ["spec.containers[0]"]
        with pytest.raises(ValidationError) as exc_info:
            validate("Pod", {"containers": ["nginx"]})
        assert exc_info.value.field == "spec.containers[0]"
        assert exc_info.value.reason == "must be a mapping"

    def test_containers_must_be_list(self):
        """Test a mapping in place of the containers list."""
        fields = _fields(check("Pod", {"containers": {"name": "web", "image": "web:1"}}))
        assert fields == ["spec.containers"]

    def test_init_containers_are_checked(self):
        """Test init containers get their own field paths."""
        spec = {
            "containers": [{"name": "web", "image": "web:1"}],
            "initContainers": [{"name": "web", "image": "setup:1"}, "setup"],
        }
        fields = _fields(check("Pod", spec))
        assert fields == ["spec.initContainers[1]", "spec.initContainers[0].name"]

    def test_resources_must_be_mapping(self):
        """Test resources and its requests section."""
        spec = {"containers": [{"name": "web", "image": "web:1", "resources": "small"}]}
        assert _fields(check("Pod", spec)) == ["spec.containers[0].resources"]
        spec = {"containers": [{"name": "web", "image": "web:1", "resources": {"requests": ["250m"]}}]}
        assert _fields(check("Pod", spec)) == ["spec.containers[0].resources.requests"]

    def test_restart_policy_must_be_string(self):
        """Test enum fields reject unhashable values."""
        spec = {"containers": [{"name": "web", "image": "web:1"}], "restartPolicy": ["Never"]}
        assert _fields(check("Pod", spec)) == ["spec.restartPolicy"]

    def test_service_port_entry_must_be_mapping(self):
        """Test a bare port number in place of a port."""
        assert _fields(check("Service", {"ports": [80]})) == ["spec.ports[0]"]
        with pytest.raises(ValidationError):
            validate("Service", {"ports": [80]})

    def test_selector_must_be_mapping(self):
        """Test a string selector on a Deployment."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["selector"] = "app=web"
        fields = _fields(check("Deployment", spec))
        assert fields[0] == "spec.selector"
        assert "spec.selector.matchLabels" in fields

    def test_strategy_must_be_mapping(self):
        """Test strategy and rollingUpdate sections."""
        spec = dict(DEPLOYMENT_SPEC, strategy="RollingUpdate")
        assert _fields(check("Deployment", spec)) == ["spec.strategy"]
        spec = dict(DEPLOYMENT_SPEC, strategy={"type": "RollingUpdate", "rollingUpdate": 1})
        assert _fields(check("Deployment", spec)) == ["spec.strategy.rollingUpdate"]

    def test_claim_template_must_be_mapping(self):
        """Test StatefulSet claim templates and update strategy."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["serviceName"] = "db"
        spec["volumeClaimTemplates"] = ["data"]
        spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": "all"}
        fields = _fields(check("StatefulSet", spec))
        assert fields == ["spec.updateStrategy.rollingUpdate", "spec.volumeClaimTemplates[0]"]

    def test_ingress_rules_and_paths(self):
        """Test ingress rule and path entries."""
        assert _fields(check("Ingress", {"rules": ["example.com"]})) == ["spec.rules[0]"]
        spec = {"rules": [{"http": {"paths": "/api"}}]}
        assert _fields(check("Ingress", spec)) == ["spec.rules[0].http.paths"]
        spec = {"rules": [{"http": {"paths": [{"path": 1, "pathType": ["Prefix"],
                                              "backend": {"service": {"name": "api"}}}]}}]}
        assert _fields(check("Ingress", spec)) == [
            "spec.rules[0].http.paths[0].path",
            "spec.rules[0].http.paths[0].pathType",
        ]

    def test_access_modes_must_be_list(self):
        """Test PersistentVolumeClaim access modes."""
        spec = {"accessModes": "ReadWriteOnce", "resources": {"requests": {"storage": "1Gi"}}}
        assert _fields(check("PersistentVolumeClaim", spec)) == ["spec.accessModes", "spec.accessModes"]

    def test_configmap_data_must_be_mapping(self):
        """Test ConfigMap and Secret payload sections."""
        assert _fields(check("ConfigMap", {"data": [{"a": "x"}]})) == ["data"]
        assert _fields(check("Secret", {"data": "czNjcjN0"})) == ["data"]


class TestIdentityAndValidate:
    """Tests for check_identity() and validate()."""

    def test_invalid_name(self):
        """Test DNS subdomain names."""
        violations = check_identity(ResourceIdentity("ConfigMap", "default", "Bad_Name"))
        assert _fields(violations) == ["metadata.name"]

    def test_namespace_rules(self):
        """Test namespaced and cluster-scoped kinds."""
        assert _fields(check_identity(ResourceIdentity("ConfigMap", "", "x"))) == ["metadata.namespace"]
        assert _fields(check_identity(ResourceIdentity("Namespace", "default", "x"))) == ["metadata.namespace"]
        assert check_identity(ResourceIdentity("Namespace", "", "prod")) == []

    def test_validate_raises_first_problem(self):
        """Test ValidationError carries every violation."""
        spec = copy.deepcopy(DEPLOYMENT_SPEC)
        spec["replicas"] = "three"
        spec["template"]["spec"]["containers"] = []
        with pytest.raises(ValidationError) as exc_info:
            validate("Deployment", spec, ResourceIdentity("Deployment", "default", "web"))
        assert exc_info.value.field == "spec.replicas"
        assert len(exc_info.value.violations) >= 2

    def test_validate_passes(self):
        """Test a valid spec raises nothing."""
        validate("Deployment", DEPLOYMENT_SPEC, ResourceIdentity("Deployment", "default", "web"))
