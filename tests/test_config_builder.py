"""Test deployment configuration builder."""

import pytest

from node_deployer.config_builder.builder import build, merge_request, sanitize_name
from node_deployer.core.errors import ValidationError


def _request(**overrides):
    request = {
        "name": "demo",
        "githubRepo": {"owner": "acme", "name": "demo-app", "branch": "main"},
    }
    request.update(overrides)
    return request


class TestDefaults:
    """A minimal request gets every documented default."""

    def test_minimal_request(self):
        spec = build(_request())

        assert spec.name == "demo"
        assert spec.namespace == "node-deployer-apps"
        assert spec.context_path == "/demo"
        assert spec.replicas == 2
        assert spec.container_port == 8080
        assert spec.service_port == 80
        assert (spec.cpu_request, spec.cpu_limit) == ("250m", "500m")
        assert (spec.memory_request, spec.memory_limit) == ("256Mi", "512Mi")
        assert spec.image_pull_policy == "IfNotPresent"
        assert spec.restart_policy == "Always"

    def test_health_check_defaults_follow_container_port(self):
        spec = build(_request(configuration={"containerPort": 3000}))

        assert spec.health_check.enabled is False
        assert spec.health_check.path == "/health"
        assert spec.health_check.port == 3000
        assert spec.health_check.failure_threshold == 3

    def test_build_defaults(self):
        spec = build(_request(githubRepo={"owner": "Acme", "name": "Demo-App"}))

        assert spec.build.dockerfile == "Dockerfile"
        assert spec.build.build_context == "."
        assert spec.build.image_name == "acme/demo-app"
        assert spec.build.image_tag == "latest"
        assert spec.source.branch == ""

    def test_auto_scaling_defaults(self):
        spec = build(_request())

        assert spec.auto_scaling.enabled is False
        assert spec.auto_scaling.min_replicas == 1
        assert spec.auto_scaling.max_replicas == 5
        assert spec.auto_scaling.target_cpu_percent == 80

    def test_name_derived_from_repository(self):
        request = _request()
        del request["name"]
        request["githubRepo"]["name"] = "My_Cool App"

        spec = build(request)

        assert spec.name == "my-cool-app"
        assert spec.context_path == "/my-cool-app"
        assert spec.build.image_name == "acme/my-cool-app"

    def test_default_image_is_a_valid_reference(self):
        request = _request()
        request["githubRepo"]["owner"] = "Acme_Labs"
        request["githubRepo"]["name"] = "Demo App"

        spec = build(request)

        assert spec.build.image_name == "acme-labs/demo-app"
        assert build(spec.to_dict()).build.image_name == "acme-labs/demo-app"


class TestShapes:

    def test_flat_configuration_keys(self):
        """Top-level configuration keys override the nested block."""
        spec = build(_request(replicas=4, configuration={"replicas": 1, "servicePort": 8081}))

        assert spec.replicas == 4
        assert spec.service_port == 8081

    def test_env_values_are_stringified(self):
        spec = build(_request(configuration={"environmentVars": {"DEBUG": True, "WORKERS": 4}}))

        assert spec.env_vars == {"DEBUG": "true", "WORKERS": "4"}

    def test_idempotent(self):
        spec = build(_request(
            contextPath="/api/demo/",
            configuration={
                "healthCheck": {"enabled": True, "path": "/ready"},
                "autoScaling": {"enabled": True, "minReplicas": 2, "maxReplicas": 6},
                "buildConfig": {"buildArgs": {"VERSION": "1"}, "registryUrl": "registry.local:5000"},
            },
        ))

        assert spec.context_path == "/api/demo"
        assert build(spec.to_dict()) == spec


class TestViolations:
    """Every violated rule is reported, not just the first."""

    def test_all_violations_reported(self):
        with pytest.raises(ValidationError) as exc:
            build({
                "name": "Bad_Name",
                "contextPath": "no-slash",
                "githubRepo": {"owner": "", "name": "demo"},
                "configuration": {
                    "replicas": 0,
                    "containerPort": 70000,
                    "cpuRequest": "lots",
                    "imagePullPolicy": "Sometimes",
                },
            })

        fields = {v.split(":")[0] for v in exc.value.violations}
        assert {
            "name", "contextPath", "githubRepo.owner", "replicas",
            "containerPort", "cpuRequest", "imagePullPolicy",
        } <= fields

    def test_replicas_bool_rejected(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(configuration={"replicas": True}))
        assert exc.value.violations == ["replicas: must be an integer"]

    def test_request_above_limit(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(configuration={"cpuRequest": "1", "cpuLimit": "500m"}))
        assert "cpuRequest: must not exceed cpuLimit (500m)" in exc.value.violations

    def test_name_too_long(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(name="a" * 64))
        assert exc.value.violations == ["name: must be at most 63 characters"]

    def test_missing_repository(self):
        with pytest.raises(ValidationError) as exc:
            build({"name": "demo"})
        assert "githubRepo.owner: is required" in exc.value.violations
        assert "githubRepo.name: is required" in exc.value.violations

    def test_health_check_ranges(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(configuration={"healthCheck": {"periodSeconds": 0, "initialDelaySeconds": -1}}))
        assert "healthCheck.periodSeconds: must be a positive integer" in exc.value.violations
        assert "healthCheck.initialDelaySeconds: must be >= 0" in exc.value.violations

    def test_auto_scaling_bounds(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(configuration={"autoScaling": {"minReplicas": 4, "maxReplicas": 2, "targetCPUUtilization": 150}}))
        assert "autoScaling.maxReplicas: must be >= minReplicas" in exc.value.violations
        assert "autoScaling.targetCPUUtilization: must be between 1 and 100" in exc.value.violations

    def test_bad_env_name(self):
        with pytest.raises(ValidationError) as exc:
            build(_request(configuration={"environmentVars": {"1BAD": "x"}}))
        assert exc.value.violations == ["environmentVars.1BAD: invalid name"]

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            build(["not", "a", "dict"])


class TestMergeRequest:

    def test_partial_nested_update_keeps_other_fields(self):
        base = build(_request(configuration={"healthCheck": {"path": "/ready"}})).to_dict()

        merged = merge_request(base, {"healthCheck": {"enabled": True}, "replicas": 3})
        spec = build(merged)

        assert spec.health_check.enabled is True
        assert spec.health_check.path == "/ready"
        assert spec.replicas == 3

    def test_env_vars_replaced_wholesale(self):
        base = build(_request(configuration={"environmentVars": {"A": "1", "B": "2"}})).to_dict()

        spec = build(merge_request(base, {"environmentVars": {"C": "3"}}))

        assert spec.env_vars == {"C": "3"}

    def test_immutable_fields(self):
        base = build(_request()).to_dict()

        with pytest.raises(ValidationError) as exc:
            merge_request(base, {"name": "other", "contextPath": "/other"})

        assert "name: cannot be changed after creation" in exc.value.violations
        assert "contextPath: cannot be changed after creation" in exc.value.violations

    def test_unchanged_identity_is_accepted(self):
        base = build(_request()).to_dict()
        merged = merge_request(base, {"name": "demo", "replicas": 1})
        assert build(merged).replicas == 1


class TestSanitizeName:

    def test_sanitize(self):
        assert sanitize_name("--Hello World__App--") == "hello-world-app"
        assert sanitize_name("ÄÖÜ") == ""
        assert len(sanitize_name("x" * 100)) == 63
