# node_deployer/config_builder/builder.py
"""
Deployment configuration builder.

Turns a raw deployment request into a canonical ``DeploymentSpec``. Every
rule is checked and all violations are reported together. Pure function:
no I/O, no store access. Context path uniqueness depends on other
deployments and is enforced by the orchestrator.

Accepted shape (camelCase, as sent by the dashboard)::

    {
        "name": "demo",
        "namespace": "apps",
        "contextPath": "/demo",
        "githubRepo": {"owner": "acme", "name": "demo", "branch": "main"},
        "configuration": {"replicas": 2, "containerPort": 8080, ...}
    }

Configuration keys may also be given at the top level; they override the
nested ``configuration`` block.
"""

import copy
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from node_deployer.core.errors import ValidationError
from node_deployer.core.models import (
    AutoScalingConfig,
    BuildConfig,
    DeploymentSpec,
    HealthCheckConfig,
    RepositoryRef,
)
from node_deployer.core.quantity import parse_quantity


NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
CONTEXT_PATH_RE = re.compile(r"^/[A-Za-z0-9._~\-/]*$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
MAX_NAME_LENGTH = 63

DEFAULT_NAMESPACE = "node-deployer-apps"

PULL_POLICIES = ("Always", "IfNotPresent", "Never")
RESTART_POLICIES = ("Always", "OnFailure", "Never")

CONFIG_KEYS = (
    "replicas",
    "containerPort",
    "servicePort",
    "cpuRequest",
    "cpuLimit",
    "memoryRequest",
    "memoryLimit",
    "imagePullPolicy",
    "restartPolicy",
    "environmentVars",
    "healthCheck",
    "buildConfig",
    "autoScaling",
)

# Keys that identify a deployment and cannot change through an update
IMMUTABLE_KEYS = ("name", "namespace", "contextPath", "githubRepo")

_MISSING = object()


def sanitize_name(value: str) -> str:
    """
    Best-effort workload name from free text (e.g. a repository name).

    Lowercases, turns ``_`` and spaces into ``-``, drops other characters,
    trims leading/trailing ``-`` and truncates to 63 characters.
    """
    lowered = value.lower().replace("_", "-").replace(" ", "-")
    cleaned = re.sub(r"[^a-z0-9-]", "", lowered)
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-")
    return cleaned[:MAX_NAME_LENGTH].rstrip("-")


class _Checker:
    """Collects violations while reading fields out of a mapping."""

    def __init__(self):
        self.violations: List[str] = []

    def add(self, field_name: str, message: str) -> None:
        self.violations.append(f"{field_name}: {message}")

    def section(self, data: Mapping, key: str, field_name: str) -> Dict[str, Any]:
        value = data.get(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.add(field_name, "must be an object")
            return {}
        return dict(value)

    def string(
        self,
        data: Mapping,
        key: str,
        field_name: str,
        default: Any = _MISSING,
        allow_empty: bool = False,
    ) -> Optional[str]:
        value = data.get(key)
        if value is None:
            if default is _MISSING:
                self.add(field_name, "is required")
                return None
            return default
        if not isinstance(value, str):
            self.add(field_name, "must be a string")
            return None
        value = value.strip()
        if not value and not allow_empty:
            self.add(field_name, "must not be empty")
            return None
        return value

    def integer(
        self,
        data: Mapping,
        key: str,
        field_name: str,
        default: int,
        minimum: Optional[int] = None,
        maximum: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Optional[int]:
        value = data.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            self.add(field_name, "must be an integer")
            return None
        if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
            if message is None:
                if maximum is None:
                    message = f"must be >= {minimum}"
                else:
                    message = f"must be between {minimum} and {maximum}"
            self.add(field_name, message)
            return None
        return value

    def boolean(self, data: Mapping, key: str, field_name: str, default: bool) -> bool:
        value = data.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self.add(field_name, "must be a boolean")
            return default
        return value

    def choice(self, data: Mapping, key: str, field_name: str, choices: Sequence[str], default: str) -> Optional[str]:
        value = data.get(key)
        if value is None:
            return default
        if value not in choices:
            self.add(field_name, f"must be one of {', '.join(choices)}")
            return None
        return value

    def quantity(self, data: Mapping, key: str, field_name: str, default: str) -> Optional[str]:
        value = data.get(key)
        if value is None:
            return default
        if not isinstance(value, str):
            self.add(field_name, "must be a resource quantity string such as '500m' or '512Mi'")
            return None
        try:
            amount = parse_quantity(value)
        except ValueError:
            self.add(field_name, f"invalid resource quantity '{value}'")
            return None
        if amount <= 0:
            self.add(field_name, "must be greater than zero")
            return None
        return value.strip()

    def string_map(self, value: Any, field_name: str, key_pattern: Optional[re.Pattern] = None) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.add(field_name, "must be an object of name/value pairs")
            return {}
        result = {}
        for key, item in value.items():
            if not isinstance(key, str) or (key_pattern and not key_pattern.match(key)):
                self.add(f"{field_name}.{key}", "invalid name")
                continue
            if isinstance(item, bool):
                result[key] = "true" if item else "false"
            elif isinstance(item, (str, int, float)):
                result[key] = str(item)
            else:
                self.add(f"{field_name}.{key}", "value must be a string, number or boolean")
        return result


def _configuration(raw: Mapping, checker: _Checker) -> Dict[str, Any]:
    config = checker.section(raw, "configuration", "configuration")
    for key in CONFIG_KEYS:
        if key in raw and raw[key] is not None:
            config[key] = raw[key]
    return config


def _name(raw: Mapping, repo_name: Optional[str], checker: _Checker) -> Optional[str]:
    value = raw.get("name")
    if value is None:
        derived = sanitize_name(repo_name) if repo_name else ""
        if not derived:
            checker.add("name", "is required")
            return None
        return derived
    if not isinstance(value, str):
        checker.add("name", "must be a string")
        return None
    if len(value) > MAX_NAME_LENGTH:
        checker.add("name", f"must be at most {MAX_NAME_LENGTH} characters")
        return None
    if not NAME_RE.match(value):
        checker.add("name", "must consist of lowercase alphanumerics and '-', starting and ending with an alphanumeric")
        return None
    return value


def _namespace(raw: Mapping, default_namespace: str, checker: _Checker) -> Optional[str]:
    namespace = checker.string(raw, "namespace", "namespace", default=default_namespace)
    if namespace is not None and (len(namespace) > MAX_NAME_LENGTH or not NAME_RE.match(namespace)):
        checker.add("namespace", "must be a valid namespace name")
        return None
    return namespace


def _context_path(raw: Mapping, name: Optional[str], checker: _Checker) -> Optional[str]:
    if raw.get("contextPath") is None and not name:
        # nothing to derive from; the name violation already covers it
        return None
    default = f"/{name}" if name else _MISSING
    path = checker.string(raw, "contextPath", "contextPath", default=default)
    if path is None:
        return None
    if not CONTEXT_PATH_RE.match(path) or "//" in path:
        checker.add("contextPath", "must be a path starting with '/' (letters, digits, '-', '_', '.', '~', '/')")
        return None
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def _within_limit(checker: _Checker, kind: str, request: Optional[str], limit: Optional[str]) -> None:
    if request is None or limit is None:
        return
    if parse_quantity(request) > parse_quantity(limit):
        checker.add(f"{kind}Request", f"must not exceed {kind}Limit ({limit})")


def _health_check(value: Any, container_port: Optional[int], checker: _Checker) -> HealthCheckConfig:
    if value is not None and not isinstance(value, Mapping):
        checker.add("healthCheck", "must be an object")
        value = None
    data = value or {}
    prefix = "healthCheck"
    path = checker.string(data, "path", f"{prefix}.path", default="/health")
    if path is not None and not path.startswith("/"):
        checker.add(f"{prefix}.path", "must start with '/'")
    return HealthCheckConfig(
        enabled=checker.boolean(data, "enabled", f"{prefix}.enabled", default=False),
        path=path,
        port=checker.integer(data, "port", f"{prefix}.port", default=container_port or 8080, minimum=1, maximum=65535),
        initial_delay_seconds=checker.integer(
            data, "initialDelaySeconds", f"{prefix}.initialDelaySeconds", default=10, minimum=0
        ),
        period_seconds=checker.integer(
            data, "periodSeconds", f"{prefix}.periodSeconds", default=10, minimum=1,
            message="must be a positive integer",
        ),
        timeout_seconds=checker.integer(
            data, "timeoutSeconds", f"{prefix}.timeoutSeconds", default=5, minimum=1,
            message="must be a positive integer",
        ),
        success_threshold=checker.integer(
            data, "successThreshold", f"{prefix}.successThreshold", default=1, minimum=1,
            message="must be a positive integer",
        ),
        failure_threshold=checker.integer(
            data, "failureThreshold", f"{prefix}.failureThreshold", default=3, minimum=1,
            message="must be a positive integer",
        ),
    )


def _build_config(value: Any, owner: Optional[str], repo_name: Optional[str], checker: _Checker) -> BuildConfig:
    if value is not None and not isinstance(value, Mapping):
        checker.add("buildConfig", "must be an object")
        value = None
    data = value or {}
    prefix = "buildConfig"

    # image repository components take the same alphabet as workload names
    image_owner = sanitize_name(owner) if owner else ""
    image_repo = sanitize_name(repo_name) if repo_name else ""
    default_image = f"{image_owner}/{image_repo}" if image_owner and image_repo else _MISSING
    image_name = checker.string(data, "imageName", f"{prefix}.imageName", default=default_image)
    if image_name is not None and any(c.isspace() for c in image_name):
        checker.add(f"{prefix}.imageName", "must not contain whitespace")

    image_tag = checker.string(data, "imageTag", f"{prefix}.imageTag", default="latest")
    if image_tag is not None and not IMAGE_TAG_RE.match(image_tag):
        checker.add(f"{prefix}.imageTag", "invalid image tag")

    return BuildConfig(
        image_name=image_name,
        dockerfile=checker.string(data, "dockerfile", f"{prefix}.dockerfile", default="Dockerfile"),
        build_context=checker.string(data, "buildContext", f"{prefix}.buildContext", default="."),
        build_args=checker.string_map(data.get("buildArgs"), f"{prefix}.buildArgs"),
        image_tag=image_tag,
        registry_url=checker.string(data, "registryUrl", f"{prefix}.registryUrl", default=None),
    )


def _auto_scaling(value: Any, checker: _Checker) -> AutoScalingConfig:
    if value is not None and not isinstance(value, Mapping):
        checker.add("autoScaling", "must be an object")
        value = None
    data = value or {}
    prefix = "autoScaling"
    min_replicas = checker.integer(
        data, "minReplicas", f"{prefix}.minReplicas", default=1, minimum=1,
        message="must be a positive integer",
    )
    max_replicas = checker.integer(
        data, "maxReplicas", f"{prefix}.maxReplicas", default=max(5, min_replicas or 1), minimum=1,
        message="must be a positive integer",
    )
    if min_replicas is not None and max_replicas is not None and max_replicas < min_replicas:
        checker.add(f"{prefix}.maxReplicas", "must be >= minReplicas")
    return AutoScalingConfig(
        enabled=checker.boolean(data, "enabled", f"{prefix}.enabled", default=False),
        min_replicas=min_replicas,
        max_replicas=max_replicas,
        target_cpu_percent=checker.integer(
            data, "targetCPUUtilization", f"{prefix}.targetCPUUtilization", default=80, minimum=1, maximum=100
        ),
    )


def build(raw: Mapping, default_namespace: str = DEFAULT_NAMESPACE) -> DeploymentSpec:
    """
    Validate and normalize a raw deployment request.

    Raises:
        ValidationError: listing every violated rule
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(["request: must be an object"])

    checker = _Checker()
    config = _configuration(raw, checker)

    repo = checker.section(raw, "githubRepo", "githubRepo")
    owner = checker.string(repo, "owner", "githubRepo.owner")
    repo_name = checker.string(repo, "name", "githubRepo.name")
    branch = checker.string(repo, "branch", "githubRepo.branch", default="", allow_empty=True)

    name = _name(raw, repo_name, checker)
    namespace = _namespace(raw, default_namespace, checker)
    context_path = _context_path(raw, name, checker)

    replicas = checker.integer(
        config, "replicas", "replicas", default=2, minimum=1, message="must be a positive integer"
    )
    container_port = checker.integer(config, "containerPort", "containerPort", default=8080, minimum=1, maximum=65535)
    service_port = checker.integer(config, "servicePort", "servicePort", default=80, minimum=1, maximum=65535)

    cpu_request = checker.quantity(config, "cpuRequest", "cpuRequest", default="250m")
    cpu_limit = checker.quantity(config, "cpuLimit", "cpuLimit", default="500m")
    memory_request = checker.quantity(config, "memoryRequest", "memoryRequest", default="256Mi")
    memory_limit = checker.quantity(config, "memoryLimit", "memoryLimit", default="512Mi")
    _within_limit(checker, "cpu", cpu_request, cpu_limit)
    _within_limit(checker, "memory", memory_request, memory_limit)

    pull_policy = checker.choice(config, "imagePullPolicy", "imagePullPolicy", PULL_POLICIES, "IfNotPresent")
    restart_policy = checker.choice(config, "restartPolicy", "restartPolicy", RESTART_POLICIES, "Always")
    env_vars = checker.string_map(config.get("environmentVars"), "environmentVars", key_pattern=ENV_NAME_RE)

    health_check = _health_check(config.get("healthCheck"), container_port, checker)
    build_config = _build_config(config.get("buildConfig"), owner, repo_name, checker)
    auto_scaling = _auto_scaling(config.get("autoScaling"), checker)

    if checker.violations:
        raise ValidationError(checker.violations)

    return DeploymentSpec(
        name=name,
        namespace=namespace,
        context_path=context_path,
        source=RepositoryRef(owner=owner, name=repo_name, branch=branch),
        build=build_config,
        replicas=replicas,
        container_port=container_port,
        service_port=service_port,
        cpu_request=cpu_request,
        cpu_limit=cpu_limit,
        memory_request=memory_request,
        memory_limit=memory_limit,
        image_pull_policy=pull_policy,
        restart_policy=restart_policy,
        env_vars=env_vars,
        health_check=health_check,
        auto_scaling=auto_scaling,
    )


def merge_request(base: Mapping, changes: Mapping) -> Dict[str, Any]:
    """
    Apply update ``changes`` on top of a spec's ``to_dict()`` output.

    Top-level configuration keys in ``changes`` are moved under
    ``configuration`` before a recursive merge, so a partial nested object
    (e.g. ``{"healthCheck": {"enabled": true}}``) keeps its other fields.

    Raises:
        ValidationError: when an identifying field would change
    """
    if not isinstance(changes, Mapping):
        raise ValidationError(["request: must be an object"])

    violations = [
        f"{key}: cannot be changed after creation"
        for key in IMMUTABLE_KEYS
        if key in changes and changes[key] is not None and changes[key] != base.get(key)
    ]
    if violations:
        raise ValidationError(violations)

    normalized: Dict[str, Any] = {"configuration": dict(changes.get("configuration") or {})}
    for key in CONFIG_KEYS:
        if key in changes:
            normalized["configuration"][key] = changes[key]

    return _deep_merge(copy.deepcopy(dict(base)), normalized)


def _deep_merge(target: Dict[str, Any], updates: Mapping) -> Dict[str, Any]:
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), Mapping) and key not in (
            "environmentVars", "buildArgs"
        ):
            target[key] = _deep_merge(dict(target[key]), value)
        else:
            target[key] = value
    return target
