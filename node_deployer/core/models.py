# node_deployer/core/models.py
"""Deployment domain models."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DeploymentStatus(Enum):
    """Deployment lifecycle status."""
    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


# ============================================
# Source
# ============================================

@dataclass
class RepositoryRef:
    """Canonical reference to a source repository at a branch."""
    owner: str
    name: str
    branch: str = ""
    full_name: str = ""
    commit_sha: Optional[str] = None
    clone_url: Optional[str] = None
    private: bool = False
    default_branch: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not self.full_name:
            self.full_name = f"{self.owner}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "name": self.name,
            "branch": self.branch,
            "fullName": self.full_name,
            "commitSha": self.commit_sha,
            "cloneUrl": self.clone_url,
            "private": self.private,
            "defaultBranch": self.default_branch,
            "language": self.language,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryRef":
        return cls(
            owner=data["owner"],
            name=data["name"],
            branch=data.get("branch") or "",
            full_name=data.get("fullName") or "",
            commit_sha=data.get("commitSha"),
            clone_url=data.get("cloneUrl"),
            private=bool(data.get("private", False)),
            default_branch=data.get("defaultBranch"),
            language=data.get("language"),
            description=data.get("description"),
        )


# ============================================
# Specification
# ============================================

@dataclass
class HealthCheckConfig:
    enabled: bool = False
    path: str = "/health"
    port: int = 8080
    initial_delay_seconds: int = 10
    period_seconds: int = 10
    timeout_seconds: int = 5
    success_threshold: int = 1
    failure_threshold: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "path": self.path,
            "port": self.port,
            "initialDelaySeconds": self.initial_delay_seconds,
            "periodSeconds": self.period_seconds,
            "timeoutSeconds": self.timeout_seconds,
            "successThreshold": self.success_threshold,
            "failureThreshold": self.failure_threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckConfig":
        return cls(
            enabled=data["enabled"],
            path=data["path"],
            port=data["port"],
            initial_delay_seconds=data["initialDelaySeconds"],
            period_seconds=data["periodSeconds"],
            timeout_seconds=data["timeoutSeconds"],
            success_threshold=data["successThreshold"],
            failure_threshold=data["failureThreshold"],
        )


@dataclass
class BuildConfig:
    image_name: str
    dockerfile: str = "Dockerfile"
    build_context: str = "."
    build_args: Dict[str, str] = field(default_factory=dict)
    image_tag: str = "latest"
    registry_url: Optional[str] = None

    @property
    def image_reference(self) -> str:
        """Full image reference, registry-qualified when a registry is set."""
        image = f"{self.image_name}:{self.image_tag}"
        if self.registry_url:
            return f"{self.registry_url.rstrip('/')}/{image}"
        return image

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dockerfile": self.dockerfile,
            "buildContext": self.build_context,
            "buildArgs": dict(self.build_args),
            "imageName": self.image_name,
            "imageTag": self.image_tag,
            "registryUrl": self.registry_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        return cls(
            image_name=data["imageName"],
            dockerfile=data["dockerfile"],
            build_context=data["buildContext"],
            build_args=dict(data.get("buildArgs") or {}),
            image_tag=data["imageTag"],
            registry_url=data.get("registryUrl"),
        )


@dataclass
class AutoScalingConfig:
    enabled: bool = False
    min_replicas: int = 1
    max_replicas: int = 5
    target_cpu_percent: int = 80

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "minReplicas": self.min_replicas,
            "maxReplicas": self.max_replicas,
            "targetCPUUtilization": self.target_cpu_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoScalingConfig":
        return cls(
            enabled=data["enabled"],
            min_replicas=data["minReplicas"],
            max_replicas=data["maxReplicas"],
            target_cpu_percent=data["targetCPUUtilization"],
        )


@dataclass
class DeploymentSpec:
    """
    Canonical, validated workload specification.

    Produced by the configuration builder. ``to_dict`` emits the same shape
    the builder accepts, so a spec can be re-validated without changes.
    """
    name: str
    namespace: str
    context_path: str
    source: RepositoryRef
    build: BuildConfig
    replicas: int = 2
    container_port: int = 8080
    service_port: int = 80
    cpu_request: str = "250m"
    cpu_limit: str = "500m"
    memory_request: str = "256Mi"
    memory_limit: str = "512Mi"
    image_pull_policy: str = "IfNotPresent"
    restart_policy: str = "Always"
    env_vars: Dict[str, str] = field(default_factory=dict)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    auto_scaling: AutoScalingConfig = field(default_factory=AutoScalingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "contextPath": self.context_path,
            "githubRepo": {
                "owner": self.source.owner,
                "name": self.source.name,
                "branch": self.source.branch,
            },
            "configuration": {
                "replicas": self.replicas,
                "containerPort": self.container_port,
                "servicePort": self.service_port,
                "cpuRequest": self.cpu_request,
                "cpuLimit": self.cpu_limit,
                "memoryRequest": self.memory_request,
                "memoryLimit": self.memory_limit,
                "imagePullPolicy": self.image_pull_policy,
                "restartPolicy": self.restart_policy,
                "environmentVars": dict(self.env_vars),
                "healthCheck": self.health_check.to_dict(),
                "buildConfig": self.build.to_dict(),
                "autoScaling": self.auto_scaling.to_dict(),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentSpec":
        """Rebuild a spec from trusted, already validated data."""
        config = data["configuration"]
        repo = data["githubRepo"]
        return cls(
            name=data["name"],
            namespace=data["namespace"],
            context_path=data["contextPath"],
            source=RepositoryRef(
                owner=repo["owner"], name=repo["name"], branch=repo.get("branch") or ""
            ),
            build=BuildConfig.from_dict(config["buildConfig"]),
            replicas=config["replicas"],
            container_port=config["containerPort"],
            service_port=config["servicePort"],
            cpu_request=config["cpuRequest"],
            cpu_limit=config["cpuLimit"],
            memory_request=config["memoryRequest"],
            memory_limit=config["memoryLimit"],
            image_pull_policy=config["imagePullPolicy"],
            restart_policy=config["restartPolicy"],
            env_vars=dict(config.get("environmentVars") or {}),
            health_check=HealthCheckConfig.from_dict(config["healthCheck"]),
            auto_scaling=AutoScalingConfig.from_dict(config["autoScaling"]),
        )


# ============================================
# Observed state
# ============================================

@dataclass
class MetricsSnapshot:
    """
    Observed metrics. Owned by the collector.

    ``None`` means unknown, never zero. ``stale`` is set when the latest
    refresh could not reach the telemetry source; previous values are kept.
    """
    desired_pods: Optional[int] = None
    active_pods: Optional[int] = None
    ready_pods: Optional[int] = None
    available_pods: Optional[int] = None
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    cpu_millicores: Optional[float] = None
    memory_bytes: Optional[int] = None
    restart_count: Optional[int] = None
    pods_running: Optional[int] = None
    consecutive_unhealthy_passes: int = 0
    collected_at: Optional[datetime] = None
    stale: bool = False
    stale_reason: Optional[str] = None

    def mark_stale(self, reason: str) -> "MetricsSnapshot":
        """Copy of this snapshot flagged stale. Observed values are preserved."""
        return replace(self, stale=True, stale_reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "desiredPods": self.desired_pods,
            "activePods": self.active_pods,
            "readyPods": self.ready_pods,
            "availablePods": self.available_pods,
            "cpuPercent": self.cpu_percent,
            "memoryPercent": self.memory_percent,
            "cpuMillicores": self.cpu_millicores,
            "memoryBytes": self.memory_bytes,
            "restartCount": self.restart_count,
            "podsRunning": self.pods_running,
            "consecutiveUnhealthyPasses": self.consecutive_unhealthy_passes,
            "collectedAt": _iso(self.collected_at),
            "stale": self.stale,
            "staleReason": self.stale_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsSnapshot":
        return cls(
            desired_pods=data.get("desiredPods"),
            active_pods=data.get("activePods"),
            ready_pods=data.get("readyPods"),
            available_pods=data.get("availablePods"),
            cpu_percent=data.get("cpuPercent"),
            memory_percent=data.get("memoryPercent"),
            cpu_millicores=data.get("cpuMillicores"),
            memory_bytes=data.get("memoryBytes"),
            restart_count=data.get("restartCount"),
            pods_running=data.get("podsRunning"),
            consecutive_unhealthy_passes=data.get("consecutiveUnhealthyPasses", 0),
            collected_at=_parse_iso(data.get("collectedAt")),
            stale=bool(data.get("stale", False)),
            stale_reason=data.get("staleReason"),
        )


@dataclass
class KubernetesInfo:
    """Names and addresses of the cluster resources backing a deployment."""
    namespace: str
    deployment_name: str
    service_name: str
    ingress_name: str
    config_map_name: str
    pod_selector: str
    image: Optional[str] = None
    url: Optional[str] = None
    internal_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "deploymentName": self.deployment_name,
            "serviceName": self.service_name,
            "ingressName": self.ingress_name,
            "configMapName": self.config_map_name,
            "podSelector": self.pod_selector,
            "image": self.image,
            "url": self.url,
            "internalUrl": self.internal_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KubernetesInfo":
        return cls(
            namespace=data["namespace"],
            deployment_name=data["deploymentName"],
            service_name=data["serviceName"],
            ingress_name=data["ingressName"],
            config_map_name=data["configMapName"],
            pod_selector=data["podSelector"],
            image=data.get("image"),
            url=data.get("url"),
            internal_url=data.get("internalUrl"),
        )


# ============================================
# Deployment
# ============================================

@dataclass
class Deployment:
    """One application instance bound to one node."""
    id: UUID
    node_id: UUID
    spec: DeploymentSpec
    source: RepositoryRef
    user_id: Optional[UUID] = None

    status: DeploymentStatus = DeploymentStatus.PENDING
    error_message: Optional[str] = None
    attempts: int = 0
    reconcile_passes: int = 0

    kubernetes: Optional[KubernetesInfo] = None
    metrics: Optional[MetricsSnapshot] = None

    # Operation lease (one in-flight orchestration operation per deployment)
    operation: Optional[str] = None
    operation_owner: Optional[str] = None
    operation_expires_at: Optional[datetime] = None
    delete_requested: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    scheduled_at: Optional[datetime] = None
    running_since: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def namespace(self) -> str:
        return self.spec.namespace

    @property
    def context_path(self) -> str:
        return self.spec.context_path

    @property
    def url(self) -> Optional[str]:
        if self.kubernetes and self.status in (DeploymentStatus.DEPLOYING, DeploymentStatus.RUNNING):
            return self.kubernetes.url
        return None

    def is_active(self) -> bool:
        return self.status != DeploymentStatus.STOPPED

    def has_operation(self, now: Optional[datetime] = None) -> bool:
        """True while an orchestration operation holds an unexpired lease."""
        now = now or utcnow()
        return (
            self.operation is not None
            and self.operation_expires_at is not None
            and self.operation_expires_at > now
        )
