#tests/conftest.py

"""Pytest configuration and fixtures."""

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from node_deployer.cluster import manifests
from node_deployer.cluster.gateway import ClusterGateway
from node_deployer.cluster.image_builder import ImageBuilder
from node_deployer.config import DeployerSettings
from node_deployer.core.errors import NotFoundError
from node_deployer.core.events import LoggingEventEmitter
from node_deployer.core.models import Deployment, KubernetesInfo, MetricsSnapshot, RepositoryRef
from node_deployer.core.retry import RetryPolicy
from node_deployer.infrastructure.memory.repository import (
    InMemoryDeploymentRepository,
    InMemoryNodeRepository,
    InMemoryUserRepository,
)
from node_deployer.node_manager.models import (
    ClusterInfo,
    Location,
    NodeCapacity,
    NodeMetadata,
    NodeRegistration,
)
from node_deployer.node_manager.service import NodeRegistry
from node_deployer.orchestrator.deployment_orchestrator import DeploymentOrchestrator


# ============================================
# FAKES
# ============================================

class FakeClusterGateway(ClusterGateway):
    """
    In-memory cluster.

    ``apply_errors`` / ``teardown_errors`` are raised one per call, in order,
    before the call succeeds. ``workloads`` maps (namespace, name) to the
    status returned by ``workload_status``.
    """

    def __init__(self):
        self.applied: List[Dict[str, Any]] = []
        self.scaled: List[tuple] = []
        self.torn_down: List[tuple] = []
        self.apply_errors: List[Exception] = []
        self.teardown_errors: List[Exception] = []
        self.status_errors: List[Exception] = []
        self.workloads: Dict[tuple, Dict[str, Any]] = {}
        self.usage: Optional[List[Dict[str, Any]]] = []
        self.nodes_usage: Dict[str, Dict[str, Any]] = {}
        self.pods: List[Dict[str, Any]] = []
        self.nodes: List[Dict[str, Any]] = []

    def apply(self, deployment, image, node_hostname=None, restart=False) -> KubernetesInfo:
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        self.applied.append({
            "name": deployment.name,
            "namespace": deployment.namespace,
            "image": image,
            "replicas": deployment.spec.replicas,
            "node_hostname": node_hostname,
            "restart": restart,
        })
        return manifests.kubernetes_info(deployment, image, "http://localhost")

    def scale(self, namespace, name, replicas) -> None:
        self.scaled.append((namespace, name, replicas))

    def teardown(self, namespace, name) -> None:
        if self.teardown_errors:
            raise self.teardown_errors.pop(0)
        self.torn_down.append((namespace, name))
        self.workloads.pop((namespace, name), None)

    def set_workload(self, namespace, name, desired=2, ready=2, pods=None):
        if pods is None:
            pods = [
                {
                    "name": f"{name}-{i}",
                    "namespace": namespace,
                    "phase": "Running",
                    "ready": i < ready,
                    "restartCount": 0,
                    "nodeName": "worker-1",
                }
                for i in range(desired)
            ]
        self.workloads[(namespace, name)] = {
            "desiredReplicas": desired,
            "updatedReplicas": desired,
            "readyReplicas": ready,
            "availableReplicas": ready,
            "pods": pods,
        }

    def workload_status(self, namespace, name) -> Dict[str, Any]:
        if self.status_errors:
            raise self.status_errors.pop(0)
        if (namespace, name) not in self.workloads:
            raise NotFoundError(f"workload {namespace}/{name} not found")
        return self.workloads[(namespace, name)]

    def pod_usage(self, namespace=None, label_selector=None):
        if self.usage is None:
            return None
        return [u for u in self.usage if namespace is None or u["namespace"] == namespace]

    def node_usage(self, node_name):
        return self.nodes_usage.get(node_name)

    def cluster_info(self):
        return {"version": "v1.29.0", "platform": "linux/amd64", "nodesCount": len(self.nodes)}

    def list_namespaces(self):
        return [{"name": "default", "status": "Active"}]

    def list_pods(self, namespace=None, label_selector=None):
        return [p for p in self.pods if namespace is None or p["namespace"] == namespace]

    def pod_logs(self, namespace, name, container=None, tail_lines=100):
        return f"logs of {namespace}/{name}"

    def list_services(self, namespace=None):
        return []

    def list_nodes(self):
        return list(self.nodes)

    def list_events(self, namespace=None, limit=100):
        return []


class FakeImageBuilder(ImageBuilder):
    def __init__(self):
        self.builds: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []

    def build(self, deployment: Deployment, token: Optional[str] = None) -> str:
        if self.errors:
            raise self.errors.pop(0)
        image = deployment.spec.build.image_reference
        self.builds.append({"image": image, "token": token})
        return image


class FakeSourceAdapter:
    """Stands in for RepositorySourceAdapter without any HTTP."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def resolve(self, owner, name, branch, token, dockerfile=None, build_context="."):
        self.calls.append({"owner": owner, "name": name, "branch": branch, "token": token})
        if self.error:
            raise self.error
        return RepositoryRef(
            owner=owner,
            name=name,
            branch=branch or "main",
            commit_sha="abc123",
            clone_url=f"https://github.com/{owner}/{name}.git",
            default_branch="main",
        )


# ============================================
# SETTINGS / STORES
# ============================================

@pytest.fixture
def settings():
    return DeployerSettings(
        store_backend="memory",
        run_background_workers=False,
        image_build_enabled=False,
        jwt_secret="test-secret",
        retry_base_delay=0,
        call_base_delay=0,
        confirmation_passes=3,
        unhealthy_passes=3,
    )


@pytest.fixture
def event_emitter():
    return LoggingEventEmitter()


@pytest.fixture
def deployment_repo():
    return InMemoryDeploymentRepository()


@pytest.fixture
def node_repo():
    return InMemoryNodeRepository()


@pytest.fixture
def user_repo():
    return InMemoryUserRepository()


@pytest.fixture
def cluster():
    return FakeClusterGateway()


@pytest.fixture
def image_builder():
    return FakeImageBuilder()


@pytest.fixture
def source_adapter():
    return FakeSourceAdapter()


# ============================================
# SERVICES
# ============================================

@pytest.fixture
def node_registry(node_repo, deployment_repo, event_emitter):
    return NodeRegistry(
        node_repo=node_repo,
        deployment_repo=deployment_repo,
        event_emitter=event_emitter,
        liveness_window=timedelta(seconds=90),
    )


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, factor=3.0, max_delay=0, call_attempts=2, call_base_delay=0)


@pytest.fixture
def orchestrator(deployment_repo, node_registry, source_adapter, cluster, image_builder, event_emitter, retry_policy):
    orchestrator = DeploymentOrchestrator(
        deployment_repo=deployment_repo,
        node_registry=node_registry,
        source_adapter=source_adapter,
        cluster=cluster,
        image_builder=image_builder,
        event_emitter=event_emitter,
        retry_policy=retry_policy,
        default_namespace="apps",
        confirmation_passes=3,
        unhealthy_passes=3,
        sleep=lambda seconds: None,
    )
    yield orchestrator
    orchestrator.shutdown()


# ============================================
# SAMPLE DATA
# ============================================

def make_registration(name: str = "edge-1", mac: str = "00:1a:2b:3c:4d:5e", **overrides) -> NodeRegistration:
    values = dict(
        name=name,
        mac_address=mac,
        public_ip="203.0.113.10",
        private_ip="10.0.0.10",
        location=Location(latitude=48.8566, longitude=2.3522, city="Paris", country="FR"),
        cluster_info=ClusterInfo(cluster_name="edge", kube_version="v1.29.0"),
        capacity=NodeCapacity(cpu_cores=4, memory_total=8 * 2 ** 30, disk_total=100 * 2 ** 30),
        metadata=NodeMetadata(os_type="linux", architecture="amd64", hostname="worker-1"),
    )
    values.update(overrides)
    return NodeRegistration(**values)


@pytest.fixture
def online_node(node_registry):
    return node_registry.register(make_registration())


@pytest.fixture
def deployment_request():
    return {
        "name": "demo",
        "contextPath": "/demo",
        "githubRepo": {"owner": "acme", "name": "demo-app", "branch": "main"},
        "configuration": {
            "replicas": 2,
            "containerPort": 8080,
            "environmentVars": {"MODE": "test"},
        },
    }


@pytest.fixture
def running_deployment(orchestrator, online_node, deployment_request, cluster):
    """A deployment confirmed running by one healthy reconciliation pass."""
    deployment = orchestrator.create(deployment_request, online_node.id, credential="gh-token")
    assert orchestrator.wait_idle(timeout=5)
    cluster.set_workload("apps", "demo", desired=2, ready=2)
    orchestrator.confirm_rollout(deployment.id, MetricsSnapshot(desired_pods=2, ready_pods=2))
    return orchestrator.get(deployment.id)




@pytest.fixture
def registration():
    """Factory for node registration descriptors."""
    return make_registration
