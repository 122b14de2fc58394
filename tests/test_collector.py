"""Test metrics collection and reconciliation."""

import uuid
from datetime import timedelta

import pytest

from node_deployer.collector.collector import (
    DEGRADED,
    HEALTHY,
    UNAVAILABLE,
    CollectorWorker,
    MetricsCollector,
    health_status,
)
from node_deployer.core.errors import NotFoundError, TransientClusterError
from node_deployer.core.models import DeploymentStatus, utcnow
from node_deployer.node_manager.models import NodeStatus


@pytest.fixture
def collector(deployment_repo, node_repo, node_registry, cluster, orchestrator):
    return MetricsCollector(
        deployment_repo=deployment_repo,
        node_repo=node_repo,
        node_registry=node_registry,
        cluster=cluster,
        orchestrator=orchestrator,
    )


class TestDeploymentRefresh:

    def test_ready_pod_confirms_rollout(self, collector, orchestrator, online_node, deployment_request, cluster):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)
        cluster.set_workload("apps", "demo", desired=2, ready=1)

        snapshot = collector.refresh_deployment(deployment.id)

        assert snapshot.ready_pods == 1
        assert snapshot.desired_pods == 2
        assert orchestrator.get(deployment.id).status == DeploymentStatus.RUNNING

    def test_usage_percentages(self, collector, running_deployment, cluster):
        cluster.usage = [
            {"namespace": "apps", "name": "demo-0", "cpuMillicores": 150.0, "memoryBytes": 128 * 2 ** 20},
            {"namespace": "apps", "name": "demo-1", "cpuMillicores": 50.0, "memoryBytes": 128 * 2 ** 20},
        ]

        snapshot = collector.refresh_deployment(running_deployment.id)

        # limits: 500m and 512Mi per pod, two pods running
        assert snapshot.cpu_millicores == 200.0
        assert snapshot.cpu_percent == 20.0
        assert snapshot.memory_percent == 25.0
        assert snapshot.pods_running == 2
        assert not snapshot.stale

    def test_missing_usage_is_unknown_not_zero(self, collector, running_deployment, cluster):
        cluster.usage = None

        snapshot = collector.refresh_deployment(running_deployment.id)

        assert snapshot.cpu_percent is None
        assert snapshot.memory_bytes is None
        assert snapshot.ready_pods == 2
        assert not snapshot.stale

    def test_snapshot_persisted(self, collector, running_deployment, orchestrator):
        collector.refresh_deployment(running_deployment.id)

        stored = orchestrator.get(running_deployment.id)
        assert stored.metrics.ready_pods == 2
        assert stored.metrics.collected_at is not None

    def test_unhealthy_streak_fails_running(self, collector, running_deployment, cluster, orchestrator):
        cluster.set_workload("apps", "demo", desired=2, ready=0)

        collector.refresh_deployment(running_deployment.id)
        second = collector.refresh_deployment(running_deployment.id)
        assert second.consecutive_unhealthy_passes == 2
        assert orchestrator.get(running_deployment.id).status == DeploymentStatus.RUNNING

        collector.refresh_deployment(running_deployment.id)

        stored = orchestrator.get(running_deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert "no ready pods" in stored.error_message

    def test_recovery_resets_streak(self, collector, running_deployment, cluster):
        cluster.set_workload("apps", "demo", desired=2, ready=0)
        collector.refresh_deployment(running_deployment.id)
        cluster.set_workload("apps", "demo", desired=2, ready=2)

        snapshot = collector.refresh_deployment(running_deployment.id)

        assert snapshot.consecutive_unhealthy_passes == 0

    def test_node_unavailable_marks_stale(self, collector, running_deployment, node_registry, cluster, orchestrator):
        collector.refresh_deployment(running_deployment.id)
        cluster.set_workload("apps", "demo", desired=2, ready=0)
        collector.refresh_deployment(running_deployment.id)
        node_registry.set_status(running_deployment.node_id, NodeStatus.MAINTENANCE)

        for _ in range(5):
            snapshot = collector.refresh_deployment(running_deployment.id)

        assert snapshot.stale
        assert snapshot.stale_reason == "node maintenance"
        assert snapshot.consecutive_unhealthy_passes == 1
        assert orchestrator.get(running_deployment.id).status == DeploymentStatus.RUNNING

    def test_deploying_on_lost_node_fails(self, collector, orchestrator, online_node, deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        later = utcnow() + timedelta(minutes=5)
        snapshot = collector.refresh_deployment(deployment.id, now=later)

        assert snapshot.stale
        assert snapshot.stale_reason == "node offline"
        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message.startswith("node unavailable")

    def test_deploying_waits_within_liveness_window(self, collector, orchestrator, node_registry, online_node,
                                                    deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)
        node_registry.set_status(online_node.id, NodeStatus.MAINTENANCE)

        for _ in range(5):
            snapshot = collector.refresh_deployment(deployment.id)

        assert snapshot.stale
        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.DEPLOYING
        assert stored.reconcile_passes == 0

    def test_telemetry_failure_keeps_previous_values(self, collector, running_deployment, cluster):
        collector.refresh_deployment(running_deployment.id)
        cluster.status_errors = [TransientClusterError("metrics api timeout")]

        snapshot = collector.refresh_deployment(running_deployment.id)

        assert snapshot.stale
        assert snapshot.ready_pods == 2
        assert "metrics api timeout" in snapshot.stale_reason

    def test_missing_workload_reads_as_zero_ready(self, collector, running_deployment, cluster):
        cluster.workloads.clear()

        snapshot = collector.refresh_deployment(running_deployment.id)

        assert snapshot.ready_pods == 0
        assert snapshot.desired_pods == 2
        assert snapshot.consecutive_unhealthy_passes == 1

    def test_stopped_deployment_not_observed(self, collector, running_deployment, orchestrator):
        orchestrator.delete(running_deployment.id)
        assert collector.refresh_deployment(running_deployment.id) is None

    def test_unknown_deployment(self, collector):
        with pytest.raises(NotFoundError):
            collector.refresh_deployment(uuid.uuid4())

    def test_refresh_all(self, collector, running_deployment, orchestrator, online_node, deployment_request):
        orchestrator.create(dict(deployment_request, name="pending-one", contextPath="/p"), online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        # the second deployment has no workload yet; it is still observed
        assert collector.refresh_deployments() == 2


class TestNodeRefresh:

    def test_node_usage(self, collector, online_node, cluster):
        cluster.nodes_usage["worker-1"] = {"cpuMillicores": 2000.0, "memoryBytes": 4 * 2 ** 30}
        cluster.pods = [
            {"name": "a", "namespace": "apps", "phase": "Running", "ready": True, "restartCount": 1, "nodeName": "worker-1"},
            {"name": "b", "namespace": "apps", "phase": "Pending", "ready": False, "restartCount": 0, "nodeName": "worker-1"},
            {"name": "c", "namespace": "apps", "phase": "Running", "ready": True, "restartCount": 0, "nodeName": "worker-2"},
        ]

        snapshot = collector.refresh_node(online_node.id)

        assert snapshot.cpu_percent == 50.0
        assert snapshot.memory_percent == 50.0
        assert snapshot.active_pods == 2
        assert snapshot.pods_running == 1
        assert snapshot.restart_count == 1

    def test_metrics_survive_registry_writes(self, collector, node_registry, online_node, node_repo):
        collector.refresh_node(online_node.id)
        node_registry.heartbeat(online_node.id)

        assert node_repo.get(online_node.id).metrics is not None

    def test_offline_node_is_stale(self, collector, node_registry, online_node):
        node_registry.set_status(online_node.id, NodeStatus.ERROR, "disk failure")

        snapshot = collector.refresh_node(online_node.id)

        assert snapshot.stale
        assert snapshot.stale_reason == "node error"

    def test_refresh_nodes(self, collector, online_node, node_repo):
        assert collector.refresh_nodes() == 1
        assert node_repo.get(online_node.id).metrics.collected_at is not None


class TestLiveQueries:

    @pytest.mark.parametrize("desired,ready,expected", [
        (2, 2, HEALTHY),
        (3, 1, DEGRADED),
        (2, 0, UNAVAILABLE),
        (0, 0, UNAVAILABLE),
    ])
    def test_health_status(self, desired, ready, expected):
        assert health_status(desired, ready) == expected

    def test_deployment_metrics(self, collector, cluster):
        cluster.set_workload("apps", "shop", desired=3, ready=1)
        cluster.usage = [{"namespace": "apps", "name": "shop-0", "cpuMillicores": 10.0, "memoryBytes": 1024}]

        metrics = collector.deployment_metrics("apps", "shop")

        assert metrics["status"] == DEGRADED
        assert metrics["cpuMillicores"] == 10.0
        assert metrics["pods"][0]["cpuMillicores"] == 10.0
        assert metrics["pods"][1]["cpuMillicores"] is None
        assert metrics["metricsAvailable"] is True

    def test_deployment_metrics_unknown_workload(self, collector):
        with pytest.raises(NotFoundError):
            collector.deployment_metrics("apps", "ghost")

    def test_cluster_metrics(self, collector, cluster):
        cluster.nodes = [
            {"name": "worker-1", "ready": True, "cpuCapacity": "4", "memoryCapacity": "8Gi"},
            {"name": "worker-2", "ready": False, "cpuCapacity": "2", "memoryCapacity": "4Gi"},
        ]
        cluster.nodes_usage["worker-1"] = {"cpuMillicores": 1000.0, "memoryBytes": 2 * 2 ** 30}

        metrics = collector.cluster_metrics()

        assert metrics["totals"]["nodes"] == 2
        assert metrics["totals"]["readyNodes"] == 1
        assert metrics["totals"]["cpuMillicores"] == 1000.0
        assert metrics["nodes"][0]["cpuPercent"] == 25.0
        assert metrics["nodes"][1]["cpuPercent"] is None
        assert metrics["metricsAvailable"] is False

    def test_pod_metrics_without_metrics_api(self, collector, cluster):
        cluster.usage = None
        cluster.pods = [
            {"name": "a", "namespace": "apps", "phase": "Running", "ready": True, "restartCount": 0, "nodeName": "worker-1"},
        ]

        metrics = collector.pod_metrics("apps")

        assert metrics["metricsAvailable"] is False
        assert metrics["pods"][0]["cpuMillicores"] is None


class TestWorker:

    def test_worker_cycles(self, collector, running_deployment, online_node, node_repo, deployment_repo):
        worker = CollectorWorker(collector, cluster_interval=60, deployment_interval=60)

        worker.node_loop.run_once()
        worker.deployment_loop.run_once()

        assert node_repo.get(online_node.id).metrics is not None
        assert deployment_repo.get(running_deployment.id).metrics is not None
