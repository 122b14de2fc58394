# node_deployer/collector/collector.py
"""
Reconciliation / metrics collector.

Reads observed state from the cluster and writes only metrics snapshots.
Lifecycle decisions (deploying -> running, running -> failed) are handed
to the orchestrator through its reconciliation hooks.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from node_deployer.cluster import manifests
from node_deployer.cluster.gateway import ClusterGateway
from node_deployer.core.errors import (
    DeployerError,
    FatalClusterError,
    NotFoundError,
    TransientClusterError,
)
from node_deployer.core.models import Deployment, DeploymentStatus, MetricsSnapshot, utcnow
from node_deployer.core.quantity import to_bytes, to_millicores
from node_deployer.core.repository import DeploymentRepository, NodeRepository
from node_deployer.core.worker import PollingWorker
from node_deployer.node_manager.models import Node
from node_deployer.node_manager.service import NodeRegistry

logger = logging.getLogger(__name__)

TELEMETRY_ERRORS = (TransientClusterError, FatalClusterError)

HEALTHY = "Healthy"
DEGRADED = "Degraded"
UNAVAILABLE = "Unavailable"


def _percent(used: Optional[float], total: Optional[float]) -> Optional[float]:
    if used is None or not total:
        return None
    return round(used / total * 100, 2)


def _stale(previous: Optional[MetricsSnapshot], reason: str) -> MetricsSnapshot:
    return (previous or MetricsSnapshot()).mark_stale(reason)


def health_status(desired: int, ready: int) -> str:
    if desired > 0 and ready >= desired:
        return HEALTHY
    if ready > 0:
        return DEGRADED
    return UNAVAILABLE


class MetricsCollector:
    """
    Periodic refresh of node and deployment metrics.

    A snapshot is marked stale (previous values kept) when the node is not
    online or the cluster cannot be read. Stale passes never count towards
    the unhealthy streak.
    """

    def __init__(
        self,
        deployment_repo: DeploymentRepository,
        node_repo: NodeRepository,
        node_registry: NodeRegistry,
        cluster: ClusterGateway,
        orchestrator=None,
    ):
        self._deployments = deployment_repo
        self._node_repo = node_repo
        self._registry = node_registry
        self._cluster = cluster
        self._orchestrator = orchestrator

    # ============================================
    # NODES
    # ============================================

    def refresh_node(
        self,
        node_id: UUID,
        pods: Optional[List[Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> MetricsSnapshot:
        """
        Refresh one node's metrics snapshot.

        ``pods`` is the cluster-wide pod list when the caller already has it.
        """
        now = now or utcnow()
        node = self._registry.get(node_id, now=now)
        snapshot = self._observe_node(node, pods, now)
        self._node_repo.save_metrics(node.id, snapshot)
        return snapshot

    def _observe_node(self, node: Node, pods: Optional[List[Dict[str, Any]]], now: datetime) -> MetricsSnapshot:
        if not node.is_available():
            return _stale(node.metrics, f"node {node.status.value}")

        hostname = node.metadata.hostname or node.name
        try:
            usage = self._cluster.node_usage(hostname)
            if pods is None:
                pods = self._cluster.list_pods()
        except TELEMETRY_ERRORS as e:
            logger.warning(f"[collector] node {node.name} telemetry unavailable: {e}")
            return _stale(node.metrics, f"telemetry unavailable: {e}")

        hosted = [p for p in pods if p.get("nodeName") == hostname]
        cpu = usage["cpuMillicores"] if usage else None
        memory = usage["memoryBytes"] if usage else None
        return MetricsSnapshot(
            desired_pods=node.capacity.pods_capacity,
            active_pods=len(hosted),
            ready_pods=sum(1 for p in hosted if p.get("ready")),
            pods_running=sum(1 for p in hosted if p.get("phase") == "Running"),
            cpu_millicores=cpu,
            memory_bytes=memory,
            cpu_percent=_percent(cpu, node.capacity.cpu_cores * 1000),
            memory_percent=_percent(memory, node.capacity.memory_total),
            restart_count=sum(p.get("restartCount", 0) for p in hosted),
            collected_at=now,
        )

    def refresh_nodes(self, now: Optional[datetime] = None) -> int:
        """Refresh every registered node. Returns the number refreshed."""
        now = now or utcnow()
        try:
            pods = self._cluster.list_pods()
        except TELEMETRY_ERRORS as e:
            logger.warning(f"[collector] pod listing failed: {e}")
            pods = None

        refreshed = 0
        for node in self._registry.list(now=now):
            try:
                if pods is None and node.is_available():
                    snapshot = _stale(node.metrics, "pod listing unavailable")
                else:
                    snapshot = self._observe_node(node, pods, now)
                self._node_repo.save_metrics(node.id, snapshot)
                refreshed += 1
            except DeployerError as e:
                logger.error(f"[collector] refresh of node {node.id} failed: {e}")
        return refreshed

    # ============================================
    # DEPLOYMENTS
    # ============================================

    def refresh_deployment(self, deployment_id: UUID, now: Optional[datetime] = None) -> Optional[MetricsSnapshot]:
        """
        Refresh one deployment's metrics snapshot.

        Returns None when there is nothing to observe yet (pending, no
        cluster resources) or the deployment is stopped.

        Raises:
            NotFoundError: unknown deployment
        """
        now = now or utcnow()
        deployment = self._deployments.get(deployment_id)
        if not deployment:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        if not deployment.is_active() or deployment.kubernetes is None:
            return None

        previous = deployment.metrics
        reason = self._node_unavailable_reason(deployment, now)
        if reason:
            snapshot = _stale(previous, reason)
            self._deployments.save_metrics(deployment.id, snapshot)
            if self._orchestrator is not None and deployment.status == DeploymentStatus.DEPLOYING:
                # a rollout on a node gone past the liveness window fails here
                self._orchestrator.confirm_rollout(deployment.id, snapshot, now=now)
            return snapshot

        try:
            status = self._cluster.workload_status(deployment.namespace, deployment.name)
        except NotFoundError:
            status = {
                "desiredReplicas": deployment.spec.replicas,
                "readyReplicas": 0,
                "availableReplicas": 0,
                "pods": [],
            }
        except TELEMETRY_ERRORS as e:
            logger.warning(f"[collector] deployment {deployment.id} telemetry unavailable: {e}")
            snapshot = _stale(previous, f"telemetry unavailable: {e}")
            self._deployments.save_metrics(deployment.id, snapshot)
            return snapshot

        snapshot = self._deployment_snapshot(deployment, status, previous, now)
        self._deployments.save_metrics(deployment.id, snapshot)
        self._reconcile(deployment, snapshot)
        return snapshot

    def _node_unavailable_reason(self, deployment: Deployment, now: datetime) -> Optional[str]:
        try:
            node = self._registry.get(deployment.node_id, now=now)
        except NotFoundError:
            return "node no longer registered"
        if not node.is_available():
            return f"node {node.status.value}"
        return None

    def _deployment_snapshot(
        self,
        deployment: Deployment,
        status: Dict[str, Any],
        previous: Optional[MetricsSnapshot],
        now: datetime,
    ) -> MetricsSnapshot:
        pods = status.get("pods", [])
        running = sum(1 for p in pods if p.get("phase") == "Running")
        ready = status.get("readyReplicas", 0)

        try:
            usage = self._cluster.pod_usage(deployment.namespace, manifests.pod_selector(deployment.name))
        except TELEMETRY_ERRORS as e:
            logger.debug(f"[collector] pod usage unavailable for {deployment.id}: {e}")
            usage = None

        cpu = memory = cpu_percent = memory_percent = None
        if usage is not None:
            cpu = sum(u["cpuMillicores"] for u in usage)
            memory = sum(u["memoryBytes"] for u in usage)
            if running:
                cpu_percent = _percent(cpu, to_millicores(deployment.spec.cpu_limit) * running)
                memory_percent = _percent(memory, to_bytes(deployment.spec.memory_limit) * running)

        unhealthy = 0
        if deployment.status == DeploymentStatus.RUNNING and ready == 0:
            unhealthy = (previous.consecutive_unhealthy_passes if previous else 0) + 1

        return MetricsSnapshot(
            desired_pods=status.get("desiredReplicas", deployment.spec.replicas),
            active_pods=len(pods),
            ready_pods=ready,
            available_pods=status.get("availableReplicas", 0),
            pods_running=running,
            cpu_millicores=cpu,
            memory_bytes=memory,
            cpu_percent=cpu_percent,
            memory_percent=memory_percent,
            restart_count=sum(p.get("restartCount", 0) for p in pods),
            consecutive_unhealthy_passes=unhealthy,
            collected_at=now,
        )

    def _reconcile(self, deployment: Deployment, snapshot: MetricsSnapshot) -> None:
        if self._orchestrator is None:
            return
        if deployment.status == DeploymentStatus.DEPLOYING:
            self._orchestrator.confirm_rollout(deployment.id, snapshot)
        elif deployment.status == DeploymentStatus.RUNNING and snapshot.consecutive_unhealthy_passes:
            logger.warning(
                f"[collector] deployment {deployment.id} has no ready pods "
                f"({snapshot.consecutive_unhealthy_passes} consecutive passes)"
            )
            self._orchestrator.report_health_signal(deployment.id, snapshot.consecutive_unhealthy_passes)

    def refresh_deployments(self, now: Optional[datetime] = None) -> int:
        """Refresh every deploying/running deployment. Returns the number refreshed."""
        refreshed = 0
        for status in (DeploymentStatus.DEPLOYING, DeploymentStatus.RUNNING):
            for deployment in self._deployments.list(status=status):
                try:
                    if self.refresh_deployment(deployment.id, now=now) is not None:
                        refreshed += 1
                except DeployerError as e:
                    logger.error(f"[collector] refresh of deployment {deployment.id} failed: {e}")
        return refreshed

    # ============================================
    # QUERIES
    # ============================================

    def cluster_metrics(self) -> Dict[str, Any]:
        """Cluster-wide node usage and pod counts, read live from the cluster."""
        nodes = self._cluster.list_nodes()
        pods = self._cluster.list_pods()

        rows = []
        metrics_available = True
        for node in nodes:
            usage = self._cluster.node_usage(node["name"])
            if usage is None:
                metrics_available = False
            cpu = usage["cpuMillicores"] if usage else None
            memory = usage["memoryBytes"] if usage else None
            rows.append({
                "name": node["name"],
                "ready": node["ready"],
                "cpuMillicores": cpu,
                "memoryBytes": memory,
                "cpuPercent": _percent(cpu, to_millicores(node.get("cpuCapacity"))),
                "memoryPercent": _percent(memory, to_bytes(node.get("memoryCapacity"))),
                "pods": sum(1 for p in pods if p.get("nodeName") == node["name"]),
            })

        known = [r for r in rows if r["cpuMillicores"] is not None]
        return {
            "nodes": rows,
            "totals": {
                "nodes": len(nodes),
                "readyNodes": sum(1 for n in nodes if n["ready"]),
                "pods": len(pods),
                "runningPods": sum(1 for p in pods if p.get("phase") == "Running"),
                "cpuMillicores": sum(r["cpuMillicores"] for r in known) if known else None,
                "memoryBytes": sum(r["memoryBytes"] for r in known) if known else None,
            },
            "metricsAvailable": metrics_available and bool(nodes),
            "collectedAt": utcnow().isoformat(),
        }

    def pod_metrics(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        pods = self._cluster.list_pods(namespace)
        usage = self._cluster.pod_usage(namespace)
        by_pod = {(u["namespace"], u["name"]): u for u in usage or []}

        items = []
        for pod in pods:
            u = by_pod.get((pod["namespace"], pod["name"]))
            items.append({
                "name": pod["name"],
                "namespace": pod["namespace"],
                "phase": pod["phase"],
                "ready": pod["ready"],
                "restartCount": pod["restartCount"],
                "nodeName": pod["nodeName"],
                "cpuMillicores": u["cpuMillicores"] if u else None,
                "memoryBytes": u["memoryBytes"] if u else None,
            })
        return {
            "namespace": namespace,
            "pods": items,
            "metricsAvailable": usage is not None,
            "collectedAt": utcnow().isoformat(),
        }

    def deployment_metrics(self, namespace: str, name: str) -> Dict[str, Any]:
        """
        Live metrics for one workload with a Healthy/Degraded/Unavailable status.

        Raises:
            NotFoundError: no such workload in the cluster
        """
        status = self._cluster.workload_status(namespace, name)
        usage = self._cluster.pod_usage(namespace, manifests.pod_selector(name))
        by_pod = {u["name"]: u for u in usage or []}

        pods = []
        for pod in status["pods"]:
            u = by_pod.get(pod["name"])
            pods.append({
                **pod,
                "cpuMillicores": u["cpuMillicores"] if u else None,
                "memoryBytes": u["memoryBytes"] if u else None,
            })

        return {
            "namespace": namespace,
            "name": name,
            "status": health_status(status["desiredReplicas"], status["readyReplicas"]),
            "desiredReplicas": status["desiredReplicas"],
            "readyReplicas": status["readyReplicas"],
            "availableReplicas": status["availableReplicas"],
            "updatedReplicas": status.get("updatedReplicas", 0),
            "restartCount": sum(p["restartCount"] for p in status["pods"]),
            "cpuMillicores": sum(u["cpuMillicores"] for u in usage) if usage is not None else None,
            "memoryBytes": sum(u["memoryBytes"] for u in usage) if usage is not None else None,
            "pods": pods,
            "metricsAvailable": usage is not None,
            "collectedAt": utcnow().isoformat(),
        }


# ============================================
# Workers
# ============================================

class NodeMetricsLoop(PollingWorker):
    name = "collector-nodes"

    def __init__(self, collector: MetricsCollector, poll_interval: float):
        super().__init__(poll_interval)
        self._collector = collector

    def _cycle(self) -> None:
        count = self._collector.refresh_nodes()
        logger.debug(f"[collector] refreshed {count} node(s)")


class DeploymentMetricsLoop(PollingWorker):
    name = "collector-deployments"

    def __init__(self, collector: MetricsCollector, poll_interval: float):
        super().__init__(poll_interval)
        self._collector = collector

    def _cycle(self) -> None:
        count = self._collector.refresh_deployments()
        logger.debug(f"[collector] refreshed {count} deployment(s)")


class CollectorWorker:
    """Node and deployment refresh loops, each on its own interval."""

    def __init__(
        self,
        collector: MetricsCollector,
        cluster_interval: float = 30.0,
        deployment_interval: float = 10.0,
    ):
        self.node_loop = NodeMetricsLoop(collector, cluster_interval)
        self.deployment_loop = DeploymentMetricsLoop(collector, deployment_interval)

    def start(self) -> None:
        self.node_loop.start()
        self.deployment_loop.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self.node_loop.stop(timeout)
        self.deployment_loop.stop(timeout)

    def run_forever(self) -> None:
        """Deployment loop in the foreground, node loop on a thread."""
        self.node_loop.start()
        try:
            self.deployment_loop.run_forever()
        finally:
            self.node_loop.stop()
