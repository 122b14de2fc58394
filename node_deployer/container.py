# node_deployer/container.py

"""Dependency injection container - wires all services together."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from node_deployer.auth.service import AuthService
from node_deployer.cluster.gateway import ClusterGateway, KubernetesGateway
from node_deployer.cluster.image_builder import DockerImageBuilder, ImageBuilder
from node_deployer.collector.collector import CollectorWorker, MetricsCollector
from node_deployer.config import DeployerSettings, get_settings
from node_deployer.core.events import EventEmitter, LoggingEventEmitter, MultiEventEmitter
from node_deployer.core.repository import DeploymentRepository, NodeRepository, UserRepository
from node_deployer.node_manager.service import NodeRegistry
from node_deployer.node_manager.sweeper import NodeLivenessSweeper
from node_deployer.orchestrator.deployment_orchestrator import DeploymentOrchestrator, OrchestratorWorker
from node_deployer.source.adapter import RepositorySourceAdapter
from node_deployer.source.github_client import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: DeployerSettings
    events: EventEmitter
    deployment_repo: DeploymentRepository
    node_repo: NodeRepository
    user_repo: UserRepository
    node_registry: NodeRegistry
    github: GitHubClient
    source_adapter: RepositorySourceAdapter
    cluster: ClusterGateway
    image_builder: Optional[ImageBuilder]
    orchestrator: DeploymentOrchestrator
    collector: MetricsCollector
    auth: AuthService
    workers: List = field(default_factory=list)

    def start_workers(self) -> None:
        """Liveness sweeper, collector loops and recovery, as daemon threads."""
        settings = self.settings
        self.workers = [
            NodeLivenessSweeper(self.node_registry, poll_interval=settings.sweep_interval),
            CollectorWorker(
                self.collector,
                cluster_interval=settings.cluster_poll_interval,
                deployment_interval=settings.deployment_poll_interval,
            ),
            OrchestratorWorker(self.orchestrator, poll_interval=settings.recovery_interval),
        ]
        for worker in self.workers:
            worker.start()
        logger.info(f"[container] started {len(self.workers)} background worker(s)")

    def shutdown(self) -> None:
        for worker in self.workers:
            worker.stop()
        self.workers = []
        self.orchestrator.shutdown()


# ============================================
# REPOSITORIES
# ============================================

def _repositories(settings: DeployerSettings):
    if settings.store_backend == "memory":
        from node_deployer.infrastructure.memory.repository import (
            InMemoryDeploymentRepository,
            InMemoryNodeRepository,
            InMemoryUserRepository,
        )
        return InMemoryDeploymentRepository(), InMemoryNodeRepository(), InMemoryUserRepository()

    from node_deployer.infrastructure.postgres.database import get_session_factory
    from node_deployer.infrastructure.postgres.deployment_repository import PostgresDeploymentRepository
    from node_deployer.infrastructure.postgres.node_repository import (
        PostgresNodeRepository,
        PostgresUserRepository,
    )
    factory = get_session_factory()
    return (
        PostgresDeploymentRepository(factory),
        PostgresNodeRepository(factory),
        PostgresUserRepository(factory),
    )


# ============================================
# SERVICES
# ============================================

def build_container(
    settings: Optional[DeployerSettings] = None,
    *,
    deployment_repo: Optional[DeploymentRepository] = None,
    node_repo: Optional[NodeRepository] = None,
    user_repo: Optional[UserRepository] = None,
    github: Optional[GitHubClient] = None,
    source_adapter: Optional[RepositorySourceAdapter] = None,
    cluster: Optional[ClusterGateway] = None,
    image_builder: Optional[ImageBuilder] = None,
    events: Optional[EventEmitter] = None,
    extra_emitters: Iterable[EventEmitter] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> Container:
    """
    Wire every component. Keyword arguments replace the defaults (tests).

    ``extra_emitters`` receive every event alongside the logging emitter.
    """
    settings = settings or get_settings()

    if deployment_repo is None or node_repo is None or user_repo is None:
        default_deployments, default_nodes, default_users = _repositories(settings)
        deployment_repo = deployment_repo or default_deployments
        node_repo = node_repo or default_nodes
        user_repo = user_repo or default_users

    events = events or LoggingEventEmitter()
    extra_emitters = list(extra_emitters)
    if extra_emitters:
        events = MultiEventEmitter([events, *extra_emitters])

    node_registry = NodeRegistry(
        node_repo=node_repo,
        deployment_repo=deployment_repo,
        event_emitter=events,
        liveness_window=settings.liveness_window,
    )

    github = github or GitHubClient(settings.github_api_url, timeout=settings.github_timeout)
    source_adapter = source_adapter or RepositorySourceAdapter(github)

    cluster = cluster or KubernetesGateway(
        kubeconfig=settings.kubeconfig,
        context=settings.kube_context,
        in_cluster=settings.in_cluster,
        request_timeout=settings.kube_request_timeout,
        ingress_class=settings.ingress_class,
        public_base_url=settings.public_base_url,
    )

    if image_builder is None and settings.image_build_enabled:
        image_builder = DockerImageBuilder(
            base_url=settings.docker_base_url,
            push=settings.image_push,
            timeout=settings.build_timeout,
        )

    orchestrator = DeploymentOrchestrator(
        deployment_repo=deployment_repo,
        node_registry=node_registry,
        source_adapter=source_adapter,
        cluster=cluster,
        image_builder=image_builder,
        event_emitter=events,
        retry_policy=settings.retry_policy(),
        default_namespace=settings.default_namespace,
        lease_seconds=settings.operation_lease_seconds,
        confirmation_passes=settings.confirmation_passes,
        unhealthy_passes=settings.unhealthy_passes,
        pin_workloads_to_node=settings.pin_workloads_to_node,
        max_workers=settings.rollout_workers,
        sleep=sleep,
    )

    collector = MetricsCollector(
        deployment_repo=deployment_repo,
        node_repo=node_repo,
        node_registry=node_registry,
        cluster=cluster,
        orchestrator=orchestrator,
    )

    auth = AuthService(
        user_repo=user_repo,
        secret_key=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expiry_hours=settings.jwt_expiry_hours,
    )

    return Container(
        settings=settings,
        events=events,
        deployment_repo=deployment_repo,
        node_repo=node_repo,
        user_repo=user_repo,
        node_registry=node_registry,
        github=github,
        source_adapter=source_adapter,
        cluster=cluster,
        image_builder=image_builder,
        orchestrator=orchestrator,
        collector=collector,
        auth=auth,
    )
