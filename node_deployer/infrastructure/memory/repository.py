# node_deployer/infrastructure/memory/repository.py
"""In-memory stores. Every read and write goes through a deep copy under a lock."""

import copy
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from node_deployer.auth.models import User
from node_deployer.core.errors import ConflictError, NotFoundError
from node_deployer.core.models import Deployment, DeploymentStatus, MetricsSnapshot, utcnow
from node_deployer.core.repository import (
    DeploymentRepository,
    NodeRepository,
    UserRepository,
)
from node_deployer.node_manager.models import ADMIN_STATUSES, ClusterInfo, Node, NodeStatus, ResourceUsage


class InMemoryDeploymentRepository(DeploymentRepository):
    def __init__(self):
        self._store: Dict[UUID, Deployment] = {}
        self._lock = Lock()

    def create(self, deployment: Deployment) -> None:
        with self._lock:
            if deployment.id in self._store:
                raise ConflictError(f"Deployment {deployment.id} already exists")
            for other in self._store.values():
                if not other.is_active() or other.namespace != deployment.namespace:
                    continue
                if other.name == deployment.name:
                    raise ConflictError(
                        f"Deployment name '{deployment.name}' already exists in namespace '{deployment.namespace}'"
                    )
                if other.context_path == deployment.context_path:
                    raise ConflictError(
                        f"Context path '{deployment.context_path}' already taken in namespace '{deployment.namespace}'"
                    )
            self._store[deployment.id] = copy.deepcopy(deployment)

    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        with self._lock:
            deployment = self._store.get(deployment_id)
            return copy.deepcopy(deployment) if deployment else None

    def list(
        self,
        node_id: Optional[UUID] = None,
        status: Optional[DeploymentStatus] = None,
        user_id: Optional[UUID] = None,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[Deployment]:
        with self._lock:
            results = []
            for d in self._store.values():
                if node_id and d.node_id != node_id:
                    continue
                if status and d.status != status:
                    continue
                if user_id and d.user_id != user_id:
                    continue
                if namespace and d.namespace != namespace:
                    continue
                if name and d.name != name:
                    continue
                results.append(copy.deepcopy(d))
            return sorted(results, key=lambda d: d.created_at, reverse=True)

    def save_lifecycle(self, deployment: Deployment) -> None:
        with self._lock:
            stored = self._store.get(deployment.id)
            if not stored:
                raise NotFoundError(f"Deployment {deployment.id} not found")
            stored.spec = copy.deepcopy(deployment.spec)
            stored.source = copy.deepcopy(deployment.source)
            stored.status = deployment.status
            stored.error_message = deployment.error_message
            stored.attempts = deployment.attempts
            stored.reconcile_passes = deployment.reconcile_passes
            stored.kubernetes = copy.deepcopy(deployment.kubernetes)
            stored.scheduled_at = deployment.scheduled_at
            stored.running_since = deployment.running_since
            stored.stopped_at = deployment.stopped_at
            stored.updated_at = utcnow()

    def save_metrics(self, deployment_id: UUID, metrics: MetricsSnapshot) -> None:
        with self._lock:
            stored = self._store.get(deployment_id)
            if not stored:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            stored.metrics = copy.deepcopy(metrics)

    def try_begin_operation(
        self,
        deployment_id: UUID,
        operation: str,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        with self._lock:
            stored = self._store.get(deployment_id)
            if not stored:
                return False
            if stored.has_operation(now):
                return False
            stored.operation = operation
            stored.operation_owner = owner
            stored.operation_expires_at = now + timedelta(seconds=lease_seconds)
            stored.delete_requested = False
            return True

    def renew_operation(self, deployment_id: UUID, owner: str, lease_seconds: int) -> bool:
        with self._lock:
            stored = self._store.get(deployment_id)
            if not stored or stored.operation_owner != owner:
                return False
            stored.operation_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            return True

    def end_operation(self, deployment_id: UUID, owner: str) -> bool:
        with self._lock:
            stored = self._store.get(deployment_id)
            if not stored or stored.operation_owner != owner:
                return False
            delete_requested = stored.delete_requested
            stored.operation = None
            stored.operation_owner = None
            stored.operation_expires_at = None
            stored.delete_requested = False
            return delete_requested

    def request_delete(self, deployment_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._lock:
            stored = self._store.get(deployment_id)
            if not stored or not stored.has_operation(now):
                return False
            stored.delete_requested = True
            return True

    def list_expired_operations(self, now: Optional[datetime] = None) -> List[Deployment]:
        now = now or utcnow()
        with self._lock:
            return [
                copy.deepcopy(d) for d in self._store.values()
                if d.operation is not None
                and d.operation_expires_at is not None
                and d.operation_expires_at <= now
            ]

    def delete(self, deployment_id: UUID) -> bool:
        with self._lock:
            return self._store.pop(deployment_id, None) is not None


class InMemoryNodeRepository(NodeRepository):
    def __init__(self):
        self._store: Dict[UUID, Node] = {}
        self._lock = Lock()

    def create(self, node: Node) -> None:
        with self._lock:
            for other in self._store.values():
                if other.mac_address == node.mac_address:
                    raise ConflictError(f"MAC address {node.mac_address} already registered")
                if other.name == node.name:
                    raise ConflictError(f"Node name '{node.name}' already registered")
            self._store[node.id] = copy.deepcopy(node)

    def get(self, node_id: UUID) -> Optional[Node]:
        with self._lock:
            node = self._store.get(node_id)
            return copy.deepcopy(node) if node else None

    def get_by_mac(self, mac_address: str) -> Optional[Node]:
        with self._lock:
            for node in self._store.values():
                if node.mac_address == mac_address:
                    return copy.deepcopy(node)
            return None

    def get_by_name(self, name: str) -> Optional[Node]:
        with self._lock:
            for node in self._store.values():
                if node.name == name:
                    return copy.deepcopy(node)
            return None

    def list(self, status: Optional[NodeStatus] = None) -> List[Node]:
        with self._lock:
            nodes = [
                copy.deepcopy(n) for n in self._store.values()
                if status is None or n.status == status
            ]
            return sorted(nodes, key=lambda n: n.created_at)

    def save(self, node: Node) -> None:
        with self._lock:
            stored = self._store.get(node.id)
            if not stored:
                raise NotFoundError(f"Node {node.id} not found")
            metrics = stored.metrics
            updated = copy.deepcopy(node)
            updated.metrics = metrics
            updated.updated_at = utcnow()
            self._store[node.id] = updated

    def mark_offline_if_overdue(self, node_id: UUID, cutoff: datetime) -> Optional[Node]:
        with self._lock:
            stored = self._store.get(node_id)
            if not stored:
                return None
            if stored.status in ADMIN_STATUSES or stored.status == NodeStatus.OFFLINE:
                return None
            if stored.last_seen_at >= cutoff:
                return None
            stored.status = NodeStatus.OFFLINE
            stored.status_reason = "no heartbeat within liveness window"
            stored.status_changed_at = utcnow()
            stored.updated_at = utcnow()
            return copy.deepcopy(stored)

    def record_heartbeat(
        self,
        node_id: UUID,
        now: datetime,
        usage: Optional[ResourceUsage] = None,
        cluster_info: Optional[ClusterInfo] = None,
    ) -> Optional[Tuple[NodeStatus, Node]]:
        with self._lock:
            stored = self._store.get(node_id)
            if not stored:
                return None
            previous = stored.status
            if usage is not None:
                stored.usage = copy.deepcopy(usage)
            if cluster_info is not None:
                stored.cluster_info = copy.deepcopy(cluster_info)
            stored.last_seen_at = now
            if stored.status == NodeStatus.OFFLINE:
                stored.status = NodeStatus.ONLINE
                stored.status_reason = None
                stored.status_changed_at = now
            stored.updated_at = now
            return previous, copy.deepcopy(stored)

    def update_status(
        self,
        node_id: UUID,
        status: NodeStatus,
        reason: Optional[str],
        now: datetime,
    ) -> Optional[Tuple[NodeStatus, Node]]:
        with self._lock:
            stored = self._store.get(node_id)
            if not stored:
                return None
            previous = stored.status
            if previous != status:
                stored.status_changed_at = now
            stored.status = status
            stored.status_reason = reason
            if status == NodeStatus.ONLINE:
                stored.last_seen_at = now
            stored.updated_at = now
            return previous, copy.deepcopy(stored)

    def save_metrics(self, node_id: UUID, metrics: MetricsSnapshot) -> None:
        with self._lock:
            stored = self._store.get(node_id)
            if not stored:
                raise NotFoundError(f"Node {node_id} not found")
            stored.metrics = copy.deepcopy(metrics)

    def delete(self, node_id: UUID) -> bool:
        with self._lock:
            return self._store.pop(node_id, None) is not None


class InMemoryUserRepository(UserRepository):
    def __init__(self):
        self._store: Dict[UUID, User] = {}
        self._lock = Lock()

    def create(self, user: User) -> None:
        with self._lock:
            for other in self._store.values():
                if other.email == user.email:
                    raise ConflictError(f"Email {user.email} already registered")
                if other.username == user.username:
                    raise ConflictError(f"Username {user.username} already taken")
            self._store[user.id] = copy.deepcopy(user)

    def get(self, user_id: UUID) -> Optional[User]:
        with self._lock:
            user = self._store.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            for user in self._store.values():
                if user.email == email:
                    return copy.deepcopy(user)
            return None

    def get_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            for user in self._store.values():
                if user.username == username:
                    return copy.deepcopy(user)
            return None

    def save(self, user: User) -> None:
        with self._lock:
            if user.id not in self._store:
                raise NotFoundError(f"User {user.id} not found")
            self._store[user.id] = copy.deepcopy(user)
