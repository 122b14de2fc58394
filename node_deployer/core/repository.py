"""Store contracts for deployments, nodes and users."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from node_deployer.core.models import Deployment, DeploymentStatus, MetricsSnapshot


class DeploymentRepository(ABC):
    """
    Deployment store.

    Writes are scoped to the owning component: the orchestrator calls
    ``save_lifecycle`` and the operation-lease methods, the collector calls
    ``save_metrics``. Reads return point-in-time copies.
    """

    @abstractmethod
    def create(self, deployment: Deployment) -> None:
        """
        Persist a new deployment.

        Raises:
            ConflictError: name or context path already used by a
                non-stopped deployment in the same namespace
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def list(
        self,
        node_id: Optional[UUID] = None,
        status: Optional[DeploymentStatus] = None,
        user_id: Optional[UUID] = None,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def save_lifecycle(self, deployment: Deployment) -> None:
        """Write status, spec, error, counters, cluster info and timestamps."""
        raise NotImplementedError

    @abstractmethod
    def save_metrics(self, deployment_id: UUID, metrics: MetricsSnapshot) -> None:
        """Write only the observed metrics snapshot."""
        raise NotImplementedError

    @abstractmethod
    def try_begin_operation(
        self,
        deployment_id: UUID,
        operation: str,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Atomically take the per-deployment operation lease."""
        raise NotImplementedError

    @abstractmethod
    def renew_operation(self, deployment_id: UUID, owner: str, lease_seconds: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def end_operation(self, deployment_id: UUID, owner: str) -> bool:
        """
        Release the lease held by ``owner``.

        Returns True when a delete was requested during the operation. The
        flag is cleared together with the lease.
        """
        raise NotImplementedError

    @abstractmethod
    def request_delete(self, deployment_id: UUID, now: Optional[datetime] = None) -> bool:
        """Record a delete while an operation is in flight. False if none is."""
        raise NotImplementedError

    @abstractmethod
    def list_expired_operations(self, now: Optional[datetime] = None) -> List[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, deployment_id: UUID) -> bool:
        """Hard-delete the record."""
        raise NotImplementedError


class NodeRepository(ABC):
    """Node store. The registry writes node fields, the collector metrics."""

    @abstractmethod
    def create(self, node) -> None:
        """Raises ConflictError on duplicate MAC address or name."""
        raise NotImplementedError

    @abstractmethod
    def get(self, node_id: UUID):
        raise NotImplementedError

    @abstractmethod
    def get_by_mac(self, mac_address: str):
        raise NotImplementedError

    @abstractmethod
    def get_by_name(self, name: str):
        raise NotImplementedError

    @abstractmethod
    def list(self, status=None) -> List:
        raise NotImplementedError

    @abstractmethod
    def save(self, node) -> None:
        """Write registry-owned fields (identity, capacity, usage, status)."""
        raise NotImplementedError

    @abstractmethod
    def mark_offline_if_overdue(self, node_id: UUID, cutoff: datetime):
        """
        Atomically flip a node to offline when last seen before ``cutoff``.

        Nodes in maintenance/error and nodes already offline are left alone.
        Returns the updated node, or None when nothing changed.
        """
        raise NotImplementedError

    @abstractmethod
    def record_heartbeat(self, node_id: UUID, now: datetime, usage=None, cluster_info=None):
        """
        Atomically stamp ``last_seen_at`` and store a resource report.

        Only an offline node changes status (back to online); maintenance and
        error are left as they are. Returns ``(previous_status, node)`` or
        None when the node is unknown.
        """
        raise NotImplementedError

    @abstractmethod
    def update_status(self, node_id: UUID, status, reason: Optional[str], now: datetime):
        """
        Atomically write status and reason, leaving every other field alone.

        Setting online also counts as a sighting. Returns
        ``(previous_status, node)`` or None when the node is unknown.
        """
        raise NotImplementedError

    @abstractmethod
    def save_metrics(self, node_id: UUID, metrics: MetricsSnapshot) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, node_id: UUID) -> bool:
        raise NotImplementedError


class UserRepository(ABC):

    @abstractmethod
    def create(self, user) -> None:
        """Raises ConflictError on duplicate email or username."""
        raise NotImplementedError

    @abstractmethod
    def get(self, user_id: UUID):
        raise NotImplementedError

    @abstractmethod
    def get_by_email(self, email: str):
        raise NotImplementedError

    @abstractmethod
    def get_by_username(self, username: str):
        raise NotImplementedError

    @abstractmethod
    def save(self, user) -> None:
        raise NotImplementedError
