# node_deployer/infrastructure/postgres/node_repository.py

"""PostgreSQL repositories for nodes and users."""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from node_deployer.auth.models import User
from node_deployer.core.errors import ConflictError, DeployerError, NotFoundError
from node_deployer.core.models import MetricsSnapshot, utcnow
from node_deployer.core.repository import NodeRepository, UserRepository
from node_deployer.infrastructure.postgres.database import get_session_factory
from node_deployer.infrastructure.postgres.deployment_repository import _utc
from node_deployer.infrastructure.postgres.models import NodeORM, UserORM
from node_deployer.node_manager.models import (
    ADMIN_STATUSES,
    ClusterInfo,
    Location,
    Node,
    NodeCapacity,
    NodeMetadata,
    NodeStatus,
    ResourceUsage,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def node_orm_to_domain(orm: NodeORM) -> Node:
    return Node(
        id=orm.id,
        name=orm.name,
        mac_address=orm.mac_address,
        public_ip=orm.public_ip,
        private_ip=orm.private_ip,
        location=Location(**orm.location) if orm.location else None,
        cluster_info=ClusterInfo(**orm.cluster_info) if orm.cluster_info else None,
        capacity=NodeCapacity(
            cpu_cores=orm.cpu_cores,
            memory_total=orm.memory_total,
            disk_total=orm.disk_total,
            pods_capacity=orm.pods_capacity,
        ),
        usage=ResourceUsage(**(orm.usage or {})),
        metadata=NodeMetadata(**(orm.node_metadata or {})),
        status=orm.status,
        status_reason=orm.status_reason,
        status_changed_at=_utc(orm.status_changed_at),
        metrics=MetricsSnapshot.from_dict(orm.metrics) if orm.metrics else None,
        last_seen_at=_utc(orm.last_seen_at),
        created_at=_utc(orm.created_at),
        updated_at=_utc(orm.updated_at),
    )


def _apply_node_fields(orm: NodeORM, node: Node) -> NodeORM:
    """Copy registry-owned fields. Metrics are left untouched."""
    orm.name = node.name
    orm.mac_address = node.mac_address
    orm.public_ip = node.public_ip
    orm.private_ip = node.private_ip
    orm.location = asdict(node.location) if node.location else None
    orm.cluster_info = asdict(node.cluster_info) if node.cluster_info else None
    orm.node_metadata = asdict(node.metadata)
    orm.cpu_cores = node.capacity.cpu_cores
    orm.memory_total = node.capacity.memory_total
    orm.disk_total = node.capacity.disk_total
    orm.pods_capacity = node.capacity.pods_capacity
    orm.usage = asdict(node.usage)
    orm.status = node.status
    orm.status_reason = node.status_reason
    orm.status_changed_at = node.status_changed_at
    orm.last_seen_at = node.last_seen_at
    return orm


def user_orm_to_domain(orm: UserORM) -> User:
    return User(
        id=orm.id,
        email=orm.email,
        username=orm.username,
        password_hash=orm.password_hash,
        full_name=orm.full_name,
        role=orm.role,
        is_active=orm.is_active,
        github_token_encrypted=orm.github_token_encrypted,
        created_at=_utc(orm.created_at),
        last_login_at=_utc(orm.last_login_at),
    )


# ============================================
# Nodes
# ============================================

class PostgresNodeRepository(NodeRepository):
    """PostgreSQL node store."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    def create(self, node: Node) -> None:
        session = self._get_session()
        try:
            orm = _apply_node_fields(NodeORM(id=node.id, created_at=node.created_at), node)
            orm.updated_at = node.updated_at
            session.add(orm)
            session.commit()
            logger.debug(f"[postgres] create node {node.id} -> done")
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(f"Node name '{node.name}' or MAC {node.mac_address} already registered") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise DeployerError(f"Failed to create node: {e}") from e
        finally:
            session.close()

    def get(self, node_id: UUID) -> Optional[Node]:
        session = self._get_session()
        try:
            orm = session.get(NodeORM, node_id)
            return node_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_mac(self, mac_address: str) -> Optional[Node]:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.mac_address == mac_address).first()
            return node_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_name(self, name: str) -> Optional[Node]:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.name == name).first()
            return node_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def list(self, status: Optional[NodeStatus] = None) -> List[Node]:
        session = self._get_session()
        try:
            query = session.query(NodeORM)
            if status is not None:
                query = query.filter(NodeORM.status == status)
            return [node_orm_to_domain(orm) for orm in query.order_by(NodeORM.created_at.asc()).all()]
        finally:
            session.close()

    def save(self, node: Node) -> None:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.id == node.id).with_for_update().first()
            if orm is None:
                raise NotFoundError(f"Node {node.id} not found")
            _apply_node_fields(orm, node)
            orm.updated_at = utcnow()
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(f"Node name '{node.name}' already registered") from e
        finally:
            session.close()

    def mark_offline_if_overdue(self, node_id: UUID, cutoff: datetime) -> Optional[Node]:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.id == node_id).with_for_update().first()
            if orm is None:
                return None
            if orm.status in ADMIN_STATUSES or orm.status == NodeStatus.OFFLINE:
                return None
            if _utc(orm.last_seen_at) >= cutoff:
                return None

            now = utcnow()
            orm.status = NodeStatus.OFFLINE
            orm.status_reason = "no heartbeat within liveness window"
            orm.status_changed_at = now
            orm.updated_at = now
            session.commit()
            return node_orm_to_domain(orm)
        finally:
            session.close()

    def record_heartbeat(
        self,
        node_id: UUID,
        now: datetime,
        usage: Optional[ResourceUsage] = None,
        cluster_info: Optional[ClusterInfo] = None,
    ) -> Optional[Tuple[NodeStatus, Node]]:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.id == node_id).with_for_update().first()
            if orm is None:
                return None
            previous = orm.status
            if usage is not None:
                orm.usage = asdict(usage)
            if cluster_info is not None:
                orm.cluster_info = asdict(cluster_info)
            orm.last_seen_at = now
            if orm.status == NodeStatus.OFFLINE:
                orm.status = NodeStatus.ONLINE
                orm.status_reason = None
                orm.status_changed_at = now
            orm.updated_at = now
            session.commit()
            return previous, node_orm_to_domain(orm)
        finally:
            session.close()

    def update_status(
        self,
        node_id: UUID,
        status: NodeStatus,
        reason: Optional[str],
        now: datetime,
    ) -> Optional[Tuple[NodeStatus, Node]]:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.id == node_id).with_for_update().first()
            if orm is None:
                return None
            previous = orm.status
            if previous != status:
                orm.status_changed_at = now
            orm.status = status
            orm.status_reason = reason
            if status == NodeStatus.ONLINE:
                orm.last_seen_at = now
            orm.updated_at = now
            session.commit()
            return previous, node_orm_to_domain(orm)
        finally:
            session.close()

    def save_metrics(self, node_id: UUID, metrics: MetricsSnapshot) -> None:
        session = self._get_session()
        try:
            orm = session.query(NodeORM).filter(NodeORM.id == node_id).with_for_update().first()
            if orm is None:
                raise NotFoundError(f"Node {node_id} not found")
            orm.metrics = metrics.to_dict()
            session.commit()
        finally:
            session.close()

    def delete(self, node_id: UUID) -> bool:
        session = self._get_session()
        try:
            orm = session.get(NodeORM, node_id)
            if orm is None:
                return False
            session.delete(orm)
            session.commit()
            return True
        finally:
            session.close()


# ============================================
# Users
# ============================================

class PostgresUserRepository(UserRepository):
    """PostgreSQL user store."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    def create(self, user: User) -> None:
        session = self._get_session()
        try:
            session.add(UserORM(
                id=user.id,
                email=user.email,
                username=user.username,
                password_hash=user.password_hash,
                full_name=user.full_name,
                role=user.role,
                is_active=user.is_active,
                github_token_encrypted=user.github_token_encrypted,
                created_at=user.created_at,
                last_login_at=user.last_login_at,
            ))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConflictError("Email or username already registered") from e
        finally:
            session.close()

    def get(self, user_id: UUID) -> Optional[User]:
        session = self._get_session()
        try:
            orm = session.get(UserORM, user_id)
            return user_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_email(self, email: str) -> Optional[User]:
        session = self._get_session()
        try:
            orm = session.query(UserORM).filter(UserORM.email == email).first()
            return user_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_username(self, username: str) -> Optional[User]:
        session = self._get_session()
        try:
            orm = session.query(UserORM).filter(UserORM.username == username).first()
            return user_orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def save(self, user: User) -> None:
        session = self._get_session()
        try:
            orm = session.get(UserORM, user.id)
            if orm is None:
                raise NotFoundError(f"User {user.id} not found")
            orm.email = user.email
            orm.username = user.username
            orm.password_hash = user.password_hash
            orm.full_name = user.full_name
            orm.role = user.role
            orm.is_active = user.is_active
            orm.github_token_encrypted = user.github_token_encrypted
            orm.last_login_at = user.last_login_at
            session.commit()
        finally:
            session.close()
