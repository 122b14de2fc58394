# node_deployer/infrastructure/postgres/models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Enum as SQLEnum, Float, Index, Integer, JSON, String, Text, Uuid, text
)

from node_deployer.core.models import DeploymentStatus
from node_deployer.infrastructure.postgres.database import Base
from node_deployer.node_manager.models import NodeStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class DeploymentORM(Base):
    """
    Deployments table.

    Indexes:
    - Partial unique indexes on (namespace, name) and (namespace, context_path)
      over non-stopped rows, so a stopped deployment frees its name and path
    - (node_id, status) for per-node listings
    - operation_expires_at for the recovery scan
    """

    __tablename__ = "deployments"

    id = Column(Uuid, primary_key=True, default=uuid4, nullable=False)
    node_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, nullable=True, index=True)

    # Identity (denormalized from spec for uniqueness)
    name = Column(String(63), nullable=False)
    namespace = Column(String(63), nullable=False)
    context_path = Column(String(255), nullable=False)

    spec = Column(JSON, nullable=False)
    source = Column(JSON, nullable=False)

    # Lifecycle (orchestrator-owned)
    status = Column(
        SQLEnum(DeploymentStatus, name="deployment_status", values_callable=_enum_values),
        nullable=False,
        default=DeploymentStatus.PENDING,
        index=True,
    )
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    reconcile_passes = Column(Integer, nullable=False, default=0)
    kubernetes = Column(JSON, nullable=True)

    # Observed metrics (collector-owned)
    metrics = Column(JSON, nullable=True)

    # Operation lease
    operation = Column(String(32), nullable=True)
    operation_owner = Column(String(255), nullable=True)
    operation_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    delete_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    running_since = Column(DateTime(timezone=True), nullable=True)
    stopped_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_deployments_active_name",
            "namespace",
            "name",
            unique=True,
            postgresql_where=text("status <> 'stopped'"),
            sqlite_where=text("status <> 'stopped'"),
        ),
        Index(
            "uq_deployments_active_context_path",
            "namespace",
            "context_path",
            unique=True,
            postgresql_where=text("status <> 'stopped'"),
            sqlite_where=text("status <> 'stopped'"),
        ),
        Index("ix_deployments_node_status", "node_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<DeploymentORM(id={self.id}, name={self.name}, status={self.status.value})>"


class NodeORM(Base):
    """Registered compute nodes."""

    __tablename__ = "nodes"

    id = Column(Uuid, primary_key=True, default=uuid4, nullable=False)
    name = Column(String(255), nullable=False, unique=True)
    mac_address = Column(String(17), nullable=False, unique=True)
    public_ip = Column(String(45), nullable=False)
    private_ip = Column(String(45), nullable=True)

    location = Column(JSON, nullable=True)
    cluster_info = Column(JSON, nullable=True)
    node_metadata = Column("metadata", JSON, nullable=False, default=dict)

    # Capacity
    cpu_cores = Column(Float, nullable=False, default=0.0)
    memory_total = Column(BigInteger, nullable=False, default=0)
    disk_total = Column(BigInteger, nullable=False, default=0)
    pods_capacity = Column(Integer, nullable=False, default=110)

    # Reported usage
    usage = Column(JSON, nullable=False, default=dict)

    status = Column(
        SQLEnum(NodeStatus, name="node_status", values_callable=_enum_values),
        nullable=False,
        default=NodeStatus.ONLINE,
        index=True,
    )
    status_reason = Column(Text, nullable=True)
    status_changed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Collector-owned
    metrics = Column(JSON, nullable=True)

    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<NodeORM(id={self.id}, name={self.name}, status={self.status.value})>"


class UserORM(Base):
    """User accounts."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4, nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    username = Column(String(50), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="user")
    is_active = Column(Boolean, nullable=False, default=True)
    github_token_encrypted = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UserORM(id={self.id}, username={self.username})>"
