# node_deployer/infrastructure/postgres/deployment_repository.py

"""PostgreSQL deployment repository using SQLAlchemy."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from node_deployer.core.errors import ConflictError, DeployerError, NotFoundError
from node_deployer.core.models import (
    Deployment,
    DeploymentSpec,
    DeploymentStatus,
    KubernetesInfo,
    MetricsSnapshot,
    RepositoryRef,
    utcnow,
)
from node_deployer.core.repository import DeploymentRepository
from node_deployer.infrastructure.postgres.database import get_session_factory
from node_deployer.infrastructure.postgres.models import DeploymentORM

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes returned by drivers without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Mapping Functions
# ============================================

def orm_to_domain(orm: DeploymentORM) -> Deployment:
    """Convert ORM model to domain model."""
    return Deployment(
        id=orm.id,
        node_id=orm.node_id,
        spec=DeploymentSpec.from_dict(orm.spec),
        source=RepositoryRef.from_dict(orm.source),
        user_id=orm.user_id,
        status=orm.status,
        error_message=orm.error_message,
        attempts=orm.attempts,
        reconcile_passes=orm.reconcile_passes,
        kubernetes=KubernetesInfo.from_dict(orm.kubernetes) if orm.kubernetes else None,
        metrics=MetricsSnapshot.from_dict(orm.metrics) if orm.metrics else None,
        operation=orm.operation,
        operation_owner=orm.operation_owner,
        operation_expires_at=_utc(orm.operation_expires_at),
        delete_requested=orm.delete_requested,
        created_at=_utc(orm.created_at),
        updated_at=_utc(orm.updated_at),
        scheduled_at=_utc(orm.scheduled_at),
        running_since=_utc(orm.running_since),
        stopped_at=_utc(orm.stopped_at),
    )


def domain_to_orm(deployment: Deployment) -> DeploymentORM:
    """Convert domain model to ORM model."""
    return DeploymentORM(
        id=deployment.id,
        node_id=deployment.node_id,
        user_id=deployment.user_id,
        name=deployment.name,
        namespace=deployment.namespace,
        context_path=deployment.context_path,
        spec=deployment.spec.to_dict(),
        source=deployment.source.to_dict(),
        status=deployment.status,
        error_message=deployment.error_message,
        attempts=deployment.attempts,
        reconcile_passes=deployment.reconcile_passes,
        kubernetes=deployment.kubernetes.to_dict() if deployment.kubernetes else None,
        metrics=deployment.metrics.to_dict() if deployment.metrics else None,
        operation=deployment.operation,
        operation_owner=deployment.operation_owner,
        operation_expires_at=deployment.operation_expires_at,
        delete_requested=deployment.delete_requested,
        created_at=deployment.created_at,
        updated_at=deployment.updated_at,
        scheduled_at=deployment.scheduled_at,
        running_since=deployment.running_since,
        stopped_at=deployment.stopped_at,
    )


# ============================================
# Repository Implementation
# ============================================

class PostgresDeploymentRepository(DeploymentRepository):
    """PostgreSQL implementation using SQLAlchemy with dependency injection."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses the
                default production factory.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    def _locked(self, session: Session, deployment_id: UUID) -> Optional[DeploymentORM]:
        return (
            session.query(DeploymentORM)
            .filter(DeploymentORM.id == deployment_id)
            .with_for_update()
            .first()
        )

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, deployment: Deployment) -> None:
        session = self._get_session()
        try:
            clash = (
                session.query(DeploymentORM)
                .filter(
                    DeploymentORM.namespace == deployment.namespace,
                    DeploymentORM.status != DeploymentStatus.STOPPED,
                    or_(
                        DeploymentORM.name == deployment.name,
                        DeploymentORM.context_path == deployment.context_path,
                    ),
                )
                .first()
            )
            if clash is not None:
                if clash.name == deployment.name:
                    raise ConflictError(
                        f"Deployment name '{deployment.name}' already exists in namespace '{deployment.namespace}'"
                    )
                raise ConflictError(
                    f"Context path '{deployment.context_path}' already taken in namespace '{deployment.namespace}'"
                )

            session.add(domain_to_orm(deployment))
            session.commit()
            logger.debug(f"[postgres] create deployment {deployment.id} -> done")
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(
                f"Deployment '{deployment.name}' conflicts with an existing deployment "
                f"in namespace '{deployment.namespace}'"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise DeployerError(f"Failed to create deployment: {e}") from e
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, deployment_id: UUID) -> Optional[Deployment]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentORM, deployment_id)
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def list(
        self,
        node_id: Optional[UUID] = None,
        status: Optional[DeploymentStatus] = None,
        user_id: Optional[UUID] = None,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[Deployment]:
        session = self._get_session()
        try:
            query = session.query(DeploymentORM)
            if node_id:
                query = query.filter(DeploymentORM.node_id == node_id)
            if status:
                query = query.filter(DeploymentORM.status == status)
            if user_id:
                query = query.filter(DeploymentORM.user_id == user_id)
            if namespace:
                query = query.filter(DeploymentORM.namespace == namespace)
            if name:
                query = query.filter(DeploymentORM.name == name)
            rows = query.order_by(DeploymentORM.created_at.desc()).all()
            return [orm_to_domain(orm) for orm in rows]
        finally:
            session.close()

    # -------------------------
    # FIELD-SCOPED WRITES
    # -------------------------

    def save_lifecycle(self, deployment: Deployment) -> None:
        session = self._get_session()
        try:
            orm = self._locked(session, deployment.id)
            if orm is None:
                raise NotFoundError(f"Deployment {deployment.id} not found")

            orm.spec = deployment.spec.to_dict()
            orm.source = deployment.source.to_dict()
            orm.status = deployment.status
            orm.error_message = deployment.error_message
            orm.attempts = deployment.attempts
            orm.reconcile_passes = deployment.reconcile_passes
            orm.kubernetes = deployment.kubernetes.to_dict() if deployment.kubernetes else None
            orm.scheduled_at = deployment.scheduled_at
            orm.running_since = deployment.running_since
            orm.stopped_at = deployment.stopped_at
            orm.updated_at = utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise DeployerError(f"Failed to save deployment {deployment.id}: {e}") from e
        finally:
            session.close()

    def save_metrics(self, deployment_id: UUID, metrics: MetricsSnapshot) -> None:
        session = self._get_session()
        try:
            orm = self._locked(session, deployment_id)
            if orm is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            orm.metrics = metrics.to_dict()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise DeployerError(f"Failed to save metrics of {deployment_id}: {e}") from e
        finally:
            session.close()

    # -------------------------
    # OPERATION LEASE
    # -------------------------

    def try_begin_operation(
        self,
        deployment_id: UUID,
        operation: str,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Atomically take the lease (row lock, then check-and-set)."""
        now = now or utcnow()
        session = self._get_session()
        try:
            orm = self._locked(session, deployment_id)
            if orm is None:
                return False

            expires_at = _utc(orm.operation_expires_at)
            if orm.operation is not None and expires_at is not None and expires_at > now:
                session.rollback()
                return False

            orm.operation = operation
            orm.operation_owner = owner
            orm.operation_expires_at = now + timedelta(seconds=lease_seconds)
            orm.delete_requested = False
            session.commit()
            logger.debug(f"[postgres] lease {operation} on {deployment_id} -> {owner}")
            return True
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def renew_operation(self, deployment_id: UUID, owner: str, lease_seconds: int) -> bool:
        session = self._get_session()
        try:
            orm = self._locked(session, deployment_id)
            if orm is None or orm.operation_owner != owner:
                return False
            orm.operation_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            session.commit()
            return True
        finally:
            session.close()

    def end_operation(self, deployment_id: UUID, owner: str) -> bool:
        session = self._get_session()
        try:
            orm = self._locked(session, deployment_id)
            if orm is None or orm.operation_owner != owner:
                return False
            delete_requested = orm.delete_requested
            orm.operation = None
            orm.operation_owner = None
            orm.operation_expires_at = None
            orm.delete_requested = False
            session.commit()
            return delete_requested
        finally:
            session.close()

    def request_delete(self, deployment_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        session = self._get_session()
        try:
            orm = self._locked(session, deployment_id)
            if orm is None or orm.operation is None:
                return False
            expires_at = _utc(orm.operation_expires_at)
            if expires_at is None or expires_at <= now:
                return False
            orm.delete_requested = True
            session.commit()
            return True
        finally:
            session.close()

    def list_expired_operations(self, now: Optional[datetime] = None) -> List[Deployment]:
        now = now or utcnow()
        session = self._get_session()
        try:
            rows = session.query(DeploymentORM).filter(DeploymentORM.operation.isnot(None)).all()
            return [
                orm_to_domain(orm) for orm in rows
                if orm.operation_expires_at is not None and _utc(orm.operation_expires_at) <= now
            ]
        finally:
            session.close()

    # -------------------------
    # DELETE
    # -------------------------

    def delete(self, deployment_id: UUID) -> bool:
        session = self._get_session()
        try:
            orm = session.get(DeploymentORM, deployment_id)
            if orm is None:
                return False
            session.delete(orm)
            session.commit()
            logger.debug(f"[postgres] delete deployment {deployment_id} -> done")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise DeployerError(f"Failed to delete deployment {deployment_id}: {e}") from e
        finally:
            session.close()
