from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from node_deployer.api.schemas.common import CamelModel
from node_deployer.core.models import Deployment


class ScaleRequest(CamelModel):
    replicas: int


class DeploymentResponse(CamelModel):
    id: UUID
    name: str
    namespace: str
    context_path: str
    node_id: UUID
    user_id: Optional[UUID]
    status: str
    error_message: Optional[str]
    attempts: int
    url: Optional[str]
    source: Dict[str, Any]
    configuration: Dict[str, Any]
    kubernetes: Optional[Dict[str, Any]]
    metrics: Optional[Dict[str, Any]]
    operation: Optional[str]
    delete_requested: bool
    created_at: datetime
    updated_at: datetime
    scheduled_at: Optional[datetime]
    running_since: Optional[datetime]
    stopped_at: Optional[datetime]

    @classmethod
    def from_domain(cls, deployment: Deployment) -> "DeploymentResponse":
        return cls(
            id=deployment.id,
            name=deployment.name,
            namespace=deployment.namespace,
            context_path=deployment.context_path,
            node_id=deployment.node_id,
            user_id=deployment.user_id,
            status=deployment.status.value,
            error_message=deployment.error_message,
            attempts=deployment.attempts,
            url=deployment.url,
            source=deployment.source.to_dict(),
            configuration=deployment.spec.to_dict()["configuration"],
            kubernetes=deployment.kubernetes.to_dict() if deployment.kubernetes else None,
            metrics=deployment.metrics.to_dict() if deployment.metrics else None,
            operation=deployment.operation if deployment.has_operation() else None,
            delete_requested=deployment.delete_requested,
            created_at=deployment.created_at,
            updated_at=deployment.updated_at,
            scheduled_at=deployment.scheduled_at,
            running_since=deployment.running_since,
            stopped_at=deployment.stopped_at,
        )
