"""Event models for deployment and node lifecycle."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from node_deployer.core.models import utcnow


@dataclass
class DeployerEvent:
    """Lifecycle event for a deployment or node."""

    event_type: str
    subject_id: UUID
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def deployment_created(deployment):
        """Deployment accepted in pending."""
        return DeployerEvent(
            event_type="deployment.created",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={
                "name": deployment.name,
                "namespace": deployment.namespace,
                "node_id": str(deployment.node_id),
                "repository": deployment.source.full_name,
            }
        )

    @staticmethod
    def deployment_status_changed(deployment, previous):
        """Deployment moved between lifecycle states."""
        return DeployerEvent(
            event_type="deployment.status_changed",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={
                "from": previous.value,
                "to": deployment.status.value,
                "error_message": deployment.error_message,
            }
        )

    @staticmethod
    def deployment_scaled(deployment, previous_replicas: int):
        return DeployerEvent(
            event_type="deployment.scaled",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={
                "from": previous_replicas,
                "to": deployment.spec.replicas,
            }
        )

    @staticmethod
    def deployment_delete_deferred(deployment):
        """Delete recorded while another operation is in flight."""
        return DeployerEvent(
            event_type="deployment.delete_deferred",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={"operation": deployment.operation}
        )

    @staticmethod
    def deployment_deleted(deployment, hard: bool):
        return DeployerEvent(
            event_type="deployment.deleted",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={"hard": hard}
        )

    @staticmethod
    def deployment_health_signal(deployment, passes: int):
        """Collector reported zero healthy pods."""
        return DeployerEvent(
            event_type="deployment.health_signal",
            subject_id=deployment.id,
            timestamp=utcnow(),
            metadata={"consecutive_unhealthy_passes": passes}
        )

    @staticmethod
    def node_registered(node):
        return DeployerEvent(
            event_type="node.registered",
            subject_id=node.id,
            timestamp=utcnow(),
            metadata={
                "name": node.name,
                "mac_address": node.mac_address,
            }
        )

    @staticmethod
    def node_status_changed(node, previous, reason: Optional[str] = None):
        return DeployerEvent(
            event_type="node.status_changed",
            subject_id=node.id,
            timestamp=utcnow(),
            metadata={
                "from": previous.value,
                "to": node.status.value,
                "reason": reason,
            }
        )

    @staticmethod
    def node_deleted(node):
        return DeployerEvent(
            event_type="node.deleted",
            subject_id=node.id,
            timestamp=utcnow(),
            metadata={"name": node.name}
        )
