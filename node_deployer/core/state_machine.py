# node_deployer/core/state_machine.py

from datetime import datetime
from typing import Optional

from node_deployer.core.errors import InvalidStateError
from node_deployer.core.models import Deployment, DeploymentStatus, utcnow


# Every live state may exit to STOPPED: deletion is honored from anywhere.
ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.FAILED,
        DeploymentStatus.STOPPED,
    },
    DeploymentStatus.DEPLOYING: {
        DeploymentStatus.RUNNING,
        DeploymentStatus.FAILED,
        DeploymentStatus.STOPPED,
    },
    DeploymentStatus.RUNNING: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.FAILED,
        DeploymentStatus.STOPPED,
    },
    DeploymentStatus.FAILED: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.STOPPED,
    },
    DeploymentStatus.STOPPED: set(),
}


def can_transition(current: DeploymentStatus, new_status: DeploymentStatus) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current, set())


class DeploymentStateMachine:
    @staticmethod
    def transition(
        deployment: Deployment,
        new_status: DeploymentStatus,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Deployment:
        now = now or utcnow()

        current = deployment.status

        if current == new_status:
            return deployment

        if not can_transition(current, new_status):
            raise InvalidStateError(
                f"Cannot transition deployment {deployment.id} "
                f"from {current.value} to {new_status.value}"
            )

        # Timestamp semantics
        if new_status == DeploymentStatus.DEPLOYING:
            deployment.error_message = None
            deployment.attempts = 0
            deployment.reconcile_passes = 0
            deployment.running_since = None

        elif new_status == DeploymentStatus.RUNNING:
            deployment.running_since = now

        elif new_status == DeploymentStatus.FAILED:
            deployment.error_message = reason or deployment.error_message or "deployment failed"
            deployment.running_since = None

        elif new_status == DeploymentStatus.STOPPED:
            deployment.stopped_at = now
            deployment.running_since = None

        deployment.status = new_status
        deployment.updated_at = now
        return deployment
