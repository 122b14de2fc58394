# node_deployer/api/routes/deployments.py
"""Deployment lifecycle API routes."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status

from node_deployer.api.dependencies import get_container, get_current_user, get_github_token
from node_deployer.api.schemas.deployment import DeploymentResponse, ScaleRequest
from node_deployer.auth.models import User
from node_deployer.container import Container
from node_deployer.core.errors import ValidationError
from node_deployer.core.models import DeploymentStatus

router = APIRouter(prefix="/deployments", tags=["deployments"], dependencies=[Depends(get_current_user)])


def _parse_status(value: Optional[str]) -> Optional[DeploymentStatus]:
    if value is None:
        return None
    try:
        return DeploymentStatus(value.lower())
    except ValueError:
        allowed = ", ".join(s.value for s in DeploymentStatus)
        raise ValidationError([f"status: must be one of {allowed}"])


@router.get("", response_model=List[DeploymentResponse])
def list_deployments(
    node_id: Optional[UUID] = Query(default=None, alias="nodeId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: Optional[UUID] = Query(default=None, alias="userId"),
    container: Container = Depends(get_container),
):
    deployments = container.orchestrator.list(
        node_id=node_id,
        status=_parse_status(status_filter),
        user_id=user_id,
    )
    return [DeploymentResponse.from_domain(d) for d in deployments]


@router.post("", response_model=DeploymentResponse, status_code=status.HTTP_201_CREATED)
def create_deployment(
    raw: Dict[str, Any] = Body(...),
    node_id: UUID = Query(..., alias="nodeId"),
    github_token: Optional[str] = Depends(get_github_token),
    user: Optional[User] = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    """
    Accept a deployment request.

    Returns immediately with the deployment in ``pending``; the rollout runs
    in the background. Poll ``GET /deployments/{id}`` for progress.
    """
    deployment = container.orchestrator.create(
        raw,
        node_id,
        credential=github_token,
        user_id=user.id if user else None,
    )
    return DeploymentResponse.from_domain(deployment)


@router.get("/stats")
def deployment_stats(
    node_id: Optional[UUID] = Query(default=None, alias="nodeId"),
    container: Container = Depends(get_container),
) -> Dict[str, int]:
    return container.orchestrator.stats(node_id=node_id)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
def get_deployment(
    deployment_id: UUID,
    container: Container = Depends(get_container),
):
    return DeploymentResponse.from_domain(container.orchestrator.get(deployment_id))


@router.put("/{deployment_id}", response_model=DeploymentResponse)
def update_deployment(
    deployment_id: UUID,
    changes: Dict[str, Any] = Body(...),
    container: Container = Depends(get_container),
):
    return DeploymentResponse.from_domain(container.orchestrator.update(deployment_id, changes))


@router.delete("/{deployment_id}", response_model=DeploymentResponse)
def delete_deployment(
    deployment_id: UUID,
    hard: bool = False,
    container: Container = Depends(get_container),
):
    """Tear down and mark stopped. ``?hard=true`` also removes the record."""
    return DeploymentResponse.from_domain(container.orchestrator.delete(deployment_id, hard=hard))


@router.post("/{deployment_id}/restart", response_model=DeploymentResponse)
def restart_deployment(
    deployment_id: UUID,
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
):
    return DeploymentResponse.from_domain(
        container.orchestrator.restart(deployment_id, credential=github_token)
    )


@router.post("/{deployment_id}/scale", response_model=DeploymentResponse)
def scale_deployment(
    deployment_id: UUID,
    request: ScaleRequest,
    container: Container = Depends(get_container),
):
    return DeploymentResponse.from_domain(container.orchestrator.scale(deployment_id, request.replicas))


@router.post("/{deployment_id}/refresh", response_model=DeploymentResponse)
def refresh_deployment(
    deployment_id: UUID,
    container: Container = Depends(get_container),
):
    """Run one collector pass for this deployment now."""
    container.collector.refresh_deployment(deployment_id)
    return DeploymentResponse.from_domain(container.orchestrator.get(deployment_id))
