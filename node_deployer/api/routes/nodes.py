# node_deployer/api/routes/nodes.py
"""Node management API routes."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from node_deployer.api.dependencies import get_container, get_current_user
from node_deployer.api.schemas.deployment import DeploymentResponse
from node_deployer.api.schemas.node import (
    HeartbeatRequest,
    NodeResponse,
    NodeStatusRequest,
    RegisterNodeRequest,
    UpdateNodeRequest,
)
from node_deployer.container import Container
from node_deployer.core.errors import ValidationError
from node_deployer.node_manager.models import NodeStatus

router = APIRouter(prefix="/nodes", tags=["nodes"], dependencies=[Depends(get_current_user)])


def _parse_status(value: Optional[str]) -> Optional[NodeStatus]:
    if value is None:
        return None
    try:
        return NodeStatus(value.lower())
    except ValueError:
        allowed = ", ".join(s.value for s in NodeStatus)
        raise ValidationError([f"status: must be one of {allowed}"])


@router.get("", response_model=List[NodeResponse])
def list_nodes(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = Query(default=None, alias="radiusKm"),
    container: Container = Depends(get_container),
):
    """List nodes, optionally by status and distance from a point."""
    near = None
    if latitude is not None or longitude is not None or radius_km is not None:
        if latitude is None or longitude is None or radius_km is None:
            raise ValidationError(["near: latitude, longitude and radiusKm go together"])
        near = (latitude, longitude, radius_km)

    nodes = container.node_registry.list(status=_parse_status(status_filter), near=near)
    return [NodeResponse.from_domain(node) for node in nodes]


@router.post("", response_model=NodeResponse, status_code=status.HTTP_201_CREATED)
@router.post("/register", response_model=NodeResponse, status_code=status.HTTP_201_CREATED)
def register_node(request: RegisterNodeRequest, container: Container = Depends(get_container)):
    """
    Register a compute node.

    Called by the node agent on startup. Registering again with the same
    MAC address and name refreshes the existing node.
    """
    node = container.node_registry.register(request.to_domain())
    return NodeResponse.from_domain(node)


@router.get("/stats")
def node_stats(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return container.node_registry.stats()


@router.get("/{node_id}", response_model=NodeResponse)
def get_node(node_id: UUID, container: Container = Depends(get_container)):
    return NodeResponse.from_domain(container.node_registry.get(node_id))


@router.put("/{node_id}", response_model=NodeResponse)
def update_node(node_id: UUID, request: UpdateNodeRequest, container: Container = Depends(get_container)):
    node = container.node_registry.update(node_id, **request.changes())
    return NodeResponse.from_domain(node)


@router.delete("/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_node(node_id: UUID, container: Container = Depends(get_container)):
    container.node_registry.delete(node_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{node_id}/heartbeat", response_model=NodeResponse)
def heartbeat(
    node_id: UUID,
    request: Optional[HeartbeatRequest] = None,
    container: Container = Depends(get_container),
):
    request = request or HeartbeatRequest()
    node = container.node_registry.heartbeat(
        node_id,
        usage=request.usage_domain(),
        cluster_info=request.cluster_info_domain(),
    )
    return NodeResponse.from_domain(node)


@router.put("/{node_id}/status", response_model=NodeResponse)
def set_node_status(node_id: UUID, request: NodeStatusRequest, container: Container = Depends(get_container)):
    """Administrative override (e.g. maintenance)."""
    node = container.node_registry.set_status(node_id, _parse_status(request.status), request.reason)
    return NodeResponse.from_domain(node)


@router.get("/{node_id}/deployments", response_model=List[DeploymentResponse])
def node_deployments(node_id: UUID, container: Container = Depends(get_container)):
    container.node_registry.get(node_id)
    deployments = container.orchestrator.list(node_id=node_id)
    return [DeploymentResponse.from_domain(d) for d in deployments]
