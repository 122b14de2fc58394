# node_deployer/api/routes/k8s.py
"""Read-only views of the cluster."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from node_deployer.api.dependencies import get_container, get_current_user
from node_deployer.container import Container

router = APIRouter(prefix="/k8s", tags=["kubernetes"], dependencies=[Depends(get_current_user)])


@router.get("/cluster/info")
def cluster_info(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return container.cluster.cluster_info()


@router.get("/namespaces")
def list_namespaces(container: Container = Depends(get_container)) -> List[Dict[str, Any]]:
    return container.cluster.list_namespaces()


@router.get("/pods")
def list_pods(
    namespace: Optional[str] = None,
    label_selector: Optional[str] = Query(default=None, alias="labelSelector"),
    container: Container = Depends(get_container),
) -> List[Dict[str, Any]]:
    return container.cluster.list_pods(namespace=namespace, label_selector=label_selector)


@router.get("/pods/{namespace}/{name}/logs", response_class=PlainTextResponse)
def pod_logs(
    namespace: str,
    name: str,
    container_name: Optional[str] = Query(default=None, alias="container"),
    tail_lines: int = Query(default=100, ge=1, le=5000, alias="tail"),
    container: Container = Depends(get_container),
) -> str:
    return container.cluster.pod_logs(namespace, name, container=container_name, tail_lines=tail_lines)


@router.get("/services")
def list_services(
    namespace: Optional[str] = None,
    container: Container = Depends(get_container),
) -> List[Dict[str, Any]]:
    return container.cluster.list_services(namespace=namespace)


@router.get("/nodes")
def list_cluster_nodes(container: Container = Depends(get_container)) -> List[Dict[str, Any]]:
    return container.cluster.list_nodes()


@router.get("/events")
def list_events(
    namespace: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    container: Container = Depends(get_container),
) -> List[Dict[str, Any]]:
    return container.cluster.list_events(namespace=namespace, limit=limit)
