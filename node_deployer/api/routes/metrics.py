# node_deployer/api/routes/metrics.py
"""Live usage figures. Each response says whether metrics were available."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from node_deployer.api.dependencies import get_container, get_current_user
from node_deployer.container import Container

router = APIRouter(prefix="/metrics", tags=["metrics"], dependencies=[Depends(get_current_user)])


@router.get("/cluster")
def cluster_metrics(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return container.collector.cluster_metrics()


@router.get("/pods")
def pod_metrics(
    namespace: Optional[str] = None,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return container.collector.pod_metrics(namespace=namespace)


@router.get("/deployments/{namespace}/{name}")
def deployment_metrics(
    namespace: str,
    name: str,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return container.collector.deployment_metrics(namespace, name)
