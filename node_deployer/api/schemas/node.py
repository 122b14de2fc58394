from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field

from node_deployer.api.schemas.common import CamelModel
from node_deployer.node_manager.models import (
    ClusterInfo,
    Location,
    Node,
    NodeCapacity,
    NodeMetadata,
    NodeRegistration,
    ResourceUsage,
)


class LocationModel(CamelModel):
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    timezone: Optional[str] = None


class ClusterInfoModel(CamelModel):
    cluster_name: str = ""
    kube_version: Optional[str] = None
    provider: Optional[str] = None
    nodes_count: Optional[int] = None
    namespaces_count: Optional[int] = None


class CapacityModel(CamelModel):
    cpu_cores: float = 0.0
    memory_total: int = 0
    disk_total: int = 0
    pods_capacity: int = 110


class UsageModel(CamelModel):
    cpu_usage: Optional[float] = None
    memory_used: Optional[int] = None
    memory_usage: Optional[float] = None
    disk_used: Optional[int] = None
    disk_usage: Optional[float] = None
    pods_running: Optional[int] = None


class MetadataModel(CamelModel):
    os_type: Optional[str] = None
    architecture: Optional[str] = None
    hostname: Optional[str] = None
    kernel_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)


# ============================================
# Requests
# ============================================

class RegisterNodeRequest(CamelModel):
    """Sent by a node agent on startup."""
    name: str
    mac_address: str
    public_ip: str
    private_ip: Optional[str] = None
    location: Optional[LocationModel] = None
    cluster_info: Optional[ClusterInfoModel] = None
    capacity: CapacityModel = Field(default_factory=CapacityModel)
    metadata: MetadataModel = Field(default_factory=MetadataModel)

    def to_domain(self) -> NodeRegistration:
        return NodeRegistration(
            name=self.name,
            mac_address=self.mac_address,
            public_ip=self.public_ip,
            private_ip=self.private_ip,
            location=Location(**self.location.model_dump()) if self.location else None,
            cluster_info=ClusterInfo(**self.cluster_info.model_dump()) if self.cluster_info else None,
            capacity=NodeCapacity(**self.capacity.model_dump()),
            metadata=NodeMetadata(**self.metadata.model_dump()),
        )


class HeartbeatRequest(CamelModel):
    usage: Optional[UsageModel] = None
    cluster_info: Optional[ClusterInfoModel] = None

    def usage_domain(self) -> Optional[ResourceUsage]:
        return ResourceUsage(**self.usage.model_dump()) if self.usage else None

    def cluster_info_domain(self) -> Optional[ClusterInfo]:
        return ClusterInfo(**self.cluster_info.model_dump()) if self.cluster_info else None


class UpdateNodeRequest(CamelModel):
    name: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    location: Optional[LocationModel] = None
    cluster_info: Optional[ClusterInfoModel] = None
    capacity: Optional[CapacityModel] = None
    metadata: Optional[MetadataModel] = None

    def changes(self) -> Dict[str, Any]:
        """Keyword arguments for ``NodeRegistry.update``."""
        return {
            "name": self.name,
            "public_ip": self.public_ip,
            "private_ip": self.private_ip,
            "location": Location(**self.location.model_dump()) if self.location else None,
            "cluster_info": ClusterInfo(**self.cluster_info.model_dump()) if self.cluster_info else None,
            "capacity": NodeCapacity(**self.capacity.model_dump()) if self.capacity else None,
            "metadata": NodeMetadata(**self.metadata.model_dump()) if self.metadata else None,
        }


class NodeStatusRequest(CamelModel):
    status: str
    reason: Optional[str] = None


# ============================================
# Responses
# ============================================

class NodeResponse(CamelModel):
    id: UUID
    name: str
    mac_address: str
    public_ip: str
    private_ip: Optional[str]
    location: Optional[LocationModel]
    cluster_info: Optional[ClusterInfoModel]
    capacity: CapacityModel
    usage: UsageModel
    metadata: MetadataModel
    status: str
    status_reason: Optional[str]
    status_changed_at: datetime
    metrics: Optional[Dict[str, Any]]
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, node: Node) -> "NodeResponse":
        return cls(
            id=node.id,
            name=node.name,
            mac_address=node.mac_address,
            public_ip=node.public_ip,
            private_ip=node.private_ip,
            location=LocationModel(**asdict(node.location)) if node.location else None,
            cluster_info=ClusterInfoModel(**asdict(node.cluster_info)) if node.cluster_info else None,
            capacity=CapacityModel(**asdict(node.capacity)),
            usage=UsageModel(**asdict(node.usage)),
            metadata=MetadataModel(**asdict(node.metadata)),
            status=node.status.value,
            status_reason=node.status_reason,
            status_changed_at=node.status_changed_at,
            metrics=node.metrics.to_dict() if node.metrics else None,
            last_seen_at=node.last_seen_at,
            created_at=node.created_at,
            updated_at=node.updated_at,
        )
