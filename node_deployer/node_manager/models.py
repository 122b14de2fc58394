"""Compute node models."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from node_deployer.core.models import MetricsSnapshot, utcnow


class NodeStatus(Enum):
    """Node status."""
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    ERROR = "error"


# Statuses set by an operator. The liveness timer never overrides them.
ADMIN_STATUSES = {NodeStatus.MAINTENANCE, NodeStatus.ERROR}

EARTH_RADIUS_KM = 6371.0


@dataclass
class Location:
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    timezone: Optional[str] = None

    def distance_km(self, latitude: float, longitude: float) -> float:
        """Great-circle (haversine) distance to a point."""
        lat1, lat2 = math.radians(self.latitude), math.radians(latitude)
        dlat = lat2 - lat1
        dlon = math.radians(longitude - self.longitude)
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


@dataclass
class ClusterInfo:
    cluster_name: str = ""
    kube_version: Optional[str] = None
    provider: Optional[str] = None
    nodes_count: Optional[int] = None
    namespaces_count: Optional[int] = None


@dataclass
class NodeCapacity:
    cpu_cores: float = 0.0
    memory_total: int = 0  # bytes
    disk_total: int = 0  # bytes
    pods_capacity: int = 110


@dataclass
class ResourceUsage:
    """Usage reported by the node agent. None means not reported."""
    cpu_usage: Optional[float] = None  # percent
    memory_used: Optional[int] = None  # bytes
    memory_usage: Optional[float] = None  # percent
    disk_used: Optional[int] = None  # bytes
    disk_usage: Optional[float] = None  # percent
    pods_running: Optional[int] = None


@dataclass
class NodeMetadata:
    os_type: Optional[str] = None
    architecture: Optional[str] = None
    hostname: Optional[str] = None
    kernel_version: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)


@dataclass
class Node:
    """A registered compute target that hosts deployments."""
    id: UUID
    name: str
    mac_address: str
    public_ip: str
    private_ip: Optional[str] = None

    location: Optional[Location] = None
    cluster_info: Optional[ClusterInfo] = None
    capacity: NodeCapacity = field(default_factory=NodeCapacity)
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    metadata: NodeMetadata = field(default_factory=NodeMetadata)

    status: NodeStatus = NodeStatus.ONLINE
    status_reason: Optional[str] = None
    status_changed_at: datetime = field(default_factory=utcnow)

    # Collector-owned
    metrics: Optional[MetricsSnapshot] = None

    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_overdue(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the last heartbeat is older than the liveness window."""
        now = now or utcnow()
        return now - self.last_seen_at > window

    def is_available(self) -> bool:
        """Check if node can receive deployments."""
        return self.status == NodeStatus.ONLINE


@dataclass
class NodeRegistration:
    """Descriptor sent by a node agent when it registers."""
    name: str
    mac_address: str
    public_ip: str
    private_ip: Optional[str] = None
    location: Optional[Location] = None
    cluster_info: Optional[ClusterInfo] = None
    capacity: NodeCapacity = field(default_factory=NodeCapacity)
    metadata: NodeMetadata = field(default_factory=NodeMetadata)


def normalize_mac(mac_address: str) -> str:
    """Canonical MAC form: lowercase, colon separated."""
    raw = mac_address.strip().lower().replace("-", ":").replace(".", "")
    if ":" not in raw and len(raw) == 12:
        raw = ":".join(raw[i:i + 2] for i in range(0, 12, 2))
    return raw
