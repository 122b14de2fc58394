"""Node registry service."""

import ipaddress
import logging
import re
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from node_deployer.core.errors import ConflictError, NotFoundError, ValidationError
from node_deployer.core.events import EventEmitter, NullEventEmitter
from node_deployer.core.events_model import DeployerEvent
from node_deployer.core.models import utcnow
from node_deployer.core.repository import DeploymentRepository, NodeRepository
from node_deployer.node_manager.models import (
    ADMIN_STATUSES,
    ClusterInfo,
    Location,
    Node,
    NodeCapacity,
    NodeMetadata,
    NodeRegistration,
    NodeStatus,
    ResourceUsage,
    normalize_mac,
)

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$")


class NodeRegistry:
    """
    Tracks compute nodes, their capacity and liveness.

    The registry is the only writer of node status, capacity and usage.
    Every read applies the liveness rule first, so a node whose last
    heartbeat is older than the liveness window is observed as offline even
    before the background sweep reaches it.
    """

    def __init__(
        self,
        node_repo: NodeRepository,
        deployment_repo: Optional[DeploymentRepository] = None,
        event_emitter: Optional[EventEmitter] = None,
        liveness_window: timedelta = timedelta(seconds=90),
    ):
        self._node_repo = node_repo
        self._deployment_repo = deployment_repo
        self._events = event_emitter or NullEventEmitter()
        self.liveness_window = liveness_window

    # ============================================
    # REGISTRATION
    # ============================================

    def register(self, descriptor: NodeRegistration, now: Optional[datetime] = None) -> Node:
        """
        Register a node, or refresh it when the same MAC and name re-register.

        Raises:
            ValidationError: malformed descriptor, or MAC/name owned by another node
        """
        now = now or utcnow()
        descriptor = replace(descriptor, mac_address=normalize_mac(descriptor.mac_address or ""))
        self._validate_registration(descriptor)

        by_mac = self._node_repo.get_by_mac(descriptor.mac_address)
        by_name = self._node_repo.get_by_name(descriptor.name)

        if by_mac and by_mac.name != descriptor.name:
            raise ValidationError([f"macAddress: already registered to node '{by_mac.name}'"])
        if by_name and by_name.mac_address != descriptor.mac_address:
            raise ValidationError([f"name: '{descriptor.name}' is already registered to another node"])

        if by_mac:
            previous = by_mac.status
            node = self._apply_descriptor(by_mac, descriptor)
            if node.status not in ADMIN_STATUSES:
                node.status = NodeStatus.ONLINE
                node.status_reason = None
            if node.status != previous:
                node.status_changed_at = now
            node.last_seen_at = now
            self._node_repo.save(node)
            logger.info(f"[node_registry] re-registered node {node.id} ({node.name})")
            if previous != node.status:
                self._events.emit([DeployerEvent.node_status_changed(node, previous, "re-registered")])
            return node

        node = self._apply_descriptor(
            Node(id=uuid4(), name=descriptor.name, mac_address=descriptor.mac_address, public_ip=descriptor.public_ip),
            descriptor,
        )
        node.status = NodeStatus.ONLINE
        node.last_seen_at = now
        node.created_at = now
        node.status_changed_at = now
        try:
            self._node_repo.create(node)
        except ConflictError as e:
            # lost a race with a concurrent registration
            raise ValidationError([str(e)]) from e

        logger.info(f"[node_registry] registered node {node.id} ({node.name})")
        self._events.emit([DeployerEvent.node_registered(node)])
        return node

    @staticmethod
    def _apply_descriptor(node: Node, descriptor: NodeRegistration) -> Node:
        node.name = descriptor.name
        node.mac_address = descriptor.mac_address
        node.public_ip = descriptor.public_ip
        node.private_ip = descriptor.private_ip
        node.location = descriptor.location
        node.cluster_info = descriptor.cluster_info
        node.capacity = descriptor.capacity
        node.metadata = descriptor.metadata
        return node

    def _validate_registration(self, descriptor: NodeRegistration) -> None:
        violations = []
        if not descriptor.name or not descriptor.name.strip():
            violations.append("name: is required")
        elif len(descriptor.name) > 255:
            violations.append("name: must be at most 255 characters")
        if not MAC_RE.match(descriptor.mac_address):
            violations.append("macAddress: must be a MAC address such as 00:1a:2b:3c:4d:5e")
        violations.extend(_ip_violations("publicIp", descriptor.public_ip, required=True))
        violations.extend(_ip_violations("privateIp", descriptor.private_ip, required=False))
        violations.extend(_location_violations(descriptor.location))
        violations.extend(_capacity_violations(descriptor.capacity))
        if violations:
            raise ValidationError(violations)

    # ============================================
    # HEARTBEAT
    # ============================================

    def heartbeat(
        self,
        node_id: UUID,
        usage: Optional[ResourceUsage] = None,
        cluster_info: Optional[ClusterInfo] = None,
        now: Optional[datetime] = None,
    ) -> Node:
        """
        Record a heartbeat and resource report.

        An offline node comes back online; maintenance and error are kept.

        Raises:
            NotFoundError: unknown node id
            ValidationError: malformed resource report
        """
        now = now or utcnow()
        if usage is not None:
            violations = _usage_violations(usage)
            if violations:
                raise ValidationError(violations)

        recorded = self._node_repo.record_heartbeat(node_id, now, usage=usage, cluster_info=cluster_info)
        if recorded is None:
            raise NotFoundError(f"Node {node_id} not found")
        previous, node = recorded

        if previous != node.status:
            logger.info(f"[node_registry] node {node.id} back online")
            self._events.emit([DeployerEvent.node_status_changed(node, previous, "heartbeat")])
        else:
            logger.debug(f"[node_registry] heartbeat from {node.id}")
        return node

    # ============================================
    # QUERIES
    # ============================================

    def get(self, node_id: UUID, now: Optional[datetime] = None) -> Node:
        """Raises NotFoundError when the node is unknown."""
        node = self._node_repo.get(node_id)
        if not node:
            raise NotFoundError(f"Node {node_id} not found")
        return self._observe(node, now or utcnow())

    def list(
        self,
        status: Optional[NodeStatus] = None,
        near: Optional[Tuple[float, float, float]] = None,
        now: Optional[datetime] = None,
    ) -> List[Node]:
        """
        List nodes, optionally by status and within ``near=(lat, lon, radius_km)``.
        """
        now = now or utcnow()
        nodes = [self._observe(node, now) for node in self._node_repo.list()]
        if status is not None:
            nodes = [n for n in nodes if n.status == status]
        if near is not None:
            latitude, longitude, radius_km = near
            nodes = [
                n for n in nodes
                if n.location is not None and n.location.distance_km(latitude, longitude) <= radius_km
            ]
        return nodes

    def stats(self, now: Optional[datetime] = None) -> Dict[str, float]:
        nodes = self.list(now=now)
        counts = {status.value: 0 for status in NodeStatus}
        for node in nodes:
            counts[node.status.value] += 1
        return {
            "total": len(nodes),
            **counts,
            "totalCpuCores": sum(n.capacity.cpu_cores for n in nodes),
            "totalMemory": sum(n.capacity.memory_total for n in nodes),
            "totalPodsCapacity": sum(n.capacity.pods_capacity for n in nodes),
            "totalPodsRunning": sum(n.usage.pods_running or 0 for n in nodes),
        }

    def _observe(self, node: Node, now: datetime) -> Node:
        """Apply the liveness rule to a freshly read node."""
        if node.status in ADMIN_STATUSES or node.status == NodeStatus.OFFLINE:
            return node
        if not node.is_overdue(self.liveness_window, now):
            return node
        flipped = self._node_repo.mark_offline_if_overdue(node.id, now - self.liveness_window)
        if flipped is None:
            # a heartbeat won the race; re-read
            return self._node_repo.get(node.id) or node
        logger.warning(
            f"[node_registry] node {node.id} ({node.name}) offline: "
            f"last seen {flipped.last_seen_at.isoformat()}"
        )
        self._events.emit([DeployerEvent.node_status_changed(flipped, node.status, flipped.status_reason)])
        return flipped

    # ============================================
    # ADMINISTRATION
    # ============================================

    def set_status(
        self,
        node_id: UUID,
        status: NodeStatus,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Node:
        """Administrative override. Setting online also counts as a sighting."""
        now = now or utcnow()
        updated = self._node_repo.update_status(node_id, status, reason, now)
        if updated is None:
            raise NotFoundError(f"Node {node_id} not found")
        previous, node = updated

        logger.info(f"[node_registry] node {node.id} status {previous.value} -> {status.value}")
        if previous != status:
            self._events.emit([DeployerEvent.node_status_changed(node, previous, reason or "administrative")])
        return node

    def update(
        self,
        node_id: UUID,
        *,
        name: Optional[str] = None,
        public_ip: Optional[str] = None,
        private_ip: Optional[str] = None,
        location: Optional[Location] = None,
        cluster_info: Optional[ClusterInfo] = None,
        capacity: Optional[NodeCapacity] = None,
        metadata: Optional[NodeMetadata] = None,
    ) -> Node:
        node = self._node_repo.get(node_id)
        if not node:
            raise NotFoundError(f"Node {node_id} not found")

        violations = []
        if name is not None and name != node.name:
            if not name.strip():
                violations.append("name: must not be empty")
            elif self._node_repo.get_by_name(name):
                violations.append(f"name: '{name}' is already registered to another node")
            node.name = name
        if public_ip is not None:
            violations.extend(_ip_violations("publicIp", public_ip, required=True))
            node.public_ip = public_ip
        if private_ip is not None:
            violations.extend(_ip_violations("privateIp", private_ip, required=False))
            node.private_ip = private_ip
        if location is not None:
            violations.extend(_location_violations(location))
            node.location = location
        if capacity is not None:
            violations.extend(_capacity_violations(capacity))
            node.capacity = capacity
        if cluster_info is not None:
            node.cluster_info = cluster_info
        if metadata is not None:
            node.metadata = metadata
        if violations:
            raise ValidationError(violations)

        self._node_repo.save(node)
        logger.info(f"[node_registry] updated node {node.id}")
        return node

    def delete(self, node_id: UUID) -> None:
        """
        Explicit removal. Refused while the node hosts live deployments.

        Raises:
            NotFoundError: unknown node id
            ConflictError: node still hosts non-stopped deployments
        """
        node = self._node_repo.get(node_id)
        if not node:
            raise NotFoundError(f"Node {node_id} not found")

        if self._deployment_repo is not None:
            active = [d for d in self._deployment_repo.list(node_id=node_id) if d.is_active()]
            if active:
                raise ConflictError(
                    f"Node {node.name} still hosts {len(active)} active deployment(s)"
                )

        self._node_repo.delete(node_id)
        logger.info(f"[node_registry] deleted node {node_id} ({node.name})")
        self._events.emit([DeployerEvent.node_deleted(node)])

    # ============================================
    # LIVENESS
    # ============================================

    def sweep(self, now: Optional[datetime] = None) -> List[Node]:
        """Flip every overdue node to offline. Returns the flipped nodes."""
        now = now or utcnow()
        cutoff = now - self.liveness_window
        flipped = []
        for node in self._node_repo.list():
            if node.status in ADMIN_STATUSES or node.status == NodeStatus.OFFLINE:
                continue
            if node.last_seen_at >= cutoff:
                continue
            updated = self._node_repo.mark_offline_if_overdue(node.id, cutoff)
            if updated is None:
                continue
            logger.warning(f"[node_registry] sweep: node {node.id} ({node.name}) -> offline")
            self._events.emit([DeployerEvent.node_status_changed(updated, node.status, updated.status_reason)])
            flipped.append(updated)
        return flipped

    def unavailable_since(self, node_id: UUID, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        When the node stopped being usable, or None if it is usable.

        Offline nodes count from their last heartbeat. Maintenance and error
        count from the time the status was set.
        """
        node = self.get(node_id, now=now)
        if node.status == NodeStatus.ONLINE:
            return None
        if node.status == NodeStatus.OFFLINE:
            return node.last_seen_at
        return node.status_changed_at


# ============================================
# Validation helpers
# ============================================

def _ip_violations(field_name: str, value: Optional[str], required: bool) -> List[str]:
    if not value:
        return [f"{field_name}: is required"] if required else []
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return [f"{field_name}: '{value}' is not a valid IP address"]
    return []


def _location_violations(location: Optional[Location]) -> List[str]:
    if location is None:
        return []
    violations = []
    if not -90 <= location.latitude <= 90:
        violations.append("location.latitude: must be between -90 and 90")
    if not -180 <= location.longitude <= 180:
        violations.append("location.longitude: must be between -180 and 180")
    return violations


def _capacity_violations(capacity: NodeCapacity) -> List[str]:
    violations = []
    if capacity.cpu_cores < 0:
        violations.append("capacity.cpuCores: must be >= 0")
    if capacity.memory_total < 0:
        violations.append("capacity.memoryTotal: must be >= 0")
    if capacity.disk_total < 0:
        violations.append("capacity.diskTotal: must be >= 0")
    if capacity.pods_capacity < 1:
        violations.append("capacity.podsCapacity: must be >= 1")
    return violations


def _usage_violations(usage: ResourceUsage) -> List[str]:
    violations = []
    for field_name in ("cpu_usage", "memory_usage", "disk_usage"):
        value = getattr(usage, field_name)
        if value is not None and not 0 <= value <= 100:
            violations.append(f"{_camel(field_name)}: must be a percentage between 0 and 100")
    for field_name in ("memory_used", "disk_used", "pods_running"):
        value = getattr(usage, field_name)
        if value is not None and value < 0:
            violations.append(f"{_camel(field_name)}: must be >= 0")
    return violations


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
