"""Test node registration, heartbeats and liveness."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from node_deployer.core.errors import ConflictError, NotFoundError, ValidationError
from node_deployer.node_manager.models import Location, NodeCapacity, NodeStatus, ResourceUsage
from node_deployer.node_manager.sweeper import NodeLivenessSweeper


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRegistration:

    def test_register_new_node(self, node_registry, registration, event_emitter):
        node = node_registry.register(registration(), now=T0)

        assert node.status == NodeStatus.ONLINE
        assert node.last_seen_at == T0
        assert node.mac_address == "00:1a:2b:3c:4d:5e"
        assert node.capacity.cpu_cores == 4
        assert len(event_emitter.of_type("node.registered")) == 1

    def test_mac_is_normalized(self, node_registry, registration):
        node = node_registry.register(registration(mac="00-1A-2B-3C-4D-5E"))
        assert node.mac_address == "00:1a:2b:3c:4d:5e"

    def test_reregister_same_identity_keeps_id(self, node_registry, registration):
        """Same MAC and name is a refresh, not a new node."""
        first = node_registry.register(registration(), now=T0)
        second = node_registry.register(
            registration(public_ip="203.0.113.99"), now=T0 + timedelta(minutes=5)
        )

        assert second.id == first.id
        assert second.public_ip == "203.0.113.99"
        assert len(node_registry.list(now=T0 + timedelta(minutes=5))) == 1

    def test_reregister_brings_offline_node_back(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)
        node_registry.sweep(now=T0 + timedelta(minutes=10))
        assert node_registry.get(node.id, now=T0 + timedelta(minutes=10)).status == NodeStatus.OFFLINE

        again = node_registry.register(registration(), now=T0 + timedelta(minutes=11))

        assert again.status == NodeStatus.ONLINE

    def test_reregister_keeps_maintenance(self, node_registry, registration):
        node = node_registry.register(registration())
        node_registry.set_status(node.id, NodeStatus.MAINTENANCE, "kernel upgrade")

        again = node_registry.register(registration())

        assert again.status == NodeStatus.MAINTENANCE

    def test_mac_owned_by_other_name(self, node_registry, registration):
        node_registry.register(registration())

        with pytest.raises(ValidationError) as exc:
            node_registry.register(registration(name="edge-2"))

        assert "macAddress" in exc.value.violations[0]

    def test_name_owned_by_other_mac(self, node_registry, registration):
        node_registry.register(registration())

        with pytest.raises(ValidationError) as exc:
            node_registry.register(registration(mac="00:1a:2b:3c:4d:ff"))

        assert exc.value.violations[0].startswith("name:")

    def test_invalid_descriptor_reports_everything(self, node_registry, registration):
        with pytest.raises(ValidationError) as exc:
            node_registry.register(registration(
                name="",
                mac="not-a-mac",
                public_ip="999.1.1.1",
                location=Location(latitude=120, longitude=0),
                capacity=NodeCapacity(cpu_cores=-1),
            ))

        fields = {v.split(":")[0] for v in exc.value.violations}
        assert fields == {"name", "macAddress", "publicIp", "location.latitude", "capacity.cpuCores"}


class TestHeartbeat:

    def test_heartbeat_updates_usage(self, node_registry, online_node):
        usage = ResourceUsage(cpu_usage=42.5, memory_used=2 ** 30, memory_usage=12.5, pods_running=7)

        node = node_registry.heartbeat(online_node.id, usage=usage)

        assert node.usage.cpu_usage == 42.5
        assert node.usage.pods_running == 7

    def test_heartbeat_revives_offline_node(self, node_registry, registration, event_emitter):
        node = node_registry.register(registration(), now=T0)
        node_registry.sweep(now=T0 + timedelta(minutes=5))

        revived = node_registry.heartbeat(node.id, now=T0 + timedelta(minutes=6))

        assert revived.status == NodeStatus.ONLINE
        transitions = [(e.metadata["from"], e.metadata["to"]) for e in event_emitter.of_type("node.status_changed")]
        assert transitions == [("online", "offline"), ("offline", "online")]

    def test_heartbeat_does_not_clear_error(self, node_registry, online_node):
        node_registry.set_status(online_node.id, NodeStatus.ERROR, "disk failure")

        node = node_registry.heartbeat(online_node.id)

        assert node.status == NodeStatus.ERROR
        assert node.status_reason == "disk failure"

    def test_status_survives_heartbeat_from_stale_read(self, node_registry, online_node, node_repo, monkeypatch):
        # a heartbeat handled from a read taken before the admin change must not undo it
        def rewrite_whole_node(node):
            raise AssertionError("heartbeat and status changes must not rewrite the whole node")

        monkeypatch.setattr(node_repo, "save", rewrite_whole_node)
        stale = node_repo.get(online_node.id)

        node_registry.set_status(online_node.id, NodeStatus.MAINTENANCE, "kernel upgrade")
        node = node_registry.heartbeat(stale.id, usage=ResourceUsage(cpu_usage=10.0))

        assert node.status == NodeStatus.MAINTENANCE
        assert node.status_reason == "kernel upgrade"
        assert node_repo.get(online_node.id).usage.cpu_usage == 10.0

    def test_invalid_usage(self, node_registry, online_node):
        with pytest.raises(ValidationError) as exc:
            node_registry.heartbeat(online_node.id, usage=ResourceUsage(cpu_usage=150, pods_running=-1))

        assert exc.value.violations == [
            "cpuUsage: must be a percentage between 0 and 100",
            "podsRunning: must be >= 0",
        ]

    def test_unknown_node(self, node_registry):
        with pytest.raises(NotFoundError):
            node_registry.heartbeat(uuid4())


class TestLiveness:
    """A node silent for longer than the window reads as offline."""

    def test_read_applies_liveness_rule(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)

        assert node_registry.get(node.id, now=T0 + timedelta(seconds=60)).status == NodeStatus.ONLINE
        assert node_registry.get(node.id, now=T0 + timedelta(seconds=91)).status == NodeStatus.OFFLINE

    def test_sweep_skips_admin_statuses(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)
        node_registry.set_status(node.id, NodeStatus.MAINTENANCE, now=T0)

        flipped = node_registry.sweep(now=T0 + timedelta(hours=1))

        assert flipped == []
        assert node_registry.get(node.id, now=T0 + timedelta(hours=1)).status == NodeStatus.MAINTENANCE

    def test_sweeper_cycle(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)
        sweeper = NodeLivenessSweeper(node_registry, poll_interval=0.01)

        sweeper.run_once()

        assert node_registry.get(node.id).status == NodeStatus.OFFLINE

    def test_unavailable_since(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)
        assert node_registry.unavailable_since(node.id, now=T0 + timedelta(seconds=30)) is None

        later = T0 + timedelta(minutes=5)
        assert node_registry.unavailable_since(node.id, now=later) == T0

    def test_unavailable_since_maintenance(self, node_registry, registration):
        node = node_registry.register(registration(), now=T0)
        changed = T0 + timedelta(seconds=10)
        node_registry.set_status(node.id, NodeStatus.MAINTENANCE, now=changed)

        assert node_registry.unavailable_since(node.id, now=changed + timedelta(seconds=5)) == changed


class TestQueries:

    def test_list_by_status(self, node_registry, registration):
        a = node_registry.register(registration())
        b = node_registry.register(registration(name="edge-2", mac="00:1a:2b:3c:4d:ff"))
        node_registry.set_status(b.id, NodeStatus.MAINTENANCE)

        online = node_registry.list(status=NodeStatus.ONLINE)

        assert [n.id for n in online] == [a.id]

    def test_list_near(self, node_registry, registration):
        paris = node_registry.register(registration())
        node_registry.register(registration(
            name="edge-tokyo",
            mac="00:1a:2b:3c:4d:01",
            location=Location(latitude=35.6762, longitude=139.6503, city="Tokyo"),
        ))

        # Versailles is ~17km from Paris
        nearby = node_registry.list(near=(48.8049, 2.1204, 50))

        assert [n.id for n in nearby] == [paris.id]

    def test_stats(self, node_registry, registration):
        node_registry.register(registration())
        b = node_registry.register(registration(name="edge-2", mac="00:1a:2b:3c:4d:ff"))
        node_registry.set_status(b.id, NodeStatus.ERROR, "broken")

        stats = node_registry.stats()

        assert stats["total"] == 2
        assert stats["online"] == 1
        assert stats["error"] == 1
        assert stats["offline"] == 0
        assert stats["totalCpuCores"] == 8


class TestAdministration:

    def test_update(self, node_registry, online_node):
        node = node_registry.update(online_node.id, name="edge-renamed", private_ip="10.0.0.11")

        assert node.name == "edge-renamed"
        assert node_registry.get(online_node.id).private_ip == "10.0.0.11"

    def test_update_rejects_bad_ip(self, node_registry, online_node):
        with pytest.raises(ValidationError):
            node_registry.update(online_node.id, public_ip="nope")
        assert node_registry.get(online_node.id).public_ip == "203.0.113.10"

    def test_delete(self, node_registry, online_node, event_emitter):
        node_registry.delete(online_node.id)

        with pytest.raises(NotFoundError):
            node_registry.get(online_node.id)
        assert len(event_emitter.of_type("node.deleted")) == 1

    def test_delete_refused_while_hosting(self, node_registry, running_deployment):
        with pytest.raises(ConflictError):
            node_registry.delete(running_deployment.node_id)
