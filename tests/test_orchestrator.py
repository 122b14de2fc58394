"""Test deployment orchestration lifecycle."""

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from node_deployer.config_builder.builder import build
from node_deployer.core.errors import (
    BuildError,
    ConflictError,
    FatalClusterError,
    InvalidStateError,
    NotFoundError,
    TransientClusterError,
    ValidationError,
)
from node_deployer.core.models import Deployment, DeploymentStatus, MetricsSnapshot
from node_deployer.node_manager.models import NodeStatus


class TestCreate:

    def test_create_returns_pending_then_rolls_out(
        self, orchestrator, online_node, deployment_request, cluster, image_builder, event_emitter
    ):
        deployment = orchestrator.create(deployment_request, online_node.id, credential="gh-token")

        assert deployment.status == DeploymentStatus.PENDING
        assert deployment.source.commit_sha == "abc123"

        assert orchestrator.wait_idle(timeout=5)
        stored = orchestrator.get(deployment.id)

        assert stored.status == DeploymentStatus.DEPLOYING
        assert stored.attempts == 1
        assert stored.kubernetes.deployment_name == "demo"
        assert stored.operation is None
        assert image_builder.builds == [{"image": "acme/demo-app:latest", "token": "gh-token"}]
        assert cluster.applied[0]["image"] == "acme/demo-app:latest"
        assert cluster.applied[0]["namespace"] == "apps"
        assert len(event_emitter.of_type("deployment.created")) == 1

    def test_invalid_request_persists_nothing(self, orchestrator, online_node, deployment_repo):
        with pytest.raises(ValidationError):
            orchestrator.create({"name": "Bad Name", "githubRepo": {"owner": "acme"}}, online_node.id)

        assert deployment_repo.list() == []

    def test_unknown_node(self, orchestrator, deployment_request):
        with pytest.raises(NotFoundError):
            orchestrator.create(deployment_request, uuid.uuid4())

    def test_source_errors_propagate(self, orchestrator, online_node, deployment_request, source_adapter, deployment_repo):
        source_adapter.error = NotFoundError("Branch 'main' not found in acme/demo-app")

        with pytest.raises(NotFoundError):
            orchestrator.create(deployment_request, online_node.id)

        assert deployment_repo.list() == []

    def test_duplicate_name_in_namespace(self, orchestrator, online_node, deployment_request):
        orchestrator.create(deployment_request, online_node.id)

        with pytest.raises(ConflictError):
            orchestrator.create(deployment_request, online_node.id)

    def test_duplicate_context_path(self, orchestrator, online_node, deployment_request):
        orchestrator.create(deployment_request, online_node.id)
        other = dict(deployment_request, name="demo-two")

        with pytest.raises(ConflictError):
            orchestrator.create(other, online_node.id)

    def test_name_reusable_after_stop(self, orchestrator, running_deployment, online_node, deployment_request):
        orchestrator.delete(running_deployment.id)

        again = orchestrator.create(deployment_request, online_node.id)

        assert again.id != running_deployment.id


class TestRolloutRetries:

    def test_transient_failure_retried(self, orchestrator, online_node, deployment_request, cluster):
        # call-level budget is 2, so two errors fail the first attempt
        cluster.apply_errors = [TransientClusterError("timeout"), TransientClusterError("timeout")]

        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.DEPLOYING
        assert stored.attempts == 2
        assert len(cluster.applied) == 1

    def test_attempt_budget_exhausted(self, orchestrator, online_node, deployment_request, cluster):
        cluster.apply_errors = [TransientClusterError("api server unreachable")] * 6

        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message == "api server unreachable (after 3 attempts)"
        assert cluster.applied == []

    def test_fatal_error_fails_immediately(self, orchestrator, online_node, deployment_request, cluster):
        cluster.apply_errors = [FatalClusterError("quota exceeded")]

        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message == "quota exceeded"
        assert stored.attempts == 1

    def test_build_failure_retried(self, orchestrator, online_node, deployment_request, image_builder):
        image_builder.errors = [BuildError("npm install failed")]

        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.DEPLOYING
        assert stored.attempts == 2

    def test_long_offline_node_fails_rollout(self, orchestrator, node_registry, registration, deployment_request, cluster):
        node = node_registry.register(registration(), now=datetime(2020, 1, 1, tzinfo=timezone.utc))

        deployment = orchestrator.create(deployment_request, node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message.startswith("node unavailable")
        assert cluster.applied == []

    def test_node_in_maintenance_is_transient(self, orchestrator, node_registry, online_node, deployment_request):
        node_registry.set_status(online_node.id, NodeStatus.MAINTENANCE)

        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.attempts == 3
        assert "maintenance" in stored.error_message


class TestReconciliation:

    def test_ready_pod_confirms_running(self, orchestrator, online_node, deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        result = orchestrator.confirm_rollout(deployment.id, MetricsSnapshot(desired_pods=2, ready_pods=1))

        assert result.status == DeploymentStatus.RUNNING
        assert orchestrator.get(deployment.id).running_since is not None

    def test_never_ready_fails_after_passes(self, orchestrator, online_node, deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        for _ in range(2):
            orchestrator.confirm_rollout(deployment.id, MetricsSnapshot(desired_pods=2, ready_pods=0))
        assert orchestrator.get(deployment.id).status == DeploymentStatus.DEPLOYING

        orchestrator.confirm_rollout(deployment.id, MetricsSnapshot(desired_pods=2, ready_pods=0))

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert "health checks never succeeded" in stored.error_message

    def test_stale_snapshot_not_counted(self, orchestrator, online_node, deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        stale = MetricsSnapshot(ready_pods=0).mark_stale("metrics unavailable")
        for _ in range(5):
            orchestrator.confirm_rollout(deployment.id, stale)

        assert orchestrator.get(deployment.id).reconcile_passes == 0

    def test_stale_snapshot_fails_once_node_gone_too_long(self, orchestrator, node_registry, online_node,
                                                          deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)
        node_registry.set_status(online_node.id, NodeStatus.MAINTENANCE, "kernel upgrade")

        stale = MetricsSnapshot(ready_pods=0).mark_stale("node maintenance")
        orchestrator.confirm_rollout(deployment.id, stale)
        assert orchestrator.get(deployment.id).status == DeploymentStatus.DEPLOYING

        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        orchestrator.confirm_rollout(deployment.id, stale, now=later)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message == f"node unavailable: {online_node.name} is maintenance"

    def test_health_signal_below_threshold_ignored(self, orchestrator, running_deployment):
        assert orchestrator.report_health_signal(running_deployment.id, passes=2) is None
        assert orchestrator.get(running_deployment.id).status == DeploymentStatus.RUNNING

    def test_health_signal_fails_running(self, orchestrator, running_deployment, event_emitter):
        orchestrator.report_health_signal(running_deployment.id, passes=3)

        stored = orchestrator.get(running_deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message == "no ready pods for 3 consecutive reconciliation passes"
        assert len(event_emitter.of_type("deployment.health_signal")) == 1

    def test_reconcile_skipped_while_operation_in_flight(self, orchestrator, running_deployment, deployment_repo):
        deployment_repo.try_begin_operation(running_deployment.id, "restart", "other-worker", 60)

        assert orchestrator.report_health_signal(running_deployment.id, passes=5) is None
        assert orchestrator.get(running_deployment.id).status == DeploymentStatus.RUNNING


class TestRestart:

    def test_restart_running(self, orchestrator, running_deployment, cluster, image_builder):
        restarted = orchestrator.restart(running_deployment.id)
        assert restarted.status == DeploymentStatus.DEPLOYING
        assert orchestrator.wait_idle(timeout=5)

        assert cluster.applied[-1]["restart"] is True
        # no credential and an existing image: no rebuild
        assert len(image_builder.builds) == 1

    def test_restart_with_credential_rebuilds(self, orchestrator, running_deployment, image_builder):
        orchestrator.restart(running_deployment.id, credential="fresh-token")
        assert orchestrator.wait_idle(timeout=5)

        assert image_builder.builds[-1]["token"] == "fresh-token"
        assert len(image_builder.builds) == 2

    def test_restart_failed(self, orchestrator, running_deployment):
        orchestrator.report_health_signal(running_deployment.id, passes=3)

        restarted = orchestrator.restart(running_deployment.id)

        assert restarted.status == DeploymentStatus.DEPLOYING
        assert restarted.error_message is None

    def test_restart_stopped_rejected(self, orchestrator, running_deployment):
        orchestrator.delete(running_deployment.id)

        with pytest.raises(InvalidStateError):
            orchestrator.restart(running_deployment.id)

    def test_restart_conflicts_with_in_flight_operation(self, orchestrator, running_deployment, deployment_repo):
        deployment_repo.try_begin_operation(running_deployment.id, "scale", "other-worker", 60)

        with pytest.raises(ConflictError):
            orchestrator.restart(running_deployment.id)


class TestScale:

    def test_scale_running(self, orchestrator, running_deployment, cluster, event_emitter):
        scaled = orchestrator.scale(running_deployment.id, 5)
        assert orchestrator.wait_idle(timeout=5)

        assert scaled.status == DeploymentStatus.RUNNING
        assert orchestrator.get(running_deployment.id).spec.replicas == 5
        assert cluster.scaled == [("apps", "demo", 5)]
        event = event_emitter.of_type("deployment.scaled")[0]
        assert event.metadata == {"from": 2, "to": 5}

    @pytest.mark.parametrize("replicas", [0, -1, True, "3"])
    def test_invalid_replicas(self, orchestrator, running_deployment, replicas):
        with pytest.raises(ValidationError):
            orchestrator.scale(running_deployment.id, replicas)

    def test_scale_requires_running(self, orchestrator, online_node, deployment_request):
        deployment = orchestrator.create(deployment_request, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        with pytest.raises(InvalidStateError):
            orchestrator.scale(deployment.id, 3)


class TestUpdate:

    def test_update_running_redeploys(self, orchestrator, running_deployment, cluster):
        updated = orchestrator.update(running_deployment.id, {"environmentVars": {"MODE": "prod"}})
        assert updated.status == DeploymentStatus.DEPLOYING
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(running_deployment.id)
        assert stored.spec.env_vars == {"MODE": "prod"}
        assert stored.source.commit_sha == "abc123"
        assert len(cluster.applied) == 2

    def test_update_failed_keeps_status(self, orchestrator, running_deployment, cluster):
        orchestrator.report_health_signal(running_deployment.id, passes=3)

        updated = orchestrator.update(running_deployment.id, {"replicas": 4})

        assert updated.status == DeploymentStatus.FAILED
        assert orchestrator.get(running_deployment.id).spec.replicas == 4
        assert orchestrator.get(running_deployment.id).operation is None
        assert len(cluster.applied) == 1

    def test_update_immutable_field(self, orchestrator, running_deployment):
        with pytest.raises(ValidationError):
            orchestrator.update(running_deployment.id, {"contextPath": "/elsewhere"})

    def test_update_invalid_value(self, orchestrator, running_deployment):
        with pytest.raises(ValidationError):
            orchestrator.update(running_deployment.id, {"cpuLimit": "lots"})
        assert orchestrator.get(running_deployment.id).status == DeploymentStatus.RUNNING


class TestDelete:

    def test_delete_running(self, orchestrator, running_deployment, cluster):
        stopped = orchestrator.delete(running_deployment.id)

        assert stopped.status == DeploymentStatus.STOPPED
        assert stopped.stopped_at is not None
        assert stopped.url is None
        assert cluster.torn_down == [("apps", "demo")]

    def test_delete_is_idempotent(self, orchestrator, running_deployment, cluster):
        orchestrator.delete(running_deployment.id)
        again = orchestrator.delete(running_deployment.id)

        assert again.status == DeploymentStatus.STOPPED
        assert len(cluster.torn_down) == 1

    def test_hard_delete_removes_record(self, orchestrator, running_deployment, cluster):
        orchestrator.delete(running_deployment.id, hard=True)

        assert cluster.torn_down == [("apps", "demo")]
        with pytest.raises(NotFoundError):
            orchestrator.get(running_deployment.id)

    def test_teardown_unreachable_keeps_state(self, orchestrator, running_deployment, cluster):
        cluster.teardown_errors = [TransientClusterError("timeout"), TransientClusterError("timeout")]

        with pytest.raises(TransientClusterError):
            orchestrator.delete(running_deployment.id)

        stored = orchestrator.get(running_deployment.id)
        assert stored.status == DeploymentStatus.RUNNING
        assert stored.operation is None

    def test_delete_deferred_while_rollout_in_flight(
        self, orchestrator, online_node, deployment_request, image_builder, cluster, event_emitter
    ):
        release = threading.Event()
        original_build = image_builder.build

        def slow_build(deployment, token=None):
            release.wait(timeout=5)
            return original_build(deployment, token)

        image_builder.build = slow_build

        deployment = orchestrator.create(deployment_request, online_node.id)
        deferred = orchestrator.delete(deployment.id)

        assert deferred.status != DeploymentStatus.STOPPED
        assert len(event_emitter.of_type("deployment.delete_deferred")) == 1

        release.set()
        assert orchestrator.wait_idle(timeout=5)

        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.STOPPED
        assert cluster.torn_down == [("apps", "demo")]
        assert stored.operation is None


class TestRecovery:

    def test_interrupted_rollout_fails(self, orchestrator, deployment_repo, online_node):
        spec = build(
            {"name": "orphan", "githubRepo": {"owner": "acme", "name": "orphan"}},
            default_namespace="apps",
        )
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        deployment = Deployment(
            id=uuid.uuid4(),
            node_id=online_node.id,
            spec=spec,
            source=spec.source,
            status=DeploymentStatus.DEPLOYING,
            operation="create",
            operation_owner="dead-worker",
            operation_expires_at=past,
        )
        deployment_repo.create(deployment)

        recovered = orchestrator.recover_interrupted()

        assert [d.id for d in recovered] == [deployment.id]
        stored = orchestrator.get(deployment.id)
        assert stored.status == DeploymentStatus.FAILED
        assert stored.error_message == "orchestration interrupted"
        assert stored.operation is None


class TestQueries:

    def test_list_and_stats(self, orchestrator, running_deployment, online_node, deployment_request):
        other = dict(deployment_request, name="other", contextPath="/other")
        orchestrator.create(other, online_node.id)
        assert orchestrator.wait_idle(timeout=5)

        assert len(orchestrator.list(node_id=online_node.id)) == 2
        assert [d.name for d in orchestrator.list(status=DeploymentStatus.RUNNING)] == ["demo"]

        stats = orchestrator.stats()
        assert stats["total"] == 2
        assert stats["running"] == 1
        assert stats["deploying"] == 1

    def test_unknown_deployment(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get(uuid.uuid4())
