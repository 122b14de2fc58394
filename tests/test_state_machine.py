"""Test deployment status transitions and retry backoff."""

import uuid
from datetime import datetime, timezone

import pytest

from node_deployer.config_builder.builder import build
from node_deployer.core.errors import InvalidStateError, TransientClusterError
from node_deployer.core.models import Deployment, DeploymentStatus
from node_deployer.core.retry import RetryPolicy, backoff_delay, call_with_retry
from node_deployer.core.state_machine import DeploymentStateMachine, can_transition


def _deployment(status=DeploymentStatus.PENDING):
    spec = build({"name": "demo", "githubRepo": {"owner": "acme", "name": "demo"}})
    return Deployment(id=uuid.uuid4(), node_id=uuid.uuid4(), spec=spec, source=spec.source, status=status)


class TestTransitions:

    @pytest.mark.parametrize("status", [
        DeploymentStatus.PENDING,
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.RUNNING,
        DeploymentStatus.FAILED,
    ])
    def test_every_live_state_can_stop(self, status):
        assert can_transition(status, DeploymentStatus.STOPPED)

    def test_stopped_is_terminal(self):
        for status in DeploymentStatus:
            assert not can_transition(DeploymentStatus.STOPPED, status)

    def test_pending_cannot_jump_to_running(self):
        with pytest.raises(InvalidStateError):
            DeploymentStateMachine.transition(_deployment(), DeploymentStatus.RUNNING)

    def test_same_status_is_a_no_op(self):
        deployment = _deployment(DeploymentStatus.RUNNING)
        before = deployment.updated_at
        DeploymentStateMachine.transition(deployment, DeploymentStatus.RUNNING)
        assert deployment.updated_at == before


class TestTimestamps:

    def test_running_sets_running_since(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        deployment = _deployment(DeploymentStatus.DEPLOYING)

        DeploymentStateMachine.transition(deployment, DeploymentStatus.RUNNING, now=now)

        assert deployment.running_since == now
        assert deployment.updated_at == now

    def test_failed_records_reason(self):
        deployment = _deployment(DeploymentStatus.DEPLOYING)
        deployment.running_since = datetime.now(timezone.utc)

        DeploymentStateMachine.transition(deployment, DeploymentStatus.FAILED, reason="image pull failed")

        assert deployment.error_message == "image pull failed"
        assert deployment.running_since is None

    def test_redeploy_resets_attempts_and_error(self):
        deployment = _deployment(DeploymentStatus.FAILED)
        deployment.error_message = "boom"
        deployment.attempts = 3

        DeploymentStateMachine.transition(deployment, DeploymentStatus.DEPLOYING)

        assert deployment.error_message is None
        assert deployment.attempts == 0

    def test_stopped_sets_stopped_at(self):
        deployment = _deployment(DeploymentStatus.RUNNING)
        DeploymentStateMachine.transition(deployment, DeploymentStatus.STOPPED)
        assert deployment.stopped_at is not None
        assert not deployment.is_active()


class TestRetry:

    def test_backoff_is_capped(self):
        assert backoff_delay(1, 10, 3, 90) == 10
        assert backoff_delay(2, 10, 3, 90) == 30
        assert backoff_delay(3, 10, 3, 90) == 90
        assert backoff_delay(5, 10, 3, 90) == 90
        assert backoff_delay(0, 10, 3, 90) == 0

    def test_transient_errors_are_retried(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientClusterError("timeout")
            return "ok"

        policy = RetryPolicy(call_attempts=3, call_base_delay=0)
        assert call_with_retry(flaky, policy, sleep=lambda s: None) == "ok"
        assert len(calls) == 3

    def test_budget_exhausted(self):
        def always_down():
            raise TransientClusterError("timeout")

        with pytest.raises(TransientClusterError):
            call_with_retry(always_down, RetryPolicy(call_attempts=2), sleep=lambda s: None)

    def test_other_errors_propagate_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bad manifest")

        with pytest.raises(ValueError):
            call_with_retry(broken, RetryPolicy(call_attempts=5), sleep=lambda s: None)
        assert len(calls) == 1
