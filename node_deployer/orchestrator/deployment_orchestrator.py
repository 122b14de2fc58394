# node_deployer/orchestrator/deployment_orchestrator.py
"""
Deployment orchestrator - owns the deployment lifecycle.

Flow for create/restart/update:
1. Validate synchronously (builder, node, source) and take the
   per-deployment operation lease
2. Return the deployment immediately
3. Roll out on the background pool: build image, apply cluster resources,
   retry transient failures with bounded backoff
4. Release the lease; honor a delete recorded while the operation ran

The collector confirms rollouts (deploying -> running) and reports health
signals (running -> failed) through the reconciliation hooks.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set
from uuid import UUID, uuid4

from node_deployer.cluster.gateway import ClusterGateway
from node_deployer.cluster.image_builder import ImageBuilder
from node_deployer.config_builder.builder import DEFAULT_NAMESPACE, build, merge_request
from node_deployer.core.errors import (
    BuildError,
    ConflictError,
    DeployerError,
    FatalClusterError,
    InvalidStateError,
    NotFoundError,
    TransientClusterError,
    ValidationError,
)
from node_deployer.core.events import EventEmitter, NullEventEmitter
from node_deployer.core.events_model import DeployerEvent
from node_deployer.core.models import Deployment, DeploymentStatus, MetricsSnapshot, utcnow
from node_deployer.core.repository import DeploymentRepository
from node_deployer.core.retry import RetryPolicy, call_with_retry
from node_deployer.core.state_machine import DeploymentStateMachine
from node_deployer.core.worker import PollingWorker
from node_deployer.node_manager.service import NodeRegistry
from node_deployer.source.adapter import RepositorySourceAdapter

logger = logging.getLogger(__name__)

RESTARTABLE = (DeploymentStatus.RUNNING, DeploymentStatus.FAILED)
UPDATABLE = (DeploymentStatus.RUNNING, DeploymentStatus.FAILED)


class DeploymentOrchestrator:
    """
    Drives deployments through pending -> deploying -> running/failed -> stopped.

    At most one create/restart/scale/update/delete runs per deployment at a
    time, guarded by a lease in the deployment store. A second operation gets
    ConflictError, except delete, which is recorded and run once the
    in-flight operation completes.
    """

    def __init__(
        self,
        deployment_repo: DeploymentRepository,
        node_registry: NodeRegistry,
        source_adapter: RepositorySourceAdapter,
        cluster: ClusterGateway,
        image_builder: Optional[ImageBuilder] = None,
        event_emitter: Optional[EventEmitter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        default_namespace: str = DEFAULT_NAMESPACE,
        lease_seconds: int = 900,
        confirmation_passes: int = 6,
        unhealthy_passes: int = 3,
        pin_workloads_to_node: bool = False,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: Optional[str] = None,
    ):
        self._repo = deployment_repo
        self._nodes = node_registry
        self._source = source_adapter
        self._cluster = cluster
        self._builder = image_builder
        self._events = event_emitter or NullEventEmitter()
        self._policy = retry_policy or RetryPolicy()

        self._default_namespace = default_namespace
        self._lease_seconds = lease_seconds
        self._confirmation_passes = confirmation_passes
        self._unhealthy_passes = unhealthy_passes
        self._pin_workloads = pin_workloads_to_node
        self._sleep = sleep

        self.worker_id = worker_id or f"orchestrator-{uuid4().hex[:8]}"
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rollout")
        self._futures: Set[Future] = set()
        self._futures_lock = threading.Lock()

    # ============================================
    # CREATE
    # ============================================

    def create(
        self,
        raw: Mapping[str, Any],
        node_id: UUID,
        credential: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> Deployment:
        """
        Accept a deployment request. Returns the deployment in pending.

        Raises:
            ValidationError: malformed request (nothing persisted)
            NotFoundError: unknown node, repository or branch
            AuthError: credential rejected by the repository host
            ConflictError: name or context path taken in the namespace
        """
        spec = build(raw, default_namespace=self._default_namespace)
        node = self._nodes.get(node_id)

        source = self._source.resolve(
            spec.source.owner,
            spec.source.name,
            spec.source.branch,
            credential,
            dockerfile=spec.build.dockerfile if self._builder else None,
            build_context=spec.build.build_context,
        )
        spec = replace(spec, source=source)

        now = utcnow()
        owner = self._lease_owner()
        deployment = Deployment(
            id=uuid4(),
            node_id=node.id,
            spec=spec,
            source=source,
            user_id=user_id,
            operation="create",
            operation_owner=owner,
            operation_expires_at=now + timedelta(seconds=self._lease_seconds),
            created_at=now,
            updated_at=now,
        )
        self._repo.create(deployment)

        logger.info(
            f"[orchestrator] created deployment {deployment.id} ({deployment.name}) "
            f"from {source.full_name}@{source.branch} on node {node.name}"
        )
        self._emit(DeployerEvent.deployment_created(deployment))

        self._submit(
            deployment.id,
            owner,
            self._rollout,
            deployment.id,
            owner,
            credential=credential,
            rebuild=True,
            restart=False,
        )
        return deployment

    # ============================================
    # RESTART
    # ============================================

    def restart(self, deployment_id: UUID, credential: Optional[str] = None) -> Deployment:
        """
        Re-enter deploying and roll the workload again.

        Rebuilds the image when a credential is supplied or no image exists.

        Raises:
            NotFoundError: unknown deployment
            InvalidStateError: not running or failed (stopped is final)
            ConflictError: another operation is in progress
        """
        deployment = self.get(deployment_id)
        self._require_status(deployment, RESTARTABLE, "restart")

        owner = self._begin(deployment_id, "restart")
        try:
            deployment = self.get(deployment_id)
            self._require_status(deployment, RESTARTABLE, "restart")
            self._transition(deployment, DeploymentStatus.DEPLOYING)
        except DeployerError:
            self._repo.end_operation(deployment_id, owner)
            raise

        logger.info(f"[orchestrator] restarting deployment {deployment_id}")
        self._submit(
            deployment_id,
            owner,
            self._rollout,
            deployment_id,
            owner,
            credential=credential,
            rebuild=credential is not None,
            restart=True,
        )
        return deployment

    # ============================================
    # SCALE
    # ============================================

    def scale(self, deployment_id: UUID, replicas: int) -> Deployment:
        """
        Record a new replica count and apply it in the background.

        Status is unchanged.

        Raises:
            ValidationError: replicas < 1
            NotFoundError: unknown deployment
            InvalidStateError: not running
            ConflictError: another operation is in progress
        """
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 1:
            raise ValidationError(["replicas: must be a positive integer"])

        deployment = self.get(deployment_id)
        self._require_status(deployment, (DeploymentStatus.RUNNING,), "scale")

        owner = self._begin(deployment_id, "scale")
        try:
            deployment = self.get(deployment_id)
            self._require_status(deployment, (DeploymentStatus.RUNNING,), "scale")
            previous = deployment.spec.replicas
            deployment.spec.replicas = replicas
            deployment.updated_at = utcnow()
            self._repo.save_lifecycle(deployment)
        except DeployerError:
            self._repo.end_operation(deployment_id, owner)
            raise

        logger.info(f"[orchestrator] scaling deployment {deployment_id}: {previous} -> {replicas}")
        self._emit(DeployerEvent.deployment_scaled(deployment, previous))

        self._submit(deployment_id, owner, self._apply_scale, deployment, replicas)
        return deployment

    def _apply_scale(self, deployment: Deployment, replicas: int) -> None:
        try:
            self._call(
                lambda: self._cluster.scale(deployment.namespace, deployment.name, replicas),
                f"scale {deployment.name}",
            )
        except (TransientClusterError, FatalClusterError) as e:
            logger.error(f"[orchestrator] scale of {deployment.id} to {replicas} not applied: {e}")

    # ============================================
    # UPDATE
    # ============================================

    def update(self, deployment_id: UUID, changes: Mapping[str, Any]) -> Deployment:
        """
        Merge ``changes`` into the spec and re-validate.

        Name, namespace, context path and repository cannot change. Running
        deployments re-enter deploying and are re-applied; failed ones keep
        their status until restarted.

        Raises:
            ValidationError: invalid or immutable changes
            NotFoundError: unknown deployment
            InvalidStateError: not running or failed
            ConflictError: another operation is in progress
        """
        deployment = self.get(deployment_id)
        self._require_status(deployment, UPDATABLE, "update")

        merged = merge_request(deployment.spec.to_dict(), changes)
        spec = replace(build(merged, default_namespace=deployment.namespace), source=deployment.source)

        owner = self._begin(deployment_id, "update")
        try:
            deployment = self.get(deployment_id)
            self._require_status(deployment, UPDATABLE, "update")
            rebuild = spec.build != deployment.spec.build
            deployment.spec = spec
            if deployment.status == DeploymentStatus.RUNNING:
                self._transition(deployment, DeploymentStatus.DEPLOYING)
            else:
                deployment.updated_at = utcnow()
                self._repo.save_lifecycle(deployment)
        except DeployerError:
            self._repo.end_operation(deployment_id, owner)
            raise

        logger.info(f"[orchestrator] updated deployment {deployment_id}")

        if deployment.status == DeploymentStatus.DEPLOYING:
            self._submit(
                deployment_id,
                owner,
                self._rollout,
                deployment_id,
                owner,
                credential=None,
                rebuild=rebuild,
                restart=False,
            )
        else:
            self._finish_operation(deployment_id, owner)
        return deployment

    # ============================================
    # DELETE
    # ============================================

    def delete(self, deployment_id: UUID, hard: bool = False) -> Deployment:
        """
        Tear down cluster resources and mark the deployment stopped.

        Idempotent on stopped deployments (``hard`` removes the record).
        While a create/restart/update is in flight the delete is recorded and
        honored when that operation completes.

        Raises:
            NotFoundError: unknown deployment
            TransientClusterError: cluster unreachable, nothing changed
            FatalClusterError: cluster refused the teardown
        """
        deployment = self.get(deployment_id)

        if deployment.status == DeploymentStatus.STOPPED:
            if hard:
                self._repo.delete(deployment_id)
                logger.info(f"[orchestrator] removed record of deployment {deployment_id}")
                self._emit(DeployerEvent.deployment_deleted(deployment, hard=True))
            return deployment

        owner = self._lease_owner()
        for _ in range(3):
            if self._repo.try_begin_operation(deployment_id, "delete", owner, self._lease_seconds):
                break
            if self._repo.request_delete(deployment_id):
                deployment = self.get(deployment_id)
                logger.info(
                    f"[orchestrator] delete of {deployment_id} deferred until "
                    f"'{deployment.operation}' completes"
                )
                self._emit(DeployerEvent.deployment_delete_deferred(deployment))
                return deployment
        else:
            raise ConflictError(f"Deployment {deployment_id}: operation already in progress")

        try:
            deployment = self._stop(deployment_id)
            if hard:
                self._repo.delete(deployment_id)
            self._emit(DeployerEvent.deployment_deleted(deployment, hard=hard))
            return deployment
        finally:
            self._repo.end_operation(deployment_id, owner)

    def _stop(self, deployment_id: UUID) -> Deployment:
        """Teardown + stopped. Caller holds the lease."""
        deployment = self.get(deployment_id)
        if deployment.status == DeploymentStatus.STOPPED:
            return deployment
        self._call(
            lambda: self._cluster.teardown(deployment.namespace, deployment.name),
            f"teardown {deployment.name}",
        )
        self._transition(deployment, DeploymentStatus.STOPPED)
        logger.info(f"[orchestrator] deployment {deployment_id} stopped")
        return deployment

    def _run_deferred_delete(self, deployment_id: UUID) -> None:
        owner = self._lease_owner()
        if not self._repo.try_begin_operation(deployment_id, "delete", owner, self._lease_seconds):
            logger.warning(f"[orchestrator] deferred delete of {deployment_id} lost the lease")
            return
        try:
            deployment = self._stop(deployment_id)
            self._emit(DeployerEvent.deployment_deleted(deployment, hard=False))
        except (TransientClusterError, FatalClusterError) as e:
            logger.error(f"[orchestrator] deferred delete of {deployment_id} failed: {e}")
            deployment = self.get(deployment_id)
            if deployment.status != DeploymentStatus.FAILED:
                self._transition(deployment, DeploymentStatus.FAILED, reason=f"delete failed: {e}")
        finally:
            self._repo.end_operation(deployment_id, owner)

    # ============================================
    # QUERIES
    # ============================================

    def get(self, deployment_id: UUID) -> Deployment:
        deployment = self._repo.get(deployment_id)
        if not deployment:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    def list(
        self,
        node_id: Optional[UUID] = None,
        status: Optional[DeploymentStatus] = None,
        user_id: Optional[UUID] = None,
    ) -> List[Deployment]:
        return self._repo.list(node_id=node_id, status=status, user_id=user_id)

    def stats(self, node_id: Optional[UUID] = None) -> Dict[str, int]:
        deployments = self._repo.list(node_id=node_id)
        counts = {status.value: 0 for status in DeploymentStatus}
        for d in deployments:
            counts[d.status.value] += 1
        return {"total": len(deployments), **counts}

    # ============================================
    # RECONCILIATION HOOKS (called by the collector)
    # ============================================

    def confirm_rollout(
        self,
        deployment_id: UUID,
        snapshot: MetricsSnapshot,
        now: Optional[datetime] = None,
    ) -> Optional[Deployment]:
        """
        Count one reconciliation pass of a deploying deployment.

        One ready pod moves it to running. After ``confirmation_passes``
        passes without one it fails. Stale snapshots are not counted, but a
        node that has been unavailable for longer than the liveness window
        fails the rollout. Returns None when another operation holds the
        lease.
        """
        owner = self._lease_owner()
        if not self._repo.try_begin_operation(deployment_id, "reconcile", owner, self._lease_seconds):
            return None
        try:
            deployment = self._repo.get(deployment_id)
            if not deployment or deployment.status != DeploymentStatus.DEPLOYING:
                return deployment

            if snapshot.stale:
                try:
                    self._check_node(deployment, now=now)
                except FatalClusterError as e:
                    self._transition(deployment, DeploymentStatus.FAILED, reason=str(e))
                    logger.warning(f"[orchestrator] deployment {deployment_id} failed while deploying: {e}")
                except TransientClusterError:
                    pass
                return deployment

            if (snapshot.ready_pods or 0) >= 1:
                self._transition(deployment, DeploymentStatus.RUNNING)
                logger.info(
                    f"[orchestrator] deployment {deployment_id} running "
                    f"({snapshot.ready_pods}/{snapshot.desired_pods} pods ready)"
                )
                return deployment

            deployment.reconcile_passes += 1
            if deployment.reconcile_passes >= self._confirmation_passes:
                self._transition(
                    deployment,
                    DeploymentStatus.FAILED,
                    reason=(
                        f"health checks never succeeded within "
                        f"{self._confirmation_passes} reconciliation passes"
                    ),
                )
                logger.warning(f"[orchestrator] deployment {deployment_id} never became ready")
            else:
                self._repo.save_lifecycle(deployment)
            return deployment
        finally:
            self._finish_operation(deployment_id, owner)

    def report_health_signal(self, deployment_id: UUID, passes: int) -> Optional[Deployment]:
        """Fail a running deployment after ``unhealthy_passes`` passes with zero ready pods."""
        if passes < self._unhealthy_passes:
            return None

        owner = self._lease_owner()
        if not self._repo.try_begin_operation(deployment_id, "reconcile", owner, self._lease_seconds):
            return None
        try:
            deployment = self._repo.get(deployment_id)
            if not deployment or deployment.status != DeploymentStatus.RUNNING:
                return deployment
            self._emit(DeployerEvent.deployment_health_signal(deployment, passes))
            self._transition(
                deployment,
                DeploymentStatus.FAILED,
                reason=f"no ready pods for {passes} consecutive reconciliation passes",
            )
            logger.warning(f"[orchestrator] deployment {deployment_id} unhealthy, marked failed")
            return deployment
        finally:
            self._finish_operation(deployment_id, owner)

    def recover_interrupted(self, now=None) -> List[Deployment]:
        """
        Resolve operations whose lease expired (the process running them died).

        A pending delete is carried out. Otherwise pending/deploying
        deployments fail with "orchestration interrupted".
        """
        now = now or utcnow()
        recovered = []
        for stale in self._repo.list_expired_operations(now):
            owner = self._lease_owner()
            if not self._repo.try_begin_operation(stale.id, "recover", owner, self._lease_seconds, now=now):
                continue
            try:
                deployment = self.get(stale.id)
                if stale.delete_requested:
                    deployment = self._stop(stale.id)
                    self._emit(DeployerEvent.deployment_deleted(deployment, hard=False))
                elif deployment.status in (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING):
                    self._transition(deployment, DeploymentStatus.FAILED, reason="orchestration interrupted")
                logger.warning(
                    f"[orchestrator] recovered interrupted '{stale.operation}' on {stale.id} "
                    f"(now {deployment.status.value})"
                )
                recovered.append(deployment)
            except DeployerError as e:
                logger.error(f"[orchestrator] recovery of {stale.id} failed: {e}")
            finally:
                self._repo.end_operation(stale.id, owner)
        return recovered

    # ============================================
    # ROLLOUT
    # ============================================

    def _rollout(
        self,
        deployment_id: UUID,
        owner: str,
        credential: Optional[str],
        rebuild: bool,
        restart: bool,
    ) -> None:
        """Build and apply with attempt-level retries. Runs on the pool."""
        deployment = self.get(deployment_id)
        if deployment.status == DeploymentStatus.STOPPED:
            return
        self._transition(deployment, DeploymentStatus.DEPLOYING)

        max_attempts = self._policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            self._repo.renew_operation(deployment_id, owner, self._lease_seconds)
            if self.get(deployment_id).delete_requested:
                logger.info(f"[orchestrator] rollout of {deployment_id} abandoned for pending delete")
                return

            deployment.attempts = attempt
            self._repo.save_lifecycle(deployment)

            try:
                hostname = self._check_node(deployment)
                image = self._image_for(deployment, credential, rebuild)
                info = self._call(
                    lambda: self._cluster.apply(deployment, image, node_hostname=hostname, restart=restart),
                    f"apply {deployment.name}",
                )
            except FatalClusterError as e:
                logger.error(f"[orchestrator] deployment {deployment_id} failed: {e}")
                self._transition(deployment, DeploymentStatus.FAILED, reason=str(e))
                return
            except (TransientClusterError, BuildError) as e:
                if attempt >= max_attempts:
                    logger.error(f"[orchestrator] deployment {deployment_id} failed after {attempt} attempts: {e}")
                    self._transition(
                        deployment,
                        DeploymentStatus.FAILED,
                        reason=f"{e} (after {attempt} attempts)",
                    )
                    return
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    f"[orchestrator] attempt {attempt}/{max_attempts} for {deployment_id} failed: {e}; "
                    f"retrying in {delay:.0f}s"
                )
                self._sleep(delay)
                continue

            deployment.kubernetes = info
            deployment.scheduled_at = utcnow()
            deployment.updated_at = deployment.scheduled_at
            self._repo.save_lifecycle(deployment)
            logger.info(
                f"[orchestrator] ✅ applied {deployment.name} (image {info.image}), awaiting ready pods"
            )
            return

    def _check_node(self, deployment: Deployment, now: Optional[datetime] = None) -> Optional[str]:
        """
        Placement check before each attempt. Returns the node hostname to pin to.

        An unavailable node is transient until it has been unavailable for
        longer than the liveness window.
        """
        now = now or utcnow()
        try:
            node = self._nodes.get(deployment.node_id, now=now)
        except NotFoundError as e:
            raise FatalClusterError(f"node unavailable: node {deployment.node_id} is no longer registered") from e

        since = self._nodes.unavailable_since(node.id, now=now)
        if since is not None:
            if now - since > self._nodes.liveness_window:
                raise FatalClusterError(f"node unavailable: {node.name} is {node.status.value}")
            raise TransientClusterError(f"node {node.name} is {node.status.value}")

        if self._pin_workloads:
            return node.metadata.hostname or node.name
        return None

    def _image_for(self, deployment: Deployment, credential: Optional[str], rebuild: bool) -> str:
        if self._builder is None:
            return deployment.spec.build.image_reference
        current = deployment.kubernetes.image if deployment.kubernetes else None
        if rebuild or not current:
            return self._builder.build(deployment, credential)
        return current

    # ============================================
    # BACKGROUND POOL
    # ============================================

    def _submit(self, deployment_id: UUID, owner: str, fn: Callable, *args, **kwargs) -> Future:
        future = self._executor.submit(self._run_operation, deployment_id, owner, fn, *args, **kwargs)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._futures_lock:
            self._futures.discard(future)

    def _run_operation(self, deployment_id: UUID, owner: str, fn: Callable, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"[orchestrator] operation on {deployment_id} crashed: {e}", exc_info=True)
            self._fail_after_crash(deployment_id, e)
        finally:
            self._finish_operation(deployment_id, owner)

    def _fail_after_crash(self, deployment_id: UUID, error: Exception) -> None:
        deployment = self._repo.get(deployment_id)
        if deployment and deployment.status in (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING):
            self._transition(deployment, DeploymentStatus.FAILED, reason=f"orchestration error: {error}")

    def _finish_operation(self, deployment_id: UUID, owner: str) -> None:
        if self._repo.end_operation(deployment_id, owner):
            logger.info(f"[orchestrator] running deferred delete of {deployment_id}")
            self._run_deferred_delete(deployment_id)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until all background operations finish. True if they did."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._futures_lock:
                pending = list(self._futures)
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait_for_rollouts: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_rollouts)

    # ============================================
    # INTERNAL HELPERS
    # ============================================

    def _lease_owner(self) -> str:
        return f"{self.worker_id}:{uuid4().hex[:8]}"

    def _begin(self, deployment_id: UUID, operation: str) -> str:
        owner = self._lease_owner()
        if not self._repo.try_begin_operation(deployment_id, operation, owner, self._lease_seconds):
            raise ConflictError(f"Deployment {deployment_id}: operation already in progress")
        return owner

    @staticmethod
    def _require_status(deployment: Deployment, allowed, action: str) -> None:
        if deployment.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} deployment {deployment.id} in {deployment.status.value} state"
            )

    def _transition(self, deployment: Deployment, status: DeploymentStatus, reason: Optional[str] = None) -> None:
        previous = deployment.status
        DeploymentStateMachine.transition(deployment, status, reason=reason)
        self._repo.save_lifecycle(deployment)
        if previous != status:
            self._emit(DeployerEvent.deployment_status_changed(deployment, previous))

    def _call(self, fn: Callable, label: str):
        return call_with_retry(fn, self._policy, label=label, sleep=self._sleep)

    def _emit(self, event: DeployerEvent) -> None:
        self._events.emit([event])


class OrchestratorWorker(PollingWorker):
    """Periodically recovers operations whose lease expired."""

    name = "orchestrator-recovery"

    def __init__(self, orchestrator: DeploymentOrchestrator, poll_interval: float = 30.0):
        super().__init__(poll_interval)
        self._orchestrator = orchestrator

    def _cycle(self) -> None:
        recovered = self._orchestrator.recover_interrupted()
        if recovered:
            logger.info(f"[recovery] resolved {len(recovered)} interrupted operation(s)")
