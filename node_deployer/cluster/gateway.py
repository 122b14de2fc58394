# node_deployer/cluster/gateway.py
"""
Cluster gateway.

All Kubernetes API traffic goes through here. Every call carries a bounded
``_request_timeout`` and every failure is classified:

- timeouts, connection errors, 5xx and 429 -> TransientClusterError
- 404 -> NotFoundError (ignored by teardown)
- any other API error (400, 403, 422, ...) -> FatalClusterError
"""

import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from node_deployer.cluster import manifests
from node_deployer.core.errors import (
    DeployerError,
    FatalClusterError,
    NotFoundError,
    TransientClusterError,
)
from node_deployer.core.models import Deployment, KubernetesInfo
from node_deployer.core.quantity import to_bytes, to_millicores

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {0, 408, 425, 429, 500, 502, 503, 504}

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


def classify_api_exception(exc: ApiException, action: str) -> DeployerError:
    detail = f"{action}: {exc.status} {exc.reason}"
    if exc.status in TRANSIENT_STATUSES or exc.status is None:
        return TransientClusterError(detail)
    if exc.status == 404:
        return NotFoundError(detail)
    return FatalClusterError(f"{detail} {(exc.body or '')[:300]}".strip())


def cluster_call(fn):
    """Translate client exceptions into the cluster error taxonomy."""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except DeployerError:
            raise
        except ApiException as e:
            raise classify_api_exception(e, fn.__name__) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientClusterError(f"{fn.__name__}: {e}") from e
    return wrapper


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class ClusterGateway(ABC):
    """Operations the orchestrator, collector and API need from a cluster."""

    # ---- workload lifecycle ----

    @abstractmethod
    def apply(
        self,
        deployment: Deployment,
        image: str,
        node_hostname: Optional[str] = None,
        restart: bool = False,
    ) -> KubernetesInfo:
        """Create or update every resource of ``deployment``."""
        raise NotImplementedError

    @abstractmethod
    def scale(self, namespace: str, name: str, replicas: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def teardown(self, namespace: str, name: str) -> None:
        """Delete every resource of a deployment. Missing resources are ignored."""
        raise NotImplementedError

    # ---- observed state ----

    @abstractmethod
    def workload_status(self, namespace: str, name: str) -> Dict[str, Any]:
        """Replica counts and pods of a deployment. NotFoundError if absent."""
        raise NotImplementedError

    @abstractmethod
    def pod_usage(self, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """Per-pod CPU (millicores) and memory (bytes), or None without a metrics API."""
        raise NotImplementedError

    @abstractmethod
    def node_usage(self, node_name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    # ---- introspection ----

    @abstractmethod
    def cluster_info(self) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_namespaces(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_pods(self, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def pod_logs(self, namespace: str, name: str, container: Optional[str] = None, tail_lines: int = 100) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_services(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_nodes(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_events(self, namespace: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError


class KubernetesGateway(ClusterGateway):
    """ClusterGateway backed by the official Kubernetes Python client."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        in_cluster: bool = False,
        request_timeout: float = 15.0,
        ingress_class: str = "nginx",
        public_base_url: str = "http://localhost",
        api_client: Optional[client.ApiClient] = None,
    ):
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._timeout = request_timeout
        self.ingress_class = ingress_class
        self.public_base_url = public_base_url
        self._api_client = api_client
        self._initialized = api_client is not None

    # ============================================
    # CLIENT SETUP
    # ============================================

    def _initialize(self) -> None:
        if self._initialized:
            return
        try:
            if self._in_cluster:
                config.load_incluster_config()
            else:
                config.load_kube_config(config_file=self._kubeconfig, context=self._context)
        except (ConfigException, OSError) as e:
            raise FatalClusterError(f"Kubernetes configuration unavailable: {e}") from e
        self._api_client = client.ApiClient()
        self._initialized = True
        logger.info(
            f"[cluster] client initialized ({'in-cluster' if self._in_cluster else self._kubeconfig or 'default kubeconfig'})"
        )

    @property
    def core_api(self) -> client.CoreV1Api:
        self._initialize()
        return client.CoreV1Api(self._api_client)

    @property
    def apps_api(self) -> client.AppsV1Api:
        self._initialize()
        return client.AppsV1Api(self._api_client)

    @property
    def networking_api(self) -> client.NetworkingV1Api:
        self._initialize()
        return client.NetworkingV1Api(self._api_client)

    @property
    def autoscaling_api(self) -> client.AutoscalingV2Api:
        self._initialize()
        return client.AutoscalingV2Api(self._api_client)

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        self._initialize()
        return client.CustomObjectsApi(self._api_client)

    @property
    def version_api(self) -> client.VersionApi:
        self._initialize()
        return client.VersionApi(self._api_client)

    # ============================================
    # WORKLOAD LIFECYCLE
    # ============================================

    @cluster_call
    def ensure_namespace(self, namespace: str) -> None:
        try:
            self.core_api.read_namespace(name=namespace, _request_timeout=self._timeout)
            return
        except ApiException as e:
            if e.status != 404:
                raise
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=namespace, labels={"managed-by": manifests.MANAGED_BY})
        )
        try:
            self.core_api.create_namespace(body=body, _request_timeout=self._timeout)
            logger.info(f"[cluster] created namespace {namespace}")
        except ApiException as e:
            if e.status != 409:
                raise

    def _upsert(self, kind: str, create, patch, name: str, namespace: str, body) -> None:
        """Create, falling back to a patch when the object already exists."""
        try:
            create(namespace=namespace, body=body, _request_timeout=self._timeout)
            logger.info(f"[cluster] created {kind} {namespace}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise
            patch(name=name, namespace=namespace, body=body, _request_timeout=self._timeout)
            logger.info(f"[cluster] updated {kind} {namespace}/{name}")

    @cluster_call
    def apply(
        self,
        deployment: Deployment,
        image: str,
        node_hostname: Optional[str] = None,
        restart: bool = False,
    ) -> KubernetesInfo:
        namespace = deployment.namespace
        names = manifests.ResourceNames.for_name(deployment.name)
        restarted_at = datetime.now(timezone.utc).isoformat() if restart else None

        self.ensure_namespace(namespace)

        core, apps, networking = self.core_api, self.apps_api, self.networking_api
        self._upsert(
            "configmap", core.create_namespaced_config_map, core.patch_namespaced_config_map,
            names.config_map, namespace, manifests.config_map(deployment),
        )
        self._upsert(
            "deployment", apps.create_namespaced_deployment, apps.patch_namespaced_deployment,
            names.deployment, namespace,
            manifests.workload(deployment, image, node_hostname=node_hostname, restarted_at=restarted_at),
        )
        self._upsert(
            "service", core.create_namespaced_service, core.patch_namespaced_service,
            names.service, namespace, manifests.service(deployment),
        )
        self._upsert(
            "ingress", networking.create_namespaced_ingress, networking.patch_namespaced_ingress,
            names.ingress, namespace, manifests.ingress(deployment, self.ingress_class),
        )

        autoscaling = self.autoscaling_api
        if deployment.spec.auto_scaling.enabled:
            self._upsert(
                "autoscaler",
                autoscaling.create_namespaced_horizontal_pod_autoscaler,
                autoscaling.patch_namespaced_horizontal_pod_autoscaler,
                names.autoscaler, namespace, manifests.autoscaler(deployment),
            )
        else:
            self._delete_ignoring_missing(
                autoscaling.delete_namespaced_horizontal_pod_autoscaler, names.autoscaler, namespace
            )

        return manifests.kubernetes_info(deployment, image, self.public_base_url)

    @cluster_call
    def scale(self, namespace: str, name: str, replicas: int) -> None:
        self.apps_api.patch_namespaced_deployment_scale(
            name=name,
            namespace=namespace,
            body={"spec": {"replicas": replicas}},
            _request_timeout=self._timeout,
        )
        logger.info(f"[cluster] scaled {namespace}/{name} to {replicas}")

    def _delete_ignoring_missing(self, delete, name: str, namespace: str, **kwargs) -> None:
        try:
            delete(name=name, namespace=namespace, _request_timeout=self._timeout, **kwargs)
        except ApiException as e:
            if e.status != 404:
                raise

    @cluster_call
    def teardown(self, namespace: str, name: str) -> None:
        names = manifests.ResourceNames.for_name(name)
        core, apps = self.core_api, self.apps_api
        self._delete_ignoring_missing(self.networking_api.delete_namespaced_ingress, names.ingress, namespace)
        self._delete_ignoring_missing(core.delete_namespaced_service, names.service, namespace)
        self._delete_ignoring_missing(
            self.autoscaling_api.delete_namespaced_horizontal_pod_autoscaler, names.autoscaler, namespace
        )
        self._delete_ignoring_missing(
            apps.delete_namespaced_deployment, names.deployment, namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        self._delete_ignoring_missing(core.delete_namespaced_config_map, names.config_map, namespace)
        logger.info(f"[cluster] removed resources of {namespace}/{name}")

    # ============================================
    # OBSERVED STATE
    # ============================================

    @cluster_call
    def workload_status(self, namespace: str, name: str) -> Dict[str, Any]:
        deployment = self.apps_api.read_namespaced_deployment(
            name=name, namespace=namespace, _request_timeout=self._timeout
        )
        status = deployment.status
        return {
            "desiredReplicas": deployment.spec.replicas or 0,
            "updatedReplicas": status.updated_replicas or 0,
            "readyReplicas": status.ready_replicas or 0,
            "availableReplicas": status.available_replicas or 0,
            "pods": self.list_pods(namespace, label_selector=manifests.pod_selector(name)),
        }

    @cluster_call
    def pod_usage(self, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        try:
            if namespace:
                data = self.custom_api.list_namespaced_custom_object(
                    METRICS_GROUP, METRICS_VERSION, namespace, "pods",
                    label_selector=label_selector, _request_timeout=self._timeout,
                )
            else:
                data = self.custom_api.list_cluster_custom_object(
                    METRICS_GROUP, METRICS_VERSION, "pods",
                    label_selector=label_selector, _request_timeout=self._timeout,
                )
        except ApiException as e:
            if e.status in (404, 503):
                logger.debug(f"[cluster] metrics API unavailable: {e.status}")
                return None
            raise

        usage = []
        for item in data.get("items", []):
            cpu = 0.0
            memory = 0
            for container in item.get("containers", []):
                cpu += to_millicores(container["usage"].get("cpu", "0")) or 0.0
                memory += to_bytes(container["usage"].get("memory", "0")) or 0
            usage.append({
                "name": item["metadata"]["name"],
                "namespace": item["metadata"]["namespace"],
                "cpuMillicores": cpu,
                "memoryBytes": memory,
                "timestamp": item.get("timestamp"),
            })
        return usage

    @cluster_call
    def node_usage(self, node_name: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.custom_api.get_cluster_custom_object(
                METRICS_GROUP, METRICS_VERSION, "nodes", node_name, _request_timeout=self._timeout
            )
        except ApiException as e:
            if e.status in (404, 503):
                return None
            raise
        usage = data.get("usage", {})
        return {
            "name": node_name,
            "cpuMillicores": to_millicores(usage.get("cpu", "0")),
            "memoryBytes": to_bytes(usage.get("memory", "0")),
            "timestamp": data.get("timestamp"),
        }

    # ============================================
    # INTROSPECTION
    # ============================================

    @cluster_call
    def cluster_info(self) -> Dict[str, Any]:
        version = self.version_api.get_code(_request_timeout=self._timeout)
        nodes = self.list_nodes()
        namespaces = self.list_namespaces()
        return {
            "version": version.git_version,
            "platform": version.platform,
            "nodesCount": len(nodes),
            "readyNodes": sum(1 for n in nodes if n["ready"]),
            "namespacesCount": len(namespaces),
        }

    @cluster_call
    def list_namespaces(self) -> List[Dict[str, Any]]:
        result = self.core_api.list_namespace(_request_timeout=self._timeout)
        return [
            {
                "name": ns.metadata.name,
                "status": ns.status.phase if ns.status else None,
                "createdAt": _iso(ns.metadata.creation_timestamp),
                "labels": ns.metadata.labels or {},
            }
            for ns in result.items
        ]

    @cluster_call
    def list_pods(self, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            result = self.core_api.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector, _request_timeout=self._timeout
            )
        else:
            result = self.core_api.list_pod_for_all_namespaces(
                label_selector=label_selector, _request_timeout=self._timeout
            )

        pods = []
        for pod in result.items:
            statuses = pod.status.container_statuses or []
            pods.append({
                "name": pod.metadata.name,
                "namespace": pod.metadata.namespace,
                "phase": pod.status.phase,
                "ready": bool(statuses) and all(cs.ready for cs in statuses),
                "restartCount": sum(cs.restart_count for cs in statuses),
                "nodeName": pod.spec.node_name,
                "podIp": pod.status.pod_ip,
                "containers": [c.name for c in pod.spec.containers],
                "createdAt": _iso(pod.metadata.creation_timestamp),
                "labels": pod.metadata.labels or {},
            })
        return pods

    @cluster_call
    def pod_logs(self, namespace: str, name: str, container: Optional[str] = None, tail_lines: int = 100) -> str:
        return self.core_api.read_namespaced_pod_log(
            name=name,
            namespace=namespace,
            container=container,
            tail_lines=tail_lines,
            _request_timeout=self._timeout,
        )

    @cluster_call
    def list_services(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            result = self.core_api.list_namespaced_service(namespace=namespace, _request_timeout=self._timeout)
        else:
            result = self.core_api.list_service_for_all_namespaces(_request_timeout=self._timeout)
        return [
            {
                "name": svc.metadata.name,
                "namespace": svc.metadata.namespace,
                "type": svc.spec.type,
                "clusterIp": svc.spec.cluster_ip,
                "ports": [
                    {
                        "name": port.name,
                        "port": port.port,
                        "targetPort": str(port.target_port),
                        "protocol": port.protocol,
                    }
                    for port in svc.spec.ports or []
                ],
                "selector": svc.spec.selector or {},
                "createdAt": _iso(svc.metadata.creation_timestamp),
            }
            for svc in result.items
        ]

    @cluster_call
    def list_nodes(self) -> List[Dict[str, Any]]:
        result = self.core_api.list_node(_request_timeout=self._timeout)
        nodes = []
        for node in result.items:
            ready = any(
                c.type == "Ready" and c.status == "True" for c in node.status.conditions or []
            )
            capacity = node.status.capacity or {}
            addresses = {a.type: a.address for a in node.status.addresses or []}
            info = node.status.node_info
            nodes.append({
                "name": node.metadata.name,
                "ready": ready,
                "internalIp": addresses.get("InternalIP"),
                "hostname": addresses.get("Hostname"),
                "cpuCapacity": capacity.get("cpu"),
                "memoryCapacity": capacity.get("memory"),
                "podsCapacity": int(capacity.get("pods", "110")),
                "kubeletVersion": info.kubelet_version if info else None,
                "osImage": info.os_image if info else None,
                "architecture": info.architecture if info else None,
                "labels": node.metadata.labels or {},
            })
        return nodes

    @cluster_call
    def list_events(self, namespace: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if namespace:
            result = self.core_api.list_namespaced_event(
                namespace=namespace, limit=limit, _request_timeout=self._timeout
            )
        else:
            result = self.core_api.list_event_for_all_namespaces(limit=limit, _request_timeout=self._timeout)
        events = [
            {
                "namespace": ev.metadata.namespace,
                "type": ev.type,
                "reason": ev.reason,
                "message": ev.message,
                "object": f"{ev.involved_object.kind}/{ev.involved_object.name}",
                "count": ev.count,
                "lastTimestamp": _iso(ev.last_timestamp or ev.metadata.creation_timestamp),
            }
            for ev in result.items
        ]
        return sorted(events, key=lambda e: e["lastTimestamp"] or "", reverse=True)
