# node_deployer/cluster/manifests.py
"""Kubernetes objects for a deployment: ConfigMap, Deployment, Service, Ingress, HPA."""

from dataclasses import dataclass
from typing import Dict, Optional

from kubernetes import client

from node_deployer.config_builder.builder import sanitize_name
from node_deployer.core.models import Deployment, KubernetesInfo

MANAGED_BY = "node-deployer"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
COMMIT_ANNOTATION = "node-deployer/commit-sha"


@dataclass(frozen=True)
class ResourceNames:
    deployment: str
    service: str
    ingress: str
    config_map: str
    autoscaler: str

    @classmethod
    def for_name(cls, name: str) -> "ResourceNames":
        return cls(
            deployment=name,
            service=f"{name}-service",
            ingress=f"{name}-ingress",
            config_map=f"{name}-config",
            autoscaler=f"{name}-hpa",
        )


def pod_selector(name: str) -> str:
    return f"app={name}"


def labels_for(deployment: Deployment) -> Dict[str, str]:
    return {
        "app": deployment.name,
        "managed-by": MANAGED_BY,
        "repo": sanitize_name(f"{deployment.source.owner}-{deployment.source.name}") or "unknown",
        "deployment-id": str(deployment.id),
    }


def kubernetes_info(deployment: Deployment, image: str, public_base_url: str) -> KubernetesInfo:
    """Names and addresses of the resources ``apply`` creates."""
    names = ResourceNames.for_name(deployment.name)
    spec = deployment.spec
    return KubernetesInfo(
        namespace=spec.namespace,
        deployment_name=names.deployment,
        service_name=names.service,
        ingress_name=names.ingress,
        config_map_name=names.config_map,
        pod_selector=pod_selector(deployment.name),
        image=image,
        url=f"{public_base_url.rstrip('/')}{spec.context_path}",
        internal_url=(
            f"http://{names.service}.{spec.namespace}.svc.cluster.local:{spec.service_port}"
        ),
    )


# ============================================
# Objects
# ============================================

def config_map(deployment: Deployment) -> client.V1ConfigMap:
    names = ResourceNames.for_name(deployment.name)
    return client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=client.V1ObjectMeta(
            name=names.config_map,
            namespace=deployment.namespace,
            labels=labels_for(deployment),
        ),
        data=dict(deployment.spec.env_vars),
    )


def _probe(deployment: Deployment, initial_delay: int) -> client.V1Probe:
    health = deployment.spec.health_check
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(path=health.path, port=health.port),
        initial_delay_seconds=initial_delay,
        period_seconds=health.period_seconds,
        timeout_seconds=health.timeout_seconds,
        success_threshold=health.success_threshold,
        failure_threshold=health.failure_threshold,
    )


def workload(
    deployment: Deployment,
    image: str,
    node_hostname: Optional[str] = None,
    restarted_at: Optional[str] = None,
) -> client.V1Deployment:
    """
    The Deployment object. Readiness probes start after 5s, liveness
    probes after the configured initial delay with a success threshold of 1.
    """
    spec = deployment.spec
    names = ResourceNames.for_name(deployment.name)
    labels = labels_for(deployment)

    container = client.V1Container(
        name=deployment.name,
        image=image,
        image_pull_policy=spec.image_pull_policy,
        ports=[client.V1ContainerPort(container_port=spec.container_port, protocol="TCP")],
        env_from=[
            client.V1EnvFromSource(config_map_ref=client.V1ConfigMapEnvSource(name=names.config_map))
        ],
        resources=client.V1ResourceRequirements(
            requests={"cpu": spec.cpu_request, "memory": spec.memory_request},
            limits={"cpu": spec.cpu_limit, "memory": spec.memory_limit},
        ),
    )

    if spec.health_check.enabled:
        liveness = _probe(deployment, spec.health_check.initial_delay_seconds)
        liveness.success_threshold = 1
        container.liveness_probe = liveness
        container.readiness_probe = _probe(deployment, 5)

    annotations = {}
    if deployment.source.commit_sha:
        annotations[COMMIT_ANNOTATION] = deployment.source.commit_sha
    if restarted_at:
        annotations[RESTARTED_AT_ANNOTATION] = restarted_at

    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy=spec.restart_policy,
    )
    if node_hostname:
        pod_spec.node_selector = {"kubernetes.io/hostname": node_hostname}

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=names.deployment,
            namespace=spec.namespace,
            labels=labels,
        ),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas,
            selector=client.V1LabelSelector(match_labels={"app": deployment.name}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels, annotations=annotations or None),
                spec=pod_spec,
            ),
        ),
    )


def service(deployment: Deployment) -> client.V1Service:
    spec = deployment.spec
    names = ResourceNames.for_name(deployment.name)
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=names.service,
            namespace=spec.namespace,
            labels=labels_for(deployment),
        ),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector={"app": deployment.name},
            ports=[
                client.V1ServicePort(
                    name="http",
                    port=spec.service_port,
                    target_port=spec.container_port,
                    protocol="TCP",
                )
            ],
        ),
    )


def ingress(deployment: Deployment, ingress_class: str = "nginx") -> client.V1Ingress:
    spec = deployment.spec
    names = ResourceNames.for_name(deployment.name)
    return client.V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=client.V1ObjectMeta(
            name=names.ingress,
            namespace=spec.namespace,
            labels=labels_for(deployment),
            annotations={"nginx.ingress.kubernetes.io/rewrite-target": "/"},
        ),
        spec=client.V1IngressSpec(
            ingress_class_name=ingress_class,
            rules=[
                client.V1IngressRule(
                    http=client.V1HTTPIngressRuleValue(
                        paths=[
                            client.V1HTTPIngressPath(
                                path=spec.context_path,
                                path_type="Prefix",
                                backend=client.V1IngressBackend(
                                    service=client.V1IngressServiceBackend(
                                        name=names.service,
                                        port=client.V1ServiceBackendPort(number=spec.service_port),
                                    )
                                ),
                            )
                        ]
                    )
                )
            ],
        ),
    )


def autoscaler(deployment: Deployment) -> client.V2HorizontalPodAutoscaler:
    scaling = deployment.spec.auto_scaling
    names = ResourceNames.for_name(deployment.name)
    return client.V2HorizontalPodAutoscaler(
        api_version="autoscaling/v2",
        kind="HorizontalPodAutoscaler",
        metadata=client.V1ObjectMeta(
            name=names.autoscaler,
            namespace=deployment.namespace,
            labels=labels_for(deployment),
        ),
        spec=client.V2HorizontalPodAutoscalerSpec(
            scale_target_ref=client.V2CrossVersionObjectReference(
                api_version="apps/v1",
                kind="Deployment",
                name=names.deployment,
            ),
            min_replicas=scaling.min_replicas,
            max_replicas=scaling.max_replicas,
            metrics=[
                client.V2MetricSpec(
                    type="Resource",
                    resource=client.V2ResourceMetricSource(
                        name="cpu",
                        target=client.V2MetricTarget(
                            type="Utilization",
                            average_utilization=scaling.target_cpu_percent,
                        ),
                    ),
                )
            ],
        ),
    )
