from __future__ import annotations

from typing import Any

from kubernetes.client import (
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
)

# Container port discovery is out of scope; every workload is exposed on 80.
SERVICE_PORT = 80
SERVICE_PORT_NAME = "http"
ROUTE_PATH_TYPE = "Prefix"
REWRITE_TARGET_ANNOTATION = "nginx.ingress.kubernetes.io/rewrite-target"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "ekpose"


def pod_template_labels(deployment: Any) -> dict[str, str]:
    """Extract ``spec.template.metadata.labels`` from a Deployment safely.

    A Deployment without template labels yields an empty selector, which the
    API accepts but which matches no pods.
    """
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in labels.items()
        if isinstance(k, str)
    }


def route_path(name: str) -> str:
    return f"/{name}"


def build_service(name: str, namespace: str, selector: dict[str, str]) -> V1Service:
    """Desired Service exposing the workload's pods on port 80."""
    return V1Service(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        ),
        spec=V1ServiceSpec(
            selector=dict(selector),
            ports=[V1ServicePort(name=SERVICE_PORT_NAME, port=SERVICE_PORT)],
        ),
    )


def build_ingress(service_name: str, namespace: str) -> V1Ingress:
    """Desired Ingress routing ``/<service_name>`` to the Service, rewritten to ``/``.

    The rewrite annotation is a contract with whichever ingress controller is
    installed; it is not validated here.
    """
    backend = V1IngressBackend(
        service=V1IngressServiceBackend(
            name=service_name,
            port=V1ServiceBackendPort(number=SERVICE_PORT),
        )
    )
    return V1Ingress(
        metadata=V1ObjectMeta(
            name=service_name,
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            annotations={REWRITE_TARGET_ANNOTATION: "/"},
        ),
        spec=V1IngressSpec(
            rules=[
                V1IngressRule(
                    http=V1HTTPIngressRuleValue(
                        paths=[
                            V1HTTPIngressPath(
                                path=route_path(service_name),
                                path_type=ROUTE_PATH_TYPE,
                                backend=backend,
                            )
                        ]
                    )
                )
            ]
        ),
    )
