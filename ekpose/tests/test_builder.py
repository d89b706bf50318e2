from __future__ import annotations

from types import SimpleNamespace

from ekpose.src.builder import (
    MANAGED_BY_LABEL,
    REWRITE_TARGET_ANNOTATION,
    build_ingress,
    build_service,
    pod_template_labels,
    route_path,
)
from ekpose.tests.fakes import make_deployment


def test_service_selects_pod_template_labels_on_port_80() -> None:
    service = build_service("web", "default", {"app": "web"})

    assert service.metadata.name == "web"
    assert service.metadata.namespace == "default"
    assert service.metadata.labels[MANAGED_BY_LABEL] == "ekpose"
    assert service.spec.selector == {"app": "web"}
    assert len(service.spec.ports) == 1
    assert service.spec.ports[0].name == "http"
    assert service.spec.ports[0].port == 80


def test_service_selector_is_a_copy() -> None:
    labels = {"app": "web"}
    service = build_service("web", "default", labels)

    labels["tier"] = "frontend"

    assert service.spec.selector == {"app": "web"}


def test_empty_labels_yield_empty_selector() -> None:
    service = build_service("web", "default", {})

    assert service.spec.selector == {}


def test_ingress_routes_name_path_to_service() -> None:
    ingress = build_ingress("web", "default")

    assert ingress.metadata.name == "web"
    assert ingress.metadata.namespace == "default"
    assert ingress.metadata.annotations == {REWRITE_TARGET_ANNOTATION: "/"}
    [rule] = ingress.spec.rules
    [path] = rule.http.paths
    assert path.path == "/web"
    assert path.path_type == "Prefix"
    assert path.backend.service.name == "web"
    assert path.backend.service.port.number == 80


def test_route_path_prefixes_slash() -> None:
    assert route_path("web") == "/web"


def test_pod_template_labels_from_deployment() -> None:
    deployment = make_deployment("web", labels={"app": "web", "tier": "frontend"})

    assert pod_template_labels(deployment) == {"app": "web", "tier": "frontend"}


def test_pod_template_labels_tolerates_missing_fields() -> None:
    assert pod_template_labels(SimpleNamespace()) == {}
    assert pod_template_labels(SimpleNamespace(spec=SimpleNamespace(template=None))) == {}
    assert pod_template_labels(make_deployment("web", labels={})) == {}


def test_pod_template_labels_stringifies_values() -> None:
    deployment = make_deployment("web", labels={"app": "web", "version": None})  # type: ignore[dict-item]

    assert pod_template_labels(deployment) == {"app": "web", "version": ""}
