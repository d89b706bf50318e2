from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import yaml
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from ekpose.src.builder import build_ingress, build_service
from ekpose.src.keys import WorkKey
from ekpose.src.kube import (
    api_status_reason,
    build_clients,
    create_ingress,
    create_service,
    delete_ingress,
    delete_service,
    describe_api_error,
    is_already_exists,
    is_not_found,
    load_kube_configuration,
    read_deployment,
)
from ekpose.tests.fakes import already_exists, api_error, not_found, server_error

WEB = WorkKey(namespace="default", name="web")


def test_load_kube_configuration_prefers_kubeconfig_file() -> None:
    with (
        patch("ekpose.src.kube.config.load_kube_config") as mock_kubeconfig,
        patch("ekpose.src.kube.config.load_incluster_config") as mock_incluster,
    ):
        load_kube_configuration("/tmp/kubeconfig")

    mock_kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")
    mock_incluster.assert_not_called()


@pytest.mark.parametrize(
    "error",
    [
        ConfigException("invalid kube-config"),
        FileNotFoundError("missing"),
        yaml.YAMLError("expected ',' or ']'"),
    ],
)
def test_load_kube_configuration_falls_back_to_in_cluster(error: Exception) -> None:
    with (
        patch("ekpose.src.kube.config.load_kube_config", side_effect=error),
        patch("ekpose.src.kube.config.load_incluster_config") as mock_incluster,
    ):
        load_kube_configuration("/does/not/exist")

    mock_incluster.assert_called_once()


def test_load_kube_configuration_falls_back_on_unparseable_kubeconfig(tmp_path: Path) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("clusters: [unclosed\n")

    with patch("ekpose.src.kube.config.load_incluster_config") as mock_incluster:
        load_kube_configuration(str(kubeconfig))

    mock_incluster.assert_called_once()


def test_load_kube_configuration_raises_when_nothing_works() -> None:
    with (
        patch("ekpose.src.kube.config.load_kube_config", side_effect=ConfigException("no file")),
        patch(
            "ekpose.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        pytest.raises(ConfigException),
    ):
        load_kube_configuration("/does/not/exist")


def test_build_clients_returns_tuple() -> None:
    with patch("ekpose.src.kube.client") as mock_client:
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.NetworkingV1Api.return_value = SimpleNamespace(name="networking")
        apps, core, networking = build_clients()

    assert apps.name == "apps"
    assert core.name == "core"
    assert networking.name == "networking"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def test_already_exists_is_recognised_from_status_reason() -> None:
    assert is_already_exists(already_exists())
    assert not is_already_exists(api_error(409, "Conflict", "Conflict"))
    assert not is_already_exists(server_error())
    assert not is_already_exists(not_found())


def test_conflict_without_status_body_is_treated_as_already_exists() -> None:
    assert is_already_exists(ApiException(status=409, reason="Conflict"))


def test_not_found_only_matches_404() -> None:
    assert is_not_found(not_found())
    assert not is_not_found(server_error())
    assert not is_not_found(already_exists())


def test_api_status_reason_handles_bytes_and_garbage_bodies() -> None:
    exc = ApiException(status=409, reason="Conflict")
    exc.body = b'{"kind": "Status", "reason": "AlreadyExists"}'
    assert api_status_reason(exc) == "AlreadyExists"

    exc.body = "<html>bad gateway</html>"
    assert api_status_reason(exc) is None

    exc.body = '["not", "a", "status"]'
    assert api_status_reason(exc) is None

    exc.body = '{"reason": 7}'
    assert api_status_reason(exc) is None


def test_describe_api_error_prefers_status_reason() -> None:
    assert describe_api_error(already_exists()) == "409 AlreadyExists"
    assert describe_api_error(ApiException(status=503, reason="Service Unavailable")) == "503 Service Unavailable"


# ---------------------------------------------------------------------------
# API wrappers
# ---------------------------------------------------------------------------


def test_read_deployment_uses_key_name_and_namespace() -> None:
    apps_api = MagicMock()

    read_deployment(apps_api, WEB)

    apps_api.read_namespaced_deployment.assert_called_once_with(name="web", namespace="default")


def test_create_service_posts_into_object_namespace() -> None:
    core_api = MagicMock()
    service = build_service("web", "shop", {"app": "web"})

    create_service(core_api, service)

    core_api.create_namespaced_service.assert_called_once_with(namespace="shop", body=service)


def test_create_ingress_posts_into_object_namespace() -> None:
    networking_api = MagicMock()
    ingress = build_ingress("web", "shop")

    create_ingress(networking_api, ingress)

    networking_api.create_namespaced_ingress.assert_called_once_with(namespace="shop", body=ingress)


def test_delete_wrappers_target_the_key() -> None:
    core_api = MagicMock()
    networking_api = MagicMock()

    delete_service(core_api, WEB)
    delete_ingress(networking_api, WEB)

    core_api.delete_namespaced_service.assert_called_once_with(name="web", namespace="default")
    networking_api.delete_namespaced_ingress.assert_called_once_with(name="web", namespace="default")
