from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

import k8s
from fakes import make_service


def _kube() -> k8s.KubeClient:
    return k8s.KubeClient(corev1=MagicMock(), appsv1=MagicMock(), api_client=MagicMock())


def test_get_service_not_found_is_none() -> None:
    kube = _kube()
    kube.core.read_namespaced_service.side_effect = ApiException(status=404)
    assert kube.get_service("default", "nginx") is None


def test_get_service_other_errors_propagate() -> None:
    kube = _kube()
    kube.core.read_namespaced_service.side_effect = ApiException(status=500)
    with pytest.raises(ApiException):
        kube.get_service("default", "nginx")


def test_patch_service_uses_merge_patch() -> None:
    kube = _kube()
    kube.core.patch_namespaced_service.return_value = {"metadata": {}}
    kube.patch_service("default", "nginx", {"metadata": {"annotations": {"a": "b"}}})
    _, kwargs = kube.core.patch_namespaced_service.call_args
    assert kwargs["_content_type"] == "application/merge-patch+json"


def test_apply_configmap_conflict_replaces_with_resource_version() -> None:
    kube = _kube()
    kube.core.create_namespaced_config_map.side_effect = ApiException(status=409)
    kube.core.read_namespaced_config_map.return_value = {"metadata": {"resourceVersion": "7"}}
    body = {"metadata": {"name": "frpc-default-nginx-config", "namespace": "ops"}, "data": {"frpc.toml": "x"}}

    kube.apply_configmap(body)

    name, ns, sent = kube.core.replace_namespaced_config_map.call_args[0]
    assert (name, ns) == ("frpc-default-nginx-config", "ops")
    assert sent["metadata"]["resourceVersion"] == "7"
    assert "resourceVersion" not in body["metadata"]


def test_apply_deployment_creates_when_absent() -> None:
    kube = _kube()
    kube.apply_deployment({"metadata": {"name": "frpc-default-nginx", "namespace": "ops"}})
    kube.apps.create_namespaced_deployment.assert_called_once()
    kube.apps.replace_namespaced_deployment.assert_not_called()


def test_apply_deployment_other_errors_propagate() -> None:
    kube = _kube()
    kube.apps.create_namespaced_deployment.side_effect = ApiException(status=403)
    with pytest.raises(ApiException):
        kube.apply_deployment({"metadata": {"name": "d", "namespace": "ops"}})


def test_delete_tolerates_not_found() -> None:
    kube = _kube()
    kube.apps.delete_namespaced_deployment.side_effect = ApiException(status=404)
    kube.core.delete_namespaced_config_map.side_effect = ApiException(status=404)
    assert kube.delete_deployment("ops", "d") is False
    assert kube.delete_configmap("ops", "d-config") is False


def test_ensure_finalizer_patch_carries_resource_version() -> None:
    kube = _kube()
    svc = make_service()
    svc["metadata"]["resourceVersion"] = "12"

    assert k8s.ensure_finalizer(kube, svc) is True

    name, ns, body = kube.core.patch_namespaced_service.call_args[0]
    assert (ns, name) == ("default", "nginx")
    assert body == {"metadata": {"finalizers": [k8s.FINALIZER], "resourceVersion": "12"}}


def test_ensure_finalizer_is_idempotent() -> None:
    kube = _kube()
    svc = make_service()
    svc["metadata"]["finalizers"] = [k8s.FINALIZER]
    assert k8s.ensure_finalizer(kube, svc) is False
    kube.core.patch_namespaced_service.assert_not_called()


def test_remove_finalizer_keeps_foreign_entries() -> None:
    kube = _kube()
    svc = make_service()
    svc["metadata"]["finalizers"] = ["other.dev/keep", k8s.FINALIZER]

    assert k8s.remove_finalizer(kube, svc) is True

    body = kube.core.patch_namespaced_service.call_args[0][2]
    assert body["metadata"]["finalizers"] == ["other.dev/keep"]
    assert k8s.remove_finalizer(kube, make_service()) is False
