# k8s.py
"""Thin wrapper over the Kubernetes API used by the reconciler and tunnel manager.

Objects cross this boundary as plain API-shaped dicts (camelCase keys), the
same shape kopf hands to handlers.
"""
from __future__ import annotations

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

log = logging.getLogger(__name__)

FINALIZER = "fly-tunnel-operator.dev/finalizer"

MERGE_PATCH = "application/merge-patch+json"


def load_kube() -> None:
    try:
        config.load_incluster_config()
        log.info("[k8s] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        log.info("[k8s] using kubeconfig (local)")


def is_not_found(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 404


def is_conflict(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 409


class KubeClient:
    def __init__(self, corev1=None, appsv1=None, api_client=None):
        self.api_client = api_client or client.ApiClient()
        self.core = corev1 or client.CoreV1Api(self.api_client)
        self.apps = appsv1 or client.AppsV1Api(self.api_client)

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    # ───────────── services ─────────────

    def get_service(self, namespace: str, name: str) -> Optional[dict]:
        try:
            return self._to_dict(self.core.read_namespaced_service(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list_services(self) -> list[dict]:
        res = self.core.list_service_for_all_namespaces()
        return [self._to_dict(s) for s in res.items]

    def patch_service(self, namespace: str, name: str, body: dict) -> dict:
        res = self.core.patch_namespaced_service(name, namespace, body, _content_type=MERGE_PATCH)
        return self._to_dict(res)

    def patch_service_status(self, namespace: str, name: str, body: dict) -> dict:
        res = self.core.patch_namespaced_service_status(name, namespace, body, _content_type=MERGE_PATCH)
        return self._to_dict(res)

    # ───────────── frpc workload ─────────────

    def apply_configmap(self, body: dict) -> None:
        meta = body["metadata"]
        ns, name = meta["namespace"], meta["name"]
        try:
            self.core.create_namespaced_config_map(ns, body)
            return
        except ApiException as e:
            if e.status != 409:
                raise
        existing = self._to_dict(self.core.read_namespaced_config_map(name, ns))
        body = dict(body)
        body["metadata"] = dict(meta, resourceVersion=existing["metadata"].get("resourceVersion"))
        self.core.replace_namespaced_config_map(name, ns, body)

    def apply_deployment(self, body: dict) -> None:
        meta = body["metadata"]
        ns, name = meta["namespace"], meta["name"]
        try:
            self.apps.create_namespaced_deployment(ns, body)
            return
        except ApiException as e:
            if e.status != 409:
                raise
        existing = self._to_dict(self.apps.read_namespaced_deployment(name, ns))
        body = dict(body)
        body["metadata"] = dict(meta, resourceVersion=existing["metadata"].get("resourceVersion"))
        self.apps.replace_namespaced_deployment(name, ns, body)

    def delete_deployment(self, namespace: str, name: str) -> bool:
        try:
            self.apps.delete_namespaced_deployment(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def delete_configmap(self, namespace: str, name: str) -> bool:
        try:
            self.core.delete_namespaced_config_map(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise


# ───────────── finalizer ─────────────

def finalizers_of(obj: dict) -> list[str]:
    return list(((obj or {}).get("metadata", {}) or {}).get("finalizers") or [])


def has_finalizer(obj: dict) -> bool:
    return FINALIZER in finalizers_of(obj)


def _finalizer_patch(obj: dict, fins: list[str]) -> dict:
    # resourceVersion makes the patch fail with 409 if the object moved on
    meta = obj.get("metadata", {}) or {}
    patch = {"metadata": {"finalizers": fins}}
    if meta.get("resourceVersion"):
        patch["metadata"]["resourceVersion"] = meta["resourceVersion"]
    return patch


def ensure_finalizer(kube: KubeClient, obj: dict) -> bool:
    fins = finalizers_of(obj)
    if FINALIZER in fins:
        return False
    fins.append(FINALIZER)
    meta = obj["metadata"]
    kube.patch_service(meta["namespace"], meta["name"], _finalizer_patch(obj, fins))
    return True


def remove_finalizer(kube: KubeClient, obj: dict) -> bool:
    fins = finalizers_of(obj)
    if FINALIZER not in fins:
        return False
    fins = [f for f in fins if f != FINALIZER]
    meta = obj["metadata"]
    kube.patch_service(meta["namespace"], meta["name"], _finalizer_patch(obj, fins))
    return True
