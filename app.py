# app.py
"""kopf wiring for the tunnel operator.

kopf supplies what the reconciler relies on but does not implement itself:
per-object serialization of handler runs, retry with backoff, and a single
active instance through peering (standby replicas stay frozen). Handlers are
synchronous and run in kopf's thread pool; each one just triggers a fresh
reconcile pass for the Service it was called for.

Run with:
  python3 app.py
or
  kopf run app.py --all-namespaces --peering=fly-tunnel-operator
"""
from __future__ import annotations

import logging
import os
from typing import Any

import kopf
from kubernetes.client.exceptions import ApiException

import admission
import k8s
from config import ConfigError, load_config, positive_int
from flyio.client import FlyAPIError, FlyClient
from reconcile import Reconciler
from tunnel.errors import TunnelError
from tunnel.manager import TunnelManager

# ─────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────
# needed when handlers are registered, i.e. before startup runs
RESYNC_INTERVAL_SECONDS = positive_int(os.environ, "RESYNC_INTERVAL_SECONDS", 300)
PEERING_NAME = os.environ.get("PEERING_NAME", "fly-tunnel-operator")
LIVENESS_ENDPOINT = os.environ.get("LIVENESS_ENDPOINT", "http://0.0.0.0:8081/healthz")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


# ─────────────────────────────────────────────
# Startup / shutdown
# ─────────────────────────────────────────────
def configure_settings(settings: kopf.OperatorSettings, cfg) -> None:
    # only the peering leader handles events
    settings.peering.name = cfg.peering_name
    settings.peering.mandatory = True
    settings.peering.clusterwide = True
    # a deletion reaches the handlers only while kopf's finalizer is on the object,
    # so kopf manages ours instead of adding a second one
    settings.persistence.finalizer = k8s.FINALIZER
    # kopf's own progress bookkeeping must not land in status, Services have no room for it
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()


@kopf.on.startup()
def on_startup(settings: kopf.OperatorSettings, memo: kopf.Memo, logger: logging.Logger, **_: Any) -> None:
    try:
        cfg = load_config()
    except ConfigError as e:
        raise kopf.PermanentError(str(e)) from e

    configure_settings(settings, cfg)

    k8s.load_kube()
    fly = FlyClient(cfg.fly_api_token, base_url=cfg.fly_api_url, graphql_url=cfg.fly_graphql_url)
    kube = k8s.KubeClient()
    manager = TunnelManager(fly, kube, cfg)

    memo.config = cfg
    memo.fly = fly
    memo.reconciler = Reconciler(kube, manager, cfg.load_balancer_class)

    logger.info(
        f"[controller] started: org={cfg.fly_org} region={cfg.fly_region} "
        f"class={cfg.load_balancer_class} namespace={cfg.operator_namespace}"
    )


@kopf.on.cleanup()
def on_cleanup(memo: kopf.Memo, logger: logging.Logger, **_: Any) -> None:
    fly = getattr(memo, "fly", None)
    if fly is not None:
        fly.close()
    logger.info("[controller] shutting down")


@kopf.on.probe(id="reconciler")
def reconciler_ready(memo: kopf.Memo, **_: Any) -> bool:
    return getattr(memo, "reconciler", None) is not None


# ─────────────────────────────────────────────
# Filters
# ─────────────────────────────────────────────
def _lb_class(memo: kopf.Memo) -> str:
    cfg = getattr(memo, "config", None)
    return cfg.load_balancer_class if cfg is not None else ""


def managed(body: kopf.Body, memo: kopf.Memo, **_: Any) -> bool:
    return admission.admit_create(body, _lb_class(memo))


def update_admitted(old: Any, new: Any, body: kopf.Body, memo: kopf.Memo, **_: Any) -> bool:
    # old/new are diff essences: no status, no deletionTimestamp
    return admission.admit_update(old, new, _lb_class(memo), current=body)


def needs_resync(body: kopf.Body, memo: kopf.Memo, **_: Any) -> bool:
    return admission.is_managed(body, _lb_class(memo)) and admission.status_is_stale(body)


# ─────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────
def _reconcile(memo: kopf.Memo, namespace: str, name: str, logger: logging.Logger) -> str:
    try:
        return memo.reconciler.reconcile(namespace, name, logger=logger)
    except (TunnelError, FlyAPIError, ApiException) as e:
        raise kopf.TemporaryError(f"reconcile failed: {e}", delay=memo.config.retry_delay_seconds) from e


@kopf.on.resume("v1", "services", when=managed)
@kopf.on.create("v1", "services", when=managed)
def on_service_present(memo: kopf.Memo, namespace: str, name: str, logger: logging.Logger, **_: Any) -> str:
    return _reconcile(memo, namespace, name, logger)


@kopf.on.update("v1", "services", when=update_admitted)
def on_service_update(memo: kopf.Memo, namespace: str, name: str, logger: logging.Logger, **_: Any) -> str:
    return _reconcile(memo, namespace, name, logger)


# mandatory: kopf keeps our finalizer on managed Services until this succeeds
@kopf.on.delete("v1", "services", when=managed)
def on_service_delete(memo: kopf.Memo, namespace: str, name: str, logger: logging.Logger, **_: Any) -> str:
    return _reconcile(memo, namespace, name, logger)


@kopf.timer("v1", "services", interval=RESYNC_INTERVAL_SECONDS, idle=RESYNC_INTERVAL_SECONDS, when=needs_resync)
def resync_stale_status(memo: kopf.Memo, namespace: str, name: str, logger: logging.Logger, **_: Any) -> str:
    return _reconcile(memo, namespace, name, logger)


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def main() -> None:
    kopf.configure(verbose=LOG_LEVEL == "DEBUG", quiet=LOG_LEVEL in ("WARNING", "ERROR"))
    kopf.run(
        clusterwide=True,
        standalone=False,
        peering_name=PEERING_NAME,
        liveness_endpoint=LIVENESS_ENDPOINT,
    )


if __name__ == "__main__":
    main()
