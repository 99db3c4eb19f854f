# reconcile.py
"""Level-triggered reconciliation of one LoadBalancer Service.

A pass always starts from a fresh read of the Service and infers where it is
from its contents; nothing besides the Service itself is persisted:

  Unmanaged        wrong type / loadBalancerClass        -> ignored
  PendingDeletion  deletionTimestamp set                 -> teardown, drop finalizer
  New              managed, no fly-app annotation        -> provision
  Provisioned      fly-app annotation present            -> status + update
"""
from __future__ import annotations

import logging

import k8s
from admission import ingress_ip, is_managed
from tunnel import annotations as ann

log = logging.getLogger(__name__)

UNMANAGED = "Unmanaged"
PENDING_DELETION = "PendingDeletion"
NEW = "New"
PROVISIONED = "Provisioned"

# what a pass did
NOT_FOUND = "not-found"
IGNORED = "ignored"
DELETED = "deleted"
PROVISIONED_NOW = "provisioned"
UPDATED = "updated"
UPDATE_FAILED = "update-failed"


def classify(service: dict, load_balancer_class: str) -> str:
    if not is_managed(service, load_balancer_class):
        return UNMANAGED
    if (service.get("metadata", {}) or {}).get("deletionTimestamp"):
        return PENDING_DELETION
    if ann.TunnelState.from_service(service).provisioned:
        return PROVISIONED
    return NEW


def _status_patch(public_ip: str) -> dict:
    return {"status": {"loadBalancer": {"ingress": [{"ip": public_ip}]}}}


class Reconciler:
    def __init__(self, kube, manager, load_balancer_class: str):
        self.kube = kube
        self.manager = manager
        self.load_balancer_class = load_balancer_class

    def reconcile(self, namespace: str, name: str, logger=None) -> str:
        """Run one pass. Raises when the pass must be retried later."""
        logger = logger or log
        svc = self.kube.get_service(namespace, name)
        if svc is None:
            # gone already; our finalizer would have held it if cleanup was pending
            return NOT_FOUND

        state = classify(svc, self.load_balancer_class)
        if state == UNMANAGED:
            return IGNORED

        if state == PENDING_DELETION:
            return self._delete(svc, logger)

        if not k8s.has_finalizer(svc):
            k8s.ensure_finalizer(self.kube, svc)
            svc = self.kube.get_service(namespace, name)
            if svc is None:
                return NOT_FOUND
            state = classify(svc, self.load_balancer_class)
            if state == PENDING_DELETION:
                return self._delete(svc, logger)

        if state == PROVISIONED:
            return self._update(svc, logger)
        return self._create(svc, logger)

    def _create(self, svc: dict, logger) -> str:
        meta = svc["metadata"]
        ns, name = meta["namespace"], meta["name"]
        logger.info(f"[reconcile] provisioning tunnel for {ns}/{name}")

        result = self.manager.provision(svc, logger=logger)

        # re-read so the annotation patch is computed against the latest object
        fresh = self.kube.get_service(ns, name) or svc
        self.kube.patch_service(ns, name, {"metadata": {"annotations": result.to_state().to_annotations()}})
        if ingress_ip(fresh) != result.public_ip:
            self.kube.patch_service_status(ns, name, _status_patch(result.public_ip))

        logger.info(f"[reconcile] tunnel provisioned for {ns}/{name}: ip={result.public_ip} machine={result.machine_id}")
        return PROVISIONED_NOW

    def _update(self, svc: dict, logger) -> str:
        meta = svc["metadata"]
        ns, name = meta["namespace"], meta["name"]

        public_ip = ann.get(svc, ann.PUBLIC_IP)
        if public_ip and ingress_ip(svc) != public_ip:
            self.kube.patch_service_status(ns, name, _status_patch(public_ip))
            logger.info(f"[reconcile] set {ns}/{name} status ip={public_ip}")

        try:
            self.manager.update(svc, logger=logger)
        except Exception as e:
            # still serving on the previous config; the next pass retries
            logger.error(f"[reconcile] failed to update tunnel for {ns}/{name}: {e}")
            return UPDATE_FAILED
        return UPDATED

    def _delete(self, svc: dict, logger) -> str:
        meta = svc["metadata"]
        ns, name = meta["namespace"], meta["name"]
        logger.info(f"[reconcile] tearing down tunnel for {ns}/{name}")
        self.manager.teardown(svc, logger=logger)
        k8s.remove_finalizer(self.kube, svc)
        logger.info(f"[reconcile] teardown complete for {ns}/{name}")
        return DELETED


def plan_action(state: str) -> str:
    return {
        UNMANAGED: "ignore",
        PENDING_DELETION: "teardown + remove finalizer",
        NEW: "provision",
        PROVISIONED: "update",
    }.get(state, "ignore")


def describe(service: dict, load_balancer_class: str) -> dict:
    """Plan-only summary of what a pass would do for this Service."""
    meta = service.get("metadata", {}) or {}
    state = classify(service, load_balancer_class)
    tunnel = ann.TunnelState.from_service(service)
    return {
        "namespace": meta.get("namespace", ""),
        "name": meta.get("name", ""),
        "state": state,
        "action": plan_action(state),
        "public_ip": tunnel.public_ip or "",
        "fly_app": tunnel.fly_app or "",
        "finalizer": k8s.has_finalizer(service),
    }
