# admission.py
"""Event admission: decide whether a Service change is worth a reconcile pass.

Status-only echoes of our own writes are dropped here so a pass never
re-triggers itself.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from tunnel import annotations as ann

# annotations written by the host framework for its own bookkeeping
FRAMEWORK_ANNOTATION_PREFIXES = ("kopf.zalando.org/",)


def _spec(obj: Optional[dict]) -> dict:
    return ((obj or {}).get("spec", {}) or {})


def _meta(obj: Optional[dict]) -> dict:
    return ((obj or {}).get("metadata", {}) or {})


def is_managed(service: Optional[dict], load_balancer_class: str) -> bool:
    spec = _spec(service)
    if spec.get("type") != "LoadBalancer":
        return False
    return bool(load_balancer_class) and spec.get("loadBalancerClass") == load_balancer_class


def ingress_ip(service: Optional[dict]) -> Optional[str]:
    ingress = ((((service or {}).get("status", {}) or {}).get("loadBalancer", {}) or {}).get("ingress")) or []
    if not ingress:
        return None
    return (ingress[0] or {}).get("ip")


def status_is_stale(service: Optional[dict]) -> bool:
    """True when the ingress list is empty or disagrees with the recorded public IP."""
    ingress = ((((service or {}).get("status", {}) or {}).get("loadBalancer", {}) or {}).get("ingress")) or []
    if not ingress:
        return True
    expected = ann.get(service, ann.PUBLIC_IP)
    return bool(expected) and ingress_ip(service) != expected


def _user_annotations(obj: Optional[dict]) -> Dict[str, str]:
    return {
        k: v
        for k, v in (_meta(obj).get("annotations") or {}).items()
        if not k.startswith(FRAMEWORK_ANNOTATION_PREFIXES)
    }


def _ports(obj: Optional[dict]) -> List[dict]:
    return list(_spec(obj).get("ports") or [])


def admit_create(service: Optional[dict], load_balancer_class: str) -> bool:
    return is_managed(service, load_balancer_class)


def admit_delete(service: Optional[dict], load_balancer_class: str) -> bool:
    return is_managed(service, load_balancer_class)


def admit_update(
    old: Optional[dict],
    new: Optional[dict],
    load_balancer_class: str,
    current: Optional[dict] = None,
) -> bool:
    """
    `old` and `new` may be diff essences with no status or deletion marker;
    those two checks then run against `current`, the full object.
    """
    current = new if current is None else current
    if not is_managed(current, load_balancer_class):
        return False
    if _ports(old) != _ports(new):
        return True
    if _user_annotations(old) != _user_annotations(new):
        return True
    if _meta(current).get("deletionTimestamp"):
        return True
    return status_is_stale(current)
