# tunnel/names.py
"""Deterministic external identifiers for a Service's tunnel resources.

Fly.io app names and Kubernetes label values share the same 63 character
ceiling, so a single sanitizer serves both. Identity depends only on the
Service namespace and name; nothing here may depend on time or randomness.
"""
from __future__ import annotations

import hashlib
import re

MAX_NAME_LEN = 63
HASH_SUFFIX_LEN = 8

KIND_TUNNEL = "tunnel"
KIND_APP = "app"
KIND_DEPLOYMENT = "deployment"
KIND_LABEL = "label"

_PREFIXES = {
    KIND_TUNNEL: "frp-",
    KIND_APP: "fly-tunnel-",
    KIND_DEPLOYMENT: "frpc-",
    KIND_LABEL: "",
}


def sanitize_name(name: str) -> str:
    """Lowercase alphanumerics and single dashes, at most 63 chars.

    Over-long names are cut and suffixed with 8 hex chars of the SHA-256 of
    the full (lower-cased) input, so names sharing a long prefix still differ.
    """
    lowered = (name or "").lower()
    n = re.sub(r"[^a-z0-9-]", "-", lowered)
    n = re.sub(r"-{2,}", "-", n)
    n = n.strip("-")

    if len(n) <= MAX_NAME_LEN:
        return n

    suffix = hashlib.sha256(lowered.encode()).hexdigest()[:HASH_SUFFIX_LEN]
    truncated = n[:MAX_NAME_LEN - HASH_SUFFIX_LEN - 1].rstrip("-")
    return f"{truncated}-{suffix}"


def derive(kind: str, namespace: str, name: str) -> str:
    try:
        prefix = _PREFIXES[kind]
    except KeyError:
        raise ValueError(f"unknown identifier kind: {kind!r}") from None
    return sanitize_name(f"{prefix}{namespace}-{name}")


def _meta(service: dict) -> dict:
    return (service or {}).get("metadata", {}) or {}


def tunnel_name(service: dict) -> str:
    m = _meta(service)
    return derive(KIND_TUNNEL, m.get("namespace", ""), m.get("name", ""))


def fly_app_name(service: dict) -> str:
    m = _meta(service)
    return derive(KIND_APP, m.get("namespace", ""), m.get("name", ""))


def frpc_deployment_name(service: dict) -> str:
    m = _meta(service)
    return derive(KIND_DEPLOYMENT, m.get("namespace", ""), m.get("name", ""))


def service_label_value(service: dict) -> str:
    m = _meta(service)
    return derive(KIND_LABEL, m.get("namespace", ""), m.get("name", ""))


def frpc_configmap_name(deployment_name: str) -> str:
    return f"{deployment_name}-config"
