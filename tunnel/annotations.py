# tunnel/annotations.py
"""Typed view over the operator's annotations on a Service.

The annotation bag is the only place tunnel state is persisted; every key
lives under ANNOTATION_PREFIX and every value is a plain string.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Dict, Optional

ANNOTATION_PREFIX = "fly-tunnel-operator.dev"

# Tunnel state written by the operator.
FLY_APP = f"{ANNOTATION_PREFIX}/fly-app"
MACHINE_ID = f"{ANNOTATION_PREFIX}/machine-id"
FRPC_DEPLOYMENT = f"{ANNOTATION_PREFIX}/frpc-deployment"
IP_ID = f"{ANNOTATION_PREFIX}/ip-id"
PUBLIC_IP = f"{ANNOTATION_PREFIX}/public-ip"

# Per-service overrides written by users.
FLY_REGION = f"{ANNOTATION_PREFIX}/fly-region"
FLY_MACHINE_SIZE = f"{ANNOTATION_PREFIX}/fly-machine-size"
FRPC_CPU_REQUEST = f"{ANNOTATION_PREFIX}/frpc-cpu-request"
FRPC_CPU_LIMIT = f"{ANNOTATION_PREFIX}/frpc-cpu-limit"
FRPC_MEMORY_REQUEST = f"{ANNOTATION_PREFIX}/frpc-memory-request"
FRPC_MEMORY_LIMIT = f"{ANNOTATION_PREFIX}/frpc-memory-limit"

# Pod template annotation carrying the frpc config digest.
CONFIG_HASH = f"{ANNOTATION_PREFIX}/config-hash"


def annotations_of(service: dict) -> Dict[str, str]:
    return ((service or {}).get("metadata", {}) or {}).get("annotations", {}) or {}


def get(service: dict, key: str) -> Optional[str]:
    """Annotation value, with empty strings treated as absent."""
    v = annotations_of(service).get(key)
    return v or None


@dataclass
class TunnelState:
    fly_app: Optional[str] = None
    machine_id: Optional[str] = None
    frpc_deployment: Optional[str] = None
    ip_id: Optional[str] = None
    public_ip: Optional[str] = None

    _KEYS = {
        "fly_app": FLY_APP,
        "machine_id": MACHINE_ID,
        "frpc_deployment": FRPC_DEPLOYMENT,
        "ip_id": IP_ID,
        "public_ip": PUBLIC_IP,
    }

    @classmethod
    def from_service(cls, service: dict) -> "TunnelState":
        return cls(**{attr: get(service, key) for attr, key in cls._KEYS.items()})

    def to_annotations(self) -> Dict[str, str]:
        """Only the populated fields; absent ones are left untouched on patch."""
        out: Dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value:
                out[self._KEYS[f.name]] = str(value)
        return out

    @property
    def provisioned(self) -> bool:
        return bool(self.fly_app)

    def missing_for_update(self) -> list[str]:
        missing = []
        for attr in ("public_ip", "frpc_deployment", "fly_app"):
            if not getattr(self, attr):
                missing.append(self._KEYS[attr])
        return missing
