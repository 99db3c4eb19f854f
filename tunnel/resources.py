# tunnel/resources.py
from __future__ import annotations

import copy
from decimal import InvalidOperation
from typing import Dict, Mapping, Optional

from kubernetes.utils import parse_quantity

from tunnel import annotations as ann
from tunnel.errors import InvalidResourceAnnotation

# k8s ResourceRequirements, in API (camelCase) dict form
DEFAULT_FRPC_RESOURCES: Dict[str, Dict[str, str]] = {
    "requests": {"cpu": "10m", "memory": "32Mi"},
    "limits": {"memory": "128Mi"},
}

# (annotation, section, resource)
RESOURCE_OVERRIDES = (
    (ann.FRPC_CPU_REQUEST, "requests", "cpu"),
    (ann.FRPC_CPU_LIMIT, "limits", "cpu"),
    (ann.FRPC_MEMORY_REQUEST, "requests", "memory"),
    (ann.FRPC_MEMORY_LIMIT, "limits", "memory"),
)


def resolve(
    overrides: Mapping[str, str],
    defaults: Optional[Dict[str, Dict[str, str]]] = None,
) -> Dict[str, Dict[str, str]]:
    """Merge per-service resource annotations over the frpc defaults.

    Any unparsable quantity fails the whole resolution; nothing is partially
    applied and the defaults are never mutated.
    """
    res = copy.deepcopy(DEFAULT_FRPC_RESOURCES if defaults is None else defaults)
    res.setdefault("requests", {})
    res.setdefault("limits", {})

    for key, section, resource in RESOURCE_OVERRIDES:
        value = (overrides or {}).get(key)
        if not value:
            continue
        try:
            parse_quantity(value)
        except (ValueError, InvalidOperation) as e:
            raise InvalidResourceAnnotation(key, value, str(e)) from e
        res[section][resource] = value

    return res


def frpc_resources(service: dict) -> Dict[str, Dict[str, str]]:
    return resolve(ann.annotations_of(service))
