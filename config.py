# config.py
"""Operator configuration, read from the environment at startup."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_LOAD_BALANCER_CLASS = "fly-tunnel-operator.dev/lb"
DEFAULT_OPERATOR_NAMESPACE = "fly-tunnel-operator-system"
DEFAULT_MACHINE_SIZE = "shared-cpu-1x"
DEFAULT_FRPS_IMAGE = "snowdreamtech/frps:latest"
DEFAULT_FRPC_IMAGE = "snowdreamtech/frpc:latest"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class OperatorConfig:
    fly_api_token: str
    fly_org: str
    fly_region: str
    fly_machine_size: str = DEFAULT_MACHINE_SIZE
    load_balancer_class: str = DEFAULT_LOAD_BALANCER_CLASS
    frps_image: str = DEFAULT_FRPS_IMAGE
    frpc_image: str = DEFAULT_FRPC_IMAGE
    operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE
    fly_api_url: str = "https://api.machines.dev"
    fly_graphql_url: str = "https://api.fly.io/graphql"
    peering_name: str = "fly-tunnel-operator"
    retry_delay_seconds: int = 30
    log_level: str = "INFO"


def positive_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> OperatorConfig:
    """
    Build the operator config from environment variables.
    FLY_API_TOKEN, FLY_ORG and FLY_REGION are required; everything else has a default.
    """
    env = os.environ if environ is None else environ

    missing = [k for k in ("FLY_API_TOKEN", "FLY_ORG", "FLY_REGION") if not env.get(k)]
    if missing:
        raise ConfigError("missing required environment: " + ", ".join(missing))

    return OperatorConfig(
        fly_api_token=env["FLY_API_TOKEN"],
        fly_org=env["FLY_ORG"],
        fly_region=env["FLY_REGION"],
        fly_machine_size=env.get("FLY_MACHINE_SIZE") or DEFAULT_MACHINE_SIZE,
        load_balancer_class=env.get("LOAD_BALANCER_CLASS") or DEFAULT_LOAD_BALANCER_CLASS,
        frps_image=env.get("FRPS_IMAGE") or DEFAULT_FRPS_IMAGE,
        frpc_image=env.get("FRPC_IMAGE") or DEFAULT_FRPC_IMAGE,
        operator_namespace=env.get("OPERATOR_NAMESPACE") or DEFAULT_OPERATOR_NAMESPACE,
        fly_api_url=env.get("FLY_API_URL") or "https://api.machines.dev",
        fly_graphql_url=env.get("FLY_GRAPHQL_URL") or "https://api.fly.io/graphql",
        peering_name=env.get("PEERING_NAME") or "fly-tunnel-operator",
        retry_delay_seconds=positive_int(env, "RETRY_DELAY_SECONDS", 30),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
