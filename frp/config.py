# frp/config.py
"""Render frps / frpc TOML configuration for a Service's tunnel."""
from __future__ import annotations

from typing import List

DEFAULT_SERVER_PORT = 7000


def _ports(service: dict) -> List[dict]:
    return ((service or {}).get("spec", {}) or {}).get("ports", []) or []


def service_cluster_address(service: dict) -> str:
    meta = (service or {}).get("metadata", {}) or {}
    return f"{meta.get('name', '')}.{meta.get('namespace', '')}.svc.cluster.local"


def proxy_name(service: dict, port: dict) -> str:
    meta = (service or {}).get("metadata", {}) or {}
    proto = str(port.get("protocol") or "TCP").lower()
    return f"{meta.get('namespace', '')}-{meta.get('name', '')}-{proto}-{int(port['port'])}"


def generate_server_config(control_port: int = DEFAULT_SERVER_PORT) -> str:
    return f'bindAddr = "0.0.0.0"\nbindPort = {int(control_port)}\n'


def generate_client_config(service: dict, server_addr: str, control_port: int = DEFAULT_SERVER_PORT) -> str:
    """One [[proxies]] entry per declared Service port.

    The proxy type follows the port protocol; traffic is forwarded to the
    Service's cluster DNS name on the same port number.
    """
    local_ip = service_cluster_address(service)
    lines = [
        f'serverAddr = "{server_addr}"',
        f"serverPort = {int(control_port)}",
        "loginFailExit = false",
    ]
    for port in _ports(service):
        number = int(port["port"])
        lines += [
            "",
            "[[proxies]]",
            f'name = "{proxy_name(service, port)}"',
            f'type = "{str(port.get("protocol") or "TCP").lower()}"',
            f'localIP = "{local_ip}"',
            f"localPort = {number}",
            f"remotePort = {number}",
        ]
    return "\n".join(lines) + "\n"
