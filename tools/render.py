#!/usr/bin/env python3
"""tools/render.py

Render the frpc ConfigMap + Deployment the operator would apply for a Service,
as multi-document YAML, followed by the frps config baked into the Fly Machine.

Usage examples:
  # From a Service in the cluster:
  SERVICE=envoy-gateway-system/envoy-gateway python3 tools/render.py

  # From a local manifest, with a placeholder server address:
  MANIFEST=svc.yaml SERVER_ADDR=203.0.113.10 python3 tools/render.py > /tmp/frpc.yaml

Notes:
- This does NOT apply anything and makes no Fly.io calls.
- For validation, pair it with: kubectl apply --dry-run=server -f -
"""

from __future__ import annotations

import os
import sys
from types import SimpleNamespace

import yaml

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import config as operator_config  # noqa: E402
from frp.config import DEFAULT_SERVER_PORT, generate_client_config, generate_server_config  # noqa: E402
from tunnel import annotations as ann  # noqa: E402
from tunnel import names  # noqa: E402
from tunnel.manager import TunnelManager  # noqa: E402


def render_documents(service: dict, server_addr: str, cfg) -> list[dict]:
    manager = TunnelManager(fly=None, kube=None, config=cfg)
    deployment_name = ann.get(service, ann.FRPC_DEPLOYMENT) or names.frpc_deployment_name(service)
    config_text = generate_client_config(service, server_addr, DEFAULT_SERVER_PORT)
    return [
        manager.build_frpc_configmap(service, config_text, deployment_name),
        manager.build_frpc_deployment(service, config_text, deployment_name),
    ]


def _render_config():
    # only the in-cluster fields matter here; Fly credentials are not needed
    return SimpleNamespace(
        frpc_image=os.environ.get("FRPC_IMAGE", operator_config.DEFAULT_FRPC_IMAGE),
        operator_namespace=os.environ.get("OPERATOR_NAMESPACE", operator_config.DEFAULT_OPERATOR_NAMESPACE),
    )


def _load_service() -> dict:
    manifest = os.environ.get("MANIFEST")
    if manifest:
        with open(manifest) as f:
            return yaml.safe_load(f)

    ref = os.environ.get("SERVICE", "")
    if "/" not in ref:
        raise SystemExit("set SERVICE=<namespace>/<name> or MANIFEST=<file>")
    ns, name = ref.split("/", 1)

    import k8s

    k8s.load_kube()
    svc = k8s.KubeClient().get_service(ns, name)
    if svc is None:
        raise SystemExit(f"service {ref} not found")
    return svc


def main() -> int:
    service = _load_service()
    server_addr = os.environ.get("SERVER_ADDR") or ann.get(service, ann.PUBLIC_IP) or "0.0.0.0"

    try:
        for doc in render_documents(service, server_addr, _render_config()):
            yaml.safe_dump(doc, sys.stdout, sort_keys=False)
            sys.stdout.write("---\n")
        sys.stdout.write("# frps.toml\n")
        for line in generate_server_config(DEFAULT_SERVER_PORT).splitlines():
            sys.stdout.write(f"# {line}\n")
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
