# tunnel/manager.py
"""Provision, update and tear down the Fly.io Machine + frpc Deployment pair of a Service.

The manager keeps no state between calls; everything it needs to find the
remote resources again lives in the Service annotations (see tunnel.annotations).
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from frp.config import DEFAULT_SERVER_PORT, generate_client_config, generate_server_config
from tunnel import annotations as ann
from tunnel import names
from tunnel.errors import MissingAnnotationsError
from tunnel.resources import frpc_resources
from tunnel.saga import Step, run_saga

log = logging.getLogger(__name__)

MACHINE_READY_STATE = "started"
MACHINE_READY_TIMEOUT_SECONDS = 60

FRPC_CONFIG_KEY = "frpc.toml"
FRPC_CONFIG_DIR = "/etc/frp"
MANAGED_BY = "fly-tunnel-operator"
SERVICE_LABEL = f"{ann.ANNOTATION_PREFIX}/service"

# preset -> (cpu_kind, cpus, memory_mb)
MACHINE_SIZES = {
    "shared-cpu-1x": ("shared", 1, 256),
    "shared-cpu-2x": ("shared", 2, 512),
    "shared-cpu-4x": ("shared", 4, 1024),
    "performance-1x": ("performance", 1, 2048),
    "performance-2x": ("performance", 2, 4096),
}
DEFAULT_MACHINE_SIZE = "shared-cpu-1x"

FRPS_BOOT = (
    'mkdir -p /etc/frp && echo "$FRP_SERVER_CONFIG" > /etc/frp/frps.toml '
    "&& exec frps -c /etc/frp/frps.toml"
)


@dataclass
class ProvisionResult:
    fly_app: str
    machine_id: str
    public_ip: str
    ip_id: str
    frpc_deployment: str

    def to_state(self) -> ann.TunnelState:
        return ann.TunnelState(
            fly_app=self.fly_app,
            machine_id=self.machine_id,
            frpc_deployment=self.frpc_deployment,
            ip_id=self.ip_id,
            public_ip=self.public_ip,
        )


def guest_for_size(size: str) -> Dict[str, Any]:
    kind, cpus, memory = MACHINE_SIZES.get(size, MACHINE_SIZES[DEFAULT_MACHINE_SIZE])
    return {"cpu_kind": kind, "cpus": cpus, "memory_mb": memory}


def config_hash(config_text: str) -> str:
    return hashlib.sha256(config_text.encode()).hexdigest()


def _ports(service: dict) -> List[dict]:
    return ((service or {}).get("spec", {}) or {}).get("ports", []) or []


class TunnelManager:
    def __init__(self, fly, kube, config):
        self.fly = fly
        self.kube = kube
        self.config = config

    # ───────────── desired state builders ─────────────

    def build_machine_input(self, service: dict) -> Dict[str, Any]:
        region = ann.get(service, ann.FLY_REGION) or self.config.fly_region
        size = ann.get(service, ann.FLY_MACHINE_SIZE) or self.config.fly_machine_size

        services = [
            {
                "protocol": "tcp",
                "internal_port": DEFAULT_SERVER_PORT,
                "ports": [{"port": DEFAULT_SERVER_PORT}],
            }
        ]
        for port in _ports(service):
            number = int(port["port"])
            services.append({"protocol": "tcp", "internal_port": number, "ports": [{"port": number}]})

        return {
            "name": names.tunnel_name(service),
            "region": region,
            "config": {
                "image": self.config.frps_image,
                "guest": guest_for_size(size),
                "services": services,
                "env": {"FRP_SERVER_CONFIG": generate_server_config(DEFAULT_SERVER_PORT)},
                "init": {"entrypoint": ["sh"], "cmd": ["-c", FRPS_BOOT]},
            },
        }

    def build_frpc_configmap(self, service: dict, config_text: str, deployment_name: str) -> dict:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": names.frpc_configmap_name(deployment_name),
                "namespace": self.config.operator_namespace,
                "labels": {
                    "app.kubernetes.io/name": "frpc",
                    "app.kubernetes.io/managed-by": MANAGED_BY,
                    SERVICE_LABEL: names.service_label_value(service),
                },
            },
            "data": {FRPC_CONFIG_KEY: config_text},
        }

    def build_frpc_deployment(self, service: dict, config_text: str, deployment_name: str) -> dict:
        labels = {
            "app.kubernetes.io/name": "frpc",
            "app.kubernetes.io/instance": deployment_name,
            "app.kubernetes.io/managed-by": MANAGED_BY,
        }
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": deployment_name,
                "namespace": self.config.operator_namespace,
                "labels": dict(labels, **{SERVICE_LABEL: names.service_label_value(service)}),
            },
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {
                        "labels": labels,
                        # changes only when the rendered config changes
                        "annotations": {ann.CONFIG_HASH: config_hash(config_text)},
                    },
                    "spec": {
                        "containers": [
                            {
                                "name": "frpc",
                                "image": self.config.frpc_image,
                                "command": ["frpc"],
                                "args": ["-c", f"{FRPC_CONFIG_DIR}/{FRPC_CONFIG_KEY}"],
                                "resources": frpc_resources(service),
                                "volumeMounts": [
                                    {"name": "config", "mountPath": FRPC_CONFIG_DIR, "readOnly": True}
                                ],
                            }
                        ],
                        "volumes": [
                            {
                                "name": "config",
                                "configMap": {"name": names.frpc_configmap_name(deployment_name)},
                            }
                        ],
                    },
                },
            },
        }

    def deploy_frpc(self, service: dict, server_addr: str, deployment_name: str) -> None:
        """Create or fully update the frpc ConfigMap and Deployment."""
        config_text = generate_client_config(service, server_addr, DEFAULT_SERVER_PORT)
        # resolve resources before touching the cluster so a bad annotation changes nothing
        deployment = self.build_frpc_deployment(service, config_text, deployment_name)
        self.kube.apply_configmap(self.build_frpc_configmap(service, config_text, deployment_name))
        self.kube.apply_deployment(deployment)

    def delete_frpc(self, deployment_name: str) -> None:
        ns = self.config.operator_namespace
        self.kube.delete_deployment(ns, deployment_name)
        self.kube.delete_configmap(ns, names.frpc_configmap_name(deployment_name))

    # ───────────── lifecycle ─────────────

    def provision(self, service: dict, logger=None) -> ProvisionResult:
        logger = logger or log
        app = names.fly_app_name(service)
        deployment_name = names.frpc_deployment_name(service)
        fly = self.fly

        def ensure_app(ctx):
            logger.info(f"[tunnel] ensuring fly app {app} in org {self.config.fly_org}")
            fly.ensure_app(app, self.config.fly_org)

        def create_machine(ctx):
            machine_input = self.build_machine_input(service)
            logger.info(f"[tunnel] creating machine {machine_input['name']} in {app} ({machine_input['region']})")
            ctx["machine"] = fly.create_machine(app, machine_input)

        def wait_started(ctx):
            m = ctx["machine"]
            fly.wait_for_machine(app, m.id, m.instance_id, MACHINE_READY_STATE, MACHINE_READY_TIMEOUT_SECONDS)

        def allocate_ip(ctx):
            ctx["ip"] = fly.allocate_dedicated_ipv4(app)
            logger.info(f"[tunnel] allocated {ctx['ip'].address} for {app}")

        def deploy(ctx):
            self.deploy_frpc(service, ctx["ip"].address, deployment_name)

        steps = [
            Step("ensuring fly app", ensure_app, lambda ctx: fly.delete_app(app)),
            Step("creating fly machine", create_machine, lambda ctx: fly.delete_machine(app, ctx["machine"].id)),
            Step("waiting for machine to start", wait_started),
            Step("allocating dedicated IPv4", allocate_ip, lambda ctx: fly.release_ip_address(app, ctx["ip"].id)),
            Step("deploying frpc", deploy),
        ]
        ctx = run_saga(steps, logger=logger)

        return ProvisionResult(
            fly_app=app,
            machine_id=ctx["machine"].id,
            public_ip=ctx["ip"].address,
            ip_id=ctx["ip"].id,
            frpc_deployment=deployment_name,
        )

    def update(self, service: dict, logger=None) -> None:
        logger = logger or log
        state = ann.TunnelState.from_service(service)
        missing = state.missing_for_update()
        if missing:
            raise MissingAnnotationsError(missing)

        self.deploy_frpc(service, state.public_ip, state.frpc_deployment)
        logger.info(f"[tunnel] reconciled frpc deployment {state.frpc_deployment}")

        if state.machine_id:
            self.fly.update_machine(state.fly_app, state.machine_id, self.build_machine_input(service))
            logger.info(f"[tunnel] updated machine {state.machine_id}")

    def teardown(self, service: dict, logger=None) -> None:
        """Best effort: every failure is logged and the next step still runs."""
        logger = logger or log
        state = ann.TunnelState.from_service(service)
        deployment_name = state.frpc_deployment or names.frpc_deployment_name(service)
        app = state.fly_app or names.fly_app_name(service)

        logger.info(f"[tunnel] deleting frpc resources {deployment_name}")
        try:
            self.delete_frpc(deployment_name)
        except Exception as e:
            logger.error(f"[tunnel] failed to delete frpc resources {deployment_name}: {e}")

        ip_ids = [state.ip_id] if state.ip_id else self._listed(
            "ip", app, lambda: [ip.id for ip in self.fly.list_ip_addresses(app)], logger
        )
        for ip_id in ip_ids:
            logger.info(f"[tunnel] releasing ip {ip_id}")
            try:
                self.fly.release_ip_address(app, ip_id)
            except Exception as e:
                logger.error(f"[tunnel] failed to release ip {ip_id}: {e}")

        machine_ids = [state.machine_id] if state.machine_id else self._listed(
            "machine", app, lambda: [m.id for m in self.fly.list_machines(app)], logger
        )
        for machine_id in machine_ids:
            logger.info(f"[tunnel] deleting machine {machine_id}")
            try:
                self.fly.delete_machine(app, machine_id)
            except Exception as e:
                logger.error(f"[tunnel] failed to delete machine {machine_id}: {e}")

        # deleting the app also removes anything still attached to it
        logger.info(f"[tunnel] deleting fly app {app}")
        try:
            self.fly.delete_app(app)
        except Exception as e:
            logger.error(f"[tunnel] failed to delete fly app {app}: {e}")

    @staticmethod
    def _listed(kind: str, app: str, fetch, logger) -> List[str]:
        try:
            return fetch()
        except Exception as e:
            logger.warning(f"[tunnel] could not list {kind}s of {app}: {e}")
            return []
