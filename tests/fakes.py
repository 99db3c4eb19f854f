"""In-memory stand-ins for the Fly.io API and the Kubernetes API used by tests."""
from __future__ import annotations

import copy
from typing import Dict, Optional, Tuple

from kubernetes.client.exceptions import ApiException

from flyio.client import FlyAPIError, FlyGraphQLError, FlyNotFoundError, IPAddress, Machine

LB_CLASS = "fly-tunnel-operator.dev/lb"


def make_service(
    name: str = "nginx",
    namespace: str = "default",
    ports=(("http", 80, "TCP"),),
    lb_class: Optional[str] = LB_CLASS,
    svc_type: str = "LoadBalancer",
    annotations: Optional[dict] = None,
) -> dict:
    spec = {
        "type": svc_type,
        "ports": [{"name": n, "port": p, "protocol": proto} for (n, p, proto) in ports],
    }
    if lb_class is not None:
        spec["loadBalancerClass"] = lb_class
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace, "annotations": dict(annotations or {})},
        "spec": spec,
        "status": {"loadBalancer": {}},
    }


class FakeFly:
    """Mirrors the FlyClient surface. `fail[op] = exc` makes that operation raise."""

    def __init__(self):
        self.apps: set = set()
        self.machines: Dict[str, Tuple[str, Machine, dict]] = {}
        self.ips: Dict[str, Tuple[str, IPAddress]] = {}
        self.fail: Dict[str, Exception] = {}
        self.calls: list = []
        self._next_machine = 1
        self._next_ip = 1

    def _call(self, op: str, *args):
        self.calls.append((op,) + args)
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    def machines_of(self, app: str) -> list:
        return [m for (a, m, _) in self.machines.values() if a == app]

    def ips_of(self, app: str) -> list:
        return [ip for (a, ip) in self.ips.values() if a == app]

    # apps
    def get_app(self, app):
        self._call("get_app", app)
        if app not in self.apps:
            raise FlyNotFoundError(404, "app not found", operation="getting app")
        return {"name": app}

    def create_app(self, app, org):
        self._call("create_app", app, org)
        if app in self.apps:
            raise FlyAPIError(422, "already exists", operation="creating app")
        self.apps.add(app)

    def ensure_app(self, app, org):
        self._call("ensure_app", app, org)
        if app in self.apps:
            return False
        self.apps.add(app)
        return True

    def delete_app(self, app):
        self._call("delete_app", app)
        self.apps.discard(app)
        for mid in [k for k, (a, _, _) in self.machines.items() if a == app]:
            del self.machines[mid]
        for iid in [k for k, (a, _) in self.ips.items() if a == app]:
            del self.ips[iid]

    # machines
    def create_machine(self, app, machine_input):
        self._call("create_machine", app, machine_input)
        if app not in self.apps:
            raise FlyNotFoundError(404, "app not found", operation="creating machine")
        mid = f"machine-{self._next_machine}"
        self._next_machine += 1
        m = Machine(
            id=mid,
            name=machine_input["name"],
            state="created",
            region=machine_input["region"],
            instance_id=f"inst-{mid}",
            config=copy.deepcopy(machine_input["config"]),
        )
        self.machines[mid] = (app, m, copy.deepcopy(machine_input))
        return m

    def get_machine(self, app, machine_id):
        self._call("get_machine", app, machine_id)
        if machine_id not in self.machines:
            raise FlyNotFoundError(404, "machine not found", operation="getting machine")
        return self.machines[machine_id][1]

    def list_machines(self, app):
        self._call("list_machines", app)
        if app not in self.apps:
            raise FlyNotFoundError(404, "app not found", operation="listing machines")
        return self.machines_of(app)

    def update_machine(self, app, machine_id, machine_input):
        self._call("update_machine", app, machine_id, machine_input)
        if machine_id not in self.machines:
            raise FlyNotFoundError(404, "machine not found", operation="updating machine")
        _, m, _ = self.machines[machine_id]
        m.region = machine_input["region"]
        m.config = copy.deepcopy(machine_input["config"])
        self.machines[machine_id] = (app, m, copy.deepcopy(machine_input))
        return m

    def delete_machine(self, app, machine_id):
        self._call("delete_machine", app, machine_id)
        self.machines.pop(machine_id, None)

    def wait_for_machine(self, app, machine_id, instance_id, state="started", timeout=60):
        self._call("wait_for_machine", app, machine_id, instance_id, state, timeout)
        self.machines[machine_id][1].state = state

    # ips
    def allocate_dedicated_ipv4(self, app):
        self._call("allocate_dedicated_ipv4", app)
        iid = f"ip-{self._next_ip}"
        ip = IPAddress(id=iid, address=f"137.66.0.{self._next_ip}", type="v4")
        self._next_ip += 1
        self.ips[iid] = (app, ip)
        return ip

    def release_ip_address(self, app, ip_id):
        self._call("release_ip_address", app, ip_id)
        self.ips.pop(ip_id, None)

    def list_ip_addresses(self, app):
        self._call("list_ip_addresses", app)
        if app not in self.apps:
            raise FlyGraphQLError("Could not find App", operation="listing IPs")
        return self.ips_of(app)


def _merge(target: dict, patch: dict) -> dict:
    # RFC 7386 merge patch
    for k, v in patch.items():
        if v is None:
            target.pop(k, None)
        elif isinstance(v, dict) and isinstance(target.get(k), dict):
            _merge(target[k], v)
        else:
            target[k] = copy.deepcopy(v)
    return target


class FakeKube:
    """Mirrors KubeClient over dicts, with resourceVersion checks and finalizer semantics."""

    def __init__(self):
        self.services: Dict[Tuple[str, str], dict] = {}
        self.configmaps: Dict[Tuple[str, str], dict] = {}
        self.deployments: Dict[Tuple[str, str], dict] = {}
        self.fail: Dict[str, Exception] = {}
        self.calls: list = []
        self._rv = 0

    def _call(self, op: str, *args):
        self.calls.append((op,) + args)
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    def _bump(self, obj: dict) -> None:
        self._rv += 1
        obj["metadata"]["resourceVersion"] = str(self._rv)

    # test helpers
    def add_service(self, svc: dict) -> dict:
        svc = copy.deepcopy(svc)
        self._bump(svc)
        self.services[(svc["metadata"]["namespace"], svc["metadata"]["name"])] = svc
        return copy.deepcopy(svc)

    def delete_service(self, namespace: str, name: str) -> None:
        svc = self.services[(namespace, name)]
        if svc["metadata"].get("finalizers"):
            svc["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
            self._bump(svc)
        else:
            del self.services[(namespace, name)]

    # KubeClient surface
    def get_service(self, namespace, name):
        self._call("get_service", namespace, name)
        svc = self.services.get((namespace, name))
        return copy.deepcopy(svc) if svc is not None else None

    def list_services(self):
        self._call("list_services")
        return [copy.deepcopy(s) for s in self.services.values()]

    def patch_service(self, namespace, name, body):
        self._call("patch_service", namespace, name, copy.deepcopy(body))
        svc = self.services.get((namespace, name))
        if svc is None:
            raise ApiException(status=404, reason="Not Found")
        rv = (body.get("metadata") or {}).get("resourceVersion")
        if rv is not None and rv != svc["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        patch = copy.deepcopy(body)
        patch.pop("status", None)
        patch.get("metadata", {}).pop("resourceVersion", None)
        _merge(svc, patch)
        self._bump(svc)
        if svc["metadata"].get("deletionTimestamp") and not svc["metadata"].get("finalizers"):
            del self.services[(namespace, name)]
        return copy.deepcopy(svc)

    def patch_service_status(self, namespace, name, body):
        self._call("patch_service_status", namespace, name, copy.deepcopy(body))
        svc = self.services.get((namespace, name))
        if svc is None:
            raise ApiException(status=404, reason="Not Found")
        _merge(svc.setdefault("status", {}), body.get("status", {}))
        self._bump(svc)
        return copy.deepcopy(svc)

    def apply_configmap(self, body):
        self._call("apply_configmap", copy.deepcopy(body))
        m = body["metadata"]
        self.configmaps[(m["namespace"], m["name"])] = copy.deepcopy(body)

    def apply_deployment(self, body):
        self._call("apply_deployment", copy.deepcopy(body))
        m = body["metadata"]
        self.deployments[(m["namespace"], m["name"])] = copy.deepcopy(body)

    def delete_deployment(self, namespace, name):
        self._call("delete_deployment", namespace, name)
        return self.deployments.pop((namespace, name), None) is not None

    def delete_configmap(self, namespace, name):
        self._call("delete_configmap", namespace, name)
        return self.configmaps.pop((namespace, name), None) is not None
