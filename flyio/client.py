# flyio/client.py
"""Synchronous client for the Fly.io Machines REST API and platform GraphQL API.

Apps and Machines go through the REST API; IP allocation only exists on the
GraphQL API. Every call blocks the calling worker.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.machines.dev"
DEFAULT_GRAPHQL_URL = "https://api.fly.io/graphql"
API_VERSION = "v1"
DEFAULT_TIMEOUT_SECONDS = 60.0


class FlyAPIError(Exception):
    def __init__(self, status_code: int, message: str = "", *, operation: str = ""):
        self.status_code = status_code
        self.message = message
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}status {status_code}, body: {message}")


class FlyNotFoundError(FlyAPIError):
    pass


class FlyGraphQLError(FlyAPIError):
    def __init__(self, message: str, *, operation: str = ""):
        super().__init__(200, message, operation=operation)

    def __str__(self) -> str:
        prefix = f"{self.operation}: " if self.operation else ""
        return f"{prefix}graphql error: {self.message}"


@dataclass
class Machine:
    id: str
    name: str = ""
    state: str = ""
    region: str = ""
    instance_id: str = ""
    private_ip: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> "Machine":
        return cls(
            id=d.get("id", ""),
            name=d.get("name", "") or "",
            state=d.get("state", "") or "",
            region=d.get("region", "") or "",
            instance_id=d.get("instance_id", "") or "",
            private_ip=d.get("private_ip", "") or "",
            config=d.get("config") or {},
        )


@dataclass
class IPAddress:
    id: str
    address: str
    type: str = ""
    region: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "IPAddress":
        return cls(
            id=d.get("id", ""),
            address=d.get("address", ""),
            type=d.get("type", "") or "",
            region=d.get("region", "") or "",
            created_at=d.get("createdAt", "") or "",
        )


_ALLOCATE_IP = """
mutation($input: AllocateIPAddressInput!) {
  allocateIpAddress(input: $input) {
    ipAddress { id address type region createdAt }
  }
}
"""

_RELEASE_IP = """
mutation($input: ReleaseIPAddressInput!) {
  releaseIpAddress(input: $input) {
    app { name }
  }
}
"""

_LIST_IPS = """
query($appName: String!) {
  app(name: $appName) {
    ipAddresses { nodes { id address type region createdAt } }
  }
}
"""


class FlyClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
    ):
        if not token:
            raise ValueError("fly api token is required")
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.graphql_url = graphql_url
        self._timeout = timeout
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    # ───────────── transport ─────────────

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{API_VERSION}{path}"

    def _rest(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        ok: tuple = (200, 201),
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        try:
            resp = self._http.request(
                method,
                self._url(path),
                headers=self._headers(),
                json=json,
                params=params,
                timeout=timeout or self._timeout,
            )
        except httpx.HTTPError as e:
            raise FlyAPIError(0, str(e), operation=operation) from e

        if resp.status_code == 404:
            raise FlyNotFoundError(404, resp.text, operation=operation)
        if resp.status_code not in ok:
            raise FlyAPIError(resp.status_code, resp.text, operation=operation)
        return resp

    def _graphql(self, query: str, variables: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            resp = self._http.post(
                self.graphql_url,
                headers=self._headers(),
                json={"query": query, "variables": variables},
            )
        except httpx.HTTPError as e:
            raise FlyAPIError(0, str(e), operation=operation) from e

        try:
            payload = resp.json()
        except ValueError:
            raise FlyAPIError(resp.status_code, resp.text, operation=operation) from None

        errors = payload.get("errors") or []
        if errors:
            raise FlyGraphQLError(errors[0].get("message", ""), operation=operation)
        if resp.status_code >= 400:
            raise FlyAPIError(resp.status_code, resp.text, operation=operation)
        return payload.get("data") or {}

    # ───────────── apps ─────────────

    def get_app(self, app_name: str) -> Dict[str, Any]:
        return self._rest("GET", f"/apps/{app_name}", "getting app").json()

    def create_app(self, app_name: str, org_slug: str) -> None:
        self._rest(
            "POST",
            "/apps",
            "creating app",
            json={"app_name": app_name, "org_slug": org_slug},
        )

    def ensure_app(self, app_name: str, org_slug: str) -> bool:
        """Create the app unless it already exists. Returns True if created."""
        try:
            self.get_app(app_name)
            return False
        except FlyNotFoundError:
            pass
        self.create_app(app_name, org_slug)
        return True

    def delete_app(self, app_name: str) -> None:
        # force=true stops running machines and deletes immediately
        try:
            self._rest(
                "DELETE",
                f"/apps/{app_name}",
                "deleting app",
                params={"force": "true"},
                ok=(200, 202, 204),
            )
        except FlyNotFoundError:
            log.info(f"[fly] app {app_name} already gone")

    # ───────────── machines ─────────────

    def create_machine(self, app_name: str, machine_input: Dict[str, Any]) -> Machine:
        resp = self._rest("POST", f"/apps/{app_name}/machines", "creating machine", json=machine_input)
        return Machine.from_dict(resp.json())

    def get_machine(self, app_name: str, machine_id: str) -> Machine:
        resp = self._rest("GET", f"/apps/{app_name}/machines/{machine_id}", "getting machine")
        return Machine.from_dict(resp.json())

    def list_machines(self, app_name: str) -> List[Machine]:
        resp = self._rest("GET", f"/apps/{app_name}/machines", "listing machines")
        return [Machine.from_dict(m) for m in resp.json() or []]

    def update_machine(self, app_name: str, machine_id: str, machine_input: Dict[str, Any]) -> Machine:
        resp = self._rest(
            "POST",
            f"/apps/{app_name}/machines/{machine_id}",
            "updating machine",
            json=machine_input,
            ok=(200,),
        )
        return Machine.from_dict(resp.json())

    def delete_machine(self, app_name: str, machine_id: str) -> None:
        try:
            self._rest(
                "DELETE",
                f"/apps/{app_name}/machines/{machine_id}",
                "deleting machine",
                params={"force": "true"},
                ok=(200, 204),
            )
        except FlyNotFoundError:
            log.info(f"[fly] machine {machine_id} already gone")

    def wait_for_machine(
        self,
        app_name: str,
        machine_id: str,
        instance_id: str,
        state: str = "started",
        timeout: float = 60.0,
    ) -> None:
        params = {"state": state, "timeout": int(timeout)}
        if instance_id:
            params["instance_id"] = instance_id
        # the server holds the request open for up to `timeout` seconds
        self._rest(
            "GET",
            f"/apps/{app_name}/machines/{machine_id}/wait",
            "waiting for machine",
            params=params,
            ok=(200,),
            timeout=timeout + 10,
        )

    # ───────────── ip addresses ─────────────

    def allocate_dedicated_ipv4(self, app_name: str) -> IPAddress:
        data = self._graphql(
            _ALLOCATE_IP,
            {"input": {"appId": app_name, "type": "v4"}},
            "allocating IP",
        )
        ip = ((data.get("allocateIpAddress") or {}).get("ipAddress")) or {}
        if not ip.get("id") or not ip.get("address"):
            raise FlyAPIError(200, f"empty allocation response: {data}", operation="allocating IP")
        return IPAddress.from_dict(ip)

    def release_ip_address(self, app_name: str, ip_id: str) -> None:
        if not ip_id:
            return
        try:
            self._graphql(
                _RELEASE_IP,
                {"input": {"appId": app_name, "ipAddressId": ip_id}},
                "releasing IP",
            )
        except FlyGraphQLError as e:
            if "not found" in e.message.lower():
                log.info(f"[fly] ip {ip_id} already released")
                return
            raise

    def list_ip_addresses(self, app_name: str) -> List[IPAddress]:
        data = self._graphql(_LIST_IPS, {"appName": app_name}, "listing IPs")
        nodes = (((data.get("app") or {}).get("ipAddresses") or {}).get("nodes")) or []
        return [IPAddress.from_dict(n) for n in nodes]
