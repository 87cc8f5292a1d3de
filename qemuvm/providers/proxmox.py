"""Proxmox VE client for QEMU VM lifecycle operations.

Talks to the Proxmox VE REST API over httpx. Long-running operations
return a task id (UPID); the client waits for the task to finish before
returning so a completed call means the hypervisor accepted the change.
Only GET requests are retried; mutations are sent exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Callable

import httpx

from qemuvm.config import settings
from qemuvm.errors import AlreadyInStateError, HypervisorError
from qemuvm.metrics import hypervisor_request_duration
from qemuvm.providers.base import HypervisorClient
from qemuvm.providers.proxmox_config import (
    clone_params,
    config_params,
    create_params,
    format_size_delta,
    parse_live_config,
)
from qemuvm.schemas import DiskCollection, LiveState, NetworkCollection, VmRef, VmSpec
from qemuvm.settle import wait_for

logger = logging.getLogger(__name__)

# Transient HTTP errors that are worth retrying on reads
TRANSIENT_HTTP_CODES = {429, 502, 503, 504}

# Host ports for SSH forwarding are offset by the vmid
SSH_FORWARD_PORT_BASE = 22000

_ALREADY_IN_STATE_RE = re.compile(r"already running|not running|already stopped", re.IGNORECASE)


def _is_upid(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("UPID:")


class ProxmoxClient(HypervisorClient):
    """HypervisorClient backed by the Proxmox VE API."""

    def __init__(
        self,
        api_url: str | None = None,
        api_token: str | None = None,
        *,
        verify_tls: bool | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        task_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = (api_url or settings.api_url).rstrip("/")
        self._api_token = api_token if api_token is not None else settings.api_token
        self._verify_tls = settings.verify_tls if verify_tls is None else verify_tls
        self._timeout = timeout or settings.http_timeout
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.task_timeout = task_timeout or settings.task_timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "proxmox"

    def _auth_headers(self) -> dict[str, str]:
        if self._api_token:
            return {"Authorization": f"PVEAPIToken={self._api_token}"}
        return {}

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it on first use."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.api_url,
                headers=self._auth_headers(),
                verify=self._verify_tls,
                timeout=httpx.Timeout(self._timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        data: dict | None = None,
    ) -> Any:
        """Send one API request and return its ``data`` member."""
        client = self._get_http_client()

        async def _do_request() -> Any:
            response = await client.request(method, path, params=params, data=data)
            response.raise_for_status()
            return response.json().get("data")

        status = "success"
        t0 = time.monotonic()
        try:
            if method == "GET":
                return await self._with_retry(_do_request)
            return await self._once(_do_request)
        except Exception:
            status = "error"
            raise
        finally:
            hypervisor_request_duration.labels(method=method, status=status).observe(
                time.monotonic() - t0
            )

    async def _once(self, func: Callable[[], Any]) -> Any:
        try:
            return await func()
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise HypervisorError(f"Hypervisor unreachable: {e}", retriable=True) from e
        except httpx.HTTPStatusError as e:
            raise self._status_error(e) from e

    async def _with_retry(self, func: Callable[[], Any]) -> Any:
        """Execute a read with exponential backoff retry logic.

        Retries on connection errors, timeouts and transient HTTP codes.
        Does not retry other 4xx/5xx responses.
        """
        max_retries = self.max_retries
        for attempt in range(max_retries + 1):
            try:
                return await func()
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt >= max_retries:
                    logger.error(f"Hypervisor request failed after {max_retries + 1} attempts: {e}")
                    raise HypervisorError(
                        f"Hypervisor unreachable after {max_retries + 1} attempts: {e}",
                        retriable=True,
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    f"Hypervisor request failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code in TRANSIENT_HTTP_CODES and attempt < max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Hypervisor returned {status_code} (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise self._status_error(e) from e

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(settings.retry_backoff_base * (2 ** attempt), settings.retry_backoff_max)

    @staticmethod
    def _status_error(e: httpx.HTTPStatusError) -> HypervisorError:
        # Proxmox puts the error text in the reason phrase
        response = e.response
        detail = response.reason_phrase or ""
        body = ""
        try:
            body = response.text[:500]
        except httpx.ResponseNotRead:
            pass
        message = f"Hypervisor returned HTTP {response.status_code}: {detail}".rstrip(": ")
        if body:
            message = f"{message}\nResponse: {body}"
        error_cls = AlreadyInStateError if _ALREADY_IN_STATE_RE.search(f"{detail} {body}") else HypervisorError
        return error_cls(
            message,
            status_code=response.status_code,
            retriable=response.status_code in TRANSIENT_HTTP_CODES,
        )

    async def _wait_task(self, node: str, upid: Any, description: str) -> None:
        """Wait for a task to stop and check its exit status."""
        if not _is_upid(upid):
            return

        async def _poll() -> dict:
            return await self._request("GET", f"/nodes/{node}/tasks/{upid}/status") or {}

        task = await wait_for(
            _poll,
            lambda t: t.get("status") == "stopped",
            timeout=self.task_timeout,
            description=f"task {description}",
        )
        exit_status = task.get("exitstatus", "")
        if exit_status != "OK":
            error_cls = AlreadyInStateError if _ALREADY_IN_STATE_RE.search(exit_status) else HypervisorError
            raise error_cls(f"Task {description} failed: {exit_status}")

    @staticmethod
    def _vm_path(ref: VmRef, suffix: str = "") -> str:
        return f"/nodes/{ref.node}/qemu/{ref.vmid}{suffix}"

    # ------------------------------------------------------------------
    # HypervisorClient
    # ------------------------------------------------------------------

    async def lookup_by_name(self, name: str) -> VmRef | None:
        resources = await self._request("GET", "/cluster/resources", params={"type": "vm"}) or []
        for resource in resources:
            if resource.get("type") == "qemu" and resource.get("name") == name:
                return VmRef(node=resource["node"], vmid=int(resource["vmid"]))
        return None

    async def next_vm_id(self) -> int:
        return int(await self._request("GET", "/cluster/nextid"))

    async def create_vm(self, ref: VmRef, spec: VmSpec, iso: str = "") -> None:
        logger.debug(f"Creating VM {spec.name} as {ref}")
        upid = await self._request("POST", f"/nodes/{ref.node}/qemu", data=create_params(ref, spec, iso))
        await self._wait_task(ref.node, upid, f"create {ref}")

    async def clone_vm(self, source: VmRef, dest: VmRef, spec: VmSpec) -> None:
        logger.debug(f"Cloning {source} to {dest}")
        upid = await self._request("POST", self._vm_path(source, "/clone"), data=clone_params(dest, spec))
        await self._wait_task(source.node, upid, f"clone {source} -> {dest}")

        upid = await self._request(
            "POST", self._vm_path(dest, "/config"), data=config_params(spec, networks=spec.networks)
        )
        await self._wait_task(dest.node, upid, f"configure {dest}")

    async def update_config(
        self,
        ref: VmRef,
        spec: VmSpec,
        disks: DiskCollection,
        networks: NetworkCollection,
    ) -> None:
        upid = await self._request("POST", self._vm_path(ref, "/config"), data=config_params(spec, disks, networks))
        await self._wait_task(ref.node, upid, f"configure {ref}")

    async def resize_disk(self, ref: VmRef, device: str, delta_gb: float) -> None:
        size = format_size_delta(delta_gb)
        upid = await self._request("PUT", self._vm_path(ref, "/resize"), data={"disk": device, "size": size})
        await self._wait_task(ref.node, upid, f"resize {ref} {device} {size}")

    async def start_vm(self, ref: VmRef) -> None:
        upid = await self._request("POST", self._vm_path(ref, "/status/start"))
        await self._wait_task(ref.node, upid, f"start {ref}")

    async def stop_vm(self, ref: VmRef) -> None:
        upid = await self._request("POST", self._vm_path(ref, "/status/stop"))
        await self._wait_task(ref.node, upid, f"stop {ref}")

    async def delete_vm(self, ref: VmRef) -> None:
        upid = await self._request("DELETE", self._vm_path(ref), params={"purge": 1})
        await self._wait_task(ref.node, upid, f"delete {ref}")

    async def fetch_live_config(self, ref: VmRef) -> LiveState:
        data = await self._request("GET", self._vm_path(ref, "/config")) or {}
        return parse_live_config(ref, data)

    async def get_status(self, ref: VmRef) -> str:
        data = await self._request("GET", self._vm_path(ref, "/status/current")) or {}
        return str(data.get("status", "unknown"))

    async def ssh_forward(self, ref: VmRef) -> int:
        """Add a user-mode NIC with a host port forward to guest port 22."""
        port = SSH_FORWARD_PORT_BASE + ref.vmid
        for command in (
            f"netdev_add user,id=sshfwd,hostfwd=tcp::{port}-:22",
            "device_add virtio-net-pci,id=sshfwd,netdev=sshfwd,addr=0x13",
        ):
            await self._request("POST", self._vm_path(ref, "/monitor"), data={"command": command})
        return port
