"""Solibri REST API client.

For when Solibri is already running with --rest-api-server-port. Every call
is a single request against the configured base URL; the client keeps no
per-request state, so one instance can be shared by concurrent tool calls.
"""

import asyncio
import logging
import time

import httpx

logger = logging.getLogger("solibri.rest")

NOT_RUNNING_HINT = (
    "Solibri is not running or REST API is not enabled. "
    "Start Solibri with --rest-api-server-port flag."
)


class SolibriRestError(Exception):
    """Base class for REST API failures."""


class SolibriUnreachable(SolibriRestError):
    """Connection refused: nothing is listening on the REST port."""

    def __init__(self, message: str = NOT_RUNNING_HINT):
        super().__init__(message)


class SolibriApiError(SolibriRestError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Solibri API error: {status_code} - {body}")


class SolibriTimeout(SolibriRestError, TimeoutError):
    """Solibri stayed busy past the caller's deadline."""


class SolibriRestClient:
    def __init__(self, base_url: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def request(self, method: str, endpoint: str, *, content=None, json=None,
                      headers: dict | None = None):
        """Make one request; return decoded JSON or text."""
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     transport=self._transport) as client:
            try:
                response = await client.request(method, endpoint, content=content, json=json,
                                                headers=request_headers)
            except httpx.ConnectError as e:
                logger.debug("%s %s: %s", method, endpoint, e)
                raise SolibriUnreachable() from e

        if response.is_error:
            raise SolibriApiError(response.status_code, response.text)
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    async def ping(self):
        """Check if Solibri REST API is available."""
        return await self.request("GET", "/ping")

    async def about(self):
        """Get Solibri version and product info."""
        return await self.request("GET", "/about")

    async def status(self):
        """Get current status (busy, filename, saved state)."""
        return await self.request("GET", "/status")

    async def submit_model(self, ifc_content: bytes, filename: str):
        return await self.request("POST", "/models", content=ifc_content, headers={
            "Content-Type": "application/octet-stream",
            "X-Filename": filename,
        })

    async def partial_update(self, model_uuid: str, ifc_content: bytes):
        return await self.request("PUT", f"/models/{model_uuid}/partialUpdate", content=ifc_content,
                                  headers={"Content-Type": "application/octet-stream"})

    async def delete_components(self, model_uuid: str, ifc_guids: list[str]):
        return await self.request("POST", f"/models/{model_uuid}/deleteComponents",
                                  json={"guids": ifc_guids})

    async def get_selection_basket(self):
        return await self.request("GET", "/selectionBasket")

    async def set_selection_basket(self, guids: list[str]):
        return await self.request("POST", "/selectionBasket", json={"guids": guids})

    async def get_component_info(self, guid: str):
        """Highlight a component and return its info."""
        return await self.request("POST", f"/info/{guid}")

    async def get_bcf(self, version: str = "2.1"):
        return await self.request("GET", f"/bcfxml/{version}")

    async def is_busy(self) -> bool:
        s = await self.status()
        return isinstance(s, dict) and s.get("busy") is True

    async def wait_until_idle(self, timeout: float = 60.0, poll_interval: float = 1.0) -> bool:
        """Poll status until Solibri is idle.

        Raises SolibriTimeout once *timeout* seconds have passed. The final
        sleep is clipped to the deadline.
        """
        deadline = time.monotonic() + timeout
        while True:
            if not await self.is_busy():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))
        raise SolibriTimeout(f"Solibri did not become idle within {timeout:g}s")
