"""
Health probes, one per category.

A probe returns True (pass) or False (checked and failed). Raising means the
category could not be checked; the verifier records that as ``error``.
"""

import asyncio
import logging
from typing import Any, Dict, Protocol, runtime_checkable

import httpx
import websockets
from websockets.exceptions import InvalidHandshake

logger = logging.getLogger(__name__)

LIVENESS = "liveness"
API = "api"
CHANNEL = "channel"


@runtime_checkable
class HealthProbe(Protocol):
    """A single read-only health check."""

    category: str

    async def check(self) -> bool:
        """
        Run the check.

        Returns:
            True when the category passes, False when it was checked and failed

        Raises:
            Exception: when the category could not be checked
        """
        ...


class HttpLivenessProbe:
    """Endpoint reachability: any 2xx response passes."""

    category = LIVENESS

    def __init__(self, url: str, timeout: float = 5.0, category: str = LIVENESS):
        self.url = url
        self.timeout = timeout
        self.category = category

    async def check(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            response = await client.get(self.url)
        if response.is_success:
            return True
        logger.debug(f"{self.category} probe {self.url} returned {response.status_code}")
        return False


class ApiProbe:
    """
    Dependent API-layer probe.

    With an RPC method configured, POSTs a JSON-RPC request and passes when
    the response carries a non-null result (a block height for
    ``eth_blockNumber``). Otherwise behaves like a liveness GET.
    """

    category = API

    def __init__(self, url: str, rpc_method: str | None = None, timeout: float = 5.0):
        self.url = url
        self.rpc_method = rpc_method
        self.timeout = timeout

    async def check(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            if not self.rpc_method:
                response = await client.get(self.url)
                return bool(response.is_success)

            payload: Dict[str, Any] = {
                "jsonrpc": "2.0",
                "method": self.rpc_method,
                "params": [],
                "id": 1,
            }
            response = await client.post(self.url, json=payload)

        if not response.is_success:
            logger.debug(f"API probe {self.url} returned {response.status_code}")
            return False

        try:
            body = response.json()
        except ValueError:
            logger.debug(f"API probe {self.url} returned a non-JSON body")
            return False

        result = body.get("result") if isinstance(body, dict) else None
        if result in (None, "", "null"):
            logger.debug(f"API probe {self.url} returned no result: {body}")
            return False
        return True


class ChannelProbe:
    """Bidirectional channel probe: websocket handshake plus a ping round trip."""

    category = CHANNEL

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def check(self) -> bool:
        try:
            async with websockets.connect(self.url, open_timeout=self.timeout) as ws:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.timeout)
        except InvalidHandshake as e:
            # Server answered but refused the upgrade
            logger.debug(f"Channel probe {self.url} rejected: {e}")
            return False
        return True
