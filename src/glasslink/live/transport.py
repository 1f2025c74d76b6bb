"""Transport backends for the realtime voice connection."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus

from glasslink.common.logging import get_logger
from glasslink.config import GeminiConfig
from glasslink.errors import TransportError

Frame = str | bytes


class Transport:
    """Abstract bidirectional message transport.

    ``frames()`` ends normally when the remote side closes cleanly and
    raises :class:`TransportError` when the connection fails.
    """

    async def open(self) -> None:
        """Open the connection."""
        raise NotImplementedError

    async def send(self, message: str) -> None:
        """Send one text frame."""
        raise NotImplementedError

    def frames(self) -> AsyncIterator[Frame]:
        """Iterate inbound frames."""
        raise NotImplementedError

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        raise NotImplementedError


class WebSocketTransport(Transport):
    """WebSocket transport to the realtime voice endpoint."""

    def __init__(self, config: GeminiConfig) -> None:
        self.config = config
        self._ws: ClientConnection | None = None
        self.logger = get_logger("websocket_transport")

    @property
    def url(self) -> str:
        if not self.config.api_key:
            return self.config.endpoint
        return f"{self.config.endpoint}?{urlencode({'key': self.config.api_key})}"

    async def open(self) -> None:
        if not self.config.api_key:
            raise TransportError("No API key configured for the voice service")

        self.logger.info("websocket_connecting", endpoint=self.config.endpoint)
        try:
            self._ws = await asyncio.wait_for(
                connect(self.url, max_size=16 * 1024 * 1024, ping_interval=30, ping_timeout=60),
                timeout=self.config.connect_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Timed out connecting after {self.config.connect_timeout_seconds}s"
            ) from e
        except InvalidStatus as e:
            raise TransportError(
                f"Voice service rejected connection (HTTP {e.response.status_code})"
            ) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Could not connect to voice service: {e}") from e

        self.logger.info("websocket_connected")

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            await self._ws.send(message)
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Connection closed while sending: {e}") from e

    async def frames(self) -> AsyncIterator[Frame]:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosedOK:
            return
        except ConnectionClosedError as e:
            raise TransportError(f"Connection lost: {e}") from e

    async def close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
            self.logger.info("websocket_closed")


_CLOSE = object()


class MockTransport(Transport):
    """In-memory loopback transport for mock mode and tests.

    Frames pushed with :meth:`push` are delivered to the reader in order.
    Outbound messages are recorded, decoded, in :attr:`sent`.
    ``await drain()`` returns once the reader has fully handled every
    pushed frame.
    """

    def __init__(self, auto_setup_complete: bool = False, fail_open: Exception | None = None) -> None:
        self.auto_setup_complete = auto_setup_complete
        self.fail_open = fail_open
        self.sent: list[dict[str, Any]] = []
        self.opened = False
        self.closed = False
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    async def open(self) -> None:
        if self.fail_open is not None:
            raise TransportError(str(self.fail_open)) from self.fail_open
        self.opened = True

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("Transport is closed")
        data = json.loads(message)
        self.sent.append(data)
        if self.auto_setup_complete and "setup" in data:
            self.push({"setupComplete": {}})

    async def frames(self) -> AsyncIterator[Frame]:
        while True:
            item = await self._inbound.get()
            try:
                if item is _CLOSE:
                    return
                if isinstance(item, BaseException):
                    raise TransportError(str(item)) from item
                yield item
            finally:
                self._inbound.task_done()

    async def close(self) -> None:
        self.closed = True

    def push(self, message: dict[str, Any] | str | bytes) -> None:
        """Queue an inbound frame; dicts are sent as JSON text."""
        self._inbound.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def push_binary(self, message: dict[str, Any]) -> None:
        """Queue an inbound JSON message as a binary frame."""
        self._inbound.put_nowait(json.dumps(message).encode("utf-8"))

    def fail(self, error: Exception) -> None:
        """Make the reader see a connection failure."""
        self._inbound.put_nowait(error)

    def remote_close(self) -> None:
        """Simulate a clean close from the server."""
        self._inbound.put_nowait(_CLOSE)

    async def drain(self) -> None:
        """Wait until every pushed frame has been handled by the reader."""
        await self._inbound.join()

    def sent_of(self, key: str) -> list[dict[str, Any]]:
        """Outbound messages whose top-level key is ``key``."""
        return [m for m in self.sent if key in m]
