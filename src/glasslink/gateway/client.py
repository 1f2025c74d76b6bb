"""Gateway client: executes tool tasks through a chat-completions endpoint."""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterator

import httpx

from glasslink.common.logging import get_logger
from glasslink.config import GatewayConfig
from glasslink.errors import (
    GatewayAuthError,
    GatewayError,
    GatewayHTTPError,
    GatewayTimeout,
    GatewayUnreachable,
)

SESSION_KEY_HEADER = "x-openclaw-session-key"


@dataclass(frozen=True)
class Turn:
    """One conversation entry."""

    role: str  # "user" or "assistant"
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationHistory:
    """Bounded, ordered conversation history. Oldest turns are evicted first."""

    def __init__(self, max_entries: int = 20) -> None:
        self.max_entries = max_entries
        self._turns: deque[Turn] = deque(maxlen=max_entries)

    def append(self, role: str, content: str) -> None:
        self._turns.append(Turn(role, content))

    def clear(self) -> None:
        self._turns.clear()

    def as_messages(self) -> list[dict[str, str]]:
        return [t.to_message() for t in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))


class GatewayStatus(Enum):
    """Result of a gateway connectivity probe."""

    NOT_CONFIGURED = "not_configured"
    CONNECTED = "connected"
    UNAUTHORIZED = "unauthorized"
    UNREACHABLE = "unreachable"


def new_session_key(prefix: str, now: datetime | None = None) -> str:
    """Session continuity key, ``<prefix>:<ISO8601 UTC timestamp>`` in milliseconds."""
    now = now or datetime.now(timezone.utc)
    return f"{prefix}:{now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}"


class GatewayClient:
    """Executes natural-language tasks on the agent gateway.

    Each call sends the whole bounded history plus the new task, so the
    gateway sees the session's prior tool activity. History is guarded by
    a single lock: concurrent tool calls are answered one at a time and
    their turns never interleave.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(transport=transport)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._history = ConversationHistory(config.max_history)
        self._lock = asyncio.Lock()
        self._key_time = self._clock()
        self._session_key = new_session_key(config.session_key_prefix, self._key_time)
        self._total_requests = 0
        self._last_latency_ms = 0
        self._last_error: str | None = None
        self.logger = get_logger("gateway_client")

    @property
    def session_key(self) -> str:
        return self._session_key

    @property
    def history(self) -> ConversationHistory:
        return self._history

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            SESSION_KEY_HEADER: self._session_key,
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def reset_session(self) -> None:
        """Start a new conversation: empty history, fresh session key."""
        self._history.clear()
        # Keys must differ even for resets within the same millisecond
        floor = self._key_time.replace(microsecond=self._key_time.microsecond // 1000 * 1000)
        self._key_time = max(self._clock(), floor + timedelta(milliseconds=1))
        self._session_key = new_session_key(self.config.session_key_prefix, self._key_time)
        self.logger.info("gateway_session_reset", session_key=self._session_key)

    async def execute(self, task: str) -> str:
        """Run a task on the gateway and return the assistant's reply.

        Args:
            task: Natural-language task.

        Returns:
            Reply text.

        Raises:
            GatewayUnreachable: Connection failed.
            GatewayTimeout: No answer within ``timeout_seconds``.
            GatewayAuthError: HTTP 401 or 403.
            GatewayHTTPError: Any other non-2xx status or a malformed body.
        """
        async with self._lock:
            messages = self._history.as_messages() + [{"role": "user", "content": task}]
            payload: dict[str, Any] = {
                "model": self.config.model,
                "messages": messages,
                "stream": False,
            }

            start_time = time.time()
            self._total_requests += 1
            self.logger.info("gateway_execute", task=task, history=len(self._history))

            try:
                reply = await self._post(payload)
            except GatewayError as e:
                self._last_error = str(e)
                self.logger.warning("gateway_execute_failed", error=str(e), kind=type(e).__name__)
                raise

            self._last_latency_ms = int((time.time() - start_time) * 1000)
            self._last_error = None
            self._history.append("user", task)
            self._history.append("assistant", reply)
            self.logger.info(
                "gateway_execute_done",
                latency_ms=self._last_latency_ms,
                history=len(self._history),
            )
            return reply

    async def _post(self, payload: dict[str, Any]) -> str:
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    self.config.completions_url,
                    headers=self._headers(),
                    json=payload,
                    timeout=self.config.timeout_seconds,
                ),
                timeout=self.config.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise GatewayTimeout(
                f"Gateway did not answer within {self.config.timeout_seconds}s"
            ) from e
        except httpx.RequestError as e:
            raise GatewayUnreachable(f"Gateway unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise GatewayAuthError(response.status_code)
        if not response.is_success:
            raise GatewayHTTPError(response.status_code)

        return _extract_reply(response)

    async def check_connection(self) -> GatewayStatus:
        """Probe the gateway endpoint.

        Any HTTP answer other than 401/403 means the gateway is up; the
        endpoint only accepts POST, so 405 is the usual reply.
        """
        if not self.config.host:
            return GatewayStatus.NOT_CONFIGURED

        try:
            response = await self._client.get(
                self.config.completions_url,
                headers=self._headers(),
                timeout=min(self.config.timeout_seconds, 5.0),
            )
        except httpx.HTTPError as e:
            self.logger.warning("gateway_unreachable", error=str(e))
            return GatewayStatus.UNREACHABLE

        if response.status_code in (401, 403):
            return GatewayStatus.UNAUTHORIZED
        return GatewayStatus.CONNECTED

    def get_status(self) -> dict:
        return {
            "endpoint": self.config.completions_url,
            "session_key": self._session_key,
            "history": len(self._history),
            "total_requests": self._total_requests,
            "latency_ms": self._last_latency_ms,
            "error": self._last_error,
        }

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()


def _extract_reply(response: httpx.Response) -> str:
    try:
        result = response.json()
        content = result["choices"][0]["message"]["content"]
    except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
        raise GatewayHTTPError(response.status_code, f"Malformed gateway response: {e}") from e

    if isinstance(content, list):
        # Content-part arrays: keep the text parts
        content = "".join(p.get("text", "") for p in content if isinstance(p, dict))
    if not isinstance(content, str):
        raise GatewayHTTPError(response.status_code, "Gateway reply has no text content")
    return content


def mock_gateway_transport(reply: Callable[[str], str] | None = None) -> httpx.MockTransport:
    """An httpx transport that answers like the gateway, for mock mode.

    Args:
        reply: Maps the latest user message to the assistant reply.
            Defaults to a short acknowledgement.
    """
    reply = reply or (lambda task: f"Done: {task}")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method != "POST":
            return httpx.Response(405)
        body = json.loads(request.content)
        user_turns = [m["content"] for m in body.get("messages", []) if m.get("role") == "user"]
        text = reply(user_turns[-1] if user_turns else "")
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-mock",
                "object": "chat.completion",
                "model": body.get("model", "openclaw"),
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": text},
                        "finish_reason": "stop",
                    }
                ],
            },
        )

    return httpx.MockTransport(handler)
