"""Realtime voice session state machine."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from glasslink.common.events import EventBus, StateStream
from glasslink.common.logging import bind_session, get_logger, unbind_session
from glasslink.config import Config
from glasslink.errors import AlreadyConnected, DecodeError, NotReady, TransportError
from glasslink.gateway.client import GatewayClient
from glasslink.live.collaborators import AudioSink, TranscriptSink
from glasslink.live.media import MediaMultiplexer, Samples, VideoFrame
from glasslink.live.playback import AudioDemultiplexer
from glasslink.live.protocol import (
    GoAway,
    InboundMessage,
    ModelAudioChunk,
    ModelTranscript,
    SetupComplete,
    ToolCallCancellation,
    ToolCallRequest,
    ToolResponse,
    TurnComplete,
    Unknown,
    build_setup_message,
    decode_frame,
    encode_tool_response,
)
from glasslink.live.router import ToolCallRouter
from glasslink.live.transport import MockTransport, Transport, WebSocketTransport


class SessionState(Enum):
    """Connection lifecycle state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SETTING_UP = "settingUp"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session, published on every change."""

    state: SessionState = SessionState.DISCONNECTED
    session_id: str | None = None
    started_at: float | None = None
    active_tool_call_ids: frozenset[str] = field(default_factory=frozenset)
    model_speaking: bool = False
    error: str | None = None


@dataclass
class _Attempt:
    """Per-connect bookkeeping. Never reused across connects."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    transport: Transport | None = None
    reader: asyncio.Task | None = None
    writer: asyncio.Task | None = None
    outbound: asyncio.Queue = field(default_factory=asyncio.Queue)
    closing: bool = False
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    closed_by: asyncio.Task | None = None


_STOP = object()

TransportFactory = Callable[[], Transport]


class GeminiSession:
    """Owns one realtime voice connection at a time.

    Lifecycle: ``disconnected -> connecting -> settingUp -> ready``, with
    ``error`` on transport failure. ``connect()`` starts a fresh attempt
    from ``disconnected`` or ``error``.

    Inbound frames are handled strictly one after another by a single
    reader task. Outbound messages from any producer go through one
    queue drained by a single writer task, so at most one write is in
    flight.

    Example:
        session = GeminiSession(config, gateway)
        await session.connect()
        await session.wait_until_ready()
        await session.submit_audio_chunk(pcm)
        ...
        await session.disconnect()
    """

    def __init__(
        self,
        config: Config,
        gateway: GatewayClient,
        transport_factory: TransportFactory | None = None,
        audio_sink: AudioSink | None = None,
        transcript_sink: TranscriptSink | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.events = event_bus or EventBus()
        self.audio_sink = audio_sink
        self.transcript_sink = transcript_sink
        self._transport_factory = transport_factory or self._default_transport
        self.logger = get_logger("gemini_session")

        self._state = SessionState.DISCONNECTED
        self._error: str | None = None
        self._attempt: _Attempt | None = None
        self._ready = asyncio.Event()
        self._ended = asyncio.Event()
        self._ended.set()
        self.updates: StateStream[SessionSnapshot] = StateStream(SessionSnapshot())

        self.router = self._new_router()
        self.media = MediaMultiplexer(config.media, self._send)
        self.playback = self._new_playback()

    def _default_transport(self) -> Transport:
        if self.config.mock_mode:
            return MockTransport(auto_setup_complete=True)
        return WebSocketTransport(self.config.gemini)

    def _new_router(self) -> ToolCallRouter:
        return ToolCallRouter(self.gateway, self.send_tool_response, self.events)

    def _new_playback(self) -> AudioDemultiplexer:
        playback = AudioDemultiplexer(self.config.media, self.config.speaking, self.audio_sink)
        playback.add_listener(lambda _speaking: self._publish())
        return playback

    # State

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def transport(self) -> Transport | None:
        return self._attempt.transport if self._attempt else None

    @property
    def model_speaking(self) -> bool:
        return self.playback.model_speaking

    @property
    def snapshot(self) -> SessionSnapshot:
        attempt = self._attempt
        return SessionSnapshot(
            state=self._state,
            session_id=attempt.session_id if attempt else None,
            started_at=attempt.started_at if attempt else None,
            active_tool_call_ids=self.router.active_ids,
            model_speaking=self.playback.model_speaking,
            error=self._error,
        )

    def _publish(self) -> None:
        self.updates.publish(self.snapshot)

    def _transition(self, state: SessionState, error: str | None = None) -> None:
        previous = self._state
        self._state = state
        if error is not None:
            self._error = error
        self.logger.info("session_state", previous=previous.value, state=state.value, error=error)

        if state is SessionState.READY:
            self._ready.set()
        else:
            self._ready.clear()
        if state in (SessionState.DISCONNECTED, SessionState.ERROR):
            self._ended.set()
        else:
            self._ended.clear()
        self._publish()

    # Lifecycle

    async def connect(self) -> None:
        """Start a new session attempt.

        Raises:
            AlreadyConnected: An attempt is in progress or ready.
            TransportError: The connection could not be opened.
        """
        if self._state not in (SessionState.DISCONNECTED, SessionState.ERROR):
            raise AlreadyConnected(f"Session is {self._state.value}")

        attempt = _Attempt()
        self._attempt = attempt
        self._error = None
        bind_session(attempt.session_id)

        self.gateway.reset_session()
        self.router = self._new_router()
        self.media = MediaMultiplexer(self.config.media, self._send)
        self.playback.reset()

        self._transition(SessionState.CONNECTING)
        transport = self._transport_factory()
        attempt.transport = transport
        try:
            await transport.open()
        except TransportError as e:
            await self._teardown(attempt, SessionState.ERROR, str(e))
            raise

        if attempt.closing:
            # disconnect() ran while the transport was opening
            await transport.close()
            raise TransportError("Session was disconnected while connecting")

        attempt.writer = asyncio.create_task(self._write_loop(attempt), name="session-writer")
        attempt.outbound.put_nowait(build_setup_message(self.config.gemini))
        self._transition(SessionState.SETTING_UP)
        attempt.reader = asyncio.create_task(self._read_loop(attempt), name="session-reader")

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for the setup handshake to finish.

        Raises:
            TransportError: The attempt ended before becoming ready.
            asyncio.TimeoutError: ``timeout`` elapsed.
        """
        ready = asyncio.ensure_future(self._ready.wait())
        ended = asyncio.ensure_future(self._ended.wait())
        try:
            done, _ = await asyncio.wait({ready, ended}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            ended.cancel()
        if self._state is SessionState.READY:
            return
        if not done:
            raise asyncio.TimeoutError(f"Session not ready after {timeout}s")
        raise TransportError(self._error or f"Session ended while {self._state.value}")

    async def disconnect(self) -> None:
        """End the session. Valid in any state.

        Running tool calls are cancelled and get no response. If the
        session is already shutting down (GoAway, transport failure), any
        pending flush is abandoned and this waits for the shutdown to
        finish. The session is always ``disconnected`` on return.
        """
        attempt = self._attempt
        if attempt is None:
            if self._state is not SessionState.DISCONNECTED:
                self._transition(SessionState.DISCONNECTED)
            return

        if not attempt.closing:
            await self._teardown(attempt, SessionState.DISCONNECTED, None)
            return

        current = asyncio.current_task()
        writer = attempt.writer
        if (
            writer is not None
            and writer is not attempt.closed_by
            and writer is not current
            and not writer.done()
        ):
            # Abandon a GoAway flush stuck on a slow send
            writer.cancel()
        if attempt.closed_by is not current:
            await attempt.closed.wait()

        if self._attempt is attempt and self._state is not SessionState.DISCONNECTED:
            self.router.cancel_all()
            self._transition(SessionState.DISCONNECTED)

    async def flush(self) -> None:
        """Wait until every queued outbound message has been written."""
        attempt = self._attempt
        if attempt is None or attempt.writer is None or attempt.writer.done():
            return
        drained = asyncio.ensure_future(attempt.outbound.join())
        try:
            await asyncio.wait({drained, attempt.writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()

    async def _teardown(
        self,
        attempt: _Attempt,
        final_state: SessionState,
        error: str | None,
        flush: bool = False,
    ) -> None:
        # Only the first caller tears down; disconnect() waits on attempt.closed
        if attempt.closing:
            return
        attempt.closing = True
        current = asyncio.current_task()
        attempt.closed_by = current

        try:
            cancelled = self.router.cancel_all()
            if cancelled:
                self.logger.info("tool_calls_abandoned", ids=cancelled)

            writer = attempt.writer
            if writer is not None and writer is not current and not writer.done():
                if flush:
                    attempt.outbound.put_nowait(_STOP)
                else:
                    writer.cancel()
                await self._reap(writer)

            reader = attempt.reader
            if reader is not None and reader is not current and not reader.done():
                reader.cancel()
                await self._reap(reader)

            if attempt.transport is not None:
                try:
                    await attempt.transport.close()
                except Exception as e:
                    self.logger.warning("transport_close_failed", error=str(e))

            self.playback.reset()
            if self._attempt is attempt:
                self._transition(final_state, error)
                unbind_session()
        finally:
            attempt.closed.set()

    async def _reap(self, task: asyncio.Task) -> None:
        # asyncio.wait never raises the task's own cancellation into us
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning("task_failed", task=task.get_name(), error=str(task.exception()))

    # Inbound

    async def _read_loop(self, attempt: _Attempt) -> None:
        assert attempt.transport is not None
        try:
            async with contextlib.aclosing(attempt.transport.frames()) as frames:
                async for frame in frames:
                    try:
                        messages = decode_frame(frame)
                    except DecodeError as e:
                        self.logger.warning("frame_skipped", error=str(e))
                        continue
                    for message in messages:
                        if isinstance(message, GoAway):
                            self.logger.info("go_away", reason=message.reason)
                            await self._teardown(
                                attempt, SessionState.DISCONNECTED, message.reason, flush=True
                            )
                            return
                        try:
                            await self._dispatch(message)
                        except Exception as e:
                            self.logger.exception(
                                "dispatch_failed", message=type(message).__name__, error=str(e)
                            )
        except TransportError as e:
            self.logger.warning("transport_failed", error=str(e))
            await self._teardown(attempt, SessionState.ERROR, str(e))
            return
        except Exception as e:
            self.logger.exception("reader_crashed", error=str(e))
            await self._teardown(attempt, SessionState.ERROR, f"Internal error: {e}")
            return

        self.logger.info("remote_closed")
        await self._teardown(attempt, SessionState.DISCONNECTED, "Connection closed by server")

    async def _dispatch(self, message: InboundMessage) -> None:
        if isinstance(message, SetupComplete):
            if self._state is SessionState.SETTING_UP:
                self._transition(SessionState.READY)
            else:
                self.logger.warning("unexpected_setup_complete", state=self._state.value)

        elif isinstance(message, ModelAudioChunk):
            self.playback.push(message)

        elif isinstance(message, ModelTranscript):
            if self.transcript_sink is not None:
                self.transcript_sink.on_transcript(message)
            await self.events.emit(
                "session.transcript",
                "gemini_session",
                role=message.role,
                text=message.text,
                is_final=message.is_final,
            )

        elif isinstance(message, TurnComplete):
            self.playback.turn_complete(interrupted=message.interrupted)

        elif isinstance(message, ToolCallRequest):
            for call in message.calls:
                await self.router.handle_request(call)
            self._publish()

        elif isinstance(message, ToolCallCancellation):
            self.router.handle_cancellation(message.ids)
            self._publish()

        elif isinstance(message, Unknown):
            self.logger.debug("unknown_message", keys=message.keys)

    # Outbound

    async def _write_loop(self, attempt: _Attempt) -> None:
        assert attempt.transport is not None
        while True:
            message = await attempt.outbound.get()
            try:
                if message is _STOP:
                    return
                await attempt.transport.send(json.dumps(message))
            except (TypeError, ValueError) as e:
                self.logger.error("outbound_message_dropped", error=str(e))
            except TransportError as e:
                self.logger.warning("send_failed", error=str(e))
                await self._teardown(attempt, SessionState.ERROR, str(e))
                return
            finally:
                attempt.outbound.task_done()

    async def _send(self, message: dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or attempt.closing or attempt.writer is None or attempt.writer.done():
            raise NotReady("Session has no open transport")
        attempt.outbound.put_nowait(message)

    def _require_ready(self) -> None:
        if self._state is not SessionState.READY:
            raise NotReady(f"Session is {self._state.value}, not ready")

    async def submit_audio_chunk(self, samples: Samples) -> int:
        """Send microphone audio.

        Returns:
            Number of envelopes sent; 0 when dropped because the model is
            speaking in co-located mic/speaker mode.

        Raises:
            NotReady: Session is not ready.
        """
        self._require_ready()
        if self.config.speaking.mute_mic_while_speaking and self.playback.model_speaking:
            return 0
        return await self.media.submit_audio_chunk(samples)

    async def submit_video_frame(self, frame: VideoFrame) -> bool:
        """Send a camera frame, subject to the video throttle.

        Raises:
            NotReady: Session is not ready.
        """
        self._require_ready()
        return await self.media.submit_video_frame(frame)

    async def send_tool_response(self, response: ToolResponse) -> None:
        """Queue a tool response for the model.

        Raises:
            NotReady: Session is not ready.
        """
        self._require_ready()
        await self._send(encode_tool_response(response))
        self._publish()

    def get_status(self) -> dict:
        """Get session status."""
        snapshot = self.snapshot
        return {
            "state": snapshot.state.value,
            "session_id": snapshot.session_id,
            "error": snapshot.error,
            "active_tool_calls": sorted(snapshot.active_tool_call_ids),
            "media": self.media.get_status(),
            "playback": self.playback.get_status(),
            "gateway": self.gateway.get_status(),
        }
