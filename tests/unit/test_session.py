"""Tests for the realtime session state machine."""

import asyncio
import contextlib

import httpx
import pytest

from glasslink.config import Config
from glasslink.errors import AlreadyConnected, NotReady, TransportError
from glasslink.gateway.client import GatewayClient
from glasslink.live.protocol import (
    ModelTranscript,
    ToolCall,
    ToolResponse,
    encode_model_audio,
    encode_tool_call,
)
from glasslink.live.session import GeminiSession, SessionState
from glasslink.live.transport import MockTransport


async def wait_for_state(session: GeminiSession, state: SessionState, timeout: float = 1.0):
    async def _wait():
        async with contextlib.aclosing(session.updates.subscribe()) as updates:
            async for snapshot in updates:
                if snapshot.state is state:
                    return snapshot

    return await asyncio.wait_for(_wait(), timeout)


def tool_call(call_id: str, task: str) -> dict:
    return encode_tool_call(ToolCall(id=call_id, name="execute", args={"task": task}))


class RecordingTranscripts:
    def __init__(self) -> None:
        self.items: list[ModelTranscript] = []

    def on_transcript(self, transcript: ModelTranscript) -> None:
        self.items.append(transcript)


class StallingTransport(MockTransport):
    """Mock transport whose sends block while ``stall`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.stall = False
        self.release = asyncio.Event()

    async def send(self, message: str) -> None:
        if self.stall:
            await self.release.wait()
        await super().send(message)


@pytest.fixture
async def hanging_gateway(config: Config):
    async def handler(request):
        await asyncio.Event().wait()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        yield GatewayClient(config.gateway, http_client=http)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initial_state(self, session):
        assert session.state is SessionState.DISCONNECTED
        assert session.snapshot.session_id is None
        assert session.updates.latest.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_transitions(self, session, transport):
        states = []

        async def record():
            async with contextlib.aclosing(session.updates.subscribe()) as updates:
                async for snapshot in updates:
                    if not states or states[-1] is not snapshot.state:
                        states.append(snapshot.state)
                    if snapshot.state is SessionState.READY:
                        return

        recorder = asyncio.create_task(record())
        await asyncio.sleep(0)
        await session.connect()
        await asyncio.wait_for(recorder, timeout=1.0)

        assert states == [
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
            SessionState.SETTING_UP,
            SessionState.READY,
        ]
        assert transport.opened
        assert "setup" in transport.sent[0]
        assert session.snapshot.session_id

    @pytest.mark.asyncio
    async def test_setup_complete_enables_media(self, config, gateway, mock_audio_chunk):
        transport = MockTransport()
        session = GeminiSession(config, gateway, transport_factory=lambda: transport)
        await session.connect()
        await session.flush()

        assert session.state is SessionState.SETTING_UP
        with pytest.raises(NotReady):
            await session.submit_audio_chunk(mock_audio_chunk)

        transport.push_binary({"setupComplete": {}})
        await transport.drain()
        assert session.state is SessionState.READY

        assert await session.submit_audio_chunk(mock_audio_chunk) == 1
        await session.flush()
        assert len(transport.sent_of("realtimeInput")) == 1

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_media_rejected_when_disconnected(self, session, mock_audio_chunk, mock_image_bytes):
        with pytest.raises(NotReady):
            await session.submit_audio_chunk(mock_audio_chunk)
        with pytest.raises(NotReady):
            await session.submit_video_frame(mock_image_bytes)

    @pytest.mark.asyncio
    async def test_connect_twice(self, ready_session):
        with pytest.raises(AlreadyConnected):
            await ready_session.connect()

    @pytest.mark.asyncio
    async def test_open_failure(self, config, gateway):
        transport = MockTransport(fail_open=ConnectionRefusedError("refused"))
        session = GeminiSession(config, gateway, transport_factory=lambda: transport)

        with pytest.raises(TransportError):
            await session.connect()

        assert session.state is SessionState.ERROR
        assert "refused" in session.error

    @pytest.mark.asyncio
    async def test_reconnect_starts_fresh_attempt(self, config, gateway):
        transports = []

        def factory():
            transports.append(MockTransport(auto_setup_complete=True))
            return transports[-1]

        session = GeminiSession(config, gateway, transport_factory=factory)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)
        first_id = session.snapshot.session_id
        await session.gateway.execute("remember this")

        await session.disconnect()
        assert session.state is SessionState.DISCONNECTED

        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        assert len(transports) == 2
        assert transports[0].closed
        assert session.snapshot.session_id != first_id
        assert len(session.gateway.history) == 0

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_wait_until_ready_timeout(self, config, gateway):
        session = GeminiSession(config, gateway, transport_factory=MockTransport)
        await session.connect()

        with pytest.raises(asyncio.TimeoutError):
            await session.wait_until_ready(timeout=0.05)

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_wait_until_ready_fails_with_attempt(self, config, gateway):
        transport = MockTransport()
        session = GeminiSession(config, gateway, transport_factory=lambda: transport)
        await session.connect()

        transport.fail(ConnectionResetError("reset by peer"))

        with pytest.raises(TransportError):
            await session.wait_until_ready(timeout=1.0)
        assert session.state is SessionState.ERROR


class TestInbound:
    @pytest.mark.asyncio
    async def test_unknown_and_malformed_frames_do_not_transition(self, ready_session, transport):
        transport.push({"usageMetadata": {"totalTokenCount": 12}})
        transport.push("{not json")
        transport.push(b"\xff\x00")
        transport.push({"setupComplete": {}})
        await transport.drain()

        assert ready_session.state is SessionState.READY
        assert ready_session.error is None

    @pytest.mark.asyncio
    async def test_transport_failure_moves_to_error(self, ready_session, transport):
        transport.fail(ConnectionResetError("reset by peer"))

        snapshot = await wait_for_state(ready_session, SessionState.ERROR)

        assert "reset by peer" in snapshot.error
        assert transport.closed

    @pytest.mark.asyncio
    async def test_remote_close(self, ready_session, transport):
        transport.remote_close()

        snapshot = await wait_for_state(ready_session, SessionState.DISCONNECTED)

        assert snapshot.error == "Connection closed by server"

    @pytest.mark.asyncio
    async def test_go_away_flushes_pending_output(self, ready_session, transport, mock_audio_chunk):
        await ready_session.submit_audio_chunk(mock_audio_chunk)
        await ready_session.submit_audio_chunk(mock_audio_chunk)
        transport.push({"goAway": {"timeLeft": "1s"}})

        snapshot = await wait_for_state(ready_session, SessionState.DISCONNECTED)

        assert snapshot.error == "time left 1s"
        assert len(transport.sent_of("realtimeInput")) == 2

    @pytest.mark.asyncio
    async def test_model_audio_and_speaking(self, ready_session, transport):
        transport.push(encode_model_audio(b"\x01\x00\x02\x00"))
        await transport.drain()

        assert ready_session.model_speaking is True
        assert ready_session.updates.latest.model_speaking is True
        assert await ready_session.playback.get_chunk() == b"\x01\x00\x02\x00"

        transport.push({"serverContent": {"turnComplete": True}})
        await transport.drain()

        assert ready_session.model_speaking is False

    @pytest.mark.asyncio
    async def test_mute_mic_while_speaking(self, config, gateway, transport, mock_audio_chunk):
        config.speaking.mute_mic_while_speaking = True
        session = GeminiSession(config, gateway, transport_factory=lambda: transport)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        transport.push(encode_model_audio(b"\x00\x00"))
        await transport.drain()
        assert await session.submit_audio_chunk(mock_audio_chunk) == 0

        transport.push({"serverContent": {"turnComplete": True}})
        await transport.drain()
        assert await session.submit_audio_chunk(mock_audio_chunk) == 1

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_transcripts(self, config, gateway, transport):
        sink = RecordingTranscripts()
        session = GeminiSession(config, gateway, transport_factory=lambda: transport, transcript_sink=sink)
        published = []

        async def on_transcript(event):
            published.append(event.data)

        session.events.subscribe("session.transcript", on_transcript)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        transport.push(
            {
                "serverContent": {
                    "inputTranscription": {"text": "what's this?"},
                    "outputTranscription": {"text": "A plant."},
                }
            }
        )
        await transport.drain()

        assert [(t.role, t.text) for t in sink.items] == [("user", "what's this?"), ("model", "A plant.")]
        assert published[1] == {"role": "model", "text": "A plant.", "is_final": False}

        await session.disconnect()


class TestDisconnectWhileClosing:
    @pytest.mark.asyncio
    async def test_disconnect_during_stalled_go_away_flush(
        self, config, hanging_gateway, mock_audio_chunk
    ):
        stalling = StallingTransport(auto_setup_complete=True)
        transports = [stalling]

        def factory():
            if not transports:
                return MockTransport(auto_setup_complete=True)
            return transports.pop()

        session = GeminiSession(config, hanging_gateway, transport_factory=factory)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        stalling.push(tool_call("7", "slow"))
        await stalling.drain()
        assert session.snapshot.active_tool_call_ids == {"7"}

        stalling.stall = True
        await session.submit_audio_chunk(mock_audio_chunk)
        stalling.push({"goAway": {"timeLeft": "5s"}})
        await asyncio.sleep(0.01)

        await asyncio.wait_for(session.disconnect(), timeout=1.0)

        assert session.state is SessionState.DISCONNECTED
        assert session.snapshot.active_tool_call_ids == frozenset()
        assert stalling.closed

        await session.connect()
        await session.wait_until_ready(timeout=1.0)
        assert session.state is SessionState.READY

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_after_transport_failure(self, config, gateway):
        transports = []

        def factory():
            transports.append(MockTransport(auto_setup_complete=True))
            return transports[-1]

        session = GeminiSession(config, gateway, transport_factory=factory)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        transports[0].fail(ConnectionResetError("reset by peer"))
        await asyncio.sleep(0)
        await session.disconnect()

        assert session.state is SessionState.DISCONNECTED
        assert session.snapshot.active_tool_call_ids == frozenset()

        await session.connect()
        await session.wait_until_ready(timeout=1.0)
        assert session.state is SessionState.READY

        await session.disconnect()


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self, ready_session, transport):
        transport.push(tool_call("123", "send a text to Alice"))
        await transport.drain()
        await ready_session.router.join()
        await ready_session.flush()

        assert transport.sent_of("toolResponse") == [
            {
                "toolResponse": {
                    "functionResponses": [
                        {"id": "123", "name": "execute", "response": {"output": "Done: send a text to Alice"}}
                    ]
                }
            }
        ]
        assert ready_session.snapshot.active_tool_call_ids == frozenset()

    @pytest.mark.asyncio
    async def test_gateway_500_yields_error_response(self, config, transport):
        failing = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=failing) as http:
            session = GeminiSession(
                config,
                GatewayClient(config.gateway, http_client=http),
                transport_factory=lambda: transport,
            )
            await session.connect()
            await session.wait_until_ready(timeout=1.0)

            transport.push(tool_call("5", "order pizza"))
            await transport.drain()
            await session.router.join()
            await session.flush()

            [response] = transport.sent_of("toolResponse")
            output = response["toolResponse"]["functionResponses"][0]["response"]["output"]
            assert output.startswith("Error:")
            assert session.state is SessionState.READY
            assert session.router.get_task("5") is None

            await session.disconnect()

    @pytest.mark.asyncio
    async def test_cancellation_suppresses_response(self, config, hanging_gateway, transport):
        session = GeminiSession(config, hanging_gateway, transport_factory=lambda: transport)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        transport.push(tool_call("123", "send a text to Alice"))
        await transport.drain()
        assert session.snapshot.active_tool_call_ids == {"123"}
        handle = session.router.get_task("123").handle

        transport.push({"toolCallCancellation": {"ids": ["123"]}})
        await transport.drain()
        await asyncio.gather(handle, return_exceptions=True)
        await session.flush()

        assert handle.cancelled()
        assert transport.sent_of("toolResponse") == []
        assert session.snapshot.active_tool_call_ids == frozenset()

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_running_calls(self, config, hanging_gateway, transport):
        session = GeminiSession(config, hanging_gateway, transport_factory=lambda: transport)
        await session.connect()
        await session.wait_until_ready(timeout=1.0)

        transport.push(tool_call("1", "a"))
        transport.push(tool_call("2", "b"))
        await transport.drain()
        handles = [session.router.get_task(i).handle for i in ("1", "2")]

        await session.disconnect()
        await asyncio.gather(*handles, return_exceptions=True)

        assert all(h.cancelled() for h in handles)
        assert transport.sent_of("toolResponse") == []
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_tool_response_requires_ready(self, session):
        with pytest.raises(NotReady):
            await session.send_tool_response(ToolResponse(id="1", output="x"))


class TestStatus:
    @pytest.mark.asyncio
    async def test_get_status(self, ready_session, mock_image_bytes):
        await ready_session.submit_video_frame(mock_image_bytes)
        await ready_session.submit_video_frame(mock_image_bytes)

        status = ready_session.get_status()

        assert status["state"] == "ready"
        assert status["media"]["frames_sent"] == 1
        assert status["media"]["frames_dropped"] == 1
        assert status["gateway"]["history"] == 0
