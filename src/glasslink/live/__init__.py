"""Realtime voice session core.

Example usage:

    from glasslink import load_config
    from glasslink.gateway import GatewayClient
    from glasslink.live import GeminiSession

    async def main():
        config = load_config()
        gateway = GatewayClient(config.gateway)
        session = GeminiSession(config, gateway)

        await session.connect()
        await session.wait_until_ready(timeout=10)

        async for pcm in microphone():
            await session.submit_audio_chunk(pcm)

        await session.disconnect()
        await gateway.aclose()
"""

from glasslink.live.session import GeminiSession, SessionSnapshot, SessionState
from glasslink.live.router import ToolCallRouter, ToolCallStatus
from glasslink.live.media import MediaMultiplexer
from glasslink.live.playback import AudioDemultiplexer
from glasslink.live.transport import MockTransport, Transport, WebSocketTransport

__all__ = [
    "GeminiSession",
    "SessionSnapshot",
    "SessionState",
    "ToolCallRouter",
    "ToolCallStatus",
    "MediaMultiplexer",
    "AudioDemultiplexer",
    "MockTransport",
    "Transport",
    "WebSocketTransport",
]
