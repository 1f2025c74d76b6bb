"""Collaborator interfaces between the session core and the platform.

Capture, playback and presentation live outside the core. They plug in
through these narrow interfaces.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, AsyncIterator, Protocol, runtime_checkable

import numpy as np
from PIL import Image

from glasslink.common.logging import get_logger
from glasslink.errors import NotReady

if TYPE_CHECKING:
    from glasslink.live.protocol import ModelTranscript
    from glasslink.live.session import GeminiSession


@runtime_checkable
class AudioSink(Protocol):
    """Plays model speech."""

    def play(self, pcm: bytes, sample_rate: int) -> None:
        """Queue PCM16 mono audio for playback."""
        ...


@runtime_checkable
class TranscriptSink(Protocol):
    """Displays transcripts."""

    def on_transcript(self, transcript: ModelTranscript) -> None:
        ...


class AudioSource(Protocol):
    """Yields microphone buffers (PCM16 bytes or numpy samples)."""

    def __aiter__(self) -> AsyncIterator[bytes | np.ndarray]:
        ...


class FrameSource(Protocol):
    """Yields camera frames (PIL images, arrays or encoded bytes)."""

    def __aiter__(self) -> AsyncIterator[Image.Image | np.ndarray | bytes]:
        ...


class NullAudioSink:
    """Audio sink that only counts what it is given."""

    def __init__(self) -> None:
        self.chunks = 0
        self.bytes = 0

    def play(self, pcm: bytes, sample_rate: int) -> None:
        self.chunks += 1
        self.bytes += len(pcm)


class LoggingTranscriptSink:
    """Transcript sink that writes to the structured log."""

    def __init__(self) -> None:
        self.logger = get_logger("transcript")

    def on_transcript(self, transcript: ModelTranscript) -> None:
        self.logger.info(
            "transcript",
            role=transcript.role,
            text=transcript.text,
            final=transcript.is_final,
        )


class SilenceAudioSource:
    """Mock microphone producing silent PCM16 at capture pace."""

    def __init__(self, sample_rate: int = 16000, chunk_size_ms: int = 100, limit: int | None = None) -> None:
        self.sample_rate = sample_rate
        self.chunk_size_ms = chunk_size_ms
        self.limit = limit

    async def __aiter__(self) -> AsyncIterator[bytes]:
        samples = self.sample_rate * self.chunk_size_ms // 1000
        counter = itertools.count() if self.limit is None else range(self.limit)
        for _ in counter:
            await asyncio.sleep(self.chunk_size_ms / 1000)
            yield bytes(samples * 2)


class SolidColorFrameSource:
    """Mock camera producing solid-color frames at a fixed rate."""

    def __init__(
        self,
        size: tuple[int, int] = (640, 480),
        fps: float = 2.0,
        limit: int | None = None,
    ) -> None:
        self.size = size
        self.fps = fps
        self.limit = limit

    async def __aiter__(self) -> AsyncIterator[Image.Image]:
        counter = itertools.count() if self.limit is None else range(self.limit)
        for n in counter:
            await asyncio.sleep(1.0 / self.fps)
            shade = (n * 16) % 256
            yield Image.new("RGB", self.size, color=(73, 109, shade))


async def pump_audio(session: GeminiSession, source: AudioSource) -> int:
    """Feed microphone buffers into a session until the source ends.

    Buffers submitted while the session is not ready are skipped.

    Returns:
        Number of audio envelopes sent.
    """
    sent = 0
    async for samples in source:
        try:
            sent += await session.submit_audio_chunk(samples)
        except NotReady:
            continue
    return sent


async def pump_frames(session: GeminiSession, source: FrameSource) -> int:
    """Feed camera frames into a session until the source ends.

    Returns:
        Number of frames actually sent (after throttling).
    """
    sent = 0
    async for frame in source:
        try:
            if await session.submit_video_frame(frame):
                sent += 1
        except NotReady:
            continue
    return sent
