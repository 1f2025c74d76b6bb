"""Outbound media multiplexer: microphone audio and throttled video."""

from __future__ import annotations

import io
import time
from typing import Any, Awaitable, Callable, Sequence, Union

import numpy as np
from PIL import Image

from glasslink.common.logging import get_logger
from glasslink.config import MediaConfig
from glasslink.live.protocol import encode_audio, encode_video

Samples = Union[bytes, bytearray, memoryview, np.ndarray, Sequence[int], Sequence[float]]
VideoFrame = Union[Image.Image, np.ndarray, bytes, bytearray]
Send = Callable[[dict[str, Any]], Awaitable[None]]

_JPEG_MAGIC = b"\xff\xd8\xff"


def to_pcm16(samples: Samples) -> bytes:
    """Convert mono samples to PCM 16-bit little-endian bytes.

    Bytes are taken as PCM16 already. Float samples are expected in
    [-1.0, 1.0] and are clipped.
    """
    if isinstance(samples, (bytes, bytearray, memoryview)):
        data = bytes(samples)
        if len(data) % 2:
            raise ValueError("PCM16 byte buffer has an odd length")
        return data

    array = np.asarray(samples)
    if array.ndim != 1:
        raise ValueError(f"Expected mono samples, got shape {array.shape}")
    if np.issubdtype(array.dtype, np.floating):
        array = np.clip(array, -1.0, 1.0) * 32767.0
    return array.astype("<i2").tobytes()


def encode_jpeg(frame: VideoFrame, quality: int) -> bytes:
    """Encode a frame as JPEG, passing through frames that already are."""
    if isinstance(frame, (bytes, bytearray)):
        data = bytes(frame)
        if data.startswith(_JPEG_MAGIC):
            return data
        image = Image.open(io.BytesIO(data))
    elif isinstance(frame, np.ndarray):
        image = Image.fromarray(frame.astype(np.uint8))
    else:
        image = frame

    if image.mode != "RGB":
        image = image.convert("RGB")

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class MediaMultiplexer:
    """Encodes capture output into realtime input envelopes.

    Audio is never throttled: every submitted buffer is split into
    envelopes of at most ``chunk_size_ms`` and sent at once. Video is
    throttled to one frame per ``video_min_interval_seconds``; frames
    that arrive early are dropped, not queued.
    """

    def __init__(
        self,
        config: MediaConfig,
        send: Send,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._send = send
        self._clock = clock
        self._last_video_at: float | None = None
        self._audio_envelopes = 0
        self._frames_sent = 0
        self._frames_dropped = 0
        self.logger = get_logger("media_mux")

    @property
    def last_video_at(self) -> float | None:
        return self._last_video_at

    async def submit_audio_chunk(self, samples: Samples) -> int:
        """Send microphone audio. Returns the number of envelopes sent."""
        pcm = to_pcm16(samples)
        step = self.config.chunk_samples * 2
        sent = 0
        for offset in range(0, len(pcm), step):
            await self._send(encode_audio(pcm[offset : offset + step], self.config.input_sample_rate))
            sent += 1
        self._audio_envelopes += sent
        return sent

    async def submit_video_frame(self, frame: VideoFrame) -> bool:
        """Send a video frame if the throttle allows it.

        Returns:
            True if the frame was sent, False if it was dropped.
        """
        now = self._clock()
        if (
            self._last_video_at is not None
            and now - self._last_video_at < self.config.video_min_interval_seconds
        ):
            self._frames_dropped += 1
            return False

        jpeg = encode_jpeg(frame, self.config.jpeg_quality)
        await self._send(encode_video(jpeg))
        self._last_video_at = now
        self._frames_sent += 1
        self.logger.debug("video_frame_sent", size=len(jpeg))
        return True

    def get_status(self) -> dict:
        """Get multiplexer counters."""
        return {
            "audio_envelopes": self._audio_envelopes,
            "frames_sent": self._frames_sent,
            "frames_dropped": self._frames_dropped,
        }
