"""Inbound audio demultiplexer and model-speaking detection."""

from __future__ import annotations

import asyncio
from typing import Callable

from glasslink.common.logging import get_logger
from glasslink.config import MediaConfig, SpeakingConfig
from glasslink.live.collaborators import AudioSink
from glasslink.live.protocol import ModelAudioChunk

SpeakingListener = Callable[[bool], None]


class AudioDemultiplexer:
    """Collects model speech for playback and tracks whether the model is speaking.

    Chunks are kept in arrival order; the transport is ordered and
    reliable, so there is no reordering or gap detection. With an
    :class:`AudioSink` attached, chunks go straight to the sink; otherwise
    they are queued for :meth:`get_chunk`.

    The speaking flag turns on with the first chunk of a turn and turns
    off according to ``SpeakingConfig.turn_end_policy``: on the upstream
    turn-end marker, after ``silence_timeout_seconds`` without audio, or
    whichever happens first.
    """

    def __init__(
        self,
        media: MediaConfig,
        speaking: SpeakingConfig,
        sink: AudioSink | None = None,
    ) -> None:
        self.media = media
        self.speaking = speaking
        self.sink = sink
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._model_speaking = False
        self._silence_timer: asyncio.TimerHandle | None = None
        self._listeners: list[SpeakingListener] = []
        self._chunks_received = 0
        self._bytes_received = 0
        self.logger = get_logger("audio_demux")

    @property
    def model_speaking(self) -> bool:
        return self._model_speaking

    @property
    def queued(self) -> int:
        """Chunks waiting in the playback queue."""
        return self._queue.qsize()

    def add_listener(self, listener: SpeakingListener) -> Callable[[], None]:
        """Call ``listener(speaking)`` on every change of the speaking flag.

        Returns:
            Function removing the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def push(self, chunk: ModelAudioChunk) -> None:
        """Accept one chunk of model audio."""
        self._chunks_received += 1
        self._bytes_received += len(chunk.data)

        if self.sink is not None:
            self.sink.play(chunk.data, self.media.output_sample_rate)
        else:
            self._queue.put_nowait(chunk.data)

        self._set_speaking(True)
        if self.speaking.turn_end_policy in ("timeout", "either"):
            self._arm_silence_timer()

    def turn_complete(self, interrupted: bool = False) -> None:
        """Handle the upstream turn-end marker.

        An interruption also discards audio not yet played.
        """
        if interrupted:
            dropped = self.drain()
            if dropped:
                self.logger.debug("playback_flushed", chunks=len(dropped))
        if self.speaking.turn_end_policy in ("marker", "either"):
            self._cancel_silence_timer()
            self._set_speaking(False)

    async def get_chunk(self, timeout: float = 0.1) -> bytes | None:
        """Next queued chunk, or None if nothing arrives within ``timeout``."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[bytes]:
        """Remove and return every queued chunk."""
        chunks = []
        while not self._queue.empty():
            chunks.append(self._queue.get_nowait())
        return chunks

    def reset(self) -> None:
        """Drop queued audio and clear the speaking flag."""
        self._cancel_silence_timer()
        self.drain()
        self._set_speaking(False)

    def get_status(self) -> dict:
        return {
            "model_speaking": self._model_speaking,
            "queued": self.queued,
            "chunks_received": self._chunks_received,
            "bytes_received": self._bytes_received,
        }

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        loop = asyncio.get_running_loop()
        self._silence_timer = loop.call_later(
            self.speaking.silence_timeout_seconds, self._on_silence
        )

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _on_silence(self) -> None:
        self._silence_timer = None
        self._set_speaking(False)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._model_speaking:
            return
        self._model_speaking = speaking
        self.logger.debug("model_speaking_changed", speaking=speaking)
        for listener in list(self._listeners):
            try:
                listener(speaking)
            except Exception as e:
                self.logger.exception("speaking_listener_error", error=str(e))
