"""Wire codec for the realtime voice protocol.

Inbound frames arrive as UTF-8 JSON text or as binary-encoded JSON; both
decode the same way. Each frame yields an ordered list of messages, and
every message carries exactly one variant tag. Shapes the codec does not
recognise decode to :class:`Unknown`.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from glasslink.config import GeminiConfig
from glasslink.errors import DecodeError

EXECUTE_TOOL = "execute"

EXECUTE_DECLARATION: dict[str, Any] = {
    "name": EXECUTE_TOOL,
    "description": (
        "Run a task on the wearer's behalf through the local agent gateway: "
        "messaging, web search, reminders, app control, and anything else "
        "that needs to act outside this conversation."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "description": "Natural-language description of what to do.",
            },
        },
        "required": ["task"],
    },
}


# Inbound messages


@dataclass(frozen=True)
class SetupComplete:
    """Server accepted the setup message."""


@dataclass(frozen=True)
class ModelAudioChunk:
    """A slice of model speech, PCM16 mono."""

    data: bytes
    mime_type: str = "audio/pcm;rate=24000"


@dataclass(frozen=True)
class ModelTranscript:
    """Transcript text for model output or user input."""

    text: str
    is_final: bool = False
    role: Literal["model", "user"] = "model"


@dataclass(frozen=True)
class TurnComplete:
    """Upstream turn-end marker. ``interrupted`` means barge-in."""

    interrupted: bool = False


@dataclass(frozen=True)
class ToolCall:
    """A model-issued tool invocation."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def task(self) -> str:
        """The natural-language task argument, empty if absent."""
        value = self.args.get("task")
        return value.strip() if isinstance(value, str) else ""

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolCall:
        call_id = data.get("id")
        if not isinstance(call_id, str) or not call_id:
            raise DecodeError("functionCall without id")
        args = data.get("args") or {}
        if not isinstance(args, dict):
            raise DecodeError(f"functionCall {call_id} args is not an object")
        return cls(id=call_id, name=str(data.get("name", "")), args=dict(args))

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": dict(self.args)}


@dataclass(frozen=True)
class ToolCallRequest:
    """One or more tool calls issued together."""

    calls: tuple[ToolCall, ...]


@dataclass(frozen=True)
class ToolCallCancellation:
    """Model abandoned the listed tool calls."""

    ids: tuple[str, ...]


@dataclass(frozen=True)
class GoAway:
    """Server will close the connection soon."""

    reason: str | None = None


@dataclass(frozen=True)
class Unknown:
    """Frame shape the codec does not handle."""

    keys: tuple[str, ...] = ()


InboundMessage = Union[
    SetupComplete,
    ModelAudioChunk,
    ModelTranscript,
    TurnComplete,
    ToolCallRequest,
    ToolCallCancellation,
    GoAway,
    Unknown,
]


@dataclass(frozen=True)
class ToolResponse:
    """Result of a tool call, sent back to the model."""

    id: str
    output: str
    name: str = EXECUTE_TOOL

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "response": {"output": self.output}}


# Decoding


def decode_frame(frame: str | bytes | bytearray) -> list[InboundMessage]:
    """Decode one transport frame into protocol messages.

    Raises:
        DecodeError: The frame is not a JSON object or a known section
            is malformed.
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"binary frame is not UTF-8: {e}") from e

    try:
        payload = json.loads(frame)
    except json.JSONDecodeError as e:
        raise DecodeError(f"frame is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise DecodeError(f"frame is a JSON {type(payload).__name__}, expected object")

    messages: list[InboundMessage] = []

    if "setupComplete" in payload:
        messages.append(SetupComplete())

    server_content = payload.get("serverContent")
    if server_content is not None:
        messages.extend(_decode_server_content(_section(server_content, "serverContent")))

    tool_call = payload.get("toolCall")
    if tool_call is not None:
        raw_calls = _section(tool_call, "toolCall").get("functionCalls") or []
        if not isinstance(raw_calls, list):
            raise DecodeError("toolCall.functionCalls is not a list")
        calls = tuple(ToolCall.from_wire(_section(c, "functionCall")) for c in raw_calls)
        if calls:
            messages.append(ToolCallRequest(calls=calls))

    cancellation = payload.get("toolCallCancellation")
    if cancellation is not None:
        ids = _section(cancellation, "toolCallCancellation").get("ids") or []
        if not isinstance(ids, list):
            raise DecodeError("toolCallCancellation.ids is not a list")
        messages.append(ToolCallCancellation(ids=tuple(str(i) for i in ids)))

    go_away = payload.get("goAway")
    if go_away is not None:
        reason = None
        if isinstance(go_away, dict) and go_away.get("timeLeft") is not None:
            reason = f"time left {go_away['timeLeft']}"
        messages.append(GoAway(reason=reason))

    if not messages:
        messages.append(Unknown(keys=tuple(sorted(payload))))

    return messages


def _section(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{name} is not an object")
    return value


def _decode_server_content(content: dict[str, Any]) -> list[InboundMessage]:
    messages: list[InboundMessage] = []

    transcription = content.get("inputTranscription")
    if isinstance(transcription, dict) and transcription.get("text"):
        messages.append(ModelTranscript(text=transcription["text"], role="user"))

    model_turn = content.get("modelTurn")
    if model_turn is not None:
        parts = _section(model_turn, "modelTurn").get("parts") or []
        for part in parts:
            part = _section(part, "part")
            inline = part.get("inlineData")
            if inline is not None:
                inline = _section(inline, "inlineData")
                mime_type = str(inline.get("mimeType", ""))
                if mime_type.startswith("audio/"):
                    messages.append(
                        ModelAudioChunk(data=_b64decode(inline.get("data", "")), mime_type=mime_type)
                    )
            elif part.get("text") and not part.get("thought"):
                messages.append(ModelTranscript(text=part["text"], is_final=True))

    transcription = content.get("outputTranscription")
    if isinstance(transcription, dict) and transcription.get("text"):
        messages.append(ModelTranscript(text=transcription["text"]))

    if content.get("interrupted"):
        messages.append(TurnComplete(interrupted=True))
    elif content.get("turnComplete"):
        messages.append(TurnComplete())

    return messages


def _b64decode(data: Any) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecodeError(f"inlineData is not valid base64: {e}") from e


# Encoding


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def build_setup_message(config: GeminiConfig) -> dict[str, Any]:
    """Build the session setup message with the single execute tool."""
    generation_config: dict[str, Any] = {
        "responseModalities": list(config.response_modalities),
    }
    if config.temperature is not None:
        generation_config["temperature"] = config.temperature
    if config.voice:
        generation_config["speechConfig"] = {
            "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice}}
        }

    setup: dict[str, Any] = {
        "model": config.model,
        "generationConfig": generation_config,
        "systemInstruction": {"parts": [{"text": config.system_prompt}]},
        "tools": [{"functionDeclarations": [EXECUTE_DECLARATION]}],
    }
    if config.input_transcription:
        setup["inputAudioTranscription"] = {}
    if config.output_transcription:
        setup["outputAudioTranscription"] = {}

    return {"setup": setup}


def encode_audio(pcm: bytes, sample_rate: int = 16000) -> dict[str, Any]:
    """Wrap PCM16 mono audio in a realtime input envelope."""
    return {
        "realtimeInput": {
            "audio": {"data": _b64encode(pcm), "mimeType": f"audio/pcm;rate={sample_rate}"}
        }
    }


def encode_video(jpeg: bytes) -> dict[str, Any]:
    """Wrap a JPEG frame in a realtime input envelope."""
    return {"realtimeInput": {"video": {"data": _b64encode(jpeg), "mimeType": "image/jpeg"}}}


def encode_tool_response(*responses: ToolResponse) -> dict[str, Any]:
    """Build a toolResponse message."""
    return {"toolResponse": {"functionResponses": [r.to_wire() for r in responses]}}


def encode_tool_call(*calls: ToolCall) -> dict[str, Any]:
    """Build a server-side toolCall message (loopback server, tests)."""
    return {"toolCall": {"functionCalls": [c.to_wire() for c in calls]}}


def encode_model_audio(pcm: bytes, sample_rate: int = 24000) -> dict[str, Any]:
    """Build a server-side audio content message (loopback server, tests)."""
    return {
        "serverContent": {
            "modelTurn": {
                "parts": [
                    {"inlineData": {"mimeType": f"audio/pcm;rate={sample_rate}", "data": _b64encode(pcm)}}
                ]
            }
        }
    }
