"""Tests for the realtime wire codec."""

import base64
import json

import pytest

from glasslink.config import GeminiConfig
from glasslink.errors import DecodeError
from glasslink.live.protocol import (
    EXECUTE_DECLARATION,
    GoAway,
    ModelAudioChunk,
    ModelTranscript,
    SetupComplete,
    ToolCall,
    ToolCallCancellation,
    ToolCallRequest,
    ToolResponse,
    TurnComplete,
    Unknown,
    build_setup_message,
    decode_frame,
    encode_audio,
    encode_model_audio,
    encode_tool_call,
    encode_tool_response,
    encode_video,
)


class TestDecode:
    """Inbound frame decoding."""

    def test_setup_complete(self):
        assert decode_frame('{"setupComplete": {}}') == [SetupComplete()]

    def test_binary_frame_decodes_like_text(self):
        message = {"toolCallCancellation": {"ids": ["a", "b"]}}
        text = decode_frame(json.dumps(message))
        binary = decode_frame(json.dumps(message).encode("utf-8"))

        assert text == binary == [ToolCallCancellation(ids=("a", "b"))]

    def test_model_audio(self):
        pcm = b"\x01\x00\x02\x00"
        messages = decode_frame(json.dumps(encode_model_audio(pcm)))

        assert messages == [ModelAudioChunk(data=pcm, mime_type="audio/pcm;rate=24000")]

    def test_server_content_order(self):
        frame = {
            "serverContent": {
                "inputTranscription": {"text": "what is this"},
                "modelTurn": {
                    "parts": [
                        {"text": "thinking...", "thought": True},
                        {"text": "A mug."},
                        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AAA="}},
                    ]
                },
                "outputTranscription": {"text": "A mug"},
                "turnComplete": True,
            }
        }

        messages = decode_frame(json.dumps(frame))

        assert messages == [
            ModelTranscript(text="what is this", role="user"),
            ModelTranscript(text="A mug.", is_final=True),
            ModelAudioChunk(data=b"\x00\x00", mime_type="audio/pcm;rate=24000"),
            ModelTranscript(text="A mug"),
            TurnComplete(),
        ]

    def test_interrupted_wins_over_turn_complete(self):
        frame = {"serverContent": {"interrupted": True, "turnComplete": True}}
        assert decode_frame(json.dumps(frame)) == [TurnComplete(interrupted=True)]

    def test_non_audio_inline_data_ignored(self):
        frame = {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "AA=="}}]}}}
        # Nothing usable in the frame
        assert decode_frame(json.dumps(frame)) == [Unknown(keys=("serverContent",))]

    def test_tool_call(self):
        frame = {
            "toolCall": {
                "functionCalls": [
                    {"id": "123", "name": "execute", "args": {"task": "  send a text to Alice "}},
                    {"id": "124", "name": "execute"},
                ]
            }
        }

        [request] = decode_frame(json.dumps(frame))

        assert isinstance(request, ToolCallRequest)
        assert [c.id for c in request.calls] == ["123", "124"]
        assert request.calls[0].task == "send a text to Alice"
        assert request.calls[1].task == ""

    def test_go_away(self):
        assert decode_frame('{"goAway": {"timeLeft": "5s"}}') == [GoAway(reason="time left 5s")]
        assert decode_frame('{"goAway": {}}') == [GoAway()]

    def test_unknown(self):
        assert decode_frame('{"usageMetadata": {}, "b": 1}') == [Unknown(keys=("b", "usageMetadata"))]

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "[1, 2]",
            b"\xff\xfe",
            '{"serverContent": "oops"}',
            '{"toolCall": {"functionCalls": [{"name": "execute"}]}}',
            '{"toolCall": {"functionCalls": [{"id": "1", "args": "x"}]}}',
            '{"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm", "data": "***"}}]}}}',
        ],
    )
    def test_malformed(self, frame):
        with pytest.raises(DecodeError):
            decode_frame(frame)


class TestEncode:
    """Outbound message encoding."""

    def test_setup_message(self):
        config = GeminiConfig(model="models/test", voice="Puck", temperature=0.2)

        setup = build_setup_message(config)["setup"]

        assert setup["model"] == "models/test"
        assert setup["generationConfig"]["responseModalities"] == ["AUDIO"]
        assert setup["generationConfig"]["temperature"] == 0.2
        assert setup["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]["voiceName"] == "Puck"
        assert setup["systemInstruction"]["parts"][0]["text"] == config.system_prompt
        assert setup["tools"] == [{"functionDeclarations": [EXECUTE_DECLARATION]}]
        assert setup["inputAudioTranscription"] == {}
        assert setup["outputAudioTranscription"] == {}

    def test_setup_declares_single_execute_tool(self):
        declaration = build_setup_message(GeminiConfig())["setup"]["tools"][0]["functionDeclarations"]

        assert len(declaration) == 1
        assert declaration[0]["name"] == "execute"
        assert declaration[0]["parameters"]["type"] == "object"
        assert declaration[0]["parameters"]["properties"]["task"]["type"] == "string"
        assert declaration[0]["parameters"]["required"] == ["task"]

    def test_setup_without_transcription(self):
        config = GeminiConfig(input_transcription=False, output_transcription=False)
        setup = build_setup_message(config)["setup"]

        assert "inputAudioTranscription" not in setup
        assert "outputAudioTranscription" not in setup
        assert "speechConfig" not in setup["generationConfig"]

    def test_audio_envelope(self):
        message = encode_audio(b"\x00\x01", 16000)

        assert message == {
            "realtimeInput": {"audio": {"data": "AAE=", "mimeType": "audio/pcm;rate=16000"}}
        }

    def test_video_envelope(self, mock_image_bytes):
        message = encode_video(mock_image_bytes)
        video = message["realtimeInput"]["video"]

        assert video["mimeType"] == "image/jpeg"
        assert base64.b64decode(video["data"]) == mock_image_bytes

    def test_tool_call_and_response_shapes(self):
        call = ToolCall(id="123", name="execute", args={"task": "send a text to Alice"})
        response = ToolResponse(id="123", output="Message sent.")

        assert encode_tool_call(call) == {
            "toolCall": {
                "functionCalls": [
                    {"id": "123", "name": "execute", "args": {"task": "send a text to Alice"}}
                ]
            }
        }
        assert encode_tool_response(response) == {
            "toolResponse": {
                "functionResponses": [
                    {"id": "123", "name": "execute", "response": {"output": "Message sent."}}
                ]
            }
        }

    def test_tool_call_decodes_back(self):
        call = ToolCall(id="123", name="execute", args={"task": "send a text to Alice"})
        assert decode_frame(json.dumps(encode_tool_call(call))) == [ToolCallRequest(calls=(call,))]
