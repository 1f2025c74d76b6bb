"""Configuration management for glasslink."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant running on a pair of smart glasses. "
    "You can see what the wearer sees and hear what they say. Keep spoken "
    "answers short. When the wearer asks you to do something in the real "
    "world (send a message, search the web, add a reminder, control an app), "
    "call the execute tool with a clear natural-language description of the "
    "task, then tell the wearer the result."
)

LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


class DeviceConfig(BaseModel):
    """Device configuration."""

    name: str = "glasslink"
    mode: Literal["production", "development"] = "development"
    log_level: str = "INFO"


class GeminiConfig(BaseModel):
    """Realtime voice service configuration."""

    api_key: str | None = None
    endpoint: str = LIVE_ENDPOINT
    model: str = "models/gemini-2.5-flash-native-audio-preview-09-2025"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    voice: str | None = None
    response_modalities: list[str] = Field(default_factory=lambda: ["AUDIO"])
    temperature: float | None = None
    input_transcription: bool = True
    output_transcription: bool = True
    connect_timeout_seconds: float = 15.0


class MediaConfig(BaseModel):
    """Audio/video stream configuration."""

    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    chunk_size_ms: int = 100
    video_min_interval_seconds: float = 1.0
    jpeg_quality: int = Field(default=50, ge=1, le=95)

    @property
    def chunk_samples(self) -> int:
        """Samples per outbound audio envelope."""
        return self.input_sample_rate * self.chunk_size_ms // 1000


class SpeakingConfig(BaseModel):
    """Model-speaking detection policy."""

    # "marker": upstream turnComplete/interrupted only
    # "timeout": silence timeout only
    # "either": whichever comes first
    turn_end_policy: Literal["marker", "timeout", "either"] = "either"
    silence_timeout_seconds: float = 0.6
    mute_mic_while_speaking: bool = False


class GatewayConfig(BaseModel):
    """Tool-execution gateway configuration."""

    host: str = "http://localhost"
    port: int = Field(default=18789, ge=1, le=65535)
    token: str | None = None
    model: str = "openclaw"
    timeout_seconds: float = 30.0
    max_history: int = Field(default=20, ge=2)
    session_key_prefix: str = "agent:main:glass"

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("Must start with http:// or https://")
        return value

    @property
    def base_url(self) -> str:
        """Gateway origin, host plus port."""
        return f"{self.host}:{self.port}"

    @property
    def completions_url(self) -> str:
        """Chat completions endpoint."""
        return f"{self.base_url}/v1/chat/completions"


class Config(BaseSettings):
    """Main configuration for glasslink."""

    model_config = SettingsConfigDict(
        env_prefix="GLASSLINK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    device: DeviceConfig = Field(default_factory=DeviceConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    speaking: SpeakingConfig = Field(default_factory=SpeakingConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    # Loopback transport and canned gateway, no network
    mock_mode: bool = False

    @classmethod
    def from_yaml(cls, path: Path | str) -> Config:
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)


def load_config(
    config_path: Path | str | None = None,
    env_override: bool = True,
) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file. If None, searches standard locations.
        env_override: Whether to allow environment variables to override config.

    Returns:
        Loaded configuration.
    """
    search_paths = [
        Path("/etc/glasslink/config.yaml"),
        Path.home() / ".config" / "glasslink" / "config.yaml",
        Path("glasslink.yaml"),
    ]

    if config_path:
        search_paths.insert(0, Path(config_path))

    config_file = next((p for p in search_paths if p.exists()), None)
    config = Config.from_yaml(config_file) if config_file else Config()

    if env_override:
        api_key = os.environ.get("GLASSLINK_GEMINI_API_KEY")
        if api_key:
            config.gemini.api_key = api_key

        token = os.environ.get("GLASSLINK_GATEWAY_TOKEN")
        if token:
            config.gateway.token = token

        if os.environ.get("GLASSLINK_MOCK_MODE", "").lower() in ("1", "true", "yes"):
            config.mock_mode = True

    return config


def get_default_config() -> dict[str, Any]:
    """Get default configuration as dictionary."""
    return Config().model_dump()
