"""Pytest configuration and fixtures for glasslink tests."""

from __future__ import annotations

import asyncio
import io

import httpx
import pytest

from glasslink.config import Config
from glasslink.gateway.client import GatewayClient, mock_gateway_transport
from glasslink.live.session import GeminiSession
from glasslink.live.transport import MockTransport


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="Run slow tests",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure test markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Skip slow tests unless --slow flag is set."""
    if config.getoption("--slow"):
        return
    skip_slow = pytest.mark.skip(reason="Need --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


class ControlledExecutor:
    """Task executor whose replies the test releases by hand."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._pending: dict[str, asyncio.Future] = {}
        self.started = asyncio.Event()

    async def execute(self, task: str) -> str:
        self.calls.append(task)
        future = asyncio.get_running_loop().create_future()
        self._pending[task] = future
        self.started.set()
        return await future

    def reply(self, task: str, text: str) -> None:
        self._pending.pop(task).set_result(text)

    def fail(self, task: str, error: Exception) -> None:
        self._pending.pop(task).set_exception(error)


@pytest.fixture
def config() -> Config:
    """Get test configuration."""
    cfg = Config()
    cfg.mock_mode = True
    cfg.device.mode = "development"
    cfg.device.log_level = "DEBUG"
    cfg.gemini.api_key = "test-key"
    cfg.gateway.token = "test-token"
    return cfg


@pytest.fixture
async def http_client():
    """HTTP client answering like the gateway."""
    client = httpx.AsyncClient(transport=mock_gateway_transport())
    yield client
    await client.aclose()


@pytest.fixture
def gateway(config: Config, http_client: httpx.AsyncClient) -> GatewayClient:
    """Gateway client backed by the canned gateway."""
    return GatewayClient(config.gateway, http_client=http_client)


@pytest.fixture
def transport() -> MockTransport:
    """Loopback transport that acknowledges setup."""
    return MockTransport(auto_setup_complete=True)


@pytest.fixture
async def session(config: Config, gateway: GatewayClient, transport: MockTransport):
    """Session wired to the loopback transport, not yet connected."""
    live = GeminiSession(config, gateway, transport_factory=lambda: transport)
    yield live
    await live.disconnect()


@pytest.fixture
async def ready_session(session: GeminiSession):
    """Session that has completed the setup handshake."""
    await session.connect()
    await session.wait_until_ready(timeout=1.0)
    return session


@pytest.fixture
def executor() -> ControlledExecutor:
    return ControlledExecutor()


# Mock fixtures


@pytest.fixture
def mock_audio_chunk() -> bytes:
    """Create mock audio chunk."""
    # 100ms of 16kHz mono 16-bit PCM silence
    return bytes(16000 * 2 // 10)


@pytest.fixture
def mock_image_bytes() -> bytes:
    """Create mock JPEG image."""
    from PIL import Image

    img = Image.new("RGB", (640, 480), color=(73, 109, 137))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=85)
    return buffer.getvalue()
