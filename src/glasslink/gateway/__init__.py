"""Agent gateway client."""

from glasslink.gateway.client import (
    ConversationHistory,
    GatewayClient,
    GatewayStatus,
    mock_gateway_transport,
)

__all__ = [
    "ConversationHistory",
    "GatewayClient",
    "GatewayStatus",
    "mock_gateway_transport",
]
