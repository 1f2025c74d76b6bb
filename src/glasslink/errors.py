"""Error taxonomy for glasslink.

Transport-level failures end a session attempt. Everything else (a bad
frame, a failed or unknown tool call) is recovered locally and surfaced
through the protocol.
"""

from __future__ import annotations


class GlassLinkError(Exception):
    """Base class for glasslink errors."""


class TransportError(GlassLinkError):
    """Connection to the voice service failed or dropped."""


class DecodeError(GlassLinkError):
    """A single inbound frame could not be decoded."""


class ProtocolViolation(GlassLinkError):
    """An operation was attempted in a state that does not allow it."""


class NotReady(ProtocolViolation):
    """Media or tool responses sent before the session is ready."""


class AlreadyConnected(ProtocolViolation):
    """connect() called while an attempt is already in progress."""


class GatewayError(GlassLinkError):
    """Tool gateway call failed."""


class GatewayUnreachable(GatewayError):
    """Gateway could not be reached (DNS, refused, reset)."""


class GatewayTimeout(GatewayError):
    """Gateway did not answer within the configured timeout."""


class GatewayAuthError(GatewayError):
    """Gateway rejected the credentials."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Gateway rejected credentials (HTTP {status_code})")


class GatewayHTTPError(GatewayError):
    """Gateway answered with a non-2xx status or an unusable body."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Gateway returned HTTP {status_code}")


class UnknownTool(GlassLinkError):
    """Model asked for a tool that is not declared."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


__all__ = [
    "GlassLinkError",
    "TransportError",
    "DecodeError",
    "ProtocolViolation",
    "NotReady",
    "AlreadyConnected",
    "GatewayError",
    "GatewayUnreachable",
    "GatewayTimeout",
    "GatewayAuthError",
    "GatewayHTTPError",
    "UnknownTool",
]
