"""Common utilities for glasslink."""

from glasslink.common.logging import get_logger, setup_logging
from glasslink.common.events import Event, EventBus, StateStream

__all__ = [
    "get_logger",
    "setup_logging",
    "Event",
    "EventBus",
    "StateStream",
]
