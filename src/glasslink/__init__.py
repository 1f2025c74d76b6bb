"""glasslink - realtime voice sessions for AI glasses with gateway tool calls."""

__version__ = "0.1.0"
__author__ = "AI Glasses Team"

from glasslink.config import Config, load_config

__all__ = ["Config", "load_config", "__version__"]
