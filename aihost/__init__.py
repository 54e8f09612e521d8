"""AI provider plugin host."""

__version__ = "0.1.0"
