"""Task queue and usage-limit recovery for interactive coding-assistant sessions."""

__version__ = "0.1.0"
