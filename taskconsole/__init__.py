"""Task statistics, field visitors, key handling and configuration for an async task console."""

__version__ = "0.1.0"
__all__ = ["config", "input", "intern", "options", "stats", "visitors"]