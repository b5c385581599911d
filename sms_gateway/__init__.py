"""SMS gateway: HTTP message API with a real-time event channel."""

__version__ = "1.0.0"
