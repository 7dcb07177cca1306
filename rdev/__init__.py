"""Remote Dev: drive a local AI coding tool and git working copies over a WebSocket."""

__version__ = "1.0.0"
