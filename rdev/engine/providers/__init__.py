"""Provider abstraction for the external AI tool."""
from .base import Provider
from .gemini_provider import GeminiProvider

__all__ = [
    "Provider",
    "GeminiProvider",
]
