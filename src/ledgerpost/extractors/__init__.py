"""
Extraction collaborators.

Provides:
- BaseExtractor interface
- HTTP client for the extraction service
- Extraction error hierarchy
"""

from .base import (
    BaseExtractor,
    ExtractionAPIError,
    ExtractionConnectionError,
    ExtractionError,
)
from .http_client import HttpExtractionClient

__all__ = [
    "BaseExtractor",
    "ExtractionAPIError",
    "ExtractionConnectionError",
    "ExtractionError",
    "HttpExtractionClient",
]
