"""
Base extractor interface.

An extractor turns a stored file reference into structured data. The
pipeline treats the returned data as an opaque blob.
"""

from abc import ABC, abstractmethod

from ..schemas.documents import ExtractionResult


class ExtractionError(Exception):
    """Base exception for extraction errors."""

    pass


class ExtractionAPIError(ExtractionError):
    """Extraction service returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Extraction API error {status_code}: {message}")


class ExtractionConnectionError(ExtractionError):
    """Failed to reach the extraction service."""

    pass


class BaseExtractor(ABC):
    """Abstract base class for document extractors."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Extractor name, recorded as extraction_method when the service omits it."""
        pass

    @abstractmethod
    def extract(self, file_reference: str) -> ExtractionResult:
        """
        Extract structured data from a stored file.

        Args:
            file_reference: Opaque reference to the stored file

        Returns:
            ExtractionResult

        Raises:
            ExtractionError: If extraction fails
        """
        pass

    def test_connection(self) -> bool:
        """Check that the extractor is usable. Defaults to True."""
        return True
