"""
Base mapper interface.

A mapper turns opaque extracted data into the named accounting fields,
each with a confidence, plus an audit trail of its decisions.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..schemas.documents import MappingResult


class BaseMapper(ABC):
    """Abstract base class for accounting field mappers."""

    @abstractmethod
    def map(self, extracted_data: dict[str, Any], owner_id: str, document_id: str) -> MappingResult:
        """
        Map extracted data to accounting fields.

        Args:
            extracted_data: Structured data returned by the extractor
            owner_id: Tenant whose rules and defaults apply
            document_id: Document being mapped (used for rule applications)

        Returns:
            MappingResult
        """
        pass
