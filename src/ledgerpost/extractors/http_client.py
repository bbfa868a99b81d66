"""
HTTP client for the extraction service.

POST {base_url}/extract with {"file_url": ...}; the response body carries
extracted_data, extraction_method and total_cost.
"""

import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.documents import ExtractionResult
from .base import BaseExtractor, ExtractionAPIError, ExtractionConnectionError, ExtractionError

logger = logging.getLogger(__name__)


class HttpExtractionClient(BaseExtractor):
    """
    Extraction service client.

    Features:
    - Bearer token auth
    - Automatic retry with backoff on 429/5xx
    """

    DEFAULT_TIMEOUT = 120

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the extraction client.

        Args:
            base_url: Extraction service URL (e.g., "http://localhost:9000")
            token: Optional bearer token
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @property
    def name(self) -> str:
        return "http"

    def _request(self, method: str, endpoint: str, json_data: dict | None = None) -> requests.Response:
        """Make a request with error mapping."""
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(method, url, json=json_data, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise ExtractionConnectionError(
                f"Failed to connect to extraction service at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            raise ExtractionConnectionError(f"Extraction request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"Extraction request failed: {e}") from e

        if not response.ok:
            raise ExtractionAPIError(
                status_code=response.status_code,
                message=response.reason or "",
                response_body=response.text,
            )
        return response

    def extract(self, file_reference: str) -> ExtractionResult:
        logger.info("Requesting extraction for %s", file_reference)
        response = self._request("POST", "/extract", {"file_url": file_reference})

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as e:
            raise ExtractionError(f"Extraction service returned invalid JSON: {e}") from e

        extracted = payload.get("extracted_data")
        if not isinstance(extracted, dict):
            raise ExtractionError("Extraction response is missing extracted_data")

        return ExtractionResult(
            extracted_data=extracted,
            extraction_method=payload.get("extraction_method") or self.name,
            total_cost=float(payload.get("total_cost") or 0.0),
        )

    def test_connection(self) -> bool:
        """GET {base_url}/health."""
        try:
            self._request("GET", "/health")
            return True
        except ExtractionError:
            return False
