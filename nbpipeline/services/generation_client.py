"""Client for the external NB generation service."""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from nbpipeline.config import settings
from nbpipeline.exceptions import ProviderFailure

logger = logging.getLogger(__name__)


class GenerationProvider(Protocol):
    """Runs the NB protocol for a run and persists its NB results."""

    def execute_protocol(self, run_id: int) -> bool: ...


class _RetryableStatus(Exception):
    """Transient HTTP status from the generation service."""


class GenerationClient:
    """HTTP client for the NB protocol service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the generation client."""
        self.base_url = (base_url or settings.GENERATION_BASE_URL).rstrip("/")
        self.api_key = settings.GENERATION_API_KEY if api_key is None else api_key
        self.timeout = settings.GENERATION_TIMEOUT if timeout is None else timeout
        self.transport = transport

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((_RetryableStatus, httpx.TransportError)),
        reraise=True,
    )
    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(f"{self.base_url}{path}", headers=self._build_headers(), json=payload)

            if response.status_code in [429, 500, 502, 503]:
                logger.warning(f"Retryable error {response.status_code} from generation service")
                raise _RetryableStatus(f"Retryable error: {response.status_code}")

            response.raise_for_status()
            return response.json()

    def execute_protocol(self, run_id: int) -> bool:
        """
        Generate all NBs for a run.

        Returns:
            True if every NB was generated and stored

        Raises:
            ProviderFailure: If the service cannot be reached or rejects the request
        """
        logger.info(f"Requesting NB protocol execution for run {run_id}")
        try:
            result = self._post(f"/runs/{run_id}/protocol", {"run_id": run_id})
        except (_RetryableStatus, httpx.HTTPError) as e:
            raise ProviderFailure(f"NB protocol request failed for run {run_id}: {e}", provider="generation") from e

        success = bool(result.get("success"))
        logger.info(f"NB protocol for run {run_id} finished, success={success}")
        return success
