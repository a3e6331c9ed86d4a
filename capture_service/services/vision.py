"""Vision analyzer boundary and its HTTP implementation."""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from capture_service.config import get_settings
from capture_service.errors import AnalysisError, PermanentAnalysisError, TransientAnalysisError
from capture_service.schemas.schemas import AnalysisContext, VisionResult

logger = logging.getLogger(__name__)

settings = get_settings()

RETRYABLE_STATUS_CODES = {408, 425, 429}


class VisionAnalyzer(Protocol):
    """Anything that can turn an image reference into a VisionResult."""

    model_name: str
    model_version: str

    async def analyze(
        self,
        image_url: str,
        context: Optional[AnalysisContext] = None,
    ) -> VisionResult:
        """
        Analyze one image.

        Raises:
            AnalysisError: with `retryable` set according to whether a later
                attempt can succeed
        """
        ...


def classify_status(status_code: int) -> bool:
    """Whether an HTTP error status from the analyzer is worth retrying."""
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


class HttpVisionAnalyzer:
    """Calls a remote vision endpoint over HTTP."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        model_name: str = "gemini",
        model_version: str = "unknown",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.model_name = model_name
        self.model_version = model_version

        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{settings.app_name}/1.0",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> "HttpVisionAnalyzer":
        return cls(
            endpoint=settings.vision_endpoint,
            api_key=settings.vision_api_key,
            model_name=settings.vision_model_name,
            model_version=settings.vision_model_version,
            timeout=settings.vision_timeout_seconds,
        )

    async def analyze(
        self,
        image_url: str,
        context: Optional[AnalysisContext] = None,
    ) -> VisionResult:
        payload = {
            "image_url": image_url,
            "model": self.model_version,
            "context": context.model_dump(mode="json", exclude_none=True) if context else {},
        }

        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise TransientAnalysisError(f"Vision request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientAnalysisError(f"Vision request failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            body = response.json()
        except ValueError as e:
            raise PermanentAnalysisError(f"Vision response is not valid JSON: {e}") from e

        try:
            return VisionResult.model_validate(body)
        except ValidationError as e:
            raise PermanentAnalysisError(f"Vision response does not match the result schema: {e}") from e

    def _error_from_response(self, response: httpx.Response) -> AnalysisError:
        retryable = classify_status(response.status_code)
        message = f"Vision endpoint returned HTTP {response.status_code}"

        # The analyzer may state explicitly whether the failure is permanent
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if isinstance(body.get("retryable"), bool):
                retryable = body["retryable"]
            detail = body.get("error") or body.get("detail")
            if detail:
                message = f"{message}: {detail}"

        logger.debug(f"{message} (retryable={retryable})")
        return AnalysisError(message, retryable=retryable)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
