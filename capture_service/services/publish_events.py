"""Client for the stories service that mirrors public captures into stories."""

import logging
from typing import Optional

import httpx

from capture_service.config import get_settings
from capture_service.schemas.schemas import CapturePublishedEvent, WebhookResponse

logger = logging.getLogger(__name__)

settings = get_settings()

PUBLISHED_PATH = "/api/v1/webhooks/capture-published"
UNPUBLISHED_PATH = "/api/v1/webhooks/capture-unpublished"


class StoriesWebhookClient:
    """Sends capture visibility events to the stories service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                "User-Agent": f"{settings.app_name}/1.0",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> "StoriesWebhookClient":
        return cls(
            base_url=settings.stories_service_url,
            timeout=settings.stories_webhook_timeout_seconds,
        )

    async def send_capture_published(self, event: CapturePublishedEvent) -> WebhookResponse:
        return await self._send(PUBLISHED_PATH, "capture.published", event)

    async def send_capture_unpublished(self, event: CapturePublishedEvent) -> WebhookResponse:
        return await self._send(UNPUBLISHED_PATH, "capture.unpublished", event)

    async def _send(self, path: str, event_name: str, event: CapturePublishedEvent) -> WebhookResponse:
        """
        Post one event.

        Raises:
            httpx.HTTPStatusError: on a non-2xx response
            httpx.RequestError: if the stories service is unreachable
        """
        url = f"{self.base_url}{path}"
        logger.info(f"Sending {event_name} webhook for capture {event.capture_id} to {url}")

        response = await self._client.post(
            url,
            json=event.model_dump(mode="json"),
            headers={"X-Webhook-Event": event_name},
        )
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            body = {}
        ack = WebhookResponse.model_validate(body if isinstance(body, dict) else {})
        logger.info(f"Webhook {event_name} for capture {event.capture_id} accepted: {ack.message}")
        return ack

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
