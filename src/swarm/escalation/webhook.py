"""Outbound webhook notifications for blocked workflows."""

import logging
from typing import Any, Dict, Optional

import httpx

from src.swarm.errors import EscalationFailure


logger = logging.getLogger(__name__)


class WebhookDeliveryError(EscalationFailure):
    """Raised when a webhook cannot be delivered.

    Attributes:
        url: The webhook URL.
        status_code: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__("webhook", message)


class WebhookNotifier:
    """Posts JSON payloads to webhook URLs.

    Example:
        >>> notifier = WebhookNotifier()
        >>> await notifier.send(url, {"reason": "QA Failed", "details": {}, ...})
        >>> await notifier.close()
    """

    def __init__(
        self,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def send(self, url: str, payload: Dict[str, Any]) -> None:
        """POST ``payload`` to ``url``.

        Raises:
            WebhookDeliveryError: On a transport error or a non-2xx response.
        """
        try:
            response = await self.client.post(url, json=payload)
        except httpx.RequestError as e:
            raise WebhookDeliveryError(
                f"Webhook request failed: {e}",
                url=url,
            ) from e

        if response.status_code >= 300:
            raise WebhookDeliveryError(
                f"Webhook returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        logger.info(
            "Webhook delivered",
            extra={"url": url, "status_code": response.status_code},
        )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
