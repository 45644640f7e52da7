"""
Outbound text delivery through the WhatsApp Cloud API (Graph API).
"""

import logging
from typing import Any, Dict, Optional

import httpx

from relay.config import Settings
from relay.errors import ConfigurationError, DeliveryError

logger = logging.getLogger(__name__)

# WhatsApp rejects text bodies longer than this
MAX_TEXT_LENGTH = 4096


class DeliverySender:
    """
    Sends text messages back to WhatsApp users.

    Credentials are checked on every send so a misconfigured deployment fails
    fast without touching the network.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=settings.GRAPH_API_BASE_URL.rstrip("/"),
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this sender created it"""
        if self._owns_client:
            await self.client.aclose()

    @property
    def messages_path(self) -> str:
        return f"/{self.settings.GRAPH_API_VERSION}/{self.settings.WHATSAPP_PHONE_NUMBER_ID}/messages"

    @staticmethod
    def build_payload(to: str, body: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body[:MAX_TEXT_LENGTH]},
        }

    async def send_text(self, to: str, body: str) -> Dict[str, Any]:
        """
        Send a text message.

        Args:
            to: Destination WhatsApp address
            body: Message text

        Returns:
            The provider's JSON response body, unmodified

        Raises:
            ConfigurationError: WHATSAPP_TOKEN or WHATSAPP_PHONE_NUMBER_ID missing
            DeliveryError: Provider returned a non-2xx status or was unreachable
        """
        if not self.settings.WHATSAPP_TOKEN or not self.settings.WHATSAPP_PHONE_NUMBER_ID:
            raise ConfigurationError("WHATSAPP_TOKEN or WHATSAPP_PHONE_NUMBER_ID is not configured")

        logger.debug(f"Sending WhatsApp message: to={to}, chars={len(body)}")

        try:
            response = await self.client.post(
                self.messages_path,
                json=self.build_payload(to, body),
                headers={"Authorization": f"Bearer {self.settings.WHATSAPP_TOKEN}"},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"WhatsApp send request failed: {e}") from e

        if response.is_error:
            raise self._error_from_response(response)

        logger.info(f"WhatsApp message sent: to={to}, status={response.status_code}")
        return response.json()

    @staticmethod
    def _error_from_response(response: httpx.Response) -> DeliveryError:
        """Build a DeliveryError from a Graph API error body."""
        try:
            error = response.json().get("error") or {}
        except (ValueError, AttributeError):
            error = {}

        if not isinstance(error, dict):
            error = {}

        return DeliveryError(
            message=error.get("message") or response.text or "WhatsApp send failed",
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            status_code=response.status_code,
        )
