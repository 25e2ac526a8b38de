"""
Client for the messaging provider's REST API.

Message sending relays automated responder replies back into the customer's
chat; webhook registration points the provider at a company's webhook URI.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from inbox_bridge.errors import ExternalCallError
from inbox_bridge.schemas import (
    SendMessageRequest,
    SendMessageResponse,
    WebhookSubscriptionRequest,
    WebhookSubscriptionResponse,
)

logger = logging.getLogger(__name__)


class MessagingClient:
    """
    Thin async wrapper over the provider API.

    Args:
        base_url: API root, e.g. https://api.wazzup24.com/v3
        timeout: per-request timeout in seconds
        transport: optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def send_message(self, api_key: str, request: SendMessageRequest) -> SendMessageResponse:
        """
        Send a message through the provider.

        Raises:
            ExternalCallError: provider unreachable, non-2xx or unreadable response
        """
        payload = request.model_dump(by_alias=True, exclude_none=True)
        logger.debug(f"Sending message to chat {request.chat_id} via channel {request.channel_id}")
        try:
            response = await self._client.post(
                "/message",
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            raise ExternalCallError(f"Messaging API request failed: {e}") from e

        if response.is_error:
            raise ExternalCallError(f"Messaging API returned error status: {response.status_code}")

        if not response.content:
            return SendMessageResponse()
        try:
            return SendMessageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ExternalCallError(f"Failed to parse messaging API response: {e}") from e

    async def connect_webhooks(self, api_key: str, request: WebhookSubscriptionRequest) -> WebhookSubscriptionResponse:
        """
        Register the webhook URI and event subscriptions for the account behind api_key.

        Raises:
            ExternalCallError: provider unreachable, non-2xx or unreadable response
        """
        logger.info(f"Registering webhooks at {request.webhooks_uri}")
        try:
            response = await self._client.patch(
                "/webhooks",
                json=request.model_dump(by_alias=True),
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            raise ExternalCallError(f"Webhook registration request failed: {e}") from e

        if response.is_error:
            logger.error(f"Webhook registration failed: {response.status_code} - {response.text}")
            raise ExternalCallError(f"Webhook registration returned error status: {response.status_code}")

        if not response.content:
            return WebhookSubscriptionResponse(ok=True)
        try:
            return WebhookSubscriptionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ExternalCallError(f"Failed to parse webhook registration response: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
