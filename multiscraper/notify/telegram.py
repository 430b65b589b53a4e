"""Telegram Bot API delivery transport."""

import logging
from typing import Any, Optional

import httpx

from multiscraper.config import settings
from multiscraper.errors import DeliveryError
from multiscraper.notify.formatters import OutgoingMessage

logger = logging.getLogger(__name__)


class TelegramTransport:
    """Sends messages to Telegram chats through the Bot API."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self.api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            kwargs: dict[str, Any] = {"timeout": settings.http_request_timeout_seconds}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._http_client = httpx.AsyncClient(**kwargs)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _call(self, chat_id: int, method: str, payload: dict[str, Any]) -> dict:
        client = await self._get_client()
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(chat_id, f"{method} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise DeliveryError(chat_id, f"{method} rejected: {description}")
        return body

    async def send_message(self, chat_id: int, text: str) -> None:
        await self._call(
            chat_id,
            "sendMessage",
            {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
        )

    async def send_photo(self, chat_id: int, photo_url: str, caption: str) -> None:
        await self._call(
            chat_id,
            "sendPhoto",
            {"chat_id": chat_id, "photo": photo_url, "caption": caption, "parse_mode": "Markdown"},
        )

    async def deliver(self, recipient_id: int, message: OutgoingMessage) -> bool:
        """
        Deliver a message, as a photo with caption when it carries an image.

        Returns:
            True if Telegram accepted the message
        """
        if not self.is_configured:
            return False
        try:
            if message.image_url:
                await self.send_photo(recipient_id, message.image_url, message.text)
            else:
                await self.send_message(recipient_id, message.text)
            return True
        except DeliveryError as e:
            logger.warning(f"Telegram delivery failed: {e}")
            return False
