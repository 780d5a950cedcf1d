"""Outbound Telegram Bot API and WhatsApp Cloud API senders."""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from dipsy.core.config import get_settings
from dipsy.core.logging import logger


class ChannelSendError(Exception):
    """Raised when a messaging API rejects an outbound message."""


TELEGRAM_MESSAGE_LIMIT = 4096


class TelegramClient:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    def is_configured(self) -> bool:
        return self.settings.telegram_enabled()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.settings.telegram_api_base.rstrip('/')}/bot{self.settings.telegram_bot_token}/{method}"
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            response = await client.post(url, json=payload)
        if response.status_code >= 400:
            raise ChannelSendError(f"Telegram {method} failed ({response.status_code}): {response.text[:400]}")
        return response.json()

    async def send_message(self, chat_id: int | str, text: str) -> bool:
        if not self.is_configured():
            logger.info("Telegram not configured; reply not sent", chat_id=str(chat_id))
            return False
        await self._call("sendMessage", {"chat_id": chat_id, "text": text[:TELEGRAM_MESSAGE_LIMIT]})
        return True

    async def send_typing(self, chat_id: int | str) -> None:
        if not self.is_configured():
            return
        try:
            await self._call("sendChatAction", {"chat_id": chat_id, "action": "typing"})
        except (ChannelSendError, httpx.HTTPError) as exc:
            logger.warning("Telegram typing action failed", chat_id=str(chat_id), error=str(exc))


class WhatsAppClient:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    def is_configured(self) -> bool:
        return self.settings.whatsapp_enabled()

    async def send_text(self, to: str, body: str) -> Optional[str]:
        if not self.is_configured():
            logger.info("WhatsApp not configured; reply not sent", to=to)
            return None
        url = f"{self.settings.whatsapp_api_base.rstrip('/')}/{self.settings.whatsapp_phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        headers = {"Authorization": f"Bearer {self.settings.whatsapp_access_token}"}
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            response = await client.post(url, json=payload, headers=headers)
        if response.status_code >= 400:
            raise ChannelSendError(f"WhatsApp send failed ({response.status_code}): {response.text[:400]}")
        messages = response.json().get("messages") or [{}]
        return messages[0].get("id")


telegram_client = TelegramClient()
whatsapp_client = WhatsAppClient()
