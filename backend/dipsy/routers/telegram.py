"""Telegram Bot API webhook. Always acknowledges; the reply is sent from a background task."""
from __future__ import annotations

import hmac

from fastapi import APIRouter, BackgroundTasks, Header, Request
from pydantic import ValidationError

from dipsy.core.config import get_settings
from dipsy.core.logging import logger
from dipsy.models.channels import Channel, TelegramMessage, TelegramUpdate
from dipsy.services.channel_clients import telegram_client
from dipsy.services.dipsy import dipsy_service

router = APIRouter(prefix="/telegram", tags=["telegram"])


async def process_telegram_message(message: TelegramMessage) -> None:
    chat_id = message.chat.id
    try:
        await telegram_client.send_typing(chat_id)
        answer = await dipsy_service.handle_channel_message(
            channel=Channel.TELEGRAM.value,
            external_id=str(chat_id),
            text=message.text or "",
            has_photo=bool(message.photo),
        )
        await telegram_client.send_message(chat_id, answer)
    except Exception as exc:
        logger.exception("Telegram message processing failed", chat_id=str(chat_id), error=str(exc))


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    secret_token: str | None = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    settings = get_settings()
    expected = (settings.telegram_webhook_secret or "").strip()
    if expected and not hmac.compare_digest(secret_token or "", expected):
        logger.warning("Telegram webhook secret mismatch")
        return {"ok": True}

    try:
        update = TelegramUpdate.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("Malformed Telegram update", error=str(exc)[:400])
        return {"ok": True}

    if update.message is None:
        logger.info("Telegram update without message ignored", update_id=update.update_id)
        return {"ok": True}

    logger.info(
        "Telegram message received",
        update_id=update.update_id,
        chat_id=str(update.message.chat.id),
        has_text=bool(update.message.text),
        has_photo=bool(update.message.photo),
    )
    background_tasks.add_task(process_telegram_message, update.message)
    return {"ok": True}
