"""WhatsApp Cloud API webhook: verification handshake plus signed message delivery."""
from __future__ import annotations

import hashlib
import hmac
import json

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from dipsy.core.config import get_settings
from dipsy.core.logging import logger
from dipsy.models.channels import Channel, WhatsAppMessage, WhatsAppWebhook
from dipsy.services.channel_clients import whatsapp_client
from dipsy.services.dipsy import dipsy_service

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


def signature_valid(body: bytes, header: str | None, app_secret: str) -> bool:
    if not header or not header.startswith("sha256="):
        return False
    digest = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(header.split("=", 1)[1], digest)


async def process_whatsapp_message(message: WhatsAppMessage) -> None:
    sender = message.from_number.lstrip("+")
    try:
        answer = await dipsy_service.handle_channel_message(
            channel=Channel.WHATSAPP.value,
            external_id=sender,
            text=message.text.body if message.text else "",
            has_photo=message.type in {"image", "document"},
        )
        await whatsapp_client.send_text(sender, answer)
    except Exception as exc:
        logger.exception("WhatsApp message processing failed", sender=sender, error=str(exc))


@router.get("/webhook")
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    expected = (get_settings().whatsapp_verify_token or "").strip()
    if mode == "subscribe" and expected and verify_token and hmac.compare_digest(verify_token, expected):
        return PlainTextResponse(challenge or "")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook")
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: str | None = Header(default=None, alias="X-Hub-Signature-256"),
):
    body = await request.body()
    app_secret = (get_settings().whatsapp_app_secret or "").strip()
    if app_secret and not signature_valid(body, signature, app_secret):
        logger.warning("WhatsApp webhook signature rejected")
        return {"ok": True}

    try:
        payload = WhatsAppWebhook.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        logger.warning("Malformed WhatsApp payload", error=str(exc)[:400])
        return {"ok": True}

    queued = 0
    for entry in payload.entry:
        for change in entry.changes:
            for message in change.value.messages:
                background_tasks.add_task(process_whatsapp_message, message)
                queued += 1
    logger.info("WhatsApp webhook received", messages=queued)
    return {"ok": True}
