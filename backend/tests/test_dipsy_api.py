"""HTTP surface tests: auth, web chat, parsed documents, contacts and channel webhooks."""
from __future__ import annotations

import hashlib
import hmac
import json
import os
import sys
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_dipsy"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DIPSY_DB_PATH"] = str(TMP / "dipsy.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["HOS_RANKING_URL"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["WHATSAPP_ACCESS_TOKEN"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dipsy.core.config import get_settings  # noqa: E402
from dipsy.main import app  # noqa: E402
from dipsy.models.dispatch import DriverRecord, LoadRecord  # noqa: E402
from dipsy.services.channel_clients import telegram_client, whatsapp_client  # noqa: E402
from dipsy.services.completion import CompletionMessage, ToolCall  # noqa: E402
from dipsy.services.dipsy import PHOTO_ACK, UNAVAILABLE_ANSWER, dipsy_service, onboarding_message  # noqa: E402


RUN = uuid.uuid4().hex[:8]
TENANT = f"api_{RUN}"
OTHER_TENANT = f"api_other_{RUN}"
DISPATCHER = f"dispatcher-{RUN}"
DRIVER_USER = f"driver-app-{RUN}"
ORPHAN = f"orphan-{RUN}"
TOKENS = ",".join(
    [
        f"dispatch-token-{RUN}:{DISPATCHER}",
        f"driver-token-{RUN}:{DRIVER_USER}",
        f"orphan-token-{RUN}:{ORPHAN}",
    ]
)
WA_SECRET = "wa-app-secret"

store = dipsy_service.store
store.add_membership(DISPATCHER, TENANT, role="dispatcher", is_default=True)
store.add_membership(DRIVER_USER, TENANT, role="driver")

client = TestClient(app)


def _headers(token: str = f"dispatch-token-{RUN}", **extra: str) -> dict:
    return {"Authorization": f"Bearer {token}", **extra}


class ScriptedCompletion:
    def __init__(self, *replies: CompletionMessage) -> None:
        self.replies = list(replies)
        self.calls = 0

    async def complete(self, messages, tools):
        self.calls += 1
        if not self.replies:
            return CompletionMessage(content="Done.")
        return self.replies.pop(0)


@pytest.fixture(autouse=True)
def _channels(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "api_tokens", TOKENS)
    monkeypatch.setattr(settings, "telegram_webhook_secret", "")
    monkeypatch.setattr(settings, "whatsapp_app_secret", WA_SECRET)
    monkeypatch.setattr(settings, "whatsapp_verify_token", "verify-me")
    monkeypatch.setattr(dipsy_service, "completion", None)

    sent = {"telegram": [], "whatsapp": []}

    async def _send_message(chat_id, text):
        sent["telegram"].append((str(chat_id), text))
        return True

    async def _send_typing(chat_id):
        return None

    async def _send_text(to, body):
        sent["whatsapp"].append((to, body))
        return "wamid.test"

    monkeypatch.setattr(telegram_client, "send_message", _send_message)
    monkeypatch.setattr(telegram_client, "send_typing", _send_typing)
    monkeypatch.setattr(whatsapp_client, "send_text", _send_text)
    return sent


def _chat_id() -> int:
    return uuid.uuid4().int % 10**9


def _telegram_update(chat_id: int, text: str | None = None, **message) -> dict:
    payload = {"message_id": 1, "chat": {"id": chat_id}, "from": {"id": chat_id, "first_name": "Luis"}, **message}
    if text is not None:
        payload["text"] = text
    return {"update_id": _chat_id(), "message": payload}


def _whatsapp_body(sender: str, text: str) -> bytes:
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messages": [{"from": sender, "id": f"wamid.{uuid.uuid4().hex}", "type": "text", "text": {"body": text}}]
                        },
                    }
                ],
            }
        ],
    }
    return json.dumps(payload).encode("utf-8")


def _sign(body: bytes) -> str:
    return "sha256=" + hmac.new(WA_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _dispatched_driver(reference: str) -> tuple[dict, dict]:
    load = store.insert_load(
        TENANT,
        LoadRecord(id=uuid.uuid4().hex, reference=reference, origin="Stockton, CA", destination="Boise, ID", rate=2600),
    )
    driver = store.insert_driver(TENANT, DriverRecord(id=uuid.uuid4().hex, first_name="Luis", last_name=f"Ortega{RUN}"))
    store.open_assignment(TENANT, load["id"], driver["id"])
    return load, driver


def test_health_reports_assistant_readiness():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "assistant_ready": False}


def test_missing_or_unknown_token_is_unauthorized():
    missing = client.get("/dipsy/context")
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"

    unknown = client.get("/dipsy/context", headers=_headers("nope"))
    assert unknown.status_code == 401


def test_user_without_membership_is_forbidden():
    response = client.get("/dipsy/context", headers=_headers(f"orphan-token-{RUN}"))
    assert response.status_code == 403


def test_tenant_header_must_match_membership():
    mismatch = client.get("/dipsy/context", headers=_headers(**{"X-Tenant-ID": OTHER_TENANT}))
    assert mismatch.status_code == 403
    assert mismatch.json()["detail"] == "Token tenant mismatch"

    matching = client.get("/dipsy/context", headers=_headers(**{"X-Tenant-ID": TENANT}))
    assert matching.status_code == 200


def test_web_message_runs_tools_and_persists_context(monkeypatch):
    completion = ScriptedCompletion(
        CompletionMessage(
            tool_calls=[
                ToolCall(
                    id="call_1",
                    name="create_load",
                    arguments=json.dumps(
                        {
                            "origin": "Sacramento, CA",
                            "destination": "Denver, CO",
                            "rate": 2200,
                            "pickup_date": "2025-10-20",
                            "delivery_date": "2025-10-22",
                        }
                    ),
                )
            ]
        ),
        CompletionMessage(content="Created the load."),
    )
    monkeypatch.setattr(dipsy_service, "completion", completion)
    session = f"web-{uuid.uuid4().hex[:6]}"

    response = client.post("/dipsy/message", headers=_headers(), json={"message": "new load", "session_id": session})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["tenant_id"] == TENANT
    assert body["route"] == "orchestrator"
    assert body["used_tool"] is True
    assert body["actions"][0]["tool"] == "create_load"
    reference = body["conversation_state"]["context"]["last_load_reference"]
    assert reference.startswith("LD-")

    context = client.get("/dipsy/context", headers=_headers(), params={"session_id": session}).json()
    assert context["context"]["last_load_reference"] == reference


def test_idempotency_key_replays_without_second_model_call(monkeypatch):
    completion = ScriptedCompletion(CompletionMessage(content="Nothing on the board yet."))
    monkeypatch.setattr(dipsy_service, "completion", completion)
    key = f"idem-{uuid.uuid4().hex}"
    payload = {"message": "what's on the board?", "session_id": f"idem-{RUN}"}

    first = client.post("/dipsy/message", headers=_headers(**{"Idempotency-Key": key}), json=payload)
    second = client.post("/dipsy/message", headers=_headers(**{"Idempotency-Key": key}), json=payload)

    assert first.status_code == 200
    assert second.json() == first.json()
    assert completion.calls == 1


def test_message_without_model_configured_is_unavailable():
    response = client.post("/dipsy/message", headers=_headers(), json={"message": "hello", "session_id": f"off-{RUN}"})

    body = response.json()
    assert body["ok"] is False
    assert body["answer"] == UNAVAILABLE_ANSWER
    assert body["route"] == "unavailable"


def test_parsed_document_then_yes_creates_load():
    session = f"doc-{uuid.uuid4().hex[:6]}"
    document = {
        "reference": f"BOL-{RUN}",
        "origin": "Ontario, CA",
        "destination": "Phoenix, AZ",
        "rate": 3100,
        "pickup_date": "2025-10-21",
        "delivery_date": "2025-10-22",
    }

    staged = client.post("/dipsy/documents/parsed", headers=_headers(), json={"session_id": session, "document": document})
    assert staged.status_code == 200
    assert staged.json()["route"] == "document"
    assert staged.json()["answer"].endswith("Create this load? (yes/no)")

    confirmed = client.post("/dipsy/message", headers=_headers(), json={"message": "yes", "session_id": session})
    body = confirmed.json()
    assert body["ok"] is True
    assert body["route"] == "intercept_document"
    reference = body["conversation_state"]["context"]["last_load_reference"]
    load = store.get_load_by_reference(TENANT, reference)
    assert load["customer_reference"] == f"BOL-{RUN}"
    assert body["conversation_state"]["context"]["pending_document"] is None


def test_contact_linking_requires_dispatcher_and_known_driver():
    chat_id = str(_chat_id())
    forbidden = client.post(
        "/dipsy/contacts",
        headers=_headers(f"driver-token-{RUN}"),
        json={"channel": "telegram", "external_id": chat_id},
    )
    assert forbidden.status_code == 403

    unknown_driver = client.post(
        "/dipsy/contacts",
        headers=_headers(),
        json={"channel": "telegram", "external_id": chat_id, "driver_id": "missing"},
    )
    assert unknown_driver.status_code == 404

    web = client.post("/dipsy/contacts", headers=_headers(), json={"channel": "web", "external_id": chat_id})
    assert web.status_code == 422

    linked = client.post(
        "/dipsy/contacts",
        headers=_headers(),
        json={"channel": "telegram", "external_id": chat_id, "display_name": "Dispatch phone"},
    )
    assert linked.status_code == 200
    assert linked.json()["tenant_id"] == TENANT


def test_unknown_telegram_chat_gets_onboarding(_channels):
    chat_id = _chat_id()

    response = client.post("/telegram/webhook", json=_telegram_update(chat_id, "hi"))

    assert response.json() == {"ok": True}
    assert _channels["telegram"] == [(str(chat_id), onboarding_message("telegram"))]


def test_driver_delivered_over_telegram_updates_load(_channels):
    load, driver = _dispatched_driver(f"LD-2025-T{RUN[:4]}")
    chat_id = _chat_id()
    linked = client.post(
        "/dipsy/contacts",
        headers=_headers(),
        json={"channel": "telegram", "external_id": str(chat_id), "display_name": "Luis", "driver_id": driver["id"]},
    )
    assert linked.status_code == 200

    response = client.post("/telegram/webhook", json=_telegram_update(chat_id, "Delivered"))

    assert response.json() == {"ok": True}
    assert store.get_load(TENANT, load["id"])["status"] == "DELIVERED"
    assert _channels["telegram"][-1][1].startswith(f"Got it, {load['reference']} is marked delivered")
    directions = [
        message["direction"]
        for message in store.list_channel_messages(TENANT, channel="telegram")
        if message["contact_id"] == linked.json()["contact_id"]
    ]
    assert directions == ["inbound", "outbound"]


def test_telegram_photo_is_acknowledged(_channels):
    chat_id = _chat_id()
    store.upsert_contact(TENANT, channel="telegram", external_id=str(chat_id), display_name="Photo sender")

    client.post("/telegram/webhook", json=_telegram_update(chat_id, photo=[{"file_id": "abc"}]))

    assert _channels["telegram"] == [(str(chat_id), PHOTO_ACK)]


def test_telegram_secret_mismatch_is_ignored(monkeypatch, _channels):
    monkeypatch.setattr(get_settings(), "telegram_webhook_secret", "tg-secret")

    rejected = client.post("/telegram/webhook", json=_telegram_update(_chat_id(), "hi"))
    assert rejected.json() == {"ok": True}
    assert _channels["telegram"] == []

    accepted = client.post(
        "/telegram/webhook",
        json=_telegram_update(_chat_id(), "hi"),
        headers={"X-Telegram-Bot-Api-Secret-Token": "tg-secret"},
    )
    assert accepted.json() == {"ok": True}
    assert len(_channels["telegram"]) == 1


def test_malformed_telegram_payload_is_acknowledged(_channels):
    assert client.post("/telegram/webhook", json={"unexpected": True}).json() == {"ok": True}
    assert client.post("/telegram/webhook", content=b"not json").json() == {"ok": True}
    assert _channels["telegram"] == []


def test_whatsapp_verification_handshake():
    ok = client.get(
        "/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
    )
    assert ok.status_code == 200
    assert ok.text == "1158201444"

    bad = client.get(
        "/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1"},
    )
    assert bad.status_code == 403


def test_whatsapp_signature_gates_processing(_channels):
    sender = f"1555{_chat_id()}"
    body = _whatsapp_body(sender, "hello")

    forged = client.post(
        "/whatsapp/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
    )
    assert forged.json() == {"ok": True}
    assert _channels["whatsapp"] == []

    signed = client.post(
        "/whatsapp/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": _sign(body)},
    )
    assert signed.json() == {"ok": True}
    assert _channels["whatsapp"] == [(sender, onboarding_message("whatsapp"))]


def test_malformed_whatsapp_payload_is_acknowledged(_channels):
    body = b'{"entry": "nope"}'
    response = client.post(
        "/whatsapp/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": _sign(body)},
    )
    assert response.json() == {"ok": True}
    assert _channels["whatsapp"] == []


def test_board_integrity_endpoint_reports_tenant():
    response = client.get("/dipsy/board/integrity", headers=_headers())

    body = response.json()
    assert response.status_code == 200
    assert body["tenant_id"] == TENANT
    assert body["consistent"] is True
    assert body["issues"] == []
