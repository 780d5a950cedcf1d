from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path


TMP = Path(__file__).resolve().parent / ".tmp_dipsy"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DIPSY_DB_PATH"] = str(TMP / "dipsy.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dipsy.models.conversation import ContextMemory, ConversationState  # noqa: E402
from dipsy.services.context_store import (  # noqa: E402
    ConversationContextStore,
    apply_tool_result,
    context_fallbacks,
    telegram_identity,
    web_identity,
    whatsapp_identity,
)
from dipsy.services.tms_store import TmsStore  # noqa: E402


def test_identities_are_channel_prefixed():
    assert web_identity("u-1", "default") == "web:u-1:default"
    assert telegram_identity(12345) == "telegram:12345"
    assert whatsapp_identity("+15551234567") == "whatsapp:15551234567"


def test_apply_tool_result_is_pure_and_tracks_last_load():
    before = ContextMemory()
    result = {
        "ok": True,
        "load": {"id": "l1", "reference": "LD-2025-0001", "origin": "Fresno, CA", "destination": "Reno, NV", "rate": 900},
    }

    after = apply_tool_result(before, "create_load", {}, result)

    assert before.last_load_reference is None
    assert after.last_load_reference == "LD-2025-0001"
    assert after.last_load_rate == 900


def test_failed_calls_only_set_waiting_state():
    context = ContextMemory(last_load_reference="LD-2025-0009")

    missing = apply_tool_result(
        context,
        "assign_driver_to_load",
        {"driver_name": "Ghost", "load_reference": "LD-2025-0001"},
        {"ok": False, "error_code": "driver_not_found"},
    )
    assert missing == context

    ambiguous = apply_tool_result(
        context,
        "get_load_details",
        {"load_reference": "44"},
        {
            "ok": False,
            "error_code": "ambiguous_reference",
            "kind": "load",
            "candidates": [{"id": "a", "reference": "LD-2025-4404"}, {"id": "b", "reference": "LD-2025-0044"}],
        },
    )
    assert ambiguous.pending_selection.parameter == "load_reference"
    assert len(ambiguous.pending_selection.candidates) == 2
    assert ambiguous.last_load_reference == "LD-2025-0009"


def test_single_board_row_sets_load_and_driver():
    row = {
        "load_id": "l1",
        "load_reference": "LD-2025-0010",
        "origin": "Fresno, CA",
        "destination": "Reno, NV",
        "rate": 1200,
        "assigned_driver_id": "d1",
        "driver_full_name": "John Smith",
        "hos_status": "DRIVING",
        "hos_drive_remaining_min": 300,
    }

    after = apply_tool_result(ContextMemory(), "get_board_status", {}, {"ok": True, "board": [row]})

    assert after.last_load_reference == "LD-2025-0010"
    assert after.last_load_id == "l1"
    assert after.last_driver_name == "John Smith"
    assert after.last_driver_hos_minutes == 300

    many = apply_tool_result(ContextMemory(), "get_board_status", {}, {"ok": True, "board": [row, row]})
    assert many.last_load_reference is None


def test_hos_search_remembers_top_driver():
    drivers = [
        {"id": "d1", "full_name": "Long Haul", "hos_drive_remaining_min": 594, "status": "AVAILABLE"},
        {"id": "d2", "full_name": "Mid Range", "hos_drive_remaining_min": 400, "status": "AVAILABLE"},
    ]

    after = apply_tool_result(ContextMemory(), "search_drivers_by_hours_of_service", {}, {"ok": True, "drivers": drivers})

    assert after.last_driver_name == "Long Haul"
    assert after.last_driver_hos_minutes == 594


def test_fallbacks_fill_only_missing_parameters():
    context = ContextMemory(last_load_reference="LD-2025-0001", last_driver_name="John Smith")

    args = {"load_reference": "LD-2025-0002"}
    filled = context_fallbacks(context, "assign_driver_to_load", args, ["driver_name", "load_reference"])
    assert filled == ["driver_name"]
    assert args == {"load_reference": "LD-2025-0002", "driver_name": "John Smith"}

    search = {}
    assert context_fallbacks(context, "search_loads", search, ["status", "origin"]) == []
    assert search == {}


def test_state_roundtrip_and_unreadable_state():
    store = TmsStore(str(TMP / "context.db"))
    contexts = ConversationContextStore(store)
    tenant = f"ctx_{uuid.uuid4().hex[:8]}"
    state = ConversationState(context=ContextMemory(last_driver_name="John Smith"))
    state.remember("user", "who is free?")

    contexts.save(tenant, "web:u1:s1", state)
    loaded = contexts.load(tenant, "web:u1:s1")

    assert loaded.context.last_driver_name == "John Smith"
    assert loaded.history[0].content == "who is free?"
    assert contexts.exists(tenant, "web:u1:s1")
    assert not contexts.exists(tenant, "web:u1:s2")

    store.save_conversation_state(tenant, "web:u1:bad", {"history": "not a list"})
    assert contexts.load(tenant, "web:u1:bad") == ConversationState()


def test_failed_problem_flag_clears_waiting_reference():
    waiting = apply_tool_result(
        ContextMemory(),
        "mark_load_problem",
        {"load_reference": "0501"},
        {"ok": False, "error_code": "reason_required", "load_reference": "LD-2025-0501"},
    )
    assert waiting.pending_problem_reference == "LD-2025-0501"

    for code in ("load_not_found", "invalid_transition"):
        cleared = apply_tool_result(
            waiting,
            "mark_load_problem",
            {"load_reference": "LD-2025-0501", "problem_reason": "Reefer down"},
            {"ok": False, "error_code": code},
        )
        assert cleared.pending_problem_reference is None

    untouched = apply_tool_result(waiting, "get_load_details", {}, {"ok": False, "error_code": "load_not_found"})
    assert untouched.pending_problem_reference == "LD-2025-0501"
