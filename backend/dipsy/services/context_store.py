"""Per-identity conversation memory and the rules that update it after tool calls."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from dipsy.core.logging import logger
from dipsy.models.conversation import ContextMemory, ConversationState, PendingSelection
from dipsy.services.tms_store import TmsStore, tms_store


LOAD_RESULT_TOOLS = {
    "create_load",
    "update_load",
    "get_load_details",
    "mark_load_delivered",
    "confirm_pod_received",
    "release_driver_without_pod",
    "mark_load_problem",
    "resolve_load_problem",
}
DRIVER_LIST_TOOLS = {"search_drivers", "search_drivers_by_hours_of_service"}


def web_identity(user_id: str, session_id: str) -> str:
    return f"web:{user_id}:{session_id}"


def telegram_identity(chat_id: int | str) -> str:
    return f"telegram:{chat_id}"


def whatsapp_identity(phone: str) -> str:
    return f"whatsapp:{phone.lstrip('+')}"


def _remember_load(context: ContextMemory, load: Dict[str, Any]) -> None:
    reference = load.get("reference") or load.get("load_reference")
    if not reference:
        return
    context.last_load_reference = reference
    context.last_load_id = load.get("id") or load.get("load_id")
    context.last_load_origin = load.get("origin")
    context.last_load_destination = load.get("destination")
    context.last_load_rate = load.get("rate")


def _remember_driver(context: ContextMemory, driver: Dict[str, Any]) -> None:
    name = driver.get("full_name") or " ".join(
        part for part in [driver.get("first_name"), driver.get("last_name")] if part
    )
    if not name:
        return
    context.last_driver_name = name
    context.last_driver_id = driver.get("id")
    context.last_driver_hos_minutes = driver.get("hos_drive_remaining_min")
    context.last_driver_status = driver.get("hos_status") or driver.get("status")


def apply_tool_result(
    context: ContextMemory,
    tool_name: str,
    args: Dict[str, Any],
    result: Dict[str, Any],
) -> ContextMemory:
    """Return a new ContextMemory reflecting one tool result. Pure."""
    updated = context.model_copy(deep=True)

    if not result.get("ok"):
        code = result.get("error_code")
        if tool_name == "mark_load_problem":
            if code == "reason_required":
                updated.pending_problem_reference = result.get("load_reference") or args.get("load_reference")
            else:
                updated.pending_problem_reference = None
        if code == "ambiguous_reference":
            updated.pending_selection = PendingSelection(
                tool=tool_name,
                args={key: value for key, value in args.items() if value is not None},
                parameter="driver_name" if result.get("kind") == "driver" else "load_reference",
                candidates=result.get("candidates") or [],
            )
        return updated

    if tool_name in LOAD_RESULT_TOOLS and isinstance(result.get("load"), dict):
        _remember_load(updated, result["load"])

    if tool_name == "search_loads":
        loads = result.get("loads") or []
        if len(loads) == 1:
            _remember_load(updated, loads[0])

    elif tool_name in DRIVER_LIST_TOOLS:
        drivers = result.get("drivers") or []
        if drivers:
            _remember_driver(updated, drivers[0])

    elif tool_name == "assign_driver_to_load":
        if isinstance(result.get("driver"), dict):
            _remember_driver(updated, result["driver"])
        if isinstance(result.get("load"), dict):
            _remember_load(updated, result["load"])

    elif tool_name == "get_board_status":
        board = result.get("board") or []
        if len(board) == 1:
            row = board[0]
            _remember_load(updated, row)
            driver_name = row.get("driver_full_name") or row.get("driver_name")
            if driver_name:
                updated.last_driver_name = driver_name
                updated.last_driver_id = row.get("assigned_driver_id") or row.get("assignment_driver_id")
                updated.last_driver_hos_minutes = row.get("hos_drive_remaining_min")
                updated.last_driver_status = row.get("hos_status") or row.get("driver_status")

    elif tool_name == "mark_load_problem":
        updated.pending_problem_reference = None

    if updated.pending_selection is not None and updated.pending_selection.tool == tool_name:
        updated.pending_selection = None
    return updated


def context_fallbacks(
    context: ContextMemory,
    tool_name: str,
    args: Dict[str, Any],
    parameters: List[str],
) -> List[str]:
    """Fill omitted load_reference / driver_name from memory in place; return the filled keys."""
    filled: List[str] = []
    if "load_reference" in parameters and not args.get("load_reference"):
        reference: Optional[str] = None
        if tool_name == "mark_load_problem" and context.pending_problem_reference:
            reference = context.pending_problem_reference
        reference = reference or context.last_load_reference
        if reference:
            args["load_reference"] = reference
            filled.append("load_reference")
    if "driver_name" in parameters and not args.get("driver_name") and context.last_driver_name:
        args["driver_name"] = context.last_driver_name
        filled.append("driver_name")
    return filled


class ConversationContextStore:
    """Load/save ConversationState keyed by (tenant, channel identity); last writer wins."""

    def __init__(self, store: TmsStore | None = None) -> None:
        self._store = store or tms_store

    def load(self, tenant_id: str, channel_identity: str) -> ConversationState:
        raw = self._store.get_conversation_state(tenant_id, channel_identity)
        if not raw:
            return ConversationState()
        try:
            return ConversationState.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable conversation state",
                tenant_id=tenant_id,
                channel_identity=channel_identity,
                error=str(exc),
            )
            return ConversationState()

    def exists(self, tenant_id: str, channel_identity: str) -> bool:
        return self._store.get_conversation_state(tenant_id, channel_identity) is not None

    def save(self, tenant_id: str, channel_identity: str, state: ConversationState) -> None:
        self._store.save_conversation_state(tenant_id, channel_identity, state.model_dump(mode="json"))


context_store = ConversationContextStore()
