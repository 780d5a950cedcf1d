"""Fast paths that answer common messages without a model call."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dipsy.core.logging import logger
from dipsy.models.conversation import ConversationState, ToolAction
from dipsy.models.dispatch import LoadStatus
from dipsy.services.context_store import apply_tool_result
from dipsy.services.tms_store import TmsStore, tms_store
from dipsy.services.tools import ToolExecutor


@dataclass
class InterceptResult:
    answer: str
    route: str
    actions: List[ToolAction] = field(default_factory=list)


class MessageIntercepts:
    SELECTION = re.compile(r"^\s*#?([1-9])\s*[.)]?\s*$")
    YES = re.compile(r"^\s*(yes|y|yep|yeah|confirm|create it|do it|ok)\s*[.!]*\s*$", re.IGNORECASE)
    NO = re.compile(r"^\s*(no|n|nope|cancel|discard|don't)\s*[.!]*\s*$", re.IGNORECASE)
    # Driver status phrases only count at the start of a message, after an optional "I'm"/"just".
    DRIVER_PREFIX = r"^\s*(?:(?:i'?m|i|just|got)\s+){0,2}"
    DELIVERED = re.compile(DRIVER_PREFIX + r"(delivered|dropped (?:it )?off)\b", re.IGNORECASE)
    CHECK_IN = re.compile(
        DRIVER_PREFIX + r"(?:at|arrived at)\s+(?:the\s+)?(pickup|shipper|delivery|receiver|consignee)\b",
        re.IGNORECASE,
    )
    IN_TRANSIT = re.compile(DRIVER_PREFIX + r"(picked up|loaded|in transit|on my way|rolling)\b", re.IGNORECASE)

    def __init__(self, executor: ToolExecutor, store: TmsStore | None = None) -> None:
        self.executor = executor
        self.store = store or tms_store

    async def try_handle(
        self,
        *,
        tenant_id: str,
        actor: str,
        text: str,
        state: ConversationState,
        driver_id: Optional[str] = None,
    ) -> Optional[InterceptResult]:
        handled = await self._pending_selection(tenant_id, actor, text, state)
        if handled is None:
            handled = await self._pending_document(tenant_id, actor, text, state)
        if handled is None and driver_id:
            handled = await self._driver_update(tenant_id, actor, text, state, driver_id)
        if handled is not None:
            state.remember("user", text)
            state.remember("assistant", handled.answer)
            logger.info(
                "Message intercepted",
                tenant_id=tenant_id,
                actor=actor,
                route=handled.route,
                tools=[action.tool for action in handled.actions],
            )
        return handled

    async def _run_tool(
        self,
        tenant_id: str,
        actor: str,
        state: ConversationState,
        tool: str,
        args: Dict[str, Any],
    ) -> tuple[Dict[str, Any], ToolAction]:
        result = await self.executor.execute(tool, args, tenant_id=tenant_id, actor=actor)
        state.context = apply_tool_result(state.context, tool, args, result)
        action = ToolAction(tool=tool, args=args, ok=bool(result.get("ok")), preview=str(result.get("message") or "")[:220])
        return result, action

    async def _pending_selection(
        self, tenant_id: str, actor: str, text: str, state: ConversationState
    ) -> Optional[InterceptResult]:
        pending = state.context.pending_selection
        match = self.SELECTION.match(text or "")
        if pending is None or match is None:
            return None
        index = int(match.group(1)) - 1
        if index >= len(pending.candidates):
            return InterceptResult(
                answer=f"Pick a number between 1 and {len(pending.candidates)}.",
                route="intercept_selection",
            )

        candidate = pending.candidates[index]
        args = dict(pending.args)
        if pending.parameter == "driver_name":
            args["driver_name"] = candidate.get("id") or candidate.get("full_name")
        else:
            args["load_reference"] = candidate.get("reference") or candidate.get("id")
        state.context.pending_selection = None

        result, action = await self._run_tool(tenant_id, actor, state, pending.tool, args)
        answer = result.get("message") or ("Done." if result.get("ok") else "That didn't work.")
        return InterceptResult(answer=answer, route="intercept_selection", actions=[action])

    async def _pending_document(
        self, tenant_id: str, actor: str, text: str, state: ConversationState
    ) -> Optional[InterceptResult]:
        document = state.context.pending_document
        if document is None:
            return None
        if self.NO.match(text or ""):
            state.context.pending_document = None
            return InterceptResult(answer="OK, I won't create a load from that document.", route="intercept_document")
        if not self.YES.match(text or ""):
            return None

        state.context.pending_document = None
        missing = document.missing_fields()
        if missing:
            return InterceptResult(
                answer=(
                    "I can't create it yet; the document is missing "
                    f"{', '.join(missing)}. Send those details and I'll create the load."
                ),
                route="intercept_document",
            )
        result, action = await self._run_tool(tenant_id, actor, state, "create_load", document.to_create_args())
        answer = result.get("message") or "I couldn't create the load from that document."
        if result.get("ok"):
            answer += " Need help finding a driver?"
        return InterceptResult(answer=answer, route="intercept_document", actions=[action])

    async def _driver_update(
        self,
        tenant_id: str,
        actor: str,
        text: str,
        state: ConversationState,
        driver_id: str,
    ) -> Optional[InterceptResult]:
        text = (text or "").strip()
        if text.endswith("?"):
            return None
        delivered = self.DELIVERED.match(text)
        check_in = self.CHECK_IN.match(text)
        in_transit = self.IN_TRANSIT.match(text)
        if not (delivered or check_in or in_transit):
            return None

        load = self.store.current_load_for_driver(tenant_id, driver_id)
        if load is None:
            return InterceptResult(
                answer="I don't see an active load assigned to you. Check with your dispatcher.",
                route="intercept_driver",
            )
        reference = load["reference"]

        if delivered:
            result, action = await self._run_tool(
                tenant_id, actor, state, "mark_load_delivered", {"load_reference": reference}
            )
            if result.get("already"):
                answer = f"{reference} is already marked delivered. Send the POD when you can."
            elif result.get("ok"):
                answer = f"Got it, {reference} is marked delivered. Please send the POD when you can."
            else:
                answer = result.get("message") or "I couldn't mark that delivered."
            return InterceptResult(answer=answer, route="intercept_driver", actions=[action])

        if check_in:
            stop = "pickup" if check_in.group(1).lower() in {"pickup", "shipper"} else "delivery"
            result = await self.executor.record_check_in(tenant_id, actor, reference, stop)
            state.context = apply_tool_result(state.context, "get_load_details", {"load_reference": reference}, result)
            action = ToolAction(
                tool="record_check_in",
                args={"load_reference": reference, "stop": stop},
                ok=bool(result.get("ok")),
                preview=str(result.get("message") or "")[:220],
            )
            return InterceptResult(answer=result.get("message") or "Check-in failed.", route="intercept_driver", actions=[action])

        result, action = await self._run_tool(
            tenant_id,
            actor,
            state,
            "update_load",
            {"load_reference": reference, "updates": {"status": LoadStatus.IN_TRANSIT.value}},
        )
        if result.get("already"):
            answer = f"{reference} is already in transit. Drive safe."
        elif result.get("ok"):
            answer = f"Thanks, {reference} is now in transit. Drive safe."
        else:
            answer = result.get("message") or "I couldn't update that load."
        return InterceptResult(answer=answer, route="intercept_driver", actions=[action])
