"""Bounded tool-calling loop between the language model and the tool executor."""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dipsy.core.config import Settings, get_settings
from dipsy.core.errors import OrchestrationTimeout
from dipsy.core.logging import logger
from dipsy.models.conversation import ConversationState, ToolAction
from dipsy.services.completion import CompletionClient
from dipsy.services.context_store import apply_tool_result, context_fallbacks
from dipsy.services.prompts import build_system_instruction
from dipsy.services.tools import ToolExecutor


FALLBACK_ANSWER = "I've done as much as I can. Let me know what you'd like next."


def _preview(result: Dict[str, Any]) -> str:
    if result.get("message"):
        return str(result["message"])[:220]
    return json.dumps(result, ensure_ascii=True, default=str)[:220]


@dataclass
class OrchestrationResult:
    answer: str
    actions: List[ToolAction] = field(default_factory=list)
    iterations: int = 0
    capped: bool = False

    @property
    def used_tool(self) -> bool:
        return bool(self.actions)


class Orchestrator:
    """
    Runs model -> tools -> model until the model answers without tool calls or
    the iteration cap is hit. Tool calls run one at a time in the order given.

    The caller's ConversationState is updated in place (context after every tool
    result, history at the end) so whatever ran before a timeout can still be saved.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        completion: CompletionClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self.executor = executor
        self.completion = completion
        self.settings = settings or get_settings()

    async def run(
        self,
        *,
        tenant_id: str,
        user_id: str,
        actor: str,
        message: str,
        state: ConversationState,
        now: Optional[datetime] = None,
    ) -> OrchestrationResult:
        budget = float(self.settings.dipsy_request_timeout_seconds)
        try:
            return await asyncio.wait_for(
                self._run(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    actor=actor,
                    message=message,
                    state=state,
                    now=now or datetime.now(timezone.utc),
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Orchestration timed out", tenant_id=tenant_id, actor=actor, budget_seconds=budget)
            raise OrchestrationTimeout(f"No answer within {budget:.0f}s") from exc

    async def _run(
        self,
        *,
        tenant_id: str,
        user_id: str,
        actor: str,
        message: str,
        state: ConversationState,
        now: datetime,
    ) -> OrchestrationResult:
        started = time.time()
        max_iterations = max(1, int(self.settings.dipsy_max_iterations))
        messages: List[Dict[str, Any]] = [
            {
                "role": "system",
                "content": build_system_instruction(state.context, tenant_id=tenant_id, user_id=user_id, now=now),
            }
        ]
        messages.extend(
            {"role": turn.role, "content": turn.content}
            for turn in state.recent_turns(int(self.settings.dipsy_history_turns))
        )
        messages.append({"role": "user", "content": message})
        tools = self.executor.tool_schemas()
        actions: List[ToolAction] = []

        for iteration in range(1, max_iterations + 1):
            reply = await self.completion.complete(messages, tools)
            logger.info(
                "Model call completed",
                tenant_id=tenant_id,
                actor=actor,
                iteration=iteration,
                tool_calls=[call.name for call in reply.tool_calls],
            )

            if not reply.tool_calls:
                answer = reply.content or "Done."
                state.remember("user", message)
                state.remember("assistant", answer)
                logger.info(
                    "Orchestration finished",
                    tenant_id=tenant_id,
                    iterations=iteration,
                    actions=len(actions),
                    elapsed_ms=round((time.time() - started) * 1000, 1),
                )
                return OrchestrationResult(answer=answer, actions=actions, iterations=iteration)

            messages.append(reply.to_assistant_message())
            for call in reply.tool_calls:
                args = call.parsed_arguments()
                filled = context_fallbacks(state.context, call.name, args, self.executor.parameters_for(call.name))
                result = await self.executor.execute(call.name, args, tenant_id=tenant_id, actor=actor)
                state.context = apply_tool_result(state.context, call.name, args, result)
                actions.append(
                    ToolAction(
                        tool=call.name,
                        args=args,
                        ok=bool(result.get("ok")),
                        preview=_preview(result),
                        context_fallbacks=filled,
                    )
                )
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result, ensure_ascii=True, default=str),
                    }
                )

        state.remember("user", message)
        state.remember("assistant", FALLBACK_ANSWER)
        logger.warning("Orchestration hit iteration cap", tenant_id=tenant_id, iterations=max_iterations)
        return OrchestrationResult(answer=FALLBACK_ANSWER, actions=actions, iterations=max_iterations, capped=True)
