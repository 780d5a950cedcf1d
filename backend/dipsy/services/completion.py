"""Chat-completion client behind a small interface so the loop can run against fakes."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from dipsy.core.config import Settings, get_settings
from dipsy.core.errors import UpstreamServiceError
from dipsy.core.logging import logger


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Dict[str, Any]:
        """Malformed or non-object JSON becomes an empty dict."""
        try:
            parsed = json.loads(self.arguments or "{}")
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}


@dataclass
class CompletionMessage:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    def to_assistant_message(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return payload


class CompletionClient(Protocol):
    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> CompletionMessage:
        ...


class OpenAICompletionClient:
    """OpenAI-compatible chat completions with tool calling."""

    SERVICE_NAME = "completion"
    TRANSIENT_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client or AsyncOpenAI(
            api_key=self.settings.resolved_openai_api_key(),
            base_url=self.settings.openai_base_url,
            timeout=float(self.settings.dipsy_request_timeout_seconds),
            max_retries=0,
        )

    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> CompletionMessage:
        attempts = 1 + max(0, int(self.settings.dipsy_completion_retries))
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                completion = await self._client.chat.completions.create(
                    model=self.settings.dipsy_model,
                    messages=messages,
                    tools=tools,
                    tool_choice="auto",
                    temperature=self.settings.dipsy_temperature,
                    max_tokens=self.settings.dipsy_max_tokens,
                )
            except self.TRANSIENT_ERRORS as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
                logger.warning("Completion call failed", attempt=attempt, error=last_error)
                if attempt < attempts:
                    await asyncio.sleep(0.5 * attempt)
                continue
            except APIStatusError as exc:
                logger.error("Completion call rejected", status_code=exc.status_code, error=str(exc))
                raise UpstreamServiceError(
                    "The language model rejected the request.",
                    service=self.SERVICE_NAME,
                    status_code=exc.status_code,
                ) from exc

            message = completion.choices[0].message
            calls = [
                ToolCall(
                    id=str(call.id),
                    name=str(call.function.name or ""),
                    arguments=str(call.function.arguments or "{}"),
                )
                for call in (message.tool_calls or [])
            ]
            return CompletionMessage(content=str(message.content or "").strip(), tool_calls=calls)

        raise UpstreamServiceError(
            f"The language model is unavailable ({last_error or 'no response'}).",
            service=self.SERVICE_NAME,
        )


def build_completion_client(settings: Optional[Settings] = None) -> Optional[OpenAICompletionClient]:
    settings = settings or get_settings()
    if not settings.resolved_openai_api_key():
        logger.info("Dipsy completion client disabled (missing OPENAI_API_KEY).")
        return None
    return OpenAICompletionClient(settings)
