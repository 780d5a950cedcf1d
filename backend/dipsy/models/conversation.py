"""Conversation memory and web chat contracts for Dipsy."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dipsy.models.dispatch import ParsedRateConfirmation


class PendingSelection(BaseModel):
    """A tool call parked until the user picks one of several candidates."""

    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    parameter: str
    candidates: List[Dict[str, Any]] = Field(default_factory=list)


class ContextMemory(BaseModel):
    """What was last discussed, so "that load" / "that driver" resolve."""

    last_load_reference: Optional[str] = None
    last_load_id: Optional[str] = None
    last_load_origin: Optional[str] = None
    last_load_destination: Optional[str] = None
    last_load_rate: Optional[float] = None
    last_driver_name: Optional[str] = None
    last_driver_id: Optional[str] = None
    last_driver_hos_minutes: Optional[int] = None
    last_driver_status: Optional[str] = None
    pending_problem_reference: Optional[str] = None
    pending_selection: Optional[PendingSelection] = None
    pending_document: Optional[ParsedRateConfirmation] = None


class ConversationMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""


class ConversationState(BaseModel):
    """Persisted per (tenant, channel identity)."""

    context: ContextMemory = Field(default_factory=ContextMemory)
    history: List[ConversationMessage] = Field(default_factory=list)

    def recent_turns(self, limit: int) -> List[ConversationMessage]:
        turns = [m for m in self.history if m.role in {"user", "assistant"}]
        return turns[-max(0, limit):] if limit > 0 else []

    def remember(self, role: str, content: str, max_messages: int = 60) -> None:
        if not content:
            return
        self.history.append(ConversationMessage(role=role, content=content))
        if len(self.history) > max_messages:
            self.history = self.history[-max_messages:]


class ToolAction(BaseModel):
    """Audit entry for one executed tool call."""

    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    ok: bool
    preview: str = ""
    context_fallbacks: List[str] = Field(default_factory=list)


class DipsyMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    session_id: str = Field(default="default", min_length=1, max_length=120)
    conversation_state: Optional[ConversationState] = None


class DipsyMessageResponse(BaseModel):
    ok: bool
    answer: str
    tenant_id: str
    route: str
    used_tool: bool = False
    actions: List[ToolAction] = Field(default_factory=list)
    conversation_state: ConversationState
    error: Optional[str] = None


class ParsedDocumentRequest(BaseModel):
    session_id: str = Field(default="default", min_length=1, max_length=120)
    document: ParsedRateConfirmation
