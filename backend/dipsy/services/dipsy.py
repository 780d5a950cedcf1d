"""Channel-agnostic message pipeline: identity in, answer out, context persisted."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from dipsy.core.errors import OrchestrationTimeout, UpstreamServiceError
from dipsy.core.logging import logger
from dipsy.models.channels import Channel
from dipsy.models.conversation import ConversationState, ToolAction
from dipsy.models.dispatch import ParsedRateConfirmation
from dipsy.services.completion import CompletionClient, build_completion_client
from dipsy.services.context_store import ConversationContextStore, telegram_identity, whatsapp_identity
from dipsy.services.intercepts import MessageIntercepts
from dipsy.services.orchestrator import Orchestrator
from dipsy.services.tms_store import TmsStore, tms_store
from dipsy.services.tools import ToolExecutor


GENERIC_FAILURE = "Something went wrong, please try again."
TIMEOUT_ANSWER = (
    "That took longer than expected and I stopped. Check the board before retrying "
    "so nothing is done twice."
)
UNAVAILABLE_ANSWER = "Dipsy is unavailable right now. Please try again shortly."
PHOTO_ACK = (
    "Thanks, I got the photo. Please upload PODs and rate confirmations in the dispatch app "
    "so they attach to the right load."
)
UNSUPPORTED_MESSAGE = "I can read text messages and photos for now."
CHANNEL_LABELS = {Channel.TELEGRAM.value: "Telegram", Channel.WHATSAPP.value: "WhatsApp"}


def onboarding_message(channel: str) -> str:
    label = CHANNEL_LABELS.get(channel, channel)
    return (
        f"Hi! I'm Dipsy, your AI dispatch assistant. I don't recognize this {label} account yet.\n\n"
        f"Please ask your dispatcher to link your {label} account in the dispatch app."
    )


@dataclass
class DipsyReply:
    ok: bool
    answer: str
    route: str
    state: ConversationState
    actions: List[ToolAction] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def used_tool(self) -> bool:
        return bool(self.actions)


class DipsyService:
    def __init__(
        self,
        store: TmsStore | None = None,
        executor: ToolExecutor | None = None,
        completion: CompletionClient | None = None,
    ) -> None:
        self.store = store or tms_store
        self.executor = executor or ToolExecutor(self.store)
        self.completion = completion if completion is not None else build_completion_client()
        self.context_store = ConversationContextStore(self.store)
        self.intercepts = MessageIntercepts(self.executor, self.store)

    def is_ready(self) -> bool:
        return self.completion is not None

    async def handle_message(
        self,
        *,
        tenant_id: str,
        user_id: str,
        actor: str,
        channel: str,
        channel_identity: str,
        text: str,
        driver_id: Optional[str] = None,
        client_state: Optional[ConversationState] = None,
    ) -> DipsyReply:
        state = self.context_store.load(tenant_id, channel_identity)
        if client_state is not None and not self.context_store.exists(tenant_id, channel_identity):
            state = client_state.model_copy(deep=True)

        reply: DipsyReply
        try:
            intercepted = await self.intercepts.try_handle(
                tenant_id=tenant_id,
                actor=actor,
                text=text,
                state=state,
                driver_id=driver_id,
            )
            if intercepted is not None:
                reply = DipsyReply(
                    ok=all(action.ok for action in intercepted.actions),
                    answer=intercepted.answer,
                    route=intercepted.route,
                    state=state,
                    actions=intercepted.actions,
                )
            elif self.completion is None:
                state.remember("user", text)
                state.remember("assistant", UNAVAILABLE_ANSWER)
                reply = DipsyReply(
                    ok=False,
                    answer=UNAVAILABLE_ANSWER,
                    route="unavailable",
                    state=state,
                    error="assistant_unavailable",
                )
            else:
                result = await Orchestrator(self.executor, self.completion).run(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    actor=actor,
                    message=text,
                    state=state,
                )
                reply = DipsyReply(
                    ok=True,
                    answer=result.answer,
                    route="capped" if result.capped else "orchestrator",
                    state=state,
                    actions=result.actions,
                )
        except OrchestrationTimeout as exc:
            state.remember("user", text)
            state.remember("assistant", TIMEOUT_ANSWER)
            reply = DipsyReply(ok=False, answer=TIMEOUT_ANSWER, route="timeout", state=state, error=exc.code)
        except UpstreamServiceError as exc:
            logger.error("Dipsy upstream failure", tenant_id=tenant_id, service=exc.service, error=exc.message)
            state.remember("user", text)
            state.remember("assistant", GENERIC_FAILURE)
            reply = DipsyReply(ok=False, answer=GENERIC_FAILURE, route="error", state=state, error=exc.code)
        except Exception as exc:
            logger.exception("Dipsy message failed", tenant_id=tenant_id, channel=channel, error=str(exc))
            reply = DipsyReply(ok=False, answer=GENERIC_FAILURE, route="error", state=state, error="internal_error")

        self.context_store.save(tenant_id, channel_identity, reply.state)
        self.store.log_interaction(
            tenant_id,
            channel=channel,
            channel_identity=channel_identity,
            route=reply.route,
            question=text,
            answer=reply.answer,
            tool_calls=[action.model_dump() for action in reply.actions],
        )
        logger.info(
            "Dipsy message handled",
            tenant_id=tenant_id,
            channel=channel,
            channel_identity=channel_identity,
            route=reply.route,
            ok=reply.ok,
            tools=[action.tool for action in reply.actions],
        )
        return reply

    async def handle_channel_message(
        self,
        *,
        channel: str,
        external_id: str,
        text: str,
        has_photo: bool = False,
    ) -> str:
        """Route an inbound Telegram/WhatsApp message and return the reply text."""
        contact = self.store.find_contact(channel, external_id)
        if contact is None:
            logger.info("Unregistered channel sender", channel=channel, external_id=external_id)
            return onboarding_message(channel)

        tenant_id = contact["tenant_id"]
        self.store.log_channel_message(
            tenant_id,
            channel=channel,
            contact_id=contact["contact_id"],
            direction="inbound",
            body=text or ("[photo]" if has_photo else ""),
        )

        if has_photo and not text.strip():
            answer = PHOTO_ACK
        elif not text.strip():
            answer = UNSUPPORTED_MESSAGE
        else:
            identity = telegram_identity(external_id) if channel == Channel.TELEGRAM.value else whatsapp_identity(external_id)
            reply = await self.handle_message(
                tenant_id=tenant_id,
                user_id=contact["contact_id"],
                actor=f"{channel}:{contact.get('display_name') or external_id}",
                channel=channel,
                channel_identity=identity,
                text=text,
                driver_id=contact.get("driver_id"),
            )
            answer = reply.answer

        self.store.log_channel_message(
            tenant_id,
            channel=channel,
            contact_id=contact["contact_id"],
            direction="outbound",
            body=answer,
        )
        return answer

    def stage_document(
        self,
        *,
        tenant_id: str,
        channel_identity: str,
        document: ParsedRateConfirmation,
    ) -> DipsyReply:
        """Hold a parsed rate confirmation until the user answers yes/no."""
        state = self.context_store.load(tenant_id, channel_identity)
        state.context.pending_document = document

        origin = document.resolved_origin() or "?"
        destination = document.resolved_destination() or "?"
        parts = [f"I read a rate confirmation: {origin} -> {destination}"]
        if document.resolved_pickup_date():
            parts.append(f"pickup {document.resolved_pickup_date()}")
        if document.resolved_delivery_date():
            parts.append(f"delivery {document.resolved_delivery_date()}")
        if document.rate is not None:
            parts.append(f"${document.rate:,.0f}")
        answer = ", ".join(parts) + "."
        if document.reference:
            answer += f" Customer ref {document.reference}."
        missing = document.missing_fields()
        if missing:
            answer += f" Missing: {', '.join(missing)}."
        answer += " Create this load? (yes/no)"

        state.remember("assistant", answer)
        self.context_store.save(tenant_id, channel_identity, state)
        logger.info(
            "Parsed document staged",
            tenant_id=tenant_id,
            channel_identity=channel_identity,
            missing=missing,
        )
        return DipsyReply(ok=True, answer=answer, route="document", state=state)


dipsy_service = DipsyService()
