"""Web chat and dispatcher endpoints for Dipsy."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from dipsy.core.auth import CallerIdentity, get_caller_identity, require_roles
from dipsy.core.errors import ConflictingState
from dipsy.core.logging import logger
from dipsy.models.channels import ContactLinkRequest
from dipsy.models.conversation import (
    ConversationState,
    DipsyMessageRequest,
    DipsyMessageResponse,
    ParsedDocumentRequest,
)
from dipsy.models.dispatch import MembershipRole
from dipsy.services.context_store import web_identity
from dipsy.services.dipsy import DipsyReply, dipsy_service

router = APIRouter(prefix="/dipsy", tags=["dipsy"])


def _idempotency_lookup(identity: CallerIdentity, operation: str, key: str | None):
    if not key:
        return None
    return dipsy_service.store.get_idempotent(identity.tenant_id, f"{operation}:{identity.user_id}:{key.strip()}")


def _idempotency_store(identity: CallerIdentity, operation: str, key: str | None, response: dict):
    if not key:
        return
    dipsy_service.store.set_idempotent(identity.tenant_id, f"{operation}:{identity.user_id}:{key.strip()}", response)


def _response(identity: CallerIdentity, reply: DipsyReply) -> DipsyMessageResponse:
    return DipsyMessageResponse(
        ok=reply.ok,
        answer=reply.answer,
        tenant_id=identity.tenant_id,
        route=reply.route,
        used_tool=reply.used_tool,
        actions=reply.actions,
        conversation_state=reply.state,
        error=reply.error,
    )


@router.post("/message", response_model=DipsyMessageResponse)
async def post_message(
    request: DipsyMessageRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(identity, "dipsy_message", idempotency_key)
    if cached:
        return cached

    reply = await dipsy_service.handle_message(
        tenant_id=identity.tenant_id,
        user_id=identity.user_id,
        actor=identity.user_id,
        channel="web",
        channel_identity=web_identity(identity.user_id, request.session_id),
        text=request.message.strip(),
        client_state=request.conversation_state,
    )
    response = _response(identity, reply).model_dump(mode="json")
    if reply.ok:
        _idempotency_store(identity, "dipsy_message", idempotency_key, response)
    return response


@router.post("/documents/parsed", response_model=DipsyMessageResponse)
def post_parsed_document(
    request: ParsedDocumentRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
):
    reply = dipsy_service.stage_document(
        tenant_id=identity.tenant_id,
        channel_identity=web_identity(identity.user_id, request.session_id),
        document=request.document,
    )
    return _response(identity, reply)


@router.get("/context", response_model=ConversationState)
def get_context(
    session_id: str = Query(default="default", min_length=1, max_length=120),
    identity: CallerIdentity = Depends(get_caller_identity),
):
    return dipsy_service.context_store.load(identity.tenant_id, web_identity(identity.user_id, session_id))


@router.get("/board/integrity")
def get_board_integrity(identity: CallerIdentity = Depends(get_caller_identity)):
    issues = dipsy_service.store.assignment_integrity_issues(identity.tenant_id)
    if issues:
        logger.warning("Assignment integrity issues found", tenant_id=identity.tenant_id, count=len(issues))
    return {"tenant_id": identity.tenant_id, "consistent": not issues, "issues": issues}


@router.post("/contacts")
def link_contact(
    request: ContactLinkRequest,
    identity: CallerIdentity = Depends(require_roles(MembershipRole.DISPATCHER.value, MembershipRole.ADMIN.value)),
):
    store = dipsy_service.store
    if request.driver_id and not store.get_driver(identity.tenant_id, request.driver_id):
        raise HTTPException(status_code=404, detail="Driver not found")
    try:
        contact = store.upsert_contact(
            identity.tenant_id,
            channel=request.channel.value,
            external_id=request.external_id,
            display_name=request.display_name,
            driver_id=request.driver_id,
        )
    except ConflictingState as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    logger.info(
        "Channel contact linked",
        tenant_id=identity.tenant_id,
        channel=request.channel.value,
        driver_id=request.driver_id,
    )
    return contact
