from typing import Optional, Tuple
import uuid

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
import structlog

from agi_core.application.api.schema import (
    ChatRequest, ChatResponse, ConversationMessages, HealthResponse
)
from agi_core.domain.context.state.state_manager import ConversationStateStore
from agi_core.domain.models.conversation_state import AgentProfile
from agi_core.domain.models.errors import ConversationBusy
from agi_core.infrastructure.llm.completion import supported_models

logger = structlog.get_logger(__name__)

router = APIRouter()


def _resolve_model(requested: Optional[str], default: str) -> Tuple[str, Optional[str]]:
    if not requested or requested == default:
        return default, None
    if requested in supported_models():
        return requested, None
    return default, f"Invalid model '{requested}' requested. Using '{default}' instead."


async def _claim_store(
    request: Request,
    chat: ChatRequest,
    conversation_id: str,
    model: str
) -> Tuple[ConversationStateStore, str]:
    """Get the conversation's store and claim its turn before any response starts"""

    settings = request.app.state.settings
    store = await request.app.state.state_manager.get_store(
        conversation_id,
        model=model,
        alt_model=settings.alt_model,
        user_id=chat.user_id,
        profile=AgentProfile(assistant_name=settings.assistant_name, user_name=settings.user_name)
    )
    try:
        turn_id = store.claim_turn()
    except ConversationBusy as e:
        raise HTTPException(status_code=409, detail=e.message) from e

    if store.get_state().config.model != model:
        await store.update_config({"model": model})
    return store, turn_id


@router.post("/api/agi/chat")
async def chat_endpoint(chat: ChatRequest, request: Request):
    """Run one conversation turn; streams SSE unless ``stream`` is false"""

    content = chat.latest_user_content()
    if content is None:
        raise HTTPException(status_code=422, detail="No user message in request")

    settings = request.app.state.settings
    orchestrator = request.app.state.orchestrator
    conversation_id = chat.conversation_id or str(uuid.uuid4())
    model, warning = _resolve_model(chat.model, settings.model)
    if warning:
        logger.warning("Unsupported model requested", requested=chat.model, model=model)

    store, turn_id = await _claim_store(request, chat, conversation_id, model)

    if not chat.stream:
        reply = await orchestrator.process_message(store, content, turn_id)
        return ChatResponse(conversation_id=conversation_id, response=reply, model=model, warning=warning)

    headers = {
        "Cache-Control": "no-cache",
        "X-Conversation-Id": conversation_id
    }
    if warning:
        headers["X-Warning"] = warning
    # The turn ends with the body; the background release covers a body never started
    return StreamingResponse(
        orchestrator.respond(store, content, turn_id),
        media_type="text/event-stream",
        headers=headers,
        background=BackgroundTask(store.release_turn, turn_id)
    )


@router.get("/api/agi/conversations/{conversation_id}/messages", response_model=ConversationMessages)
async def conversation_messages(conversation_id: str, request: Request):
    messages = await request.app.state.repository.get_messages(conversation_id)
    if not messages:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationMessages(
        conversation_id=conversation_id,
        messages=[m.as_chat() for m in messages]
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    state = request.app.state
    conversations = await state.state_manager.active_conversations()
    return HealthResponse(
        services=state.settings.enabled_services(),
        tools={name: descriptor.available for name, descriptor in state.registry.items()},
        active_conversations=len(conversations)
    )
