from typing import AsyncIterator, List, Optional
import asyncio
import time
import uuid

import structlog

from agi_core.domain.context.state.state_manager import ConversationStateStore
from agi_core.domain.models.conversation_state import Message, MessageRole
from agi_core.domain.repository.conversation_repository import ConversationRepository
from agi_core.domain.streaming.schema.chunks import DONE_LINE, ChatCompletionChunk
from agi_core.infrastructure.observability.langfuse_tracing import Observer

logger = structlog.get_logger(__name__)


class StreamingFinalizer:
    """Streams the reply of a turn as SSE and closes the turn.

    Whatever way the stream ends (exhausted, failed, or abandoned by the
    client) the answer generation is ended, the trace finalized and the
    assistant message stored, exactly once and with the text produced so far.
    """

    def __init__(self, repository: ConversationRepository):
        self.repository = repository

    async def stream(
        self,
        store: ConversationStateStore,
        observer: Observer,
        generation_id: str,
        tokens: AsyncIterator[str],
        model: str
    ) -> AsyncIterator[str]:
        chunk_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        parts: List[str] = []
        flushed = False

        try:
            async for delta in tokens:
                parts.append(delta)
                yield ChatCompletionChunk.content(chunk_id, created, model, delta).to_sse()

            yield ChatCompletionChunk.stop(chunk_id, created, model).to_sse()
            yield DONE_LINE
        finally:
            if not flushed:
                flushed = True
                # Shielded: a cancelled response must still close the turn
                await asyncio.shield(self._flush(store, observer, generation_id, "".join(parts)))

            aclose = getattr(tokens, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _flush(
        self,
        store: ConversationStateStore,
        observer: Observer,
        generation_id: str,
        content: str
    ) -> Optional[Message]:
        state = store.get_state()
        reply = Message(role=MessageRole.ASSISTANT, content=content)

        observer.end_generation(generation_id, content)
        await observer.finalize_trace([*state.interaction.messages, reply], [content])

        await store.update_interaction({"messages": [*state.interaction.messages, reply]})
        await self.repository.append_message(state.config.conversation_id, reply)

        logger.info(
            "Reply flushed",
            conversation_id=state.config.conversation_id,
            length=len(content)
        )
        return reply
