from typing import Dict, Any, Optional, Type, TypeVar
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import asyncio
import uuid

from pydantic import BaseModel
import structlog

from agi_core.domain.models.conversation_state import (
    AgentProfile, AgentThoughts, ConversationConfig, ConversationState,
    Interaction, SessionContext
)
from agi_core.domain.models.errors import ConversationBusy

logger = structlog.get_logger(__name__)

PartT = TypeVar("PartT", bound=BaseModel)


def _merge(part: PartT, partial: Dict[str, Any]) -> PartT:
    """Shallow merge ``partial`` into a frozen sub-model, revalidating field types"""

    unknown = set(partial) - set(type(part).model_fields)
    if unknown:
        raise KeyError(f"Unknown {type(part).__name__} fields: {sorted(unknown)}")
    model_cls: Type[PartT] = type(part)
    return model_cls.model_validate({**dict(part), **partial})


class ConversationStateStore:
    """Holds the reasoning context of a single conversation.

    Readers get immutable snapshots; writers go through the ``update_*``
    methods, each a shallow merge into one sub-object performed under a lock
    so that readers never observe a half-applied update.
    """

    def __init__(self, initial: ConversationState):
        self._state = initial
        self._lock = asyncio.Lock()
        self._turn_id: Optional[str] = None
        self.created_at = datetime.utcnow()
        self.last_updated = self.created_at

    @property
    def conversation_id(self) -> str:
        return self._state.config.conversation_id

    @property
    def turn_active(self) -> bool:
        return self._turn_id is not None

    def get_state(self) -> ConversationState:
        """Current immutable snapshot"""
        return self._state

    async def _update(self, field: str, partial: Dict[str, Any]) -> ConversationState:
        async with self._lock:
            merged = _merge(getattr(self._state, field), partial)
            self._state = self._state.model_copy(update={field: merged})
            self.last_updated = datetime.utcnow()
            return self._state

    async def update_config(self, partial: Dict[str, Any]) -> ConversationState:
        return await self._update("config", partial)

    async def update_thoughts(self, partial: Dict[str, Any]) -> ConversationState:
        return await self._update("thoughts", partial)

    async def update_interaction(self, partial: Dict[str, Any]) -> ConversationState:
        return await self._update("interaction", partial)

    async def update_profile(self, partial: Dict[str, Any]) -> ConversationState:
        return await self._update("profile", partial)

    async def update_session(self, partial: Dict[str, Any]) -> ConversationState:
        return await self._update("session", partial)

    def claim_turn(self) -> str:
        """Claim the store for one reasoning cycle and return the claim id.

        Synchronous so a caller can claim before handing the turn to a
        response that starts later.
        """

        if self._turn_id is not None:
            raise ConversationBusy(self.conversation_id)
        self._turn_id = uuid.uuid4().hex
        return self._turn_id

    def release_turn(self, turn_id: str) -> None:
        """Release a claim; stale ids are ignored"""

        if self._turn_id == turn_id:
            self._turn_id = None
            self.last_updated = datetime.utcnow()

    @asynccontextmanager
    async def begin_turn(self, turn_id: Optional[str] = None):
        """Run one reasoning cycle under ``turn_id``, claiming it when not given"""

        if turn_id is None:
            turn_id = self.claim_turn()
        elif self._turn_id != turn_id:
            raise ConversationBusy(self.conversation_id)
        try:
            yield self
        finally:
            self.release_turn(turn_id)


class StateManager:
    """Manages one conversation state store per conversation id"""

    def __init__(self, idle_timeout: Optional[timedelta] = None):
        self.stores: Dict[str, ConversationStateStore] = {}
        self.idle_timeout = idle_timeout
        self._lock = asyncio.Lock()

    def _sweep(self, now: datetime) -> int:
        if self.idle_timeout is None:
            return 0
        idle = [
            conversation_id for conversation_id, store in self.stores.items()
            if not store.turn_active and now - store.last_updated > self.idle_timeout
        ]
        for conversation_id in idle:
            del self.stores[conversation_id]
        if idle:
            logger.debug("Evicted idle conversation states", count=len(idle))
        return len(idle)

    async def evict_idle(self, now: Optional[datetime] = None) -> int:
        """Drop stores without an active turn that were idle past ``idle_timeout``"""

        async with self._lock:
            return self._sweep(now or datetime.utcnow())

    async def get_store(
        self,
        conversation_id: str,
        model: str,
        alt_model: Optional[str] = None,
        user_id: Optional[str] = None,
        profile: Optional[AgentProfile] = None
    ) -> ConversationStateStore:
        """Get the store for a conversation, creating it on first use"""

        async with self._lock:
            self._sweep(datetime.utcnow())
            store = self.stores.get(conversation_id)
            if store is None:
                store = ConversationStateStore(ConversationState(
                    interaction=Interaction(),
                    config=ConversationConfig(
                        model=model,
                        alt_model=alt_model,
                        user_id=user_id,
                        conversation_id=conversation_id
                    ),
                    profile=profile or AgentProfile(),
                    thoughts=AgentThoughts(),
                    session=SessionContext()
                ))
                self.stores[conversation_id] = store
                logger.debug("Created conversation state", conversation_id=conversation_id)
            return store

    async def clear_state(self, conversation_id: str):
        """Drop the store of a conversation"""

        async with self._lock:
            self.stores.pop(conversation_id, None)

    async def active_conversations(self) -> Dict[str, Dict[str, Any]]:
        """Summaries of all conversations with a live store"""

        async with self._lock:
            return {
                conversation_id: store.get_state().get_state_summary()
                for conversation_id, store in self.stores.items()
            }
