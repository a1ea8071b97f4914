from typing import Dict, List, Optional, Protocol, Sequence
from collections import defaultdict
from datetime import datetime
import asyncio

from agi_core.domain.models.conversation_state import Action, Message, Task


class ConversationRepository(Protocol):
    """Durable storage of tasks, actions and messages.

    Every write returns the canonical stored record.
    """

    async def create_tasks(self, tasks: Sequence[Task]) -> List[Task]:
        ...

    async def create_action(self, action: Action) -> Action:
        ...

    async def update_action(self, action: Action) -> Action:
        ...

    async def append_message(self, conversation_id: str, message: Message) -> Message:
        ...

    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        ...


class InMemoryConversationRepository:
    """Process-local repository, used in development and tests"""

    def __init__(self, max_messages: int = 100):
        self.tasks: Dict[str, Task] = {}
        self.actions: Dict[str, Action] = {}
        self.messages: Dict[str, List[Message]] = defaultdict(list)
        self.max_messages = max_messages
        self._lock = asyncio.Lock()

    async def create_tasks(self, tasks: Sequence[Task]) -> List[Task]:
        async with self._lock:
            stored = []
            for task in tasks:
                self.tasks[task.id] = task
                stored.append(task)
            return stored

    async def create_action(self, action: Action) -> Action:
        async with self._lock:
            if action.task_id not in self.tasks:
                raise KeyError(f"Task {action.task_id} not found")
            self.actions[action.id] = action
            return action

    async def update_action(self, action: Action) -> Action:
        async with self._lock:
            if action.id not in self.actions:
                raise KeyError(f"Action {action.id} not found")
            stored = action.model_copy(update={"updated_at": datetime.utcnow()})
            self.actions[action.id] = stored
            return stored

    async def append_message(self, conversation_id: str, message: Message) -> Message:
        async with self._lock:
            history = self.messages[conversation_id]
            history.append(message)

            # Limit conversation history
            if len(history) > self.max_messages:
                self.messages[conversation_id] = history[-self.max_messages:]
            return message

    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        async with self._lock:
            history = list(self.messages.get(conversation_id, []))
            return history[-limit:] if limit else history

    async def get_actions(self, task_id: str) -> List[Action]:
        async with self._lock:
            return sorted(
                (a for a in self.actions.values() if a.task_id == task_id),
                key=lambda a: a.sequence
            )
