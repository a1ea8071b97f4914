from typing import List, Optional, Sequence
import time

import structlog

from agi_core.domain.context.state.state_manager import ConversationStateStore
from agi_core.domain.models.conversation_state import (
    Action, ActionStatus, ConversationState, Task, TaskSpec
)
from agi_core.domain.models.errors import ToolExecutionError, ToolNotFound
from agi_core.domain.repository.conversation_repository import ConversationRepository
from agi_core.domain.tool.tool_executor import TraceContext
from agi_core.domain.tool.tool_registry import ToolDescriptor
from agi_core.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


class TaskActionEngine:
    """Creates and sequences tasks and actions, and runs the action lifecycle.

    Every transition is written to the repository first and then mirrored
    into the conversation's state store, so ``interaction.tasks`` always
    reflects the stored records.
    """

    def __init__(self, repository: ConversationRepository):
        self.repository = repository

    async def create_tasks(self, conversation_id: str, specs: Sequence[TaskSpec]) -> List[Task]:
        """Materialize planned tasks, numbered in plan order"""

        tasks = [
            Task(
                conversation_id=conversation_id,
                name=spec.name,
                description=spec.description,
                sequence=index
            )
            for index, spec in enumerate(specs, start=1)
        ]
        stored = await self.repository.create_tasks(tasks)
        logger.info("Tasks created", conversation_id=conversation_id, count=len(stored))
        return sorted(stored, key=lambda t: t.sequence)

    async def create_action(
        self,
        store: ConversationStateStore,
        task_id: str,
        tool_name: str,
        name: str,
        tool_id: Optional[str] = None
    ) -> Action:
        """Append a pending action to a task"""

        task = store.get_state().find_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found")

        action = Action(
            task_id=task.id,
            tool_id=tool_id,
            tool_name=tool_name,
            name=name,
            sequence=task.next_sequence()
        )
        stored = await self.repository.create_action(action)
        await self._mirror(store, stored)
        agent_logger.log_action_transition(stored.id, task.id, "none", stored.status.value)
        return stored

    @staticmethod
    def select_next_action(state: ConversationState) -> Optional[Action]:
        """Lowest-sequence pending action of the lowest-sequence task that has one"""

        for task in sorted(state.interaction.tasks, key=lambda t: t.sequence):
            pending = task.pending_actions()
            if pending:
                return pending[0]
        return None

    async def execute_action(
        self,
        store: ConversationStateStore,
        action: Action,
        payload: dict,
        tool: ToolDescriptor,
        trace_context: TraceContext,
        operation: Optional[str] = None
    ) -> Action:
        """Run a pending action through running to completed or failed"""

        operation = operation or action.name
        running = await self._transition(store, action, ActionStatus.RUNNING, payload=payload)

        started = time.perf_counter()
        try:
            result = await tool.execute(operation, payload, trace_context)
        except (ToolExecutionError, ToolNotFound) as e:
            final = await self._transition(store, running, ActionStatus.FAILED, error=e.message)
            agent_logger.log_tool_execution(
                tool_name=tool.name,
                conversation_id=trace_context.conversation_id or "",
                action_name=operation,
                input_data=payload,
                duration_ms=(time.perf_counter() - started) * 1000,
                success=False,
                error=e.message
            )
            return final

        if result.success:
            final = await self._transition(store, running, ActionStatus.COMPLETED, result=result.data)
        else:
            final = await self._transition(
                store, running, ActionStatus.FAILED,
                result=result.data, error=result.error or "Tool reported failure"
            )

        agent_logger.log_tool_execution(
            tool_name=tool.name,
            conversation_id=trace_context.conversation_id or "",
            action_name=operation,
            input_data=payload,
            duration_ms=(time.perf_counter() - started) * 1000,
            success=result.success,
            error=result.error
        )
        return final

    async def fail_action(
        self,
        store: ConversationStateStore,
        action: Action,
        error: str,
        payload: Optional[dict] = None
    ) -> Action:
        """Fail an action that never reached its tool"""

        changes = {"error": error}
        if payload is not None:
            changes["payload"] = payload
        return await self._transition(store, action, ActionStatus.FAILED, **changes)

    async def _transition(
        self,
        store: ConversationStateStore,
        action: Action,
        status: ActionStatus,
        **changes
    ) -> Action:
        updated = action.transition(status, **changes)
        stored = await self.repository.update_action(updated)
        await self._mirror(store, stored)
        agent_logger.log_action_transition(
            stored.id, stored.task_id, action.status.value, stored.status.value,
            {"error": stored.error} if stored.error else None
        )
        return stored

    @staticmethod
    async def _mirror(store: ConversationStateStore, action: Action) -> None:
        tasks = [
            task.with_action(action) if task.id == action.task_id else task
            for task in store.get_state().interaction.tasks
        ]
        await store.update_interaction({"tasks": tasks})
