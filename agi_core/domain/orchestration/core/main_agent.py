from typing import TypedDict, Annotated, List, Dict, Any, AsyncIterator, Callable, Optional, Literal
from contextlib import aclosing
import json
import operator

from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field
import structlog

from agi_core.domain.context.state.state_manager import ConversationStateStore
from agi_core.domain.models.conversation_state import (
    FINAL_ANSWER_TOOL, Action, ConversationConfig, ConversationState, Message,
    MessageRole, Reference, Task, TaskSpec, TaskStatus
)
from agi_core.domain.models.errors import (
    ProviderError, ProviderRateLimited, ReasoningFailed, ToolNotFound, ToolPayloadInvalid
)
from agi_core.domain.orchestration.task.action_engine import TaskActionEngine
from agi_core.domain.prompts import agent as prompts
from agi_core.domain.repository.conversation_repository import ConversationRepository
from agi_core.domain.streaming.schema.chunks import parse_sse_content
from agi_core.domain.streaming.streaming_handler import StreamingFinalizer
from agi_core.domain.tool.tool_executor import TraceContext
from agi_core.domain.tool.tool_registry import ToolRegistry
from agi_core.domain.tool.tool_validator import ToolParameterValidator
from agi_core.infrastructure.config.settings import Settings
from agi_core.infrastructure.llm.completion import CompletionClient
from agi_core.infrastructure.observability.langfuse_tracing import GenerationSpec, Observer
from agi_core.infrastructure.observability.logging import (
    agent_logger, bind_turn_context, clear_turn_context
)

logger = structlog.get_logger(__name__)

FAILED_REPLY = "I'm sorry, I failed to respond to that. Please try again."


class ToolUse(BaseModel):
    """Tool operation and payload chosen by the model for the current action"""
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class WorkflowState(TypedDict):
    """State for the workflow graph"""
    store: ConversationStateStore
    observer: Observer
    span_id: Optional[str]
    action_id: Optional[str]
    tool_use: Optional[ToolUse]
    agent_chain_trace: Annotated[List[str], operator.add]


def should_continue_thinking(state: ConversationState, max_steps: int) -> bool:
    """Whether the reasoning loop runs another next/use/act iteration"""

    current_tool = state.config.current_tool
    if current_tool is not None and current_tool.name == FINAL_ANSWER_TOOL:
        return False
    if state.config.step >= max_steps:
        return False
    return bool(state.pending_tasks())


def _fallback_model(config: ConversationConfig, model: str) -> Optional[str]:
    candidate = config.alt_model if model != config.alt_model else config.model
    if not candidate or candidate == model:
        return None
    return candidate


def _result(answer: Any, kind: type, default: Any) -> Any:
    value = answer.get("result") if isinstance(answer, dict) else None
    return value if isinstance(value, kind) else default


def _system(content: str) -> Dict[str, str]:
    return {"role": MessageRole.SYSTEM.value, "content": content}


def _user(content: str) -> Dict[str, str]:
    return {"role": MessageRole.USER.value, "content": content}


def _history(state: ConversationState) -> List[Dict[str, str]]:
    return [m.as_chat() for m in state.interaction.messages]


async def _single(text: str) -> AsyncIterator[str]:
    yield text


class AgentOrchestrator:
    """Drives one conversation turn.

    fast_track -> [observe -> draft -> plan -> (next -> use -> act)*] -> answer.
    The reasoning part runs as a LangGraph workflow over the conversation's
    state store; the answer is streamed through the StreamingFinalizer.
    """

    def __init__(
        self,
        completion: CompletionClient,
        registry: ToolRegistry,
        settings: Settings,
        repository: ConversationRepository,
        engine: Optional[TaskActionEngine] = None,
        observer_factory: Optional[Callable[[], Observer]] = None
    ):
        self.completion = completion
        self.registry = registry
        self.settings = settings
        self.repository = repository
        self.engine = engine or TaskActionEngine(repository)
        self.observer_factory = observer_factory or Observer
        self.finalizer = StreamingFinalizer(repository)
        # observe, draft, plan and finalize plus three nodes per iteration
        self.recursion_limit = settings.max_steps * 3 + 10
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the reasoning workflow graph"""

        workflow = StateGraph(WorkflowState)

        workflow.add_node("observe", self.observe_node)
        workflow.add_node("draft", self.draft_node)
        workflow.add_node("plan", self.plan_node)
        workflow.add_node("next", self.next_node)
        workflow.add_node("use", self.use_node)
        workflow.add_node("act", self.act_node)
        workflow.add_node("finalize", self.finalize_node)

        workflow.set_entry_point("observe")
        workflow.add_edge("observe", "draft")
        workflow.add_edge("draft", "plan")

        workflow.add_conditional_edges(
            "plan",
            self.route_thinking,
            {"continue": "next", "finish": "finalize"}
        )
        workflow.add_conditional_edges(
            "next",
            self.route_after_next,
            {"use": "use", "finish": "finalize"}
        )
        workflow.add_edge("use", "act")
        workflow.add_conditional_edges(
            "act",
            self.route_thinking,
            {"continue": "next", "finish": "finalize"}
        )
        workflow.add_edge("finalize", END)

        return workflow.compile()

    # Model access

    async def _call_object(self, state: ConversationState, messages: List[Dict[str, str]], model: str, label: str) -> Any:
        try:
            return await self.completion.object(messages, model=model, label=label)
        except ProviderRateLimited as e:
            fallback = _fallback_model(state.config, model)
            if fallback is None:
                raise
            logger.warning("Rate limited, retrying on fallback model", model=model, fallback=fallback, label=label, error=e.message)
            return await self.completion.object(messages, model=fallback, label=label)

    async def _ask(
        self,
        state: ConversationState,
        observer: Observer,
        name: str,
        messages: List[Dict[str, str]],
        model: str,
        span_id: Optional[str]
    ) -> Any:
        """Traced JSON completion"""

        generation = observer.start_generation(GenerationSpec(name=name, input=messages, model=model), span_id)
        try:
            answer = await self._call_object(state, messages, model, name)
        except ProviderError as e:
            observer.end_generation(generation.id, {"error": e.message})
            raise
        observer.end_generation(generation.id, answer)
        return answer

    async def _degrade(
        self,
        state: ConversationState,
        observer: Observer,
        name: str,
        messages: List[Dict[str, str]],
        model: str,
        span_id: Optional[str],
        kind: type,
        default: Any
    ) -> Any:
        try:
            answer = await self._ask(state, observer, name, messages, model, span_id)
        except ProviderRateLimited as e:
            # fallback model was already tried
            raise ReasoningFailed(name, e) from e
        except ProviderError as e:
            logger.warning("Thought degraded to empty", thought=name, error=e.message)
            return default
        return _result(answer, kind, default)

    # Phases

    async def fast_track(self, store: ConversationStateStore, observer: Observer) -> bool:
        """Classify whether the message can be answered without tools"""

        state = store.get_state()
        if not self.settings.fast_track_enabled:
            await store.update_config({"fast_track": False})
            return False

        messages = [
            _system(prompts.fast_track_prompt(state)),
            *[m.as_chat() for m in state.recent_dialogue(self.settings.fast_track_history)]
        ]
        try:
            answer = await self._call_object(state, messages, state.config.model, "fast_track")
            result = _result(answer, bool, False) is True
        except ProviderError as e:
            logger.warning("Fast track classification failed", error=e.message)
            answer, result = {"error": e.message}, False

        observer.record_event("fast_track", {"result": result, "output": answer})
        await store.update_config({"fast_track": result})
        return result

    async def observe(self, store: ConversationStateStore, observer: Observer, span_id: Optional[str] = None) -> ConversationState:
        """Fill environment and context thoughts"""

        state = store.get_state()
        model = state.config.alt_model or state.config.model
        message = _user(state.last_user_message())

        environment = await self._degrade(
            state, observer, "environment",
            [_system(prompts.environment_prompt(state)), message],
            model, span_id, str, ""
        )
        context = await self._degrade(
            state, observer, "context",
            [_system(prompts.context_prompt(state)), message],
            model, span_id, str, ""
        )
        return await store.update_thoughts({"environment": environment, "context": context})

    async def draft(self, store: ConversationStateStore, observer: Observer, span_id: Optional[str] = None) -> ConversationState:
        """Fill candidate tools and memory thoughts"""

        state = store.get_state()
        model = state.config.alt_model or state.config.model
        message = _user(state.last_user_message())

        tools = await self._degrade(
            state, observer, "tools",
            [_system(prompts.tools_prompt(state)), message],
            model, span_id, list, []
        )
        memory = await self._degrade(
            state, observer, "memory",
            [_system(prompts.memory_prompt(state)), message],
            model, span_id, list, []
        )
        return await store.update_thoughts({
            "tools": [t for t in tools if isinstance(t, str)],
            "memory": [m for m in memory if isinstance(m, str)]
        })

    async def plan(self, store: ConversationStateStore, observer: Observer, span_id: Optional[str] = None) -> List[Task]:
        """Turn the request into ordered tasks"""

        state = store.get_state()
        messages = [_system(prompts.task_prompt(state)), *_history(state)]
        try:
            answer = await self._ask(state, observer, "task_planning", messages, state.config.model, span_id)
        except ProviderError as e:
            raise ReasoningFailed("plan", e) from e

        specs = []
        for item in _result(answer, list, []):
            if not isinstance(item, dict) or not item.get("name"):
                logger.warning("Ignoring malformed task", task=item)
                continue
            description = item.get("description")
            specs.append(TaskSpec(
                name=str(item["name"]),
                description=str(description) if description is not None else None
            ))

        tasks = await self.engine.create_tasks(state.config.conversation_id, specs)
        await store.update_interaction({"tasks": tasks})
        return tasks

    async def next(self, store: ConversationStateStore, observer: Observer, span_id: Optional[str] = None) -> Optional[Action]:
        """Pick the action to work on, asking the model for one when none is pending"""

        state = store.get_state()
        action = self.engine.select_next_action(state)

        if action is None:
            messages = [_system(prompts.action_prompt(state)), _user(state.last_user_message())]
            try:
                answer = await self._ask(state, observer, "action_selection", messages, state.config.model, span_id)
            except ProviderError as e:
                raise ReasoningFailed("next", e) from e

            selection = _result(answer, dict, None)
            if selection is None:
                logger.warning("No action selected", answer=answer)
                return None

            tool_name = selection.get("tool_name")
            if tool_name == FINAL_ANSWER_TOOL:
                await store.update_config({
                    "current_tool": Reference(name=FINAL_ANSWER_TOOL),
                    "current_action": None,
                    "current_task": None
                })
                return None

            task = state.find_task(selection.get("task_id"))
            if task is None or task.status != TaskStatus.PENDING:
                pending = state.pending_tasks()
                if not pending:
                    return None
                task = pending[0]

            session_tool = state.find_session_tool(tool_name)
            await self.engine.create_action(
                store,
                task.id,
                tool_name=str(tool_name or "unknown"),
                name=str(selection.get("name") or task.name),
                tool_id=session_tool.id if session_tool else None
            )
            action = self.engine.select_next_action(store.get_state())
            if action is None:
                return None

        task = store.get_state().find_task(action.task_id)
        await store.update_config({
            "current_action": Reference(id=action.id, name=action.name),
            "current_tool": Reference(id=action.tool_id, name=action.tool_name),
            "current_task": Reference(id=task.id, name=task.name) if task else None
        })
        return action

    async def use(self, store: ConversationStateStore, observer: Observer, span_id: Optional[str] = None) -> Optional[ToolUse]:
        """Gather tool context and ask the model for the tool payload"""

        state = store.get_state()
        current = state.config.current_action
        action = state.find_action(current.id if current else None)
        if action is None:
            return None

        tool = self.registry.get(action.tool_name)
        if tool is None or not tool.available:
            # act() fails the action with ToolNotFound
            return ToolUse(action=action.name)

        try:
            note = await tool.get_context()
        except Exception as e:
            logger.warning("Tool context unavailable", tool=tool.name, error=str(e))
            note = None
        if note:
            state = await store.update_interaction({
                "tool_context": [*state.interaction.tool_context, f"{tool.name} context: {note}"]
            })

        messages = [_system(prompts.use_prompt(state, tool)), _user(state.last_user_message())]
        try:
            answer = await self._ask(state, observer, "tool_use", messages, state.config.model, span_id)
        except ProviderError as e:
            raise ReasoningFailed("use", e) from e

        selection = _result(answer, dict, None)
        if selection is None or not isinstance(selection.get("payload"), dict):
            logger.warning("Model returned no tool payload", tool=tool.name, answer=answer)
            return None
        return ToolUse(action=str(selection.get("action") or action.name), payload=selection["payload"])

    async def act(
        self,
        store: ConversationStateStore,
        observer: Observer,
        span_id: Optional[str],
        tool_use: Optional[ToolUse]
    ) -> Optional[Action]:
        """Execute the current action and record its outcome"""

        state = store.get_state()
        current = state.config.current_action
        action = state.find_action(current.id if current else None)
        if action is None:
            return None

        if tool_use is None:
            outcome = await self.engine.fail_action(store, action, "Model produced no tool payload")
            return await self._record_outcome(store, observer, span_id, outcome)

        try:
            tool = self.registry.lookup(action.tool_name)
            ToolParameterValidator.validate_tool_call(tool.name, tool_use.payload, tool.input_schema)
        except (ToolNotFound, ToolPayloadInvalid) as e:
            outcome = await self.engine.fail_action(store, action, e.message, payload=tool_use.payload)
        else:
            trace_context = TraceContext(
                trace_id=observer.trace.id if observer.trace else None,
                span_id=span_id,
                conversation_id=state.config.conversation_id,
                user_id=state.config.user_id
            )
            outcome = await self.engine.execute_action(
                store, action, tool_use.payload, tool, trace_context, operation=tool_use.action
            )
        return await self._record_outcome(store, observer, span_id, outcome)

    async def _record_outcome(
        self,
        store: ConversationStateStore,
        observer: Observer,
        span_id: Optional[str],
        action: Action
    ) -> Action:
        detail = action.error if action.error else json.dumps(action.result, default=str)
        note = f"{action.tool_name}.{action.name} {action.status.value}: {detail}"
        state = store.get_state()
        await store.update_interaction({"tool_context": [*state.interaction.tool_context, note]})

        observer.record_event(
            f"{action.tool_name}_execution_complete",
            {"action_id": action.id, "status": action.status.value, "result": action.result, "error": action.error},
            parent_id=span_id
        )
        return action

    def should_continue_thinking(self, state: ConversationState) -> bool:
        return should_continue_thinking(state, self.settings.max_steps)

    # Graph nodes

    async def observe_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]
        agent_logger.log_phase_transition(store.conversation_id, "fast_track", "observe")

        span = observer.start_span("observing", {"phase": "observe"})
        state = await self.observe(store, observer, span.id)
        observer.end_span(span.id, {"environment": state.thoughts.environment, "context": state.thoughts.context})
        return {"agent_chain_trace": ["observe"]}

    async def draft_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]
        agent_logger.log_phase_transition(store.conversation_id, "observe", "draft")

        span = observer.start_span("drafting", {"phase": "draft"})
        state = await self.draft(store, observer, span.id)
        observer.end_span(span.id, {"tools": list(state.thoughts.tools), "memory": list(state.thoughts.memory)})
        return {"agent_chain_trace": ["draft"]}

    async def plan_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]
        agent_logger.log_phase_transition(store.conversation_id, "draft", "plan")

        span = observer.start_span("planning", {"phase": "plan"})
        tasks = await self.plan(store, observer, span.id)
        observer.end_span(span.id, {"tasks": [t.name for t in tasks]})
        return {"agent_chain_trace": ["plan"]}

    async def next_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]
        step = store.get_state().config.step
        agent_logger.log_phase_transition(store.conversation_id, "plan" if step == 0 else "act", "next", step)

        span = observer.start_span(f"thinking #{step + 1}", {"phase": "reasoning_loop", "step": step})
        action = await self.next(store, observer, span.id)

        current_tool = store.get_state().config.current_tool
        if current_tool is not None and current_tool.name == FINAL_ANSWER_TOOL:
            observer.end_span(span.id, {"final_answer": True})
            return {"span_id": None, "action_id": None, "agent_chain_trace": ["next"]}

        return {
            "span_id": span.id,
            "action_id": action.id if action else None,
            "agent_chain_trace": ["next"]
        }

    async def use_node(self, wf: WorkflowState) -> Dict[str, Any]:
        tool_use = None
        if wf["action_id"]:
            tool_use = await self.use(wf["store"], wf["observer"], wf["span_id"])
        return {"tool_use": tool_use, "agent_chain_trace": ["use"]}

    async def act_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]

        outcome = None
        if wf["action_id"]:
            outcome = await self.act(store, observer, wf["span_id"], wf["tool_use"])

        state = store.get_state()
        await store.update_config({"step": state.config.step + 1})
        observer.end_span(wf["span_id"], outcome.model_dump(mode="json") if outcome else {"action": None})
        return {"span_id": None, "action_id": None, "tool_use": None, "agent_chain_trace": ["act"]}

    async def finalize_node(self, wf: WorkflowState) -> Dict[str, Any]:
        store, observer = wf["store"], wf["observer"]
        summary = store.get_state().get_state_summary()
        agent_logger.log_phase_transition(store.conversation_id, "reasoning", "finalize", summary["step"], summary)
        observer.record_event("reasoning_complete", summary)
        return {"agent_chain_trace": ["finalize"]}

    def route_thinking(self, wf: WorkflowState) -> Literal["continue", "finish"]:
        return "continue" if self.should_continue_thinking(wf["store"].get_state()) else "finish"

    def route_after_next(self, wf: WorkflowState) -> Literal["use", "finish"]:
        current_tool = wf["store"].get_state().config.current_tool
        if current_tool is not None and current_tool.name == FINAL_ANSWER_TOOL:
            return "finish"
        return "use"

    async def think(self, store: ConversationStateStore, observer: Observer) -> List[str]:
        """Run the reasoning workflow, returning the visited nodes"""

        initial_state: WorkflowState = {
            "store": store,
            "observer": observer,
            "span_id": None,
            "action_id": None,
            "tool_use": None,
            "agent_chain_trace": []
        }
        try:
            result = await self.workflow.ainvoke(initial_state, config={"recursion_limit": self.recursion_limit})
        except Exception as e:
            self._close_open_spans(observer, e)
            raise
        return result["agent_chain_trace"]

    @staticmethod
    def _close_open_spans(observer: Observer, error: BaseException) -> None:
        if observer.trace is None:
            return
        for span in list(observer.trace.spans.values()):
            if not span.ended:
                observer.end_span(span.id, {"error": str(error)})

    # Answer

    async def _stream_with_fallback(self, state: ConversationState, messages: List[Dict[str, str]], model: str) -> AsyncIterator[str]:
        emitted = False
        try:
            async for delta in self.completion.stream(messages, model=model, label="answer"):
                emitted = True
                yield delta
        except ProviderRateLimited as e:
            fallback = _fallback_model(state.config, model)
            if emitted or fallback is None:
                raise
            logger.warning("Rate limited, retrying on fallback model", model=model, fallback=fallback, label="answer", error=e.message)
            async for delta in self.completion.stream(messages, model=fallback, label="answer"):
                yield delta

    async def _answer_tokens(
        self,
        state: ConversationState,
        observer: Observer,
        messages: List[Dict[str, str]],
        model: str
    ) -> AsyncIterator[str]:
        emitted = False
        try:
            async for delta in self._stream_with_fallback(state, messages, model):
                emitted = True
                yield delta
        except ProviderError as e:
            logger.error("Answer generation failed", error=e.message, partial=emitted)
            observer.record_event("answer_failed", e.to_dict())
            if not emitted:
                yield FAILED_REPLY

    async def _begin_turn(self, store: ConversationStateStore, content: str) -> ConversationState:
        state = store.get_state()
        conversation_id = state.config.conversation_id

        history = list(state.interaction.messages)
        if not history:
            history = await self.repository.get_messages(conversation_id)

        message = Message(role=MessageRole.USER, content=content)
        await self.repository.append_message(conversation_id, message)

        await store.update_interaction({"messages": [*history, message], "tasks": [], "tool_context": []})
        await store.update_thoughts({"environment": "", "context": "", "tools": [], "memory": []})
        await store.update_config({
            "step": 0,
            "current_tool": None,
            "current_action": None,
            "current_task": None,
            "fast_track": False
        })
        return await store.update_session({"tools": self.registry.session_tools()})

    async def respond(self, store: ConversationStateStore, content: str, turn_id: Optional[str] = None) -> AsyncIterator[str]:
        """Run a full turn for ``content`` and stream the reply as SSE lines.

        ``turn_id`` is a claim already taken with ``store.claim_turn()``;
        without one the turn is claimed here.
        """

        async with store.begin_turn(turn_id):
            observer = self.observer_factory()
            try:
                state = await self._begin_turn(store, content)
                trace = observer.initialize_trace(
                    "conversation_turn",
                    user_id=state.config.user_id,
                    session_id=state.config.conversation_id,
                    metadata={
                        "model": state.config.model,
                        "assistant_name": state.profile.assistant_name,
                        "user_name": state.profile.user_name
                    }
                )
                bind_turn_context(state.config.conversation_id, trace.id)

                failure: Optional[ReasoningFailed] = None
                fast_track = await self.fast_track(store, observer)
                if not fast_track:
                    try:
                        await self.think(store, observer)
                    except ReasoningFailed as e:
                        logger.error("Reasoning failed", phase=e.phase, error=e.message)
                        observer.record_event("reasoning_failed", e.to_dict())
                        failure = e

                state = store.get_state()
                model = state.config.model
                messages = [_system(prompts.answer_prompt(state)), *_history(state)]
                generation = observer.start_generation(GenerationSpec(
                    name="answer",
                    input=messages,
                    model=model,
                    metadata={"fast_track": fast_track, "failed": failure is not None}
                ))

                if failure is not None:
                    tokens = _single(FAILED_REPLY)
                else:
                    tokens = self._answer_tokens(state, observer, messages, model)

                async with aclosing(self.finalizer.stream(store, observer, generation.id, tokens, model)) as lines:
                    async for line in lines:
                        yield line
            finally:
                # still active only when the finalizer never ran
                if observer.active:
                    await observer.finalize_trace(store.get_state().interaction.messages, [])
                await observer.shutdown()
                clear_turn_context()

    async def process_message(self, store: ConversationStateStore, content: str, turn_id: Optional[str] = None) -> str:
        """Run a turn and return the full reply text"""

        parts = []
        async for line in self.respond(store, content, turn_id):
            parts.append(parse_sse_content(line))
        return "".join(parts)
