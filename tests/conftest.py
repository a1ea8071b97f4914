# tests/conftest.py
"""
Shared fixtures: a completion client answering by call label, a recording
Langfuse v2 client, recording tools and an orchestrator wired to them.
"""

from typing import Any, Dict, List, Optional, Tuple
import pytest
import pytest_asyncio

from agi_core.domain.context.state.state_manager import StateManager
from agi_core.domain.models.conversation_state import AgentProfile
from agi_core.domain.models.errors import ProviderError
from agi_core.domain.orchestration.core.main_agent import AgentOrchestrator
from agi_core.domain.repository.conversation_repository import InMemoryConversationRepository
from agi_core.domain.tool.tool_executor import ToolResult
from agi_core.domain.tool.tool_registry import ToolCapability, build_registry
from agi_core.infrastructure.config.settings import Settings
from agi_core.infrastructure.observability.langfuse_tracing import Observer


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeCompletionClient:
    """Answers ``object`` calls from per-label queues; the last answer repeats.

    Labels without a queued answer fail with ProviderError, which the
    degrading phases turn into empty thoughts.
    """

    def __init__(self):
        self.answers: Dict[str, List[Any]] = {}
        self.failures: List[Tuple[str, Optional[str], Exception]] = []
        self.answer_chunks: List[str] = ["Hello", " there", "!"]
        self.calls: List[Dict[str, Any]] = []

    def respond(self, label: str, *answers: Any) -> "FakeCompletionClient":
        self.answers.setdefault(label, []).extend(answers)
        return self

    def fail(self, label: str, error: Exception, model: Optional[str] = None) -> "FakeCompletionClient":
        """Fail the next call for ``label`` (optionally only on ``model``)"""
        self.failures.append((label, model, error))
        return self

    def labels(self) -> List[str]:
        return [call["label"] for call in self.calls]

    def _maybe_fail(self, label: Optional[str], model: str) -> None:
        for index, (failing_label, failing_model, error) in enumerate(self.failures):
            if failing_label == label and failing_model in (None, model):
                del self.failures[index]
                raise error

    async def object(self, messages, model, temperature=0.0, label=None):
        self.calls.append({"kind": "object", "label": label, "model": model, "messages": messages})
        self._maybe_fail(label, model)
        queue = self.answers.get(label)
        if not queue:
            raise ProviderError(f"No answer queued for {label}", model=model)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def text(self, messages, model, temperature=0.7, label=None):
        return "".join(self.answer_chunks)

    async def stream(self, messages, model, temperature=0.7, label=None):
        self.calls.append({"kind": "stream", "label": label, "model": model, "messages": messages})
        self._maybe_fail(label, model)
        for chunk in self.answer_chunks:
            yield chunk


class FakeObservation:
    """Records Langfuse v2 client calls (trace, span, generation, event)"""

    def __init__(self, kind: str, kwargs: Dict[str, Any], log: List[Tuple[str, Dict[str, Any]]]):
        self.kind = kind
        self.kwargs = kwargs
        self.log = log
        self.children: List["FakeObservation"] = []
        self.ended: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        log.append((kind, kwargs))

    def _child(self, kind: str, kwargs: Dict[str, Any]) -> "FakeObservation":
        child = FakeObservation(kind, kwargs, self.log)
        self.children.append(child)
        return child

    def span(self, **kwargs):
        return self._child("span", kwargs)

    def generation(self, **kwargs):
        return self._child("generation", kwargs)

    def event(self, **kwargs):
        return self._child("event", kwargs)

    def end(self, **kwargs):
        self.ended.append(kwargs)
        return self

    def update(self, **kwargs):
        self.updates.append(kwargs)
        return self


class FakeLangfuse:
    def __init__(self):
        self.log: List[Tuple[str, Dict[str, Any]]] = []
        self.traces: List[FakeObservation] = []
        self.flushed = 0
        self.shut_down = False

    def trace(self, **kwargs):
        trace = FakeObservation("trace", kwargs, self.log)
        self.traces.append(trace)
        return trace

    def flush(self):
        self.flushed += 1

    def shutdown(self):
        self.shut_down = True


class RecordingTool:
    def __init__(self, result: Any = None, error: Optional[Exception] = None, context: Optional[str] = None):
        self.result = result if result is not None else ToolResult.ok({"done": True})
        self.error = error
        self.context = context
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, action_name, payload, trace_context):
        self.calls.append({"action": action_name, "payload": payload, "trace_context": trace_context})
        if self.error is not None:
            raise self.error
        return self.result

    async def get_context(self):
        return self.context


def capability(name: str, tool: Any, required_settings=(), input_schema=None) -> ToolCapability:
    return ToolCapability(
        name=name,
        description=f"{name} tool",
        required_settings=tuple(required_settings),
        actions=("run",),
        input_schema=input_schema,
        factory=lambda settings: tool
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(model="gpt-4o", alt_model="gpt-4o-mini", max_steps=5, credentials={"WEB_API_KEY": "k"})


@pytest.fixture
def completion():
    return FakeCompletionClient()


@pytest.fixture
def langfuse():
    return FakeLangfuse()


@pytest.fixture
def repository():
    return InMemoryConversationRepository()


@pytest.fixture
def web_tool():
    return RecordingTool(result=ToolResult.ok({"results": ["Paris"]}))


@pytest.fixture
def registry(settings, web_tool):
    return build_registry(settings, [
        capability(
            "web",
            web_tool,
            required_settings=("WEB_API_KEY",),
            input_schema={
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"]
            }
        ),
        capability("linear", RecordingTool(), required_settings=("LINEAR_API_KEY",))
    ])


@pytest.fixture
def observers():
    return []


@pytest.fixture
def orchestrator(completion, registry, settings, repository, langfuse, observers):
    def observer_factory():
        observer = Observer(langfuse)
        observers.append(observer)
        return observer

    return AgentOrchestrator(completion, registry, settings, repository, observer_factory=observer_factory)


@pytest.fixture
def state_manager():
    return StateManager()


@pytest_asyncio.fixture
async def store(state_manager):
    return await state_manager.get_store(
        "conv-1",
        model="gpt-4o",
        alt_model="gpt-4o-mini",
        user_id="user-1",
        profile=AgentProfile(assistant_name="Alice", user_name="Bob")
    )
