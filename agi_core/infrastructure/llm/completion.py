"""
Model access for the reasoning loop.

Wraps LangChain chat models behind three calls: ``object`` for JSON answers,
``text`` for plain replies and ``stream`` for token deltas. Provider
exceptions are translated into ``ProviderRateLimited`` / ``ProviderError``
so the orchestrator can decide between fallback, degradation and abort.
"""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence
import json
import re

from langchain.chat_models import init_chat_model
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
import structlog

from agi_core.domain.models.conversation_state import Message, MessageRole
from agi_core.domain.models.errors import ProviderError, ProviderRateLimited

logger = structlog.get_logger(__name__)


PROVIDERS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "openai": {
        "gpt-4o": {"context_window": 128_000, "max_output": 16_384},
        "gpt-4o-mini": {"context_window": 128_000, "max_output": 16_384},
        "o1-mini": {"context_window": 128_000, "max_output": 65_536},
    },
    "google_genai": {
        "gemini-2.5-flash": {"context_window": 1_000_000, "max_output": 8_192},
        "gemini-1.5-flash": {"context_window": 1_000_000, "max_output": 8_192},
    },
    "anthropic": {
        "claude-3-5-sonnet-latest": {"context_window": 200_000, "max_output": 8_192},
    },
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def resolve_provider(model: str) -> str:
    for provider, models in PROVIDERS.items():
        if model in models:
            return provider
    return "openai"


def supported_models() -> List[str]:
    return [model for models in PROVIDERS.values() for model in models]


def max_output_tokens(model: str) -> int:
    return PROVIDERS.get(resolve_provider(model), {}).get(model, {}).get("max_output", 16_384)


def build_chat_model(model: str, temperature: float) -> BaseChatModel:
    """Default factory: provider inferred from the model table"""

    return init_chat_model(
        model,
        model_provider=resolve_provider(model),
        temperature=temperature,
        max_tokens=max_output_tokens(model)
    )


def to_langchain_messages(messages: Sequence[Any]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        if isinstance(message, BaseMessage):
            converted.append(message)
            continue
        if isinstance(message, Message):
            role, content = message.role.value, message.content
        else:
            role, content = message["role"], message["content"]

        if role == MessageRole.SYSTEM.value:
            converted.append(SystemMessage(content=content))
        elif role == MessageRole.ASSISTANT.value:
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def parse_json_object(text: str) -> Any:
    """Parse a model answer that should contain JSON, fenced or bare"""

    match = _FENCED_JSON.search(text)
    candidate = match.group(1) if match else text
    candidate = candidate.strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(candidate[start:end + 1])


def is_rate_limit(error: BaseException) -> bool:
    status = getattr(error, "status_code", None) or getattr(error, "code", None)
    if status == 429:
        return True
    name = type(error).__name__
    return "RateLimit" in name or "ResourceExhausted" in name


def classify_error(error: BaseException, model: str) -> ProviderError:
    if isinstance(error, ProviderError):
        return error
    if is_rate_limit(error):
        return ProviderRateLimited(f"Rate limited by {model}: {error}", model=model)
    return ProviderError(f"Completion on {model} failed: {error}", model=model)


class CompletionClient:
    """Chat-model client used by the orchestrator"""

    def __init__(self, model_factory: Optional[Callable[[str, float], BaseChatModel]] = None):
        self._model_factory = model_factory or build_chat_model
        self._models: Dict[tuple, BaseChatModel] = {}

    def _model(self, model: str, temperature: float) -> BaseChatModel:
        key = (model, temperature)
        if key not in self._models:
            self._models[key] = self._model_factory(model, temperature)
        return self._models[key]

    async def text(
        self,
        messages: Sequence[Any],
        model: str,
        temperature: float = 0.7,
        label: Optional[str] = None
    ) -> str:
        try:
            response = await self._model(model, temperature).ainvoke(to_langchain_messages(messages))
        except Exception as e:
            error = classify_error(e, model)
            logger.warning("Completion failed", model=model, label=label, error=error.message)
            raise error from e
        return response.content if isinstance(response.content, str) else str(response.content)

    async def object(
        self,
        messages: Sequence[Any],
        model: str,
        temperature: float = 0.0,
        label: Optional[str] = None
    ) -> Any:
        """Ask for a JSON answer and return it parsed"""

        text = await self.text(messages, model, temperature=temperature, label=label)
        try:
            return parse_json_object(text)
        except json.JSONDecodeError as e:
            logger.warning("Model returned invalid JSON", model=model, label=label)
            raise ProviderError(f"Object completion on {model} returned invalid JSON", model=model) from e

    async def stream(
        self,
        messages: Sequence[Any],
        model: str,
        temperature: float = 0.7,
        label: Optional[str] = None
    ) -> AsyncIterator[str]:
        """Yield text deltas as the model produces them"""

        try:
            async for chunk in self._model(model, temperature).astream(to_langchain_messages(messages)):
                content = chunk.content if isinstance(chunk.content, str) else ""
                if content:
                    yield content
        except Exception as e:
            error = classify_error(e, model)
            logger.warning("Completion stream failed", model=model, label=label, error=error.message)
            raise error from e
