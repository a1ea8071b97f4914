# Langfuse integration
from typing import Dict, Any, List, Optional, Sequence, Union
from datetime import datetime
import uuid

from langfuse import Langfuse
from pydantic import BaseModel, Field
import structlog

from agi_core.domain.models.errors import TracingMisuse
from agi_core.infrastructure.config.settings import Settings

logger = structlog.get_logger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


class SpanRecord(BaseModel):
    """Logical phase of a turn"""
    id: str = Field(default_factory=_new_id)
    name: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None


class GenerationSpec(BaseModel):
    """Parameters of a model call to be traced"""
    name: str
    input: Any = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GenerationRecord(BaseModel):
    """One model call"""
    id: str = Field(default_factory=_new_id)
    name: str
    input: Any = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    parent_id: Optional[str] = Field(None, description="Span id, None when parented to the trace")
    output: Optional[Any] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None


class EventRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    parent_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Trace:
    """Root of one conversation turn.

    The trace owns the arena of its spans, generations and events, so two
    traces never share an id space. When an exporter client is attached,
    every record is mirrored to it as it is created or ended.
    """

    def __init__(
        self,
        name: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.id = _new_id()
        self.name = name
        self.user_id = user_id
        self.session_id = session_id
        self.metadata = metadata or {}
        self.input: Optional[Any] = None
        self.output: Optional[Any] = None
        self.spans: Dict[str, SpanRecord] = {}
        self.generations: Dict[str, GenerationRecord] = {}
        self.events: List[EventRecord] = []
        self.finalized = False
        self._client: Optional[Any] = None
        self._span_clients: Dict[str, Any] = {}
        self._generation_clients: Dict[str, Any] = {}

    def attach_client(self, client: Any) -> None:
        self._client = client

    def get_span(self, span_id: str) -> SpanRecord:
        span = self.spans.get(span_id)
        if span is None:
            raise TracingMisuse(f"Span with id {span_id} not found", {"span_id": span_id})
        return span

    def get_generation(self, generation_id: str) -> GenerationRecord:
        generation = self.generations.get(generation_id)
        if generation is None:
            raise TracingMisuse(f"Generation with id {generation_id} not found", {"generation_id": generation_id})
        return generation

    def add_span(self, span: SpanRecord) -> SpanRecord:
        self.spans[span.id] = span
        if self._client is not None:
            self._span_clients[span.id] = self._client.span(
                id=span.id, name=span.name, metadata=span.metadata
            )
        return span

    def add_generation(self, generation: GenerationRecord) -> GenerationRecord:
        self.generations[generation.id] = generation
        if self._client is not None:
            parent = self._span_clients[generation.parent_id] if generation.parent_id else self._client
            self._generation_clients[generation.id] = parent.generation(
                id=generation.id,
                name=generation.name,
                input=generation.input,
                model=generation.model,
                metadata=generation.metadata
            )
        return generation

    def add_event(self, event: EventRecord) -> EventRecord:
        self.events.append(event)
        if self._client is not None:
            parent = self._span_clients[event.parent_id] if event.parent_id else self._client
            parent.event(id=event.id, name=event.name, metadata=event.metadata)
        return event

    def close_span(self, span: SpanRecord, output: Any) -> None:
        span.output = output
        span.ended_at = datetime.utcnow()
        if span.id in self._span_clients:
            self._span_clients[span.id].end(output=output)

    def close_generation(self, generation: GenerationRecord, output: Any) -> None:
        generation.output = output
        generation.ended_at = datetime.utcnow()
        if generation.id in self._generation_clients:
            self._generation_clients[generation.id].end(output=output)

    def close(self, input: Any, output: Any) -> None:
        self.input = input
        self.output = output
        self.finalized = True
        if self._client is not None:
            self._client.update(input=input, output=output)

    def open_observations(self) -> List[str]:
        """Names of spans and generations that were never ended"""
        return [s.name for s in self.spans.values() if not s.ended] + [
            g.name for g in self.generations.values() if not g.ended
        ]


class Observer:
    """Trace/span/generation tracker for a single reasoning cycle"""

    def __init__(self, langfuse: Optional[Langfuse] = None):
        self.langfuse = langfuse
        self.trace: Optional[Trace] = None
        self.finished: List[Trace] = []

    @property
    def active(self) -> bool:
        return self.trace is not None

    def _require_trace(self) -> Trace:
        if self.trace is None:
            raise TracingMisuse("Trace not initialized")
        return self.trace

    def initialize_trace(
        self,
        name: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Trace:
        """Open the root trace of a turn"""

        if self.trace is not None:
            raise TracingMisuse(
                f"Trace {self.trace.name} is already active",
                {"trace_id": self.trace.id}
            )

        trace = Trace(name=name, user_id=user_id, session_id=session_id, metadata=metadata)
        if self.langfuse is not None:
            trace.attach_client(self.langfuse.trace(
                id=trace.id,
                name=name,
                user_id=user_id,
                session_id=session_id,
                metadata=trace.metadata
            ))
        self.trace = trace

        logger.debug("Trace initialized", trace_id=trace.id, name=name)
        return trace

    def start_span(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> SpanRecord:
        trace = self._require_trace()
        return trace.add_span(SpanRecord(name=name, metadata=metadata or {}))

    def start_generation(
        self,
        spec: Union[GenerationSpec, Dict[str, Any]],
        parent_span_id: Optional[str] = None
    ) -> GenerationRecord:
        """Open a generation under the given span, or under the trace"""

        trace = self._require_trace()
        if isinstance(spec, dict):
            spec = GenerationSpec.model_validate(spec)

        if parent_span_id is not None:
            if parent_span_id not in trace.spans:
                raise TracingMisuse(
                    f"Parent span with id {parent_span_id} not found",
                    {"span_id": parent_span_id}
                )
            if trace.spans[parent_span_id].ended:
                raise TracingMisuse(
                    f"Parent span with id {parent_span_id} already ended",
                    {"span_id": parent_span_id}
                )

        return trace.add_generation(GenerationRecord(
            name=spec.name,
            input=spec.input,
            model=spec.model,
            metadata=spec.metadata,
            parent_id=parent_span_id
        ))

    def record_event(
        self,
        name: str,
        metadata: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None
    ) -> EventRecord:
        trace = self._require_trace()
        if parent_id is not None:
            trace.get_span(parent_id)
        return trace.add_event(EventRecord(name=name, metadata=metadata or {}, parent_id=parent_id))

    def end_span(self, span_id: str, output: Optional[Any] = None) -> SpanRecord:
        trace = self._require_trace()
        span = trace.get_span(span_id)
        if span.ended:
            raise TracingMisuse(f"Span with id {span_id} already ended", {"span_id": span_id})
        trace.close_span(span, output)
        return span

    def end_generation(self, generation_id: str, output: Optional[Any] = None) -> GenerationRecord:
        trace = self._require_trace()
        generation = trace.get_generation(generation_id)
        if generation.ended:
            raise TracingMisuse(
                f"Generation with id {generation_id} already ended",
                {"generation_id": generation_id}
            )
        trace.close_generation(generation, output)
        return generation

    async def finalize_trace(self, messages: Sequence[Any], outputs: Sequence[Any]) -> Trace:
        """Record the turn's input and output and release the active trace"""

        trace = self._require_trace()
        trace.close(
            input=[_dump(m) for m in messages],
            output=[_dump(o) for o in outputs]
        )

        unfinished = trace.open_observations()
        if unfinished:
            logger.warning("Trace finalized with open observations", trace_id=trace.id, open=unfinished)

        self.finished.append(trace)
        self.trace = None
        return trace

    async def shutdown(self) -> None:
        """Flush buffered export"""

        if self.langfuse is not None:
            self.langfuse.flush()


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def build_langfuse_client(settings: Settings) -> Optional[Langfuse]:
    """Exporter client, or None when Langfuse is not configured"""

    if not settings.langfuse.enabled:
        logger.info("Langfuse disabled, traces stay local")
        return None

    return Langfuse(
        public_key=settings.langfuse.public_key,
        secret_key=settings.langfuse.secret_key,
        host=settings.langfuse.host
    )
