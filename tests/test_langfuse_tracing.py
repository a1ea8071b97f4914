# tests/test_langfuse_tracing.py
import pytest

from agi_core.domain.models.errors import TracingMisuse
from agi_core.infrastructure.config.settings import LangfuseSettings, Settings
from agi_core.infrastructure.observability.langfuse_tracing import (
    GenerationSpec, Observer, build_langfuse_client
)


class TestObserverLifecycle:
    def test_span_requires_trace(self):
        with pytest.raises(TracingMisuse, match="Trace not initialized"):
            Observer().start_span("observing")

    def test_only_one_active_trace(self):
        observer = Observer()
        observer.initialize_trace("turn")
        with pytest.raises(TracingMisuse):
            observer.initialize_trace("turn")

    def test_generation_with_unknown_parent(self):
        observer = Observer()
        observer.initialize_trace("turn")
        with pytest.raises(TracingMisuse, match="Parent span with id missing not found"):
            observer.start_generation({"name": "plan"}, parent_span_id="missing")

    def test_generation_under_ended_span(self):
        observer = Observer()
        observer.initialize_trace("turn")
        span = observer.start_span("planning")
        observer.end_span(span.id)
        with pytest.raises(TracingMisuse):
            observer.start_generation(GenerationSpec(name="plan"), span.id)

    def test_double_end_is_rejected(self):
        observer = Observer()
        observer.initialize_trace("turn")
        span = observer.start_span("planning")
        generation = observer.start_generation(GenerationSpec(name="plan"), span.id)

        observer.end_generation(generation.id, {"result": []})
        with pytest.raises(TracingMisuse):
            observer.end_generation(generation.id, {"result": []})

        observer.end_span(span.id)
        with pytest.raises(TracingMisuse):
            observer.end_span(span.id)

    def test_unknown_ids_raise(self):
        observer = Observer()
        observer.initialize_trace("turn")
        with pytest.raises(TracingMisuse):
            observer.end_span("nope")
        with pytest.raises(TracingMisuse):
            observer.end_generation("nope")
        with pytest.raises(TracingMisuse):
            observer.record_event("x", parent_id="nope")

    @pytest.mark.asyncio
    async def test_finalize_releases_trace(self):
        observer = Observer()
        trace = observer.initialize_trace("turn")
        await observer.finalize_trace([{"role": "user", "content": "hi"}], ["hello"])

        assert not observer.active
        assert trace.finalized
        assert trace.output == ["hello"]
        assert observer.finished == [trace]

        # a new turn can start on the same observer
        observer.initialize_trace("turn")
        assert observer.active

    def test_traces_have_separate_arenas(self):
        first, second = Observer(), Observer()
        first.initialize_trace("a")
        second.initialize_trace("b")
        span = first.start_span("observing")

        with pytest.raises(TracingMisuse):
            second.start_generation({"name": "x"}, span.id)


class TestLangfuseExport:
    @pytest.mark.asyncio
    async def test_records_are_mirrored_to_client(self, langfuse):
        observer = Observer(langfuse)
        trace = observer.initialize_trace("turn", user_id="u", session_id="c")
        span = observer.start_span("planning", {"phase": "plan"})
        generation = observer.start_generation(GenerationSpec(name="task_planning", model="gpt-4o"), span.id)
        observer.record_event("fast_track", {"result": False})
        observer.end_generation(generation.id, {"result": []})
        observer.end_span(span.id, {"tasks": []})
        await observer.finalize_trace(["hi"], ["hello"])
        await observer.shutdown()

        client_trace = langfuse.traces[0]
        assert client_trace.kwargs["id"] == trace.id
        assert client_trace.kwargs["session_id"] == "c"

        client_span, client_event = client_trace.children
        assert client_span.kwargs["id"] == span.id
        assert client_span.ended == [{"output": {"tasks": []}}]
        assert client_event.kind == "event"

        client_generation = client_span.children[0]
        assert client_generation.kwargs["id"] == generation.id
        assert client_generation.ended == [{"output": {"result": []}}]

        assert client_trace.updates == [{"input": ["hi"], "output": ["hello"]}]
        assert langfuse.flushed == 1

    def test_client_only_built_when_configured(self):
        assert build_langfuse_client(Settings()) is None
        assert Settings(langfuse=LangfuseSettings(public_key="pk", secret_key="sk")).langfuse.enabled
