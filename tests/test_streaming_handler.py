# tests/test_streaming_handler.py
import json
import pytest

from agi_core.domain.models.conversation_state import MessageRole
from agi_core.domain.streaming.schema.chunks import DONE_LINE, parse_sse_content
from agi_core.domain.streaming.streaming_handler import StreamingFinalizer
from agi_core.infrastructure.observability.langfuse_tracing import GenerationSpec, Observer


class CountingObserver(Observer):
    def __init__(self):
        super().__init__()
        self.ended_generations = 0
        self.finalized = 0

    def end_generation(self, generation_id, output=None):
        self.ended_generations += 1
        return super().end_generation(generation_id, output)

    async def finalize_trace(self, messages, outputs):
        self.finalized += 1
        return await super().finalize_trace(messages, outputs)


async def _tokens(*parts):
    for part in parts:
        yield part


def _open_turn():
    observer = CountingObserver()
    observer.initialize_trace("turn")
    generation = observer.start_generation(GenerationSpec(name="answer", model="gpt-4o"))
    return observer, generation


class TestStreamingFinalizer:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("parts", [(), ("Hi",), ("Hel", "lo", " world")])
    async def test_flush_happens_once_for_any_chunk_count(self, store, repository, parts):
        observer, generation = _open_turn()
        finalizer = StreamingFinalizer(repository)

        lines = [line async for line in finalizer.stream(store, observer, generation.id, _tokens(*parts), "gpt-4o")]

        assert lines[-1] == DONE_LINE
        assert len(lines) == len(parts) + 2
        assert "".join(parse_sse_content(line) for line in lines) == "".join(parts)
        assert observer.ended_generations == 1
        assert observer.finalized == 1
        assert observer.finished[0].generations[generation.id].output == "".join(parts)

        reply = store.get_state().interaction.messages[-1]
        assert reply.role == MessageRole.ASSISTANT
        assert reply.content == "".join(parts)
        assert (await repository.get_messages("conv-1"))[-1].content == "".join(parts)

    @pytest.mark.asyncio
    async def test_early_disconnect_flushes_partial_text(self, store, repository):
        observer, generation = _open_turn()
        finalizer = StreamingFinalizer(repository)

        stream = finalizer.stream(store, observer, generation.id, _tokens("Hel", "lo", " world"), "gpt-4o")
        first = await stream.__anext__()
        await stream.aclose()

        assert parse_sse_content(first) == "Hel"
        assert observer.ended_generations == 1
        assert observer.finalized == 1
        assert store.get_state().interaction.messages[-1].content == "Hel"

    @pytest.mark.asyncio
    async def test_token_source_failure_still_flushes(self, store, repository):
        observer, generation = _open_turn()
        finalizer = StreamingFinalizer(repository)

        async def broken():
            yield "partial"
            raise RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            async for _ in finalizer.stream(store, observer, generation.id, broken(), "gpt-4o"):
                pass

        assert observer.finalized == 1
        assert store.get_state().interaction.messages[-1].content == "partial"

    @pytest.mark.asyncio
    async def test_chunk_envelope(self, store, repository):
        observer, generation = _open_turn()
        finalizer = StreamingFinalizer(repository)

        lines = [line async for line in finalizer.stream(store, observer, generation.id, _tokens("Hi"), "gpt-4o")]
        content = json.loads(lines[0][len("data: "):])
        stop = json.loads(lines[1][len("data: "):])

        assert content["object"] == "chat.completion.chunk"
        assert content["model"] == "gpt-4o"
        assert content["choices"][0]["delta"] == {"role": "assistant", "content": "Hi"}
        assert stop["choices"][0]["finish_reason"] == "stop"
        assert stop["id"] == content["id"]
