# tests/test_api.py
import asyncio
import httpx
import pytest
from fastapi.testclient import TestClient

from agi_core.application.api.api_server import create_app
from agi_core.domain.streaming.schema.chunks import parse_sse_content

from conftest import RecordingTool, capability


@pytest.fixture
def app(settings, completion, repository, langfuse):
    completion.respond("fast_track", {"result": True})
    return create_app(
        settings=settings,
        completion=completion,
        repository=repository,
        capabilities=[capability("web", RecordingTool(), required_settings=("WEB_API_KEY",))],
        langfuse=langfuse
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


class TestChatEndpoint:
    def test_streams_sse_reply(self, client):
        response = client.post("/api/agi/chat", json={
            "messages": [{"role": "user", "content": "Hello"}],
            "conversation_id": "conv-42"
        })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["x-conversation-id"] == "conv-42"

        lines = [f"{block}\n\n" for block in response.text.split("\n\n") if block]
        assert lines[-1] == "data: [DONE]\n\n"
        assert "".join(parse_sse_content(line) for line in lines) == "Hello there!"

    def test_non_streaming_reply(self, client):
        response = client.post("/api/agi/chat", json={
            "messages": [{"role": "user", "content": "Hello"}],
            "stream": False
        })

        body = response.json()
        assert response.status_code == 200
        assert body["response"] == "Hello there!"
        assert body["model"] == "gpt-4o"
        assert body["conversation_id"]

    def test_unsupported_model_falls_back_with_warning(self, client):
        response = client.post("/api/agi/chat", json={
            "messages": [{"role": "user", "content": "Hello"}],
            "model": "gpt-2",
            "stream": False
        })

        body = response.json()
        assert body["model"] == "gpt-4o"
        assert "gpt-2" in body["warning"]

    def test_request_without_messages_is_rejected(self, client):
        assert client.post("/api/agi/chat", json={"messages": []}).status_code == 422

    def test_conversation_history(self, client):
        client.post("/api/agi/chat", json={
            "messages": [{"role": "user", "content": "Hello"}],
            "conversation_id": "conv-7",
            "stream": False
        })

        response = client.get("/api/agi/conversations/conv-7/messages")
        assert [m["role"] for m in response.json()["messages"]] == ["user", "assistant"]
        assert client.get("/api/agi/conversations/none/messages").status_code == 404

class TestTurnConflicts:
    def test_claimed_conversation_answers_conflict(self, client):
        body = {"messages": [{"role": "user", "content": "Hello"}], "conversation_id": "conv-9", "stream": False}
        assert client.post("/api/agi/chat", json=body).status_code == 200

        store = client.app.state.state_manager.stores["conv-9"]
        turn_id = store.claim_turn()

        response = client.post("/api/agi/chat", json={**body, "stream": True})
        assert response.status_code == 409
        assert "conv-9" in response.json()["detail"]

        store.release_turn(turn_id)
        assert client.post("/api/agi/chat", json=body).status_code == 200

    @pytest.mark.asyncio
    async def test_overlapping_requests(self, app, completion):
        entered = asyncio.Event()
        release = asyncio.Event()
        answer = completion.object

        async def held_object(messages, model, temperature=0.0, label=None):
            entered.set()
            await release.wait()
            return await answer(messages, model, temperature=temperature, label=label)

        completion.object = held_object
        body = {"messages": [{"role": "user", "content": "Hello"}], "conversation_id": "conv-busy"}

        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                first = asyncio.create_task(client.post("/api/agi/chat", json=body))
                await entered.wait()

                second = await client.post("/api/agi/chat", json=body)
                release.set()
                first = await first

        assert second.status_code == 409
        assert first.status_code == 200
        assert "data: [DONE]" in first.text
        assert not app.state.state_manager.stores["conv-busy"].turn_active


class TestHealth:
    def test_reports_tools_and_services(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["tools"] == {"web": True}
        assert body["services"]["max_steps"] == 5

    def test_langfuse_is_shut_down_with_app(self, app, langfuse):
        with TestClient(app):
            pass
        assert langfuse.shut_down
