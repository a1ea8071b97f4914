from typing import List, Literal, Optional
from pydantic import BaseModel, Field
import json
import time
import uuid


DONE_LINE = "data: [DONE]\n\n"


class ChunkDelta(BaseModel):
    """Incremental content of a streamed reply"""
    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: Optional[Literal["stop"]] = None


class ChatCompletionChunk(BaseModel):
    """One SSE frame in the chat-completion-chunk envelope"""
    id: str = Field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[ChunkChoice]

    @classmethod
    def content(cls, chunk_id: str, created: int, model: str, text: str) -> "ChatCompletionChunk":
        return cls(
            id=chunk_id,
            created=created,
            model=model,
            choices=[ChunkChoice(delta=ChunkDelta(role="assistant", content=text))]
        )

    @classmethod
    def stop(cls, chunk_id: str, created: int, model: str) -> "ChatCompletionChunk":
        return cls(
            id=chunk_id,
            created=created,
            model=model,
            choices=[ChunkChoice(finish_reason="stop")]
        )

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


def parse_sse_content(line: str) -> str:
    """Text carried by one SSE line, empty for control frames"""

    if not line.startswith("data: "):
        return ""
    data = line[len("data: "):].strip()
    if not data or data == "[DONE]":
        return ""
    chunk = json.loads(data)
    return "".join(
        choice.get("delta", {}).get("content") or "" for choice in chunk.get("choices", [])
    )
