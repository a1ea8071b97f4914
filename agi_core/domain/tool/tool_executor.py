from typing import Dict, Any, Optional, Protocol, runtime_checkable
import time

from pydantic import BaseModel, Field

from agi_core.domain.models.errors import ToolExecutionError


class ToolResult(BaseModel):
    """Outcome of a tool call.

    ``success=False`` means the tool declined the request for an ordinary
    business reason; a crash is signalled by raising instead.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    execution_time: Optional[float] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


class TraceContext(BaseModel):
    """Ids handed to tools so their own calls can be attached to the turn"""
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class Tool(Protocol):
    async def execute(self, action_name: str, payload: Dict[str, Any], trace_context: TraceContext) -> ToolResult:
        ...


async def execute_tool(
    tool_name: str,
    tool: Tool,
    action_name: str,
    payload: Dict[str, Any],
    trace_context: TraceContext
) -> ToolResult:
    """Run one tool call, wrapping crashes as ToolExecutionError"""

    started = time.perf_counter()
    try:
        result = await tool.execute(action_name, payload, trace_context)
    except Exception as e:
        raise ToolExecutionError(tool_name, action_name, e) from e

    if not isinstance(result, ToolResult):
        # Tools returning a bare value are treated as successful
        result = ToolResult.ok(result)

    result.execution_time = time.perf_counter() - started
    return result
