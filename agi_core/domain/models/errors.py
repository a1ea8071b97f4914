from typing import Any, Dict, Optional


class AgentError(Exception):
    """Base class for all errors raised by the reasoning core"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details
        }


class ToolNotFound(AgentError):
    """Requested tool is not in the registry or is not available"""

    def __init__(self, tool_name: Optional[str]):
        super().__init__(f"Tool {tool_name} not found", {"tool": tool_name})
        self.tool_name = tool_name


class ToolExecutionError(AgentError):
    """A tool raised while executing an action"""

    def __init__(self, tool_name: str, action_name: str, cause: BaseException):
        super().__init__(
            f"Tool {tool_name} failed on {action_name}: {cause}",
            {"tool": tool_name, "action": action_name, "cause": type(cause).__name__}
        )
        self.cause = cause


class ToolPayloadInvalid(AgentError):
    """Generated payload does not match the tool's input schema"""


class ProviderError(AgentError):
    """Model provider call failed"""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message, {"model": model})
        self.model = model


class ProviderRateLimited(ProviderError):
    """Model provider rejected the call with a rate limit"""


class ReasoningFailed(AgentError):
    """The reasoning loop could not produce a plan or a tool invocation"""

    def __init__(self, phase: str, cause: Optional[BaseException] = None):
        message = f"Reasoning failed during {phase}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, {"phase": phase})
        self.phase = phase
        self.cause = cause


class TracingMisuse(AgentError):
    """Tracing API used with an unknown id or out of order"""


class ConversationBusy(AgentError):
    """A reasoning cycle is already running for this conversation"""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} already has an active turn",
            {"conversation_id": conversation_id}
        )


class InvalidActionTransition(AgentError):
    """Action status change not allowed by the action lifecycle"""
