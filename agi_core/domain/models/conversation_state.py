from typing import Dict, Any, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
import uuid

from agi_core.domain.models.errors import InvalidActionTransition


FINAL_ANSWER_TOOL = "final_answer"


def new_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, Enum):
    """Chat message roles"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ActionStatus(str, Enum):
    """Action lifecycle status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Task status derived from its actions"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[ActionStatus, frozenset] = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING, ActionStatus.FAILED}),
    ActionStatus.RUNNING: frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED}),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
}


class Message(BaseModel):
    """A single entry of the prompt history"""
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str

    def as_chat(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class Action(BaseModel):
    """A single planned tool invocation"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    task_id: str
    tool_id: Optional[str] = Field(None, description="Id of the tool in the session snapshot")
    tool_name: str = Field(description="Tool name as selected by the model")
    name: str
    payload: Optional[Dict[str, Any]] = None
    sequence: int = 0
    status: ActionStatus = ActionStatus.PENDING
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ActionStatus, **changes: Any) -> "Action":
        """Return a copy of the action moved to ``status``"""

        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidActionTransition(
                f"Action {self.id} cannot move from {self.status.value} to {status.value}",
                {"action_id": self.id, "from": self.status.value, "to": status.value}
            )
        return self.model_copy(update={**changes, "status": status, "updated_at": datetime.utcnow()})


class TaskSpec(BaseModel):
    """Task as proposed by the planner, before persistence"""
    name: str
    description: Optional[str] = None


class Task(BaseModel):
    """A planned unit of work"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    conversation_id: str
    name: str
    description: Optional[str] = None
    sequence: int = 0
    actions: Tuple[Action, ...] = ()
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def status(self) -> TaskStatus:
        if not self.actions or any(not a.is_terminal for a in self.actions):
            return TaskStatus.PENDING
        if any(a.status == ActionStatus.COMPLETED for a in self.actions):
            return TaskStatus.COMPLETED
        return TaskStatus.FAILED

    def pending_actions(self) -> List[Action]:
        return sorted(
            (a for a in self.actions if a.status == ActionStatus.PENDING),
            key=lambda a: a.sequence
        )

    def next_sequence(self) -> int:
        return max((a.sequence for a in self.actions), default=0) + 1

    def with_action(self, action: Action) -> "Task":
        """Return a copy with ``action`` appended or replaced by id"""

        actions = [a for a in self.actions if a.id != action.id]
        actions.append(action)
        actions.sort(key=lambda a: a.sequence)
        return self.model_copy(update={"actions": tuple(actions)})


class Reference(BaseModel):
    """Lightweight pointer to a tool, task or action"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str


class ConversationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    alt_model: Optional[str] = None
    user_id: Optional[str] = None
    conversation_id: str
    step: int = 0
    current_tool: Optional[Reference] = None
    current_action: Optional[Reference] = None
    current_task: Optional[Reference] = None
    fast_track: bool = False


class AgentProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    assistant_name: str = "Assistant"
    user_name: str = "User"


class AgentThoughts(BaseModel):
    """Scratch space of the observe and draft phases"""
    model_config = ConfigDict(frozen=True)

    environment: str = ""
    context: str = ""
    tools: Tuple[str, ...] = ()
    memory: Tuple[str, ...] = ()


class Interaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: Tuple[Message, ...] = ()
    tasks: Tuple[Task, ...] = ()
    tool_context: Tuple[str, ...] = ()


class SessionTool(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    available: bool = True


class SessionContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    tools: Tuple[SessionTool, ...] = ()


class ConversationState(BaseModel):
    """Complete reasoning context of one conversation turn"""
    model_config = ConfigDict(frozen=True)

    interaction: Interaction = Field(default_factory=Interaction)
    config: ConversationConfig
    profile: AgentProfile = Field(default_factory=AgentProfile)
    thoughts: AgentThoughts = Field(default_factory=AgentThoughts)
    session: SessionContext = Field(default_factory=SessionContext)

    def last_user_message(self, default: str = "Hello") -> str:
        for message in reversed(self.interaction.messages):
            if message.role == MessageRole.USER:
                return message.content
        return default

    def recent_dialogue(self, limit: int) -> List[Message]:
        """Last ``limit`` user/assistant messages in order"""

        dialogue = [
            m for m in self.interaction.messages
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]
        return dialogue[-limit:] if limit > 0 else []

    def find_task(self, task_id: Optional[str]) -> Optional[Task]:
        for task in self.interaction.tasks:
            if task.id == task_id:
                return task
        return None

    def find_action(self, action_id: Optional[str]) -> Optional[Action]:
        for task in self.interaction.tasks:
            for action in task.actions:
                if action.id == action_id:
                    return action
        return None

    def find_session_tool(self, name: Optional[str]) -> Optional[SessionTool]:
        for tool in self.session.tools:
            if tool.name == name:
                return tool
        return None

    def pending_tasks(self) -> List[Task]:
        return [t for t in self.interaction.tasks if t.status == TaskStatus.PENDING]

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "conversation_id": self.config.conversation_id,
            "step": self.config.step,
            "fast_track": self.config.fast_track,
            "current_tool": self.config.current_tool.name if self.config.current_tool else None,
            "current_task": self.config.current_task.name if self.config.current_task else None,
            "tasks": len(self.interaction.tasks),
            "pending_tasks": len(self.pending_tasks()),
            "messages": len(self.interaction.messages)
        }
