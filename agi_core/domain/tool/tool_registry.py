from typing import Dict, List, Any, Callable, Iterable, Iterator, Mapping, Optional, Tuple
from importlib.metadata import entry_points
from types import MappingProxyType
import uuid

from pydantic import BaseModel, ConfigDict, Field
import structlog

from agi_core.domain.models.conversation_state import SessionTool
from agi_core.domain.models.errors import ToolNotFound
from agi_core.domain.tool.tool_executor import Tool, ToolResult, TraceContext, execute_tool
from agi_core.infrastructure.config.settings import Settings

logger = structlog.get_logger(__name__)

TOOL_ENTRY_POINT_GROUP = "agi_core.tools"


def tool_id_for(name: str) -> str:
    """Stable id of a tool, identical across processes"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"agi-core/tools/{name}"))


class ToolCapability(BaseModel):
    """How to build a tool and which settings it needs"""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    description: str = ""
    required_settings: Tuple[str, ...] = ()
    actions: Tuple[str, ...] = ()
    input_schema: Optional[Dict[str, Any]] = None
    factory: Callable[[Settings], Any]


class ToolDescriptor(BaseModel):
    """A tool as seen by the reasoning loop"""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    name: str
    description: str = ""
    available: bool = False
    actions: Tuple[str, ...] = ()
    input_schema: Optional[Dict[str, Any]] = None
    missing_settings: Tuple[str, ...] = ()
    tool: Optional[Any] = Field(None, exclude=True)

    async def execute(self, action_name: str, payload: Dict[str, Any], trace_context: TraceContext) -> ToolResult:
        if not self.available or self.tool is None:
            raise ToolNotFound(self.name)
        return await execute_tool(self.name, self.tool, action_name, payload, trace_context)

    async def get_context(self) -> Optional[str]:
        """Recent-state note some tools offer before a call (e.g. latest issues)"""

        provider = getattr(self.tool, "get_context", None)
        if provider is None:
            return None
        return await provider()

    def to_session_tool(self) -> SessionTool:
        return SessionTool(id=self.id, name=self.name, description=self.description, available=self.available)


class ToolRegistry(Mapping[str, ToolDescriptor]):
    """Immutable name -> descriptor map, built once per process"""

    def __init__(self, descriptors: Iterable[ToolDescriptor]):
        self._tools: Mapping[str, ToolDescriptor] = MappingProxyType({d.name: d for d in descriptors})

    def __getitem__(self, name: str) -> ToolDescriptor:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def lookup(self, name: Optional[str]) -> ToolDescriptor:
        """Available tool by name; absence and unavailability are the same"""

        descriptor = self._tools.get(name) if name else None
        if descriptor is None or not descriptor.available:
            raise ToolNotFound(name)
        return descriptor

    def available_tools(self) -> List[ToolDescriptor]:
        return [d for d in self._tools.values() if d.available]

    def session_tools(self) -> Tuple[SessionTool, ...]:
        """Snapshot for a conversation's ``session.tools``"""
        return tuple(d.to_session_tool() for d in self._tools.values())

    def search_tools(self, query: str) -> List[ToolDescriptor]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            d for d in self._tools.values()
            if query_lower in d.name.lower() or query_lower in d.description.lower()
        ]


def _describe(capability: ToolCapability, settings: Settings) -> ToolDescriptor:
    missing = settings.missing(capability.required_settings)
    tool = None
    if not missing:
        try:
            tool = capability.factory(settings)
        except Exception:
            logger.exception("Tool factory failed", tool=capability.name)

    return ToolDescriptor(
        id=tool_id_for(capability.name),
        name=capability.name,
        description=capability.description,
        available=tool is not None,
        actions=capability.actions,
        input_schema=capability.input_schema,
        missing_settings=missing,
        tool=tool
    )


def load_capabilities(group: str = TOOL_ENTRY_POINT_GROUP) -> List[ToolCapability]:
    """Capabilities advertised by installed tool packages"""

    capabilities = []
    for entry_point in entry_points(group=group):
        capability = entry_point.load()
        if callable(capability) and not isinstance(capability, ToolCapability):
            capability = capability()
        capabilities.append(capability)
    return capabilities


def build_registry(settings: Settings, capabilities: Optional[Iterable[ToolCapability]] = None) -> ToolRegistry:
    """Resolve every capability against the settings and freeze the result"""

    if capabilities is None:
        capabilities = load_capabilities()

    descriptors = [_describe(c, settings) for c in capabilities]
    registry = ToolRegistry(descriptors)

    logger.info(
        "Tool registry built",
        available=[d.name for d in descriptors if d.available],
        unavailable={d.name: list(d.missing_settings) for d in descriptors if not d.available}
    )
    return registry
