# tests/test_tool_registry.py
import pytest

from agi_core.domain.models.errors import ToolExecutionError, ToolNotFound, ToolPayloadInvalid
from agi_core.domain.tool.tool_executor import ToolResult, TraceContext
from agi_core.domain.tool.tool_registry import ToolCapability, build_registry, tool_id_for
from agi_core.domain.tool.tool_validator import ToolParameterValidator
from agi_core.infrastructure.config.settings import Settings

from conftest import RecordingTool, capability


class TestToolRegistry:
    def test_availability_follows_settings(self, registry):
        assert registry["web"].available
        assert not registry["linear"].available
        assert registry["linear"].missing_settings == ("LINEAR_API_KEY",)
        assert [d.name for d in registry.available_tools()] == ["web"]

    def test_lookup_of_unknown_or_unavailable_tool(self, registry):
        with pytest.raises(ToolNotFound, match="Tool calendar not found"):
            registry.lookup("calendar")
        with pytest.raises(ToolNotFound):
            registry.lookup("linear")
        assert registry.lookup("web").name == "web"

    def test_ids_are_stable(self, settings):
        first = build_registry(settings, [capability("web", RecordingTool())])
        second = build_registry(settings, [capability("web", RecordingTool())])
        assert first["web"].id == second["web"].id == tool_id_for("web")

    def test_session_snapshot(self, registry):
        tools = {t.name: t for t in registry.session_tools()}
        assert tools["web"].available
        assert not tools["linear"].available

    def test_search(self, registry):
        assert [d.name for d in registry.search_tools("WEB")] == ["web"]

    def test_factory_failure_marks_tool_unavailable(self):
        def broken(settings):
            raise RuntimeError("no client")

        registry = build_registry(Settings(), [ToolCapability(name="mail", factory=broken)])
        assert not registry["mail"].available

    def test_registry_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry["other"] = registry["web"]


class TestToolExecution:
    @pytest.mark.asyncio
    async def test_execute_returns_tool_result(self, registry, web_tool):
        result = await registry["web"].execute("search", {"query": "capital"}, TraceContext(conversation_id="c"))

        assert result.success
        assert result.data == {"results": ["Paris"]}
        assert result.execution_time is not None
        assert web_tool.calls[0]["trace_context"].conversation_id == "c"

    @pytest.mark.asyncio
    async def test_exception_is_wrapped(self, settings):
        tool = RecordingTool(error=ValueError("bad input"))
        registry = build_registry(settings, [capability("calc", tool)])

        with pytest.raises(ToolExecutionError, match="bad input"):
            await registry["calc"].execute("run", {}, TraceContext())

    @pytest.mark.asyncio
    async def test_bare_return_value_is_success(self, settings):
        tool = RecordingTool(result="42")
        registry = build_registry(settings, [capability("calc", tool)])

        result = await registry["calc"].execute("run", {}, TraceContext())
        assert result == ToolResult(success=True, data="42", execution_time=result.execution_time)

    @pytest.mark.asyncio
    async def test_unavailable_tool_does_not_execute(self, registry):
        with pytest.raises(ToolNotFound):
            await registry["linear"].execute("create_issue", {}, TraceContext())


class TestToolParameterValidator:
    schema = {
        "type": "object",
        "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
        "required": ["query"]
    }

    def test_valid_payload(self):
        assert ToolParameterValidator.errors({"query": "x", "limit": 3}, self.schema) == []
        assert ToolParameterValidator.errors({"anything": 1}, None) == []

    def test_invalid_payload(self):
        with pytest.raises(ToolPayloadInvalid) as info:
            ToolParameterValidator.validate_tool_call("web", {"limit": "many"}, self.schema)

        assert "web" in info.value.message
        assert len(info.value.details["errors"]) == 2
