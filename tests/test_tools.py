"""Tests for capability providers: in-process dispatcher and composition."""

from unittest.mock import AsyncMock, MagicMock

from colloquy.session.tools import (
    CompositeProvider,
    McpCapabilityProvider,
    ToolDispatcher,
    ToolSpec,
    register_builtin_tools,
)


def _text(value: str) -> dict:
    return {"content": [{"type": "text", "text": value}]}


class TestToolDispatcher:
    async def test_register_and_invoke(self):
        dispatcher = ToolDispatcher()

        async def add(a: int, b: int):
            return _text(str(a + b))

        dispatcher.register("add", add, {
            "description": "Add two numbers",
            "type": "object",
            "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
        })

        assert await dispatcher.invoke("add", {"a": 2, "b": 3}) == ("5", False)
        specs = await dispatcher.list_tools()
        assert specs[0].name == "add"
        assert specs[0].description == "Add two numbers"
        assert "description" not in specs[0].input_schema

    async def test_unknown_tool(self):
        text, is_error = await ToolDispatcher().invoke("missing", {})
        assert is_error is True
        assert text == "Unknown tool: missing"

    async def test_handler_exception_becomes_error_result(self):
        dispatcher = ToolDispatcher()

        async def broken():
            raise RuntimeError("kaput")

        dispatcher.register("broken", broken, {"type": "object", "properties": {}})
        text, is_error = await dispatcher.invoke("broken", {})
        assert is_error is True
        assert "kaput" in text

    async def test_builtin_current_time(self):
        dispatcher = ToolDispatcher()
        register_builtin_tools(dispatcher)
        text, is_error = await dispatcher.invoke("get_current_time", {})
        assert is_error is False
        assert text.endswith("+00:00")

    def test_spec_to_openai(self):
        spec = ToolSpec(name="t", description="d", input_schema={"type": "object"})
        assert spec.to_openai() == {
            "type": "function",
            "function": {"name": "t", "description": "d", "parameters": {"type": "object"}},
        }


class TestCompositeProvider:
    async def test_first_provider_owns_name(self):
        first, second = ToolDispatcher(), ToolDispatcher()

        async def one():
            return _text("first")

        async def two():
            return _text("second")

        async def other():
            return _text("other")

        schema = {"type": "object", "properties": {}}
        first.register("shared", one, schema)
        second.register("shared", two, schema)
        second.register("other", other, schema)
        composite = CompositeProvider([first, second])

        assert [s.name for s in await composite.list_tools()] == ["shared", "other"]
        assert await composite.invoke("shared", {}) == ("first", False)
        assert await composite.invoke("other", {}) == ("other", False)
        assert (await composite.invoke("nope", {}))[1] is True


class TestMcpCapabilityProvider:
    async def test_invoke_routes_to_owning_session(self):
        provider = McpCapabilityProvider([])
        session = MagicMock()
        session.call_tool = AsyncMock(return_value=MagicMock(
            content=[MagicMock(type="text", text="Alert: heat"), MagicMock(type="image")],
            isError=False,
        ))
        provider._routes["get_alerts"] = session

        text, is_error = await provider.invoke("get_alerts", {"state": "CA"})

        session.call_tool.assert_awaited_once_with("get_alerts", {"state": "CA"})
        assert text == "Alert: heat"
        assert is_error is False

    async def test_invoke_unknown_tool(self):
        text, is_error = await McpCapabilityProvider([]).invoke("nope", {})
        assert is_error is True

    async def test_server_failure_becomes_error_result(self):
        provider = McpCapabilityProvider([])
        session = MagicMock()
        session.call_tool = AsyncMock(side_effect=RuntimeError("pipe closed"))
        provider._routes["get_alerts"] = session

        text, is_error = await provider.invoke("get_alerts", {})
        assert is_error is True
        assert "pipe closed" in text

    async def test_start_without_servers(self):
        provider = McpCapabilityProvider([])
        await provider.start()
        assert await provider.list_tools() == []
        await provider.close()
