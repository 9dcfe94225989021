"""Tests for the MCP tool adapter."""

import logging
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import BaseModel, Field, ValidationError

from mcpbridge.providers.mcp.base import MCPError, MCPToolNotFoundError
from mcpbridge.providers.mcp.tools import (
    FunctionToolExecutor,
    MCPToolExecutor,
    ToolSpecification,
    build_tools,
    collect_tools,
    extract_text,
    parse_arguments,
    tool_from_model,
)

from .conftest import ADD_TOOL, FakeAddServer


def mock_transport(*pages):
    transport = Mock()
    transport.send_request = AsyncMock(side_effect=list(pages))
    return transport


class TestParseArguments:
    """Test parse_arguments."""

    @pytest.mark.parametrize("arguments", [None, "", "   ", {}])
    def test_empty(self, arguments):
        """Test missing or blank arguments become an empty dict."""
        assert parse_arguments(arguments) == {}

    def test_json_string(self):
        """Test a JSON object string is parsed."""
        assert parse_arguments('{"a": 5, "b": 12}') == {"a": 5, "b": 12}

    def test_dict_is_copied(self):
        """Test a dict is returned as a copy."""
        arguments = {"a": 1}

        parsed = parse_arguments(arguments)

        assert parsed == arguments
        assert parsed is not arguments

    @pytest.mark.parametrize("arguments", ["[1, 2]", "42", "not json"])
    def test_not_an_object(self, arguments):
        """Test anything other than a JSON object is rejected."""
        with pytest.raises(ValueError):
            parse_arguments(arguments)


class TestExtractText:
    """Test extract_text."""

    def test_text_blocks_joined(self):
        """Test text blocks are joined by newlines."""
        result = {"content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}]}

        assert extract_text(result) == "first\nsecond"

    def test_non_text_block_as_json(self):
        """Test non-text blocks are rendered as compact JSON."""
        result = {"content": [{"type": "image", "data": "AAAA", "mimeType": "image/png"}]}

        assert extract_text(result) == '{"type":"image","data":"AAAA","mimeType":"image/png"}'

    def test_is_error(self):
        """Test tool-reported errors become an explanatory text result."""
        result = {"content": [{"type": "text", "text": "division by zero"}], "isError": True}

        assert extract_text(result) == (
            "There was an error executing the tool. The tool returned: division by zero"
        )

    def test_empty_result(self):
        """Test a missing result yields empty text."""
        assert extract_text(None) == ""
        assert extract_text({}) == ""


class TestBuildTools:
    """Test build_tools."""

    @pytest.mark.asyncio
    async def test_against_server(self, docker_transport):
        """Test tools are published with the advertised schema and executed remotely."""
        tools = await build_tools(docker_transport)

        assert len(tools) == 1
        spec, executor = tools[0]
        assert spec == ToolSpecification(
            name="add", description="Add two integers", parameters=ADD_TOOL["inputSchema"]
        )
        assert await executor.execute("add", '{"a": 5, "b": 12}') == "17"

    @pytest.mark.asyncio
    async def test_blank_arguments(self, docker_transport):
        """Test a blank argument string is sent as an empty object."""
        spec, executor = (await build_tools(docker_transport))[0]

        text = await executor.execute(spec.name, "")

        assert text == "There was an error executing the tool. The tool returned: missing operand"

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self, docker_transport):
        """Test an error frame from tools/call raises MCPError."""
        executor = MCPToolExecutor(docker_transport)

        with pytest.raises(MCPError) as exc_info:
            await executor.execute("subtract", {"a": 1, "b": 2})

        assert exc_info.value.code == -32601

    @pytest.mark.asyncio
    async def test_null_description_and_schema(self, make_docker_transport, fake_runtime):
        """Test null description and inputSchema fall back to empty values."""
        fake_runtime.server = FakeAddServer(tools=[{"name": "add", "description": None, "inputSchema": None}])
        transport = make_docker_transport()
        await transport.start()

        tools = await build_tools(transport)

        assert [spec for spec, _ in tools] == [
            ToolSpecification(name="add", description="", parameters={"type": "object", "properties": {}})
        ]

    @pytest.mark.asyncio
    async def test_pagination(self):
        """Test nextCursor is followed until exhausted."""
        transport = mock_transport(
            {"tools": [{"name": "one"}], "nextCursor": "c1"},
            {"tools": [{"name": "two", "description": "Second"}], "nextCursor": "c2"},
            {"tools": [{"name": "three"}]},
        )

        tools = await build_tools(transport)

        assert [spec.name for spec, _ in tools] == ["one", "two", "three"]
        assert tools[0][0].description == ""
        assert tools[0][0].parameters == {"type": "object", "properties": {}}
        calls = transport.send_request.await_args_list
        assert calls[0].args == ("tools/list", None)
        assert calls[1].args == ("tools/list", {"cursor": "c1"})
        assert calls[2].args == ("tools/list", {"cursor": "c2"})

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self):
        """Test a server repeating its cursor does not loop forever."""
        transport = mock_transport(
            {"tools": [{"name": "one"}], "nextCursor": "same"},
            {"tools": [], "nextCursor": "same"},
        )

        tools = await build_tools(transport)

        assert len(tools) == 1
        assert transport.send_request.await_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_names(self, caplog):
        """Test the first of two tools with the same name is kept."""
        transport = mock_transport({"tools": [
            {"name": "search", "description": "first"},
            {"name": "search", "description": "second"},
        ]})

        with caplog.at_level(logging.WARNING):
            tools = await build_tools(transport)

        assert [spec.description for spec, _ in tools] == ["first"]
        assert "more than once" in caplog.text


class WeatherQuery(BaseModel):
    """Look up the weather."""

    city: str = Field(description="City name")
    days: int = 1


class TestFunctionTools:
    """Test tools backed by local callables."""

    def test_schema_from_model(self):
        """Test the parameter schema is produced from the model."""
        spec, _ = tool_from_model("weather", "Get the forecast", WeatherQuery, lambda query: "sunny")

        assert spec.description == "Get the forecast"
        assert spec.parameters == {
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name"},
                "days": {"type": "integer", "description": "Days"},
            },
            "required": ["city"],
        }

    @pytest.mark.asyncio
    async def test_sync_handler(self):
        """Test a synchronous handler receives the validated model."""
        _, executor = tool_from_model(
            "weather", "Get the forecast", WeatherQuery, lambda query: f"{query.city}:{query.days}"
        )

        assert await executor.execute("weather", '{"city": "Oslo"}') == "Oslo:1"

    @pytest.mark.asyncio
    async def test_async_handler(self):
        """Test an async handler is awaited."""
        async def handler(query):
            return query.days * 2

        executor = FunctionToolExecutor("weather", WeatherQuery, handler)

        assert await executor.execute("weather", {"city": "Oslo", "days": 3}) == "6"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        """Test arguments failing model validation raise."""
        executor = FunctionToolExecutor("weather", WeatherQuery, lambda query: "")

        with pytest.raises(ValidationError):
            await executor.execute("weather", {"days": 3})

    @pytest.mark.asyncio
    async def test_wrong_name(self):
        """Test calling the executor under another name fails."""
        executor = FunctionToolExecutor("weather", WeatherQuery, lambda query: "")

        with pytest.raises(MCPToolNotFoundError):
            await executor.execute("news", {})


class TestCollectTools:
    """Test collect_tools."""

    @pytest.mark.asyncio
    async def test_later_provider_wins(self, caplog):
        """Test providers are initialized and later tools replace earlier ones."""
        first_pair = tool_from_model("weather", "first", WeatherQuery, lambda query: "a")
        second_pair = tool_from_model("weather", "second", WeatherQuery, lambda query: "b")
        other_pair = tool_from_model("news", "headlines", WeatherQuery, lambda query: "c")
        first = Mock(initialize=AsyncMock(), get_tools=Mock(return_value=[first_pair, other_pair]))
        first.name = "first"
        second = Mock(initialize=AsyncMock(), get_tools=Mock(return_value=[second_pair]))
        second.name = "second"

        with caplog.at_level(logging.WARNING):
            tools = await collect_tools([first, second])

        first.initialize.assert_awaited_once()
        second.initialize.assert_awaited_once()
        assert {spec.name: spec.description for spec, _ in tools} == {"weather": "second", "news": "headlines"}
        assert "replaces an earlier tool" in caplog.text
