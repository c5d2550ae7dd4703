"""MCP server tests.

Test coverage:
- Tool schemas and families
- Response formatting
- Batch and session handlers with a stand-in Matlab facade
- The server end to end over an in-memory MCP client, backed by the fake engine
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from unittest import mock

import anyio
import pytest
from mcp import ClientSession
from mcp.server import Server
from mcp.shared.memory import create_client_server_memory_streams

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from matlab_bridge.config import SUPPORTED_TOOLS, Config
from matlab_bridge.errors import MatlabSessionStateError, MatlabTimeoutError, classify_error
from matlab_bridge.formatting import (
    DebugInfo,
    ResponseData,
    ResponseFormatter,
    format_error_response,
    format_exception_response,
    format_value,
)
from matlab_bridge.handlers import BatchHandler, SessionHandler, ToolContext, create_handler
from matlab_bridge.matlab import Matlab
from matlab_bridge.orchestrator import RequestRegistry, SessionRegistry
from matlab_bridge.server import create_server
from matlab_bridge.tool_schema import TOOL_FAMILIES, TOOL_NAMES, create_tool_schema, tool_family
from matlab_bridge.types import FunctionCallResult, MatlabResult, MatlabVersion, Toolbox

pytestmark = pytest.mark.timeout(60)


# =============================================================================
# Schemas
# =============================================================================


class TestToolSchema:
    """Tool names, families and argument schemas."""

    def test_every_family_is_supported(self):
        assert set(TOOL_FAMILIES.values()) <= set(SUPPORTED_TOOLS)

    def test_family_lookup(self):
        assert tool_family("matlab_session_run") == "session"
        assert tool_family("matlab_eval") == "eval"
        assert tool_family("nope") is None

    @pytest.mark.parametrize("name", TOOL_NAMES)
    def test_schema_shape(self, name: str):
        schema = create_tool_schema(name)
        assert schema["type"] == "object"
        assert set(schema["required"]) <= set(schema["properties"])

    def test_debug_property(self):
        assert "debug" in create_tool_schema("matlab_run")["properties"]
        assert "debug" not in create_tool_schema("matlab_session_list")["properties"]
        assert "debug" not in create_tool_schema("matlab_session_close")["properties"]

    def test_figure_formats(self):
        formats = create_tool_schema("matlab_save_figure")["properties"]["format"]["enum"]
        assert formats == ["png", "svg", "pdf", "eps", "jpg", "fig"]

    def test_unknown_tool(self):
        with pytest.raises(ValueError, match="Unknown tool"):
            create_tool_schema("matlab_nope")


# =============================================================================
# Formatting
# =============================================================================


class TestFormatting:
    """XML response layout."""

    def test_answer_only(self):
        text = ResponseFormatter().format(ResponseData(answer="7"))
        assert text == "<response>\n  <answer>\n7\n  </answer>\n</response>"

    def test_warnings_and_session(self):
        data = ResponseData(answer="ok", session_id="abc123", warnings=["Warning: w"])
        text = ResponseFormatter().format(data)
        assert "<warning>Warning: w</warning>" in text
        assert "<session_id>abc123</session_id>" in text

    def test_debug_info_only_when_enabled(self):
        data = ResponseData(answer="ok", debug_info=DebugInfo(duration_sec=1.23456, exit_code=0))
        formatter = ResponseFormatter()
        assert "<debug_info>" not in formatter.format(data)
        text = formatter.format(data, debug=True)
        assert "<duration_sec>1.235</duration_sec>" in text
        assert "<exit_code>0</exit_code>" in text

    def test_error(self):
        [content] = format_error_response("bad input", error_type="syntax")
        assert content.text == (
            "<response>\n  <error>bad input</error>\n  <error_type>syntax</error_type>\n</response>"
        )

    def test_partial_answer(self):
        data = ResponseData(answer="before", success=False, error="boom")
        assert "<partial_answer>before</partial_answer>" in ResponseFormatter().format(data)

    def test_exception_response(self):
        error = classify_error("Undefined function or variable 'foo'.")
        [content] = format_exception_response(error, session_id="s1")
        assert "<error_type>runtime</error_type>" in content.text
        assert "<session_id>s1</session_id>" in content.text
        assert "Suggestion:" in content.text

    def test_plain_exception(self):
        [content] = format_exception_response(RuntimeError("oops"))
        assert "<error>oops</error>" in content.text
        assert "<error_type>" not in content.text

    def test_format_value(self):
        assert format_value("text") == "text"
        assert format_value({"x": [1, 2]}) == '{\n  "x": [\n    1,\n    2\n  ]\n}'


# =============================================================================
# Handlers
# =============================================================================


@pytest.fixture
def stub_matlab() -> mock.MagicMock:
    matlab = mock.MagicMock(spec=Matlab)
    matlab.run = mock.AsyncMock(
        return_value=MatlabResult(output="7", warnings=["Warning: old"], exit_code=0)
    )
    matlab.eval = mock.AsyncMock(return_value="42")
    matlab.get_variables = mock.AsyncMock(return_value={"x": [1, 2, 3]})
    matlab.call_function = mock.AsyncMock(return_value=FunctionCallResult(outputs=[9, 2]))
    matlab.save_figure = mock.AsyncMock(return_value=Path("/tmp/plot.png"))
    matlab.is_installed.return_value = True
    matlab.probe.matlab_path.return_value = "/usr/bin/matlab"
    matlab.get_version = mock.AsyncMock(return_value=MatlabVersion("9.14", "R2023a"))
    matlab.get_installed_toolboxes = mock.AsyncMock(
        return_value=[Toolbox("Signal Processing Toolbox", "9.2", "R2023a")]
    )
    return matlab


@pytest.fixture
def ctx(stub_matlab: mock.MagicMock) -> ToolContext:
    config = Config(batch_timeout_ms=5000, command_timeout_ms=3000)
    return ToolContext(config=config, matlab=stub_matlab, sessions=SessionRegistry(stub_matlab))


class TestHandlerFactory:
    def test_create_handler(self):
        assert isinstance(create_handler("matlab_run"), BatchHandler)
        assert isinstance(create_handler("matlab_session_run"), SessionHandler)
        with pytest.raises(ValueError):
            create_handler("matlab_nope")

    def test_wrong_family(self):
        with pytest.raises(ValueError):
            BatchHandler("matlab_session_run")
        with pytest.raises(ValueError):
            SessionHandler("matlab_run")

    def test_description_and_schema(self):
        handler = create_handler("matlab_eval")
        assert handler.name == "matlab_eval"
        assert "expression" in handler.description
        assert handler.get_input_schema()["required"] == ["expression"]


class TestToolContext:
    def test_timeout_resolution(self, ctx: ToolContext):
        assert ctx.resolve_timeout({}, 5000) == 5000
        assert ctx.resolve_timeout({"timeout_ms": 250}, 5000) == 250
        assert ctx.resolve_timeout({"timeout_ms": -1}, 5000) == 0

    def test_debug_resolution(self, ctx: ToolContext):
        assert ctx.resolve_debug({}) is False
        assert ctx.resolve_debug({"debug": True}) is True

    def test_run_options(self, ctx: ToolContext):
        options = ctx.run_options({"cwd": "/work", "add_path": ["/lib"]})
        assert options.timeout_ms == 5000
        assert options.cwd == "/work"
        assert options.add_path == ["/lib"]


class TestBatchHandler:
    """One-shot tools."""

    @pytest.mark.asyncio
    async def test_run(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        [content] = await BatchHandler("matlab_run").handle({"code": "disp(7)", "timeout_ms": 100}, ctx)
        assert "<answer>\n7\n  </answer>" in content.text
        assert "<warning>Warning: old</warning>" in content.text
        options = stub_matlab.run.await_args.args[1]
        assert options.timeout_ms == 100

    @pytest.mark.asyncio
    async def test_missing_argument(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        [content] = await BatchHandler("matlab_run").handle({"code": "  "}, ctx)
        assert "Missing required argument: 'code'" in content.text
        stub_matlab.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_variables_must_be_list(self, ctx: ToolContext):
        handler = BatchHandler("matlab_get_variables")
        [content] = await handler.handle({"code": "x = 1;", "variables": []}, ctx)
        assert "non-empty list" in content.text

    @pytest.mark.asyncio
    async def test_get_variables(self, ctx: ToolContext):
        handler = BatchHandler("matlab_get_variables")
        [content] = await handler.handle({"code": "x = 1:3;", "variables": ["x"]}, ctx)
        assert '"x": [' in content.text

    @pytest.mark.asyncio
    async def test_call_function(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        handler = BatchHandler("matlab_call_function")
        [content] = await handler.handle({"function": "max", "args": [[3, 9, 2]], "nargout": 2}, ctx)
        assert "9" in content.text
        assert stub_matlab.call_function.await_args.kwargs["nargout"] == 2

    @pytest.mark.asyncio
    async def test_call_function_args_type(self, ctx: ToolContext):
        handler = BatchHandler("matlab_call_function")
        [content] = await handler.handle({"function": "max", "args": "oops"}, ctx)
        assert "'args' must be a list" in content.text

    @pytest.mark.asyncio
    async def test_save_figure(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        handler = BatchHandler("matlab_save_figure")
        arguments = {"code": "plot(1:3)", "output_path": "/tmp/plot", "format": "svg", "width": 640}
        [content] = await handler.handle(arguments, ctx)
        assert "/tmp/plot.png" in content.text
        figure_options = stub_matlab.save_figure.await_args.args[2]
        assert figure_options.format.value == "svg"
        assert figure_options.width == 640

    @pytest.mark.asyncio
    async def test_info(self, ctx: ToolContext):
        [content] = await BatchHandler("matlab_info").handle({"include_toolboxes": True}, ctx)
        assert '"release": "R2023a"' in content.text
        assert "Signal Processing Toolbox" in content.text

    @pytest.mark.asyncio
    async def test_info_not_installed(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        stub_matlab.is_installed.return_value = False
        [content] = await BatchHandler("matlab_info").handle({}, ctx)
        assert '"installed": false' in content.text
        stub_matlab.get_version.assert_not_called()

    @pytest.mark.asyncio
    async def test_matlab_error_formatted(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        stub_matlab.eval.side_effect = MatlabTimeoutError(100)
        [content] = await BatchHandler("matlab_eval").handle({"expression": "pause(5)"}, ctx)
        assert "<error_type>timeout</error_type>" in content.text

    @pytest.mark.asyncio
    async def test_debug_info(self, ctx: ToolContext):
        [content] = await BatchHandler("matlab_run").handle({"code": "disp(7)", "debug": True}, ctx)
        assert "<debug_info>" in content.text
        assert "<exit_code>0</exit_code>" in content.text

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        stub_matlab.run.side_effect = asyncio.CancelledError()
        with pytest.raises(asyncio.CancelledError):
            await BatchHandler("matlab_run").handle({"code": "pause(10)"}, ctx)


class TestSessionHandler:
    """Session tools with stand-in sessions."""

    @pytest.fixture
    def session(self, stub_matlab: mock.MagicMock) -> mock.MagicMock:
        from matlab_bridge.types import SessionState

        session = mock.MagicMock()
        session.state = SessionState.READY
        session.pending_count = 0
        session.pid = 99
        session.run = mock.AsyncMock(return_value=MatlabResult(output="ans = 5"))
        session.get_variable = mock.AsyncMock(return_value=[1, 2])
        session.set_variable = mock.AsyncMock()
        session.close = mock.AsyncMock()
        stub_matlab.create_session = mock.AsyncMock(return_value=session)
        stub_matlab.session_options.side_effect = lambda **kw: kw
        return session

    async def start(self, ctx: ToolContext, **arguments) -> str:
        await SessionHandler("matlab_session_start").handle(arguments, ctx)
        [info] = ctx.sessions.list_sessions()
        return info.session_id

    @pytest.mark.asyncio
    async def test_start(self, ctx: ToolContext, session: mock.MagicMock, stub_matlab: mock.MagicMock):
        [content] = await SessionHandler("matlab_session_start").handle(
            {"cwd": "/work", "add_path": ["/lib"], "timeout_ms": 500}, ctx
        )
        [info] = ctx.sessions.list_sessions()
        assert f"Session started: {info.session_id}" in content.text
        assert f"<session_id>{info.session_id}</session_id>" in content.text
        stub_matlab.session_options.assert_called_once_with(cwd="/work", add_path=["/lib"], timeout_ms=500)

    @pytest.mark.asyncio
    async def test_run(self, ctx: ToolContext, session: mock.MagicMock):
        session_id = await self.start(ctx)
        handler = SessionHandler("matlab_session_run")
        [content] = await handler.handle({"session_id": session_id, "code": "2 + 3", "timeout_ms": 50}, ctx)
        assert "ans = 5" in content.text
        session.run.assert_awaited_once_with("2 + 3", timeout_ms=50)

    @pytest.mark.asyncio
    async def test_variables(self, ctx: ToolContext, session: mock.MagicMock):
        session_id = await self.start(ctx)
        await SessionHandler("matlab_session_set_variable").handle(
            {"session_id": session_id, "name": "v", "value": None}, ctx
        )
        session.set_variable.assert_awaited_once_with("v", None)

        [content] = await SessionHandler("matlab_session_get_variable").handle(
            {"session_id": session_id, "name": "v"}, ctx
        )
        assert "1" in content.text

    @pytest.mark.asyncio
    async def test_set_variable_requires_value(self, ctx: ToolContext):
        [content] = await SessionHandler("matlab_session_set_variable").handle(
            {"session_id": "s", "name": "v"}, ctx
        )
        assert "Missing required argument: 'value'" in content.text

    @pytest.mark.asyncio
    async def test_unknown_session(self, ctx: ToolContext):
        [content] = await SessionHandler("matlab_session_run").handle(
            {"session_id": "missing", "code": "1"}, ctx
        )
        assert "Unknown or closed session: missing" in content.text
        assert "<error_type>session</error_type>" in content.text
        assert "<session_id>missing</session_id>" in content.text

    @pytest.mark.asyncio
    async def test_close_and_list(self, ctx: ToolContext, session: mock.MagicMock):
        session_id = await self.start(ctx)
        [listing] = await SessionHandler("matlab_session_list").handle({}, ctx)
        assert f'"session_id": "{session_id}"' in listing.text

        [closed] = await SessionHandler("matlab_session_close").handle({"session_id": session_id}, ctx)
        assert f"Session closed: {session_id}" in closed.text
        session.close.assert_awaited_once()

        [again] = await SessionHandler("matlab_session_close").handle({"session_id": session_id}, ctx)
        assert f"Session not found: {session_id}" in again.text

    @pytest.mark.asyncio
    async def test_limit_reported(self, ctx: ToolContext, stub_matlab: mock.MagicMock):
        ctx.sessions = SessionRegistry(stub_matlab, max_sessions=0)
        [content] = await SessionHandler("matlab_session_start").handle({}, ctx)
        assert "Session limit reached" in content.text


# =============================================================================
# Server
# =============================================================================


@asynccontextmanager
async def connect(server: Server) -> AsyncIterator[ClientSession]:
    """Run the server on in-memory streams and yield an initialized client."""
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        async with anyio.create_task_group() as tg:
            tg.start_soon(
                lambda: server.run(
                    server_streams[0],
                    server_streams[1],
                    server.create_initialization_options(),
                )
            )
            try:
                async with ClientSession(client_streams[0], client_streams[1]) as client:
                    await client.initialize()
                    yield client
            finally:
                tg.cancel_scope.cancel()


class TestServer:
    """Server over an in-memory client."""

    @pytest.mark.asyncio
    async def test_list_tools_filtered(self, fake_config: Config):
        fake_config.tools = {"eval", "session"}
        server = create_server(config=fake_config, matlab=Matlab(fake_config))
        async with connect(server) as client:
            result = await client.list_tools()
        names = {tool.name for tool in result.tools}
        assert names == {"matlab_eval"} | {n for n, f in TOOL_FAMILIES.items() if f == "session"}

    @pytest.mark.asyncio
    async def test_disabled_tool(self, fake_config: Config):
        fake_config.tools = {"eval"}
        server = create_server(config=fake_config, matlab=Matlab(fake_config))
        async with connect(server) as client:
            result = await client.call_tool("matlab_run", {"code": "disp(1)"})
        assert "Tool 'matlab_run' is not enabled" in result.content[0].text

    @pytest.mark.asyncio
    async def test_eval(self, fake_config: Config):
        registry = RequestRegistry()
        server = create_server(registry=registry, config=fake_config, matlab=Matlab(fake_config))
        async with connect(server) as client:
            result = await client.call_tool("matlab_eval", {"expression": "6 * 7"})
        assert "<answer>\n42\n  </answer>" in result.content[0].text
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_session_round_trip(self, fake_config: Config):
        matlab = Matlab(fake_config)
        sessions = SessionRegistry(matlab, max_sessions=fake_config.max_sessions)
        server = create_server(sessions=sessions, config=fake_config, matlab=matlab)
        try:
            async with connect(server) as client:
                await client.call_tool("matlab_session_start", {})
                [info] = sessions.list_sessions()
                session_id = info.session_id

                await client.call_tool(
                    "matlab_session_set_variable",
                    {"session_id": session_id, "name": "v", "value": [1, 2, 3]},
                )
                result = await client.call_tool(
                    "matlab_session_get_variable", {"session_id": session_id, "name": "v"}
                )
                assert "[\n  1,\n  2,\n  3\n]" in result.content[0].text

                result = await client.call_tool("matlab_session_close", {"session_id": session_id})
                assert f"Session closed: {session_id}" in result.content[0].text
        finally:
            await sessions.close_all()
        with pytest.raises(MatlabSessionStateError):
            sessions.get(session_id)
