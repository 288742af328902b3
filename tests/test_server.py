"""Tests for the JSON-RPC session loop and the server lifecycle."""

import json
import os
import socket

import anyio
import mcp.types as types
import pytest
from anyio.streams.buffered import BufferedByteReceiveStream
from mcp.client.sse import sse_client
from mcp.shared.message import SessionMessage
from starlette.testclient import TestClient

from mcp_workspace_server.errors import ProtocolError
from mcp_workspace_server.server import ProtocolServer, ServerState, ToolSession, build_parser, main
from mcp_workspace_server.settings import ServerConfig
from mcp_workspace_server.tools import TOOLS, ToolDispatcher
from mcp_workspace_server.transports import create_sse_app, encode_frame

pytestmark = pytest.mark.anyio

FILES = {
    "Foo.cs": """\
        public class Foo
        {
            public void Bar() { Baz(); }
            public static void Baz() { }
        }
        """,
}


def _request(request_id, method, params=None):
    return SessionMessage(types.JSONRPCMessage(
        types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
    ))


def _initialize(request_id=1, version=types.LATEST_PROTOCOL_VERSION):
    return _request(request_id, "initialize", {
        "protocolVersion": version,
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0"},
    })


async def _exchange(server, messages):
    """Feed *messages* to one session and return every response as a dict."""
    send_in, read_stream = anyio.create_memory_object_stream(100)
    write_stream, received = anyio.create_memory_object_stream(100)
    with anyio.fail_after(10):
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.serve_session, read_stream, write_stream)
            async with send_in:
                for message in messages:
                    await send_in.send(message)
    responses = []
    while True:
        try:
            item = received.receive_nowait()
        except anyio.WouldBlock:
            break
        responses.append(item.message.model_dump(by_alias=True, mode="json", exclude_none=True))
    return responses


@pytest.fixture
async def server(make_indexer):
    server = ProtocolServer(ToolDispatcher(make_indexer(FILES)))
    await server.start()
    return server


class TestSessionLoop:
    async def test_requests_before_initialize_are_rejected(self, server):
        [response] = await _exchange(server, [_request(1, "tools/list")])
        assert response["id"] == 1
        assert response["error"]["code"] == -32002

    async def test_initialize(self, server):
        [response] = await _exchange(server, [_initialize()])
        result = response["result"]
        assert result["protocolVersion"] == types.LATEST_PROTOCOL_VERSION
        assert result["serverInfo"]["name"] == "mcp-workspace-server"
        assert result["capabilities"]["tools"]["listChanged"] is False
        assert result["toolCount"] == len(TOOLS)
        assert "demo" in result["instructions"]
        assert "shutdown method ends the server" in result["instructions"]

    async def test_unsupported_version_gets_latest(self, server):
        [response] = await _exchange(server, [_initialize(version="1999-01-01")])
        assert response["result"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION

    async def test_second_initialize_is_invalid(self, server):
        responses = await _exchange(server, [_initialize(1), _initialize(2)])
        assert "result" in responses[0]
        assert responses[1]["error"]["code"] == -32600

    async def test_tools_list(self, server):
        _, listing = await _exchange(server, [_initialize(), _request(2, "tools/list")])
        names = [t["name"] for t in listing["result"]["tools"]]
        assert names == [t.name for t in TOOLS]
        assert "inputSchema" in listing["result"]["tools"][0]

    async def test_tools_call(self, server):
        _, reply = await _exchange(server, [
            _initialize(),
            _request(2, "tools/call", {"name": "get_call_graph", "arguments": {"typeName": "Foo", "methodName": "Bar"}}),
        ])
        content = reply["result"]["content"]
        assert content[0]["type"] == "text"
        assert json.loads(content[0]["text"])["callees"] == ["Baz"]
        assert reply["result"]["isError"] is False

    async def test_tool_errors_keep_their_code(self, server):
        _, missing, unknown, bad = await _exchange(server, [
            _initialize(),
            _request(2, "tools/call", {"name": "get_type", "arguments": {"typeName": "Nope"}}),
            _request(3, "tools/call", {"name": "no_such_tool", "arguments": {}}),
            _request(4, "tools/call", {"name": "get_lines", "arguments": {"path": "App/Foo.cs"}}),
        ])
        assert missing["error"]["code"] == -32001
        assert "Nope" in missing["error"]["message"]
        assert unknown["error"]["code"] == -32001
        assert bad["error"]["code"] == -32602

    async def test_tools_call_without_name(self, server):
        _, reply = await _exchange(server, [_initialize(), _request(2, "tools/call", {"arguments": {}})])
        assert reply["error"]["code"] == -32602

    async def test_unknown_method(self, server):
        _, reply = await _exchange(server, [_initialize(), _request(2, "resources/list")])
        assert reply["error"]["code"] == -32601

    async def test_ping(self, server):
        _, reply = await _exchange(server, [_initialize(), _request(2, "ping")])
        assert reply["result"] == {}

    async def test_unparseable_frame(self, server):
        [reply] = await _exchange(server, [ValueError("Expecting value: line 1 column 1")])
        assert reply["error"]["code"] == -32700
        assert reply["id"] is None

    async def test_unparseable_frame_serializes_null_id(self, server):
        send_in, read_stream = anyio.create_memory_object_stream(10)
        write_stream, received = anyio.create_memory_object_stream(10)
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.serve_session, read_stream, write_stream)
            async with send_in:
                await send_in.send(ValueError("bad frame"))
        frame = received.receive_nowait().message.model_dump_json(by_alias=True, exclude_none=True)
        assert json.loads(frame) == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32700, "message": "Parse error: bad frame"},
        }

    async def test_notifications_get_no_reply(self, server):
        notification = SessionMessage(types.JSONRPCMessage(
            types.JSONRPCNotification(jsonrpc="2.0", method="notifications/initialized")
        ))
        responses = await _exchange(server, [_initialize(), notification])
        assert len(responses) == 1

    async def test_sessions_are_independent(self, server):
        await _exchange(server, [_initialize()])
        [reply] = await _exchange(server, [_request(1, "tools/list")])
        assert reply["error"]["code"] == -32002
        assert server.sessions == {}


class TestLifecycle:
    async def test_start_makes_ready(self, server):
        assert server.state is ServerState.READY
        assert server.dispatcher.indexer.index.generation == 2

    async def test_shutdown_ends_the_session(self, server):
        responses = await _exchange(server, [
            _initialize(),
            _request(2, "shutdown"),
            _request(3, "tools/list"),
        ])
        assert len(responses) == 2
        assert responses[1] == {"jsonrpc": "2.0", "id": 2, "result": {}}
        assert server.state is ServerState.SHUTTING_DOWN

    async def test_calls_refused_while_shutting_down(self, server):
        session = ToolSession(server, None, None)
        session.initialized = True
        server.request_shutdown()
        with pytest.raises(ProtocolError) as exc_info:
            await session._dispatch("tools/call", {"name": "list_files", "arguments": {}})
        assert exc_info.value.code == -32003
        assert server.in_flight == 0

    async def test_new_sessions_refused_unless_ready(self, make_indexer):
        server = ProtocolServer(ToolDispatcher(make_indexer(FILES)))
        assert await _exchange(server, [_initialize()]) == []

    async def test_serve_requires_start(self, make_indexer, tmp_path):
        server = ProtocolServer(ToolDispatcher(make_indexer(FILES)))
        with pytest.raises(RuntimeError):
            await server.serve(ServerConfig(transport="pipe", notify_dir=str(tmp_path)))

    async def test_pipe_shutdown_ends_only_that_client(self, server, tmp_path_factory):
        socket_dir = str(tmp_path_factory.mktemp("p"))
        config = ServerConfig(transport="pipe", notify_dir=socket_dir, home=socket_dir)
        results = {}

        async def exchange(stream, lines, message):
            await stream.send(encode_frame(message))
            return json.loads(await lines.receive_until(b"\n", 1 << 20))

        async def clients():
            while not os.path.exists(config.pipe_path):
                await anyio.sleep(0.01)
            async with await anyio.connect_unix(config.pipe_path) as first, \
                    await anyio.connect_unix(config.pipe_path) as second:
                first_lines = BufferedByteReceiveStream(first)
                second_lines = BufferedByteReceiveStream(second)
                results["init"] = await exchange(first, first_lines, _initialize())
                await exchange(second, second_lines, _initialize())
                results["done"] = await exchange(first, first_lines, _request(2, "shutdown"))
                with pytest.raises((anyio.IncompleteRead, anyio.EndOfStream, anyio.BrokenResourceError)):
                    await first_lines.receive_until(b"\n", 1 << 20)
                results["state_after"] = server.state
                results["ping"] = await exchange(second, second_lines, _request(3, "ping"))
            server.request_shutdown()

        with anyio.fail_after(15):
            async with anyio.create_task_group() as tg:
                tg.start_soon(clients)
                await server.serve(config)

        assert results["init"]["result"]["serverInfo"]["name"] == "mcp-workspace-server"
        assert "ends this session" in results["init"]["result"]["instructions"]
        assert results["done"] == {"jsonrpc": "2.0", "id": 2, "result": {}}
        assert results["state_after"] is ServerState.READY
        assert results["ping"] == {"jsonrpc": "2.0", "id": 3, "result": {}}
        assert server.state is ServerState.CLOSED
        assert not os.path.exists(config.pipe_path)


class TestSseTransport:
    def test_refuses_sessions_while_not_accepting(self):
        async def handler(read_stream, write_stream):
            raise AssertionError("no session expected")

        client = TestClient(create_sse_app(handler, accepting=lambda: False))
        response = client.get("/sse")
        assert response.status_code == 503

    def test_post_without_session_is_rejected(self):
        async def handler(read_stream, write_stream):
            raise AssertionError("no session expected")

        client = TestClient(create_sse_app(handler))
        response = client.post("/messages/", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert response.status_code == 400

    async def test_round_trip_and_session_shutdown(self, server, tmp_path_factory):
        home = str(tmp_path_factory.mktemp("s"))
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        config = ServerConfig(transport="sse", host="127.0.0.1", port=port, notify_dir=home, home=home)
        results = {}

        async def client():
            while True:
                try:
                    stream = await anyio.connect_tcp("127.0.0.1", port)
                except OSError:
                    await anyio.sleep(0.05)
                    continue
                await stream.aclose()
                break
            async with sse_client(f"http://127.0.0.1:{port}/sse") as (read_stream, write_stream):
                await write_stream.send(_initialize())
                results["init"] = await read_stream.receive()
                await write_stream.send(_request(2, "tools/list"))
                results["tools"] = await read_stream.receive()
                await write_stream.send(_request(3, "shutdown"))
                results["done"] = await read_stream.receive()
            results["state_after"] = server.state
            server.request_shutdown()

        with anyio.fail_after(20):
            async with anyio.create_task_group() as tg:
                tg.start_soon(client)
                await server.serve(config)

        init, tools, done = (
            results[k].message.model_dump(by_alias=True, mode="json", exclude_none=True)
            for k in ("init", "tools", "done")
        )
        assert init["result"]["serverInfo"]["name"] == "mcp-workspace-server"
        assert len(tools["result"]["tools"]) == len(TOOLS)
        assert done == {"jsonrpc": "2.0", "id": 3, "result": {}}
        assert results["state_after"] is ServerState.READY
        assert server.state is ServerState.CLOSED


class TestEntryPoint:
    def test_active_and_workspace_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--active", "--workspace", "x"])

    def test_parser_options(self):
        args = build_parser().parse_args(["--workspace", "App", "--transport", "sse", "--port", "9001"])
        assert (args.workspace, args.transport, args.port) == ("App", "sse", 9001)

    async def test_unknown_workspace_exits_with_error(self, tmp_path):
        assert await main(["--workspace", "ghost", "--home", str(tmp_path)]) == 1

    async def test_invalid_transport_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MCP_WORKSPACE_TRANSPORT", "bogus")
        assert await main(["--home", str(tmp_path)]) == 2
