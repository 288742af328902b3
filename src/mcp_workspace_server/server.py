# mcp-workspace-server - Workspace indexer and refactoring tools over MCP
# Copyright (C) 2026 Michael Doyle
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licensing available. See COMMERCIAL-LICENSE.md for details.

"""MCP server for one workspace.

Indexes the workspace once at startup, then serves tool sessions over the
configured transport until shutdown. Each session runs its own JSON-RPC
loop: ``initialize`` first, then ``tools/list`` / ``tools/call``, optionally
``shutdown``. Sessions are independent; a tool call runs in a worker thread
so sessions make progress concurrently.

``shutdown`` stops the server on stdio. On the pipe and SSE transports,
where other clients may be connected, it ends only the requesting session;
those servers stop on SIGINT or SIGTERM.

Usage:
    mcp-workspace-server --active
    mcp-workspace-server --workspace MyApp --transport sse --port 8765
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import uuid
from enum import Enum

import anyio
import mcp.types as types
import uvicorn
from mcp.shared.message import SessionMessage
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from pydantic import model_serializer

from mcp_workspace_server.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    NOT_INITIALIZED,
    PARSE_ERROR,
    SHUTTING_DOWN,
    IndexBuildError,
    ProtocolError,
    ToolError,
    WorkspaceNotFoundError,
)
from mcp_workspace_server.notifier import ConnectionNotifier
from mcp_workspace_server.settings import TRANSPORTS, ServerConfig, WorkspaceStore
from mcp_workspace_server.tools import TOOLS, ToolDispatcher
from mcp_workspace_server.transports import create_sse_app, serve_unix_socket, stdio_server
from mcp_workspace_server.workspace_indexer import WorkspaceIndexer

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-workspace-server"
SERVER_VERSION = "0.1.0"

# Time open sessions get to flush their last responses once calls have drained
SHUTDOWN_GRACE_SECONDS = 1.0


def _log(message: str) -> None:
    print(f"[{SERVER_NAME}] {message}", file=sys.stderr)


class ServerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class _UnidentifiedError(types.JSONRPCMessage):
    """An error reply to a frame whose id could not be read.

    JSON-RPC requires ``"id": null`` here, which ``exclude_none`` would drop.
    """

    @model_serializer(mode="wrap")
    def _with_null_id(self, handler):
        data = handler(self)
        data["id"] = None
        return data


# ---------------------------------------------------------------------------
# Per-connection session
# ---------------------------------------------------------------------------


class ToolSession:
    """Protocol state of one transport connection."""

    def __init__(self, server: ProtocolServer, read_stream, write_stream):
        self.server = server
        self.read_stream = read_stream
        self.write_stream = write_stream
        self.session_id = uuid.uuid4().hex
        self.initialized = False
        self.protocol_version: str | None = None
        self.client_info: dict | None = None
        self.client_capabilities: dict = {}
        self._shutdown_after_reply = False

    async def run(self) -> None:
        """Handle messages sequentially until the read stream ends."""
        logger.info("Session %s opened", self.session_id)
        async for message in self.read_stream:
            if isinstance(message, Exception):
                logger.warning("Session %s: unparseable message: %s", self.session_id, message)
                await self._send_error(None, PARSE_ERROR, f"Parse error: {message}")
                continue
            root = message.message.root
            if isinstance(root, types.JSONRPCRequest):
                await self._handle_request(root)
            elif isinstance(root, types.JSONRPCNotification):
                logger.debug("Session %s: notification %s", self.session_id, root.method)
            if self._shutdown_after_reply:
                if not self.server.session_scoped_shutdown:
                    self.server.request_shutdown()
                break
        logger.info("Session %s closed", self.session_id)

    async def _handle_request(self, request: types.JSONRPCRequest) -> None:
        try:
            result = await self._dispatch(request.method, request.params or {})
        except ProtocolError as e:
            await self._send_error(request.id, e.code, e.message)
        except ToolError as e:
            await self._send_error(request.id, e.code, e.message)
        except Exception as e:
            logger.exception("Session %s: unhandled error in %s", self.session_id, request.method)
            await self._send_error(request.id, INTERNAL_ERROR, f"Internal error: {e}")
        else:
            await self._send(types.JSONRPCResponse(jsonrpc="2.0", id=request.id, result=result))

    async def _dispatch(self, method: str, params: dict) -> dict:
        if method == "initialize":
            return self._initialize(params)
        if not self.initialized:
            raise ProtocolError(NOT_INITIALIZED, f"Session not initialized: '{method}' received before 'initialize'")

        if method == "shutdown":
            self._shutdown_after_reply = True
            return {}
        if method == "ping":
            return {}
        if method == "tools/list":
            return types.ListToolsResult(tools=TOOLS).model_dump(by_alias=True, mode="json", exclude_none=True)
        if method == "tools/call":
            return await self._call_tool(params)
        raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: dict) -> dict:
        if self.initialized:
            raise ProtocolError(INVALID_REQUEST, "Session is already initialized")
        requested = params.get("protocolVersion")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            self.protocol_version = requested
        else:
            self.protocol_version = types.LATEST_PROTOCOL_VERSION
        self.client_info = params.get("clientInfo")
        self.client_capabilities = params.get("capabilities") or {}
        self.initialized = True

        result = types.InitializeResult(
            protocolVersion=self.protocol_version,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=types.Implementation(name=SERVER_NAME, version=SERVER_VERSION),
            instructions=(
                f"Workspace '{self.server.workspace_name}' is indexed and exposed through "
                f"{len(TOOLS)} tools. Edits are not re-indexed automatically; call refresh. "
                f"The shutdown method ends {'this session' if self.server.session_scoped_shutdown else 'the server'}."
            ),
        ).model_dump(by_alias=True, mode="json", exclude_none=True)
        result["toolCount"] = len(TOOLS)
        result["sessionId"] = self.session_id
        logger.info("Session %s initialized (protocol %s)", self.session_id, self.protocol_version)
        return result

    async def _call_tool(self, params: dict) -> dict:
        if self.server.state is not ServerState.READY:
            raise ProtocolError(SHUTTING_DOWN, "Server is shutting down")
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            raise ProtocolError(INVALID_PARAMS, "tools/call requires a tool name")
        if not isinstance(arguments, dict):
            raise ProtocolError(INVALID_PARAMS, "tools/call arguments must be an object")

        self.server.in_flight += 1
        try:
            text = await anyio.to_thread.run_sync(self.server.dispatcher.call, name, arguments)
        finally:
            self.server.in_flight -= 1
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=text)],
            isError=False,
        ).model_dump(by_alias=True, mode="json", exclude_none=True)

    async def _send(self, payload) -> None:
        try:
            await self.write_stream.send(SessionMessage(types.JSONRPCMessage(payload)))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Session %s: client gone, response dropped", self.session_id)

    async def _send_error(self, request_id, code: int, message: str) -> None:
        error = types.ErrorData(code=code, message=message)
        if request_id is None:
            payload = types.JSONRPCError.model_construct(jsonrpc="2.0", id=None, error=error)
            try:
                await self.write_stream.send(SessionMessage(_UnidentifiedError.model_construct(payload)))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                pass
            return
        await self._send(types.JSONRPCError(jsonrpc="2.0", id=request_id, error=error))


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


class ProtocolServer:
    """Owns one workspace's lifecycle: index once, serve sessions, shut down."""

    def __init__(self, dispatcher: ToolDispatcher, notifier: ConnectionNotifier | None = None):
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.state = ServerState.UNINITIALIZED
        self.in_flight = 0
        self.sessions: dict[str, ToolSession] = {}
        self._shutdown_requested: anyio.Event | None = None
        self._http_server: uvicorn.Server | None = None
        # Multi-client transports: `shutdown` closes only the requesting session
        self.session_scoped_shutdown = False

    @property
    def workspace_name(self) -> str:
        return self.dispatcher.workspace_name

    async def start(self) -> None:
        """Build the index (Uninitialized -> Ready). Raises IndexBuildError."""
        indexer = self.dispatcher.indexer
        _log(f"Indexing workspace: {indexer.workspace.name}")
        index = await anyio.to_thread.run_sync(indexer.rebuild)
        _log(
            f"Indexed {len(index.files)} files, {index.total_lines} lines, "
            f"{len(index.types)} types, {len(index.members)} members "
            f"in {index.build_time_seconds:.2f}s"
            + (f" ({len(index.warnings)} warnings)" if index.warnings else "")
        )
        self.state = ServerState.READY
        if self.notifier is not None:
            self.notifier.send_handshake()

    def request_shutdown(self) -> None:
        """Enter ShuttingDown: refuse new sessions and calls, let in-flight calls finish."""
        if self.state in (ServerState.SHUTTING_DOWN, ServerState.CLOSED):
            return
        logger.info("Shutdown requested")
        self.state = ServerState.SHUTTING_DOWN
        if self._shutdown_requested is not None:
            self._shutdown_requested.set()
        if self._http_server is not None:
            self._http_server.should_exit = True

    async def serve_session(self, read_stream, write_stream) -> None:
        """Run one transport session to completion."""
        if self.state is not ServerState.READY:
            logger.warning("Refusing new session: server is %s", self.state.value)
            return
        session = ToolSession(self, read_stream, write_stream)
        self.sessions[session.session_id] = session
        try:
            await session.run()
        finally:
            self.sessions.pop(session.session_id, None)

    async def _wait_idle(self) -> None:
        while self.in_flight > 0:
            await anyio.sleep(0.05)
        with anyio.move_on_after(SHUTDOWN_GRACE_SECONDS):
            while self.sessions:
                await anyio.sleep(0.05)

    async def _watch_signals(self) -> None:
        try:
            with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
                async for signum in signals:
                    logger.info("Received signal %s", signum)
                    self.request_shutdown()
                    return
        except NotImplementedError:
            return  # platform without signal receivers

    async def serve(self, config: ServerConfig) -> None:
        """Serve the configured transport until shutdown (Ready -> ... -> Closed)."""
        if self.state is not ServerState.READY:
            raise RuntimeError("start() must complete before serve()")
        self._shutdown_requested = anyio.Event()
        self.session_scoped_shutdown = config.transport != "stdio"

        async def run_transport() -> None:
            try:
                if config.transport == "stdio":
                    async with stdio_server() as (read_stream, write_stream):
                        await self.serve_session(read_stream, write_stream)
                    _log("stdio session ended, shutting down")
                elif config.transport == "pipe":
                    _log(f"Serving on local pipe {config.pipe_path}")
                    await serve_unix_socket(config.pipe_path, self.serve_session)
                else:
                    app = create_sse_app(self.serve_session, lambda: self.state is ServerState.READY)
                    self._http_server = uvicorn.Server(
                        uvicorn.Config(app, host=config.host, port=config.port, log_level=config.log_level.lower())
                    )
                    _log(f"Serving SSE on http://{config.host}:{config.port}/sse")
                    await self._http_server.serve()
            finally:
                self.request_shutdown()

        async with anyio.create_task_group() as tg:
            tg.start_soon(run_transport)
            if config.transport != "sse":
                tg.start_soon(self._watch_signals)
            await self._shutdown_requested.wait()
            await self._wait_idle()
            tg.cancel_scope.cancel()
        self.state = ServerState.CLOSED
        _log("Server closed")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=SERVER_NAME, description="Serve a code workspace over MCP.")
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--active", action="store_true", help="Serve the currently active workspace (default)")
    target.add_argument("--workspace", metavar="NAME", help="Serve the named workspace")
    parser.add_argument("--transport", choices=TRANSPORTS, help="Transport (default: stdio)")
    parser.add_argument("--pipe", metavar="PATH", help="Socket path for the pipe transport")
    parser.add_argument("--host", help="Bind host for the sse transport")
    parser.add_argument("--port", type=int, help="Bind port for the sse transport")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument("--home", help="Workspace configuration directory")
    parser.add_argument("--notify-dir", help="Directory holding the UI notification sockets")
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = ServerConfig.from_env(
            transport=args.transport,
            pipe_path=args.pipe,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
            home=args.home,
            notify_dir=args.notify_dir,
        )
    except ValueError as e:
        _log(f"Error: {e}")
        return 2
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, config.log_level.upper(), logging.WARNING),
        format=f"[{SERVER_NAME}] %(levelname)s %(name)s: %(message)s",
    )

    store = WorkspaceStore(config.home)
    try:
        workspace = store.load_workspace(args.workspace) if args.workspace else store.load_active_workspace()
    except WorkspaceNotFoundError as e:
        _log(f"Error: {e}")
        return 1

    notifier = ConnectionNotifier(workspace.name, config.notify_dir)
    indexer = WorkspaceIndexer(workspace, max_file_size_bytes=config.max_file_size_bytes)
    server = ProtocolServer(ToolDispatcher(indexer, store, notifier), notifier)

    try:
        await server.start()
    except IndexBuildError as e:
        _log(f"Error: cannot index workspace: {e.reason}")
        return 1

    try:
        await server.serve(config)
    except Exception:
        logger.exception("Fatal error in serve loop")
        return 1
    finally:
        notifier.wait(timeout=1)
        notifier.send_disconnect()
    return 0


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(anyio.run(main))


if __name__ == "__main__":
    main_sync()
