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

"""Framed message transports.

Every transport hands the protocol layer the same pair of anyio memory
streams as the MCP SDK's stdio transport: a read stream yielding
``SessionMessage`` (or the ``Exception`` raised while parsing a frame) and a
write stream accepting ``SessionMessage``.

- stdio: the SDK's ``stdio_server`` (newline-delimited JSON)
- pipe: a Unix domain socket listener, one session per connection, same framing
- sse: the SDK's ``SseServerTransport`` mounted in a Starlette app
"""

from __future__ import annotations

import logging
import os
from functools import partial
from typing import Awaitable, Callable

import anyio
import mcp.types as types
from anyio.abc import SocketStream
from anyio.streams.buffered import BufferedByteReceiveStream
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from mcp.shared.message import SessionMessage
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Mount, Route

logger = logging.getLogger(__name__)

SessionHandler = Callable[..., Awaitable[None]]

MAX_FRAME_BYTES = 16 * 1024 * 1024

__all__ = ["stdio_server", "serve_unix_socket", "create_sse_app", "MAX_FRAME_BYTES"]


# ---------------------------------------------------------------------------
# Local pipe (Unix domain socket)
# ---------------------------------------------------------------------------


def encode_frame(message: SessionMessage) -> bytes:
    return (message.message.model_dump_json(by_alias=True, exclude_none=True) + "\n").encode("utf-8")


async def _serve_connection(conn: SocketStream, session_handler: SessionHandler) -> None:
    read_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_reader = anyio.create_memory_object_stream(0)
    writer_done = anyio.Event()

    async def reader() -> None:
        buffered = BufferedByteReceiveStream(conn)
        async with read_writer:
            while True:
                try:
                    line = await buffered.receive_until(b"\n", MAX_FRAME_BYTES)
                except (anyio.IncompleteRead, anyio.EndOfStream, anyio.BrokenResourceError,
                        anyio.ClosedResourceError):
                    return
                except anyio.DelimiterNotFound as exc:
                    await read_writer.send(exc)
                    return
                if not line.strip():
                    continue
                try:
                    message = types.JSONRPCMessage.model_validate_json(line)
                except Exception as exc:
                    await read_writer.send(exc)
                    continue
                await read_writer.send(SessionMessage(message))

    async def writer() -> None:
        try:
            async with write_reader:
                async for session_message in write_reader:
                    await conn.send(encode_frame(session_message))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Pipe client went away before a response was written")
        finally:
            writer_done.set()

    async with conn:
        async with anyio.create_task_group() as tg:
            tg.start_soon(reader)
            tg.start_soon(writer)
            try:
                await session_handler(read_stream, write_stream)
            finally:
                await write_stream.aclose()
                with anyio.move_on_after(1):
                    await writer_done.wait()
                tg.cancel_scope.cancel()


async def serve_unix_socket(
    path: str,
    session_handler: SessionHandler,
    *,
    task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED,
) -> None:
    """Accept connections on *path* until cancelled, one session per connection."""
    if os.path.exists(path):
        os.unlink(path)  # stale socket from a previous run
    listener = await anyio.create_unix_listener(path)
    logger.info("Listening on %s", path)
    task_status.started(path)
    try:
        async with listener:
            await listener.serve(partial(_serve_connection, session_handler=session_handler))
    finally:
        if os.path.exists(path):
            os.unlink(path)


# ---------------------------------------------------------------------------
# HTTP SSE
# ---------------------------------------------------------------------------


def create_sse_app(
    session_handler: SessionHandler,
    accepting: Callable[[], bool] = lambda: True,
) -> Starlette:
    """Starlette app: ``GET /sse`` opens a session stream, ``POST /messages/`` feeds it.

    The SSE transport tells the client its POST URL (carrying the session id)
    as the first event of the stream.
    """
    sse = SseServerTransport("/messages/")

    async def handle_sse(request: Request) -> Response:
        if not accepting():
            return Response("Server is shutting down", status_code=503)
        async with sse.connect_sse(request.scope, request.receive, request._send) as streams:
            await session_handler(streams[0], streams[1])
        return Response()

    return Starlette(
        routes=[
            Route("/sse", endpoint=handle_sse),
            Mount("/messages/", app=sse.handle_post_message),
        ],
    )
