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

"""Error taxonomy shared by the indexer, services and protocol layer.

Service code raises these; the session dispatcher is the only place that
turns them into JSON-RPC error envelopes.
"""

from __future__ import annotations

# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined codes (-32000 to -32099)
TOOL_ERROR = -32000
NOT_FOUND = -32001
NOT_INITIALIZED = -32002
SHUTTING_DOWN = -32003
PATH_ESCAPE = -32004
LINE_RANGE = -32005
WRITE_FAILURE = -32006


class WorkspaceServerError(Exception):
    """Base class for all errors raised by this package."""


class IndexBuildError(WorkspaceServerError):
    """The workspace cannot be indexed at all (no readable root)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class WorkspaceNotFoundError(WorkspaceServerError):
    """No persisted workspace matches the requested or active name."""


class ProtocolError(WorkspaceServerError):
    """Malformed request, call before initialize or unknown method."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ToolError(WorkspaceServerError):
    """A tool call failed in a way the client can reason about."""

    code = TOOL_ERROR

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InvalidArgumentsError(ToolError):
    code = INVALID_PARAMS


class SymbolNotFoundError(ToolError):
    code = NOT_FOUND


class TypeNotFoundError(SymbolNotFoundError):
    pass


class PathEscapeError(ToolError):
    code = PATH_ESCAPE


class LineRangeError(ToolError):
    code = LINE_RANGE


class WriteFailure(ToolError):
    code = WRITE_FAILURE
