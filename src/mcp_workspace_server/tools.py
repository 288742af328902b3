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

"""Tool registry and dispatcher.

``TOOLS`` is the static registry returned by ``tools/list``. ``ToolDispatcher``
maps a ``tools/call`` onto the query API, the refactoring service and the
maintenance operations, reporting each call to the connection notifier.
Handlers are synchronous; the session runs them in worker threads.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable

from mcp.types import Tool

from mcp_workspace_server.errors import (
    NOT_FOUND,
    IndexBuildError,
    InvalidArgumentsError,
    ToolError,
    WorkspaceNotFoundError,
)
from mcp_workspace_server.models import ActivityKind
from mcp_workspace_server.notifier import ConnectionNotifier
from mcp_workspace_server.query_api import create_workspace_query_functions
from mcp_workspace_server.refactoring import RefactoringService
from mcp_workspace_server.settings import WorkspaceStore
from mcp_workspace_server.workspace_indexer import WorkspaceIndexer, index_stats

logger = logging.getLogger(__name__)


def _schema(properties: dict | None = None, required: list[str] | None = None) -> dict:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


_STRING = {"type": "string"}
_BOOL = {"type": "boolean"}
_INT = {"type": "integer"}


def _desc(base: dict, text: str, **extra) -> dict:
    return {**base, "description": text, **extra}


TOOLS: list[Tool] = [
    # -- read -----------------------------------------------------------
    Tool(
        name="get_project_overview",
        description="Workspace summary: roots, file/type/member counts, languages, external repositories.",
        inputSchema=_schema(),
    ),
    Tool(
        name="list_files",
        description="List indexed files, optionally filtered by a glob pattern (e.g. '*.cs').",
        inputSchema=_schema({
            "pattern": _desc(_STRING, "Glob pattern matched against relative paths and file names"),
            "maxResults": _desc(_INT, "Maximum number of paths (0 = all)", default=0),
        }),
    ),
    Tool(
        name="get_file",
        description="Current content of an indexed file.",
        inputSchema=_schema({"path": _desc(_STRING, "Relative path as listed by list_files")}, ["path"]),
    ),
    Tool(
        name="get_lines",
        description="A line range of a file (1-indexed, inclusive), with line numbers.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path"),
            "startLine": _desc(_INT, "First line", minimum=1),
            "endLine": _desc(_INT, "Last line (clamped to the file length)", minimum=1),
        }, ["path", "startLine", "endLine"]),
    ),
    Tool(
        name="get_type",
        description="Declaration of a type (class, interface, struct, enum) with its members.",
        inputSchema=_schema({"typeName": _desc(_STRING, "Simple or qualified type name")}, ["typeName"]),
    ),
    Tool(
        name="get_method_body",
        description="Full source of a method. Pass typeName when the method name is ambiguous.",
        inputSchema=_schema({
            "methodName": _desc(_STRING, "Method name"),
            "typeName": _desc(_STRING, "Owning type (simple or qualified)"),
        }, ["methodName"]),
    ),
    Tool(
        name="search_content",
        description="Search file contents line by line, returning matches with context.",
        inputSchema=_schema({
            "pattern": _desc(_STRING, "Regex or literal text"),
            "isRegex": _desc(_BOOL, "Treat pattern as a regular expression", default=True),
            "caseSensitive": _desc(_BOOL, "Case-sensitive matching", default=False),
            "contextLines": _desc(_INT, "Lines of context before and after", default=2, minimum=0),
            "maxResults": _desc(_INT, "Maximum matches", default=50, minimum=1),
        }, ["pattern"]),
    ),
    Tool(
        name="get_context_for_task",
        description="Rank files relevant to a task description within a token budget.",
        inputSchema=_schema({
            "task": _desc(_STRING, "What you are about to do"),
            "maxFiles": _desc(_INT, "Maximum files to return", default=10, minimum=1),
            "maxTokens": _desc(_INT, "Token budget (about 4 characters per token)", default=50000, minimum=1),
        }, ["task"]),
    ),
    # -- semantic ---------------------------------------------------------
    Tool(
        name="find_usages",
        description="Call sites whose callee name equals the symbol (textual, not overload-aware).",
        inputSchema=_schema({"symbolName": _desc(_STRING, "Simple name of the called member")}, ["symbolName"]),
    ),
    Tool(
        name="get_call_graph",
        description="Callers and callees of a method.",
        inputSchema=_schema({
            "typeName": _desc(_STRING, "Owning type"),
            "methodName": _desc(_STRING, "Method name"),
        }, ["typeName", "methodName"]),
    ),
    Tool(
        name="get_callers",
        description="Call sites of a method, plus who calls each calling member (one level upstream).",
        inputSchema=_schema({
            "methodName": _desc(_STRING, "Method name"),
            "typeName": _desc(_STRING, "Owning type, to narrow the search"),
        }, ["methodName"]),
    ),
    Tool(
        name="get_callees",
        description="Call sites inside a method, plus what each workspace-defined callee calls in turn.",
        inputSchema=_schema({
            "methodName": _desc(_STRING, "Method name"),
            "typeName": _desc(_STRING, "Owning type, to narrow the search"),
        }, ["methodName"]),
    ),
    Tool(
        name="find_implementations",
        description="Types that directly list the interface or base class in their declaration.",
        inputSchema=_schema({"interfaceName": _desc(_STRING, "Interface or base class name")}, ["interfaceName"]),
    ),
    Tool(
        name="get_type_hierarchy",
        description="Declared bases and direct subtypes of every type, or of one type's ancestors and descendants.",
        inputSchema=_schema({"typeName": _desc(_STRING, "Limit the result to this type's family")}),
    ),
    Tool(
        name="get_dependencies",
        description="Types a type uses (bases and names in its source), its file's imports, and the types that use it.",
        inputSchema=_schema({"typeName": _desc(_STRING, "Simple or qualified type name")}, ["typeName"]),
    ),
    Tool(
        name="semantic_query",
        description="Members matching every supplied criterion (logical AND).",
        inputSchema=_schema({
            "criteria": {
                "type": "object",
                "description": "Sparse predicate set",
                "properties": {
                    "isAsync": _BOOL,
                    "isStatic": _BOOL,
                    "isVirtual": _BOOL,
                    "isAbstract": _BOOL,
                    "isOverride": _BOOL,
                    "hasDocumentation": _BOOL,
                    "returnType": _desc(_STRING, "Exact return type"),
                    "returnTypeEquals": _desc(_STRING, "Alias of returnType"),
                    "namePattern": _desc(_STRING, "Case-insensitive regex on the member name"),
                    "memberKind": {"type": "string", "enum": ["method", "property", "field", "constructor"]},
                    "accessModifier": _desc(_STRING, "public, private, protected, internal, ..."),
                    "typeName": _desc(_STRING, "Owning type name"),
                },
                "additionalProperties": False,
            },
            "maxResults": _desc(_INT, "Maximum matches", default=100, minimum=1),
        }, ["criteria"]),
    ),
    # -- write ------------------------------------------------------------
    Tool(
        name="preview_write",
        description="Unified diff of a proposed write without touching the file.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path; may start with a root directory name"),
            "content": _desc(_STRING, "Complete new file content"),
        }, ["path", "content"]),
    ),
    Tool(
        name="write_file",
        description="Write a file atomically, keeping a timestamped backup of the previous content.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path; may start with a root directory name"),
            "content": _desc(_STRING, "Complete new file content"),
        }, ["path", "content"]),
    ),
    Tool(
        name="str_replace",
        description="Replace one unique occurrence of text in a file.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path"),
            "oldText": _desc(_STRING, "Exact text to replace; must occur exactly once"),
            "newText": _desc(_STRING, "Replacement text"),
        }, ["path", "oldText", "newText"]),
    ),
    Tool(
        name="replace_lines",
        description="Replace a line range (1-indexed, inclusive) with new content, keeping a backup.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path"),
            "startLine": _desc(_INT, "First line to replace", minimum=1),
            "endLine": _desc(_INT, "Last line to replace", minimum=1),
            "newContent": _desc(_STRING, "Replacement lines; empty deletes the range"),
            "preview": _desc(_BOOL, "Only return the diff", default=False),
        }, ["path", "startLine", "endLine", "newContent"]),
    ),
    Tool(
        name="delete_file",
        description="Delete a file, keeping a backup that undo restores.",
        inputSchema=_schema({"path": _desc(_STRING, "Relative path")}, ["path"]),
    ),
    Tool(
        name="undo",
        description="Restore a file from its most recent backup.",
        inputSchema=_schema({"path": _desc(_STRING, "Relative path")}, ["path"]),
    ),
    Tool(
        name="clean_backups",
        description="Delete backup files under every root.",
        inputSchema=_schema({
            "maxAgeHours": {"type": "number", "description": "Only delete backups older than this", "minimum": 0},
        }),
    ),
    Tool(
        name="rename_symbol",
        description=(
            "Rename whole-word occurrences across all indexed files. Textual: comments "
            "and strings are renamed too. Preview is the default."
        ),
        inputSchema=_schema({
            "oldName": _desc(_STRING, "Current identifier"),
            "newName": _desc(_STRING, "New identifier"),
            "preview": _desc(_BOOL, "Only report what would change", default=True),
        }, ["oldName", "newName"]),
    ),
    Tool(
        name="grep_replace",
        description=(
            "Regex find-and-replace, line by line, across indexed files. Preview is the "
            "default and numbers each match; pass excludeMatches to leave some out."
        ),
        inputSchema=_schema({
            "pattern": _desc(_STRING, "Regular expression"),
            "replacement": _desc(_STRING, "Replacement; $1 or ${name} refer to groups"),
            "preview": _desc(_BOOL, "Only report what would change", default=True),
            "caseSensitive": _desc(_BOOL, "Case-sensitive matching", default=False),
            "fileFilter": _desc(_STRING, "Only files whose path contains this text"),
            "excludeMatches": {"type": "array", "items": _INT, "description": "Match numbers from the preview to skip"},
            "excludePattern": _desc(_STRING, "Lines matching this regex are left alone"),
        }, ["pattern", "replacement"]),
    ),
    Tool(
        name="move_file",
        description=(
            "Move or rename a file inside the workspace. A C# namespace that mirrors the "
            "folder is updated; files referencing the moved types are listed. Preview is the default."
        ),
        inputSchema=_schema({
            "oldPath": _desc(_STRING, "Current relative path"),
            "newPath": _desc(_STRING, "New relative path; may start with a root directory name"),
            "preview": _desc(_BOOL, "Only report what would change", default=True),
        }, ["oldPath", "newPath"]),
    ),
    Tool(
        name="generate_interface",
        description="Generate an interface from the public instance members of a class.",
        inputSchema=_schema({
            "className": _desc(_STRING, "Class to extract from"),
            "interfaceName": _desc(_STRING, "Name of the generated interface"),
        }, ["className"]),
    ),
    Tool(
        name="extract_method",
        description="Move a line range inside one member into a new method of the same type.",
        inputSchema=_schema({
            "path": _desc(_STRING, "Relative path"),
            "startLine": _desc(_INT, "First line to extract", minimum=1),
            "endLine": _desc(_INT, "Last line to extract", minimum=1),
            "newMethodName": _desc(_STRING, "Name of the new method"),
        }, ["path", "startLine", "endLine", "newMethodName"]),
    ),
    # -- maintenance ------------------------------------------------------
    Tool(
        name="refresh",
        description="Rebuild the workspace index so queries reflect edits made since the last build.",
        inputSchema=_schema(),
    ),
    Tool(
        name="list_workspaces",
        description="Names of the configured workspaces, marking the active one.",
        inputSchema=_schema(),
    ),
    Tool(
        name="switch_workspace",
        description="Make another workspace active. This server keeps serving its own workspace until restarted.",
        inputSchema=_schema({"name": _desc(_STRING, "Workspace name")}, ["name"]),
    ),
]

TOOL_NAMES = frozenset(t.name for t in TOOLS)


def format_result(value: object) -> str:
    """Format a tool result as readable text."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    return str(value)


def _arg(arguments: dict, key: str, kind: type | tuple[type, ...], default: Any = ..., required: bool = False):
    if key not in arguments or arguments[key] is None:
        if required or default is ...:
            raise InvalidArgumentsError(f"Missing required argument '{key}'")
        return default
    value = arguments[key]
    # bool is an int subclass; never accept it where an integer is expected
    if kind is int and isinstance(value, bool):
        raise InvalidArgumentsError(f"Argument '{key}' must be an integer")
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        value = float(value)
    if not isinstance(value, kind):
        name = kind.__name__ if isinstance(kind, type) else "/".join(k.__name__ for k in kind)
        raise InvalidArgumentsError(f"Argument '{key}' must be of type {name}")
    return value


class ToolDispatcher:
    """Executes tool calls against the services of one workspace."""

    def __init__(
        self,
        indexer: WorkspaceIndexer,
        store: WorkspaceStore | None = None,
        notifier: ConnectionNotifier | None = None,
    ):
        self.indexer = indexer
        self.store = store
        self.notifier = notifier
        self.refactoring = RefactoringService(indexer)
        self._query_fns: dict[str, Callable] | None = None
        self._query_generation = -1
        self._query_lock = threading.Lock()
        self._call_counts: dict[str, int] = {}
        self._counts_lock = threading.Lock()

    @property
    def workspace_name(self) -> str:
        return self.indexer.workspace.name

    def _queries(self) -> dict[str, Callable]:
        """Query functions bound to the current snapshot (rebuilt when it changes)."""
        index = self.indexer.index
        with self._query_lock:
            if self._query_fns is None or self._query_generation != index.generation:
                self._query_fns = create_workspace_query_functions(index)
                self._query_generation = index.generation
            return self._query_fns

    def call(self, name: str, arguments: dict | None) -> str:
        """Run one tool call, reporting start/completion/error to the notifier."""
        arguments = arguments or {}
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError("arguments must be an object")
        if name not in TOOL_NAMES:
            raise ToolError(f"Unknown tool '{name}'", code=NOT_FOUND)
        with self._counts_lock:
            self._call_counts[name] = self._call_counts.get(name, 0) + 1

        self._notify(ActivityKind.STARTED, name, _summarize(arguments))
        started = time.monotonic()
        try:
            result = format_result(self._dispatch(name, arguments))
        except ToolError as e:
            self._notify(ActivityKind.ERROR, name, e.message)
            raise
        except Exception as e:
            logger.exception("Error in tool %s", name)
            self._notify(ActivityKind.ERROR, name, str(e))
            raise
        elapsed_ms = (time.monotonic() - started) * 1000
        self._notify(ActivityKind.COMPLETED, name, f"{elapsed_ms:.0f}ms")
        return result

    def call_counts(self) -> dict[str, int]:
        """Calls per tool name since the server started."""
        with self._counts_lock:
            return dict(sorted(self._call_counts.items()))

    def _notify(self, kind: ActivityKind, tool: str, detail: str) -> None:
        if self.notifier is not None:
            self.notifier.activity(kind, tool, detail)

    def _dispatch(self, name: str, arguments: dict) -> object:
        if name == "refresh":
            try:
                index = self.indexer.rebuild()
            except IndexBuildError as e:
                raise ToolError(f"Re-index failed: {e.reason}") from e
            return {"message": "Workspace re-indexed.", **index_stats(index)}

        if name == "list_workspaces":
            return self._list_workspaces()

        if name == "switch_workspace":
            return self._switch_workspace(_arg(arguments, "name", str, required=True))

        refactoring = self.refactoring
        if name == "preview_write":
            return refactoring.preview_write(
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "content", str, required=True),
            ).to_dict()

        elif name == "write_file":
            return refactoring.write_file(
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "content", str, required=True),
            ).to_dict()

        elif name == "str_replace":
            return refactoring.str_replace(
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "oldText", str, required=True),
                _arg(arguments, "newText", str, required=True),
            ).to_dict()

        elif name == "replace_lines":
            result = refactoring.replace_lines(
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "startLine", int, required=True),
                _arg(arguments, "endLine", int, required=True),
                _arg(arguments, "newContent", str, required=True),
                preview=_arg(arguments, "preview", bool, False),
            )
            return result.to_dict()

        elif name == "delete_file":
            return refactoring.delete_file(_arg(arguments, "path", str, required=True)).to_dict()

        elif name == "undo":
            return refactoring.undo(_arg(arguments, "path", str, required=True)).to_dict()

        elif name == "clean_backups":
            return refactoring.clean_backups(_arg(arguments, "maxAgeHours", float, None))

        elif name == "rename_symbol":
            return refactoring.rename_symbol(
                _arg(arguments, "oldName", str, required=True),
                _arg(arguments, "newName", str, required=True),
                preview=_arg(arguments, "preview", bool, True),
            ).to_dict()

        elif name == "grep_replace":
            exclude = _arg(arguments, "excludeMatches", list, None)
            if exclude is not None and not all(isinstance(n, int) and not isinstance(n, bool) for n in exclude):
                raise InvalidArgumentsError("Argument 'excludeMatches' must be a list of integers")
            return refactoring.grep_replace(
                _arg(arguments, "pattern", str, required=True),
                _arg(arguments, "replacement", str, required=True),
                preview=_arg(arguments, "preview", bool, True),
                case_sensitive=_arg(arguments, "caseSensitive", bool, False),
                file_filter=_arg(arguments, "fileFilter", str, None),
                exclude_matches=exclude,
                exclude_pattern=_arg(arguments, "excludePattern", str, None),
            )

        elif name == "move_file":
            return refactoring.move_file(
                _arg(arguments, "oldPath", str, required=True),
                _arg(arguments, "newPath", str, required=True),
                preview=_arg(arguments, "preview", bool, True),
            )

        elif name == "generate_interface":
            return refactoring.generate_interface(
                _arg(arguments, "className", str, required=True),
                _arg(arguments, "interfaceName", str, None),
            )

        elif name == "extract_method":
            return refactoring.extract_method(
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "startLine", int, required=True),
                _arg(arguments, "endLine", int, required=True),
                _arg(arguments, "newMethodName", str, required=True),
            ).to_dict()

        queries = self._queries()
        if name == "get_project_overview":
            return {**queries["get_project_overview"](), "toolCalls": self.call_counts()}

        elif name == "list_files":
            return queries["list_files"](
                _arg(arguments, "pattern", str, None),
                max_results=_arg(arguments, "maxResults", int, 0),
            )

        elif name == "get_file":
            return queries["get_file"](_arg(arguments, "path", str, required=True))

        elif name == "get_lines":
            return queries["get_lines"](
                _arg(arguments, "path", str, required=True),
                _arg(arguments, "startLine", int, required=True),
                _arg(arguments, "endLine", int, required=True),
            )

        elif name == "get_type":
            return queries["get_type"](_arg(arguments, "typeName", str, required=True))

        elif name == "get_method_body":
            return queries["get_method_body"](
                _arg(arguments, "methodName", str, required=True),
                _arg(arguments, "typeName", str, None),
            )

        elif name == "search_content":
            return queries["search_content"](
                _arg(arguments, "pattern", str, required=True),
                is_regex=_arg(arguments, "isRegex", bool, True),
                case_sensitive=_arg(arguments, "caseSensitive", bool, False),
                context_lines=_arg(arguments, "contextLines", int, 2),
                max_results=_arg(arguments, "maxResults", int, 50),
            )

        elif name == "get_context_for_task":
            return queries["get_context_for_task"](
                _arg(arguments, "task", str, required=True),
                max_files=_arg(arguments, "maxFiles", int, 10),
                max_tokens=_arg(arguments, "maxTokens", int, 50000),
            )

        elif name == "find_usages":
            return queries["find_usages"](_arg(arguments, "symbolName", str, required=True))

        elif name == "get_call_graph":
            return queries["get_call_graph"](
                _arg(arguments, "typeName", str, required=True),
                _arg(arguments, "methodName", str, required=True),
            )

        elif name == "get_callers":
            return queries["get_callers"](
                _arg(arguments, "methodName", str, required=True),
                _arg(arguments, "typeName", str, None),
            )

        elif name == "get_callees":
            return queries["get_callees"](
                _arg(arguments, "methodName", str, required=True),
                _arg(arguments, "typeName", str, None),
            )

        elif name == "find_implementations":
            return queries["find_implementations"](_arg(arguments, "interfaceName", str, required=True))

        elif name == "get_type_hierarchy":
            return queries["get_type_hierarchy"](_arg(arguments, "typeName", str, None))

        elif name == "get_dependencies":
            return queries["get_dependencies"](_arg(arguments, "typeName", str, required=True))

        elif name == "semantic_query":
            return queries["semantic_query"](
                _arg(arguments, "criteria", dict, required=True),
                max_results=_arg(arguments, "maxResults", int, 100),
            )

        raise ToolError(f"Unknown tool '{name}'", code=NOT_FOUND)

    def _list_workspaces(self) -> dict:
        if self.store is None:
            return {"workspaces": [self.workspace_name], "active": self.workspace_name, "serving": self.workspace_name}
        active = self.store.get_active_workspace_name()
        return {
            "workspaces": self.store.list_workspaces(),
            "active": active,
            "serving": self.workspace_name,
        }

    def _switch_workspace(self, name: str) -> dict:
        if self.store is None:
            raise ToolError("Workspace switching is not available without a workspace store")
        try:
            self.store.load_workspace(name)
        except WorkspaceNotFoundError as e:
            raise ToolError(str(e), code=NOT_FOUND) from e
        self.store.set_active_workspace_name(name)
        self._notify(ActivityKind.WORKSPACE_SWITCHED, "switch_workspace", name)
        return {
            "active": name,
            "serving": self.workspace_name,
            "message": f"Active workspace set to '{name}'. Restart the server to serve it.",
        }


def _summarize(arguments: dict) -> str:
    """Short one-line description of the arguments for activity events."""
    parts = []
    for key, value in arguments.items():
        if key in ("content", "newText", "oldText", "newContent"):
            value = f"<{len(value) if isinstance(value, str) else 0} chars>"
        text = str(value)
        parts.append(f"{key}={text[:60]}")
    return ", ".join(parts)[:200]
