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

"""Data model for workspaces, per-file declarations and the workspace index."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from mcp_workspace_server.symbol_index import SymbolIndex


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` (and ``\\r\\n``) only, the way analyzers number lines.

    ``str.splitlines`` also breaks on form feeds, ``\\x85``, ``\\u2028`` and
    friends, which would shift line numbers against the index.
    """
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


@dataclass(frozen=True)
class LineRange:
    """A range of lines (1-indexed, inclusive on both ends)."""

    start: int
    end: int

    def contains(self, line: int) -> bool:
        return self.start <= line <= self.end


# ---------------------------------------------------------------------------
# Workspace configuration
# ---------------------------------------------------------------------------


@dataclass
class ExternalRepository:
    """A cloned repository materialized on disk by the repository provider."""

    url: str
    local_path: str
    name: str = ""
    branch: str = "main"
    enabled: bool = True
    include_paths: list[str] = field(default_factory=list)  # Empty = include all
    exclude_paths: list[str] = field(default_factory=list)


@dataclass
class Workspace:
    """A named collection of root directories forming one indexable unit."""

    name: str
    directories: list[str] = field(default_factory=list)
    disabled_directories: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=list)  # Empty or "*" = all
    ignored_directories: list[str] = field(default_factory=list)
    external_repositories: list[ExternalRepository] = field(default_factory=list)

    @property
    def enabled_directories(self) -> list[str]:
        disabled = set(self.disabled_directories)
        return [d for d in self.directories if d not in disabled]


# ---------------------------------------------------------------------------
# Declarations produced by source analyzers
# ---------------------------------------------------------------------------


class TypeKind(str, Enum):
    CLASS = "class"
    INTERFACE = "interface"
    STRUCT = "struct"
    ENUM = "enum"


class MemberKind(str, Enum):
    METHOD = "method"
    PROPERTY = "property"
    FIELD = "field"
    CONSTRUCTOR = "constructor"


@dataclass(frozen=True)
class Parameter:
    name: str
    type: str = ""  # Empty when the language carries no annotation

    def __str__(self) -> str:
        return f"{self.type} {self.name}".strip() if self.type else self.name


@dataclass(frozen=True)
class MemberDeclaration:
    """A method, property, field or constructor owned by a type."""

    id: str  # "<relative path>::<Type>.<member>@<start line>"
    name: str
    kind: MemberKind
    owner_id: str
    owner_name: str
    file_path: str  # Relative path of the declaring file
    line_range: LineRange
    parameters: tuple[Parameter, ...] = ()
    return_type: str = ""
    modifiers: frozenset[str] = frozenset()
    access: str = "private"
    body: str = ""  # Full text, populated for methods and constructors
    documentation: str | None = None

    @property
    def signature(self) -> str:
        params = ", ".join(str(p) for p in self.parameters)
        return f"{self.name}({params})"

    @property
    def is_public(self) -> bool:
        return self.access == "public"


@dataclass(frozen=True)
class TypeDeclaration:
    """A class, interface, struct or enum declared in a source file."""

    id: str  # "<relative path>::<qualified name>"
    name: str
    qualified_name: str  # Namespace-qualified where the language has namespaces
    kind: TypeKind
    file_path: str
    line_range: LineRange
    bases: tuple[str, ...] = ()  # Base class and interface names as written
    modifiers: frozenset[str] = frozenset()
    access: str = "internal"
    documentation: str | None = None
    member_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CallSite:
    """An invocation found inside a member body.

    The callee is recorded as written (simple name), never resolved.
    """

    caller_id: str
    caller_name: str  # "Type.member"
    callee_name: str
    file_path: str
    line: int
    receiver: str = ""  # Text before the last "." of the call, if any


@dataclass
class FileAnalysis:
    """Declarations extracted from a single file by a source analyzer."""

    source_name: str
    language: str
    namespace: str = ""
    types: list[TypeDeclaration] = field(default_factory=list)
    members: list[MemberDeclaration] = field(default_factory=list)
    call_sites: list[CallSite] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Index snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceFile:
    """A file as read for one index generation."""

    path: str  # Absolute, resolved
    relative_path: str  # Relative to its root, "/" separated, prefixed by root name
    root: str
    language: str | None  # None when no analyzer is registered
    text: str

    @property
    def lines(self) -> list[str]:
        return split_lines(self.text)

    @property
    def estimated_tokens(self) -> int:
        return len(self.text) // 4


@dataclass(frozen=True)
class AnalysisWarning:
    """A per-file problem recorded during indexing; never aborts a build."""

    path: str
    message: str


@dataclass(frozen=True)
class WorkspaceIndex:
    """Immutable point-in-time structural model of one workspace.

    Replaced wholesale by a rebuild; never mutated after publication.
    """

    workspace_name: str
    roots: tuple[str, ...]
    generation: int
    files: Mapping[str, SourceFile]  # relative path -> file
    types: Mapping[str, TypeDeclaration]  # id -> type
    members: Mapping[str, MemberDeclaration]  # id -> member
    call_sites: tuple[CallSite, ...]
    symbols: "SymbolIndex"
    warnings: tuple[AnalysisWarning, ...] = ()
    repositories: tuple[dict, ...] = ()
    root_labels: Mapping[str, str] = field(default_factory=dict)  # label -> root path
    imports: Mapping[str, tuple[str, ...]] = field(default_factory=dict)  # relative path -> imports
    namespaces: Mapping[str, str] = field(default_factory=dict)  # relative path -> namespace
    build_time_seconds: float = 0.0
    built_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))
        object.__setattr__(self, "types", MappingProxyType(dict(self.types)))
        object.__setattr__(self, "members", MappingProxyType(dict(self.members)))
        object.__setattr__(self, "root_labels", MappingProxyType(dict(self.root_labels)))
        object.__setattr__(self, "imports", MappingProxyType(dict(self.imports)))
        object.__setattr__(self, "namespaces", MappingProxyType(dict(self.namespaces)))

    @property
    def total_lines(self) -> int:
        return sum(len(f.lines) for f in self.files.values())

    def resolve_file(self, path: str) -> SourceFile | None:
        """Find an indexed file by relative path, tolerating separators and suffixes."""
        normalized = path.replace("\\", "/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        if normalized in self.files:
            return self.files[normalized]
        for source in self.files.values():
            if source.path == path:
                return source
        for rel_path, source in sorted(self.files.items()):
            if rel_path.endswith("/" + normalized):
                return source
        return None


# ---------------------------------------------------------------------------
# Activity events
# ---------------------------------------------------------------------------


class ActivityKind(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    WORKSPACE_SWITCHED = "WORKSPACE_SWITCHED"


@dataclass(frozen=True)
class ActivityEvent:
    """A transient tool-call lifecycle notification for the UI process."""

    workspace_name: str
    kind: ActivityKind
    tool_name: str = ""
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_line(self) -> str:
        detail = self.detail.replace("\n", " ").replace("\r", " ")
        return f"{self.workspace_name}|{self.kind.value}|{self.tool_name}|{detail}"
