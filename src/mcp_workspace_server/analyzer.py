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

"""Dispatch layer that selects the source analyzer by file extension."""

from __future__ import annotations

from typing import Callable

from mcp_workspace_server.csharp_analyzer import analyze_csharp
from mcp_workspace_server.models import FileAnalysis
from mcp_workspace_server.python_analyzer import analyze_python

Analyzer = Callable[[str, str], FileAnalysis]

_EXTENSION_MAP: dict[str, str] = {
    ".cs": "csharp",
    ".py": "python",
    ".pyw": "python",
}

_ANALYZERS: dict[str, Analyzer] = {
    "csharp": analyze_csharp,
    "python": analyze_python,
}


def register_analyzer(language: str, extensions: list[str], analyzer: Analyzer) -> None:
    """Register *analyzer* for *language* and map *extensions* to it.

    Later registrations win, so a caller can replace a built-in analyzer.
    """
    _ANALYZERS[language] = analyzer
    for ext in extensions:
        _EXTENSION_MAP[ext.lower() if ext.startswith(".") else f".{ext.lower()}"] = language


def language_for(path: str) -> str | None:
    """Language name for *path*, or None when no analyzer handles it."""
    dot_idx = path.rfind(".")
    if dot_idx < 0:
        return None
    return _EXTENSION_MAP.get(path[dot_idx:].lower())


def analyze(text: str, source_name: str, language: str | None = None) -> FileAnalysis | None:
    """Analyze *text* with the analyzer for *language* (detected from the name if omitted).

    Returns None for files no analyzer understands; those files are still
    indexed as plain text. Analyzer errors propagate to the caller.
    """
    if language is None:
        language = language_for(source_name)
    if language is None:
        return None
    analyzer = _ANALYZERS.get(language)
    if analyzer is None:
        return None
    return analyzer(text, source_name)
