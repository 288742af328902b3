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

"""Workspace query API.

``create_workspace_query_functions`` returns a dict of query functions bound
to one WorkspaceIndex snapshot, so every call made through it sees a single
generation. All functions return plain dicts/lists/strings and raise
ToolError subclasses for bad input.
"""

from __future__ import annotations

import fnmatch
import os
import re
from collections import Counter
from typing import Callable

from mcp_workspace_server.errors import (
    NOT_FOUND,
    InvalidArgumentsError,
    LineRangeError,
    SymbolNotFoundError,
    ToolError,
    TypeNotFoundError,
)
from mcp_workspace_server.models import (
    CallSite,
    MemberDeclaration,
    SourceFile,
    TypeDeclaration,
    WorkspaceIndex,
    split_lines,
)
from mcp_workspace_server.semantic_analyzer import SemanticAnalyzer
from mcp_workspace_server.workspace_indexer import index_stats

# Keyword expansion for get_context_for_task: a concept is added when any of
# its trigger words appears in the task text.
CONCEPTS: dict[str, tuple[str, ...]] = {
    "mcp": ("mcp", "tool", "server", "protocol"),
    "ui": ("ui", "view", "window", "xaml", "button", "dialog", "form"),
    "data": ("model", "data", "entity", "dto", "database", "repository"),
    "service": ("service", "api", "endpoint", "handler"),
    "analysis": ("analyze", "parse", "process", "scan"),
    "file": ("file", "read", "write", "load", "save", "io"),
    "search": ("search", "find", "query", "filter", "match"),
    "dependency": ("dependency", "reference", "import", "using"),
    "type": ("type", "class", "interface", "struct", "enum"),
    "method": ("method", "function", "call", "invoke"),
    "config": ("config", "setting", "option", "preference"),
    "test": ("test", "unit", "spec", "mock", "assert"),
    "error": ("error", "exception", "catch", "try", "handle"),
    "async": ("async", "await", "task", "thread", "parallel"),
    "json": ("json", "serialize", "deserialize", "parse"),
    "index": ("index", "generate", "build", "create"),
}

FILE_NAME_SCORE = 10
TYPE_NAME_SCORE = 8
MEMBER_NAME_SCORE = 3

_IDENTIFIER_RE = re.compile(r"\b([A-Z][a-zA-Z0-9]*|[a-z][a-zA-Z0-9]*[A-Z][a-zA-Z0-9]*)\b")
_QUOTED_RE = re.compile(r"[\"']([^\"']+)[\"']")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def member_to_dict(member: MemberDeclaration, include_body: bool = False) -> dict:
    data = {
        "name": member.name,
        "kind": member.kind.value,
        "type": member.owner_name,
        "signature": member.signature,
        "returnType": member.return_type,
        "parameters": [{"name": p.name, "type": p.type} for p in member.parameters],
        "modifiers": sorted(member.modifiers),
        "access": member.access,
        "file": member.file_path,
        "lines": [member.line_range.start, member.line_range.end],
    }
    if member.documentation:
        data["documentation"] = member.documentation
    if include_body:
        data["body"] = member.body
    return data


def type_to_dict(decl: TypeDeclaration, index: WorkspaceIndex | None = None) -> dict:
    data = {
        "name": decl.name,
        "qualifiedName": decl.qualified_name,
        "kind": decl.kind.value,
        "file": decl.file_path,
        "lines": [decl.line_range.start, decl.line_range.end],
        "bases": list(decl.bases),
        "modifiers": sorted(decl.modifiers),
        "access": decl.access,
    }
    if decl.documentation:
        data["documentation"] = decl.documentation
    if index is not None:
        data["members"] = [
            member_to_dict(index.members[mid]) for mid in decl.member_ids if mid in index.members
        ]
    return data


def call_site_to_dict(site: CallSite) -> dict:
    data = {
        "caller": site.caller_name,
        "callee": site.callee_name,
        "file": site.file_path,
        "line": site.line,
    }
    if site.receiver:
        data["receiver"] = site.receiver
    return data


def _read_current(source: SourceFile) -> str:
    try:
        with open(source.path, "r", encoding="utf-8", errors="replace", newline="") as f:
            return f.read()
    except FileNotFoundError:
        raise ToolError(f"File '{source.relative_path}' no longer exists on disk", code=NOT_FOUND) from None


def extract_keywords(task: str) -> list[str]:
    """Concept names, identifiers (PascalCase/camelCase, >2 chars) and quoted terms."""
    text = task.lower()
    keywords: list[str] = [
        concept for concept, triggers in CONCEPTS.items() if any(t in text for t in triggers)
    ]
    keywords += [m for m in _IDENTIFIER_RE.findall(task) if len(m) > 2]
    keywords += _QUOTED_RE.findall(task)
    return list(dict.fromkeys(k for k in keywords if k.strip()))


# ---------------------------------------------------------------------------
# Query functions
# ---------------------------------------------------------------------------


def create_workspace_query_functions(index: WorkspaceIndex) -> dict[str, Callable]:
    """Create query functions bound to one workspace index snapshot."""
    analyzer = SemanticAnalyzer(index)

    def _file(path: str) -> SourceFile:
        if not path:
            raise InvalidArgumentsError("path is required")
        source = index.resolve_file(path)
        if source is None:
            raise ToolError(f"File '{path}' not found in index", code=NOT_FOUND)
        return source

    def get_project_overview() -> dict:
        """Workspace name, roots, counts, language breakdown and external repositories."""
        languages = Counter(f.language or "other" for f in index.files.values())
        kinds = Counter(t.kind.value for t in index.types.values())
        overview = index_stats(index)
        overview.update({
            "roots": dict(index.root_labels),
            "languages": dict(sorted(languages.items())),
            "typeKinds": dict(sorted(kinds.items())),
            "externalRepositories": list(index.repositories),
        })
        if index.warnings:
            overview["analysisWarnings"] = [
                {"file": w.path, "message": w.message} for w in index.warnings[:20]
            ]
        return overview

    def list_files(pattern: str | None = None, max_results: int = 0) -> list[str]:
        """List indexed files, optional glob filter (using fnmatch)."""
        paths = sorted(index.files.keys())
        if pattern:
            paths = [p for p in paths if fnmatch.fnmatch(p, pattern) or fnmatch.fnmatch(os.path.basename(p), pattern)]
        if max_results > 0:
            paths = paths[:max_results]
        return paths

    def get_file(path: str) -> str:
        """Current text of an indexed file, read from disk."""
        return _read_current(_file(path))

    def get_lines(path: str, start: int, end: int) -> str:
        """Lines from a file on disk (1-indexed, inclusive; end is clamped)."""
        lines = split_lines(_read_current(_file(path)))
        if start < 1:
            raise LineRangeError("startLine must be >= 1")
        end = min(end, len(lines))
        if start > end:
            raise LineRangeError(f"startLine ({start}) > endLine ({end})")
        width = len(str(end))
        return "\n".join(f"{n:>{width}}: {lines[n - 1]}" for n in range(start, end + 1))

    def get_type(type_name: str) -> list[dict]:
        """Every type with that simple or qualified name, with its members."""
        decls = [index.types[tid] for tid in index.symbols.lookup(type_name) if tid in index.types]
        if not decls:
            raise TypeNotFoundError(f"Type '{type_name}' not found")
        return [type_to_dict(d, index) for d in decls]

    def get_method_body(method_name: str, type_name: str | None = None) -> dict:
        """Source of one method; ambiguous names without a type are an error."""
        methods = analyzer.find_methods(method_name, type_name)
        if not methods:
            where = f"{type_name}.{method_name}" if type_name else method_name
            raise SymbolNotFoundError(f"Method '{where}' not found")
        if len(methods) > 1 and type_name is None:
            candidates = ", ".join(f"{m.owner_name}.{m.name} ({m.file_path}:{m.line_range.start})" for m in methods)
            raise ToolError(f"Method name '{method_name}' is ambiguous; pass typeName. Candidates: {candidates}")
        return {
            "matches": [member_to_dict(m, include_body=True) for m in methods],
        }

    def search_content(
        pattern: str,
        is_regex: bool = True,
        case_sensitive: bool = False,
        context_lines: int = 2,
        max_results: int = 50,
    ) -> dict:
        """Line matches with surrounding context across all indexed files."""
        if not pattern:
            raise InvalidArgumentsError("pattern is required")
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            regex = re.compile(pattern if is_regex else re.escape(pattern), flags)
        except re.error as e:
            raise InvalidArgumentsError(f"Invalid regex pattern: {e}") from e

        matches = []
        for path in sorted(index.files):
            lines = index.files[path].lines
            for i, line in enumerate(lines):
                m = regex.search(line)
                if m is None:
                    continue
                matches.append({
                    "file": path,
                    "line": i + 1,
                    "text": line,
                    "match": m.group(0),
                    "before": lines[max(0, i - context_lines):i],
                    "after": lines[i + 1:i + 1 + context_lines],
                })
                if max_results > 0 and len(matches) >= max_results:
                    return {"matches": matches, "truncated": True, "filesSearched": len(index.files)}
        return {"matches": matches, "truncated": False, "filesSearched": len(index.files)}

    def get_context_for_task(task: str, max_files: int = 10, max_tokens: int = 50000) -> dict:
        """Rank files by keyword relevance and pick them greedily under a token budget."""
        if not task or not task.strip():
            raise InvalidArgumentsError("task is required")
        keywords = extract_keywords(task)
        lowered = [k.lower() for k in keywords]

        types_by_file: dict[str, list[TypeDeclaration]] = {}
        for decl in index.types.values():
            types_by_file.setdefault(decl.file_path, []).append(decl)

        scored = []
        for path, source in index.files.items():
            score = 0
            reasons = []
            file_name = os.path.basename(path).lower()
            for kw, kw_lower in zip(keywords, lowered):
                if kw_lower in file_name:
                    score += FILE_NAME_SCORE
                    reasons.append(f"file name matches '{kw}'")
            for decl in types_by_file.get(path, []):
                type_lower = decl.name.lower()
                for kw, kw_lower in zip(keywords, lowered):
                    if kw_lower in type_lower:
                        score += TYPE_NAME_SCORE
                        reasons.append(f"type '{decl.name}' matches '{kw}'")
                for mid in decl.member_ids:
                    member = index.members.get(mid)
                    if member is None:
                        continue
                    member_lower = member.name.lower()
                    score += MEMBER_NAME_SCORE * sum(1 for kw_lower in lowered if kw_lower in member_lower)
            if score > 0:
                scored.append((score, path, source, reasons))

        scored.sort(key=lambda item: (-item[0], item[1]))
        selected = []
        total_tokens = 0
        for score, path, source, reasons in scored:
            if len(selected) >= max_files:
                break
            tokens = source.estimated_tokens
            if selected and total_tokens + tokens > max_tokens:
                continue  # too large once something is selected
            selected.append({
                "file": path,
                "score": score,
                "estimatedTokens": tokens,
                "reasons": reasons[:5],
                "types": [d.name for d in types_by_file.get(path, [])],
            })
            total_tokens += tokens

        return {
            "task": task,
            "keywords": keywords,
            "files": selected,
            "totalTokens": total_tokens,
            "candidates": len(scored),
        }

    def find_usages(symbol_name: str) -> dict:
        sites = analyzer.find_usages(symbol_name)
        return {"symbol": symbol_name, "count": len(sites), "usages": [call_site_to_dict(s) for s in sites]}

    def get_call_graph(type_name: str, method_name: str) -> dict:
        graph = analyzer.get_call_graph(type_name, method_name)
        return {
            "method": f"{type_name}.{method_name}",
            "definitions": [f"{m.file_path}:{m.line_range.start}" for m in graph.methods],
            "callers": [call_site_to_dict(s) for s in graph.callers],
            "callees": graph.callees,
        }

    def get_callers(method_name: str, type_name: str | None = None) -> dict:
        callers, upstream = analyzer.get_callers(method_name, type_name)
        return {
            "method": f"{type_name}.{method_name}" if type_name else method_name,
            "count": len(callers),
            "callers": [call_site_to_dict(s) for s in callers],
            "upstream": upstream,
        }

    def get_callees(method_name: str, type_name: str | None = None) -> dict:
        sites, downstream = analyzer.get_callees(method_name, type_name)
        return {
            "method": f"{type_name}.{method_name}" if type_name else method_name,
            "count": len(sites),
            "callees": [call_site_to_dict(s) for s in sites],
            "downstream": downstream,
        }

    def get_type_hierarchy(type_name: str | None = None) -> dict:
        types = analyzer.get_type_hierarchy(type_name)
        return {"root": type_name, "count": len(types), "types": types}

    def get_dependencies(type_name: str) -> dict:
        return analyzer.get_dependencies(type_name)

    def find_implementations(interface_name: str) -> dict:
        types = analyzer.find_implementations(interface_name)
        return {"name": interface_name, "implementations": [type_to_dict(t) for t in types]}

    def semantic_query(criteria: dict, max_results: int = 100) -> dict:
        members = analyzer.semantic_query(criteria)
        limited = members[:max_results] if max_results > 0 else members
        return {
            "criteria": criteria,
            "totalMatches": len(members),
            "matches": [member_to_dict(m) for m in limited],
        }

    return {
        "get_project_overview": get_project_overview,
        "list_files": list_files,
        "get_file": get_file,
        "get_lines": get_lines,
        "get_type": get_type,
        "get_method_body": get_method_body,
        "search_content": search_content,
        "get_context_for_task": get_context_for_task,
        "find_usages": find_usages,
        "get_call_graph": get_call_graph,
        "get_callers": get_callers,
        "get_callees": get_callees,
        "find_implementations": find_implementations,
        "get_type_hierarchy": get_type_hierarchy,
        "get_dependencies": get_dependencies,
        "semantic_query": semantic_query,
    }
