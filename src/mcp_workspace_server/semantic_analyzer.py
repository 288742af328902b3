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

"""Usage, call-graph, implementation and criteria queries over one index snapshot.

All matching is by simple name as written in source. Nothing is resolved
through overloads, namespaces or imports; when a name maps to several
declarations, every one of them is returned.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from mcp_workspace_server.errors import InvalidArgumentsError, SymbolNotFoundError
from mcp_workspace_server.models import (
    CallSite,
    MemberDeclaration,
    MemberKind,
    TypeDeclaration,
    WorkspaceIndex,
)
from mcp_workspace_server.symbol_index import simple_name

_WORD = re.compile(r"\b[A-Za-z_]\w*\b")


@dataclass
class CallGraph:
    methods: list[MemberDeclaration]
    callers: list[CallSite] = field(default_factory=list)
    callees: list[str] = field(default_factory=list)


# Supported semantic_query predicates and the value type each expects.
CRITERIA: dict[str, type] = {
    "isAsync": bool,
    "isStatic": bool,
    "isVirtual": bool,
    "isAbstract": bool,
    "isOverride": bool,
    "hasDocumentation": bool,
    "returnType": str,
    "returnTypeEquals": str,
    "namePattern": str,
    "memberKind": str,
    "accessModifier": str,
    "typeName": str,
}


def _has_modifier(name: str):
    return lambda member, value: (name in member.modifiers) == value


def _name_matches(member: MemberDeclaration, pattern: str) -> bool:
    try:
        return re.search(pattern, member.name, re.IGNORECASE) is not None
    except re.error as e:
        raise InvalidArgumentsError(f"Invalid namePattern: {e}") from e


_PREDICATES = {
    "isAsync": _has_modifier("async"),
    "isStatic": _has_modifier("static"),
    "isVirtual": _has_modifier("virtual"),
    "isAbstract": _has_modifier("abstract"),
    "isOverride": _has_modifier("override"),
    "hasDocumentation": lambda m, v: bool(m.documentation) == v,
    "returnType": lambda m, v: m.return_type.replace(" ", "") == v.replace(" ", ""),
    "returnTypeEquals": lambda m, v: m.return_type.replace(" ", "") == v.replace(" ", ""),
    "namePattern": _name_matches,
    "memberKind": lambda m, v: m.kind.value == v.lower(),
    "accessModifier": lambda m, v: m.access == v.lower(),
    "typeName": lambda m, v: m.owner_name == v,
}


class SemanticAnalyzer:
    """Read-only queries against one published WorkspaceIndex."""

    def __init__(self, index: WorkspaceIndex):
        self.index = index
        self.symbols = index.symbols
        self._type_names = frozenset(t.name for t in index.types.values())
        self._references: dict[str, set[str]] = {}

    def find_usages(self, symbol_name: str) -> list[CallSite]:
        """Every call site whose written callee equals *symbol_name*."""
        return list(self.symbols.call_sites_for(symbol_name))

    def find_methods(self, method_name: str, type_name: str | None = None) -> list[MemberDeclaration]:
        """Methods and constructors named *method_name*, optionally owned by *type_name*.

        *type_name* may be simple (``Foo``) or qualified (``Ns.Foo``).
        """
        found = []
        for member_id in self.symbols.by_simple.get(method_name, ()):
            member = self.index.members.get(member_id)
            if member is None or member.kind not in (MemberKind.METHOD, MemberKind.CONSTRUCTOR):
                continue
            if type_name is not None and not self._owned_by(member, type_name):
                continue
            found.append(member)
        return found

    def _owned_by(self, member: MemberDeclaration, type_name: str) -> bool:
        if member.owner_name == type_name:
            return True
        owner = self.index.types.get(member.owner_id)
        return owner is not None and owner.qualified_name == type_name

    def get_call_graph(self, type_name: str, method_name: str) -> CallGraph:
        """Callers and callees of ``type_name.method_name`` (all overloads).

        Callers are usages of the simple method name outside the method
        itself; callees are the distinct names the method calls, in order
        of first appearance.
        """
        methods = self._require_methods(method_name, type_name)
        own_ids = {m.id for m in methods}

        callers = [site for site in self.find_usages(method_name) if site.caller_id not in own_ids]
        callees: list[str] = []
        seen: set[str] = set()
        for method in methods:
            for site in self.symbols.calls_by_caller.get(method.id, ()):
                if site.callee_name not in seen:
                    seen.add(site.callee_name)
                    callees.append(site.callee_name)
        return CallGraph(methods=methods, callers=callers, callees=callees)

    def get_callers(self, method_name: str, type_name: str | None = None) -> tuple[list[CallSite], dict[str, list[str]]]:
        """Call sites of the method plus, per calling member, who calls that member.

        The second element maps ``Type.member`` of each caller to the
        distinct callers of that member's name (one level upstream).
        """
        methods = self._require_methods(method_name, type_name)
        own_ids = {m.id for m in methods}
        callers = [site for site in self.find_usages(method_name) if site.caller_id not in own_ids]
        upstream: dict[str, list[str]] = {}
        for site in callers:
            if site.caller_name in upstream:
                continue
            member_name = site.caller_name.rsplit(".", 1)[-1]
            names = sorted({
                s.caller_name for s in self.find_usages(member_name) if s.caller_id != site.caller_id
            })
            if names:
                upstream[site.caller_name] = names
        return callers, upstream

    def get_callees(self, method_name: str, type_name: str | None = None) -> tuple[list[CallSite], dict[str, list[str]]]:
        """Call sites inside the method plus, per callee defined in the workspace, what it calls."""
        methods = self._require_methods(method_name, type_name)
        sites = [site for m in methods for site in self.symbols.calls_by_caller.get(m.id, ())]
        downstream: dict[str, list[str]] = {}
        for site in sites:
            if site.callee_name in downstream:
                continue
            names: list[str] = []
            for callee in self.find_methods(site.callee_name):
                for inner in self.symbols.calls_by_caller.get(callee.id, ()):
                    if inner.callee_name not in names:
                        names.append(inner.callee_name)
            if names:
                downstream[site.callee_name] = names
        return sites, downstream

    def _require_methods(self, method_name: str, type_name: str | None) -> list[MemberDeclaration]:
        methods = self.find_methods(method_name, type_name)
        if not methods:
            where = f"{type_name}.{method_name}" if type_name else method_name
            raise SymbolNotFoundError(f"Method '{where}' not found")
        return methods

    def get_type_hierarchy(self, type_name: str | None = None) -> list[dict]:
        """Base lists and direct subtypes, for every type or for one type's family.

        With *type_name*, the result covers that type, its ancestors that
        are declared in the workspace, and all of its descendants.
        """
        if type_name is None:
            decls = sorted(self.index.types.values(), key=lambda t: (t.qualified_name, t.file_path))
        else:
            roots = [self.index.types[tid] for tid in self.symbols.lookup(type_name) if tid in self.index.types]
            if not roots:
                raise SymbolNotFoundError(f"Type '{type_name}' not found")
            family: dict[str, TypeDeclaration] = {}
            pending = list(roots)
            while pending:  # ancestors
                decl = pending.pop()
                if decl.id in family:
                    continue
                family[decl.id] = decl
                for base in decl.bases:
                    pending.extend(self.index.types[tid] for tid in self.symbols.by_simple.get(simple_name(base), ())
                                   if tid in self.index.types)
            pending = list(roots)
            seen = {d.id for d in roots}
            while pending:  # descendants
                decl = pending.pop()
                for tid in self.symbols.types_by_base.get(decl.name, ()):
                    if tid not in seen:
                        seen.add(tid)
                        family[tid] = self.index.types[tid]
                        pending.append(self.index.types[tid])
            decls = sorted(family.values(), key=lambda t: (t.qualified_name, t.file_path))

        return [
            {
                "name": decl.name,
                "qualifiedName": decl.qualified_name,
                "kind": decl.kind.value,
                "file": decl.file_path,
                "bases": list(decl.bases),
                "derived": sorted({self.index.types[tid].name for tid in self.symbols.types_by_base.get(decl.name, ())}),
            }
            for decl in decls
        ]

    def get_dependencies(self, type_name: str) -> dict:
        """What a type uses and which types use it.

        *Uses* are its base types plus every other workspace type whose
        name appears as a word in the type's source lines; *imports* are
        the using/import directives of its file. *Used by* is the reverse
        relation over all types.
        """
        decls = [self.index.types[tid] for tid in self.symbols.lookup(type_name) if tid in self.index.types]
        if not decls:
            raise SymbolNotFoundError(f"Type '{type_name}' not found")
        targets = {d.name for d in decls}
        uses: set[str] = set()
        imports: list[str] = []
        for decl in decls:
            uses.update(simple_name(b) for b in decl.bases)
            uses.update(self._referenced_types(decl))
            for item in self.index.imports.get(decl.file_path, ()):
                if item not in imports:
                    imports.append(item)
        uses -= targets

        used_by = sorted({
            other.name
            for other in self.index.types.values()
            if other.name not in targets
            and (targets & {simple_name(b) for b in other.bases} or targets & self._referenced_types(other))
        })
        return {
            "type": type_name,
            "definitions": [f"{d.file_path}:{d.line_range.start}" for d in decls],
            "uses": sorted(uses),
            "imports": imports,
            "usedBy": used_by,
        }

    def _referenced_types(self, decl: TypeDeclaration) -> set[str]:
        cache = self._references
        if decl.id not in cache:
            source = self.index.files.get(decl.file_path)
            words: set[str] = set()
            if source is not None:
                lines = source.lines[decl.line_range.start - 1:decl.line_range.end]
                words = set(_WORD.findall("\n".join(lines)))
            cache[decl.id] = {w for w in words if w in self._type_names} - {decl.name}
        return cache[decl.id]

    def find_implementations(self, interface_or_base_name: str) -> list[TypeDeclaration]:
        """Types whose declared base list names *interface_or_base_name* (direct only)."""
        target = simple_name(interface_or_base_name)
        return [self.index.types[type_id] for type_id in self.symbols.types_by_base.get(target, ())]

    def semantic_query(self, criteria: dict) -> list[MemberDeclaration]:
        """Members satisfying every supplied predicate; absent predicates do not constrain."""
        checks = []
        for key, value in criteria.items():
            if value is None:
                continue
            expected = CRITERIA.get(key)
            if expected is None:
                raise InvalidArgumentsError(
                    f"Unknown criterion '{key}'. Supported: {', '.join(sorted(CRITERIA))}"
                )
            if not isinstance(value, expected):
                raise InvalidArgumentsError(f"Criterion '{key}' must be a {expected.__name__}")
            if key == "memberKind" and value.lower() not in {k.value for k in MemberKind}:
                raise InvalidArgumentsError(
                    f"memberKind must be one of {', '.join(k.value for k in MemberKind)}"
                )
            checks.append((_PREDICATES[key], value))

        members = sorted(self.index.members.values(), key=lambda m: (m.file_path, m.line_range.start))
        return [m for m in members if all(check(m, value) for check, value in checks)]
