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

"""Derived, read-only lookup tables over one index generation."""

from __future__ import annotations

from collections import defaultdict
from types import MappingProxyType
from typing import Iterable, Mapping

from mcp_workspace_server.models import CallSite, MemberDeclaration, TypeDeclaration


def simple_name(name: str) -> str:
    """``Ns.Outer.IThing<T>`` -> ``IThing``."""
    name = name.split("<", 1)[0].split("[", 1)[0].strip()
    return name.rsplit(".", 1)[-1].rstrip("?").strip()


class SymbolIndex:
    """Name-keyed lookups for types, members and call sites.

    Built in one pass from the analyzed declarations and never mutated
    afterwards: every table is exposed as a read-only mapping of tuples.
    """

    def __init__(
        self,
        types: Iterable[TypeDeclaration],
        members: Iterable[MemberDeclaration],
        call_sites: Iterable[CallSite],
    ):
        by_qualified: dict[str, str] = {}
        by_simple: dict[str, list[str]] = defaultdict(list)
        file_of: dict[str, str] = {}
        calls_by_callee: dict[str, list[CallSite]] = defaultdict(list)
        calls_by_caller: dict[str, list[CallSite]] = defaultdict(list)
        types_by_base: dict[str, list[str]] = defaultdict(list)

        for decl in types:
            # First found wins for duplicate qualified names (partial types)
            by_qualified.setdefault(decl.qualified_name, decl.id)
            by_simple[decl.name].append(decl.id)
            file_of[decl.id] = decl.file_path
            for base in decl.bases:
                types_by_base[simple_name(base)].append(decl.id)

        for member in members:
            qualified = f"{member.owner_name}.{member.name}"
            by_qualified.setdefault(qualified, member.id)
            by_simple[member.name].append(member.id)
            file_of[member.id] = member.file_path

        for site in call_sites:
            calls_by_callee[site.callee_name].append(site)
            calls_by_caller[site.caller_id].append(site)

        self.by_qualified: Mapping[str, str] = MappingProxyType(by_qualified)
        self.by_simple: Mapping[str, tuple[str, ...]] = _freeze(by_simple)
        self.file_of: Mapping[str, str] = MappingProxyType(file_of)
        self.calls_by_callee: Mapping[str, tuple[CallSite, ...]] = _freeze(calls_by_callee)
        self.calls_by_caller: Mapping[str, tuple[CallSite, ...]] = _freeze(calls_by_caller)
        self.types_by_base: Mapping[str, tuple[str, ...]] = _freeze(types_by_base)

    def lookup(self, name: str) -> tuple[str, ...]:
        """All declaration ids for a qualified or simple name (never picks one)."""
        if name in self.by_qualified and "." in name:
            return (self.by_qualified[name],)
        return self.by_simple.get(name, ())

    def call_sites_for(self, callee_name: str) -> tuple[CallSite, ...]:
        return self.calls_by_callee.get(callee_name, ())


def _freeze(table: dict[str, list]) -> Mapping[str, tuple]:
    return MappingProxyType({key: tuple(values) for key, values in table.items()})
