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

"""AST-based Python analyzer.

Maps Python constructs onto the workspace declaration model:

- classes become types (Protocol subclasses are interfaces, Enum subclasses enums)
- ``__init__`` is the constructor, ``@property`` functions are properties,
  annotated or assigned class attributes are fields
- module-level functions are members of a synthetic static type named
  after the module, so every member has an owner
- names with a leading underscore (other than dunders) are private
"""

import ast
import logging
import posixpath

from mcp_workspace_server.models import (
    CallSite,
    FileAnalysis,
    LineRange,
    MemberDeclaration,
    MemberKind,
    Parameter,
    TypeDeclaration,
    TypeKind,
    split_lines,
)

logger = logging.getLogger(__name__)

_INTERFACE_BASES = {"Protocol", "typing.Protocol"}
_ENUM_BASES = {"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag", "enum.Enum", "enum.IntEnum"}
_ABSTRACT_BASES = {"ABC", "abc.ABC"}


def _dotted_name(node: ast.expr) -> str:
    """Extract a readable dotted name from a Name/Attribute/Subscript/Call node."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        parts = []
        current: ast.expr = node
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if isinstance(current, ast.Name):
            parts.append(current.id)
        return ".".join(reversed(parts))
    if isinstance(node, ast.Subscript):
        # e.g., Generic[T]
        return _dotted_name(node.value)
    if isinstance(node, ast.Call):
        return _dotted_name(node.func)
    return ast.unparse(node)


def _access(name: str) -> str:
    if name.startswith("__") and name.endswith("__"):
        return "public"
    return "private" if name.startswith("_") else "public"


def _start_line(node: ast.AST) -> int:
    decorators = getattr(node, "decorator_list", None)
    if decorators:
        return min(d.lineno for d in decorators)
    return node.lineno


def _parameters(node: ast.FunctionDef | ast.AsyncFunctionDef, is_method: bool) -> tuple[Parameter, ...]:
    params: list[Parameter] = []
    positional = node.args.posonlyargs + node.args.args
    for idx, arg in enumerate(positional):
        if is_method and idx == 0 and arg.arg in ("self", "cls"):
            continue
        params.append(Parameter(arg.arg, ast.unparse(arg.annotation) if arg.annotation else ""))
    if node.args.vararg:
        arg = node.args.vararg
        params.append(Parameter(f"*{arg.arg}", ast.unparse(arg.annotation) if arg.annotation else ""))
    for arg in node.args.kwonlyargs:
        params.append(Parameter(arg.arg, ast.unparse(arg.annotation) if arg.annotation else ""))
    if node.args.kwarg:
        arg = node.args.kwarg
        params.append(Parameter(f"**{arg.arg}", ast.unparse(arg.annotation) if arg.annotation else ""))
    return tuple(params)


class _Builder:
    """Collects declarations while walking one module."""

    def __init__(self, source: str, source_name: str):
        self.lines = split_lines(source)
        self.source_name = source_name
        self.analysis = FileAnalysis(source_name=source_name, language="python")

    def _text(self, start: int, end: int) -> str:
        return "\n".join(self.lines[start - 1:end])

    def _calls(self, node: ast.AST, member: MemberDeclaration) -> None:
        caller_name = f"{member.owner_name}.{member.name}"
        for child in ast.walk(node):
            if not isinstance(child, ast.Call):
                continue
            func = child.func
            if isinstance(func, ast.Name):
                callee, receiver = func.id, ""
            elif isinstance(func, ast.Attribute):
                callee, receiver = func.attr, _dotted_name(func.value)
            else:
                continue
            self.analysis.call_sites.append(CallSite(
                caller_id=member.id,
                caller_name=caller_name,
                callee_name=callee,
                file_path=self.source_name,
                line=child.lineno,
                receiver=receiver,
            ))

    def function(self, node, owner_id: str, owner_name: str, is_method: bool,
                 module_level: bool = False) -> MemberDeclaration:
        decorators = {_dotted_name(d).rsplit(".", 1)[-1] for d in node.decorator_list}
        modifiers: set[str] = set()
        if isinstance(node, ast.AsyncFunctionDef):
            modifiers.add("async")
        if module_level or decorators & {"staticmethod", "classmethod"}:
            modifiers.add("static")
        if "abstractmethod" in decorators:
            modifiers.add("abstract")
        if "override" in decorators:
            modifiers.add("override")

        if "property" in decorators or "cached_property" in decorators:
            kind = MemberKind.PROPERTY
        elif is_method and node.name == "__init__":
            kind = MemberKind.CONSTRUCTOR
        else:
            kind = MemberKind.METHOD
        if is_method and kind is MemberKind.METHOD and "static" not in modifiers and "abstract" not in modifiers:
            # Python methods are overridable unless marked otherwise
            modifiers.add("virtual")

        start = _start_line(node)
        end = node.end_lineno or node.lineno
        member = MemberDeclaration(
            id=f"{owner_id}.{node.name}@{start}",
            name=node.name,
            kind=kind,
            owner_id=owner_id,
            owner_name=owner_name,
            file_path=self.source_name,
            line_range=LineRange(start, end),
            parameters=_parameters(node, is_method),
            return_type=ast.unparse(node.returns) if node.returns else "",
            modifiers=frozenset(modifiers),
            access=_access(node.name),
            body=self._text(start, end) if kind is not MemberKind.PROPERTY else "",
            documentation=ast.get_docstring(node),
        )
        self._calls(node, member)
        return member

    def field(self, target: ast.expr, annotation, stmt: ast.stmt, owner_id: str, owner_name: str):
        if not isinstance(target, ast.Name):
            return None
        return MemberDeclaration(
            id=f"{owner_id}.{target.id}@{stmt.lineno}",
            name=target.id,
            kind=MemberKind.FIELD,
            owner_id=owner_id,
            owner_name=owner_name,
            file_path=self.source_name,
            line_range=LineRange(stmt.lineno, stmt.end_lineno or stmt.lineno),
            return_type=ast.unparse(annotation) if annotation is not None else "",
            modifiers=frozenset({"static"}) if annotation is None else frozenset(),
            access=_access(target.id),
        )

    def klass(self, node: ast.ClassDef, prefix: str) -> None:
        qualified = f"{prefix}.{node.name}" if prefix else node.name
        type_id = f"{self.source_name}::{qualified}"
        bases = tuple(_dotted_name(b) for b in node.bases)
        decorators = {_dotted_name(d).rsplit(".", 1)[-1] for d in node.decorator_list}

        if set(bases) & _INTERFACE_BASES:
            kind = TypeKind.INTERFACE
        elif set(bases) & _ENUM_BASES:
            kind = TypeKind.ENUM
        else:
            kind = TypeKind.CLASS

        members: list[MemberDeclaration] = []
        for child in node.body:
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                members.append(self.function(child, type_id, node.name, is_method=True))
            elif isinstance(child, ast.AnnAssign):
                member = self.field(child.target, child.annotation, child, type_id, node.name)
                if member:
                    members.append(member)
            elif isinstance(child, ast.Assign):
                for target in child.targets:
                    member = self.field(target, None, child, type_id, node.name)
                    if member:
                        members.append(member)
            elif isinstance(child, ast.ClassDef):
                self.klass(child, qualified)

        modifiers: set[str] = set()
        if set(bases) & _ABSTRACT_BASES or any("abstract" in m.modifiers for m in members):
            modifiers.add("abstract")
        if "dataclass" in decorators:
            modifiers.add("dataclass")

        self.analysis.members.extend(members)
        self.analysis.types.append(TypeDeclaration(
            id=type_id,
            name=node.name,
            qualified_name=qualified,
            kind=kind,
            file_path=self.source_name,
            line_range=LineRange(_start_line(node), node.end_lineno or node.lineno),
            bases=bases,
            modifiers=frozenset(modifiers),
            access=_access(node.name),
            documentation=ast.get_docstring(node),
            member_ids=tuple(m.id for m in members),
        ))

    def module_functions(self, tree: ast.Module) -> None:
        functions = [n for n in tree.body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))]
        if not functions:
            return
        module_name = posixpath.splitext(posixpath.basename(self.source_name.replace("\\", "/")))[0]
        type_id = f"{self.source_name}::{module_name}"
        members = [self.function(n, type_id, module_name, is_method=False, module_level=True) for n in functions]
        self.analysis.members.extend(members)
        self.analysis.types.append(TypeDeclaration(
            id=type_id,
            name=module_name,
            qualified_name=module_name,
            kind=TypeKind.CLASS,
            file_path=self.source_name,
            line_range=LineRange(1, max(len(self.lines), 1)),
            modifiers=frozenset({"static", "module"}),
            access="public",
            documentation=ast.get_docstring(tree),
            member_ids=tuple(m.id for m in members),
        ))


def _imports(tree: ast.Module) -> list[str]:
    modules: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            modules.append("." * node.level + (node.module or ""))
    return modules


def analyze_python(source: str, source_name: str = "<source>") -> FileAnalysis:
    """Parse Python source code and extract types, members and call sites.

    Raises SyntaxError when the source does not parse; the indexer records
    that as a per-file warning.
    """
    tree = ast.parse(source, filename=source_name)
    builder = _Builder(source, source_name)
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            builder.klass(node, "")
    builder.module_functions(tree)
    builder.analysis.imports = _imports(tree)
    logger.debug(
        "Analyzed %s: %d types, %d members",
        source_name, len(builder.analysis.types), len(builder.analysis.members),
    )
    return builder.analysis
