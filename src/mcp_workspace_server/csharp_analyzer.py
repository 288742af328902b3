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

"""Regex-based C# analyzer.

This is NOT a C# compiler front end. Comments, string literals and
preprocessor lines are blanked out first (keeping offsets and newlines), so
brace counting and the declaration regexes only ever see code. Types are
found with a declaration regex; members are the top-level statements of a
type body; call sites are ``name(`` occurrences inside member bodies.
"""

from __future__ import annotations

import bisect
import re

from mcp_workspace_server.models import (
    CallSite,
    FileAnalysis,
    LineRange,
    MemberDeclaration,
    MemberKind,
    Parameter,
    TypeDeclaration,
    TypeKind,
)

_ACCESS = ("public", "private", "protected", "internal")

_TYPE_RE = re.compile(
    r"^[ \t]*(?:\[[^\]\n]*\][ \t]*)*"
    r"(?P<mods>(?:(?:public|private|protected|internal|static|abstract|sealed|partial"
    r"|readonly|unsafe|new|file|ref)\s+)*)"
    r"(?P<kind>class|interface|struct|enum|record(?:\s+(?:class|struct))?)\s+"
    r"(?P<name>[A-Za-z_]\w*)",
    re.MULTILINE,
)

_NAMESPACE_RE = re.compile(r"^\s*namespace\s+([\w.]+)", re.MULTILINE)
_USING_RE = re.compile(r"^\s*(?:global\s+)?using\s+(?:static\s+)?([\w.]+)\s*;", re.MULTILINE)

_MODIFIERS = (
    "public|private|protected|internal|static|abstract|virtual|override|sealed|async"
    "|extern|unsafe|new|partial|readonly|const|volatile|required|event"
)
_MODS_PREFIX = rf"(?P<mods>(?:(?:{_MODIFIERS})\s+)*)"

_CTOR_RE = re.compile(
    rf"^{_MODS_PREFIX}(?P<name>[A-Za-z_]\w*)\s*\((?P<params>.*?)\)\s*"
    r"(?::\s*(?:base|this)\s*\(.*\))?$",
    re.DOTALL,
)
_METHOD_RE = re.compile(
    rf"^{_MODS_PREFIX}(?P<ret>[^=(]+?)\s+(?P<name>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*"
    r"(?:<[^()]*>)?\s*\((?P<params>.*)\)\s*(?:where\s.*)?$",
    re.DOTALL,
)
_PROPERTY_RE = re.compile(
    rf"^{_MODS_PREFIX}(?P<ret>.+?)\s+(?P<name>[A-Za-z_]\w*|this\s*\[.*\])$",
    re.DOTALL,
)
_FIELD_RE = re.compile(
    rf"^{_MODS_PREFIX}(?P<ret>.+?)\s+(?P<names>[A-Za-z_]\w*(?:\s*,\s*[A-Za-z_]\w*)*)$",
    re.DOTALL,
)
_ATTRIBUTES_RE = re.compile(r"^(?:\s*\[[^\]]*\])+\s*")

_CALL_RE = re.compile(r"\b(?P<name>[A-Za-z_]\w*)\s*(?:<[\w\s,.<>\[\]?]{0,200}>)?\s*\(")

# How far back from a call to look for its receiver or a preceding keyword
_LOOKBEHIND = 256

_NOT_CALLS = frozenset({
    "if", "for", "foreach", "while", "switch", "catch", "using", "lock", "return",
    "nameof", "typeof", "sizeof", "default", "checked", "unchecked", "fixed",
    "when", "base", "this", "new", "await", "throw", "in", "is", "as", "stackalloc",
    "get", "set", "init", "add", "remove", "var",
})
# Words that may directly precede a call (anything else means a declaration).
_CALL_PREFIX_WORDS = frozenset({
    "return", "await", "else", "throw", "in", "yield", "case", "is", "as", "and",
    "or", "not", "when", "out", "ref",
})


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _mask_non_code(source: str) -> str:
    """Blank comments, strings, char literals and preprocessor lines.

    Every masked character becomes a space except newlines, so offsets and
    line numbers in the result match the original text.
    """
    out = list(source)
    n = len(source)

    def blank(start: int, end: int) -> None:
        for k in range(start, min(end, n)):
            if out[k] != "\n":
                out[k] = " "

    i = 0
    at_line_start = True
    while i < n:
        c = source[i]
        if c == "\n":
            at_line_start = True
            i += 1
            continue
        if c in " \t\r":
            i += 1
            continue
        if c == "#" and at_line_start:
            j = source.find("\n", i)
            j = n if j < 0 else j
            blank(i, j)
            i = j
            continue
        at_line_start = False
        if source.startswith("//", i):
            j = source.find("\n", i)
            j = n if j < 0 else j
            blank(i, j)
            i = j
            continue
        if source.startswith("/*", i):
            j = source.find("*/", i + 2)
            j = n if j < 0 else j + 2
            blank(i, j)
            i = j
            continue
        if c in "@$\"":
            k = i
            verbatim = False
            while k < n and source[k] in "@$":
                verbatim = verbatim or source[k] == "@"
                k += 1
            if k >= n or source[k] != '"':
                i = k if k > i else i + 1
                continue
            if source.startswith('"""', k):
                end = source.find('"""', k + 3)
                j = n if end < 0 else end + 3
            else:
                j = k + 1
                while j < n:
                    ch = source[j]
                    if verbatim:
                        if ch == '"':
                            if j + 1 < n and source[j + 1] == '"':
                                j += 2
                                continue
                            j += 1
                            break
                    else:
                        if ch == "\\":
                            j += 2
                            continue
                        if ch == '"':
                            j += 1
                            break
                        if ch == "\n":
                            break
                    j += 1
            blank(i, j)
            i = j
            continue
        if c == "'":
            j = i + 2 if i + 1 < n and source[i + 1] == "\\" else i + 1
            end = source.find("'", j + 1 if j > i + 1 else j)
            if 0 <= end - i <= 10:
                blank(i, end + 1)
                i = end + 1
                continue
        i += 1
    return "".join(out)


def _line_starts(text: str) -> list[int]:
    starts = [0]
    for idx, ch in enumerate(text):
        if ch == "\n":
            starts.append(idx + 1)
    return starts


def _line_of(starts: list[int], offset: int) -> int:
    """1-based line number of a character offset."""
    return bisect.bisect_right(starts, offset)


def _match_brace(masked: str, open_idx: int) -> int:
    """Offset of the brace closing the one at *open_idx* (last offset if unbalanced)."""
    depth = 0
    for idx in range(open_idx, len(masked)):
        ch = masked[idx]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx
    return len(masked) - 1


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on *sep* outside of <>, (), [] and {} nesting."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch in "<([{":
            depth += 1
        elif ch in ">)]}":
            depth = max(0, depth - 1)
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _parse_modifiers(mods: str) -> tuple[frozenset[str], str | None]:
    words = mods.split()
    access_words = [w for w in words if w in _ACCESS]
    access = " ".join(access_words) if access_words else None
    modifiers = {w for w in words if w not in _ACCESS}
    if "const" in modifiers:
        modifiers.add("static")
    return frozenset(modifiers), access


def _parse_parameters(raw: str) -> tuple[Parameter, ...]:
    params: list[Parameter] = []
    for part in _split_top_level(raw):
        part = _ATTRIBUTES_RE.sub("", part)
        part = part.split("=", 1)[0].strip()
        tokens = [t for t in part.split() if t not in ("this", "ref", "out", "in", "params", "scoped")]
        if not tokens:
            continue
        name = tokens[-1]
        type_text = " ".join(tokens[:-1])
        params.append(Parameter(name=name, type=type_text))
    return tuple(params)


def _documentation(lines: list[str], decl_line: int) -> str | None:
    """Collect the ``///`` comment block directly above a declaration."""
    doc: list[str] = []
    idx = decl_line - 2  # 0-based index of the line above
    while idx >= 0:
        stripped = lines[idx].strip()
        if stripped.startswith("///"):
            doc.append(stripped[3:].strip())
        elif stripped.startswith("[") and not doc:
            pass  # attribute between the comment and the declaration
        else:
            break
        idx -= 1
    if not doc:
        return None
    text = "\n".join(reversed(doc))
    text = re.sub(r"<[^>]+>", "", text)
    return "\n".join(line for line in (l.strip() for l in text.splitlines()) if line) or None


def simple_type_name(written: str) -> str:
    """``Foo.Bar.IBaz<T>`` -> ``IBaz``."""
    name = written.split("<", 1)[0].strip()
    name = name.rsplit(".", 1)[-1]
    return name.rstrip("?").strip()


# ---------------------------------------------------------------------------
# Type detection
# ---------------------------------------------------------------------------


class _TypeSpan:
    __slots__ = ("name", "kind", "mods", "bases", "decl_start", "open", "close", "parent")

    def __init__(self, name, kind, mods, bases, decl_start, open_idx, close_idx):
        self.name = name
        self.kind = kind
        self.mods = mods
        self.bases = bases
        self.decl_start = decl_start
        self.open = open_idx  # -1 for body-less declarations (positional records)
        self.close = close_idx
        self.parent: _TypeSpan | None = None

    def qualified(self) -> str:
        chain = [self.name]
        parent = self.parent
        while parent is not None:
            chain.append(parent.name)
            parent = parent.parent
        return ".".join(reversed(chain))


def _type_kind(raw: str) -> TypeKind:
    if raw == "interface":
        return TypeKind.INTERFACE
    if raw == "enum":
        return TypeKind.ENUM
    if raw == "struct" or raw.endswith("struct"):
        return TypeKind.STRUCT
    return TypeKind.CLASS


def _parse_bases(header: str) -> tuple[str, ...]:
    """Extract the base list from the text between a type name and its body."""
    text = header.strip()
    if text.startswith("<"):
        depth = 0
        for idx, ch in enumerate(text):
            depth += ch == "<"
            depth -= ch == ">"
            if depth == 0:
                text = text[idx + 1:].strip()
                break
    if text.startswith("("):
        depth = 0
        for idx, ch in enumerate(text):
            depth += ch == "("
            depth -= ch == ")"
            if depth == 0:
                text = text[idx + 1:].strip()
                break
    if not text.startswith(":"):
        return ()
    text = re.split(r"\bwhere\b", text[1:], maxsplit=1)[0]
    return tuple(_normalize(b) for b in _split_top_level(text))


def _find_types(masked: str) -> list[_TypeSpan]:
    spans: list[_TypeSpan] = []
    for m in _TYPE_RE.finditer(masked):
        paren = 0
        angle = 0
        term = -1
        for idx in range(m.end(), len(masked)):
            ch = masked[idx]
            if ch == "(":
                paren += 1
            elif ch == ")":
                paren -= 1
            elif ch == "<":
                angle += 1
            elif ch == ">":
                angle -= 1
            elif ch in "{;" and paren <= 0 and angle <= 0:
                term = idx
                break
        if term < 0:
            continue
        header = masked[m.end():term]
        if masked[term] == "{":
            open_idx, close_idx = term, _match_brace(masked, term)
        else:
            open_idx, close_idx = -1, term
        decl_start = m.start() + (len(m.group(0)) - len(m.group(0).lstrip()))
        spans.append(_TypeSpan(
            name=m.group("name"),
            kind=_type_kind(_normalize(m.group("kind"))),
            mods=m.group("mods") or "",
            bases=_parse_bases(header),
            decl_start=decl_start,
            open_idx=open_idx,
            close_idx=close_idx,
        ))

    for span in spans:
        best: _TypeSpan | None = None
        for other in spans:
            if other is span or other.open < 0:
                continue
            if other.open < span.decl_start <= other.close:
                if best is None or other.open > best.open:
                    best = other
        span.parent = best
    return spans


# ---------------------------------------------------------------------------
# Member detection
# ---------------------------------------------------------------------------


def _iter_member_segments(masked: str, span: _TypeSpan, nested_opens: set[int]):
    """Yield (header_start, header_end, body_open, end) for each member statement.

    *body_open* is the offset of the member's ``{`` or ``-1`` for statements
    terminated by ``;``. Nested type bodies are skipped.
    """
    idx = span.open + 1
    seg_start = idx
    paren = 0
    while idx < span.close:
        ch = masked[idx]
        if ch == "(":
            paren += 1
        elif ch == ")":
            paren = max(0, paren - 1)
        elif ch == "{" and paren == 0:
            close = _match_brace(masked, idx)
            header = masked[seg_start:idx]
            if idx in nested_opens:
                # Nested type, handled on its own; drop anything pending.
                idx = close + 1
                seg_start = idx
                continue
            if re.search(r"(?<![=!<>])=(?![=>])", header) or header.rstrip().endswith("=>"):
                # Initializer or lambda body belonging to a longer statement.
                idx = close + 1
                continue
            yield seg_start, idx, idx, close
            idx = close + 1
            seg_start = idx
            continue
        elif ch == ";" and paren == 0:
            yield seg_start, idx, -1, idx
            seg_start = idx + 1
        idx += 1


def _first_code_offset(masked: str, start: int, end: int) -> int:
    idx = start
    while idx < end and masked[idx].isspace():
        idx += 1
    return idx


def analyze_csharp(source: str, source_name: str = "<source>") -> FileAnalysis:
    """Extract types, members and call sites from C# source text."""
    masked = _mask_non_code(source)
    starts = _line_starts(source)
    lines = source.split("\n")

    ns_match = _NAMESPACE_RE.search(masked)
    namespace = ns_match.group(1) if ns_match else ""
    usings = _USING_RE.findall(masked)

    analysis = FileAnalysis(source_name=source_name, language="csharp", namespace=namespace, imports=usings)
    spans = _find_types(masked)
    nested_opens = {s.open for s in spans if s.open >= 0}

    for span in spans:
        qualified = span.qualified()
        if namespace:
            qualified = f"{namespace}.{qualified}"
        type_id = f"{source_name}::{qualified}"
        modifiers, access = _parse_modifiers(span.mods)
        decl_line = _line_of(starts, span.decl_start)
        members: list[MemberDeclaration] = []

        if span.open >= 0:
            if span.kind is TypeKind.ENUM:
                members = _enum_members(masked, span, starts, source_name, type_id)
            else:
                for seg_start, header_end, body_open, end in _iter_member_segments(masked, span, nested_opens - {span.open}):
                    member, calls = _build_member(
                        source, masked, starts, lines, span, source_name, type_id,
                        seg_start, header_end, body_open, end,
                    )
                    if member is not None:
                        members.append(member)
                        analysis.call_sites.extend(calls)

        analysis.types.append(TypeDeclaration(
            id=type_id,
            name=span.name,
            qualified_name=qualified,
            kind=span.kind,
            file_path=source_name,
            line_range=LineRange(decl_line, _line_of(starts, span.close)),
            bases=span.bases,
            modifiers=modifiers,
            access=access or ("private" if span.parent else "internal"),
            documentation=_documentation(lines, decl_line),
            member_ids=tuple(m.id for m in members),
        ))
        analysis.members.extend(members)

    return analysis


def _enum_members(masked, span, starts, source_name, type_id) -> list[MemberDeclaration]:
    members = []
    body = masked[span.open + 1:span.close]
    offset = span.open + 1
    for raw in body.split(","):
        name = _ATTRIBUTES_RE.sub("", raw).split("=", 1)[0].strip()
        if re.fullmatch(r"[A-Za-z_]\w*", name):
            line = _line_of(starts, offset + raw.find(name))
            members.append(MemberDeclaration(
                id=f"{type_id}.{name}@{line}",
                name=name,
                kind=MemberKind.FIELD,
                owner_id=type_id,
                owner_name=span.name,
                file_path=source_name,
                line_range=LineRange(line, line),
                return_type=span.name,
                modifiers=frozenset({"static", "const"}),
                access="public",
            ))
        offset += len(raw) + 1
    return members


def _build_member(source, masked, starts, lines, span, source_name, type_id,
                  seg_start, header_end, body_open, end):
    header_start = _first_code_offset(masked, seg_start, header_end)
    header = _normalize(_ATTRIBUTES_RE.sub("", masked[header_start:header_end]))
    if not header or header.startswith("=") or header.startswith("~"):
        return None, []

    expression_body = -1
    if body_open < 0 and "=>" in header:
        left, _ = header.split("=>", 1)
        if re.search(r"(?<![=!<>])=(?![=>])", left):
            expression_body = -1  # field initialized with a lambda
        else:
            expression_body = masked.find("=>", header_start, header_end)
            header = left.strip()

    initializer = ""
    if body_open < 0 and expression_body < 0 and re.search(r"(?<![=!<>])=(?![=>])", header):
        header, initializer = re.split(r"(?<![=!<>])=(?![=>])", header, maxsplit=1)
        header = header.strip()

    if re.search(r"\bdelegate\b", header):
        return None, []
    where = re.search(r"\)\s*where\s", header)
    if where:
        header = header[:where.start() + 1]

    in_interface = span.kind is TypeKind.INTERFACE
    kind: MemberKind
    name: str
    params: tuple[Parameter, ...] = ()
    return_type = ""

    ctor = _CTOR_RE.match(header)
    method = None if ctor and ctor.group("name") == span.name else _METHOD_RE.match(header)
    if ctor and ctor.group("name") == span.name and not initializer:
        kind = MemberKind.CONSTRUCTOR
        name = span.name
        mods = ctor.group("mods")
        params = _parse_parameters(ctor.group("params"))
    elif method and not initializer and "(" in header:
        kind = MemberKind.METHOD
        name = method.group("name").rsplit(".", 1)[-1]
        mods = method.group("mods")
        return_type = method.group("ret").strip()
        params = _parse_parameters(method.group("params"))
        if return_type in ("operator", "implicit operator", "explicit operator"):
            return None, []
    elif "(" not in header and (body_open >= 0 or expression_body >= 0):
        prop = _PROPERTY_RE.match(header)
        if not prop:
            return None, []
        kind = MemberKind.PROPERTY
        name = prop.group("name")
        if name.startswith("this"):
            name = "this[]"
        mods = prop.group("mods")
        return_type = prop.group("ret").strip()
    elif "(" not in header:
        fld = _FIELD_RE.match(header)
        if not fld:
            return None, []
        kind = MemberKind.FIELD
        name = fld.group("names").split(",")[0].strip()
        mods = fld.group("mods")
        return_type = fld.group("ret").strip()
    else:
        return None, []

    modifiers, access = _parse_modifiers(mods)
    if in_interface:
        access = access or "public"
        if kind is MemberKind.METHOD and body_open < 0 and expression_body < 0:
            modifiers = modifiers | {"abstract"}
    access = access or "private"

    start_line = _line_of(starts, header_start)
    end_line = _line_of(starts, end)
    member_id = f"{type_id}.{name}@{start_line}"
    body = ""
    if kind in (MemberKind.METHOD, MemberKind.CONSTRUCTOR):
        body = "\n".join(lines[start_line - 1:end_line])

    member = MemberDeclaration(
        id=member_id,
        name=name,
        kind=kind,
        owner_id=type_id,
        owner_name=span.name,
        file_path=source_name,
        line_range=LineRange(start_line, end_line),
        parameters=params,
        return_type=return_type,
        modifiers=modifiers,
        access=access,
        body=body,
        documentation=_documentation(lines, start_line),
    )

    calls: list[CallSite] = []
    code_start = body_open if body_open >= 0 else expression_body
    if code_start >= 0 and kind is not MemberKind.FIELD:
        calls = _find_call_sites(masked, starts, code_start, end, member, source_name)
    return member, calls


def _find_call_sites(masked, starts, start, end, member, source_name) -> list[CallSite]:
    calls: list[CallSite] = []
    region = masked[start:end + 1]
    caller_name = f"{member.owner_name}.{member.name}"
    for m in _CALL_RE.finditer(region):
        name = m.group("name")
        if name in _NOT_CALLS:
            continue
        prefix = region[max(0, m.start() - _LOOKBEHIND):m.start()].rstrip()
        receiver = ""
        if prefix.endswith("."):
            chain = re.search(r"([\w.?\[\]]*?)\??\.$", prefix)
            receiver = chain.group(1) if chain else ""
            if chain and re.search(r"\bnew$", prefix[:chain.start()].rstrip()):
                continue  # qualified object creation
        else:
            prev = re.search(r"[A-Za-z_]\w*$", prefix)
            if prev:
                word = prev.group(0)
                if word == "new" or word not in _CALL_PREFIX_WORDS:
                    continue  # object creation or local function declaration
            elif prefix.endswith(">") and prefix[-2:-1].isalnum():
                continue  # generic return type of a local function
        calls.append(CallSite(
            caller_id=member.id,
            caller_name=caller_name,
            callee_name=name,
            file_path=source_name,
            line=_line_of(starts, start + m.start("name")),
            receiver=receiver,
        ))
    return calls
