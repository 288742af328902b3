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

"""Text-level refactoring with backup, preview and atomic writes.

Every mutation funnels through ``RefactoringService.write_file``:

1. resolve the target and refuse anything outside the workspace roots
2. copy an existing target to ``<name>.<timestamp>.bak`` beside it
3. write the new content to a temp file in the same directory
4. ``os.replace`` the temp file over the target

Writes to one path are serialized by a per-path lock; distinct paths
proceed in parallel. The index is never updated by a write; callers
refresh explicitly.
"""

from __future__ import annotations

import difflib
import logging
import os
import re
import shutil
import tempfile
import textwrap
import threading
import time
import weakref
from contextlib import ExitStack, contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime

from mcp_workspace_server.errors import (
    NOT_FOUND,
    InvalidArgumentsError,
    LineRangeError,
    PathEscapeError,
    ToolError,
    TypeNotFoundError,
    WriteFailure,
)
from mcp_workspace_server.models import (
    MemberDeclaration,
    MemberKind,
    TypeDeclaration,
    WorkspaceIndex,
    split_lines,
)

logger = logging.getLogger(__name__)

BACKUP_PATTERN = re.compile(r"^(?P<name>.+)\.(?P<stamp>\d{8}T\d{12})\.bak$")
_IDENTIFIER = re.compile(r"^[A-Za-z_]\w*$")

_locks_guard = threading.Lock()
# Entries vanish once no thread holds or waits on the lock
_path_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()


def _lock_key(path: str) -> str:
    return os.path.normcase(os.path.realpath(path))


def path_lock(path: str) -> threading.Lock:
    """The lock serializing writes to *path* (one per resolved path)."""
    key = _lock_key(path)
    with _locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _path_locks[key] = lock
        return lock


@contextmanager
def path_locks(*paths: str):
    """Hold the locks of several paths, always acquired in the same order."""
    keys = sorted({_lock_key(p) for p in paths})
    with ExitStack() as stack:
        for key in keys:
            stack.enter_context(path_lock(key))
        yield


def backup_name(path: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.now()).strftime("%Y%m%dT%H%M%S%f")
    return f"{path}.{stamp}.bak"


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def unified_diff(before: str | None, after: str, label: str) -> tuple[str, int, int]:
    """Unified diff text plus added/removed line counts. *before* None means a new file."""
    before_lines = [] if before is None else before.splitlines(keepends=True)
    after_lines = after.splitlines(keepends=True)
    diff_lines = list(difflib.unified_diff(
        before_lines,
        after_lines,
        fromfile="/dev/null" if before is None else f"a/{label}",
        tofile=f"b/{label}",
    ))
    added = sum(1 for line in diff_lines if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in diff_lines if line.startswith("-") and not line.startswith("---"))
    text = "".join(line if line.endswith("\n") else line + "\n" for line in diff_lines)
    return text, added, removed


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class FileDiff:
    path: str
    is_new_file: bool
    diff: str
    lines_added: int
    lines_removed: int

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "isNewFile": self.is_new_file,
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
            "diff": self.diff,
        }


@dataclass
class WriteResult:
    path: str
    absolute_path: str
    backup_path: str | None
    is_new_file: bool
    bytes_written: int
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        result = {
            "path": self.path,
            "absolutePath": self.absolute_path,
            "backupPath": self.backup_path,
            "isNewFile": self.is_new_file,
            "bytesWritten": self.bytes_written,
        }
        result.update(self.details)
        return result


@dataclass
class RenameResult:
    old_name: str
    new_name: str
    preview: bool
    files_touched: list[str] = field(default_factory=list)
    occurrences: int = 0
    occurrences_by_file: dict[str, int] = field(default_factory=dict)
    diffs: dict[str, str] = field(default_factory=dict)
    backups: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "oldName": data["old_name"],
            "newName": data["new_name"],
            "preview": data["preview"],
            "filesTouched": data["files_touched"],
            "occurrences": data["occurrences"],
            "occurrencesByFile": data["occurrences_by_file"],
            "diffs": data["diffs"],
            "backups": data["backups"],
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RefactoringService:
    """Mutations against files of the current index snapshot's roots."""

    def __init__(self, indexer):
        self.indexer = indexer

    # -- path handling ------------------------------------------------

    def resolve_path(self, path: str, index: WorkspaceIndex | None = None) -> tuple[str, str]:
        """Return ``(absolute path, display path)`` for a write target.

        Relative paths may start with a root label (``Api/Models/User.cs``);
        an indexed relative path maps to its file; anything else is placed
        under the first root.

        Raises:
            PathEscapeError: when the resolved path is outside every root.
        """
        if not isinstance(path, str) or not path.strip():
            raise InvalidArgumentsError("path is required")
        index = index or self.indexer.index
        if os.path.isabs(path):
            candidate = os.path.abspath(path)
        else:
            normalized = path.strip().replace("\\", "/")
            while normalized.startswith("./"):
                normalized = normalized[2:]
            head, _, rest = normalized.partition("/")
            if normalized in index.files:
                candidate = index.files[normalized].path
            elif rest and head in index.root_labels:
                candidate = os.path.abspath(os.path.join(index.root_labels[head], rest))
            else:
                candidate = os.path.abspath(os.path.join(index.roots[0], normalized))

        real = os.path.realpath(candidate)
        for label, root in index.root_labels.items():
            real_root = os.path.realpath(root)
            if real != real_root and os.path.commonpath([real, real_root]) == real_root:
                rel = os.path.relpath(real, real_root).replace(os.sep, "/")
                return candidate, f"{label}/{rel}"
        raise PathEscapeError(f"Path '{path}' resolves outside every workspace root")

    def _existing(self, path: str, index: WorkspaceIndex | None = None) -> tuple[str, str]:
        abs_path, display = self.resolve_path(path, index)
        if not os.path.isfile(abs_path):
            raise ToolError(f"File not found: {path}", code=NOT_FOUND)
        return abs_path, display

    # -- write discipline ---------------------------------------------

    def preview_write(self, path: str, content: str) -> FileDiff:
        """Diff of *content* against the current file; no side effects."""
        abs_path, display = self.resolve_path(path)
        before = _read_text(abs_path) if os.path.isfile(abs_path) else None
        diff, added, removed = unified_diff(before, content, display)
        return FileDiff(display, before is None, diff, added, removed)

    def write_file(self, path: str, content: str) -> WriteResult:
        """Back up the current file (if any) then atomically replace it with *content*."""
        if not isinstance(content, str):
            raise InvalidArgumentsError("content must be a string")
        abs_path, display = self.resolve_path(path)
        with path_lock(abs_path):
            return self._write_locked(abs_path, display, content)

    def _write_locked(self, abs_path: str, display: str, content: str) -> WriteResult:
        try:
            encoded_size = len(content.encode("utf-8", errors="surrogateescape"))
        except UnicodeEncodeError as e:
            raise InvalidArgumentsError(
                f"Content for {display} cannot be encoded as UTF-8 at offset {e.start}: {e.reason}"
            ) from e
        directory = os.path.dirname(abs_path)
        is_new = not os.path.exists(abs_path)
        backup: str | None = None
        tmp: str | None = None
        try:
            if is_new:
                os.makedirs(directory, exist_ok=True)
            else:
                backup = backup_name(abs_path)
                shutil.copy2(abs_path, backup)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(abs_path)}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if backup is not None:
                shutil.copymode(backup, tmp)
            os.replace(tmp, abs_path)
            tmp = None
        except (OSError, UnicodeError) as e:
            logger.error("Write to %s failed: %s", abs_path, e)
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            if backup is not None and os.path.exists(backup):
                try:
                    shutil.copy2(backup, abs_path)
                    os.unlink(backup)  # the file is back to the backed-up content
                except OSError as restore_error:
                    raise WriteFailure(
                        f"Writing {display} failed ({e}) and restoring {backup} failed ({restore_error})"
                    ) from e
            raise WriteFailure(f"Writing {display} failed: {e}") from e

        logger.info("Wrote %s (backup: %s)", abs_path, backup)
        return WriteResult(
            path=display,
            absolute_path=abs_path,
            backup_path=backup,
            is_new_file=is_new,
            bytes_written=encoded_size,
        )

    def str_replace(self, path: str, old_text: str, new_text: str) -> WriteResult:
        """Replace the single occurrence of *old_text* in an existing file."""
        if not old_text:
            raise InvalidArgumentsError("oldText must not be empty")
        abs_path, display = self._existing(path)
        with path_lock(abs_path):
            text = _read_text(abs_path)
            count = text.count(old_text)
            if count == 0:
                raise ToolError(f"oldText not found in {display}", code=NOT_FOUND)
            if count > 1:
                raise ToolError(f"oldText occurs {count} times in {display}; include more context")
            result = self._write_locked(abs_path, display, text.replace(old_text, new_text, 1))
        result.details["line"] = text[: text.index(old_text)].count("\n") + 1
        return result

    def replace_lines(
        self, path: str, start_line: int, end_line: int, new_content: str, preview: bool = False
    ) -> WriteResult | FileDiff:
        """Replace lines ``start_line..end_line`` (1-indexed, inclusive) with *new_content*.

        An empty *new_content* deletes the range. The file's line endings
        and trailing newline are kept.
        """
        if not isinstance(new_content, str):
            raise InvalidArgumentsError("newContent must be a string")
        abs_path, display = self._existing(path)
        with path_lock(abs_path):
            text = _read_text(abs_path)
            lines = split_lines(text)
            if start_line < 1 or start_line > len(lines):
                raise LineRangeError(f"startLine {start_line} is out of range ({display} has {len(lines)} lines)")
            if end_line < start_line or end_line > len(lines):
                raise LineRangeError(
                    f"endLine {end_line} is out of range (startLine={start_line}, {display} has {len(lines)} lines)"
                )
            newline = "\r\n" if "\r\n" in text else "\n"
            replacement = split_lines(new_content)
            updated = lines[: start_line - 1] + replacement + lines[end_line:]
            content = newline.join(updated) + (newline if updated and text.endswith("\n") else "")
            if preview:
                diff, added, removed = unified_diff(text, content, display)
                return FileDiff(display, False, diff, added, removed)
            result = self._write_locked(abs_path, display, content)
        result.details.update({
            "startLine": start_line,
            "endLine": end_line,
            "linesRemoved": end_line - start_line + 1,
            "linesInserted": len(replacement),
        })
        return result

    def delete_file(self, path: str) -> WriteResult:
        """Back up an existing file, then remove it. ``undo`` brings it back."""
        abs_path, display = self._existing(path)
        with path_lock(abs_path):
            backup = backup_name(abs_path)
            try:
                shutil.copy2(abs_path, backup)
                os.unlink(abs_path)
            except OSError as e:
                logger.error("Delete of %s failed: %s", abs_path, e)
                if os.path.exists(abs_path) and os.path.exists(backup):
                    os.unlink(backup)
                raise WriteFailure(f"Deleting {display} failed: {e}") from e
        logger.info("Deleted %s (backup: %s)", abs_path, backup)
        return WriteResult(display, abs_path, backup, False, 0, {"deleted": True})

    def undo(self, path: str) -> WriteResult:
        """Restore the most recent backup of *path* and discard that backup."""
        abs_path, display = self.resolve_path(path)
        directory, base = os.path.split(abs_path)
        with path_lock(abs_path):
            candidates = []
            if os.path.isdir(directory):
                for entry in os.listdir(directory):
                    m = BACKUP_PATTERN.match(entry)
                    if m and m.group("name") == base:
                        candidates.append((m.group("stamp"), entry))
            if not candidates:
                raise ToolError(f"No backup found for {display}", code=NOT_FOUND)
            latest = os.path.join(directory, max(candidates)[1])
            content = _read_text(latest)
            try:
                fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{base}.", suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                    f.write(content)
                os.replace(tmp, abs_path)
                os.unlink(latest)
            except OSError as e:
                raise WriteFailure(f"Restoring {display} from {latest} failed: {e}") from e
        logger.info("Restored %s from %s", abs_path, latest)
        return WriteResult(display, abs_path, None, False, len(content), {"restoredFrom": latest})

    def clean_backups(self, max_age_hours: float | None = None) -> dict:
        """Delete backup files under every root, optionally only those older than *max_age_hours*."""
        index = self.indexer.index
        cutoff = None if max_age_hours is None else time.time() - max_age_hours * 3600
        deleted: list[str] = []
        freed = 0
        for root in index.roots:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = [d for d in dirnames if d != ".git"]
                for name in filenames:
                    m = BACKUP_PATTERN.match(name)
                    if not m:
                        continue
                    if cutoff is not None:
                        created = datetime.strptime(m.group("stamp"), "%Y%m%dT%H%M%S%f").timestamp()
                        if created >= cutoff:
                            continue
                    full = os.path.join(dirpath, name)
                    try:
                        size = os.path.getsize(full)
                        os.unlink(full)
                    except OSError as e:
                        logger.warning("Could not delete backup %s: %s", full, e)
                        continue
                    deleted.append(full)
                    freed += size
        return {"deleted": len(deleted), "bytesFreed": freed, "files": deleted}

    # -- refactorings -------------------------------------------------

    def rename_symbol(self, old_name: str, new_name: str, preview: bool = True) -> RenameResult:
        """Replace whole-word occurrences of *old_name* in every indexed file.

        Matching is purely textual on word boundaries: occurrences in
        comments and string literals are renamed too. File content is read
        from disk, so preview and apply see the same text.
        """
        for label, value in (("oldName", old_name), ("newName", new_name)):
            if not isinstance(value, str) or not _IDENTIFIER.match(value):
                raise InvalidArgumentsError(f"{label} must be an identifier, got {value!r}")
        if old_name == new_name:
            raise InvalidArgumentsError("oldName and newName are identical")

        index = self.indexer.index
        pattern = re.compile(rf"\b{re.escape(old_name)}\b")
        result = RenameResult(old_name=old_name, new_name=new_name, preview=preview)
        for rel_path in sorted(index.files):
            source = index.files[rel_path]
            if not os.path.isfile(source.path):
                continue
            with path_lock(source.path):
                try:
                    text = _read_text(source.path)
                except OSError as e:
                    logger.warning("Skipping %s during rename: %s", rel_path, e)
                    continue
                updated, count = pattern.subn(new_name, text)
                if count == 0:
                    continue
                result.files_touched.append(rel_path)
                result.occurrences += count
                result.occurrences_by_file[rel_path] = count
                if preview:
                    result.diffs[rel_path] = unified_diff(text, updated, rel_path)[0]
                else:
                    written = self._write_locked(source.path, rel_path, updated)
                    if written.backup_path:
                        result.backups.append(written.backup_path)
        return result

    def grep_replace(
        self,
        pattern: str,
        replacement: str,
        preview: bool = True,
        case_sensitive: bool = False,
        file_filter: str | None = None,
        exclude_matches: list[int] | None = None,
        exclude_pattern: str | None = None,
    ) -> dict:
        """Regex replace, line by line, across every indexed file.

        Matches are numbered from 1 in path order so a preview can be
        applied with some of them left out (*exclude_matches*). Lines
        matching *exclude_pattern* are never touched. ``$1`` and ``${name}``
        group references are accepted alongside Python's ``\\1`` syntax.
        """
        if not pattern:
            raise InvalidArgumentsError("pattern is required")
        flags = 0 if case_sensitive else re.IGNORECASE
        regex = _compile(pattern, flags, "pattern")
        skip_regex = _compile(exclude_pattern, flags, "excludePattern") if exclude_pattern else None
        template = _DOLLAR_GROUP.sub(_python_group, replacement)
        excluded = set(exclude_matches or ())

        index = self.indexer.index
        numbered = 0
        planned = []
        for rel_path in sorted(index.files):
            if file_filter and file_filter.lower() not in rel_path.lower():
                continue
            source = index.files[rel_path]
            try:
                text = _read_text(source.path)
            except OSError as e:
                logger.warning("Skipping %s during grep_replace: %s", rel_path, e)
                continue
            try:
                changes, updated = _replace_by_line(text, regex, template, skip_regex, numbered, excluded)
            except (re.error, IndexError) as e:
                raise InvalidArgumentsError(f"Invalid replacement: {e}") from e
            if changes:
                numbered = changes[-1]["match"]
                planned.append((rel_path, source.path, text, updated, changes))

        result = {
            "pattern": pattern,
            "replacement": replacement,
            "preview": preview,
            "totalMatches": numbered,
            "files": [
                {"file": rel_path, "changes": changes}
                for rel_path, _, _, _, changes in planned
            ],
        }
        if preview:
            return result

        applied, skipped, backups, failed = 0, 0, [], []
        for rel_path, abs_path, text, updated, changes in planned:
            kept = sum(1 for c in changes if c["match"] not in excluded)
            skipped += len(changes) - kept
            if kept == 0:
                continue
            with path_lock(abs_path):
                if _read_text(abs_path) != text:
                    failed.append({"file": rel_path, "error": "changed on disk while planning"})
                    continue
                written = self._write_locked(abs_path, rel_path, updated)
            applied += kept
            if written.backup_path:
                backups.append(written.backup_path)
        result.update({"applied": applied, "skipped": skipped, "backups": backups})
        if failed:
            result["failed"] = failed
        logger.info("grep_replace %r: %d applied, %d skipped", pattern, applied, skipped)
        return result

    def move_file(self, old_path: str, new_path: str, preview: bool = True) -> dict:
        """Move a file inside the workspace, adjusting a C# namespace that mirrors its folder.

        When the file declares ``namespace A.B.Old`` and sits in folder
        ``Old``, moving it to folder ``New`` rewrites the declaration to
        ``A.B.New``. Files that mention the moved types or import the old
        namespace are listed, not edited.
        """
        index = self.indexer.index
        old_abs, old_display = self._existing(old_path, index)
        new_abs, new_display = self.resolve_path(new_path, index)
        if os.path.exists(new_abs):
            raise ToolError(f"Target {new_display} already exists")

        source = next((f for f in index.files.values() if f.path == old_abs), None)
        old_namespace = new_namespace = ""
        type_names: list[str] = []
        if source is not None:
            decls = [t for t in index.types.values() if t.file_path == source.relative_path]
            type_names = sorted({t.name for t in decls})
            if source.language == "csharp":
                old_namespace = index.namespaces.get(source.relative_path, "")
                new_namespace = _moved_namespace(old_namespace, old_display, new_display)

        affected = []
        words = re.compile(r"\b(?:%s)\b" % "|".join(map(re.escape, type_names))) if type_names else None
        for rel_path, other in sorted(index.files.items()):
            if other.path == old_abs:
                continue
            uses_type = words is not None and words.search(other.text) is not None
            imports_namespace = bool(old_namespace) and old_namespace in index.imports.get(rel_path, ())
            if uses_type or imports_namespace:
                affected.append(rel_path)

        result = {
            "from": old_display,
            "to": new_display,
            "preview": preview,
            "namespaceChange": (
                {"from": old_namespace, "to": new_namespace} if new_namespace != old_namespace else None
            ),
            "affectedFiles": affected,
        }
        if preview:
            return result

        with path_locks(old_abs, new_abs):
            text = _read_text(old_abs)
            if new_namespace != old_namespace:
                text = re.sub(
                    rf"(\bnamespace\s+){re.escape(old_namespace)}\b",
                    lambda m: m.group(1) + new_namespace,
                    text,
                    count=1,
                )
            backup = backup_name(old_abs)
            tmp: str | None = None
            try:
                shutil.copy2(old_abs, backup)
                directory = os.path.dirname(new_abs)
                os.makedirs(directory, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(new_abs)}.", suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                    f.write(text)
                shutil.copymode(old_abs, tmp)
                os.replace(tmp, new_abs)
                tmp = None
                os.unlink(old_abs)
            except OSError as e:
                logger.error("Move of %s to %s failed: %s", old_abs, new_abs, e)
                if tmp is not None and os.path.exists(tmp):
                    os.unlink(tmp)
                if os.path.exists(old_abs):
                    if os.path.exists(new_abs):
                        os.unlink(new_abs)
                    if os.path.exists(backup):
                        os.unlink(backup)
                raise WriteFailure(f"Moving {old_display} to {new_display} failed: {e}") from e
        logger.info("Moved %s to %s (backup: %s)", old_abs, new_abs, backup)
        result["backupPath"] = backup
        return result

    def generate_interface(self, type_name: str, interface_name: str | None = None) -> str:
        """Emit an interface declaring every public, non-static member of *type_name*.

        C# types produce a C# ``interface``; Python classes produce a
        ``typing.Protocol``. Fields and constructors are not part of the
        generated contract.

        Raises:
            TypeNotFoundError: when no indexed type has that name.
        """
        index = self.indexer.index
        decls = [
            index.types[type_id]
            for type_id in index.symbols.lookup(type_name)
            if type_id in index.types
        ]
        if not decls:
            raise TypeNotFoundError(f"Type '{type_name}' not found")
        qualified = {d.qualified_name for d in decls}
        if len(qualified) > 1:
            raise ToolError(
                f"Type name '{type_name}' is ambiguous: {', '.join(sorted(qualified))}. "
                "Pass the qualified name."
            )

        members: list[MemberDeclaration] = []
        for decl in decls:  # partial declarations contribute together
            for member_id in decl.member_ids:
                member = index.members.get(member_id)
                if member is None or not member.is_public or "static" in member.modifiers:
                    continue
                if member.kind in (MemberKind.METHOD, MemberKind.PROPERTY) and not member.name.startswith("__"):
                    members.append(member)

        language = index.files[decls[0].file_path].language if decls[0].file_path in index.files else None
        if language == "python":
            return _python_protocol(decls[0], members, interface_name or f"{decls[0].name}Protocol")
        return _csharp_interface(decls[0], members, interface_name or f"I{decls[0].name}")

    def extract_method(self, path: str, start_line: int, end_line: int, new_method_name: str) -> WriteResult:
        """Move lines ``start_line..end_line`` into a new method of the same type.

        The range must sit inside the body of a single member. The new method
        is inserted right after that member and the range is replaced by a
        call to it.
        """
        if not isinstance(new_method_name, str) or not _IDENTIFIER.match(new_method_name):
            raise InvalidArgumentsError(f"newMethodName must be an identifier, got {new_method_name!r}")
        if not isinstance(start_line, int) or not isinstance(end_line, int):
            raise InvalidArgumentsError("startLine and endLine must be integers")
        if start_line < 1 or end_line < start_line:
            raise LineRangeError(f"Invalid line range {start_line}-{end_line}")

        index = self.indexer.index
        abs_path, display = self._existing(path, index)
        source = next((f for f in index.files.values() if f.path == abs_path), None)
        if source is None:
            raise ToolError(f"{display} is not part of the index; refresh first", code=NOT_FOUND)

        candidates = [
            m for m in index.members.values()
            if m.file_path == source.relative_path
            and m.kind in (MemberKind.METHOD, MemberKind.CONSTRUCTOR, MemberKind.PROPERTY)
            and m.line_range.contains(start_line)
        ]
        if not candidates:
            raise LineRangeError(f"Line {start_line} of {display} is not inside a member body")
        member = min(candidates, key=lambda m: m.line_range.end - m.line_range.start)
        if not member.line_range.contains(end_line):
            raise LineRangeError(
                f"Lines {start_line}-{end_line} cross the boundary of "
                f"{member.owner_name}.{member.name} (lines {member.line_range.start}-{member.line_range.end})"
            )
        language = source.language
        if start_line == member.line_range.start or (language != "python" and end_line == member.line_range.end):
            raise LineRangeError("The range must not include the member's declaration or closing brace")
        owner = index.types.get(member.owner_id)
        if owner is not None and any(
            index.members[mid].name == new_method_name for mid in owner.member_ids if mid in index.members
        ):
            raise ToolError(f"{owner.name} already has a member named {new_method_name}")

        with path_lock(abs_path):
            text = _read_text(abs_path)
            newline = "\r\n" if "\r\n" in text else "\n"
            lines = split_lines(text)
            trailing = text.endswith("\n")
            if end_line > len(lines) or member.line_range.end > len(lines):
                raise LineRangeError(f"{display} has only {len(lines)} lines; the index may be stale")
            if language == "python":
                def_line = next(
                    (n for n in range(member.line_range.start, member.line_range.end + 1)
                     if lines[n - 1].lstrip().startswith(("def ", "async def "))),
                    member.line_range.start,
                )
                if start_line <= def_line:
                    raise LineRangeError("The range must not include the function signature")

            extracted = lines[start_line - 1:end_line]
            member_line = lines[member.line_range.start - 1]
            member_indent = member_line[: len(member_line) - len(member_line.lstrip())]
            first_code = next((l for l in extracted if l.strip()), "")
            call_indent = first_code[: len(first_code) - len(first_code.lstrip())]

            if language == "python":
                call, method = _python_extraction(member, owner, new_method_name, extracted, member_indent)
            else:
                call, method = _csharp_extraction(member, new_method_name, extracted, member_indent)

            updated = (
                lines[: start_line - 1]
                + [call_indent + call]
                + lines[end_line: member.line_range.end]
                + [""]
                + method
                + lines[member.line_range.end:]
            )
            content = newline.join(updated) + (newline if trailing else "")
            result = self._write_locked(abs_path, display, content)

        result.details.update({
            "method": new_method_name,
            "extractedLines": end_line - start_line + 1,
            "fromMember": f"{member.owner_name}.{member.name}",
        })
        return result


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_DOLLAR_GROUP = re.compile(r"\$(?:(\d+)|\{(\w+)\}|(\$))")


def _python_group(m: re.Match) -> str:
    if m.group(3):
        return "$"
    return rf"\g<{m.group(1) or m.group(2)}>"


def _compile(pattern: str, flags: int, label: str) -> re.Pattern:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise InvalidArgumentsError(f"Invalid {label} regex: {e}") from e


def _replace_by_line(text, regex, template, skip_regex, numbered, excluded):
    """Apply *regex* to each line body; returns (numbered changes, new text).

    Line terminators are never part of what the regex sees, so endings
    survive unchanged. Changes numbered in *excluded* are reported but
    left unapplied.
    """
    pieces = text.split("\n")
    tail = [pieces.pop()] if text.endswith("\n") else []
    changes = []
    out = []
    for number, raw in enumerate(pieces, start=1):
        body, cr = (raw[:-1], "\r") if raw.endswith("\r") else (raw, "")
        if skip_regex is None or not skip_regex.search(body):
            replaced = regex.sub(template, body)
            if replaced != body:
                numbered += 1
                changes.append({"match": numbered, "line": number, "before": body, "after": replaced})
                if numbered not in excluded:
                    body = replaced
        out.append(body + cr)
    return changes, "\n".join(out + tail)


def _moved_namespace(namespace: str, old_display: str, new_display: str) -> str:
    """``Demo.Services`` in folder ``Services`` becomes ``Demo.Core`` when moved to folder ``Core``."""
    old_dirs = old_display.split("/")[1:-1]
    new_dirs = new_display.split("/")[1:-1]
    parts = namespace.split(".") if namespace else []
    if not old_dirs or old_dirs == new_dirs or parts[-len(old_dirs):] != old_dirs:
        return namespace
    moved = ".".join(parts[: len(parts) - len(old_dirs)] + new_dirs)
    return moved or namespace


# ---------------------------------------------------------------------------
# Code generation helpers
# ---------------------------------------------------------------------------


def _indent_block(lines: list[str], indent: str) -> list[str]:
    dedented = textwrap.dedent("\n".join(lines)).split("\n")
    return [indent + line if line.strip() else "" for line in dedented]


def _csharp_extraction(member, name, extracted, indent):
    modifiers = "private static" if "static" in member.modifiers else "private"
    method = [f"{indent}{modifiers} void {name}()", f"{indent}{{"]
    method += _indent_block(extracted, indent + "    ")
    method.append(f"{indent}}}")
    return f"{name}();", method


def _python_extraction(member, owner, name, extracted, indent):
    body = _indent_block(extracted, indent + "    ")
    is_module = owner is not None and "module" in owner.modifiers
    if is_module:
        return f"{name}()", [f"{indent}def {name}():"] + body
    if "static" in member.modifiers:
        return f"{member.owner_name}.{name}()", [f"{indent}@staticmethod", f"{indent}def {name}():"] + body
    return f"self.{name}()", [f"{indent}def {name}(self):"] + body


def _csharp_interface(decl: TypeDeclaration, members: list[MemberDeclaration], name: str) -> str:
    namespace = decl.qualified_name.rsplit(".", 1)[0] if "." in decl.qualified_name else ""
    indent = "    " if namespace else ""
    out: list[str] = []
    if namespace:
        out += [f"namespace {namespace}", "{"]
    out += [f"{indent}public interface {name}", f"{indent}{{"]
    for member in members:
        if member.documentation:
            out.append(f"{indent}    /// <summary>")
            out += [f"{indent}    /// {line}" for line in member.documentation.splitlines()]
            out.append(f"{indent}    /// </summary>")
        if member.kind is MemberKind.PROPERTY:
            out.append(f"{indent}    {member.return_type} {member.name} {{ get; set; }}")
        else:
            params = ", ".join(str(p) for p in member.parameters)
            out.append(f"{indent}    {member.return_type or 'void'} {member.name}({params});")
    out.append(f"{indent}}}")
    if namespace:
        out.append("}")
    return "\n".join(out) + "\n"


def _python_protocol(decl: TypeDeclaration, members: list[MemberDeclaration], name: str) -> str:
    out = ["from typing import Protocol", "", "", f"class {name}(Protocol):"]
    if decl.documentation:
        out.append(f'    """Protocol for {decl.name}."""')
        out.append("")
    if not members:
        out.append("    ...")
    for member in members:
        params = ", ".join(["self"] + [f"{p.name}: {p.type}" if p.type else p.name for p in member.parameters])
        returns = f" -> {member.return_type}" if member.return_type else ""
        prefix = "async def" if "async" in member.modifiers else "def"
        if member.kind is MemberKind.PROPERTY:
            out.append("    @property")
        out.append(f"    {prefix} {member.name}({params}){returns}: ...")
    return "\n".join(out) + "\n"
