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

"""Workspace indexer.

Walks every enabled root of a workspace (plus materialized external
repositories), runs the source analyzer for each kept file and assembles an
immutable WorkspaceIndex. Publication is a single attribute swap, so readers
always see one complete generation.
"""

from __future__ import annotations

import logging
import os
import threading
import time

from mcp_workspace_server.analyzer import analyze, language_for
from mcp_workspace_server.errors import IndexBuildError
from mcp_workspace_server.models import (
    AnalysisWarning,
    CallSite,
    MemberDeclaration,
    SourceFile,
    TypeDeclaration,
    Workspace,
    WorkspaceIndex,
)
from mcp_workspace_server.repositories import RepositoryRoot, resolve_repositories
from mcp_workspace_server.settings import ALWAYS_IGNORED, extension_filter
from mcp_workspace_server.symbol_index import SymbolIndex

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 1_048_576


class _Root:
    __slots__ = ("path", "label", "exclude_paths")

    def __init__(self, path: str, label: str, exclude_paths: list[str] | None = None):
        self.path = path
        self.label = label
        self.exclude_paths = exclude_paths or []


def _resolve_roots(workspace: Workspace, repositories: list[RepositoryRoot]) -> list[_Root]:
    roots: list[_Root] = []
    labels: set[str] = set()

    def label_for(path: str) -> str:
        base = os.path.basename(os.path.normpath(path)) or "root"
        label, n = base, 2
        while label in labels:
            label = f"{base}_{n}"
            n += 1
        labels.add(label)
        return label

    for directory in workspace.enabled_directories:
        path = os.path.abspath(os.path.expanduser(directory))
        if not os.path.isdir(path):
            logger.warning("Workspace directory %s does not exist; skipping", path)
            continue
        roots.append(_Root(path, label_for(path)))
    for repo in repositories:
        roots.append(_Root(repo.path, label_for(repo.path), repo.exclude_paths))
    return roots


def _read_file(abs_path: str) -> str:
    """Read a file as text, trying UTF-8 first then latin-1 as fallback."""
    try:
        with open(abs_path, "r", encoding="utf-8") as f:
            return f.read()
    except UnicodeDecodeError:
        with open(abs_path, "r", encoding="latin-1") as f:
            return f.read()


def discover_files(
    root: str,
    allowed_extensions: set[str] | None,
    ignored_directories: set[str],
    exclude_paths: list[str] | None = None,
) -> list[str]:
    """Return absolute paths of the files under *root* that pass the filters.

    A path is dropped when any directory segment below *root* has a
    lowercased name in *ignored_directories*. *allowed_extensions* of None
    means every extension.
    """
    ignored = {d.lower() for d in ignored_directories} | ALWAYS_IGNORED
    excludes = [p.lower() for p in (exclude_paths or [])]
    matched: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root).replace(os.sep, "/")
        kept = []
        for d in dirnames:
            if d.lower() in ignored:
                continue
            rel = d if rel_dir == "." else f"{rel_dir}/{d}"
            if any(rel.lower() == e or rel.lower().startswith(e + "/") for e in excludes):
                continue
            kept.append(d)
        dirnames[:] = sorted(kept)
        for name in sorted(filenames):
            if allowed_extensions is not None:
                ext = os.path.splitext(name)[1].lower()
                if ext not in allowed_extensions:
                    continue
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            if any(rel.lower() == e or rel.lower().startswith(e + "/") for e in excludes):
                continue
            matched.append(os.path.join(dirpath, name))
    return matched


def build_index(
    workspace: Workspace,
    generation: int = 1,
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE,
) -> WorkspaceIndex:
    """Walk the workspace, analyze all kept files and return a complete snapshot.

    Steps:
    1. Resolve enabled roots and materialized external repositories
    2. Discover files, applying the ignore set and the extension allow-list
    3. Deduplicate by resolved path (first root wins)
    4. Read and analyze each file; per-file failures become warnings
    5. Build the symbol index over every declaration

    Raises:
        IndexBuildError: when no configured directory exists.
    """
    start_time = time.monotonic()

    repositories = resolve_repositories(workspace.external_repositories)
    roots = _resolve_roots(workspace, repositories)
    if not roots:
        raise IndexBuildError(
            f"No directories of workspace '{workspace.name}' resolve to existing paths"
        )

    allowed = extension_filter(workspace.extensions)
    ignored = set(workspace.ignored_directories)

    files: dict[str, SourceFile] = {}
    types: dict[str, TypeDeclaration] = {}
    members: dict[str, MemberDeclaration] = {}
    call_sites: list[CallSite] = []
    imports: dict[str, tuple[str, ...]] = {}
    namespaces: dict[str, str] = {}
    warnings: list[AnalysisWarning] = []
    seen: set[str] = set()

    for root in roots:
        discovered = discover_files(root.path, allowed, ignored, root.exclude_paths)
        logger.info("Discovered %d files in %s", len(discovered), root.path)
        for fpath in discovered:
            real = os.path.realpath(fpath)
            if real in seen:
                continue
            seen.add(real)
            rel_path = f"{root.label}/" + os.path.relpath(fpath, root.path).replace(os.sep, "/")

            try:
                size = os.path.getsize(fpath)
            except OSError as e:
                warnings.append(AnalysisWarning(rel_path, f"cannot stat: {e}"))
                continue
            if size > max_file_size_bytes:
                logger.warning("Skipping %s (size %d > %d)", rel_path, size, max_file_size_bytes)
                warnings.append(AnalysisWarning(rel_path, f"skipped: {size} bytes exceeds limit"))
                continue
            try:
                text = _read_file(fpath)
            except OSError as e:
                logger.warning("Skipping %s: %s", rel_path, e)
                warnings.append(AnalysisWarning(rel_path, f"unreadable: {e}"))
                continue

            language = language_for(fpath)
            files[rel_path] = SourceFile(
                path=os.path.abspath(fpath),
                relative_path=rel_path,
                root=root.path,
                language=language,
                text=text,
            )
            if language is None:
                continue
            try:
                analysis = analyze(text, rel_path, language)
            except Exception as e:
                # One bad file never aborts the build
                logger.warning("Analysis failed for %s: %s", rel_path, e)
                warnings.append(AnalysisWarning(rel_path, f"analysis failed: {e}"))
                continue
            if analysis is None:
                continue
            for decl in analysis.types:
                types[decl.id] = decl
            for member in analysis.members:
                members[member.id] = member
            call_sites.extend(analysis.call_sites)
            if analysis.imports:
                imports[rel_path] = tuple(analysis.imports)
            if analysis.namespace:
                namespaces[rel_path] = analysis.namespace

    symbols = SymbolIndex(types.values(), members.values(), call_sites)
    elapsed = time.monotonic() - start_time

    index = WorkspaceIndex(
        workspace_name=workspace.name,
        roots=tuple(r.path for r in roots),
        generation=generation,
        files=files,
        types=types,
        members=members,
        call_sites=tuple(call_sites),
        symbols=symbols,
        warnings=tuple(warnings),
        repositories=tuple(r.to_dict() for r in repositories),
        root_labels={r.label: r.path for r in roots},
        imports=imports,
        namespaces=namespaces,
        build_time_seconds=elapsed,
    )
    logger.info(
        "Indexed %d files (%d types, %d members, %d call sites) in %.2fs, %d warnings",
        len(files), len(types), len(members), len(call_sites), elapsed, len(warnings),
    )
    return index


def index_stats(index: WorkspaceIndex) -> dict:
    """Summary counts for an index snapshot."""
    return {
        "workspace": index.workspace_name,
        "generation": index.generation,
        "files": len(index.files),
        "lines": index.total_lines,
        "types": len(index.types),
        "members": len(index.members),
        "callSites": len(index.call_sites),
        "warnings": len(index.warnings),
        "buildTimeSeconds": round(index.build_time_seconds, 3),
    }


class WorkspaceIndexer:
    """Single owner of a process's index lifetime."""

    def __init__(self, workspace: Workspace, max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE):
        self.workspace = workspace
        self.max_file_size_bytes = max_file_size_bytes
        self._index: WorkspaceIndex | None = None
        self._generation = 0
        self._rebuild_lock = threading.Lock()

    @property
    def index(self) -> WorkspaceIndex:
        """The currently published snapshot.

        Callers should read this once per operation and keep using that
        object; a concurrent rebuild replaces it but never changes it.
        """
        index = self._index
        if index is None:
            raise RuntimeError("Workspace has not been indexed yet")
        return index

    def rebuild(self) -> WorkspaceIndex:
        """Build a fresh snapshot and publish it. Concurrent rebuilds are serialized."""
        with self._rebuild_lock:
            index = build_index(
                self.workspace,
                generation=self._generation + 1,
                max_file_size_bytes=self.max_file_size_bytes,
            )
            self._generation = index.generation
            self._index = index
        return index
