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

"""Persisted workspace configuration and server runtime options.

Workspaces are written by the desktop UI and read here. Layout under the
application data directory (``$MCP_WORKSPACE_HOME``):

    <home>/<workspace name>/workspace.json
    <home>/active_workspace.txt

The server reads the active workspace once at startup; the UI (or the
switch_workspace tool) writes it. Nothing is shared in memory.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass

from mcp_workspace_server.errors import WorkspaceNotFoundError
from mcp_workspace_server.models import ExternalRepository, Workspace

logger = logging.getLogger(__name__)

ALWAYS_IGNORED = frozenset({".git"})
DEFAULT_EXTENSIONS = ".cs, .xaml, .py, .csproj, .sln, .slnx, .json, .md, .props, .targets"
DEFAULT_IGNORED_DIRECTORIES = "bin, obj, .vs, Properties, __pycache__, .venv"

ACTIVE_WORKSPACE_FILE = "active_workspace.txt"
WORKSPACE_FILE = "workspace.json"

_SEPARATORS = re.compile(r"[,;\s]+")


# ---------------------------------------------------------------------------
# List parsing
# ---------------------------------------------------------------------------


def parse_list(value: str | list[str] | None) -> list[str]:
    """Split a comma/semicolon/whitespace separated setting into entries."""
    if value is None:
        return []
    if isinstance(value, str):
        items = _SEPARATORS.split(value)
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def normalize_extension(ext: str) -> str:
    """``*.CS`` / ``cs`` / ``.cs`` -> ``.cs``."""
    ext = ext.strip().lower()
    if ext.startswith("*"):
        ext = ext[1:]
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


def extension_filter(extensions: list[str]) -> set[str] | None:
    """Allowed extensions as a lowercase set, or None when every extension passes."""
    normalized = {normalize_extension(e) for e in extensions}
    normalized.discard("")
    if not normalized or "." in normalized or ".*" in normalized:
        return None
    return normalized


# ---------------------------------------------------------------------------
# Workspace persistence
# ---------------------------------------------------------------------------


def default_home() -> str:
    home = os.environ.get("MCP_WORKSPACE_HOME")
    if home:
        return os.path.abspath(os.path.expanduser(home))
    return os.path.join(os.path.expanduser("~"), ".mcp-workspace-server")


def workspace_from_dict(data: dict) -> Workspace:
    """Build a Workspace from its JSON form (camelCase keys, lists or separated strings)."""
    repos = [
        ExternalRepository(
            url=r.get("url", ""),
            local_path=r.get("localPath", ""),
            name=r.get("name", ""),
            branch=r.get("branch", "main"),
            enabled=r.get("isEnabled", r.get("enabled", True)),
            include_paths=list(r.get("includePaths", [])),
            exclude_paths=list(r.get("excludePaths", [])),
        )
        for r in data.get("externalRepositories", [])
    ]
    return Workspace(
        name=data["name"],
        directories=list(data.get("directories", data.get("inputDirectories", []))),
        disabled_directories=list(data.get("disabledDirectories", [])),
        extensions=parse_list(data.get("extensions", DEFAULT_EXTENSIONS)),
        ignored_directories=parse_list(data.get("ignoredDirectories", DEFAULT_IGNORED_DIRECTORIES)),
        external_repositories=repos,
    )


def workspace_to_dict(workspace: Workspace) -> dict:
    return {
        "name": workspace.name,
        "directories": list(workspace.directories),
        "disabledDirectories": list(workspace.disabled_directories),
        "extensions": ", ".join(workspace.extensions),
        "ignoredDirectories": ", ".join(workspace.ignored_directories),
        "externalRepositories": [
            {
                "url": r.url,
                "localPath": r.local_path,
                "name": r.name,
                "branch": r.branch,
                "isEnabled": r.enabled,
                "includePaths": list(r.include_paths),
                "excludePaths": list(r.exclude_paths),
            }
            for r in workspace.external_repositories
        ],
    }


class WorkspaceStore:
    """Explicit read/write accessors for persisted workspace state."""

    def __init__(self, home: str | None = None):
        self.home = home or default_home()

    def _workspace_dir(self, name: str) -> str:
        safe = re.sub(r'[<>:"/\\|?*]', "_", name).strip()
        return os.path.join(self.home, safe)

    def list_workspaces(self) -> list[str]:
        if not os.path.isdir(self.home):
            return []
        names = []
        for entry in sorted(os.listdir(self.home)):
            path = os.path.join(self.home, entry, WORKSPACE_FILE)
            if not os.path.isfile(path):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    names.append(json.load(f).get("name", entry))
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable workspace file %s: %s", path, e)
        return names

    def load_workspace(self, name: str) -> Workspace:
        path = os.path.join(self._workspace_dir(name), WORKSPACE_FILE)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise WorkspaceNotFoundError(f"Workspace '{name}' does not exist") from None
        except (OSError, ValueError) as e:
            raise WorkspaceNotFoundError(f"Workspace '{name}' cannot be read: {e}") from e
        data.setdefault("name", name)
        return workspace_from_dict(data)

    def save_workspace(self, workspace: Workspace) -> str:
        directory = self._workspace_dir(workspace.name)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, WORKSPACE_FILE)
        _write_atomically(path, json.dumps(workspace_to_dict(workspace), indent=2))
        return path

    def get_active_workspace_name(self) -> str | None:
        path = os.path.join(self.home, ACTIVE_WORKSPACE_FILE)
        try:
            with open(path, "r", encoding="utf-8") as f:
                name = f.read().strip()
        except FileNotFoundError:
            return None
        return name or None

    def set_active_workspace_name(self, name: str) -> None:
        os.makedirs(self.home, exist_ok=True)
        _write_atomically(os.path.join(self.home, ACTIVE_WORKSPACE_FILE), name)

    def load_active_workspace(self) -> Workspace:
        name = self.get_active_workspace_name()
        if name is None:
            raise WorkspaceNotFoundError(f"No active workspace is set in {self.home}")
        return self.load_workspace(name)


def _write_atomically(path: str, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# ---------------------------------------------------------------------------
# Runtime options
# ---------------------------------------------------------------------------


TRANSPORTS = ("stdio", "pipe", "sse")


@dataclass
class ServerConfig:
    """Server runtime options. CLI flags override the environment."""

    transport: str = "stdio"
    pipe_path: str = ""
    host: str = "127.0.0.1"
    port: int = 8765
    notify_dir: str = ""
    max_file_size_bytes: int = 1_048_576
    log_level: str = "WARNING"
    home: str = ""

    def __post_init__(self) -> None:
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport '{self.transport}' (expected one of {', '.join(TRANSPORTS)})")
        if not self.notify_dir:
            self.notify_dir = tempfile.gettempdir()
        if not self.pipe_path:
            self.pipe_path = os.path.join(self.notify_dir, "mcp-workspace-server.sock")
        if not self.home:
            self.home = default_home()

    @classmethod
    def from_env(cls, **overrides) -> ServerConfig:
        env = os.environ
        values = {
            "transport": env.get("MCP_WORKSPACE_TRANSPORT", "stdio"),
            "pipe_path": env.get("MCP_WORKSPACE_PIPE", ""),
            "host": env.get("MCP_WORKSPACE_HOST", "127.0.0.1"),
            "port": int(env.get("MCP_WORKSPACE_PORT", "8765")),
            "notify_dir": env.get("MCP_WORKSPACE_NOTIFY_DIR", ""),
            "max_file_size_bytes": int(env.get("MCP_WORKSPACE_MAX_FILE_SIZE", "1048576")),
            "log_level": env.get("MCP_WORKSPACE_LOG_LEVEL", "WARNING"),
            "home": env.get("MCP_WORKSPACE_HOME", ""),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
