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

"""Repository provider: external repositories materialized on disk.

Cloning and pulling happen elsewhere; this module only turns enabled
repository descriptors into index roots and reads their git metadata.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field

from mcp_workspace_server.models import ExternalRepository

logger = logging.getLogger(__name__)


@dataclass
class RepositoryRoot:
    """An index root contributed by an external repository."""

    name: str
    url: str
    path: str  # Absolute directory to walk
    branch: str | None = None
    head_commit: str | None = None
    exclude_paths: list[str] = field(default_factory=list)  # Relative to path

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "path": self.path,
            "branch": self.branch,
            "headCommit": self.head_commit,
        }


def _git(root_path: str, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root_path,
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode == 0:
            return result.stdout.strip()
        return None
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired):
        return None


def get_head_commit(root_path: str) -> str | None:
    """Get the current HEAD commit hash."""
    return _git(root_path, "rev-parse", "HEAD")


def get_current_branch(root_path: str) -> str | None:
    """Get the checked-out branch name (None when detached or not a repository)."""
    branch = _git(root_path, "rev-parse", "--abbrev-ref", "HEAD")
    if not branch or branch == "HEAD":
        return None
    return branch


def repository_name(repo: ExternalRepository) -> str:
    if repo.name:
        return repo.name
    tail = repo.url.rstrip("/").rsplit("/", 1)[-1]
    if tail.endswith(".git"):
        tail = tail[:-4]
    return tail or os.path.basename(os.path.normpath(repo.local_path))


def resolve_repositories(repositories: list[ExternalRepository]) -> list[RepositoryRoot]:
    """Turn enabled, materialized repositories into index roots.

    A repository with include paths contributes one root per existing
    include path; otherwise its whole local directory is one root.
    Repositories whose directory does not exist are skipped with a warning.
    """
    roots: list[RepositoryRoot] = []
    for repo in repositories:
        if not repo.enabled:
            continue
        local = os.path.abspath(os.path.expanduser(repo.local_path))
        name = repository_name(repo)
        if not os.path.isdir(local):
            logger.warning("External repository %s is not materialized at %s", name, local)
            continue

        branch = get_current_branch(local) or repo.branch
        head = get_head_commit(local)
        targets = [os.path.join(local, p) for p in repo.include_paths] or [local]
        for target in targets:
            if not os.path.isdir(target):
                logger.warning("Include path %s of repository %s does not exist", target, name)
                continue
            roots.append(RepositoryRoot(
                name=name,
                url=repo.url,
                path=target,
                branch=branch,
                head_commit=head,
                exclude_paths=[p.replace("\\", "/").strip("/") for p in repo.exclude_paths],
            ))
    return roots
