"""Shared fixtures: on-disk workspaces built from {relative path: text} dicts."""

import textwrap

import pytest

from mcp_workspace_server.models import Workspace
from mcp_workspace_server.workspace_indexer import WorkspaceIndexer


@pytest.fixture
def anyio_backend():
    return "asyncio"


def write_tree(root, files: dict[str, str]) -> None:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")


@pytest.fixture
def make_indexer(tmp_path):
    """Build a one-root workspace under tmp_path/App and index it."""

    def _make(files: dict[str, str], name: str = "demo", **workspace_kwargs) -> WorkspaceIndexer:
        root = tmp_path / "App"
        root.mkdir(exist_ok=True)
        write_tree(root, files)
        workspace_kwargs.setdefault("ignored_directories", ["bin", "obj"])
        workspace = Workspace(name=name, directories=[str(root)], **workspace_kwargs)
        indexer = WorkspaceIndexer(workspace)
        indexer.rebuild()
        return indexer

    return _make
