"""Tests for external repository roots and git metadata (git calls mocked)."""

import subprocess
from unittest.mock import MagicMock, patch

from mcp_workspace_server.models import ExternalRepository
from mcp_workspace_server.repositories import (
    get_current_branch,
    get_head_commit,
    repository_name,
    resolve_repositories,
)


def _completed(stdout="", returncode=0):
    result = MagicMock()
    result.stdout = stdout
    result.returncode = returncode
    return result


class TestGitMetadata:
    @patch("mcp_workspace_server.repositories.subprocess.run")
    def test_head_commit(self, mock_run):
        mock_run.return_value = _completed("abc123\n")
        assert get_head_commit("/repo") == "abc123"
        mock_run.assert_called_once_with(
            ["git", "rev-parse", "HEAD"],
            cwd="/repo",
            capture_output=True,
            text=True,
            timeout=10,
        )

    @patch("mcp_workspace_server.repositories.subprocess.run")
    def test_not_a_repo(self, mock_run):
        mock_run.return_value = _completed("", returncode=128)
        assert get_head_commit("/tmp") is None

    @patch("mcp_workspace_server.repositories.subprocess.run")
    def test_git_missing_or_slow(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        assert get_head_commit("/repo") is None
        mock_run.side_effect = subprocess.TimeoutExpired("git", 10)
        assert get_head_commit("/repo") is None

    @patch("mcp_workspace_server.repositories.subprocess.run")
    def test_detached_head_has_no_branch(self, mock_run):
        mock_run.return_value = _completed("HEAD\n")
        assert get_current_branch("/repo") is None
        mock_run.return_value = _completed("develop\n")
        assert get_current_branch("/repo") == "develop"


class TestRepositoryName:
    def test_from_url(self):
        assert repository_name(ExternalRepository(url="https://h/org/tools.git", local_path="/x")) == "tools"

    def test_explicit_name_wins(self):
        assert repository_name(ExternalRepository(url="u", local_path="/x", name="Mine")) == "Mine"

    def test_falls_back_to_directory(self):
        assert repository_name(ExternalRepository(url="", local_path="/clones/lib")) == "lib"


class TestResolveRepositories:
    @patch("mcp_workspace_server.repositories._git")
    def test_include_paths_and_metadata(self, mock_git, tmp_path):
        (tmp_path / "lib" / "src").mkdir(parents=True)
        (tmp_path / "lib" / "tests").mkdir()
        mock_git.side_effect = lambda root, *args: "feature" if "--abbrev-ref" in args else "abc123"
        repo = ExternalRepository(
            url="https://h/org/lib.git",
            local_path=str(tmp_path / "lib"),
            include_paths=["src", "tests", "missing"],
            exclude_paths=["\\src\\gen\\"],
        )
        roots = resolve_repositories([repo])
        assert [r.path for r in roots] == [str(tmp_path / "lib" / "src"), str(tmp_path / "lib" / "tests")]
        assert roots[0].branch == "feature"
        assert roots[0].head_commit == "abc123"
        assert roots[0].exclude_paths == ["src/gen"]
        assert roots[0].to_dict()["headCommit"] == "abc123"

    @patch("mcp_workspace_server.repositories._git", return_value=None)
    def test_disabled_and_missing_are_skipped(self, mock_git, tmp_path):
        (tmp_path / "on").mkdir()
        repos = [
            ExternalRepository(url="u/on", local_path=str(tmp_path / "on")),
            ExternalRepository(url="u/off", local_path=str(tmp_path / "on"), enabled=False),
            ExternalRepository(url="u/gone", local_path=str(tmp_path / "gone")),
        ]
        roots = resolve_repositories(repos)
        assert [r.name for r in roots] == ["on"]
        assert roots[0].branch == "main"
