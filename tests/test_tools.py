"""Tests for the tool registry and the ToolDispatcher."""

import json
import threading
from unittest.mock import MagicMock

import pytest

from mcp_workspace_server.errors import IndexBuildError, InvalidArgumentsError, ToolError
from mcp_workspace_server.models import ActivityKind, Workspace
from mcp_workspace_server.settings import WorkspaceStore
from mcp_workspace_server.tools import TOOL_NAMES, TOOLS, ToolDispatcher, _summarize, format_result


FILES = {
    "a.cs": """\
        public class Foo
        {
            public void Bar()
            {
                Baz();
            }
        }
        """,
    "b.cs": """\
        public static class Helpers
        {
            public static void Baz() { }
        }
        """,
}


@pytest.fixture
def indexer(make_indexer):
    return make_indexer(FILES)


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def store(tmp_path):
    store = WorkspaceStore(str(tmp_path / "home"))
    store.save_workspace(Workspace(name="demo", directories=[str(tmp_path / "App")]))
    store.save_workspace(Workspace(name="other", directories=[str(tmp_path)]))
    store.set_active_workspace_name("demo")
    return store


@pytest.fixture
def dispatcher(indexer, store, notifier):
    return ToolDispatcher(indexer, store, notifier)


def _kinds(notifier):
    return [c.args[0] for c in notifier.activity.call_args_list]


class TestRegistry:
    def test_tool_names_unique_and_complete(self):
        names = [t.name for t in TOOLS]
        assert len(names) == len(set(names)) == 31
        assert {"get_call_graph", "rename_symbol", "extract_method", "refresh"} <= TOOL_NAMES
        assert {
            "get_callers", "get_callees", "get_type_hierarchy", "get_dependencies",
            "delete_file", "move_file", "replace_lines", "grep_replace",
        } <= TOOL_NAMES

    def test_schemas_are_objects(self):
        for tool in TOOLS:
            assert tool.inputSchema["type"] == "object"
            assert tool.description

    def test_required_arguments_are_declared(self):
        schemas = {t.name: t.inputSchema for t in TOOLS}
        assert schemas["rename_symbol"]["required"] == ["oldName", "newName"]
        assert "preview" in schemas["rename_symbol"]["properties"]

    def test_format_result(self):
        assert format_result("text") == "text"
        assert json.loads(format_result({"a": 1})) == {"a": 1}
        assert format_result(3) == "3"


class TestDispatch:
    def test_call_graph_through_dispatcher(self, dispatcher):
        result = json.loads(dispatcher.call("get_call_graph", {"typeName": "Foo", "methodName": "Bar"}))
        assert result["callees"] == ["Baz"]
        assert result["callers"] == []

    def test_find_usages(self, dispatcher):
        result = json.loads(dispatcher.call("find_usages", {"symbolName": "Baz"}))
        assert result["count"] == 1
        assert result["usages"][0]["file"] == "App/a.cs"

    def test_semantic_query_criteria(self, dispatcher):
        result = json.loads(dispatcher.call("semantic_query", {"criteria": {"isStatic": True}}))
        assert [m["name"] for m in result["matches"]] == ["Baz"]

    def test_get_file_returns_plain_text(self, dispatcher):
        assert dispatcher.call("get_file", {"path": "App/b.cs"}).startswith("public static class Helpers")

    def test_rename_preview_defaults_to_true(self, dispatcher, tmp_path):
        result = json.loads(dispatcher.call("rename_symbol", {"oldName": "Baz", "newName": "Qux"}))
        assert result["preview"] is True
        assert result["occurrences"] == 2
        assert "Baz" in (tmp_path / "App" / "b.cs").read_text()

    def test_write_then_refresh(self, dispatcher, indexer):
        dispatcher.call("write_file", {"path": "App/c.cs", "content": "public class Extra { }\n"})
        with pytest.raises(ToolError):
            dispatcher.call("get_type", {"typeName": "Extra"})
        stats = json.loads(dispatcher.call("refresh", {}))
        assert stats["generation"] == 2
        result = json.loads(dispatcher.call("get_type", {"typeName": "Extra"}))
        assert result[0]["file"] == "App/c.cs"

    def test_refresh_failure_is_a_tool_error(self, dispatcher, indexer):
        indexer.rebuild = MagicMock(side_effect=IndexBuildError("all roots gone"))
        with pytest.raises(ToolError, match="all roots gone"):
            dispatcher.call("refresh", {})

    def test_generate_interface(self, dispatcher):
        text = dispatcher.call("generate_interface", {"className": "Foo"})
        assert "public interface IFoo" in text
        assert "void Bar();" in text

    def test_callers_and_callees(self, dispatcher):
        callers = json.loads(dispatcher.call("get_callers", {"methodName": "Baz"}))
        assert [c["caller"] for c in callers["callers"]] == ["Foo.Bar"]
        callees = json.loads(dispatcher.call("get_callees", {"methodName": "Bar", "typeName": "Foo"}))
        assert [c["callee"] for c in callees["callees"]] == ["Baz"]

    def test_type_hierarchy_and_dependencies(self, dispatcher):
        hierarchy = json.loads(dispatcher.call("get_type_hierarchy", {}))
        assert [t["name"] for t in hierarchy["types"]] == ["Foo", "Helpers"]
        deps = json.loads(dispatcher.call("get_dependencies", {"typeName": "Helpers"}))
        assert deps["usedBy"] == []

    def test_replace_lines_and_delete(self, dispatcher, tmp_path):
        result = json.loads(dispatcher.call("replace_lines", {
            "path": "App/b.cs", "startLine": 3, "endLine": 3, "newContent": "    public static void Qux() { }",
        }))
        assert result["linesInserted"] == 1
        assert "Qux" in (tmp_path / "App" / "b.cs").read_text()
        deleted = json.loads(dispatcher.call("delete_file", {"path": "App/b.cs"}))
        assert deleted["deleted"] is True
        assert not (tmp_path / "App" / "b.cs").exists()

    def test_grep_replace_preview_by_default(self, dispatcher, tmp_path):
        result = json.loads(dispatcher.call("grep_replace", {"pattern": r"Ba(z)", "replacement": "Qu$1"}))
        assert result["preview"] is True
        assert result["totalMatches"] == 2
        assert "Baz" in (tmp_path / "App" / "b.cs").read_text()

    def test_grep_replace_exclude_matches_must_be_integers(self, dispatcher):
        with pytest.raises(InvalidArgumentsError):
            dispatcher.call("grep_replace", {"pattern": "Baz", "replacement": "Q", "excludeMatches": ["1"]})

    def test_move_file_preview_by_default(self, dispatcher, tmp_path):
        result = json.loads(dispatcher.call("move_file", {"oldPath": "App/b.cs", "newPath": "App/util/b.cs"}))
        assert result["preview"] is True
        assert result["affectedFiles"] == []
        assert (tmp_path / "App" / "b.cs").exists()


class TestArguments:
    def test_missing_required(self, dispatcher):
        with pytest.raises(InvalidArgumentsError, match="typeName"):
            dispatcher.call("get_type", {})

    def test_wrong_type(self, dispatcher):
        with pytest.raises(InvalidArgumentsError):
            dispatcher.call("get_lines", {"path": "App/a.cs", "startLine": "1", "endLine": 2})

    def test_bool_is_not_an_integer(self, dispatcher):
        with pytest.raises(InvalidArgumentsError):
            dispatcher.call("get_lines", {"path": "App/a.cs", "startLine": True, "endLine": 2})

    def test_int_accepted_for_float(self, dispatcher):
        result = json.loads(dispatcher.call("clean_backups", {"maxAgeHours": 1}))
        assert result["deleted"] == 0

    def test_unknown_tool(self, dispatcher):
        with pytest.raises(ToolError) as exc_info:
            dispatcher.call("launch_rockets", {})
        assert exc_info.value.code == -32001

    def test_arguments_must_be_an_object(self, dispatcher):
        with pytest.raises(InvalidArgumentsError):
            dispatcher.call("list_files", ["*.cs"])


class TestActivity:
    def test_started_then_completed(self, dispatcher, notifier):
        dispatcher.call("list_files", {})
        assert _kinds(notifier) == [ActivityKind.STARTED, ActivityKind.COMPLETED]
        assert notifier.activity.call_args_list[1].args[2].endswith("ms")

    def test_error_event(self, dispatcher, notifier):
        with pytest.raises(ToolError):
            dispatcher.call("get_type", {"typeName": "Missing"})
        assert _kinds(notifier) == [ActivityKind.STARTED, ActivityKind.ERROR]

    def test_call_counts_reported_in_overview(self, dispatcher):
        dispatcher.call("list_files", {})
        dispatcher.call("list_files", {})
        overview = json.loads(dispatcher.call("get_project_overview", {}))
        assert overview["toolCalls"] == {"get_project_overview": 1, "list_files": 2}

    def test_call_counts_from_many_threads(self, dispatcher):
        def run():
            for _ in range(50):
                dispatcher.call("list_files", {})

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert dispatcher.call_counts() == {"list_files": 400}

    def test_summarize_hides_content(self):
        summary = _summarize({"path": "a.cs", "content": "x" * 500})
        assert summary == "path=a.cs, content=<500 chars>"


class TestWorkspaces:
    def test_list_workspaces(self, dispatcher):
        result = json.loads(dispatcher.call("list_workspaces", {}))
        assert result == {"workspaces": ["demo", "other"], "active": "demo", "serving": "demo"}

    def test_switch_workspace(self, dispatcher, store, notifier):
        result = json.loads(dispatcher.call("switch_workspace", {"name": "other"}))
        assert result["active"] == "other"
        assert result["serving"] == "demo"
        assert store.get_active_workspace_name() == "other"
        assert ActivityKind.WORKSPACE_SWITCHED in _kinds(notifier)

    def test_switch_to_unknown_workspace(self, dispatcher, store):
        with pytest.raises(ToolError, match="does not exist"):
            dispatcher.call("switch_workspace", {"name": "ghost"})
        assert store.get_active_workspace_name() == "demo"

    def test_without_store(self, indexer):
        dispatcher = ToolDispatcher(indexer)
        assert json.loads(dispatcher.call("list_workspaces", {}))["workspaces"] == ["demo"]
        with pytest.raises(ToolError):
            dispatcher.call("switch_workspace", {"name": "x"})
