"""Tests for the workspace query API bound to one index snapshot."""

import pytest

from mcp_workspace_server.errors import (
    InvalidArgumentsError,
    LineRangeError,
    SymbolNotFoundError,
    ToolError,
    TypeNotFoundError,
)
from mcp_workspace_server.query_api import create_workspace_query_functions, extract_keywords


FILES = {
    "Orders/OrderService.cs": """\
        namespace Shop.Orders
        {
            public class OrderService
            {
                public Order Load(int id)
                {
                    return Find(id);
                }

                private Order Find(int id) => null;
            }
        }
        """,
    "Orders/Invoice.cs": """\
        namespace Shop.Orders
        {
            public class Invoice
            {
                public void Load() { }
            }
        }
        """,
    "Config/Settings.cs": """\
        namespace Shop.Config
        {
            public class Settings
            {
                public string Name { get; set; }
            }
        }
        """,
    "docs/guide.md": "# Guide\n\nTODO: explain Load\n",
}


@pytest.fixture
def indexer(make_indexer):
    return make_indexer(FILES)


@pytest.fixture
def q(indexer):
    return create_workspace_query_functions(indexer.index)


class TestOverviewAndFiles:
    def test_overview(self, q):
        overview = q["get_project_overview"]()
        assert overview["workspace"] == "demo"
        assert overview["files"] == 4
        assert overview["languages"] == {"csharp": 3, "other": 1}
        assert overview["typeKinds"] == {"class": 3}
        assert list(overview["roots"]) == ["App"]
        assert "analysisWarnings" not in overview

    def test_list_files_with_pattern(self, q):
        assert q["list_files"]("*.cs") == [
            "App/Config/Settings.cs",
            "App/Orders/Invoice.cs",
            "App/Orders/OrderService.cs",
        ]
        assert q["list_files"]("App/docs/*") == ["App/docs/guide.md"]
        assert q["list_files"](None, max_results=1) == ["App/Config/Settings.cs"]

    def test_get_file_reads_current_disk_content(self, q, tmp_path):
        (tmp_path / "App" / "docs" / "guide.md").write_text("changed\n")
        assert q["get_file"]("App/docs/guide.md") == "changed\n"
        assert q["get_file"]("docs/guide.md") == "changed\n"

    def test_get_file_unknown(self, q):
        with pytest.raises(ToolError):
            q["get_file"]("nope.cs")

    def test_get_file_deleted_from_disk(self, q, tmp_path):
        (tmp_path / "App" / "docs" / "guide.md").unlink()
        with pytest.raises(ToolError, match="no longer exists"):
            q["get_file"]("App/docs/guide.md")

    def test_get_lines(self, q):
        text = q["get_lines"]("App/Orders/OrderService.cs", 5, 7)
        assert text.splitlines()[0] == "5:         public Order Load(int id)"
        assert len(text.splitlines()) == 3

    def test_get_lines_clamps_end(self, q):
        text = q["get_lines"]("App/docs/guide.md", 2, 100)
        assert text.splitlines() == ["2: ", "3: TODO: explain Load"]

    @pytest.mark.parametrize("start,end", [(0, 2), (50, 60)])
    def test_get_lines_invalid(self, q, start, end):
        with pytest.raises(LineRangeError):
            q["get_lines"]("App/docs/guide.md", start, end)


    def test_form_feed_is_not_a_line_break(self, make_indexer):
        q = create_workspace_query_functions(make_indexer({"notes.md": "a\x0cb\nsecond\n"}).index)
        [match] = q["search_content"]("second")["matches"]
        assert match["line"] == 2
        assert match["before"] == ["a\x0cb"]
        assert q["get_lines"]("App/notes.md", 2, 2) == "2: second"


class TestTypesAndMethods:
    def test_get_type(self, q):
        [data] = q["get_type"]("OrderService")
        assert data["qualifiedName"] == "Shop.Orders.OrderService"
        assert [m["name"] for m in data["members"]] == ["Load", "Find"]

    def test_get_type_unknown(self, q):
        with pytest.raises(TypeNotFoundError):
            q["get_type"]("Nope")

    def test_get_method_body(self, q):
        result = q["get_method_body"]("Find")
        [match] = result["matches"]
        assert match["body"].strip() == "private Order Find(int id) => null;"
        assert match["type"] == "OrderService"

    def test_ambiguous_method_lists_candidates(self, q):
        with pytest.raises(ToolError) as exc_info:
            q["get_method_body"]("Load")
        assert "OrderService.Load" in exc_info.value.message
        assert "Invoice.Load" in exc_info.value.message

    def test_method_with_type(self, q):
        result = q["get_method_body"]("Load", "Invoice")
        assert result["matches"][0]["file"] == "App/Orders/Invoice.cs"

    def test_method_not_found(self, q):
        with pytest.raises(SymbolNotFoundError):
            q["get_method_body"]("Load", "Settings")


class TestSearch:
    def test_literal_search_with_context(self, q):
        result = q["search_content"]("explain", is_regex=False, context_lines=1)
        [match] = result["matches"]
        assert match["file"] == "App/docs/guide.md"
        assert match["line"] == 3
        assert match["before"] == [""]
        assert result["truncated"] is False
        assert result["filesSearched"] == 4

    def test_case_sensitivity(self, q):
        assert q["search_content"]("LOAD", case_sensitive=True)["matches"] == []
        assert len(q["search_content"]("LOAD")["matches"]) == 3

    def test_truncation(self, q):
        result = q["search_content"]("namespace", max_results=2)
        assert len(result["matches"]) == 2
        assert result["truncated"] is True

    def test_invalid_regex(self, q):
        with pytest.raises(InvalidArgumentsError):
            q["search_content"]("(")

    def test_searches_the_snapshot(self, q, tmp_path):
        (tmp_path / "App" / "docs" / "guide.md").write_text("nothing\n")
        assert len(q["search_content"]("explain")["matches"]) == 1


class TestContextForTask:
    def test_extract_keywords(self):
        keywords = extract_keywords("Fix the OrderService config loading for 'invoice'")
        assert "OrderService" in keywords
        assert "config" in keywords
        assert "invoice" in keywords

    def test_ranks_by_file_and_type_names(self, q):
        result = q["get_context_for_task"]("Change how OrderService loads orders")
        assert result["files"][0]["file"] == "App/Orders/OrderService.cs"
        assert result["totalTokens"] == sum(f["estimatedTokens"] for f in result["files"])

    def test_respects_token_budget(self, q):
        result = q["get_context_for_task"]("OrderService Invoice Settings", max_tokens=1)
        assert len(result["files"]) == 1

    def test_respects_max_files(self, q):
        result = q["get_context_for_task"]("OrderService Invoice Settings", max_files=2)
        assert len(result["files"]) == 2

    def test_empty_task(self, q):
        with pytest.raises(InvalidArgumentsError):
            q["get_context_for_task"]("  ")


class TestSemanticWrappers:
    def test_find_usages(self, q):
        result = q["find_usages"]("Find")
        assert result["count"] == 1
        assert result["usages"][0]["caller"] == "OrderService.Load"

    def test_call_graph(self, q):
        result = q["get_call_graph"]("OrderService", "Load")
        assert result["callees"] == ["Find"]
        assert result["definitions"] == ["App/Orders/OrderService.cs:5"]

    def test_find_implementations_empty(self, q):
        assert q["find_implementations"]("IOrderService")["implementations"] == []

    def test_semantic_query_limit(self, q):
        result = q["semantic_query"]({"memberKind": "method"}, max_results=1)
        assert result["totalMatches"] == 3
        assert len(result["matches"]) == 1

    def test_callers_and_callees(self, q):
        callers = q["get_callers"]("Find")
        assert callers["count"] == 1
        assert callers["callers"][0]["caller"] == "OrderService.Load"
        assert callers["upstream"] == {}
        callees = q["get_callees"]("Load", "OrderService")
        assert [c["callee"] for c in callees["callees"]] == ["Find"]

    def test_type_hierarchy(self, q):
        result = q["get_type_hierarchy"]()
        assert result["root"] is None
        assert result["count"] == 3
        assert q["get_type_hierarchy"]("Invoice")["types"][0]["file"] == "App/Orders/Invoice.cs"

    def test_dependencies(self, q):
        deps = q["get_dependencies"]("OrderService")
        assert deps["uses"] == []
        assert deps["definitions"] == ["App/Orders/OrderService.cs:3"]
