"""Tests for the regex-based C# analyzer.

Covers:
- Comment/string masking keeps offsets
- Types: kinds, namespaces, bases, nesting, documentation
- Members: constructors, methods, properties, fields, expression bodies
- Interface members are public and abstract
- Call sites: receivers, object creation and keyword exclusion
"""

import textwrap
import time

import pytest

from mcp_workspace_server.csharp_analyzer import _mask_non_code, analyze_csharp, simple_type_name
from mcp_workspace_server.models import MemberKind, TypeKind


GREETER_SOURCE = textwrap.dedent("""\
using System;
using System.Threading.Tasks;

namespace Demo.Services
{
    /// <summary>Greets people.</summary>
    public interface IGreeter
    {
        string Greet(string name);
        int Count { get; }
    }

    public class Greeter : IGreeter
    {
        private int _count;

        public Greeter(int start)
        {
            _count = start;
        }

        public int Count { get; }

        /// <summary>Say hello.</summary>
        public string Greet(string name)
        {
            _count++;
            return Format(name);
        }

        public virtual async Task<string> GreetAsync(string name)
        {
            await Task.Delay(1);
            return Greet(name);
        }

        private static string Format(string name) => $"Hello {name}";
    }
}
""")


@pytest.fixture
def greeter():
    return analyze_csharp(GREETER_SOURCE, "App/Greeter.cs")


def _members(analysis, owner):
    return {m.name: m for m in analysis.members if m.owner_name == owner}


class TestMasking:
    def test_preserves_length_and_newlines(self):
        source = 'var s = "a { b"; // c }\n/* d\n e */ x();\n'
        masked = _mask_non_code(source)
        assert len(masked) == len(source)
        assert masked.count("\n") == source.count("\n")
        assert "{" not in masked
        assert "x();" in masked

    def test_verbatim_string_with_doubled_quotes(self):
        source = 'var p = @"C:\\""dir"" {";\nFoo();\n'
        masked = _mask_non_code(source)
        assert "{" not in masked
        assert "Foo();" in masked

    def test_preprocessor_lines_blanked(self):
        masked = _mask_non_code("#if DEBUG\nclass A {}\n#endif\n")
        assert "DEBUG" not in masked
        assert "class A" in masked

    def test_char_literals(self):
        masked = _mask_non_code("var c = '{';\nvar d = '\\'';\n")
        assert "{" not in masked


class TestTypes:
    def test_types_and_namespace(self, greeter):
        names = {t.name: t for t in greeter.types}
        assert set(names) == {"IGreeter", "Greeter"}
        assert greeter.namespace == "Demo.Services"
        assert names["IGreeter"].kind is TypeKind.INTERFACE
        assert names["Greeter"].qualified_name == "Demo.Services.Greeter"
        assert names["Greeter"].id == "App/Greeter.cs::Demo.Services.Greeter"

    def test_bases(self, greeter):
        greeter_type = next(t for t in greeter.types if t.name == "Greeter")
        assert greeter_type.bases == ("IGreeter",)

    def test_line_range(self, greeter):
        greeter_type = next(t for t in greeter.types if t.name == "Greeter")
        assert greeter_type.line_range.start == 13
        assert greeter_type.line_range.end == 38

    def test_documentation(self, greeter):
        iface = next(t for t in greeter.types if t.name == "IGreeter")
        assert iface.documentation == "Greets people."

    def test_imports(self, greeter):
        assert greeter.imports == ["System", "System.Threading.Tasks"]

    def test_nested_type_and_file_scoped_namespace(self):
        source = textwrap.dedent("""\
        namespace Demo;

        public class Outer
        {
            public class Inner
            {
                public void Run() { }
            }

            public void Go() { }
        }
        """)
        analysis = analyze_csharp(source, "x.cs")
        by_name = {t.name: t for t in analysis.types}
        assert by_name["Inner"].qualified_name == "Demo.Outer.Inner"
        assert _members(analysis, "Outer").keys() == {"Go"}
        assert _members(analysis, "Inner").keys() == {"Run"}

    def test_struct_record_and_enum(self):
        source = textwrap.dedent("""\
        public struct Point { public int X; }
        public record Person(string Name);
        public enum Color
        {
            Red,
            Green = 2,
        }
        """)
        analysis = analyze_csharp(source, "x.cs")
        kinds = {t.name: t.kind for t in analysis.types}
        assert kinds == {"Point": TypeKind.STRUCT, "Person": TypeKind.CLASS, "Color": TypeKind.ENUM}
        colors = _members(analysis, "Color")
        assert set(colors) == {"Red", "Green"}
        assert colors["Green"].kind is MemberKind.FIELD
        assert "static" in colors["Red"].modifiers

    def test_keywords_in_strings_and_comments_ignored(self):
        source = textwrap.dedent("""\
        // class Fake {
        public class Real
        {
            private string s = "class Other { }";
        }
        """)
        analysis = analyze_csharp(source, "x.cs")
        assert [t.name for t in analysis.types] == ["Real"]


class TestMembers:
    def test_member_kinds(self, greeter):
        members = _members(greeter, "Greeter")
        assert set(members) == {"_count", "Greeter", "Count", "Greet", "GreetAsync", "Format"}
        assert members["_count"].kind is MemberKind.FIELD
        assert members["Greeter"].kind is MemberKind.CONSTRUCTOR
        assert members["Count"].kind is MemberKind.PROPERTY
        assert members["Greet"].kind is MemberKind.METHOD

    def test_method_details(self, greeter):
        greet = _members(greeter, "Greeter")["Greet"]
        assert greet.return_type == "string"
        assert greet.signature == "Greet(string name)"
        assert greet.access == "public"
        assert greet.line_range.start == 25
        assert greet.line_range.end == 29
        assert greet.documentation == "Say hello."
        assert greet.body.strip().startswith("public string Greet")
        assert greet.id == "App/Greeter.cs::Demo.Services.Greeter.Greet@25"

    def test_modifiers(self, greeter):
        members = _members(greeter, "Greeter")
        assert {"virtual", "async"} <= members["GreetAsync"].modifiers
        assert members["GreetAsync"].return_type == "Task<string>"
        assert "static" in members["Format"].modifiers
        assert members["Format"].access == "private"
        assert members["_count"].access == "private"

    def test_interface_members(self, greeter):
        members = _members(greeter, "IGreeter")
        assert members["Greet"].access == "public"
        assert "abstract" in members["Greet"].modifiers
        assert members["Count"].kind is MemberKind.PROPERTY

    def test_type_member_ids(self, greeter):
        greeter_type = next(t for t in greeter.types if t.name == "Greeter")
        assert len(greeter_type.member_ids) == 6

    def test_field_with_lambda_initializer_is_a_field(self):
        source = textwrap.dedent("""\
        class A
        {
            private Func<int, int> square = x => x * x;
            public int Twice(int x) => x * 2;
        }
        """)
        members = _members(analyze_csharp(source, "a.cs"), "A")
        assert members["square"].kind is MemberKind.FIELD
        assert members["Twice"].kind is MemberKind.METHOD

    def test_generic_method_with_constraint(self):
        source = textwrap.dedent("""\
        class Repo
        {
            public T Load<T>(int id) where T : new()
            {
                return new T();
            }
        }
        """)
        load = _members(analyze_csharp(source, "r.cs"), "Repo")["Load"]
        assert load.kind is MemberKind.METHOD
        assert load.return_type == "T"
        assert [p.name for p in load.parameters] == ["id"]


class TestCallSites:
    def test_call_sites(self, greeter):
        calls = {(c.caller_name, c.callee_name) for c in greeter.call_sites}
        assert calls == {
            ("Greeter.Greet", "Format"),
            ("Greeter.GreetAsync", "Delay"),
            ("Greeter.GreetAsync", "Greet"),
        }

    def test_receiver_and_line(self, greeter):
        delay = next(c for c in greeter.call_sites if c.callee_name == "Delay")
        assert delay.receiver == "Task"
        assert delay.line == 33

    def test_object_creation_and_keywords_excluded(self):
        source = textwrap.dedent("""\
        class A
        {
            void Run()
            {
                var w = new Widget();
                var q = new Ns.Widget();
                if (Check()) { }
                var x = Build();
                int Helper() { return 1; }
                // Commented();
                var s = "Quoted()";
            }
        }
        """)
        callees = [c.callee_name for c in analyze_csharp(source, "a.cs").call_sites]
        assert sorted(callees) == ["Build", "Check"]

    def test_generated_method_with_thousands_of_calls(self):
        # Designer/migration style: one long method, one call per line
        count = 8000
        body = "\n".join(f"        this.Helper{i % 50}(x, y);" for i in range(count))
        source = f"class Form1\n{{\n    void InitializeComponent()\n    {{\n{body}\n    }}\n}}\n"
        started = time.monotonic()
        calls = analyze_csharp(source, "Form1.Designer.cs").call_sites
        elapsed = time.monotonic() - started
        assert len(calls) == count
        assert calls[-1].line == count + 4
        assert calls[-1].receiver == "this"
        assert elapsed < 5.0

    def test_long_receiver_chain_before_new(self):
        padding = " ".join(["x"] * 200)
        source = f"class A\n{{\n    void Run()\n    {{\n        // {padding}\n        var w = new Ns.Inner.Widget(); Go();\n    }}\n}}\n"
        callees = [c.callee_name for c in analyze_csharp(source, "a.cs").call_sites]
        assert callees == ["Go"]


class TestSimpleTypeName:
    @pytest.mark.parametrize("written,expected", [
        ("IGreeter", "IGreeter"),
        ("Demo.IRepo<User>", "IRepo"),
        ("int?", "int"),
    ])
    def test_simple_type_name(self, written, expected):
        assert simple_type_name(written) == expected
