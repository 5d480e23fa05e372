import contextlib
import io
import json
import os
import tempfile
import unittest

import alnomic
from alnomic.config import ConfigError, load_rule_config, parse_duration, parse_rule_config
from alnomic.custom import load_custom_rules
from alnomic.expressions import ExpressionEvalError, ExpressionInterpreter, base_environment, safe_callable
from alnomic.model import Call, Name, Span


BROKEN = "codeunit 1 X { trigger OnRun() begin X := ; end; }"

CODEUNIT = """
codeunit 50170 "Loyalty Posting"
{
    local procedure Post()
    var
        Customer: Record Customer;
    begin
        Message('Posting');
        while Customer.Next() <> 0 do
            Customer.Get('10000');
    end;
}
"""


class RuleConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = alnomic.default_registry()

    def test_empty_document_means_defaults(self) -> None:
        settings = parse_rule_config(None, self.registry)
        self.assertTrue(settings.is_enabled("naming"))
        self.assertEqual(settings.severity_for("naming", "warning"), "warning")

    def test_enable_severity_and_options(self) -> None:
        settings = parse_rule_config(
            {
                "missing-doc": {"enabled": False},
                "naming": {"severity-override": "INFO"},
                "nested-conditionals": {"options": {"max_depth": 5}},
            },
            self.registry,
        )
        self.assertFalse(settings.is_enabled("missing-doc"))
        self.assertEqual(settings.severity_for("naming", "warning"), "info")
        self.assertEqual(settings.options_for(self.registry.get("nested-conditionals")), {"max_depth": 5})
        naming_options = settings.options_for(self.registry.get("naming"))
        self.assertEqual(naming_options["error_suffix"], "Err")

    def test_invalid_documents_are_rejected(self) -> None:
        bad_documents = [
            ["naming"],
            {"no-such-rule": {}},
            {"naming": "off"},
            {"naming": {"colour": "red"}},
            {"naming": {"enabled": "yes"}},
            {"naming": {"severity": "fatal"}},
            {"naming": {"options": {"unknown_option": 1}}},
            {"nested-conditionals": {"options": {"max_depth": "3"}}},
            {"nested-conditionals": {"options": {"max_depth": True}}},
            {"naming": {"options": {"label_suffixes": "Lbl"}}},
            {"syntax-error": {"options": {"anything": 1}}},
        ]
        for document in bad_documents:
            with self.subTest(document=document):
                with self.assertRaises(ConfigError):
                    parse_rule_config(document, self.registry)

    def test_engine_diagnostics_can_be_reconfigured(self) -> None:
        settings = parse_rule_config({"syntax-error": {"severity": "warning"}}, self.registry)
        diagnostics = alnomic.analyze_source(BROKEN, settings=settings)
        self.assertEqual([(d.rule_id, d.severity) for d in diagnostics], [("syntax-error", "warning")])

        settings = parse_rule_config({"syntax-error": {"enabled": False}}, self.registry)
        self.assertEqual(alnomic.analyze_source(BROKEN, settings=settings), [])

    def test_load_from_json_and_yaml_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            json_path = os.path.join(tmp, "rules.json")
            with open(json_path, "w", encoding="utf-8") as handle:
                json.dump({"lookup-in-loop": {"severity": "error"}}, handle)
            settings = load_rule_config(json_path)
            self.assertEqual(settings.severity_for("lookup-in-loop", "warning"), "error")

            yaml_path = os.path.join(tmp, "rules.yaml")
            with open(yaml_path, "w", encoding="utf-8") as handle:
                handle.write("rule-in-page:\n  options:\n    max_logic_statements: 2\n")
            settings = load_rule_config(yaml_path)
            self.assertEqual(settings.rules["rule-in-page"].options, {"max_logic_statements": 2})

            broken_path = os.path.join(tmp, "broken.yaml")
            with open(broken_path, "w", encoding="utf-8") as handle:
                handle.write("naming: [unclosed\n")
            with self.assertRaises(ConfigError):
                load_rule_config(broken_path)

            with self.assertRaises(ConfigError):
                load_rule_config(os.path.join(tmp, "missing.yaml"))


class DurationTests(unittest.TestCase):
    def test_units(self) -> None:
        self.assertAlmostEqual(parse_duration("500ms"), 0.5)
        self.assertEqual(parse_duration("30s"), 30.0)
        self.assertEqual(parse_duration("2m"), 120.0)
        self.assertEqual(parse_duration("1h"), 3600.0)
        self.assertEqual(parse_duration("1.5"), 1.5)

    def test_invalid_durations(self) -> None:
        for text in ("", "fast", "10d", "0s", "-1s"):
            with self.subTest(text=text):
                with self.assertRaises(ConfigError):
                    parse_duration(text)


class CustomRuleTests(unittest.TestCase):
    def write(self, tmp: str, name: str, text: str) -> str:
        path = os.path.join(tmp, name)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def test_declarative_rules_run_with_the_builtins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = self.write(tmp, "custom.yaml", (
                "id: no-message-in-codeunits\n"
                "category: CodeQuality\n"
                "severity: info\n"
                "kinds: [call]\n"
                "when: \"decl.declaration_kind == 'process_unit' and method(node) == 'message'\"\n"
                "message: \"{{ callee(node) }} in codeunit {{ decl.name }}\"\n"
                "description: Codeunits run unattended.\n"
                "---\n"
                "rules:\n"
                "  - id: get-in-while\n"
                "    category: Performance\n"
                "    severity: warning\n"
                "    kinds: call\n"
                "    when: \"ctx.in_loop and method(node) == 'get' and ctx.is_record(receiver(node))\"\n"
                "    message: \"{{ receiver(node) }} looked up at loop depth {{ ctx.loop_depth }}\"\n"
            ))
            registry = load_custom_rules([path], alnomic.default_registry())

        self.assertIn("no-message-in-codeunits", registry)
        self.assertNotIn("no-message-in-codeunits", alnomic.default_registry())
        self.assertTrue(registry.get("get-in-while").custom)
        self.assertEqual(registry.get("no-message-in-codeunits").description, "Codeunits run unattended.")

        diagnostics = alnomic.analyze_source(CODEUNIT, registry=registry)
        by_rule = {d.rule_id: d for d in diagnostics}
        self.assertEqual(by_rule["no-message-in-codeunits"].message, "Message in codeunit Loyalty Posting")
        self.assertEqual(by_rule["no-message-in-codeunits"].severity, "info")
        self.assertEqual(by_rule["get-in-while"].message, "Customer looked up at loop depth 1")
        self.assertIn("lookup-in-loop", by_rule)

    def test_invalid_rule_files(self) -> None:
        base = (
            "id: custom-one\ncategory: CodeQuality\nseverity: warning\n"
            "kinds: [call]\nwhen: \"True\"\nmessage: \"x\"\n"
        )
        bad_files = {
            "missing-field": "id: custom-one\ncategory: CodeQuality\n",
            "category": base.replace("CodeQuality", "Style"),
            "severity": base.replace("severity: warning", "severity: fatal"),
            "kind": base.replace("[call]", "[statement]"),
            "syntax": base.replace("\"True\"", "\"node.(\""),
            "template": base.replace("message: \"x\"", "message: \"{{ node. }}\""),
            "builtin-id": base.replace("custom-one", "naming"),
            "engine-id": base.replace("custom-one", "io-error"),
            "duplicate": base + "---\n" + base,
            "not-a-mapping": "- 1\n- 2\n",
            "yaml": "id: [unclosed\n",
        }
        with tempfile.TemporaryDirectory() as tmp:
            for name, text in bad_files.items():
                with self.subTest(name=name):
                    path = self.write(tmp, name + ".yaml", text)
                    with self.assertRaises(ConfigError):
                        load_custom_rules([path], alnomic.default_registry())
            with self.assertRaises(ConfigError):
                load_custom_rules([os.path.join(tmp, "absent.yaml")], alnomic.default_registry())

    def test_failing_expression_is_an_internal_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = self.write(tmp, "bad.yaml", (
                "id: broken-expression\ncategory: CodeQuality\nseverity: warning\n"
                "kinds: [procedure]\nwhen: \"node.no_such_attribute\"\nmessage: \"x\"\n"
            ))
            registry = load_custom_rules([path], alnomic.default_registry())

        with contextlib.redirect_stderr(io.StringIO()):
            diagnostics = alnomic.analyze_source(CODEUNIT, registry=registry)
        internal = [d for d in diagnostics if d.rule_id == "internal-error"]
        self.assertEqual(len(internal), 1)
        self.assertIn("broken-expression", internal[0].message)

    def test_rules_cannot_edit_the_model(self) -> None:
        source = (
            "codeunit 50171 \"Loyalty First\"\n{\n    procedure First()\n    begin\n    end;\n}\n"
            "codeunit 50172 \"Loyalty Second\"\n{\n    procedure Second()\n    begin\n    end;\n}\n"
        )
        with tempfile.TemporaryDirectory() as tmp:
            path = self.write(tmp, "mutate.yaml", (
                "id: drop-declarations\ncategory: CodeQuality\nseverity: warning\n"
                "kinds: [procedure]\nwhen: \"source.declarations.clear() or False\"\nmessage: \"x\"\n"
            ))
            registry = load_custom_rules([path], alnomic.default_registry())

        with contextlib.redirect_stderr(io.StringIO()):
            diagnostics = alnomic.analyze_source(source, registry=registry)
        self.assertEqual([d.rule_id for d in diagnostics].count("missing-doc"), 2)
        internal = [d for d in diagnostics if d.rule_id == "internal-error"]
        self.assertEqual(len(internal), 2)
        self.assertIn("method 'clear' is not allowed", internal[0].message)


class ExpressionInterpreterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.interpreter = ExpressionInterpreter()
        span = Span(1, 1, 1, 10)
        call = Call(callee=Name(name="Commit", span=span), args=[], span=span)
        self.env = base_environment({"node": call, "values": [3, 1, 2]})

    def evaluate(self, expr: str):
        return self.interpreter.evaluate(expr, self.env)

    def test_supported_constructs(self) -> None:
        self.assertTrue(self.evaluate("method(node) == 'commit' and node.is_global"))
        self.assertEqual(self.evaluate("callee(node)"), "Commit")
        self.assertEqual(self.evaluate("sorted(values)[0:2]"), [1, 2])
        self.assertEqual(self.evaluate("[v * 2 for v in values if v > 1]"), [6, 4])
        self.assertEqual(self.evaluate("{v: v + 1 for v in values}"), {3: 4, 1: 2, 2: 3})
        self.assertTrue(self.evaluate("any(v == 2 for v in values)"))
        self.assertEqual(self.evaluate("'yes' if len(values) == 3 else 'no'"), "yes")
        self.assertEqual(self.evaluate("lower(node.callee.name)"), "commit")
        self.assertTrue(self.evaluate(""))

    def test_unsafe_constructs_are_refused(self) -> None:
        refused = [
            "node.__class__",
            "node._private",
            "open('/etc/passwd')",
            "'{0.__class__}'.format(node)",
            "(lambda: 1)()",
            "undefined_name",
            "1 / 0",
            "values[10]",
        ]
        for expr in refused:
            with self.subTest(expr=expr):
                with self.assertRaises(ExpressionEvalError):
                    self.evaluate(expr)

    def test_container_mutators_are_refused(self) -> None:
        for expr in ("values.append(4)", "values.clear()", "node.args.append(node)", "{}.update(a=1)"):
            with self.subTest(expr=expr):
                with self.assertRaises(ExpressionEvalError):
                    self.evaluate(expr)
        self.assertEqual(self.env["values"], [3, 1, 2])
        self.assertEqual(self.evaluate("node.callee.name.lower()"), "commit")
        self.assertEqual(self.evaluate("values.count(3) + values.index(2)"), 3)
        self.assertEqual(self.evaluate("{'a': 1}.get('b', 0)"), 0)

    def test_only_marked_callables_can_be_called(self) -> None:
        env = dict(self.env, plain=lambda: 1, marked=safe_callable(lambda: 2))
        with self.assertRaises(ExpressionEvalError):
            self.interpreter.evaluate("plain()", env)
        self.assertEqual(self.interpreter.evaluate("marked()", env), 2)

    def test_invalid_syntax(self) -> None:
        with self.assertRaises(ExpressionEvalError):
            self.interpreter.compile("node.(")


if __name__ == "__main__":
    unittest.main()
