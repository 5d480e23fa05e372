import contextlib
import io
import json
import os
import tempfile
import threading
import unittest

from alnomic.cli import main
from alnomic.engine import AnalysisRun, analyze_paths, collect_source_files, default_registry
from alnomic.report import EXIT_INCOMPLETE, exit_status
from alnomic.rules import Rule


CLEAN = """
codeunit 50180 "Loyalty Setup"
{
    local procedure Initialize()
    var
        Counter: Integer;
    begin
        Counter := 0;
    end;
}
"""

WARNING = """
codeunit 50181 "Loyalty Sync"
{
    local procedure Sync()
    var
        Customer: Record Customer;
    begin
        Customer.DeleteAll();
    end;
}
"""

ERROR = """
codeunit 50182 "Loyalty Batch"
{
    local procedure Run()
    var
        Customer: Record Customer;
    begin
        if Customer.FindSet() then
            repeat
                Commit();
            until Customer.Next() = 0;
    end;
}
"""


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write(self, name: str, text: str) -> str:
        path = os.path.join(self.tmp, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def run_cli(self, *argv: str):
        stdout, stderr = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            code = main(list(argv))
        return code, stdout.getvalue(), stderr.getvalue()


class AnalyzeCommandTests(CliTestCase):
    def test_clean_file_exits_zero(self) -> None:
        code, out, err = self.run_cli("analyze", self.write("Setup.Codeunit.al", CLEAN))
        self.assertEqual(code, 0)
        self.assertEqual(out, "")
        self.assertIn("1 of 1 file(s) analyzed: 0 error(s), 0 warning(s)", err)

    def test_fail_on_threshold(self) -> None:
        path = self.write("Sync.Codeunit.al", WARNING)
        code, out, _ = self.run_cli("analyze", path)
        self.assertEqual(code, 0)
        self.assertIn("[unguarded-bulk-op]", out)
        code, _, _ = self.run_cli("analyze", path, "--fail-on", "warning")
        self.assertEqual(code, 1)

    def test_error_findings_exit_one(self) -> None:
        code, out, _ = self.run_cli("analyze", self.write("Batch.Codeunit.al", ERROR))
        self.assertEqual(code, 1)
        self.assertIn("error [commit-in-loop] Commit inside a loop splits the transaction", out)

    def test_json_output_to_file(self) -> None:
        out_path = os.path.join(self.tmp, "report.json")
        code, out, err = self.run_cli(
            "analyze", self.write("Batch.Codeunit.al", ERROR), "--format", "json", "--out", out_path
        )
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("Wrote 1 diagnostic(s)", err)
        with open(out_path, encoding="utf-8") as handle:
            payload = json.load(handle)
        self.assertEqual(payload[0]["rule_id"], "commit-in-loop")
        self.assertEqual(payload[0]["location"]["line"], 10)

    def test_missing_path_is_incomplete(self) -> None:
        code, out, err = self.run_cli("analyze", os.path.join(self.tmp, "nowhere.al"))
        self.assertEqual(code, 2)
        self.assertIn("[io-error] path does not exist", out)
        self.assertIn("Path not found", err)

    def test_configuration_problems_stop_before_analysis(self) -> None:
        path = self.write("Sync.Codeunit.al", WARNING)
        bad_config = self.write("config.yaml", "no-such-rule:\n  enabled: false\n")
        bad_rules = self.write("rules.yaml", "id: incomplete\n")
        for extra in (
            ["--rule-config", bad_config],
            ["--rules", bad_rules],
            ["--timeout", "soon"],
            ["--jobs", "0"],
        ):
            with self.subTest(extra=extra):
                code, out, err = self.run_cli("analyze", path, *extra)
                self.assertEqual(code, 2)
                self.assertEqual(out, "")
                self.assertIn("[alnomic]", err)

    def test_rule_config_and_prefix(self) -> None:
        path = self.write("Sync.Codeunit.al", WARNING)
        config = self.write("config.yaml", "unguarded-bulk-op:\n  severity: error\n")
        code, out, _ = self.run_cli("analyze", path, "--rule-config", config, "--prefix", "ABC")
        self.assertEqual(code, 1)
        self.assertIn("error [unguarded-bulk-op]", out)
        self.assertIn("does not start with the project prefix ABC", out)

    def test_custom_rules_from_the_command_line(self) -> None:
        path = self.write("Setup.Codeunit.al", CLEAN)
        rules = self.write("rules.yaml", (
            "id: no-counters\ncategory: CodeQuality\nseverity: error\nkinds: [variable]\n"
            "when: \"node.name == 'Counter'\"\nmessage: \"Variable {{ node.name }} is not allowed\"\n"
        ))
        code, out, _ = self.run_cli("analyze", path, "--rules", rules, "--jobs", "1", "--timeout", "30s")
        self.assertEqual(code, 1)
        self.assertIn("error [no-counters] Variable Counter is not allowed", out)

    def test_unknown_format_is_a_usage_error(self) -> None:
        with self.assertRaises(SystemExit) as raised:
            self.run_cli("analyze", self.tmp, "--format", "xml")
        self.assertEqual(raised.exception.code, 2)


class RulesCommandTests(CliTestCase):
    def test_lists_builtin_and_custom_rules(self) -> None:
        rules = self.write("rules.yaml", (
            "id: zz-custom\ncategory: CodeQuality\nseverity: info\nkinds: [call]\n"
            "when: \"False\"\nmessage: \"x\"\ndescription: A custom rule.\n"
        ))
        code, out, _ = self.run_cli("rules", "--rules", rules)
        self.assertEqual(code, 0)
        lines = out.splitlines()
        ids = [line.split("\t")[0] for line in lines]
        self.assertEqual(ids, sorted(ids))
        self.assertIn("commit-in-loop", ids)
        self.assertEqual(lines[-1], "zz-custom\tCodeQuality\tinfo\tcall\tA custom rule.")


class AnalyzePathsTests(CliTestCase):
    def test_directories_are_searched_recursively(self) -> None:
        self.write("src/a/Setup.Codeunit.al", CLEAN)
        self.write("src/b/Sync.Codeunit.AL", WARNING)
        self.write("src/notes.txt", "not AL")
        files, missing = collect_source_files([os.path.join(self.tmp, "src")])
        self.assertEqual([os.path.basename(f) for f in files], ["Setup.Codeunit.al", "Sync.Codeunit.AL"])
        self.assertEqual(missing, [])

        run = analyze_paths([os.path.join(self.tmp, "src")], jobs=2)
        self.assertEqual(run.files_total, 2)
        self.assertEqual(run.files_completed, 2)
        self.assertTrue(run.completed)
        self.assertEqual([d.rule_id for d in run.diagnostics], ["unguarded-bulk-op"])

    def test_same_file_twice_is_analyzed_once(self) -> None:
        path = self.write("Sync.Codeunit.al", WARNING)
        run = analyze_paths([path, path])
        self.assertEqual(run.files_total, 1)
        self.assertEqual(len(run.diagnostics), 1)

    def test_completed_flag(self) -> None:
        self.assertTrue(AnalysisRun().completed)
        self.assertFalse(AnalysisRun(io_failed=True).completed)
        self.assertFalse(AnalysisRun(files_total=3, timed_out=True).completed)
        self.assertTrue(AnalysisRun(files_total=3, files_completed=1, timed_out=True).completed)


class TimeoutTests(CliTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.release = threading.Event()
        self.addCleanup(self.release.set)
        self.started = []

        def stall(node, ctx, decl, source):
            if os.path.basename(source.path).startswith("Slow"):
                self.started.append(source.path)
                self.release.wait(10)
            return ()

        self.registry = default_registry().copy()
        self.registry.register(Rule(
            id="stall", category="CodeQuality", severity="info",
            kinds=("procedure",), message="", check=stall,
        ))

    def analyze(self):
        with contextlib.redirect_stderr(io.StringIO()) as log:
            run = analyze_paths([self.tmp], registry=self.registry, jobs=1, timeout=0.5)
        return run, log.getvalue()

    def test_finished_files_are_reported_after_a_timeout(self) -> None:
        self.write("A.Codeunit.al", WARNING)
        self.write("Slow.Codeunit.al", CLEAN)
        run, log = self.analyze()
        self.assertTrue(run.timed_out)
        self.assertEqual((run.files_completed, run.files_total), (1, 2))
        self.assertTrue(run.completed)
        self.assertEqual([d.rule_id for d in run.diagnostics], ["unguarded-bulk-op"])
        self.assertIn("Timed out after 0.5s; 1 of 2 file(s) analyzed", log)

    def test_nothing_finished_is_incomplete(self) -> None:
        self.write("Slow1.Codeunit.al", CLEAN)
        self.write("Slow2.Codeunit.al", CLEAN)
        run, _ = self.analyze()
        self.assertTrue(run.timed_out)
        self.assertEqual(run.files_completed, 0)
        self.assertFalse(run.completed)
        self.assertEqual(exit_status(run.diagnostics, completed=run.completed), EXIT_INCOMPLETE)
        # the second file was cancelled before it started
        self.assertEqual(len(self.started), 1)


if __name__ == "__main__":
    unittest.main()
