import contextlib
import io
import json
import os
import tempfile
import threading
import unittest
from unittest import mock

import objclint


STYLED = """\
#import <Foundation/Foundation.h>

#define RWTFadeTime 0.2

@interface RWTFoo : NSObject
@property (strong, nonatomic, nullable) NSString *title;
@end
"""

TRUNCATED = """\
@implementation RWTBar
- (void)run {
  if (ready) {
"""


def run_cli(*argv):
    """Invoke main(); returns (exit code, stdout, stderr)."""
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = objclint.main(list(argv))
    return code, out.getvalue(), err.getvalue()


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = self.tmp.name

    def write(self, relative, content):
        path = os.path.join(self.root, relative)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        mode = "wb" if isinstance(content, bytes) else "w"
        with open(path, mode) as f:
            f.write(content)
        return path


class CheckCommandTests(CliTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.good = self.write("src/RWTFoo.m", STYLED)
        self.bad = self.write("src/RWTBar.m", TRUNCATED)
        self.src = os.path.join(self.root, "src")

    def check_json(self, *extra):
        out = os.path.join(self.root, "report.json")
        code, _, _ = run_cli("check", self.src, "--format", "json", "--out", out, *extra)
        with open(out, encoding="utf-8") as f:
            return code, json.load(f)

    def test_report_for_a_good_and_a_broken_file(self) -> None:
        code, report = self.check_json()
        self.assertEqual(code, 1)
        by_path = {}
        for record in report["findings"]:
            by_path.setdefault(record["path"], []).append(record)
        self.assertGreaterEqual(len(by_path[os.path.normpath(self.good)]), 1)
        broken = by_path[os.path.normpath(self.bad)]
        self.assertEqual([record["rule_id"] for record in broken], ["parse-error"])
        self.assertEqual(broken[0]["category"], "parse")
        self.assertEqual(report["summary"]["verdict"], "Fail")
        self.assertEqual(report["summary"]["filesChecked"], 2)
        self.assertEqual(report["tool"], "objclint")

    def test_findings_are_ordered(self) -> None:
        _, report = self.check_json()
        keys = [
            (r["path"], r["range"]["start_line"], r["range"]["start_col"], r["rule_id"]) for r in report["findings"]
        ]
        self.assertEqual(keys, sorted(keys))

    def test_repeated_runs_are_identical(self) -> None:
        self.assertEqual(self.check_json(), self.check_json())

    def test_worker_count_does_not_change_the_report(self) -> None:
        self.assertEqual(self.check_json("--jobs", "1"), self.check_json("--jobs", "4"))

    def test_severity_threshold(self) -> None:
        code, _, _ = run_cli("check", self.good)
        self.assertEqual(code, 0)
        code, stdout, _ = run_cli("check", self.good, "--severity-threshold", "warning")
        self.assertEqual(code, 1)
        self.assertIn("[define-constant]", stdout)
        self.assertTrue(stdout.rstrip().endswith("verdict: Fail"))

    def test_configuration_errors_exit_with_two(self) -> None:
        config = self.write("objclint.yaml", "rules:\n  no-such-rule: true\n")
        code, stdout, stderr = run_cli("check", self.src, "--config", config)
        self.assertEqual(code, 2)
        self.assertEqual(stdout, "")
        self.assertIn("unknown rule id 'no-such-rule'", stderr)
        code, _, stderr = run_cli("check", self.src, "--config", os.path.join(self.root, "absent.yaml"))
        self.assertEqual(code, 2)
        self.assertIn("configuration file not found", stderr)

    def test_configuration_applies_to_the_run(self) -> None:
        config = self.write(
            "objclint.yaml",
            "rules:\n  define-constant:\n    severity: error\n",
        )
        code, stdout, _ = run_cli("check", self.good, "--config", config)
        self.assertEqual(code, 1)
        self.assertIn("error [define-constant]", stdout)

    def test_unwritable_output(self) -> None:
        out = os.path.join(self.root, "missing-dir", "report.txt")
        code, _, stderr = run_cli("check", self.good, "--out", out)
        self.assertEqual(code, 2)
        self.assertIn("cannot write report", stderr)


class RulesCommandTests(CliTestCase):
    def test_lists_builtin_rules(self) -> None:
        code, stdout, _ = run_cli("rules", "--format", "json")
        self.assertEqual(code, 0)
        records = json.loads(stdout)
        self.assertEqual(len(records), 32)
        self.assertEqual([r["id"] for r in records], sorted(r["id"] for r in records))
        self.assertTrue(all(r["enabled"] for r in records))

    def test_reflects_configuration(self) -> None:
        config = self.write(
            "objclint.yaml",
            "rules:\n  line-length: false\n"
            "custom_rules:\n"
            "  - id: short-class-names\n"
            "    kind: ClassDecl\n"
            "    assert: len(node.name) < 30\n"
            "    message: class name too long\n",
        )
        code, stdout, _ = run_cli("rules", "--config", config)
        self.assertEqual(code, 0)
        lines = {line.split()[0]: line for line in stdout.splitlines()}
        self.assertIn("short-class-names", lines)
        self.assertTrue(lines["line-length"].endswith("(disabled)"))


class PipelineTests(CliTestCase):
    def test_collect_source_files(self) -> None:
        for name in ("a.m", "b.h", "c.txt", "sub/d.mm", "Pods/x.m"):
            self.write(name, "int a;\n")
        found = objclint.collect_source_files([self.root], exclude=["Pods/*"])
        self.assertEqual(
            [os.path.relpath(path, self.root) for path in found],
            ["a.m", "b.h", os.path.join("sub", "d.mm")],
        )

    def test_explicit_files_are_always_checked(self) -> None:
        path = self.write("notes.txt", "int a;\n")
        self.assertEqual(objclint.collect_source_files([path]), [os.path.normpath(path)])

    def test_missing_file_is_an_io_error(self) -> None:
        missing = os.path.join(self.root, "Gone.m")
        report = objclint.check_paths([missing])
        self.assertEqual([f.rule_id for f in report.findings], ["io-error"])
        self.assertEqual(report.findings[0].category, "io")
        self.assertEqual(report.exit_code, 1)

    def test_undecodable_file_is_an_io_error(self) -> None:
        path = self.write("Latin.m", b'NSString *s = @"caf\xe9";\n')
        report = objclint.check_paths([path])
        self.assertEqual([f.rule_id for f in report.findings], ["io-error"])
        self.assertIn("cannot decode file as utf-8", report.findings[0].message)
        latin = objclint.Configuration(encoding="latin-1")
        report = objclint.check_paths([path], latin)
        self.assertNotIn("io-error", {f.rule_id for f in report.findings})

    def test_builder_crash_is_contained_to_its_file(self) -> None:
        broken = self.write("Broken.m", "int a;\n")
        fine = self.write("Fine.m", "int b;\n")
        real_build = objclint.build_model

        def build(unit, max_depth=objclint.DEFAULT_MAX_NESTING_DEPTH):
            if unit.path.endswith("Broken.m"):
                raise IndexError("list index out of range")
            return real_build(unit, max_depth)

        err = io.StringIO()
        with mock.patch.object(objclint, "build_model", side_effect=build), contextlib.redirect_stderr(err):
            report = objclint.check_paths([broken, fine], jobs=2)
        self.assertEqual(report.files_checked, 2)
        by_path = {}
        for finding in report.findings:
            by_path.setdefault(finding.path, []).append(finding)
        [crash] = by_path[os.path.normpath(broken)]
        self.assertEqual(crash.rule_id, "parse-error")
        self.assertIn("IndexError", crash.message)
        self.assertNotIn("parse-error", {f.rule_id for f in by_path.get(os.path.normpath(fine), [])})
        self.assertEqual(report.exit_code, 1)
        self.assertIn("model builder failed", err.getvalue())

    def test_cancelled_run_is_interrupted(self) -> None:
        path = self.write("a.m", "int a;\n")
        cancel = threading.Event()
        cancel.set()
        report = objclint.check_paths([path], cancel_event=cancel)
        self.assertTrue(report.interrupted)
        self.assertEqual(report.files_checked, 0)
        self.assertEqual(report.exit_code, 2)

    def test_empty_input(self) -> None:
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            report = objclint.check_paths([self.root])
        self.assertEqual(report.findings, [])
        self.assertEqual(report.exit_code, 0)
        self.assertIn("no source files found", err.getvalue())


if __name__ == "__main__":
    unittest.main()
