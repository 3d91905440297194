import unittest

import objclint


SOURCE = """\
@implementation RWTFoo

- (void)first {
  int total = 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1 + 1;
}

- (void)second {
}

@end
"""


def boom(node, ctx):
    raise RuntimeError("boom")


def exploding_rule():
    return objclint.Rule("exploding", "always fails", "warning", ("MethodDecl",), boom)


def evaluate(source, rules, config=None, path="Sample.m"):
    unit = objclint.SourceUnit.from_text(path, source)
    root = objclint.build_model(unit)
    return objclint.evaluate(root, unit, config or objclint.Configuration(), objclint.RuleRegistry(rules))


class RuleRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = objclint.RuleRegistry()

    def test_builtin_catalogue(self) -> None:
        self.assertEqual(len(self.registry), 32)
        self.assertIn("line-length", self.registry)
        rule = self.registry.lookup("line-length")
        self.assertEqual(rule.kinds, ("FileNode",))
        self.assertEqual(rule.params, {"max_length": 120})
        self.assertEqual(rule.origin, "builtin")

    def test_rule_ids_are_unique_kebab_case(self) -> None:
        ids = [rule.id for rule in self.registry.list_rules()]
        self.assertEqual(len(ids), len(set(ids)))
        for rule_id in ids:
            self.assertRegex(rule_id, r"^[a-z]+(-[a-z]+)*$")

    def test_unknown_rule(self) -> None:
        with self.assertRaises(objclint.RuleNotFoundError):
            self.registry.lookup("no-such-rule")
        with self.assertRaises(KeyError):
            self.registry.lookup("no-such-rule")

    def test_register_rejects_duplicates_and_reserved_ids(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.register(self.registry.lookup("line-length"))
        with self.assertRaises(ValueError):
            self.registry.register(objclint.Rule("parse-error", "x", "error", ("FileNode",), boom))
        with self.assertRaises(ValueError):
            self.registry.register(objclint.Rule("odd-kind", "x", "error", ("Statement",), boom))

    def test_dispatch_table_skips_disabled_rules(self) -> None:
        config = objclint.Configuration(rules={"line-length": objclint.RuleSettings(enabled=False)})
        table = self.registry.dispatch_table(config)
        file_rules = [rule.id for rule in table["FileNode"]]
        self.assertNotIn("line-length", file_rules)
        self.assertIn("indentation", file_rules)
        self.assertEqual(file_rules, sorted(file_rules))


class EvaluateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.line_length = objclint.RuleRegistry().lookup("line-length")

    def test_failing_rule_is_isolated(self) -> None:
        findings, diagnostics = evaluate(SOURCE, [exploding_rule(), self.line_length])
        self.assertEqual([f.rule_id for f in findings], ["line-length"])
        self.assertEqual(len(diagnostics), 2)
        for diagnostic in diagnostics:
            self.assertEqual(diagnostic.rule_id, "rule-evaluation-error")
            self.assertEqual(diagnostic.severity, "error")
            self.assertEqual(diagnostic.category, "internal")
            self.assertIn("rule 'exploding' failed on MethodDecl", diagnostic.message)
            self.assertIn("RuntimeError: boom", diagnostic.message)
        self.assertEqual([d.range.start_line for d in diagnostics], [3, 7])

    def test_severity_override(self) -> None:
        config = objclint.Configuration(rules={"line-length": objclint.RuleSettings(severity="error")})
        findings, _ = evaluate(SOURCE, [self.line_length], config)
        self.assertEqual([f.severity for f in findings], ["error"])

    def test_parameter_override(self) -> None:
        config = objclint.Configuration(rules={"line-length": objclint.RuleSettings(params={"max_length": 200})})
        findings, _ = evaluate(SOURCE, [self.line_length], config)
        self.assertEqual(findings, [])

    def test_suppression_comments(self) -> None:
        long_line = "int total = " + "1 + " * 30 + "1;"
        source = (
            long_line + " // objclint:disable-line line-length\n"
            + "// objclint:disable-next-line\n"
            + long_line + "\n"
            + "// objclint:disable-next-line indentation\n"
            + long_line + "\n"
        )
        findings, _ = evaluate(source, [self.line_length])
        self.assertEqual([f.range.start_line for f in findings], [5])

    def test_suppression_never_hides_rule_failures(self) -> None:
        source = "@implementation Foo\n// objclint:disable-next-line\n- (void)run {\n}\n@end\n"
        _, diagnostics = evaluate(source, [exploding_rule()])
        self.assertEqual(len(diagnostics), 1)

    def test_evaluation_is_deterministic(self) -> None:
        rules = objclint.RuleRegistry().list_rules()
        first = evaluate(SOURCE, rules)
        second = evaluate(SOURCE, rules)
        self.assertEqual(first, second)

    def test_findings_carry_the_unit_path(self) -> None:
        findings, _ = evaluate(SOURCE, [self.line_length], path="Sources/RWTFoo.m")
        self.assertEqual({f.path for f in findings}, {"Sources/RWTFoo.m"})


class ReportTests(unittest.TestCase):
    def finding(self, path, line, rule_id="line-length", severity="warning"):
        return objclint.Finding(rule_id, severity, path, objclint.SourceRange(line, 1, line, 5), "message")

    def test_aggregate_sorts_and_deduplicates(self) -> None:
        report = objclint.aggregate(
            [self.finding("b.m", 1), self.finding("a.m", 9), self.finding("a.m", 2), self.finding("a.m", 2)],
            files_checked=2,
        )
        self.assertEqual([(f.path, f.range.start_line) for f in report.findings], [("a.m", 2), ("a.m", 9), ("b.m", 1)])

    def test_verdict_follows_threshold(self) -> None:
        findings = [self.finding("a.m", 1, severity="warning"), self.finding("a.m", 2, severity="info")]
        self.assertEqual(objclint.aggregate(findings).verdict, "Pass")
        self.assertEqual(objclint.aggregate(findings, threshold="warning").verdict, "Fail")
        self.assertEqual(objclint.aggregate(findings, threshold="warning").exit_code, 1)
        self.assertEqual(objclint.aggregate([]).exit_code, 0)
        self.assertEqual(objclint.aggregate([], interrupted=True).exit_code, 2)

    def test_diagnostics_do_not_change_the_verdict(self) -> None:
        diagnostic = self.finding("a.m", 1, rule_id="rule-evaluation-error", severity="error")
        report = objclint.aggregate([], [diagnostic])
        self.assertEqual(report.verdict, "Pass")
        self.assertEqual(report.to_json_obj()["summary"]["diagnostics"], 1)

    def test_json_summary(self) -> None:
        report = objclint.aggregate(
            [self.finding("a.m", 1, severity="error"), self.finding("a.m", 2)], files_checked=1
        )
        summary = report.to_json_obj()["summary"]
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["bySeverity"], {"error": 1, "warning": 1, "info": 0})
        self.assertEqual(summary["verdict"], "Fail")
        self.assertEqual(summary["filesChecked"], 1)
        record = report.to_json_obj()["findings"][0]
        self.assertEqual(record["range"], {"start_line": 1, "start_col": 1, "end_line": 1, "end_col": 5})
        self.assertEqual(record["category"], "style")

    def test_text_rendering(self) -> None:
        report = objclint.aggregate([self.finding("a.m", 3)])
        lines = report.render_text().splitlines()
        self.assertEqual(lines[0], "a.m:3:1: warning [line-length] message")
        self.assertEqual(lines[-1], "1 finding(s): 0 error, 1 warning, 0 info; verdict: Pass")


if __name__ == "__main__":
    unittest.main()
