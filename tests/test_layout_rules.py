import textwrap
import unittest

import objclint


def run_rule(source, rule_id, path="Sample.m", **params):
    """Evaluate one built-in rule over `source`; returns (findings, diagnostics)."""
    unit = objclint.SourceUnit.from_text(path, textwrap.dedent(source))
    root = objclint.build_model(unit)
    registry = objclint.RuleRegistry([objclint.RuleRegistry().lookup(rule_id)])
    settings = {rule_id: objclint.RuleSettings(params=params)} if params else {}
    return objclint.evaluate(root, unit, objclint.Configuration(rules=settings), registry)


class RuleTestCase(unittest.TestCase):
    rule_id = ""

    def findings(self, source, path="Sample.m", **params):
        findings, diagnostics = run_rule(source, self.rule_id, path, **params)
        self.assertEqual(diagnostics, [])
        for finding in findings:
            self.assertEqual(finding.rule_id, self.rule_id)
        return findings

    def lines(self, source, path="Sample.m", **params):
        return sorted(finding.range.start_line for finding in self.findings(source, path, **params))


class BracePlacementTests(RuleTestCase):
    rule_id = "brace-placement"

    def test_conforming_layout(self) -> None:
        source = """\
            @implementation Foo
            - (void)run {
              if (x) {
                [self a];
              } else {
                [self b];
              }
            }
            @end
            """
        self.assertEqual(self.findings(source), [])

    def test_misplaced_braces(self) -> None:
        source = """\
            @implementation Foo
            - (void)run
            {
              if (x) {
                [self a]; }
              else {
                [self b];
              }
            }
            @end
            """
        self.assertEqual(self.lines(source), [3, 5, 6])

    def test_else_suggestion(self) -> None:
        source = """\
            void f(int x) {
              if (x) {
                g();
              }
              else {
                h();
              }
            }
            """
        findings = self.findings(source)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].suggestion, "} else")


class LineLengthTests(RuleTestCase):
    rule_id = "line-length"

    def test_long_line(self) -> None:
        source = "int a;\n// " + "x" * 130 + "\n"
        findings = self.findings(source)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].range, objclint.SourceRange(2, 121, 2, 134))

    def test_configured_limit(self) -> None:
        source = "// " + "x" * 130 + "\n"
        self.assertEqual(self.findings(source, max_length=200), [])


class BlankLineBetweenMethodsTests(RuleTestCase):
    rule_id = "blank-line-between-methods"

    def test_missing_and_doubled_blank_lines(self) -> None:
        source = """\
            @implementation Foo
            - (void)a {
            }
            - (void)b {
            }


            - (void)c {
            }

            - (void)d {
            }
            @end
            """
        self.assertEqual(self.lines(source), [4, 7])


class IndentationTests(RuleTestCase):
    rule_id = "indentation"

    def test_conforming_indentation(self) -> None:
        source = """\
            @implementation Foo

            - (void)foo {
              if (x) {
                [self bar];
              }
              switch (y) {
                case 1:
                  z();
                  break;
                default:
                  break;
              }
              [self showMessage:1
                      withTitle:2];
            }

            @end
            """
        self.assertEqual(self.findings(source), [])

    def test_wrong_width_and_tabs(self) -> None:
        source = "@implementation Foo\n- (void)foo {\n    [self bar];\n\t[self baz];\n}\n@end\n"
        findings = self.findings(source)
        self.assertEqual(sorted(f.range.start_line for f in findings), [3, 4])
        by_line = {f.range.start_line: f.message for f in findings}
        self.assertIn("expected indentation of 2 spaces, found 4", by_line[3])
        self.assertIn("tabs", by_line[4])

    def test_configured_width(self) -> None:
        source = "void f() {\n    g();\n}\n"
        self.assertEqual(self.findings(source, width=4), [])


class PragmaMarkTests(RuleTestCase):
    rule_id = "pragma-mark"

    def test_missing_marks(self) -> None:
        source = """\
            @implementation Foo
            - (void)a {
            }

            - (void)b {
            }

            - (void)c {
            }
            @end
            """
        findings = self.findings(source)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].severity, "info")

    def test_separator_and_order(self) -> None:
        source = """\
            @implementation Foo

            #pragma mark - Private

            - (void)a {
            }

            #pragma mark Lifecycle

            - (void)b {
            }

            - (void)c {
            }
            @end
            """
        findings = self.findings(source)
        self.assertEqual(len(findings), 2)
        self.assertIn("#pragma mark - Lifecycle", [f.suggestion for f in findings])
        self.assertTrue(any("should come before 'Private'" in f.message for f in findings))

    def test_interface_is_ignored(self) -> None:
        source = """\
            @interface Foo : NSObject
            - (void)a;
            - (void)b;
            - (void)c;
            @end
            """
        self.assertEqual(self.findings(source, path="Foo.h"), [])


class ColonAlignmentTests(RuleTestCase):
    rule_id = "colon-alignment"

    def test_alignment(self) -> None:
        source = """\
            @implementation Foo
            - (void)run {
              [self showMessage:@"hi"
                      withTitle:@"Title"
                       andDelay:2];
              [self showMessage:@"hi"
                    withTitle:@"Title"];
              [UIView animateWithDuration:1.0
                               animations:^{
                self.view.alpha = 0;
              }
              completion:nil];
            }
            @end
            """
        self.assertEqual(self.lines(source), [7])


if __name__ == "__main__":
    unittest.main()
