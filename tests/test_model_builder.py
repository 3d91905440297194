import codecs
import os
import tempfile
import unittest

import objclint


SAMPLE = """\
#import <UIKit/UIKit.h>

typedef NS_ENUM(NSInteger, RWTLeftMenuTopItemType) {
  RWTLeftMenuTopItemMain,
  RWTLeftMenuTopItemShows,
  RWTLeftMenuTopItemSchedule
};

static NSString * const RWTAboutViewControllerCompanyName = @"RayWenderlich.com";

@interface RWTTutorial () <UITableViewDelegate>
@property (strong, nonatomic, nullable) NSString *tutorialName;
@end

@implementation RWTTutorial

#pragma mark - Lifecycle

- (instancetype)initWithName:(NSString *)name count:(NSInteger)count {
  self = [super init];
  if (self) {
    _name = name;
  }
  return self;
}

- (void)update {
  switch (self.type) {
    case RWTLeftMenuTopItemMain:
      [self showMain];
      break;
    default:
      break;
  }
  NSArray *items = @[@"a", @"b"];
  [UIView animateWithDuration:1.0 animations:^{
    self.view.alpha = 0;
  }];
}

@end
"""


def build(text, path="Sample.m", max_depth=objclint.DEFAULT_MAX_NESTING_DEPTH):
    return objclint.build_model(objclint.SourceUnit.from_text(path, text), max_depth)


class ModelBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = build(SAMPLE)

    def test_top_level_structure(self) -> None:
        self.assertEqual(self.root.kind, "FileNode")
        self.assertEqual(
            [child.kind for child in self.root.children],
            ["Directive", "EnumDecl", "ConstantDecl", "ClassDecl", "ClassDecl"],
        )

    def test_class_extension(self) -> None:
        extension = self.root.children[3]
        self.assertEqual(extension.name, "RWTTutorial")
        self.assertTrue(extension.is_extension)
        self.assertFalse(extension.is_implementation)
        self.assertEqual(extension.protocols, ["UITableViewDelegate"])

    def test_property(self) -> None:
        prop = self.root.find_all("PropertyDecl")[0]
        self.assertEqual(prop.name, "tutorialName")
        self.assertEqual(prop.attributes, ["strong", "nonatomic", "nullable"])
        self.assertEqual(prop.nullability, "nullable")
        self.assertEqual(prop.base_type, "NSString")
        self.assertIs(prop.parent, self.root.children[3])
        self.assertEqual(prop.range.start, (12, 1))

    def test_enum(self) -> None:
        enum = self.root.find_all("EnumDecl")[0]
        self.assertEqual(enum.name, "RWTLeftMenuTopItemType")
        self.assertEqual(enum.style, "macro")
        self.assertEqual(enum.underlying_type, "NSInteger")
        self.assertEqual(
            enum.members, ["RWTLeftMenuTopItemMain", "RWTLeftMenuTopItemShows", "RWTLeftMenuTopItemSchedule"]
        )

    def test_constant(self) -> None:
        constant = self.root.find_all("ConstantDecl")[0]
        self.assertEqual(constant.name, "RWTAboutViewControllerCompanyName")
        self.assertTrue(constant.is_static)
        self.assertFalse(constant.via_define)
        self.assertEqual(constant.value, '@"RayWenderlich.com"')

    def test_method_selector(self) -> None:
        init = self.root.find_all("MethodDecl")[0]
        self.assertEqual(init.selector, "initWithName:count:")
        self.assertEqual([segment.param_name for segment in init.segments], ["name", "count"])
        self.assertEqual(init.segments[0].param_type, "(NSString *)")
        self.assertEqual(init.return_type, "(instancetype)")
        self.assertTrue(init.has_body)
        self.assertTrue(init.enclosing("ClassDecl").is_implementation)

    def test_pragma_mark_directive(self) -> None:
        mark = [node for node in self.root.find_all("Directive") if node.is_mark][0]
        self.assertEqual(mark.section, "Lifecycle")
        self.assertTrue(mark.has_separator)
        self.assertIs(mark.parent, self.root.children[4])

    def test_conditional_inside_method(self) -> None:
        conditional = self.root.find_all("ConditionalStmt")[0]
        self.assertEqual(conditional.keyword, "if")
        self.assertEqual(conditional.condition, "self")
        self.assertTrue(conditional.body_braced)
        self.assertEqual(conditional.parent.kind, "MethodDecl")

    def test_switch_cases(self) -> None:
        switch = self.root.find_all("SwitchStmt")[0]
        self.assertEqual(switch.control_expr, "self.type")
        first, default = switch.cases
        self.assertEqual(first.labels, ["RWTLeftMenuTopItemMain"])
        self.assertEqual(first.statement_heads, ["[", "break"])
        self.assertFalse(first.braced)
        self.assertTrue(default.is_default)
        self.assertTrue(switch.has_default)

    def test_literal_and_block(self) -> None:
        literal = [node for node in self.root.find_all("Literal") if node.literal_kind == "array"][0]
        self.assertEqual([element.text for element in literal.elements], ['@"a"', '@"b"'])
        block = self.root.find_all("BlockExpr")[0]
        self.assertEqual(block.enclosing("MethodDecl").selector, "update")

    def test_walk_is_source_ordered(self) -> None:
        starts = [node.range.start for node in self.root.walk() if node.parent is self.root]
        self.assertEqual(starts, sorted(starts))

    def test_define_constant_and_suppressions(self) -> None:
        root = build(
            "#define RWTFadeTime 0.2\n"
            "int a; // objclint:disable-line line-length\n"
            "// objclint:disable-next-line\n"
            "int b;\n"
        )
        constant = root.find_all("ConstantDecl")[0]
        self.assertTrue(constant.via_define)
        self.assertEqual(constant.value, "0.2")
        self.assertEqual(constant.name_range, objclint.SourceRange(1, 9, 1, 20))
        self.assertEqual(root.suppressions, {2: {"line-length"}, 4: None})


AUDITED_HEADER = """\
NS_ASSUME_NONNULL_BEGIN

typedef NS_ENUM(NSInteger, RWTState) {
  RWTStateOn,
  RWTStateOff
};

API_AVAILABLE(ios(13.0))
@interface RWTSwitch : UIControl
@property (assign, nonatomic) RWTState state;
@end

NS_ASSUME_NONNULL_END
"""

PLATFORM_BRANCHES = """\
@implementation RWTView
#if TARGET_OS_IPHONE
- (void)layoutSubviews {
#elif TARGET_OS_TV
- (void)layoutSubviewsForTV {
#else
- (void)layout {
#endif
  [self arrange];
}
@end
"""


class PreprocessorStructureTests(unittest.TestCase):
    def test_audit_macros_stand_alone(self) -> None:
        root = build(AUDITED_HEADER, path="RWTSwitch.h")
        self.assertEqual(root.find_all("FunctionDecl"), [])
        enum = root.find_all("EnumDecl")[0]
        self.assertEqual((enum.name, enum.style, enum.underlying_type), ("RWTState", "macro", "NSInteger"))
        self.assertEqual(enum.range.start, (3, 1))
        cls = root.find_all("ClassDecl")[0]
        self.assertEqual(cls.name, "RWTSwitch")
        self.assertEqual(cls.find_all("PropertyDecl")[0].name, "state")

    def test_plain_typedef_enum_after_audit_macro(self) -> None:
        root = build("NS_ASSUME_NONNULL_BEGIN\ntypedef enum {RWTStateOn, RWTStateOff} RWTState;\n")
        enum = root.find_all("EnumDecl")[0]
        self.assertEqual((enum.name, enum.style), ("RWTState", "typedef-enum"))
        self.assertEqual(enum.members, ["RWTStateOn", "RWTStateOff"])

    def test_multi_line_declarations_are_not_split(self) -> None:
        root = build("static NSString *\nRWTTitle(void) {\n  return nil;\n}\n")
        self.assertEqual([node.name for node in root.find_all("FunctionDecl")], ["RWTTitle"])

    def test_alternative_method_headers_share_a_body(self) -> None:
        root = build(PLATFORM_BRANCHES)
        [method] = root.find_all("MethodDecl")
        self.assertEqual(method.selector, "layoutSubviews")
        self.assertTrue(method.has_body)
        self.assertEqual(method.range.start, (3, 1))
        self.assertEqual(method.close_brace, (10, 1))
        directives = [node.name for node in root.find_all("Directive")]
        self.assertEqual(directives, ["if", "elif", "else", "endif"])

    def test_nested_conditionals_keep_first_branches(self) -> None:
        root = build(
            "#ifdef DEBUG\n"
            "#if TARGET_OS_IPHONE\n"
            "void a(void) {\n"
            "#else\n"
            "void b(void) {\n"
            "#endif\n"
            "}\n"
            "#else\n"
            "void c(void) {}\n"
            "#endif\n"
            "void d(void) {}\n"
        )
        self.assertEqual([node.name for node in root.find_all("FunctionDecl")], ["a", "d"])


def assert_well_nested(test, node):
    """Children sit inside their parent's range; siblings never overlap."""
    previous = None
    for child in node.children:
        test.assertTrue(
            node.range.contains(child.range), f"{child.kind} {child.range} escapes {node.kind} {node.range}"
        )
        if previous is not None:
            test.assertLessEqual(previous.range.start, child.range.start)
            test.assertLessEqual(
                previous.range.end, child.range.start, f"{previous.kind} {previous.range} overlaps {child.kind}"
            )
        previous = child
        assert_well_nested(test, child)


class TreeContainmentTests(unittest.TestCase):
    def test_fixtures_are_well_nested(self) -> None:
        fixtures = {
            "Sample.m": SAMPLE,
            "RWTSwitch.h": AUDITED_HEADER,
            "RWTView.m": PLATFORM_BRANCHES,
        }
        for path, text in fixtures.items():
            with self.subTest(path=path):
                assert_well_nested(self, build(text, path=path))


class ParseErrorTests(unittest.TestCase):
    def test_truncated_file(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            build("@implementation Foo\n- (void)run {\n  if (x) {\n")
        self.assertEqual(ctx.exception.kind, "UnbalancedBraces")

    def test_mismatched_bracket(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            build("void f() {\n  g(1];\n}\n")
        self.assertEqual(ctx.exception.kind, "UnbalancedBraces")
        self.assertEqual(ctx.exception.line, 2)

    def test_missing_end(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            build("@interface Foo : NSObject\n@property int x;\n")
        self.assertEqual(ctx.exception.kind, "UnbalancedBraces")
        self.assertEqual(ctx.exception.line, 1)

    def test_depth_guard(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            build("int x = " + "(" * 10 + "1" + ")" * 10 + ";", max_depth=5)
        self.assertEqual(ctx.exception.kind, "MaxDepthExceeded")

    def test_depth_guard_on_nested_statements(self) -> None:
        body = "if (x) {\n" * 6 + "}\n" * 6
        with self.assertRaises(objclint.ParseError) as ctx:
            build("void f() {\n" + body + "}\n", max_depth=5)
        self.assertEqual(ctx.exception.kind, "MaxDepthExceeded")


class SourceUnitTests(unittest.TestCase):
    def test_read_strips_bom_and_normalises_newlines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "Bom.m")
            with open(path, "wb") as f:
                f.write(codecs.BOM_UTF8 + b"int a;\r\nint b;\r\n")
            unit = objclint.SourceUnit.read(path)
        self.assertEqual(unit.text, "int a;\nint b;\n")
        self.assertEqual(unit.line_text(2), "int b;")

    def test_clamp(self) -> None:
        unit = objclint.SourceUnit.from_text("a.m", "abc\nde")
        self.assertEqual(unit.clamp(objclint.SourceRange(0, 0, 9, 9)), objclint.SourceRange(1, 1, 2, 3))


if __name__ == "__main__":
    unittest.main()
