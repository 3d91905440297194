import unittest

import objclint


def tokenize(text):
    return objclint.Lexer(objclint.SourceUnit.from_text("Sample.m", text)).tokenize()


def code_values(text):
    return [tok.value for tok in tokenize(text) if tok.type not in objclint.TRIVIA_TYPES]


class LexerTests(unittest.TestCase):
    def test_objc_tokens(self) -> None:
        values = code_values('@interface Foo\nNSString *s = @"x"; NSNumber *n = @42;')
        self.assertEqual(
            values,
            ["@interface", "Foo", "NSString", "*", "s", "=", '@"x"', ";", "NSNumber", "*", "n", "=", "@42", ";"],
        )

    def test_token_types(self) -> None:
        tokens = tokenize('@end "c" \'a\' 0x1F 1.5f @YES @[ @{ @(')
        self.assertEqual(
            [tok.type for tok in tokens],
            [
                objclint.TokenType.AT_KEYWORD,
                objclint.TokenType.STRING,
                objclint.TokenType.CHAR,
                objclint.TokenType.NUMBER,
                objclint.TokenType.NUMBER,
                objclint.TokenType.AT_KEYWORD,
                objclint.TokenType.PUNCT,
                objclint.TokenType.PUNCT,
                objclint.TokenType.PUNCT,
            ],
        )

    def test_positions_are_one_based(self) -> None:
        tokens = tokenize("int a;\n  return b;")
        ret = [tok for tok in tokens if tok.value == "return"][0]
        self.assertEqual((ret.line, ret.column), (2, 3))
        self.assertEqual((ret.end_line, ret.end_column), (2, 9))
        self.assertEqual(tokens[0].range, objclint.SourceRange(1, 1, 1, 4))

    def test_multi_character_operators(self) -> None:
        self.assertEqual(code_values("a->b == c && d != e"), ["a", "->", "b", "==", "c", "&&", "d", "!=", "e"])

    def test_trivia_tokens(self) -> None:
        tokens = tokenize("#import <Foundation/Foundation.h>\n// note\n/* block */ x")
        self.assertEqual(
            [tok.type for tok in tokens],
            [
                objclint.TokenType.DIRECTIVE,
                objclint.TokenType.LINE_COMMENT,
                objclint.TokenType.BLOCK_COMMENT,
                objclint.TokenType.IDENTIFIER,
            ],
        )
        self.assertEqual([tok.index for tok in tokens], [0, 1, 2, 3])

    def test_hash_inside_a_line_is_not_a_directive(self) -> None:
        tokens = tokenize("x = y # z;")
        self.assertNotIn(objclint.TokenType.DIRECTIVE, [tok.type for tok in tokens])

    def test_unterminated_string(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            tokenize('int a;\nNSString *s = @"never closed;\n')
        self.assertEqual(ctx.exception.kind, "UnterminatedLiteral")
        self.assertEqual(ctx.exception.line, 2)

    def test_unterminated_block_comment(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            tokenize("/* open")
        self.assertEqual(ctx.exception.kind, "UnterminatedLiteral")

    def test_unknown_directive(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            tokenize("#bogus thing\n")
        self.assertEqual(ctx.exception.kind, "MalformedDirective")
        self.assertEqual((ctx.exception.line, ctx.exception.column), (1, 1))

    def test_pragma_mark_needs_a_label(self) -> None:
        with self.assertRaises(objclint.ParseError) as ctx:
            tokenize("#pragma mark\n")
        self.assertEqual(ctx.exception.kind, "MalformedDirective")

    def test_continued_directive_is_one_token(self) -> None:
        tokens = tokenize("#define MAX(a, b) \\\n  ((a) > (b) ? (a) : (b))\nint x;")
        self.assertEqual(tokens[0].type, objclint.TokenType.DIRECTIVE)
        self.assertEqual(tokens[0].end_line, 2)
        self.assertEqual(tokens[1].value, "int")


if __name__ == "__main__":
    unittest.main()
