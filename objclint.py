#!/usr/bin/env python3
"""
objclint - Style conformance checking for Objective-C

High-level goals:
- Lex Objective-C source into tokens and recover a shallow syntax model
  (classes, protocols, methods, properties, enums, constants, conditionals,
  switch statements, literals, comments, directives)
- Apply a fixed catalogue of independent style rules, dispatched by node kind
- Load rule activation / severities / parameters from YAML
- Emit findings as text or structured JSON for CI / IDEs

The checker never rewrites code; suggested replacements are reported only.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, ClassVar, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import argparse
import ast
import bisect
import codecs
import fnmatch
import functools
import json
import operator
import os
import re
import sys
import threading
import weakref

import yaml


TOOL_NAME = "objclint"
TOOL_VERSION = "0.3.0"

SEVERITIES = ("info", "warning", "error")
SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

DEFAULT_EXTENSIONS = (".m", ".h", ".mm")
DEFAULT_MAX_NESTING_DEPTH = 128

PARSE_ERROR_RULE = "parse-error"
IO_ERROR_RULE = "io-error"
RULE_EVALUATION_ERROR_RULE = "rule-evaluation-error"
RESERVED_RULE_IDS = frozenset({PARSE_ERROR_RULE, IO_ERROR_RULE, RULE_EVALUATION_ERROR_RULE})


# ============================================================
# ================ SOURCE UNITS & RANGES =====================
# ============================================================

@dataclass(frozen=True, order=True)
class SourceRange:
    """
    One-based start position and exclusive end position inside one file.
    """
    start_line: int
    start_col: int
    end_line: int
    end_col: int

    @property
    def start(self) -> Tuple[int, int]:
        return (self.start_line, self.start_col)

    @property
    def end(self) -> Tuple[int, int]:
        return (self.end_line, self.end_col)

    def contains(self, other: "SourceRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_json_obj(self) -> Dict[str, int]:
        return {
            "start_line": self.start_line,
            "start_col": self.start_col,
            "end_line": self.end_line,
            "end_col": self.end_col,
        }


@dataclass(frozen=True)
class SourceUnit:
    """
    One input file. Immutable once built; the line index maps character
    offsets to (line, column) pairs.
    """
    path: str
    text: str
    encoding: str = "utf-8"
    line_offsets: Tuple[int, ...] = ()

    @classmethod
    def from_text(cls, path: str, text: str, encoding: str = "utf-8") -> "SourceUnit":
        offsets = [0]
        for match in re.finditer(r"\n", text):
            offsets.append(match.end())
        return cls(path=path, text=text, encoding=encoding, line_offsets=tuple(offsets))

    @classmethod
    def read(cls, path: str, encoding: str = "utf-8") -> "SourceUnit":
        with open(path, "rb") as handle:
            raw = handle.read()
        if encoding.replace("_", "-").lower() in ("utf-8", "utf8") and raw.startswith(codecs.BOM_UTF8):
            raw = raw[len(codecs.BOM_UTF8):]
        text = raw.decode(encoding)
        return cls.from_text(path, text.replace("\r\n", "\n").replace("\r", "\n"), encoding)

    @property
    def line_count(self) -> int:
        return len(self.line_offsets)

    def position(self, offset: int) -> Tuple[int, int]:
        line_index = bisect.bisect_right(self.line_offsets, offset) - 1
        return line_index + 1, offset - self.line_offsets[line_index] + 1

    def line_text(self, line: int) -> str:
        start = self.line_offsets[line - 1]
        end = self.line_offsets[line] - 1 if line < len(self.line_offsets) else len(self.text)
        return self.text[start:end]

    def lines(self) -> List[str]:
        return [self.line_text(n) for n in range(1, self.line_count + 1)]

    def whole_range(self) -> SourceRange:
        last = self.line_count
        return SourceRange(1, 1, last, len(self.line_text(last)) + 1)

    def clamp(self, source_range: SourceRange) -> SourceRange:
        """Pull a range back inside the file bounds."""

        def clamp_point(line: int, col: int) -> Tuple[int, int]:
            line = min(max(line, 1), self.line_count)
            col = min(max(col, 1), len(self.line_text(line)) + 1)
            return line, col

        start = clamp_point(source_range.start_line, source_range.start_col)
        end = clamp_point(source_range.end_line, source_range.end_col)
        if end < start:
            end = start
        return SourceRange(start[0], start[1], end[0], end[1])


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class ParseError(Exception):
    """Raised when a file's structure cannot be recovered."""

    KINDS = ("UnterminatedLiteral", "UnbalancedBraces", "MalformedDirective", "MaxDepthExceeded")

    def __init__(self, kind: str, message: str, line: int, column: int) -> None:
        self.kind = kind
        self.message = message
        self.line = line
        self.column = column
        super().__init__(f"{kind} at line {line}, column {column}: {message}")


class ConfigurationError(Exception):
    """Malformed or unreadable configuration; fatal to the whole run."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class RuleNotFoundError(KeyError):
    """Raised by the registry for an unknown rule id."""


class RuleEvaluationError(Exception):
    """A rule failed unexpectedly on one node."""

    def __init__(self, rule_id: str, node: "SyntaxNode", cause: BaseException) -> None:
        self.rule_id = rule_id
        self.node = node
        self.cause = cause
        super().__init__(
            f"rule '{rule_id}' failed on {node.kind} at line {node.range.start_line}: "
            f"{type(cause).__name__}: {cause}"
        )


class ExpressionEvalError(Exception):
    """Raised when an expression rule uses an unsafe or invalid construct."""


# ============================================================
# ========================== LEXER ===========================
# ============================================================

class TokenType(Enum):
    IDENTIFIER = auto()     # self, NSString, initWithFrame
    AT_KEYWORD = auto()     # @interface, @property, @end, @YES
    STRING = auto()         # "c string", @"objc string"
    CHAR = auto()           # 'a'
    NUMBER = auto()         # 42, 0x1F, 1.5f, @42
    PUNCT = auto()          # operators, brackets, @[ @{ @(
    LINE_COMMENT = auto()   # // ...
    BLOCK_COMMENT = auto()  # /* ... */
    DIRECTIVE = auto()      # #import, #pragma mark - Foo


TRIVIA_TYPES = (TokenType.LINE_COMMENT, TokenType.BLOCK_COMMENT, TokenType.DIRECTIVE)

KNOWN_DIRECTIVES = frozenset(
    {
        "import", "include", "include_next", "define", "undef", "if", "ifdef", "ifndef",
        "elif", "else", "endif", "pragma", "error", "warning", "line",
    }
)

DIGITS = "0123456789"
_IDENT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_NUMBER_RE = re.compile(
    r"0[xX][0-9a-fA-F]+[uUlL]*|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?[fFuUlL]*"
)
_OPERATORS = (
    "<<=", ">>=", "...", "->", "++", "--", "<<", ">>", "<=", ">=", "==", "!=", "&&", "||",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "::",
)


@dataclass
class Token:
    type: TokenType
    value: str
    offset: int
    end_offset: int
    line: int
    column: int
    end_line: int
    end_column: int
    index: int = -1  # position in the full (trivia-including) token list

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, L{self.line}:{self.column})"

    @property
    def range(self) -> SourceRange:
        return SourceRange(self.line, self.column, self.end_line, self.end_column)


class Lexer:
    """
    Tokenizer for Objective-C source.

    Comments and preprocessor lines are kept as trivia tokens so the model
    builder can attach them to the syntax tree; string, character and
    comment literals that run off the end of the input raise ParseError.
    """

    def __init__(self, unit: SourceUnit) -> None:
        self.unit = unit
        self.text = unit.text
        self.pos = 0
        self.length = len(unit.text)
        self.at_line_start = True

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            self._skip_whitespace()
            if self.pos >= self.length:
                break
            token = self._next_token()
            token.index = len(tokens)
            tokens.append(token)
            self.at_line_start = False
        return tokens

    def _skip_whitespace(self) -> None:
        while self.pos < self.length and self.text[self.pos] in " \t\f\v\n":
            if self.text[self.pos] == "\n":
                self.at_line_start = True
            self.pos += 1

    def _make(self, token_type: TokenType, start: int, end: int) -> Token:
        line, column = self.unit.position(start)
        end_line, end_column = self.unit.position(end)
        return Token(token_type, self.text[start:end], start, end, line, column, end_line, end_column)

    def _error(self, kind: str, message: str, offset: int) -> ParseError:
        line, column = self.unit.position(offset)
        return ParseError(kind, message, line, column)

    def _next_token(self) -> Token:
        start = self.pos
        ch = self.text[start]
        nxt = self.text[start + 1] if start + 1 < self.length else ""

        if ch == "/" and nxt == "/":
            end = self.text.find("\n", start)
            self.pos = self.length if end == -1 else end
            return self._make(TokenType.LINE_COMMENT, start, self.pos)

        if ch == "/" and nxt == "*":
            end = self.text.find("*/", start + 2)
            if end == -1:
                raise self._error("UnterminatedLiteral", "unterminated block comment", start)
            self.pos = end + 2
            return self._make(TokenType.BLOCK_COMMENT, start, self.pos)

        if ch == "#" and self.at_line_start:
            return self._read_directive(start)

        if ch == '"':
            self._read_quoted(start, '"', "string literal")
            return self._make(TokenType.STRING, start, self.pos)

        if ch == "'":
            self._read_quoted(start, "'", "character literal")
            return self._make(TokenType.CHAR, start, self.pos)

        if ch == "@":
            return self._read_at(start, nxt)

        if ch in DIGITS or (ch == "." and nxt in DIGITS and nxt != ""):
            match = _NUMBER_RE.match(self.text, start)
            self.pos = match.end()
            return self._make(TokenType.NUMBER, start, self.pos)

        match = _IDENT_RE.match(self.text, start)
        if match:
            self.pos = match.end()
            return self._make(TokenType.IDENTIFIER, start, self.pos)

        for op in _OPERATORS:
            if self.text.startswith(op, start):
                self.pos = start + len(op)
                return self._make(TokenType.PUNCT, start, self.pos)

        self.pos = start + 1
        return self._make(TokenType.PUNCT, start, self.pos)

    def _read_quoted(self, start: int, quote: str, what: str) -> None:
        pos = start + 1
        while pos < self.length:
            ch = self.text[pos]
            if ch == "\\":
                pos += 2
                continue
            if ch == "\n":
                break
            if ch == quote:
                self.pos = pos + 1
                return
            pos += 1
        raise self._error("UnterminatedLiteral", f"unterminated {what}", start)

    def _read_at(self, start: int, nxt: str) -> Token:
        if nxt == '"':
            self._read_quoted(start + 1, '"', "string literal")
            return self._make(TokenType.STRING, start, self.pos)
        if nxt and nxt in "[{(":
            self.pos = start + 2
            return self._make(TokenType.PUNCT, start, self.pos)
        number_start = start + 1
        if nxt == "-" and start + 2 < self.length and self.text[start + 2] in DIGITS:
            number_start = start + 2
        match = _NUMBER_RE.match(self.text, number_start)
        if match and ((nxt and nxt in DIGITS) or number_start == start + 2):
            self.pos = match.end()
            return self._make(TokenType.NUMBER, start, self.pos)
        match = _IDENT_RE.match(self.text, start + 1)
        if match:
            self.pos = match.end()
            return self._make(TokenType.AT_KEYWORD, start, self.pos)
        self.pos = start + 1
        return self._make(TokenType.PUNCT, start, self.pos)

    def _read_directive(self, start: int) -> Token:
        pos = start
        while True:
            end = self.text.find("\n", pos)
            if end == -1:
                end = self.length
                break
            if end > start and self.text[end - 1] == "\\":
                pos = end + 1
                continue
            break
        # A trailing comment belongs to the directive line.
        self.pos = end
        token = self._make(TokenType.DIRECTIVE, start, end)
        match = re.match(r"#\s*([A-Za-z_]\w*)?", token.value)
        name = match.group(1) if match else None
        if not name:
            if token.value[1:].strip():
                raise self._error("MalformedDirective", "directive name expected after '#'", start)
            return token  # null directive
        if name not in KNOWN_DIRECTIVES:
            raise self._error("MalformedDirective", f"unknown preprocessor directive '#{name}'", start)
        if name == "pragma":
            pragma = re.match(r"#\s*pragma\s+mark\b(.*)", token.value)
            if pragma is not None and not _strip_directive_comment(pragma.group(1)).strip():
                raise self._error("MalformedDirective", "'#pragma mark' needs a label", start)
        return token


def _strip_directive_comment(text: str) -> str:
    for marker in ("//", "/*"):
        idx = text.find(marker)
        if idx != -1:
            text = text[:idx]
    return text


# ============================================================
# ====================== SYNTAX MODEL ========================
# ============================================================

@dataclass(eq=False)
class SyntaxNode:
    """
    Base of every structural element. Children are owned; the parent is a
    weak back-reference used only for context queries.
    """
    kind: ClassVar[str] = "SyntaxNode"

    range: SourceRange
    children: List["SyntaxNode"] = field(default_factory=list, repr=False)
    _parent: Optional["weakref.ReferenceType[SyntaxNode]"] = field(default=None, repr=False)

    @property
    def parent(self) -> Optional["SyntaxNode"]:
        return self._parent() if self._parent is not None else None

    def add_child(self, child: "SyntaxNode") -> "SyntaxNode":
        child._parent = weakref.ref(self)
        starts = [existing.range.start for existing in self.children]
        self.children.insert(bisect.bisect_right(starts, child.range.start), child)
        return child

    def ancestors(self) -> Iterator["SyntaxNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def enclosing(self, *kinds: str) -> Optional["SyntaxNode"]:
        for node in self.ancestors():
            if node.kind in kinds:
                return node
        return None

    def root(self) -> "SyntaxNode":
        node = self
        for node in self.ancestors():
            pass
        return node

    def walk(self) -> Iterator["SyntaxNode"]:
        """Pre-order traversal, children in source order."""
        stack: List[SyntaxNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def find_all(self, kind: str) -> List["SyntaxNode"]:
        return [node for node in self.walk() if node.kind == kind]

    def children_of_kind(self, kind: str) -> List["SyntaxNode"]:
        return [child for child in self.children if child.kind == kind]


@dataclass(eq=False)
class FileNode(SyntaxNode):
    kind: ClassVar[str] = "FileNode"

    path: str = ""
    tokens: List[Token] = field(default_factory=list, repr=False)
    bracket_pairs: Dict[int, int] = field(default_factory=dict, repr=False)
    # line -> suppressed rule ids (None means every rule)
    suppressions: Dict[int, Optional[Set[str]]] = field(default_factory=dict, repr=False)

    @property
    def is_header(self) -> bool:
        return os.path.splitext(self.path)[1].lower() == ".h"


@dataclass(eq=False)
class ClassDecl(SyntaxNode):
    """@interface / @implementation, including categories and extensions."""
    kind: ClassVar[str] = "ClassDecl"

    name: str = ""
    is_implementation: bool = False
    superclass: Optional[str] = None
    category: Optional[str] = None  # "" for a class extension
    protocols: List[str] = field(default_factory=list)
    name_range: Optional[SourceRange] = None

    @property
    def is_extension(self) -> bool:
        return self.category == ""

    @property
    def is_category(self) -> bool:
        return bool(self.category)


@dataclass(eq=False)
class ProtocolDecl(SyntaxNode):
    kind: ClassVar[str] = "ProtocolDecl"

    name: str = ""
    protocols: List[str] = field(default_factory=list)
    name_range: Optional[SourceRange] = None


@dataclass
class SelectorSegment:
    keyword: str
    param_type: Optional[str] = None  # raw text, parentheses included
    param_name: Optional[str] = None
    line: int = 0
    column: int = 0

    @property
    def has_param(self) -> bool:
        return self.param_name is not None


@dataclass(eq=False)
class MethodDecl(SyntaxNode):
    kind: ClassVar[str] = "MethodDecl"

    is_class_method: bool = False
    return_type: Optional[str] = None  # raw text, parentheses included
    segments: List[SelectorSegment] = field(default_factory=list)
    has_body: bool = False
    header_end: Optional[Tuple[int, int]] = None
    open_brace: Optional[Tuple[int, int]] = None
    close_brace: Optional[Tuple[int, int]] = None
    body_empty: bool = False
    body_span: Optional[Tuple[int, int]] = None  # FileNode.tokens indices, exclusive end

    @property
    def selector(self) -> str:
        if len(self.segments) == 1 and not self.segments[0].has_param:
            return self.segments[0].keyword
        return "".join(f"{segment.keyword}:" for segment in self.segments)

    @property
    def first_keyword(self) -> str:
        return self.segments[0].keyword if self.segments else ""

    @property
    def name(self) -> str:
        return self.selector


@dataclass(eq=False)
class FunctionDecl(SyntaxNode):
    """A C function definition."""
    kind: ClassVar[str] = "FunctionDecl"

    name: str = ""
    return_type: str = ""
    header_end: Optional[Tuple[int, int]] = None
    open_brace: Optional[Tuple[int, int]] = None
    close_brace: Optional[Tuple[int, int]] = None
    body_empty: bool = False
    body_span: Optional[Tuple[int, int]] = None


@dataclass(eq=False)
class PropertyDecl(SyntaxNode):
    kind: ClassVar[str] = "PropertyDecl"

    name: str = ""
    type_text: str = ""
    attributes: List[str] = field(default_factory=list)
    nullability: Optional[str] = None
    decl_text: str = ""  # raw text from the type to the name
    name_range: Optional[SourceRange] = None

    @property
    def is_block(self) -> bool:
        return "^" in self.type_text

    @property
    def base_type(self) -> str:
        match = re.search(r"([A-Za-z_]\w*)\s*(?:<[^>]*>)?\s*\*", self.type_text)
        if match:
            return match.group(1)
        words = re.findall(r"[A-Za-z_]\w*", self.type_text)
        return words[-1] if words else ""


@dataclass(eq=False)
class EnumDecl(SyntaxNode):
    kind: ClassVar[str] = "EnumDecl"

    name: Optional[str] = None
    style: str = "enum"  # "macro" | "enum" | "typedef-enum"
    underlying_type: Optional[str] = None
    members: List[str] = field(default_factory=list)
    name_range: Optional[SourceRange] = None


@dataclass(eq=False)
class ConstantDecl(SyntaxNode):
    kind: ClassVar[str] = "ConstantDecl"

    name: str = ""
    type_text: str = ""
    value: Optional[str] = None
    is_static: bool = False
    is_extern: bool = False
    is_const: bool = True
    via_define: bool = False
    name_range: Optional[SourceRange] = None


@dataclass(eq=False)
class SwitchStmt(SyntaxNode):
    kind: ClassVar[str] = "SwitchStmt"

    control_expr: str = ""
    header_end: Optional[Tuple[int, int]] = None
    open_brace: Optional[Tuple[int, int]] = None
    close_brace: Optional[Tuple[int, int]] = None
    body_empty: bool = False

    @property
    def cases(self) -> List["CaseClause"]:
        return [child for child in self.children if isinstance(child, CaseClause)]

    @property
    def has_default(self) -> bool:
        return any(case.is_default for case in self.cases)


@dataclass(eq=False)
class CaseClause(SyntaxNode):
    kind: ClassVar[str] = "CaseClause"

    labels: List[str] = field(default_factory=list)
    is_default: bool = False
    braced: bool = False
    statement_heads: List[str] = field(default_factory=list)
    label_colon: Optional[Tuple[int, int]] = None

    @property
    def comments(self) -> List["CommentBlock"]:
        return [node for node in self.walk() if isinstance(node, CommentBlock)]


@dataclass(eq=False)
class ConditionalStmt(SyntaxNode):
    kind: ClassVar[str] = "ConditionalStmt"

    keyword: str = "if"  # "if" | "else" | "for" | "while" | "do"
    condition: str = ""
    condition_tokens: List[Token] = field(default_factory=list, repr=False)
    body_braced: bool = False
    is_else_if: bool = False
    header_end: Optional[Tuple[int, int]] = None
    open_brace: Optional[Tuple[int, int]] = None
    close_brace: Optional[Tuple[int, int]] = None
    body_empty: bool = False
    else_keyword: Optional[Tuple[int, int]] = None
    preceding_brace: Optional[Tuple[int, int]] = None


@dataclass(eq=False)
class BlockExpr(SyntaxNode):
    """A block literal ^{ ... } or ^(args) { ... }."""
    kind: ClassVar[str] = "BlockExpr"


@dataclass
class LiteralElement:
    text: str
    line: int
    column: int
    end_line: int
    end_column: int
    role: str = "element"  # "element" | "key" | "value"

    @property
    def range(self) -> SourceRange:
        return SourceRange(self.line, self.column, self.end_line, self.end_column)


@dataclass(eq=False)
class Literal(SyntaxNode):
    kind: ClassVar[str] = "Literal"

    literal_kind: str = "array"  # "array" | "dictionary" | "boxed" | "number"
    text: str = ""
    elements: List[LiteralElement] = field(default_factory=list)


@dataclass(eq=False)
class CommentBlock(SyntaxNode):
    kind: ClassVar[str] = "CommentBlock"

    text: str = ""
    style: str = "line"  # "line" | "block"


@dataclass(eq=False)
class Directive(SyntaxNode):
    kind: ClassVar[str] = "Directive"

    name: str = ""
    text: str = ""
    mark_label: Optional[str] = None
    has_separator: bool = False

    @property
    def is_mark(self) -> bool:
        return self.mark_label is not None

    @property
    def section(self) -> Optional[str]:
        if self.mark_label is None:
            return None
        return self.mark_label.lstrip("-").strip() or None


NODE_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        FileNode, ClassDecl, ProtocolDecl, MethodDecl, FunctionDecl, PropertyDecl, EnumDecl,
        ConstantDecl, SwitchStmt, CaseClause, ConditionalStmt, BlockExpr, Literal,
        CommentBlock, Directive,
    )
}


# ============================================================
# ===================== MODEL BUILDER ========================
# ============================================================

_OPENERS = {"(": ")", "[": "]", "{": "}", "@(": ")", "@[": "]", "@{": "}"}
_CLOSERS = frozenset({")", "]", "}"})

ENUM_MACROS = frozenset({"NS_ENUM", "NS_OPTIONS", "NS_CLOSED_ENUM", "NS_ERROR_ENUM", "CF_ENUM", "CF_OPTIONS"})
NULLABILITY_ATTRIBUTES = frozenset({"nullable", "nonnull", "null_unspecified", "null_resettable"})
NULLABILITY_QUALIFIERS = frozenset(
    {"_Nullable", "_Nonnull", "_Null_unspecified", "__nullable", "__nonnull", "__null_unspecified"}
)
DECLARATION_QUALIFIERS = frozenset(
    {
        "const", "static", "extern", "volatile", "register", "__unused", "__weak", "__strong",
        "__block", "__unsafe_unretained", "__autoreleasing", "FOUNDATION_EXPORT",
        "FOUNDATION_EXTERN", "UIKIT_EXTERN", "OBJC_EXTERN",
    }
)
_TRAILING_MACRO_RE = re.compile(r"^(NS|API|CF|UI|OBJC)_[A-Z0-9_]+$")
_STANDALONE_MACRO_RE = re.compile(r"^[A-Z][A-Z0-9]*_[A-Z0-9_]+$")
_DEFINE_RE = re.compile(r"#\s*define\s+([A-Za-z_]\w*)(\()?\s*(.*)", re.DOTALL)
_DEFINE_LITERAL_RE = re.compile(
    r'^\(?\s*(@?"(?:[^"\\]|\\.)*"|@?-?(?:0[xX][0-9a-fA-F]+|\d+\.?\d*(?:[eE][+-]?\d+)?)[fFuUlL]*)\s*\)?$'
)
_PRAGMA_MARK_RE = re.compile(r"#\s*pragma\s+mark\b(.*)", re.DOTALL)
_SUPPRESSION_RE = re.compile(r"objclint:\s*disable-(next-line|line)\b([ \t\w,-]*)")


def _active_code_tokens(tokens: List[Token]) -> List[Token]:
    """
    Code tokens the structure is recovered from. Only the first branch of
    each #if / #ifdef / #ifndef group is kept; #elif and #else branches
    commonly repeat a header that shares one body with the first branch.
    """
    skipping: List[bool] = []  # per open conditional: is this branch dropped
    code: List[Token] = []
    for tok in tokens:
        if tok.type is TokenType.DIRECTIVE:
            match = re.match(r"#\s*([A-Za-z_]\w*)", tok.value)
            name = match.group(1) if match else ""
            if name in ("if", "ifdef", "ifndef"):
                skipping.append(False)
            elif name in ("elif", "else") and skipping:
                skipping[-1] = True
            elif name == "endif" and skipping:
                skipping.pop()
            continue
        if tok.type in TRIVIA_TYPES or any(skipping):
            continue
        code.append(tok)
    return code


def _match_brackets(tokens: List[Token], max_depth: int) -> Dict[int, int]:
    """
    Pair every opening bracket with its closer (both directions), failing on
    mismatches, unclosed openers and nesting beyond max_depth.
    """
    pairs: Dict[int, int] = {}
    stack: List[int] = []
    for idx, tok in enumerate(tokens):
        if tok.type is not TokenType.PUNCT:
            continue
        if tok.value in _OPENERS:
            stack.append(idx)
            if len(stack) > max_depth:
                raise ParseError(
                    "MaxDepthExceeded", f"brackets nested deeper than {max_depth}", tok.line, tok.column
                )
        elif tok.value in _CLOSERS:
            if not stack:
                raise ParseError("UnbalancedBraces", f"unexpected '{tok.value}'", tok.line, tok.column)
            open_idx = stack.pop()
            opener = tokens[open_idx]
            if _OPENERS[opener.value] != tok.value:
                raise ParseError(
                    "UnbalancedBraces",
                    f"'{tok.value}' does not match '{opener.value}' opened at line {opener.line}",
                    tok.line,
                    tok.column,
                )
            pairs[open_idx] = idx
            pairs[idx] = open_idx
    if stack:
        opener = tokens[stack[-1]]
        raise ParseError("UnbalancedBraces", f"'{opener.value}' is never closed", opener.line, opener.column)
    return pairs


def find_token(tokens: List[Token], pairs: Dict[int, int], idx: int, end: int, values: Set[str]) -> int:
    """First index in [idx, end) whose token value is in values, skipping bracket groups."""
    while idx < end:
        value = tokens[idx].value
        if value in values:
            return idx
        if value in _OPENERS and tokens[idx].type is TokenType.PUNCT:
            idx = pairs[idx] + 1
            continue
        idx += 1
    return end


def split_tokens(
    tokens: List[Token], pairs: Dict[int, int], first: int, end: int, separator: str = ","
) -> List[Tuple[int, int]]:
    """Split [first, end) on top-level separators into (start, stop) index pairs."""
    parts: List[Tuple[int, int]] = []
    start = first
    while True:
        stop = find_token(tokens, pairs, start, end, {separator})
        parts.append((start, stop))
        if stop >= end:
            return parts
        start = stop + 1


class _ModelBuilder:
    """
    Recursive-descent recovery of the declaration / statement structure.
    Works on the code tokens only; comments and directives are attached to
    the finished tree afterwards, under the deepest node containing them.
    """

    def __init__(self, unit: SourceUnit, tokens: List[Token], max_depth: int) -> None:
        self.unit = unit
        self.all_tokens = tokens
        self.toks = _active_code_tokens(tokens)
        self.max_depth = max_depth
        self.pairs = _match_brackets(self.toks, max_depth)
        self.depth = 0

    def build(self) -> FileNode:
        root = FileNode(
            range=self.unit.whole_range(),
            path=self.unit.path,
            tokens=self.toks,
            bracket_pairs=self.pairs,
        )
        self._parse_declarations(root, 0, len(self.toks), in_container=False)
        self._attach_trivia(root)
        root.suppressions = self._collect_suppressions()
        return root

    # ---------------------------------------------------------- helpers

    def _is(self, idx: int, *values: str) -> bool:
        return 0 <= idx < len(self.toks) and self.toks[idx].value in values

    def _pos(self, idx: int) -> Tuple[int, int]:
        return (self.toks[idx].line, self.toks[idx].column)

    def _end_pos(self, idx: int) -> Tuple[int, int]:
        return (self.toks[idx].end_line, self.toks[idx].end_column)

    def _span(self, first: int, last: int) -> SourceRange:
        last = max(first, last)
        return SourceRange(
            self.toks[first].line, self.toks[first].column, self.toks[last].end_line, self.toks[last].end_column
        )

    def _raw(self, first: int, last: int) -> str:
        if last < first:
            return ""
        return self.unit.text[self.toks[first].offset:self.toks[last].end_offset]

    def _squash(self, first: int, last: int) -> str:
        return re.sub(r"\s+", " ", self._raw(first, last)).strip()

    def _find(self, idx: int, end: int, values: Set[str]) -> int:
        return find_token(self.toks, self.pairs, idx, end, values)

    def _split_top_level(self, first: int, end: int) -> List[Tuple[int, int]]:
        return split_tokens(self.toks, self.pairs, first, end)

    def _enter(self, tok: Token) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise ParseError("MaxDepthExceeded", f"constructs nested deeper than {self.max_depth}", tok.line, tok.column)

    def _leave(self) -> None:
        self.depth -= 1

    # ----------------------------------------------------- declarations

    def _parse_declarations(self, container: SyntaxNode, idx: int, end: int, *, in_container: bool) -> int:
        while idx < end:
            tok = self.toks[idx]
            value = tok.value
            if value == "@end":
                if in_container:
                    return idx
                idx += 1
            elif value in ("@interface", "@implementation"):
                idx = self._parse_class(container, idx, end)
            elif value == "@protocol":
                idx = self._parse_protocol(container, idx, end)
            elif value == "@property":
                idx = self._parse_property(container, idx, end)
            elif value in ("@optional", "@required", "@public", "@private", "@protected", "@package"):
                idx += 1
            elif in_container and value in ("-", "+"):
                idx = self._parse_method(container, idx, end)
            elif tok.type is TokenType.AT_KEYWORD:
                idx = self._find(idx, end, {";"}) + 1
            elif value == ";":
                idx += 1
            elif value in ("typedef", "enum") or value in ENUM_MACROS:
                nxt = self._parse_enum(container, idx, end)
                idx = nxt if nxt is not None else self._parse_file_statement(container, idx, end)
            else:
                idx = self._parse_file_statement(container, idx, end)
        return idx

    def _parse_container_header(self, idx: int, end: int) -> Tuple[int, Optional[str], Optional[str], List[str]]:
        category: Optional[str] = None
        superclass: Optional[str] = None
        protocols: List[str] = []
        while idx < end:
            value = self.toks[idx].value
            if value == "(" and category is None:
                close = self.pairs[idx]
                category = self._squash(idx + 1, close - 1)
                idx = close + 1
            elif value == ":" and idx + 1 < end and self.toks[idx + 1].type is TokenType.IDENTIFIER:
                superclass = self.toks[idx + 1].value
                idx += 2
            elif value == "<":
                close = self._find(idx + 1, end, {">"})
                protocols.extend(
                    tok.value for tok in self.toks[idx + 1:close] if tok.type is TokenType.IDENTIFIER
                )
                idx = close + 1
            else:
                break
        return idx, category, superclass, protocols

    def _expect_end(self, start: int, stop: int, end: int, what: str) -> None:
        if stop >= end or self.toks[stop].value != "@end":
            tok = self.toks[start]
            raise ParseError("UnbalancedBraces", f"missing @end for {what}", tok.line, tok.column)

    def _parse_class(self, container: SyntaxNode, start: int, end: int) -> int:
        idx = start + 1
        node = ClassDecl(range=self._span(start, start), is_implementation=self.toks[start].value == "@implementation")
        if idx < end and self.toks[idx].type is TokenType.IDENTIFIER:
            node.name = self.toks[idx].value
            node.name_range = self.toks[idx].range
            idx += 1
        idx, node.category, node.superclass, node.protocols = self._parse_container_header(idx, end)
        if self._is(idx, "{") and idx < end:
            idx = self.pairs[idx] + 1  # instance variables
        stop = self._parse_declarations(node, idx, end, in_container=True)
        self._expect_end(start, stop, end, f"{self.toks[start].value} {node.name}".strip())
        node.range = self._span(start, stop)
        container.add_child(node)
        return stop + 1

    def _parse_protocol(self, container: SyntaxNode, start: int, end: int) -> int:
        idx = start + 1
        node = ProtocolDecl(range=self._span(start, start))
        if idx < end and self.toks[idx].type is TokenType.IDENTIFIER:
            node.name = self.toks[idx].value
            node.name_range = self.toks[idx].range
            idx += 1
        if idx >= end or self._is(idx, ";", ",", "("):
            # forward declaration or @protocol(Name) expression
            return self._find(start, end, {";"}) + 1
        idx, _, _, node.protocols = self._parse_container_header(idx, end)
        stop = self._parse_declarations(node, idx, end, in_container=True)
        self._expect_end(start, stop, end, f"@protocol {node.name}".strip())
        node.range = self._span(start, stop)
        container.add_child(node)
        return stop + 1

    def _parse_method(self, container: SyntaxNode, start: int, end: int) -> int:
        idx = start + 1
        node = MethodDecl(range=self._span(start, start), is_class_method=self.toks[start].value == "+")
        if self._is(idx, "(") and idx < end:
            close = self.pairs[idx]
            node.return_type = self._raw(idx, close)
            idx = close + 1
        while idx < end:
            tok = self.toks[idx]
            if tok.type is TokenType.IDENTIFIER and self._is(idx + 1, ":"):
                keyword = tok.value
                idx += 2
            elif tok.value == ":":
                keyword = ""
                idx += 1
            elif tok.type is TokenType.IDENTIFIER and not node.segments:
                node.segments.append(SelectorSegment(tok.value, line=tok.line, column=tok.column))
                idx += 1
                break
            else:
                break
            param_type = None
            if self._is(idx, "(") and idx < end:
                close = self.pairs[idx]
                param_type = self._raw(idx, close)
                idx = close + 1
            param_name = ""
            if idx < end and self.toks[idx].type is TokenType.IDENTIFIER:
                param_name = self.toks[idx].value
                idx += 1
            node.segments.append(SelectorSegment(keyword, param_type, param_name, tok.line, tok.column))

        stop = self._find(idx, end, {";", "{", "@end"})
        if stop < end and self.toks[stop].value == "{":
            close = self.pairs[stop]
            node.has_body = True
            node.header_end = self._end_pos(stop - 1)
            node.open_brace = self._pos(stop)
            node.close_brace = self._pos(close)
            node.body_empty = close == stop + 1
            node.body_span = (stop + 1, close)
            node.range = self._span(start, close)
            self._parse_statements(node, stop + 1, close)
            container.add_child(node)
            return close + 1
        if stop < end and self.toks[stop].value == ";":
            node.range = self._span(start, stop)
            container.add_child(node)
            return stop + 1
        node.range = self._span(start, stop - 1)
        container.add_child(node)
        return max(stop, start + 1)

    def _parse_property(self, container: SyntaxNode, start: int, end: int) -> int:
        idx = start + 1
        node = PropertyDecl(range=self._span(start, start))
        if self._is(idx, "(") and idx < end:
            close = self.pairs[idx]
            for first, stop in self._split_top_level(idx + 1, close):
                if first < stop:
                    node.attributes.append(re.sub(r"\s*=\s*", "=", self._squash(first, stop - 1)))
            idx = close + 1
        stop = self._find(idx, end, {";", "@end"})
        name_idx = self._property_name_index(idx, stop)
        if name_idx is not None:
            name_tok = self.toks[name_idx]
            node.name = name_tok.value
            node.name_range = name_tok.range
            if self._is(name_idx - 1, "^"):
                node.type_text = self._squash(idx, stop - 1).replace(node.name, "", 1)
            else:
                node.type_text = self._squash(idx, name_idx - 1)
            node.decl_text = self._raw(idx, name_idx)
        else:
            node.type_text = self._squash(idx, stop - 1)
        for attribute in node.attributes:
            if attribute in NULLABILITY_ATTRIBUTES:
                node.nullability = attribute
                break
        else:
            for tok in self.toks[idx:stop]:
                if tok.value in NULLABILITY_QUALIFIERS:
                    node.nullability = tok.value
                    break
        last = stop if stop < end and self.toks[stop].value == ";" else stop - 1
        node.range = self._span(start, last)
        container.add_child(node)
        return last + 1

    def _property_name_index(self, idx: int, stop: int) -> Optional[int]:
        for k in range(idx, stop - 2):
            if self.toks[k].value == "(" and self.toks[k + 1].value == "^" and (
                self.toks[k + 2].type is TokenType.IDENTIFIER
            ):
                return k + 2
        candidate = None
        k = idx
        while k < stop:
            tok = self.toks[k]
            if tok.value in _OPENERS and tok.type is TokenType.PUNCT:
                k = self.pairs[k] + 1
                continue
            if (
                tok.type is TokenType.IDENTIFIER
                and not self._is(k + 1, "(")
                and tok.value not in NULLABILITY_QUALIFIERS
                and not _TRAILING_MACRO_RE.match(tok.value)
            ):
                candidate = k
            k += 1
        return candidate

    def _parse_enum(self, container: SyntaxNode, start: int, end: int) -> Optional[int]:
        brace = self._find(start, end, {";", "{"})
        if brace >= end or self.toks[brace].value != "{":
            return None
        node = EnumDecl(range=self._span(start, start))
        name_tok: Optional[Token] = None
        values = [tok.value for tok in self.toks[start:brace]]
        macro_idx = next(
            (k for k in range(start, brace) if self.toks[k].value in ENUM_MACROS and self._is(k + 1, "(")),
            None,
        )
        if macro_idx is not None:
            node.style = "macro"
            open_idx = macro_idx + 1
            args = self._split_top_level(open_idx + 1, self.pairs[open_idx])
            if args and args[0][0] < args[0][1]:
                node.underlying_type = self._squash(args[0][0], args[0][1] - 1)
            if len(args) > 1 and args[1][0] < args[1][1]:
                name_tok = self.toks[args[1][0]]
        elif "enum" in values:
            k = start + values.index("enum") + 1
            node.style = "typedef-enum" if values[0] == "typedef" else "enum"
            if k < brace and self.toks[k].type is TokenType.IDENTIFIER:
                name_tok = self.toks[k]
                k += 1
            if self._is(k, ":") and k < brace:
                node.underlying_type = self._squash(k + 1, brace - 1) or None
        else:
            return None

        close = self.pairs[brace]
        for first, stop in self._split_top_level(brace + 1, close):
            if first < stop and self.toks[first].type is TokenType.IDENTIFIER:
                node.members.append(self.toks[first].value)
        semi = self._find(close + 1, end, {";"})
        trailing = [k for k in range(close + 1, semi) if self.toks[k].type is TokenType.IDENTIFIER]
        if trailing and values[0] == "typedef":
            name_tok = self.toks[trailing[-1]]
        if name_tok is not None:
            node.name = name_tok.value
            node.name_range = name_tok.range
        last = semi if semi < end else close
        node.range = self._span(start, last)
        self._enter(self.toks[brace])
        self._scan_expression(node, brace + 1, close)
        self._leave()
        container.add_child(node)
        return last + 1

    def _standalone_macro_end(self, start: int, end: int) -> Optional[int]:
        """
        Last index of an unterminated macro line such as NS_ASSUME_NONNULL_BEGIN
        or API_AVAILABLE(ios(13.0)) that sits on its own line.
        """
        tok = self.toks[start]
        if (
            tok.type is not TokenType.IDENTIFIER
            or not _STANDALONE_MACRO_RE.match(tok.value)
            or tok.value in DECLARATION_QUALIFIERS
            or tok.value in ENUM_MACROS
            or not self._starts_line(tok)
        ):
            return None
        last = self.pairs[start + 1] if self._is(start + 1, "(") else start
        if last + 1 < end and self.toks[last + 1].line > self.toks[last].end_line:
            return last
        return None

    def _parse_file_statement(self, container: SyntaxNode, start: int, end: int) -> int:
        macro_end = self._standalone_macro_end(start, end)
        if macro_end is not None:
            self._scan_expression(container, start, macro_end + 1)
            return macro_end + 1
        idx = start
        saw_assign = False
        while idx < end:
            value = self.toks[idx].value
            if value == ";":
                break
            if value == "=":
                saw_assign = True
            if value == "{" and not saw_assign and self._function_name_index(start, idx) is not None:
                return self._parse_function(container, start, idx)
            if value in _OPENERS and self.toks[idx].type is TokenType.PUNCT:
                idx = self.pairs[idx] + 1
                continue
            if value in ("@end", "@interface", "@implementation", "@protocol", "@property") and idx > start:
                break
            idx += 1
        terminated = idx < end and self.toks[idx].value == ";"
        last = idx if terminated else idx - 1
        if last < start:
            return start + 1
        target = container
        constant = self._constant_from_statement(start, idx, last)
        if constant is not None:
            container.add_child(constant)
            target = constant
        self._scan_expression(target, start, idx)
        return last + 1

    def _function_name_index(self, start: int, brace: int) -> Optional[int]:
        if brace - 1 <= start or self.toks[brace - 1].value != ")":
            return None
        open_idx = self.pairs[brace - 1]
        name_idx = open_idx - 1
        if name_idx < start or self.toks[name_idx].type is not TokenType.IDENTIFIER:
            return None
        if self.toks[name_idx].value in ("if", "while", "for", "switch", "__attribute__"):
            return None
        return name_idx

    def _parse_function(self, container: SyntaxNode, start: int, brace: int) -> int:
        name_idx = self._function_name_index(start, brace)
        close = self.pairs[brace]
        node = FunctionDecl(
            range=self._span(start, close),
            name=self.toks[name_idx].value,
            return_type=self._squash(start, name_idx - 1),
            header_end=self._end_pos(brace - 1),
            open_brace=self._pos(brace),
            close_brace=self._pos(close),
            body_empty=close == brace + 1,
            body_span=(brace + 1, close),
        )
        self._parse_statements(node, brace + 1, close)
        container.add_child(node)
        return close + 1

    def _constant_from_statement(self, start: int, stop: int, last: int) -> Optional[ConstantDecl]:
        top: List[int] = []
        assign: Optional[int] = None
        idx = start
        while idx < stop:
            value = self.toks[idx].value
            if value == "=":
                assign = idx
                break
            top.append(idx)
            idx = self.pairs[idx] + 1 if value in _OPENERS and self.toks[idx].type is TokenType.PUNCT else idx + 1
        words = [self.toks[k].value for k in top]
        if "const" not in words or "typedef" in words:
            return None
        for k in top:
            if self.toks[k].value == "(" and k > start and self.toks[k - 1].type is TokenType.IDENTIFIER:
                return None  # function prototype
        name_idx = None
        for k in top:
            tok = self.toks[k]
            if tok.type is TokenType.IDENTIFIER and tok.value not in DECLARATION_QUALIFIERS:
                name_idx = k
        if name_idx is None or name_idx == start:
            return None
        type_text = " ".join(
            self.toks[k].value for k in top if k < name_idx and self.toks[k].value not in DECLARATION_QUALIFIERS
        )
        return ConstantDecl(
            range=self._span(start, last),
            name=self.toks[name_idx].value,
            type_text=type_text,
            value=self._squash(assign + 1, stop - 1) if assign is not None else None,
            is_static="static" in words,
            is_extern=any(word == "extern" or word.endswith(("_EXTERN", "_EXPORT")) for word in words),
            is_const=True,
            name_range=self.toks[name_idx].range,
        )

    # ------------------------------------------------------- statements

    def _parse_statements(self, container: SyntaxNode, idx: int, end: int) -> None:
        while idx < end:
            idx = self._parse_statement(container, idx, end)

    def _parse_statement(
        self, container: SyntaxNode, idx: int, end: int, heads: Optional[List[str]] = None
    ) -> int:
        tok = self.toks[idx]
        value = tok.value
        if heads is not None and value not in ("{", ";"):
            heads.append(value)
        if value == "{":
            close = self.pairs[idx]
            self._enter(tok)
            k = idx + 1
            while k < close:
                k = self._parse_statement(container, k, close, heads)
            self._leave()
            return close + 1
        if value == ";":
            return idx + 1
        if tok.type is TokenType.IDENTIFIER:
            if value in ("if", "while", "for") and self._is(idx + 1, "(") and idx + 1 < end:
                return self._parse_conditional_chain(container, idx, end)
            if value == "do":
                return self._parse_do(container, idx, end)
            if value == "switch" and self._is(idx + 1, "(") and idx + 1 < end:
                return self._parse_switch(container, idx, end)
            if value == "else":
                return idx + 1
        if value in ("@try", "@finally", "@autoreleasepool"):
            return idx + 1
        if value in ("@catch", "@synchronized") and self._is(idx + 1, "(") and idx + 1 < end:
            return self.pairs[idx + 1] + 1
        stop = self._find(idx, end, {";"})
        self._scan_expression(container, idx, stop)
        return stop + 1 if stop < end else end

    def _parse_body(self, node: SyntaxNode, idx: int, end: int) -> int:
        """Parse a braced or single-statement body; returns the index of its last token."""
        if idx >= end:
            return idx - 1
        self._enter(self.toks[idx])
        try:
            if self.toks[idx].value == "{":
                close = self.pairs[idx]
                node.body_braced = True
                node.open_brace = self._pos(idx)
                node.close_brace = self._pos(close)
                node.body_empty = close == idx + 1
                self._parse_statements(node, idx + 1, close)
                return close
            return self._parse_statement(node, idx, end) - 1
        finally:
            self._leave()

    def _parse_conditional(
        self, container: SyntaxNode, idx: int, end: int, else_idx: Optional[int]
    ) -> Tuple[ConditionalStmt, int]:
        open_idx = idx + 1
        close = self.pairs[open_idx]
        node = ConditionalStmt(
            range=self._span(idx, close),
            keyword=self.toks[idx].value,
            condition=self._squash(open_idx + 1, close - 1),
            condition_tokens=self.toks[open_idx + 1:close],
            header_end=self._end_pos(close),
        )
        if else_idx is not None:
            node.is_else_if = True
            node.else_keyword = self._pos(else_idx)
            if self._is(else_idx - 1, "}"):
                node.preceding_brace = self._pos(else_idx - 1)
        self._scan_expression(node, open_idx + 1, close)
        body_last = self._parse_body(node, close + 1, end)
        node.range = self._span(else_idx if else_idx is not None else idx, max(body_last, close))
        container.add_child(node)
        return node, max(body_last, close)

    def _parse_conditional_chain(self, container: SyntaxNode, idx: int, end: int) -> int:
        else_idx: Optional[int] = None
        while True:
            node, last = self._parse_conditional(container, idx, end, else_idx)
            nxt = last + 1
            if node.keyword != "if" or nxt >= end or self.toks[nxt].value != "else":
                return nxt
            if nxt + 2 < end and self._is(nxt + 1, "if") and self._is(nxt + 2, "("):
                else_idx = nxt
                idx = nxt + 1
                continue
            else_node = ConditionalStmt(
                range=self._span(nxt, nxt),
                keyword="else",
                header_end=self._end_pos(nxt),
                else_keyword=self._pos(nxt),
                preceding_brace=self._pos(nxt - 1) if self._is(nxt - 1, "}") else None,
            )
            else_last = self._parse_body(else_node, nxt + 1, end)
            else_node.range = self._span(nxt, else_last)
            container.add_child(else_node)
            return max(else_last, nxt) + 1

    def _parse_do(self, container: SyntaxNode, idx: int, end: int) -> int:
        node = ConditionalStmt(range=self._span(idx, idx), keyword="do", header_end=self._end_pos(idx))
        last = max(self._parse_body(node, idx + 1, end), idx)
        k = last + 1
        if k + 1 < end and self._is(k, "while") and self._is(k + 1, "("):
            close = self.pairs[k + 1]
            node.condition = self._squash(k + 2, close - 1)
            node.condition_tokens = self.toks[k + 2:close]
            self._scan_expression(node, k + 2, close)
            last = close + 1 if close + 1 < end and self._is(close + 1, ";") else close
        node.range = self._span(idx, last)
        container.add_child(node)
        return last + 1

    def _parse_switch(self, container: SyntaxNode, idx: int, end: int) -> int:
        open_idx = idx + 1
        close = self.pairs[open_idx]
        node = SwitchStmt(
            range=self._span(idx, close),
            control_expr=self._squash(open_idx + 1, close - 1),
            header_end=self._end_pos(close),
        )
        self._scan_expression(node, open_idx + 1, close)
        body = close + 1
        if body >= end or self.toks[body].value != "{":
            last = self._parse_statement(node, body, end) - 1 if body < end else close
            node.range = self._span(idx, max(last, close))
            container.add_child(node)
            return max(last, close) + 1
        body_close = self.pairs[body]
        node.open_brace = self._pos(body)
        node.close_brace = self._pos(body_close)
        node.body_empty = body_close == body + 1
        self._enter(self.toks[body])
        k = body + 1
        while k < body_close:
            if self.toks[k].value in ("case", "default"):
                k = self._parse_case(node, k, body_close)
            else:
                k = self._parse_statement(node, k, body_close)
        self._leave()
        node.range = self._span(idx, body_close)
        container.add_child(node)
        return body_close + 1

    def _parse_case(self, switch: SwitchStmt, idx: int, body_close: int) -> int:
        label = self.toks[idx]
        clause = CaseClause(range=label.range, is_default=label.value == "default")
        colon = self._find(idx + 1, body_close, {":"})
        if colon >= body_close:
            colon = idx
        else:
            clause.label_colon = self._pos(colon)
        if not clause.is_default:
            clause.labels = [self._squash(idx + 1, colon - 1)]
        k = colon + 1
        clause.braced = k < body_close and self.toks[k].value == "{"
        while k < body_close and self.toks[k].value not in ("case", "default"):
            k = self._parse_statement(clause, k, body_close, clause.statement_heads)
        k = min(k, body_close)
        last = self.all_tokens[self.toks[k].index - 1]
        clause.range = SourceRange(label.line, label.column, last.end_line, last.end_column)
        switch.add_child(clause)
        return k

    # ------------------------------------------------------ expressions

    def _scan_expression(self, container: SyntaxNode, idx: int, stop: int) -> None:
        """Recover literals and block bodies inside an expression token run."""
        while idx < stop:
            tok = self.toks[idx]
            value = tok.value
            if value in ("@[", "@{", "@("):
                idx = self._parse_literal(container, idx)
                continue
            if (tok.type is TokenType.NUMBER and value.startswith("@")) or value in ("@YES", "@NO", "@true", "@false"):
                container.add_child(Literal(range=tok.range, literal_kind="number", text=value))
            elif value == "^":
                nxt = self._parse_block(container, idx, stop)
                if nxt is not None:
                    idx = nxt
                    continue
            idx += 1

    def _parse_literal(self, container: SyntaxNode, idx: int) -> int:
        close = self.pairs[idx]
        literal_kind = {"@[": "array", "@{": "dictionary", "@(": "boxed"}[self.toks[idx].value]
        node = Literal(range=self._span(idx, close), literal_kind=literal_kind, text=self._raw(idx, close))
        if literal_kind != "boxed":
            for first, stop in self._split_top_level(idx + 1, close):
                if first >= stop:
                    continue
                colon = self._find(first, stop, {":"}) if literal_kind == "dictionary" else stop
                if colon < stop:
                    node.elements.append(self._element(first, colon, "key"))
                    if colon + 1 < stop:
                        node.elements.append(self._element(colon + 1, stop, "value"))
                else:
                    node.elements.append(self._element(first, stop, "element"))
        self._enter(self.toks[idx])
        self._scan_expression(node, idx + 1, close)
        self._leave()
        container.add_child(node)
        return close + 1

    def _element(self, first: int, stop: int, role: str) -> LiteralElement:
        head, tail = self.toks[first], self.toks[stop - 1]
        return LiteralElement(
            text=self._squash(first, stop - 1),
            line=head.line,
            column=head.column,
            end_line=tail.end_line,
            end_column=tail.end_column,
            role=role,
        )

    def _parse_block(self, container: SyntaxNode, idx: int, stop: int) -> Optional[int]:
        k = idx + 1
        while k < stop:
            tok = self.toks[k]
            if tok.value == "{":
                break
            if tok.value == "(":
                k = self.pairs[k] + 1
            elif tok.type is TokenType.IDENTIFIER or tok.value == "*":
                k += 1
            else:
                return None
        else:
            return None
        close = self.pairs[k]
        node = BlockExpr(range=self._span(idx, close))
        self._enter(self.toks[k])
        self._parse_statements(node, k + 1, close)
        self._leave()
        container.add_child(node)
        return close + 1

    # ----------------------------------------------------------- trivia

    def _starts_line(self, tok: Token) -> bool:
        return not self.unit.line_text(tok.line)[:tok.column - 1].strip()

    def _attach_trivia(self, root: FileNode) -> None:
        groups: List[List[Token]] = []
        for tok in self.all_tokens:
            if tok.type not in TRIVIA_TYPES:
                continue
            if groups and tok.type is TokenType.LINE_COMMENT:
                previous = groups[-1][-1]
                if (
                    previous.type is TokenType.LINE_COMMENT
                    and previous.index == tok.index - 1
                    and tok.line == previous.line + 1
                    and self._starts_line(tok)
                    and self._starts_line(groups[-1][0])
                ):
                    groups[-1].append(tok)
                    continue
            groups.append([tok])
        for group in groups:
            _insert_node(root, self._trivia_node(group))

    def _trivia_node(self, group: List[Token]) -> SyntaxNode:
        first, last = group[0], group[-1]
        node_range = SourceRange(first.line, first.column, last.end_line, last.end_column)
        if first.type is not TokenType.DIRECTIVE:
            style = "block" if first.type is TokenType.BLOCK_COMMENT else "line"
            return CommentBlock(range=node_range, text="\n".join(tok.value for tok in group), style=style)

        text = first.value
        name_match = re.match(r"#\s*([A-Za-z_]\w*)", text)
        name = name_match.group(1) if name_match else ""
        define = _DEFINE_RE.match(text)
        if define and not define.group(2):
            value = _strip_directive_comment(define.group(3)).strip()
            if _DEFINE_LITERAL_RE.match(value):
                name_line, name_col = self.unit.position(first.offset + define.start(1))
                return ConstantDecl(
                    range=node_range,
                    name=define.group(1),
                    value=value,
                    is_const=False,
                    via_define=True,
                    name_range=SourceRange(name_line, name_col, name_line, name_col + len(define.group(1))),
                )
        node = Directive(range=node_range, name=name, text=text)
        mark = _PRAGMA_MARK_RE.match(text)
        if mark:
            node.mark_label = _strip_directive_comment(mark.group(1)).strip()
            node.has_separator = node.mark_label.startswith("-")
        return node

    def _collect_suppressions(self) -> Dict[int, Optional[Set[str]]]:
        result: Dict[int, Optional[Set[str]]] = {}
        for tok in self.all_tokens:
            if tok.type not in (TokenType.LINE_COMMENT, TokenType.BLOCK_COMMENT):
                continue
            for match in _SUPPRESSION_RE.finditer(tok.value):
                target = tok.line if match.group(1) == "line" else tok.end_line + 1
                rule_ids = {part for part in re.split(r"[,\s]+", match.group(2)) if part}
                if target in result and result[target] is None:
                    continue
                if not rule_ids:
                    result[target] = None
                else:
                    result[target] = (result.get(target) or set()) | rule_ids
        return result


def _insert_node(root: SyntaxNode, node: SyntaxNode) -> None:
    container = root
    while True:
        for child in container.children:
            if child.range.contains(node.range):
                container = child
                break
        else:
            break
    container.add_child(node)


def build_model(unit: SourceUnit, max_depth: int = DEFAULT_MAX_NESTING_DEPTH) -> FileNode:
    """
    Lex and structure one source unit. Raises ParseError when the structure
    cannot be recovered.
    """
    tokens = Lexer(unit).tokenize()
    try:
        return _ModelBuilder(unit, tokens, max_depth).build()
    except RecursionError as exc:
        raise ParseError("MaxDepthExceeded", "source nests too deeply to analyse", 1, 1) from exc


# ============================================================
# ================== RULE MODEL & REGISTRY ===================
# ============================================================

@dataclass(frozen=True)
class Issue:
    """What a check function yields: a location, a message and an optional fix text."""
    range: SourceRange
    message: str
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class Finding:
    """
    One reported rule violation. Immutable; produced by the engine (or the
    run pipeline for parse / io failures) and consumed by the aggregator.
    """
    rule_id: str
    severity: str
    path: str
    range: SourceRange
    message: str
    suggestion: Optional[str] = None
    category: str = "style"  # "style" | "parse" | "io" | "internal"

    @property
    def sort_key(self) -> Tuple[Any, ...]:
        return (
            self.path,
            self.range.start_line,
            self.range.start_col,
            self.rule_id,
            self.range.end_line,
            self.range.end_col,
            self.message,
        )

    @property
    def identity(self) -> Tuple[str, str, SourceRange]:
        return (self.rule_id, self.path, self.range)

    def render_text(self) -> str:
        return (
            f"{self.path}:{self.range.start_line}:{self.range.start_col}: "
            f"{self.severity} [{self.rule_id}] {self.message}"
        )

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity,
            "category": self.category,
            "path": self.path,
            "range": self.range.to_json_obj(),
            "message": self.message,
            "suggestion": self.suggestion,
        }


@dataclass
class RuleContext:
    """Everything a check function may look at besides the node itself."""
    unit: SourceUnit
    root: FileNode
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def tokens(self) -> List[Token]:
        return self.root.tokens

    @property
    def pairs(self) -> Dict[int, int]:
        return self.root.bracket_pairs

    def text(self, first: Token, last: Token) -> str:
        return self.unit.text[first.offset:last.end_offset]

    def line_range(self, line: int) -> SourceRange:
        return SourceRange(line, 1, line, len(self.unit.line_text(line)) + 1)

    def head_range(self, node: SyntaxNode) -> SourceRange:
        """The node's range cut off at the end of its first line."""
        line = node.range.start_line
        if node.range.end_line == line:
            return node.range
        return SourceRange(line, node.range.start_col, line, len(self.unit.line_text(line)) + 1)

    def token_range(self, first: Token, last: Token) -> SourceRange:
        return SourceRange(first.line, first.column, last.end_line, last.end_column)

    def first_tokens_by_line(self) -> Dict[int, int]:
        """line -> index of the first code token starting on that line."""
        result: Dict[int, int] = {}
        for idx, tok in enumerate(self.tokens):
            result.setdefault(tok.line, idx)
        return result


CheckFunction = Callable[[SyntaxNode, RuleContext], Iterable[Issue]]


@dataclass
class Rule:
    """
    A registered style rule.

    - id: unique rule id (kebab-case)
    - description: human text, shown by `objclint rules`
    - severity: default severity, "error" | "warning" | "info"
    - kinds: node kinds the engine dispatches to this rule
    - check: stateless function (node, context) -> iterable of Issue
    - params: parameter defaults; configuration may override them
    - origin: "builtin" or the configuration file that declared the rule
    """
    id: str
    description: str
    severity: str
    kinds: Tuple[str, ...]
    check: CheckFunction = field(repr=False)
    params: Dict[str, Any] = field(default_factory=dict)
    origin: str = "builtin"

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "severity": self.severity,
            "kinds": list(self.kinds),
            "params": self.params,
            "origin": self.origin,
        }


BUILTIN_RULES: List[Rule] = []


def builtin_rule(
    rule_id: str, description: str, *, kinds: Iterable[str], severity: str = "warning", **params: Any
) -> Callable[[CheckFunction], CheckFunction]:
    """Register a check function in the built-in catalogue."""

    def decorator(func: CheckFunction) -> CheckFunction:
        BUILTIN_RULES.append(Rule(rule_id, description, severity, tuple(kinds), func, dict(params)))
        return func

    return decorator


class RuleRegistry:
    """
    Rules by id, in registration order. Built once per run and shared
    read-only by every worker.
    """

    def __init__(self, rules: Optional[Iterable[Rule]] = None) -> None:
        self._rules: Dict[str, Rule] = {}
        for rule in BUILTIN_RULES if rules is None else rules:
            self.register(rule)

    @classmethod
    def for_configuration(cls, config: "Configuration") -> "RuleRegistry":
        registry = cls()
        for rule in config.custom_rules:
            registry.register(rule)
        return registry

    def register(self, rule: Rule) -> None:
        if rule.id in RESERVED_RULE_IDS:
            raise ValueError(f"rule id '{rule.id}' is reserved")
        if rule.id in self._rules:
            raise ValueError(f"duplicate rule id '{rule.id}'")
        unknown = [kind for kind in rule.kinds if kind not in NODE_TYPES]
        if unknown:
            raise ValueError(f"rule '{rule.id}' inspects unknown node kind(s) {unknown}")
        self._rules[rule.id] = rule

    def list_rules(self) -> List[Rule]:
        return list(self._rules.values())

    def lookup(self, rule_id: str) -> Rule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise RuleNotFoundError(rule_id) from None

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def dispatch_table(self, config: "Configuration") -> Dict[str, List[Rule]]:
        """node kind -> enabled rules inspecting it, ordered by rule id."""
        table: Dict[str, List[Rule]] = {}
        for rule in sorted(self._rules.values(), key=lambda r: r.id):
            if not config.is_enabled(rule.id):
                continue
            for kind in rule.kinds:
                table.setdefault(kind, []).append(rule)
        return table


def _point(pos: Tuple[int, int], width: int = 1) -> SourceRange:
    return SourceRange(pos[0], pos[1], pos[0], pos[1] + width)


def _name_range(node: SyntaxNode, ctx: RuleContext) -> SourceRange:
    name_range = getattr(node, "name_range", None)
    return name_range if name_range is not None else ctx.head_range(node)


def _body_tokens(node: SyntaxNode, ctx: RuleContext) -> List[Token]:
    span = getattr(node, "body_span", None)
    if span is None:
        return []
    return ctx.tokens[span[0]:span[1]]


# ============================================================
# ===================== BUILT-IN RULES =======================
# ============================================================

_UPPER_CAMEL_RE = re.compile(r"^[A-Z][A-Za-z0-9]*$")
_LOWER_CAMEL_RE = re.compile(r"^[a-z][A-Za-z0-9]*$")
_CONSTANT_NAME_RE = re.compile(r"^[A-Z]{2,}[a-z0-9][A-Za-z0-9]*$")
_LEADING_WS_RE = re.compile(r"[ \t]*")

CASE_TERMINATORS = frozenset({"break", "return", "continue", "goto", "@throw"})
STORAGE_ATTRIBUTES = frozenset({"strong", "weak", "assign", "copy", "retain", "unsafe_unretained"})
ATOMICITY_ATTRIBUTES = frozenset({"atomic", "nonatomic"})
ACCESS_ATTRIBUTES = frozenset({"readonly", "readwrite"})
ATTRIBUTE_GROUPS = ("storage", "atomicity", "access", "accessors", "class", "nullability")


def _upper_camel(name: str) -> str:
    if re.match(r"k[A-Z]", name):
        name = name[1:]
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[_\s]+", name) if part)


def _lower_camel(name: str) -> str:
    camel = _upper_camel(name)
    return camel[:1].lower() + camel[1:]


def _class_stem(name: str) -> str:
    """Class name without its upper-case prefix: RWTAirplane -> Airplane."""
    match = re.match(r"^[A-Z]+(?=[A-Z][a-z])", name)
    return name[match.end():] if match else name


def _case_label_range(clause: CaseClause) -> SourceRange:
    if clause.label_colon is None:
        return _point(clause.range.start, 4)
    line, column = clause.label_colon
    return SourceRange(clause.range.start_line, clause.range.start_col, line, column + 1)


def _attribute_group(attribute: str) -> Optional[str]:
    if attribute in STORAGE_ATTRIBUTES:
        return "storage"
    if attribute in ATOMICITY_ATTRIBUTES:
        return "atomicity"
    if attribute in ACCESS_ATTRIBUTES:
        return "access"
    if attribute.startswith(("getter=", "setter=")):
        return "accessors"
    if attribute == "class":
        return "class"
    if attribute in NULLABILITY_ATTRIBUTES:
        return "nullability"
    return None


# ---------------------------------------------------------------- layout

@builtin_rule(
    "brace-placement",
    "Opening braces share the line of their statement; closing braces start a new line.",
    kinds=("MethodDecl", "FunctionDecl", "ConditionalStmt", "SwitchStmt"),
)
def check_brace_placement(node: SyntaxNode, ctx: RuleContext) -> Iterator[Issue]:
    open_brace = getattr(node, "open_brace", None)
    header_end = getattr(node, "header_end", None)
    if open_brace is not None and header_end is not None and open_brace[0] != header_end[0]:
        yield Issue(_point(open_brace), "opening brace belongs on the line of its statement")
    close_brace = getattr(node, "close_brace", None)
    if close_brace is not None and not getattr(node, "body_empty", False):
        line, column = close_brace
        if ctx.unit.line_text(line)[:column - 1].strip():
            yield Issue(_point(close_brace), "closing brace should start its own line")
    if isinstance(node, ConditionalStmt) and node.else_keyword is not None and node.preceding_brace is not None:
        if node.preceding_brace[0] != node.else_keyword[0]:
            yield Issue(
                _point(node.else_keyword, 4),
                "'else' belongs on the line of the preceding closing brace",
                suggestion="} else",
            )


@builtin_rule(
    "line-length",
    "Lines are no longer than max_length characters.",
    kinds=("FileNode",),
    max_length=120,
)
def check_line_length(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    limit = ctx.params["max_length"]
    for number, text in enumerate(ctx.unit.lines(), start=1):
        if len(text) > limit:
            yield Issue(
                SourceRange(number, limit + 1, number, len(text) + 1),
                f"line is {len(text)} characters long (limit {limit})",
            )


@builtin_rule(
    "blank-line-between-methods",
    "Method implementations are separated by exactly one blank line.",
    kinds=("ClassDecl",),
)
def check_blank_line_between_methods(node: ClassDecl, ctx: RuleContext) -> Iterator[Issue]:
    methods = [child for child in node.children if isinstance(child, MethodDecl) and child.has_body]
    for previous, current in zip(methods, methods[1:]):
        gap = range(previous.range.end_line + 1, current.range.start_line)
        blank = {number for number in gap if not ctx.unit.line_text(number).strip()}
        if not blank:
            yield Issue(
                ctx.head_range(current),
                f"separate '{current.selector}' from the previous method with a blank line",
            )
            continue
        for number in sorted(blank):
            if number + 1 in blank:
                yield Issue(ctx.line_range(number + 1), "use a single blank line between methods")
                break


@dataclass
class _IndentLevel:
    indent: int  # expected indentation of statements at this level
    opener_indent: int  # indentation of the line holding the opening brace
    paren_depth: int
    case_indent: Optional[int] = None


@builtin_rule(
    "indentation",
    "Indentation uses spaces, width spaces per brace level.",
    kinds=("FileNode",),
    width=2,
)
def check_indentation(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    width = ctx.params["width"]
    tab_lines: Set[int] = set()
    for number, text in enumerate(ctx.unit.lines(), start=1):
        leading = _LEADING_WS_RE.match(text).group(0)
        if "\t" in leading:
            tab_lines.add(number)
            yield Issue(SourceRange(number, 1, number, len(leading) + 1), "indent with spaces, not tabs")

    case_colons = {clause.label_colon for clause in node.find_all("CaseClause") if clause.label_colon}
    levels = [_IndentLevel(0, 0, 0)]
    paren_depth = 0
    previous: Optional[Token] = None
    for idx, tok in enumerate(ctx.tokens):
        starts_line = previous is None or tok.line != previous.line
        prefix = ctx.unit.line_text(tok.line)[:tok.column - 1]
        if starts_line and tok.line not in tab_lines and not prefix.strip():
            level = levels[-1]
            closes_block = tok.value == "}" and ctx.tokens[ctx.pairs[idx]].value == "{"
            boundary = (
                previous is None
                or previous.value in (";", "{", "}", "@end")
                or (previous.line, previous.column) in case_colons
            )
            expected: Optional[int] = None
            if closes_block:
                expected = level.opener_indent
            elif boundary and paren_depth == level.paren_depth:
                if tok.value in ("case", "default"):
                    expected = level.indent
                    level.case_indent = len(prefix)
                elif level.case_indent is not None:
                    expected = level.case_indent + width
                else:
                    expected = level.indent
            if expected is not None and len(prefix) != expected:
                yield Issue(
                    SourceRange(tok.line, 1, tok.line, tok.column),
                    f"expected indentation of {expected} spaces, found {len(prefix)}",
                )

        if tok.type is TokenType.PUNCT:
            if tok.value == "{":
                line_indent = len(_LEADING_WS_RE.match(ctx.unit.line_text(tok.line)).group(0))
                levels.append(_IndentLevel(line_indent + width, line_indent, paren_depth))
            elif tok.value == "}":
                if ctx.tokens[ctx.pairs[idx]].value == "{":
                    if len(levels) > 1:
                        paren_depth = levels.pop().paren_depth
                else:
                    paren_depth -= 1
            elif tok.value in ("(", "[", "@(", "@[", "@{"):
                paren_depth += 1
            elif tok.value in (")", "]"):
                paren_depth -= 1
        previous = tok


@builtin_rule(
    "pragma-mark",
    "Larger implementations are organised with '#pragma mark -' sections in a fixed order.",
    kinds=("ClassDecl",),
    severity="info",
    min_methods=3,
    section_order=[
        "Lifecycle", "Custom Accessors", "IBActions", "Public", "Private", "Protocol conformance", "NSObject",
    ],
)
def check_pragma_mark(node: ClassDecl, ctx: RuleContext) -> Iterator[Issue]:
    if not node.is_implementation:
        return
    methods = [child for child in node.children if isinstance(child, MethodDecl)]
    marks = [child for child in node.children if isinstance(child, Directive) and child.is_mark]
    if len(methods) >= ctx.params["min_methods"] and not marks:
        yield Issue(
            _name_range(node, ctx),
            f"@implementation {node.name} has {len(methods)} methods but no '#pragma mark -' sections",
        )
    order = [section.lower() for section in ctx.params["section_order"]]
    best_rank, best_name = -1, ""
    for mark in marks:
        if not mark.has_separator:
            yield Issue(
                mark.range,
                "use '#pragma mark - Section' so the section gets a separator",
                suggestion=f"#pragma mark - {mark.mark_label}",
            )
        section = mark.section or ""
        if section.lower() not in order:
            continue
        rank = order.index(section.lower())
        if rank < best_rank:
            yield Issue(mark.range, f"section '{section}' should come before '{best_name}'")
        else:
            best_rank, best_name = rank, section


# ---------------------------------------------------------------- naming

@builtin_rule(
    "constant-naming",
    "Constants are UpperCamelCase with a class prefix, e.g. RWTImageThumbnailHeight.",
    kinds=("ConstantDecl",),
    prefix="",
)
def check_constant_naming(node: ConstantDecl, ctx: RuleContext) -> Iterator[Issue]:
    prefix = ctx.params["prefix"]
    if _CONSTANT_NAME_RE.match(node.name) and node.name.startswith(prefix):
        return
    suggestion = _upper_camel(node.name)
    if prefix and not suggestion.startswith(prefix):
        suggestion = prefix + suggestion
    wanted = f"start with '{prefix}'" if prefix else "start with a class prefix"
    yield Issue(
        _name_range(node, ctx),
        f"constant '{node.name}' should be UpperCamelCase and {wanted}",
        suggestion=suggestion if suggestion != node.name else None,
    )


@builtin_rule(
    "define-constant",
    "Constants are typed 'static const' declarations rather than #define.",
    kinds=("ConstantDecl",),
)
def check_define_constant(node: ConstantDecl, ctx: RuleContext) -> Iterator[Issue]:
    if node.via_define:
        value = node.value or ""
        if '"' in value:
            declared = "NSString * const"
        elif "." in value or ("e" in value.lower() and "0x" not in value.lower()):
            declared = "CGFloat const"
        else:
            declared = "NSInteger const"
        yield Issue(
            _name_range(node, ctx),
            f"'{node.name}' should be a typed 'static const' constant instead of a #define",
            suggestion=f"static {declared} {node.name} = {value};",
        )
    elif not node.is_static and not node.is_extern:
        yield Issue(_name_range(node, ctx), f"file-level constant '{node.name}' should be declared 'static'")


@builtin_rule(
    "property-naming",
    "Property names are lowerCamelCase.",
    kinds=("PropertyDecl",),
)
def check_property_naming(node: PropertyDecl, ctx: RuleContext) -> Iterator[Issue]:
    if not node.name or _LOWER_CAMEL_RE.match(node.name):
        return
    yield Issue(
        _name_range(node, ctx),
        f"property '{node.name}' should be lowerCamelCase",
        suggestion=_lower_camel(node.name),
    )


@builtin_rule(
    "type-naming",
    "Class, protocol and enum names are UpperCamelCase and carry the class prefix.",
    kinds=("ClassDecl", "ProtocolDecl", "EnumDecl"),
    class_prefix="",
)
def check_type_naming(node: SyntaxNode, ctx: RuleContext) -> Iterator[Issue]:
    if isinstance(node, ClassDecl) and (node.is_implementation or node.category is not None):
        return
    name = getattr(node, "name", None)
    if not name:
        return
    what = {"ClassDecl": "class", "ProtocolDecl": "protocol", "EnumDecl": "enum"}[node.kind]
    prefix = ctx.params["class_prefix"]
    if not _UPPER_CAMEL_RE.match(name):
        yield Issue(_name_range(node, ctx), f"{what} '{name}' should be UpperCamelCase")
    elif prefix and not name.startswith(prefix):
        yield Issue(
            _name_range(node, ctx),
            f"{what} '{name}' should start with the prefix '{prefix}'",
            suggestion=prefix + name,
        )


@builtin_rule(
    "controller-suffix",
    "Subclasses keep the suffix of their superclass (ViewController, Cell, View, ...).",
    kinds=("ClassDecl",),
    suffixes=["ViewController", "Controller", "Cell", "View"],
)
def check_controller_suffix(node: ClassDecl, ctx: RuleContext) -> Iterator[Issue]:
    if node.is_implementation or node.category is not None or not node.superclass or not node.name:
        return
    for suffix in sorted(ctx.params["suffixes"], key=len, reverse=True):
        if node.superclass.endswith(suffix):
            if not node.name.endswith(suffix):
                yield Issue(
                    _name_range(node, ctx),
                    f"'{node.name}' subclasses {node.superclass} and should end with '{suffix}'",
                    suggestion=node.name + suffix,
                )
            return


@builtin_rule(
    "selector-and",
    "Selector keywords are not joined with 'and'.",
    kinds=("MethodDecl",),
)
def check_selector_and(node: MethodDecl, ctx: RuleContext) -> Iterator[Issue]:
    for segment in node.segments[1:]:
        if re.match(r"and(?:[A-Z_]|$)", segment.keyword):
            rest = segment.keyword[3:]
            fixed = rest[:1].lower() + rest[1:]
            yield Issue(
                SourceRange(segment.line, segment.column, segment.line, segment.column + len(segment.keyword)),
                f"don't join selector keywords with 'and' ('{segment.keyword}:')",
                suggestion=f"{fixed}:" if fixed else None,
            )
            return


# ------------------------------------------------------ declarations

_METHOD_HEAD_RE = re.compile(r"[-+](\s*)\((?:[^()]|\([^()]*\))*\)(\s*)")


@builtin_rule(
    "method-signature-spacing",
    "One space after the method type sign, none between return type and selector.",
    kinds=("MethodDecl",),
)
def check_method_signature_spacing(node: MethodDecl, ctx: RuleContext) -> Iterator[Issue]:
    line, column = node.range.start
    match = _METHOD_HEAD_RE.match(ctx.unit.line_text(line)[column - 1:])
    if match is None:
        return
    if match.group(1) != " ":
        yield Issue(
            SourceRange(line, column, line, column + 1 + len(match.group(1))),
            "put exactly one space after the method type sign",
        )
    if match.group(2):
        start = column + match.start(2)
        yield Issue(
            SourceRange(line, start, line, start + len(match.group(2))),
            "no space between the return type and the selector",
        )


_C_POINTER_BASES = frozenset({"void", "char", "int", "float", "double", "long", "short", "unsigned", "signed"})
_TYPE_ASTERISK_RE = re.compile(r"[\w>]\*")
_PROPERTY_POINTER_RE = re.compile(r"([\w>])(\s*)(\*+)(\s*)([A-Za-z_]\w*)$")


@builtin_rule(
    "pointer-asterisk",
    "The asterisk binds to the variable name: NSString *text.",
    kinds=("FileNode", "PropertyDecl", "MethodDecl"),
)
def check_pointer_asterisk(node: SyntaxNode, ctx: RuleContext) -> Iterator[Issue]:
    if isinstance(node, PropertyDecl):
        match = _PROPERTY_POINTER_RE.search(node.decl_text)
        if match and (not match.group(2) or match.group(4)):
            base = node.type_text.rstrip("* ").rstrip()
            yield Issue(
                _name_range(node, ctx),
                f"write '{base} *{node.name}': the asterisk binds to the name",
                suggestion=f"{base} *{node.name}",
            )
    elif isinstance(node, MethodDecl):
        types = []
        if node.return_type:
            types.append((node.return_type, node.range.start))
        types.extend((segment.param_type, (segment.line, segment.column)) for segment in node.segments if segment.param_type)
        for text, position in types:
            if _TYPE_ASTERISK_RE.search(text):
                yield Issue(
                    _point(position),
                    f"put a space before the asterisk in '{text}'",
                    suggestion=re.sub(r"([\w>])\*", r"\1 *", text),
                )
    else:
        yield from _declaration_asterisks(ctx)


def _declaration_asterisks(ctx: RuleContext) -> Iterator[Issue]:
    toks = ctx.tokens
    for idx, base in enumerate(toks):
        if base.type is not TokenType.IDENTIFIER or idx + 2 >= len(toks) or toks[idx + 1].value != "*":
            continue
        if not (base.value[:1].isupper() or base.value in _C_POINTER_BASES):
            continue
        last_star = idx + 1
        while last_star + 1 < len(toks) and toks[last_star + 1].value == "*":
            last_star += 1
        name_idx = last_star + 1
        if name_idx >= len(toks):
            continue
        name = toks[name_idx]
        if name.type is not TokenType.IDENTIFIER or name.value in DECLARATION_QUALIFIERS:
            continue
        if name.value in NULLABILITY_QUALIFIERS:
            continue
        follow = toks[name_idx + 1].value if name_idx + 1 < len(toks) else ""
        if follow not in ("=", ";", ",", ")", "[", "in"):
            continue
        previous = toks[idx - 1].value if idx > 0 else ";"
        space_before = toks[idx + 1].offset > base.end_offset
        space_after = name.offset > toks[last_star].end_offset
        if space_before and not space_after:
            continue
        statement_start = previous in (";", "{", "}") or previous in DECLARATION_QUALIFIERS
        if not statement_start and (previous not in ("(", ",") or space_before):
            continue
        yield Issue(
            ctx.token_range(base, name),
            f"write '{base.value} *{name.value}': the asterisk binds to the variable",
            suggestion=f"{base.value} {'*' * (last_star - idx)}{name.value}",
        )


@builtin_rule(
    "property-attributes",
    "Storage and atomicity are explicit; attributes follow storage, atomicity, access, accessors, class, nullability.",
    kinds=("PropertyDecl",),
)
def check_property_attributes(node: PropertyDecl, ctx: RuleContext) -> Iterator[Issue]:
    groups = [(attribute, _attribute_group(attribute)) for attribute in node.attributes]
    present = {group for _, group in groups}
    if "storage" not in present:
        yield Issue(ctx.head_range(node), f"property '{node.name}' should state its storage (strong, weak, copy, assign)")
    if "atomicity" not in present:
        yield Issue(ctx.head_range(node), f"property '{node.name}' should state its atomicity (nonatomic or atomic)")
    known = [(attribute, group) for attribute, group in groups if group is not None]
    ranks = [ATTRIBUTE_GROUPS.index(group) for _, group in known]
    if ranks != sorted(ranks):
        ordered = sorted(known, key=lambda item: ATTRIBUTE_GROUPS.index(item[1]))
        unknown = [attribute for attribute, group in groups if group is None]
        yield Issue(
            ctx.head_range(node),
            "property attributes should be ordered storage, atomicity, access, accessors, class, nullability",
            suggestion="(" + ", ".join([attribute for attribute, _ in ordered] + unknown) + ")",
        )


@builtin_rule(
    "property-nullability",
    "Every property declares its nullability.",
    kinds=("PropertyDecl",),
)
def check_property_nullability(node: PropertyDecl, ctx: RuleContext) -> Iterator[Issue]:
    if node.nullability is None:
        yield Issue(node.range, f"property '{node.name}' does not declare nullability")


@builtin_rule(
    "property-copy",
    "Properties of classes with mutable subclasses, and block properties, use copy.",
    kinds=("PropertyDecl",),
    severity="info",
    copy_types=[
        "NSString", "NSArray", "NSDictionary", "NSSet", "NSOrderedSet", "NSData",
        "NSAttributedString", "NSIndexSet", "NSCharacterSet", "NSURLRequest",
    ],
)
def check_property_copy(node: PropertyDecl, ctx: RuleContext) -> Iterator[Issue]:
    if "copy" in node.attributes or "readonly" in node.attributes:
        return
    if node.is_block:
        what = "block"
    elif node.base_type in ctx.params["copy_types"]:
        what = node.base_type
    else:
        return
    storage = [attribute for attribute in node.attributes if attribute in STORAGE_ATTRIBUTES]
    attributes = ["copy"] + [attribute for attribute in node.attributes if attribute not in storage]
    yield Issue(
        _name_range(node, ctx),
        f"{what} property '{node.name}' should use copy",
        suggestion="(" + ", ".join(attributes) + ")",
    )


@builtin_rule(
    "private-property-placement",
    "Private properties live in a class extension of the implementation file.",
    kinds=("PropertyDecl",),
)
def check_private_property_placement(node: PropertyDecl, ctx: RuleContext) -> Iterator[Issue]:
    owner = node.parent
    if not isinstance(owner, ClassDecl):
        return
    if ctx.root.is_header:
        if owner.is_extension:
            yield Issue(
                _name_range(node, ctx),
                f"'{node.name}' is declared in a class extension in a header; "
                "move private properties to the implementation file",
            )
        return
    if owner.category is not None or owner.is_implementation:
        return
    implemented = any(
        isinstance(child, ClassDecl) and child.is_implementation and child.name == owner.name
        for child in ctx.root.children
    )
    if implemented:
        yield Issue(
            _name_range(node, ctx),
            f"private property '{node.name}' belongs in a class extension '@interface {owner.name} ()'",
        )


@builtin_rule(
    "instancetype",
    "Initialisers and class constructors return instancetype rather than id.",
    kinds=("MethodDecl",),
)
def check_instancetype(node: MethodDecl, ctx: RuleContext) -> Iterator[Issue]:
    if node.return_type is None or re.sub(r"[\s()]", "", node.return_type) != "id":
        return
    keyword = node.first_keyword
    if node.is_class_method:
        owner = node.enclosing("ClassDecl")
        stem = _class_stem(owner.name).lower() if isinstance(owner, ClassDecl) and owner.name else ""
        constructor = (stem and keyword.lower().startswith(stem)) or keyword == "new" or keyword.startswith("shared")
    else:
        constructor = bool(re.match(r"init(?:[A-Z_]|$)", keyword))
    if constructor:
        yield Issue(
            ctx.head_range(node),
            f"'{node.selector}' should return instancetype, not id",
            suggestion="(instancetype)",
        )


@builtin_rule(
    "singleton-dispatch-once",
    "Shared-instance accessors create their instance inside dispatch_once.",
    kinds=("MethodDecl",),
    severity="error",
    accessor_prefixes=["shared"],
)
def check_singleton_dispatch_once(node: MethodDecl, ctx: RuleContext) -> Iterator[Issue]:
    if not node.is_class_method or not node.has_body or not node.segments or node.segments[0].has_param:
        return
    if not any(node.first_keyword.startswith(prefix) for prefix in ctx.params["accessor_prefixes"]):
        return
    body = {tok.value for tok in _body_tokens(node, ctx)}
    if "dispatch_once" in body or "@synchronized" in body:
        return
    yield Issue(
        ctx.head_range(node),
        f"shared instance accessor '{node.selector}' is not thread-safe; create the instance inside dispatch_once",
    )


# ---------------------------------------------------------------- enums & switch

@builtin_rule(
    "enum-fixed-type",
    "Enums declare a fixed underlying type (NS_ENUM / NS_OPTIONS).",
    kinds=("EnumDecl",),
)
def check_enum_fixed_type(node: EnumDecl, ctx: RuleContext) -> Iterator[Issue]:
    if node.underlying_type:
        return
    label = f"enum '{node.name}'" if node.name else "anonymous enum"
    yield Issue(
        _name_range(node, ctx),
        f"{label} has no fixed underlying type; declare it with NS_ENUM",
        suggestion=f"typedef NS_ENUM(NSInteger, {node.name})" if node.name else None,
    )


@builtin_rule(
    "case-braces",
    "Case bodies with more than max_statements statements are wrapped in braces.",
    kinds=("CaseClause",),
    max_statements=1,
)
def check_case_braces(node: CaseClause, ctx: RuleContext) -> Iterator[Issue]:
    if node.braced:
        return
    heads = list(node.statement_heads)
    if heads and heads[-1] == "break":
        heads.pop()
    if len(heads) > ctx.params["max_statements"]:
        yield Issue(_case_label_range(node), f"case body with {len(heads)} statements needs braces")


_FALLTHROUGH_RE = re.compile(r"fall(?:s|ing)?[\s-]*(?:through|thru)", re.IGNORECASE)


@builtin_rule(
    "fallthrough-comment",
    "An intentional fall-through between cases is marked with a comment.",
    kinds=("CaseClause",),
)
def check_fallthrough_comment(node: CaseClause, ctx: RuleContext) -> Iterator[Issue]:
    switch = node.parent
    if not isinstance(switch, SwitchStmt) or not node.statement_heads:
        return
    if node is switch.cases[-1] or node.statement_heads[-1] in CASE_TERMINATORS:
        return
    if any(_FALLTHROUGH_RE.search(comment.text) for comment in node.comments):
        return
    yield Issue(
        _case_label_range(node),
        "case falls through to the next one; end it with 'break' or mark it with a fall-through comment",
    )


@builtin_rule(
    "enum-switch-default",
    "A switch that handles every value of an enum has no default case.",
    kinds=("SwitchStmt",),
    severity="info",
)
def check_enum_switch_default(node: SwitchStmt, ctx: RuleContext) -> Iterator[Issue]:
    default = next((case for case in node.cases if case.is_default), None)
    if default is None:
        return
    labels = {label for case in node.cases for label in case.labels}
    if not labels:
        return
    for enum in ctx.root.find_all("EnumDecl"):
        if enum.members and labels == set(enum.members):
            name = f"'{enum.name}'" if enum.name else "its enum"
            yield Issue(_case_label_range(default), f"switch handles every value of {name}; drop the default case")
            return


# ---------------------------------------------------------------- statements

_BOOLEAN_LITERALS = {"YES": True, "true": True, "TRUE": True, "NO": False, "false": False, "FALSE": False}
_NULL_LITERALS = frozenset({"nil", "Nil", "NULL"})


@builtin_rule(
    "boolean-comparison",
    "Conditions test values directly instead of comparing with YES, NO or nil.",
    kinds=("ConditionalStmt",),
)
def check_boolean_comparison(node: ConditionalStmt, ctx: RuleContext) -> Iterator[Issue]:
    tokens = node.condition_tokens
    for pos in range(1, len(tokens) - 1):
        operator_tok = tokens[pos]
        if operator_tok.value not in ("==", "!="):
            continue
        left, right = tokens[pos - 1], tokens[pos + 1]
        if right.value in _BOOLEAN_LITERALS or right.value in _NULL_LITERALS:
            literal, other = right, left
        elif left.value in _BOOLEAN_LITERALS or left.value in _NULL_LITERALS:
            literal, other = left, right
        else:
            continue
        if literal.value in _NULL_LITERALS:
            negate = operator_tok.value == "=="
            message = f"don't compare with {literal.value}; test the pointer directly"
        else:
            negate = (operator_tok.value == "==") != _BOOLEAN_LITERALS[literal.value]
            message = f"don't compare with {literal.value}; test the value directly"
        suggestion = None
        if len(tokens) == 3 and other.type is TokenType.IDENTIFIER:
            suggestion = ("!" if negate else "") + other.value
        yield Issue(ctx.token_range(left, right), message, suggestion)


@builtin_rule(
    "conditional-braces",
    "Conditional and loop bodies are always wrapped in braces.",
    kinds=("ConditionalStmt",),
)
def check_conditional_braces(node: ConditionalStmt, ctx: RuleContext) -> Iterator[Issue]:
    if node.body_braced:
        return
    what = "else if" if node.is_else_if else node.keyword
    yield Issue(ctx.head_range(node), f"'{what}' body must be wrapped in braces")


@builtin_rule(
    "golden-path",
    "Nested ifs deeper than max_depth should return early instead.",
    kinds=("ConditionalStmt",),
    severity="info",
    max_depth=2,
)
def check_golden_path(node: ConditionalStmt, ctx: RuleContext) -> Iterator[Issue]:
    if node.keyword != "if":
        return
    depth = 0
    for ancestor in node.ancestors():
        if isinstance(ancestor, (MethodDecl, FunctionDecl, BlockExpr)):
            break
        if isinstance(ancestor, ConditionalStmt) and ancestor.keyword in ("if", "else"):
            depth += 1
    if depth == ctx.params["max_depth"]:
        yield Issue(
            ctx.head_range(node),
            f"'if' nested {depth + 1} levels deep; return early to keep the golden path left-aligned",
        )


_TERNARY_STOPS = frozenset(
    {"=", "+=", "-=", "*=", "/=", "|=", "&=", "(", "[", "@(", "@[", "@{", "{", "}", ";", ",", ":", "?", "return"}
)


def _ternary_condition_has_logic(toks: List[Token], pairs: Dict[int, int], question: int) -> bool:
    idx = question - 1
    while idx >= 0:
        value = toks[idx].value
        if value in (")", "]") and idx in pairs:
            opener = pairs[idx]
            is_call = opener > 0 and toks[opener - 1].type is TokenType.IDENTIFIER
            if value == ")" and not is_call and any(tok.value in ("&&", "||") for tok in toks[opener + 1:idx]):
                return True
            idx = opener - 1
            continue
        if value in ("&&", "||"):
            return True
        if value in _TERNARY_STOPS:
            return False
        idx -= 1
    return False


@builtin_rule(
    "ternary-complexity",
    "A statement holds at most max_operators ternaries, each with a simple condition.",
    kinds=("FileNode",),
    max_operators=1,
)
def check_ternary_complexity(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    limit = ctx.params["max_operators"]
    statements: List[List[int]] = []
    current: List[int] = []
    for idx, tok in enumerate(ctx.tokens):
        if tok.value in (";", "{", "}"):
            if current:
                statements.append(current)
            current = []
        elif tok.value == "?":
            current.append(idx)
    if current:
        statements.append(current)
    for questions in statements:
        if len(questions) > limit:
            yield Issue(
                ctx.tokens[questions[0]].range,
                f"{len(questions)} ternary operators in one statement (limit {limit}); use if/else",
            )
        for question in questions:
            if _ternary_condition_has_logic(ctx.tokens, ctx.pairs, question):
                yield Issue(
                    ctx.tokens[question].range,
                    "ternary condition combines several tests; move it into a named variable",
                )


# ---------------------------------------------------------------- expressions

_LITERAL_FACTORIES = {
    ("NSArray", "arrayWithObjects"): "array",
    ("NSArray", "arrayWithObject"): "array",
    ("NSDictionary", "dictionaryWithObjectsAndKeys"): "dictionary",
    ("NSDictionary", "dictionaryWithObject"): "dictionary-pair",
}


def _squash_text(ctx: RuleContext, first: int, stop: int) -> str:
    if stop <= first:
        return ""
    return re.sub(r"\s+", " ", ctx.text(ctx.tokens[first], ctx.tokens[stop - 1])).strip()


def _literal_suggestion(ctx: RuleContext, kind: str, first: int, close: int) -> Optional[str]:
    toks = ctx.tokens
    if kind == "number":
        argument = _squash_text(ctx, first, close)
        simple = close == first + 1 and (toks[first].type is TokenType.NUMBER or argument in ("YES", "NO"))
        return f"@{argument}" if simple else f"@({argument})"
    if kind == "dictionary-pair":
        key_idx = find_token(toks, ctx.pairs, first, close, {"forKey"})
        if key_idx + 1 >= close:
            return None
        return f"@{{{_squash_text(ctx, key_idx + 2, close)} : {_squash_text(ctx, first, key_idx)}}}"
    args = [_squash_text(ctx, start, stop) for start, stop in split_tokens(toks, ctx.pairs, first, close)]
    args = [arg for arg in args if arg]
    if args and args[-1] == "nil":
        args.pop()
    if kind == "array":
        return "@[" + ", ".join(args) + "]"
    entries = [f"{key} : {value}" for value, key in zip(args[0::2], args[1::2])]
    return "@{" + ", ".join(entries) + "}"


@builtin_rule(
    "literal-syntax",
    "Array, dictionary and number literals are preferred over their factory methods.",
    kinds=("FileNode",),
)
def check_literal_syntax(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    toks = ctx.tokens
    for idx, tok in enumerate(toks):
        if tok.value != "[" or idx + 3 >= len(toks) or toks[idx + 3].value != ":":
            continue
        receiver, selector = toks[idx + 1], toks[idx + 2]
        if receiver.type is not TokenType.IDENTIFIER or selector.type is not TokenType.IDENTIFIER:
            continue
        kind = _LITERAL_FACTORIES.get((receiver.value, selector.value))
        if kind is None and receiver.value == "NSNumber" and selector.value.startswith("numberWith"):
            kind = "number"
        if kind is None:
            continue
        close = ctx.pairs[idx]
        yield Issue(
            ctx.token_range(tok, toks[close]),
            f"use literal syntax instead of [{receiver.value} {selector.value}:]",
            suggestion=_literal_suggestion(ctx, kind, idx + 4, close),
        )


@builtin_rule(
    "nil-in-literal",
    "Array and dictionary literals never contain nil.",
    kinds=("Literal",),
    severity="error",
)
def check_nil_in_literal(node: Literal, ctx: RuleContext) -> Iterator[Issue]:
    if node.literal_kind not in ("array", "dictionary"):
        return
    for element in node.elements:
        if element.text in _NULL_LITERALS:
            yield Issue(
                element.range,
                f"'{element.text}' in a {node.literal_kind} literal raises at runtime",
                suggestion="[NSNull null]",
            )


_CGRECT_GETTERS = {
    ("origin", "x"): "CGRectGetMinX",
    ("origin", "y"): "CGRectGetMinY",
    ("size", "width"): "CGRectGetWidth",
    ("size", "height"): "CGRectGetHeight",
}
_ASSIGNMENT_OPERATORS = frozenset({"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>=", "++", "--"})


def _receiver_start(toks: List[Token], pairs: Dict[int, int], idx: int) -> Optional[int]:
    while True:
        tok = toks[idx]
        if tok.value in (")", "]") and idx in pairs:
            idx = pairs[idx]
            if toks[idx].value == "(" and idx > 0 and toks[idx - 1].type is TokenType.IDENTIFIER:
                idx -= 1
        elif tok.type is not TokenType.IDENTIFIER:
            return None
        if idx > 1 and toks[idx - 1].value in (".", "->"):
            idx -= 2
            continue
        return idx


@builtin_rule(
    "cgrect-functions",
    "CGRect geometry is read through the CGRectGet functions.",
    kinds=("FileNode",),
)
def check_cgrect_functions(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    toks = ctx.tokens
    for idx in range(1, len(toks) - 3):
        if toks[idx].value != "." or toks[idx + 2].value != ".":
            continue
        getter = _CGRECT_GETTERS.get((toks[idx + 1].value, toks[idx + 3].value))
        if getter is None:
            continue
        if idx + 4 < len(toks) and toks[idx + 4].value in _ASSIGNMENT_OPERATORS:
            continue
        start = _receiver_start(toks, ctx.pairs, idx - 1)
        if start is None:
            continue
        receiver = _squash_text(ctx, start, idx)
        yield Issue(
            ctx.token_range(toks[start], toks[idx + 3]),
            f"use {getter}() instead of reading .{toks[idx + 1].value}.{toks[idx + 3].value}",
            suggestion=f"{getter}({receiver})",
        )


def _message_keywords(toks: List[Token], pairs: Dict[int, int], start: int, end: int) -> Optional[List[int]]:
    """Indices of the keyword identifiers of one message send, or None when it takes a block."""
    keywords: List[int] = []
    idx = start
    receiver_seen = False
    while idx < end:
        tok = toks[idx]
        if tok.value in ("^", "?"):
            return None
        if tok.value in _OPENERS and tok.type is TokenType.PUNCT:
            idx = pairs[idx] + 1
            receiver_seen = True
            continue
        if receiver_seen and tok.type is TokenType.IDENTIFIER and idx + 1 < end and toks[idx + 1].value == ":":
            keywords.append(idx)
            idx += 2
            continue
        receiver_seen = True
        idx += 1
    return keywords


@builtin_rule(
    "colon-alignment",
    "Multi-line message sends align their keyword colons.",
    kinds=("FileNode",),
    severity="info",
)
def check_colon_alignment(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    toks = ctx.tokens
    first_on_line = ctx.first_tokens_by_line()
    for idx, tok in enumerate(toks):
        if tok.value != "[" or tok.type is not TokenType.PUNCT:
            continue
        close = ctx.pairs[idx]
        if toks[close].line == tok.line:
            continue
        keywords = _message_keywords(toks, ctx.pairs, idx + 1, close)
        if not keywords or len(keywords) < 2:
            continue
        anchor = toks[keywords[0] + 1]
        for keyword in keywords[1:]:
            ident, colon = toks[keyword], toks[keyword + 1]
            if ident.line == anchor.line or first_on_line.get(ident.line) != keyword:
                continue
            if colon.column == anchor.column or len(ident.value) > anchor.column - 1:
                continue
            yield Issue(
                ctx.token_range(ident, colon),
                f"align the colon of '{ident.value}:' with column {anchor.column}",
            )


@builtin_rule(
    "dot-notation",
    "Properties declared in the file are accessed with dot notation.",
    kinds=("FileNode",),
    severity="info",
)
def check_dot_notation(node: FileNode, ctx: RuleContext) -> Iterator[Issue]:
    properties = {prop.name for prop in node.find_all("PropertyDecl") if prop.name}
    if not properties:
        return
    toks = ctx.tokens
    for idx, tok in enumerate(toks):
        if tok.value != "[" or tok.type is not TokenType.PUNCT or idx + 3 >= len(toks):
            continue
        close = ctx.pairs[idx]
        receiver, selector = toks[idx + 1], toks[idx + 2]
        if receiver.type is not TokenType.IDENTIFIER or not receiver.value[:1].islower():
            continue
        if selector.type is not TokenType.IDENTIFIER:
            continue
        if close == idx + 3 and selector.value in properties:
            yield Issue(
                ctx.token_range(tok, toks[close]),
                f"use dot notation to read '{selector.value}'",
                suggestion=f"{receiver.value}.{selector.value}",
            )
        elif selector.value.startswith("set") and toks[idx + 3].value == ":":
            name = selector.value[3:4].lower() + selector.value[4:]
            if name not in properties or find_token(toks, ctx.pairs, idx + 4, close, {":"}) != close:
                continue
            yield Issue(
                ctx.token_range(tok, toks[close]),
                f"use dot notation to set '{name}'",
                suggestion=f"{receiver.value}.{name} = {_squash_text(ctx, idx + 4, close)}",
            )


# ============================================================
# ==================== EXPRESSION RULES ======================
# ============================================================

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _matches(text: Any, pattern: str) -> bool:
    return re.search(pattern, str(text)) is not None


EXPRESSION_HELPERS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sorted": sorted,
    "lower": lambda text: str(text).lower(),
    "upper": lambda text: str(text).upper(),
    "startswith": lambda text, prefix: str(text).startswith(prefix),
    "endswith": lambda text, suffix: str(text).endswith(suffix),
    "matches": _matches,
}
_SAFE_HELPER_IDS = frozenset(id(helper) for helper in EXPRESSION_HELPERS.values())

# str.format and str.format_map resolve attributes inside their fields, so
# only methods that never look past the string itself are callable.
_SAFE_STR_METHODS = frozenset(
    {
        "lower", "upper", "strip", "lstrip", "rstrip", "startswith", "endswith", "split", "rsplit",
        "splitlines", "join", "replace", "find", "rfind", "index", "rindex", "count", "isupper",
        "islower", "isdigit", "isalpha", "isalnum", "isidentifier", "capitalize", "title",
    }
)

_ALLOWED_EXPRESSION_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.IfExp, ast.Attribute, ast.Name, ast.Load, ast.Store, ast.Constant, ast.Call, ast.Subscript,
    ast.Slice, ast.List, ast.Tuple, ast.Set, ast.Dict, ast.GeneratorExp, ast.ListComp, ast.comprehension,
)


class ExpressionEvaluator:
    """
    Evaluates a restricted subset of Python expressions by walking the AST.
    Supports boolean logic, arithmetic, comparisons, attribute access,
    indexing, comprehensions, literals and calls to the expression helpers
    (plus methods of str values).
    """

    _BIN_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }
    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }
    _COMPARE_OPS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.In: lambda left, right: left in right,
        ast.NotIn: lambda left, right: left not in right,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    def __init__(self) -> None:
        self._cache: Dict[str, ast.Expression] = {}
        self._lock = threading.Lock()

    def compile(self, expr: str) -> ast.Expression:
        """Parse and validate an expression; results are cached per text."""
        expr = expr.strip()
        with self._lock:
            tree = self._cache.get(expr)
        if tree is not None:
            return tree
        try:
            tree = ast.parse(expr, mode="eval")
        except SyntaxError as exc:
            raise ExpressionEvalError(f"invalid expression '{expr}': {exc.msg}") from exc
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_EXPRESSION_NODES):
                raise ExpressionEvalError(f"'{type(node).__name__}' is not allowed in '{expr}'")
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ExpressionEvalError(f"access to private attribute '{node.attr}' is not allowed")
            if isinstance(node, ast.Name) and node.id.startswith("_"):
                raise ExpressionEvalError(f"access to private name '{node.id}' is not allowed")
        with self._lock:
            self._cache[expr] = tree
        return tree

    def evaluate(self, expr: str, env: Dict[str, Any]) -> Any:
        if not expr.strip():
            return True
        return self._eval(self.compile(expr).body, env)

    def render(self, template: str, env: Dict[str, Any]) -> str:
        """Substitute every {{ expr }} placeholder with its value."""
        return TEMPLATE_PATTERN.sub(lambda match: str(self.evaluate(match.group(1), env)), template)

    def _eval(self, node: ast.AST, env: Dict[str, Any]) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(value, env) for value in node.values)
            return any(self._eval(value, env) for value in node.values)

        if isinstance(node, ast.UnaryOp):
            return self._UNARY_OPS[type(node.op)](self._eval(node.operand, env))

        if isinstance(node, ast.BinOp):
            op = self._BIN_OPS[type(node.op)]
            return op(self._eval(node.left, env), self._eval(node.right, env))

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, env)
            for op_node, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, env)
                if not self._COMPARE_OPS[type(op_node)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval(node.test, env) else node.orelse
            return self._eval(branch, env)

        if isinstance(node, ast.Attribute):
            return getattr(self._eval(node.value, env), node.attr)

        if isinstance(node, ast.Name):
            if node.id in env:
                return env[node.id]
            raise ExpressionEvalError(f"unknown identifier '{node.id}'")

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Call):
            func = self._eval(node.func, env)
            is_str_method = (
                isinstance(getattr(func, "__self__", None), str)
                and getattr(func, "__name__", None) in _SAFE_STR_METHODS
            )
            if id(func) not in _SAFE_HELPER_IDS and not is_str_method:
                raise ExpressionEvalError("call to unsafe function is not allowed")
            if any(keyword.arg is None for keyword in node.keywords):
                raise ExpressionEvalError("'**' arguments are not allowed")
            args = [self._eval(arg, env) for arg in node.args]
            kwargs = {keyword.arg: self._eval(keyword.value, env) for keyword in node.keywords}
            return func(*args, **kwargs)

        if isinstance(node, ast.Subscript):
            return self._eval(node.value, env)[self._eval(node.slice, env)]

        if isinstance(node, ast.Slice):
            return slice(
                *(self._eval(part, env) if part is not None else None for part in (node.lower, node.upper, node.step))
            )

        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            values = [self._eval(elt, env) for elt in node.elts]
            return {ast.List: list, ast.Tuple: tuple, ast.Set: set}[type(node)](values)

        if isinstance(node, ast.Dict):
            return {self._eval(key, env): self._eval(value, env) for key, value in zip(node.keys, node.values)}

        if isinstance(node, ast.GeneratorExp):
            return self._comprehension(node.generators, env, node.elt)

        if isinstance(node, ast.ListComp):
            return list(self._comprehension(node.generators, env, node.elt))

        raise ExpressionEvalError(f"unsupported expression node '{type(node).__name__}'")

    def _comprehension(self, generators: List[ast.comprehension], env: Dict[str, Any], elt: ast.AST) -> Iterator[Any]:
        def walk(index: int, scope: Dict[str, Any]) -> Iterator[Any]:
            if index == len(generators):
                yield self._eval(elt, scope)
                return
            generator = generators[index]
            for item in self._eval(generator.iter, scope):
                inner = dict(scope)
                self._bind(generator.target, item, inner)
                if all(self._eval(condition, inner) for condition in generator.ifs):
                    yield from walk(index + 1, inner)

        return walk(0, env)

    def _bind(self, target: ast.AST, value: Any, scope: Dict[str, Any]) -> None:
        if isinstance(target, ast.Name):
            scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ExpressionEvalError("cannot unpack comprehension target")
            for sub_target, sub_value in zip(target.elts, values):
                self._bind(sub_target, sub_value, scope)
        else:
            raise ExpressionEvalError("unsupported comprehension target")


_EVALUATOR = ExpressionEvaluator()

EXPRESSION_RULE_KEYS = frozenset({"id", "kind", "assert", "message", "description", "severity", "when"})


def _check_expression_rule(
    node: SyntaxNode, ctx: RuleContext, *, assertion: str, when: str, message: str
) -> Iterator[Issue]:
    env: Dict[str, Any] = dict(EXPRESSION_HELPERS, node=node, path=ctx.unit.path)
    if when and not _EVALUATOR.evaluate(when, env):
        return
    if _EVALUATOR.evaluate(assertion, env):
        return
    yield Issue(_name_range(node, ctx), _EVALUATOR.render(message, env))


def compile_expression_rule(entry: Any, origin: str) -> Rule:
    """
    Build a Rule from one `custom_rules` entry of a configuration file.
    Every expression is parsed and validated here, so a broken rule fails
    the configuration instead of each file.
    """
    if not isinstance(entry, dict):
        raise ConfigurationError("each custom_rules entry must be a mapping", origin)
    unknown = sorted(str(key) for key in set(entry) - EXPRESSION_RULE_KEYS)
    if unknown:
        raise ConfigurationError(f"custom rule has unknown key(s): {', '.join(unknown)}", origin)
    for key in ("id", "kind", "assert", "message"):
        if not isinstance(entry.get(key), str) or not entry[key].strip():
            raise ConfigurationError(f"custom rule is missing a '{key}' string", origin)
    rule_id = entry["id"].strip()
    kind = entry["kind"].strip()
    if kind not in NODE_TYPES:
        raise ConfigurationError(
            f"custom rule '{rule_id}' inspects unknown node kind '{kind}' "
            f"(expected one of: {', '.join(sorted(NODE_TYPES))})",
            origin,
        )
    severity = entry.get("severity", "warning")
    if severity not in SEVERITIES:
        raise ConfigurationError(f"custom rule '{rule_id}' has invalid severity {severity!r}", origin)
    when = entry.get("when") or ""
    description = entry.get("description") or f"custom rule: {entry['assert']}"
    if not isinstance(when, str) or not isinstance(description, str):
        raise ConfigurationError(f"custom rule '{rule_id}': 'when' and 'description' must be strings", origin)

    expressions = [entry["assert"], when] + TEMPLATE_PATTERN.findall(entry["message"])
    try:
        for expr in expressions:
            if expr.strip():
                _EVALUATOR.compile(expr)
    except ExpressionEvalError as exc:
        raise ConfigurationError(f"custom rule '{rule_id}': {exc}", origin) from exc

    check = functools.partial(_check_expression_rule, assertion=entry["assert"], when=when, message=entry["message"])
    return Rule(rule_id, description, severity, (kind,), check, {}, origin)


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

CONFIG_KEYS = frozenset(
    {"severity_threshold", "extensions", "exclude", "encoding", "jobs", "max_nesting_depth", "rules", "custom_rules"}
)
RULE_SETTING_KEYS = frozenset({"enabled", "severity", "params"})


@dataclass(frozen=True)
class RuleSettings:
    enabled: bool = True
    severity: Optional[str] = None  # None keeps the rule's default
    params: Dict[str, Any] = field(default_factory=dict)


_DEFAULT_SETTINGS = RuleSettings()


@dataclass(frozen=True)
class Configuration:
    """
    Resolved settings for one run. Built once before any file is checked
    and never mutated afterwards, so workers share it freely.
    """
    rules: Dict[str, RuleSettings] = field(default_factory=dict)
    severity_threshold: str = "error"
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    exclude: Tuple[str, ...] = ()
    encoding: str = "utf-8"
    jobs: Optional[int] = None
    max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH
    custom_rules: Tuple[Rule, ...] = ()
    source: Optional[str] = None

    def settings_for(self, rule_id: str) -> RuleSettings:
        return self.rules.get(rule_id, _DEFAULT_SETTINGS)

    def is_enabled(self, rule_id: str) -> bool:
        return self.settings_for(rule_id).enabled

    def severity_for(self, rule: Rule) -> str:
        return self.settings_for(rule.id).severity or rule.severity

    def params_for(self, rule: Rule) -> Dict[str, Any]:
        params = dict(rule.params)
        params.update(self.settings_for(rule.id).params)
        return params

    def with_overrides(self, severity_threshold: Optional[str] = None, jobs: Optional[int] = None) -> "Configuration":
        """Apply command-line overrides on top of the file values."""
        changes: Dict[str, Any] = {}
        if severity_threshold is not None:
            changes["severity_threshold"] = severity_threshold
        if jobs is not None:
            changes["jobs"] = jobs
        return replace(self, **changes)


def load_configuration(path: Optional[str]) -> Configuration:
    """
    Load a YAML (or JSON) configuration file. Absent path means defaults.
    Every failure is reported as ConfigurationError naming the file.
    """
    if path is None:
        return Configuration()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigurationError("configuration file not found", path) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"cannot read configuration file: {exc}", path) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML: {exc}", path) from exc
    return configuration_from_mapping({} if data is None else data, path)


def configuration_from_mapping(data: Any, origin: str = "<configuration>") -> Configuration:
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a mapping", origin)
    unknown = sorted(str(key) for key in set(data) - CONFIG_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown configuration key(s): {', '.join(unknown)}", origin)

    threshold = _require_severity(data.get("severity_threshold", "error"), "severity_threshold", origin)
    extensions = tuple(
        ext if ext.startswith(".") else "." + ext
        for ext in _require_string_list(data.get("extensions", list(DEFAULT_EXTENSIONS)), "extensions", origin)
    )
    exclude = tuple(_require_string_list(data.get("exclude", []), "exclude", origin))

    encoding = data.get("encoding", "utf-8")
    if not isinstance(encoding, str):
        raise ConfigurationError("'encoding' must be a string", origin)
    try:
        codecs.lookup(encoding)
    except LookupError as exc:
        raise ConfigurationError(f"unsupported encoding {encoding!r}", origin) from exc

    jobs = data.get("jobs")
    if jobs is not None:
        jobs = _require_positive_int(jobs, "jobs", origin)
    max_depth = _require_positive_int(
        data.get("max_nesting_depth", DEFAULT_MAX_NESTING_DEPTH), "max_nesting_depth", origin
    )

    custom_rules = _load_custom_rules(data.get("custom_rules") or [], origin)
    rules = _load_rule_settings(data.get("rules") or {}, custom_rules, origin)
    return Configuration(
        rules=rules,
        severity_threshold=threshold,
        extensions=tuple(ext.lower() for ext in extensions),
        exclude=exclude,
        encoding=encoding,
        jobs=jobs,
        max_nesting_depth=max_depth,
        custom_rules=custom_rules,
        source=origin,
    )


def _require_severity(value: Any, what: str, origin: str) -> str:
    if value not in SEVERITIES:
        raise ConfigurationError(f"{what} must be one of {', '.join(SEVERITIES)}, got {value!r}", origin)
    return value


def _require_string_list(value: Any, what: str, origin: str) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigurationError(f"'{what}' must be a list of strings", origin)
    return value


def _require_positive_int(value: Any, what: str, origin: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"'{what}' must be a positive integer, got {value!r}", origin)
    return value


def _same_type(value: Any, default: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, type(default))


def _load_custom_rules(entries: Any, origin: str) -> Tuple[Rule, ...]:
    if not isinstance(entries, list):
        raise ConfigurationError("'custom_rules' must be a list", origin)
    builtin_ids = {rule.id for rule in BUILTIN_RULES}
    rules: List[Rule] = []
    for entry in entries:
        rule = compile_expression_rule(entry, origin)
        if rule.id in RESERVED_RULE_IDS or rule.id in builtin_ids:
            raise ConfigurationError(f"custom rule id '{rule.id}' collides with a built-in rule", origin)
        if any(existing.id == rule.id for existing in rules):
            raise ConfigurationError(f"duplicate custom rule id '{rule.id}'", origin)
        rules.append(rule)
    return tuple(rules)


def _load_rule_settings(section: Any, custom_rules: Tuple[Rule, ...], origin: str) -> Dict[str, RuleSettings]:
    if not isinstance(section, dict):
        raise ConfigurationError("'rules' must be a mapping of rule id to settings", origin)
    known = {rule.id: rule for rule in BUILTIN_RULES}
    known.update((rule.id, rule) for rule in custom_rules)
    settings: Dict[str, RuleSettings] = {}
    for rule_id, value in section.items():
        if rule_id in RESERVED_RULE_IDS:
            raise ConfigurationError(f"rule id '{rule_id}' is reserved and cannot be configured", origin)
        rule = known.get(rule_id)
        if rule is None:
            raise ConfigurationError(f"unknown rule id '{rule_id}'", origin)
        if isinstance(value, bool):
            settings[rule_id] = RuleSettings(enabled=value)
            continue
        if not isinstance(value, dict):
            raise ConfigurationError(f"settings for '{rule_id}' must be a boolean or a mapping", origin)
        unknown = sorted(str(key) for key in set(value) - RULE_SETTING_KEYS)
        if unknown:
            raise ConfigurationError(f"unknown setting(s) for '{rule_id}': {', '.join(unknown)}", origin)
        enabled = value.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ConfigurationError(f"'enabled' for '{rule_id}' must be a boolean", origin)
        severity = value.get("severity")
        if severity is not None:
            _require_severity(severity, f"severity of '{rule_id}'", origin)
        params = value.get("params") or {}
        if not isinstance(params, dict):
            raise ConfigurationError(f"'params' for '{rule_id}' must be a mapping", origin)
        for name, param in params.items():
            if name not in rule.params:
                raise ConfigurationError(f"rule '{rule_id}' has no parameter '{name}'", origin)
            default = rule.params[name]
            if not _same_type(param, default):
                raise ConfigurationError(
                    f"parameter '{name}' of '{rule_id}' must be {type(default).__name__}, got {param!r}", origin
                )
        settings[rule_id] = RuleSettings(enabled=enabled, severity=severity, params=dict(params))
    return settings


# ============================================================
# =================== EVALUATION ENGINE ======================
# ============================================================

def _is_suppressed(root: FileNode, rule_id: str, line: int) -> bool:
    if rule_id in RESERVED_RULE_IDS or line not in root.suppressions:
        return False
    suppressed = root.suppressions[line]
    return suppressed is None or rule_id in suppressed


def evaluate(
    root: FileNode, unit: SourceUnit, config: Configuration, registry: RuleRegistry
) -> Tuple[List[Finding], List[Finding]]:
    """
    Run every enabled rule over one file in a single pre-order walk.

    Returns (findings, diagnostics). A rule that raises on a node becomes a
    rule-evaluation-error diagnostic for that node; the walk continues with
    the remaining rules and nodes.
    """
    table = registry.dispatch_table(config)
    contexts = {
        rule.id: RuleContext(unit, root, config.params_for(rule)) for rules in table.values() for rule in rules
    }
    findings: List[Finding] = []
    diagnostics: List[Finding] = []
    for node in root.walk():
        for rule in table.get(node.kind, ()):
            try:
                issues = list(rule.check(node, contexts[rule.id]))
            except Exception as exc:
                error = RuleEvaluationError(rule.id, node, exc)
                diagnostics.append(
                    Finding(
                        RULE_EVALUATION_ERROR_RULE,
                        "error",
                        unit.path,
                        unit.clamp(node.range),
                        str(error),
                        category="internal",
                    )
                )
                continue
            severity = config.severity_for(rule)
            for issue in issues:
                source_range = unit.clamp(issue.range)
                if _is_suppressed(root, rule.id, source_range.start_line):
                    continue
                findings.append(
                    Finding(rule.id, severity, unit.path, source_range, issue.message, issue.suggestion)
                )
    return findings, diagnostics


# ============================================================
# ================ AGGREGATION & REPORTING ===================
# ============================================================

@dataclass
class Report:
    findings: List[Finding] = field(default_factory=list)
    diagnostics: List[Finding] = field(default_factory=list)
    files_checked: int = 0
    threshold: str = "error"
    interrupted: bool = False

    @property
    def by_severity(self) -> Dict[str, int]:
        counts = {severity: 0 for severity in reversed(SEVERITIES)}
        for finding in self.findings:
            counts[finding.severity] += 1
        return counts

    @property
    def verdict(self) -> str:
        limit = SEVERITY_RANK[self.threshold]
        if any(SEVERITY_RANK[finding.severity] >= limit for finding in self.findings):
            return "Fail"
        return "Pass"

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return 2
        return 1 if self.verdict == "Fail" else 0

    def render_text(self) -> str:
        lines = [finding.render_text() for finding in self.findings]
        lines.extend(diagnostic.render_text() for diagnostic in self.diagnostics)
        counts = self.by_severity
        lines.append(
            f"{len(self.findings)} finding(s): {counts['error']} error, {counts['warning']} warning, "
            f"{counts['info']} info; verdict: {self.verdict}"
        )
        return "\n".join(lines)

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "tool": TOOL_NAME,
            "version": TOOL_VERSION,
            "findings": [finding.to_json_obj() for finding in self.findings],
            "diagnostics": [diagnostic.to_json_obj() for diagnostic in self.diagnostics],
            "summary": {
                "total": len(self.findings),
                "bySeverity": self.by_severity,
                "verdict": self.verdict,
                "filesChecked": self.files_checked,
                "diagnostics": len(self.diagnostics),
                "threshold": self.threshold,
            },
        }

    def render_json(self) -> str:
        return json.dumps(self.to_json_obj(), indent=2, sort_keys=False)


def _dedupe_sorted(items: Iterable[Finding]) -> List[Finding]:
    unique: Dict[Tuple[str, str, SourceRange], Finding] = {}
    for item in sorted(items, key=operator.attrgetter("sort_key")):
        unique.setdefault(item.identity, item)
    return list(unique.values())


def aggregate(
    findings: Iterable[Finding],
    diagnostics: Iterable[Finding] = (),
    files_checked: int = 0,
    threshold: str = "error",
    interrupted: bool = False,
) -> Report:
    """
    Merge per-file results: identical (rule, file, range) findings collapse
    to one and everything is ordered by path, line, column, rule id.
    """
    return Report(
        findings=_dedupe_sorted(findings),
        diagnostics=_dedupe_sorted(diagnostics),
        files_checked=files_checked,
        threshold=threshold,
        interrupted=interrupted,
    )


def emit_report(report: Report, fmt: str = "text", out: Optional[str] = None) -> None:
    """
    Write the rendered report to `out`, or to stdout.
    """
    text = report.render_json() if fmt == "json" else report.render_text()
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ====================== RUN PIPELINE ========================
# ============================================================

def _excluded(relative: str, name: str, patterns: Iterable[str]) -> bool:
    relative = relative.replace(os.sep, "/")
    return any(fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern) for pattern in patterns)


def collect_source_files(
    paths: Iterable[str], extensions: Iterable[str] = DEFAULT_EXTENSIONS, exclude: Iterable[str] = ()
) -> List[str]:
    """
    Expand directories recursively (sorted, filtered by extension and
    exclude globs). Paths named explicitly are always kept, so a missing
    or unreadable one is reported instead of silently dropped.
    """
    extensions = tuple(ext.lower() for ext in extensions)
    exclude = tuple(exclude)
    found: List[str] = []
    seen: Set[str] = set()

    def add(path: str) -> None:
        path = os.path.normpath(path)
        if path not in seen:
            seen.add(path)
            found.append(path)

    for path in paths:
        if not os.path.isdir(path):
            add(path)
            continue
        for dirpath, dirnames, filenames in os.walk(path):
            dirnames[:] = sorted(
                name for name in dirnames
                if not _excluded(os.path.relpath(os.path.join(dirpath, name), path), name, exclude)
            )
            for name in sorted(filenames):
                full = os.path.join(dirpath, name)
                if os.path.splitext(name)[1].lower() not in extensions:
                    continue
                if _excluded(os.path.relpath(full, path), name, exclude):
                    continue
                add(full)
    return found


@dataclass
class FileResult:
    path: str
    findings: List[Finding] = field(default_factory=list)
    diagnostics: List[Finding] = field(default_factory=list)


def check_file(path: str, config: Configuration, registry: RuleRegistry) -> FileResult:
    """
    Read, parse and evaluate one file. Unreadable and unparsable files
    yield a single io-error / parse-error finding instead of raising.
    """
    result = FileResult(path)
    try:
        unit = SourceUnit.read(path, config.encoding)
    except UnicodeDecodeError as exc:
        result.findings.append(
            Finding(
                IO_ERROR_RULE, "error", path, SourceRange(1, 1, 1, 1),
                f"cannot decode file as {config.encoding}: {exc.reason}", category="io",
            )
        )
        return result
    except OSError as exc:
        result.findings.append(
            Finding(
                IO_ERROR_RULE, "error", path, SourceRange(1, 1, 1, 1),
                f"cannot read file: {exc.strerror or exc}", category="io",
            )
        )
        return result

    try:
        root = build_model(unit, config.max_nesting_depth)
    except ParseError as exc:
        result.findings.append(
            Finding(PARSE_ERROR_RULE, "error", path, unit.whole_range(), str(exc), category="parse")
        )
        return result
    except Exception as exc:
        sys.stderr.write(f"[{TOOL_NAME}] warning: model builder failed on {path}: {type(exc).__name__}: {exc}\n")
        result.findings.append(
            Finding(
                PARSE_ERROR_RULE, "error", path, unit.whole_range(),
                f"internal error while parsing: {type(exc).__name__}: {exc}", category="parse",
            )
        )
        return result

    result.findings, result.diagnostics = evaluate(root, unit, config, registry)
    return result


def check_paths(
    paths: Iterable[str],
    config: Optional[Configuration] = None,
    registry: Optional[RuleRegistry] = None,
    jobs: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Report:
    """
    Check every source file under `paths` on a worker pool and join the
    per-file results into one Report.

    Files are independent; each worker owns its file's tree and findings.
    Setting `cancel_event` (Ctrl-C does) stops files that have not started;
    files already running finish and are reported.
    """
    config = config or Configuration()
    registry = registry or RuleRegistry.for_configuration(config)
    cancel_event = cancel_event or threading.Event()
    files = collect_source_files(paths, config.extensions, config.exclude)
    if not files:
        sys.stderr.write(f"[{TOOL_NAME}] no source files found\n")

    workers = jobs or config.jobs or min(32, os.cpu_count() or 1)
    results: List[Optional[FileResult]] = [None] * len(files)

    def run(path: str) -> Optional[FileResult]:
        if cancel_event.is_set():
            return None
        return check_file(path, config, registry)

    interrupted = False
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(run, path) for path in files]
        try:
            for future in futures:
                future.result()
        except KeyboardInterrupt:
            cancel_event.set()
            for future in futures:
                future.cancel()
            interrupted = True
            sys.stderr.write(f"[{TOOL_NAME}] interrupted; reporting files that completed\n")

    for index, future in enumerate(futures):
        if not future.cancelled():
            results[index] = future.result()
    completed = [result for result in results if result is not None]
    if len(completed) < len(files):
        interrupted = True

    return aggregate(
        (finding for result in completed for finding in result.findings),
        (diagnostic for result in completed for diagnostic in result.diagnostics),
        files_checked=len(completed),
        threshold=config.severity_threshold,
        interrupted=interrupted,
    )


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count: {text!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="objclint: style conformance checking for Objective-C"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {TOOL_VERSION}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_p = subparsers.add_parser(
        "check",
        help="Check source files and directories against the style rules."
    )
    check_p.add_argument(
        "paths",
        nargs="+",
        help="Files or directories to check (directories are scanned recursively)."
    )
    check_p.add_argument(
        "--config",
        metavar="FILE",
        help="YAML configuration file.",
    )
    check_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Report format (default: text).",
    )
    check_p.add_argument(
        "--severity-threshold",
        choices=SEVERITIES,
        help="Lowest severity that fails the run (default: error).",
    )
    check_p.add_argument(
        "--jobs",
        type=_positive_int,
        metavar="N",
        help="Number of files checked in parallel.",
    )
    check_p.add_argument(
        "--out",
        metavar="FILE",
        help="Write the report to this file instead of stdout.",
    )

    rules_p = subparsers.add_parser(
        "rules",
        help="List the available rules."
    )
    rules_p.add_argument(
        "--config",
        metavar="FILE",
        help="Include custom rules and settings from this configuration file.",
    )
    rules_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
    )
    return parser


def _render_rules(registry: RuleRegistry, config: Configuration, fmt: str) -> str:
    rules = sorted(registry.list_rules(), key=lambda rule: rule.id)
    if fmt == "json":
        records = []
        for rule in rules:
            record = rule.to_json_obj()
            record["enabled"] = config.is_enabled(rule.id)
            record["severity"] = config.severity_for(rule)
            record["params"] = config.params_for(rule)
            records.append(record)
        return json.dumps(records, indent=2, sort_keys=False)
    lines = []
    for rule in rules:
        state = "" if config.is_enabled(rule.id) else " (disabled)"
        lines.append(f"{rule.id:<28} {config.severity_for(rule):<8} {rule.description}{state}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for objclint.
    Intended usage:
      python objclint.py check --config objclint.yaml Sources/
      python objclint.py rules --format json

    Exit codes: 0 pass, 1 fail, 2 configuration / output error or interrupted run.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args.config)
        registry = RuleRegistry.for_configuration(config)
    except (ConfigurationError, ValueError) as exc:
        sys.stderr.write(f"[{TOOL_NAME}] error: {exc}\n")
        return 2

    try:
        if args.command == "rules":
            text = _render_rules(registry, config, args.format)
            print(text)
            return 0

        config = config.with_overrides(severity_threshold=args.severity_threshold, jobs=args.jobs)
        report = check_paths(args.paths, config, registry)
        emit_report(report, args.format, out=args.out)
    except OSError as exc:
        sys.stderr.write(f"[{TOOL_NAME}] error: cannot write report: {exc}\n")
        return 2
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
