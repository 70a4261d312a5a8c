"""Recursive-descent parser producing the filter expression tree.

Precedence, loosest first: ``|``, ``,``, ``//``, ``or``, ``and``,
comparisons, ``+ -``, ``* / %``, unary minus, postfix paths.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..errors import InvalidQuery
from .lexer import Token, tokenize


class Node:
    """Base class of every expression tree node."""

    pos: int


@dataclass(frozen=True)
class Identity(Node):
    pos: int


@dataclass(frozen=True)
class Recurse(Node):
    pos: int


@dataclass(frozen=True)
class Literal(Node):
    value: Any
    pos: int


@dataclass(frozen=True)
class Field(Node):
    target: Node
    name: str
    pos: int


@dataclass(frozen=True)
class Index(Node):
    target: Node
    index: Node
    pos: int


@dataclass(frozen=True)
class Slice(Node):
    target: Node
    start: Optional[Node]
    end: Optional[Node]
    pos: int


@dataclass(frozen=True)
class Iterate(Node):
    target: Node
    pos: int


@dataclass(frozen=True)
class Try(Node):
    body: Node
    pos: int


@dataclass(frozen=True)
class ArrayCons(Node):
    body: Optional[Node]
    pos: int


@dataclass(frozen=True)
class ObjectCons(Node):
    entries: tuple  # of (key Node, value Node)
    pos: int


@dataclass(frozen=True)
class Pipe(Node):
    stages: tuple
    pos: int


@dataclass(frozen=True)
class Comma(Node):
    items: tuple
    pos: int


@dataclass(frozen=True)
class Alternative(Node):
    left: Node
    right: Node
    pos: int


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node
    pos: int


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node
    pos: int


@dataclass(frozen=True)
class BinOp(Node):
    op: str
    left: Node
    right: Node
    pos: int


@dataclass(frozen=True)
class Negate(Node):
    operand: Node
    pos: int


@dataclass(frozen=True)
class If(Node):
    branches: tuple  # of (condition Node, body Node)
    otherwise: Optional[Node]
    pos: int


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: tuple
    pos: int


_COMPARISONS = ("==", "!=", "<", "<=", ">", ">=")

# Bracketed sub-expressions (parentheses, arrays, objects, calls, conditionals).
MAX_NESTING = 48


def parse(source: str) -> Node:
    """Parse ``source`` into an expression tree or raise InvalidQuery."""
    if not source or not source.strip():
        raise InvalidQuery("Empty filter expression", 0)
    return _Parser(tokenize(source)).parse()


class _Parser:
    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.i = 0
        self.depth = 0

    @property
    def tok(self) -> Token:
        return self.tokens[self.i]

    def advance(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def expect_op(self, op: str) -> Token:
        if not self.tok.is_op(op):
            raise self.error(f"Expected {op!r}")
        return self.advance()

    def expect_keyword(self, word: str) -> Token:
        if not self.tok.is_keyword(word):
            raise self.error(f"Expected {word!r}")
        return self.advance()

    def error(self, reason: str) -> InvalidQuery:
        tok = self.tok
        found = "end of input" if tok.kind == "eof" else repr(tok.value)
        return InvalidQuery(f"{reason}, found {found}", tok.pos)

    def parse(self) -> Node:
        node = self.pipe()
        if self.tok.kind != "eof":
            raise self.error("Unexpected token")
        return node

    # ── Binary levels ────────────────────────────────────────────────

    def pipe(self) -> Node:
        stages = [self.comma()]
        pos = None
        while self.tok.is_op("|"):
            tok = self.advance()
            pos = tok.pos if pos is None else pos
            stages.append(self.comma())
        return stages[0] if len(stages) == 1 else Pipe(tuple(stages), pos)

    def comma(self) -> Node:
        items = [self.alternative()]
        pos = None
        while self.tok.is_op(","):
            tok = self.advance()
            pos = tok.pos if pos is None else pos
            items.append(self.alternative())
        return items[0] if len(items) == 1 else Comma(tuple(items), pos)

    def alternative(self) -> Node:
        # Every bracketed sub-expression and object value re-enters here.
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise self.error("Filter nesting too deep")
        try:
            operands = [self.or_expr()]
            positions = []
            while self.tok.is_op("//"):
                positions.append(self.advance().pos)
                operands.append(self.or_expr())
        finally:
            self.depth -= 1
        # right-associative
        node = operands.pop()
        while operands:
            node = Alternative(operands.pop(), node, positions.pop())
        return node

    def or_expr(self) -> Node:
        node = self.and_expr()
        while self.tok.is_keyword("or"):
            pos = self.advance().pos
            node = Or(node, self.and_expr(), pos)
        return node

    def and_expr(self) -> Node:
        node = self.comparison()
        while self.tok.is_keyword("and"):
            pos = self.advance().pos
            node = And(node, self.comparison(), pos)
        return node

    def comparison(self) -> Node:
        node = self.additive()
        if self.tok.is_op(*_COMPARISONS):
            tok = self.advance()
            node = BinOp(tok.value, node, self.additive(), tok.pos)
            if self.tok.is_op(*_COMPARISONS):
                raise self.error("Comparison operators do not chain")
        return node

    def additive(self) -> Node:
        node = self.multiplicative()
        while self.tok.is_op("+", "-"):
            tok = self.advance()
            node = BinOp(tok.value, node, self.multiplicative(), tok.pos)
        return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while self.tok.is_op("*", "/", "%"):
            tok = self.advance()
            node = BinOp(tok.value, node, self.unary(), tok.pos)
        return node

    def unary(self) -> Node:
        positions = []
        while self.tok.is_op("-"):
            positions.append(self.advance().pos)
        node = self.postfix()
        for pos in reversed(positions):
            node = Negate(node, pos)
        return node

    # ── Terms ────────────────────────────────────────────────────────

    def postfix(self) -> Node:
        node = self.term()
        while True:
            tok = self.tok
            if tok.kind == "field":
                self.advance()
                node = Field(node, tok.value, tok.pos)
            elif tok.kind == "dot" and self.tokens[self.i + 1].kind == "string":
                self.advance()
                node = Field(node, self.advance().value, tok.pos)
            elif tok.kind == "dot" and self.tokens[self.i + 1].is_op("["):
                self.advance()
                node = self.bracket_suffix(node)
            elif tok.is_op("["):
                node = self.bracket_suffix(node)
            elif tok.is_op("?"):
                self.advance()
                node = Try(node, tok.pos)
            else:
                return node

    def bracket_suffix(self, target: Node) -> Node:
        pos = self.expect_op("[").pos
        if self.tok.is_op("]"):
            self.advance()
            return Iterate(target, pos)
        if self.tok.is_op(":"):
            self.advance()
            end = self.pipe()
            self.expect_op("]")
            return Slice(target, None, end, pos)

        index = self.pipe()
        if self.tok.is_op(":"):
            self.advance()
            end = None if self.tok.is_op("]") else self.pipe()
            self.expect_op("]")
            return Slice(target, index, end, pos)
        self.expect_op("]")
        return Index(target, index, pos)

    def term(self) -> Node:
        tok = self.tok

        if tok.kind == "number" or tok.kind == "string":
            self.advance()
            return Literal(tok.value, tok.pos)

        if tok.is_keyword("true", "false", "null"):
            self.advance()
            return Literal({"true": True, "false": False, "null": None}[tok.value], tok.pos)

        if tok.kind == "field":
            self.advance()
            return Field(Identity(tok.pos), tok.value, tok.pos)

        if tok.kind == "dot":
            # ."name" and .[...] are handled as postfix on the identity
            if self.tokens[self.i + 1].kind == "string" or self.tokens[self.i + 1].is_op("["):
                return Identity(tok.pos)
            self.advance()
            return Identity(tok.pos)

        if tok.kind == "recurse":
            self.advance()
            return Recurse(tok.pos)

        if tok.is_op("("):
            self.advance()
            node = self.pipe()
            self.expect_op(")")
            return node

        if tok.is_op("["):
            self.advance()
            if self.tok.is_op("]"):
                self.advance()
                return ArrayCons(None, tok.pos)
            body = self.pipe()
            self.expect_op("]")
            return ArrayCons(body, tok.pos)

        if tok.is_op("{"):
            return self.object_cons()

        if tok.is_keyword("if"):
            return self.if_expr()

        if tok.kind == "ident":
            self.advance()
            args = []
            if self.tok.is_op("("):
                self.advance()
                args.append(self.pipe())
                while self.tok.is_op(";"):
                    self.advance()
                    args.append(self.pipe())
                self.expect_op(")")
            return Call(tok.value, tuple(args), tok.pos)

        raise self.error("Expected an expression")

    def object_cons(self) -> Node:
        pos = self.expect_op("{").pos
        entries = []
        while not self.tok.is_op("}"):
            key_tok = self.tok
            if key_tok.kind in ("ident", "keyword"):
                self.advance()
                key = Literal(key_tok.value, key_tok.pos)
                shorthand = Field(Identity(key_tok.pos), key_tok.value, key_tok.pos)
            elif key_tok.kind == "string":
                self.advance()
                key = Literal(key_tok.value, key_tok.pos)
                shorthand = Field(Identity(key_tok.pos), key_tok.value, key_tok.pos)
            elif key_tok.is_op("("):
                self.advance()
                key = self.pipe()
                self.expect_op(")")
                shorthand = None
            else:
                raise self.error("Expected an object key")

            if self.tok.is_op(":"):
                self.advance()
                value = self.alternative()
            elif shorthand is not None:
                value = shorthand
            else:
                raise self.error("Expected ':' after computed key")
            entries.append((key, value))

            if self.tok.is_op(","):
                self.advance()
            elif not self.tok.is_op("}"):
                raise self.error("Expected ',' or '}'")
        self.expect_op("}")
        return ObjectCons(tuple(entries), pos)

    def if_expr(self) -> Node:
        pos = self.expect_keyword("if").pos
        branches = []
        cond = self.pipe()
        self.expect_keyword("then")
        branches.append((cond, self.pipe()))
        while self.tok.is_keyword("elif"):
            self.advance()
            cond = self.pipe()
            self.expect_keyword("then")
            branches.append((cond, self.pipe()))
        otherwise = None
        if self.tok.is_keyword("else"):
            self.advance()
            otherwise = self.pipe()
        self.expect_keyword("end")
        return If(tuple(branches), otherwise, pos)
