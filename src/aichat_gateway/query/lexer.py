"""Tokenizer for the filter language."""

import json
import math
from dataclasses import dataclass

from ..errors import InvalidQuery

KEYWORDS = {"and", "or", "if", "then", "elif", "else", "end", "true", "false", "null"}

# Longest first so "//" wins over "/", "==" over "=" and so on.
_OPERATORS = (
    "//", "==", "!=", "<=", ">=",
    "|", ",", "<", ">", "+", "-", "*", "/", "%",
    "(", ")", "[", "]", "{", "}", ":", ";", "?",
)


@dataclass(frozen=True)
class Token:
    kind: str  # "op", "ident", "keyword", "field", "number", "string", "dot", "recurse", "eof"
    value: object
    pos: int

    def is_op(self, *ops: str) -> bool:
        return self.kind == "op" and self.value in ops

    def is_keyword(self, *words: str) -> bool:
        return self.kind == "keyword" and self.value in words


def tokenize(source: str) -> list[Token]:
    tokens = []
    i = 0
    n = len(source)

    while i < n:
        ch = source[i]

        if ch.isspace():
            i += 1
            continue

        if ch == "#":  # comment to end of line
            while i < n and source[i] != "\n":
                i += 1
            continue

        if ch == ".":
            if i + 1 < n and source[i + 1] == ".":
                tokens.append(Token("recurse", "..", i))
                i += 2
            elif i + 1 < n and _is_ident_start(source[i + 1]):
                end = _scan_ident(source, i + 1)
                tokens.append(Token("field", source[i + 1:end], i))
                i = end
            elif i + 1 < n and source[i + 1].isdigit():
                end = _scan_number(source, i)
                tokens.append(Token("number", _number(source[i:end], i), i))
                i = end
            else:
                tokens.append(Token("dot", ".", i))
                i += 1
            continue

        if ch.isdigit():
            end = _scan_number(source, i)
            tokens.append(Token("number", _number(source[i:end], i), i))
            i = end
            continue

        if ch == '"':
            end = _scan_string(source, i)
            try:
                value = json.loads(source[i:end])
            except json.JSONDecodeError:
                raise InvalidQuery("Malformed string literal", i) from None
            tokens.append(Token("string", value, i))
            i = end
            continue

        if _is_ident_start(ch):
            end = _scan_ident(source, i)
            word = source[i:end]
            tokens.append(Token("keyword" if word in KEYWORDS else "ident", word, i))
            i = end
            continue

        for op in _OPERATORS:
            if source.startswith(op, i):
                tokens.append(Token("op", op, i))
                i += len(op)
                break
        else:
            raise InvalidQuery(f"Unexpected character {ch!r}", i)

    tokens.append(Token("eof", None, n))
    return tokens


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch == "_"


def _scan_ident(source: str, i: int) -> int:
    while i < len(source) and (source[i].isalnum() or source[i] == "_"):
        i += 1
    return i


def _number(text: str, pos: int):
    try:
        value = int(text) if text.isdigit() else float(text)
    except ValueError:
        raise InvalidQuery(f"Malformed number {text!r}", pos) from None
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidQuery(f"Number {text!r} is out of range", pos)
    return value


def _scan_number(source: str, i: int) -> int:
    n = len(source)
    while i < n and source[i].isdigit():
        i += 1
    if i < n and source[i] == ".":
        i += 1
        while i < n and source[i].isdigit():
            i += 1
    if i < n and source[i] in "eE":
        j = i + 1
        if j < n and source[j] in "+-":
            j += 1
        if j < n and source[j].isdigit():
            i = j
            while i < n and source[i].isdigit():
                i += 1
    return i


def _scan_string(source: str, start: int) -> int:
    i = start + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i + 1
        i += 1
    raise InvalidQuery("Unterminated string literal", start)
