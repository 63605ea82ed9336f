"""
Parser for the template expression language.

Strings in a template are templates: literal text with ``${ ... }``
interpolations. A string made of exactly one interpolation compiles to the
bare expression so it keeps its type (``"${var.size}"`` is a number).
``$${`` escapes a literal ``${``.

Inside an interpolation the grammar is HCL-like:

    conditional := or ("?" conditional ":" conditional)?
    or          := and ("||" and)*
    and         := equality ("&&" equality)*
    equality    := compare (("==" | "!=") compare)*
    compare     := sum (("<" | "<=" | ">" | ">=") sum)*
    sum         := product (("+" | "-") product)*
    product     := unary (("*" | "/" | "%") unary)*
    unary       := ("!" | "-") unary | postfix
    postfix     := primary ("." name | "[" conditional "]")*
"""
import re
from typing import Any, List, Optional, Tuple

from stackgraph.engine.expressions import (
    Binary,
    Call,
    Conditional,
    Expression,
    ForExpr,
    GetAttr,
    Index,
    ListExpr,
    Literal,
    ObjectExpr,
    Postfix,
    TemplateString,
    Traversal,
    Unary,
    is_number,
)
from stackgraph.errors import TemplateError

_NUMBER_RE = re.compile(r"\d+(\.\d+)?([eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "=>", "...")
_SINGLE = set("+-*/%<>!?:.,()[]{}=")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}

_BINARY_LEVELS = (
    ("||",),
    ("&&",),
    ("==", "!="),
    ("<", "<=", ">", ">="),
    ("+", "-"),
    ("*", "/", "%"),
)

NUMBER = "number"
STRING = "string"
IDENT = "ident"
OP = "op"
EOF = "eof"


class Token:
    __slots__ = ("kind", "value", "pos")

    def __init__(self, kind: str, value: Any, pos: int):
        self.kind = kind
        self.value = value
        self.pos = pos

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.value!r})"


# ------------------------------------------------------------------ scanning

def _skip_string(src: str, pos: int) -> int:
    """``src[pos]`` is an opening quote; return the index just past the closing quote."""
    i = pos + 1
    while i < len(src):
        ch = src[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i + 1
        if src.startswith("${", i):
            i = _skip_interpolation(src, i + 2)
            continue
        i += 1
    raise _error(src, "unterminated string")


def _skip_interpolation(src: str, pos: int) -> int:
    """``pos`` is just past ``${``; return the index just past the matching ``}``."""
    depth = 1
    i = pos
    while i < len(src):
        ch = src[i]
        if ch == '"':
            i = _skip_string(src, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise _error(src, "unterminated interpolation")


def _error(src: str, reason: str) -> TemplateError:
    return TemplateError(f"invalid expression {src!r}: {reason}")


def tokenize(src: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    while i < len(src):
        ch = src[i]
        if ch.isspace():
            i += 1
            continue
        if ch == '"':
            end = _skip_string(src, i)
            tokens.append(Token(STRING, src[i + 1:end - 1], i))
            i = end
            continue
        m = _NUMBER_RE.match(src, i)
        if m:
            text = m.group(0)
            value = float(text) if (m.group(1) or m.group(2)) else int(text)
            tokens.append(Token(NUMBER, value, i))
            i = m.end()
            continue
        m = _IDENT_RE.match(src, i)
        if m:
            tokens.append(Token(IDENT, m.group(0), i))
            i = m.end()
            continue
        op = next((o for o in _OPERATORS if src.startswith(o, i)), None)
        if op is None and ch in _SINGLE:
            op = ch
        if op is None:
            raise _error(src, f"unexpected character {ch!r} at {i}")
        tokens.append(Token(OP, op, i))
        i += len(op)
    tokens.append(Token(EOF, None, len(src)))
    return tokens


# ------------------------------------------------------------------ parsing

class _Parser:
    def __init__(self, src: str):
        self.src = src
        self.tokens = tokenize(src)
        self.pos = 0

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def at(self, kind: str, value: Any = None) -> bool:
        tok = self.peek()
        return tok.kind == kind and (value is None or tok.value == value)

    def accept(self, kind: str, value: Any = None) -> Optional[Token]:
        if self.at(kind, value):
            return self.advance()
        return None

    def expect(self, kind: str, value: Any = None) -> Token:
        tok = self.accept(kind, value)
        if tok is None:
            found = self.peek()
            wanted = value if value is not None else kind
            raise _error(self.src, f"expected {wanted!r} at {found.pos}, found {found.value!r}")
        return tok

    # -------------------------------------------------------------- grammar

    def parse(self) -> Expression:
        expr = self.conditional()
        if not self.at(EOF):
            tok = self.peek()
            raise _error(self.src, f"unexpected {tok.value!r} at {tok.pos}")
        return expr

    def conditional(self) -> Expression:
        cond = self.binary(0)
        if self.accept(OP, "?"):
            then = self.conditional()
            self.expect(OP, ":")
            otherwise = self.conditional()
            return Conditional(cond, then, otherwise)
        return cond

    def binary(self, level: int) -> Expression:
        if level == len(_BINARY_LEVELS):
            return self.unary()
        left = self.binary(level + 1)
        while self.peek().kind == OP and self.peek().value in _BINARY_LEVELS[level]:
            op = self.advance().value
            right = self.binary(level + 1)
            left = Binary(op, left, right)
        return left

    def unary(self) -> Expression:
        if self.at(OP, "!") or self.at(OP, "-"):
            op = self.advance().value
            operand = self.unary()
            if op == "-" and isinstance(operand, Literal) and is_number(operand.value):
                return Literal(-operand.value)
            return Unary(op, operand)
        return self.postfix()

    def postfix(self) -> Expression:
        root: Optional[str] = None
        base: Optional[Expression] = None
        tok = self.peek()
        if tok.kind == IDENT and tok.value not in ("true", "false", "null") and not (
            self.peek(1).kind == OP and self.peek(1).value == "("
        ):
            root = self.advance().value
        else:
            base = self.primary()

        steps: List[Any] = []
        while True:
            if self.accept(OP, "."):
                name = self.accept(IDENT) or self.accept(NUMBER)
                if name is None:
                    raise _error(self.src, f"expected attribute name at {self.peek().pos}")
                steps.append(GetAttr(name.value) if name.kind == IDENT else Index(Literal(name.value)))
            elif self.accept(OP, "["):
                steps.append(Index(self.conditional()))
                self.expect(OP, "]")
            else:
                break

        if root is not None:
            return Traversal(root, steps)
        if steps:
            return Postfix(base, steps)
        return base

    def primary(self) -> Expression:
        tok = self.advance()
        if tok.kind == NUMBER:
            return Literal(tok.value)
        if tok.kind == STRING:
            return parse_template(tok.value, escaped=True)
        if tok.kind == IDENT:
            if tok.value in ("true", "false"):
                return Literal(tok.value == "true")
            if tok.value == "null":
                return Literal(None)
            return self.call(tok.value)
        if tok.kind == OP:
            if tok.value == "(":
                expr = self.conditional()
                self.expect(OP, ")")
                return expr
            if tok.value == "[":
                return self.list_or_for()
            if tok.value == "{":
                return self.object_or_for()
        raise _error(self.src, f"unexpected {tok.value!r} at {tok.pos}")

    def call(self, name: str) -> Expression:
        self.expect(OP, "(")
        args: List[Expression] = []
        while not self.at(OP, ")"):
            args.append(self.conditional())
            if not self.accept(OP, ","):
                break
        self.expect(OP, ")")
        return Call(name, args)

    def _for_header(self) -> Tuple[Optional[str], str, Expression]:
        first = self.expect(IDENT).value
        second = None
        if self.accept(OP, ","):
            second = self.expect(IDENT).value
        self.expect(IDENT, "in")
        collection = self.conditional()
        self.expect(OP, ":")
        if second is None:
            return None, first, collection
        return first, second, collection

    def _for_condition(self) -> Optional[Expression]:
        if self.accept(IDENT, "if"):
            return self.conditional()
        return None

    def list_or_for(self) -> Expression:
        if self.at(IDENT, "for"):
            self.advance()
            key_var, value_var, collection = self._for_header()
            value = self.conditional()
            condition = self._for_condition()
            self.expect(OP, "]")
            return ForExpr(key_var, value_var, collection, value, condition)
        items: List[Expression] = []
        while not self.at(OP, "]"):
            items.append(self.conditional())
            if not self.accept(OP, ","):
                break
        self.expect(OP, "]")
        return ListExpr(items)

    def object_or_for(self) -> Expression:
        if self.at(IDENT, "for"):
            self.advance()
            key_var, value_var, collection = self._for_header()
            key = self.conditional()
            self.expect(OP, "=>")
            value = self.conditional()
            condition = self._for_condition()
            self.expect(OP, "}")
            return ForExpr(key_var, value_var, collection, value, condition, key=key)
        pairs: List[Tuple[Expression, Expression]] = []
        while not self.at(OP, "}"):
            if self.at(IDENT) and self.peek(1).kind == OP and self.peek(1).value in ("=", ":"):
                key: Expression = Literal(self.advance().value)
            else:
                key = self.conditional()
            if not (self.accept(OP, "=") or self.accept(OP, ":")):
                raise _error(self.src, f"expected '=' in object at {self.peek().pos}")
            pairs.append((key, self.conditional()))
            self.accept(OP, ",")
        self.expect(OP, "}")
        return ObjectExpr(pairs)


def parse_expression(src: str) -> Expression:
    """Parse a bare expression such as ``var.architecture == "replication" ? 1 : 0``."""
    return _Parser(src).parse()


def _unescape(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            out.append(_ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_template(text: str, escaped: bool = False) -> Expression:
    """
    Parse a template string into an expression.

    ``escaped`` is set for string literals found inside an expression, whose
    backslash escapes have not been processed yet.
    """
    parts: List[Any] = []
    literal: List[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            literal.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _skip_interpolation(text, i + 2)
            if literal:
                chunk = "".join(literal)
                parts.append(_unescape(chunk) if escaped else chunk)
                literal = []
            inner = text[i + 2:end - 1].strip()
            if not inner:
                raise _error(text, "empty interpolation")
            parts.append(parse_expression(inner))
            i = end
            continue
        literal.append(text[i])
        i += 1
    if literal:
        chunk = "".join(literal)
        parts.append(_unescape(chunk) if escaped else chunk)

    if len(parts) == 1 and isinstance(parts[0], Expression):
        return parts[0]
    if all(isinstance(p, str) for p in parts):
        return Literal("".join(parts))
    return TemplateString(parts)


def compile_value(raw: Any) -> Any:
    """
    Compile a raw template value (from YAML, JSON or HCL) into expressions.

    Strings without interpolation stay plain strings so attribute trees
    without expressions round-trip unchanged.
    """
    if isinstance(raw, Expression):
        return raw
    if isinstance(raw, str):
        if "${" not in raw:
            return raw
        expr = parse_template(raw)
        return expr.value if isinstance(expr, Literal) else expr
    if isinstance(raw, dict):
        return {k: compile_value(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [compile_value(v) for v in raw]
    return raw
