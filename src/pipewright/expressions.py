# expressions.py
"""
`${{ }}` expression language.

Grammar (lowest precedence first):

    or      := and ( '||' and )*
    and     := compare ( '&&' compare )*
    compare := unary ( ('=='|'!='|'<'|'<='|'>'|'>=') unary )?
    unary   := '!' unary | postfix
    postfix := primary ( '.' IDENT | '[' or ']' )*
    primary := literal | IDENT | IDENT '(' args ')' | '(' or ')'

Evaluation never mutates the Context.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .context import Context
from .errors import ExpressionError, UnresolvedReference
from .paths import hash_files


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>0x[0-9a-fA-F]+|-?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(expr: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise ExpressionError(expr, f"unexpected character {expr[pos]!r} at {pos}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, m.group(kind), pos))
        pos = m.end()
    tokens.append(Token("eof", "", pos))
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Access:
    target: Any
    key: Any        # node evaluating to a str / int
    path: str       # display form for error messages


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = tokenize(expr)
        self.i = 0

    def peek(self) -> Token:
        return self.tokens[self.i]

    def take(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def expect(self, value: str) -> Token:
        tok = self.take()
        if tok.value != value or tok.kind not in ("op",):
            raise ExpressionError(self.expr, f"expected {value!r} at {tok.pos}, got {tok.value or 'end of input'!r}")
        return tok

    def parse(self) -> Any:
        if self.peek().kind == "eof":
            raise ExpressionError(self.expr, "empty expression")
        node = self.parse_or()
        tok = self.peek()
        if tok.kind != "eof":
            raise ExpressionError(self.expr, f"unexpected {tok.value!r} at {tok.pos}")
        return node

    def parse_or(self) -> Any:
        node = self.parse_and()
        while self.peek().kind == "op" and self.peek().value == "||":
            self.take()
            node = Binary("||", node, self.parse_and())
        return node

    def parse_and(self) -> Any:
        node = self.parse_compare()
        while self.peek().kind == "op" and self.peek().value == "&&":
            self.take()
            node = Binary("&&", node, self.parse_compare())
        return node

    def parse_compare(self) -> Any:
        node = self.parse_unary()
        tok = self.peek()
        if tok.kind == "op" and tok.value in ("==", "!=", "<", "<=", ">", ">="):
            self.take()
            node = Binary(tok.value, node, self.parse_unary())
        return node

    def parse_unary(self) -> Any:
        tok = self.peek()
        if tok.kind == "op" and tok.value == "!":
            self.take()
            return Not(self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Any:
        node, path = self.parse_primary()
        while True:
            tok = self.peek()
            if tok.kind == "op" and tok.value == ".":
                self.take()
                ident = self.take()
                if ident.kind != "ident":
                    raise ExpressionError(self.expr, f"expected property name at {ident.pos}")
                path = f"{path}.{ident.value}"
                node = Access(node, Literal(ident.value), path)
            elif tok.kind == "op" and tok.value == "[":
                self.take()
                key = self.parse_or()
                self.expect("]")
                shown = repr(key.value) if isinstance(key, Literal) else "[...]"
                path = f"{path}[{shown}]"
                node = Access(node, key, path)
            else:
                return node

    def parse_primary(self) -> Tuple[Any, str]:
        tok = self.take()
        if tok.kind == "number":
            text = tok.value
            if text.lower().startswith("0x"):
                return Literal(int(text, 16)), text
            value = float(text)
            return Literal(int(value) if value.is_integer() and "." not in text and "e" not in text.lower() else value), text
        if tok.kind == "string":
            return Literal(tok.value[1:-1].replace("''", "'")), tok.value
        if tok.kind == "op" and tok.value == "(":
            node = self.parse_or()
            self.expect(")")
            return node, "(...)"
        if tok.kind == "ident":
            word = tok.value
            if word == "true":
                return Literal(True), word
            if word == "false":
                return Literal(False), word
            if word == "null":
                return Literal(None), word
            nxt = self.peek()
            if nxt.kind == "op" and nxt.value == "(":
                self.take()
                args: List[Any] = []
                if not (self.peek().kind == "op" and self.peek().value == ")"):
                    args.append(self.parse_or())
                    while self.peek().kind == "op" and self.peek().value == ",":
                        self.take()
                        args.append(self.parse_or())
                self.expect(")")
                return Call(word, tuple(args)), f"{word}(...)"
            return Name(word), word
        raise ExpressionError(self.expr, f"unexpected {tok.value or 'end of input'!r} at {tok.pos}")


@lru_cache(maxsize=1024)
def parse_expression(expr: str) -> Any:
    return _Parser(expr.strip()).parse()


def uses_status_function(node: Any) -> bool:
    if isinstance(node, Call):
        if node.name.lower() in STATUS_FUNCTIONS:
            return True
        return any(uses_status_function(a) for a in node.args)
    if isinstance(node, Binary):
        return uses_status_function(node.left) or uses_status_function(node.right)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, Access):
        return uses_status_function(node.target) or uses_status_function(node.key)
    return False


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            return float(int(text, 16)) if text.lower().startswith("0x") else float(text)
        except ValueError:
            return math.nan
    return math.nan


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), indent=2)
    return str(value)


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left.casefold(), right.casefold()
    elif type(left) is type(right) and not isinstance(left, (str, int, float, bool)) and left is not None:
        # objects / arrays compare by identity only
        a, b = id(left), id(right)
        if op not in ("==", "!="):
            return False
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return op == "!="
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _fn_contains(ctx: Context, haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(_compare("==", item, needle) for item in haystack)
    return to_string(needle).casefold() in to_string(haystack).casefold()


def _fn_starts_with(ctx: Context, text: Any, prefix: Any) -> bool:
    return to_string(text).casefold().startswith(to_string(prefix).casefold())


def _fn_ends_with(ctx: Context, text: Any, suffix: Any) -> bool:
    return to_string(text).casefold().endswith(to_string(suffix).casefold())


_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _fn_format(ctx: Context, template: Any, *args: Any) -> str:
    def sub(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionError(str(template), f"format index {idx} out of range")
        return to_string(args[idx])
    return _FORMAT_RE.sub(sub, to_string(template))


def _fn_join(ctx: Context, items: Any, sep: Any = ",") -> str:
    if isinstance(items, (list, tuple)):
        return to_string(sep).join(to_string(i) for i in items)
    return to_string(items)


def _fn_to_json(ctx: Context, value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _fn_from_json(ctx: Context, text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except json.JSONDecodeError as e:
        raise ExpressionError(to_string(text), f"fromJSON: {e}") from e


def _fn_hash_files(ctx: Context, *patterns: Any) -> str:
    if not patterns:
        raise ExpressionError("hashFiles()", "at least one pattern is required")
    return hash_files(ctx.workspace, [to_string(p) for p in patterns])


def _fn_success(ctx: Context) -> bool:
    return ctx.job_status == "success" and not ctx.run_cancelled


def _fn_failure(ctx: Context) -> bool:
    return ctx.job_status == "failure"


def _fn_always(ctx: Context) -> bool:
    return True


def _fn_cancelled(ctx: Context) -> bool:
    return ctx.run_cancelled


FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, int]] = {
    # name: (impl, min args, max args)
    "contains": (_fn_contains, 2, 2),
    "startswith": (_fn_starts_with, 2, 2),
    "endswith": (_fn_ends_with, 2, 2),
    "format": (_fn_format, 1, 64),
    "join": (_fn_join, 1, 2),
    "tojson": (_fn_to_json, 1, 1),
    "fromjson": (_fn_from_json, 1, 1),
    "hashfiles": (_fn_hash_files, 1, 64),
    "success": (_fn_success, 0, 0),
    "failure": (_fn_failure, 0, 0),
    "always": (_fn_always, 0, 0),
    "cancelled": (_fn_cancelled, 0, 0),
}


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

class _Evaluator:
    def __init__(self, expr: str, ctx: Context):
        self.expr = expr
        self.ctx = ctx

    def eval(self, node: Any) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            try:
                return self.ctx.lookup_root(node.name)
            except KeyError:
                raise UnresolvedReference(self.expr, "unknown name", reference=node.name) from None
        if isinstance(node, Access):
            return self._access(node)
        if isinstance(node, Not):
            return not truthy(self.eval(node.operand))
        if isinstance(node, Binary):
            if node.op == "&&":
                left = self.eval(node.left)
                return self.eval(node.right) if truthy(left) else left
            if node.op == "||":
                left = self.eval(node.left)
                return left if truthy(left) else self.eval(node.right)
            return _compare(node.op, self.eval(node.left), self.eval(node.right))
        if isinstance(node, Call):
            return self._call(node)
        raise ExpressionError(self.expr, f"cannot evaluate {node!r}")

    def _access(self, node: Access) -> Any:
        target = self.eval(node.target)
        key = self.eval(node.key)
        if isinstance(target, Mapping):
            if isinstance(key, str):
                if key in target:
                    return target[key]
                # property names are case-insensitive
                for k in target:
                    if isinstance(k, str) and k.casefold() == key.casefold():
                        return target[k]
            elif key in target:
                return target[key]
        elif isinstance(target, (list, tuple)):
            idx = key if isinstance(key, int) and not isinstance(key, bool) else None
            if idx is None and isinstance(key, float) and key.is_integer():
                idx = int(key)
            if idx is not None and 0 <= idx < len(target):
                return target[idx]
        raise UnresolvedReference(self.expr, "no such property", reference=node.path)

    def _call(self, node: Call) -> Any:
        spec = FUNCTIONS.get(node.name.lower())
        if spec is None:
            raise ExpressionError(self.expr, f"unknown function '{node.name}'")
        fn, lo, hi = spec
        if not lo <= len(node.args) <= hi:
            raise ExpressionError(self.expr, f"{node.name}() takes {lo}..{hi} arguments, got {len(node.args)}")
        args = [self.eval(a) for a in node.args]
        return fn(self.ctx, *args)


def evaluate(expr: str, ctx: Context) -> Any:
    """Evaluate a bare expression (no `${{ }}` wrapper)."""
    return _Evaluator(expr, ctx).eval(parse_expression(expr))


# ---------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------

_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def strip_wrapper(text: str) -> str:
    """`${{ x }}` -> `x` when the whole string is a single expression."""
    stripped = text.strip()
    m = _INTERP_RE.fullmatch(stripped)
    return m.group(1).strip() if m else stripped


def has_expression(text: Any) -> bool:
    return isinstance(text, str) and "${{" in text


def interpolate(text: str, ctx: Context) -> str:
    """Substitute every `${{ expr }}` in `text` with its string form."""
    if not has_expression(text):
        return text
    return _INTERP_RE.sub(lambda m: to_string(evaluate(m.group(1).strip(), ctx)), text)


def interpolate_value(value: Any, ctx: Context) -> Any:
    """
    Interpolate strings inside nested mappings / lists.

    A string that is exactly one `${{ }}` keeps the expression's type.
    """
    if isinstance(value, str):
        m = _INTERP_RE.fullmatch(value.strip())
        if m and value.strip() == value:
            return evaluate(m.group(1).strip(), ctx)
        return interpolate(value, ctx)
    if isinstance(value, Mapping):
        return {k: interpolate_value(v, ctx) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate_value(v, ctx) for v in value]
    return value


def evaluate_condition(condition: str | bool | None, ctx: Context) -> bool:
    """
    Evaluate a job / step `if:` condition.

    Empty means `success()`. A condition without a status function is
    implicitly `success() && (condition)`. Evaluation errors yield False.
    """
    if condition is None or condition == "":
        return _fn_success(ctx)
    if isinstance(condition, bool):
        return condition and _fn_success(ctx)
    expr = strip_wrapper(str(condition))
    try:
        node = parse_expression(expr)
        if not uses_status_function(node):
            if not _fn_success(ctx):
                return False
        return truthy(_Evaluator(expr, ctx).eval(node))
    except ExpressionError:
        return False


def check_syntax(text: str) -> List[str]:
    """Return syntax error messages for every `${{ }}` in `text`."""
    problems: List[str] = []
    for m in _INTERP_RE.finditer(text):
        try:
            parse_expression(m.group(1).strip())
        except ExpressionError as e:
            problems.append(str(e))
    return problems
