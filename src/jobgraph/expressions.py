"""
Expression evaluator for `if:` conditions and `${{ }}` templates.

Supported grammar (a minimal subset of the workflow expression language):

    expr    := or
    or      := and ('||' and)*
    and     := eq ('&&' eq)*
    eq      := cmp (('==' | '!=') cmp)*
    cmp     := unary (('<' | '<=' | '>' | '>=') unary)*
    unary   := '!' unary | postfix
    postfix := primary ('.' IDENT | '[' expr ']' | '(' args ')')*
    primary := NUMBER | STRING | true | false | null | IDENT | '(' expr ')'

`&&` and `||` short-circuit and yield operand values, so
`cond && 'a' || 'b'` works as a ternary. String comparisons ignore case.

Status functions (`success()`, `failure()`, `cancelled()`, `always()`) are
answered by a `StatusFunctions` object supplied with the context; a
condition that calls none of them is evaluated as `success() && (expr)`.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .errors import ExpressionError, UndefinedReference


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
class Property:
    target: "Node"
    key: str


@dataclass(frozen=True)
class Index:
    target: "Node"
    index: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    op: str  # '&&' or '||'
    left: "Node"
    right: "Node"


Node = Union[Literal, Name, Property, Index, Call, Not, Compare, Logical]

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?(?:0x[0-9a-fA-F]+|\d+(?:\.\d+)?(?:[eE][+-]?\d+)?))
  | (?P<string>'(?:[^']|'')*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().\[\],])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionError(f"Unexpected character {text[pos]!r} at position {pos}", text)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(kind), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", len(text)))
    return tokens


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _peek(self) -> _Token:
        return self.tokens[self.i]

    def _next(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok.kind == "op" and tok.text == text:
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            tok = self._peek()
            raise ExpressionError(f"Expected '{text}' at position {tok.pos}, got {tok.text or 'end of input'!r}", self.text)

    def parse(self) -> Node:
        node = self._or()
        tok = self._peek()
        if tok.kind != "eof":
            raise ExpressionError(f"Unexpected token {tok.text!r} at position {tok.pos}", self.text)
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._eq()
        while self._accept("&&"):
            node = Logical("&&", node, self._eq())
        return node

    def _eq(self) -> Node:
        node = self._cmp()
        while True:
            tok = self._peek()
            if tok.kind == "op" and tok.text in ("==", "!="):
                self._next()
                node = Compare(tok.text, node, self._cmp())
            else:
                return node

    def _cmp(self) -> Node:
        node = self._unary()
        while True:
            tok = self._peek()
            if tok.kind == "op" and tok.text in ("<", "<=", ">", ">="):
                self._next()
                node = Compare(tok.text, node, self._unary())
            else:
                return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                tok = self._next()
                if tok.kind != "ident":
                    raise ExpressionError(f"Expected property name at position {tok.pos}", self.text)
                node = Property(node, tok.text)
            elif self._accept("["):
                index = self._or()
                self._expect("]")
                node = Index(node, index)
            elif self._peek().kind == "op" and self._peek().text == "(":
                if not isinstance(node, Name):
                    raise ExpressionError("Only named functions can be called", self.text)
                self._next()
                args: List[Node] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                node = Call(node.name.lower(), tuple(args))
            else:
                return node

    def _primary(self) -> Node:
        tok = self._next()
        if tok.kind == "number":
            return Literal(_parse_number(tok.text))
        if tok.kind == "string":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "ident":
            lowered = tok.text.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            return Name(tok.text)
        if tok.kind == "op" and tok.text == "(":
            node = self._or()
            self._expect(")")
            return node
        raise ExpressionError(f"Unexpected token {tok.text or 'end of input'!r} at position {tok.pos}", self.text)


def _parse_number(text: str) -> Union[int, float]:
    if text.lower().lstrip("-").startswith("0x"):
        return int(text, 16)
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    return float(text)


def strip_wrapper(text: str) -> str:
    """Remove one surrounding `${{ ... }}` if present."""
    t = text.strip()
    if t.startswith("${{") and t.endswith("}}"):
        return t[3:-2].strip()
    return t


@lru_cache(maxsize=1024)
def parse(text: str) -> Node:
    """Parse an expression (with or without a `${{ }}` wrapper) into an AST."""
    body = strip_wrapper(text)
    if not body:
        raise ExpressionError("Empty expression", text)
    return _Parser(body).parse()


# ---------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------

class StatusFunctions:
    """Answers the four status-check functions for one job or step boundary."""

    def success(self) -> bool:
        return True

    def failure(self) -> bool:
        return False

    def cancelled(self) -> bool:
        return False

    def always(self) -> bool:
        return True


@dataclass
class ExpressionContext:
    """
    Named values visible to an expression (`github`, `env`, `matrix`,
    `needs`, `steps`, `inputs`, `jobs`, ...) plus the status answers.

    With `strict=True`, reading a value that does not exist raises
    `UndefinedReference` instead of yielding null.
    """
    values: Mapping[str, Any] = field(default_factory=dict)
    status: StatusFunctions = field(default_factory=StatusFunctions)
    strict: bool = False


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return 0.0
        try:
            return float(_parse_number(s))
        except ValueError:
            return float("nan")
    return float("nan")


def _loose_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if a is None and b is None:
        return True
    if isinstance(a, (Mapping, list)) or isinstance(b, (Mapping, list)):
        return a is b
    if type(a) is type(b) and not isinstance(a, (int, float)):
        return a == b
    x, y = _to_number(a), _to_number(b)
    return x == y


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _loose_equal(a, b)
    if op == "!=":
        return not _loose_equal(a, b)
    if isinstance(a, str) and isinstance(b, str):
        x: Any = a.casefold()
        y: Any = b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def to_string(value: Any) -> str:
    """Render a value the way `${{ }}` substitution does."""
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(_plain(value))
    return str(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _fn_contains(search: Any, item: Any) -> bool:
    if isinstance(search, (list, tuple)):
        return any(_loose_equal(v, item) for v in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _fn_starts_with(s: Any, prefix: Any) -> bool:
    return to_string(s).casefold().startswith(to_string(prefix).casefold())


def _fn_ends_with(s: Any, suffix: Any) -> bool:
    return to_string(s).casefold().endswith(to_string(suffix).casefold())


def _fn_format(fmt: Any, *args: Any) -> str:
    def repl(m: re.Match[str]) -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionError(f"format(): missing argument {{{idx}}}")
        return to_string(args[idx])

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", repl, to_string(fmt))


def _fn_from_json(s: Any) -> Any:
    try:
        return json.loads(to_string(s))
    except json.JSONDecodeError as e:
        raise ExpressionError(f"fromJSON(): invalid JSON ({e.msg})") from e


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _fn_contains,
    "startswith": _fn_starts_with,
    "endswith": _fn_ends_with,
    "format": _fn_format,
    "fromjson": _fn_from_json,
}


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

class Evaluator:
    def __init__(self, context: ExpressionContext, source: str | None = None):
        self.context = context
        self.source = source

    def evaluate(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return self._lookup(self.context.values, node.name, node.name)
        if isinstance(node, Property):
            return self._lookup(self.evaluate(node.target), node.key, _path(node))
        if isinstance(node, Index):
            key = self.evaluate(node.index)
            target = self.evaluate(node.target)
            if isinstance(target, (list, tuple)):
                try:
                    return target[int(_to_number(key))]
                except (IndexError, ValueError):
                    return self._missing(_path(node))
            return self._lookup(target, to_string(key), _path(node))
        if isinstance(node, Not):
            return not truthy(self.evaluate(node.operand))
        if isinstance(node, Logical):
            left = self.evaluate(node.left)
            if node.op == "&&":
                return self.evaluate(node.right) if truthy(left) else left
            return left if truthy(left) else self.evaluate(node.right)
        if isinstance(node, Compare):
            return _compare(node.op, self.evaluate(node.left), self.evaluate(node.right))
        if isinstance(node, Call):
            return self._call(node)
        raise ExpressionError(f"Unsupported node {node!r}", self.source)

    def _call(self, node: Call) -> Any:
        if node.name in STATUS_FUNCTIONS:
            if node.args:
                raise ExpressionError(f"{node.name}() takes no arguments", self.source)
            return bool(getattr(self.context.status, node.name)())
        fn = _FUNCTIONS.get(node.name)
        if fn is None:
            raise ExpressionError(f"Unknown function '{node.name}'", self.source)
        args = [self.evaluate(a) for a in node.args]
        try:
            return fn(*args)
        except TypeError as e:
            raise ExpressionError(f"Invalid arguments for {node.name}(): {e}", self.source) from e

    def _lookup(self, target: Any, key: str, path: str) -> Any:
        if isinstance(target, Mapping) and key in target:
            return target[key]
        return self._missing(path)

    def _missing(self, path: str) -> None:
        if self.context.strict:
            raise UndefinedReference(path, self.source)
        return None


def _path(node: Node) -> str:
    if isinstance(node, Name):
        return node.name
    if isinstance(node, Property):
        return f"{_path(node.target)}.{node.key}"
    if isinstance(node, Index):
        idx = node.index.value if isinstance(node.index, Literal) else "*"
        return f"{_path(node.target)}[{idx!r}]"
    return "<expr>"


def evaluate(expression: Union[str, Node], context: ExpressionContext) -> Any:
    """Evaluate an expression string (or parsed node) to a value."""
    if isinstance(expression, str):
        source = expression
        node = parse(expression)
    else:
        source = None
        node = expression
    return Evaluator(context, source).evaluate(node)


def uses_status_function(node: Node) -> bool:
    return any(isinstance(n, Call) and n.name in STATUS_FUNCTIONS for n in walk(node))


def evaluate_condition(expression: Optional[str], context: ExpressionContext) -> bool:
    """
    Evaluate an `if:` condition.

    An omitted condition is `success()`; a condition without any status
    function is implicitly `success() && (<condition>)`.
    """
    if expression is None or not strip_wrapper(expression):
        return bool(context.status.success())
    node = parse(expression)
    if not uses_status_function(node):
        node = Logical("&&", Call("success", ()), node)
    return truthy(Evaluator(context, expression).evaluate(node))


# ---------------------------------------------------------------------
# Templates: "text ${{ expr }} text"
# ---------------------------------------------------------------------

def _scan_templates(template: str) -> Iterator[Tuple[int, int, str]]:
    """Yield (start, end, expression) for every `${{ ... }}` in a string."""
    pos = 0
    while True:
        start = template.find("${{", pos)
        if start < 0:
            return
        i = start + 3
        in_string = False
        while i < len(template):
            ch = template[i]
            if ch == "'":
                in_string = not in_string
            elif not in_string and template.startswith("}}", i):
                break
            i += 1
        else:
            raise ExpressionError("Unterminated '${{' in template", template)
        yield start, i + 2, template[start + 3:i].strip()
        pos = i + 2


def template_expressions(template: str) -> List[str]:
    return [expr for _, _, expr in _scan_templates(template)]


def interpolate(template: str, context: ExpressionContext) -> str:
    """Substitute every `${{ expr }}` in `template` with its string value."""
    out: List[str] = []
    pos = 0
    for start, end, expr in _scan_templates(template):
        out.append(template[pos:start])
        out.append(to_string(evaluate(expr, context)))
        pos = end
    out.append(template[pos:])
    return "".join(out)


def evaluate_value(template: str, context: ExpressionContext) -> Any:
    """
    Like `interpolate`, but a string that is exactly one `${{ expr }}`
    keeps the expression's type (lists stay lists).
    """
    spans = list(_scan_templates(template))
    if len(spans) == 1:
        start, end, expr = spans[0]
        if template[start:end] == template.strip():
            return evaluate(expr, context)
    return interpolate(template, context)


# ---------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------

def walk(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, Property):
        yield from walk(node.target)
    elif isinstance(node, Index):
        yield from walk(node.target)
        yield from walk(node.index)
    elif isinstance(node, Call):
        for a in node.args:
            yield from walk(a)
    elif isinstance(node, Not):
        yield from walk(node.operand)
    elif isinstance(node, (Compare, Logical)):
        yield from walk(node.left)
        yield from walk(node.right)


def referenced_contexts(expression: str) -> Set[Tuple[str, Optional[str]]]:
    """
    Return (context, first key) pairs an expression reads, e.g.
    `needs.build.outputs.id` -> ("needs", "build").
    """
    refs: Set[Tuple[str, Optional[str]]] = set()
    for n in walk(parse(expression)):
        if isinstance(n, Name):
            refs.add((n.name, None))
        elif isinstance(n, Property) and isinstance(n.target, Name):
            refs.add((n.target.name, n.key))
        elif isinstance(n, Index) and isinstance(n.target, Name) and isinstance(n.index, Literal):
            refs.add((n.target.name, to_string(n.index.value)))
    return refs


def referenced_jobs(expressions: Sequence[str], context_name: str = "needs") -> Set[str]:
    """Names of jobs referenced as `<context_name>.<job>` in any of the expressions."""
    names: Set[str] = set()
    for expr in expressions:
        for ctx, key in referenced_contexts(expr):
            if ctx == context_name and key is not None:
                names.add(key)
    return names
