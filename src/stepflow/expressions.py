# expressions.py
# Expression language used by `if:` conditions, job outputs and ${{ }}
# interpolation. Expressions are parsed once into a small typed AST and then
# evaluated against an immutable Context snapshot.
from __future__ import annotations

import json
import math
import re
import threading
from dataclasses import dataclass, field, replace
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import ErrorKind, EvalError

MASK = "***"

NAMESPACES = ("env", "secrets", "matrix", "needs", "steps", "event")
STATUS_FUNCTIONS = ("success", "failure", "cancelled", "always")
# calling any of these turns off the implicit success() guard
OPT_IN_FUNCTIONS = frozenset({"failure", "cancelled", "always"})


# ---------------------------------------------------------------------
# Secrets (redact-on-render)
# ---------------------------------------------------------------------

class Secret:
    """A secret value. Renders as *** everywhere except through reveal()."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = str(value)

    def reveal(self) -> str:
        return self._value

    def __str__(self) -> str:
        return MASK

    def __repr__(self) -> str:
        return f"Secret({MASK})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Secret):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("secret", self._value))


class SecretsView(Mapping):
    """
    Lazy, read-only secrets namespace backed by a SecretStore.

    Every value resolved through the view is remembered so captured output
    can be masked afterwards (see revealed()).
    """

    def __init__(self, store: Any = None, names: Optional[Iterable[str]] = None):
        self._store = store
        self._names = set(names or [])
        self._cache: Dict[str, Secret] = {}
        self._lock = threading.Lock()

    def __getitem__(self, name: str) -> Secret:
        with self._lock:
            if name in self._cache:
                return self._cache[name]
        if self._store is None:
            raise KeyError(name)
        from .backends import SecretNotFound

        try:
            value = self._store.resolve(name)
        except SecretNotFound:
            raise KeyError(name) from None
        secret = value if isinstance(value, Secret) else Secret(value)
        with self._lock:
            self._cache[name] = secret
            self._names.add(name)
        return secret

    def __iter__(self):
        with self._lock:
            return iter(sorted(self._names | set(self._cache)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._names | set(self._cache))

    def __contains__(self, name: object) -> bool:
        try:
            self[name]  # type: ignore[index]
        except KeyError:
            return False
        return True

    def revealed(self) -> List[str]:
        with self._lock:
            return [s.reveal() for s in self._cache.values()]

    def __repr__(self) -> str:
        return f"SecretsView({len(self)} names)"


def redact(text: str, secrets: Iterable[Union[str, Secret]]) -> str:
    """Replace every occurrence of a secret value in text with ***."""
    if not text:
        return text
    values = []
    for s in secrets:
        v = s.reveal() if isinstance(s, Secret) else s
        if v:
            values.append(v)
    # longest first so overlapping secrets are fully masked
    for v in sorted(set(values), key=len, reverse=True):
        text = text.replace(v, MASK)
    return text


# ---------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StatusFlags:
    """Aggregate status seen by success()/failure()/cancelled()."""
    failed: bool = False
    cancelled: bool = False


def _ro(value: Optional[Mapping]) -> Mapping:
    if isinstance(value, (MappingProxyType, SecretsView)):
        return value
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class Context:
    """
    Read-only namespace snapshot for expression evaluation.

    needs:  job id -> {"result": str, "outputs": {name: value}}
    steps:  step id -> {"outcome": str, "conclusion": str, "outputs": {...}}
    """
    env: Mapping[str, Any] = field(default_factory=dict)
    secrets: Mapping[str, Any] = field(default_factory=dict)
    matrix: Mapping[str, Any] = field(default_factory=dict)
    needs: Mapping[str, Any] = field(default_factory=dict)
    steps: Mapping[str, Any] = field(default_factory=dict)
    event: Mapping[str, Any] = field(default_factory=dict)
    status: StatusFlags = StatusFlags()

    def __post_init__(self) -> None:
        secrets = self.secrets
        if not isinstance(secrets, SecretsView):
            secrets = {k: v if isinstance(v, Secret) else Secret(v) for k, v in dict(secrets or {}).items()}
        object.__setattr__(self, "secrets", _ro(secrets))
        for name in ("env", "matrix", "needs", "steps", "event"):
            object.__setattr__(self, name, _ro(getattr(self, name)))

    def namespace(self, name: str) -> Mapping[str, Any]:
        return getattr(self, name)

    def evolve(self, **changes: Any) -> "Context":
        return replace(self, **changes)

    def secret_values(self) -> List[str]:
        if isinstance(self.secrets, SecretsView):
            return self.secrets.revealed()
        return [s.reveal() for s in self.secrets.values()]

    def __repr__(self) -> str:
        return (
            f"Context(env={sorted(self.env)}, secrets={sorted(self.secrets)}, "
            f"matrix={dict(self.matrix)}, needs={sorted(self.needs)}, steps={sorted(self.steps)})"
        )


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
class Attr:
    target: "Node"
    name: str


@dataclass(frozen=True)
class Index:
    target: "Node"
    key: "Node"


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str


Node = Union[Literal, Name, Attr, Index, Not, Binary, Call]


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>0x[0-9a-fA-F]+|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


def _syntax_error(expr: str, message: str) -> EvalError:
    return EvalError(
        kind=ErrorKind.EXPRESSION_SYNTAX,
        message=f"{message} in expression {expr!r}",
        details={"expression": expr},
    )


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise _syntax_error(expr, f"unexpected character {expr[pos]!r} at offset {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise _syntax_error(self.expr, "unexpected end")
        self.pos += 1
        return tok

    def _accept(self, *ops: str) -> Optional[str]:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            tok = self._peek()
            found = tok[1] if tok else "end of expression"
            raise _syntax_error(self.expr, f"expected {op!r}, found {found!r}")

    def parse(self) -> Node:
        if not self.tokens:
            raise _syntax_error(self.expr, "empty expression")
        node = self._or()
        if self._peek() is not None:
            raise _syntax_error(self.expr, f"unexpected token {self._peek()[1]!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = Binary("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while True:
            op = self._accept("==", "!=")
            if not op:
                return node
            node = Binary(op, node, self._comparison())

    def _comparison(self) -> Node:
        node = self._unary()
        while True:
            op = self._accept("<", "<=", ">", ">=")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                kind, value = self._take()
                if kind != "ident":
                    raise _syntax_error(self.expr, f"expected property name after '.', found {value!r}")
                node = Attr(node, value)
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = Index(node, key)
            else:
                return node

    def _primary(self) -> Node:
        kind, value = self._take()
        if kind == "number":
            if value.lower().startswith("0x"):
                return Literal(int(value, 16))
            if any(c in value for c in ".eE"):
                return Literal(float(value))
            return Literal(int(value))
        if kind == "string":
            quote = value[0]
            return Literal(value[1:-1].replace(quote * 2, quote))
        if kind == "op" and value == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "ident":
            if value in _KEYWORDS:
                return Literal(_KEYWORDS[value])
            if self._accept("("):
                if value not in STATUS_FUNCTIONS:
                    raise _syntax_error(self.expr, f"unknown function {value}()")
                if not self._accept(")"):
                    raise _syntax_error(self.expr, f"{value}() takes no arguments")
                return Call(value)
            return Name(value)
        raise _syntax_error(self.expr, f"unexpected token {value!r}")


def strip_wrapper(expr: str) -> str:
    """`${{ x }}` -> `x`; anything else is returned stripped."""
    text = expr.strip()
    if text.startswith("${{") and text.endswith("}}"):
        inner = text[3:-2]
        if "${{" not in inner:
            return inner.strip()
    return text


@lru_cache(maxsize=1024)
def parse(expr: str) -> Node:
    return _Parser(strip_wrapper(expr)).parse()


def validate(expr: str) -> None:
    """Parse only; raises EvalError(EXPRESSION_SYNTAX) on malformed input."""
    parse(expr)


def _walk(node: Node):
    yield node
    if isinstance(node, (Attr,)):
        yield from _walk(node.target)
    elif isinstance(node, Index):
        yield from _walk(node.target)
        yield from _walk(node.key)
    elif isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, Binary):
        yield from _walk(node.left)
        yield from _walk(node.right)


def status_functions(expr: Optional[str]) -> FrozenSet[str]:
    """Names of the status predicates an expression calls."""
    if not expr or not expr.strip():
        return frozenset()
    return frozenset(n.name for n in _walk(parse(expr)) if isinstance(n, Call))


def opts_in(expr: Optional[str], names: FrozenSet[str] = OPT_IN_FUNCTIONS) -> bool:
    return bool(status_functions(expr) & names)


def references(expr: str, namespace: str) -> List[str]:
    """Dotted paths under a namespace referenced by expr, e.g. needs.build.outputs.v."""
    found = []
    for node in _walk(parse(expr)):
        if isinstance(node, Attr):
            path = _path(node)
            if path.startswith(namespace + ".") and path not in found:
                found.append(path)
    return found


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _path(node: Node) -> str:
    if isinstance(node, Name):
        return node.name
    if isinstance(node, Attr):
        return f"{_path(node.target)}.{node.name}"
    if isinstance(node, Index):
        key = node.key.value if isinstance(node.key, Literal) else "?"
        return f"{_path(node.target)}[{key!r}]"
    return "<expr>"


def _unwrap(value: Any) -> Any:
    return value.reveal() if isinstance(value, Secret) else value


def truthy(value: Any) -> bool:
    value = _unwrap(value)
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(int(text, 16)) if text.lower().startswith("0x") else float(text)
        except ValueError:
            return math.nan
    return math.nan


def _equals(a: Any, b: Any) -> bool:
    a, b = _unwrap(a), _unwrap(b)
    ka, kb = _kind(a), _kind(b)
    if ka == kb:
        if ka == "string":
            return a.casefold() == b.casefold()
        if ka == "object":
            return a is b or a == b
        return a == b
    if "object" in (ka, kb):
        return False
    return _to_number(a) == _to_number(b)


_ORDER: Dict[str, Callable[[Any, Any], bool]] = {
    "<": lambda x, y: x < y,
    "<=": lambda x, y: x <= y,
    ">": lambda x, y: x > y,
    ">=": lambda x, y: x >= y,
}


def _compare(op: str, a: Any, b: Any, expr: str) -> bool:
    a, b = _unwrap(a), _unwrap(b)
    ka, kb = _kind(a), _kind(b)
    if "object" in (ka, kb):
        raise EvalError(
            kind=ErrorKind.EVALUATION,
            message=f"cannot order {ka} and {kb} with {op!r} in expression {expr!r}",
            details={"expression": expr},
        )
    if ka == kb == "string":
        return _ORDER[op](a.casefold(), b.casefold())
    x, y = _to_number(a), _to_number(b)
    if math.isnan(x) or math.isnan(y):
        return False
    return _ORDER[op](x, y)


class _Evaluator:
    def __init__(self, context: Context, expr: str):
        self.context = context
        self.expr = expr

    def _unknown(self, node: Node) -> EvalError:
        path = _path(node)
        return EvalError(
            kind=ErrorKind.UNKNOWN_REFERENCE,
            message=f"unknown reference {path!r} in expression {self.expr!r}",
            details={"reference": path, "expression": self.expr},
        )

    def _lookup(self, container: Any, key: Any, node: Node) -> Any:
        if isinstance(container, Mapping):
            try:
                return container[key]
            except (KeyError, TypeError):
                raise self._unknown(node) from None
        if isinstance(container, (list, tuple)) and isinstance(key, (int, float)) and not isinstance(key, bool):
            idx = int(key)
            if 0 <= idx < len(container):
                return container[idx]
        raise self._unknown(node)

    def eval(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            if node.name not in NAMESPACES:
                raise self._unknown(node)
            return self.context.namespace(node.name)
        if isinstance(node, Attr):
            return self._lookup(self.eval(node.target), node.name, node)
        if isinstance(node, Index):
            target = self.eval(node.target)
            return self._lookup(target, _unwrap(self.eval(node.key)), node)
        if isinstance(node, Not):
            return not truthy(self.eval(node.operand))
        if isinstance(node, Call):
            status = self.context.status
            if node.name == "always":
                return True
            if node.name == "cancelled":
                return status.cancelled
            if node.name == "failure":
                return status.failed
            return not status.failed and not status.cancelled
        if isinstance(node, Binary):
            if node.op == "&&":
                left = self.eval(node.left)
                return self.eval(node.right) if truthy(left) else left
            if node.op == "||":
                left = self.eval(node.left)
                return left if truthy(left) else self.eval(node.right)
            left, right = self.eval(node.left), self.eval(node.right)
            if node.op == "==":
                return _equals(left, right)
            if node.op == "!=":
                return not _equals(left, right)
            return _compare(node.op, left, right, self.expr)
        raise EvalError(kind=ErrorKind.EVALUATION, message=f"unsupported node {node!r}")


def evaluate(expr: str, context: Context) -> Any:
    """Evaluate expr against context. Secret values come back wrapped in Secret."""
    return _Evaluator(context, expr).eval(parse(expr))


def evaluate_condition(expr: Optional[str], context: Context) -> bool:
    """
    Evaluate an `if:` condition.

    Absent conditions mean success(). Conditions that do not call failure(),
    always() or cancelled() are guarded by an implicit success() &&.
    """
    if expr is None or not strip_wrapper(expr):
        return truthy(_Evaluator(context, "success()").eval(Call("success")))
    node = parse(expr)
    if not opts_in(expr):
        node = Binary("&&", Call("success"), node)
    return truthy(_Evaluator(context, expr).eval(node))


def render(value: Any, *, reveal: bool = False) -> str:
    """Stringify an expression result the way interpolation does."""
    if isinstance(value, Secret):
        return value.reveal() if reveal else MASK
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (int, str)):
        return str(value)
    if isinstance(value, Mapping):
        value = dict(value)
    try:
        return json.dumps(value, default=lambda o: render(o, reveal=reveal), sort_keys=True)
    except TypeError:
        return str(value)


_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def interpolate(text: str, context: Context, *, reveal: bool = False) -> str:
    """
    Substitute every ${{ expr }} in text.

    reveal=True is only for strings handed to a runner or action; anything
    shown to a person keeps secrets masked.
    """
    if not isinstance(text, str) or "${{" not in text:
        return text
    return _INTERP_RE.sub(lambda m: render(evaluate(m.group(1).strip(), context), reveal=reveal), text)


def interpolate_value(value: Any, context: Context, *, reveal: bool = False) -> Any:
    """interpolate() applied recursively through dicts/lists."""
    if isinstance(value, str):
        return interpolate(value, context, reveal=reveal)
    if isinstance(value, Mapping):
        return {k: interpolate_value(v, context, reveal=reveal) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate_value(v, context, reveal=reveal) for v in value]
    return value


def embedded(text: Any) -> List[str]:
    """The expressions inside every ${{ }} block of text (recursing into dicts/lists)."""
    if isinstance(text, str):
        return [m.group(1).strip() for m in _INTERP_RE.finditer(text)]
    if isinstance(text, Mapping):
        return [e for v in text.values() for e in embedded(v)]
    if isinstance(text, (list, tuple)):
        return [e for v in text for e in embedded(v)]
    return []
