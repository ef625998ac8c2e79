# gates.py
"""
Gate expressions.

A gate decides whether a job (or a step) runs. Gates are plain text so they
can travel with a job definition to another host:

    facts.masterPush
    always() && !cancelled() && !failure() && facts.masterPush
    needs.release.outputs.tag != ''
    needs.tests.result == 'skipped' || success()

References:
    facts.<name>                 -> bool
    needs.<job>.result           -> 'succeeded' | 'failed' | 'skipped' | 'cancelled'
    needs.<job>.outputs.<name>   -> str

Status functions:
    success()    every predecessor succeeded (a skipped one does not count)
    failure()    some ancestor failed (a skipped one is pass-through)
    cancelled()  the run was cancelled
    always()     true; also opts the job out of forced cancellation

A gate that calls none of the status functions is evaluated as
`success() && (<gate>)`.

Anything ambiguous raises GateError instead of quietly evaluating to
true or false: unknown facts, missing predecessor outputs, and strings
other than 'true'/'false' in a boolean position.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, List, Mapping, Optional, Tuple, Union

from .model import Outcome

Value = Union[bool, str]

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})
# calling any of these means the gate handles cancellation itself
CANCEL_OPT_OUT = frozenset({"always", "cancelled"})


class GateError(Exception):
    """A gate could not be evaluated unambiguously."""


class GateSyntaxError(GateError, ValueError):
    """A gate expression could not be parsed."""


@dataclass(frozen=True)
class NeedView:
    """What a gate may see of one declared predecessor."""
    outcome: Outcome
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GateContext:
    """
    Everything a gate can read. Built fresh for each evaluation; nothing in
    here is writable by a gate.
    """
    facts: Mapping[str, bool]
    needs: Mapping[str, NeedView] = field(default_factory=dict)
    success: bool = True
    failure: bool = False
    cancelled: bool = False


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Node:
    def evaluate(self, ctx: GateContext) -> Value:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Value

    def evaluate(self, ctx: GateContext) -> Value:
        return self.value


@dataclass(frozen=True)
class FactRef(Node):
    name: str

    def evaluate(self, ctx: GateContext) -> Value:
        try:
            return ctx.facts[self.name]
        except KeyError:
            known = ", ".join(sorted(ctx.facts)) or "none"
            raise GateError(f"Unknown fact {self.name!r} (known: {known})") from None


def _need(ctx: GateContext, job: str) -> NeedView:
    try:
        return ctx.needs[job]
    except KeyError:
        raise GateError(f"{job!r} is not a declared predecessor") from None


@dataclass(frozen=True)
class NeedResult(Node):
    job: str

    def evaluate(self, ctx: GateContext) -> Value:
        return _need(ctx, self.job).outcome.value


@dataclass(frozen=True)
class NeedOutput(Node):
    job: str
    name: str

    def evaluate(self, ctx: GateContext) -> Value:
        need = _need(ctx, self.job)
        value = need.outputs.get(self.name)
        if value:
            return value
        if need.outcome in (Outcome.SKIPPED, Outcome.CANCELLED):
            # a job that never ran has no outputs; that is expected
            return ""
        state = "empty" if value == "" else "missing"
        raise GateError(
            f"Output {self.name!r} of {self.job!r} is {state} "
            f"(job {need.outcome.value})"
        )


@dataclass(frozen=True)
class Call(Node):
    fn: str

    def evaluate(self, ctx: GateContext) -> Value:
        if self.fn == "success":
            return ctx.success
        if self.fn == "failure":
            return ctx.failure
        if self.fn == "cancelled":
            return ctx.cancelled
        return True  # always()


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, ctx: GateContext) -> Value:
        return not as_bool(self.operand.evaluate(ctx))


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: GateContext) -> Value:
        return as_bool(self.left.evaluate(ctx)) and as_bool(self.right.evaluate(ctx))


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: GateContext) -> Value:
        return as_bool(self.left.evaluate(ctx)) or as_bool(self.right.evaluate(ctx))


def _as_text(value: Value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


@dataclass(frozen=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, ctx: GateContext) -> Value:
        equal = _as_text(self.left.evaluate(ctx)) == _as_text(self.right.evaluate(ctx))
        return equal if self.op == "==" else not equal


def as_bool(value: Value) -> bool:
    if isinstance(value, bool):
        return value
    if value == "true":
        return True
    if value == "false":
        return False
    raise GateError(f"Cannot use {value!r} as a boolean (compare it explicitly)")


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>&&|\|\||==|!=|!|\(|\)|\.)
  | (?P<str>'(?:[^']|'')*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise GateSyntaxError(f"Unexpected character {text[pos]!r} at {pos} in {text!r}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0
        self.calls: set[str] = set()

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise GateSyntaxError(f"Unexpected end of gate {self.text!r}")
        self.i += 1
        return tok

    def accept(self, value: str) -> bool:
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.i += 1
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            got = self.peek()
            raise GateSyntaxError(
                f"Expected {value!r} in {self.text!r}, got {got[1] if got else 'end'!r}"
            )

    def parse(self) -> Node:
        node = self.or_expr()
        if self.peek() is not None:
            raise GateSyntaxError(f"Unexpected {self.peek()[1]!r} in {self.text!r}")
        return node

    def or_expr(self) -> Node:
        node = self.and_expr()
        while self.accept("||"):
            node = Or(node, self.and_expr())
        return node

    def and_expr(self) -> Node:
        node = self.comparison()
        while self.accept("&&"):
            node = And(node, self.comparison())
        return node

    def comparison(self) -> Node:
        node = self.unary()
        for op in ("==", "!="):
            if self.accept(op):
                return Compare(op, node, self.unary())
        return node

    # `!` binds tighter than ==/!=: `!a == b` is `(!a) == b`
    def unary(self) -> Node:
        if self.accept("!"):
            return Not(self.unary())
        return self.primary()

    def primary(self) -> Node:
        if self.accept("("):
            node = self.or_expr()
            self.expect(")")
            return node

        kind, value = self.take()
        if kind == "str":
            return Literal(value[1:-1].replace("''", "'"))
        if kind != "ident":
            raise GateSyntaxError(f"Unexpected {value!r} in {self.text!r}")
        if value == "true":
            return Literal(True)
        if value == "false":
            return Literal(False)

        if self.accept("("):
            self.expect(")")
            if value not in STATUS_FUNCTIONS:
                raise GateSyntaxError(f"Unknown function {value}() in {self.text!r}")
            self.calls.add(value)
            return Call(value)

        path = [value]
        while self.accept("."):
            k, v = self.take()
            if k != "ident":
                raise GateSyntaxError(f"Expected a name after '.' in {self.text!r}")
            path.append(v)
        return self._reference(path)

    def _reference(self, path: List[str]) -> Node:
        dotted = ".".join(path)
        if path[0] == "facts" and len(path) == 2:
            return FactRef(path[1])
        if path[0] == "needs":
            if len(path) == 3 and path[2] == "result":
                return NeedResult(path[1])
            if len(path) == 4 and path[2] == "outputs":
                return NeedOutput(path[1], path[3])
        raise GateSyntaxError(f"Unknown reference {dotted!r} in {self.text!r}")


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


def _walk(node: Node):
    yield node
    for child in ("operand", "left", "right"):
        sub = getattr(node, child, None)
        if sub is not None:
            yield from _walk(sub)


@dataclass(frozen=True)
class Gate:
    text: str
    expr: Optional[Node]
    calls: FrozenSet[str]

    @property
    def has_status_check(self) -> bool:
        return bool(self.calls)

    @property
    def opts_out_of_cancellation(self) -> bool:
        return bool(self.calls & CANCEL_OPT_OUT)

    def referenced_needs(self) -> FrozenSet[str]:
        if self.expr is None:
            return frozenset()
        return frozenset(
            n.job for n in _walk(self.expr) if isinstance(n, (NeedResult, NeedOutput))
        )

    def evaluate(self, ctx: GateContext) -> bool:
        if self.expr is None:
            return ctx.success
        if not self.has_status_check and not ctx.success:
            # implicit success() && (...)
            return False
        return as_bool(self.expr.evaluate(ctx))

    def __str__(self) -> str:
        return self.text


@lru_cache(maxsize=512)
def parse_gate(text: Optional[str]) -> Gate:
    """Parse gate text. None or blank means the implicit `success()`."""
    if text is None or not _strip_wrapper(text):
        return Gate(text="", expr=None, calls=frozenset())
    body = _strip_wrapper(text)
    parser = _Parser(body)
    expr = parser.parse()
    return Gate(text=body, expr=expr, calls=frozenset(parser.calls))
