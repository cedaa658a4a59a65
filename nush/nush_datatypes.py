"""
Defines the core data types for the nush language runtime.

This module provides the AST node classes produced by the transformer, the
runtime value types (closures, ranges), the control-flow signals returned by
the evaluator, the structured ``ShellError`` and the per-evaluation ``Stack``.
"""

import datetime
from contextlib import contextmanager
from typing import Any, Dict, List, Optional


class Span:
    """Half-open byte-offset range into the program text."""
    __slots__ = ("start", "end")

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end

    @classmethod
    def unknown(cls) -> 'Span':
        return cls(0, 0)

    def to_json(self) -> dict:
        return {"start": self.start, "end": self.end}

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"

    def __repr__(self) -> str:
        return f"Span({self.start}, {self.end})"

    def __eq__(self, other):
        return isinstance(other, Span) and (self.start, self.end) == (other.start, other.end)

    def __hash__(self):
        return hash((self.start, self.end))


class ShellError(Exception):
    """A runtime failure raised by the evaluator or by a command.

    ``kind`` names the failure class (``TypeMismatch``, ``DivisionByZero``,
    ``RecursionLimit``...). Extra keyword arguments are carried through to the
    JSON form so commands can attach structured detail.
    """
    def __init__(self, msg: str, *, kind: str = "GenericError", span: Optional[Span] = None,
                 help: Optional[str] = None, **extra):
        super().__init__(msg)
        self.msg = msg
        self.kind = kind
        self.span = span
        self.help = help
        self.extra = extra
        self.trace: List[str] = []

    @classmethod
    def wrap(cls, exc: BaseException, span: Optional[Span] = None) -> 'ShellError':
        if isinstance(exc, ShellError):
            if exc.span is None:
                exc.span = span
            return exc
        if isinstance(exc, RecursionError):
            return cls("maximum recursion depth exceeded", kind="RecursionLimit", span=span)
        return cls(str(exc) or type(exc).__name__, kind="GenericError", span=span,
                   error_type=type(exc).__name__)

    def to_json(self) -> dict:
        span = self.span or Span.unknown()
        out = {"kind": self.kind, "msg": self.msg, "span": span.to_json()}
        if self.help is not None:
            out["help"] = self.help
        out.update(self.extra)
        if self.trace:
            out["trace"] = list(self.trace)
        return out

    def __repr__(self) -> str:
        return f"ShellError({self.kind}: {self.msg!r} at {self.span})"


# =================================================================
# Control-flow signals
# =================================================================

class Signal:
    """Base for values that unwind evaluation instead of producing data."""
    pass


class ReturnSignal(Signal):
    def __init__(self, value: Any):
        self.value = value

    def __repr__(self):
        return f"ReturnSignal({self.value!r})"


class BreakSignal(Signal):
    def __repr__(self):
        return "BreakSignal()"


class ContinueSignal(Signal):
    def __repr__(self):
        return "ContinueSignal()"


class ExitRequest(Signal):
    """Produced by ``exit``; carries the requested status as a plain int.

    ``ExitRequest(0)`` is a real request, distinct from "no exit requested"
    (which is the absence of any signal).
    """
    def __init__(self, code: int, span: Optional[Span] = None):
        self.code = code
        self.span = span

    def __repr__(self):
        return f"ExitRequest({self.code})"

    def __eq__(self, other):
        return isinstance(other, ExitRequest) and self.code == other.code


def is_signal(x) -> bool:
    return isinstance(x, Signal)


def is_exit(x) -> bool:
    return isinstance(x, ExitRequest)


def unwrap_return(x):
    return x.value if isinstance(x, ReturnSignal) else x


# =================================================================
# AST nodes
# =================================================================

class Node:
    """Base class for AST nodes; every node carries its source span."""
    fields: tuple = ()

    def __init__(self, *args, span: Optional[Span] = None):
        for name, value in zip(self.fields, args):
            setattr(self, name, value)
        self.span = span or Span.unknown()

    def children(self):
        for name in self.fields:
            value = getattr(self, name)
            if isinstance(value, Node):
                yield value
            elif isinstance(value, (list, tuple)):
                for item in value:
                    if isinstance(item, Node):
                        yield item
                    elif isinstance(item, tuple):
                        yield from (v for v in item if isinstance(v, Node))

    def __repr__(self) -> str:
        inner = ", ".join(f"{name}={getattr(self, name)!r}" for name in self.fields)
        return f"{type(self).__name__}({inner})"

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return all(getattr(self, n) == getattr(other, n) for n in self.fields)

    __hash__ = object.__hash__


class Literal(Node):
    fields = ("value",)


class StringInterp(Node):
    """An interpolated string (``$"..."``), rendered as a Mustache template."""
    fields = ("template",)


class BareWord(Node):
    """An unquoted command argument; evaluates to its text."""
    fields = ("text",)


class Flag(Node):
    """A raw ``--name``/``-n`` argument before resolution against a signature."""
    fields = ("name", "short")


class Variable(Node):
    fields = ("name", "members")


class GetMember(Node):
    fields = ("target", "member")


class ListExpr(Node):
    fields = ("items",)


class RecordExpr(Node):
    # entries: list of (key, value-node)
    fields = ("entries",)


class EmptyBraces(Node):
    """``{}``: an empty record as a value, an empty block as a body."""
    fields = ()


class RangeExpr(Node):
    fields = ("start", "end", "inclusive")


class BinaryOp(Node):
    fields = ("op", "left", "right")


class LogicalOp(Node):
    fields = ("op", "left", "right")


class UnaryOp(Node):
    fields = ("op", "operand")


class Block(Node):
    fields = ("statements",)


class ClosureExpr(Node):
    fields = ("params", "body")


class Subexpression(Node):
    fields = ("block",)


class IfExpr(Node):
    fields = ("cond", "then", "orelse")


class TryExpr(Node):
    fields = ("body", "handler")


class Pipeline(Node):
    fields = ("elements",)


class Call(Node):
    """A command invocation.

    ``args`` holds the raw argument nodes as parsed. The resolver fills in
    ``decl_name`` (the possibly multi-word command name), ``positional`` and
    ``named`` (flag long name -> value node, or ``True`` for switches).
    """
    fields = ("head", "args")

    def __init__(self, head: str, args: list, *, span: Optional[Span] = None,
                 head_span: Optional[Span] = None):
        super().__init__(head, args, span=span)
        self.head_span = head_span or self.span
        self.decl_name: Optional[str] = None
        self.positional: List[Node] = []
        self.named: Dict[str, Any] = {}

    def children(self):
        yield from super().children()
        for value in self.named.values():
            if isinstance(value, Node):
                yield value


class Let(Node):
    fields = ("name", "value", "mutable", "type_name")


class Assign(Node):
    fields = ("target", "op", "value")


class Def(Node):
    fields = ("name", "signature", "body", "env")


class For(Node):
    fields = ("var", "iterable", "body")


class While(Node):
    fields = ("cond", "body")


class Loop(Node):
    fields = ("body",)


class Return(Node):
    fields = ("value",)


class Break(Node):
    fields = ()


class Continue(Node):
    fields = ()


# =================================================================
# Signatures
# =================================================================

class Parameter:
    """A positional parameter. ``default`` is a Python value for builtins and
    an AST node for user commands."""
    def __init__(self, name: str, shape: str = "any", *, optional: bool = False, default: Any = None):
        self.name = name
        self.shape = shape
        self.optional = optional
        self.default = default

    def __repr__(self):
        return f"Parameter({self.name!r}, {self.shape!r}, optional={self.optional})"


class FlagParameter:
    """A named flag. ``shape`` of ``None`` marks a switch (no value)."""
    def __init__(self, long: str, short: Optional[str] = None, shape: Optional[str] = None, default: Any = None):
        self.long = long
        self.short = short
        self.shape = shape
        self.default = default

    @property
    def is_switch(self) -> bool:
        return self.shape is None

    def __repr__(self):
        return f"FlagParameter({self.long!r}, short={self.short!r}, shape={self.shape!r})"


class Signature:
    def __init__(self, name: str, required=None, optional=None, rest: Optional[Parameter] = None, flags=None):
        self.name = name
        self.required: List[Parameter] = list(required or [])
        self.optional: List[Parameter] = list(optional or [])
        self.rest = rest
        self.flags: List[FlagParameter] = list(flags or [])

    @property
    def positional(self) -> List[Parameter]:
        return self.required + self.optional

    def find_flag(self, name: str, short: bool = False) -> Optional[FlagParameter]:
        for flag in self.flags:
            if (flag.short if short else flag.long) == name:
                return flag
        return None

    def usage(self) -> str:
        parts = [self.name]
        parts += [f"<{p.name}>" for p in self.required]
        parts += [f"({p.name})" for p in self.optional]
        if self.rest:
            parts.append(f"...{self.rest.name}")
        for flag in self.flags:
            parts.append(f"--{flag.long}" + (f"(-{flag.short})" if flag.short else ""))
        return " ".join(parts)

    def __repr__(self):
        return f"Signature({self.usage()!r})"


# =================================================================
# Runtime values
# =================================================================

class Closure:
    """A closure value: parameters, body and the variables captured by value."""
    def __init__(self, params: List[str], body: Block, captured: Dict[str, Any], span: Optional[Span] = None):
        self.params = params
        self.body = body
        self.captured = captured
        self.span = span

    def __repr__(self) -> str:
        return f"<closure |{', '.join(self.params)}|>"

    def __eq__(self, other):
        if not isinstance(other, Closure):
            return NotImplemented
        # Captured variables are not compared.
        return self.params == other.params and self.body is other.body


class Range:
    """An integer range; ``inclusive`` ranges contain their end."""
    def __init__(self, start: int, end: int, inclusive: bool = True):
        self.start = start
        self.end = end
        self.inclusive = inclusive

    def _as_range(self) -> range:
        step = 1 if self.end >= self.start else -1
        stop = self.end + step if self.inclusive else self.end
        return range(self.start, stop, step)

    def __iter__(self):
        return iter(self._as_range())

    def __len__(self):
        return len(self._as_range())

    def __contains__(self, item):
        return item in self._as_range()

    def to_list(self) -> list:
        return list(self._as_range())

    def __repr__(self) -> str:
        return f"{self.start}..{'' if self.inclusive else '<'}{self.end}"

    def __eq__(self, other):
        if not isinstance(other, Range):
            return NotImplemented
        return self.to_list() == other.to_list()


def type_name(value: Any) -> str:
    """The nush type of a runtime value, as reported by ``describe``."""
    match value:
        case None:
            return "nothing"
        case bool():
            return "bool"
        case int():
            return "int"
        case float():
            return "float"
        case str():
            return "string"
        case bytes() | bytearray():
            return "binary"
        case datetime.datetime():
            return "date"
        case Range():
            return "range"
        case Closure():
            return "closure"
        case dict():
            inner = ", ".join(f"{k}: {type_name(v)}" for k, v in value.items())
            return f"record<{inner}>"
        case list():
            return _list_type_name(value)
    return type(value).__name__


def _list_type_name(items: list) -> str:
    if items and all(isinstance(i, dict) for i in items):
        columns: Dict[str, str] = {}
        for row in items:
            for k, v in row.items():
                t = type_name(v)
                if columns.setdefault(k, t) != t:
                    columns[k] = "any"
        inner = ", ".join(f"{k}: {t}" for k, t in columns.items())
        return f"table<{inner}>"
    kinds = {type_name(i) for i in items}
    inner = kinds.pop() if len(kinds) == 1 else "any"
    return f"list<{inner}>"


# =================================================================
# Execution stack
# =================================================================

class Binding:
    __slots__ = ("value", "mutable")

    def __init__(self, value: Any, mutable: bool = False):
        self.value = value
        self.mutable = mutable

    def __repr__(self):
        return f"Binding({self.value!r}, mutable={self.mutable})"


class Stack:
    """Per-evaluation variable frames, environment overlay and call depth."""
    def __init__(self, env: Optional[Dict[str, Any]] = None):
        self.frames: List[Dict[str, Binding]] = [{}]
        self.env: Dict[str, Any] = dict(env or {})
        self.depth = 0

    def declare(self, name: str, value: Any, mutable: bool = False):
        self.frames[-1][name] = Binding(value, mutable)

    def lookup(self, name: str) -> Binding:
        for frame in reversed(self.frames):
            if name in frame:
                return frame[name]
        raise KeyError(name)

    def visible(self) -> Dict[str, Any]:
        """Flatten the frames into a plain name -> value dict, innermost winning."""
        out: Dict[str, Any] = {}
        for frame in self.frames:
            for k, binding in frame.items():
                out[k] = binding.value
        return out

    @contextmanager
    def frame(self, bindings: Optional[Dict[str, Any]] = None):
        self.frames.append({k: Binding(v) for k, v in (bindings or {}).items()})
        try:
            yield self
        finally:
            self.frames.pop()

    @contextmanager
    def isolated(self, bindings: Dict[str, Any], env: Optional[Dict[str, Any]] = None):
        """Swap in a fresh frame list (and optionally environment) for a call."""
        saved_frames, saved_env = self.frames, self.env
        self.frames = [{k: Binding(v) for k, v in bindings.items()}]
        if env is not None:
            self.env = env
        self.depth += 1
        try:
            yield self
        finally:
            self.depth -= 1
            self.frames, self.env = saved_frames, saved_env
