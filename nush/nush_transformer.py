"""
Transforms the Lark parse tree into the nush AST (see nush_datatypes).
"""

import re

from lark import Token, Transformer, v_args

from nush.nush_datatypes import (
    Span, Range, Signature, Parameter, FlagParameter,
    Literal, StringInterp, BareWord, Flag, Variable, GetMember, ListExpr, RecordExpr,
    EmptyBraces, RangeExpr, BinaryOp, LogicalOp, UnaryOp, Block, ClosureExpr,
    Subexpression, IfExpr, TryExpr, Pipeline, Call, Let, Assign, Def, For, While,
    Loop, Return, Break, Continue,
)

_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "0": "\0", "e": "\x1b", "\\": "\\",
    '"': '"', "'": "'", "/": "/", "$": "$", "{": "{", "}": "}",
}
_ESCAPE_RE = re.compile(r"\\(u\{[0-9a-fA-F]{1,6}\}|[\s\S])")

_INT_RE = re.compile(r"-?(?:0x[0-9a-fA-F][0-9a-fA-F_]*|0b[01][01_]*|0o[0-7][0-7_]*|\d[\d_]*)$")
_FLOAT_RE = re.compile(r"-?(?:\d[\d_]*\.\d[\d_]*(?:[eE][+-]?\d+)?|\d[\d_]*[eE][+-]?\d+|\.\d+)$")
_RANGE_RE = re.compile(r"(-?\d+)\.\.(<)?(-?\d+)$")
_MEMBER_RE = re.compile(r'\.(?:([\w\-]+)|"([^"]*)")')


class LiteralError(ValueError):
    """Text that lexes as a literal but does not denote a value."""
    pass


def unescape(text: str) -> str:
    def repl(m):
        esc = m.group(1)
        if esc.startswith("u{"):
            code = int(esc[2:-1], 16)
            if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
                raise LiteralError(f"invalid unicode escape '\\{esc}'")
            return chr(code)
        return _ESCAPES.get(esc, "\\" + esc)
    return _ESCAPE_RE.sub(repl, text)


def parse_int(text: str) -> int:
    sign = -1 if text.startswith("-") else 1
    body = text.lstrip("-").replace("_", "")
    try:
        if body[:2].lower() in ("0x", "0b", "0o"):
            return sign * int(body, 0)
        return sign * int(body)
    except ValueError:
        raise LiteralError(f"invalid integer literal '{text}'") from None


def classify_bare_word(text: str):
    """Bare command arguments double as number, range and boolean literals."""
    if _INT_RE.match(text):
        return parse_int(text)
    if _FLOAT_RE.match(text):
        return float(text.replace("_", ""))
    m = _RANGE_RE.match(text)
    if m:
        return Range(int(m.group(1)), int(m.group(3)), inclusive=m.group(2) is None)
    match text:
        case "true":
            return True
        case "false":
            return False
        case "null":
            return None
    return text


def _span(meta) -> Span:
    if getattr(meta, "empty", True):
        return Span.unknown()
    return Span(meta.start_pos, meta.end_pos)


def _tok_span(tok: Token) -> Span:
    return Span(tok.start_pos, tok.end_pos)


def _as_block(node) -> Block:
    if isinstance(node, EmptyBraces):
        return Block([], span=node.span)
    return node


@v_args(meta=True)
class NushTransformer(Transformer):
    """Builds AST nodes bottom-up.

    ``def`` statements are collected in ``defs`` so the parser can declare
    them in the working set before command names are resolved.
    """

    def __init__(self):
        super().__init__()
        self.defs = []
        self.diagnostics = []

    # -- structure -------------------------------------------------------

    def start(self, meta, children):
        return Block(children[0] if children else [], span=_span(meta))

    def statements(self, meta, children):
        return list(children)

    def block(self, meta, children):
        return Block(children[0], span=_span(meta))

    def empty_braces(self, meta, children):
        return EmptyBraces(span=_span(meta))

    def block_value(self, meta, children):
        return ClosureExpr([], children[0], span=_span(meta))

    def subexpr(self, meta, children):
        return Subexpression(Block(children[0], span=_span(meta)), span=_span(meta))

    def pipeline(self, meta, children):
        return Pipeline(list(children), span=_span(meta))

    def command(self, meta, children):
        head, *args = children
        return Call(str(head), list(args), span=_span(meta), head_span=_tok_span(head))

    # -- statements ------------------------------------------------------

    def _binding(self, meta, children, mutable):
        name = children[0]
        type_name = children[1] if len(children) == 3 else None
        return Let(str(name), children[-1], mutable, type_name, span=_span(meta))

    def let_stmt(self, meta, children):
        return self._binding(meta, children, False)

    def mut_stmt(self, meta, children):
        return self._binding(meta, children, True)

    def def_stmt(self, meta, children):
        flags = [str(c) for c in children if isinstance(c, Token) and c.type == "FLAG"]
        name, params, body = [c for c in children if not (isinstance(c, Token) and c.type == "FLAG")]
        for flag in flags:
            if flag != "--env":
                self.diagnostics.append((f"unknown flag '{flag}' for def", _span(meta)))
        node = Def(str(name), self._signature(str(name), params), _as_block(body), "--env" in flags,
                   span=_span(meta))
        self.defs.append(node)
        return node

    def _signature(self, name, params):
        sig = Signature(name)
        for param in params:
            if isinstance(param, FlagParameter):
                sig.flags.append(param)
            elif param.shape.startswith("..."):
                param.shape = param.shape[3:]
                sig.rest = param
            elif param.optional:
                sig.optional.append(param)
            else:
                sig.required.append(param)
        return sig

    def signature(self, meta, children):
        return list(children)

    def type_name(self, meta, children):
        return str(children[0])

    def param_positional(self, meta, children):
        name, *rest = children
        shape = next((c for c in rest if isinstance(c, str)), "any")
        default = next((c for c in rest if not isinstance(c, str)), None)
        return Parameter(str(name), shape, optional=default is not None, default=default)

    def param_optional(self, meta, children):
        return Parameter(str(children[0]), children[1] if len(children) > 1 else "any", optional=True)

    def param_rest(self, meta, children):
        return Parameter(str(children[0]), "..." + (children[1] if len(children) > 1 else "any"))

    def param_flag(self, meta, children):
        long = str(children[0]).lstrip("-")
        short = None
        rest = children[1:]
        if rest and isinstance(rest[0], Token) and rest[0].type == "FLAG":
            short = str(rest[0]).lstrip("-")
            rest = rest[1:]
        shape = next((c for c in rest if isinstance(c, str)), None)
        default = next((c for c in rest if not isinstance(c, str)), None)
        if shape is None and default is not None:
            shape = "any"
        return FlagParameter(long, short, shape, default)

    def for_stmt(self, meta, children):
        name, iterable, body = children
        return For(str(name), iterable, _as_block(body), span=_span(meta))

    def while_stmt(self, meta, children):
        return While(children[0], _as_block(children[1]), span=_span(meta))

    def loop_stmt(self, meta, children):
        return Loop(_as_block(children[0]), span=_span(meta))

    def return_stmt(self, meta, children):
        return Return(children[0] if children else None, span=_span(meta))

    def break_stmt(self, meta, children):
        return Break(span=_span(meta))

    def continue_stmt(self, meta, children):
        return Continue(span=_span(meta))

    def assignment(self, meta, children):
        target, op, value = children
        if not isinstance(target, Variable):
            self.diagnostics.append(("invalid assignment target; expected a variable", target.span))
        return Assign(target, op, value, span=_span(meta))

    def assign_op(self, meta, children):
        return str(children[0])

    # -- command arguments -----------------------------------------------

    def bare_word(self, meta, children):
        tok = children[0]
        value = classify_bare_word(str(tok))
        if isinstance(value, str):
            return BareWord(value, span=_tok_span(tok))
        return Literal(value, span=_tok_span(tok))

    def flag(self, meta, children):
        tok = str(children[0])
        short = not tok.startswith("--")
        return Flag(tok.lstrip("-"), short, span=_tok_span(children[0]))

    # -- expressions -----------------------------------------------------

    def logic_or(self, meta, children):
        return LogicalOp("or", *children, span=_span(meta))

    def logic_and(self, meta, children):
        return LogicalOp("and", *children, span=_span(meta))

    def logic_xor(self, meta, children):
        return LogicalOp("xor", *children, span=_span(meta))

    def logic_not(self, meta, children):
        return UnaryOp("not", children[0], span=_span(meta))

    def binop(self, meta, children):
        left, op, right = children
        return BinaryOp(op, left, right, span=_span(meta))

    def comp_op(self, meta, children):
        return str(children[0])

    add_op = comp_op
    mul_op = comp_op

    def pow(self, meta, children):
        return BinaryOp("**", *children, span=_span(meta))

    def negate(self, meta, children):
        operand = children[0]
        if isinstance(operand, Literal) and isinstance(operand.value, (int, float)) \
                and not isinstance(operand.value, bool):
            return Literal(-operand.value, span=_span(meta))
        return UnaryOp("-", operand, span=_span(meta))

    def range_incl(self, meta, children):
        return RangeExpr(children[0], children[1], True, span=_span(meta))

    def range_excl(self, meta, children):
        return RangeExpr(children[0], children[1], False, span=_span(meta))

    def get_member(self, meta, children):
        target, member = children
        if isinstance(member, Token):
            member = int(member) if member.type == "INT" else str(member)
        return GetMember(target, member, span=_span(meta))

    # -- atoms -----------------------------------------------------------

    def int(self, meta, children):
        return Literal(parse_int(str(children[0])), span=_span(meta))

    def float(self, meta, children):
        return Literal(float(str(children[0]).replace("_", "")), span=_span(meta))

    def true(self, meta, children):
        return Literal(True, span=_span(meta))

    def false(self, meta, children):
        return Literal(False, span=_span(meta))

    def null(self, meta, children):
        return Literal(None, span=_span(meta))

    def string(self, meta, children):
        tok = children[0]
        inner = str(tok)[1:-1]
        return unescape(inner) if tok.type == "DQ_STRING" else inner

    def string_lit(self, meta, children):
        return Literal(children[0], span=_span(meta))

    def istring(self, meta, children):
        tok = str(children[0])
        inner = tok[2:-1]
        return StringInterp(unescape(inner) if tok[1] == '"' else inner, span=_span(meta))

    def variable(self, meta, children):
        tok = children[0]
        text = str(tok)
        name = re.match(r"\$(\w+)", text).group(1)
        members = []
        for bare, quoted in _MEMBER_RE.findall(text[len(name) + 1:]):
            if quoted or not bare.isdigit():
                members.append(quoted or bare)
            else:
                members.append(int(bare))
        return Variable(name, members, span=_tok_span(tok))

    def list(self, meta, children):
        return ListExpr(list(children), span=_span(meta))

    def bare_string(self, meta, children):
        return Literal(str(children[0]), span=_span(meta))

    def record(self, meta, children):
        return RecordExpr(list(children), span=_span(meta))

    def field(self, meta, children):
        key, value = children
        return (str(key), value)

    def closure(self, meta, children):
        params = ()
        statements = []
        for child in children:
            if isinstance(child, tuple):
                params = child
            else:
                statements = child
        return ClosureExpr(list(params), Block(statements, span=_span(meta)), span=_span(meta))

    def closure_params(self, meta, children):
        return tuple(children)

    def closure_param(self, meta, children):
        return str(children[0])

    def if_expr(self, meta, children):
        cond, then = children[0], _as_block(children[1])
        orelse = None
        if len(children) > 2:
            orelse = children[2] if isinstance(children[2], IfExpr) else _as_block(children[2])
        return IfExpr(cond, then, orelse, span=_span(meta))

    def try_expr(self, meta, children):
        body = _as_block(children[0])
        handler = None
        if len(children) > 1:
            handler = children[1] if isinstance(children[1], ClosureExpr) else _as_block(children[1])
        return TryExpr(body, handler, span=_span(meta))
