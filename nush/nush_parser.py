"""
Parsing of nush program text.

``Parser.parse`` runs three phases: Lark builds the parse tree, the
transformer builds the AST and collects ``def`` declarations into a
``WorkingSet``, and the resolver binds every command call (multi-word names,
flags, positional arity) against the working set layered over the context.
The live context is never modified here; the caller merges ``result.delta``.
"""

import logging
from importlib import resources
from typing import List, Optional

from lark import Lark, Token
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, UnexpectedToken, VisitError
from lark.lark import PostLex

from nush.nush_datatypes import BareWord, Call, Def, Flag, Node, Span
from nush.nush_transformer import LiteralError, NushTransformer

logger = logging.getLogger(__name__)

_OPEN = {"_LBRACK": "_RBRACK", "_LPAR": "_RPAR", "_LBRACE": "_RBRACE"}
_CLOSE = {v: k for k, v in _OPEN.items()}


class SeparatorPostLex(PostLex):
    """Turns newlines and ';' into ``_SEP`` tokens.

    Newlines inside ``[...]`` and ``(...)`` are whitespace. Separators are
    dropped at the start of input, after another separator, and after tokens
    that cannot end a statement (an opening bracket, ',' and '|'). A trailing
    separator before '}', ')' or the end of input is accepted by the grammar.
    """
    always_accept = ("_NL", "_SEMI")
    _swallow_after = {"_SEP", "_LBRACE", "_LBRACK", "_LPAR", "_COMMA", "_PIPE", None}

    def process(self, stream):
        brackets = []
        prev = None
        for tok in stream:
            kind = tok.type
            if kind in ("_NL", "_SEMI"):
                if kind == "_NL" and brackets and brackets[-1] != "_LBRACE":
                    continue
                if prev in self._swallow_after:
                    continue
                tok = Token.new_borrow_pos("_SEP", tok.value, tok)
                kind = "_SEP"
            elif kind in _OPEN:
                brackets.append(kind)
            elif kind in _CLOSE and brackets and brackets[-1] == _CLOSE[kind]:
                brackets.pop()
            prev = kind
            yield tok


def _node_span(obj) -> Span:
    if isinstance(obj, Token):
        return Span(obj.start_pos, obj.end_pos)
    meta = getattr(obj, "meta", None)
    if meta is None or meta.empty:
        return Span.unknown()
    return Span(meta.start_pos, meta.end_pos)


def line_col(source: str, pos: int):
    pos = max(0, min(pos, len(source)))
    line = source.count("\n", 0, pos) + 1
    col = pos - (source.rfind("\n", 0, pos) + 1) + 1
    return line, col


class ParseDiagnostic:
    """One parse-time problem, located by span (and line/col for humans)."""

    def __init__(self, message: str, span: Span, source: str = ""):
        self.message = message
        self.span = span
        self.source = source
        self.line, self.col = line_col(source, span.start)

    def format(self) -> str:
        return (f"Parse error: {self.message} at {self.span.start}..{self.span.end} "
                f"(line {self.line}, col {self.col})")

    def source_context(self, radius: int = 2) -> str:
        lines = self.source.splitlines() or [""]
        line = min(self.line, len(lines))
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line:
                out.append(f"  {' ' * width} | {' ' * max(self.col - 1, 0)}^")
        return "\n".join(out)

    def __repr__(self):
        return f"ParseDiagnostic({self.message!r}, {self.span})"


class Delta:
    """The declarations produced by one parse, to be merged into the context."""

    def __init__(self, decls, base_version: int):
        self.decls = tuple(decls)
        self.base_version = base_version

    def __repr__(self):
        return f"Delta({[d.name for d in self.decls]}, base={self.base_version})"


class WorkingSet:
    """A read view of the context plus the declarations of the program being parsed."""

    def __init__(self, context):
        self.context = context
        self.base_version = context.version
        self.decls = []
        self._by_name = {}

    def add_decl(self, decl):
        self.decls.append(decl)
        self._by_name[decl.name] = decl

    def find_decl(self, name: str):
        decl = self._by_name.get(name)
        if decl is None:
            decl = self.context.find_decl(name)
        return decl

    def render(self) -> Delta:
        return Delta(self.decls, self.base_version)


class ParseResult:
    def __init__(self, block, delta: Delta, diagnostics: List[ParseDiagnostic], source: str):
        self.block = block
        self.delta = delta
        self.diagnostics = diagnostics
        self.source = source

    @property
    def ok(self) -> bool:
        return not self.diagnostics


class Resolver:
    """Binds calls to declarations: command name, flags and positional arity."""

    def __init__(self, working_set: WorkingSet, source: str):
        self.working_set = working_set
        self.source = source
        self.diagnostics: List[ParseDiagnostic] = []

    def error(self, message: str, span: Span):
        self.diagnostics.append(ParseDiagnostic(message, span, self.source))

    def resolve(self, node: Node) -> List[ParseDiagnostic]:
        self.visit(node)
        return self.diagnostics

    def visit(self, node: Node):
        match node:
            case Call():
                self._resolve_call(node)
                for arg in node.args:
                    self.visit(arg)
            case Def():
                for param in node.signature.positional + node.signature.flags:
                    if isinstance(param.default, Node):
                        self.visit(param.default)
                self.visit(node.body)
            case _:
                for child in node.children():
                    self.visit(child)

    def _resolve_call(self, call: Call):
        words = []
        for arg in call.args:
            if not isinstance(arg, BareWord):
                break
            words.append(arg)
        decl = None
        for k in range(len(words), -1, -1):
            name = " ".join([call.head] + [w.text for w in words[:k]])
            decl = self.working_set.find_decl(name)
            if decl is not None:
                break
        if decl is None:
            self.error(f"unknown command '{call.head}'", call.head_span)
            return
        call.decl_name = decl.name
        if k:
            call.head_span = Span(call.head_span.start, words[k - 1].span.end)
        self._bind_args(call, decl.signature, call.args[k:])

    def _bind_args(self, call: Call, signature, args):
        positional = []
        named = {}
        i = 0
        while i < len(args):
            arg = args[i]
            if not isinstance(arg, Flag):
                positional.append(arg)
                i += 1
                continue
            flag = signature.find_flag(arg.name, arg.short)
            if flag is None and arg.short and len(arg.name) > 1:
                # -abc: a cluster of short switches
                cluster = [signature.find_flag(c, True) for c in arg.name]
                if all(f is not None and f.is_switch for f in cluster):
                    for f in cluster:
                        named[f.long] = True
                    i += 1
                    continue
            dashes = "-" if arg.short else "--"
            if flag is None:
                self.error(f"unknown flag '{dashes}{arg.name}' for '{call.decl_name}'", arg.span)
            elif flag.is_switch:
                named[flag.long] = True
            elif i + 1 < len(args) and not isinstance(args[i + 1], Flag):
                named[flag.long] = args[i + 1]
                i += 1
            else:
                self.error(f"flag '{dashes}{arg.name}' of '{call.decl_name}' requires a value", arg.span)
            i += 1
        call.positional = positional
        call.named = named

        required = signature.required
        if len(positional) < len(required):
            missing = required[len(positional)]
            self.error(f"missing required positional argument '{missing.name}' for '{call.decl_name}'",
                       Span(call.span.end, call.span.end))
        elif signature.rest is None and len(positional) > len(signature.positional):
            extra = positional[len(signature.positional)]
            self.error(f"extra positional argument for '{call.decl_name}'", extra.span)


class Parser:
    """Parses program text against an interpreter context.

    The compiled Lark grammars are cached on the class; parsers hold no state.
    """
    _lark: Optional[Lark] = None
    _lark_tokens: Optional[Lark] = None

    @classmethod
    def _build(cls, **options) -> Lark:
        grammar = resources.files("nush").joinpath("grammar/nush_grammar.lark").read_text(encoding="utf-8")
        return Lark(grammar, parser="lalr", lexer="contextual", propagate_positions=True,
                    maybe_placeholders=False, postlex=SeparatorPostLex(), **options)

    @classmethod
    def lark(cls) -> Lark:
        if cls._lark is None:
            cls._lark = cls._build()
        return cls._lark

    @classmethod
    def token_lark(cls) -> Lark:
        if cls._lark_tokens is None:
            cls._lark_tokens = cls._build(keep_all_tokens=True)
        return cls._lark_tokens

    def parse(self, source: str, context) -> ParseResult:
        working_set = WorkingSet(context)
        try:
            tree = self.lark().parse(source)
        except UnexpectedInput as e:
            diagnostic = self._diagnostic_from(e, source)
            logger.debug("syntax error:\n%s", diagnostic.source_context())
            return ParseResult(None, working_set.render(), [diagnostic], source)

        transformer = NushTransformer()
        try:
            block = transformer.transform(tree)
        except VisitError as e:
            if not isinstance(e.orig_exc, LiteralError):
                raise
            diagnostic = ParseDiagnostic(str(e.orig_exc), _node_span(e.obj), source)
            return ParseResult(None, working_set.render(), [diagnostic], source)
        diagnostics = [ParseDiagnostic(msg, span, source) for msg, span in transformer.diagnostics]

        from nush.nush_context import UserCommand
        for d in transformer.defs:
            working_set.add_decl(UserCommand(d.name, d.signature, d.body, env=d.env, span=d.span))

        diagnostics += Resolver(working_set, source).resolve(block)
        diagnostics.sort(key=lambda d: d.span.start)
        return ParseResult(block, working_set.render(), diagnostics, source)

    def _diagnostic_from(self, e: UnexpectedInput, source: str) -> ParseDiagnostic:
        if isinstance(e, UnexpectedToken):
            tok = e.token
            if tok.type == "$END":
                return ParseDiagnostic("unexpected end of input", Span(len(source), len(source)), source)
            span = Span(tok.start_pos, tok.end_pos if tok.end_pos is not None else tok.start_pos)
            if tok.type == "_SEP":
                message = "unexpected end of line" if "\n" in tok.value else "unexpected ';'"
            else:
                message = f"unexpected '{tok.value}'"
            return ParseDiagnostic(message, span, source)
        if isinstance(e, UnexpectedCharacters):
            pos = e.pos_in_stream
            return ParseDiagnostic(f"unexpected character {source[pos]!r}", Span(pos, pos + 1), source)
        pos = getattr(e, "pos_in_stream", None) or len(source)
        return ParseDiagnostic("unexpected end of input", Span(pos, pos), source)

    def highlight_spans(self, source: str):
        """Classify the tokens of ``source`` for syntax highlighting.

        Returns ``(start, end, style)`` triples in source order, or ``None``
        when the text does not parse.
        """
        try:
            tree = self.token_lark().parse(source)
        except UnexpectedInput:
            return None
        heads = set()
        for command in tree.find_data("command"):
            first = command.children[0]
            if isinstance(first, Token):
                heads.add(first.start_pos)
        spans = []
        for tok in tree.scan_values(lambda v: isinstance(v, Token)):
            style = _token_style(tok, tok.start_pos in heads)
            if style:
                spans.append((tok.start_pos, tok.end_pos, style))
        spans.sort()
        return spans


_KEYWORDS = {"let", "mut", "def", "if", "else", "for", "in", "while", "loop", "break",
             "continue", "return", "try", "catch", "and", "or", "xor", "not", "mod",
             "not-in", "starts-with", "ends-with"}


def _token_style(tok: Token, is_head: bool) -> Optional[str]:
    match tok.type:
        case "NAME":
            return "command" if is_head else None
        case "DQ_STRING" | "SQ_STRING" | "BT_STRING" | "ISTRING":
            return "string"
        case "INT" | "FLOAT":
            return "number"
        case "VARIABLE":
            return "variable"
        case "FLAG":
            return "flag"
        case "BAREWORD":
            return None
        case "_SEP":
            return None
    if tok.value in ("true", "false", "null"):
        return "constant"
    if tok.value in _KEYWORDS:
        return "keyword"
    if tok.value and not tok.value[0].isalnum() and tok.value not in _PUNCTUATION:
        return "operator"
    return None


_PUNCTUATION = {"[", "]", "(", ")", "{", "}", ",", ":", "|", "?", "..."}
