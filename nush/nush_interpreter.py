"""
The nush interpreter: the async Evaluator, operator semantics and cell paths.
"""
import collections.abc
import inspect
import logging
import re
import datetime
from typing import Any, List, Optional

import pystache

from nush.nush_datatypes import (
    Span, ShellError, Closure, Range, Stack, Node, type_name,
    ReturnSignal, BreakSignal, ContinueSignal, is_signal,
    Literal, StringInterp, BareWord, Variable, GetMember, ListExpr, RecordExpr,
    EmptyBraces, RangeExpr, BinaryOp, LogicalOp, UnaryOp, Block, ClosureExpr,
    Subexpression, IfExpr, TryExpr, Pipeline, Call, Let, Assign, Def, For, While,
    Loop, Return, Break, Continue,
)
from nush.nush_context import BuiltinCommand, UserCommand

logger = logging.getLogger(__name__)

MAX_CALL_DEPTH = 50


def _tmpl_normalize_value(v):
    """Convert nush values into plain Python types for Mustache."""
    if isinstance(v, bool):
        return "true" if v else "false"
    if v is None:
        return ""
    if isinstance(v, collections.abc.Mapping):
        return {str(k): _tmpl_normalize_value(x) for k, x in v.items()}
    if isinstance(v, (list, Range)):
        return [_tmpl_normalize_value(x) for x in v]
    return v


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def check_shape(value, shape: str) -> bool:
    match shape:
        case "any":
            return True
        case "int":
            return isinstance(value, int) and not isinstance(value, bool)
        case "float" | "number":
            return _is_number(value)
        case "string":
            return isinstance(value, str)
        case "bool":
            return isinstance(value, bool)
        case "list" | "table":
            return isinstance(value, (list, Range))
        case "record":
            return isinstance(value, dict)
        case "closure":
            return isinstance(value, Closure)
        case "range":
            return isinstance(value, Range)
        case "date":
            return isinstance(value, datetime.datetime)
        case "binary":
            return isinstance(value, (bytes, bytearray))
        case "nothing":
            return value is None
    return True


def shape_error(value, shape, what, span) -> ShellError:
    return ShellError(f"{what}: expected {shape}, found {type_name(value)}", kind="TypeMismatch", span=span)


def values_equal(a, b) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, Range):
        a = a.to_list()
    if isinstance(b, Range):
        b = b.to_list()
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    return a == b


def _mismatch(op, left, right, span) -> ShellError:
    return ShellError(
        f"operator '{op}' is not supported between {type_name(left)} and {type_name(right)}",
        kind="TypeMismatch", span=span)


def binary_op(op: str, left, right, span: Optional[Span] = None):
    """Apply a non-short-circuit binary operator."""
    match op:
        case "==":
            return values_equal(left, right)
        case "!=":
            return not values_equal(left, right)
        case "<" | "<=" | ">" | ">=":
            if not ((_is_number(left) and _is_number(right))
                    or (type(left) is type(right) and isinstance(left, (str, datetime.datetime)))):
                raise _mismatch(op, left, right, span)
            match op:
                case "<":
                    return left < right
                case "<=":
                    return left <= right
                case ">":
                    return left > right
            return left >= right
        case "=~" | "!~":
            if not (isinstance(left, str) and isinstance(right, str)):
                raise _mismatch(op, left, right, span)
            try:
                found = re.search(right, left) is not None
            except re.error as e:
                raise ShellError(f"invalid regex: {e}", kind="IncorrectValue", span=span) from e
            return found if op == "=~" else not found
        case "in" | "not-in":
            if isinstance(right, str):
                if not isinstance(left, str):
                    raise _mismatch(op, left, right, span)
                found = left in right
            elif isinstance(right, (list, Range)):
                found = any(values_equal(left, item) for item in right)
            elif isinstance(right, dict):
                found = left in right
            else:
                raise _mismatch(op, left, right, span)
            return found if op == "in" else not found
        case "starts-with" | "ends-with":
            if not (isinstance(left, str) and isinstance(right, str)):
                raise _mismatch(op, left, right, span)
            return left.startswith(right) if op == "starts-with" else left.endswith(right)
        case "+":
            if (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str)):
                return left + right
            if isinstance(left, datetime.datetime) and _is_number(right):
                return left + datetime.timedelta(seconds=right)
        case "-" | "*":
            if _is_number(left) and _is_number(right):
                return left - right if op == "-" else left * right
            if op == "*" and isinstance(left, str) and isinstance(right, int) and not isinstance(right, bool):
                return left * right
        case "/" | "//" | "mod":
            if _is_number(left) and _is_number(right):
                if right == 0:
                    raise ShellError("division by zero", kind="DivisionByZero", span=span)
                if op == "//":
                    return left // right
                if op == "mod":
                    return left % right
                if isinstance(left, int) and isinstance(right, int) and left % right == 0:
                    return left // right
                return left / right
        case "**":
            if _is_number(left) and _is_number(right):
                if isinstance(left, int) and isinstance(right, int) and right < 0:
                    return float(left) ** right
                return left ** right
        case "++":
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, (list, Range)):
                left = list(left)
                return left + (list(right) if isinstance(right, (list, Range)) else [right])
            if isinstance(right, (list, Range)):
                return [left] + list(right)
    raise _mismatch(op, left, right, span)


def follow_cell_path(value, members: List[Any], span: Optional[Span] = None, *, optional: bool = False):
    for member in members:
        if isinstance(value, Range):
            value = value.to_list()
        if isinstance(value, dict):
            key = str(member)
            if key not in value:
                if optional:
                    return None
                raise ShellError(f"column '{key}' not found", kind="ColumnNotFound", span=span)
            value = value[key]
        elif isinstance(value, list):
            if isinstance(member, int):
                if not 0 <= member < len(value):
                    if optional:
                        return None
                    raise ShellError(f"row number {member} is beyond the end (length {len(value)})",
                                     kind="AccessBeyondEnd", span=span)
                value = value[member]
            else:
                value = [follow_cell_path(row, [member], span, optional=optional) for row in value]
        elif value is None and optional:
            return None
        else:
            raise ShellError(f"cannot access '{member}' on a value of type {type_name(value)}",
                             kind="IncompatiblePathAccess", span=span)
    return value


def set_cell_path(value, members: List[Any], new, span: Optional[Span] = None):
    """Return a copy of ``value`` with the cell at ``members`` replaced."""
    if not members:
        return new
    head, rest = members[0], members[1:]
    if isinstance(value, dict):
        key = str(head)
        if rest and key not in value:
            raise ShellError(f"column '{key}' not found", kind="ColumnNotFound", span=span)
        out = dict(value)
        out[key] = set_cell_path(value.get(key), rest, new, span)
        return out
    if isinstance(value, list) and isinstance(head, int):
        if not 0 <= head < len(value):
            raise ShellError(f"row number {head} is beyond the end (length {len(value)})",
                             kind="AccessBeyondEnd", span=span)
        out = list(value)
        out[head] = set_cell_path(value[head], rest, new, span)
        return out
    raise ShellError(f"cannot update '{head}' on a value of type {type_name(value)}",
                     kind="IncompatiblePathAccess", span=span)


class CallContext:
    """What a builtin command sees of the evaluation that called it."""

    def __init__(self, engine: 'Evaluator', stack: Stack, decl, span: Optional[Span], head_span: Optional[Span] = None):
        self.engine = engine
        self.stack = stack
        self.decl = decl
        self.span = span
        self.head_span = head_span or span

    @property
    def context(self):
        return self.engine.context

    async def run_closure(self, closure: Closure, *args, input=None):
        return await self.engine.run_closure(closure, self.stack, list(args), input)

    def error(self, msg: str, kind: str = "GenericError", **extra) -> ShellError:
        return ShellError(msg, kind=kind, span=self.span, **extra)


class Evaluator:
    """The nush execution engine."""

    def __init__(self, context):
        self.context = context
        self.current_node = None
        self.call_stack = []

    def _push_frame(self, name, span):
        self.call_stack.append({"name": name, "call_site": span})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    # -- blocks and pipelines -------------------------------------------

    async def eval_block(self, block: Block, stack: Stack, input=None):
        """Run statements in order; the last value is the block's value.

        The block's input is piped into its first statement only. Signals
        stop the block and are returned as-is.
        """
        result = None
        for i, statement in enumerate(block.statements):
            if isinstance(statement, Pipeline):
                result = await self.eval_pipeline(statement, stack, input if i == 0 else None)
            else:
                result = await self._eval(statement, stack)
            if is_signal(result):
                return result
        return result

    async def eval_pipeline(self, pipeline: Pipeline, stack: Stack, input=None):
        value = input
        for i, element in enumerate(pipeline.elements):
            if i == 0:
                value = await self._eval_element(element, stack, value)
            else:
                with stack.frame({"in": value}):
                    value = await self._eval_element(element, stack, value)
            if is_signal(value):
                return value
        return value

    async def _eval_element(self, element, stack: Stack, input):
        if isinstance(element, Call):
            return await self.call(element, stack, input)
        return await self._eval(element, stack)

    async def _eval_scoped(self, block: Block, stack: Stack):
        with stack.frame():
            return await self.eval_block(block, stack)

    # -- dispatcher -------------------------------------------------------

    async def _eval(self, node: Any, stack: Stack) -> Any:
        """Recursive dispatcher for evaluating any AST node."""
        self.current_node = node
        match node:
            case Literal():
                return node.value

            case BareWord():
                return node.text

            case StringInterp():
                data = {k: _tmpl_normalize_value(v) for k, v in stack.visible().items()}
                data["env"] = _tmpl_normalize_value(stack.env)
                data["nu"] = _tmpl_normalize_value(self.context.nu_constant)
                renderer = pystache.Renderer(escape=lambda u: u)
                return renderer.render(node.template, data)

            case Variable():
                return self._lookup_variable(node, stack)

            case GetMember():
                target = await self._eval(node.target, stack)
                if is_signal(target):
                    return target
                return follow_cell_path(target, [node.member], node.span)

            case ListExpr():
                items = []
                for item in node.items:
                    value = await self._eval(item, stack)
                    if is_signal(value):
                        return value
                    items.append(value)
                return items

            case RecordExpr():
                record = {}
                for key, value_node in node.entries:
                    value = await self._eval(value_node, stack)
                    if is_signal(value):
                        return value
                    record[key] = value
                return record

            case EmptyBraces():
                return {}

            case RangeExpr():
                start = await self._eval(node.start, stack)
                if is_signal(start):
                    return start
                end = await self._eval(node.end, stack)
                if is_signal(end):
                    return end
                for bound in (start, end):
                    if not check_shape(bound, "int"):
                        raise shape_error(bound, "int", "range bound", node.span)
                return Range(start, end, node.inclusive)

            case BinaryOp():
                left = await self._eval(node.left, stack)
                if is_signal(left):
                    return left
                right = await self._eval(node.right, stack)
                if is_signal(right):
                    return right
                return binary_op(node.op, left, right, node.span)

            case LogicalOp():
                return await self._eval_logical(node, stack)

            case UnaryOp():
                operand = await self._eval(node.operand, stack)
                if is_signal(operand):
                    return operand
                if node.op == "not":
                    if not isinstance(operand, bool):
                        raise shape_error(operand, "bool", "'not' operand", node.span)
                    return not operand
                if not _is_number(operand):
                    raise shape_error(operand, "number", "negation operand", node.span)
                return -operand

            case ClosureExpr():
                return Closure(list(node.params), node.body, stack.visible(), node.span)

            case Subexpression():
                return await self._eval_scoped(node.block, stack)

            case Block():
                return await self._eval_scoped(node, stack)

            case Pipeline():
                return await self.eval_pipeline(node, stack)

            case Call():
                return await self.call(node, stack, None)

            case IfExpr():
                cond = await self._eval(node.cond, stack)
                if is_signal(cond):
                    return cond
                if not isinstance(cond, bool):
                    raise shape_error(cond, "bool", "if condition", node.cond.span)
                if cond:
                    return await self._eval_scoped(node.then, stack)
                if node.orelse is None:
                    return None
                if isinstance(node.orelse, IfExpr):
                    return await self._eval(node.orelse, stack)
                return await self._eval_scoped(node.orelse, stack)

            case TryExpr():
                return await self._eval_try(node, stack)

            case Let():
                value = await self.eval_pipeline(node.value, stack)
                if is_signal(value):
                    return value
                if node.type_name and not check_shape(value, node.type_name):
                    raise shape_error(value, node.type_name, f"variable '{node.name}'", node.span)
                stack.declare(node.name, value, node.mutable)
                return None

            case Assign():
                return await self._eval_assign(node, stack)

            case Def():
                return None

            case For():
                iterable = await self._eval(node.iterable, stack)
                if is_signal(iterable):
                    return iterable
                if isinstance(iterable, Range):
                    iterable = iterable.to_list()
                elif iterable is None:
                    iterable = []
                elif not isinstance(iterable, list):
                    raise shape_error(iterable, "list", "for loop", node.iterable.span)
                for item in iterable:
                    with stack.frame({node.var: item}):
                        result = await self.eval_block(node.body, stack)
                    if isinstance(result, BreakSignal):
                        break
                    if isinstance(result, ContinueSignal):
                        continue
                    if is_signal(result):
                        return result
                return None

            case While():
                while True:
                    cond = await self._eval(node.cond, stack)
                    if is_signal(cond):
                        return cond
                    if not isinstance(cond, bool):
                        raise shape_error(cond, "bool", "while condition", node.cond.span)
                    if not cond:
                        return None
                    result = await self._eval_scoped(node.body, stack)
                    if isinstance(result, BreakSignal):
                        return None
                    if is_signal(result) and not isinstance(result, ContinueSignal):
                        return result

            case Loop():
                while True:
                    result = await self._eval_scoped(node.body, stack)
                    if isinstance(result, BreakSignal):
                        return None
                    if is_signal(result) and not isinstance(result, ContinueSignal):
                        return result

            case Return():
                value = None
                if node.value is not None:
                    value = await self.eval_pipeline(node.value, stack)
                    if is_signal(value):
                        return value
                return ReturnSignal(value)

            case Break():
                return BreakSignal()

            case Continue():
                return ContinueSignal()

        raise ShellError(f"cannot evaluate {type(node).__name__}", kind="GenericError",
                         span=getattr(node, "span", None))

    # -- helpers ------------------------------------------------------------

    def _lookup_variable(self, node: Variable, stack: Stack):
        match node.name:
            case "env":
                value = dict(stack.env)
            case "nu":
                value = self.context.nu_constant
            case _:
                try:
                    value = stack.lookup(node.name).value
                except KeyError:
                    raise ShellError(f"variable '${node.name}' not found", kind="VariableNotFound",
                                     span=node.span) from None
        return follow_cell_path(value, node.members, node.span)

    async def _eval_logical(self, node: LogicalOp, stack: Stack):
        left = await self._eval(node.left, stack)
        if is_signal(left):
            return left
        if not isinstance(left, bool):
            raise shape_error(left, "bool", f"'{node.op}' operand", node.left.span)
        if node.op == "and" and not left:
            return False
        if node.op == "or" and left:
            return True
        right = await self._eval(node.right, stack)
        if is_signal(right):
            return right
        if not isinstance(right, bool):
            raise shape_error(right, "bool", f"'{node.op}' operand", node.right.span)
        return left != right if node.op == "xor" else right

    async def _eval_assign(self, node: Assign, stack: Stack):
        value = await self.eval_pipeline(node.value, stack)
        if is_signal(value):
            return value
        target = node.target
        if target.name == "env":
            if not target.members:
                raise ShellError("cannot replace $env as a whole", kind="IncompatiblePathAccess", span=target.span)
            key, rest = str(target.members[0]), target.members[1:]
            current = follow_cell_path(stack.env.get(key), rest, target.span, optional=True)
            new = self._assigned(node.op, current, value, node.span)
            stack.env[key] = set_cell_path(stack.env.get(key), rest, new, target.span)
            return None
        try:
            binding = stack.lookup(target.name)
        except KeyError:
            raise ShellError(f"variable '${target.name}' not found", kind="VariableNotFound",
                             span=target.span) from None
        if not binding.mutable:
            raise ShellError(f"cannot assign to immutable variable '${target.name}'",
                             kind="AssignmentRequiresMutableVar", span=target.span,
                             help="declare it with 'mut' instead of 'let'")
        current = follow_cell_path(binding.value, target.members, target.span) if node.op != "=" else None
        new = self._assigned(node.op, current, value, node.span)
        binding.value = set_cell_path(binding.value, target.members, new, target.span)
        return None

    def _assigned(self, op, current, value, span):
        if op == "=":
            return value
        return binary_op(op[:-1], current, value, span)

    async def _eval_try(self, node: TryExpr, stack: Stack):
        try:
            return await self._eval_scoped(node.body, stack)
        except Exception as exc:
            err = ShellError.wrap(exc, node.span)
            logger.debug("try caught %r", err)
        record = {"msg": err.msg, "kind": err.kind, "debug": repr(err), "raw": err.to_json()}
        if node.handler is None:
            return None
        if isinstance(node.handler, ClosureExpr):
            handler = await self._eval(node.handler, stack)
            return await self.run_closure(handler, stack, [record], record)
        with stack.frame({"in": record}):
            return await self.eval_block(node.handler, stack)

    # -- calls ------------------------------------------------------------

    async def _eval_arg(self, node, stack: Stack):
        if isinstance(node, BareWord):
            return node.text
        return await self._eval(node, stack)

    async def call(self, node: Call, stack: Stack, input=None):
        name = node.decl_name or node.head
        decl = self.context.find_decl(name)
        if decl is None:
            raise ShellError(f"command '{name}' not found", kind="CommandNotFound", span=node.head_span)
        positional = []
        for arg in node.positional:
            value = await self._eval_arg(arg, stack)
            if is_signal(value):
                return value
            positional.append(value)
        named = {}
        for key, arg in node.named.items():
            value = True if arg is True else await self._eval_arg(arg, stack)
            if is_signal(value):
                return value
            named[key] = value
        return await self.invoke(decl, stack, positional, named, input, node.span, node.head_span)

    async def invoke(self, decl, stack: Stack, positional: list, named: dict, input=None,
                     span: Optional[Span] = None, head_span: Optional[Span] = None):
        """Call a declaration with evaluated arguments."""
        match decl:
            case BuiltinCommand():
                args, kwargs = self._bind_builtin(decl, positional, named, span)
                call = CallContext(self, stack, decl, span, head_span)
                try:
                    result = decl.func(call, input, *args, **kwargs)
                    if inspect.isawaitable(result):
                        result = await result
                except ShellError as e:
                    if e.span is None:
                        e.span = span
                    raise
                except Exception as e:
                    raise ShellError.wrap(e, span) from e
                return result
            case UserCommand():
                return await self._run_user_command(decl, stack, positional, named, input, span)
        raise ShellError(f"'{decl}' is not callable", kind="GenericError", span=span)

    def _bind_builtin(self, decl, positional, named, span):
        sig = decl.signature
        if len(positional) < len(sig.required):
            missing = sig.required[len(positional)]
            raise ShellError(f"missing required positional argument '{missing.name}' for '{decl.name}'",
                             kind="MissingPositional", span=span)
        if sig.rest is None and len(positional) > len(sig.positional):
            raise ShellError(f"too many positional arguments for '{decl.name}'", kind="ExtraPositional", span=span)
        args = []
        for i, value in enumerate(positional):
            param = sig.positional[i] if i < len(sig.positional) else sig.rest
            if not check_shape(value, param.shape):
                raise shape_error(value, param.shape, f"argument '{param.name}' of '{decl.name}'", span)
            if param.shape == "list" and isinstance(value, Range):
                value = value.to_list()
            args.append(value)
        kwargs = {}
        for flag in sig.flags:
            if flag.long not in named:
                continue
            value = named[flag.long]
            if flag.is_switch:
                value = bool(value)
            elif not check_shape(value, flag.shape):
                raise shape_error(value, flag.shape, f"flag '--{flag.long}' of '{decl.name}'", span)
            kwargs[flag.long.replace("-", "_")] = value
        return args, kwargs

    async def _default(self, default, stack: Stack):
        if isinstance(default, Node):
            return await self._eval(default, stack)
        return default

    async def _run_user_command(self, decl: UserCommand, stack: Stack, positional, named, input, span):
        if stack.depth >= MAX_CALL_DEPTH:
            raise ShellError(f"recursion limit of {MAX_CALL_DEPTH} reached calling '{decl.name}'",
                             kind="RecursionLimit", span=span)
        sig = decl.signature
        bindings = {"in": input}
        for i, param in enumerate(sig.positional):
            value = positional[i] if i < len(positional) else await self._default(param.default, stack)
            if i < len(positional) and not check_shape(value, param.shape):
                raise shape_error(value, param.shape, f"argument '{param.name}' of '{decl.name}'", span)
            bindings[param.name] = value
        if sig.rest is not None:
            bindings[sig.rest.name] = positional[len(sig.positional):]
        for flag in sig.flags:
            if flag.long in named:
                value = named[flag.long]
            elif flag.is_switch:
                value = False
            else:
                value = await self._default(flag.default, stack)
            bindings[flag.long.replace("-", "_")] = value

        env = stack.env if decl.env else dict(stack.env)
        self._push_frame(decl.name, span)
        try:
            with stack.isolated(bindings, env):
                result = await self.eval_block(decl.body, stack, input)
        except ShellError as e:
            e.trace.append(decl.name)
            raise
        finally:
            self._pop_frame()
        return self._finish_callable(result, span)

    async def run_closure(self, closure: Closure, stack: Stack, args: list, input=None):
        if stack.depth >= MAX_CALL_DEPTH:
            raise ShellError(f"recursion limit of {MAX_CALL_DEPTH} reached", kind="RecursionLimit",
                             span=closure.span)
        bindings = dict(closure.captured)
        for i, name in enumerate(closure.params):
            bindings[name] = args[i] if i < len(args) else None
        bindings["in"] = input
        with stack.isolated(bindings, dict(stack.env)):
            result = await self.eval_block(closure.body, stack, input)
        return self._finish_callable(result, closure.span)

    def _finish_callable(self, result, span):
        if isinstance(result, ReturnSignal):
            return result.value
        if isinstance(result, (BreakSignal, ContinueSignal)):
            word = "break" if isinstance(result, BreakSignal) else "continue"
            raise ShellError(f"'{word}' used outside of a loop", kind="NotInLoop", span=span)
        return result
