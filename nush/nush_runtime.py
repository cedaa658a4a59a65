"""
The command evaluation pipeline.

``evaluate`` builds a context, executes one program, serializes the value
with the context's ``to json`` command and classifies the outcome into an
``EvalResult`` (output, exit code, error). Each stage is also exposed on its
own: ``execute``, ``serialize`` and ``classify``.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from nush.nush_context import ContextMergeError, InterpreterContext, build_context
from nush.nush_datatypes import (
    BreakSignal, ContinueSignal, ExitRequest, ReturnSignal, ShellError, Span, Stack, type_name,
)
from nush.nush_interpreter import Evaluator
from nush.nush_parser import ParseDiagnostic, Parser

logger = logging.getLogger(__name__)


class FailureKind(str, enum.Enum):
    PARSE_ERROR = "ParseError"
    CONTEXT_MERGE_ERROR = "ContextMergeError"
    RUNTIME_ERROR = "RuntimeError"
    MISSING_CAPABILITY = "MissingCapability"
    UNEXPECTED_TYPE = "UnexpectedType"
    JSON_DECODE_ERROR = "JsonDecodeError"
    SERIALIZE_ERROR = "SerializeError"


@dataclass
class Value:
    value: Any


@dataclass
class EarlyReturn:
    value: Any


@dataclass
class ExitRequested:
    code: int
    span: Optional[Span] = None


@dataclass
class Failure:
    kind: FailureKind
    detail: Any
    diagnostics: List[ParseDiagnostic] = field(default_factory=list)


@dataclass
class Serialized:
    data: Any


Outcome = Union[Value, EarlyReturn, ExitRequested, Failure]


@dataclass
class EvalResult:
    """The structured result of one evaluation."""
    output: Any = None
    exit_code: int = 0
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def to_dict(self) -> dict:
        return {"output": self.output, "exit_code": self.exit_code, "error": self.error}


def _fresh_stack(context: InterpreterContext) -> Stack:
    stack = Stack(env=context.env_vars)
    stack.declare("in", None)
    return stack


async def execute_async(context: InterpreterContext, program_text: str) -> Outcome:
    """Parse, merge and evaluate one program against ``context``."""
    result = Parser().parse(program_text, context)
    if result.diagnostics:
        first = result.diagnostics[0]
        logger.debug("parse failed with %d diagnostic(s): %s", len(result.diagnostics), first.message)
        return Failure(FailureKind.PARSE_ERROR, first.format(), list(result.diagnostics))

    try:
        context.merge_delta(result.delta)
    except ContextMergeError as e:
        logger.debug("merge failed: %s", e)
        return Failure(FailureKind.CONTEXT_MERGE_ERROR, str(e))

    evaluator = Evaluator(context)
    try:
        value = await evaluator.eval_block(result.block, _fresh_stack(context), None)
    except Exception as e:
        err = ShellError.wrap(e)
        logger.debug("evaluation failed: %r", err)
        return Failure(FailureKind.RUNTIME_ERROR, err.to_json())

    match value:
        case ReturnSignal():
            return EarlyReturn(value.value)
        case ExitRequest():
            return ExitRequested(value.code, value.span)
        case BreakSignal() | ContinueSignal():
            word = "break" if isinstance(value, BreakSignal) else "continue"
            err = ShellError(f"'{word}' used outside of a loop", kind="NotInLoop")
            return Failure(FailureKind.RUNTIME_ERROR, err.to_json())
    return Value(value)


def execute(context: InterpreterContext, program_text: str) -> Outcome:
    return asyncio.run(execute_async(context, program_text))


async def serialize_async(context: InterpreterContext, value) -> Union[Serialized, Failure]:
    """Convert ``value`` to JSON data through the context's ``to json`` command."""
    decl = context.find_decl("to json")
    if decl is None:
        return Failure(FailureKind.MISSING_CAPABILITY, "Missing capability: 'to json' is not available")
    evaluator = Evaluator(context)
    try:
        text = await evaluator.invoke(decl, _fresh_stack(context), [], {}, value)
    except Exception as e:
        err = ShellError.wrap(e)
        return Failure(FailureKind.SERIALIZE_ERROR, f"Serialization error: {err.msg}")
    if not isinstance(text, str):
        return Failure(FailureKind.UNEXPECTED_TYPE, f"Expected JSON string, got {type_name(text)}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return Failure(FailureKind.JSON_DECODE_ERROR, f"Failed to decode JSON: {e}")
    return Serialized(data)


def serialize(context: InterpreterContext, value) -> Union[Serialized, Failure]:
    return asyncio.run(serialize_async(context, value))


def classify(outcome: Outcome, serialized: Union[Serialized, Failure, None] = None) -> Tuple[Any, int, Any]:
    """Map an outcome (and, for values, its serialization) to (output, exit_code, error)."""
    match outcome:
        case Value(value=_) | EarlyReturn(value=_):
            match serialized:
                case Serialized(data=data):
                    return data, 0, None
                case Failure(detail=detail):
                    return None, 1, detail
            raise ValueError("a value outcome must be classified together with its serialization")
        case ExitRequested(code=0):
            return None, 0, None
        case ExitRequested(code=code, span=span):
            error = {
                "kind": "NonZeroExitCode",
                "msg": f"program exited with code {code}",
                "exit_code": code,
                "span": span.to_json() if span else None,
            }
            return None, code, error
        case Failure(kind=FailureKind.PARSE_ERROR, detail=detail):
            return None, 2, detail
        case Failure(kind=FailureKind.CONTEXT_MERGE_ERROR, detail=detail):
            return None, 1, f"Delta merge error: {detail}"
        case Failure(detail=detail):
            return None, 1, detail
    raise TypeError(f"not an outcome: {outcome!r}")


async def run_async(context: InterpreterContext, program_text: str) -> EvalResult:
    """Execute, serialize and classify one program against an existing context."""
    outcome = await execute_async(context, program_text)
    serialized = None
    if isinstance(outcome, (Value, EarlyReturn)):
        serialized = await serialize_async(context, outcome.value)
    output, exit_code, error = classify(outcome, serialized)
    logger.debug("program finished: %s, exit code %d", type(outcome).__name__, exit_code)
    return EvalResult(output, exit_code, error)


async def evaluate_async(program_text: str, env_vars=None, *, stdout=None, stderr=None) -> EvalResult:
    context = build_context(stdout=stdout, stderr=stderr)
    for name, value in (env_vars or {}).items():
        context.add_env_var(name, value)
    return await run_async(context, program_text)


def evaluate(program_text: str, env_vars=None, *, stdout=None, stderr=None) -> EvalResult:
    """Run ``program_text`` once in a fresh context and return its structured result.

    Raises ``SetupError`` if the context itself cannot be built.
    """
    return asyncio.run(evaluate_async(program_text, env_vars, stdout=stdout, stderr=stderr))
