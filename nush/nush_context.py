"""
Interpreter context construction: command declarations, the capability
registry and the per-invocation ``InterpreterContext``.
"""

import inspect
import logging
import os
import sys
import tempfile
import time
import uuid
import platform
from importlib import resources
from typing import Any, Dict, List, Optional

from nush.nush_datatypes import Closure, FlagParameter, Parameter, Signature, Block, Span

logger = logging.getLogger(__name__)


class SetupError(Exception):
    """Building an interpreter context failed; no program can run."""
    pass


class CapabilityConflict(Exception):
    def __init__(self, name: str):
        super().__init__(f"command '{name}' is already registered")
        self.name = name


class ContextMergeError(Exception):
    pass


# =================================================================
# Command declarations
# =================================================================

def shell_command(name: str, description: str = "", *, short: Optional[Dict[str, str]] = None):
    """Mark a ``CommandSet`` method as a nush command.

    The command signature is derived from the method signature: after
    ``(call, input)`` come positional parameters, ``*rest`` and keyword-only
    flags (``bool`` flags are switches). ``short`` maps parameter names to
    single-letter flag aliases.
    """
    def decorator(func):
        func._nush_command = {"name": name, "description": description, "short": dict(short or {})}
        return func
    return decorator


_SHAPES = {int: "int", float: "number", str: "string", bool: "bool", list: "list",
           dict: "record", Closure: "closure"}


def _shape(annotation) -> str:
    return _SHAPES.get(annotation, "any")


def signature_from_callable(name: str, func, short: Dict[str, str]) -> Signature:
    sig = Signature(name)
    params = list(inspect.signature(func).parameters.values())[2:]
    for p in params:
        shape = _shape(p.annotation)
        has_default = p.default is not inspect.Parameter.empty
        match p.kind:
            case inspect.Parameter.VAR_POSITIONAL:
                sig.rest = Parameter(p.name, shape)
            case inspect.Parameter.KEYWORD_ONLY:
                long = p.name.replace("_", "-")
                flag_shape = None if p.annotation is bool else shape
                sig.flags.append(FlagParameter(long, short.get(p.name), flag_shape,
                                               p.default if has_default else None))
            case _ if has_default:
                sig.optional.append(Parameter(p.name, shape, optional=True, default=p.default))
            case _:
                sig.required.append(Parameter(p.name, shape))
    return sig


class Command:
    kind = "command"

    def __init__(self, name: str, signature: Signature, description: str = ""):
        self.name = name
        self.signature = signature
        self.description = description

    def __repr__(self):
        return f"<{type(self).__name__} {self.name!r}>"


class BuiltinCommand(Command):
    kind = "built-in"

    def __init__(self, name, signature, func, description="", category="default"):
        super().__init__(name, signature, description)
        self.func = func
        self.category = category


class UserCommand(Command):
    kind = "custom"

    def __init__(self, name: str, signature: Signature, body: Block, *, env: bool = False,
                 span: Optional[Span] = None, description: str = ""):
        super().__init__(name, signature, description)
        self.body = body
        self.env = env
        self.span = span
        self.category = "user"


class CommandSet:
    """A group of builtin commands implemented as decorated methods."""
    category = "default"

    def commands(self) -> List[BuiltinCommand]:
        out = []
        for _, method in inspect.getmembers(self, predicate=inspect.ismethod):
            info = getattr(method, "_nush_command", None)
            if info is None:
                continue
            signature = signature_from_callable(info["name"], method, info["short"])
            out.append(BuiltinCommand(info["name"], signature, method, info["description"], self.category))
        return out


# =================================================================
# Registry
# =================================================================

class CapabilityRegistry:
    """Name -> Command mapping with explicit register/override semantics."""

    def __init__(self):
        self._commands: Dict[str, Command] = {}
        self.groups: List[str] = []
        self.overrides: List[tuple] = []

    def register(self, command: Command):
        if command.name in self._commands:
            raise CapabilityConflict(command.name)
        self._commands[command.name] = command

    def override(self, command: Command):
        """Replace an existing entry on purpose; the replaced command is recorded."""
        previous = self._commands.get(command.name)
        self.overrides.append((command.name, previous, command))
        self._commands[command.name] = command

    def register_group(self, command_set: CommandSet):
        group = type(command_set).__name__
        if group in self.groups:
            raise CapabilityConflict(group)
        for command in command_set.commands():
            self.register(command)
        self.groups.append(group)

    def declare(self, command: Command):
        """User and library definitions shadow whatever is registered."""
        if command.name in self._commands:
            self.override(command)
        else:
            self.register(command)

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def remove(self, name: str) -> Optional[Command]:
        return self._commands.pop(name, None)

    def names(self) -> List[str]:
        return sorted(self._commands)

    def __contains__(self, name):
        return name in self._commands

    def __iter__(self):
        return iter(self._commands.values())

    def __len__(self):
        return len(self._commands)


# =================================================================
# Context
# =================================================================

class InterpreterContext:
    """Everything one invocation evaluates against.

    Created once per invocation by ``build_context`` and mutated only by
    context building and by merging parsed working sets.
    """

    def __init__(self, *, stdout=None, stderr=None):
        self.registry = CapabilityRegistry()
        self.env_vars: Dict[str, str] = {}
        self.is_interactive = False
        self.is_login = False
        self.history_enabled = False
        self.nu_constant: Dict[str, Any] = {}
        self.version = 0
        self.stdout = stdout
        self.stderr = stderr

    @property
    def out(self):
        return self.stdout or sys.stdout

    @property
    def err(self):
        return self.stderr or sys.stderr

    def find_decl(self, name: str) -> Optional[Command]:
        return self.registry.get(name)

    def add_env_var(self, name: str, value):
        self.env_vars[name] = value

    def merge_delta(self, delta):
        """Apply the declarations of a parsed working set."""
        if delta.base_version != self.version:
            raise ContextMergeError(
                f"working set was built against context version {delta.base_version}, "
                f"context is at version {self.version}")
        seen = set()
        for decl in delta.decls:
            if decl.name in seen:
                raise ContextMergeError(f"command '{decl.name}' is defined more than once")
            seen.add(decl.name)
        for decl in delta.decls:
            self.registry.declare(decl)
        self.version += 1
        logger.debug("merged %d declaration(s), context version %d", len(delta.decls), self.version)

    def generate_nu_constant(self):
        self.nu_constant = {
            "pid": os.getpid(),
            "home-path": os.path.expanduser("~"),
            "temp-path": tempfile.gettempdir(),
            "cwd": self.env_vars.get("PWD") or os.getcwd(),
            "is-interactive": self.is_interactive,
            "is-login": self.is_login,
            "history-enabled": self.history_enabled,
            "os-info": {
                "name": sys.platform,
                "arch": platform.machine(),
                "kernel-version": platform.release(),
            },
            "session-id": str(uuid.uuid4()),
            "startup-time": time.time(),
        }


def _load_std(context: InterpreterContext):
    from nush.nush_parser import Parser

    source = resources.files("nush").joinpath("std/std.nush").read_text(encoding="utf-8")
    result = Parser().parse(source, context)
    if result.diagnostics:
        raise SetupError(f"standard library failed to parse: {result.diagnostics[0].format()}")
    try:
        context.merge_delta(result.delta)
    except ContextMergeError as e:
        raise SetupError(f"standard library failed to merge: {e}") from e


def build_context(*, load_std: bool = True, stdout=None, stderr=None) -> InterpreterContext:
    """Create a fully initialized, independent interpreter context."""
    from nush.nush_lang import LangCommands, PluginCommands
    from nush.nush_commands import BuiltinCommands
    from nush.nush_file import FileCommands
    from nush.nush_http import HttpCommands
    from nush.nush_extra import ExtraCommands, CliCommands, ExploreCommands
    from nush.nush_custom import CustomExit, Highlight, Print

    context = InterpreterContext(stdout=stdout, stderr=stderr)
    registry = context.registry
    try:
        registry.register_group(LangCommands())
        registry.register_group(PluginCommands())
        registry.register_group(BuiltinCommands())
        registry.register_group(FileCommands())
        registry.register_group(HttpCommands())
        registry.register_group(ExtraCommands())
        registry.register_group(CliCommands())
        registry.register_group(ExploreCommands())

        (exit_cmd,) = CustomExit().commands()
        registry.override(exit_cmd)
        for command_set in (Highlight(), Print()):
            for command in command_set.commands():
                registry.register(command)
    except CapabilityConflict as e:
        raise SetupError(str(e)) from e

    for name, value in os.environ.items():
        context.add_env_var(name, value)

    if load_std:
        _load_std(context)

    context.is_interactive = False
    context.is_login = False
    context.history_enabled = False
    context.generate_nu_constant()
    logger.debug("context built with %d commands", len(registry))
    return context
