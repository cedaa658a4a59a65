import pytest

from nush.nush_context import (
    BuiltinCommand, CapabilityConflict, CapabilityRegistry, ContextMergeError, SetupError,
    UserCommand, build_context, signature_from_callable,
)
from nush.nush_custom import Highlight
from nush.nush_datatypes import ExitRequest, ShellError, Signature, Span
from nush.nush_lang import LangCommands
from nush.nush_parser import Parser


def _noop(call, input):
    return None


def test_register_refuses_duplicates():
    registry = CapabilityRegistry()
    registry.register(BuiltinCommand("thing", Signature("thing"), _noop))
    with pytest.raises(CapabilityConflict) as exc:
        registry.register(BuiltinCommand("thing", Signature("thing"), _noop))
    assert exc.value.name == "thing"


def test_override_records_the_replaced_command():
    registry = CapabilityRegistry()
    old = BuiltinCommand("thing", Signature("thing"), _noop)
    new = BuiltinCommand("thing", Signature("thing"), _noop)
    registry.register(old)
    registry.override(new)
    assert registry.get("thing") is new
    assert registry.overrides == [("thing", old, new)]


def test_groups_register_once():
    registry = CapabilityRegistry()
    registry.register_group(LangCommands())
    with pytest.raises(CapabilityConflict):
        registry.register_group(LangCommands())


def test_group_order_and_custom_builtins():
    context = build_context()
    assert context.registry.groups == [
        "LangCommands", "PluginCommands", "BuiltinCommands", "FileCommands",
        "HttpCommands", "ExtraCommands", "CliCommands", "ExploreCommands",
    ]
    ((name, previous, replacement),) = context.registry.overrides
    assert name == "exit"
    assert previous.category == "builtin"
    assert replacement is context.find_decl("exit")
    assert context.find_decl("highlight") is not None
    assert context.find_decl("print") is not None


def test_flags_and_nu_constant():
    context = build_context()
    assert (context.is_interactive, context.is_login, context.history_enabled) == (False, False, False)
    nu = context.nu_constant
    assert nu["is-interactive"] is False
    assert nu["history-enabled"] is False
    assert {"pid", "home-path", "temp-path", "cwd", "os-info", "session-id", "startup-time"} <= set(nu)


def test_host_environment_is_imported(monkeypatch):
    monkeypatch.setenv("NUSH_CONTEXT_TEST", "yes")
    assert build_context().env_vars["NUSH_CONTEXT_TEST"] == "yes"


def test_standard_library_is_loaded():
    assert isinstance(build_context().find_decl("assert equal"), UserCommand)
    assert build_context(load_std=False).find_decl("assert equal") is None


def test_registry_conflict_during_setup_is_fatal(monkeypatch):
    def clashing(self):
        return [BuiltinCommand("echo", Signature("echo"), _noop)]
    monkeypatch.setattr(Highlight, "commands", clashing)
    with pytest.raises(SetupError):
        build_context(load_std=False)


def test_merge_rejects_a_stale_working_set():
    context = build_context(load_std=False)
    first = Parser().parse("def a [] { 1 }", context)
    second = Parser().parse("def b [] { 2 }", context)
    context.merge_delta(first.delta)
    with pytest.raises(ContextMergeError):
        context.merge_delta(second.delta)
    assert context.find_decl("b") is None


def test_merge_bumps_the_version():
    context = build_context(load_std=False)
    version = context.version
    context.merge_delta(Parser().parse("def a [] { 1 }", context).delta)
    assert context.version == version + 1
    assert isinstance(context.find_decl("a"), UserCommand)


def test_signature_from_method():
    commands = {c.name: c for c in LangCommands().commands()}
    sig = commands["do"].signature
    assert [p.name for p in sig.required] == ["closure"]
    assert sig.required[0].shape == "closure"
    assert sig.rest.name == "rest"
    (flag,) = sig.flags
    assert (flag.long, flag.short, flag.is_switch) == ("ignore-errors", "i", True)


def test_signature_from_function_with_defaults():
    def fn(call, input, n: int = 3, *, indent: int = 2, raw: bool = False):
        pass
    sig = signature_from_callable("fn", fn, {"raw": "r"})
    assert sig.required == []
    assert [(p.name, p.shape, p.default) for p in sig.optional] == [("n", "int", 3)]
    assert [(f.long, f.short, f.shape) for f in sig.flags] == [("indent", None, "int"), ("raw", "r", None)]


class _Call:
    def __init__(self, span):
        self.span = span

    def error(self, msg, kind):
        return ShellError(msg, kind=kind, span=self.span)


def test_replaced_builtin_exit_requests_instead_of_exiting():
    ((name, previous, _),) = build_context().registry.overrides
    span = Span(0, 6)
    request = previous.func(_Call(span), None, 9)
    assert isinstance(request, ExitRequest)
    assert (request.code, request.span) == (9, span)
    with pytest.raises(ShellError):
        previous.func(_Call(span), None, 300)
