"""
Core language commands and plugin-declaration support.
"""
import platform

from nush.nush_context import CommandSet, shell_command
from nush.nush_datatypes import Closure, ShellError, type_name


class LangCommands(CommandSet):
    category = "core"

    @shell_command("echo", "Return the arguments as a value (a list when more than one).")
    def _echo(self, call, input, *rest):
        if not rest:
            return None
        return rest[0] if len(rest) == 1 else list(rest)

    @shell_command("do", "Run a closure with the given arguments.", short={"ignore_errors": "i"})
    async def _do(self, call, input, closure: Closure, *rest, ignore_errors: bool = False):
        try:
            return await call.run_closure(closure, *rest, input=input)
        except ShellError:
            if ignore_errors:
                return None
            raise

    @shell_command("ignore", "Discard the pipeline input.")
    def _ignore(self, call, input):
        return None

    @shell_command("describe", "Describe the type of the pipeline input.")
    def _describe(self, call, input):
        return type_name(input)

    @shell_command("error make", "Raise an error built from a record with 'msg' and optional 'help'.")
    def _error_make(self, call, input, error: dict):
        if "msg" not in error:
            raise call.error("error make: the record needs a 'msg' field", kind="IncorrectValue")
        raise ShellError(str(error["msg"]), kind=str(error.get("kind", "UserError")),
                         span=call.span, help=error.get("help"))

    @shell_command("version", "Show version information.")
    def _version(self, call, input):
        from nush import __version__
        return {"name": "nush", "version": __version__, "python": platform.python_version()}

    @shell_command("which", "Describe the command a name resolves to.")
    def _which(self, call, input, name: str):
        decl = call.context.find_decl(name)
        if decl is None:
            return []
        return [{"command": decl.name, "type": decl.kind, "description": decl.description}]

    @shell_command("scope commands", "List every command visible in this context.")
    def _scope_commands(self, call, input):
        out = []
        for decl in sorted(call.context.registry, key=lambda d: d.name):
            out.append({
                "name": decl.name,
                "type": decl.kind,
                "category": decl.category,
                "signature": decl.signature.usage(),
                "description": decl.description,
            })
        return out

    @shell_command("scope variables", "List the variables visible at the call site.")
    def _scope_variables(self, call, input):
        return [{"name": f"${name}", "type": type_name(value), "value": value}
                for name, value in sorted(call.stack.visible().items())]


class PluginCommands(CommandSet):
    """Plugin declarations are understood but no plugin can be loaded."""
    category = "plugin"

    @shell_command("plugin list", "List loaded plugins.")
    def _plugin_list(self, call, input):
        return []

    @shell_command("plugin add", "Register a plugin executable.")
    def _plugin_add(self, call, input, path: str):
        raise call.error(f"cannot add plugin '{path}': plugins are not supported", kind="PluginsUnsupported")

    @shell_command("plugin use", "Load a registered plugin.")
    def _plugin_use(self, call, input, name: str):
        raise call.error(f"cannot use plugin '{name}': plugins are not supported", kind="PluginsUnsupported")
