"""
Extended commands, plus the CLI-only and exploration commands that only make
sense in an interactive session.
"""
import re

from nush.nush_context import CommandSet, shell_command
from nush.nush_datatypes import Closure, is_exit, type_name
from nush.nush_interpreter import _is_number

_WORD = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|\d+")


def split_words(text: str) -> list:
    return _WORD.findall(text)


def camel_case(text: str) -> str:
    words = split_words(text)
    if not words:
        return ""
    return words[0].lower() + "".join(w.capitalize() for w in words[1:])


def pascal_case(text: str) -> str:
    return "".join(w.capitalize() for w in split_words(text))


def snake_case(text: str) -> str:
    return "_".join(w.lower() for w in split_words(text))


def kebab_case(text: str) -> str:
    return "-".join(w.lower() for w in split_words(text))


def title_case(text: str) -> str:
    return " ".join(w.capitalize() for w in split_words(text))


class ExtraCommands(CommandSet):
    category = "extra"

    def _convert(self, call, input, fn):
        if isinstance(input, str):
            return fn(input)
        if isinstance(input, list) and all(isinstance(x, str) for x in input):
            return [fn(x) for x in input]
        raise call.error(f"{call.decl.name}: expected a string, found {type_name(input)}", kind="TypeMismatch")

    @shell_command("str camel-case", "Convert to camelCase.")
    def _camel(self, call, input):
        return self._convert(call, input, camel_case)

    @shell_command("str pascal-case", "Convert to PascalCase.")
    def _pascal(self, call, input):
        return self._convert(call, input, pascal_case)

    @shell_command("str snake-case", "Convert to snake_case.")
    def _snake(self, call, input):
        return self._convert(call, input, snake_case)

    @shell_command("str kebab-case", "Convert to kebab-case.")
    def _kebab(self, call, input):
        return self._convert(call, input, kebab_case)

    @shell_command("str title-case", "Convert to Title Case.")
    def _title(self, call, input):
        return self._convert(call, input, title_case)

    @shell_command("fmt", "Format a number in several notations.")
    def _fmt(self, call, input):
        if not _is_number(input):
            raise call.error(f"fmt: expected a number, found {type_name(input)}", kind="TypeMismatch")
        out = {}
        if isinstance(input, int):
            out.update({
                "binary": f"{input:#b}",
                "hexadecimal": f"{input:#x}",
                "octal": f"{input:#o}",
            })
        out.update({
            "lowerexp": f"{input:e}",
            "upperexp": f"{input:E}",
            "display": str(input),
            "debug": repr(input),
        })
        return out

    @shell_command("update cells", "Run a closure on every cell of a table.", short={"columns": "c"})
    async def _update_cells(self, call, input, closure: Closure, *, columns: list = None):
        rows = input if isinstance(input, list) else [input]
        out = []
        for row in rows:
            if not isinstance(row, dict):
                raise call.error(f"update cells: expected a table, found a row of type {type_name(row)}",
                                 kind="TypeMismatch")
            new = {}
            for key, value in row.items():
                if columns is not None and key not in columns:
                    new[key] = value
                    continue
                result = await call.run_closure(closure, value, input=value)
                if is_exit(result):
                    return result
                new[key] = result
            out.append(new)
        return out if isinstance(input, list) else out[0]


class CliCommands(CommandSet):
    """Commands that need the interactive line editor."""
    category = "cli"

    @shell_command("commandline", "Show the contents of the interactive command line.")
    def _commandline(self, call, input):
        if not call.context.is_interactive:
            raise call.error("commandline: not running in an interactive session", kind="NotInteractive")
        return ""

    @shell_command("history", "Show the command history.")
    def _history(self, call, input):
        if not call.context.history_enabled:
            raise call.error("history: history is disabled", kind="HistoryDisabled")
        return []


class ExploreCommands(CommandSet):
    category = "explore"

    @shell_command("explore", "Browse a value in an interactive viewer.")
    def _explore(self, call, input):
        raise call.error("explore: requires an interactive terminal", kind="NotInteractive")
