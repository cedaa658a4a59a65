"""
The three commands every context adds on top of the capability groups:
``exit`` (replacing the builtin one), ``highlight`` and ``print``.
"""
from nush.nush_context import CommandSet, shell_command
from nush.nush_datatypes import ExitRequest, type_name
from nush.nush_printer import Printer

_ANSI = {
    "command": "\x1b[1;36m",
    "keyword": "\x1b[1;35m",
    "string": "\x1b[32m",
    "number": "\x1b[33m",
    "constant": "\x1b[33m",
    "variable": "\x1b[34m",
    "flag": "\x1b[36m",
    "operator": "\x1b[1m",
}
_RESET = "\x1b[0m"


class CustomExit(CommandSet):
    category = "core"

    @shell_command("exit", "Stop the program and request a process exit status.")
    def _exit(self, call, input, code: int = 0):
        if not 0 <= code <= 255:
            raise call.error(f"exit: code {code} is outside the range 0..255", kind="IncorrectValue")
        return ExitRequest(code, call.span)


def highlight(source: str) -> str:
    from nush.nush_parser import Parser  # lazy import to avoid cycles

    spans = Parser().highlight_spans(source)
    if not spans:
        return source
    out, pos = [], 0
    for start, end, style in spans:
        out.append(source[pos:start])
        out.append(f"{_ANSI[style]}{source[start:end]}{_RESET}")
        pos = end
    out.append(source[pos:])
    return "".join(out)


class Highlight(CommandSet):
    category = "strings"

    @shell_command("highlight", "Syntax-highlight nush source with ANSI colors.")
    def _highlight(self, call, input):
        if not isinstance(input, str):
            raise call.error(f"highlight: expected a string, found {type_name(input)}", kind="TypeMismatch")
        return highlight(input)


class Print(CommandSet):
    category = "strings"

    @shell_command("print", "Print the arguments to the output stream.",
                   short={"no_newline": "n", "stderr": "e"})
    def _print(self, call, input, *rest, no_newline: bool = False, stderr: bool = False):
        printer = Printer(pretty=True)
        values = rest if rest else ((input,) if input is not None else ())
        stream = call.context.err if stderr else call.context.out
        for value in values:
            stream.write(printer.to_text(value))
            if not no_newline:
                stream.write("\n")
        stream.flush()
        return None
