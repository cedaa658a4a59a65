from __future__ import annotations

import os
from typing import Any, Optional

from nush.nush_context import CommandSet, shell_command
from nush.nush_datatypes import type_name
from nush.nush_serialize import SerializationError, deserialize, serialize

_FORMATS = {".json": "json", ".yaml": "yaml", ".yml": "yaml", ".toml": "toml", ".xml": "xml"}


def resolve_path(path: str, cwd: Optional[str]) -> str:
    """Resolve ``path`` against the shell's working directory (``$env.PWD``)."""
    if path.startswith("~"):
        return os.path.expanduser(path)
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(cwd or os.getcwd(), path))


def read_file(path: str, *, raw: bool = False) -> Any:
    if os.path.isdir(path):
        raise IsADirectoryError(path)
    fmt = _FORMATS.get(os.path.splitext(path)[1].lower())
    with open(path, "rb") as f:
        data = f.read()
    if raw or fmt is None:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            # Not text: hand back the bytes.
            return data
    return deserialize(data, fmt=fmt, strict=True)


def write_file(path: str, value: Any, *, raw: bool = False, append: bool = False):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    if isinstance(value, (bytes, bytearray)):
        with open(path, "ab" if append else "wb") as f:
            f.write(value)
        return
    fmt = _FORMATS.get(os.path.splitext(path)[1].lower())
    if isinstance(value, str) or raw or fmt is None:
        from nush.nush_printer import Printer  # lazy import to avoid cycles
        text = Printer().to_text(value)
    else:
        text = serialize(value, fmt=fmt, pretty=True)
    with open(path, "a" if append else "w", encoding="utf-8") as f:
        f.write(text)


class FileCommands(CommandSet):
    """Filesystem commands; relative paths resolve against ``$env.PWD``."""
    category = "filesystem"

    def _path(self, call, path):
        return resolve_path(path, call.stack.env.get("PWD"))

    @shell_command("open", "Read a file, parsing it by its extension unless --raw.", short={"raw": "r"})
    def _open(self, call, input, path: str, *, raw: bool = False):
        full = self._path(call, path)
        try:
            return read_file(full, raw=raw)
        except FileNotFoundError:
            raise call.error(f"open: file not found: {path}", kind="FileNotFound") from None
        except IsADirectoryError:
            raise call.error(f"open: '{path}' is a directory", kind="IOError") from None
        except SerializationError as e:
            raise call.error(f"open: {e}", kind="CantConvert") from e

    @shell_command("save", "Write the pipeline input to a file.",
                   short={"force": "f", "append": "a", "raw": "r"})
    def _save(self, call, input, path: str, *, force: bool = False, append: bool = False, raw: bool = False):
        full = self._path(call, path)
        if os.path.exists(full) and not (force or append):
            raise call.error(f"save: '{path}' already exists", kind="IOError",
                             help="use --force to overwrite or --append to add to it")
        try:
            write_file(full, input, raw=raw, append=append)
        except SerializationError as e:
            raise call.error(f"save: cannot write {type_name(input)} to '{path}': {e}",
                             kind="UnsupportedInput") from e
        return None

    @shell_command("rm", "Remove files.", short={"force": "f"})
    def _rm(self, call, input, *paths, force: bool = False):
        for path in paths:
            full = self._path(call, str(path))
            if os.path.isdir(full):
                raise call.error(f"rm: '{path}' is a directory", kind="IOError")
            if not os.path.exists(full):
                if force:
                    continue
                raise call.error(f"rm: file not found: {path}", kind="FileNotFound")
            os.remove(full)
        return None
