"""
A pretty-printer for nush values.

``pformat`` renders values as nush literal text (the ``nuon`` notation);
``to_text`` is what ``print`` and ``to text`` show: strings verbatim,
everything else as its literal form.
"""
import collections.abc
import datetime
import json
import math
import re

from nush.nush_datatypes import Closure, Range

_BARE_KEY = re.compile(r"^[A-Za-z_][\w\-]*$")


class Printer:
    """Formats nush values into readable, valid nush source strings."""

    def __init__(self, indent_width=2, pretty=False):
        self._indent_char = " " * indent_width
        self.pretty = pretty
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def to_text(self, obj) -> str:
        if isinstance(obj, str):
            return obj
        if obj is None:
            return ""
        return self.pformat(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        if isinstance(obj, datetime.datetime):
            return self._pformat_date
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            list: self._pformat_list,
            dict: self._pformat_dict,
            Range: self._pformat_range,
            Closure: self._pformat_closure,
            bytes: self._pformat_bytes,
            bytearray: self._pformat_bytes,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        if math.isnan(obj):
            return "NaN"
        if math.isinf(obj):
            return "inf" if obj > 0 else "-inf"
        return repr(obj)

    def _pformat_str(self, obj, level):
        return json.dumps(obj, ensure_ascii=False)

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_range(self, obj, level):
        return repr(obj)

    def _pformat_closure(self, obj, level):
        return f"<closure |{', '.join(obj.params)}|>"

    def _pformat_bytes(self, obj, level):
        return f"0x[{bytes(obj).hex()}]"

    def _pformat_date(self, obj, level):
        return obj.isoformat()

    def _pformat_key(self, key):
        key = str(key)
        return key if _BARE_KEY.match(key) else json.dumps(key, ensure_ascii=False)

    def _pformat_block(self, items, level, open_char, close_char):
        if not items:
            return f"{open_char}{close_char}"

        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)

        lines = []
        for item in items:
            item_lines = item.splitlines()
            if not item_lines:
                continue
            # Nested values already carry the indentation of their own lines.
            lines.append("\n".join([inner_indent + item_lines[0]] + item_lines[1:]))

        return f"{open_char}\n" + ",\n".join(lines) + f"\n{outer_indent}{close_char}"

    def _pformat_list(self, obj, level):
        items = [self.pformat(item, level + 1) for item in obj]
        if self.pretty and obj:
            return self._pformat_block(items, level, "[", "]")
        return f"[{', '.join(items)}]"

    def _pformat_dict(self, obj, level):
        items = [f"{self._pformat_key(k)}: {self.pformat(v, level + 1)}" for k, v in obj.items()]
        if self.pretty and obj:
            return self._pformat_block(items, level, "{", "}")
        return "{" + ", ".join(items) + "}"
