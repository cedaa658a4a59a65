"""
Text formats for nush values: JSON, YAML, TOML and XML.

Used by the ``to``/``from`` commands, by ``open``/``save`` and by the HTTP
client. Writers take plain data produced by ``to_builtin``; readers return
plain data. Failures surface as ``SerializationError``.
"""
from __future__ import annotations

import collections.abc
import datetime
import json
import re
import tomllib
from typing import Any, Callable, Dict, Optional
from xml.parsers.expat import ExpatError

import toml
import xmltodict
import yaml

from nush.nush_datatypes import Closure, Range

_CHARSET = re.compile(r'charset\s*=\s*["\']?([\w\-]+)', re.IGNORECASE)
_FORMAT_BY_EXTENSION = {"json": "json", "yaml": "yaml", "yml": "yaml", "toml": "toml", "xml": "xml"}


class SerializationError(ValueError):
    """A value cannot be written in, or text cannot be read from, a format."""
    pass


def _decode(data, content_type: Optional[str]) -> str:
    if isinstance(data, str):
        return data
    match = _CHARSET.search(content_type or "")
    try:
        return bytes(data).decode(match.group(1) if match else "utf-8", errors="replace")
    except LookupError:
        return bytes(data).decode("utf-8", errors="replace")


def to_builtin(obj: Any) -> Any:
    """Convert nush values into plain JSON-compatible Python data."""
    if isinstance(obj, Range):
        return obj.to_list()
    if isinstance(obj, (list, tuple)):
        return [to_builtin(x) for x in obj]
    # xmltodict returns dict subclasses; normalize every mapping
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (bytes, bytearray)):
        return list(obj)
    if isinstance(obj, datetime.datetime):
        return obj.isoformat()
    if isinstance(obj, Closure):
        raise SerializationError("closures cannot be serialized")
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None,
                  path: Optional[str] = None) -> Optional[str]:
    """
    Pick 'json', 'yaml', 'toml' or 'xml' from a file extension, a
    Content-Type, or the first character of the data, in that order.
    """
    if path and "." in path:
        by_ext = _FORMAT_BY_EXTENSION.get(path.rsplit(".", 1)[-1].lower())
        if by_ext:
            return by_ext
    ct = (content_type or "").lower()
    for name in ("json", "yaml", "toml", "xml"):
        if name in ct:
            return name
    head = (data_hint or "").lstrip()[:1]
    if head in ("{", "["):
        return "json"
    if head == "<":
        return "xml"
    return None


def _write_json(data, pretty: bool, indent: int) -> str:
    try:
        return json.dumps(data, ensure_ascii=False, indent=indent if pretty else None, allow_nan=False)
    except ValueError as e:
        raise SerializationError(str(e)) from e


def _write_yaml(data, pretty: bool, indent: int) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, indent=indent)


def _write_toml(data, pretty: bool, indent: int) -> str:
    if not isinstance(data, dict):
        raise SerializationError("only records can be written as TOML")
    return toml.dumps(data)


def _write_xml(data, pretty: bool, indent: int, root: str = "root") -> str:
    if isinstance(data, dict) and len(data) == 1 and not isinstance(next(iter(data.values())), list):
        document = data
    elif isinstance(data, list):
        # a document has exactly one root element
        document = {root: {"item": data}}
    else:
        document = {root: data}
    try:
        return xmltodict.unparse(document, pretty=pretty, indent=" " * indent)
    except ValueError as e:
        raise SerializationError(str(e)) from e


_WRITERS: Dict[str, Callable[..., str]] = {
    "json": _write_json,
    "yaml": _write_yaml,
    "toml": _write_toml,
    "xml": _write_xml,
}

_READERS: Dict[str, Callable[[str], Any]] = {
    "json": json.loads,
    "yaml": yaml.safe_load,
    "toml": tomllib.loads,
    "xml": lambda text: to_builtin(xmltodict.parse(text)),
}


def deserialize(data, *, content_type: Optional[str] = None, fmt: Optional[str] = None,
                strict: bool = False) -> Any:
    """
    Read bytes or text into nush data.

    The format is ``fmt`` when given, otherwise guessed by ``detect_format``;
    text in no known format is returned as is. A malformed document raises
    ``SerializationError`` with ``strict`` and falls back to the text without.
    """
    text = _decode(data, content_type)
    name = fmt or detect_format(content_type, text)
    reader = _READERS.get(name)
    if reader is None:
        return text
    try:
        return reader(text)
    except (ValueError, yaml.YAMLError, ExpatError) as e:
        if strict:
            raise SerializationError(f"invalid {name}: {e}") from e
        return text


def serialize(value: Any, *, fmt: str, pretty: bool = True, indent: int = 2) -> str:
    """Write ``value`` as 'json', 'yaml', 'toml' or 'xml' text."""
    writer = _WRITERS.get((fmt or "").lower())
    if writer is None:
        raise SerializationError(f"Unsupported serialization format: {fmt!r}")
    return writer(to_builtin(value), pretty, indent)


__all__ = [
    "SerializationError",
    "deserialize",
    "serialize",
    "detect_format",
    "to_builtin",
]
