import datetime

import pytest

from nush.nush_custom import highlight
from nush.nush_datatypes import Range
from nush.nush_printer import Printer
from nush.nush_serialize import SerializationError, deserialize, detect_format, serialize, to_builtin


def test_compact_literal_form():
    p = Printer()
    assert p.pformat({"a": 1, "b c": [True, None]}) == '{a: 1, "b c": [true, null]}'
    assert p.pformat([]) == "[]"
    assert p.pformat({}) == "{}"
    assert p.pformat("say \"hi\"") == '"say \\"hi\\""'


def test_pretty_form_nests_indentation():
    assert Printer(pretty=True).pformat({"a": [1, 2]}) == "{\n  a: [\n    1,\n    2\n  ]\n}"
    assert Printer(indent_width=4, pretty=True).pformat([1]) == "[\n    1\n]"


def test_special_values():
    p = Printer()
    assert p.pformat(float("nan")) == "NaN"
    assert p.pformat(float("-inf")) == "-inf"
    assert p.pformat(Range(1, 5, inclusive=False)) == "1..<5"
    assert p.pformat(b"\n\xff") == "0x[0aff]"
    assert p.pformat(datetime.datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"


def test_to_text():
    p = Printer()
    assert p.to_text("plain") == "plain"
    assert p.to_text(None) == ""
    assert p.to_text(3) == "3"


def test_to_builtin_normalizes_values():
    value = {"r": Range(1, 3), "b": b"\x01", "d": datetime.datetime(2024, 1, 1)}
    assert to_builtin(value) == {"r": [1, 2, 3], "b": [1], "d": "2024-01-01T00:00:00"}


def test_json_refuses_non_finite_floats():
    with pytest.raises(SerializationError):
        serialize(float("nan"), fmt="json")


def test_toml_needs_a_record():
    with pytest.raises(SerializationError):
        serialize([1], fmt="toml")


def test_unknown_format():
    with pytest.raises(SerializationError):
        serialize(1, fmt="ini")


def test_xml_wraps_non_record_values():
    text = serialize([1, 2], fmt="xml", pretty=False)
    assert deserialize(text, fmt="xml") == {"root": {"item": ["1", "2"]}}
    assert deserialize(serialize({"a": 1, "b": 2}, fmt="xml"), fmt="xml") == {"root": {"a": "1", "b": "2"}}


def test_lenient_and_strict_deserialize():
    assert deserialize("{bad", fmt="json") == "{bad"
    with pytest.raises(SerializationError):
        deserialize("{bad", fmt="json", strict=True)
    assert deserialize(b'{"a": 1}', content_type="application/json; charset=utf-8") == {"a": 1}
    assert deserialize("just text") == "just text"


@pytest.mark.parametrize("kwargs, expected", [
    ({"path": "config.yml"}, "yaml"),
    ({"path": "Cargo.toml"}, "toml"),
    ({"content_type": "application/json"}, "json"),
    ({"content_type": "text/xml"}, "xml"),
    ({"data_hint": "  [1, 2]"}, "json"),
    ({"data_hint": "<a/>"}, "xml"),
    ({"data_hint": "hello"}, None),
])
def test_detect_format(kwargs, expected):
    assert detect_format(**kwargs) == expected


def test_highlight_function():
    out = highlight("echo $x")
    assert out == "\x1b[1;36mecho\x1b[0m \x1b[34m$x\x1b[0m"
    assert highlight("(") == "("
