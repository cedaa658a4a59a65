import io

import pytest

from nush import evaluate_async

_UNSET = object()


async def run_nush(src: str, env=None, **streams):
    return await evaluate_async(src, env, **streams)


def assert_ok(res, expected=_UNSET):
    assert res.exit_code == 0 and res.error is None, res.error
    if expected is not _UNSET:
        assert res.output == expected


def assert_error(res, kind: str | None = None):
    assert res.exit_code == 1, f"expected a runtime error, got {res.to_dict()!r}"
    if kind is not None:
        assert res.error["kind"] == kind, res.error


# -- filters ----------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("[3 1 2] | sort", [1, 2, 3]),
    ("[3 1 2] | sort --reverse", [3, 2, 1]),
    ('[{n: "b", a: 2} {n: "a", a: 1}] | sort-by a | get n', ["a", "b"]),
    ("[1 2 3 4] | where {|x| $x > 2}", [3, 4]),
    ("[1 2 3 4] | filter {|x| $x mod 2 == 0}", [2, 4]),
    ("[1 2 3] | reduce {|it, acc| $acc + $it}", 6),
    ("[1 2 3] | reduce --fold 10 {|it, acc| $acc + $it}", 16),
    ("[1 2 2 3 1] | uniq", [1, 2, 3]),
    ("[[1 2] [3] 4] | flatten", [1, 2, 3, 4]),
    ("[1 2] | append 3", [1, 2, 3]),
    ("[1 2] | append [3 4]", [1, 2, 3, 4]),
    ("[1 2] | prepend 0", [0, 1, 2]),
    ("{a: 1, b: 2} | select a", {"a": 1}),
    ("[{a: 1, b: 2}] | select b", [{"b": 2}]),
    ("{a: 1, b: 2} | reject a", {"b": 2}),
    ("[10 20 30] | first", 10),
    ("[10 20 30] | first 2", [10, 20]),
    ("[10 20 30] | last", 30),
    ("[10 20 30] | last 2", [20, 30]),
    ("[10 20 30] | skip 1", [20, 30]),
    ("[10 20 30] | take 2", [10, 20]),
    ('"hello" | take 2', "he"),
    ("[10 20 30] | length", 3),
    ("1..4 | length", 4),
    ("[1 2 3] | reverse", [3, 2, 1]),
    ("[a b] | enumerate", [{"index": 0, "item": "a"}, {"index": 1, "item": "b"}]),
    ("{a: 1, b: 2} | columns", ["a", "b"]),
    ("[{a: 1} {b: 2}] | columns", ["a", "b"]),
    ("{a: 1, b: 2} | values", [1, 2]),
    ("[] | is-empty", True),
    ('"" | is-not-empty', False),
    ("[1 2 3] | any {|x| $x > 2}", True),
    ("[1 2 3] | all {|x| $x > 2}", False),
    ("{a: 1} | insert b 2", {"a": 1, "b": 2}),
    ("{a: 1} | update a {|r| $r.a + 1}", {"a": 2}),
    ("[{a: 1} {a: 5}] | update a 0", [{"a": 0}, {"a": 0}]),
    ("{a: 1} | upsert c 3", {"a": 1, "c": 3}),
    ("{a: 1} | merge {b: 2}", {"a": 1, "b": 2}),
    ("[{a: 1} {a: 2}] | merge {b: 0}", [{"a": 1, "b": 0}, {"a": 2, "b": 0}]),
    ("5 | wrap n", {"n": 5}),
    ("[1 2] | zip [3 4]", [[1, 3], [2, 4]]),
    ('[{g: "x", v: 1} {g: "y", v: 2} {g: "x", v: 3}] | group-by g | get x | get v', [1, 3]),
    ("[1 null 2] | compact", [1, 2]),
    ("null | default 5", 5),
    ("3 | default 5", 3),
    ("[{a: null} {a: 1}] | default 0 a", [{"a": 0}, {"a": 1}]),
    ("seq 1 5", [1, 2, 3, 4, 5]),
    ("seq 5 1 -1", [5, 4, 3, 2, 1]),
    ("{a: {b: [7 8]}} | get a.b.1", 8),
    ("{a: 1} | get -i missing", None),
])
async def test_filters(src, expected):
    assert_ok(await run_nush(src), expected)


@pytest.mark.asyncio
async def test_filter_errors():
    assert_error(await run_nush("[] | first"), "AccessBeyondEnd")
    assert_error(await run_nush("{a: 1} | insert a 5"), "ColumnAlreadyExists")
    assert_error(await run_nush("{a: 1} | update b 5"), "ColumnNotFound")
    assert_error(await run_nush("[1 2] | where {|x| $x}"), "TypeMismatch")
    assert_error(await run_nush("[] | reduce {|it, acc| $acc}"), "IncorrectValue")
    assert_error(await run_nush("5 | length"), "TypeMismatch")


@pytest.mark.asyncio
@pytest.mark.parametrize("src, code", [
    ("{a: 1} | update a {|x| exit 3}", 3),
    ("{} | insert a 1 | update a {|x| exit 3}", 3),
    ("{} | insert b {|r| exit 3}", 3),
    ("{a: 1} | upsert c {|r| exit 5}", 5),
    ("[{a: 1}] | update a {|x| exit 4}", 4),
])
async def test_exit_inside_column_closures(src, code):
    res = await run_nush(src)
    assert res.exit_code == code
    assert res.output is None
    assert res.error["kind"] == "NonZeroExitCode"


# -- math ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("[1 2 3] | math sum", 6),
    ("[] | math sum", 0),
    ("[1 2 3] | math avg", 2),
    ("[2 3 4] | math product", 24),
    ("[4 1 9] | math min", 1),
    ("[4 1 9] | math max", 9),
    ("-4 | math abs", 4),
    ("3.7 | math round", 4),
    ("3.14159 | math round --precision 2", 3.14),
    ("3.2 | math ceil", 4),
    ("3.8 | math floor", 3),
    ("16 | math sqrt", 4.0),
    ("[-1 2] | math abs", [1, 2]),
])
async def test_math(src, expected):
    assert_ok(await run_nush(src), expected)


@pytest.mark.asyncio
async def test_math_errors():
    assert_error(await run_nush("[] | math avg"), "IncorrectValue")
    assert_error(await run_nush('[1 "a"] | math sum'), "TypeMismatch")
    assert_error(await run_nush("-1 | math sqrt"), "IncorrectValue")


# -- strings ------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ('"Hello" | str upcase', "HELLO"),
    ('"Hello" | str downcase', "hello"),
    ('"  hi  " | str trim', "hi"),
    ('"xxhixx" | str trim --char x', "hi"),
    ('"hello" | str length', 5),
    ('"abc" | str reverse', "cba"),
    ('"hello" | str contains ell', True),
    ('"HELLO" | str contains -i ell', True),
    ('"a-b-c" | str replace "-" "+"', "a+b-c"),
    ('"a-b-c" | str replace --all "-" "+"', "a+b+c"),
    ('"a1b22" | str replace -a -r "[0-9]+" "#"', "a#b#"),
    ('"hello" | str starts-with he', True),
    ('"hello" | str ends-with lo', True),
    ('["a" "b"] | str join ","', "a,b"),
    ("[1 2] | str join", "12"),
    ('"a-b-c" | split row "-"', ["a", "b", "c"]),
    ('"abc" | split chars', ["a", "b", "c"]),
    ('"one\ntwo" | lines', ["one", "two"]),
    ('["a" "b"] | str upcase', ["A", "B"]),
    ('"hello world" | str camel-case', "helloWorld"),
    ('"hello world" | str pascal-case', "HelloWorld"),
    ('"helloWorld" | str snake-case', "hello_world"),
    ('"HelloWorld" | str kebab-case', "hello-world"),
    ('"hello_world" | str title-case', "Hello World"),
])
async def test_strings(src, expected):
    assert_ok(await run_nush(src), expected)


# -- conversions ----------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ('"42" | into int', 42),
    ('"ff" | into int --radix 16', 255),
    ("3.9 | into int", 3),
    ("true | into int", 1),
    ('"1.5" | into float', 1.5),
    ("1 | into string", "1"),
    ("[1 true] | into string", ["1", "true"]),
    ('"true" | into bool', True),
    ("0 | into bool", False),
    ('{a: 1} | to json --raw', '{"a": 1}'),
    ("[1] | to json", "[\n  1\n]"),
    ("[1] | to json --indent 4", "[\n    1\n]"),
    ("""'{"a": [1, 2]}' | from json""", {"a": [1, 2]}),
    ("{a: 1} | to yaml", "a: 1\n"),
    ('"a: [1, 2]" | from yaml', {"a": [1, 2]}),
    ("{a: 1} | to toml", "a = 1\n"),
    ('"a = 1" | from toml', {"a": 1}),
    ('{root: {x: "1"}} | to xml | from xml', {"root": {"x": "1"}}),
    ("[1 2] | to text", "1\n2"),
    ('"plain" | to text', "plain"),
    ('{a: [1 "x"], "b c": null} | to nuon', '{a: [1, "x"], "b c": null}'),
])
async def test_conversions(src, expected):
    assert_ok(await run_nush(src), expected)


@pytest.mark.asyncio
async def test_conversion_errors():
    assert_error(await run_nush('"x" | into int'), "CantConvert")
    assert_error(await run_nush('"maybe" | into bool'), "CantConvert")
    assert_error(await run_nush('"{" | from json'), "CantConvert")
    assert_error(await run_nush("{|x| $x} | to json"), "UnsupportedInput")
    assert_error(await run_nush("[1 2] | to toml"), "UnsupportedInput")
    assert_error(await run_nush("1 | from json"), "TypeMismatch")


# -- environment and misc ----------------------------------------------------------

@pytest.mark.asyncio
async def test_load_and_hide_env():
    assert_ok(await run_nush('load-env {X: "1", Y: "2"}; [$env.X $env.Y]'), ["1", "2"])
    assert_ok(await run_nush('{X: "3"} | load-env; $env.X'), "3")
    assert_error(await run_nush('load-env {X: "1"}; hide-env X; $env.X'), "ColumnNotFound")
    assert_error(await run_nush("hide-env NUSH_NOT_SET_ANYWHERE"), "EnvVarNotFound")
    assert_ok(await run_nush("hide-env -i NUSH_NOT_SET_ANYWHERE"), None)


@pytest.mark.asyncio
async def test_core_commands():
    assert_ok(await run_nush("echo 1"), 1)
    assert_ok(await run_nush("echo 1 2"), [1, 2])
    assert_ok(await run_nush("[1 2] | describe"), "list<int>")
    assert_ok(await run_nush("{a: 1} | describe"), "record<a: int>")
    assert_ok(await run_nush("[{a: 1}] | describe"), "table<a: int>")
    assert_ok(await run_nush("1 | ignore"), None)
    assert_ok(await run_nush("do -i {|| 1 / 0}"), None)
    assert_ok(await run_nush("version | get name"), "nush")
    assert_ok(await run_nush("which echo | get 0.type"), "built-in")
    assert_ok(await run_nush("def mine [] { 1 }; which mine | get 0.type"), "custom")
    assert_ok(await run_nush("which nothing-here"), [])
    assert_ok(await run_nush('scope commands | where {|c| $c.name == "print"} | length'), 1)
    assert_ok(await run_nush('let zz = 1; scope variables | where {|v| $v.name == "$zz"} | get 0.value'), 1)


@pytest.mark.asyncio
async def test_error_make():
    res = await run_nush('error make {msg: "bad", help: "fix it"}')
    assert_error(res, "UserError")
    assert res.error["msg"] == "bad"
    assert res.error["help"] == "fix it"
    assert_error(await run_nush('error make {msg: "x", kind: "Custom"}'), "Custom")
    assert_error(await run_nush("error make {help: 1}"), "IncorrectValue")


@pytest.mark.asyncio
async def test_plugin_and_interactive_commands():
    assert_ok(await run_nush("plugin list"), [])
    assert_error(await run_nush("plugin add ./thing"), "PluginsUnsupported")
    assert_error(await run_nush("plugin use thing"), "PluginsUnsupported")
    assert_error(await run_nush("commandline"), "NotInteractive")
    assert_error(await run_nush("history"), "HistoryDisabled")
    assert_error(await run_nush("explore"), "NotInteractive")


@pytest.mark.asyncio
async def test_extra_commands():
    assert_ok(await run_nush("255 | fmt | get hexadecimal"), "0xff")
    assert_ok(await run_nush("255 | fmt | get binary"), "0b11111111")
    assert_ok(await run_nush("[{a: 1, b: 2}] | update cells {|v| $v * 10}"), [{"a": 10, "b": 20}])
    assert_ok(await run_nush("[{a: 1, b: 2}] | update cells -c [a] {|v| $v * 10}"), [{"a": 10, "b": 2}])
    assert_ok(await run_nush("date now | describe"), "date")


# -- custom built-ins -------------------------------------------------------------

@pytest.mark.asyncio
async def test_print_writes_to_the_context_stream():
    out, err = io.StringIO(), io.StringIO()
    res = await run_nush('print hello {a: 1}; print -n a; print -e "to err"; 5', stdout=out, stderr=err)
    assert_ok(res, 5)
    assert out.getvalue() == "hello\n{\n  a: 1\n}\na"
    assert err.getvalue() == "to err\n"


@pytest.mark.asyncio
async def test_print_returns_nothing():
    res = await run_nush("print x", stdout=io.StringIO())
    assert_ok(res, None)


@pytest.mark.asyncio
async def test_highlight():
    res = await run_nush('"let x = 1" | highlight')
    assert_ok(res)
    assert "\x1b[1;35mlet\x1b[0m" in res.output
    assert "\x1b[33m1\x1b[0m" in res.output
    assert_ok(await run_nush('"1 +" | highlight'), "1 +")


# -- standard library ----------------------------------------------------------------

@pytest.mark.asyncio
async def test_std_assertions():
    assert_ok(await run_nush("assert (1 == 1)"), None)
    assert_error(await run_nush("assert (1 == 2)"), "AssertionFailed")
    res = await run_nush("assert equal 1 2")
    assert_error(res, "AssertionFailed")
    assert res.error["help"] == "left: 1, right: 2"
    assert_ok(await run_nush("assert equal [1] [1]"), None)
    assert_error(await run_nush("assert not equal 1 1"), "AssertionFailed")
    assert_ok(await run_nush("assert error {|| 1 / 0}"), None)
    assert_error(await run_nush("assert error {|| 1}"), "AssertionFailed")


@pytest.mark.asyncio
async def test_std_iter_find():
    assert_ok(await run_nush("[1 5 10] | iter find {|x| $x > 3}"), 5)
    assert_ok(await run_nush("[1 2] | iter find {|x| $x > 3}"), None)
