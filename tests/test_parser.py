import pytest

from nush.nush_context import build_context
from nush.nush_datatypes import BinaryOp, Call, ClosureExpr, Literal, Pipeline, RecordExpr, Span
from nush.nush_parser import ParseDiagnostic, Parser, line_col
from nush.nush_transformer import LiteralError, classify_bare_word, parse_int


@pytest.fixture(scope="module")
def context():
    return build_context()


def parse(src, context):
    return Parser().parse(src, context)


def first_element(result):
    statement = result.block.statements[0]
    assert isinstance(statement, Pipeline)
    return statement.elements[0]


def messages(result):
    return [d.message for d in result.diagnostics]


def test_expression_statement(context):
    result = parse("1 + 2 * 3", context)
    assert result.ok
    node = first_element(result)
    assert isinstance(node, BinaryOp) and node.op == "+"
    assert node.right == BinaryOp("*", Literal(2), Literal(3))
    assert node.span == Span(0, 9)


def test_record_versus_block(context):
    assert isinstance(first_element(parse("{a: 1}", context)), RecordExpr)
    assert isinstance(first_element(parse("{ echo 1 }", context)), ClosureExpr)


def test_multi_word_command_resolution(context):
    call = first_element(parse("str upcase", context))
    assert isinstance(call, Call)
    assert call.decl_name == "str upcase"
    assert call.head_span == Span(0, 10)


def test_longest_match_keeps_remaining_words_as_arguments(context):
    call = first_element(parse("get name", context))
    assert call.decl_name == "get"
    assert [arg.text for arg in call.positional] == ["name"]


def test_flags_are_bound(context):
    call = first_element(parse("to json -r --indent 4", context))
    assert call.decl_name == "to json"
    assert call.named["raw"] is True
    assert call.named["indent"] == Literal(4)


def test_short_switch_cluster(context):
    src = "def f [--a(-a), --b(-b)] { [$a $b] }; f -ab"
    result = parse(src, context)
    assert result.ok, messages(result)
    call = result.block.statements[1].elements[0]
    assert call.named == {"a": True, "b": True}


def test_definitions_go_to_the_delta_not_the_context(context):
    result = parse('def "my cmd" [x] { $x }; my cmd 1', context)
    assert result.ok
    assert [d.name for d in result.delta.decls] == ["my cmd"]
    assert result.delta.base_version == context.version
    assert context.find_decl("my cmd") is None


@pytest.mark.parametrize("src, message", [
    ("[1] | sort --bogus", "unknown flag '--bogus' for 'sort'"),
    ("seq 1", "missing required positional argument 'end' for 'seq'"),
    ("describe 1", "extra positional argument for 'describe'"),
    ("to json --indent", "flag '--indent' of 'to json' requires a value"),
    ("nope", "unknown command 'nope'"),
    ("[1, 2", "unexpected end of input"),
    ("1 ^ 2", "unexpected character '^'"),
    ("(1))", "unexpected ')'"),
    ("3 = 4", "invalid assignment target; expected a variable"),
])
def test_diagnostics(context, src, message):
    result = parse(src, context)
    assert not result.ok
    assert result.diagnostics[0].message == message


def test_all_diagnostics_are_kept_in_source_order(context):
    result = parse("bar 1\nfoo 2", context)
    assert messages(result) == ["unknown command 'bar'", "unknown command 'foo'"]
    assert result.diagnostics[1].line == 2


def test_diagnostic_format_and_context():
    source = "let a = 1\nlet b = $a +\nlet c = 3"
    diag = ParseDiagnostic("unexpected end of line", Span(22, 23), source)
    assert diag.format() == "Parse error: unexpected end of line at 22..23 (line 2, col 13)"
    lines = diag.source_context().splitlines()
    assert lines[1] == "> 2 | let b = $a +"
    assert lines[2].endswith("^")


def test_line_col():
    assert line_col("ab\ncd", 0) == (1, 1)
    assert line_col("ab\ncd", 4) == (2, 2)


def test_highlight_spans():
    spans = Parser().highlight_spans('let x = 1 | str upcase "y"')
    assert (0, 3, "keyword") in spans
    assert (8, 9, "number") in spans
    assert (12, 15, "command") in spans
    assert (23, 26, "string") in spans
    assert Parser().highlight_spans("1 +") is None


@pytest.mark.parametrize("src", [
    "1\n2\n",
    "1;",
    "if true {\n  1\n} else {\n  2\n}\n",
    "def f [x] {\n  let y = $x + 1\n  $y\n}\nf 1",
    "for x in [1 2] {\n  echo $x\n}",
    "{\n  a: 1\n  b: 2\n}",
    "[{|x|\n  $x\n}]",
])
def test_trailing_separators_are_accepted(context, src):
    result = parse(src, context)
    assert result.ok, messages(result)


@pytest.mark.parametrize("src", ["0x_", "0b_ + 1", "1 + 0o_"])
def test_radix_prefix_without_digits_is_rejected(context, src):
    result = parse(src, context)
    assert not result.ok
    assert result.block is None
    assert messages(result)[0].startswith("unexpected")


@pytest.mark.parametrize("src, message", [
    ('"\\u{110000}"', "invalid unicode escape '\\u{110000}'"),
    ('"\\u{d800}"', "invalid unicode escape '\\u{d800}'"),
])
def test_invalid_literals_are_diagnostics(context, src, message):
    result = parse(src, context)
    assert not result.ok
    assert result.block is None
    assert messages(result) == [message]


def test_integer_text_without_digits_raises_literal_error():
    assert parse_int("0x1_F") == 31
    with pytest.raises(LiteralError):
        parse_int("0x")
    assert classify_bare_word("0x_") == "0x_"
