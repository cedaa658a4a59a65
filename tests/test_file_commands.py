import json

import pytest

from nush import evaluate_async
from nush.nush_file import resolve_path


async def run_in(tmp_path, src: str):
    return await evaluate_async(src, {"PWD": str(tmp_path)})


def assert_ok(res, expected=None):
    assert res.exit_code == 0 and res.error is None, res.error
    assert res.output == expected


def assert_error(res, kind: str):
    assert res.exit_code == 1, res.to_dict()
    assert res.error["kind"] == kind, res.error


@pytest.mark.asyncio
async def test_save_then_open_structured(tmp_path):
    res = await run_in(tmp_path, '{name: "nush", tags: [a b]} | save "meta.json"; open "meta.json"')
    assert_ok(res, {"name": "nush", "tags": ["a", "b"]})
    assert json.loads((tmp_path / "meta.json").read_text()) == {"name": "nush", "tags": ["a", "b"]}


@pytest.mark.asyncio
async def test_open_raw_skips_parsing(tmp_path):
    (tmp_path / "x.json").write_text('{"a": 1}')
    assert_ok(await run_in(tmp_path, 'open --raw "x.json"'), '{"a": 1}')
    assert_ok(await run_in(tmp_path, '(open "x.json").a'), 1)


@pytest.mark.asyncio
async def test_text_files_round_trip_verbatim(tmp_path):
    assert_ok(await run_in(tmp_path, '"line one" | save "notes.txt"; open "notes.txt"'), "line one")


@pytest.mark.asyncio
async def test_save_refuses_to_overwrite(tmp_path):
    (tmp_path / "keep.txt").write_text("old")
    assert_error(await run_in(tmp_path, '"new" | save "keep.txt"'), "IOError")
    assert (tmp_path / "keep.txt").read_text() == "old"
    assert_ok(await run_in(tmp_path, '"new" | save --force "keep.txt"'))
    assert (tmp_path / "keep.txt").read_text() == "new"


@pytest.mark.asyncio
async def test_save_append(tmp_path):
    (tmp_path / "log.txt").write_text("a")
    assert_ok(await run_in(tmp_path, '"b" | save -a "log.txt"'))
    assert (tmp_path / "log.txt").read_text() == "ab"


@pytest.mark.asyncio
async def test_save_unsupported_value(tmp_path):
    assert_error(await run_in(tmp_path, '[1 2] | save "list.toml"'), "UnsupportedInput")


@pytest.mark.asyncio
async def test_open_malformed_document(tmp_path):
    (tmp_path / "bad.json").write_text("{nope")
    assert_error(await run_in(tmp_path, 'open "bad.json"'), "CantConvert")


@pytest.mark.asyncio
async def test_open_missing_file(tmp_path):
    assert_error(await run_in(tmp_path, 'open "missing.txt"'), "FileNotFound")


@pytest.mark.asyncio
async def test_open_directory(tmp_path):
    (tmp_path / "sub").mkdir()
    assert_error(await run_in(tmp_path, 'open "sub"'), "IOError")


@pytest.mark.asyncio
async def test_rm(tmp_path):
    (tmp_path / "a.txt").write_text("")
    (tmp_path / "b.txt").write_text("")
    assert_ok(await run_in(tmp_path, 'rm "a.txt" "b.txt"'))
    assert list(tmp_path.iterdir()) == []
    assert_error(await run_in(tmp_path, 'rm "a.txt"'), "FileNotFound")
    assert_ok(await run_in(tmp_path, 'rm -f "a.txt"'))


def test_resolve_path(tmp_path):
    assert resolve_path("x.txt", str(tmp_path)) == str(tmp_path / "x.txt")
    assert resolve_path("/etc/../tmp", "/ignored") == "/tmp"
