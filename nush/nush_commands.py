"""
The full builtin command set: filters, math, strings, conversions,
environment and miscellaneous commands.
"""
import datetime
import math
import re

from nush.nush_context import CommandSet, shell_command
from nush.nush_datatypes import Closure, ExitRequest, Range, is_exit, type_name
from nush.nush_interpreter import follow_cell_path, values_equal, _is_number
from nush.nush_printer import Printer
from nush.nush_serialize import SerializationError, deserialize, serialize


def _rows(call, value, what="input") -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, Range):
        return value.to_list()
    if value is None:
        return []
    raise call.error(f"{call.decl.name}: expected a list {what}, found {type_name(value)}", kind="TypeMismatch")


def _cell_path(path) -> list:
    if isinstance(path, int):
        return [path]
    return [int(p) if p.isdigit() else p for p in str(path).split(".")]


def _sort_key(value):
    """Total order over mixed values: numbers, strings, bools, dates, then the rest."""
    if _is_number(value):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    if isinstance(value, bool):
        return (2, value)
    if isinstance(value, datetime.datetime):
        return (3, value.timestamp())
    if value is None:
        return (5, 0)
    if isinstance(value, dict):
        return (4, tuple(_sort_key(v) for v in value.values()))
    if isinstance(value, list):
        return (4, tuple(_sort_key(v) for v in value))
    return (6, Printer().pformat(value))


def _numbers(call, value) -> list:
    items = _rows(call, value)
    for item in items:
        if not _is_number(item):
            raise call.error(f"{call.decl.name}: expected numbers, found {type_name(item)}", kind="TypeMismatch")
    return items


def _map_str(call, value, fn):
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [_map_str(call, v, fn) for v in value]
    raise call.error(f"{call.decl.name}: expected a string, found {type_name(value)}", kind="TypeMismatch")


def _map_num(call, value, fn):
    if _is_number(value):
        return fn(value)
    if isinstance(value, (list, Range)):
        return [_map_num(call, v, fn) for v in value]
    raise call.error(f"{call.decl.name}: expected a number, found {type_name(value)}", kind="TypeMismatch")


def _record(call, value) -> dict:
    if not isinstance(value, dict):
        raise call.error(f"{call.decl.name}: expected a record, found {type_name(value)}", kind="TypeMismatch")
    return value


class BuiltinCommands(CommandSet):
    category = "builtin"

    # -- filters ----------------------------------------------------------

    @shell_command("get", "Extract the value at a cell path.", short={"ignore_errors": "i"})
    def _get(self, call, input, cell_path, *, ignore_errors: bool = False):
        return follow_cell_path(input, _cell_path(cell_path), call.span, optional=ignore_errors)

    @shell_command("select", "Keep only the given columns.")
    def _select(self, call, input, *columns):
        def pick(row):
            row = _record(call, row)
            return {str(c): follow_cell_path(row, [str(c)], call.span) for c in columns}
        if isinstance(input, dict):
            return pick(input)
        return [pick(row) for row in _rows(call, input)]

    @shell_command("reject", "Remove the given columns.")
    def _reject(self, call, input, *columns):
        names = {str(c) for c in columns}

        def drop(row):
            return {k: v for k, v in _record(call, row).items() if k not in names}
        if isinstance(input, dict):
            return drop(input)
        return [drop(row) for row in _rows(call, input)]

    @shell_command("first", "Return the first item, or the first n items.")
    def _first(self, call, input, n: int = None):
        items = _rows(call, input)
        if n is not None:
            return items[:n]
        if not items:
            raise call.error("first: the input is empty", kind="AccessBeyondEnd")
        return items[0]

    @shell_command("last", "Return the last item, or the last n items.")
    def _last(self, call, input, n: int = None):
        items = _rows(call, input)
        if n is not None:
            return items[-n:] if n else []
        if not items:
            raise call.error("last: the input is empty", kind="AccessBeyondEnd")
        return items[-1]

    @shell_command("skip", "Skip the first n items.")
    def _skip(self, call, input, n: int = 1):
        return _rows(call, input)[n:]

    @shell_command("take", "Keep the first n items (or characters).")
    def _take(self, call, input, n: int):
        if isinstance(input, str):
            return input[:n]
        return _rows(call, input)[:n]

    @shell_command("length", "Count the items of a list.")
    def _length(self, call, input):
        return len(_rows(call, input))

    @shell_command("reverse", "Reverse the order of the items.")
    def _reverse(self, call, input):
        return list(reversed(_rows(call, input)))

    @shell_command("sort", "Sort the items.", short={"reverse": "r"})
    def _sort(self, call, input, *, reverse: bool = False):
        return sorted(_rows(call, input), key=_sort_key, reverse=reverse)

    @shell_command("sort-by", "Sort records by the given columns.", short={"reverse": "r"})
    def _sort_by(self, call, input, *columns, reverse: bool = False):
        def key(row):
            return tuple(_sort_key(follow_cell_path(row, _cell_path(c), call.span, optional=True)) for c in columns)
        return sorted(_rows(call, input), key=key, reverse=reverse)

    @shell_command("uniq", "Remove duplicate items, keeping the first occurrence.")
    def _uniq(self, call, input):
        out = []
        for item in _rows(call, input):
            if not any(values_equal(item, seen) for seen in out):
                out.append(item)
        return out

    @shell_command("flatten", "Flatten nested lists by one level.")
    def _flatten(self, call, input):
        out = []
        for item in _rows(call, input):
            if isinstance(item, (list, Range)):
                out.extend(item)
            else:
                out.append(item)
        return out

    @shell_command("append", "Append a value (or the items of a list) to the input.")
    def _append(self, call, input, value):
        items = list(_rows(call, input)) if isinstance(input, (list, Range)) or input is None else [input]
        return items + (list(value) if isinstance(value, (list, Range)) else [value])

    @shell_command("prepend", "Prepend a value (or the items of a list) to the input.")
    def _prepend(self, call, input, value):
        items = list(_rows(call, input)) if isinstance(input, (list, Range)) or input is None else [input]
        return (list(value) if isinstance(value, (list, Range)) else [value]) + items

    @shell_command("each", "Run a closure on each item.")
    async def _each(self, call, input, closure: Closure):
        if not isinstance(input, (list, Range)):
            return await call.run_closure(closure, input, input=input)
        out = []
        for item in input:
            result = await call.run_closure(closure, item, input=item)
            if is_exit(result):
                return result
            out.append(result)
        return out

    async def _matching(self, call, input, closure, keep):
        out = []
        for item in _rows(call, input):
            result = await call.run_closure(closure, item, input=item)
            if is_exit(result):
                return result
            if not isinstance(result, bool):
                raise call.error(f"{call.decl.name}: the condition must return a bool, found {type_name(result)}",
                                 kind="TypeMismatch")
            if result == keep:
                out.append(item)
        return out

    @shell_command("where", "Keep the items for which the condition holds.")
    async def _where(self, call, input, condition: Closure):
        return await self._matching(call, input, condition, True)

    @shell_command("filter", "Keep the items for which the closure returns true.")
    async def _filter(self, call, input, closure: Closure):
        return await self._matching(call, input, closure, True)

    @shell_command("reduce", "Fold the items into one value with a closure |item, acc|.", short={"fold": "f"})
    async def _reduce(self, call, input, closure: Closure, *, fold=None):
        items = _rows(call, input)
        if fold is None:
            if not items:
                raise call.error("reduce: the input is empty and no --fold value was given", kind="IncorrectValue")
            acc, items = items[0], items[1:]
        else:
            acc = fold
        for item in items:
            acc = await call.run_closure(closure, item, acc, input=item)
            if is_exit(acc):
                return acc
        return acc

    @shell_command("enumerate", "Pair each item with its index.")
    def _enumerate(self, call, input):
        return [{"index": i, "item": item} for i, item in enumerate(_rows(call, input))]

    @shell_command("columns", "List the column names of a record or table.")
    def _columns(self, call, input):
        if isinstance(input, dict):
            return list(input)
        out = []
        for row in _rows(call, input):
            for key in _record(call, row):
                if key not in out:
                    out.append(key)
        return out

    @shell_command("values", "List the values of a record (or the columns of a table).")
    def _values(self, call, input):
        if isinstance(input, dict):
            return list(input.values())
        rows = _rows(call, input)
        return [[row.get(c) for row in rows] for c in self._columns(call, rows)]

    @shell_command("is-empty", "Check whether the input is empty.")
    def _is_empty(self, call, input):
        return input is None or (isinstance(input, (str, list, dict, Range)) and len(input) == 0)

    @shell_command("is-not-empty", "Check whether the input is not empty.")
    def _is_not_empty(self, call, input):
        return not self._is_empty(call, input)

    async def _quantify(self, call, input, closure, want):
        for item in _rows(call, input):
            result = await call.run_closure(closure, item, input=item)
            if is_exit(result):
                return result
            if not isinstance(result, bool):
                raise call.error(f"{call.decl.name}: the closure must return a bool", kind="TypeMismatch")
            if result == want:
                return want
        return not want

    @shell_command("any", "Check whether any item satisfies the closure.")
    async def _any(self, call, input, closure: Closure):
        return await self._quantify(call, input, closure, True)

    @shell_command("all", "Check whether every item satisfies the closure.")
    async def _all(self, call, input, closure: Closure):
        return await self._quantify(call, input, closure, False)

    async def _set_column(self, call, input, column, value, mode):
        async def apply(row):
            row = _record(call, row)
            exists = column in row
            if mode == "insert" and exists:
                raise call.error(f"insert: column '{column}' already exists", kind="ColumnAlreadyExists")
            if mode == "update" and not exists:
                raise call.error(f"update: column '{column}' not found", kind="ColumnNotFound")
            new = value
            if isinstance(value, Closure):
                new = await call.run_closure(value, row, input=row.get(column) if exists else row)
                if is_exit(new):
                    return new
            return {**row, column: new}
        if isinstance(input, dict):
            return await apply(input)
        out = []
        for row in _rows(call, input):
            updated = await apply(row)
            if is_exit(updated):
                return updated
            out.append(updated)
        return out

    @shell_command("insert", "Add a new column.")
    async def _insert(self, call, input, column: str, value):
        return await self._set_column(call, input, column, value, "insert")

    @shell_command("update", "Replace the value of an existing column.")
    async def _update(self, call, input, column: str, value):
        return await self._set_column(call, input, column, value, "update")

    @shell_command("upsert", "Set a column, adding it when missing.")
    async def _upsert(self, call, input, column: str, value):
        return await self._set_column(call, input, column, value, "upsert")

    @shell_command("merge", "Merge a record (or table) into the input.")
    def _merge(self, call, input, other):
        if isinstance(input, dict):
            return {**input, **_record(call, other)}
        rows = _rows(call, input)
        if isinstance(other, dict):
            return [{**_record(call, row), **other} for row in rows]
        others = _rows(call, other, "argument")
        return [{**_record(call, a), **_record(call, b)} for a, b in zip(rows, others)] + rows[len(others):]

    @shell_command("wrap", "Wrap the input in a record (or each item, for lists).")
    def _wrap(self, call, input, name: str):
        if isinstance(input, (list, Range)):
            return [{name: item} for item in input]
        return {name: input}

    @shell_command("zip", "Pair up the items of two lists.")
    def _zip(self, call, input, other):
        return [[a, b] for a, b in zip(_rows(call, input), _rows(call, other, "argument"))]

    @shell_command("group-by", "Group records by the value of a column.")
    def _group_by(self, call, input, column: str):
        groups = {}
        for row in _rows(call, input):
            key = follow_cell_path(row, _cell_path(column), call.span)
            groups.setdefault(Printer().to_text(key), []).append(row)
        return groups

    @shell_command("compact", "Remove null items.")
    def _compact(self, call, input):
        return [item for item in _rows(call, input) if item is not None]

    @shell_command("default", "Replace null input (or a null column) with a default value.")
    def _default(self, call, input, value, column: str = None):
        if column is None:
            return value if input is None else input

        def fill(row):
            row = _record(call, row)
            return row if row.get(column) is not None else {**row, column: value}
        if isinstance(input, dict):
            return fill(input)
        return [fill(row) for row in _rows(call, input)]

    @shell_command("seq", "Produce the integers from start to end, inclusive.")
    def _seq(self, call, input, start: int, end: int, step: int = 1):
        if step == 0:
            raise call.error("seq: step cannot be zero", kind="IncorrectValue")
        if (end - start) * step < 0:
            return []
        return list(range(start, end + (1 if step > 0 else -1), step))

    # -- math ---------------------------------------------------------------

    @shell_command("math sum", "Sum a list of numbers.")
    def _math_sum(self, call, input):
        return sum(_numbers(call, input))

    @shell_command("math product", "Multiply a list of numbers.")
    def _math_product(self, call, input):
        return math.prod(_numbers(call, input))

    @shell_command("math avg", "Average a list of numbers.")
    def _math_avg(self, call, input):
        items = _numbers(call, input)
        if not items:
            raise call.error("math avg: the input is empty", kind="IncorrectValue")
        return sum(items) / len(items)

    @shell_command("math min", "The smallest item.")
    def _math_min(self, call, input):
        items = _rows(call, input)
        if not items:
            raise call.error("math min: the input is empty", kind="IncorrectValue")
        return min(items, key=_sort_key)

    @shell_command("math max", "The largest item.")
    def _math_max(self, call, input):
        items = _rows(call, input)
        if not items:
            raise call.error("math max: the input is empty", kind="IncorrectValue")
        return max(items, key=_sort_key)

    @shell_command("math abs", "Absolute value.")
    def _math_abs(self, call, input):
        return _map_num(call, input, abs)

    @shell_command("math round", "Round to the nearest integer, or to a precision.", short={"precision": "p"})
    def _math_round(self, call, input, *, precision: int = None):
        if precision is None:
            return _map_num(call, input, round)
        return _map_num(call, input, lambda x: round(x, precision))

    @shell_command("math floor", "Round down.")
    def _math_floor(self, call, input):
        return _map_num(call, input, math.floor)

    @shell_command("math ceil", "Round up.")
    def _math_ceil(self, call, input):
        return _map_num(call, input, math.ceil)

    @shell_command("math sqrt", "Square root.")
    def _math_sqrt(self, call, input):
        def sqrt(x):
            if x < 0:
                raise call.error("math sqrt: cannot take the square root of a negative number",
                                 kind="IncorrectValue")
            return math.sqrt(x)
        return _map_num(call, input, sqrt)

    # -- strings ------------------------------------------------------------

    @shell_command("str upcase", "Convert to upper case.")
    def _str_upcase(self, call, input):
        return _map_str(call, input, str.upper)

    @shell_command("str downcase", "Convert to lower case.")
    def _str_downcase(self, call, input):
        return _map_str(call, input, str.lower)

    @shell_command("str trim", "Trim whitespace (or the given character) from both ends.", short={"char": "c"})
    def _str_trim(self, call, input, *, char: str = None):
        return _map_str(call, input, lambda s: s.strip(char))

    @shell_command("str length", "Count characters.")
    def _str_length(self, call, input):
        return _map_str(call, input, len)

    @shell_command("str reverse", "Reverse the characters.")
    def _str_reverse(self, call, input):
        return _map_str(call, input, lambda s: s[::-1])

    @shell_command("str contains", "Check for a substring.", short={"ignore_case": "i"})
    def _str_contains(self, call, input, substring: str, *, ignore_case: bool = False):
        if ignore_case:
            return _map_str(call, input, lambda s: substring.casefold() in s.casefold())
        return _map_str(call, input, lambda s: substring in s)

    @shell_command("str starts-with", "Check for a prefix.")
    def _str_starts_with(self, call, input, prefix: str):
        return _map_str(call, input, lambda s: s.startswith(prefix))

    @shell_command("str ends-with", "Check for a suffix.")
    def _str_ends_with(self, call, input, suffix: str):
        return _map_str(call, input, lambda s: s.endswith(suffix))

    @shell_command("str replace", "Replace the first (or every) occurrence of a pattern.",
                   short={"all": "a", "regex": "r"})
    def _str_replace(self, call, input, find: str, replacement: str, *, all: bool = False, regex: bool = False):
        count = 0 if all else 1
        if regex:
            try:
                pattern = re.compile(find)
            except re.error as e:
                raise call.error(f"str replace: invalid regex: {e}", kind="IncorrectValue") from e
            return _map_str(call, input, lambda s: pattern.sub(replacement, s, count=count))
        return _map_str(call, input, lambda s: s.replace(find, replacement, -1 if all else 1))

    @shell_command("str join", "Join a list into a string.")
    def _str_join(self, call, input, separator: str = ""):
        return separator.join(Printer().to_text(item) for item in _rows(call, input))

    @shell_command("split row", "Split a string into a list at a separator.")
    def _split_row(self, call, input, separator: str):
        result = _map_str(call, input, lambda s: s.split(separator))
        if isinstance(input, list):
            return [part for parts in result for part in parts]
        return result

    @shell_command("split chars", "Split a string into its characters.")
    def _split_chars(self, call, input):
        return _map_str(call, input, list)

    @shell_command("lines", "Split text into lines.")
    def _lines(self, call, input):
        if not isinstance(input, str):
            raise call.error(f"lines: expected a string, found {type_name(input)}", kind="TypeMismatch")
        return input.splitlines()

    # -- conversions ----------------------------------------------------------

    @shell_command("into int", "Convert to an integer.", short={"radix": "r"})
    def _into_int(self, call, input, *, radix: int = None):
        def convert(value):
            match value:
                case bool():
                    return int(value)
                case int():
                    return value
                case float():
                    if not math.isfinite(value):
                        raise call.error(f"into int: cannot convert {value}", kind="CantConvert")
                    return int(value)
                case str():
                    try:
                        return int(value.strip().replace("_", ""), radix or 10)
                    except ValueError:
                        raise call.error(f"into int: cannot convert '{value}' to int", kind="CantConvert") from None
                case datetime.datetime():
                    return int(value.timestamp() * 1_000_000_000)
            raise call.error(f"into int: cannot convert {type_name(value)} to int", kind="CantConvert")
        if isinstance(input, list):
            return [convert(v) for v in input]
        return convert(input)

    @shell_command("into float", "Convert to a float.")
    def _into_float(self, call, input):
        def convert(value):
            if isinstance(value, (int, float)):
                return float(value)
            if isinstance(value, str):
                try:
                    return float(value.strip())
                except ValueError:
                    pass
            raise call.error(f"into float: cannot convert {Printer().pformat(value)} to float", kind="CantConvert")
        if isinstance(input, list):
            return [convert(v) for v in input]
        return convert(input)

    @shell_command("into string", "Convert to a string.")
    def _into_string(self, call, input):
        if isinstance(input, list):
            return [Printer().to_text(v) for v in input]
        return Printer().to_text(input)

    @shell_command("into bool", "Convert to a bool.")
    def _into_bool(self, call, input):
        def convert(value):
            match value:
                case bool():
                    return value
                case int() | float():
                    return value != 0
                case str() if value.strip().lower() in ("true", "false"):
                    return value.strip().lower() == "true"
                case str() if _is_numeric_text(value):
                    return float(value) != 0
            raise call.error(f"into bool: cannot convert {Printer().pformat(value)} to bool", kind="CantConvert")
        if isinstance(input, list):
            return [convert(v) for v in input]
        return convert(input)

    @shell_command("to json", "Convert the input to JSON text.", short={"raw": "r", "indent": "i"})
    def _to_json(self, call, input, *, raw: bool = False, indent: int = 2):
        return self._write(call, input, "json", pretty=not raw, indent=indent)

    @shell_command("from json", "Parse JSON text.")
    def _from_json(self, call, input):
        return self._read(call, input, "json")

    @shell_command("to yaml", "Convert the input to YAML text.")
    def _to_yaml(self, call, input):
        return self._write(call, input, "yaml")

    @shell_command("from yaml", "Parse YAML text.")
    def _from_yaml(self, call, input):
        return self._read(call, input, "yaml")

    @shell_command("to toml", "Convert a record to TOML text.")
    def _to_toml(self, call, input):
        return self._write(call, input, "toml")

    @shell_command("from toml", "Parse TOML text.")
    def _from_toml(self, call, input):
        return self._read(call, input, "toml")

    @shell_command("to xml", "Convert the input to XML text.")
    def _to_xml(self, call, input):
        return self._write(call, input, "xml")

    @shell_command("from xml", "Parse XML text.")
    def _from_xml(self, call, input):
        return self._read(call, input, "xml")

    @shell_command("to text", "Convert the input to plain text.")
    def _to_text(self, call, input):
        if isinstance(input, (list, Range)):
            return "\n".join(Printer().to_text(item) for item in input)
        return Printer().to_text(input)

    @shell_command("to nuon", "Convert the input to nush literal notation.", short={"indent": "i"})
    def _to_nuon(self, call, input, *, indent: int = None):
        if _contains_closure(input):
            raise call.error("to nuon: closures cannot be converted", kind="UnsupportedInput")
        if indent is None:
            return Printer().pformat(input)
        return Printer(indent_width=indent, pretty=True).pformat(input)

    def _write(self, call, value, fmt, **options):
        try:
            return serialize(value, fmt=fmt, **options)
        except SerializationError as e:
            raise call.error(f"to {fmt}: {e}", kind="UnsupportedInput") from e

    def _read(self, call, value, fmt):
        if not isinstance(value, str):
            raise call.error(f"from {fmt}: expected a string, found {type_name(value)}", kind="TypeMismatch")
        try:
            return deserialize(value, fmt=fmt, strict=True)
        except SerializationError as e:
            raise call.error(f"from {fmt}: {e}", kind="CantConvert") from e

    # -- environment ----------------------------------------------------------

    @shell_command("load-env", "Set environment variables from a record.")
    def _load_env(self, call, input, values: dict = None):
        values = values if values is not None else _record(call, input)
        for key, value in values.items():
            if key in ("PWD",) and not isinstance(value, str):
                raise call.error("load-env: PWD must be a string", kind="TypeMismatch")
            call.stack.env[key] = value
        return None

    @shell_command("hide-env", "Remove environment variables.", short={"ignore_errors": "i"})
    def _hide_env(self, call, input, *names, ignore_errors: bool = False):
        for name in names:
            if name not in call.stack.env:
                if ignore_errors:
                    continue
                raise call.error(f"hide-env: environment variable '{name}' not found", kind="EnvVarNotFound")
            del call.stack.env[name]
        return None

    # -- misc -------------------------------------------------------------------

    @shell_command("date now", "The current date and time.")
    def _date_now(self, call, input):
        return datetime.datetime.now().astimezone()

    @shell_command("exit", "Stop the program with an exit status.")
    def _exit(self, call, input, code: int = 0):
        if not 0 <= code <= 255:
            raise call.error(f"exit: code {code} is outside the range 0..255", kind="IncorrectValue")
        return ExitRequest(code, call.span)


def _is_numeric_text(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _contains_closure(value) -> bool:
    if isinstance(value, Closure):
        return True
    if isinstance(value, dict):
        return any(_contains_closure(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_closure(v) for v in value)
    return False
