"""Evaluator for compiled filter expressions.

Every expression produces a (possibly empty) stream of outputs, so evaluation
is built from generators. Each node visit costs one step against the budget,
and every string, array or object an expression builds, like every result it
returns, costs its serialized size in steps. Shared parts count once per use,
so no value can grow past what the budget pays for. The wall clock is checked
on every step.
"""

import functools
import json
import math
import re
import sys
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from ..core import QueryBudget
from ..errors import BudgetExceeded, InvalidQuery, QueryRuntimeError
from .parser import (
    Alternative,
    And,
    ArrayCons,
    BinOp,
    Call,
    Comma,
    Field,
    Identity,
    If,
    Index,
    Iterate,
    Literal,
    Negate,
    Node,
    ObjectCons,
    Or,
    Pipe,
    Recurse,
    Slice,
    Try,
    parse,
)

_CHARS_PER_STEP = 64
_EXACT_INT = 2 ** 53

# Expression tree depth; elif branches count as one level each.
MAX_DEPTH = 128


# ── Value helpers ────────────────────────────────────────────────────


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def truthy(value: Any) -> bool:
    return value is not None and value is not False


def finite(number):
    """Clamp infinities to the largest double and turn NaN into null.

    Integers too large for a double's mantissa become floats, so repeated
    multiplication cannot grow them without bound.
    """
    if isinstance(number, int) and not isinstance(number, bool) and abs(number) > _EXACT_INT:
        try:
            number = float(number)
        except OverflowError:
            return math.copysign(sys.float_info.max, number)
    if isinstance(number, float) and not math.isfinite(number):
        if math.isnan(number):
            return None
        return math.copysign(sys.float_info.max, number)
    return number


def finite_value(value: Any) -> Any:
    """Apply :func:`finite` to every number inside ``value``."""
    if isinstance(value, float):
        return finite(value)
    if isinstance(value, list):
        return [finite_value(v) for v in value]
    if isinstance(value, dict):
        return {k: finite_value(v) for k, v in value.items()}
    return value


_TYPE_RANK = {"null": 0, "boolean": 1, "number": 3, "string": 4, "array": 5, "object": 6}


def sort_key(value: Any):
    """Key implementing the total order null < false < true < numbers < strings < arrays < objects."""
    kind = type_name(value)
    if kind == "boolean":
        return (1 if value is False else 2,)
    if kind == "number":
        return (3, value)
    if kind == "string":
        return (4, value)
    if kind == "array":
        return (5, tuple(sort_key(v) for v in value))
    if kind == "object":
        keys = sorted(value)
        return (6, tuple(keys), tuple(sort_key(value[k]) for k in keys))
    return (_TYPE_RANK.get(kind, 0),)


def _fmt(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, default=str)
    return text if len(text) <= 40 else text[:37] + "..."


# ── Builtins ─────────────────────────────────────────────────────────

# name -> {arity: implementation(interp, args, value) -> iterator}
BUILTINS: dict[str, dict[int, Callable]] = {}


def builtin(name: str, arity: int = 0):
    def register(fn):
        BUILTINS.setdefault(name, {})[arity] = fn
        return fn
    return register


def _simple(name: str):
    """Register a zero-arity builtin mapping one input to one output."""
    def register(fn):
        @builtin(name)
        def run(interp, args, value):
            yield fn(value)
        return fn
    return register


def _with_arg(name: str):
    """Register a one-arity builtin whose argument is evaluated against the input."""
    def register(fn):
        @builtin(name, 1)
        def run(interp, args, value):
            for arg in interp.eval(args[0], value):
                yield fn(value, arg)
        return fn
    return register


@_simple("length")
def _length(value):
    if value is None:
        return 0
    if isinstance(value, bool):
        raise QueryRuntimeError("boolean has no length")
    if isinstance(value, (int, float)):
        return abs(value)
    if isinstance(value, (str, list, dict)):
        return len(value)
    raise QueryRuntimeError(f"{type_name(value)} has no length")


@_simple("keys")
def _keys(value):
    if isinstance(value, dict):
        return sorted(value)
    if isinstance(value, list):
        return list(range(len(value)))
    raise QueryRuntimeError(f"{type_name(value)} has no keys")


@builtin("values")
def _values(interp, args, value):
    if value is not None:
        yield value


@_simple("add")
def _add(value):
    items = _iterable(value, "add")
    if items and all(isinstance(item, str) for item in items):
        return "".join(items)
    if items and all(isinstance(item, list) for item in items):
        return [v for item in items for v in item]
    result = None
    for item in items:
        result = _binop("+", result, item)
    return result


@_simple("reverse")
def _reverse(value):
    if value is None:
        return []
    if isinstance(value, str):
        return value[::-1]
    return list(reversed(_as_array(value, "reverse")))


@_simple("sort")
def _sort(value):
    return sorted(_as_array(value, "sort"), key=sort_key)


@_simple("unique")
def _unique(value):
    seen = {}
    for item in sorted(_as_array(value, "unique"), key=sort_key):
        seen.setdefault(sort_key(item), item)
    return list(seen.values())


@_simple("min")
def _min(value):
    items = _as_array(value, "min")
    return min(items, key=sort_key) if items else None


@_simple("max")
def _max(value):
    items = _as_array(value, "max")
    return max(items, key=sort_key) if items else None


@_simple("not")
def _not(value):
    return not truthy(value)


@_simple("type")
def _type(value):
    return type_name(value)


@_simple("tostring")
def _tostring(value):
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@_simple("tojson")
def _tojson(value):
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@_simple("tonumber")
def _tonumber(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            number = int(value) if value.strip().lstrip("-").isdigit() else float(value)
        except ValueError:
            pass
        else:
            if not isinstance(number, float) or math.isfinite(number):
                return number
    raise QueryRuntimeError(f"Cannot parse {_fmt(value)} as a number")


@_simple("ascii_downcase")
def _downcase(value):
    return _as_string(value, "ascii_downcase").lower()


@_simple("ascii_upcase")
def _upcase(value):
    return _as_string(value, "ascii_upcase").upper()


@_simple("floor")
def _floor(value):
    return math.floor(_as_number(value, "floor"))


@_simple("ceil")
def _ceil(value):
    return math.ceil(_as_number(value, "ceil"))


@_simple("to_entries")
def _to_entries(value):
    if not isinstance(value, dict):
        raise QueryRuntimeError(f"{type_name(value)} has no entries")
    return [{"key": k, "value": v} for k, v in value.items()]


@_simple("from_entries")
def _from_entries(value):
    result = {}
    for entry in _as_array(value, "from_entries"):
        if not isinstance(entry, dict):
            raise QueryRuntimeError("from_entries expects an array of objects")
        key = entry.get("key", entry.get("name", entry.get("k")))
        if not isinstance(key, str):
            key = _tostring(key)
        result[key] = entry.get("value", entry.get("v"))
    return result


def _flatten_list(items: list, depth: float) -> list:
    result = []
    for item in items:
        if isinstance(item, list) and depth > 0:
            result.extend(_flatten_list(item, depth - 1))
        else:
            result.append(item)
    return result


@_simple("flatten")
def _flatten(value):
    return _flatten_list(_as_array(value, "flatten"), math.inf)


@builtin("flatten", 1)
def _flatten_depth(interp, args, value):
    for depth in interp.eval(args[0], value):
        if not isinstance(depth, (int, float)) or depth < 0:
            raise QueryRuntimeError("flatten depth must not be negative")
        yield _flatten_list(_as_array(value, "flatten"), depth)


@_simple("any")
def _any(value):
    return any(truthy(v) for v in _iterable(value, "any"))


@_simple("all")
def _all(value):
    return all(truthy(v) for v in _iterable(value, "all"))


@builtin("any", 1)
def _any_by(interp, args, value):
    yield any(truthy(out) for item in _iterable(value, "any") for out in interp.eval(args[0], item))


@builtin("all", 1)
def _all_by(interp, args, value):
    yield all(truthy(out) for item in _iterable(value, "all") for out in interp.eval(args[0], item))


@builtin("empty")
def _empty(interp, args, value):
    return iter(())


@builtin("error", 1)
def _error(interp, args, value):
    for message in interp.eval(args[0], value):
        raise QueryRuntimeError(message if isinstance(message, str) else _tostring(message))
    yield from ()


@builtin("first")
def _first(interp, args, value):
    items = _as_array(value, "first")
    yield items[0] if items else None


@builtin("last")
def _last(interp, args, value):
    items = _as_array(value, "last")
    yield items[-1] if items else None


@builtin("first", 1)
def _first_of(interp, args, value):
    for out in interp.eval(args[0], value):
        yield out
        return


@builtin("last", 1)
def _last_of(interp, args, value):
    marker = last = object()
    for out in interp.eval(args[0], value):
        last = out
    if last is not marker:
        yield last


@builtin("limit", 2)
def _limit(interp, args, value):
    for n in interp.eval(args[0], value):
        if not isinstance(n, int) or isinstance(n, bool):
            raise QueryRuntimeError("limit expects an integer count")
        if n <= 0:
            continue
        count = 0
        for out in interp.eval(args[1], value):
            yield out
            count += 1
            if count >= n:
                break


@builtin("range", 1)
def _range(interp, args, value):
    for upto in interp.eval(args[0], value):
        i = 0
        while i < _as_number(upto, "range"):
            interp.tick()
            yield i
            i += 1


@builtin("range", 2)
def _range_from(interp, args, value):
    for start in interp.eval(args[0], value):
        for stop in interp.eval(args[1], value):
            i = _as_number(start, "range")
            while i < _as_number(stop, "range"):
                interp.tick()
                yield i
                i += 1


@builtin("select", 1)
def _select(interp, args, value):
    for cond in interp.eval(args[0], value):
        if truthy(cond):
            yield value


@builtin("map", 1)
def _map(interp, args, value):
    yield [out for item in _iterable(value, "map") for out in interp.eval(args[0], item)]


@builtin("map_values", 1)
def _map_values(interp, args, value):
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            for out in interp.eval(args[0], item):
                result[key] = out
                break
        yield result
    else:
        result = []
        for item in _as_array(value, "map_values"):
            for out in interp.eval(args[0], item):
                result.append(out)
                break
        yield result


@builtin("with_entries", 1)
def _with_entries(interp, args, value):
    mapped = [out for entry in _to_entries(value) for out in interp.eval(args[0], entry)]
    yield _from_entries(mapped)


def _keyed(interp, node: Node, items: list) -> list:
    """Pair each item with the sort key of ``[f]`` evaluated on it."""
    pairs = []
    for item in items:
        key = [out for out in interp.eval(node, item)]
        pairs.append((sort_key(key), item))
    return pairs


@builtin("sort_by", 1)
def _sort_by(interp, args, value):
    pairs = _keyed(interp, args[0], _as_array(value, "sort_by"))
    # Python's sort is stable: ties keep input order.
    pairs.sort(key=lambda pair: pair[0])
    yield [item for _, item in pairs]


@builtin("group_by", 1)
def _group_by(interp, args, value):
    pairs = _keyed(interp, args[0], _as_array(value, "group_by"))
    pairs.sort(key=lambda pair: pair[0])
    groups = []
    previous = object()
    for key, item in pairs:
        if key != previous:
            groups.append([])
            previous = key
        groups[-1].append(item)
    yield groups


@builtin("unique_by", 1)
def _unique_by(interp, args, value):
    pairs = _keyed(interp, args[0], _as_array(value, "unique_by"))
    pairs.sort(key=lambda pair: pair[0])
    result = []
    previous = object()
    for key, item in pairs:
        if key != previous:
            result.append(item)
            previous = key
    yield result


@builtin("min_by", 1)
def _min_by(interp, args, value):
    pairs = _keyed(interp, args[0], _as_array(value, "min_by"))
    yield min(pairs, key=lambda pair: pair[0])[1] if pairs else None


@builtin("max_by", 1)
def _max_by(interp, args, value):
    pairs = _keyed(interp, args[0], _as_array(value, "max_by"))
    # max() keeps the first of equal keys; jq keeps the last
    best = None
    for key, item in pairs:
        if best is None or key >= best[0]:
            best = (key, item)
    yield best[1] if best else None


@_with_arg("has")
def _has(value, key):
    if isinstance(value, dict) and isinstance(key, str):
        return key in value
    if isinstance(value, list) and isinstance(key, int) and not isinstance(key, bool):
        return 0 <= key < len(value)
    raise QueryRuntimeError(f"Cannot check whether {type_name(value)} has a {type_name(key)} key")


def _contains(a, b) -> bool:
    if isinstance(a, dict) and isinstance(b, dict):
        return all(k in a and _contains(a[k], v) for k, v in b.items())
    if isinstance(a, list) and isinstance(b, list):
        return all(any(_contains(x, y) for x in a) for y in b)
    if isinstance(a, str) and isinstance(b, str):
        return b in a
    if type_name(a) == type_name(b):
        return a == b
    raise QueryRuntimeError(f"{type_name(a)} and {type_name(b)} cannot have their containment checked")


@_with_arg("contains")
def _contains_builtin(value, other):
    return _contains(value, other)


@_with_arg("startswith")
def _startswith(value, prefix):
    return _as_string(value, "startswith").startswith(_as_string(prefix, "startswith"))


@_with_arg("endswith")
def _endswith(value, suffix):
    return _as_string(value, "endswith").endswith(_as_string(suffix, "endswith"))


@_with_arg("ltrimstr")
def _ltrimstr(value, prefix):
    if isinstance(value, str) and isinstance(prefix, str) and value.startswith(prefix):
        return value[len(prefix):]
    return value


@_with_arg("rtrimstr")
def _rtrimstr(value, suffix):
    if isinstance(value, str) and isinstance(suffix, str) and suffix and value.endswith(suffix):
        return value[: -len(suffix)]
    return value


@functools.lru_cache(maxsize=128)
def _compile_regex(pattern: str):
    try:
        return re.compile(pattern)
    except re.error as e:
        raise QueryRuntimeError(f"Invalid regular expression {pattern!r}: {e}") from None


@_with_arg("test")
def _test(value, pattern):
    regex = _compile_regex(_as_string(pattern, "test"))
    return regex.search(_as_string(value, "test")) is not None


@_with_arg("join")
def _join(value, separator):
    sep = _as_string(separator, "join")
    parts = []
    for item in _as_array(value, "join"):
        if item is None:
            parts.append("")
        elif isinstance(item, str):
            parts.append(item)
        elif isinstance(item, (int, float, bool)):
            parts.append(_tostring(item))
        else:
            raise QueryRuntimeError(f"Cannot join with {type_name(item)}")
    return sep.join(parts)


@_with_arg("split")
def _split(value, separator):
    text = _as_string(value, "split")
    sep = _as_string(separator, "split")
    if not sep:
        return list(text)
    return text.split(sep)


def _as_array(value, name: str) -> list:
    if isinstance(value, list):
        return value
    raise QueryRuntimeError(f"{name} expects an array, got {type_name(value)}")


def _iterable(value, name: str) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    if value is None:
        return []
    raise QueryRuntimeError(f"{name} expects an array or object, got {type_name(value)}")


def _as_string(value, name: str) -> str:
    if isinstance(value, str):
        return value
    raise QueryRuntimeError(f"{name} expects a string, got {type_name(value)}")


def _as_number(value, name: str):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    raise QueryRuntimeError(f"{name} expects a number, got {type_name(value)}")


# ── Operators ────────────────────────────────────────────────────────


@contextmanager
def _numeric_errors(name: str):
    """Report arithmetic the host numbers cannot represent as a query error."""
    try:
        yield
    except (OverflowError, ValueError) as e:
        raise QueryRuntimeError(f"{name}: {e}") from None


def _binop(op: str, left: Any, right: Any) -> Any:
    if op == "==":
        return sort_key(left) == sort_key(right)
    if op == "!=":
        return sort_key(left) != sort_key(right)
    if op == "<":
        return sort_key(left) < sort_key(right)
    if op == "<=":
        return sort_key(left) <= sort_key(right)
    if op == ">":
        return sort_key(left) > sort_key(right)
    if op == ">=":
        return sort_key(left) >= sort_key(right)

    lt, rt = type_name(left), type_name(right)

    if op == "+":
        if left is None:
            return right
        if right is None:
            return left
        if lt == rt == "number":
            return finite(left + right)
        if lt == rt == "string":
            return left + right
        if lt == rt == "array":
            return left + right
        if lt == rt == "object":
            return {**left, **right}
    elif op == "-":
        if lt == rt == "number":
            return finite(left - right)
        if lt == rt == "array":
            drop = [sort_key(v) for v in right]
            return [v for v in left if sort_key(v) not in drop]
    elif op == "*":
        if lt == rt == "number":
            return finite(left * right)
        if lt == rt == "object":
            return _deep_merge(left, right)
    elif op == "/":
        if lt == rt == "number":
            if right == 0:
                raise QueryRuntimeError(f"{_fmt(left)} and {_fmt(right)} cannot be divided because the divisor is zero")
            result = finite(left / right)
            if isinstance(result, float) and result.is_integer() and abs(result) <= _EXACT_INT:
                return int(result)
            return result
        if lt == rt == "string":
            return left.split(right) if right else list(left)
    elif op == "%":
        if lt == rt == "number":
            if int(right) == 0:
                raise QueryRuntimeError(f"{_fmt(left)} and {_fmt(right)} cannot be divided because the divisor is zero")
            return int(math.fmod(int(left), int(right)))

    raise QueryRuntimeError(f"{lt} ({_fmt(left)}) and {rt} ({_fmt(right)}) cannot be combined with {op!r}")


def _deep_merge(left: dict, right: dict) -> dict:
    result = dict(left)
    for key, value in right.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ── Compilation and evaluation ───────────────────────────────────────


def compile_filter(source: str) -> Node:
    """Parse and resolve a filter, raising InvalidQuery before anything runs."""
    try:
        tree = parse(source)
    except RecursionError:
        raise InvalidQuery("Filter nesting too deep", 0) from None
    _check_tree(tree)
    return tree


def _check_tree(tree: Node) -> None:
    """Resolve builtin calls and bound the tree depth, without recursing."""
    stack = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        if depth > MAX_DEPTH:
            raise InvalidQuery("Filter nesting too deep", node.pos)
        if isinstance(node, Call):
            arities = BUILTINS.get(node.name)
            if arities is None:
                raise InvalidQuery(f"Unknown function {node.name!r}", node.pos)
            if len(node.args) not in arities:
                raise InvalidQuery(f"{node.name}/{len(node.args)} is not defined", node.pos)
        stack.extend((child, depth + extra) for child, extra in _children(node))


def _children(node: Node) -> list:
    """Child nodes paired with how many levels deeper each one evaluates."""
    if isinstance(node, (Field, Iterate)):
        return [(node.target, 1)]
    if isinstance(node, Index):
        return [(node.target, 1), (node.index, 1)]
    if isinstance(node, Slice):
        return [(n, 1) for n in (node.target, node.start, node.end) if n is not None]
    if isinstance(node, Try):
        return [(node.body, 1)]
    if isinstance(node, ArrayCons):
        return [(node.body, 1)] if node.body is not None else []
    if isinstance(node, ObjectCons):
        return [(n, 1) for entry in node.entries for n in entry]
    if isinstance(node, Pipe):
        return [(n, 1) for n in node.stages]
    if isinstance(node, Comma):
        return [(n, 1) for n in node.items]
    if isinstance(node, (Alternative, And, Or, BinOp)):
        return [(node.left, 1), (node.right, 1)]
    if isinstance(node, Negate):
        return [(node.operand, 1)]
    if isinstance(node, If):
        nodes = [(n, i + 1) for i, branch in enumerate(node.branches) for n in branch]
        if node.otherwise is not None:
            nodes.append((node.otherwise, len(node.branches)))
        return nodes
    if isinstance(node, Call):
        return [(n, 1) for n in node.args]
    return []


class Interpreter:
    """Evaluates compiled expressions under a step and wall-clock budget."""

    def __init__(self, budget: QueryBudget):
        self.budget = budget
        self.steps = 0
        self.started = time.monotonic()
        self.deadline = self.started + budget.timeout
        # id -> (container, weight); holding the container keeps its id unique
        self._weights: dict[int, tuple] = {}
        self._dispatch = {
            Identity: self._identity,
            Recurse: self._recurse,
            Literal: self._literal,
            Field: self._field,
            Index: self._index,
            Slice: self._slice,
            Iterate: self._iterate,
            Try: self._try,
            ArrayCons: self._array,
            ObjectCons: self._object,
            Pipe: self._pipe,
            Comma: self._comma,
            Alternative: self._alternative,
            And: self._and,
            Or: self._or,
            BinOp: self._binop,
            Negate: self._negate,
            If: self._if,
            Call: self._call,
        }

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def tick(self, cost: int = 1) -> None:
        self.steps += cost
        if self.steps > self.budget.max_steps:
            raise BudgetExceeded(f"Query exceeded the step budget of {self.budget.max_steps}")
        if time.monotonic() > self.deadline:
            raise BudgetExceeded(f"Query exceeded the time budget of {self.budget.timeout}s")

    def weight(self, value: Any) -> int:
        """Serialized size of ``value`` in steps, counting shared parts once per use."""
        if isinstance(value, str):
            return 1 + len(value) // _CHARS_PER_STEP
        if not isinstance(value, (list, dict)):
            return 1
        known = self._weights.get(id(value))
        if known is not None:
            return known[1]
        items = value if isinstance(value, list) else value.values()
        total = 1 + sum(self.weight(item) for item in items)
        self._weights[id(value)] = (value, total)
        return total

    def charge(self, value: Any) -> Any:
        """Charge steps for a value being built or returned, then return it."""
        if isinstance(value, str):
            cost = len(value) // _CHARS_PER_STEP
        elif isinstance(value, (list, dict)):
            cost = self.weight(value)
        else:
            return value
        if cost:
            self.tick(cost)
        return value

    def release(self) -> None:
        """Forget remembered weights once no built value can be reused."""
        self._weights.clear()

    def eval(self, node: Node, value: Any) -> Iterator[Any]:
        self.tick()
        return self._dispatch[type(node)](node, value)

    # ── Node handlers ────────────────────────────────────────────────

    def _identity(self, node, value):
        yield value

    def _recurse(self, node, value):
        stack = [value]
        while stack:
            self.tick()
            current = stack.pop()
            yield current
            if isinstance(current, list):
                stack.extend(reversed(current))
            elif isinstance(current, dict):
                stack.extend(reversed(list(current.values())))

    def _literal(self, node, value):
        yield node.value

    def _field(self, node, value):
        for target in self.eval(node.target, value):
            if target is None:
                yield None
            elif isinstance(target, dict):
                yield target.get(node.name)
            else:
                raise QueryRuntimeError(f"Cannot index {type_name(target)} with \"{node.name}\"")

    def _index(self, node, value):
        for target in self.eval(node.target, value):
            for index in self.eval(node.index, value):
                with _numeric_errors("index"):
                    out = _lookup(target, index)
                yield out

    def _slice(self, node, value):
        starts = list(self.eval(node.start, value)) if node.start is not None else [None]
        ends = list(self.eval(node.end, value)) if node.end is not None else [None]
        for target in self.eval(node.target, value):
            for start in starts:
                for end in ends:
                    with _numeric_errors("slice"):
                        out = _slice(target, start, end)
                    yield self.charge(out)

    def _iterate(self, node, value):
        for target in self.eval(node.target, value):
            if isinstance(target, list):
                yield from target
            elif isinstance(target, dict):
                yield from target.values()
            else:
                raise QueryRuntimeError(f"Cannot iterate over {type_name(target)}")

    def _try(self, node, value):
        try:
            yield from self.eval(node.body, value)
        except QueryRuntimeError:
            return

    def _array(self, node, value):
        if node.body is None:
            yield []
        else:
            yield self.charge(list(self.eval(node.body, value)))

    def _object(self, node, value):
        results = [{}]
        for key_node, value_node in node.entries:
            expanded = []
            for partial in results:
                for key in self.eval(key_node, value):
                    if not isinstance(key, str):
                        raise QueryRuntimeError(f"Object keys must be strings, got {type_name(key)}")
                    for item in self.eval(value_node, value):
                        expanded.append(self.charge({**partial, key: item}))
            results = expanded
        yield from results

    def _pipe(self, node, value):
        # One output stream per stage, advanced without nesting generators.
        stages = node.stages
        streams = [self.eval(stages[0], value)]
        while streams:
            try:
                out = next(streams[-1])
            except StopIteration:
                streams.pop()
                continue
            if len(streams) == len(stages):
                yield out
            else:
                streams.append(self.eval(stages[len(streams)], out))

    def _comma(self, node, value):
        for item in node.items:
            yield from self.eval(item, value)

    def _alternative(self, node, value):
        produced = False
        try:
            for out in self.eval(node.left, value):
                if truthy(out):
                    produced = True
                    yield out
        except QueryRuntimeError:
            pass
        if not produced:
            yield from self.eval(node.right, value)

    def _and(self, node, value):
        for left in self.eval(node.left, value):
            if not truthy(left):
                yield False
                continue
            for right in self.eval(node.right, value):
                yield truthy(right)

    def _or(self, node, value):
        for left in self.eval(node.left, value):
            if truthy(left):
                yield True
                continue
            for right in self.eval(node.right, value):
                yield truthy(right)

    def _binop(self, node, value):
        for right in self.eval(node.right, value):
            for left in self.eval(node.left, value):
                with _numeric_errors(node.op):
                    out = _binop(node.op, left, right)
                yield self.charge(out)

    def _negate(self, node, value):
        for operand in self.eval(node.operand, value):
            yield finite(-_as_number(operand, "negation"))

    def _if(self, node, value):
        yield from self._branch(node, 0, value)

    def _branch(self, node, i, value):
        if i == len(node.branches):
            if node.otherwise is None:
                yield value
            else:
                yield from self.eval(node.otherwise, value)
            return
        cond_node, body = node.branches[i]
        for cond in self.eval(cond_node, value):
            if truthy(cond):
                yield from self.eval(body, value)
            else:
                yield from self._branch(node, i + 1, value)

    def _call(self, node, value):
        outputs = BUILTINS[node.name][len(node.args)](self, node.args, value)
        with _numeric_errors(node.name):
            for out in outputs:
                yield out if out is value else self.charge(out)


def _lookup(target: Any, index: Any) -> Any:
    if target is None:
        return None
    if isinstance(target, dict) and isinstance(index, str):
        return target.get(index)
    if isinstance(target, list) and isinstance(index, (int, float)) and not isinstance(index, bool):
        i = math.floor(index)
        if i < 0:
            i += len(target)
        return target[i] if 0 <= i < len(target) else None
    raise QueryRuntimeError(f"Cannot index {type_name(target)} with {type_name(index)}")


def _slice(target: Any, start: Any, end: Any) -> Any:
    if target is None:
        return None
    if not isinstance(target, (list, str)):
        raise QueryRuntimeError(f"Cannot slice {type_name(target)}")
    for bound in (start, end):
        if bound is not None and (not isinstance(bound, (int, float)) or isinstance(bound, bool)):
            raise QueryRuntimeError("Slice bounds must be numbers")
    lo = None if start is None else math.floor(start)
    hi = None if end is None else math.ceil(end)
    return target[lo:hi]
