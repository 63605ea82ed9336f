"""
Built-in functions callable from template expressions.

``coalesce`` treats only null as absent: the empty string is a value.
``compact`` is the filtering operation and drops both null and "".
"""
import math
from typing import Any, Callable, Dict, List, Mapping, Sequence

from stackgraph.engine.expressions import (
    Expression,
    Scope,
    is_number,
    normalize_number,
    to_string,
    type_name,
    values_equal,
)
from stackgraph.errors import EvaluationError, TypeMismatchError, UnresolvedReferenceError


def _expect(fn: str, value: Any, kind: str) -> Any:
    ok = {
        "string": isinstance(value, str),
        "number": is_number(value),
        "list": isinstance(value, (list, tuple)),
        "object": isinstance(value, Mapping),
    }[kind]
    if not ok:
        raise TypeMismatchError(f"{fn}() expects a {kind}, got {type_name(value)}")
    return value


# ------------------------------------------------------------------ lazy

def try_(args: Sequence[Expression], scope: Scope) -> Any:
    """Return the first argument that evaluates without an evaluation error."""
    if not args:
        raise TypeMismatchError("try() needs at least one argument")
    last_error = None
    for arg in args:
        try:
            return arg.evaluate(scope)
        except EvaluationError as exc:
            last_error = exc
    raise last_error


def can(args: Sequence[Expression], scope: Scope) -> bool:
    if len(args) != 1:
        raise TypeMismatchError("can() takes exactly one argument")
    try:
        args[0].evaluate(scope)
    except EvaluationError:
        return False
    return True


# ------------------------------------------------------------------ eager

def coalesce(*args: Any) -> Any:
    for arg in args:
        if arg is not None:
            return arg
    raise TypeMismatchError("coalesce() received no non-null arguments")


def compact(values: Any) -> List[Any]:
    _expect("compact", values, "list")
    return [v for v in values if v is not None and v != ""]


def length(value: Any) -> int:
    if isinstance(value, (str, list, tuple, Mapping)):
        return len(value)
    raise TypeMismatchError(f"length() expects a string, list or object, got {type_name(value)}")


def lower(value: Any) -> str:
    return _expect("lower", value, "string").lower()


def upper(value: Any) -> str:
    return _expect("upper", value, "string").upper()


def format_(fmt: Any, *args: Any) -> str:
    _expect("format", fmt, "string")
    if any(a is None for a in args):
        raise TypeMismatchError("format() cannot format null")
    converted = tuple(
        normalize_number(a) if is_number(a) else to_string(a, "format()") if isinstance(a, bool) else a
        for a in args
    )
    try:
        return fmt.replace("%v", "%s") % converted
    except (TypeError, ValueError) as exc:
        raise TypeMismatchError(f"format(): {exc}") from exc


def join(separator: Any, values: Any) -> str:
    _expect("join", separator, "string")
    _expect("join", values, "list")
    return separator.join(to_string(v, "join()") for v in values)


def split(separator: Any, value: Any) -> List[str]:
    _expect("split", separator, "string")
    _expect("split", value, "string")
    return value.split(separator) if value else [""]


def concat(*lists: Any) -> List[Any]:
    out: List[Any] = []
    for value in lists:
        out.extend(_expect("concat", value, "list"))
    return out


def merge(*maps: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for value in maps:
        if value is None:
            continue
        out.update(_expect("merge", value, "object"))
    return out


def lookup(mapping: Any, key: Any, *default: Any) -> Any:
    _expect("lookup", mapping, "object")
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise UnresolvedReferenceError(f"lookup({key!r})", "key not found and no default given")


def contains(values: Any, value: Any) -> bool:
    _expect("contains", values, "list")
    return any(values_equal(v, value) for v in values)


def keys(mapping: Any) -> List[str]:
    return sorted(_expect("keys", mapping, "object"), key=str)


def values(mapping: Any) -> List[Any]:
    _expect("values", mapping, "object")
    return [mapping[k] for k in sorted(mapping, key=str)]


def element(values: Any, index: Any) -> Any:
    _expect("element", values, "list")
    _expect("element", index, "number")
    if not values:
        raise UnresolvedReferenceError("element()", "cannot use element() with an empty list")
    return values[int(index) % len(values)]


def min_(*numbers: Any) -> Any:
    if not numbers:
        raise TypeMismatchError("min() needs at least one argument")
    return min(_expect("min", n, "number") for n in numbers)


def max_(*numbers: Any) -> Any:
    if not numbers:
        raise TypeMismatchError("max() needs at least one argument")
    return max(_expect("max", n, "number") for n in numbers)


def floor(value: Any) -> int:
    return math.floor(_expect("floor", value, "number"))


def ceil(value: Any) -> int:
    return math.ceil(_expect("ceil", value, "number"))


def tostring(value: Any) -> Any:
    if value is None:
        return None
    return to_string(value, "tostring()")


def tonumber(value: Any) -> Any:
    if value is None or is_number(value):
        return value
    if isinstance(value, str):
        try:
            return normalize_number(float(value)) if any(c in value for c in ".eE") else int(value)
        except ValueError as exc:
            raise TypeMismatchError(f"tonumber(): cannot convert {value!r} to a number") from exc
    raise TypeMismatchError(f"tonumber(): cannot convert {type_name(value)} to a number")


def tobool(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise TypeMismatchError(f"tobool(): cannot convert {value!r} to a bool")


def replace(value: Any, old: Any, new: Any) -> str:
    for arg in (value, old, new):
        _expect("replace", arg, "string")
    return value.replace(old, new)


def substr(value: Any, offset: Any, size: Any) -> str:
    _expect("substr", value, "string")
    _expect("substr", offset, "number")
    _expect("substr", size, "number")
    offset = int(offset)
    if size < 0:
        return value[offset:]
    return value[offset:offset + int(size)]


def startswith(value: Any, prefix: Any) -> bool:
    return _expect("startswith", value, "string").startswith(_expect("startswith", prefix, "string"))


def endswith(value: Any, suffix: Any) -> bool:
    return _expect("endswith", value, "string").endswith(_expect("endswith", suffix, "string"))


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "coalesce": coalesce,
    "compact": compact,
    "concat": concat,
    "contains": contains,
    "ceil": ceil,
    "element": element,
    "endswith": endswith,
    "floor": floor,
    "format": format_,
    "join": join,
    "keys": keys,
    "length": length,
    "lookup": lookup,
    "lower": lower,
    "max": max_,
    "merge": merge,
    "min": min_,
    "replace": replace,
    "split": split,
    "startswith": startswith,
    "substr": substr,
    "tobool": tobool,
    "tonumber": tonumber,
    "tostring": tostring,
    "upper": upper,
    "values": values,
}

LAZY_FUNCTIONS = {"try": try_, "can": can}
