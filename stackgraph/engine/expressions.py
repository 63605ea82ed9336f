"""
Expression trees and their evaluation.

Templates are compiled into these nodes by ``stackgraph.parsers.expression``.
Evaluation happens against a Scope: the caller's Context (``var.``), the
template locals (``local.``), resources resolved so far, and per-instance
bindings (``count.index``, ``each.key``, ``self``).
"""
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from stackgraph.errors import (
    CycleDetectedError,
    TypeMismatchError,
    UnresolvedReferenceError,
)

# Reference kinds yielded by Expression.references()
REF_NODE = "node"
REF_LOCAL = "local"
REF_INVALID = "invalid"

_INSTANCE_ROOTS = {"var", "count", "each", "self"}


class _Computed:
    """A value only the provider can know; stands in for it during a dry-run."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Computed, ())


COMPUTED = _Computed()


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "list"
    return type(value).__name__


def normalize_number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def contains_computed(value: Any) -> bool:
    if value is COMPUTED:
        return True
    if isinstance(value, Mapping):
        return any(contains_computed(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_computed(v) for v in value)
    return False


class InstanceValues(dict):
    """Attribute view of one resolved instance; planned instances answer COMPUTED for unknown keys."""

    def __init__(self, values: Mapping, planned: bool = False):
        super().__init__(values)
        self.planned = planned


# ------------------------------------------------------------------ scope

class Scope:
    def __init__(
        self,
        context: Mapping,
        locals_: Optional[Mapping[str, Any]] = None,
        resolver: Optional[Callable[[str], Any]] = None,
    ):
        self.context = context
        self.locals = locals_ or {}
        self.resolver = resolver
        self.bindings: Dict[str, Any] = {}
        self.count_index: Optional[int] = None
        self.each: Optional[Tuple[Any, Any]] = None
        self.self_value: Optional[Mapping] = None
        self._locals_in_progress: List[str] = []

    def _copy(self) -> "Scope":
        child = Scope(self.context, self.locals, self.resolver)
        child.bindings = dict(self.bindings)
        child.count_index = self.count_index
        child.each = self.each
        child.self_value = self.self_value
        child._locals_in_progress = self._locals_in_progress
        return child

    def bind(self, **names: Any) -> "Scope":
        child = self._copy()
        child.bindings.update(names)
        return child

    def for_count(self, index: int) -> "Scope":
        child = self._copy()
        child.count_index = index
        return child

    def for_each_item(self, key: Any, value: Any) -> "Scope":
        child = self._copy()
        child.each = (key, value)
        return child

    def with_self(self, values: Mapping) -> "Scope":
        child = self._copy()
        child.self_value = values
        return child

    # -------------------------------------------------------------- roots

    def local(self, name: str) -> Any:
        if name not in self.locals:
            raise UnresolvedReferenceError(f"local.{name}", "no such local value")
        if name in self._locals_in_progress:
            path = self._locals_in_progress[self._locals_in_progress.index(name):] + [name]
            raise CycleDetectedError([f"local.{n}" for n in path])
        # locals never see per-instance bindings
        root = Scope(self.context, self.locals, self.resolver)
        root._locals_in_progress = self._locals_in_progress
        self._locals_in_progress.append(name)
        try:
            return evaluate_value(self.locals[name], root)
        finally:
            self._locals_in_progress.pop()

    def node(self, address: str) -> Any:
        if self.resolver is None:
            raise UnresolvedReferenceError(address, "not yet resolved")
        return self.resolver(address)

    def lookup_root(self, root: str, steps: Sequence["Step"]) -> Tuple[Any, Sequence["Step"], str]:
        """Resolve a traversal root; returns (value, remaining steps, label)."""
        if root in self.bindings:
            return self.bindings[root], steps, root
        if root == "var":
            return self.context, steps, "var"
        if root == "self":
            if self.self_value is None:
                raise UnresolvedReferenceError("self", "only valid inside postconditions")
            return self.self_value, steps, "self"

        names = _leading_names(steps)
        if root == "local":
            if not names:
                raise UnresolvedReferenceError("local", "missing local name")
            return self.local(names[0]), steps[1:], f"local.{names[0]}"
        if root == "count":
            if self.count_index is None or names[:1] != ["index"]:
                raise UnresolvedReferenceError("count.index", "only valid in resources with count")
            return self.count_index, steps[1:], "count.index"
        if root == "each":
            if self.each is None or not names or names[0] not in ("key", "value"):
                raise UnresolvedReferenceError("each", "only valid in resources with for_each")
            return self.each[0 if names[0] == "key" else 1], steps[1:], f"each.{names[0]}"
        if root == "data":
            if len(names) < 2:
                raise UnresolvedReferenceError("data", "expected data.<kind>.<name>")
            address = f"data.{names[0]}.{names[1]}"
            return self.node(address), steps[2:], address
        if not names:
            raise UnresolvedReferenceError(root, "expected <kind>.<name>")
        address = f"{root}.{names[0]}"
        return self.node(address), steps[1:], address


# ------------------------------------------------------------------ tree

class Expression:
    def evaluate(self, scope: Scope) -> Any:
        raise NotImplementedError

    def children(self) -> Iterator["Expression"]:
        return iter(())

    def references(self, bound: frozenset = frozenset()) -> Iterator[Tuple[str, str]]:
        for child in self.children():
            yield from child.references(bound)

    def __eq__(self, other: Any) -> bool:
        return type(self) is type(other) and self.__dict__ == other.__dict__


class Literal(Expression):
    def __init__(self, value: Any):
        self.value = value

    def evaluate(self, scope: Scope) -> Any:
        return self.value

    def __repr__(self) -> str:
        return f"Literal({self.value!r})"


class GetAttr:
    def __init__(self, name: str):
        self.name = name

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, GetAttr) and other.name == self.name

    def __repr__(self) -> str:
        return f".{self.name}"


class Index:
    def __init__(self, key: Expression):
        self.key = key

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Index) and other.key == self.key

    def __repr__(self) -> str:
        return f"[{self.key!r}]"


Step = Any  # GetAttr | Index


def _leading_names(steps: Sequence[Step]) -> List[str]:
    names = []
    for step in steps:
        if not isinstance(step, GetAttr):
            break
        names.append(step.name)
    return names


def _get_item(value: Any, key: Any, label: str) -> Any:
    if value is None:
        raise UnresolvedReferenceError(label, "attempt to read from a null value")
    if isinstance(value, Mapping):
        if not isinstance(key, str):
            raise TypeMismatchError(f"{label}: object keys must be strings, got {type_name(key)}")
        if key in value:
            return value[key]
        if getattr(value, "planned", False):
            return COMPUTED
        raise UnresolvedReferenceError(f"{label}.{key}", "no such attribute")
    if isinstance(value, (list, tuple)):
        if isinstance(key, float) and key.is_integer():
            key = int(key)
        if not isinstance(key, int) or isinstance(key, bool):
            raise TypeMismatchError(f"{label}: list index must be a number, got {type_name(key)}")
        if not 0 <= key < len(value):
            raise UnresolvedReferenceError(f"{label}[{key}]", f"index out of range for {len(value)} element(s)")
        return value[key]
    raise TypeMismatchError(f"{label}: cannot index a {type_name(value)}")


def apply_steps(value: Any, steps: Sequence[Step], scope: Scope, label: str) -> Any:
    for step in steps:
        if value is COMPUTED:
            return COMPUTED
        if isinstance(step, GetAttr):
            key = step.name
            value = _get_item(value, key, label)
            label = f"{label}.{key}"
        else:
            key = step.key.evaluate(scope)
            if key is COMPUTED:
                return COMPUTED
            value = _get_item(value, key, label)
            label = f"{label}[{key!r}]"
    return value


def _step_references(steps: Sequence[Step], bound: frozenset) -> Iterator[Tuple[str, str]]:
    for step in steps:
        if isinstance(step, Index):
            yield from step.key.references(bound)


class Traversal(Expression):
    """A dotted reference such as ``var.storage.size`` or ``aws_db_instance.primary.address``."""

    def __init__(self, root: str, steps: Sequence[Step] = ()):
        self.root = root
        self.steps = list(steps)

    def evaluate(self, scope: Scope) -> Any:
        value, steps, label = scope.lookup_root(self.root, self.steps)
        return apply_steps(value, steps, scope, label)

    def references(self, bound: frozenset = frozenset()) -> Iterator[Tuple[str, str]]:
        yield from _step_references(self.steps, bound)
        if self.root in bound or self.root in _INSTANCE_ROOTS:
            return
        names = _leading_names(self.steps)
        if self.root == "local":
            if names:
                yield REF_LOCAL, names[0]
            else:
                yield REF_INVALID, "local"
        elif self.root == "data":
            if len(names) >= 2:
                yield REF_NODE, f"data.{names[0]}.{names[1]}"
            else:
                yield REF_INVALID, ".".join(["data"] + names)
        elif names:
            yield REF_NODE, f"{self.root}.{names[0]}"
        else:
            yield REF_INVALID, self.root

    def __repr__(self) -> str:
        return f"Traversal({self.root!r}, {self.steps!r})"


class Postfix(Expression):
    """Attribute or index access applied to an arbitrary expression, e.g. ``split(",", x)[0]``."""

    def __init__(self, target: Expression, steps: Sequence[Step]):
        self.target = target
        self.steps = list(steps)

    def evaluate(self, scope: Scope) -> Any:
        return apply_steps(self.target.evaluate(scope), self.steps, scope, "expression")

    def references(self, bound: frozenset = frozenset()) -> Iterator[Tuple[str, str]]:
        yield from self.target.references(bound)
        yield from _step_references(self.steps, bound)


class TemplateString(Expression):
    """String interpolation: literal text and expressions concatenated."""

    def __init__(self, parts: Sequence[Any]):
        self.parts = list(parts)

    def children(self) -> Iterator[Expression]:
        return (p for p in self.parts if isinstance(p, Expression))

    def evaluate(self, scope: Scope) -> Any:
        out = []
        for part in self.parts:
            if not isinstance(part, Expression):
                out.append(part)
                continue
            value = part.evaluate(scope)
            if value is COMPUTED:
                return COMPUTED
            out.append(to_string(value, "template interpolation"))
        return "".join(out)


def to_string(value: Any, where: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return str(normalize_number(value))
    if value is None:
        raise TypeMismatchError(f"{where}: cannot convert null to string")
    raise TypeMismatchError(f"{where}: cannot convert {type_name(value)} to string")


class ListExpr(Expression):
    def __init__(self, items: Sequence[Expression]):
        self.items = list(items)

    def children(self) -> Iterator[Expression]:
        return iter(self.items)

    def evaluate(self, scope: Scope) -> Any:
        return [item.evaluate(scope) for item in self.items]


class ObjectExpr(Expression):
    def __init__(self, pairs: Sequence[Tuple[Expression, Expression]]):
        self.pairs = list(pairs)

    def children(self) -> Iterator[Expression]:
        for key, value in self.pairs:
            yield key
            yield value

    def evaluate(self, scope: Scope) -> Any:
        result = {}
        for key_expr, value_expr in self.pairs:
            key = key_expr.evaluate(scope)
            if key is COMPUTED:
                return COMPUTED
            result[to_string(key, "object key")] = value_expr.evaluate(scope)
        return result


class Unary(Expression):
    def __init__(self, op: str, operand: Expression):
        self.op = op
        self.operand = operand

    def children(self) -> Iterator[Expression]:
        yield self.operand

    def evaluate(self, scope: Scope) -> Any:
        value = self.operand.evaluate(scope)
        if value is COMPUTED:
            return COMPUTED
        if self.op == "!":
            if not isinstance(value, bool):
                raise TypeMismatchError(f"operator ! expects a bool, got {type_name(value)}")
            return not value
        if not is_number(value):
            raise TypeMismatchError(f"operator - expects a number, got {type_name(value)}")
        return -value


def values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if not (is_number(left) and is_number(right)):
        raise TypeMismatchError(
            f"operator {op} expects numbers, got {type_name(left)} and {type_name(right)}"
        )
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise TypeMismatchError(f"operator {op}: division by zero")
    if op == "/":
        return normalize_number(left / right)
    return normalize_number(left % right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if not (is_number(left) and is_number(right)):
        raise TypeMismatchError(
            f"operator {op} expects numbers, got {type_name(left)} and {type_name(right)}"
        )
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _expect_bool(op: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeMismatchError(f"operator {op} expects bools, got {type_name(value)}")
    return value


class Binary(Expression):
    def __init__(self, op: str, left: Expression, right: Expression):
        self.op = op
        self.left = left
        self.right = right

    def children(self) -> Iterator[Expression]:
        yield self.left
        yield self.right

    def evaluate(self, scope: Scope) -> Any:
        op = self.op
        left = self.left.evaluate(scope)

        if op in ("&&", "||"):
            if left is COMPUTED:
                return COMPUTED
            if _expect_bool(op, left) == (op == "||"):
                return left
            right = self.right.evaluate(scope)
            return right if right is COMPUTED else _expect_bool(op, right)

        right = self.right.evaluate(scope)
        if left is COMPUTED or right is COMPUTED:
            return COMPUTED
        if op == "==":
            return values_equal(left, right)
        if op == "!=":
            return not values_equal(left, right)
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        return _arithmetic(op, left, right)

    def __repr__(self) -> str:
        return f"Binary({self.op!r}, {self.left!r}, {self.right!r})"


class Conditional(Expression):
    """``cond ? a : b``; only the chosen branch is evaluated."""

    def __init__(self, condition: Expression, then: Expression, otherwise: Expression):
        self.condition = condition
        self.then = then
        self.otherwise = otherwise

    def children(self) -> Iterator[Expression]:
        yield self.condition
        yield self.then
        yield self.otherwise

    def evaluate(self, scope: Scope) -> Any:
        cond = self.condition.evaluate(scope)
        if cond is COMPUTED:
            return COMPUTED
        if not isinstance(cond, bool):
            raise TypeMismatchError(f"condition must be a bool, got {type_name(cond)}")
        return self.then.evaluate(scope) if cond else self.otherwise.evaluate(scope)


class Call(Expression):
    def __init__(self, name: str, args: Sequence[Expression]):
        self.name = name
        self.args = list(args)

    def children(self) -> Iterator[Expression]:
        return iter(self.args)

    def evaluate(self, scope: Scope) -> Any:
        from stackgraph.engine import functions

        lazy = functions.LAZY_FUNCTIONS.get(self.name)
        if lazy is not None:
            return lazy(self.args, scope)
        fn = functions.FUNCTIONS.get(self.name)
        if fn is None:
            raise TypeMismatchError(f"unknown function {self.name}()")
        args = [arg.evaluate(scope) for arg in self.args]
        if self.name != "coalesce" and any(a is COMPUTED for a in args):
            return COMPUTED
        try:
            return fn(*args)
        except TypeError as exc:
            raise TypeMismatchError(f"{self.name}(): {exc}") from exc

    def __repr__(self) -> str:
        return f"Call({self.name!r}, {self.args!r})"


class ForExpr(Expression):
    """``[for k, v in coll : expr if cond]`` and ``{for k, v in coll : kexpr => vexpr}``."""

    def __init__(
        self,
        key_var: Optional[str],
        value_var: str,
        collection: Expression,
        value: Expression,
        condition: Optional[Expression] = None,
        key: Optional[Expression] = None,
    ):
        self.key_var = key_var
        self.value_var = value_var
        self.collection = collection
        self.value = value
        self.condition = condition
        self.key = key

    def children(self) -> Iterator[Expression]:
        yield self.collection

    def references(self, bound: frozenset = frozenset()) -> Iterator[Tuple[str, str]]:
        yield from self.collection.references(bound)
        inner = bound | {self.value_var} | ({self.key_var} if self.key_var else set())
        for expr in (self.value, self.condition, self.key):
            if expr is not None:
                yield from expr.references(inner)

    def _items(self, collection: Any) -> List[Tuple[Any, Any]]:
        if isinstance(collection, Mapping):
            return [(k, collection[k]) for k in sorted(collection, key=str)]
        if isinstance(collection, (list, tuple)):
            return list(enumerate(collection))
        raise TypeMismatchError(f"for expression needs a list or object, got {type_name(collection)}")

    def evaluate(self, scope: Scope) -> Any:
        collection = self.collection.evaluate(scope)
        if collection is COMPUTED:
            return COMPUTED
        out_list: List[Any] = []
        out_map: Dict[str, Any] = {}
        for k, v in self._items(collection):
            names = {self.value_var: v}
            if self.key_var:
                names[self.key_var] = k
            inner = scope.bind(**names)
            if self.condition is not None:
                keep = self.condition.evaluate(inner)
                if keep is COMPUTED:
                    return COMPUTED
                if not isinstance(keep, bool):
                    raise TypeMismatchError(f"for expression filter must be a bool, got {type_name(keep)}")
                if not keep:
                    continue
            if self.key is None:
                out_list.append(self.value.evaluate(inner))
            else:
                out_map[to_string(self.key.evaluate(inner), "for expression key")] = self.value.evaluate(inner)
        return out_list if self.key is None else out_map


# ------------------------------------------------------------------ helpers

def evaluate_value(raw: Any, scope: Scope) -> Any:
    """Evaluate a compiled attribute tree: expressions anywhere inside lists and mappings."""
    if isinstance(raw, Expression):
        return raw.evaluate(scope)
    if isinstance(raw, Mapping):
        return {k: evaluate_value(v, scope) for k, v in raw.items()}
    if isinstance(raw, (list, tuple)):
        return [evaluate_value(v, scope) for v in raw]
    return raw


def collect_references(raw: Any, bound: frozenset = frozenset()) -> Set[Tuple[str, str]]:
    refs: Set[Tuple[str, str]] = set()
    if isinstance(raw, Expression):
        refs.update(raw.references(bound))
    elif isinstance(raw, Mapping):
        for v in raw.values():
            refs |= collect_references(v, bound)
    elif isinstance(raw, (list, tuple)):
        for v in raw:
            refs |= collect_references(v, bound)
    return refs


def evaluate(raw: Any, context: Optional[Mapping] = None, locals_: Optional[Mapping] = None) -> Any:
    """Evaluate ``raw`` against a bare Context (no resources resolved)."""
    return evaluate_value(raw, Scope(context or {}, locals_))
