"""
Conditional materialization: how many instances of a node exist.

``count`` takes a bool (0 or 1 instance) or a non-negative integer;
``for_each`` takes an object (one instance per key) or a list of strings.
A node without a predicate whose dependencies all came out empty is
skipped rather than failing: it only existed to serve them.
"""
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from stackgraph.engine.expressions import COMPUTED, Scope, contains_computed, evaluate_value, type_name
from stackgraph.errors import InvalidCountError, TypeMismatchError
from stackgraph.models.resource import ResourceNode


@dataclass(frozen=True)
class Instance:
    key: Any = None                # None, count index, or for_each key
    each_value: Any = None

    def scope(self, node: ResourceNode, scope: Scope) -> Scope:
        if node.count is not None:
            return scope.for_count(self.key)
        if node.for_each is not None:
            return scope.for_each_item(self.key, self.each_value)
        return scope


@dataclass
class Materialization:
    instances: List[Instance]
    reason: Optional[str] = None   # why a node has no instances

    @property
    def skipped(self) -> bool:
        return not self.instances


def _count_instances(node: ResourceNode, value: Any) -> List[Instance]:
    if value is COMPUTED:
        raise InvalidCountError(node.address, value, "depends on values known only after apply")
    if isinstance(value, bool):
        return [Instance(0)] if value else []
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise TypeMismatchError(f"{node.address}: count must be a bool or number, got {type_name(value)}")
    if value < 0:
        raise InvalidCountError(node.address, value, "count cannot be negative")
    return [Instance(i) for i in range(value)]


def _for_each_instances(node: ResourceNode, value: Any) -> List[Instance]:
    if contains_computed(value):
        raise InvalidCountError(node.address, value, "depends on values known only after apply")
    if isinstance(value, Mapping):
        return [Instance(k, value[k]) for k in sorted(value, key=str)]
    if isinstance(value, (list, tuple, set)):
        for item in value:
            if not isinstance(item, str):
                raise TypeMismatchError(
                    f"{node.address}: for_each over a list needs strings, got {type_name(item)}"
                )
        return [Instance(k, k) for k in sorted(set(value))]
    raise TypeMismatchError(f"{node.address}: for_each must be an object or list, got {type_name(value)}")


def materialize(node: ResourceNode, scope: Scope, instance_counts: Mapping[str, int]) -> Materialization:
    """
    Evaluate a node's instantiation predicate.

    ``instance_counts`` maps every already-processed node address to the
    number of instances it materialized. Identical inputs always give
    identical instance keys.
    """
    if node.count is not None:
        instances = _count_instances(node, evaluate_value(node.count, scope))
        return Materialization(instances, None if instances else "count is 0")

    if node.for_each is not None:
        instances = _for_each_instances(node, evaluate_value(node.for_each, scope))
        return Materialization(instances, None if instances else "for_each is empty")

    if node.dependencies and all(instance_counts.get(d, 0) == 0 for d in node.dependencies):
        return Materialization([], "all dependencies have zero instances")

    return Materialization([Instance()])
