"""
Dependency-ordered execution of a resource graph.

Nodes are processed one at a time in a stable topological order. For each
node the executor materializes its instances, evaluates their attributes,
calls the provider adapter, and checks postconditions. The first failure
halts the run; everything resolved before it stays in the partial result
carried by the error. Nothing is rolled back.
"""
import heapq
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional

from stackgraph.engine import postconditions
from stackgraph.engine.expressions import InstanceValues, Scope, contains_computed, evaluate_value
from stackgraph.engine.graph import ResourceGraph, build_graph
from stackgraph.engine.materializer import Instance, materialize
from stackgraph.errors import (
    CycleDetectedError,
    EvaluationError,
    ExecutionError,
    ProvisioningError,
    UnresolvedReferenceError,
)
from stackgraph.models.context import Context
from stackgraph.models.resource import ResolvedResource, ResourceNode, instance_address
from stackgraph.models.result import ExecutionResult
from stackgraph.models.template import Template
from stackgraph.providers.base import ProviderAdapter, ProvisionRequest

EVENT_START = "start"
EVENT_RESOLVED = "resolved"
EVENT_SKIPPED = "skipped"

EventHook = Callable[[str, str, Any], None]


def stable_topological_order(graph: ResourceGraph) -> List[str]:
    """Kahn's algorithm; among ready nodes the one declared first goes first."""
    position = {a: i for i, a in enumerate(graph.declaration_order)}
    indegree = {a: len(graph.nodes[a].dependencies) for a in graph.declaration_order}
    dependents: Dict[str, List[str]] = defaultdict(list)
    for address in graph.declaration_order:
        for dep in graph.nodes[address].dependencies:
            dependents[dep].append(address)

    ready = [(position[a], a) for a, n in indegree.items() if n == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, address = heapq.heappop(ready)
        order.append(address)
        for dependent in dependents[address]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(order) != len(graph.declaration_order):
        raise CycleDetectedError([a for a in graph.declaration_order if indegree[a] > 0])
    return order


def instance_values(resource: ResolvedResource) -> InstanceValues:
    return InstanceValues(resource.values(), planned=resource.planned)


class Executor:
    def __init__(
        self,
        template: Template,
        provider: ProviderAdapter,
        context: Optional[Mapping[str, Any]] = None,
        dry_run: bool = False,
        on_event: Optional[EventHook] = None,
        quiet: bool = False,
    ):
        # graph errors surface here, before any provider call
        self.graph = build_graph(template)
        self.template = template
        self.provider = provider
        self.context = Context(context, defaults=template.variable_defaults())
        self.dry_run = dry_run
        self.on_event = on_event
        self.quiet = quiet
        self.order = stable_topological_order(self.graph)
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop the current run before its next node; nodes already resolved stay resolved.

        Each call to run() starts uncancelled.
        """
        self._cancel.set()

    def _emit(self, event: str, address: str, detail: Any = None) -> None:
        if self.on_event is not None:
            self.on_event(event, address, detail)

    # -------------------------------------------------------------- references

    def _node_value(self, result: ExecutionResult, address: str) -> Any:
        if address not in result.instances:
            raise UnresolvedReferenceError(address, "not yet resolved")
        node = self.graph.nodes[address]
        resolved = result.instances[address]
        if node.count is not None:
            return [instance_values(r) for r in resolved]
        if node.for_each is not None:
            return {r.key: instance_values(r) for r in resolved}
        if not resolved:
            raise UnresolvedReferenceError(address, result.skipped.get(address, "has no instances"))
        return instance_values(resolved[0])

    # -------------------------------------------------------------- provider

    def _call_provider(
        self,
        node: ResourceNode,
        address: str,
        instance: Instance,
        attributes: Dict[str, Any],
        result: ExecutionResult,
    ) -> Optional[Dict[str, Any]]:
        """Return provider-assigned values, or None when the instance is only planned."""
        if node.is_data:
            if contains_computed(attributes):
                # filters depend on unknown values; the read happens at apply
                return None
            call = lambda: self.provider.lookup(node.kind, attributes)  # noqa: E731
        elif self.dry_run:
            return None
        else:
            request = ProvisionRequest(
                node=node,
                address=address,
                key=instance.key,
                attributes=attributes,
                dependencies={d: list(result.instances.get(d, [])) for d in node.dependencies},
            )
            call = lambda: self.provider.create_or_update(request)  # noqa: E731

        try:
            return dict(call())
        except Exception as exc:
            # the adapter boundary: whatever it raises halts the run
            raise ProvisioningError(address, exc, result) from exc

    def _resolve_instance(
        self, node: ResourceNode, instance: Instance, scope: Scope, result: ExecutionResult
    ) -> ResolvedResource:
        address = instance_address(node.address, instance.key)
        inst_scope = instance.scope(node, scope)
        try:
            attributes = evaluate_value(node.attributes, inst_scope)
        except EvaluationError as exc:
            raise ProvisioningError(address, exc, result) from exc

        values = self._call_provider(node, address, instance, attributes, result)
        resource = ResolvedResource(
            node_address=node.address,
            kind=node.kind,
            key=instance.key,
            attributes=attributes,
            provider_values=values or {},
            planned=values is None,
        )
        result.add(resource)

        try:
            deferred = postconditions.check(
                node, resource, inst_scope, instance_values(resource), result, quiet=self.quiet
            )
        except EvaluationError as exc:
            raise ProvisioningError(address, exc, result) from exc
        if deferred:
            result.deferred[address] = deferred
        return resource

    # -------------------------------------------------------------- run

    def run(self) -> ExecutionResult:
        self._cancel.clear()
        result = ExecutionResult(dry_run=self.dry_run)
        try:
            self._execute(result)
        except ExecutionError as exc:
            result.failed = exc.address
            raise
        return result

    def _execute(self, result: ExecutionResult) -> None:
        scope = Scope(
            self.context,
            self.template.locals,
            resolver=lambda address: self._node_value(result, address),
        )

        for address in self.order:
            if self._cancel.is_set():
                result.cancelled = True
                return

            node = self.graph.nodes[address]
            self._emit(EVENT_START, address)
            result.order.append(address)
            result.begin(address)

            try:
                materialization = materialize(node, scope, result.counts())
            except EvaluationError as exc:
                raise ProvisioningError(address, exc, result) from exc

            if materialization.skipped:
                result.skip(address, materialization.reason)
                self._emit(EVENT_SKIPPED, address, materialization.reason)
                continue

            for instance in materialization.instances:
                resource = self._resolve_instance(node, instance, scope, result)
                self._emit(EVENT_RESOLVED, resource.address, resource)

        for name, output in self.template.outputs.items():
            try:
                result.outputs[name] = evaluate_value(output.value, scope)
            except EvaluationError as exc:
                raise ProvisioningError(f"output.{name}", exc, result) from exc


def run(
    template: Template,
    provider: ProviderAdapter,
    context: Optional[Mapping[str, Any]] = None,
    dry_run: bool = False,
    **kwargs: Any,
) -> ExecutionResult:
    """Build the graph for ``template`` and execute it against ``provider``."""
    return Executor(template, provider, context, dry_run=dry_run, **kwargs).run()
