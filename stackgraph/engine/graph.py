"""
Resource graph construction.

Edges come from every expression on a node (attributes, count, for_each,
postconditions) that references another node, including references reached
through ``local.`` values, plus explicit ``depends_on``. The result is
guaranteed to be a DAG.
"""
from dataclasses import replace
from typing import Dict, List, Set

from stackgraph.engine.expressions import REF_INVALID, REF_LOCAL, REF_NODE, collect_references
from stackgraph.errors import CycleDetectedError, TemplateError, UnknownReferenceError
from stackgraph.models.resource import ResourceNode
from stackgraph.models.template import Template

_WHITE, _GREY, _BLACK = 0, 1, 2


class ResourceGraph:
    def __init__(self, template: Template, nodes: List[ResourceNode]):
        self.template = template
        self.nodes: Dict[str, ResourceNode] = {n.address: n for n in nodes}
        self.declaration_order: List[str] = [n.address for n in nodes]

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def dependencies(self, address: str) -> List[str]:
        return list(self.nodes[address].dependencies)

    def dependents(self, address: str) -> List[str]:
        return [a for a in self.declaration_order if address in self.nodes[a].dependencies]

    def edges(self) -> List[tuple]:
        return [(a, d) for a in self.declaration_order for d in self.nodes[a].dependencies]


def _node_references(node: ResourceNode) -> Set[tuple]:
    refs = collect_references(node.attributes)
    refs |= collect_references(node.count)
    refs |= collect_references(node.for_each)
    for pc in node.postconditions:
        refs |= collect_references(pc.condition)
        refs |= collect_references(pc.message)
    return refs


def _local_closure(template: Template) -> Dict[str, Set[str]]:
    """Map each local to the node addresses it reaches, rejecting cycles between locals."""
    direct = {name: collect_references(value) for name, value in template.locals.items()}
    closure: Dict[str, Set[str]] = {}
    state = {name: _WHITE for name in direct}
    stack: List[str] = []

    def visit(name: str) -> Set[str]:
        if state[name] == _BLACK:
            return closure[name]
        if state[name] == _GREY:
            cycle = stack[stack.index(name):] + [name]
            raise CycleDetectedError([f"local.{n}" for n in cycle])
        state[name] = _GREY
        stack.append(name)
        reached: Set[str] = set()
        for kind, target in sorted(direct[name]):
            if kind == REF_NODE:
                reached.add(target)
            elif kind == REF_LOCAL:
                if target not in direct:
                    raise UnknownReferenceError(f"local.{name}", f"local.{target}")
                reached |= visit(target)
            elif kind == REF_INVALID:
                raise UnknownReferenceError(f"local.{name}", target)
        stack.pop()
        state[name] = _BLACK
        closure[name] = reached
        return reached

    for name in direct:
        visit(name)
    return closure


def _check_acyclic(graph: ResourceGraph) -> None:
    """Depth-first traversal with visiting/visited markers."""
    position = {a: i for i, a in enumerate(graph.declaration_order)}
    state = {a: _WHITE for a in graph.declaration_order}
    stack: List[str] = []

    def visit(address: str) -> None:
        state[address] = _GREY
        stack.append(address)
        for dep in sorted(graph.nodes[address].dependencies, key=position.__getitem__):
            if state[dep] == _GREY:
                raise CycleDetectedError(stack[stack.index(dep):] + [dep])
            if state[dep] == _WHITE:
                visit(dep)
        stack.pop()
        state[address] = _BLACK

    for address in graph.declaration_order:
        if state[address] == _WHITE:
            visit(address)


def build_graph(template: Template) -> ResourceGraph:
    """
    Resolve every node's dependencies and validate the graph.

    Raises UnknownReferenceError for references to nodes or locals that do
    not exist and CycleDetectedError when the graph is not acyclic.
    """
    known = {}
    for node in template.nodes:
        if node.address in known:
            raise TemplateError(f"duplicate resource '{node.address}'", node.source_file)
        known[node.address] = node

    locals_reach = _local_closure(template)

    resolved_nodes: List[ResourceNode] = []
    for node in template.nodes:
        deps: Set[str] = set()
        for kind, target in sorted(_node_references(node)):
            if kind == REF_NODE:
                deps.add(target)
            elif kind == REF_LOCAL:
                if target not in locals_reach:
                    raise UnknownReferenceError(node.address, f"local.{target}")
                deps |= locals_reach[target]
            else:
                raise UnknownReferenceError(node.address, target)
        deps.update(node.depends_on)

        for dep in sorted(deps):
            if dep not in known:
                raise UnknownReferenceError(node.address, dep)

        ordered = [a for a in known if a in deps]
        resolved_nodes.append(replace(node, dependencies=ordered))

    graph = ResourceGraph(template, resolved_nodes)
    _check_acyclic(graph)
    check_outputs(graph)
    return graph


def check_outputs(graph: ResourceGraph) -> None:
    """Outputs may reference any node or local; unknown targets are rejected up front."""
    locals_ = graph.template.locals
    for name, output in graph.template.outputs.items():
        for kind, target in sorted(collect_references(output.value)):
            if kind == REF_NODE and target not in graph:
                raise UnknownReferenceError(f"output.{name}", target)
            if kind == REF_LOCAL and target not in locals_:
                raise UnknownReferenceError(f"output.{name}", f"local.{target}")
            if kind == REF_INVALID:
                raise UnknownReferenceError(f"output.{name}", target)
