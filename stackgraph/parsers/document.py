"""
Build a Template from a decoded template document.

Both front ends produce the same document shape (the JSON flavour of
Terraform configuration):

    variable: {name: {default, description, sensitive}}
    locals:   {name: value}
    resource: {kind: {name: body}}
    data:     {kind: {name: body}}
    output:   {name: {value, description, sensitive}}

Meta-arguments inside a body: count, for_each, depends_on and
lifecycle.postcondition (condition + error_message).
"""
import re
from typing import Any, Dict, List

from stackgraph.engine.expressions import Traversal
from stackgraph.errors import TemplateError
from stackgraph.models.resource import DATA, MANAGED, Postcondition, ResourceNode
from stackgraph.models.template import Output, Template, Variable
from stackgraph.parsers.expression import compile_value, parse_expression

TOP_LEVEL_KEYS = ("variable", "locals", "resource", "data", "output")

# Meta-arguments that are not provider attributes
_META_KEYS = {"count", "for_each", "depends_on", "lifecycle", "provider"}

_ADDRESS_RE = re.compile(r"^(data\.)?[A-Za-z_][\w-]*\.[A-Za-z_][\w-]*$")


def _as_mapping(value: Any, what: str, source: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TemplateError(f"'{what}' must be a mapping", source)
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _dependency_address(raw: Any, source: str) -> str:
    if isinstance(raw, Traversal):
        expr = raw
    else:
        text = str(raw).strip()
        if text.startswith("${") and text.endswith("}"):
            text = text[2:-1].strip()
        expr = parse_expression(text)
    if isinstance(expr, Traversal):
        parts = [expr.root] + [getattr(s, "name", "") for s in expr.steps]
        address = ".".join(parts[:3] if expr.root == "data" else parts[:2])
        if _ADDRESS_RE.match(address):
            return address
    raise TemplateError(f"depends_on entry {raw!r} is not a resource address", source)


def _postconditions(lifecycle: Any, address: str, source: str) -> List[Postcondition]:
    out: List[Postcondition] = []
    for block in _as_list(lifecycle):
        if not isinstance(block, dict):
            raise TemplateError(f"{address}: lifecycle must be a mapping", source)
        for pc in _as_list(block.get("postcondition")):
            if not isinstance(pc, dict) or "condition" not in pc:
                raise TemplateError(f"{address}: postcondition needs a condition", source)
            condition = compile_value(pc["condition"])
            if isinstance(condition, str):
                condition = parse_expression(condition)
            out.append(Postcondition(condition=condition, message=compile_value(pc.get("error_message", ""))))
    return out


def _build_node(kind: str, name: str, body: Any, mode: str, source: str) -> ResourceNode:
    body = _as_mapping(body, f"{kind}.{name}", source)
    node = ResourceNode(kind=kind, name=name, mode=mode, source_file=source)

    if "count" in body and "for_each" in body:
        raise TemplateError(f"{node.address}: count and for_each are mutually exclusive", source)
    node.count = compile_value(body["count"]) if "count" in body else None
    node.for_each = compile_value(body["for_each"]) if "for_each" in body else None
    node.depends_on = [_dependency_address(d, source) for d in _as_list(body.get("depends_on"))]
    node.postconditions = _postconditions(body.get("lifecycle"), node.address, source)
    node.attributes = {k: compile_value(v) for k, v in body.items() if k not in _META_KEYS}
    return node


def _build_nodes(section: Any, mode: str, source: str) -> List[ResourceNode]:
    nodes: List[ResourceNode] = []
    label = "data" if mode == DATA else "resource"
    for kind, instances in _as_mapping(section, label, source).items():
        for name, body in _as_mapping(instances, f"{label}.{kind}", source).items():
            nodes.append(_build_node(kind, name, body, mode, source))
    return nodes


def build_template(doc: Dict[str, Any], source: str = "") -> Template:
    if not isinstance(doc, dict):
        raise TemplateError("template must be a mapping", source)
    unknown = [k for k in doc if k not in TOP_LEVEL_KEYS and k not in ("terraform", "provider")]
    if unknown:
        raise TemplateError(f"unknown top-level block(s): {', '.join(sorted(unknown))}", source)

    template = Template(source_files=[source] if source else [])

    for name, block in _as_mapping(doc.get("variable"), "variable", source).items():
        block = block or {}
        template.variables[name] = Variable(
            name=name,
            default=block.get("default"),
            description=block.get("description", ""),
            sensitive=bool(block.get("sensitive", False)),
        )

    for name, value in _as_mapping(doc.get("locals"), "locals", source).items():
        template.locals[name] = compile_value(value)

    # declaration order is kept: it breaks ties in the execution order
    for key in doc:
        if key == "data":
            template.nodes.extend(_build_nodes(doc[key], DATA, source))
        elif key == "resource":
            template.nodes.extend(_build_nodes(doc[key], MANAGED, source))

    for name, block in _as_mapping(doc.get("output"), "output", source).items():
        block = _as_mapping(block, f"output.{name}", source)
        if "value" not in block:
            raise TemplateError(f"output '{name}' needs a value", source)
        template.outputs[name] = Output(
            name=name,
            value=compile_value(block["value"]),
            description=block.get("description", ""),
            sensitive=bool(block.get("sensitive", False)),
        )

    return template
