"""
Markdown + Mermaid execution report generator.
"""
import json
import re
from datetime import datetime, timezone
from typing import Dict

from jinja2 import Environment

from stackgraph import __version__
from stackgraph.engine.graph import ResourceGraph
from stackgraph.models.result import ExecutionResult
from stackgraph.reporters.json_reporter import outputs_view, redact, summarize

_CATEGORY_MAP = {
    # kind prefix -> subgraph label
    "aws_db": "Data",
    "aws_rds": "Data",
    "aws_security_group": "Networking",
    "aws_vpc": "Networking",
    "aws_subnet": "Networking",
    "aws_service_discovery": "Discovery",
    "random_": "Secrets",
}

_SUBGRAPH_ORDER = ["Networking", "Secrets", "Data", "Discovery", "Other"]

_STATUS_STYLE = {
    "skipped": "fill:#dddddd,color:#666,stroke-dasharray: 4 4",
    "lookup": "fill:#cce5ff,color:#000",
}


def _sanitize_node_id(address: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", address)


def _subgraph(kind: str) -> str:
    for prefix, label in _CATEGORY_MAP.items():
        if kind.startswith(prefix):
            return label
    return "Other"


def _build_mermaid(graph: ResourceGraph, result: ExecutionResult) -> str:
    groups: Dict[str, list] = {}
    for address in graph.declaration_order:
        groups.setdefault(_subgraph(graph.nodes[address].kind), []).append(address)

    lines = ["flowchart LR"]
    for name in _SUBGRAPH_ORDER:
        members = groups.get(name, [])
        if not members:
            continue
        lines.append(f"    subgraph {name}")
        for address in members:
            node = graph.nodes[address]
            count = result.instance_count(address)
            label = address if count <= 1 else f"{address} x{count}"
            shape = f"[({label})]" if node.is_data else f"[{label}]"
            lines.append(f"        {_sanitize_node_id(address)}{shape}")
        lines.append("    end")

    for address, dep in graph.edges():
        lines.append(f"    {_sanitize_node_id(dep)} --> {_sanitize_node_id(address)}")

    for address in graph.declaration_order:
        if address in result.skipped:
            lines.append(f"    style {_sanitize_node_id(address)} {_STATUS_STYLE['skipped']}")
        elif graph.nodes[address].is_data:
            lines.append(f"    style {_sanitize_node_id(address)} {_STATUS_STYLE['lookup']}")

    return "\n".join(lines)


def _inline(value) -> str:
    text = json.dumps(value, sort_keys=True)
    return text if len(text) <= 80 else text[:79] + "…"


_TEMPLATE = """\
# {{ "Plan" if dry_run else "Apply" }} Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackgraph v{{ version }}

---

## Summary

- **Nodes:** {{ summary.nodes }}
- **Instances:** {{ summary.instances }}
- **Skipped:** {{ summary.skipped }}
- **Deferred postconditions:** {{ summary.deferred_postconditions }}
{% if summary.cancelled %}
Run was cancelled after {{ summary.processed }} node(s); remaining nodes were not processed.
{% endif %}
{% if summary.failed %}
Run halted at `{{ summary.failed }}`; later nodes were not processed.
{% endif %}

---

## Execution Order

| # | Node | Instances | Status |
|---|------|-----------|--------|
{% for address in order %}| {{ loop.index }} | `{{ address }}` | {{ counts.get(address, 0) }} | {{ status(address) }} |
{% endfor %}

---

## Resources

{% for r in resources %}
### `{{ r.address }}`

| Attribute | Value |
|-----------|-------|
{% for k, v in r.attrs|dictsort %}| `{{ k }}` | `{{ inline(v) }}` |
{% endfor %}
{% endfor %}
{% if deferred %}
---

## Deferred Postconditions

{% for address, messages in deferred.items() %}{% for m in messages %}- `{{ address }}`: {{ m }}
{% endfor %}{% endfor %}
{% endif %}
{% if outputs %}
---

## Outputs

| Name | Value |
|------|-------|
{% for k, v in outputs|dictsort %}| `{{ k }}` | `{{ inline(v) }}` |
{% endfor %}
{% endif %}
---

## Dependency Diagram

```mermaid
{{ mermaid }}
```
"""


def build_report(graph: ResourceGraph, result: ExecutionResult, source_path: str) -> str:
    resources = [
        {"address": r.address, "attrs": redact(r.kind, r.values())}
        for r in result.resources.values()
    ]

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        dry_run=result.dry_run,
        summary=summarize(graph, result),
        order=result.order,
        counts=result.counts(),
        skipped=result.skipped,
        status=result.status,
        resources=resources,
        deferred=result.deferred,
        outputs=outputs_view(graph, result),
        inline=_inline,
        mermaid=_build_mermaid(graph, result),
    )
