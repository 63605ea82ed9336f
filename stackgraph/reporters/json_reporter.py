"""
JSON execution report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List

from stackgraph import __version__
from stackgraph.engine.expressions import COMPUTED
from stackgraph.engine.graph import ResourceGraph
from stackgraph.models.resource import ResolvedResource
from stackgraph.models.result import ExecutionResult

REDACTED = "(sensitive)"

# attribute names whose values never leave the process
SENSITIVE_ATTRIBUTES = {"password", "master_password", "secret", "secret_string"}
SENSITIVE_BY_KIND = {
    "random_password": {"result"},
}


def plain(value: Any) -> Any:
    """Make an evaluated value JSON-safe; unknown values print as "(known after apply)"."""
    if value is COMPUTED:
        return str(COMPUTED)
    if isinstance(value, dict):
        return {str(k): plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [plain(v) for v in value]
    return value


def redact(kind: str, values: Dict[str, Any]) -> Dict[str, Any]:
    hidden = SENSITIVE_ATTRIBUTES | SENSITIVE_BY_KIND.get(kind, set())
    return {k: (REDACTED if k in hidden and v is not None else plain(v)) for k, v in values.items()}


def resource_entry(r: ResolvedResource) -> Dict[str, Any]:
    return {
        "address": r.address,
        "node": r.node_address,
        "kind": r.kind,
        "key": r.key,
        "planned": r.planned,
        "attributes": redact(r.kind, r.attributes),
        "provider_values": redact(r.kind, r.provider_values),
    }


def outputs_view(graph: ResourceGraph, result: ExecutionResult) -> Dict[str, Any]:
    declared = graph.template.outputs
    return {
        name: REDACTED if name in declared and declared[name].sensitive else plain(value)
        for name, value in result.outputs.items()
    }


def summarize(graph: ResourceGraph, result: ExecutionResult) -> Dict[str, Any]:
    return {
        "nodes": len(graph),
        "processed": len(result.order),
        "instances": sum(len(items) for items in result.instances.values()),
        "skipped": len(result.skipped),
        "deferred_postconditions": sum(len(m) for m in result.deferred.values()),
        "dry_run": result.dry_run,
        "cancelled": result.cancelled,
        "failed": result.failed,
    }


def build_report(graph: ResourceGraph, result: ExecutionResult, source_path: str) -> str:
    resources: List[Dict[str, Any]] = [resource_entry(r) for r in result.resources.values()]
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "stackgraph",
            "version": __version__,
            "mode": "plan" if result.dry_run else "apply",
        },
        "summary": summarize(graph, result),
        "order": list(result.order),
        "resources": resources,
        "skipped": dict(result.skipped),
        "deferred": {address: list(msgs) for address, msgs in result.deferred.items()},
        "outputs": outputs_view(graph, result),
    }
    return json.dumps(report, indent=2)
