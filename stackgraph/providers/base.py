"""
Provider adapter contract.

The engine never talks to a cloud itself: every read and write goes
through an adapter injected by the caller. Adapters own their timeouts and
retry policy; any exception they raise halts the run.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from stackgraph.models.resource import ResolvedResource, ResourceNode


class NotFound(Exception):
    """Raised by ``lookup`` when nothing matches the filters."""

    def __init__(self, kind: str, filters: Mapping[str, Any]):
        self.kind = kind
        self.filters = dict(filters)
        super().__init__(f"no {kind} matches {self.filters}")


@dataclass
class ProvisionRequest:
    node: ResourceNode
    address: str                   # instance address, e.g. aws_db_instance.secondary[0]
    key: Any
    attributes: Dict[str, Any]
    dependencies: Dict[str, List[ResolvedResource]] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.node.kind


class ProviderAdapter:
    """Base class for provider adapters."""

    name = "base"

    def lookup(self, kind: str, filters: Mapping[str, Any]) -> Dict[str, Any]:
        """Return the attributes of the single object of ``kind`` matching ``filters``."""
        raise NotImplementedError

    def create_or_update(self, request: ProvisionRequest) -> Dict[str, Any]:
        """
        Converge the object at ``request.address`` onto ``request.attributes``.

        Returns provider-assigned values (ids, ARNs, endpoints). Returning the
        same values for an unchanged request is what makes re-runs idempotent.
        """
        raise NotImplementedError
