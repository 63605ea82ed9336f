from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stackgraph.models.resource import ResolvedResource


@dataclass
class ExecutionResult:
    dry_run: bool = False
    instances: Dict[str, List[ResolvedResource]] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)     # address -> reason
    order: List[str] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    deferred: Dict[str, List[str]] = field(default_factory=dict)
    cancelled: bool = False
    failed: Optional[str] = None                              # address that halted the run

    def begin(self, address: str) -> None:
        """Open a node's instance list; each node is processed at most once per run."""
        if address in self.instances:
            raise ValueError(f"{address} was already processed in this run")
        self.instances[address] = []

    def add(self, resource: ResolvedResource) -> None:
        self.instances[resource.node_address].append(resource)

    def skip(self, address: str, reason: str) -> None:
        self.skipped[address] = reason

    @property
    def resources(self) -> Dict[str, ResolvedResource]:
        """Instance address -> ResolvedResource, in resolution order."""
        return {r.address: r for items in self.instances.values() for r in items}

    def instance_count(self, address: str) -> int:
        return len(self.instances.get(address, []))

    def counts(self) -> Dict[str, int]:
        return {address: len(items) for address, items in self.instances.items()}

    def is_failed(self, address: str) -> bool:
        """True when ``address`` (or one of its instances) halted the run."""
        if self.failed is None:
            return False
        return self.failed == address or self.failed.startswith(address + "[")

    def status(self, address: str) -> str:
        if address in self.skipped:
            return self.skipped[address]
        if self.is_failed(address):
            return "failed"
        return "planned" if self.dry_run else "resolved"
