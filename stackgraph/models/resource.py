from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MANAGED = "managed"
DATA = "data"


def instance_address(node_address: str, key: Any = None) -> str:
    """Return the address of one instance of a node, e.g. ``aws_db_instance.secondary[0]``."""
    if key is None:
        return node_address
    if isinstance(key, int):
        return f"{node_address}[{key}]"
    return f'{node_address}["{key}"]'


@dataclass
class Postcondition:
    condition: Any                 # unevaluated expression
    message: Any = ""              # plain string or template expression


@dataclass
class ResourceNode:
    kind: str                      # e.g. "aws_db_instance", "aws_vpc"
    name: str                      # logical name in the template
    mode: str = MANAGED            # "managed" or "data"
    attributes: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    count: Any = None
    for_each: Any = None
    postconditions: List[Postcondition] = field(default_factory=list)
    source_file: str = ""

    @property
    def address(self) -> str:
        if self.mode == DATA:
            return f"data.{self.kind}.{self.name}"
        return f"{self.kind}.{self.name}"

    @property
    def is_data(self) -> bool:
        return self.mode == DATA

    @property
    def has_predicate(self) -> bool:
        return self.count is not None or self.for_each is not None


@dataclass
class ResolvedResource:
    node_address: str
    kind: str
    key: Any = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    provider_values: Dict[str, Any] = field(default_factory=dict)
    planned: bool = False          # synthesized in dry-run, provider values unknown

    @property
    def address(self) -> str:
        return instance_address(self.node_address, self.key)

    def values(self) -> Dict[str, Any]:
        """Evaluated attributes overlaid with provider-assigned values."""
        merged = dict(self.attributes)
        merged.update(self.provider_values)
        return merged

    def get(self, name: str, default: Optional[Any] = None) -> Any:
        return self.values().get(name, default)
