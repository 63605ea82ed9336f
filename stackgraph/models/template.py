from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stackgraph.errors import TemplateError
from stackgraph.models.resource import ResourceNode


@dataclass
class Variable:
    name: str
    default: Any = None
    description: str = ""
    sensitive: bool = False


@dataclass
class Output:
    name: str
    value: Any = None              # unevaluated expression
    description: str = ""
    sensitive: bool = False


@dataclass
class Template:
    variables: Dict[str, Variable] = field(default_factory=dict)
    locals: Dict[str, Any] = field(default_factory=dict)
    nodes: List[ResourceNode] = field(default_factory=list)
    outputs: Dict[str, Output] = field(default_factory=dict)
    source_files: List[str] = field(default_factory=list)

    def node(self, address: str) -> Optional[ResourceNode]:
        return next((n for n in self.nodes if n.address == address), None)

    def variable_defaults(self) -> Dict[str, Any]:
        return {name: v.default for name, v in self.variables.items()}

    def merge(self, other: "Template") -> None:
        """Fold another file's declarations into this template (one module, many files)."""
        for label, mine, theirs in (
            ("variable", self.variables, other.variables),
            ("local", self.locals, other.locals),
            ("output", self.outputs, other.outputs),
        ):
            for name, value in theirs.items():
                if name in mine:
                    raise TemplateError(f"duplicate {label} '{name}'", ", ".join(other.source_files))
                mine[name] = value

        known = {n.address for n in self.nodes}
        for node in other.nodes:
            if node.address in known:
                raise TemplateError(f"duplicate resource '{node.address}'", node.source_file)
            known.add(node.address)
            self.nodes.append(node)

        self.source_files.extend(other.source_files)
