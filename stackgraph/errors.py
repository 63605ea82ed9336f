"""
stackgraph error taxonomy.

Template and graph errors are raised before any provider call is made.
Postcondition and provisioning errors halt a run but carry the partial
result so already-resolved resources can be inspected.
"""
from typing import Any, List, Optional


class StackGraphError(Exception):
    """Base class for all stackgraph errors."""


class TemplateError(StackGraphError):
    """Raised when a template file cannot be read or is malformed."""

    def __init__(self, message: str, source: str = ""):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


# ------------------------------------------------------------------ evaluation

class EvaluationError(StackGraphError):
    """Raised when an expression cannot be evaluated."""


class UnresolvedReferenceError(EvaluationError):
    """Raised when a reference points at something not (yet) available."""

    def __init__(self, reference: str, reason: str = ""):
        self.reference = reference
        self.reason = reason
        super().__init__(
            f"Unresolved reference: {reference}" + (f" ({reason})" if reason else "")
        )


class TypeMismatchError(EvaluationError):
    """Raised when operand or argument types are incompatible."""


class InvalidCountError(EvaluationError):
    """Raised when an instantiation predicate yields an unusable count."""

    def __init__(self, address: str, value: Any, reason: str):
        self.address = address
        self.value = value
        super().__init__(f"Invalid count for {address} ({value!r}): {reason}")


# ------------------------------------------------------------------ graph

class GraphError(StackGraphError):
    """Raised when the resource graph is not a valid DAG."""


class UnknownReferenceError(GraphError):
    """Raised when a node references a node or local that does not exist."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"{source} references unknown {target}")


class CycleDetectedError(GraphError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


# ------------------------------------------------------------------ execution

class ExecutionError(StackGraphError):
    """Base class for errors that halt a run after it started."""

    def __init__(self, message: str, address: str, result: Optional[Any] = None):
        self.address = address
        self.result = result
        super().__init__(message)


class PostconditionViolationError(ExecutionError):
    """Raised when a resolved resource fails one of its postconditions."""

    def __init__(self, address: str, message: str, result: Optional[Any] = None):
        self.message = message
        super().__init__(f"{address}: {message}", address, result)


class ProvisioningError(ExecutionError):
    """Raised when the provider adapter (or evaluation) fails for a node."""

    def __init__(self, address: str, cause: BaseException, result: Optional[Any] = None):
        self.cause = cause
        super().__init__(f"Failed to provision {address}: {cause}", address, result)


class ConfigError(StackGraphError):
    """Raised for unreadable config or context files and malformed overrides."""
