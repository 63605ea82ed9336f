from typing import Any, List, Optional

from rich.console import Console

from stackgraph.engine.expressions import COMPUTED, Scope, evaluate_value, to_string, type_name
from stackgraph.errors import PostconditionViolationError, TypeMismatchError
from stackgraph.models.resource import ResolvedResource, ResourceNode

console = Console(stderr=True)


def _message(raw: Any, scope: Scope) -> str:
    value = evaluate_value(raw, scope)
    if value is COMPUTED:
        return str(COMPUTED)
    return to_string(value, "error_message") if value is not None else ""


def check(
    node: ResourceNode,
    resource: ResolvedResource,
    scope: Scope,
    values: Any,
    result: Optional[Any] = None,
    quiet: bool = False,
) -> List[str]:
    """
    Evaluate every postcondition of ``node`` with ``self`` bound to ``values``.

    Postconditions are hard failures: the first false condition raises
    PostconditionViolationError with the declared message. Conditions that
    depend on values only known after apply are deferred and returned.
    """
    deferred: List[str] = []
    self_scope = scope.with_self(values)
    for pc in node.postconditions:
        ok = evaluate_value(pc.condition, self_scope)
        if ok is COMPUTED:
            message = _message(pc.message, self_scope)
            deferred.append(message)
            if not quiet:
                console.print(
                    f"[yellow]Warning:[/yellow] {resource.address}: postcondition deferred until apply"
                    + (f" ({message})" if message else "")
                )
            continue
        if not isinstance(ok, bool):
            raise TypeMismatchError(
                f"{resource.address}: postcondition must be a bool, got {type_name(ok)}"
            )
        if not ok:
            raise PostconditionViolationError(resource.address, _message(pc.message, self_scope), result)
    return deferred
