"""
In-memory provider adapter.

Lookups are answered from fixture records keyed by kind; managed objects
live in a dict keyed by instance address. Provider-assigned values are
derived from a hash of the address, so they are stable across runs and an
unchanged request is reported as a no-op with identical values.
"""
import copy
import hashlib
import string
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from stackgraph.providers.base import NotFound, ProviderAdapter, ProvisionRequest

_ALPHABET = string.ascii_lowercase + string.digits
_UPPER_ALPHABET = string.ascii_letters + string.digits

NOOP = "noop"
CREATE = "create"
UPDATE = "update"


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x00".join(parts).encode("utf-8")).hexdigest()


def _random_text(seed: str, length: int, alphabet: str) -> str:
    out = []
    counter = 0
    while len(out) < length:
        block = hashlib.sha256(f"{seed}:{counter}".encode("utf-8")).digest()
        out.extend(alphabet[b % len(alphabet)] for b in block)
        counter += 1
    return "".join(out[:length])


def _matches(record: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for key, wanted in filters.items():
        if wanted is None:
            continue
        actual = record.get(key)
        if isinstance(wanted, Mapping):
            if not isinstance(actual, Mapping) or any(actual.get(k) != v for k, v in wanted.items()):
                return False
        elif actual != wanted or isinstance(actual, bool) != isinstance(wanted, bool):
            return False
    return True


# ------------------------------------------------------------------ generators
# Each returns the values a real provider would assign for one kind.

def _name_of(request: ProvisionRequest) -> str:
    attrs = request.attributes
    return str(attrs.get("identifier") or attrs.get("name") or request.node.name)


def _db_instance(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    port = request.attributes.get("port") or 5432
    address = f"{_name_of(request)}.{digest[:12]}.{region}.rds.amazonaws.com"
    return {
        "address": address,
        "port": port,
        "endpoint": f"{address}:{port}",
        "resource_id": "db-" + digest[:26].upper(),
    }


def _random_string(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    attrs = request.attributes
    length = int(attrs.get("length") or 16)
    alphabet = _UPPER_ALPHABET if attrs.get("upper", True) else _ALPHABET
    return {"result": _random_text(digest, length, alphabet)}


def _security_group(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    return {"id": "sg-" + digest[:17]}


def _discovery_service(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    return {"id": "srv-" + digest[:16]}


def _discovery_instance(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    return {"id": request.attributes.get("instance_id") or digest[:16]}


def _named(request: ProvisionRequest, digest: str, region: str) -> Dict[str, Any]:
    return {"id": _name_of(request)}


GENERATORS: Dict[str, Callable[[ProvisionRequest, str, str], Dict[str, Any]]] = {
    "aws_db_instance": _db_instance,
    "aws_db_parameter_group": _named,
    "aws_db_subnet_group": _named,
    "aws_security_group": _security_group,
    "aws_service_discovery_instance": _discovery_instance,
    "aws_service_discovery_service": _discovery_service,
    "random_password": _random_string,
    "random_string": _random_string,
}


class MemoryProvider(ProviderAdapter):
    name = "memory"

    def __init__(
        self,
        fixtures: Optional[Mapping[str, List[Mapping[str, Any]]]] = None,
        region: str = "us-east-1",
        account_id: str = "000000000000",
    ):
        self.fixtures = {kind: [dict(r) for r in records] for kind, records in (fixtures or {}).items()}
        self.region = region
        self.account_id = account_id
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []

    def lookup(self, kind: str, filters: Mapping[str, Any]) -> Dict[str, Any]:
        self.calls.append(("lookup", kind))
        for record in self.fixtures.get(kind, []):
            if _matches(record, filters):
                return copy.deepcopy(record)
        raise NotFound(kind, filters)

    def _assign(self, request: ProvisionRequest) -> Dict[str, Any]:
        digest = _digest(self.account_id, self.region, request.address)
        name = _name_of(request)
        values: Dict[str, Any] = {
            "id": f"{request.kind}-{digest[:12]}",
            "arn": f"arn:aws:{request.kind.split('_', 1)[-1]}:{self.region}:{self.account_id}:{name}",
        }
        generator = GENERATORS.get(request.kind)
        if generator is not None:
            values.update(generator(request, digest, self.region))
        return values

    def create_or_update(self, request: ProvisionRequest) -> Dict[str, Any]:
        existing = self.objects.get(request.address)
        if existing is not None and existing["attributes"] == request.attributes:
            self.calls.append((NOOP, request.address))
            return copy.deepcopy(existing["values"])

        if existing is None:
            values = self._assign(request)
            self.calls.append((CREATE, request.address))
        else:
            # ids survive an in-place update
            values = existing["values"]
            self.calls.append((UPDATE, request.address))

        self.objects[request.address] = {
            "kind": request.kind,
            "attributes": copy.deepcopy(request.attributes),
            "values": values,
        }
        return copy.deepcopy(values)

    def actions(self, action: str) -> List[str]:
        return [address for a, address in self.calls if a == action]
