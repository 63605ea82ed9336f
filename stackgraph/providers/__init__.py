from typing import Any, Dict, Type

from stackgraph.providers.base import NotFound, ProviderAdapter, ProvisionRequest
from stackgraph.providers.memory import MemoryProvider

PROVIDERS: Dict[str, Type[ProviderAdapter]] = {
    MemoryProvider.name: MemoryProvider,
}


def get_provider(name: str, **options: Any) -> ProviderAdapter:
    try:
        cls = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"unknown provider '{name}' (available: {', '.join(sorted(PROVIDERS))})")
    return cls(**options)


__all__ = ["NotFound", "ProviderAdapter", "ProvisionRequest", "MemoryProvider", "get_provider"]
