import copy
from typing import Any, Dict, Iterator, Mapping, Optional


def deep_merge(base: Mapping, override: Mapping) -> Dict[str, Any]:
    """Return ``base`` updated with ``override``; nested mappings merge, everything else replaces."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Context(Mapping):
    """
    Read-only caller configuration, addressed from expressions as ``var.<path>``.

    Variable defaults declared by the template sit underneath the caller's
    values; a caller value of ``None`` still overrides a default.
    """

    def __init__(self, values: Optional[Mapping] = None, defaults: Optional[Mapping] = None):
        self._data = deep_merge(defaults or {}, values or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Context({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)
