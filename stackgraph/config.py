"""
Run configuration: stackgraph.yaml, context files and --set overrides.

Context layers merge in this order, later wins:
config ``context`` < ``--context`` file < ``--set`` overrides.
"""
import json
import os
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from stackgraph.errors import ConfigError
from stackgraph.models.context import deep_merge

DEFAULT_CONFIG_FILE = "stackgraph.yaml"
CONFIG_KEYS = ("context", "fixtures", "format")


def _read_mapping(path: str, what: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            if path.endswith(".json"):
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read {what} file {path}: {exc.strerror}") from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"invalid {what} file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{what} file {path} must contain a mapping")
    return data


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the config file; a missing default file yields an empty config."""
    if path is None:
        path = DEFAULT_CONFIG_FILE
        if not os.path.isfile(path):
            return {}
    config = _read_mapping(path, "config")
    unknown = sorted(set(config) - set(CONFIG_KEYS))
    if unknown:
        raise ConfigError(f"unknown config key(s) in {path}: {', '.join(unknown)}")
    for key in ("context", "fixtures"):
        if not isinstance(config.get(key) or {}, dict):
            raise ConfigError(f"'{key}' in {path} must be a mapping")
    return config


def load_context_file(path: str) -> Dict[str, Any]:
    return _read_mapping(path, "context")


def load_fixtures(path: str) -> Dict[str, Any]:
    fixtures = _read_mapping(path, "fixtures")
    for kind, records in fixtures.items():
        if not isinstance(records, list):
            raise ConfigError(f"fixtures for {kind} must be a list of records")
    return fixtures


def parse_overrides(assignments: Iterable[str]) -> Dict[str, Any]:
    """
    Turn ``["storage.size=20480", "architecture=replication"]`` into a nested
    mapping. Values are read as YAML scalars, so ``true``, ``3`` and ``null``
    keep their types.
    """
    overrides: Dict[str, Any] = {}
    for item in assignments:
        path, sep, raw = item.partition("=")
        keys = path.strip().split(".")
        if not sep or not all(keys):
            raise ConfigError(f"invalid override '{item}', expected key.path=value")
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid value in override '{item}': {exc}") from exc

        nested: Any = value
        for key in reversed(keys):
            nested = {key: nested}
        overrides = deep_merge(overrides, nested)
    return overrides


def build_context(
    config: Mapping[str, Any],
    context_file: Optional[str] = None,
    overrides: Iterable[str] = (),
) -> Dict[str, Any]:
    context = dict(config.get("context") or {})
    if context_file:
        context = deep_merge(context, load_context_file(context_file))
    return deep_merge(context, parse_overrides(overrides))
