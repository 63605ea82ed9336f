import json
import os

import yaml

_TEMPLATE_KEYS = ("variable", "locals", "resource", "data", "output")
_IGNORED_KEYS = ("terraform", "provider")

# Loader that tolerates the !expr tag without parsing the expression,
# so detect_format can read templates cheaply.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _looks_like_template(doc) -> bool:
    # context and fixture files are mappings too; every key must be a template block
    return (
        isinstance(doc, dict)
        and any(k in doc for k in _TEMPLATE_KEYS)
        and all(k in _TEMPLATE_KEYS or k in _IGNORED_KEYS for k in doc)
    )


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'yaml' (YAML or JSON documents), or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "yaml" if _looks_like_template(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath, encoding="utf-8") as fh:
                doc = yaml.load(fh, Loader=_TagTolerantLoader)
        except (OSError, yaml.YAMLError):
            return "unknown"
        if _looks_like_template(doc):
            return "yaml"

    return "unknown"
