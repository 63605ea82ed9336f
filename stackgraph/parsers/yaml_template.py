import json
import os
from typing import Any

import yaml

from stackgraph.errors import TemplateError
from stackgraph.models.template import Template
from stackgraph.parsers.document import build_template
from stackgraph.parsers.expression import parse_expression


# ------------------------------------------------------------------ YAML loader
# Besides "${...}" templates, YAML documents may spell a whole value as a bare
# expression with the !expr tag:   count: !expr var.architecture == "replication" ? 1 : 0

class _TemplateLoader(yaml.SafeLoader):
    pass


def _expr_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> Any:
    if not isinstance(node, yaml.ScalarNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!expr only applies to scalar values", node.start_mark
        )
    return parse_expression(loader.construct_scalar(node))


_TemplateLoader.add_constructor("!expr", _expr_constructor)


def load_document(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath, encoding="utf-8") as fh:
            if ext == ".json":
                return json.load(fh)
            return yaml.load(fh, Loader=_TemplateLoader)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise TemplateError(f"failed to parse: {exc}", filepath) from exc


def parse_file(filepath: str) -> Template:
    doc = load_document(filepath)
    if doc is None:
        return Template(source_files=[filepath])
    return build_template(doc, filepath)

