import re
from typing import Any, Dict

import hcl2

from stackgraph.errors import TemplateError
from stackgraph.models.template import Template
from stackgraph.parsers.document import build_template

# Blocks whose labels nest one level (name) or two levels (kind, name)
_ONE_LABEL = ("variable", "output")
_TWO_LABELS = ("resource", "data")

# python-hcl2 4.3.x re-serializes HCL literals inside expressions as Python ones
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_PY_LITERAL_RE = re.compile(r"(?<![\w.])(True|False|None)(?![\w-])")


def _hcl_literals(text: str) -> str:
    """Rewrite True/False/None to true/false/null inside ${...}, leaving quoted strings alone."""
    if "${" not in text:
        return text
    out = []
    i = 0
    depth = 0
    in_string = False
    while i < len(text):
        if depth == 0:
            start = text.find("${", i)
            if start < 0:
                out.append(text[i:])
                break
            out.append(text[i:start + 2])
            i = start + 2
            # $${ is an escaped literal
            if start == 0 or text[start - 1] != "$":
                depth = 1
            continue
        ch = text[i]
        if in_string:
            if ch == "\\":
                out.append(text[i:i + 2])
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        else:
            m = _PY_LITERAL_RE.match(text, i)
            if m:
                out.append(_PY_LITERALS[m.group(1)])
                i = m.end()
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def _strip_quotes(val: Any) -> Any:
    """
    Older python-hcl2 releases keep the quotes of string literals.
    Recursively drop them so every front end hands over bare template text.
    """
    if isinstance(val, str):
        if len(val) >= 2 and val[0] == '"' and val[-1] == '"':
            val = val[1:-1]
        return _hcl_literals(val)
    if isinstance(val, list):
        return [_strip_quotes(v) for v in val]
    if isinstance(val, dict):
        return {k: _strip_quotes(v) for k, v in val.items() if not k.startswith("__")}
    return val


def _merge_blocks(blocks: Any, depth: int, filepath: str) -> Dict[str, Any]:
    """
    python-hcl2 returns each block type as a list of one-entry dicts:
    ``[{"aws_vpc": {"selected": {...}}}, ...]``. Fold them into one mapping.
    """
    merged: Dict[str, Any] = {}
    for block in blocks if isinstance(blocks, list) else [blocks]:
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            if depth == 2:
                merged.setdefault(label, {})
                for name, inner in _merge_blocks(body, 1, filepath).items():
                    if name in merged[label]:
                        raise TemplateError(f"duplicate block {label}.{name}", filepath)
                    merged[label][name] = inner
            else:
                if label in merged:
                    raise TemplateError(f"duplicate block {label}", filepath)
                merged[label] = body
    return merged


def _unwrap_lifecycle(body: Dict[str, Any]) -> Dict[str, Any]:
    lifecycle = body.get("lifecycle")
    if isinstance(lifecycle, list):
        merged: Dict[str, Any] = {"postcondition": []}
        for block in lifecycle:
            if isinstance(block, dict):
                merged["postcondition"].extend(block.get("postcondition", []))
        body = dict(body, lifecycle=merged)
    return body


def to_document(data: Dict[str, Any], filepath: str = "") -> Dict[str, Any]:
    """Normalise python-hcl2 output into the document shape build_template expects."""
    data = _strip_quotes(data)
    doc: Dict[str, Any] = {}
    for key, blocks in data.items():
        if key in _ONE_LABEL:
            doc[key] = _merge_blocks(blocks, 1, filepath)
        elif key in _TWO_LABELS:
            doc[key] = _merge_blocks(blocks, 2, filepath)
            for instances in doc[key].values():
                for name, body in instances.items():
                    if isinstance(body, dict):
                        instances[name] = _unwrap_lifecycle(body)
        elif key == "locals":
            doc[key] = {}
            for block in blocks if isinstance(blocks, list) else [blocks]:
                for name, value in (block or {}).items():
                    if name in doc[key]:
                        raise TemplateError(f"duplicate local {name}", filepath)
                    doc[key][name] = value
        # provider and terraform blocks configure the external engine; ignored here
    return doc


def parse_file(filepath: str) -> Template:
    try:
        with open(filepath, encoding="utf-8") as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        # lark raises several unrelated exception types on bad input
        raise TemplateError(f"failed to parse: {exc}", filepath) from exc

    return build_template(to_document(data, filepath), filepath)

