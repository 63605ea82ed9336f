import os
from typing import Iterable, List

from rich.console import Console

from stackgraph.detect import detect_format
from stackgraph.errors import TemplateError
from stackgraph.models.template import Template
from stackgraph.parsers import terraform, yaml_template

console = Console(stderr=True)


def collect_files(paths: Iterable[str]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, _, fnames in os.walk(p):
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            raise TemplateError("path does not exist", p)
    return files


def load_template(paths: Iterable[str], quiet: bool = False) -> Template:
    """
    Parse every template file under ``paths`` into a single Template.

    All files form one module: declarations from different files share one
    namespace and duplicates are rejected.
    """
    paths = list(paths)
    template = Template()
    parsed = 0
    for fp in collect_files(paths):
        fmt = detect_format(fp)
        if fmt == "terraform":
            template.merge(terraform.parse_file(fp))
        elif fmt == "yaml":
            template.merge(yaml_template.parse_file(fp))
        else:
            if not quiet:
                console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")
            continue
        parsed += 1

    if not parsed:
        raise TemplateError("no template files found in " + ", ".join(paths))
    return template
