"""
stackgraph CLI entry point.
"""
import sys
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from stackgraph import __version__
from stackgraph.config import build_context, load_config, load_fixtures
from stackgraph.engine.executor import EVENT_RESOLVED, EVENT_SKIPPED, Executor, stable_topological_order
from stackgraph.engine.expressions import COMPUTED
from stackgraph.engine.graph import ResourceGraph, build_graph
from stackgraph.errors import (
    ConfigError,
    ExecutionError,
    GraphError,
    PostconditionViolationError,
    ProvisioningError,
    TemplateError,
)
from stackgraph.models.result import ExecutionResult
from stackgraph.models.template import Template
from stackgraph.parsers import load_template
from stackgraph.providers import get_provider
from stackgraph.reporters import json_reporter, markdown

console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_FORMATS = ["table", "json", "markdown"]


def _load(paths: Tuple[str, ...], quiet: bool) -> Tuple[Template, ResourceGraph]:
    with console.status(f"[bold]Parsing {len(paths)} path(s)…"):
        try:
            template = load_template(paths, quiet=quiet)
            graph = build_graph(template)
        except TemplateError as exc:
            console.print(f"[red]Template error:[/red] {exc}")
            sys.exit(EXIT_USAGE)
        except GraphError as exc:
            console.print(f"[red]Graph error:[/red] {exc}")
            sys.exit(EXIT_USAGE)
    return template, graph


def _print_result_table(graph: ResourceGraph, result: ExecutionResult) -> None:
    """Print a rich summary table to stderr."""
    tbl = Table(title="Plan" if result.dry_run else "Apply", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Node", width=48)
    tbl.add_column("Instances", width=9)
    tbl.add_column("Status")

    counts = result.counts()
    for i, address in enumerate(stable_topological_order(graph), 1):
        if address in result.skipped:
            status = f"[dim]skipped: {result.skipped[address]}[/dim]"
        elif result.is_failed(address):
            status = "[red]failed[/red]"
        elif address not in counts:
            status = "[yellow]not processed[/yellow]"
        elif address in result.deferred:
            status = "[yellow]deferred check[/yellow]"
        elif result.dry_run:
            status = "[cyan]planned[/cyan]"
        else:
            status = "[green]resolved[/green]"
        tbl.add_row(str(i), address, str(counts.get(address, 0)), status)

    console.print(tbl)


def _write(content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        console.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _render(fmt: str, graph: ResourceGraph, result: ExecutionResult, source: str, output: Optional[str]) -> None:
    if fmt == "json":
        _write(json_reporter.build_report(graph, result, source), output)
    elif fmt == "markdown":
        _write(markdown.build_report(graph, result, source), output)
    else:
        _print_result_table(graph, result)
        if result.outputs:
            for name, value in json_reporter.outputs_view(graph, result).items():
                click.echo(f"{name} = {value}")


def _run(
    paths: Tuple[str, ...],
    dry_run: bool,
    context_file: Optional[str],
    overrides: Tuple[str, ...],
    fixtures_file: Optional[str],
    output_format: Optional[str],
    output: Optional[str],
    config_file: Optional[str],
    quiet: bool,
) -> None:
    try:
        config = load_config(config_file)
        context = build_context(config, context_file, overrides)
        fixtures: Dict[str, Any] = dict(config.get("fixtures") or {})
        if fixtures_file:
            fixtures.update(load_fixtures(fixtures_file))
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(EXIT_USAGE)

    fmt = (output_format or config.get("format") or "table").lower()
    if fmt not in _FORMATS:
        console.print(f"[red]Config error:[/red] unknown format '{fmt}'")
        sys.exit(EXIT_USAGE)

    template, graph = _load(paths, quiet)
    if not quiet:
        console.print(f"Found [bold]{len(graph)}[/bold] nodes.")

    def on_event(event: str, address: str, detail: Any) -> None:
        if quiet:
            return
        if event == EVENT_RESOLVED:
            console.print(f"  [green]✓[/green] {address}")
        elif event == EVENT_SKIPPED:
            console.print(f"  [dim]- {address} ({detail})[/dim]")

    provider = get_provider("memory", fixtures=fixtures)
    executor = Executor(template, provider, context, dry_run=dry_run, on_event=on_event, quiet=quiet)

    source_label = ", ".join(paths)
    try:
        result = executor.run()
    except ExecutionError as exc:
        if isinstance(exc, PostconditionViolationError):
            console.print(f"[red]Postcondition failed:[/red] {exc.address}: {exc.message}")
        elif isinstance(exc, ProvisioningError):
            console.print(f"[red]Provisioning failed:[/red] {exc.address}: {exc.cause}")
        else:
            console.print(f"[red]Error:[/red] {exc}")
        if exc.result is not None and fmt == "table":
            _print_result_table(graph, exc.result)
        elif exc.result is not None:
            _render(fmt, graph, exc.result, source_label, output)
        sys.exit(EXIT_FAILED)

    _render(fmt, graph, result, source_label, output)
    if not quiet:
        created = len(provider.actions("create"))
        updated = len(provider.actions("update"))
        unknown = sum(1 for v in result.outputs.values() if v is COMPUTED)
        if dry_run:
            console.print(
                f"Plan: [bold]{sum(result.counts().values())}[/bold] instance(s), "
                f"{len(result.skipped)} skipped, {unknown} output(s) known after apply."
            )
        else:
            console.print(f"Apply complete: {created} created, {updated} updated, {len(result.skipped)} skipped.")
    sys.exit(EXIT_OK)


def _run_options(fn):
    options = [
        click.argument("paths", nargs=-1, required=True, type=click.Path()),
        click.option("--context", "context_file", type=click.Path(), default=None,
                     help="YAML or JSON file with context values."),
        click.option("--set", "overrides", multiple=True, metavar="KEY.PATH=VALUE",
                     help="Override a context value; may be repeated."),
        click.option("--fixtures", "fixtures_file", type=click.Path(), default=None,
                     help="Lookup records for data sources, keyed by kind."),
        click.option("--format", "output_format", type=click.Choice(_FORMATS, case_sensitive=False),
                     default=None, help="Output format (default: table, or 'format' from config)."),
        click.option("--output", "-o", type=click.Path(), default=None,
                     help="Write report to this file (default: stdout)."),
        click.option("--config", "config_file", type=click.Path(), default=None,
                     help="Config file (default: ./stackgraph.yaml if present)."),
        click.option("--quiet", "-q", is_flag=True, default=False, help="Suppress progress output."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """stackgraph: evaluate, order and provision declarative resource graphs."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
def validate(paths: Tuple[str, ...]) -> None:
    """Parse templates and check the dependency graph."""
    template, graph = _load(paths, quiet=False)
    console.print(
        f"[green]Valid:[/green] {len(graph)} node(s), {len(graph.edges())} edge(s), "
        f"{len(template.outputs)} output(s)."
    )
    sys.exit(EXIT_OK)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
def graph(paths: Tuple[str, ...]) -> None:
    """Print the execution order and each node's dependencies."""
    _, rgraph = _load(paths, quiet=False)
    tbl = Table(title="Execution Order", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Node")
    tbl.add_column("Depends on")
    for i, address in enumerate(stable_topological_order(rgraph), 1):
        tbl.add_row(str(i), address, ", ".join(rgraph.dependencies(address)) or "-")
    Console().print(tbl)
    sys.exit(EXIT_OK)


@cli.command()
@_run_options
def plan(paths, context_file, overrides, fixtures_file, output_format, output, config_file, quiet) -> None:
    """Dry-run: resolve everything without creating or updating resources."""
    _run(paths, True, context_file, overrides, fixtures_file, output_format, output, config_file, quiet)


@cli.command()
@_run_options
def apply(paths, context_file, overrides, fixtures_file, output_format, output, config_file, quiet) -> None:
    """Provision resources in dependency order against the in-memory provider."""
    _run(paths, False, context_file, overrides, fixtures_file, output_format, output, config_file, quiet)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
