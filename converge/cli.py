"""
converge CLI entry point.
"""
import json
import logging
import os
import signal
import sys
import threading
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from converge import __version__
from converge.config import load_settings
from converge.engine.core import Reconciler
from converge.engine.graph import build_graph
from converge.engine.state import StateStore
from converge.errors import ConfigurationError, ConvergeError, StateCorruptionError, StateLockError
from converge.kinds import default_registry
from converge.models.plan import ApplyResult, Operation, OperationStatus, Plan, ResultStatus
from converge.models.resource import Configuration, ResourceID
from converge.models.schema import validate
from converge.parsers import parse_files
from converge.providers import get_provider
from converge.reporters import json_reporter, markdown

console = Console(stderr=True)

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "bold magenta",
    "delete": "red",
}

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "in_flight": "cyan",
    "pending": "dim",
}

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_STATE = 3


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]converge[/bold cyan] [dim]v{__version__}[/dim]\n")


def _setup_logging(verbose: bool, no_color: bool) -> None:
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    root = logging.getLogger("converge")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _load_configuration(paths: Tuple[str, ...]) -> Configuration:
    file_paths = _collect_files(paths)
    if not file_paths:
        console.print("[red]No files found.[/red]")
        sys.exit(EXIT_CONFIG)
    with console.status(f"[bold]Parsing {len(file_paths)} file(s)…"):
        config = parse_files(file_paths)
    if not config.resources:
        console.print("[yellow]No resources found in the provided paths.[/yellow]")
    return config


def _reconciler(ctx: click.Context) -> Reconciler:
    settings = ctx.obj["settings"]
    registry = default_registry(settings.kinds_file)
    provider = get_provider(settings.provider, registry, path=settings.provider_path)
    return Reconciler(StateStore(settings.state_path), provider, registry, settings)


def _fail(exc: ConvergeError) -> None:
    if isinstance(exc, ConfigurationError):
        console.print("[red]Configuration error:[/red]")
        for p in exc.problems:
            console.print(f"  • {p}", markup=False)
        sys.exit(EXIT_CONFIG)
    if isinstance(exc, (StateCorruptionError, StateLockError)):
        console.print(f"[red]State error:[/red] {exc}", markup=False)
        sys.exit(EXIT_STATE)
    console.print(f"[red]Error:[/red] {exc}", markup=False)
    sys.exit(EXIT_FAILED)


def _print_plan_table(plan: Plan, no_color: bool) -> None:
    """Print the ordered operations to stderr."""
    c = Console(stderr=True, no_color=no_color)
    if plan.is_empty:
        c.print("[green]No changes.[/green] Realized state matches the configuration.")
        return

    tbl = Table(title="Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Operation", width=10)
    tbl.add_column("Resource")
    tbl.add_column("Rank", width=5)
    tbl.add_column("Changed")

    for i, op in enumerate(plan.operations, 1):
        label = op.kind.value
        if op.replacing:
            label += " (replace)"
        color = _ACTION_COLORS.get("replace" if op.replacing else op.kind.value, "")
        tbl.add_row(
            str(i),
            f"[{color}]{label}[/{color}]" if color else label,
            str(op.resource_id),
            str(op.dependency_rank),
            ", ".join(op.changed),
        )
    c.print(tbl)

    counts = plan.summary()
    c.print(
        "Plan: "
        + ", ".join(
            f"[{_ACTION_COLORS[a]}]{n} to {a}[/{_ACTION_COLORS[a]}]" for a, n in counts.items() if n
        )
    )


def _print_result_table(result: ApplyResult, no_color: bool) -> None:
    c = Console(stderr=True, no_color=no_color)
    tbl = Table(title="Result", show_header=True, header_style="bold")
    tbl.add_column("Operation")
    tbl.add_column("Status", width=10)
    tbl.add_column("Attempts", width=8)
    tbl.add_column("Error")
    for r in result.results.values():
        color = _STATUS_COLORS.get(r.status.value, "")
        tbl.add_row(
            str(r.operation),
            f"[{color}]{r.status.value}[/{color}]" if color else r.status.value,
            str(r.attempts),
            r.error or "",
        )
    c.print(tbl)
    c.print(
        f"[green]{len(result.succeeded)} succeeded[/green], "
        f"[red]{len(result.failed)} failed[/red], "
        f"[yellow]{len(result.skipped)} skipped[/yellow]"
    )


def _progress(no_color: bool):
    c = Console(stderr=True, no_color=no_color)

    def on_event(op: Operation, status: OperationStatus, error: Optional[str]) -> None:
        if status == OperationStatus.IN_FLIGHT:
            c.print(f"[cyan]→[/cyan] {op} …")
        elif status == OperationStatus.SUCCEEDED:
            c.print(f"[green]✓[/green] {op}")
        elif status == OperationStatus.FAILED:
            c.print(f"[bold red]✗[/bold red] {op}: {error}")
        elif status == OperationStatus.SKIPPED:
            c.print(f"[yellow]–[/yellow] {op} skipped")

    return on_event


def _run_with_cancellation(fn):
    """
    Run ``fn(cancel_event)``; the first Ctrl-C stops scheduling new
    operations and lets in-flight ones finish.
    """
    cancel = threading.Event()

    def handler(signum, frame):
        if not cancel.is_set():
            console.print(
                "\n[yellow]Interrupt received:[/yellow] waiting for in-flight operations to finish…"
            )
            cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not the main thread (e.g. under a test runner)
        previous = None
    try:
        return fn(cancel)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def _print_outputs(outputs: Dict) -> None:
    if not outputs:
        return
    console.print("\n[bold]Outputs:[/bold]")
    for name, value in outputs.items():
        console.print(f"  {name} = {value!r}", markup=False)


def _write_report(content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        console.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_file", type=click.Path(), default=None,
              envvar="CONVERGE_CONFIG", help="Settings file (default: converge.yaml).")
@click.option("--state", "state_path", type=click.Path(), default=None,
              envvar="CONVERGE_STATE", help="State file path.")
@click.option("--provider-path", type=click.Path(), default=None,
              envvar="CONVERGE_PROVIDER_PATH", help="Where the simulated cloud is persisted.")
@click.option("--lock-timeout", type=float, default=None,
              envvar="CONVERGE_LOCK_TIMEOUT", help="Seconds to wait for the state lock.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.pass_context
def cli(ctx, config_file, state_path, provider_path, lock_timeout, verbose, no_color):
    """converge — dependency-aware declarative resource reconciliation."""
    _setup_logging(verbose, no_color)
    try:
        settings = load_settings(
            config_file,
            state_path=state_path,
            provider_path=provider_path,
            lock_timeout=lock_timeout,
        )
    except ConfigurationError as exc:
        _fail(exc)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["no_color"] = no_color


_format_option = click.option(
    "--format", "output_format",
    type=click.Choice(["text", "json", "markdown"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)

_output_option = click.option(
    "--output", "-o",
    type=click.Path(),
    default=None,
    help="Write report to this file (default: stdout).",
)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_format_option
@_output_option
@click.option("--refresh", is_flag=True, default=False, help="Detect drift through the provider first.")
@click.option("--detailed-exitcode", is_flag=True, default=False,
              help="Exit 2 when the plan has changes, 0 when it is empty.")
@click.pass_context
def plan(ctx, paths, output_format, output, refresh, detailed_exitcode):
    """
    Show the operations needed to reach the configuration. Nothing is changed.

    PATHS can be files or directories; multiple values accepted.
    """
    no_color = ctx.obj["no_color"]
    config = _load_configuration(paths)
    try:
        the_plan = _reconciler(ctx).plan(config, refresh=refresh)
    except ConvergeError as exc:
        _fail(exc)

    fmt = output_format.lower()
    source_label = ", ".join(paths)
    if fmt == "json":
        _write_report(json_reporter.build_report(the_plan, source_label), output)
    elif fmt == "markdown":
        _write_report(markdown.build_report(the_plan, source_label, config.resources), output)
    else:
        _print_plan_table(the_plan, no_color)

    if detailed_exitcode and not the_plan.is_empty:
        sys.exit(2)
    sys.exit(0)


def _execute(ctx, operation: str, config: Configuration, auto_approve: bool,
             refresh: bool, output_format: str, output: Optional[str], source_label: str) -> None:
    no_color = ctx.obj["no_color"]
    try:
        reconciler = _reconciler(ctx)
    except ConvergeError as exc:
        _fail(exc)

    def confirm(the_plan: Plan) -> bool:
        _print_plan_table(the_plan, no_color)
        if auto_approve:
            return True
        return click.confirm(f"Do you want to {operation} these changes?", default=False, err=True)

    try:
        if operation == "destroy":
            result = _run_with_cancellation(
                lambda cancel: reconciler.destroy(
                    confirm=confirm, cancel_event=cancel, on_event=_progress(no_color)
                )
            )
        else:
            result = _run_with_cancellation(
                lambda cancel: reconciler.apply(
                    config, refresh=refresh, confirm=confirm,
                    cancel_event=cancel, on_event=_progress(no_color),
                )
            )
    except ConvergeError as exc:
        _fail(exc)

    if result is None:
        console.print(f"[yellow]{operation.capitalize()} cancelled.[/yellow]")
        sys.exit(0)

    if result.plan.is_empty:
        _print_plan_table(result.plan, no_color)
    else:
        _print_result_table(result, no_color)

    outputs = reconciler.outputs(config) if operation == "apply" else {}
    fmt = output_format.lower()
    if fmt == "json":
        _write_report(json_reporter.build_report(result.plan, source_label, result, outputs), output)
    elif fmt == "markdown":
        _write_report(markdown.build_report(result.plan, source_label, config.resources, result), output)
    else:
        _print_outputs(outputs)

    if result.status != ResultStatus.SUCCEEDED:
        console.print(
            f"[red]{operation.capitalize()} {result.status.value}.[/red] "
            "Succeeded operations are recorded in state; fix the problem and run again."
        )
        sys.exit(EXIT_FAILED)
    sys.exit(0)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.option("--parallelism", type=int, default=None, envvar="CONVERGE_PARALLELISM",
              help="Maximum concurrent provider operations.")
@click.option("--refresh", is_flag=True, default=False, help="Detect drift through the provider first.")
@_format_option
@_output_option
@click.pass_context
def apply(ctx, paths, auto_approve, parallelism, refresh, output_format, output):
    """Plan, then execute the plan against the provider."""
    _print_banner(ctx.obj["no_color"])
    if parallelism is not None:
        if parallelism < 1:
            raise click.BadParameter("must be at least 1", param_hint="--parallelism")
        ctx.obj["settings"].parallelism = parallelism
    config = _load_configuration(paths)
    _execute(ctx, "apply", config, auto_approve, refresh, output_format, output, ", ".join(paths))


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@_format_option
@_output_option
@click.pass_context
def destroy(ctx, paths, auto_approve, output_format, output):
    """Delete every resource recorded in state, dependents first."""
    _print_banner(ctx.obj["no_color"])
    config = _load_configuration(paths) if paths else Configuration()
    _execute(ctx, "destroy", config, auto_approve, False, output_format, output, ", ".join(paths) or "-")


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.pass_context
def graph(ctx, paths):
    """Print the dependency graph as a Mermaid diagram."""
    settings = ctx.obj["settings"]
    config = _load_configuration(paths)
    try:
        validate(config.resources, default_registry(settings.kinds_file))
        g = build_graph(config.resources)
    except ConvergeError as exc:
        _fail(exc)
    console.print(f"{len(g)} resource(s), {len(g.topological_order())} in dependency order.")
    click.echo(markdown.build_mermaid(config.resources))


@cli.group()
def state():
    """Inspect the state file."""


@state.command("list")
@click.pass_context
def state_list(ctx):
    """List every resource recorded in state."""
    store = StateStore(ctx.obj["settings"].state_path)
    try:
        states = store.load()
    except ConvergeError as exc:
        _fail(exc)
    for rid in sorted(states):
        click.echo(f"{rid}\t{states[rid].provider_id}")


@state.command("show")
@click.argument("resource_id")
@click.pass_context
def state_show(ctx, resource_id):
    """Show the recorded state of one resource (KIND.NAME)."""
    store = StateStore(ctx.obj["settings"].state_path)
    try:
        rid = ResourceID.parse(resource_id)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="RESOURCE_ID")
    try:
        states = store.load()
    except ConvergeError as exc:
        _fail(exc)
    if rid not in states:
        console.print(f"[red]{rid} is not in state.[/red]")
        sys.exit(EXIT_FAILED)
    click.echo(json.dumps(states[rid].to_dict(), indent=2, sort_keys=True))


@cli.command("force-unlock")
@click.pass_context
def force_unlock(ctx):
    """Remove a stale state lock left by a crashed run."""
    store = StateStore(ctx.obj["settings"].state_path)
    holder = store.lock_info()
    if store.force_unlock():
        console.print(f"Removed lock held by {holder}.", markup=False)
    else:
        console.print("State is not locked.")


@cli.command()
@click.pass_context
def kinds(ctx):
    """List the resource kinds and which attributes change in place."""
    try:
        registry = default_registry(ctx.obj["settings"].kinds_file)
    except ConvergeError as exc:
        _fail(exc)
    tbl = Table(title="Resource kinds", show_header=True, header_style="bold")
    tbl.add_column("Kind")
    tbl.add_column("Updatable in place")
    tbl.add_column("References")
    tbl.add_column("Outputs")
    for kind in registry.kinds():
        schema = registry[kind]
        tbl.add_row(
            kind,
            ", ".join(sorted(schema.updatable)) or "-",
            ", ".join(f"{p}→{'|'.join(k)}" for p, k in sorted(schema.references.items())) or "-",
            ", ".join(schema.outputs),
        )
    Console(no_color=ctx.obj["no_color"]).print(tbl)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
