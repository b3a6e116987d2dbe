"""Main CLI entry point for meshsynth."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click
from rich.console import Console

from meshsynth import __version__
from meshsynth.config import get_settings
from meshsynth.logs import configure_logging

console = Console()

# Default path (can be overridden)
DEFAULT_TOPOLOGY = "examples/app-mesh-tls-gateway.yml"


class Context:
    """CLI context object passed to commands."""

    def __init__(self) -> None:
        self.topology_path: Path | None = None
        self.verbose: bool = False
        self.account: str | None = None
        self.region: str | None = None
        self._topology: Any = None
        self._synthesizer: Any = None

    @property
    def settings(self) -> Any:
        return get_settings()

    @property
    def topology(self) -> Any:
        """Lazy-load topology."""
        if self._topology is None:
            import yaml
            from pydantic import ValidationError

            from meshsynth.core.topology import Topology

            if not self.topology_path or not self.topology_path.exists():
                raise click.ClickException(f"Topology not found: {self.topology_path}")
            try:
                self._topology = Topology.load(self.topology_path)
            except ValidationError as e:
                raise click.ClickException(f"Invalid topology {self.topology_path}:\n{e}") from e
            except yaml.YAMLError as e:
                raise click.ClickException(f"Malformed YAML in {self.topology_path}:\n{e}") from e
        return self._topology

    @property
    def synthesizer(self) -> Any:
        """Lazy-create the synthesizer for the loaded topology."""
        if self._synthesizer is None:
            from meshsynth.core.synth import Synthesizer

            self._synthesizer = Synthesizer(
                self.topology,
                settings=self.settings,
                account=self.account,
                region=self.region,
            )
        return self._synthesizer


pass_context = click.make_pass_decorator(Context, ensure=True)


@click.group()
@click.version_option(version=__version__, prog_name="meshsynth")
@click.option(
    "-t",
    "--topology",
    type=click.Path(exists=False, path_type=Path),
    default=DEFAULT_TOPOLOGY,
    help="Path to topology YAML file",
)
@click.option("--account", help="Target account id (overrides the topology env block)")
@click.option("--region", help="Target region (overrides the topology env block)")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@pass_context
def cli(
    ctx: Context,
    topology: Path,
    account: str | None,
    region: str | None,
    verbose: bool,
) -> None:
    """
    Meshsynth - Service mesh topology to deployment templates.

    Declare networks, meshes, clusters and load balancers in YAML and
    synthesize them into a single template with resolved references.
    """
    ctx.topology_path = topology
    ctx.account = account
    ctx.region = region
    ctx.verbose = verbose

    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, json=settings.log_json)


# Import and register subcommands
from meshsynth.cli.diagram import diagram
from meshsynth.cli.resolve import resolve
from meshsynth.cli.synth import synth
from meshsynth.cli.validate import validate

cli.add_command(diagram)
cli.add_command(resolve)
cli.add_command(synth)
cli.add_command(validate)


@cli.command()
@pass_context
def info(ctx: Context) -> None:
    """Show topology summary."""
    from rich.table import Table

    from meshsynth.core.schema import Kind

    try:
        topology = ctx.topology
    except click.ClickException as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    console.print(f"\n[bold]Meshsynth v{__version__}[/bold]\n")

    console.print("[bold cyan]Topology Summary[/bold cyan]")
    console.print(f"  Path: {ctx.topology_path}")
    console.print(f"  Stack: {topology.stack_name}")
    if topology.description:
        console.print(f"  Description: {topology.description}")
    console.print(f"  Account: {ctx.account or topology.account or '-'}")
    console.print(f"  Region: {ctx.region or topology.region or '-'}")
    console.print(f"  Total entries: {len(topology)}")

    if len(topology) > 0:
        table = Table(title="Entries by Kind")
        table.add_column("Kind", style="cyan")
        table.add_column("Count", justify="right")

        for kind in Kind:
            count = len(topology.by_kind(kind))
            if count > 0:
                table.add_row(kind.value, str(count))

        console.print(table)


@cli.command()
@click.option("--type", "-T", "type_filter", help="Only show resources of this type")
@pass_context
def resources(ctx: Context, type_filter: str | None) -> None:
    """List the resources a topology synthesizes to."""
    from rich.table import Table

    from meshsynth.core.synth import SynthesisError

    try:
        items = ctx.synthesizer.resources()
    except (click.ClickException, SynthesisError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    if type_filter:
        items = [r for r in items if r.type == type_filter]

    if not items:
        console.print("[yellow]No resources[/yellow]")
        return

    table = Table(title=f"Resources of {ctx.topology.stack_name}")
    table.add_column("Logical ID", style="cyan")
    table.add_column("Type")
    table.add_column("Path", style="dim")

    for resource in items:
        table.add_row(resource.logical_id, resource.type, resource.path)

    console.print(table)


if __name__ == "__main__":
    cli()
