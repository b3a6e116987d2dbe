"""Validation CLI command."""

from __future__ import annotations

import click
from rich.console import Console

from meshsynth.cli.main import Context, pass_context

console = Console()


@click.command()
@click.option(
    "--strict",
    is_flag=True,
    help="Fail on warnings",
)
@click.option(
    "--check-synthesis",
    is_flag=True,
    help="Also build the construct tree and render the template",
)
@pass_context
def validate(ctx: Context, strict: bool, check_synthesis: bool) -> None:
    """
    Validate a topology declaration.

    Checks for schema compliance, missing or mistyped references,
    reference cycles and cross-entry consistency.

    Examples:

        # Basic validation
        meshsynth validate

        # Strict validation that also synthesizes
        meshsynth validate --strict --check-synthesis
    """
    from meshsynth.core.resolver import ReferenceResolver
    from meshsynth.core.synth import SynthesisError

    errors: list[str] = []
    warnings: list[str] = []

    console.print("[bold]Validating topology...[/bold]")
    try:
        topology = ctx.topology
    except click.ClickException as e:
        console.print(f"  [red]✗[/red] {e.message}")
        raise SystemExit(1)
    console.print(f"  [green]✓[/green] Topology loaded: {len(topology)} entries")

    console.print("[bold]Checking references...[/bold]")
    resolver = ReferenceResolver(topology)
    for err in resolver.validate_all():
        errors.append(err)
        console.print(f"  [red]✗[/red] {err}")
    if not errors:
        console.print("  [green]✓[/green] All references valid")
    warnings.extend(resolver.warnings())

    if check_synthesis and not errors:
        console.print("[bold]Synthesizing...[/bold]")
        try:
            template = ctx.synthesizer.synth()
            console.print(
                f"  [green]✓[/green] Template rendered: {len(template['Resources'])} resources"
            )
        except SynthesisError as e:
            errors.append(str(e))
            console.print(f"  [red]✗[/red] {e}")

    # Summary
    console.print("\n[bold]Validation Summary[/bold]")
    console.print(f"  Errors: {len(errors)}")
    console.print(f"  Warnings: {len(warnings)}")

    if errors:
        console.print("\n[red bold]Validation failed[/red bold]")
        for err in errors:
            console.print(f"  [red]•[/red] {err}")
        raise SystemExit(1)

    if warnings and strict:
        console.print("\n[yellow bold]Validation failed (strict mode)[/yellow bold]")
        for warn in warnings:
            console.print(f"  [yellow]•[/yellow] {warn}")
        raise SystemExit(1)

    if warnings:
        console.print("\n[yellow]Warnings:[/yellow]")
        for warn in warnings:
            console.print(f"  [yellow]•[/yellow] {warn}")

    console.print("\n[green bold]Validation passed[/green bold]")
