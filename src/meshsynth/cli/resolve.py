"""Handle resolution CLI command."""

from __future__ import annotations

import click
from rich.console import Console

from meshsynth.cli.main import Context, pass_context

console = Console()


@click.command()
@click.argument("handle")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["json", "deps"]),
    default="json",
    help="Output format",
)
@pass_context
def resolve(ctx: Context, handle: str, output_format: str) -> None:
    """
    Resolve a handle to its template value.

    HANDLE is ``Id``, ``Id.Attribute`` or a pseudo parameter such as
    ``AWS::Region``, with or without the surrounding ``${...}``.

    Examples:

        # What does the load balancer's DNS name render to?
        meshsynth resolve LoadBalancer.DNSName

        # Which entries does the gateway service depend on?
        meshsynth resolve GatewayService --format deps
    """
    import json

    from meshsynth.core.resolver import ResolutionError, parse_handle
    from meshsynth.core.synth import SynthesisError
    from meshsynth.core.tokens import resolve as resolve_tokens

    body = handle[2:-1] if handle.startswith("${") and handle.endswith("}") else handle

    try:
        if output_format == "deps":
            _pseudo, target, _attribute = parse_handle(body)
            if target is None:
                console.print("[yellow]Pseudo parameters have no dependencies[/yellow]")
                return
            resolver = ctx.synthesizer.resolver
            for dep in resolver.dependencies(target):
                entry = resolver.get(dep)
                console.print(f"{dep} ({entry.kind.value})")
            return

        stack = ctx.synthesizer.build()
        value = ctx.synthesizer.resolver.resolve_handle(body)
        click.echo(json.dumps(resolve_tokens(value, stack.resolve_context()), indent=2))

    except click.ClickException as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    except (ResolutionError, SynthesisError) as e:
        console.print(f"[red]Resolution error:[/red] {e}")
        raise SystemExit(1)
