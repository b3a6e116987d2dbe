"""Template synthesis CLI command."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console

from meshsynth.cli.main import Context, pass_context

console = Console(stderr=True)


@click.command()
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["json", "yaml"]),
    default=None,
    help="Template format (defaults to MESHSYNTH_DEFAULT_FORMAT)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Write the template to a file instead of stdout",
)
@pass_context
def synth(ctx: Context, output_format: str | None, output: Path | None) -> None:
    """
    Synthesize the topology into a deployment template.

    Examples:

        # Print the JSON template
        meshsynth synth

        # Write YAML for a specific region
        meshsynth --region us-west-2 synth --format yaml -o template.yml
    """
    from meshsynth.core.synth import SynthesisError
    from meshsynth.generators.template import render_template

    try:
        template = ctx.synthesizer.synth()
    except (click.ClickException, SynthesisError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    content = render_template(template, output_format or ctx.settings.default_format)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(content)
        console.print(
            f"[green]Synthesized:[/green] {output} "
            f"({len(template['Resources'])} resources)"
        )
    else:
        click.echo(content, nl=False)
