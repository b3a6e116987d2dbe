"""Mermaid diagram generation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from meshsynth.generators.graph import group_by_kind, topology_edges

if TYPE_CHECKING:
    from meshsynth.core.topology import Topology


def generate_mermaid(topology: Topology) -> str:
    """
    Generate Mermaid flowchart diagram.

    Returns Markdown with embedded Mermaid diagram.
    """
    lines = [f"# {topology.stack_name}", "", "```mermaid", "flowchart LR"]

    # One subgraph per kind
    for kind, entries in sorted(group_by_kind(topology).items()):
        lines.append(f"    subgraph {kind}")
        for entry in entries:
            lines.append(f"        {entry.id}[{entry.id}]")
        lines.append("    end")

    lines.append("")
    lines.append("    %% References")

    for source, target, label in topology_edges(topology):
        # Connections are drawn dotted
        arrow = "-.->" if label == "allow_from" else "-->"
        lines.append(f'    {source} {arrow}|"{label}"| {target}')

    lines.append("```")
    lines.append("")
    lines.append("## Legend")
    lines.append("")
    lines.append("- `-->` Reference")
    lines.append("- `-.->` Security group ingress (allow_from)")

    return "\n".join(lines)
