"""Graphviz DOT diagram generation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from meshsynth.core.schema import Kind
from meshsynth.generators.graph import group_by_kind, topology_edges

if TYPE_CHECKING:
    from meshsynth.core.topology import Topology

FILL_COLORS = {
    Kind.NETWORK.value: "lightgray",
    Kind.MESH.value: "lightyellow",
    Kind.VIRTUAL_GATEWAY.value: "lightyellow",
    Kind.VIRTUAL_NODE.value: "lightyellow",
    Kind.VIRTUAL_SERVICE.value: "lightyellow",
    Kind.GATEWAY_ROUTE.value: "lightyellow",
    Kind.CERTIFICATE.value: "palegreen",
    Kind.OUTPUT.value: "white",
}


def generate_dot(topology: Topology) -> str:
    """
    Generate Graphviz DOT diagram.

    Can be rendered with: dot -Tpng topology.dot -o topology.png
    """
    lines = [
        f'digraph "{topology.stack_name}" {{',
        "    rankdir=LR;",
        "    node [shape=box, style=filled, fillcolor=lightblue];",
        "    edge [fontsize=10];",
        "",
    ]

    for kind, entries in sorted(group_by_kind(topology).items()):
        lines.append(f"    subgraph cluster_{kind} {{")
        lines.append(f'        label="{kind}";')
        lines.append("        style=dashed;")
        lines.append("        color=gray;")
        lines.append("")

        fillcolor = FILL_COLORS.get(kind, "lightblue")
        for entry in entries:
            lines.append(f'        "{entry.id}" [label="{entry.id}", fillcolor={fillcolor}];')

        lines.append("    }")
        lines.append("")

    lines.append("    // References")
    for source, target, label in topology_edges(topology):
        if label == "allow_from":
            style = "style=dashed, color=red"
        else:
            style = "color=black"
        lines.append(f'    "{source}" -> "{target}" [label="{label}", {style}];')

    lines.append("}")

    return "\n".join(lines)
