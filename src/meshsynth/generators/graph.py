"""Intent-level dependency edges shared by the diagram generators."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from meshsynth.core.resolver import entry_references, handle_references

if TYPE_CHECKING:
    from meshsynth.core.topology import Entry, Topology


def group_by_kind(topology: Topology) -> dict[str, list[Entry]]:
    groups: dict[str, list[Entry]] = defaultdict(list)
    for entry in topology:
        groups[entry.kind.value].append(entry)
    return groups


def topology_edges(topology: Topology) -> list[tuple[str, str, str]]:
    """
    Edges (source, target, label) between declared entries.

    Labels name the referencing field; ``allow_from`` rules collapse to
    ``allow_from`` and handles are labelled with their attribute.
    Edges to unknown ids are dropped.
    """
    edges: list[tuple[str, str, str]] = []
    for entry in topology:
        for field, target, _kinds in entry_references(entry):
            if target not in topology:
                continue
            label = "allow_from" if "allow_from" in field else field
            edge = (entry.id, target, label)
            if edge not in edges:
                edges.append(edge)
        for _pseudo, target, attribute in handle_references(entry):
            if not target or target not in topology:
                continue
            edge = (entry.id, target, f"${{{attribute or 'ref'}}}")
            if edge not in edges:
                edges.append(edge)
    return edges
