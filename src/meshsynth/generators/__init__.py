"""Generators for templates and topology diagrams."""

from meshsynth.generators.dot import generate_dot
from meshsynth.generators.mermaid import generate_mermaid
from meshsynth.generators.template import render_template

__all__ = [
    "generate_dot",
    "generate_mermaid",
    "render_template",
]
