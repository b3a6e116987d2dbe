"""
Meshsynth - Declarative service mesh topologies compiled to deployment templates.

This package provides tools for:
- Declaring networks, meshes, clusters, services and load balancers as typed intent objects
- Resolving symbolic references between them (``${Mesh.Name}``, ``${AWS::Region}``)
- Lowering intent objects into a tree of provider-native resource records
- Synthesizing that tree once into a single template
- Generating topology diagrams (Mermaid, Graphviz)
"""

__version__ = "0.1.0"

from meshsynth.core.resolver import ReferenceResolver, ResolutionError
from meshsynth.core.synth import SynthesisError, Synthesizer
from meshsynth.core.topology import Topology

__all__ = [
    "__version__",
    "ReferenceResolver",
    "ResolutionError",
    "SynthesisError",
    "Synthesizer",
    "Topology",
]
