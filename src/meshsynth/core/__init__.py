"""Core domain models: topology, references, construct tree and synthesis."""

from meshsynth.core.construct import (
    CfnOutput,
    CfnParameter,
    CfnResource,
    Construct,
    ConstructError,
    Stack,
)
from meshsynth.core.resolver import ReferenceResolver, ResolutionError
from meshsynth.core.schema import Kind, TopologySchema
from meshsynth.core.synth import SynthesisError, Synthesizer
from meshsynth.core.topology import Entry, Topology

__all__ = [
    "CfnOutput",
    "CfnParameter",
    "CfnResource",
    "Construct",
    "ConstructError",
    "Stack",
    "ReferenceResolver",
    "ResolutionError",
    "Kind",
    "TopologySchema",
    "SynthesisError",
    "Synthesizer",
    "Entry",
    "Topology",
]
