"""Build the construct tree for a topology and synthesize it into a template."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import structlog

from meshsynth.core.construct import (
    CfnElement,
    CfnOutput,
    CfnResource,
    ConstructError,
    Environment,
    Stack,
)
from meshsynth.core.resolver import ReferenceResolver, ResolutionError
from meshsynth.core.schema import Kind, OutputSpec
from meshsynth.core.topology import Topology

if TYPE_CHECKING:
    from meshsynth.config import Settings

logger = structlog.get_logger(__name__)

SECTION_ORDER = ("Parameters", "Resources", "Outputs")


class SynthesisError(Exception):
    """Raised when a topology cannot be turned into a template."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        details = "\n".join(f"  - {e}" for e in self.errors)
        return f"{super().__str__()}\n{details}"


class Synthesizer:
    """
    Lowers a topology into a construct tree and renders the template.

    ``build`` validates and instantiates the tree once; ``synth`` locks it
    and renders a template that is cached for later calls.
    """

    def __init__(
        self,
        topology: Topology,
        settings: Settings | None = None,
        account: str | None = None,
        region: str | None = None,
    ) -> None:
        if settings is None:
            from meshsynth.config import get_settings

            settings = get_settings()
        self._topology = topology
        self._settings = settings
        self._resolver = ReferenceResolver(topology)
        # CLI flags win over the topology's env block, which wins over settings.
        self._account = account or topology.account or settings.account
        self._region = region or topology.region or settings.region
        self._stack: Stack | None = None
        self._template: dict[str, Any] | None = None

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def resolver(self) -> ReferenceResolver:
        return self._resolver

    @property
    def environment(self) -> Environment:
        return Environment(account=self._account, region=self._region)

    @property
    def stack(self) -> Stack:
        """The construct tree, built on first access."""
        if self._stack is None:
            self._stack = self.build()
        return self._stack

    def build(self) -> Stack:
        """
        Validate the topology and instantiate its construct tree.

        Raises:
            SynthesisError: If the topology has validation errors
        """
        if self._stack is not None:
            return self._stack

        errors = self._resolver.validate_all()
        if errors:
            raise SynthesisError(f"Topology {self._topology.stack_name} is invalid", errors)

        from meshsynth.constructs import BUILDERS

        stack = Stack(
            self._topology.stack_name,
            description=self._topology.description,
            env=self.environment,
        )
        for entry in self._resolver.build_order():
            try:
                if entry.kind == Kind.OUTPUT:
                    self._add_output(stack, entry.id, cast(OutputSpec, entry.spec))
                    continue
                construct = BUILDERS[entry.kind](
                    stack, entry.id, entry.spec, self._resolver, self._settings
                )
                self._resolver.register(construct)
                construct.apply_overrides()
            except (ConstructError, ResolutionError) as e:
                raise SynthesisError(f"Failed to build {entry.id}: {e}") from e
            logger.debug("construct_built", id=entry.id, kind=entry.kind.value)

        self._stack = stack
        return stack

    def _add_output(self, stack: Stack, id: str, spec: OutputSpec) -> CfnOutput:
        return CfnOutput(
            stack,
            id,
            self._resolver.resolve(spec.value),
            description=spec.description,
            export_name=self._resolver.resolve(spec.export_name),
        )

    def synth(self) -> dict[str, Any]:
        """
        Render the template.

        The tree is locked afterwards; repeated calls return the same
        template.
        """
        if self._template is not None:
            return self._template

        stack = self.stack
        stack.lock()
        elements = stack.elements()
        self._check_logical_ids(elements)
        self._check_references(stack, elements)
        self._check_dependency_cycles(elements)

        context = stack.resolve_context()
        sections: dict[str, dict[str, Any]] = {name: {} for name in SECTION_ORDER}
        for element in elements:
            try:
                rendered = element.render(context)
            except ConstructError as e:
                raise SynthesisError(f"Failed to render {element.path}: {e}") from e
            sections[element.section][element.logical_id] = rendered

        template: dict[str, Any] = {}
        if stack.description:
            template["Description"] = stack.description
        for name in SECTION_ORDER:
            if sections[name] or name == "Resources":
                template[name] = sections[name]

        self._template = template
        logger.info(
            "synthesis_complete",
            stack=stack.id,
            resources=len(sections["Resources"]),
            parameters=len(sections["Parameters"]),
            outputs=len(sections["Outputs"]),
        )
        return template

    def resources(self) -> list[CfnResource]:
        """Resources of the built tree in tree order."""
        return [e for e in self.stack.elements() if isinstance(e, CfnResource)]

    def _check_logical_ids(self, elements: list[CfnElement]) -> None:
        seen: dict[str, CfnElement] = {}
        errors = []
        for element in elements:
            other = seen.get(element.logical_id)
            if other is not None:
                errors.append(
                    f"{element.path} and {other.path} share logical id {element.logical_id}"
                )
            else:
                seen[element.logical_id] = element
        if errors:
            raise SynthesisError("Duplicate logical ids", errors)

    def _check_references(self, stack: Stack, elements: list[CfnElement]) -> None:
        errors = []
        for element in elements:
            for target in element.referenced_elements():
                if target.root is not stack:
                    errors.append(f"{element.path} references {target.path} outside the stack")
        if errors:
            raise SynthesisError("References to elements outside the stack", errors)

    def _check_dependency_cycles(self, elements: list[CfnElement]) -> None:
        resources = [e for e in elements if isinstance(e, CfnResource)]
        edges = {
            id(r): [t for t in r.referenced_elements() if isinstance(t, CfnResource)]
            for r in resources
        }
        done: set[int] = set()
        visiting: list[CfnResource] = []

        def visit(resource: CfnResource) -> None:
            if id(resource) in done:
                return
            if resource in visiting:
                cycle = visiting[visiting.index(resource):] + [resource]
                raise SynthesisError(
                    "Resource dependency cycle",
                    [" -> ".join(r.logical_id for r in cycle)],
                )
            visiting.append(resource)
            for target in edges.get(id(resource), []):
                visit(target)
            visiting.pop()
            done.add(id(resource))

        for resource in resources:
            visit(resource)
