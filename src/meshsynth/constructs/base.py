"""Base class for intent constructs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar, cast

from meshsynth.core.construct import (
    CfnParameter,
    CfnResource,
    Construct,
    ConstructError,
    Stack,
    make_unique_id,
)
from meshsynth.core.resolver import ATTRIBUTES, ReferenceResolver, ResolutionError
from meshsynth.core.schema import Kind, Spec

if TYPE_CHECKING:
    from meshsynth.config import Settings

C = TypeVar("C", bound="IntentConstruct")


class IntentConstruct(Construct):
    """
    A construct lowered from one topology entry.

    Subclasses create their resources in ``__init__`` and answer
    ``_attribute`` for the names listed in ``ATTRIBUTES[kind]``.
    """

    kind: Kind

    def __init__(
        self,
        scope: Stack,
        id: str,
        spec: Spec,
        resolver: ReferenceResolver,
        settings: Settings,
    ) -> None:
        super().__init__(scope, id)
        self.spec = spec
        self.resolver = resolver
        self.settings = settings

    @property
    def stack(self) -> Stack:
        return cast(Stack, self.root)

    @property
    def default_child(self) -> CfnResource | None:
        child = self.find_child("Resource")
        return child if isinstance(child, CfnResource) else None

    def dependency(self, id: str, kind: Kind | None, cls: type[C]) -> C:
        """A construct this one was built after, checked to be a ``cls``."""
        built = self.resolver.construct(id, kind)
        if not isinstance(built, cls):
            raise ConstructError(f"{self.id}: {id} is not a {cls.__name__}")
        return built

    def unique_name(self) -> str:
        """Physical name derived from the construct path, stable across syntheses."""
        return make_unique_id([self.stack.id, *self.path.split("/")])

    def name_tag(self) -> list[dict[str, Any]]:
        return [{"Key": "Name", "Value": f"{self.stack.id}/{self.path}"}]

    def attribute(self, name: str | None = None) -> Any:
        names = ATTRIBUTES[self.kind]
        if not names:
            raise ResolutionError(f"{self.kind.value} {self.id} has no attributes")
        name = name or names[0]
        if name not in names:
            raise ResolutionError(f"{self.kind.value} {self.id} has no attribute {name}")
        return self._attribute(name)

    def _attribute(self, name: str) -> Any:
        raise NotImplementedError

    def apply_overrides(self) -> None:
        """Apply the entry's ``overrides``/``raw_overrides`` to the primary resource."""
        if not self.spec.overrides and not self.spec.raw_overrides:
            return
        resource = self.default_child
        if resource is None:
            raise ConstructError(f"{self.id} has no primary resource to override")
        for path, value in self.spec.overrides.items():
            resource.add_property_override(path, self.resolver.resolve(value))
        for path, value in self.spec.raw_overrides.items():
            resource.add_override(path, self.resolver.resolve(value))


def ssm_image_parameter(stack: Stack, parameter_path: str) -> CfnParameter:
    """Stack parameter resolving a machine image id from SSM (shared per path)."""
    id = "SsmParameterValue" + "".join(c for c in parameter_path if c.isalnum())
    existing = stack.find_child(id)
    if isinstance(existing, CfnParameter):
        return existing
    return CfnParameter(
        stack,
        id,
        type="AWS::SSM::Parameter::Value<AWS::EC2::Image::Id>",
        default=parameter_path,
    )
