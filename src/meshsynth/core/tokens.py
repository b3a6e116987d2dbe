"""Deploy-time tokens and their rendering to template JSON."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from meshsynth.core.construct import CfnElement


@dataclass
class ResolveContext:
    """Values known at synthesis time.

    Pseudo parameters listed in ``pseudo`` render as literals instead of
    ``{"Ref": "AWS::..."}``.
    """

    pseudo: dict[str, str] = field(default_factory=dict)


class Token:
    """A value that is only known once the template is deployed."""

    def resolve(self, context: ResolveContext) -> Any:
        raise NotImplementedError

    def elements(self) -> list[CfnElement]:
        """Template elements this token points at."""
        return []

    def __str__(self) -> str:
        raise TypeError(
            f"{type(self).__name__} cannot be used as a string; use concat() instead"
        )


class Pseudo(Token):
    """A pseudo parameter such as ``AWS::Region``."""

    def __init__(self, name: str) -> None:
        self.name = name

    def resolve(self, context: ResolveContext) -> Any:
        if self.name in context.pseudo:
            return context.pseudo[self.name]
        return {"Ref": self.name}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Pseudo) and other.name == self.name

    def __hash__(self) -> int:
        return hash(("Pseudo", self.name))

    def __repr__(self) -> str:
        return f"Pseudo({self.name})"


AWS_ACCOUNT_ID = Pseudo("AWS::AccountId")
AWS_REGION = Pseudo("AWS::Region")
AWS_PARTITION = Pseudo("AWS::Partition")
AWS_STACK_NAME = Pseudo("AWS::StackName")
AWS_URL_SUFFIX = Pseudo("AWS::URLSuffix")

PSEUDO_PARAMETERS = {
    p.name: p
    for p in (AWS_ACCOUNT_ID, AWS_REGION, AWS_PARTITION, AWS_STACK_NAME, AWS_URL_SUFFIX)
}


class Ref(Token):
    """``{"Ref": <logical id>}`` of a resource or parameter."""

    def __init__(self, target: CfnElement) -> None:
        self.target = target

    def resolve(self, context: ResolveContext) -> Any:
        return {"Ref": self.target.logical_id}

    def elements(self) -> list[CfnElement]:
        return [self.target]

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ref) and other.target is self.target

    def __hash__(self) -> int:
        return hash(("Ref", id(self.target)))

    def __repr__(self) -> str:
        return f"Ref({self.target.path})"


class GetAtt(Token):
    """``{"Fn::GetAtt": [<logical id>, <attribute>]}``."""

    def __init__(self, target: CfnElement, attribute: str) -> None:
        self.target = target
        self.attribute = attribute

    def resolve(self, context: ResolveContext) -> Any:
        return {"Fn::GetAtt": [self.target.logical_id, self.attribute]}

    def elements(self) -> list[CfnElement]:
        return [self.target]

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, GetAtt)
            and other.target is self.target
            and other.attribute == self.attribute
        )

    def __hash__(self) -> int:
        return hash(("GetAtt", id(self.target), self.attribute))

    def __repr__(self) -> str:
        return f"GetAtt({self.target.path}.{self.attribute})"


class Join(Token):
    """``Fn::Join``; collapses to a plain string when every part is literal."""

    def __init__(self, delimiter: str, parts: list[Any]) -> None:
        self.delimiter = delimiter
        self.parts = list(parts)

    def resolve(self, context: ResolveContext) -> Any:
        flat: list[Any] = []
        for part in self.parts:
            value = resolve(part, context)
            nested = _join_args(value)
            if nested is not None and (nested[0] == self.delimiter or len(nested[1]) == 1):
                flat.extend(nested[1])
            else:
                flat.append(value)

        if all(isinstance(v, str) for v in flat):
            return self.delimiter.join(flat)

        if self.delimiter == "":
            merged: list[Any] = []
            for value in flat:
                if value == "":
                    continue
                if isinstance(value, str) and merged and isinstance(merged[-1], str):
                    merged[-1] += value
                else:
                    merged.append(value)
            if len(merged) == 1:
                return merged[0]
            flat = merged

        return {"Fn::Join": [self.delimiter, flat]}

    def elements(self) -> list[CfnElement]:
        return _collect(self.parts)

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Join)
            and other.delimiter == self.delimiter
            and other.parts == self.parts
        )

    def __hash__(self) -> int:
        return hash(("Join", self.delimiter, len(self.parts)))

    def __repr__(self) -> str:
        return f"Join({self.delimiter!r}, {self.parts!r})"


class Select(Token):
    def __init__(self, index: int, values: Any) -> None:
        self.index = index
        self.values = values

    def resolve(self, context: ResolveContext) -> Any:
        values = resolve(self.values, context)
        if isinstance(values, list):
            return values[self.index]
        return {"Fn::Select": [self.index, values]}

    def elements(self) -> list[CfnElement]:
        return _collect(self.values)


class GetAZs(Token):
    def __init__(self, region: Any = "") -> None:
        self.region = region

    def resolve(self, context: ResolveContext) -> Any:
        return {"Fn::GetAZs": resolve(self.region, context)}


class Base64(Token):
    def __init__(self, value: Any) -> None:
        self.value = value

    def resolve(self, context: ResolveContext) -> Any:
        return {"Fn::Base64": resolve(self.value, context)}

    def elements(self) -> list[CfnElement]:
        return _collect(self.value)


def _join_args(value: Any) -> tuple[str, list[Any]] | None:
    if isinstance(value, dict) and list(value) == ["Fn::Join"]:
        delimiter, parts = value["Fn::Join"]
        return delimiter, parts
    return None


def _collect(value: Any) -> list[CfnElement]:
    found: list[CfnElement] = []
    if isinstance(value, Token):
        found.extend(value.elements())
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(_collect(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(_collect(item))
    return found


def concat(*parts: Any) -> Any:
    """Concatenate literals and tokens.

    Returns a plain string when no part is a token.
    """
    if all(isinstance(p, str) for p in parts):
        return "".join(parts)
    return Join("", list(parts))


def is_token(value: Any) -> bool:
    return isinstance(value, Token)


def resolve(value: Any, context: ResolveContext) -> Any:
    """Render a value (possibly containing tokens) to template JSON."""
    if isinstance(value, Token):
        return value.resolve(context)
    if isinstance(value, dict):
        return {k: resolve(v, context) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(v, context) for v in value]
    return value


def references(value: Any) -> list[CfnElement]:
    """Template elements referenced anywhere inside ``value``."""
    return _collect(value)
