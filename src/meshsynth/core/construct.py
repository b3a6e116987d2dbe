"""Construct tree: hierarchical container of resource declarations."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Iterator

from meshsynth.core.tokens import GetAtt, Ref, ResolveContext, references, resolve

PATH_SEP = "/"

# Dropped from every logical id.
HIDDEN_ID = "Default"
# Dropped from the human readable part only.
HIDDEN_FROM_HUMAN_ID = "Resource"

HASH_LEN = 8
MAX_HUMAN_LEN = 240
MAX_ID_LEN = 255

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


class ConstructError(Exception):
    """Raised when the construct tree is used incorrectly."""

    pass


def _remove_dupes(components: list[str]) -> list[str]:
    result: list[str] = []
    for component in components:
        if not result or not result[-1].endswith(component):
            result.append(component)
    return result


def make_unique_id(components: list[str]) -> str:
    """
    Compute a template logical id from construct path components.

    Single top-level components are used verbatim (stripped of
    non-alphanumerics). Deeper paths get a readable prefix plus an
    8 character hash of the full path, so renaming is visible and
    collisions between e.g. ``A/BC`` and ``AB/C`` cannot happen.
    """
    components = [c for c in components if c != HIDDEN_ID]
    if not components:
        raise ConstructError("Unable to calculate a unique id for an empty set of components")

    if len(components) == 1:
        candidate = _NON_ALPHANUMERIC.sub("", components[0])
        if len(candidate) <= MAX_ID_LEN:
            return candidate

    digest = hashlib.md5(PATH_SEP.join(components).encode("utf-8")).hexdigest()
    path_hash = digest[:HASH_LEN].upper()
    human = "".join(
        _NON_ALPHANUMERIC.sub("", c)
        for c in _remove_dupes(components)
        if c != HIDDEN_FROM_HUMAN_ID
    )
    return human[:MAX_HUMAN_LEN] + path_hash


def split_override_path(path: str) -> list[str]:
    """Split a dotted override path; ``\\.`` escapes a literal dot."""
    parts: list[str] = []
    current = ""
    escaped = False
    for char in path:
        if escaped:
            current += char
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ".":
            parts.append(current)
            current = ""
        else:
            current += char
    parts.append(current)
    if any(p == "" for p in parts):
        raise ConstructError(f"Invalid override path: {path!r}")
    return parts


def _list_index(key: str, items: list[Any], allow_append: bool, path: str) -> int:
    if not key.isdigit():
        raise ConstructError(f"Override path {path!r}: {key!r} is not a list index")
    index = int(key)
    limit = len(items) if allow_append else len(items) - 1
    if index > limit:
        raise ConstructError(f"Override path {path!r}: index {index} out of range")
    return index


def apply_override(target: dict[str, Any], path: str, value: Any, delete: bool = False) -> None:
    """Set (or delete) ``path`` inside ``target``, creating objects on the way."""
    parts = split_override_path(path)
    current: Any = target
    for key in parts[:-1]:
        if isinstance(current, list):
            index = _list_index(key, current, False, path)
            nxt = current[index]
        else:
            nxt = current.get(key)
            if nxt is None:
                if delete:
                    return
                nxt = {}
                current[key] = nxt
        if not isinstance(nxt, (dict, list)):
            raise ConstructError(f"Override path {path!r}: {key!r} holds a scalar")
        current = nxt

    last = parts[-1]
    if isinstance(current, list):
        index = _list_index(last, current, not delete, path)
        if delete:
            del current[index]
        elif index == len(current):
            current.append(value)
        else:
            current[index] = value
    elif delete:
        current.pop(last, None)
    else:
        current[last] = value


class Construct:
    """
    A node in the construct tree.

    Every construct except the root has a scope (its parent) and an id
    unique among its siblings.
    """

    def __init__(self, scope: Construct | None, id: str) -> None:
        if scope is not None:
            if not id:
                raise ConstructError("Only the root construct may have an empty id")
            if PATH_SEP in id:
                raise ConstructError(f"Construct id must not contain {PATH_SEP!r}: {id}")
        self._scope = scope
        self._id = id
        self._children: dict[str, Construct] = {}
        if scope is not None:
            scope._add_child(self)

    def _add_child(self, child: Construct) -> None:
        if self.root.locked:
            raise ConstructError(
                f"Cannot add children to {self.path or '<root>'} after synthesis"
            )
        if child.id in self._children:
            raise ConstructError(
                f"There is already a construct with id {child.id!r} in {self.path or '<root>'}"
            )
        self._children[child.id] = child

    @property
    def id(self) -> str:
        return self._id

    @property
    def scope(self) -> Construct | None:
        return self._scope

    @property
    def root(self) -> Construct:
        node = self
        while node._scope is not None:
            node = node._scope
        return node

    @property
    def locked(self) -> bool:
        return False

    @property
    def scopes(self) -> list[Construct]:
        """Constructs from the root down to (and including) this one."""
        chain: list[Construct] = []
        node: Construct | None = self
        while node is not None:
            chain.append(node)
            node = node._scope
        return list(reversed(chain))

    @property
    def path(self) -> str:
        return PATH_SEP.join(c.id for c in self.scopes[1:])

    @property
    def children(self) -> list[Construct]:
        return list(self._children.values())

    def find_child(self, id: str) -> Construct | None:
        return self._children.get(id)

    def find_all(self) -> Iterator[Construct]:
        """Walk this subtree in pre-order."""
        yield self
        for child in self._children.values():
            yield from child.find_all()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path})"


@dataclass(frozen=True)
class Environment:
    """Target account and region. ``None`` leaves the value to deploy time."""

    account: str | None = None
    region: str | None = None


class Stack(Construct):
    """Root of the construct tree; synthesizes into a single template."""

    def __init__(
        self,
        id: str,
        description: str | None = None,
        env: Environment | None = None,
    ) -> None:
        super().__init__(None, id)
        self.description = description
        self.env = env or Environment()
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def resolve_context(self) -> ResolveContext:
        pseudo = {}
        if self.env.account:
            pseudo["AWS::AccountId"] = self.env.account
        if self.env.region:
            pseudo["AWS::Region"] = self.env.region
        return ResolveContext(pseudo=pseudo)

    def elements(self) -> list[CfnElement]:
        return [c for c in self.find_all() if isinstance(c, CfnElement)]


class CfnElement(Construct):
    """A construct rendered into one entry of a template section."""

    section = ""

    @property
    def logical_id(self) -> str:
        components = [c.id for c in self.scopes[1:]]
        return make_unique_id(components)

    @property
    def ref(self) -> Ref:
        return Ref(self)

    def referenced_elements(self) -> list[CfnElement]:
        """Elements this one points at (through tokens or explicit dependencies)."""
        return []

    def render(self, context: ResolveContext) -> dict[str, Any]:
        raise NotImplementedError


class CfnResource(CfnElement):
    """A single provider-native resource record."""

    section = "Resources"

    def __init__(
        self,
        scope: Construct,
        id: str,
        type: str,
        properties: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(scope, id)
        self.type = type
        self.properties: dict[str, Any] = properties or {}
        self._depends_on: list[CfnResource] = []
        self._overrides: list[tuple[str, Any, bool]] = []

    def get_att(self, attribute: str) -> GetAtt:
        return GetAtt(self, attribute)

    @property
    def depends_on(self) -> list[CfnResource]:
        return list(self._depends_on)

    def add_depends_on(self, target: CfnResource) -> None:
        if target is self:
            raise ConstructError(f"{self.path} cannot depend on itself")
        if target not in self._depends_on:
            self._depends_on.append(target)

    def add_override(self, path: str, value: Any) -> None:
        """Override a value at ``path`` in the rendered resource (e.g. ``Properties.X``)."""
        self._overrides.append((path, value, False))

    def add_property_override(self, path: str, value: Any) -> None:
        self.add_override(f"Properties.{path}", value)

    def add_deletion_override(self, path: str) -> None:
        self._overrides.append((path, None, True))

    @property
    def overrides(self) -> list[tuple[str, Any, bool]]:
        return list(self._overrides)

    def referenced_elements(self) -> list[CfnElement]:
        found = token_elements([self.properties, [value for _path, value, _delete in self._overrides]])
        for target in self._depends_on:
            if target not in found:
                found.append(target)
        return found

    def render(self, context: ResolveContext) -> dict[str, Any]:
        body: dict[str, Any] = {"Type": self.type}
        properties = resolve(self.properties, context)
        if properties:
            body["Properties"] = properties
        if self._depends_on:
            body["DependsOn"] = sorted(d.logical_id for d in self._depends_on)
        for path, value, delete in self._overrides:
            apply_override(body, path, resolve(value, context), delete=delete)
        return body


class CfnParameter(CfnElement):
    """A template parameter, e.g. an SSM-backed machine image id."""

    section = "Parameters"

    def __init__(
        self,
        scope: Construct,
        id: str,
        type: str = "String",
        default: Any = None,
        description: str | None = None,
    ) -> None:
        super().__init__(scope, id)
        self.type = type
        self.default = default
        self.description = description

    def render(self, context: ResolveContext) -> dict[str, Any]:
        body: dict[str, Any] = {"Type": self.type}
        if self.default is not None:
            body["Default"] = self.default
        if self.description:
            body["Description"] = self.description
        return body


class CfnOutput(CfnElement):
    section = "Outputs"

    def __init__(
        self,
        scope: Construct,
        id: str,
        value: Any,
        description: str | None = None,
        export_name: str | None = None,
    ) -> None:
        super().__init__(scope, id)
        self.value = value
        self.description = description
        self.export_name = export_name

    def referenced_elements(self) -> list[CfnElement]:
        return token_elements([self.value, self.export_name])

    def render(self, context: ResolveContext) -> dict[str, Any]:
        body: dict[str, Any] = {"Value": resolve(self.value, context)}
        if self.description:
            body["Description"] = self.description
        if self.export_name:
            body["Export"] = {"Name": resolve(self.export_name, context)}
        return body


def token_elements(value: Any) -> list[CfnElement]:
    """Elements referenced by tokens in ``value`` (deduplicated, ordered)."""
    seen: list[CfnElement] = []
    for element in references(value):
        if element not in seen:
            seen.append(element)
    return seen

