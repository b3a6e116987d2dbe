"""Topology declarations: typed intent objects keyed by construct id."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import yaml

from meshsynth.core.schema import SECTIONS, Kind, Spec, TopologySchema


class Entry:
    """
    One declared intent object.

    The construct id is passed separately from the spec since it is the
    dictionary key in its topology section.
    """

    def __init__(self, id: str, kind: Kind, spec: Spec) -> None:
        self._id = id
        self._kind = kind
        self._spec = spec

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> Kind:
        return self._kind

    @property
    def spec(self) -> Spec:
        return self._spec

    def to_dict(self) -> dict[str, Any]:
        result = self._spec.model_dump(exclude_defaults=True, mode="json")
        result["id"] = self._id
        result["kind"] = self._kind.value
        return result

    def __repr__(self) -> str:
        return f"Entry({self._id}, kind={self._kind.value})"


class Topology:
    """
    A complete topology declaration.

    Entries keep declaration order (section order, then key order). An id
    declared in more than one section is kept once per section in
    ``duplicates`` so validation can report it.
    """

    def __init__(
        self,
        entries: list[Entry],
        stack_name: str = "Stack",
        description: str | None = None,
        account: str | None = None,
        region: str | None = None,
    ) -> None:
        self._entries = entries
        self._stack_name = stack_name
        self._description = description
        self._account = account
        self._region = region
        self._id_index: dict[str, Entry] = {}
        self._duplicates: list[Entry] = []
        for entry in entries:
            if entry.id in self._id_index:
                self._duplicates.append(entry)
            else:
                self._id_index[entry.id] = entry

    @classmethod
    def load(cls, path: str | Path) -> Topology:
        """Load a topology from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Topology:
        """
        Create a topology from a dictionary (validated).

        Raises:
            ValidationError: If ``data`` is not a mapping or does not match the schema
        """
        schema = TopologySchema.model_validate(data)
        return cls.from_schema(schema)

    @classmethod
    def from_schema(cls, schema: TopologySchema) -> Topology:
        entries = []
        for section, (kind, _model) in SECTIONS.items():
            for id, spec in getattr(schema, section).items():
                entries.append(Entry(id, kind, spec))
        return cls(
            entries,
            stack_name=schema.stack,
            description=schema.description,
            account=schema.env.account,
            region=schema.env.region,
        )

    @property
    def stack_name(self) -> str:
        return self._stack_name

    @property
    def description(self) -> str | None:
        return self._description

    @property
    def account(self) -> str | None:
        return self._account

    @property
    def region(self) -> str | None:
        return self._region

    @property
    def duplicates(self) -> list[Entry]:
        return list(self._duplicates)

    def get(self, id: str) -> Entry | None:
        return self._id_index.get(id)

    def by_kind(self, kind: Kind) -> list[Entry]:
        return [e for e in self._entries if e.kind == kind]

    def kinds(self) -> set[Kind]:
        return {e.kind for e in self._entries}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries)

    def __contains__(self, id: str) -> bool:
        return id in self._id_index
