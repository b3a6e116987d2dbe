"""Template serialization."""

from __future__ import annotations

import json
from typing import Any

import yaml


class _NoAliasDumper(yaml.SafeDumper):
    """Repeated values (e.g. shared tag lists) are written out in full."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


def render_template(template: dict[str, Any], format: str = "json") -> str:
    """Serialize a synthesized template as JSON or YAML, keeping key order."""
    if format == "json":
        return json.dumps(template, indent=2) + "\n"
    if format == "yaml":
        return yaml.dump(
            template,
            Dumper=_NoAliasDumper,
            sort_keys=False,
            default_flow_style=False,
        )
    raise ValueError(f"Unknown template format: {format}")
