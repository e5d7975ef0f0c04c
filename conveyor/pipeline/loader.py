"""Loading and validating pipeline definitions.

Definition documents are JSON::

    {
      "name": "bulletin-board",
      "groups": [
        {"name": "validate", "stages": [
          {"name": "lint", "kind": "validate", "operation": "shell:flake8 app"},
          {"name": "format", "kind": "validate", "operation": "shell:black --check app"}
        ]},
        {"name": "build", "stages": [{"name": "build", "kind": "build"}]},
        {"name": "deploy", "stages": [
          {"name": "deploy-staging", "kind": "deploy", "environment": "staging"}
        ]},
        {"name": "verify", "stages": [
          {"name": "verify-staging", "kind": "verify", "environment": "staging",
           "retry": {"attempts": 15, "delay": 5}}
        ]}
      ]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from conveyor.environments.registry import EnvironmentRegistry
from conveyor.errors import DefinitionError
from conveyor.models.pipeline import PipelineDefinition


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc or '<root>'}: {err.get('msg', '')}")
    return "; ".join(parts)


def parse_definition(data: Any) -> PipelineDefinition:
    """Validate a decoded document (or pass through a definition)."""
    if isinstance(data, PipelineDefinition):
        return data
    if not isinstance(data, dict):
        raise DefinitionError("Pipeline definition must be an object")
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid pipeline definition: {_format_errors(exc)}") from exc


def read_document(path: str | Path) -> Any:
    """Decode a JSON definition file without validating it."""
    p = Path(path)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except OSError as exc:
        raise DefinitionError(f"Cannot read pipeline definition {p}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DefinitionError(f"Pipeline definition {p} is not valid JSON: {exc}") from exc


def load_definition(path: str | Path) -> PipelineDefinition:
    """Read and validate a JSON definition file."""
    return parse_definition(read_document(path))


def check_environments(definition: PipelineDefinition, registry: EnvironmentRegistry) -> None:
    """Raise DefinitionError if a stage targets an unregistered environment."""
    unknown = sorted(definition.target_environments() - registry.names())
    if unknown:
        raise DefinitionError(f"Unknown environment(s) in definition: {', '.join(unknown)}")
