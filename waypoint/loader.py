"""Load workflow definitions and trigger configurations from YAML or JSON."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .graph import WorkflowDefinition
from .models import WorkflowTrigger


def read_document(path: Union[str, Path]) -> Any:
    """Parse a ``.json`` file as JSON and anything else as YAML."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise ValidationError(f"Cannot read {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"Cannot parse {path}: {exc}") from exc


def parse_workflow(data: Any) -> WorkflowDefinition:
    """Build and validate a workflow definition from its document shape."""
    if not isinstance(data, dict):
        raise ValidationError("Workflow document must be a mapping")
    try:
        definition = WorkflowDefinition.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid workflow definition: {exc}") from exc
    definition.validate_definition()
    return definition


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    return parse_workflow(read_document(path))


def load_triggers(path: Union[str, Path]) -> List[WorkflowTrigger]:
    """Read one trigger or a list of triggers (optionally under ``triggers``)."""
    data = read_document(path)
    if isinstance(data, dict) and "triggers" in data:
        data = data["triggers"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError(f"{path} does not contain trigger definitions")
    try:
        return [WorkflowTrigger.model_validate(item) for item in data]
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid trigger definition: {exc}") from exc
