"""Command payload validation.

Each command that takes data has a JSON Schema in ``rentcycle/schemas``
named ``<command>.schema.json``. Shared fragments (amounts, evidence
lists) are referenced by ``$id`` through a ``referencing`` registry built
from every schema in the directory.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from rentcycle.core import SCHEMAS_DIR, load_json
from rentcycle.errors import InvalidPayload
from rentcycle.states import Command


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of every schema in the package, keyed by ``$id``."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or schema_path.name
        resources.append(
            (schema_id, Resource.from_contents(schema, default_specification=DRAFT202012))
        )
    return Registry().with_resources(resources)


def schema_path(command: Command) -> Path:
    return SCHEMAS_DIR / f"{command.value}.schema.json"


@lru_cache(maxsize=None)
def schema_validator(command: Command) -> Optional[Draft202012Validator]:
    """Validator for a command's payload, or None if it takes no payload."""
    path = schema_path(command)
    if not path.exists():
        return None
    schema = load_json(path)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_payload(command: Command, payload: Any) -> List[str]:
    """
    Validate a payload against the command's schema.

    Returns list of validation error messages (empty if valid). Commands
    without a schema accept any mapping.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return [f"$: payload must be an object, got {type(payload).__name__}"]
    validator = schema_validator(command)
    if validator is None:
        return []
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(payload), key=lambda e: e.json_path)
    ]


def require_valid_payload(record_id: str, command: Command, payload: Any) -> Dict[str, Any]:
    """Return the payload as a dict, or raise InvalidPayload."""
    errors = validate_payload(command, payload)
    if errors:
        raise InvalidPayload(record_id, command.value, errors)
    return dict(payload or {})
