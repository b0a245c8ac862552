"""JSON Schema validation of tool-call arguments."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import jsonschema

MAX_SCHEMA_ERRORS = 10


def _format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    return ".".join(str(part) for part in path)


def validate_arguments(arguments: dict, schema: dict | None) -> list[str]:
    """Validate *arguments* against *schema*.

    Returns:
        Human-readable error messages, empty when the arguments conform.
        An invalid schema is reported as a single error.
    """
    if not schema:
        return []

    validator_cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft202012Validator)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.exceptions.SchemaError as exc:
        return [f"Invalid JSON schema: {exc.message}"]

    errors: list[str] = []
    validator = validator_cls(schema)
    for issue in sorted(validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.absolute_path]):
        path = _format_schema_path(issue.absolute_path)
        msg = issue.message
        if path:
            msg = f"{path}: {msg}"
        errors.append(msg)
        if len(errors) >= MAX_SCHEMA_ERRORS:
            errors.append("Too many validation errors; stopping early.")
            break
    return errors
