"""JSON Schema validation for frames sent by websocket clients."""

from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator

SCHEMAS = {
    "visibility": {
        "type": "object",
        "required": ["type", "visible"],
        "properties": {
            "type": {"const": "visibility"},
            "visible": {"type": "boolean"},
        },
        "additionalProperties": False,
    },
    "ping": {
        "type": "object",
        "required": ["type"],
        "properties": {
            "type": {"const": "ping"},
        },
        "additionalProperties": False,
    },
}

GENERIC_SCHEMA = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": sorted(SCHEMAS)},
    },
}

_VALIDATORS = {name: Draft7Validator(schema) for name, schema in SCHEMAS.items()}
_GENERIC_VALIDATOR = Draft7Validator(GENERIC_SCHEMA)


def validate_client_frame(frame: Any) -> str:
    """Validate an inbound frame and return its type.

    Raises:
        jsonschema.ValidationError: Unknown frame type or malformed body.
    """

    _GENERIC_VALIDATOR.validate(frame)
    frame_type = frame["type"]
    _VALIDATORS[frame_type].validate(frame)
    return frame_type
