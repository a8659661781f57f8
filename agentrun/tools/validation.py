import json
from typing import Any

import jsonschema

from agentrun.tools.base import Tool, normalize_schema


class ToolValidator:
    @staticmethod
    def check_schema(tool: Tool) -> str | None:
        """Return an error message if the tool's parameter schema is invalid."""
        schema = normalize_schema(tool.parameters)
        cls = jsonschema.validators.validator_for(schema)
        try:
            cls.check_schema(schema)
        except jsonschema.SchemaError as e:
            return str(e.message)
        return None

    @staticmethod
    def decode(raw_arguments: str | dict | None) -> tuple[Any, list[str]]:
        """Decode raw argument text; returns (value, violations)."""
        if raw_arguments is None:
            return {}, []
        if isinstance(raw_arguments, dict):
            return raw_arguments, []
        if not raw_arguments.strip():
            return {}, []
        try:
            return json.loads(raw_arguments), []
        except json.JSONDecodeError as e:
            return None, [f"arguments are not valid JSON: {e.msg} (pos {e.pos})"]

    @staticmethod
    def validate(tool: Tool, arguments: Any) -> list[str]:
        """Return every violated constraint, in a stable order."""
        schema = normalize_schema(tool.parameters)
        cls = jsonschema.validators.validator_for(schema)
        validator = cls(schema)
        errors = sorted(
            validator.iter_errors(arguments),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        violations = []
        for err in errors:
            where = "/".join(str(p) for p in err.absolute_path)
            violations.append(f"{where}: {err.message}" if where else err.message)
        return violations
