# Parameter validation
from typing import Dict, Any, List, Optional

import jsonschema

from agi_core.domain.models.errors import ToolPayloadInvalid


class ToolParameterValidator:
    @staticmethod
    def errors(payload: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> List[str]:
        """Schema violations of ``payload``, empty when valid or schema-less"""

        if not schema:
            return []
        validator = jsonschema.Draft7Validator(schema)
        return [
            f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
            for error in sorted(validator.iter_errors(payload), key=lambda e: str(list(e.path)))
        ]

    @classmethod
    def validate_tool_call(cls, tool_name: str, payload: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> None:
        problems = cls.errors(payload, schema)
        if problems:
            raise ToolPayloadInvalid(
                f"Schema validation failed for {tool_name}: {'; '.join(problems)}",
                {"tool": tool_name, "errors": problems}
            )
