from typing import Any, Dict, List
from pydantic import BaseModel, Field
import jsonschema
from jsonschema import Draft7Validator


class ValidationResult(BaseModel):
    """Outcome of checking a tool call against its schema"""
    valid: bool
    errors: List[str] = Field(default_factory=list)


def check_schema(schema: Dict[str, Any]) -> None:
    """Raise jsonschema.SchemaError if the parameter schema itself is malformed"""

    Draft7Validator.check_schema(schema)


def _describe(error: jsonschema.ValidationError) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    if error.validator == "required":
        missing = error.message.split("'")[1] if "'" in error.message else error.message
        prefix = f"{path}." if path else ""
        return f"Missing required parameter: {prefix}{missing}"
    if error.validator == "type":
        return f"Parameter '{path or '<root>'}' must be of type {error.validator_value}"
    if error.validator == "enum":
        allowed = ", ".join(str(v) for v in error.validator_value)
        return f"Parameter '{path}' must be one of: {allowed}"
    if path:
        return f"Parameter '{path}': {error.message}"
    return error.message


class ToolParameterValidator:
    """JSON Schema validation of tool parameters"""

    @staticmethod
    def validate_parameters(schema: Dict[str, Any], parameters: Dict[str, Any]) -> ValidationResult:
        if not isinstance(parameters, dict):
            return ValidationResult(valid=False, errors=["Parameters must be an object"])

        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(parameters), key=lambda e: ([str(p) for p in e.absolute_path], e.message))
        if not errors:
            return ValidationResult(valid=True)
        return ValidationResult(valid=False, errors=[_describe(e) for e in errors])
