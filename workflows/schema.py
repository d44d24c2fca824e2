"""Validation of raw executor results against a node's declared output schema."""
import json
import re
from typing import Any

from pydantic import BaseModel, ValidationError

from core.errors import ValidationFailure

_FENCE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Parse JSON from model-style text: bare, fenced, or embedded in prose."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = _FENCE.search(text)
    if match:
        return json.loads(match.group(1))

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return json.loads(text[start:end + 1])
    raise ValueError("no JSON object found in output")


def json_schema(output: type[BaseModel] | None) -> dict[str, Any] | None:
    return output.model_json_schema() if output is not None else None


def validate_output(output: type[BaseModel] | None, raw: Any, node_id: str, iteration: int) -> dict[str, Any]:
    """
    Turn a raw result into a stored payload or raise ValidationFailure.

    Strings/bytes are parsed as JSON first. Validation runs in strict JSON
    mode, so "5" is never accepted for an int field.
    """
    if isinstance(raw, BaseModel):
        data = raw.model_dump(mode="json")
    elif isinstance(raw, (str, bytes)):
        try:
            data = extract_json(raw.decode() if isinstance(raw, bytes) else raw)
        except ValueError as e:
            raise ValidationFailure(node_id, iteration, f"unparsable output: {e}", raw_output=raw) from e
    else:
        data = raw

    try:
        text = json.dumps(data)
    except (TypeError, ValueError) as e:
        raise ValidationFailure(node_id, iteration, f"output is not JSON-serialisable: {e}", raw_output=raw) from e

    if output is None:
        if not isinstance(data, dict):
            raise ValidationFailure(
                node_id, iteration,
                f"expected a JSON object, got {type(data).__name__}",
                raw_output=raw,
            )
        return json.loads(text)

    try:
        model = output.model_validate_json(text, strict=True)
    except ValidationError as e:
        raise ValidationFailure(
            node_id, iteration,
            f"{e.error_count()} schema error(s) against {output.__name__}",
            raw_output=raw,
            errors=e.errors(include_url=False),
        ) from e
    return model.model_dump(mode="json")
