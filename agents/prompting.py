"""Prompt text shared by the LLM-backed executors."""
import json

from agents.base import TaskRequest


def render_prompt(request: TaskRequest, preamble: str | None = None) -> str:
    """Agent preamble, task instructions, JSON input, required output schema."""
    parts = []
    if preamble:
        parts.append(preamble.strip())
    if request.instructions:
        parts.append(request.instructions.strip())
    if request.input:
        parts.append("## Input\n```json\n" + json.dumps(request.input, indent=2, default=str) + "\n```")
    if request.output_schema:
        parts.append(
            "## Output\n"
            "Respond with a single JSON object that conforms to this JSON schema. "
            "Do not add any text outside the JSON object.\n"
            "```json\n" + json.dumps(request.output_schema, indent=2) + "\n```"
        )
    return "\n\n".join(parts)
