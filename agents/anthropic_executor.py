"""Anthropic Messages API executor with tracing.

Structured output is forced through a single tool whose input schema is
the node's output schema; the tool input is the raw result.
"""
import os
import time
import logging
from typing import Any

import anthropic

from agents.base import TaskExecutor, TaskRequest
from agents.prompting import render_prompt

logger = logging.getLogger(__name__)

# Cost per 1M tokens
PRICING = {
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
}

SUBMIT_TOOL = "submit_output"


class AnthropicExecutor(TaskExecutor):
    def __init__(
        self,
        model: str = "claude-sonnet-4-5-20250929",
        *,
        instructions: str | None = None,
        max_tokens: int = 8192,
        temperature: float = 0.2,
        api_key: str | None = None,
        client: Any = None,
    ):
        self._model = model
        self.instructions = instructions
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._api_key = api_key
        self._client = client

    @property
    def name(self) -> str:
        return f"anthropic:{self._model}"

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"))
        return self._client

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        pricing = PRICING.get(self._model, {"input": 3.00, "output": 15.00})
        return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000

    async def run(self, request: TaskRequest) -> Any:
        """Every call is traced as an llm_call span with tokens and cost."""
        from tracing.tracer import Tracer
        from tracing.models import SpanType, SpanStatus

        tracer = Tracer.instance()
        span = tracer.start_span(
            SpanType.LLM_CALL,
            name=f"anthropic:{self._model}",
            input_data={
                "model": self._model,
                "node_id": request.node_id,
                "iteration": request.iteration,
                "max_tokens": self.max_tokens,
                "instructions_preview": request.instructions[:500],
            },
            node_id=request.node_id,
            iteration=request.iteration,
            model=self._model,
            provider="anthropic",
        )

        try:
            t0 = time.monotonic()
            kwargs = {
                "model": self._model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "messages": [{"role": "user", "content": render_prompt(request)}],
                "tools": [{
                    "name": SUBMIT_TOOL,
                    "description": "Submit the final structured result of this task.",
                    "input_schema": request.output_schema or {"type": "object"},
                }],
                "tool_choice": {"type": "tool", "name": SUBMIT_TOOL},
            }
            if self.instructions:
                kwargs["system"] = self.instructions

            response = await self.client.messages.create(**kwargs)
            elapsed_ms = (time.monotonic() - t0) * 1000

            text_content = ""
            result: Any = None
            for block in response.content:
                if block.type == "tool_use" and block.name == SUBMIT_TOOL:
                    result = block.input
                elif block.type == "text":
                    text_content += block.text

            input_tokens = response.usage.input_tokens
            output_tokens = response.usage.output_tokens
            tracer.end_span(span,
                output_data={
                    "structured": result is not None,
                    "stop_reason": getattr(response, "stop_reason", None),
                    "duration_ms": round(elapsed_ms, 1),
                },
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=round(self.calculate_cost(input_tokens, output_tokens), 8),
            )

            if result is None:
                # No tool call: hand back the text so validation reports it
                logger.warning(f"{self.name} returned no {SUBMIT_TOOL} call for {request.node_id}")
                return text_content
            return result

        except BaseException as e:
            if not span.finished:
                tracer.end_span(span, status=SpanStatus.ERROR, error=str(e) or type(e).__name__)
            raise
