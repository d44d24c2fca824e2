"""Task executor backends."""

from agents.base import TaskExecutor, TaskRequest
from agents.function import FunctionExecutor
from agents.command import CommandExecutor, CommandError, ClaudeCodeExecutor, CodexExecutor
from agents.anthropic_executor import AnthropicExecutor
from agents.prompting import render_prompt

__all__ = [
    "TaskExecutor",
    "TaskRequest",
    "FunctionExecutor",
    "CommandExecutor",
    "CommandError",
    "ClaudeCodeExecutor",
    "CodexExecutor",
    "AnthropicExecutor",
    "render_prompt",
]
