"""Tests for executor backends."""

import json
import os
import stat
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from agents import (
    AnthropicExecutor, ClaudeCodeExecutor, CodexExecutor, CommandError, CommandExecutor,
    FunctionExecutor, TaskRequest, render_prompt,
)
from core.errors import ExecutorFailure
from tracing.tracer import Tracer
from workflows.engine import RunStatus
from workflows.models import Task, WorkflowDefinition


class Echo(BaseModel):
    echo: int


def request(**kw):
    defaults = dict(node_id="task", iteration=1, input={"x": 3}, instructions="Do the thing")
    defaults.update(kw)
    return TaskRequest(**defaults)


def fake_cli(tmp_path, body: str) -> str:
    """Write an executable python script standing in for an agent CLI."""
    path = tmp_path / "fake_cli"
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


class TestRenderPrompt:

    def test_sections(self):
        prompt = render_prompt(request(output_schema=Echo.model_json_schema()), preamble="You are careful.")
        assert prompt.startswith("You are careful.")
        assert "Do the thing" in prompt
        assert '## Input\n```json\n{\n  "x": 3\n}' in prompt
        assert "## Output" in prompt
        assert '"echo"' in prompt

    def test_minimal(self):
        assert render_prompt(request(input={}, instructions="Only this")) == "Only this"


class TestFunctionExecutor:

    @pytest.mark.asyncio
    async def test_sync(self):
        ex = FunctionExecutor(lambda r: {"echo": r.input["x"]})
        assert await ex.run(request()) == {"echo": 3}
        assert ex.name == "<lambda>"

    @pytest.mark.asyncio
    async def test_async(self):
        async def answer(r):
            return {"echo": r.iteration}

        ex = FunctionExecutor(answer, name="answer")
        assert await ex.run(request()) == {"echo": 1}
        assert ex.name == "answer"


class TestCommandExecutor:

    @pytest.mark.asyncio
    async def test_request_on_stdin_result_on_stdout(self, engine):
        script = (
            "import sys, json\n"
            "req = json.load(sys.stdin)\n"
            "print(json.dumps({'echo': req['input']['x'] * 2}))\n"
        )
        wf = WorkflowDefinition("t", Task(
            id="double",
            executor=CommandExecutor([sys.executable, "-c", script]),
            output=Echo,
            input={"x": 21},
        ))
        result = await engine.run(wf)
        assert result.status == RunStatus.COMPLETED
        assert result.output == {"echo": 42}

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        ex = CommandExecutor([sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(4)"])
        with pytest.raises(CommandError) as exc:
            await ex.run(request())
        assert exc.value.returncode == 4
        assert "nope" in str(exc.value)

    @pytest.mark.asyncio
    async def test_failure_surfaces_as_executor_failure(self, engine):
        wf = WorkflowDefinition("t", Task(id="bad", executor=CommandExecutor([sys.executable, "-c", "raise SystemExit(1)"])))
        result = await engine.run(wf)
        assert isinstance(result.error, ExecutorFailure)
        assert isinstance(result.error.original_error, CommandError)

    def test_string_argv_and_name(self):
        ex = CommandExecutor("python3 -m tool --flag")
        assert ex.argv == ["python3", "-m", "tool", "--flag"]
        assert ex.name == "python3"

    def test_empty_argv(self):
        with pytest.raises(ValueError):
            CommandExecutor([])

    def test_extra_env(self, monkeypatch):
        monkeypatch.setenv("BASE_VAR", "1")
        env = CommandExecutor(["x"], env={"EXTRA": "2"}).process_env()
        assert env["BASE_VAR"] == "1"
        assert env["EXTRA"] == "2"


class TestClaudeCodeExecutor:

    def test_argv(self):
        ex = ClaudeCodeExecutor(
            model="opus", instructions="Be terse", skip_permissions=True,
            allowed_tools=["Read", "Edit"], cli_path="/bin/claude",
        )
        argv = ex.build_argv(request())
        assert argv[0] == "/bin/claude"
        assert argv[1] == "-p"
        assert "Do the thing" in argv[2]
        assert argv[3:6] == ["--output-format", "json", "--no-session-persistence"]
        assert argv[argv.index("--model") + 1] == "opus"
        assert argv[argv.index("--append-system-prompt") + 1] == "Be terse"
        assert "--dangerously-skip-permissions" in argv
        assert argv[-2:] == ["Read", "Edit"]
        assert ex.build_stdin(request()) is None

    def test_cli_path_from_env(self, monkeypatch):
        monkeypatch.setenv("LOOPWORK_CLAUDE_CLI", "/opt/claude")
        assert ClaudeCodeExecutor().argv == ["/opt/claude"]

    def test_nested_session_marker_removed(self, monkeypatch):
        monkeypatch.setenv("CLAUDECODE", "1")
        assert "CLAUDECODE" not in ClaudeCodeExecutor().process_env()

    def test_parse_envelope(self):
        ex = ClaudeCodeExecutor()
        stdout = json.dumps({"type": "result", "is_error": False, "result": '{"echo": 1}'})
        assert ex.parse_output(stdout, request()) == '{"echo": 1}'
        assert ex.parse_output("plain text", request()) == "plain text"

    def test_error_envelope(self):
        with pytest.raises(RuntimeError, match="rate limited"):
            ClaudeCodeExecutor().parse_output(json.dumps({"is_error": True, "result": "rate limited"}), request())

    @pytest.mark.asyncio
    async def test_end_to_end_with_fake_cli(self, tmp_path, engine):
        cli = fake_cli(tmp_path, (
            "import json, sys\n"
            "assert sys.argv[1] == '-p'\n"
            "print(json.dumps({'type': 'result', 'is_error': False, "
            "'result': 'Done.\\n```json\\n{\"echo\": 7}\\n```'}))\n"
        ))
        wf = WorkflowDefinition("t", Task(id="code", executor=ClaudeCodeExecutor(cli_path=cli), output=Echo))
        result = await engine.run(wf)
        assert result.output == {"echo": 7}


class TestCodexExecutor:

    def test_argv(self):
        ex = CodexExecutor(model="gpt-5", cli_path="codex")
        argv = ex.build_argv(request(), "/tmp/last.txt")
        assert argv[:2] == ["codex", "exec"]
        assert "--full-auto" in argv
        assert argv[argv.index("--output-last-message") + 1] == "/tmp/last.txt"
        assert argv[-1] == "-"

        bypass = CodexExecutor(bypass_sandbox=True).build_argv(request())
        assert "--dangerously-bypass-approvals-and-sandbox" in bypass
        assert "--full-auto" not in bypass

    def test_prompt_on_stdin(self):
        stdin = CodexExecutor(instructions="House rules").build_stdin(request()).decode()
        assert stdin.startswith("House rules")
        assert "Do the thing" in stdin

    @pytest.mark.asyncio
    async def test_reads_last_message_file(self, tmp_path):
        cli = fake_cli(tmp_path, (
            "import sys\n"
            "prompt = sys.stdin.read()\n"
            "path = sys.argv[sys.argv.index('--output-last-message') + 1]\n"
            "open(path, 'w').write('{\"echo\": 9}')\n"
            "print('progress noise')\n"
        ))
        assert await CodexExecutor(cli_path=cli).run(request()) == '{"echo": 9}'


class TestAnthropicExecutor:

    def _client(self, content):
        response = SimpleNamespace(
            content=content,
            usage=SimpleNamespace(input_tokens=1000, output_tokens=200),
            stop_reason="tool_use",
        )
        return SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=response)))

    @pytest.mark.asyncio
    async def test_structured_output_via_tool(self):
        client = self._client([
            SimpleNamespace(type="text", text="thinking"),
            SimpleNamespace(type="tool_use", name="submit_output", input={"echo": 5}),
        ])
        ex = AnthropicExecutor(instructions="System rules", client=client)

        out = await ex.run(request(output_schema=Echo.model_json_schema()))

        assert out == {"echo": 5}
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "submit_output"}
        assert kwargs["tools"][0]["input_schema"]["title"] == "Echo"
        assert kwargs["system"] == "System rules"
        assert "Do the thing" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_llm_span_recorded(self):
        client = self._client([SimpleNamespace(type="tool_use", name="submit_output", input={"echo": 5})])
        await AnthropicExecutor(client=client).run(request())

        llm = Tracer.instance().store.get_llm_summary()
        assert llm["total_calls"] == 1
        assert llm["by_model"][0]["input_tokens"] == 1000
        assert llm["total_cost"] == pytest.approx((1000 * 3 + 200 * 15) / 1_000_000)

    @pytest.mark.asyncio
    async def test_text_only_falls_back(self):
        client = self._client([SimpleNamespace(type="text", text="no tool today")])
        assert await AnthropicExecutor(client=client).run(request()) == "no tool today"

    @pytest.mark.asyncio
    async def test_api_error_recorded_and_raised(self):
        client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(side_effect=RuntimeError("overloaded"))))
        with pytest.raises(RuntimeError):
            await AnthropicExecutor(client=client).run(request())
        errors = Tracer.instance().store.get_errors()
        assert errors[0]["span_type"] == "llm_call"
        assert "overloaded" in errors[0]["error"]

    def test_cost(self):
        ex = AnthropicExecutor(model="claude-haiku-4-5-20251001", client=object())
        assert ex.calculate_cost(1_000_000, 0) == pytest.approx(1.0)
        assert ex.name == "anthropic:claude-haiku-4-5-20251001"
