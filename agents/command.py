"""
Subprocess executors.

CommandExecutor is the generic form: the request goes to stdin as JSON,
stdout comes back as the raw result. The coding-agent CLIs build their
own argv from the rendered prompt.
"""
import os
import json
import shlex
import asyncio
import logging
import tempfile
import contextlib
from typing import Any

from agents.base import TaskExecutor, TaskRequest
from agents.prompting import render_prompt

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    def __init__(self, argv: list[str], returncode: int | None, stderr: str):
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
        tail = stderr.strip()[-1000:] or "(no stderr)"
        super().__init__(f"{shlex.join(argv[:1])} exited with {returncode}: {tail}")


class CommandExecutor(TaskExecutor):
    def __init__(
        self,
        argv: list[str] | str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        name: str | None = None,
    ):
        self.argv = shlex.split(argv) if isinstance(argv, str) else list(argv)
        if not self.argv:
            raise ValueError("CommandExecutor needs a non-empty argv")
        self.cwd = cwd
        self.env = env
        self._name = name or os.path.basename(self.argv[0])

    @property
    def name(self) -> str:
        return self._name

    def build_argv(self, request: TaskRequest) -> list[str]:
        return list(self.argv)

    def build_stdin(self, request: TaskRequest) -> bytes | None:
        return json.dumps(request.to_dict(), default=str).encode()

    def parse_output(self, stdout: str, request: TaskRequest) -> Any:
        return stdout

    def process_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        return env

    async def invoke(self, argv: list[str], stdin: bytes | None) -> tuple[str, str]:
        """Run argv to completion. Kills the process if the caller is cancelled."""
        logger.debug(f"Spawning {shlex.join(argv)[:200]}")
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.process_env(),
        )
        try:
            stdout, stderr = await proc.communicate(stdin)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            logger.warning(f"Killed {argv[0]} (pid {proc.pid}) after cancellation")
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise CommandError(argv, proc.returncode, err)
        return out, err

    async def run(self, request: TaskRequest) -> Any:
        stdout, _ = await self.invoke(self.build_argv(request), self.build_stdin(request))
        return self.parse_output(stdout, request)


class ClaudeCodeExecutor(CommandExecutor):
    """Claude Code CLI in print mode; the JSON envelope's `result` is the raw output."""

    def __init__(
        self,
        *,
        model: str | None = None,
        cwd: str | None = None,
        instructions: str | None = None,
        skip_permissions: bool = False,
        allowed_tools: list[str] | None = None,
        cli_path: str | None = None,
        env: dict[str, str] | None = None,
    ):
        super().__init__(
            [cli_path or os.environ.get("LOOPWORK_CLAUDE_CLI", "claude")],
            cwd=cwd, env=env, name=f"claude-code:{model or 'default'}",
        )
        self.model = model
        self.instructions = instructions
        self.skip_permissions = skip_permissions
        self.allowed_tools = allowed_tools

    def build_argv(self, request: TaskRequest) -> list[str]:
        args = self.argv + ["-p", render_prompt(request), "--output-format", "json", "--no-session-persistence"]
        if self.model:
            args.extend(["--model", self.model])
        if self.instructions:
            args.extend(["--append-system-prompt", self.instructions])
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if self.allowed_tools:
            args.extend(["--allowedTools"] + self.allowed_tools)
        return args

    def build_stdin(self, request: TaskRequest) -> bytes | None:
        return None

    def process_env(self) -> dict[str, str]:
        # A nested CLI refuses to start when it sees the parent session marker
        env = super().process_env()
        env.pop("CLAUDECODE", None)
        return env

    def parse_output(self, stdout: str, request: TaskRequest) -> Any:
        try:
            envelope = json.loads(stdout)
        except json.JSONDecodeError:
            return stdout
        if not isinstance(envelope, dict):
            return stdout
        if envelope.get("is_error"):
            raise RuntimeError(f"Claude CLI reported an error: {str(envelope.get('result', ''))[:500]}")
        return envelope.get("result", stdout)


class CodexExecutor(CommandExecutor):
    """`codex exec`; the agent's final message (written to a temp file) is the raw output."""

    def __init__(
        self,
        *,
        model: str | None = None,
        cwd: str | None = None,
        instructions: str | None = None,
        bypass_sandbox: bool = False,
        cli_path: str | None = None,
        env: dict[str, str] | None = None,
    ):
        super().__init__(
            [cli_path or os.environ.get("LOOPWORK_CODEX_CLI", "codex")],
            cwd=cwd, env=env, name=f"codex:{model or 'default'}",
        )
        self.model = model
        self.instructions = instructions
        self.bypass_sandbox = bypass_sandbox

    def build_argv(self, request: TaskRequest, last_message_path: str = "") -> list[str]:
        args = self.argv + ["exec"]
        if self.model:
            args.extend(["--model", self.model])
        if self.bypass_sandbox:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args.append("--full-auto")
        if last_message_path:
            args.extend(["--output-last-message", last_message_path])
        args.append("-")
        return args

    def build_stdin(self, request: TaskRequest) -> bytes | None:
        return render_prompt(request, preamble=self.instructions).encode()

    async def run(self, request: TaskRequest) -> Any:
        fd, path = tempfile.mkstemp(prefix="loopwork-codex-", suffix=".txt")
        os.close(fd)
        try:
            stdout, _ = await self.invoke(self.build_argv(request, path), self.build_stdin(request))
            with open(path, "r", encoding="utf-8") as f:
                last_message = f.read()
            return last_message or stdout
        finally:
            with contextlib.suppress(OSError):
                os.remove(path)
