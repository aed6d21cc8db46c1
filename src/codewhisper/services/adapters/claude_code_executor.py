"""Task executor that hands coding tasks to the Claude Code CLI in headless mode."""

import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Dict, List, Optional

from codewhisper.lib.config import ExternalTaskConfig
from codewhisper.lib.errors import ToolExecutionError
from codewhisper.services.interfaces.task_executor import ProgressCallback, TaskContext, TaskExecutor, TaskResult


logger = logging.getLogger(__name__)

# Claude Code tool name -> progress verb
TOOL_VERBS = {
    "Read": "Reading",
    "Edit": "Editing",
    "MultiEdit": "Editing",
    "Write": "Writing",
    "Bash": "Running",
    "Grep": "Searching",
    "Glob": "Finding",
    "WebFetch": "Fetching",
    "WebSearch": "Searching",
    "Task": "Starting task",
}

# Claude Code tool name -> input field naming its target
TOOL_TARGET_FIELDS = {
    "Read": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "Write": "file_path",
    "Bash": "command",
    "Grep": "pattern",
    "Glob": "pattern",
    "WebFetch": "url",
    "WebSearch": "query",
}

STREAM_LINE_LIMIT = 16 * 1024 * 1024


def _shorten(text: str, max_chars: int) -> str:
    text = " ".join(text.split())
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


def format_tool_action(tool_name: str, tool_input: Optional[Dict[str, Any]]) -> str:
    """Describe a Claude Code tool invocation as a short progress line.

    File targets are reduced to their base name; commands and patterns are
    cut at 40 characters.
    """
    action = TOOL_VERBS.get(tool_name, tool_name)
    field = TOOL_TARGET_FIELDS.get(tool_name)
    value = (tool_input or {}).get(field) if field else None
    if not isinstance(value, str) or not value:
        return action
    if field == "file_path":
        return f"{action} {os.path.basename(value)}"
    return f"{action} {_shorten(value, 40)}"


class _StreamState:
    """Accumulates what a stream-json run has reported so far."""

    def __init__(self):
        self.texts: List[str] = []
        self.tools_used: List[str] = []
        self.result: Optional[Dict[str, Any]] = None
        self.errors: List[str] = []


class ClaudeCodeTaskExecutor(TaskExecutor):
    """Runs `claude -p <task> --output-format stream-json` and streams its progress.

    Only one task runs at a time. cancel() terminates the subprocess,
    escalating to kill if it does not exit promptly.
    """

    def __init__(
        self,
        command_path: str = "claude",
        working_directory: Optional[str] = None,
        timeout_seconds: float = 600,
        allowed_tools: Optional[List[str]] = None,
        extra_args: Optional[List[str]] = None,
        terminate_timeout: float = 2.0
    ):
        self.command_path = command_path
        self.working_directory = os.path.expanduser(working_directory) if working_directory else None
        self.timeout_seconds = timeout_seconds
        self.allowed_tools = list(allowed_tools or [])
        self.extra_args = list(extra_args or [])
        self.terminate_timeout = terminate_timeout
        self.logger = logger
        self._process: Optional[asyncio.subprocess.Process] = None

    @classmethod
    def from_config(cls, config: ExternalTaskConfig) -> "ClaudeCodeTaskExecutor":
        return cls(
            command_path=config.command_path,
            working_directory=config.working_directory,
            timeout_seconds=config.timeout_seconds,
            allowed_tools=config.allowed_tools,
            extra_args=config.extra_args,
        )

    @property
    def is_executing(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _build_command(self, prompt: str) -> List[str]:
        command = [self.command_path, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.allowed_tools:
            command.extend(["--allowedTools", ",".join(self.allowed_tools)])
        command.extend(self.extra_args)
        return command

    @staticmethod
    def _build_prompt(task: str, context: Optional[TaskContext], image_paths: List[str]) -> str:
        parts = [task]
        if context and context.additional_info:
            parts.append(f"Additional context:\n{context.additional_info}")
        if image_paths:
            listing = "\n".join(f"- {path}" for path in image_paths)
            parts.append(f"Screenshots of the user's screen are saved at:\n{listing}")
        return "\n\n".join(parts)

    @staticmethod
    def _write_images(context: Optional[TaskContext]) -> List[str]:
        paths = []
        for image in (context.images if context else []):
            suffix = ".jpg" if image.media_type == "image/jpeg" else ".png"
            with tempfile.NamedTemporaryFile(prefix="codewhisper-", suffix=suffix, delete=False) as f:
                f.write(image.data)
                paths.append(f.name)
        return paths

    async def execute(
        self,
        task: str,
        context: Optional[TaskContext] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> TaskResult:
        """Run a task to completion.

        Raises:
            ToolExecutionError: The CLI is missing, already busy, or timed out
        """
        if self.is_executing:
            raise ToolExecutionError("Another external task is still running", tool_name="execute_external_task")

        image_paths = self._write_images(context)
        command = self._build_command(self._build_prompt(task, context, image_paths))
        self.logger.info(f"Executing Claude Code: {' '.join(command[:2])}... ({len(image_paths)} image(s))")

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.working_directory,
                    env=os.environ.copy(),
                    limit=STREAM_LINE_LIMIT,
                )
            except FileNotFoundError as e:
                raise ToolExecutionError(f"Claude Code CLI not found: {self.command_path}", tool_name="execute_external_task") from e

            self._process = process
            try:
                return await asyncio.wait_for(self._consume(process, on_progress), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                await self._terminate(process)
                raise ToolExecutionError(
                    f"Task timed out after {self.timeout_seconds}s", tool_name="execute_external_task", code="timeout"
                )
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
            finally:
                self._process = None
        finally:
            for path in image_paths:
                try:
                    os.unlink(path)
                except OSError:
                    self.logger.debug(f"Could not remove temporary image {path}")

    async def _consume(self, process: asyncio.subprocess.Process, on_progress: Optional[ProgressCallback]) -> TaskResult:
        state = _StreamState()
        stderr_task = asyncio.create_task(process.stderr.read())

        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="ignore").strip()
                if line:
                    self._handle_line(line, state, on_progress)
            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="ignore").strip()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

        return self._build_result(state, returncode, stderr)

    def _handle_line(self, line: str, state: _StreamState, on_progress: Optional[ProgressCallback]) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            self._report(on_progress, _shorten(line, 80))
            return
        if not isinstance(data, dict):
            return

        msg_type = data.get("type", "")

        if msg_type == "assistant":
            for block in (data.get("message") or {}).get("content") or []:
                block_type = block.get("type")
                if block_type == "text" and block.get("text", "").strip():
                    state.texts.append(block["text"])
                    self._report(on_progress, _shorten(block["text"], 80))
                elif block_type == "tool_use":
                    name = block.get("name", "tool")
                    if name not in state.tools_used:
                        state.tools_used.append(name)
                    self._report(on_progress, format_tool_action(name, block.get("input")))

        elif msg_type == "user":
            for block in (data.get("message") or {}).get("content") or []:
                if block.get("type") == "tool_result" and block.get("is_error"):
                    content = block.get("content")
                    text = content if isinstance(content, str) else json.dumps(content)
                    state.errors.append(text)
                    self._report(on_progress, f"Error: {_shorten(text, 80)}")

        elif msg_type == "result":
            state.result = data

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], text: str) -> None:
        if on_progress is None or not text:
            return
        try:
            on_progress(text)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _build_result(self, state: _StreamState, returncode: int, stderr: str) -> TaskResult:
        metadata: Dict[str, Any] = {"tools_used": state.tools_used, "return_code": returncode}

        if state.result is not None:
            result = state.result
            metadata.update({
                "cost_usd": result.get("total_cost_usd", 0.0),
                "duration_ms": result.get("duration_ms", 0),
                "num_turns": result.get("num_turns", 0),
                "session_id": result.get("session_id", ""),
            })
            success = result.get("subtype") == "success" and not result.get("is_error", False)
            content = result.get("result") or (state.texts[-1] if state.texts else "")
            if not success and not content:
                content = stderr or f"Claude Code finished with {result.get('subtype', 'an error')}"
            return TaskResult(content=content, success=success, metadata=metadata)

        if returncode != 0:
            self.logger.error(f"Claude Code failed (exit {returncode}): {stderr}")
            return TaskResult(content=stderr or f"Claude Code exited with status {returncode}", success=False, metadata=metadata)

        return TaskResult(content=state.texts[-1] if state.texts else "", success=True, metadata=metadata)

    async def cancel(self) -> None:
        process = self._process
        if process is None:
            return
        self.logger.info("Cancelling Claude Code task")
        await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Claude Code did not exit after SIGTERM, killing it")
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass
