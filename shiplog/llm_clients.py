"""
Claude Code CLI wrapper for Shiplog.

This module provides a Python interface to the Claude Code CLI:
- ClaudeCliRunner class for executing prompts with streaming JSON output
- Incremental event forwarding (text, tool use) for display
- Timeout and cancellation handling that kills the in-flight process
- Cost, token and resume-handle extraction from the terminal result event
- Structured report extraction with a free-text JSON fallback
"""

from __future__ import annotations

import json
import subprocess
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from shiplog.errors import (
    AgentCancelledError,
    AgentError,
    AgentErrorType,
    CLINotFoundError,
    ErrorClassifier,
)
from shiplog.models import AgentResult

if TYPE_CHECKING:
    from shiplog.cancellation import CancelToken
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


StreamCallback = Callable[[str, dict[str, Any]], None]

POLL_INTERVAL_SECONDS = 0.2


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    """
    Find the last JSON object embedded in free text.

    Scans opening braces from the end so a trailing report wins over any
    earlier JSON the agent may have quoted.
    """
    decoder = json.JSONDecoder()
    index = text.rfind("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        index = text.rfind("{", 0, index)
    return None


@dataclass
class _StreamState:
    """Mutable state shared with the stdout reader thread."""
    result: Optional[dict[str, Any]] = None
    last_text: str = ""
    session_id: Optional[str] = None


class ClaudeCliRunner:
    """
    Runner for the Claude Code CLI.

    Executes one prompt per call in print mode with streaming JSON output.
    Only one invocation is ever in flight; it is registered with the cancel
    token so an interrupt kills it immediately.
    """

    def __init__(
        self,
        config: ShiplogConfig,
        logger: Optional[ShiplogLogger] = None,
        cancel_token: Optional[CancelToken] = None,
        on_stream: Optional[StreamCallback] = None,
    ) -> None:
        """
        Initialize the runner.

        Args:
            config: ShiplogConfig with the claude section.
            logger: Optional logger for recording invocations.
            cancel_token: Token checked while the process runs.
            on_stream: Receives ("text" | "tool_use", payload) events.
        """
        self.config = config
        self.logger = logger
        self.cancel_token = cancel_token
        self.on_stream = on_stream

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _build_command(
        self,
        *,
        model: Optional[str] = None,
        resume_handle: Optional[str] = None,
        max_cost_usd: Optional[float] = None,
        allowed_tools: Optional[list[str]] = None,
        json_schema: Optional[dict[str, Any]] = None,
    ) -> list[str]:
        """
        Build the CLI command. The prompt itself is written to stdin.

        Returns:
            List of command arguments.
        """
        cmd = [
            self.config.claude.binary,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
        ]

        model = model or self.config.claude.model
        if model:
            cmd.extend(["--model", model])
        if resume_handle:
            cmd.extend(["--resume", resume_handle])
        if max_cost_usd is not None:
            cmd.extend(["--max-budget-usd", f"{max_cost_usd:.2f}"])

        # None: default tools; []: disable all tools
        if allowed_tools is not None:
            cmd.extend(["--allowedTools", ",".join(allowed_tools)])

        if json_schema is not None:
            cmd.extend(["--json-schema", json.dumps(json_schema)])

        cmd.extend(self.config.claude.extra_args)
        return cmd

    def _emit(self, kind: str, payload: dict[str, Any]) -> None:
        if self.on_stream is not None:
            self.on_stream(kind, payload)

    def _handle_event(self, event: dict[str, Any], state: _StreamState) -> None:
        """Dispatch one stream-json event."""
        event_type = event.get("type")

        if event.get("session_id"):
            state.session_id = event["session_id"]

        if event_type == "assistant":
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if block.get("type") == "text" and block.get("text"):
                    state.last_text = block["text"]
                    self._emit("text", {"text": block["text"]})
                elif block.get("type") == "tool_use":
                    self._emit("tool_use", {
                        "name": block.get("name", ""),
                        "input": block.get("input") or {},
                    })
        elif event_type == "result":
            state.result = event

    def _read_stdout(self, proc: subprocess.Popen, state: _StreamState) -> None:
        """Reader thread: parse stdout line by line until EOF."""
        assert proc.stdout is not None
        for line in proc.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                self._log("stream_unparsed_line", {"line": line[:200]}, level="debug")
                continue
            if isinstance(event, dict):
                self._handle_event(event, state)

    def _build_result(
        self,
        state: _StreamState,
        returncode: int,
        timed_out: bool,
        started: float,
    ) -> AgentResult:
        data = state.result or {}
        usage = data.get("usage") or {}
        text = data.get("result") or state.last_text or ""

        structured = data.get("structured_output")
        if not isinstance(structured, dict):
            structured = extract_json_object(text) if text else None

        return AgentResult(
            text=text,
            exit_status=returncode,
            timed_out=timed_out,
            session_id=data.get("session_id") or state.session_id,
            cost_usd=float(data.get("total_cost_usd") or 0.0),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            num_turns=int(data.get("num_turns") or 0),
            duration_ms=int(data.get("duration_ms") or (time.monotonic() - started) * 1000),
            structured=structured,
            raw=data,
        )

    def run(
        self,
        prompt: str,
        *,
        timeout: Optional[float] = None,
        max_cost_usd: Optional[float] = None,
        resume_handle: Optional[str] = None,
        allowed_tools: Optional[list[str]] = None,
        model: Optional[str] = None,
        json_schema: Optional[dict[str, Any]] = None,
    ) -> AgentResult:
        """
        Execute a prompt using the Claude CLI.

        A timeout is not an exception: the process is killed and the result
        comes back with ``timed_out`` set.

        Args:
            prompt: The prompt to send to Claude.
            timeout: Timeout in seconds (overrides config).
            max_cost_usd: Cost ceiling for this invocation.
            resume_handle: Session id to continue from.
            allowed_tools: Restrict the tools available to the agent.
            model: Model selector (overrides config).
            json_schema: Schema for a structured final result.

        Returns:
            AgentResult with response and metadata.

        Raises:
            CLINotFoundError: If the claude binary is missing.
            AgentCancelledError: If the cancel token fired.
            AgentError: If the CLI fails without producing a usable result.
        """
        cmd = self._build_command(
            model=model,
            resume_handle=resume_handle,
            max_cost_usd=max_cost_usd if max_cost_usd is not None else self.config.claude.max_cost_usd,
            allowed_tools=allowed_tools,
            json_schema=json_schema,
        )
        timeout_seconds = timeout or self.config.claude.timeout_seconds

        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

        self._log("claude_invocation_start", {
            "prompt_length": len(prompt),
            "timeout": timeout_seconds,
            "resume": bool(resume_handle),
            "allowed_tools": allowed_tools,
        })

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=self.config.repo_root,
            )
        except FileNotFoundError:
            raise CLINotFoundError(self.config.claude.binary)

        started = time.monotonic()
        state = _StreamState()
        stderr_chunks: list[str] = []
        reader = threading.Thread(target=self._read_stdout, args=(proc, state), daemon=True)
        err_reader = threading.Thread(
            target=lambda: stderr_chunks.append(proc.stderr.read() if proc.stderr else ""),
            daemon=True,
        )
        reader.start()
        err_reader.start()

        timed_out = False
        cancelled = False
        registration = self.cancel_token.register(proc) if self.cancel_token else nullcontext(proc)

        with registration:
            try:
                assert proc.stdin is not None
                proc.stdin.write(prompt)
                proc.stdin.close()
            except (BrokenPipeError, OSError):
                pass    # Process exited before reading stdin

            deadline = started + timeout_seconds
            while True:
                try:
                    proc.wait(timeout=POLL_INTERVAL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if self.cancel_token is not None and self.cancel_token.cancelled:
                    cancelled = True
                    proc.kill()
                    proc.wait()
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    proc.kill()
                    proc.wait()
                    break

        reader.join(timeout=5)
        err_reader.join(timeout=5)
        stderr = "".join(stderr_chunks)
        returncode = proc.returncode if proc.returncode is not None else -1

        if cancelled or (self.cancel_token is not None and self.cancel_token.cancelled):
            self._log("claude_invocation_cancelled", {"returncode": returncode}, level="warn")
            raise AgentCancelledError()

        result = self._build_result(state, returncode, timed_out, started)

        if timed_out:
            self._log("claude_invocation_timeout", {
                "timeout_seconds": timeout_seconds,
                "cost_usd": result.cost_usd,
            }, level="error")
            return result

        subtype = str(result.raw.get("subtype", ""))
        hit_limit = subtype.startswith("error_max")
        if returncode != 0 and not hit_limit:
            error_type = ErrorClassifier.classify(stderr, result.text, returncode)
            self._log("claude_invocation_error", {
                "returncode": returncode,
                "error_type": error_type.name,
                "stderr": stderr[:500],
            }, level="error")
            raise AgentError(
                f"Claude CLI exited with code {returncode}",
                error_type=error_type,
                stderr=stderr,
                returncode=returncode,
            )
        if state.result is None and returncode == 0:
            raise AgentError(
                "Claude CLI produced no result event",
                error_type=AgentErrorType.CLI_CRASH,
                stderr=stderr,
                returncode=returncode,
            )

        if hit_limit:
            self._log("claude_invocation_limit", {"subtype": subtype}, level="warn")

        self._log("claude_invocation_complete", {
            "cost_usd": result.cost_usd,
            "num_turns": result.num_turns,
            "duration_ms": result.duration_ms,
            "session_id": result.session_id,
        })
        return result
