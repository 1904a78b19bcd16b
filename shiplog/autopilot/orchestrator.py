"""
Autopilot session orchestrator.

Drives the agent engine through the active backlog one iteration at a time:

    read backlog + memory -> loop analysis -> compose prompt -> invoke agent
    (retry/backoff, timeout, cancellation) -> classify progress -> record
    memory -> quality gates -> persist run state -> stop checks -> delay

Stop conditions are evaluated in order after every iteration: stall
threshold, backlog complete, iteration budget. An external interrupt
(SIGINT/SIGTERM) aborts the in-flight call, marks the running session as
``error``, persists the run as ``interrupted`` and ends the run with exit
code 130.
"""

from __future__ import annotations

import signal
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from shiplog.autopilot.progress import (
    changed_paths,
    classify_progress,
    iteration_outcome,
    next_stall_count,
    session_status,
)
from shiplog.autopilot.state_store import RunStateStore
from shiplog.backlog import BacklogReader, newly_passed
from shiplog.cancellation import CancelToken
from shiplog.errors import AgentCancelledError, AgentError, AutopilotInterrupted
from shiplog.llm_clients import ClaudeCliRunner
from shiplog.memory.loop_detector import LoopDetector
from shiplog.memory.store import MemoryStore
from shiplog.models import (
    AgentResult,
    Backlog,
    ExitCode,
    Memory,
    MemoryEntry,
    ProgressKind,
    RunState,
    RunStatus,
    SessionLog,
    SessionStatus,
    utc_now,
)
from shiplog.prompts import compose_iteration_prompt, parse_iteration_report
from shiplog.quality.pipeline import QualityGatePipeline
from shiplog.quality.review_gate import ReviewGate
from shiplog.quality.test_gate import TestGate
from shiplog.skillbook import Skillbook, is_fix_or_revert
from shiplog.vcs import GitTracker

if TYPE_CHECKING:
    from shiplog.config import ShiplogConfig
    from shiplog.logger import ShiplogLogger


ProgressCallback = Callable[[str, dict[str, Any]], None]


class StopReason(Enum):
    """Why a run ended."""
    COMPLETED = "completed"
    STALLED = "stalled"
    MAX_ITERATIONS = "max_iterations"
    INTERRUPTED = "interrupted"
    DRY_RUN = "dry_run"


_EXIT_CODES = {
    StopReason.COMPLETED: ExitCode.COMPLETED,
    StopReason.STALLED: ExitCode.STALLED,
    StopReason.MAX_ITERATIONS: ExitCode.MAX_ITERATIONS,
    StopReason.INTERRUPTED: ExitCode.INTERRUPTED,
    StopReason.DRY_RUN: ExitCode.DRY_RUN,
}


@dataclass
class RunOptions:
    """Per-run settings: config defaults overridden by CLI flags."""
    max_iterations: int = 20
    stall_threshold: int = 3
    timeout_seconds: int = 1800
    max_retries: int = 2
    max_cost_usd: Optional[float] = None
    model: Optional[str] = None
    resume: bool = True
    fresh: bool = False
    dry_run: bool = False
    sprint: Optional[str] = None

    @classmethod
    def from_config(cls, config: ShiplogConfig, **overrides: Any) -> RunOptions:
        """Build options from config, ignoring overrides that are None."""
        options = cls(
            max_iterations=config.autopilot.max_iterations,
            stall_threshold=config.autopilot.stall_threshold,
            timeout_seconds=config.claude.timeout_seconds,
            max_retries=config.retry.max_retries,
            max_cost_usd=config.claude.max_cost_usd,
            model=config.claude.model,
        )
        for name, value in overrides.items():
            if value is not None:
                setattr(options, name, value)
        return options


@dataclass
class AutopilotResult:
    """Outcome of an autopilot run."""
    reason: StopReason
    state: Optional[RunState] = None
    backlog: Optional[Backlog] = None
    message: str = ""
    prompt: Optional[str] = None     # Dry run only
    warnings: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Process exit code for this stop reason."""
        return _EXIT_CODES[self.reason]


class AutopilotOrchestrator:
    """
    Session orchestrator for the autopilot loop.

    All run-scoped mutable state (current run state, memory, backlog,
    cancel token) lives on this instance; the signal handler is a bound
    method so it operates on exactly this run.
    """

    def __init__(
        self,
        config: ShiplogConfig,
        options: Optional[RunOptions] = None,
        logger: Optional[ShiplogLogger] = None,
        runner: Optional[ClaudeCliRunner] = None,
        git: Optional[GitTracker] = None,
        backlog_reader: Optional[BacklogReader] = None,
        memory_store: Optional[MemoryStore] = None,
        state_store: Optional[RunStateStore] = None,
        skillbook: Optional[Skillbook] = None,
        test_gate: Optional[TestGate] = None,
        review_gate: Optional[ReviewGate] = None,
        cancel_token: Optional[CancelToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
        stream_callback: Optional[Callable[[str, dict[str, Any]], None]] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: ShiplogConfig with paths and settings.
            options: Run options (defaults from config).
            logger: Optional logger for recording operations.
            runner: Agent engine runner (created if not provided).
            git: Revision tracker (created if not provided).
            backlog_reader: Backlog reader (created if not provided).
            memory_store: Memory store (created if not provided).
            state_store: Run state store (created if not provided).
            skillbook: Skillbook (created if not provided).
            test_gate: Stage A gate (created if not provided).
            review_gate: Stage B gate (created if not provided and enabled).
            cancel_token: Shared cancellation token.
            progress_callback: Optional callback function(event: str, data: dict).
            stream_callback: Receives agent stream events for display.
        """
        self.config = config
        self.options = options or RunOptions.from_config(config)
        self.logger = logger
        self.cancel_token = cancel_token or CancelToken()
        self._progress_callback = progress_callback

        self.runner = runner or ClaudeCliRunner(
            config, logger, cancel_token=self.cancel_token, on_stream=stream_callback
        )
        self.git = git or GitTracker(
            config.repo_root, logger, ignore_prefixes=[config.state_dir, config.skillbook_path]
        )
        self.backlog_reader = backlog_reader or BacklogReader(config, logger)
        self.memory_store = memory_store or MemoryStore(config, logger)
        self.state_store = state_store or RunStateStore(config, logger)
        self.skillbook = skillbook or Skillbook(config.skillbook_file, logger)
        self.loop_detector = LoopDetector(config.loop_detection)

        if review_gate is None and config.review.enabled:
            review_gate = ReviewGate(config, self.runner, logger)
        self.pipeline = QualityGatePipeline(
            config,
            self.backlog_reader,
            self.memory_store,
            self.skillbook,
            test_gate or TestGate(config, logger, self.cancel_token),
            review_gate if config.review.enabled else None,
            self.git,
            logger,
            progress_callback,
        )

        self.state: Optional[RunState] = None
        self.memory: Optional[Memory] = None
        self.backlog: Optional[Backlog] = None
        self._resume_handle: Optional[str] = None
        self._iteration_base = 0     # Iterations recorded before this run's budget starts
        self._interrupting = False
        self._previous_handlers: dict[int, Any] = {}

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _emit_progress(self, event: str, data: Optional[dict] = None) -> None:
        """Emit progress event to callback if configured."""
        if self._progress_callback:
            self._progress_callback(event, data or {})

    # =========================================================================
    # Interrupt handling
    # =========================================================================

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to handle_interrupt (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self.handle_interrupt)

    def restore_signal_handlers(self) -> None:
        """Put back whatever handlers were installed before the run."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def handle_interrupt(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """
        Abort the run from any point in the loop.

        Kills the in-flight call, marks the running session as ``error``,
        persists the run as ``interrupted`` and raises AutopilotInterrupted.
        A second signal while the first is being handled is ignored.

        Raises:
            AutopilotInterrupted: Always, on first invocation.
        """
        if self._interrupting:
            return
        self._interrupting = True
        self.cancel_token.cancel()
        self._persist_interrupted(signum)
        raise AutopilotInterrupted()

    def _persist_interrupted(self, signum: Optional[int] = None) -> None:
        state = self.state
        if state is None:
            return

        session = state.running_session()
        if session is not None:
            session.status = SessionStatus.ERROR
            session.end_time = utc_now()
            self.state_store.save_session(session)

        state.status = RunStatus.INTERRUPTED
        self.state_store.save(state)
        self._log("autopilot_interrupted", {
            "signal": signum,
            "iterations": state.iterations,
            "session_id": session.session_id if session else None,
        }, level="warn")
        self._emit_progress("interrupted", {"iterations": state.iterations})

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, install_signals: bool = True) -> AutopilotResult:
        """
        Run the autopilot until a stop condition.

        Args:
            install_signals: Install SIGINT/SIGTERM handlers for the run.

        Returns:
            AutopilotResult with the stop reason and final state.

        Raises:
            BacklogNotFoundError: If there is no backlog to work on.
            StatePersistenceError: If state cannot be written.
        """
        self.backlog = self.backlog_reader.select(self.options.sprint)

        if self.options.dry_run:
            return self._dry_run(self.backlog)

        if install_signals:
            self.install_signal_handlers()
        try:
            return self._run_loop()
        except AutopilotInterrupted:
            return self._interrupted_result()
        except AgentCancelledError:
            if not self._interrupting:
                self._interrupting = True
                self._persist_interrupted()
            return self._interrupted_result()
        finally:
            if install_signals:
                self.restore_signal_handlers()

    def _run_loop(self) -> AutopilotResult:
        assert self.backlog is not None
        backlog = self.backlog

        self.state_store.ensure_directories()
        self.memory = self.memory_store.open(
            backlog.initiative,
            str(backlog.path) if backlog.path else "",
            fresh=self.options.fresh,
        )
        self.state = self._initial_state(backlog)
        state = self.state
        self.state_store.save(state)

        self._emit_progress("run_start", {
            "initiative": backlog.initiative,
            "iterations": state.iterations,
            "resumed": state.iterations > self._iteration_base,
            "items": len(backlog.items),
            "passing": len(backlog.items) - len(backlog.incomplete_items),
        })

        if backlog.is_complete:
            return self._finish(StopReason.COMPLETED, RunStatus.COMPLETED, "All features already pass")

        while True:
            if self._budget_spent():
                return self._finish(
                    StopReason.MAX_ITERATIONS, None,
                    f"Reached max iterations ({self.options.max_iterations})",
                )

            self._run_iteration(state.iterations + 1)
            backlog = self.backlog

            if state.stall_count >= self.options.stall_threshold:
                return self._finish(
                    StopReason.STALLED, RunStatus.STALLED,
                    f"No progress in {state.stall_count} consecutive iterations",
                )
            if backlog.is_complete:
                return self._finish(StopReason.COMPLETED, RunStatus.COMPLETED, "All features pass")
            if self._budget_spent():
                return self._finish(
                    StopReason.MAX_ITERATIONS, None,
                    f"Reached max iterations ({self.options.max_iterations})",
                )

            delay = self.config.autopilot.iteration_delay_seconds
            self._emit_progress("iteration_delay", {"seconds": delay})
            if not self.cancel_token.sleep(delay):
                raise AgentCancelledError("Interrupted between iterations")

    def _initial_state(self, backlog: Backlog) -> RunState:
        """Resume a prior run of the same initiative, or start a new one."""
        prior = self.state_store.load()
        resumable = (
            prior is not None
            and not self.options.fresh
            and prior.initiative == backlog.initiative
            and prior.status in (RunStatus.INTERRUPTED, RunStatus.RUNNING)
        )
        if not resumable:
            state = RunState(initiative=backlog.initiative, started=utc_now())
            if self.memory is not None and self.memory.entries:
                # Memory outlives runs; keep its entries ordered by iteration
                state.iterations = self.memory.entries[-1].iteration
                self._iteration_base = state.iterations
            return state

        assert prior is not None
        for session in prior.sessions:
            if session.status == SessionStatus.RUNNING:
                session.status = SessionStatus.ERROR
                session.end_time = session.end_time or utc_now()
        prior.status = RunStatus.RUNNING
        if self.options.resume:
            self._resume_handle = prior.resume_handle

        self._log("autopilot_resumed", {
            "iterations": prior.iterations,
            "stall_count": prior.stall_count,
            "resume_handle": self._resume_handle,
        })
        self._emit_progress("resumed", {
            "iterations": prior.iterations,
            "stall_count": prior.stall_count,
            "resume_handle": bool(self._resume_handle),
        })
        return prior

    def _budget_spent(self) -> bool:
        assert self.state is not None
        return self.state.iterations - self._iteration_base >= self.options.max_iterations

    def _finish(self, reason: StopReason, status: Optional[RunStatus], message: str) -> AutopilotResult:
        """Persist the final status and build the result."""
        assert self.state is not None
        if status is not None:
            self.state.status = status
        self.state_store.save(self.state)
        self._log("autopilot_finished", {
            "reason": reason.value,
            "iterations": self.state.iterations,
            "total_commits": self.state.total_commits,
            "cost_usd": self.state.total_cost_usd,
        }, level="warn" if reason == StopReason.STALLED else "info")
        self._emit_progress("run_end", {"reason": reason.value, "message": message})
        return AutopilotResult(reason=reason, state=self.state, backlog=self.backlog, message=message)

    def _interrupted_result(self) -> AutopilotResult:
        return AutopilotResult(
            reason=StopReason.INTERRUPTED,
            state=self.state,
            backlog=self.backlog,
            message="Interrupted; run state saved for resume",
        )

    def _dry_run(self, backlog: Backlog) -> AutopilotResult:
        """Compose the first prompt without invoking or persisting anything."""
        memory = self.memory_store.peek(backlog.initiative)
        entries = memory.entries if memory and not self.options.fresh else []
        analysis = self.loop_detector.analyze(entries)
        prompt = compose_iteration_prompt(
            entries[-1].iteration + 1 if entries else 1,
            backlog,
            entries,
            analysis,
            self.git.recent_commit_summaries(self.config.autopilot.recent_commits),
            self.skillbook.prompt_text(),
            self.config.autopilot.memory_window,
        )
        return AutopilotResult(
            reason=StopReason.DRY_RUN,
            backlog=backlog,
            message="Dry run: nothing invoked, nothing persisted",
            prompt=prompt,
            warnings=analysis.warnings,
        )

    # =========================================================================
    # One iteration
    # =========================================================================

    def _run_iteration(self, iteration: int) -> None:
        state = self.state
        memory = self.memory
        assert state is not None and memory is not None and self.backlog is not None

        backlog = self.backlog_reader.reload(self.backlog)
        failing_before = {item.id for item in backlog.incomplete_items}
        current = backlog.current_item
        start_commits = self.git.commit_count()
        dirty_before = self.git.working_tree_snapshot()

        analysis = self.loop_detector.analyze(memory.entries)
        if analysis.warnings:
            self._emit_progress("loop_warnings", {
                "warnings": analysis.warnings,
                "has_loop": analysis.has_loop,
            })

        prompt = compose_iteration_prompt(
            iteration,
            backlog,
            memory.entries,
            analysis,
            self.git.recent_commit_summaries(self.config.autopilot.recent_commits),
            self.skillbook.prompt_text(),
            self.config.autopilot.memory_window,
        )
        self.state_store.save_prompt(prompt)

        session = SessionLog(
            session_id=f"session-{iteration:03d}-{int(time.time() * 1000)}",
            iteration=iteration,
            start_time=utc_now(),
            start_commits=start_commits,
        )
        state.sessions.append(session)
        state.iterations = iteration
        self.state_store.save(state)

        self._emit_progress("iteration_start", {
            "iteration": iteration,
            "max_iterations": self._iteration_base + self.options.max_iterations,
            "item": current.id if current else None,
            "description": current.description if current else None,
        })

        started = time.monotonic()
        scope = self.logger.session_context(session.session_id) if self.logger else nullcontext()
        with scope:
            result, retries, error = self._invoke_with_retry(prompt, session)

        session.retries = retries
        if result is not None:
            session.exit_status = result.exit_status
            session.timed_out = result.timed_out
            session.cost_usd = result.cost_usd
            session.input_tokens = result.input_tokens
            session.output_tokens = result.output_tokens
            state.total_cost_usd += result.cost_usd
            if result.session_id:
                state.resume_handle = result.session_id

        end_commits = self.git.commit_count()
        changed = changed_paths(dirty_before, self.git.working_tree_snapshot())
        progress = classify_progress(start_commits, end_commits, changed)

        after = self.backlog_reader.reload(backlog)
        claimed = newly_passed(failing_before, after)
        item_passed = current is not None and any(item.id == current.id for item in claimed)

        subjects = self.git.recent_commit_subjects(progress.commits_made)
        entry = self._memory_entry(iteration, current.description if current else "", result, error,
                                   subjects, progress.kind, item_passed, progress.commits_made)
        self.memory_store.append(memory, entry)
        if subjects:
            self.skillbook.record_commit_learnings(subjects)

        # The session stays running until its claims are gated
        report = self.pipeline.run(after, claimed, memory, progress.commits_made)
        state.total_cost_usd += report.review_cost_usd
        self.backlog = report.backlog

        session.end_time = utc_now()
        session.end_commits = end_commits
        session.commits_made = progress.commits_made
        session.files_changed = progress.files_changed
        session.progress = progress.kind
        session.status = session_status(
            progress.kind,
            timed_out=session.timed_out,
            errored=error is not None,
        )
        state.total_commits += progress.commits_made
        state.stall_count = next_stall_count(state.stall_count, progress.kind)
        state.total_duration_seconds += time.monotonic() - started

        self.state_store.save_session(session)
        self.state_store.save(state)

        self._log("iteration_complete", {
            "iteration": iteration,
            "progress": progress.kind.value,
            "commits_made": progress.commits_made,
            "stall_count": state.stall_count,
            "status": session.status.value,
            "outcome": entry.outcome.value,
            "reverted": report.reverted,
        })
        self._emit_progress("iteration_end", {
            "iteration": iteration,
            "progress": progress.kind.value,
            "commits_made": progress.commits_made,
            "files_changed": len(progress.files_changed),
            "stall_count": state.stall_count,
            "stall_threshold": self.options.stall_threshold,
            "status": session.status.value,
            "outcome": entry.outcome.value,
            "cost_usd": session.cost_usd,
            "reverted": report.reverted,
        })
        if progress.kind == ProgressKind.NONE:
            self._emit_progress("stall_warning", {
                "stall_count": state.stall_count,
                "stall_threshold": self.options.stall_threshold,
            })

    def _memory_entry(
        self,
        iteration: int,
        description: str,
        result: Optional[AgentResult],
        error: Optional[str],
        subjects: list[str],
        kind: ProgressKind,
        item_passed: bool,
        commits_made: int,
    ) -> MemoryEntry:
        approach, learnings, failures = parse_iteration_report(result.structured if result else None)
        failures.extend(f'Needed fix: "{msg}"' for msg in subjects if is_fix_or_revert(msg))
        if result is not None and result.timed_out:
            failures.append(f"Session timed out after {self.options.timeout_seconds}s")
        if error is not None:
            failures.append(f"Agent invocation failed: {error}")
        return MemoryEntry(
            iteration=iteration,
            timestamp=utc_now(),
            item_description=description,
            approach=approach,
            outcome=iteration_outcome(kind, item_passed),
            commit_count=commits_made,
            learnings=learnings,
            failures=failures,
        )

    def _invoke_with_retry(
        self,
        prompt: str,
        session: SessionLog,
    ) -> tuple[Optional[AgentResult], int, Optional[str]]:
        """
        Invoke the agent, retrying failures with exponential backoff.

        Timeouts come back as results and are never retried. The resume
        handle of a prior interrupted run is used for the first call only.

        Returns:
            (result or None, retries used, error message or None)

        Raises:
            AgentCancelledError: If interrupted during a call or a backoff.
        """
        retry = self.config.retry
        resume_handle, self._resume_handle = self._resume_handle, None
        attempt = 0

        while True:
            try:
                result = self.runner.run(
                    prompt,
                    timeout=self.options.timeout_seconds,
                    max_cost_usd=self.options.max_cost_usd,
                    resume_handle=resume_handle,
                    model=self.options.model,
                )
                if result.timed_out:
                    self._emit_progress("timeout", {
                        "session_id": session.session_id,
                        "timeout_seconds": self.options.timeout_seconds,
                    })
                return result, attempt, None
            except AgentCancelledError:
                raise
            except AgentError as e:
                if not e.should_retry or attempt >= self.options.max_retries:
                    self._log("agent_gave_up", {
                        "error": str(e),
                        "error_type": e.error_type.name,
                        "attempts": attempt + 1,
                    }, level="error")
                    self._emit_progress("agent_error", {
                        "error": str(e),
                        "requires_user_action": e.requires_user_action,
                    })
                    return None, attempt, str(e)

                delay = min(retry.base_delay_seconds * (2 ** attempt), retry.max_delay_seconds)
                attempt += 1
                self._log("agent_retry", {
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error_type": e.error_type.name,
                }, level="warn")
                self._emit_progress("retry", {
                    "attempt": attempt,
                    "max_retries": self.options.max_retries,
                    "delay_seconds": delay,
                    "error": str(e),
                })
                if not self.cancel_token.sleep(delay):
                    raise AgentCancelledError("Interrupted during retry backoff")
