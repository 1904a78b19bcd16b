"""
Core data models for Shiplog.

This module defines the data structures shared by the autopilot loop:
- Enums for backlog, session, run and iteration outcomes
- Dataclasses for the backlog, memory, session logs and run state
- Results returned by the agent engine and the review pass
- JSON serialization support (to_dict / from_dict) for persisted models
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class BacklogStatus(Enum):
    """Lifecycle of a sprint backlog."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Outcome(Enum):
    """Classification of a single iteration in the memory log."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class SessionStatus(Enum):
    """Status of one agent session (iteration)."""
    RUNNING = "running"
    COMPLETED = "completed"
    STALLED = "stalled"
    ERROR = "error"
    TIMEOUT = "timeout"


class RunStatus(Enum):
    """Status of the autopilot run as a whole."""
    RUNNING = "running"
    COMPLETED = "completed"
    STALLED = "stalled"
    INTERRUPTED = "interrupted"


class ProgressKind(Enum):
    """
    Progress evidence produced by one iteration.

    HARD progress is commit-backed, SOFT progress is uncommitted edits only.
    """
    HARD = "hard"
    SOFT = "soft"
    NONE = "none"


class ExitCode:
    """Process exit codes, one per stop condition."""
    COMPLETED = 0
    DRY_RUN = 0
    STALLED = 1
    ERROR = 1
    MAX_ITERATIONS = 2
    INTERRUPTED = 130


# ---------------------------------------------------------------------------
# Backlog
# ---------------------------------------------------------------------------


def fallback_item_id(description: str) -> str:
    """Stable id for a backlog entry that has none."""
    return "F-" + hashlib.sha1(description.encode("utf-8")).hexdigest()[:8]


@dataclass
class WorkItem:
    """
    A single backlog entry ("feature").

    The description never changes after creation; only ``passes`` moves.
    Unknown fields from the sprint file are kept in ``extra``.
    """
    id: str
    description: str
    passes: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = dict(self.extra)
        data.update({"id": self.id, "description": self.description, "passes": self.passes})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        """
        Create from dictionary.

        An item without an id is keyed on its description, so its id stays
        put when other items are inserted or reordered.
        """
        extra = {k: v for k, v in data.items() if k not in ("id", "description", "passes")}
        description = str(data.get("description", ""))
        return cls(
            id=str(data.get("id") or fallback_item_id(description)),
            description=description,
            passes=bool(data.get("passes", False)),
            extra=extra,
        )


@dataclass
class Backlog:
    """
    One initiative's sprint file.

    Read-only to the control loop except for gate-driven rollbacks of
    ``passes``, which go through the backlog reader.
    """
    initiative: str
    created: str
    status: BacklogStatus
    items: list[WorkItem] = field(default_factory=list)
    path: Optional[Path] = None      # Source file, not serialized

    @property
    def incomplete_items(self) -> list[WorkItem]:
        """Items whose completion flag is still false, in backlog order."""
        return [item for item in self.items if not item.passes]

    @property
    def current_item(self) -> Optional[WorkItem]:
        """The item in progress: the first one not yet passing."""
        incomplete = self.incomplete_items
        return incomplete[0] if incomplete else None

    @property
    def is_complete(self) -> bool:
        """True when the backlog has items and every one of them passes."""
        return bool(self.items) and all(item.passes for item in self.items)

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        """Find an item by id."""
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "initiative": self.initiative,
            "created": self.created,
            "status": self.status.value,
            "features": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Optional[Path] = None) -> Backlog:
        """
        Create from dictionary.

        Raises:
            ValueError: If the status is not a known backlog status.
        """
        raw_items = data.get("features")
        if raw_items is None:
            raw_items = data.get("items", [])
        return cls(
            initiative=str(data.get("initiative", "")),
            created=str(data.get("created", "")),
            status=BacklogStatus(data.get("status", "in_progress")),
            items=[WorkItem.from_dict(item) for item in raw_items or []],
            path=path,
        )


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass
class MemoryEntry:
    """
    One iteration's record in the memory log.

    Append-only; only the most recent entry may later receive a critique
    and an outcome downgrade from the quality gate.
    """
    iteration: int
    timestamp: str
    item_description: str
    approach: str
    outcome: Outcome
    commit_count: int = 0
    learnings: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    critique: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "item_description": self.item_description,
            "approach": self.approach,
            "outcome": self.outcome.value,
            "commit_count": self.commit_count,
            "learnings": list(self.learnings),
            "failures": list(self.failures),
            "critique": self.critique,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryEntry:
        """Create from dictionary."""
        return cls(
            iteration=int(data["iteration"]),
            timestamp=data.get("timestamp", ""),
            item_description=data.get("item_description", ""),
            approach=data.get("approach", ""),
            outcome=Outcome(data.get("outcome", "failure")),
            commit_count=int(data.get("commit_count", 0)),
            learnings=list(data.get("learnings", [])),
            failures=list(data.get("failures", [])),
            critique=data.get("critique"),
        )


@dataclass
class Memory:
    """Per-initiative memory document."""
    initiative: str
    backlog: str                     # Path of the sprint file this memory belongs to
    started: str
    entries: list[MemoryEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "initiative": self.initiative,
            "backlog": self.backlog,
            "started": self.started,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Memory:
        """Create from dictionary."""
        return cls(
            initiative=data["initiative"],
            backlog=data.get("backlog", ""),
            started=data.get("started", ""),
            entries=[MemoryEntry.from_dict(e) for e in data.get("entries", [])],
        )


@dataclass
class LoopAnalysis:
    """Derived loop detector output; recomputed every iteration, never stored."""
    has_loop: bool = False
    warnings: list[str] = field(default_factory=list)
    blocked_approaches: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Sessions and run state
# ---------------------------------------------------------------------------


@dataclass
class SessionLog:
    """
    Record of one iteration's agent session.

    Immutable once ``end_time`` is set, except for the interrupt path which
    forces ``status`` to ERROR.
    """
    session_id: str
    iteration: int
    start_time: str
    start_commits: int
    end_time: Optional[str] = None
    end_commits: Optional[int] = None
    commits_made: int = 0
    files_changed: list[str] = field(default_factory=list)
    exit_status: Optional[int] = None
    timed_out: bool = False
    retries: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    progress: Optional[ProgressKind] = None
    status: SessionStatus = SessionStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "iteration": self.iteration,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "start_commits": self.start_commits,
            "end_commits": self.end_commits,
            "commits_made": self.commits_made,
            "files_changed": list(self.files_changed),
            "exit_status": self.exit_status,
            "timed_out": self.timed_out,
            "retries": self.retries,
            "cost_usd": self.cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "progress": self.progress.value if self.progress else None,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionLog:
        """Create from dictionary."""
        progress = data.get("progress")
        return cls(
            session_id=data["session_id"],
            iteration=int(data["iteration"]),
            start_time=data.get("start_time", ""),
            start_commits=int(data.get("start_commits", 0)),
            end_time=data.get("end_time"),
            end_commits=data.get("end_commits"),
            commits_made=int(data.get("commits_made", 0)),
            files_changed=list(data.get("files_changed", [])),
            exit_status=data.get("exit_status"),
            timed_out=bool(data.get("timed_out", False)),
            retries=int(data.get("retries", 0)),
            cost_usd=float(data.get("cost_usd", 0.0)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            progress=ProgressKind(progress) if progress else None,
            status=SessionStatus(data.get("status", "running")),
        )


@dataclass
class RunState:
    """
    Durable record of an autopilot run.

    Singleton per working directory; persisted after every iteration and
    on interrupt, read back on resume.
    """
    initiative: str
    started: str
    iterations: int = 0
    total_commits: int = 0
    stall_count: int = 0
    sessions: list[SessionLog] = field(default_factory=list)
    resume_handle: Optional[str] = None
    total_cost_usd: float = 0.0
    total_duration_seconds: float = 0.0
    status: RunStatus = RunStatus.RUNNING

    def running_session(self) -> Optional[SessionLog]:
        """The session currently in flight, if any."""
        for session in reversed(self.sessions):
            if session.status == SessionStatus.RUNNING:
                return session
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "initiative": self.initiative,
            "started": self.started,
            "iterations": self.iterations,
            "total_commits": self.total_commits,
            "stall_count": self.stall_count,
            "sessions": [s.to_dict() for s in self.sessions],
            "resume_handle": self.resume_handle,
            "total_cost_usd": self.total_cost_usd,
            "total_duration_seconds": self.total_duration_seconds,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        """Create from dictionary."""
        return cls(
            initiative=data["initiative"],
            started=data.get("started", ""),
            iterations=int(data.get("iterations", 0)),
            total_commits=int(data.get("total_commits", 0)),
            stall_count=int(data.get("stall_count", 0)),
            sessions=[SessionLog.from_dict(s) for s in data.get("sessions", [])],
            resume_handle=data.get("resume_handle"),
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
            total_duration_seconds=float(data.get("total_duration_seconds", 0.0)),
            status=RunStatus(data.get("status", "running")),
        )


# ---------------------------------------------------------------------------
# Agent engine results
# ---------------------------------------------------------------------------


@dataclass
class AgentResult:
    """
    Result from one agent engine invocation.

    Built from the terminal ``result`` event of the CLI's stream.
    """
    text: str                        # Final response text
    exit_status: int                 # Process exit code
    timed_out: bool = False
    session_id: Optional[str] = None  # Resume handle for the engine's own context
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    num_turns: int = 0
    duration_ms: int = 0
    structured: Optional[dict[str, Any]] = None  # Structured final report, if any
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when the engine exited cleanly without timing out."""
        return self.exit_status == 0 and not self.timed_out


@dataclass
class ReviewVerdict:
    """
    Structured verdict from the independent review pass.

    ``error`` is set only when the reviewer itself failed and the verdict
    defaulted to approval.
    """
    approved: bool
    critique: str = ""
    suggestions: list[str] = field(default_factory=list)
    error: Optional[str] = None
    cost_usd: float = 0.0

    @property
    def failed_open(self) -> bool:
        """True when approval is a fallback for reviewer infrastructure failure."""
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "approved": self.approved,
            "critique": self.critique,
            "suggestions": list(self.suggestions),
            "error": self.error,
            "cost_usd": self.cost_usd,
        }
