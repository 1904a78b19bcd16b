"""
Autopilot: the session-iteration control loop.

Drives the agent engine through a backlog across many independent
invocations, classifying progress and persisting run state for resume.
"""

from shiplog.autopilot.orchestrator import (
    AutopilotOrchestrator,
    AutopilotResult,
    RunOptions,
    StopReason,
)
from shiplog.autopilot.state_store import RunStateStore

__all__ = [
    "AutopilotOrchestrator",
    "AutopilotResult",
    "RunOptions",
    "RunStateStore",
    "StopReason",
]
