"""
Error taxonomy for Shiplog.

This module provides:
- ShiplogError base class and the fatal errors surfaced to the operator
- AgentErrorType enum for categorizing agent engine failures
- ErrorClassifier for detecting error types from CLI output
- AutopilotInterrupted, raised out of the control loop after an interrupt
"""

from __future__ import annotations

import re
from enum import Enum, auto


class ShiplogError(Exception):
    """Base exception for all Shiplog errors."""
    pass


class BacklogNotFoundError(ShiplogError):
    """Raised when no usable backlog (sprint) file exists at startup."""
    pass


class StatePersistenceError(ShiplogError):
    """Raised when run state or memory cannot be written to disk."""
    pass


class AutopilotInterrupted(ShiplogError):
    """
    Raised after an external interrupt has been handled.

    By the time this propagates the run state has already been persisted
    with status ``interrupted``; callers only need to exit.
    """

    def __init__(self, message: str = "Autopilot interrupted", exit_code: int = 130) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class AgentErrorType(Enum):
    """
    Classification of agent engine failures.

    Used by the orchestrator to decide between retrying and giving up.
    """

    AUTH_REQUIRED = auto()      # Not logged in
    RATE_LIMIT = auto()         # Usage or request limits
    SERVER_OVERLOADED = auto()  # 529/503 errors
    TIMEOUT = auto()            # Invocation exceeded its deadline
    CANCELLED = auto()          # Aborted by an interrupt
    CLI_CRASH = auto()          # Non-zero exit with no recognizable cause
    CLI_NOT_FOUND = auto()      # Binary not installed
    UNKNOWN = auto()


class AgentError(ShiplogError):
    """
    Base exception for agent engine invocation failures.

    Includes error type classification for retry decisions.
    """

    def __init__(
        self,
        message: str,
        error_type: AgentErrorType = AgentErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = -1,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.stderr = stderr
        self.returncode = returncode

    @property
    def requires_user_action(self) -> bool:
        """Check if this error requires user intervention."""
        return self.error_type in (
            AgentErrorType.AUTH_REQUIRED,
            AgentErrorType.CLI_NOT_FOUND,
        )

    @property
    def should_retry(self) -> bool:
        """
        Check if this error is worth retrying.

        Timeouts and cancellations are terminal for an iteration; errors that
        need the operator will not fix themselves either.
        """
        if self.requires_user_action:
            return False
        return self.error_type not in (
            AgentErrorType.TIMEOUT,
            AgentErrorType.CANCELLED,
        )


class AgentCancelledError(AgentError):
    """Raised when an in-flight agent invocation is aborted by an interrupt."""

    def __init__(self, message: str = "Agent invocation cancelled") -> None:
        super().__init__(message, error_type=AgentErrorType.CANCELLED)


class CLINotFoundError(AgentError):
    """Raised when the agent CLI binary is not found."""

    def __init__(self, cli_name: str) -> None:
        super().__init__(
            f"{cli_name} CLI not found. Please install it first.",
            error_type=AgentErrorType.CLI_NOT_FOUND,
        )
        self.cli_name = cli_name


class ErrorClassifier:
    """
    Classifies agent CLI failures.

    Uses pattern matching on stderr/stdout to determine error type.
    """

    AUTH_PATTERNS = [
        r"unauthorized",
        r"not\s+logged\s+in",
        r"login\s+required",
        r"authentication\s+required",
        r"please\s+log\s+in",
        r"invalid\s+api\s+key",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.?limit",
        r"usage\s+limit\s+reached",
        r"too\s+many\s+requests",
        r"\b429\b",
    ]

    OVERLOAD_PATTERNS = [
        r"\b529\b",
        r"overloaded",
        r"\b503\b",
        r"service\s+unavailable",
    ]

    @classmethod
    def classify(
        cls,
        stderr: str,
        stdout: str = "",
        returncode: int = -1,
    ) -> AgentErrorType:
        """
        Classify an agent CLI error based on output.

        Args:
            stderr: Standard error output from CLI
            stdout: Standard output from CLI
            returncode: Process return code

        Returns:
            AgentErrorType classification
        """
        combined = f"{stderr} {stdout}".lower()

        if cls._matches_any(combined, cls.AUTH_PATTERNS):
            return AgentErrorType.AUTH_REQUIRED

        if cls._matches_any(combined, cls.RATE_LIMIT_PATTERNS):
            return AgentErrorType.RATE_LIMIT

        if cls._matches_any(combined, cls.OVERLOAD_PATTERNS):
            return AgentErrorType.SERVER_OVERLOADED

        if returncode != 0:
            return AgentErrorType.CLI_CRASH

        return AgentErrorType.UNKNOWN

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False
