"""Tests for error classification and retry decisions."""

import pytest

from shiplog.errors import (
    AgentCancelledError,
    AgentError,
    AgentErrorType,
    CLINotFoundError,
    ErrorClassifier,
)


class TestErrorClassifier:
    """Tests for ErrorClassifier.classify."""

    @pytest.mark.parametrize("stderr,expected", [
        ("Error: Not logged in. Please run /login", AgentErrorType.AUTH_REQUIRED),
        ("Invalid API key provided", AgentErrorType.AUTH_REQUIRED),
        ("429 Too Many Requests", AgentErrorType.RATE_LIMIT),
        ("Claude usage limit reached", AgentErrorType.RATE_LIMIT),
        ("API Error: 529 overloaded_error", AgentErrorType.SERVER_OVERLOADED),
        ("503 Service Unavailable", AgentErrorType.SERVER_OVERLOADED),
    ])
    def test_patterns(self, stderr, expected):
        assert ErrorClassifier.classify(stderr, returncode=1) == expected

    def test_stdout_is_also_searched(self):
        assert ErrorClassifier.classify("", stdout="rate limit exceeded", returncode=1) == AgentErrorType.RATE_LIMIT

    def test_unrecognized_nonzero_exit_is_crash(self):
        assert ErrorClassifier.classify("segfault", returncode=139) == AgentErrorType.CLI_CRASH

    def test_unrecognized_zero_exit_is_unknown(self):
        assert ErrorClassifier.classify("", returncode=0) == AgentErrorType.UNKNOWN


class TestRetryDecisions:
    """Tests for AgentError.should_retry / requires_user_action."""

    @pytest.mark.parametrize("error_type", [
        AgentErrorType.RATE_LIMIT,
        AgentErrorType.SERVER_OVERLOADED,
        AgentErrorType.CLI_CRASH,
        AgentErrorType.UNKNOWN,
    ])
    def test_transient_errors_retry(self, error_type):
        error = AgentError("x", error_type)
        assert error.should_retry is True
        assert error.requires_user_action is False

    def test_auth_needs_operator(self):
        error = AgentError("x", AgentErrorType.AUTH_REQUIRED)
        assert error.requires_user_action is True
        assert error.should_retry is False

    def test_missing_cli(self):
        error = CLINotFoundError("claude")
        assert "claude CLI not found" in str(error)
        assert error.requires_user_action is True
        assert error.should_retry is False

    def test_cancellation_and_timeout_are_terminal(self):
        assert AgentCancelledError().should_retry is False
        assert AgentError("x", AgentErrorType.TIMEOUT).should_retry is False
