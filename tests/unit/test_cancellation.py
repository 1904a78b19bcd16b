"""Tests for CancelToken."""

import threading
from unittest.mock import MagicMock

import pytest

from shiplog.cancellation import CancelToken
from shiplog.errors import AgentCancelledError


class TestCancelToken:
    """Tests for cancellation and interruptible sleep."""

    def test_sleep_completes_when_not_cancelled(self):
        assert CancelToken().sleep(0.01) is True

    def test_zero_sleep_reports_cancellation(self):
        token = CancelToken()
        assert token.sleep(0) is True
        token.cancel()
        assert token.sleep(0) is False

    def test_cancel_wakes_sleeper(self):
        token = CancelToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        try:
            assert token.sleep(10) is False
        finally:
            timer.cancel()

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(AgentCancelledError):
            token.raise_if_cancelled()

    def test_cancel_kills_registered_process(self):
        token = CancelToken()
        proc = MagicMock()
        proc.poll.return_value = None
        with token.register(proc):
            token.cancel()
        proc.kill.assert_called_once()

    def test_process_registered_after_cancel_is_killed(self):
        token = CancelToken()
        token.cancel()
        proc = MagicMock()
        proc.poll.return_value = None
        with token.register(proc):
            pass
        proc.kill.assert_called_once()

    def test_finished_process_is_not_killed(self):
        token = CancelToken()
        proc = MagicMock()
        proc.poll.return_value = 0
        with token.register(proc):
            token.cancel()
        proc.kill.assert_not_called()
