"""
Cancellation support for the autopilot loop.

A single CancelToken is shared by the orchestrator, the agent runner and the
quality gates. Cancelling it wakes any interruptible sleep and kills the
subprocess currently registered with it, so an interrupt can land at any
suspension point: an agent call, a review call, a retry backoff or the
pause between iterations.
"""

from __future__ import annotations

import subprocess
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from shiplog.errors import AgentCancelledError


class CancelToken:
    """Cooperative cancellation flag with an attached in-flight process."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Set the flag and terminate the registered process, if any."""
        self._event.set()
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.kill()

    def sleep(self, seconds: float) -> bool:
        """
        Block for up to ``seconds``.

        Returns:
            True if the full delay elapsed, False if cancelled first.
        """
        if seconds <= 0:
            return not self.cancelled
        return not self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        """Raise AgentCancelledError when the token has been cancelled."""
        if self.cancelled:
            raise AgentCancelledError()

    @contextmanager
    def register(self, proc: subprocess.Popen) -> Iterator[subprocess.Popen]:
        """
        Attach a running process for the duration of the block.

        A cancel that arrived before registration kills the process at once.
        """
        with self._lock:
            self._proc = proc
        if self.cancelled and proc.poll() is None:
            proc.kill()
        try:
            yield proc
        finally:
            with self._lock:
                self._proc = None
