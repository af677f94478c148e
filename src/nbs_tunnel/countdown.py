"""
Pending connection tracking for graceful drain.

Provides:
- PendingConnectionTracker: Counting completion primitive
- signal_quietly: Signal a tracker that may already have been closed

A forwarded port creates a fresh tracker with a count of one (its own
reservation) every time it starts. Each in-flight connection adds one
and signals when it finishes. Stopping signals the reservation and waits
for zero, bounded by a timeout, then closes the tracker. Connections that
finish after the tracker was closed use signal_quietly().
"""
from __future__ import annotations

import threading

from nbs_tunnel.errors import ForwardingError, TrackerClosedError


class PendingConnectionTracker:
    """Countdown that completes when every pending connection signalled."""

    def __init__(self, initial_count: int = 1) -> None:
        assert isinstance(initial_count, int) and initial_count >= 0, \
            f"initial_count must be a non-negative int, got {initial_count!r}"
        self._count = initial_count
        self._closed = False
        self._cond = threading.Condition()

    @property
    def current_count(self) -> int:
        """Return the number of outstanding signals."""
        with self._cond:
            return self._count

    @property
    def is_set(self) -> bool:
        """Return True once the count has reached zero."""
        with self._cond:
            return self._count == 0

    @property
    def is_closed(self) -> bool:
        """Return True after close()."""
        with self._cond:
            return self._closed

    def add_count(self) -> None:
        """
        Register one more pending connection.

        Raises:
            TrackerClosedError: If the tracker was closed
            ForwardingError: If the countdown already completed
        """
        with self._cond:
            self._check_open()
            if self._count == 0:
                raise ForwardingError("Pending connection tracker is already set.")
            self._count += 1

    def signal(self) -> bool:
        """
        Mark one pending connection as finished.

        Returns:
            True if this call brought the count to zero

        Raises:
            TrackerClosedError: If the tracker was closed
            ForwardingError: If the count is already zero
        """
        with self._cond:
            self._check_open()
            if self._count == 0:
                raise ForwardingError(
                    "Pending connection tracker signalled more times than counted."
                )
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()
                return True
            return False

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the count reaches zero.

        Args:
            timeout: Seconds to wait, or None to wait forever

        Returns:
            True if the count reached zero, False on timeout

        Raises:
            TrackerClosedError: If the tracker is (or becomes) closed
        """
        assert timeout is None or timeout >= 0, \
            f"timeout must be None or non-negative, got {timeout}"
        with self._cond:
            self._check_open()
            reached = self._cond.wait_for(
                lambda: self._count == 0 or self._closed, timeout,
            )
            if self._count == 0:
                return True
            self._check_open()
            return bool(reached)

    def close(self) -> None:
        """Close the tracker and wake every waiter. Idempotent."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _check_open(self) -> None:
        if self._closed:
            raise TrackerClosedError()

    def __repr__(self) -> str:
        with self._cond:
            state = "closed" if self._closed else f"count={self._count}"
        return f"PendingConnectionTracker({state})"


def signal_quietly(tracker: PendingConnectionTracker) -> None:
    """Signal a tracker, ignoring a tracker closed by a finished drain."""
    try:
        tracker.signal()
    except TrackerClosedError:
        pass
