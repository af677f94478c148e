"""
Lifecycle status of a forwarded port.

Provides:
- PortStatus: STOPPED, STARTING, STARTED, STOPPING
- StatusCell: Holder of a PortStatus with an atomic compare-exchange
- to_starting / to_stopping: The only legal ways to leave STOPPED or STARTED

Legal transitions:
    STOPPED  -> STARTING   (to_starting)
    STARTING -> STARTED    (plain set by the to_starting winner)
    STARTED  -> STOPPING   (to_stopping)
    STARTING -> STOPPING   (to_stopping, stop requested while starting)
    STOPPING -> STOPPED    (plain set by the to_stopping winner)

Requesting a transition into the state the port is already heading for
returns False instead of raising, so concurrent start/stop callers are
idempotent.
"""
from __future__ import annotations

import threading
from enum import Enum

from nbs_tunnel.errors import IllegalTransitionError


class PortStatus(str, Enum):
    """Lifecycle states of a forwarded port."""
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"

    def __str__(self) -> str:
        return self.value.capitalize()


class StatusCell:
    """
    Mutable holder of a single PortStatus.

    compare_exchange() is atomic with respect to every other
    compare_exchange() and set() on the same cell.
    """

    def __init__(self, value: PortStatus = PortStatus.STOPPED) -> None:
        assert isinstance(value, PortStatus), \
            f"value must be a PortStatus, got {type(value).__name__}"
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> PortStatus:
        """Return the current status."""
        return self._value

    def compare_exchange(self, expected: PortStatus, new: PortStatus) -> PortStatus:
        """
        Replace the status with new if it currently equals expected.

        Returns:
            The status observed before the exchange was attempted.
        """
        with self._lock:
            observed = self._value
            if observed is expected:
                self._value = new
            return observed

    def set(self, new: PortStatus) -> None:
        """Unconditionally store a status."""
        with self._lock:
            self._value = new

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StatusCell):
            return self._value is other._value
        if isinstance(other, PortStatus):
            return self._value is other
        return NotImplemented

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return f"StatusCell({self._value!s})"


def to_starting(cell: StatusCell) -> bool:
    """
    Move a port from STOPPED to STARTING.

    Returns:
        True if this caller performed the transition, False if the port
        is already STARTING or STARTED.

    Raises:
        IllegalTransitionError: If the port is STOPPING.
    """
    observed = cell.compare_exchange(PortStatus.STOPPED, PortStatus.STARTING)
    if observed is PortStatus.STOPPED:
        return True
    if observed in (PortStatus.STARTING, PortStatus.STARTED):
        return False
    raise IllegalTransitionError(observed, PortStatus.STARTING)


def to_stopping(cell: StatusCell) -> bool:
    """
    Move a port from STARTED (or STARTING) to STOPPING.

    Returns:
        True if this caller performed the transition, False if the port
        is already STOPPING or STOPPED.

    Raises:
        IllegalTransitionError: If the observed status is not a legal
            origin for STOPPING.
    """
    while True:
        observed = cell.compare_exchange(PortStatus.STARTED, PortStatus.STOPPING)
        if observed is PortStatus.STARTED:
            return True

        # Stop requested while the port is still starting
        observed = cell.compare_exchange(PortStatus.STARTING, PortStatus.STOPPING)
        if observed is PortStatus.STARTING:
            return True

        if observed in (PortStatus.STOPPING, PortStatus.STOPPED):
            return False
        if observed is not PortStatus.STARTED:
            raise IllegalTransitionError(observed, PortStatus.STOPPING)
        # STARTING became STARTED between the two exchanges; retry
