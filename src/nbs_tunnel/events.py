"""
Event system for nbs-tunnel.

Provides structured JSONL event logging for AI-inspectable diagnostics,
and Signal, the in-process observer list used by forwarded ports and
sessions.

Event types:
- CONNECT: SSH connection initiated/established
- AUTH: One authentication attempt, with its duration
- DISCONNECT: Connection closed, with a DisconnectReason
- ERROR: Any error condition
- FORWARD: Forwarded port lifecycle and per-connection activity

Every event serialises to one JSON object per line:
    {"event_type": "FORWARD", "timestamp": 1700000000000.0, "data": {...}}
"""
from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Iterator, Protocol

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSH event types for structured logging."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"
    FORWARD = "FORWARD"


EVENT_TYPES = frozenset(e.value for e in EventType)


class ForwardStatus(str, Enum):
    """Values of the status field carried by FORWARD events."""
    ESTABLISHING = "establishing"
    ESTABLISHED = "established"
    FAILED = "failed"
    REQUEST = "request"
    CONNECTION_ERROR = "connection_error"
    CLOSING = "closing"
    CLOSED = "closed"
    DRAIN_TIMEOUT = "drain_timeout"
    REPLAY_FAILED = "replay_failed"


@dataclass(frozen=True)
class ForwardRequest:
    """
    Payload of a forwarded port's request_received signal.

    For local and remote forwards this is the originator of the
    connection; for dynamic forwards it is the SOCKS target.
    """
    host: str
    port: int


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class Event:
    """One structured event; timestamp is Unix time in milliseconds."""
    event_type: str
    timestamp: float = field(default_factory=_now_ms)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        assert self.event_type in EVENT_TYPES, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {sorted(EVENT_TYPES)}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise to a single JSON line (enums and paths become strings)."""
        return json.dumps(
            {"event_type": self.event_type, "timestamp": self.timestamp, "data": self.data},
            default=str,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        record = json.loads(json_str)
        return cls(
            event_type=record["event_type"],
            timestamp=record["timestamp"],
            data=record.get("data", {}),
        )


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class EventCollector:
    """
    Collects events in memory for testing and inspection.

    Thread-safe: forwards emit from their accept and worker threads.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return a snapshot of the collected events."""
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        wanted = EventType(event_type).value
        return [e for e in self.events if e.event_type == wanted]

    def get_forward_statuses(self) -> list[str]:
        """Return the status field of every FORWARD event, in order."""
        return [e.data.get("status") for e in self.get_by_type(EventType.FORWARD)]


class JSONLEventWriter:
    """
    Appends events to a JSONL file, one flushed line per event, so a
    running tunnel can be inspected with tail -f.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self._file is None:
                self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def emit(self, event: Event) -> None:
        line = event.to_json() + "\n"
        with self._lock:
            if self._file is None:
                # Closed: late events from draining forwards are dropped
                logger.debug("Dropping %s event, %s is closed", event.event_type, self._path)
                return
            self._file.write(line)
            self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Builds events and dispatches them to every configured sink: an
    in-memory EventCollector and/or a JSONL file.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._sinks: list[EventSink] = []
        self._writer: JSONLEventWriter | None = None

        if collector is not None:
            self._sinks.append(collector)
        if jsonl_path:
            self._writer = JSONLEventWriter(jsonl_path)
            self._writer.open()
            self._sinks.append(self._writer)

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create an event and hand it to every sink.

        Returns:
            The created event
        """
        event = Event(event_type=EventType(event_type).value, data=data)
        for sink in self._sinks:
            sink.emit(event)
        return event

    def close(self) -> None:
        """Close the JSONL file, if any."""
        if self._writer is not None:
            self._writer.close()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Time the enclosed block and emit one event when it exits, with
        duration_ms added. The yielded dict may be filled in meanwhile.

        Usage:
            with emitter.timed_event(EventType.AUTH, method="password") as data:
                client.connect(host)
                data["status"] = "success"
        """
        start = time.monotonic()
        event_data = dict(initial_data)
        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.monotonic() - start) * 1000
            self.emit(event_type, **event_data)


class Signal:
    """
    Thread-safe list of observers notified synchronously by emit().

    Handlers run on the emitting thread, in connection order. A handler
    that raises is logged and does not stop the remaining handlers.
    Disconnecting a handler that is not connected is a no-op, so
    unsubscription can race a concurrent stop without error.
    """

    def __init__(self, name: str = "signal") -> None:
        self._name = name
        self._handlers: list[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def connect(self, handler: Callable[..., Any]) -> None:
        """Subscribe a handler. Connecting it again is a no-op."""
        assert callable(handler), f"handler must be callable, got {handler!r}"
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def disconnect(self, handler: Callable[..., Any]) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, *args: Any) -> None:
        """Call every subscribed handler with args."""
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception("Handler %r for %s failed", handler, self._name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __repr__(self) -> str:
        return f"Signal({self._name!r}, handlers={len(self)})"


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read every event from a JSONL file, skipping blank lines."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    with open(path, "r", encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
