"""
Structured event records for the connection and bootstrap core.

Every component reports what it does through an EventEmitter, so a test
or an operator can reconstruct a connect() from its events alone: which
authentication path was taken, how the bootstrap progressed, which key
file changed and what each command returned.

Event types:
- CONNECT: connect() started, reused a session or registered one
- AUTH: an authentication attempt succeeded or failed
- BOOTSTRAP: a bootstrap state transition
- KEY: a local key store mutation (stored, deleted)
- EXEC: command execution completed
- DISCONNECT: a session was closed and removed
- ERROR: any surfaced failure

All events carry:
- event_type: One of the above types
- timestamp: Unix timestamp in milliseconds
- data: Event-specific structured data, usually with an "identity" key
  holding the canonical "user@host:port" string

Events never carry passwords or private key material; Event rejects data
keys that name a secret.
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator

# Data keys that would put credentials into a log line
SECRET_FIELDS = frozenset({"password", "passphrase", "private_key", "pem"})


class EventType(str, Enum):
    """Event categories emitted by the registry, bootstrap and key store."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    BOOTSTRAP = "BOOTSTRAP"
    KEY = "KEY"
    EXEC = "EXEC"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


@dataclass
class Event:
    """
    Record of one step of a connection's life.

    Attributes:
        event_type: The category of event (an EventType value)
        timestamp: When the event occurred (Unix ms)
        data: Event-specific structured data; never contains secrets
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"
        leaked = SECRET_FIELDS.intersection(self.data)
        assert not leaked, f"Event data must not carry secrets: {sorted(leaked)}"

    @property
    def identity(self) -> str | None:
        """The canonical identity the event concerns, if any."""
        return self.data.get("identity")

    def to_json(self) -> str:
        """Serialise event to a single JSON line."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from a JSON line written by to_json()."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """
    Collects events in memory for testing and inspection.

    Tests hand a collector to ConnectionRegistry and then assert on the
    sequence, e.g. that AUTH precedes BOOTSTRAP for a first contact.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return a copy of the collected events."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type, in emission order."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]

    def get_by_identity(self, identity_key: str) -> list[Event]:
        """Get all events concerning one identity, in emission order."""
        return [e for e in self._events if e.identity == identity_key]


class JSONLEventWriter:
    """
    Appends events to a JSONL file.

    Each event is one line of JSON and the file is flushed after every
    write, so a log can be tailed while connections are in progress and
    survives a crash up to the last completed event.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        """Open the log for appending, creating parent directories."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to an optional in-memory collector and an optional
    JSONL file.

    An emitter with neither sink is valid and simply drops events, which
    lets every component take an emitter unconditionally. The registry
    owns the emitter and shares it with its KeyStore and BootstrapProtocol
    so one log holds the whole story of a connect().
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create and emit an event.

        Args:
            event_type: The type of event
            **data: Event-specific data; keys in SECRET_FIELDS are rejected

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)

        if self._collector:
            self._collector.emit(event)

        if self._jsonl_writer:
            self._jsonl_writer.emit(event)

        return event

    def close(self) -> None:
        """Close the JSONL sink; later events go to the collector only."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Emit an event on exit with duration_ms added to its data.

        The event is emitted even when the body raises, so a failed command
        still leaves an EXEC record (with whatever the body added, such as
        an "error" key).

        Usage:
            with emitter.timed_event(EventType.EXEC, identity=key) as data:
                result = await transport.run(command)
                data["exit_code"] = result.exit_code
        """
        start_ms = time.time() * 1000
        event_data = dict(initial_data)

        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.time() * 1000) - start_ms
            self.emit(event_type, **event_data)


def read_jsonl_events(
    path: Path | str,
    event_type: str | EventType | None = None,
) -> list[Event]:
    """
    Read events from a JSONL file.

    Args:
        path: Path to the JSONL file
        event_type: Only return events of this type

    Returns:
        Events in file order
    """
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"
    if isinstance(event_type, EventType):
        event_type = event_type.value

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            event = Event.from_json(line)
            if event_type is None or event.event_type == event_type:
                events.append(event)

    return events
