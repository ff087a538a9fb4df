"""
EVREG Events

Every successful mutating call publishes exactly one event, after the write
has committed. Indexers subscribe to the bus, or replay the journal, to
reconstruct the evidence graph without reading registry state.

    ┌──────────────┐  publish   ┌──────────┐  priority 1000  ┌──────────────┐
    │ EvidenceStore│──────────▶ │ EventBus │───────────────▶ │ EventJournal │
    │ExtraInfoStore│            └────┬─────┘                 └──────┬───────┘
    └──────────────┘                 │ live                         │ rebuild
                                     ▼                              ▼
                                 Projection ◀───────────────────────┘

Event kinds:
    EvidenceSubmitted   new evidence record (main or attached)
    ResourcesUpdated    provider replaced an evidence record's locator
    ExtraInfoAttached   side-channel record attached to a parent

Handler failures never reach the caller of the mutation. They are counted,
logged and handed to the bus's `on_error` callback.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from operator import attrgetter
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Type

from evreg.core import canonical_json_bytes
from evreg.observability import correlation_id_var

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    """Common envelope of registry events."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: str = field(default_factory=_utc_now)
    correlation_id: str = field(default_factory=correlation_id_var.get)

    @property
    def event_type(self) -> str:
        return type(self).__name__

    @property
    def stream_id(self) -> str:
        """Identifier of the record the event is about."""
        return ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        fields = {k: v for k, v in data.items() if k != "event_type"}
        return cls(**fields)

    def digest(self) -> str:
        return hashlib.sha256(canonical_json_bytes(self.to_dict())).hexdigest()


@dataclass
class EvidenceSubmitted(Event):
    """A new evidence record was written."""
    evidence_id: str = ""
    link_kind: str = "none"
    link_target: str = ""
    prior_refs: List[str] = field(default_factory=list)
    content_hash: str = ""
    account: str = ""
    signature: str = ""
    provider: str = ""

    @property
    def stream_id(self) -> str:
        return self.evidence_id


@dataclass
class ResourcesUpdated(Event):
    """The provider replaced an evidence record's locator."""
    evidence_id: str = ""
    resources: str = ""
    account: str = ""
    signature: str = ""
    provider: str = ""

    @property
    def stream_id(self) -> str:
        return self.evidence_id


@dataclass
class ExtraInfoAttached(Event):
    """An extra-info record was attached to a parent evidence."""
    extra_id: str = ""
    parent_id: str = ""
    operation_hash: str = ""
    account: str = ""
    signature: str = ""
    provider: str = ""
    attachment_index: int = 0

    @property
    def stream_id(self) -> str:
        return self.parent_id


EVENT_TYPES: Dict[str, Type[Event]] = {
    cls.__name__: cls
    for cls in (EvidenceSubmitted, ResourcesUpdated, ExtraInfoAttached)
}


def event_from_dict(data: Dict[str, Any]) -> Event:
    """Rebuild a registry event from `Event.to_dict` output."""
    cls = EVENT_TYPES.get(data.get("event_type", ""))
    if cls is None:
        raise ValueError(f"Unknown event type: {data.get('event_type')!r}")
    return cls.from_dict(data)


# ════════════════════════════════════════════════════════════════════════════
# BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


class EventHandlerError(Exception):
    """A subscriber raised while handling an event."""

    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class Subscription(NamedTuple):
    handler: EventHandler
    event_types: Tuple[Type[Event], ...]
    priority: int


class EventBus:
    """
    Synchronous fan-out of registry events.

    Handlers run on the publishing thread in descending priority order;
    equal priorities keep subscription order.

    Args:
        on_error: receives an EventHandlerError for every failed delivery.
            An exception raised by the callback itself is logged and dropped.
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._on_error = on_error
        self._counts: Counter = Counter()

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for `event_types` (all events if none)."""
        def register(handler: EventHandler) -> EventHandler:
            subscription = Subscription(handler, event_types or (Event,), priority)
            with self._lock:
                self._subscriptions.append(subscription)
                self._subscriptions.sort(key=attrgetter("priority"), reverse=True)
            return handler
        return register

    def publish(self, event: Event) -> None:
        with self._lock:
            self._counts["published"] += 1
            targets = [s.handler for s in self._subscriptions if isinstance(event, s.event_types)]
        for handler in targets:
            self._deliver(handler, event)

    def _deliver(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
        except Exception as exc:
            failure = EventHandlerError(event, handler, exc)
            with self._lock:
                self._counts["failed"] += 1
            logger.warning("%s", failure)
            self._report(failure)
        else:
            with self._lock:
                self._counts["handled"] += 1

    def _report(self, failure: EventHandlerError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(failure)
        except Exception:
            logger.exception("on_error callback raised for %s", failure.event.event_type)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._counts["published"],
                "handled_count": self._counts["handled"],
                "error_count": self._counts["failed"],
                "subscriber_count": len(self._subscriptions),
            }


# ════════════════════════════════════════════════════════════════════════════
# JOURNAL
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class JournalEntry:
    """One journaled event with its global sequence and per-stream version."""
    sequence: int
    stream_id: str
    version: int
    event: Event
    recorded_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "stream_id": self.stream_id,
            "version": self.version,
            "event": self.event.to_dict(),
            "recorded_at": self.recorded_at,
        }


class EventJournal:
    """
    Append-only log of published events, grouped into streams.

    A stream holds the events about one identifier: an evidence record's
    submission and locator updates, plus the attachments made to it.
    """

    def __init__(self):
        self._entries: List[JournalEntry] = []
        self._streams: Dict[str, List[JournalEntry]] = {}
        self._lock = threading.Lock()

    def attach(self, bus: EventBus) -> None:
        """Journal everything published on `bus` before other subscribers see it."""
        bus.subscribe(priority=1000)(self.append)

    def append(self, event: Event) -> JournalEntry:
        with self._lock:
            stream = self._streams.setdefault(event.stream_id, [])
            entry = JournalEntry(
                sequence=len(self._entries) + 1,
                stream_id=event.stream_id,
                version=len(stream) + 1,
                event=event,
            )
            self._entries.append(entry)
            stream.append(entry)
            return entry

    def stream(self, stream_id: str) -> List[Event]:
        with self._lock:
            return [entry.event for entry in self._streams.get(stream_id, ())]

    def entries(self, start: int = 0) -> List[JournalEntry]:
        """Entries from position `start` (0-based) onward."""
        with self._lock:
            return self._entries[start:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Projection(ABC):
    """
    Read model derived only from registry events.

    Subclasses implement `handle_event` and `_reset`. A projection can be fed
    live from a bus or rebuilt from a journal at any time.
    """

    def __init__(self):
        self._position = 0

    @property
    def position(self) -> int:
        """Sequence number of the last journal entry applied by `rebuild`."""
        return self._position

    @abstractmethod
    def handle_event(self, event: Event) -> None:
        ...

    def _reset(self) -> None:
        pass

    def rebuild(self, journal: EventJournal) -> None:
        """Discard projected state and replay `journal` from the beginning."""
        self._reset()
        self._position = 0
        for entry in journal.entries():
            self.handle_event(entry.event)
            self._position = entry.sequence


__all__ = [
    "Event",
    "EvidenceSubmitted",
    "ResourcesUpdated",
    "ExtraInfoAttached",
    "EVENT_TYPES",
    "event_from_dict",
    "EventHandler",
    "EventHandlerError",
    "Subscription",
    "EventBus",
    "JournalEntry",
    "EventJournal",
    "Projection",
]
