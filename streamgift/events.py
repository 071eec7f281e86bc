"""
Event module for cl-streamgift.

Events are written to the stream_events table inside the transaction of
the operation that produced them, so they commit or roll back together
with the state change. Subscribers (mirror sync, notifiers) are only
called after commit and can never undo engine state.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class EventType(str, Enum):
    """
    Event types emitted by the engine.

    Using str, Enum for JSON serialization compatibility.
    """
    STREAM_CREATED = 'stream_created'
    STREAM_CLAIMED = 'stream_claimed'
    STREAM_CANCELLED = 'stream_cancelled'
    RECIPIENT_REBOUND = 'recipient_rebound'
    IDENTITY_BOUND = 'identity_bound'
    FEES_WITHDRAWN = 'fees_withdrawn'
    DEPOSIT = 'deposit'


@dataclass
class StreamEvent:
    """
    One entry of the engine's audit log.

    Attributes:
        event_type: EventType value
        stream_id: Stream the event concerns (None for pool/account events)
        payload: Event-specific fields
        authority: Who authorized the operation ('0x...' or 'operator:<name>')
        created_at: Unix timestamp
        event_id: Database ID (set after insertion)
    """
    event_type: str
    stream_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    authority: str = ''
    created_at: int = 0
    event_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'stream_id': self.stream_id,
            'authority': self.authority,
            'payload': self.payload,
            'created_at': self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'StreamEvent':
        return cls(
            event_type=row['event_type'],
            stream_id=row.get('stream_id'),
            payload=row.get('payload') or {},
            authority=row.get('authority') or '',
            created_at=row['created_at'],
            event_id=row.get('event_id'),
        )


Subscriber = Callable[[List[StreamEvent]], None]


class EventBus:
    """Persists events and fans them out to subscribers after commit."""

    def __init__(self, database, plugin=None):
        self.db = database
        self.plugin = plugin
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback receiving each committed batch of events."""
        self._subscribers.append(callback)

    def record(self, event_type: EventType, stream_id: Optional[int],
               payload: Dict[str, Any], authority: str = '',
               now: int = None) -> StreamEvent:
        """
        Append an event to the log.

        Must be called inside the producing operation's transaction.
        """
        created_at = now if now is not None else int(time.time())
        event = StreamEvent(
            event_type=EventType(event_type).value,
            stream_id=stream_id,
            payload=payload,
            authority=authority,
            created_at=created_at,
        )
        event.event_id = self.db.add_event(
            event.event_type, stream_id, payload, authority, created_at
        )
        return event

    def dispatch(self, events: List[StreamEvent]) -> None:
        """Deliver committed events. Subscriber errors are logged, not raised."""
        if not events:
            return
        for callback in list(self._subscribers):
            try:
                callback(events)
            except Exception as e:
                if self.plugin:
                    self.plugin.log(f"Event subscriber error: {e}", level='warn')

    def history(self, stream_id: Optional[int] = None, limit: int = 100) -> List[StreamEvent]:
        """Logged events, newest first."""
        return [StreamEvent.from_row(row) for row in self.db.get_events(stream_id, limit)]
