"""
Stream record for cl-streamgift.

A Stream is a single escrowed, time-accruing payment from a sender to a
recipient. Rows are loaded from the database into this dataclass so the
accrual calculator and the ledger work on plain, statically-known fields.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class StreamStatus(str, Enum):
    """
    Stream lifecycle status.

    PAUSED is reserved: no operation moves a stream into it.
    """
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class RecipientKind(str, Enum):
    """How a stream's recipient was addressed at creation."""
    WALLET = 'wallet'
    EMAIL = 'email'
    TWITTER = 'twitter'


@dataclass
class Stream:
    """
    Snapshot of one stream.

    Attributes:
        stream_id: Sequential id assigned at creation
        sender: Address that funded the stream
        recipient: Address currently entitled to claim
        recipient_identity_hash: Hash of the identity the stream was
            addressed to, '' for wallet-addressed streams
        total_amount: Net amount owed over the stream's life (after fee)
        claimed_amount: Cumulative amount disbursed to the recipient
        rate_per_second: total_amount // duration
        start_time: Accrual start (unix seconds)
        end_time: Accrual end (unix seconds)
        last_claim_time: Floor of the accrual window
        status: StreamStatus value
        message: Optional note from the sender
        created_at: Creation time (unix seconds)
        recipient_kind: RecipientKind value
        fee_amount: Protocol fee deducted at creation
    """
    stream_id: int
    sender: str
    recipient: str
    recipient_identity_hash: str
    total_amount: int
    claimed_amount: int
    rate_per_second: int
    start_time: int
    end_time: int
    last_claim_time: int
    status: str
    message: str
    created_at: int
    recipient_kind: str = RecipientKind.WALLET.value
    fee_amount: int = 0

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time

    @property
    def remaining(self) -> int:
        """Amount not yet disbursed to the recipient."""
        return self.total_amount - self.claimed_amount

    @property
    def is_identity_addressed(self) -> bool:
        return bool(self.recipient_identity_hash)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> Optional['Stream']:
        """Create from a database row (None passes through)."""
        if row is None:
            return None
        return cls(
            stream_id=row['stream_id'],
            sender=row['sender'],
            recipient=row['recipient'],
            recipient_identity_hash=row.get('recipient_identity_hash') or '',
            total_amount=row['total_amount'],
            claimed_amount=row['claimed_amount'],
            rate_per_second=row['rate_per_second'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            last_claim_time=row['last_claim_time'],
            status=row['status'],
            message=row.get('message') or '',
            created_at=row['created_at'],
            recipient_kind=row.get('recipient_kind') or RecipientKind.WALLET.value,
            fee_amount=row.get('fee_amount') or 0,
        )
