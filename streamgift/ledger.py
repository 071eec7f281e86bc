"""
Stream ledger module for cl-streamgift

Owns the authoritative table of streams and every fund-moving state
transition: create, claim, cancel, and fee withdrawal.

Escrow Accounting:
- create: sender account -amount, pool +amount, fees +fee
- claim: pool -actual, recipient account +actual
- cancel: pool -(total - claimed), split between recipient and sender
- withdraw_fees: pool -x, fees -x, destination account +x

At all times pooled_balance == outstanding escrow of open streams +
fee_collected.

Authorization:
- Owners act as themselves (Authority.owner)
- An operator credential (Authority.operator) may claim, cancel or rebind
  on an owner's behalf only when operator_mode_enabled is set. Funds still
  go to the stream's recorded recipient/sender, never to the operator.

Thread Safety:
- Each operation holds an in-process lock and runs inside one database
  transaction; any error rolls back state, balances and events together
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .accrual import claimable, split_on_cancel
from .errors import (
    InsufficientBalanceError, InsufficientPoolError, InvalidArgumentError,
    InvalidStateError, NothingToClaimError, NotAuthorizedError, NotFoundError,
)
from .events import EventBus, EventType, StreamEvent
from .identity import IDENTITY_KINDS, IdentityRegistry, normalize_address
from .stream import RecipientKind, Stream, StreamStatus


# Amounts are stored as SQLite INTEGER (signed 64-bit)
MAX_AMOUNT = 2 ** 63 - 1

# Upper bound on idempotency key length
MAX_IDEMPOTENCY_KEY_LENGTH = 128


# =============================================================================
# AUTHORITY
# =============================================================================

@dataclass(frozen=True)
class Authority:
    """
    Credential presented with a state-changing call.

    Exactly one of `address` (the owner acting for themselves) or
    `operator` (a backend operator acting on the owner's behalf) is set.
    """
    address: Optional[str] = None
    operator: Optional[str] = None

    @classmethod
    def owner(cls, address: str) -> 'Authority':
        return cls(address=normalize_address(address))

    @classmethod
    def as_operator(cls, name: str) -> 'Authority':
        if not name:
            raise InvalidArgumentError("Operator name is required")
        return cls(operator=name)

    @property
    def is_operator(self) -> bool:
        return self.operator is not None

    @property
    def tag(self) -> str:
        """Stable string recorded on events and receipts."""
        return f"operator:{self.operator}" if self.is_operator else self.address


def as_authority(caller: Union[str, Authority]) -> Authority:
    """Accept either a bare address or an Authority."""
    if isinstance(caller, Authority):
        return caller
    return Authority.owner(caller)


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{name} must be an integer")
    return value


# =============================================================================
# STREAM LEDGER
# =============================================================================

class StreamLedger:
    """
    Manages streams and the shared escrow pool.

    Responsibilities:
    - Stream creation with fee deduction and recipient resolution
    - Claims bounded by the accrual calculator
    - Sender cancellation with terminal split-disbursement
    - Read-only views over streams, pool, fees and accounts
    """

    def __init__(self, database, registry: IdentityRegistry, plugin, config,
                 event_bus: EventBus = None):
        """
        Initialize the stream ledger.

        Args:
            database: StreamDatabase instance for persistence
            registry: IdentityRegistry for identity-addressed recipients
            plugin: Reference to the pyln Plugin for logging
            config: StreamConfig (fee, limits, operator mode)
            event_bus: EventBus for audit events (created if omitted)
        """
        self.db = database
        self.registry = registry
        self.plugin = plugin
        self.config = config
        self.events = event_bus or EventBus(database, plugin)
        self._lock = threading.RLock()

    def _log(self, msg: str, level: str = 'info') -> None:
        self.plugin.log(f"[StreamLedger] {msg}", level=level)

    @staticmethod
    def _now(now: Optional[int]) -> int:
        return now if now is not None else int(time.time())

    @contextmanager
    def atomic(self) -> Iterator[List[StreamEvent]]:
        """
        Run one engine operation as a single atomic unit.

        Yields a list that collects the operation's events; they are
        dispatched to subscribers only after the transaction commits.
        """
        pending: List[StreamEvent] = []
        with self._lock:
            with self.db.transaction():
                yield pending
        self.events.dispatch(pending)

    def _load(self, stream_id: int) -> Stream:
        stream_id = _require_int("stream_id", stream_id)
        stream = Stream.from_row(self.db.get_stream(stream_id))
        if stream is None:
            raise NotFoundError(f"Stream {stream_id} not found")
        return stream

    def authorize(self, authority: Authority, expected_address: str, action: str) -> None:
        """
        Check that `authority` may perform `action` as `expected_address`.

        Raises:
            NotAuthorizedError: caller is neither the owner nor a permitted operator
        """
        if authority.is_operator:
            if not self.config.operator_mode_enabled:
                raise NotAuthorizedError(
                    f"Operator {action} rejected: operator mode is disabled"
                )
            self._log(
                f"Operator {authority.operator} performing {action} for {expected_address[:18]}...",
                level='warn'
            )
            return
        if authority.address != expected_address:
            raise NotAuthorizedError(f"Caller is not permitted to {action} this stream")

    def _disburse(self, address: str, amount: int, now: int) -> None:
        """Move `amount` of stream escrow from the pool to `address`."""
        if amount <= 0:
            return
        pool = self.db.get_pool()
        escrow = pool['pooled_balance'] - pool['fee_collected']
        if escrow < amount:
            self._log(
                f"CONSISTENCY VIOLATION: escrow {escrow} cannot cover disbursement of {amount}",
                level='error'
            )
            raise InsufficientPoolError(
                f"Escrow pool holds {escrow}, cannot disburse {amount}"
            )
        self.db.adjust_pool(-amount)
        self.db.credit_account(address, amount, now)

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def deposit(self, address: str, amount: int, now: int = None) -> int:
        """
        Credit tokens to an account so it can fund streams.

        Returns:
            New account balance
        """
        address = normalize_address(address)
        amount = _require_int("amount", amount)
        if amount <= 0 or amount > MAX_AMOUNT:
            raise InvalidArgumentError("Deposit amount must be positive")
        now = self._now(now)

        with self.atomic() as pending:
            # Every balance, the pool and their sum stay within a signed 64-bit INTEGER
            supply = self.db.sum_balances() + self.db.get_pool()['pooled_balance']
            if supply + amount > MAX_AMOUNT:
                raise InvalidArgumentError(
                    f"Deposit would raise total supply above {MAX_AMOUNT}"
                )
            self.db.credit_account(address, amount, now)
            balance = self.db.get_balance(address)
            pending.append(self.events.record(
                EventType.DEPOSIT, None,
                {'address': address, 'amount': amount, 'balance': balance},
                authority=address, now=now
            ))
        return balance

    def balance_of(self, address: str) -> int:
        return self.db.get_balance(normalize_address(address))

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(self, sender: str, recipient: str, amount: int, duration: int,
               start_time: int = None, message: str = '',
               recipient_kind: str = RecipientKind.WALLET.value,
               now: int = None) -> int:
        """
        Create a stream funded from the sender's account.

        Args:
            sender: Funding address
            recipient: Wallet address, or email/handle when recipient_kind
                is 'email' or 'twitter'
            amount: Gross amount moved into escrow (fee included)
            duration: Accrual duration in seconds
            start_time: Accrual start (defaults to now)
            message: Optional note
            recipient_kind: 'wallet', 'email' or 'twitter'

        Returns:
            New stream id
        """
        now = self._now(now)
        sender = normalize_address(sender)
        amount = _require_int("amount", amount)
        duration = _require_int("duration", duration)

        if amount <= 0:
            raise InvalidArgumentError("Amount must be positive")
        if amount > MAX_AMOUNT:
            raise InvalidArgumentError(f"Amount exceeds maximum of {MAX_AMOUNT}")
        if duration <= 0:
            raise InvalidArgumentError("Duration must be positive")
        if duration > self.config.max_duration_seconds:
            raise InvalidArgumentError(
                f"Duration exceeds maximum of {self.config.max_duration_seconds}s"
            )
        if start_time is None:
            start_time = now
        start_time = _require_int("start_time", start_time)
        if start_time < 0:
            raise InvalidArgumentError("start_time must not be negative")
        message = message or ''
        if len(message) > self.config.max_message_length:
            raise InvalidArgumentError(
                f"Message exceeds {self.config.max_message_length} characters"
            )

        fee = self.config.fee_for(amount)
        total_amount = amount - fee
        if total_amount <= 0:
            raise InvalidArgumentError("Amount too small to cover the protocol fee")
        rate_per_second = total_amount // duration
        end_time = start_time + duration

        if recipient_kind == RecipientKind.WALLET.value:
            recipient_address = normalize_address(recipient)
        elif recipient_kind not in IDENTITY_KINDS:
            raise InvalidArgumentError(f"Unsupported recipient kind: {recipient_kind}")

        with self.atomic() as pending:
            identity_hash = ''
            if recipient_kind != RecipientKind.WALLET.value:
                recipient_address, identity_hash, created = self.registry.resolve(
                    recipient_kind, recipient, now=now
                )
                if created:
                    pending.append(self.events.record(
                        EventType.IDENTITY_BOUND, None,
                        {'identity_hash': identity_hash, 'address': recipient_address,
                         'claimed': False},
                        authority=sender, now=now
                    ))

            if not self.db.debit_account(sender, amount, now):
                raise InsufficientBalanceError(
                    f"Sender balance {self.db.get_balance(sender)} cannot fund {amount}"
                )
            self.db.adjust_pool(amount, fee)

            stream_id = self.db.insert_stream(
                sender=sender,
                recipient=recipient_address,
                recipient_identity_hash=identity_hash,
                recipient_kind=recipient_kind,
                total_amount=total_amount,
                fee_amount=fee,
                rate_per_second=rate_per_second,
                start_time=start_time,
                end_time=end_time,
                message=message,
                created_at=now,
            )
            pending.append(self.events.record(
                EventType.STREAM_CREATED, stream_id,
                {
                    'sender': sender,
                    'recipient': recipient_address,
                    'recipient_identity_hash': identity_hash,
                    'recipient_kind': recipient_kind,
                    'total_amount': total_amount,
                    'fee_amount': fee,
                    'duration': duration,
                    'start_time': start_time,
                },
                authority=sender, now=now
            ))

        self._log(
            f"Created stream {stream_id}: {total_amount} over {duration}s "
            f"to {recipient_address[:18]}... (fee {fee})"
        )
        return stream_id

    # =========================================================================
    # CLAIM
    # =========================================================================

    def claim(self, caller: Union[str, Authority], stream_id: int,
              requested_amount: int = 0, idempotency_key: str = None,
              now: int = None) -> int:
        """
        Claim accrued funds.

        A requested_amount of 0 claims everything available; requests
        above the claimable ceiling are capped rather than rejected.

        Args:
            caller: Recipient address or Authority
            stream_id: Stream to claim from
            requested_amount: Amount wanted (0 = all claimable)
            idempotency_key: Optional token; repeating a keyed claim returns
                the first result without moving funds again

        Returns:
            Amount actually disbursed
        """
        authority = as_authority(caller)
        requested_amount = _require_int("requested_amount", requested_amount)
        if requested_amount < 0:
            raise InvalidArgumentError("requested_amount must not be negative")
        if idempotency_key is not None:
            if not isinstance(idempotency_key, str) or not idempotency_key \
                    or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
                raise InvalidArgumentError("Invalid idempotency key")
        now = self._now(now)

        with self.atomic() as pending:
            if idempotency_key is not None:
                receipt = self.db.get_claim_receipt(idempotency_key)
                if receipt:
                    if receipt['stream_id'] != stream_id or receipt['caller'] != authority.tag:
                        raise InvalidArgumentError(
                            "Idempotency key was already used for a different claim"
                        )
                    self._log(
                        f"Replayed claim {idempotency_key} on stream {stream_id}",
                        level='debug'
                    )
                    return receipt['amount']

            stream = self._load(stream_id)
            self.authorize(authority, stream.recipient, 'claim')
            if stream.status != StreamStatus.ACTIVE.value:
                raise InvalidStateError(f"Stream {stream_id} is {stream.status}")

            available = claimable(stream, now)
            if available == 0:
                raise NothingToClaimError(f"Nothing to claim on stream {stream_id}")

            if 0 < requested_amount <= available:
                actual = requested_amount
            else:
                actual = available

            self._disburse(stream.recipient, actual, now)
            claimed_amount = stream.claimed_amount + actual
            status = (StreamStatus.COMPLETED.value if claimed_amount >= stream.total_amount
                      else StreamStatus.ACTIVE.value)
            self.db.update_stream_claim(stream_id, claimed_amount, now, status)

            if idempotency_key is not None:
                self.db.add_claim_receipt(idempotency_key, stream_id, authority.tag, actual, now)

            pending.append(self.events.record(
                EventType.STREAM_CLAIMED, stream_id,
                {
                    'recipient': stream.recipient,
                    'amount': actual,
                    'claimed_amount': claimed_amount,
                    'status': status,
                },
                authority=authority.tag, now=now
            ))

        self._log(f"Stream {stream_id}: claimed {actual} ({claimed_amount}/{stream.total_amount})")
        return actual

    # =========================================================================
    # CANCEL
    # =========================================================================

    def cancel(self, caller: Union[str, Authority], stream_id: int,
               now: int = None) -> Tuple[int, int]:
        """
        Cancel an active stream and split its escrow.

        The accrued portion goes to the recipient, the rest back to the
        sender, in one terminal disbursement. claimed_amount and
        last_claim_time are deliberately left untouched.

        Returns:
            (refund_to_sender, paid_to_recipient)
        """
        authority = as_authority(caller)
        now = self._now(now)

        with self.atomic() as pending:
            stream = self._load(stream_id)
            self.authorize(authority, stream.sender, 'cancel')
            if stream.status != StreamStatus.ACTIVE.value:
                raise InvalidStateError(f"Stream {stream_id} is {stream.status}")

            to_recipient, to_sender = split_on_cancel(stream, now)
            self.db.update_stream_status(stream_id, StreamStatus.CANCELLED.value)
            self._disburse(stream.recipient, to_recipient, now)
            self._disburse(stream.sender, to_sender, now)

            pending.append(self.events.record(
                EventType.STREAM_CANCELLED, stream_id,
                {
                    'sender': stream.sender,
                    'recipient': stream.recipient,
                    'refund_to_sender': to_sender,
                    'paid_to_recipient': to_recipient,
                },
                authority=authority.tag, now=now
            ))

        self._log(
            f"Cancelled stream {stream_id}: {to_recipient} to recipient, "
            f"{to_sender} refunded to sender"
        )
        return to_sender, to_recipient

    # =========================================================================
    # FEES
    # =========================================================================

    def withdraw_fees(self, caller: Union[str, Authority], amount: int,
                      destination: str, now: int = None) -> int:
        """
        Move collected protocol fees out of the pool (operator only).

        Returns:
            Remaining fee_collected
        """
        authority = as_authority(caller)
        if not authority.is_operator:
            raise NotAuthorizedError("Only an operator can withdraw fees")
        amount = _require_int("amount", amount)
        if amount <= 0:
            raise InvalidArgumentError("Amount must be positive")
        destination = normalize_address(destination)
        now = self._now(now)

        with self.atomic() as pending:
            pool = self.db.get_pool()
            if pool['fee_collected'] < amount:
                raise InvalidArgumentError(
                    f"Only {pool['fee_collected']} in collected fees"
                )
            if pool['pooled_balance'] < amount:
                self._log("CONSISTENCY VIOLATION: pool smaller than collected fees",
                          level='error')
                raise InsufficientPoolError("Escrow pool cannot cover fee withdrawal")
            self.db.adjust_pool(-amount, -amount)
            self.db.credit_account(destination, amount, now)
            remaining = pool['fee_collected'] - amount
            pending.append(self.events.record(
                EventType.FEES_WITHDRAWN, None,
                {'amount': amount, 'destination': destination, 'fee_collected': remaining},
                authority=authority.tag, now=now
            ))

        self._log(f"Withdrew {amount} fees to {destination[:18]}...")
        return remaining

    # =========================================================================
    # VIEWS
    # =========================================================================

    def get_stream(self, stream_id: int) -> Stream:
        """Full stream record (raises NotFoundError)."""
        return self._load(stream_id)

    def get_claimable(self, stream_id: int, now: int = None) -> int:
        return claimable(self._load(stream_id), self._now(now))

    def get_stream_count(self) -> int:
        return self.db.count_streams()

    def get_fee_collected(self) -> int:
        return self.db.get_pool().get('fee_collected', 0)

    def get_pool_balance(self) -> int:
        return self.db.get_pool().get('pooled_balance', 0)

    def get_outgoing_streams(self, address: str) -> List[int]:
        return self.db.get_stream_ids_by_sender(normalize_address(address))

    def get_incoming_streams(self, address: str) -> List[int]:
        return self.db.get_stream_ids_by_recipient(normalize_address(address))

    def is_initialized(self) -> bool:
        return bool(self.db.get_pool())

    def get_events(self, stream_id: int = None, limit: int = 100) -> List[StreamEvent]:
        return self.events.history(stream_id, limit)

    def check_conservation(self) -> Dict[str, Any]:
        """
        Compare the pooled balance against what it must hold.

        Returns:
            Dict with pooled_balance, outstanding, fee_collected and `ok`
        """
        pool = self.db.get_pool()
        outstanding = self.db.sum_outstanding()
        expected = outstanding + pool.get('fee_collected', 0)
        return {
            'pooled_balance': pool.get('pooled_balance', 0),
            'outstanding': outstanding,
            'fee_collected': pool.get('fee_collected', 0),
            'ok': pool.get('pooled_balance', 0) == expected,
        }
