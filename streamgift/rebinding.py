"""
Recipient rebinding protocol for cl-streamgift.

A stream addressed to an email or handle starts out payable to a
placeholder address. Once the identity's owner authenticates with the
orchestrator, this protocol re-targets the escrow to their real address.

State machine (per identity, one-way):
    UNCLAIMED_IDENTITY --rebind--> CLAIMED_IDENTITY

Transition effect, inside one transaction:
1. Verify the presented identity hash equals the stream's stored hash
2. Rebind the identity in the registry (placeholder -> real address)
3. Re-target every stream addressed to that identity
4. Sweep anything already paid to the placeholder (a cancellation
   payout) into the real address

The engine only checks hash equality. Proving that the presenter owns the
off-chain identity is the orchestrator's job.
"""

import hmac
import time
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import InvalidArgumentError, InvalidStateError, NotAuthorizedError
from .events import EventType
from .identity import IdentityRegistry, normalize_address, normalize_identity_hash
from .ledger import Authority, StreamLedger, as_authority
from .stream import Stream


class IdentityState(str, Enum):
    """Rebinding state of an identity-addressed stream."""
    UNCLAIMED_IDENTITY = 'UNCLAIMED_IDENTITY'
    CLAIMED_IDENTITY = 'CLAIMED_IDENTITY'


class RebindingProtocol:
    """Applies identity-ownership proofs to streams."""

    def __init__(self, ledger: StreamLedger, registry: IdentityRegistry, plugin=None):
        """
        Args:
            ledger: StreamLedger (provides the atomic unit and authorization)
            registry: IdentityRegistry holding the bindings
            plugin: Optional plugin reference for logging
        """
        self.ledger = ledger
        self.registry = registry
        self.db = ledger.db
        self.plugin = plugin

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(f"[Rebinding] {msg}", level=level)

    def identity_state(self, stream: Stream) -> Optional[IdentityState]:
        """
        Rebinding state of a stream; None for wallet-addressed streams.
        """
        if not stream.is_identity_addressed:
            return None
        binding = self.registry.get_binding(stream.recipient_identity_hash)
        if binding and binding.claimed:
            return IdentityState.CLAIMED_IDENTITY
        return IdentityState.UNCLAIMED_IDENTITY

    def rebind_recipient(self, stream_id: int, presented_identity_hash: str,
                         new_address: str, caller: Union[str, Authority] = None,
                         now: int = None) -> Dict[str, Any]:
        """
        Re-target a stream (and its identity) to a real address.

        Args:
            stream_id: Stream whose recipient identity is being claimed
            presented_identity_hash: Hash the caller proved ownership of
            new_address: Real address to bind
            caller: Authority submitting the rebind. Owners may only bind
                their own address; operators need operator mode.

        Returns:
            Dict describing the transition

        Raises:
            InvalidArgumentError: no caller given
            NotFoundError: stream does not exist
            InvalidStateError: wallet-addressed stream, or identity already
                claimed by a different address
            NotAuthorizedError: hash mismatch or caller not permitted
        """
        new_address = normalize_address(new_address)
        presented = normalize_identity_hash(presented_identity_hash)
        if caller is None:
            raise InvalidArgumentError("caller is required")
        authority = as_authority(caller)
        now = now if now is not None else int(time.time())

        with self.ledger.atomic() as pending:
            stream = self.ledger.get_stream(stream_id)
            if not stream.is_identity_addressed:
                raise InvalidStateError(
                    f"Stream {stream_id} is wallet-addressed and cannot be rebound"
                )
            if not hmac.compare_digest(stream.recipient_identity_hash, presented):
                raise NotAuthorizedError("Identity hash does not match stream recipient")
            self.ledger.authorize(authority, new_address, 'rebind')

            identity_hash = stream.recipient_identity_hash
            binding = self.registry.get_binding(identity_hash)
            old_address = binding.address if binding else stream.recipient

            if binding and binding.claimed:
                if binding.address == new_address:
                    return {
                        'stream_id': stream_id,
                        'identity_hash': identity_hash,
                        'old_recipient': new_address,
                        'new_recipient': new_address,
                        'streams_updated': 0,
                        'swept_amount': 0,
                        'state': IdentityState.CLAIMED_IDENTITY.value,
                        'changed': False,
                    }
                raise InvalidStateError(
                    f"Identity {identity_hash[:16]}... is already claimed by another address"
                )

            self.registry.rebind(identity_hash, old_address, new_address, now=now)
            updated = self.db.retarget_identity_streams(identity_hash, old_address, new_address)

            swept = self.db.get_balance(old_address)
            if swept > 0:
                self.db.debit_account(old_address, swept, now)
                self.db.credit_account(new_address, swept, now)

            pending.append(self.ledger.events.record(
                EventType.RECIPIENT_REBOUND, stream_id,
                {
                    'identity_hash': identity_hash,
                    'old_recipient': old_address,
                    'new_recipient': new_address,
                    'streams_updated': updated,
                    'swept_amount': swept,
                },
                authority=authority.tag, now=now
            ))

        self._log(
            f"Stream {stream_id}: identity {identity_hash[:16]}... claimed by "
            f"{new_address[:18]}... ({updated} stream(s) re-targeted, swept {swept})"
        )
        return {
            'stream_id': stream_id,
            'identity_hash': identity_hash,
            'old_recipient': old_address,
            'new_recipient': new_address,
            'streams_updated': updated,
            'swept_amount': swept,
            'state': IdentityState.CLAIMED_IDENTITY.value,
            'changed': True,
        }

    def register_identity(self, identity_hash: str, address: str,
                          caller: Union[str, Authority] = None,
                          now: int = None) -> Dict[str, Any]:
        """
        Bind an identity that has no streams yet straight to a real address.

        Later streams sent to the identity resolve to `address` and start
        out CLAIMED_IDENTITY. An identity that already has a placeholder
        must go through rebind_recipient() instead.

        Raises:
            InvalidArgumentError: no caller given
            InvalidStateError: identity or address already bound elsewhere
            NotAuthorizedError: caller not permitted to bind `address`
        """
        identity_hash = normalize_identity_hash(identity_hash)
        address = normalize_address(address)
        if caller is None:
            raise InvalidArgumentError("caller is required")
        authority = as_authority(caller)
        now = now if now is not None else int(time.time())

        with self.ledger.atomic() as pending:
            self.ledger.authorize(authority, address, 'register')
            existing = self.registry.get_binding(identity_hash)
            if existing and not existing.claimed:
                raise InvalidStateError(
                    f"Identity {identity_hash[:16]}... has a placeholder; rebind a stream instead"
                )
            binding = self.registry.register(identity_hash, address, now=now)
            changed = existing is None
            if changed:
                pending.append(self.ledger.events.record(
                    EventType.IDENTITY_BOUND, None,
                    {'identity_hash': identity_hash, 'address': address, 'claimed': True},
                    authority=authority.tag, now=now
                ))

        if changed:
            self._log(f"Registered identity {identity_hash[:16]}... to {address[:18]}...")
        return {
            'identity_hash': identity_hash,
            'address': binding.address,
            'state': IdentityState.CLAIMED_IDENTITY.value,
            'changed': changed,
        }
