"""
RPC Command Handlers for cl-streamgift

This module contains the implementation logic for stream-* RPC commands.
The actual @plugin.method() decorators remain in cl-streamgift.py, which
creates thin wrappers that call these handler functions.

Design Pattern:
    - Each handler receives a StreamContext with all dependencies
    - Handlers are pure functions that can be easily tested
    - Engine errors are translated into {"error": kind, ...} dicts
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import __version__
from .errors import InsufficientPoolError, InvalidArgumentError, StreamError
from .identity import hash_identity, normalize_identity_hash
from .ledger import Authority, as_authority


@dataclass
class StreamContext:
    """
    Context object holding all dependencies for RPC command handlers.

    This bundles the global state that commands need access to,
    making dependencies explicit and handlers testable.
    """
    database: Any      # StreamDatabase
    config: Any        # StreamConfig
    ledger: Any        # StreamLedger
    registry: Any      # IdentityRegistry
    rebinding: Any     # RebindingProtocol
    mirror: Any = None  # MirrorSync
    log: Callable[[str, str], None] = None  # Logger function: (msg, level) -> None


def _error(ctx: StreamContext, e: StreamError) -> Dict[str, Any]:
    """Translate an engine error into an RPC error payload."""
    if isinstance(e, InsufficientPoolError) and ctx.log:
        ctx.log(f"cl-streamgift: {e}", 'error')
    return {
        "error": e.kind,
        "message": str(e),
        "retriable": e.retriable,
    }


def _parse_amount(name: str, value: Any) -> int:
    """
    Accept integer amounts as int or decimal string.

    Large token amounts usually arrive as strings from JSON clients.
    """
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidArgumentError(f"{name} must be an integer, got {value!r}")


def _caller(caller: Optional[str], operator: Optional[str]) -> Authority:
    """Build the authority for a call from RPC parameters."""
    if operator:
        return Authority.as_operator(operator)
    if not caller:
        raise InvalidArgumentError("caller is required")
    return as_authority(caller)


def _identity_hash(identity_hash: Optional[str], kind: Optional[str],
                   handle: Optional[str]) -> str:
    if identity_hash:
        return normalize_identity_hash(identity_hash)
    if kind and handle:
        return hash_identity(kind, handle)
    raise InvalidArgumentError("identity_hash or kind+handle required")


def _stream_view(ctx: StreamContext, stream_id: int, now: int) -> Dict[str, Any]:
    stream = ctx.ledger.get_stream(stream_id)
    view = stream.to_dict()
    view['claimable'] = ctx.ledger.get_claimable(stream_id, now=now)
    state = ctx.rebinding.identity_state(stream)
    view['identity_state'] = state.value if state else None
    return view


# =============================================================================
# STATUS/CONFIG COMMANDS
# =============================================================================

def status(ctx: StreamContext) -> Dict[str, Any]:
    """
    Get engine status: initialization, stream count, pool and fees.
    """
    if not ctx.ledger:
        return {"initialized": False, "error": "Engine not initialized"}

    conservation = ctx.ledger.check_conservation()
    return {
        "initialized": ctx.ledger.is_initialized(),
        "stream_count": ctx.ledger.get_stream_count(),
        "pooled_balance": conservation['pooled_balance'],
        "fee_collected": conservation['fee_collected'],
        "conservation_ok": conservation['ok'],
        "fee_bps": ctx.config.fee_bps,
        "operator_mode_enabled": ctx.config.operator_mode_enabled,
        "mirror": ctx.mirror.get_status() if ctx.mirror else {"enabled": False},
        "version": __version__,
    }


def get_config(ctx: StreamContext) -> Dict[str, Any]:
    """Get current configuration values."""
    if not ctx.config:
        return {"error": "Engine not initialized"}

    return {
        "config_version": ctx.config._version,
        "immutable": {
            "db_path": ctx.config.db_path,
        },
        "engine": {
            "fee_bps": ctx.config.fee_bps,
            "operator_mode_enabled": ctx.config.operator_mode_enabled,
            "max_message_length": ctx.config.max_message_length,
            "max_duration_seconds": ctx.config.max_duration_seconds,
        },
        "mirror": {
            "mirror_url": ctx.config.mirror_url,
            "mirror_timeout_seconds": ctx.config.mirror_timeout_seconds,
            "mirror_sync_interval": ctx.config.mirror_sync_interval,
            "mirror_batch_size": ctx.config.mirror_batch_size,
        },
    }


# =============================================================================
# STATE-CHANGING COMMANDS
# =============================================================================

def create_stream(ctx: StreamContext, sender: str, recipient: str, amount: Any,
                  duration: int, recipient_kind: str = 'wallet',
                  start_time: int = None, message: str = '') -> Dict[str, Any]:
    """
    Create a stream funded from `sender`'s account.

    Returns:
        Dict with the new stream record
    """
    try:
        now = int(time.time())
        stream_id = ctx.ledger.create(
            sender=sender,
            recipient=recipient,
            amount=_parse_amount("amount", amount),
            duration=_parse_amount("duration", duration),
            start_time=_parse_amount("start_time", start_time) if start_time is not None else None,
            message=message,
            recipient_kind=recipient_kind,
            now=now,
        )
        return {
            "status": "created",
            "stream": _stream_view(ctx, stream_id, now),
        }
    except StreamError as e:
        return _error(ctx, e)


def claim_stream(ctx: StreamContext, stream_id: int, caller: str = None,
                 amount: Any = 0, idempotency_key: str = None,
                 operator: str = None) -> Dict[str, Any]:
    """
    Claim accrued funds from a stream.

    amount=0 claims everything available.
    """
    try:
        authority = _caller(caller, operator)
        claimed = ctx.ledger.claim(
            authority, stream_id,
            requested_amount=_parse_amount("amount", amount),
            idempotency_key=idempotency_key,
        )
        stream = ctx.ledger.get_stream(stream_id)
        return {
            "status": "claimed",
            "stream_id": stream_id,
            "claimed_amount": claimed,
            "total_claimed": stream.claimed_amount,
            "remaining": stream.remaining,
            "stream_status": stream.status,
        }
    except StreamError as e:
        return _error(ctx, e)


def cancel_stream(ctx: StreamContext, stream_id: int, caller: str = None,
                  operator: str = None) -> Dict[str, Any]:
    """Cancel a stream, refunding the unaccrued part to the sender."""
    try:
        authority = _caller(caller, operator)
        refunded, paid = ctx.ledger.cancel(authority, stream_id)
        return {
            "status": "cancelled",
            "stream_id": stream_id,
            "refunded_to_sender": refunded,
            "paid_to_recipient": paid,
        }
    except StreamError as e:
        return _error(ctx, e)


def rebind_recipient(ctx: StreamContext, stream_id: int, identity_hash: str,
                     new_address: str, caller: str = None,
                     operator: str = None) -> Dict[str, Any]:
    """
    Re-target an identity-addressed stream to a real address.

    The orchestrator must have verified ownership of the identity.
    """
    try:
        result = ctx.rebinding.rebind_recipient(
            stream_id, identity_hash, new_address, caller=_caller(caller, operator)
        )
        return {"status": "rebound" if result['changed'] else "unchanged", **result}
    except StreamError as e:
        return _error(ctx, e)


def register_identity(ctx: StreamContext, address: str, identity_hash: str = None,
                      kind: str = None, handle: str = None, caller: str = None,
                      operator: str = None) -> Dict[str, Any]:
    """
    Bind an identity with no streams yet directly to a real address.

    As with rebinding, the orchestrator must have verified ownership.
    """
    try:
        result = ctx.rebinding.register_identity(
            _identity_hash(identity_hash, kind, handle), address,
            caller=_caller(caller, operator)
        )
        return {"status": "registered" if result['changed'] else "unchanged", **result}
    except StreamError as e:
        return _error(ctx, e)


def deposit(ctx: StreamContext, address: str, amount: Any) -> Dict[str, Any]:
    """Credit tokens to an account."""
    try:
        balance = ctx.ledger.deposit(address, _parse_amount("amount", amount))
        return {"status": "deposited", "address": address, "balance": balance}
    except StreamError as e:
        return _error(ctx, e)


def withdraw_fees(ctx: StreamContext, operator: str, amount: Any,
                  destination: str) -> Dict[str, Any]:
    """Withdraw collected protocol fees (operator only)."""
    try:
        remaining = ctx.ledger.withdraw_fees(
            Authority.as_operator(operator), _parse_amount("amount", amount), destination
        )
        return {"status": "withdrawn", "fee_collected": remaining}
    except StreamError as e:
        return _error(ctx, e)


# =============================================================================
# QUERY COMMANDS
# =============================================================================

def get_stream(ctx: StreamContext, stream_id: int) -> Dict[str, Any]:
    """Full stream record plus current claimable amount."""
    try:
        return _stream_view(ctx, stream_id, int(time.time()))
    except StreamError as e:
        return _error(ctx, e)


def get_claimable(ctx: StreamContext, stream_id: int) -> Dict[str, Any]:
    try:
        return {"stream_id": stream_id, "claimable": ctx.ledger.get_claimable(stream_id)}
    except StreamError as e:
        return _error(ctx, e)


def stream_count(ctx: StreamContext) -> Dict[str, Any]:
    return {"count": ctx.ledger.get_stream_count()}


def fees(ctx: StreamContext) -> Dict[str, Any]:
    return {
        "fee_collected": ctx.ledger.get_fee_collected(),
        "fee_bps": ctx.config.fee_bps,
    }


def outgoing_streams(ctx: StreamContext, address: str) -> Dict[str, Any]:
    """Stream ids funded by `address`."""
    try:
        ids = ctx.ledger.get_outgoing_streams(address)
        return {"address": address, "count": len(ids), "stream_ids": ids}
    except StreamError as e:
        return _error(ctx, e)


def incoming_streams(ctx: StreamContext, address: str = None, kind: str = None,
                     handle: str = None) -> Dict[str, Any]:
    """
    Stream ids payable to `address`, plus streams addressed to an
    identity (kind + handle) that may still sit on a placeholder.
    """
    try:
        ids = set()
        if address:
            ids.update(ctx.ledger.get_incoming_streams(address))
        if kind and handle:
            ids.update(ctx.database.get_stream_ids_by_identity(hash_identity(kind, handle)))
        if not address and not (kind and handle):
            raise InvalidArgumentError("address or kind+handle required")
        stream_ids = sorted(ids)
        return {"count": len(stream_ids), "stream_ids": stream_ids}
    except StreamError as e:
        return _error(ctx, e)


def resolve_identity(ctx: StreamContext, identity_hash: str = None, kind: str = None,
                     handle: str = None) -> Dict[str, Any]:
    """Resolve an identity (by hash or kind + handle) to its bound address."""
    try:
        identity_hash = _identity_hash(identity_hash, kind, handle)
        binding = ctx.registry.get_binding(identity_hash)
        if binding is None:
            return {"identity_hash": identity_hash, "bound": False, "address": None}
        return {"bound": True, **binding.to_dict()}
    except StreamError as e:
        return _error(ctx, e)


def balance(ctx: StreamContext, address: str) -> Dict[str, Any]:
    try:
        return {"address": address, "balance": ctx.ledger.balance_of(address)}
    except StreamError as e:
        return _error(ctx, e)


def events(ctx: StreamContext, stream_id: int = None, limit: int = 50) -> Dict[str, Any]:
    """Audit log, newest first."""
    entries = [e.to_dict() for e in ctx.ledger.get_events(stream_id, limit)]
    return {"count": len(entries), "events": entries}


def mirror_status(ctx: StreamContext, resync: bool = False) -> Dict[str, Any]:
    """Mirror sync status; resync=True queues every stream."""
    if not ctx.mirror:
        return {"enabled": False}
    queued = ctx.mirror.resync_all() if resync else 0
    result = ctx.mirror.get_status()
    if resync:
        result["queued"] = queued
    return result
