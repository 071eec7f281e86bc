#!/usr/bin/env python3
"""
cl-streamgift: Token-Streaming Escrow Engine

This plugin keeps the authoritative ledger of token streams: escrowed
payments that accrue to a recipient every second over a fixed duration.
It provides:
- Stream creation addressed to a wallet, an email or a social handle
- Partial claims bounded by the time-based accrual calculation
- Sender cancellation with a fair accrued/unaccrued split
- Rebinding of identity-addressed streams once the claimant authenticates

ARCHITECTURE:
-------------
cl-streamgift is the ENGINE. The web orchestrator authenticates users,
verifies identity ownership, sends notifications and relays requests
into the stream-* RPC methods below.

    Web orchestrator (auth, email, relay)
         │
         ▼
    cl-streamgift (ledger, accrual, rebinding)
         │
         ▼
    Off-chain mirror (eventually consistent, read-only cache)

DEPENDENCIES:
- pyln-client: plugin framework
- httpx: mirror sync

License: MIT
"""

import signal
import threading
from typing import Any, Dict, Optional

from pyln.client import Plugin

from streamgift import __version__, rpc_commands
from streamgift.config import StreamConfig
from streamgift.database import StreamDatabase
from streamgift.events import EventBus
from streamgift.identity import IdentityRegistry
from streamgift.ledger import StreamLedger
from streamgift.mirror import MirrorSync
from streamgift.rebinding import RebindingProtocol

# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Signals background threads to exit cleanly on SIGTERM/SIGINT.

shutdown_event = threading.Event()


# =============================================================================
# GLOBAL INSTANCES (initialized in init)
# =============================================================================

database: Optional[StreamDatabase] = None
config: Optional[StreamConfig] = None
ledger: Optional[StreamLedger] = None
registry: Optional[IdentityRegistry] = None
rebinding: Optional[RebindingProtocol] = None
mirror: Optional[MirrorSync] = None
context: Optional[rpc_commands.StreamContext] = None


def _parse_bool(value: Any, default: bool = False) -> bool:
    """Parse a boolean-ish option value safely."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _not_initialized() -> Dict[str, Any]:
    return {"error": "not_initialized", "message": "cl-streamgift not initialized"}


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='streamgift-db-path',
    default='~/.lightning/cl_streamgift.db',
    description='Path to the SQLite database holding the stream ledger'
)

plugin.add_option(
    name='streamgift-fee-bps',
    default='25',
    description='Protocol fee in basis points deducted at stream creation (25 = 0.25%)'
)

plugin.add_option(
    name='streamgift-operator-mode',
    default='false',
    description='Allow operator-authorized claim/cancel/rebind on behalf of owners (custodial)'
)

plugin.add_option(
    name='streamgift-max-message-length',
    default='500',
    description='Maximum length of a stream message'
)

plugin.add_option(
    name='streamgift-max-duration',
    default=str(10 * 365 * 24 * 3600),
    description='Maximum stream duration in seconds (default: 10 years)'
)

plugin.add_option(
    name='streamgift-mirror-url',
    default='',
    description='Base URL of the off-chain mirror API (empty = disabled)'
)

plugin.add_option(
    name='streamgift-mirror-timeout',
    default='5',
    description='Mirror HTTP timeout in seconds'
)

plugin.add_option(
    name='streamgift-mirror-interval',
    default='30',
    description='Seconds between mirror sync cycles'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the cl-streamgift plugin.

    Steps:
    1. Parse and validate options
    2. Initialize database
    3. Wire registry, ledger, rebinding protocol
    4. Start mirror sync (if configured)
    5. Set up signal handlers for graceful shutdown
    """
    global database, config, ledger, registry, rebinding, mirror, context

    plugin.log("cl-streamgift: Initializing stream engine...")

    config = StreamConfig(
        db_path=options.get('streamgift-db-path', '~/.lightning/cl_streamgift.db'),
        fee_bps=int(options.get('streamgift-fee-bps', '25')),
        operator_mode_enabled=_parse_bool(options.get('streamgift-operator-mode', 'false')),
        max_message_length=int(options.get('streamgift-max-message-length', '500')),
        max_duration_seconds=int(options.get('streamgift-max-duration', str(10 * 365 * 24 * 3600))),
        mirror_url=options.get('streamgift-mirror-url') or None,
        mirror_timeout_seconds=int(options.get('streamgift-mirror-timeout', '5')),
        mirror_sync_interval=int(options.get('streamgift-mirror-interval', '30')),
    )
    error = config.validate()
    if error:
        plugin.log(f"cl-streamgift: Invalid configuration: {error}", level='error')
        raise ValueError(error)

    database = StreamDatabase(config.db_path, plugin)
    database.initialize()
    plugin.log(f"cl-streamgift: Database initialized at {config.db_path}")

    event_bus = EventBus(database, plugin)
    registry = IdentityRegistry(database, plugin)
    ledger = StreamLedger(database, registry, plugin, config, event_bus=event_bus)
    rebinding = RebindingProtocol(ledger, registry, plugin)
    plugin.log(
        f"cl-streamgift: Ledger ready ({ledger.get_stream_count()} streams, "
        f"fee {config.fee_bps} bps)"
    )

    if config.operator_mode_enabled:
        plugin.log(
            "cl-streamgift: Operator mode ENABLED - operators may claim, cancel "
            "and rebind on behalf of stream owners",
            level='warn'
        )

    if config.mirror_url:
        mirror = MirrorSync(ledger, plugin, config.mirror_url,
                            timeout=config.mirror_timeout_seconds)
        event_bus.subscribe(mirror.on_events)
        mirror_thread = threading.Thread(
            target=mirror_sync_loop,
            name="cl-streamgift-mirror-sync",
            daemon=True
        )
        mirror_thread.start()
        plugin.log(f"cl-streamgift: Mirror sync started ({config.mirror_url})")
    else:
        plugin.log("cl-streamgift: Mirror sync disabled (no streamgift-mirror-url)")

    context = rpc_commands.StreamContext(
        database=database,
        config=config,
        ledger=ledger,
        registry=registry,
        rebinding=rebinding,
        mirror=mirror,
        log=lambda msg, level='info': plugin.log(msg, level=level),
    )

    def handle_shutdown_signal(signum, frame):
        plugin.log("cl-streamgift: Received shutdown signal, cleaning up...")
        shutdown_event.set()

    try:
        signal.signal(signal.SIGTERM, handle_shutdown_signal)
        signal.signal(signal.SIGINT, handle_shutdown_signal)
    except Exception as e:
        plugin.log(f"cl-streamgift: Could not set signal handlers: {e}", level='debug')

    plugin.log("cl-streamgift: Initialization complete.")


# =============================================================================
# MIRROR SYNC BACKGROUND THREAD
# =============================================================================

def mirror_sync_loop():
    """
    Background thread that pushes dirty streams to the off-chain mirror.

    Starts with a full resync so a restarted plugin reconciles anything
    the mirror missed while it was down.
    """
    if mirror:
        mirror.resync_all()

    while not shutdown_event.is_set():
        try:
            if mirror and config:
                snapshot = config.snapshot()
                mirror.sync_pending(limit=snapshot.mirror_batch_size)
        except Exception as e:
            plugin.log(f"cl-streamgift: Mirror sync error: {e}", level='warn')

        shutdown_event.wait(config.mirror_sync_interval if config else 30)

    if mirror:
        mirror.close()


# =============================================================================
# RPC COMMANDS
# =============================================================================

@plugin.method("stream-status")
def stream_status(plugin: Plugin):
    """
    Get engine status: initialization, stream count, pool and fees.
    """
    if not context:
        return {"initialized": False, "version": __version__}
    return rpc_commands.status(context)


@plugin.method("stream-config")
def stream_config(plugin: Plugin):
    """Show current configuration."""
    if not context:
        return _not_initialized()
    return rpc_commands.get_config(context)


@plugin.method("stream-create")
def stream_create(plugin: Plugin, sender: str, recipient: str, amount: str,
                  duration: int, recipient_kind: str = 'wallet',
                  start_time: int = None, message: str = ''):
    """
    Create a stream.

    Args:
        sender: Funding address
        recipient: Wallet address, email or twitter handle
        amount: Gross amount in base units (string or int)
        duration: Seconds over which the net amount accrues
        recipient_kind: wallet | email | twitter
        start_time: Unix start time (default: now)
        message: Optional note
    """
    if not context:
        return _not_initialized()
    return rpc_commands.create_stream(context, sender, recipient, amount, duration,
                                      recipient_kind, start_time, message)


@plugin.method("stream-claim")
def stream_claim(plugin: Plugin, stream_id: int, caller: str = None, amount: str = '0',
                 idempotency_key: str = None, operator: str = None):
    """
    Claim accrued funds (amount=0 claims everything available).

    Pass idempotency_key to make retries of the same claim safe.
    """
    if not context:
        return _not_initialized()
    return rpc_commands.claim_stream(context, stream_id, caller, amount,
                                     idempotency_key, operator)


@plugin.method("stream-cancel")
def stream_cancel(plugin: Plugin, stream_id: int, caller: str = None, operator: str = None):
    """Cancel a stream (sender only, or operator in operator mode)."""
    if not context:
        return _not_initialized()
    return rpc_commands.cancel_stream(context, stream_id, caller, operator)


@plugin.method("stream-rebind")
def stream_rebind(plugin: Plugin, stream_id: int, identity_hash: str, new_address: str,
                  caller: str = None, operator: str = None):
    """
    Bind an identity-addressed stream to the claimant's real address.

    The caller must already have proven ownership of the identity.
    """
    if not context:
        return _not_initialized()
    return rpc_commands.rebind_recipient(context, stream_id, identity_hash, new_address,
                                         caller, operator)


@plugin.method("stream-register-identity")
def stream_register_identity(plugin: Plugin, address: str, identity_hash: str = None,
                             kind: str = None, handle: str = None, caller: str = None,
                             operator: str = None):
    """
    Bind an identity with no streams yet to its owner's real address.

    Streams sent to it later go straight to that address.
    """
    if not context:
        return _not_initialized()
    return rpc_commands.register_identity(context, address, identity_hash, kind, handle,
                                          caller, operator)


@plugin.method("stream-get")
def stream_get(plugin: Plugin, stream_id: int):
    """Get a stream by id."""
    if not context:
        return _not_initialized()
    return rpc_commands.get_stream(context, stream_id)


@plugin.method("stream-claimable")
def stream_claimable(plugin: Plugin, stream_id: int):
    """Amount claimable right now."""
    if not context:
        return _not_initialized()
    return rpc_commands.get_claimable(context, stream_id)


@plugin.method("stream-count")
def stream_count(plugin: Plugin):
    """Total number of streams."""
    if not context:
        return _not_initialized()
    return rpc_commands.stream_count(context)


@plugin.method("stream-fees")
def stream_fees(plugin: Plugin):
    """Collected protocol fees."""
    if not context:
        return _not_initialized()
    return rpc_commands.fees(context)


@plugin.method("stream-outgoing")
def stream_outgoing(plugin: Plugin, address: str):
    """Stream ids funded by an address."""
    if not context:
        return _not_initialized()
    return rpc_commands.outgoing_streams(context, address)


@plugin.method("stream-incoming")
def stream_incoming(plugin: Plugin, address: str = None, kind: str = None, handle: str = None):
    """Stream ids payable to an address and/or addressed to an identity."""
    if not context:
        return _not_initialized()
    return rpc_commands.incoming_streams(context, address, kind, handle)


@plugin.method("stream-resolve-identity")
def stream_resolve_identity(plugin: Plugin, identity_hash: str = None, kind: str = None,
                            handle: str = None):
    """Resolve an identity to its bound address."""
    if not context:
        return _not_initialized()
    return rpc_commands.resolve_identity(context, identity_hash, kind, handle)


@plugin.method("stream-deposit")
def stream_deposit(plugin: Plugin, address: str, amount: str):
    """Credit tokens to an account so it can fund streams."""
    if not context:
        return _not_initialized()
    return rpc_commands.deposit(context, address, amount)


@plugin.method("stream-balance")
def stream_balance(plugin: Plugin, address: str):
    """Account balance."""
    if not context:
        return _not_initialized()
    return rpc_commands.balance(context, address)


@plugin.method("stream-withdraw-fees")
def stream_withdraw_fees(plugin: Plugin, operator: str, amount: str, destination: str):
    """Withdraw collected fees to an address (operator only)."""
    if not context:
        return _not_initialized()
    return rpc_commands.withdraw_fees(context, operator, amount, destination)


@plugin.method("stream-events")
def stream_events(plugin: Plugin, stream_id: int = None, limit: int = 50):
    """Audit log, newest first."""
    if not context:
        return _not_initialized()
    return rpc_commands.events(context, stream_id, limit)


@plugin.method("stream-mirror-status")
def stream_mirror_status(plugin: Plugin, resync: bool = False):
    """Mirror sync status; resync=true queues every stream."""
    if not context:
        return _not_initialized()
    return rpc_commands.mirror_status(context, _parse_bool(resync))


# =============================================================================
# MAIN
# =============================================================================

plugin.run()
