"""
Tests for the stream-* RPC command handlers.

Handlers are exercised directly with a StreamContext wired to a real
database, so these tests cover argument parsing and error translation
on top of the engine.
"""

import time

import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from streamgift import __version__, rpc_commands
from streamgift.config import StreamConfig
from streamgift.database import StreamDatabase
from streamgift.events import EventBus
from streamgift.identity import IdentityRegistry, hash_identity
from streamgift.ledger import StreamLedger
from streamgift.rebinding import RebindingProtocol


SENDER = '0x' + 'a' * 64
RECIPIENT = '0x' + 'b' * 64
FAR_FUTURE = int(time.time()) + 10 * 24 * 3600


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def config():
    return StreamConfig(db_path=':memory:', fee_bps=0)


@pytest.fixture
def ctx(mock_plugin, config, tmp_path):
    """StreamContext over a fresh database with SENDER funded."""
    database = StreamDatabase(str(tmp_path / "test_rpc.db"), mock_plugin)
    database.initialize()
    registry = IdentityRegistry(database, mock_plugin)
    ledger = StreamLedger(database, registry, mock_plugin, config,
                          event_bus=EventBus(database, mock_plugin))
    context = rpc_commands.StreamContext(
        database=database,
        config=config,
        ledger=ledger,
        registry=registry,
        rebinding=RebindingProtocol(ledger, registry, mock_plugin),
        log=MagicMock(),
    )
    rpc_commands.deposit(context, SENDER, "100000")
    return context


def create_future_stream(ctx, recipient=RECIPIENT, kind='wallet', amount="1000"):
    """Stream that has not started yet, so nothing is claimable."""
    result = rpc_commands.create_stream(ctx, SENDER, recipient, amount, 1000,
                                        recipient_kind=kind, start_time=FAR_FUTURE)
    assert result['status'] == 'created'
    return result['stream']['stream_id']


# =============================================================================
# STATUS TESTS
# =============================================================================

class TestStatusRPC:
    """Test stream-status and stream-config."""

    def test_status_fields(self, ctx):
        result = rpc_commands.status(ctx)

        assert result['initialized'] is True
        assert result['stream_count'] == 0
        assert result['conservation_ok'] is True
        assert result['fee_bps'] == 0
        assert result['operator_mode_enabled'] is False
        assert result['mirror'] == {"enabled": False}
        assert result['version'] == __version__

    def test_config(self, ctx):
        result = rpc_commands.get_config(ctx)
        assert result['immutable']['db_path'] == ':memory:'
        assert result['engine']['fee_bps'] == 0
        assert result['mirror']['mirror_url'] is None

    def test_mirror_status_disabled(self, ctx):
        assert rpc_commands.mirror_status(ctx) == {"enabled": False}


# =============================================================================
# CREATE / CLAIM / CANCEL TESTS
# =============================================================================

class TestStreamLifecycleRPC:
    """Test state-changing handlers and error translation."""

    def test_create_with_string_amount(self, ctx):
        result = rpc_commands.create_stream(ctx, SENDER, RECIPIENT, "1000", 1000,
                                            message="gm")
        stream = result['stream']

        assert result['status'] == 'created'
        assert stream['total_amount'] == 1000
        assert stream['rate_per_second'] == 1
        assert stream['message'] == "gm"
        assert stream['identity_state'] is None
        assert 'claimable' in stream

    def test_create_invalid_amount(self, ctx):
        result = rpc_commands.create_stream(ctx, SENDER, RECIPIENT, "ten", 1000)
        assert result['error'] == 'invalid_argument'
        assert result['retriable'] is False

    def test_create_amount_too_large(self, ctx):
        result = rpc_commands.create_stream(ctx, SENDER, RECIPIENT, str(2 ** 64), 1000)
        assert result['error'] == 'invalid_argument'

    def test_create_insufficient_balance(self, ctx):
        result = rpc_commands.create_stream(ctx, SENDER, RECIPIENT, "1000000", 1000)
        assert result['error'] == 'insufficient_balance'

    def test_claim_nothing_yet(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.claim_stream(ctx, stream_id, caller=RECIPIENT)

        assert result['error'] == 'nothing_to_claim'
        assert result['retriable'] is True

    def test_claim_requires_caller(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.claim_stream(ctx, stream_id)
        assert result['error'] == 'invalid_argument'

    def test_claim_wrong_caller(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.claim_stream(ctx, stream_id, caller=SENDER)
        assert result['error'] == 'not_authorized'

    def test_operator_claim_disabled(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.claim_stream(ctx, stream_id, operator='backend')
        assert result['error'] == 'not_authorized'

    def test_cancel_before_start_refunds_all(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.cancel_stream(ctx, stream_id, caller=SENDER)

        assert result['status'] == 'cancelled'
        assert result['refunded_to_sender'] == 1000
        assert result['paid_to_recipient'] == 0
        assert rpc_commands.balance(ctx, SENDER)['balance'] == 100000

        again = rpc_commands.cancel_stream(ctx, stream_id, caller=SENDER)
        assert again['error'] == 'invalid_state'

    def test_unknown_stream(self, ctx):
        result = rpc_commands.get_stream(ctx, 99)
        assert result['error'] == 'not_found'
        assert rpc_commands.get_claimable(ctx, 99)['error'] == 'not_found'

    def test_withdraw_without_fees(self, ctx):
        result = rpc_commands.withdraw_fees(ctx, 'treasury', "1", RECIPIENT)
        assert result['error'] == 'invalid_argument'

    def test_deposit_invalid_address(self, ctx):
        result = rpc_commands.deposit(ctx, 'nope', "5")
        assert result['error'] == 'invalid_argument'


# =============================================================================
# IDENTITY TESTS
# =============================================================================

class TestIdentityRPC:
    """Test identity-addressed streams through the RPC layer."""

    def test_resolve_unbound(self, ctx):
        result = rpc_commands.resolve_identity(ctx, kind='email', handle='zoe@example.com')
        assert result['bound'] is False
        assert result['address'] is None

    def test_resolve_requires_input(self, ctx):
        assert rpc_commands.resolve_identity(ctx)['error'] == 'invalid_argument'

    def test_email_stream_and_rebind(self, ctx):
        stream_id = create_future_stream(ctx, recipient='zoe@example.com', kind='email')
        identity_hash = hash_identity('email', 'zoe@example.com')

        resolved = rpc_commands.resolve_identity(ctx, identity_hash=identity_hash)
        assert resolved['bound'] is True
        assert resolved['claimed'] is False

        view = rpc_commands.get_stream(ctx, stream_id)
        assert view['identity_state'] == 'UNCLAIMED_IDENTITY'

        incoming = rpc_commands.incoming_streams(ctx, kind='email', handle='ZOE@example.com')
        assert incoming['stream_ids'] == [stream_id]

        result = rpc_commands.rebind_recipient(ctx, stream_id, identity_hash, RECIPIENT,
                                               caller=RECIPIENT)
        assert result['status'] == 'rebound'
        assert result['new_recipient'] == RECIPIENT

        repeat = rpc_commands.rebind_recipient(ctx, stream_id, identity_hash, RECIPIENT,
                                               caller=RECIPIENT)
        assert repeat['status'] == 'unchanged'

        assert rpc_commands.get_stream(ctx, stream_id)['identity_state'] == 'CLAIMED_IDENTITY'
        assert rpc_commands.incoming_streams(ctx, address=RECIPIENT)['stream_ids'] == [stream_id]

    def test_rebind_wrong_hash(self, ctx):
        stream_id = create_future_stream(ctx, recipient='zoe@example.com', kind='email')
        result = rpc_commands.rebind_recipient(ctx, stream_id, 'ab' * 32, RECIPIENT,
                                               caller=RECIPIENT)
        assert result['error'] == 'not_authorized'

    def test_rebind_requires_caller(self, ctx):
        stream_id = create_future_stream(ctx, recipient='zoe@example.com', kind='email')
        identity_hash = hash_identity('email', 'zoe@example.com')

        result = rpc_commands.rebind_recipient(ctx, stream_id, identity_hash, RECIPIENT)

        assert result['error'] == 'invalid_argument'
        assert rpc_commands.get_stream(ctx, stream_id)['identity_state'] == 'UNCLAIMED_IDENTITY'

    def test_register_identity(self, ctx):
        result = rpc_commands.register_identity(ctx, RECIPIENT, kind='twitter', handle='@Zoe',
                                                caller=RECIPIENT)
        assert result['status'] == 'registered'
        assert result['identity_hash'] == hash_identity('twitter', 'zoe')

        again = rpc_commands.register_identity(ctx, RECIPIENT, kind='twitter', handle='zoe',
                                               caller=RECIPIENT)
        assert again['status'] == 'unchanged'

        stream_id = create_future_stream(ctx, recipient='@zoe', kind='twitter')
        view = rpc_commands.get_stream(ctx, stream_id)
        assert view['recipient'] == RECIPIENT
        assert view['identity_state'] == 'CLAIMED_IDENTITY'

    def test_register_identity_errors(self, ctx):
        assert rpc_commands.register_identity(ctx, RECIPIENT)['error'] == 'invalid_argument'
        no_caller = rpc_commands.register_identity(ctx, RECIPIENT, kind='twitter', handle='zoe')
        assert no_caller['error'] == 'invalid_argument'
        wrong_caller = rpc_commands.register_identity(ctx, RECIPIENT, kind='twitter',
                                                      handle='zoe', caller=SENDER)
        assert wrong_caller['error'] == 'not_authorized'

        rpc_commands.register_identity(ctx, RECIPIENT, kind='twitter', handle='zoe',
                                       caller=RECIPIENT)
        taken = rpc_commands.register_identity(ctx, RECIPIENT, kind='email',
                                               handle='zoe@example.com', caller=RECIPIENT)
        assert taken['error'] == 'invalid_state'

    def test_incoming_requires_input(self, ctx):
        assert rpc_commands.incoming_streams(ctx)['error'] == 'invalid_argument'


# =============================================================================
# QUERY TESTS
# =============================================================================

class TestQueryRPC:
    """Test read-only handlers."""

    def test_counts_and_lists(self, ctx):
        first = create_future_stream(ctx)
        second = create_future_stream(ctx)

        assert rpc_commands.stream_count(ctx) == {"count": 2}
        outgoing = rpc_commands.outgoing_streams(ctx, SENDER)
        assert outgoing['stream_ids'] == [first, second]
        assert rpc_commands.fees(ctx) == {"fee_collected": 0, "fee_bps": 0}

    def test_events(self, ctx):
        stream_id = create_future_stream(ctx)
        result = rpc_commands.events(ctx, stream_id=stream_id)

        assert result['count'] == 1
        assert result['events'][0]['event_type'] == 'stream_created'

        everything = rpc_commands.events(ctx)
        assert everything['events'][-1]['event_type'] == 'deposit'
