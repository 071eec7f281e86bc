"""
Tests for the off-chain mirror sync and its circuit.

The mirror API is replaced with an httpx.MockTransport so every request
the sync makes can be inspected.
"""

import json

import httpx
import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from streamgift.config import StreamConfig
from streamgift.database import StreamDatabase
from streamgift.events import EventBus, StreamEvent
from streamgift.identity import IdentityRegistry
from streamgift.ledger import StreamLedger
from streamgift.mirror import (
    CircuitState, MirrorCircuit, MirrorSync, MAX_FAILURES,
)


START = 1_700_000_000
SENDER = '0x' + 'a' * 64
RECIPIENT = '0x' + 'b' * 64
BASE_URL = 'http://mirror.test/api'


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def ledger(mock_plugin, tmp_path):
    db = StreamDatabase(str(tmp_path / "test_mirror.db"), mock_plugin)
    db.initialize()
    config = StreamConfig(db_path=':memory:', fee_bps=0)
    ledger = StreamLedger(db, IdentityRegistry(db), mock_plugin, config,
                          event_bus=EventBus(db, mock_plugin))
    ledger.deposit(SENDER, 10_000, now=START)
    return ledger


class FakeMirror:
    """Records PUTs and answers with a configurable status code."""

    def __init__(self):
        self.requests = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code == 200})


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest.fixture
def mirror(ledger, mock_plugin, fake_mirror):
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(fake_mirror))
    sync = MirrorSync(ledger, mock_plugin, BASE_URL, client=client)
    ledger.events.subscribe(sync.on_events)
    yield sync
    sync.close()


# =============================================================================
# SYNC TESTS
# =============================================================================

class TestMirrorSync:
    """Test event-driven pushes to the mirror."""

    def test_created_stream_is_queued(self, ledger, mirror):
        ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)
        assert mirror.pending_count() == 1

    def test_deposit_alone_queues_nothing(self, ledger, mirror):
        ledger.deposit(SENDER, 5, now=START)
        assert mirror.pending_count() == 0

    def test_push_snapshot(self, ledger, mirror, fake_mirror):
        stream_id = ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)

        result = mirror.sync_pending(now=START + 100)

        assert result == {"pushed": 1, "failed": 0, "remaining": 0}
        request = fake_mirror.requests[0]
        assert request.method == "PUT"
        assert request.url.path == f"/api/streams/{stream_id}"
        body = json.loads(request.content)
        assert body['total_amount'] == "1000"
        assert body['claimable'] == "100"
        assert body['recipient'] == RECIPIENT
        assert body['synced_at'] == START + 100

    def test_repeated_changes_push_once(self, ledger, mirror, fake_mirror):
        stream_id = ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)
        ledger.claim(RECIPIENT, stream_id, now=START + 10)
        ledger.claim(RECIPIENT, stream_id, now=START + 20)

        mirror.sync_pending(now=START + 20)

        assert len(fake_mirror.requests) == 1
        assert json.loads(fake_mirror.requests[0].content)['claimed_amount'] == "20"

    def test_failed_push_is_requeued(self, ledger, mirror, fake_mirror):
        ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)
        fake_mirror.status_code = 503

        result = mirror.sync_pending(now=START)

        assert result['pushed'] == 0
        assert result['failed'] == 1
        assert mirror.pending_count() == 1

        fake_mirror.status_code = 200
        assert mirror.sync_pending(now=START)['pushed'] == 1
        assert mirror.pending_count() == 0

    def test_batch_limit(self, ledger, mirror):
        for _ in range(3):
            ledger.create(SENDER, RECIPIENT, 100, 100, start_time=START, now=START)

        result = mirror.sync_pending(limit=2, now=START)

        assert result['pushed'] == 2
        assert result['remaining'] == 1

    def test_resync_all(self, ledger, mirror):
        for _ in range(2):
            ledger.create(SENDER, RECIPIENT, 100, 100, start_time=START, now=START)
        mirror.sync_pending(now=START)

        assert mirror.resync_all() == 2
        assert mirror.pending_count() == 2

    def test_unknown_stream_is_dropped(self, mirror, fake_mirror):
        mirror.on_events([StreamEvent(event_type='stream_claimed', stream_id=99)])
        result = mirror.sync_pending(now=START)

        assert result == {"pushed": 0, "failed": 0, "remaining": 0}
        assert fake_mirror.requests == []

    def test_circuit_opens_after_failures(self, ledger, mirror, fake_mirror):
        ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)
        fake_mirror.status_code = 500

        for _ in range(MAX_FAILURES):
            mirror.sync_pending(now=START)
        assert mirror.circuit.state == CircuitState.OPEN

        mirror.sync_pending(now=START)
        assert len(fake_mirror.requests) == MAX_FAILURES
        assert mirror.pending_count() == 1

    def test_status(self, mirror):
        status = mirror.get_status()
        assert status['enabled'] is True
        assert status['base_url'] == BASE_URL
        assert status['circuit']['state'] == 'closed'


# =============================================================================
# CIRCUIT TESTS
# =============================================================================

class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMirrorCircuit:
    """Test circuit state transitions."""

    def test_opens_after_max_failures(self):
        circuit = MirrorCircuit(max_failures=2, clock=FakeClock())
        circuit.record_failure()
        assert circuit.allows_push()
        circuit.record_failure()
        assert circuit.state == CircuitState.OPEN
        assert not circuit.allows_push()

    def test_success_resets_failure_count(self):
        circuit = MirrorCircuit(max_failures=2, clock=FakeClock())
        circuit.record_failure()
        circuit.record_success()
        circuit.record_failure()
        assert circuit.state == CircuitState.CLOSED

    def test_half_open_after_cooldown(self):
        clock = FakeClock()
        circuit = MirrorCircuit(max_failures=1, cooldown=60, clock=clock)
        circuit.record_failure()
        assert circuit.get_stats()['retry_in'] == 60

        clock.now += 60
        assert circuit.state == CircuitState.HALF_OPEN
        assert circuit.allows_push()

    def test_trial_success_closes(self):
        clock = FakeClock()
        circuit = MirrorCircuit(max_failures=1, cooldown=60, clock=clock)
        circuit.record_failure()
        clock.now += 61

        circuit.record_success()
        assert circuit.state == CircuitState.CLOSED
        assert circuit.get_stats()['consecutive_failures'] == 0

    def test_trial_failure_reopens(self):
        clock = FakeClock()
        circuit = MirrorCircuit(max_failures=3, cooldown=60, clock=clock)
        for _ in range(3):
            circuit.record_failure()
        clock.now += 61
        assert circuit.state == CircuitState.HALF_OPEN

        circuit.record_failure()
        assert circuit.state == CircuitState.OPEN
        clock.now += 59
        assert not circuit.allows_push()

    def test_sync_resumes_after_cooldown(self, ledger, mirror, fake_mirror):
        clock = FakeClock()
        mirror.circuit = MirrorCircuit(max_failures=1, cooldown=60, clock=clock)
        ledger.create(SENDER, RECIPIENT, 1000, 1000, start_time=START, now=START)
        fake_mirror.status_code = 500
        mirror.sync_pending(now=START)
        assert mirror.circuit.state == CircuitState.OPEN

        fake_mirror.status_code = 200
        assert mirror.sync_pending(now=START)['pushed'] == 0

        clock.now += 60
        assert mirror.sync_pending(now=START)['pushed'] == 1
        assert mirror.circuit.state == CircuitState.CLOSED
        assert mirror.get_status()['circuit']['state'] == 'closed'
