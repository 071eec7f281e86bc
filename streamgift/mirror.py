"""
Off-chain mirror sync for cl-streamgift.

Keeps an external, eventually-consistent record store up to date with
the engine's authoritative stream state. The mirror exists for fast
reads by the web layer and is never consulted for fund-affecting
decisions.

Sync Flow:
1. MirrorSync subscribes to the EventBus
2. Every committed event queues its stream id as dirty
3. A background loop calls sync_pending(), which reloads each dirty
   stream from the database and PUTs the snapshot to the mirror
4. Failed pushes stay queued; repeated failures open the MirrorCircuit,
   which holds further pushes back until a cooldown has passed
"""

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from .accrual import claimable
from .errors import NotFoundError


# =============================================================================
# CIRCUIT
# =============================================================================

MAX_FAILURES = 3          # Consecutive failed pushes before the circuit opens
COOLDOWN_SECONDS = 60     # How long an open circuit blocks pushes


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when the mirror circuit is OPEN and blocking pushes."""
    pass


class MirrorCircuit:
    """
    Stops pushing to a mirror that keeps failing.

    After `max_failures` consecutive failed pushes the circuit opens for
    `cooldown` seconds. Once the cooldown passes it is HALF_OPEN: the next
    push is a trial that closes the circuit on success and reopens it for
    another cooldown on failure.
    """

    def __init__(self, max_failures: int = MAX_FAILURES,
                 cooldown: int = COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.max_failures = max_failures
        self.cooldown = cooldown
        self._clock = clock
        self._failures = 0
        self._open_until: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._open_until is None:
            return CircuitState.CLOSED
        if self._clock() < self._open_until:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def allows_push(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._open_until = None

    def record_failure(self) -> None:
        self._failures += 1
        # A failed trial reopens immediately
        if self._open_until is not None or self._failures >= self.max_failures:
            self._open_until = self._clock() + self.cooldown

    def get_stats(self) -> Dict[str, Any]:
        state = self.state
        retry_in = None
        if state == CircuitState.OPEN:
            retry_in = int(self._open_until - self._clock())
        return {
            "state": state.value,
            "consecutive_failures": self._failures,
            "max_failures": self.max_failures,
            "cooldown": self.cooldown,
            "retry_in": retry_in,
        }


# =============================================================================
# MIRROR SYNC
# =============================================================================

class MirrorSync:
    """
    Pushes authoritative stream snapshots to the off-chain mirror.

    Thread Safety:
    - The dirty set is guarded by a lock; subscribers run on engine
      threads while sync_pending() runs on the background loop
    """

    def __init__(self, ledger, plugin, base_url: str, timeout: int = 5,
                 client: httpx.Client = None):
        """
        Initialize the mirror sync.

        Args:
            ledger: StreamLedger used to read authoritative state
            plugin: Reference to the pyln Plugin for logging
            base_url: Mirror API root, e.g. https://mirror.example/api
            timeout: HTTP timeout in seconds
            client: Preconfigured httpx.Client (tests inject a MockTransport)
        """
        self.ledger = ledger
        self.plugin = plugin
        self.base_url = base_url.rstrip('/')
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.circuit = MirrorCircuit()
        self._dirty: Set[int] = set()
        self._lock = threading.Lock()
        self._pushed = 0
        self._failed = 0
        self._last_sync: Optional[int] = None

    def _log(self, msg: str, level: str = 'info') -> None:
        self.plugin.log(f"[MirrorSync] {msg}", level=level)

    # =========================================================================
    # QUEUE
    # =========================================================================

    def on_events(self, events: List[Any]) -> None:
        """EventBus subscriber: mark touched streams dirty."""
        stream_ids = {e.stream_id for e in events if e.stream_id is not None}
        if stream_ids:
            with self._lock:
                self._dirty.update(stream_ids)

    def resync_all(self) -> int:
        """Queue every stream for a full reconciliation."""
        count = self.ledger.get_stream_count()
        with self._lock:
            self._dirty.update(range(1, count + 1))
        self._log(f"Queued {count} streams for full resync")
        return count

    def pending_count(self) -> int:
        with self._lock:
            return len(self._dirty)

    # =========================================================================
    # PUSH
    # =========================================================================

    def snapshot(self, stream_id: int, now: int = None) -> Dict[str, Any]:
        """Mirror document for one stream, built from engine state."""
        now = now if now is not None else int(time.time())
        stream = self.ledger.get_stream(stream_id)
        document = stream.to_dict()
        document['claimable'] = str(claimable(stream, now))
        # Amounts travel as strings; JSON consumers lose precision past 2**53
        for key in ('total_amount', 'claimed_amount', 'rate_per_second', 'fee_amount'):
            document[key] = str(document[key])
        document['synced_at'] = now
        return document

    def push_stream(self, stream_id: int, now: int = None) -> None:
        """
        PUT one stream snapshot to the mirror.

        Raises:
            CircuitOpenError: mirror circuit is open
            httpx.HTTPError: transport failure or non-2xx response
        """
        if not self.circuit.allows_push():
            raise CircuitOpenError("Mirror circuit is open")
        document = self.snapshot(stream_id, now)
        try:
            response = self.client.put(f"/streams/{stream_id}", json=document)
            response.raise_for_status()
        except httpx.HTTPError:
            self.circuit.record_failure()
            raise
        self.circuit.record_success()

    def sync_pending(self, limit: int = 100, now: int = None) -> Dict[str, Any]:
        """
        Push up to `limit` dirty streams.

        Returns:
            Dict with pushed/failed/remaining counts
        """
        with self._lock:
            batch = sorted(self._dirty)[:limit]
            self._dirty.difference_update(batch)

        pushed = 0
        failed: List[int] = []
        for index, stream_id in enumerate(batch):
            try:
                self.push_stream(stream_id, now)
                pushed += 1
            except NotFoundError:
                self._log(f"Stream {stream_id} vanished before sync", level='warn')
            except CircuitOpenError:
                failed.extend(batch[index:])
                break
            except httpx.HTTPError as e:
                self._log(f"Push of stream {stream_id} failed: {e}", level='warn')
                failed.append(stream_id)

        if failed:
            with self._lock:
                self._dirty.update(failed)

        self._pushed += pushed
        self._failed += len(failed)
        self._last_sync = int(time.time())
        if pushed or failed:
            self._log(f"Synced {pushed} stream(s), {len(failed)} requeued",
                      level='debug' if not failed else 'info')
        return {
            "pushed": pushed,
            "failed": len(failed),
            "remaining": self.pending_count(),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": True,
            "base_url": self.base_url,
            "pending": self.pending_count(),
            "pushed_total": self._pushed,
            "failed_total": self._failed,
            "last_sync": self._last_sync,
            "circuit": self.circuit.get_stats(),
        }

    def close(self) -> None:
        self.client.close()
