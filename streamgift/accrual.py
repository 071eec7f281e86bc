"""
Accrual calculator for cl-streamgift.

Pure functions of a stream's time parameters and the wall clock. Python
integers are unbounded, so `elapsed * rate_per_second` never overflows
regardless of token decimals.

Claimable Algorithm:
- Nothing is claimable unless the stream is ACTIVE and has started
- Accrual runs from last_claim_time to min(now, end_time) at rate_per_second
- The result is capped at total_amount - claimed_amount

rate_per_second is total_amount // duration, so rate * duration can fall
short of total_amount. That remainder never accrues; it is refunded to the
sender if the stream is cancelled.
"""

from typing import Tuple

from .stream import Stream, StreamStatus


def claimable(stream: Stream, now: int) -> int:
    """
    Amount the recipient could claim at `now`.

    Args:
        stream: Stream snapshot
        now: Wall-clock time in unix seconds

    Returns:
        Claimable amount, 0 <= result <= total_amount - claimed_amount
    """
    if stream.status != StreamStatus.ACTIVE.value:
        return 0
    if now < stream.start_time:
        return 0

    effective_time = min(now, stream.end_time)
    elapsed = max(0, effective_time - stream.last_claim_time)
    accrued = elapsed * stream.rate_per_second
    remaining = stream.total_amount - stream.claimed_amount
    return max(0, min(accrued, remaining))


def split_on_cancel(stream: Stream, now: int) -> Tuple[int, int]:
    """
    Terminal split of a stream's escrow at cancellation time.

    Returns:
        (to_recipient, to_sender): the accrued portion and the
        never-to-be-earned refund. Together they equal the remaining escrow.
    """
    to_recipient = claimable(stream, now)
    to_sender = stream.total_amount - stream.claimed_amount - to_recipient
    return to_recipient, to_sender
