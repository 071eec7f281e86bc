"""
Error taxonomy for cl-streamgift.

Every engine operation either commits fully or raises exactly one of
these. The `kind` string is what RPC handlers report back to callers,
and `retriable` tells the orchestrator whether the same call can succeed
later without changed inputs (only after a state change elsewhere).
"""


class StreamError(Exception):
    """Base class for all engine errors."""
    kind = "stream_error"
    retriable = False


class NotFoundError(StreamError):
    """Referenced stream or identity binding does not exist."""
    kind = "not_found"
    retriable = True


class NotAuthorizedError(StreamError):
    """Caller is not allowed to act on the stream."""
    kind = "not_authorized"


class InvalidArgumentError(StreamError):
    """Malformed or out-of-range input."""
    kind = "invalid_argument"


class InsufficientBalanceError(InvalidArgumentError):
    """Sender account cannot fund the requested stream."""
    kind = "insufficient_balance"


class InvalidStateError(StreamError):
    """Stream or binding is not in the status the operation requires."""
    kind = "invalid_state"


class NothingToClaimError(StreamError):
    """Claimable amount is zero at claim time."""
    kind = "nothing_to_claim"
    retriable = True


class InsufficientPoolError(StreamError):
    """
    Escrow pool cannot cover a disbursement.

    This only happens if ledger invariants have been broken, so it is
    treated as a consistency violation rather than a user error.
    """
    kind = "insufficient_pool"
