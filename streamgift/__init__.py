"""
Package for cl-streamgift

This package contains the core modules for the token-streaming escrow engine:
- config: Configuration dataclass and snapshot pattern
- database: SQLite persistence with thread-local connections
- errors: Engine error taxonomy
- accrual: Time-based claimable amount calculation
- identity: Identity hashing, placeholder addresses and the binding registry
- events: Event log and post-commit dispatch
- ledger: Stream creation, claim and cancellation
- rebinding: Recipient rebinding protocol for identity-addressed streams
- mirror: Off-chain mirror synchronisation over HTTP
- rpc_commands: Handlers behind the stream-* RPC methods
"""

__version__ = "0.1.0-dev"
