"""
Configuration module for cl-streamgift

Contains the StreamConfig dataclass that holds all tunable parameters
for the escrow engine.

Implements the ConfigSnapshot pattern so background loops (mirror sync)
read a consistent view even if options change mid-cycle.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, FrozenSet


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'fee_bps': int,
    'operator_mode_enabled': bool,
    'max_message_length': int,
    'max_duration_seconds': int,
    'mirror_url': str,
    'mirror_timeout_seconds': int,
    'mirror_sync_interval': int,
    'mirror_batch_size': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'fee_bps': (0, 1000),                                  # 0% to 10%
    'max_message_length': (0, 4096),
    'max_duration_seconds': (60, 20 * 365 * 24 * 3600),  # 1 minute to 20 years
    'mirror_timeout_seconds': (1, 60),
    'mirror_sync_interval': (5, 3600),
    'mirror_batch_size': (1, 1000),
}

# Basis points denominator for the protocol fee
BPS_DENOMINATOR = 10_000


@dataclass
class StreamConfig:
    """
    Configuration container for the cl-streamgift plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/cl_streamgift.db'

    # Protocol fee, deducted from the funded amount at creation
    fee_bps: int = 25                          # 0.25%

    # Operator-authorized claim/cancel/rebind (custodial trust relaxation)
    operator_mode_enabled: bool = False

    # Creation limits
    max_message_length: int = 500
    max_duration_seconds: int = 10 * 365 * 24 * 3600  # 10 years

    # Off-chain mirror
    mirror_url: Optional[str] = None           # Disabled when unset
    mirror_timeout_seconds: int = 5
    mirror_sync_interval: int = 30
    mirror_batch_size: int = 100

    # Internal version tracking
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'StreamConfigSnapshot':
        """Create an immutable snapshot for cycle execution."""
        return StreamConfigSnapshot.from_config(self)

    def validate(self) -> Optional[str]:
        """
        Validate configuration values.

        Returns:
            Error message if invalid, None if valid
        """
        for key, expected in CONFIG_FIELD_TYPES.items():
            value = getattr(self, key, None)
            if value is None:
                continue
            # bool is a subclass of int; reject it for numeric fields
            if expected is int and isinstance(value, bool):
                return f"Config {key} must be {expected.__name__}, got bool"
            if not isinstance(value, expected):
                return f"Config {key} must be {expected.__name__}, got {type(value).__name__}"

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key, None)
            if value is not None and not (min_val <= value <= max_val):
                return f"Config {key}={value} out of range [{min_val}, {max_val}]"

        if self.mirror_url and not self.mirror_url.startswith(('http://', 'https://')):
            return f"Invalid mirror_url: {self.mirror_url} (must be http or https)"

        return None

    def fee_for(self, amount: int) -> int:
        """Protocol fee on `amount`, floor-divided."""
        return amount * self.fee_bps // BPS_DENOMINATOR


@dataclass(frozen=True)
class StreamConfigSnapshot:
    """Immutable configuration snapshot for thread-safe cycle execution."""

    db_path: str
    fee_bps: int
    operator_mode_enabled: bool
    max_message_length: int
    max_duration_seconds: int
    mirror_url: Optional[str]
    mirror_timeout_seconds: int
    mirror_sync_interval: int
    mirror_batch_size: int
    version: int

    @classmethod
    def from_config(cls, config: StreamConfig) -> 'StreamConfigSnapshot':
        """Create a frozen snapshot from mutable config."""
        return cls(
            db_path=config.db_path,
            fee_bps=config.fee_bps,
            operator_mode_enabled=config.operator_mode_enabled,
            max_message_length=config.max_message_length,
            max_duration_seconds=config.max_duration_seconds,
            mirror_url=config.mirror_url,
            mirror_timeout_seconds=config.mirror_timeout_seconds,
            mirror_sync_interval=config.mirror_sync_interval,
            mirror_batch_size=config.mirror_batch_size,
            version=config._version,
        )
