"""
Identity module for cl-streamgift

Lets a stream be addressed to an email or social handle before the
claimant owns a wallet. Only a one-way hash of the identity is stored.

Binding Lifecycle:
1. First stream to an unseen identity creates a placeholder binding:
   identity_hash -> synthetic address that no key can sign for
2. When the owner authenticates, the binding is rebound to their real
   address and marked claimed (one-way, never reversed)
3. Streams created after that resolve straight to the real address

Thread Safety:
- All writes go through StreamDatabase.transaction(); when called from
  the ledger they join the ledger's transaction
"""

import hashlib
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidArgumentError, InvalidStateError
from .stream import RecipientKind


# =============================================================================
# CONSTANTS
# =============================================================================

ADDRESS_HEX_LENGTH = 64
IDENTITY_HASH_HEX_LENGTH = 64

ZERO_ADDRESS = '0x' + '0' * ADDRESS_HEX_LENGTH

# Scheme byte appended before hashing placeholder addresses. Signing keys
# derive addresses with scheme 0x00; 0xFE is reserved for derived
# addresses, so no key pair maps onto a placeholder.
PLACEHOLDER_SCHEME = b'\xfe'

IDENTITY_KINDS = frozenset({RecipientKind.EMAIL.value, RecipientKind.TWITTER.value})

_HEX_RE = re.compile(r'^[0-9a-f]+$')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
_HANDLE_RE = re.compile(r'^[a-z0-9_]{1,15}$')


# =============================================================================
# HASHING AND ADDRESSES
# =============================================================================

def normalize_handle(kind: str, handle: str) -> str:
    """
    Canonical form of an off-chain identity.

    Emails are lower-cased and stripped. Social handles also lose a
    leading '@'.
    """
    if kind not in IDENTITY_KINDS:
        raise InvalidArgumentError(f"Unsupported identity kind: {kind}")
    if not isinstance(handle, str):
        raise InvalidArgumentError("Identity handle must be a string")

    normalized = handle.strip().lower()
    if kind == RecipientKind.TWITTER.value:
        normalized = normalized.lstrip('@')
        if not _HANDLE_RE.match(normalized):
            raise InvalidArgumentError(f"Invalid twitter handle: {handle!r}")
    elif not _EMAIL_RE.match(normalized):
        raise InvalidArgumentError(f"Invalid email address: {handle!r}")
    return normalized


def hash_identity(kind: str, handle: str) -> str:
    """sha256 hex digest of '<kind>:<normalized handle>'."""
    normalized = normalize_handle(kind, handle)
    return hashlib.sha256(f"{kind}:{normalized}".encode('utf-8')).hexdigest()


def normalize_identity_hash(identity_hash: str) -> str:
    """Validate and lower-case a hex identity hash."""
    if not isinstance(identity_hash, str):
        raise InvalidArgumentError("Identity hash must be a hex string")
    value = identity_hash.strip().lower()
    if value.startswith('0x'):
        value = value[2:]
    if len(value) != IDENTITY_HASH_HEX_LENGTH or not _HEX_RE.match(value):
        raise InvalidArgumentError(f"Invalid identity hash: {identity_hash!r}")
    return value


def normalize_address(address: str) -> str:
    """
    Canonical '0x' + 64 lowercase hex address.

    Short addresses are left-padded with zeros. The zero address is
    rejected since it cannot own funds.
    """
    if not isinstance(address, str):
        raise InvalidArgumentError("Address must be a string")
    value = address.strip().lower()
    if value.startswith('0x'):
        value = value[2:]
    if not value or len(value) > ADDRESS_HEX_LENGTH or not _HEX_RE.match(value):
        raise InvalidArgumentError(f"Invalid address: {address!r}")
    normalized = '0x' + value.rjust(ADDRESS_HEX_LENGTH, '0')
    if normalized == ZERO_ADDRESS:
        raise InvalidArgumentError("Zero address is not allowed")
    return normalized


def generate_placeholder_address(identity_hash: str) -> str:
    """
    Fresh unspendable address standing in for an unclaimed identity.

    sha3-256 over the identity hash, a random nonce and the reserved
    scheme byte.
    """
    digest = hashlib.sha3_256(
        bytes.fromhex(identity_hash) + secrets.token_bytes(16) + PLACEHOLDER_SCHEME
    ).hexdigest()
    return '0x' + digest


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class IdentityBinding:
    """identity_hash -> address, with the claimed flag."""
    identity_hash: str
    address: str
    claimed: bool
    created_at: int
    claimed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identity_hash': self.identity_hash,
            'address': self.address,
            'claimed': self.claimed,
            'created_at': self.created_at,
            'claimed_at': self.claimed_at,
        }

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> Optional['IdentityBinding']:
        if row is None:
            return None
        return cls(
            identity_hash=row['identity_hash'],
            address=row['address'],
            claimed=bool(row['claimed']),
            created_at=row['created_at'],
            claimed_at=row.get('claimed_at'),
        )


# =============================================================================
# REGISTRY
# =============================================================================

class IdentityRegistry:
    """
    Bidirectional identity_hash <-> address mapping.

    Responsibilities:
    - Resolve a stream's identity recipient to an address
    - Create placeholder bindings for unseen identities
    - Atomically rebind an identity to a real address
    """

    def __init__(self, database, plugin=None):
        """
        Initialize the registry.

        Args:
            database: StreamDatabase instance for persistence
            plugin: Optional plugin reference for logging
        """
        self.db = database
        self.plugin = plugin

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(f"[IdentityRegistry] {msg}", level=level)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def lookup(self, identity_hash: str) -> Optional[str]:
        """Address bound to an identity hash, or None."""
        binding = self.get_binding(identity_hash)
        return binding.address if binding else None

    def reverse_lookup(self, address: str) -> Optional[str]:
        """Identity hash bound to an address, or None."""
        return self.db.get_identity_for_address(normalize_address(address))

    def get_binding(self, identity_hash: str) -> Optional[IdentityBinding]:
        return IdentityBinding.from_row(
            self.db.get_binding(normalize_identity_hash(identity_hash))
        )

    def is_claimed(self, identity_hash: str) -> bool:
        binding = self.get_binding(identity_hash)
        return bool(binding and binding.claimed)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _require_address_free(self, identity_hash: str, address: str) -> None:
        """An address carries at most one identity."""
        owner = self.db.get_identity_for_address(address)
        if owner is not None and owner != identity_hash:
            raise InvalidStateError(
                f"Address {address[:18]}... already bound to another identity"
            )

    def bind_or_create(self, identity_hash: str, address: str,
                       claimed: bool = False, now: int = None) -> IdentityBinding:
        """
        Insert a binding if the identity is unbound.

        Idempotent when already bound to the same address. Binding an
        identity that already points elsewhere is rejected; that path
        belongs to rebind().
        """
        identity_hash = normalize_identity_hash(identity_hash)
        address = normalize_address(address)
        now = now if now is not None else int(time.time())

        with self.db.transaction():
            existing = IdentityBinding.from_row(self.db.get_binding(identity_hash))
            if existing:
                if existing.address == address:
                    return existing
                raise InvalidStateError(
                    f"Identity {identity_hash[:16]}... already bound to another address"
                )
            self._require_address_free(identity_hash, address)
            self.db.insert_binding(identity_hash, address, claimed, now)

        self._log(
            f"Bound identity {identity_hash[:16]}... to {address[:18]}... "
            f"({'claimed' if claimed else 'placeholder'})",
            level='debug'
        )
        return IdentityBinding(identity_hash, address, claimed, now, now if claimed else None)

    def register(self, identity_hash: str, address: str, now: int = None) -> IdentityBinding:
        """Pre-register a real address for an identity that has no binding yet."""
        return self.bind_or_create(identity_hash, address, claimed=True, now=now)

    def resolve(self, kind: str, handle: str, now: int = None) -> Tuple[str, str, bool]:
        """
        Resolve an identity recipient to an address.

        Returns:
            (address, identity_hash, created): `created` is True when a new
            placeholder binding was inserted
        """
        identity_hash = hash_identity(kind, handle)
        with self.db.transaction():
            address = self.lookup(identity_hash)
            if address:
                return address, identity_hash, False
            placeholder = generate_placeholder_address(identity_hash)
            self.bind_or_create(identity_hash, placeholder, claimed=False, now=now)
        return placeholder, identity_hash, True

    def rebind(self, identity_hash: str, old_address: Optional[str],
               new_address: str, now: int = None) -> IdentityBinding:
        """
        Atomically move an identity from `old_address` to `new_address`.

        Removes identity->old and old->identity (if present), inserts
        identity->new and new->identity, and marks the binding claimed.
        """
        identity_hash = normalize_identity_hash(identity_hash)
        new_address = normalize_address(new_address)
        old_address = normalize_address(old_address) if old_address else None
        now = now if now is not None else int(time.time())

        with self.db.transaction():
            existing = IdentityBinding.from_row(self.db.get_binding(identity_hash))
            if existing and old_address and existing.address != old_address:
                raise InvalidStateError(
                    f"Identity {identity_hash[:16]}... is not bound to {old_address[:18]}..."
                )
            self._require_address_free(identity_hash, new_address)
            self.db.replace_binding(identity_hash, old_address, new_address, now)

        self._log(f"Rebound identity {identity_hash[:16]}... to {new_address[:18]}...")
        created_at = existing.created_at if existing else now
        return IdentityBinding(identity_hash, new_address, True, created_at, now)
