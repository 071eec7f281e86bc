"""
Tests for identity hashing, address normalization and the binding registry.
"""

import hashlib

import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from streamgift.database import StreamDatabase
from streamgift.errors import InvalidArgumentError, InvalidStateError
from streamgift.identity import (
    IdentityRegistry, ZERO_ADDRESS, generate_placeholder_address, hash_identity,
    normalize_address, normalize_handle, normalize_identity_hash,
)


REAL = '0x' + 'b' * 64
OTHER = '0x' + 'c' * 64


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def database(mock_plugin, tmp_path):
    db = StreamDatabase(str(tmp_path / "test_identity.db"), mock_plugin)
    db.initialize()
    return db


@pytest.fixture
def registry(database, mock_plugin):
    return IdentityRegistry(database, mock_plugin)


# =============================================================================
# HASHING
# =============================================================================

class TestHashing:
    """Test identity normalization and hashing."""

    def test_email_hash(self):
        expected = hashlib.sha256(b"email:alice@example.com").hexdigest()
        assert hash_identity('email', '  Alice@Example.COM ') == expected

    def test_twitter_strips_at(self):
        assert normalize_handle('twitter', '@Satoshi_N') == 'satoshi_n'
        assert hash_identity('twitter', '@satoshi_n') == hash_identity('twitter', 'SATOSHI_N')

    def test_kinds_hash_differently(self):
        assert hash_identity('email', 'a@b.co') != hash_identity('twitter', 'a')

    @pytest.mark.parametrize("kind,handle", [
        ('email', 'not-an-email'),
        ('email', 'a@b'),
        ('twitter', 'way_too_long_handle_here'),
        ('twitter', 'bad-char'),
        ('twitter', '@'),
        ('wallet', '0xabc'),
        ('email', None),
    ])
    def test_invalid_handles(self, kind, handle):
        with pytest.raises(InvalidArgumentError):
            hash_identity(kind, handle)

    def test_normalize_identity_hash(self):
        raw = 'AB' * 32
        assert normalize_identity_hash('0x' + raw) == 'ab' * 32
        with pytest.raises(InvalidArgumentError):
            normalize_identity_hash('abcd')
        with pytest.raises(InvalidArgumentError):
            normalize_identity_hash('zz' * 32)


# =============================================================================
# ADDRESSES
# =============================================================================

class TestAddresses:
    """Test address normalization and placeholder generation."""

    def test_short_address_is_padded(self):
        assert normalize_address('0x1') == '0x' + '0' * 63 + '1'
        assert normalize_address('ABC') == '0x' + '0' * 61 + 'abc'

    @pytest.mark.parametrize("address", [
        '', '0x', '0x' + '1' * 65, '0xgg', ZERO_ADDRESS, '0x0', 42,
    ])
    def test_invalid_addresses(self, address):
        with pytest.raises(InvalidArgumentError):
            normalize_address(address)

    def test_placeholders_are_fresh(self):
        identity_hash = hash_identity('email', 'alice@example.com')
        first = generate_placeholder_address(identity_hash)
        second = generate_placeholder_address(identity_hash)

        assert first != second
        assert normalize_address(first) == first


# =============================================================================
# REGISTRY
# =============================================================================

class TestRegistry:
    """Test binding creation, lookup and rebinding."""

    def test_resolve_creates_placeholder_once(self, registry):
        address, identity_hash, created = registry.resolve('email', 'alice@example.com', now=100)
        again, same_hash, created_again = registry.resolve('email', 'ALICE@example.com', now=200)

        assert created is True
        assert created_again is False
        assert again == address
        assert same_hash == identity_hash
        assert registry.is_claimed(identity_hash) is False
        assert registry.reverse_lookup(address) == identity_hash

    def test_lookup_unknown(self, registry):
        assert registry.lookup('00' * 32) is None
        assert registry.reverse_lookup(REAL) is None

    def test_bind_or_create_is_idempotent(self, registry):
        identity_hash = hash_identity('email', 'bob@example.com')
        first = registry.bind_or_create(identity_hash, REAL, now=100)
        second = registry.bind_or_create(identity_hash, REAL, now=200)

        assert first.address == second.address == REAL
        assert second.created_at == 100

    def test_bind_or_create_conflict(self, registry):
        identity_hash = hash_identity('email', 'bob@example.com')
        registry.bind_or_create(identity_hash, REAL, now=100)
        with pytest.raises(InvalidStateError):
            registry.bind_or_create(identity_hash, OTHER, now=100)

    def test_register_marks_claimed(self, registry):
        identity_hash = hash_identity('twitter', 'carol')
        binding = registry.register(identity_hash, REAL, now=100)

        assert binding.claimed is True
        assert binding.claimed_at == 100
        assert registry.is_claimed(identity_hash) is True

    def test_rebind_moves_both_directions(self, registry):
        placeholder, identity_hash, _ = registry.resolve('email', 'dave@example.com', now=100)

        binding = registry.rebind(identity_hash, placeholder, REAL, now=200)

        assert binding.address == REAL
        assert binding.claimed is True
        assert binding.created_at == 100
        assert registry.lookup(identity_hash) == REAL
        assert registry.reverse_lookup(REAL) == identity_hash
        assert registry.reverse_lookup(placeholder) is None

    def test_rebind_from_wrong_address(self, registry):
        placeholder, identity_hash, _ = registry.resolve('email', 'erin@example.com', now=100)
        with pytest.raises(InvalidStateError):
            registry.rebind(identity_hash, OTHER, REAL, now=200)
        assert registry.lookup(identity_hash) == placeholder

    def test_rebind_unbound_identity(self, registry):
        identity_hash = hash_identity('twitter', 'frank')
        registry.rebind(identity_hash, None, REAL, now=100)
        assert registry.lookup(identity_hash) == REAL
        assert registry.is_claimed(identity_hash) is True

    def test_address_carries_one_identity(self, registry):
        first = hash_identity('email', 'gina@example.com')
        second = hash_identity('twitter', 'gina')
        registry.register(first, REAL, now=100)

        with pytest.raises(InvalidStateError):
            registry.register(second, REAL, now=200)

        assert registry.reverse_lookup(REAL) == first
        assert registry.lookup(second) is None

    def test_rebind_onto_bound_address_rejected(self, registry):
        registry.register(hash_identity('twitter', 'gina'), REAL, now=100)
        placeholder, identity_hash, _ = registry.resolve('email', 'hank@example.com', now=100)

        with pytest.raises(InvalidStateError):
            registry.rebind(identity_hash, placeholder, REAL, now=200)

        assert registry.lookup(identity_hash) == placeholder
        assert registry.reverse_lookup(placeholder) == identity_hash
