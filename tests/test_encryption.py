"""
convictionmarket/tests/test_encryption.py

Tests for wallets, X25519 key handling and the encryption context.
"""

import os
import stat

import pytest

from convictionmarket.config import U64_MAX
from convictionmarket.encryption import (
    CIPHERTEXT_SIZE,
    EncryptionContext,
    Wallet,
    X25519Keypair,
    derive_context,
    derive_encryption_keypair,
    generate_nonce,
    nonce_to_u128,
    shared_secret,
)
from convictionmarket.errors import DecryptionError, ValidationError


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def cluster():
    return X25519Keypair.generate()


@pytest.fixture
def user():
    return X25519Keypair.generate()


@pytest.fixture
def user_context(user, cluster):
    return derive_context(user.secret_key, cluster.public_key)


@pytest.fixture
def cluster_context(user, cluster):
    return EncryptionContext(shared_secret(cluster.secret_key, user.public_key))


# ============================================================================
# Test EncryptionContext
# ============================================================================

class TestEncryptionContext:
    """Round trips and failure modes."""

    def test_round_trip_across_parties(self, user_context, cluster_context):
        nonce = generate_nonce()
        values = [400, 2, 0, U64_MAX]

        ciphertexts = user_context.encrypt(values, nonce)

        assert cluster_context.decrypt(ciphertexts, nonce) == values
        assert user_context.decrypt(ciphertexts, nonce) == values

    def test_ciphertext_size(self, user_context):
        ciphertexts = user_context.encrypt([1, 2], generate_nonce())
        assert [len(c) for c in ciphertexts] == [CIPHERTEXT_SIZE, CIPHERTEXT_SIZE]

    def test_deterministic_per_nonce(self, user_context):
        nonce = generate_nonce()
        assert user_context.encrypt([7], nonce) == user_context.encrypt([7], nonce)
        assert user_context.encrypt([7], nonce) != user_context.encrypt([7], generate_nonce())

    def test_wrong_nonce(self, user_context):
        ciphertexts = user_context.encrypt([400, 2], generate_nonce())
        with pytest.raises(DecryptionError):
            user_context.decrypt(ciphertexts, generate_nonce())

    def test_wrong_context(self, user_context, cluster):
        nonce = generate_nonce()
        ciphertexts = user_context.encrypt([400, 2], nonce)
        stranger = derive_context(X25519Keypair.generate().secret_key, cluster.public_key)
        with pytest.raises(DecryptionError):
            stranger.decrypt(ciphertexts, nonce)

    def test_tampered_ciphertext(self, user_context):
        nonce = generate_nonce()
        ciphertext = bytearray(user_context.encrypt([400], nonce)[0])
        ciphertext[0] ^= 0x01
        with pytest.raises(DecryptionError):
            user_context.decrypt([bytes(ciphertext)], nonce)

    def test_swapped_positions(self, user_context):
        nonce = generate_nonce()
        amount_ct, option_ct = user_context.encrypt([400, 2], nonce)
        with pytest.raises(DecryptionError):
            user_context.decrypt([option_ct, amount_ct], nonce)

    def test_truncated_ciphertext(self, user_context):
        nonce = generate_nonce()
        ciphertext = user_context.encrypt([400], nonce)[0]
        with pytest.raises(DecryptionError):
            user_context.decrypt([ciphertext[:-1]], nonce)

    def test_value_out_of_range(self, user_context):
        with pytest.raises(ValidationError):
            user_context.encrypt([U64_MAX + 1], generate_nonce())
        with pytest.raises(ValidationError):
            user_context.encrypt([-1], generate_nonce())

    def test_bad_nonce_length(self, user_context):
        with pytest.raises(ValidationError):
            user_context.encrypt([1], b"\x00" * 12)

    def test_context_public_key(self, user_context, cluster_context, user):
        assert user_context.public_key == user.public_key
        assert cluster_context.public_key is None


# ============================================================================
# Test keys
# ============================================================================

class TestKeys:
    """Wallet-derived keypairs and persistence."""

    def test_derivation_is_deterministic(self):
        seed = os.urandom(32)
        first = derive_encryption_keypair(Wallet.from_seed(seed))
        second = derive_encryption_keypair(Wallet.from_seed(seed))
        assert first == second

    def test_different_wallets_different_keys(self):
        assert (
            derive_encryption_keypair(Wallet.generate()).public_key
            != derive_encryption_keypair(Wallet.generate()).public_key
        )

    def test_wallet_seed_length(self):
        with pytest.raises(ValueError):
            Wallet.from_seed(b"short")

    def test_keypair_from_secret(self, user):
        assert X25519Keypair.from_secret(user.secret_key) == user

    def test_save_and_load(self, tmp_path, user):
        path = tmp_path / "keys" / "x25519.json"
        user.save(path)

        assert X25519Keypair.load(path) == user
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_load_mismatched_public_key(self, tmp_path, user):
        path = tmp_path / "x25519.json"
        path.write_text(
            '{"secret_key": "%s", "public_key": "%s"}'
            % (user.secret_key.hex(), "00" * 32)
        )
        with pytest.raises(ValidationError):
            X25519Keypair.load(path)

    def test_nonce_to_u128(self):
        nonce = generate_nonce()
        assert len(nonce) == 16
        assert nonce_to_u128(nonce).to_bytes(16, "little") == nonce

    def test_shared_secret_is_symmetric(self, user, cluster):
        assert shared_secret(user.secret_key, cluster.public_key) == shared_secret(
            cluster.secret_key, user.public_key
        )
