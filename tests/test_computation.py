"""
convictionmarket/tests/test_computation.py

Tests for computation requests and the dispatcher.
"""

import pytest

from convictionmarket.computation import (
    ArgBuilder,
    ArgKind,
    ComputationDefinition,
    ComputationDispatcher,
)
from convictionmarket.config import U16_MAX
from convictionmarket.encryption import (
    EncryptionContext,
    X25519Keypair,
    derive_context,
    shared_secret,
)
from convictionmarket.errors import ValidationError


@pytest.fixture
def cluster():
    return X25519Keypair.generate()


@pytest.fixture
def user():
    return X25519Keypair.generate()


@pytest.fixture
def dispatcher(user, cluster):
    return ComputationDispatcher(derive_context(user.secret_key, cluster.public_key))


class TestArgBuilder:
    """Tests for argument encoding."""

    def test_plaintext_ranges(self):
        ArgBuilder().plaintext_u16(U16_MAX)
        with pytest.raises(ValidationError):
            ArgBuilder().plaintext_u16(U16_MAX + 1)
        with pytest.raises(ValidationError):
            ArgBuilder().plaintext_u64(-1)

    def test_pubkey_length(self):
        with pytest.raises(ValidationError):
            ArgBuilder().x25519_pubkey(b"\x00" * 31)

    def test_build_order(self):
        args = ArgBuilder().x25519_pubkey(b"\x01" * 32).plaintext_u64(5).account(b"\x02" * 32).build()
        assert [a.kind for a in args] == [
            ArgKind.X25519_PUBKEY, ArgKind.PLAINTEXT_U64, ArgKind.ACCOUNT,
        ]
        assert args[0].to_dict()["value"] == "01" * 32


class TestComputationDispatcher:
    """Tests for building requests."""

    def test_stake_request_is_decryptable_by_cluster(self, dispatcher, user, cluster):
        request = dispatcher.stake(400, 2)

        assert request.definition == ComputationDefinition.STAKE
        assert request.definition.value == "buy_conviction_market_shares"
        assert request.values(ArgKind.X25519_PUBKEY) == [user.public_key]

        (nonce_int,) = request.values(ArgKind.PLAINTEXT_U128)
        nonce = nonce_int.to_bytes(16, "little")
        assert nonce == request.input_nonce

        ciphertexts = request.values(ArgKind.ENCRYPTED_U64) + request.values(ArgKind.ENCRYPTED_U16)
        context = EncryptionContext(shared_secret(cluster.secret_key, user.public_key))
        assert context.decrypt(ciphertexts, nonce) == [400, 2]

    def test_stake_uses_fresh_nonces(self, dispatcher):
        first = dispatcher.stake(400, 2)
        second = dispatcher.stake(400, 2)
        assert first.input_nonce != second.input_nonce
        assert first.values(ArgKind.ENCRYPTED_U64) != second.values(ArgKind.ENCRYPTED_U64)

    def test_stake_validation(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.stake(0, 1)
        with pytest.raises(ValidationError):
            dispatcher.stake(10, 0)
        with pytest.raises(ValidationError):
            dispatcher.stake(10, U16_MAX + 1)

    def test_offsets_tracked_until_released(self, dispatcher):
        reveal = dispatcher.reveal()
        close = dispatcher.close()
        mint = dispatcher.mint_credits(10)

        assert dispatcher.in_flight() == {reveal.offset, close.offset, mint.offset}
        assert dispatcher.in_flight(ComputationDefinition.REVEAL_SHARES) == {reveal.offset}

        dispatcher.release(reveal)
        assert reveal.offset not in dispatcher.in_flight()
        assert dispatcher.in_flight(ComputationDefinition.CLOSE_SHARE_ACCOUNT) == {close.offset}

    def test_plaintext_requests(self, dispatcher):
        claim = dispatcher.claim_credits(25)
        assert claim.definition == ComputationDefinition.CLAIM_VOTE_TOKENS
        assert claim.values(ArgKind.PLAINTEXT_U64) == [25]

        init = dispatcher.init_balance()
        assert init.definition == ComputationDefinition.INIT_VOTE_TOKEN_ACCOUNT
        assert len(init.input_nonce) == 16

    def test_to_dict(self, dispatcher):
        data = dispatcher.stake(1, 1).to_dict()
        assert data["definition"] == "buy_conviction_market_shares"
        assert int(data["offset"]) >= 0
        assert len(data["args"]) == 4

    def test_requires_keypair(self, user, cluster):
        context = EncryptionContext(shared_secret(cluster.secret_key, user.public_key))
        with pytest.raises(ValidationError):
            ComputationDispatcher(context)
