"""
convictionmarket/encryption.py

Encryption context shared between a participant and the computation
cluster.

- X25519 key agreement yields a 32-byte shared secret
- HKDF(shared secret, salt=nonce) yields a per-nonce field key
- Each fixed-width integer is sealed with ChaCha20-Poly1305 under that key,
  its position in the vector used as the AEAD nonce

Decrypting with the wrong nonce or the wrong context fails the Poly1305
tag check and raises DecryptionError instead of returning a wrong value.

Participants derive their X25519 key from an Ed25519 signature over a fixed
message, so the key can be re-derived by anyone holding the signing key and
by nobody else.

Usage:
    wallet = Wallet.generate()
    keypair = derive_encryption_keypair(wallet)
    context = derive_context(keypair.secret_key, cluster_public_key)

    nonce = generate_nonce()
    ciphertexts = context.encrypt([amount, option], nonce)
    amount, option = context.decrypt(ciphertexts, nonce)
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import KEY_DERIVATION_MESSAGE, U64_MAX
from .errors import DecryptionError, ValidationError

logger = logging.getLogger("convictionmarket.encryption")

NONCE_SIZE = 16
FIELD_SIZE = 8
CIPHERTEXT_SIZE = FIELD_SIZE + 16  # value + Poly1305 tag
HKDF_INFO = b"convictionmarket-field-cipher"


def _raw_public(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _raw_private(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


# ============================================================================
# WALLET (SIGNING IDENTITY)
# ============================================================================

class Wallet:
    """
    Ed25519 signing identity of a participant.

    The 32-byte public key is the participant's ledger identity. Ed25519
    signatures are deterministic, which key derivation relies on.
    """

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key = _raw_public(private_key.public_key())

    @classmethod
    def generate(cls) -> "Wallet":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Wallet":
        """Create wallet from 32 bytes of entropy."""
        if len(seed) != 32:
            raise ValueError("Seed must be exactly 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def __repr__(self) -> str:
        return f"Wallet(public_key={self._public_key.hex()[:16]}...)"


# ============================================================================
# X25519 KEYPAIRS
# ============================================================================

@dataclass
class X25519Keypair:
    """X25519 keypair used for confidential computation inputs/outputs."""
    secret_key: bytes
    public_key: bytes

    @classmethod
    def from_secret(cls, secret_key: bytes) -> "X25519Keypair":
        if len(secret_key) != 32:
            raise ValidationError("X25519 secret key must be 32 bytes")
        private = X25519PrivateKey.from_private_bytes(secret_key)
        return cls(secret_key=bytes(secret_key), public_key=_raw_public(private.public_key()))

    @classmethod
    def generate(cls) -> "X25519Keypair":
        return cls.from_secret(_raw_private(X25519PrivateKey.generate()))

    @classmethod
    def from_signature(cls, signature: bytes) -> "X25519Keypair":
        """Derive a keypair deterministically: secret = sha256(signature)."""
        return cls.from_secret(hashlib.sha256(signature).digest())

    def save(self, path: Union[str, Path]) -> None:
        """
        Persist the keypair as JSON.

        Losing this file is only recoverable by re-deriving from the
        wallet that produced the signature.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({
            "secret_key": self.secret_key.hex(),
            "public_key": self.public_key.hex(),
        }))
        os.chmod(path, 0o600)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "X25519Keypair":
        data = json.loads(Path(path).read_text())
        keypair = cls.from_secret(bytes.fromhex(data["secret_key"]))
        if keypair.public_key.hex() != data.get("public_key", keypair.public_key.hex()):
            raise ValidationError(f"Stored public key does not match secret in {path}")
        return keypair


def derive_encryption_keypair(
    wallet: Wallet, message: bytes = KEY_DERIVATION_MESSAGE
) -> X25519Keypair:
    """Derive a participant's encryption keypair from their wallet."""
    return X25519Keypair.from_signature(wallet.sign(message))


# ============================================================================
# ENCRYPTION CONTEXT
# ============================================================================

def generate_nonce() -> bytes:
    """Fresh random 16-byte nonce. Never reuse one for different plaintexts."""
    return os.urandom(NONCE_SIZE)


def nonce_to_u128(nonce: bytes) -> int:
    """Little-endian integer form of a nonce."""
    return int.from_bytes(nonce, "little")


class EncryptionContext:
    """
    Symmetric cipher over a shared secret for vectors of u64 fields.

    Either side of the key agreement builds an identical context.
    """

    def __init__(self, shared_secret: bytes, keypair: Optional[X25519Keypair] = None):
        if len(shared_secret) != 32:
            raise ValidationError("Shared secret must be 32 bytes")
        self._shared_secret = shared_secret
        self.keypair = keypair

    @property
    def public_key(self) -> Optional[bytes]:
        return self.keypair.public_key if self.keypair else None

    def _cipher(self, nonce: bytes) -> ChaCha20Poly1305:
        if len(nonce) != NONCE_SIZE:
            raise ValidationError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=nonce,
            info=HKDF_INFO,
        ).derive(self._shared_secret)
        return ChaCha20Poly1305(key)

    def encrypt(self, values: Sequence[int], nonce: bytes) -> List[bytes]:
        """
        Encrypt a vector of u64 values.

        Deterministic for a given (context, nonce, values).
        """
        cipher = self._cipher(nonce)
        ciphertexts = []
        for position, value in enumerate(values):
            if not isinstance(value, int) or not 0 <= value <= U64_MAX:
                raise ValidationError(f"Value at position {position} is not a u64")
            ciphertexts.append(cipher.encrypt(
                position.to_bytes(12, "little"),
                value.to_bytes(FIELD_SIZE, "little"),
                None,
            ))
        return ciphertexts

    def decrypt(self, ciphertexts: Sequence[bytes], nonce: bytes) -> List[int]:
        """
        Decrypt a vector of ciphertexts.

        Raises:
            DecryptionError: wrong nonce, wrong context or tampered data
        """
        cipher = self._cipher(nonce)
        values = []
        for position, ciphertext in enumerate(ciphertexts):
            if len(ciphertext) != CIPHERTEXT_SIZE:
                raise DecryptionError(
                    f"Ciphertext at position {position} has length {len(ciphertext)}"
                )
            try:
                plaintext = cipher.decrypt(position.to_bytes(12, "little"), ciphertext, None)
            except InvalidTag:
                raise DecryptionError(
                    f"Ciphertext at position {position} does not match key and nonce"
                ) from None
            values.append(int.from_bytes(plaintext, "little"))
        return values


def shared_secret(own_secret_key: bytes, peer_public_key: bytes) -> bytes:
    """X25519 key agreement."""
    if len(peer_public_key) != 32:
        raise ValidationError("X25519 public key must be 32 bytes")
    private = X25519PrivateKey.from_private_bytes(own_secret_key)
    return private.exchange(X25519PublicKey.from_public_bytes(peer_public_key))


def derive_context(own_private_key: bytes, cluster_public_key: bytes) -> EncryptionContext:
    """
    Build the encryption context between a participant and the cluster.

    Args:
        own_private_key: Participant's X25519 secret key (32 bytes)
        cluster_public_key: Cluster's X25519 public key (32 bytes)
    """
    keypair = X25519Keypair.from_secret(own_private_key)
    return EncryptionContext(shared_secret(own_private_key, cluster_public_key), keypair)
