"""
Encryption module for clipsync

Uses AES-256-GCM for authenticated encryption. Every call to encrypt() draws
a fresh 96-bit nonce from the OS CSPRNG, so a nonce is never reused with the
same key.

Wire layout of an encrypted package:
┌──────────────┬─────────────────────────┬──────────────┐
│ Nonce (12B)  │ Ciphertext (variable)   │ Tag (16B)    │
└──────────────┴─────────────────────────┴──────────────┘
"""
import os
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from clipsync.common.errors import DecryptError

# Constants
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16    # 128-bit authentication tag
KEY_SIZE = 32    # 256-bit key
SALT_SIZE = 16
KDF_ITERATIONS = 100000


@dataclass(frozen=True)
class EncryptedPackage:
    """Nonce, ciphertext and authentication tag of one encrypted message"""
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        return self.nonce + self.ciphertext + self.tag

    @classmethod
    def from_bytes(cls, data: bytes) -> 'EncryptedPackage':
        """
        Split a wire package into its parts

        Raises:
            DecryptError: If the data is too short to hold nonce and tag
        """
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptError("Ciphertext too short")
        return cls(
            nonce=bytes(data[:NONCE_SIZE]),
            ciphertext=bytes(data[NONCE_SIZE:-TAG_SIZE]),
            tag=bytes(data[-TAG_SIZE:])
        )


def generate_salt() -> bytes:
    """Generate a random per-install KDF salt"""
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    Derive an encryption key from a shared passphrase using PBKDF2

    Args:
        passphrase: The operator-configured shared passphrase
        salt: Salt bytes (generated if not provided)

    Returns:
        (key, salt) tuple
    """
    if salt is None:
        salt = generate_salt()

    key = hashlib.pbkdf2_hmac(
        'sha256',
        passphrase.encode('utf-8'),
        salt,
        iterations=KDF_ITERATIONS,
        dklen=KEY_SIZE
    )

    return key, salt


def generate_key() -> bytes:
    """Generate a random 256-bit key"""
    return secrets.token_bytes(KEY_SIZE)


def encrypt(plaintext: bytes, key: bytes) -> EncryptedPackage:
    """
    Encrypt data using AES-256-GCM

    Args:
        plaintext: Data to encrypt
        key: 32-byte encryption key

    Returns:
        EncryptedPackage with a fresh nonce
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)

    # AESGCM appends the tag to the ciphertext
    return EncryptedPackage(
        nonce=nonce,
        ciphertext=sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:]
    )


def decrypt(package: Union[EncryptedPackage, bytes], key: bytes) -> bytes:
    """
    Decrypt data using AES-256-GCM

    Fails closed: either the whole plaintext is returned or DecryptError is
    raised.

    Args:
        package: EncryptedPackage or its wire bytes (nonce + ciphertext + tag)
        key: 32-byte encryption key

    Raises:
        DecryptError: If the package is malformed or authentication fails
    """
    if not isinstance(package, EncryptedPackage):
        package = EncryptedPackage.from_bytes(package)

    if len(package.nonce) != NONCE_SIZE or len(package.tag) != TAG_SIZE:
        raise DecryptError("Malformed nonce or tag length")

    try:
        return AESGCM(key).decrypt(package.nonce, package.ciphertext + package.tag, None)
    except InvalidTag:
        raise DecryptError("Decryption failed - data may be corrupted or tampered")
    except ValueError as e:
        # Wrong key length
        raise DecryptError(f"Decryption failed: {e}")
