"""
Unit tests for crypto.py - Encryption and decryption
"""
import pytest
import os

from clipsync.common.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    EncryptedPackage,
    decrypt,
    derive_key,
    encrypt,
    generate_key,
)
from clipsync.common.errors import DecryptError


class TestEncryptDecrypt:
    """Tests for encrypt/decrypt functions"""

    def test_encrypt_decrypt_roundtrip(self, encryption_key):
        plaintext = b"Hello, World! This is secret data."
        package = encrypt(plaintext, encryption_key)

        assert package.ciphertext != plaintext
        assert decrypt(package, encryption_key) == plaintext

    def test_roundtrip_through_wire_bytes(self, encryption_key):
        plaintext = b"over the wire"
        wire = encrypt(plaintext, encryption_key).to_bytes()

        assert len(wire) == NONCE_SIZE + len(plaintext) + TAG_SIZE
        assert decrypt(wire, encryption_key) == plaintext

    def test_encrypt_empty_data(self, encryption_key):
        package = encrypt(b"", encryption_key)
        assert decrypt(package, encryption_key) == b""

    def test_encrypt_large_data(self, encryption_key):
        plaintext = os.urandom(1024 * 1024)
        assert decrypt(encrypt(plaintext, encryption_key), encryption_key) == plaintext

    def test_wrong_key_fails(self, encryption_key):
        package = encrypt(b"Secret message", encryption_key)

        wrong_key = b"wrong_key_0123456789abcdef012345"
        with pytest.raises(DecryptError):
            decrypt(package, wrong_key)

    def test_tampered_ciphertext_fails(self, encryption_key):
        wire = bytearray(encrypt(b"Secret message", encryption_key).to_bytes())
        wire[NONCE_SIZE] ^= 0xFF

        with pytest.raises(DecryptError):
            decrypt(bytes(wire), encryption_key)

    def test_tampered_tag_fails(self, encryption_key):
        wire = bytearray(encrypt(b"Secret message", encryption_key).to_bytes())
        wire[-1] ^= 0xFF

        with pytest.raises(DecryptError):
            decrypt(bytes(wire), encryption_key)

    def test_truncated_package_fails(self, encryption_key):
        with pytest.raises(DecryptError):
            decrypt(b"\x00" * (NONCE_SIZE + TAG_SIZE - 1), encryption_key)

    def test_malformed_nonce_fails(self, encryption_key):
        package = encrypt(b"data", encryption_key)
        bad = EncryptedPackage(nonce=package.nonce[:8], ciphertext=package.ciphertext, tag=package.tag)
        with pytest.raises(DecryptError):
            decrypt(bad, encryption_key)

    def test_nonces_are_unique(self, encryption_key):
        plaintext = b"Same message"
        nonces = {encrypt(plaintext, encryption_key).nonce for _ in range(200)}
        assert len(nonces) == 200

    def test_same_plaintext_different_ciphertext(self, encryption_key):
        plaintext = b"Same message"
        package1 = encrypt(plaintext, encryption_key)
        package2 = encrypt(plaintext, encryption_key)

        assert package1.to_bytes() != package2.to_bytes()
        assert decrypt(package1, encryption_key) == plaintext
        assert decrypt(package2, encryption_key) == plaintext


class TestKeyGeneration:
    """Tests for key generation functions"""

    def test_generate_key_length(self):
        assert len(generate_key()) == 32  # 256 bits

    def test_generate_key_random(self):
        assert generate_key() != generate_key()

    def test_derive_key_deterministic(self):
        salt = b"fixed_salt_12345"
        assert derive_key("my_secure_password", salt) == derive_key("my_secure_password", salt)

    def test_derive_key_different_salts(self):
        key1, _ = derive_key("my_secure_password", b"salt_one_1234567")
        key2, _ = derive_key("my_secure_password", b"salt_two_7654321")
        assert key1 != key2

    def test_derive_key_generates_salt(self):
        key, salt = derive_key("password")
        assert len(key) == 32
        assert len(salt) == 16
        assert derive_key("password", salt)[0] == key


class TestEdgeCases:
    """Edge case tests"""

    def test_binary_data_with_null_bytes(self, encryption_key):
        plaintext = b"\x00\x01\x02\x00\x00\xff\xfe\x00"
        assert decrypt(encrypt(plaintext, encryption_key), encryption_key) == plaintext

    def test_unicode_data(self, encryption_key):
        text = "Hello 世界 \U0001F600"  # Chinese + emoji
        package = encrypt(text.encode('utf-8'), encryption_key)
        assert decrypt(package, encryption_key).decode('utf-8') == text
