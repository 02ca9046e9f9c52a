"""
Unit tests for cryptographic primitives.

Tests cover:
1. Key generation
2. Signing and public key recovery
3. Hashing functions
4. Address derivation
"""

import pytest

from chanroot.crypto import (
    generate_keypair,
    sign,
    recover_public_key,
    recover_addresses,
    sha256,
    keccak256,
    private_key_to_public_key,
    address_from_public_key,
    bytes_to_hex,
    hex_to_bytes,
    is_valid_address,
    SECP256K1_ORDER,
)


class TestKeyGeneration:
    """Tests for key generation."""

    def test_keypair_generation_produces_valid_lengths(self):
        """KeyPair should have correct field lengths."""
        kp = generate_keypair()
        assert len(kp.private_key) == 32
        assert len(kp.public_key) == 64

    def test_keypair_address_format(self):
        """Address should be 0x-prefixed 40 lowercase hex chars."""
        kp = generate_keypair()
        assert kp.address.startswith("0x")
        assert len(kp.address) == 42
        assert kp.address == kp.address.lower()
        assert is_valid_address(kp.address)

    def test_keypairs_are_unique(self):
        """Each keypair should be different."""
        kp1 = generate_keypair()
        kp2 = generate_keypair()
        assert kp1.private_key != kp2.private_key
        assert kp1.address != kp2.address

    def test_derive_public_key_from_private(self):
        """Should derive correct public key from private key."""
        kp = generate_keypair()
        assert private_key_to_public_key(kp.private_key) == kp.public_key

    def test_address_requires_64_byte_key(self):
        with pytest.raises(ValueError):
            address_from_public_key(bytes(33))


class TestSigning:
    """Tests for ECDSA signing."""

    def test_sign_produces_64_bytes(self):
        kp = generate_keypair()
        sig = sign(sha256(b"test message"), kp.private_key)
        assert len(sig) == 64

    def test_signature_is_low_s(self):
        """s is normalized to the lower half of the curve order."""
        kp = generate_keypair()
        sig = sign(sha256(b"low s"), kp.private_key)
        s = int.from_bytes(sig[32:], "big")
        assert s <= SECP256K1_ORDER // 2

    def test_sign_rejects_bad_hash_length(self):
        kp = generate_keypair()
        with pytest.raises(ValueError):
            sign(b"short", kp.private_key)


class TestPublicKeyRecovery:
    """Tests for public key recovery from signature."""

    def test_recover_correct_key(self):
        """One of the two recovery ids yields the signer's key."""
        kp = generate_keypair()
        msg = sha256(b"recovery test")
        sig = sign(msg, kp.private_key)
        recovered = [recover_public_key(msg, sig, rid) for rid in (0, 1)]
        assert kp.public_key in recovered

    def test_recover_addresses_contains_signer(self):
        kp = generate_keypair()
        msg = sha256(b"address recovery")
        assert kp.address in recover_addresses(msg, sign(msg, kp.private_key))

    def test_wrong_message_does_not_recover_signer(self):
        kp = generate_keypair()
        sig = sign(sha256(b"message 1"), kp.private_key)
        assert kp.address not in recover_addresses(sha256(b"message 2"), sig)

    def test_garbage_signature(self):
        """A zero signature recovers nothing rather than raising."""
        assert recover_addresses(sha256(b"x"), bytes(64)) == []


class TestHashing:
    """Tests for hashing functions."""

    def test_sha256_known_vector(self):
        assert sha256(b"").hex() == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_keccak256_known_vector(self):
        """Keccak-256, not NIST SHA3-256."""
        assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


class TestUtility:
    """Tests for utility functions."""

    def test_bytes_to_hex(self):
        assert bytes_to_hex(bytes([0xde, 0xad, 0xbe, 0xef])) == "0xdeadbeef"

    def test_hex_to_bytes(self):
        """Should handle both 0x prefix and plain hex."""
        assert hex_to_bytes("0xdeadbeef") == bytes([0xde, 0xad, 0xbe, 0xef])
        assert hex_to_bytes("deadbeef") == bytes([0xde, 0xad, 0xbe, 0xef])

    def test_is_valid_address(self):
        """Should validate address format."""
        assert is_valid_address("0x" + "a" * 40)
        assert is_valid_address("0x" + "A" * 40)
        assert not is_valid_address("0x" + "a" * 39)  # Too short
        assert not is_valid_address("a" * 40)  # No 0x
        assert not is_valid_address("0x" + "g" * 40)  # Invalid hex
        assert not is_valid_address("0x" + "a" * 38 + "_a")
        assert not is_valid_address(None)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
