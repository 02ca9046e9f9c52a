"""
Input Validation - Sanitization of everything that reaches the commitment.

Provides validation for all external inputs to prevent:
- Ambiguous leaf encodings (separator injection in channel ids)
- Integer overflows of token numbers
- Malformed digests, proofs and signatures
"""

import re
from typing import Any, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

MAX_HASH_SIZE = 32
MAX_SIGNATURE_SIZE = 64
MAX_PROOF_LENGTH = 256
MAX_CHANNEL_ID_LENGTH = 64

# Token numbers are u64 on the ledger side
MIN_TOKEN_NUMBER = 1
MAX_TOKEN_NUMBER = 2**64 - 1

# No separator, no whitespace, no control characters
CHANNEL_ID_PATTERN = r"^[^:\s\x00-\x1f\x7f]+\Z"


# =============================================================================
# Validation Functions
# =============================================================================


def validate_bytes(
    data: Any,
    name: str,
    expected_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Validate bytes input.

    Args:
        data: Data to validate
        name: Field name for error messages
        expected_length: Exact expected length
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(data).__name__}"

    if expected_length is not None and len(data) != expected_length:
        return False, f"{name} must be {expected_length} bytes, got {len(data)}"

    if max_length is not None and len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_hash(hash_value: Any, name: str = "hash") -> Tuple[bool, str]:
    """Validate a 32-byte digest."""
    return validate_bytes(hash_value, name, expected_length=MAX_HASH_SIZE)


def validate_signature(signature: Any) -> Tuple[bool, str]:
    """Validate an r || s signature."""
    return validate_bytes(signature, "signature", expected_length=MAX_SIGNATURE_SIZE)


def validate_integer(
    value: Any,
    name: str,
    min_val: int,
    max_val: int,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Booleans are rejected even though they subclass int.

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_token_number(value: Any) -> Tuple[bool, str]:
    """Validate a token number (strictly positive u64)."""
    return validate_integer(value, "token_number", MIN_TOKEN_NUMBER, MAX_TOKEN_NUMBER)


def validate_string(
    value: Any,
    name: str,
    max_length: int,
    pattern: Optional[str] = None,
) -> Tuple[bool, str]:
    """
    Validate string input.

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    if not value:
        return False, f"{name} must not be empty"

    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}"

    if pattern and not re.match(pattern, value):
        return False, f"{name} does not match required pattern"

    return True, ""


def validate_channel_id(value: Any, max_length: int = MAX_CHANNEL_ID_LENGTH) -> Tuple[bool, str]:
    """Validate a channel id: non-empty, bounded, free of ':' and whitespace."""
    return validate_string(value, "channel_id", max_length, CHANNEL_ID_PATTERN)


def validate_proof(siblings: Any) -> Tuple[bool, str]:
    """Validate a wire proof: list of 32-byte siblings."""
    if not isinstance(siblings, (list, tuple)):
        return False, f"proof must be list/tuple, got {type(siblings).__name__}"

    if len(siblings) > MAX_PROOF_LENGTH:
        return False, f"proof exceeds max length {MAX_PROOF_LENGTH}, got {len(siblings)}"

    for i, sibling in enumerate(siblings):
        valid, err = validate_hash(sibling, f"proof[{i}]")
        if not valid:
            return False, err

    return True, ""


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value.startswith("0x") else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None:
        actual_bytes = len(hex_str) // 2
        if actual_bytes != expected_bytes:
            return False, f"{name} must be {expected_bytes} bytes, got {actual_bytes}"

    return True, ""


__all__ = [
    "validate_bytes",
    "validate_hash",
    "validate_signature",
    "validate_integer",
    "validate_token_number",
    "validate_string",
    "validate_channel_id",
    "validate_proof",
    "validate_hex_string",
    "MAX_HASH_SIZE",
    "MAX_SIGNATURE_SIZE",
    "MAX_PROOF_LENGTH",
    "MAX_CHANNEL_ID_LENGTH",
    "MAX_TOKEN_NUMBER",
]
