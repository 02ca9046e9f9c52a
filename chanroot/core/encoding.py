"""
Canonical leaf encoding.

A token is identified by (channel_id, token_number). Its leaf preimage is the
UTF-8 encoding of the canonical string:

    "{channel_id}:{token_number}"

where token_number is rendered in base 10 with no sign, no separators and no
leading zeros. Channel ids may not contain ':' (or whitespace), so the string
is injective over valid (channel_id, token_number) pairs. The leaf digest is
SHA-256 of the preimage; this is the same string the external ledger hashes
when it checks a mint proof.

Nothing else in the engine hashes application data directly.
"""

from dataclasses import dataclass
from typing import Iterable, List

from chanroot.crypto import sha256
from chanroot.core.errors import InvalidChannelId, InvalidTokenNumber
from chanroot.utils.validation import (
    MAX_CHANNEL_ID_LENGTH,
    validate_channel_id,
    validate_token_number,
)

SEPARATOR = ":"


def check_channel_id(channel_id: str, max_length: int = MAX_CHANNEL_ID_LENGTH) -> str:
    valid, err = validate_channel_id(channel_id, max_length)
    if not valid:
        raise InvalidChannelId(err, {"channel_id": channel_id})
    return channel_id


def check_token_number(token_number: int) -> int:
    valid, err = validate_token_number(token_number)
    if not valid:
        raise InvalidTokenNumber(err, {"token_number": token_number})
    return token_number


@dataclass(frozen=True, order=True)
class TokenId:
    """Composite token identifier."""
    channel_id: str
    token_number: int

    def __post_init__(self):
        check_channel_id(self.channel_id)
        check_token_number(self.token_number)

    def __str__(self) -> str:
        return f"{self.channel_id}{SEPARATOR}{self.token_number}"

    def encode(self) -> bytes:
        return str(self).encode("utf-8")

    @property
    def leaf(self) -> bytes:
        return sha256(self.encode())

    @classmethod
    def parse(cls, token_id: str) -> "TokenId":
        """
        Parse a canonical "{channel_id}:{token_number}" string.

        Rejects non-canonical numbers ("007", "+7", "7.0") so that parsing
        and encoding are exact inverses.
        """
        if not isinstance(token_id, str) or token_id.count(SEPARATOR) != 1:
            raise InvalidChannelId(f"Malformed token id: {token_id!r}", {"token_id": token_id})

        channel_id, number = token_id.split(SEPARATOR)
        if not number.isdigit() or not number.isascii() or (len(number) > 1 and number[0] == "0"):
            raise InvalidTokenNumber(f"Non-canonical token number: {number!r}", {"token_id": token_id})

        return cls(channel_id, int(number))


def encode(channel_id: str, token_number: int) -> bytes:
    """Leaf preimage for a token."""
    return TokenId(channel_id, token_number).encode()


def leaf_digest(channel_id: str, token_number: int) -> bytes:
    """32-byte leaf digest for a token."""
    return sha256(encode(channel_id, token_number))


def leaf_digests(channel_id: str, token_numbers: Iterable[int]) -> List[bytes]:
    """Leaf digests for many tokens of one channel."""
    check_channel_id(channel_id)
    return [leaf_digest(channel_id, n) for n in token_numbers]
