"""
Identifier codec - foreign (base58) account ids to fixed-width bytes.

Program and account ids on the foreign ledger are 32-byte public keys
written in base58. Targets take them as bytes32 construction parameters
and the relay uses the account id as the correlation key.

The codec performs no padding or truncation: a decoded value whose length
differs from the requested width is rejected.
"""

import base58

from moebius.errors import MalformedIdentifier

# Width of a foreign public key and of a CorrelationKey
IDENTIFIER_WIDTH = 32

_ALPHABET = frozenset(base58.BITCOIN_ALPHABET.decode("ascii"))


def decode(foreign_id: str, width: int = IDENTIFIER_WIDTH) -> bytes:
    """
    Decode a base58 identifier into exactly `width` bytes.

    Args:
        foreign_id: Base58 text (e.g. a program or account id)
        width: Required byte length of the decoded value

    Returns:
        The decoded bytes

    Raises:
        MalformedIdentifier: If the text is not base58 or decodes to another length
    """
    if not isinstance(foreign_id, str) or not foreign_id:
        raise MalformedIdentifier(f"Identifier must be non-empty base58 text, got {foreign_id!r}")

    # b58decode strips surrounding whitespace, so check the alphabet first
    invalid = sorted(set(foreign_id) - _ALPHABET)
    if invalid:
        raise MalformedIdentifier(f"Invalid base58 identifier {foreign_id!r}: bad characters {invalid!r}")

    try:
        raw = base58.b58decode(foreign_id)
    except ValueError as e:
        raise MalformedIdentifier(f"Invalid base58 identifier {foreign_id!r}: {e}") from e

    if len(raw) != width:
        raise MalformedIdentifier(
            f"Identifier {foreign_id!r} decodes to {len(raw)} bytes, expected {width}"
        )
    return raw


def encode(raw: bytes) -> str:
    """Encode raw identifier bytes back to base58 text."""
    return base58.b58encode(bytes(raw)).decode("ascii")


def to_hex(foreign_id: str, width: int = IDENTIFIER_WIDTH) -> str:
    """Decode a base58 identifier and render it as a 0x-prefixed hex string."""
    return "0x" + decode(foreign_id, width).hex()


def parse_key(value: str | bytes) -> bytes:
    """
    Parse a correlation key given as bytes, 0x hex, or base58 text.

    Hex is tried first for 0x-prefixed strings; anything else is treated
    as base58.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and value.startswith("0x"):
        try:
            raw = bytes.fromhex(value[2:])
        except ValueError as e:
            raise MalformedIdentifier(f"Invalid hex correlation key {value!r}") from e
    else:
        return decode(value)

    if len(raw) != IDENTIFIER_WIDTH:
        raise MalformedIdentifier(
            f"Correlation key must be {IDENTIFIER_WIDTH} bytes, got {len(raw)}"
        )
    return raw
