"""RFC 4648 base32 without padding, as used for TOTP shared secrets.

Decoding is lenient: lower case is accepted and characters outside the
alphabet (spaces, dashes, ``=`` padding) are skipped, so secrets typed in by
hand from an authenticator enrollment screen still decode.
"""

from __future__ import annotations

import base64

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_INDEX = {char: idx for idx, char in enumerate(ALPHABET)}


def encode(data: bytes) -> str:
    return base64.b32encode(bytes(data)).decode("ascii").rstrip("=")


def decode(text: str) -> bytes:
    out = bytearray()
    buffer = 0
    bits = 0
    for char in text.upper():
        value = _INDEX.get(char)
        if value is None:
            continue
        buffer = (buffer << 5) | value
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((buffer >> bits) & 0xFF)
            buffer &= (1 << bits) - 1
    # leftover (< 8) bits are encoder padding
    return bytes(out)


def is_valid(text: str) -> bool:
    """True when every character is in the alphabet and the text is non-empty."""
    cleaned = text.rstrip("=").upper()
    return bool(cleaned) and all(char in _INDEX for char in cleaned)
