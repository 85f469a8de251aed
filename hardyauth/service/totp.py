from __future__ import annotations

import hashlib
import hmac
import re
from typing import List, Optional
from urllib.parse import quote, urlencode

from hardyauth.logging import get_logger
from hardyauth.service import base32
from hardyauth.service.clock import RandomSource, SystemRandom

logger = get_logger(__name__)

SECRET_BYTES = 20
CODE_DIGITS = 6

# No 0/O or 1/I so codes survive being read aloud or written down
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_GROUPS = 2
BACKUP_CODE_GROUP_LEN = 4

_CODE_RE = re.compile(r"^[0-9]{6}$")


def normalize_backup_code(code: str) -> str:
    """Canonical form used for hashing: upper case, separators stripped."""
    return "".join(ch for ch in code.upper() if ch.isalnum())


class TOTPEngine:
    """RFC 6238 time-based one-time passwords over HMAC-SHA1."""

    def __init__(
        self,
        random: Optional[RandomSource] = None,
        *,
        step: int = 30,
        window: int = 1,
        issuer: str = "Hardy Auth",
    ) -> None:
        self.random = random or SystemRandom()
        self.step = step
        self.window = window
        self.issuer = issuer

    def generate_secret(self) -> str:
        return base32.encode(self.random.token_bytes(SECRET_BYTES))

    def current_code(self, secret: str, at: float, step: Optional[int] = None) -> str:
        step = step or self.step
        key = base32.decode(secret)
        counter = int(at // step).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**CODE_DIGITS
        )
        return str(code_int).zfill(CODE_DIGITS)

    def verify(
        self,
        secret: str,
        code: str,
        at: float,
        window: Optional[int] = None,
        step: Optional[int] = None,
    ) -> bool:
        if not secret or not isinstance(code, str):
            return False
        code = code.strip()
        if not _CODE_RE.match(code):
            return False
        if not base32.decode(secret):
            logger.warning("totp_secret_invalid")
            return False
        window = self.window if window is None else window
        step = step or self.step
        matched = False
        # every offset is evaluated so timing does not reveal which one matched
        for offset in range(-window, window + 1):
            moment = at + offset * step
            if moment < 0:
                continue
            expected = self.current_code(secret, moment, step=step)
            if hmac.compare_digest(expected, code):
                matched = True
        return matched

    def generate_backup_codes(self, count: int = 8) -> List[str]:
        codes = []
        length = BACKUP_CODE_GROUPS * BACKUP_CODE_GROUP_LEN
        for _ in range(count):
            raw = self.random.token_bytes(length)
            chars = "".join(BACKUP_CODE_ALPHABET[b & 0x1F] for b in raw)
            groups = [
                chars[i : i + BACKUP_CODE_GROUP_LEN]
                for i in range(0, length, BACKUP_CODE_GROUP_LEN)
            ]
            codes.append("-".join(groups))
        return codes

    def provisioning_uri(self, secret: str, account: str) -> str:
        """``otpauth://`` URI understood by authenticator apps."""
        label = quote(f"{self.issuer}:{account}", safe=":@")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": CODE_DIGITS,
                "period": self.step,
            }
        )
        return f"otpauth://totp/{label}?{params}"
