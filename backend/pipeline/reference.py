"""Booking reference generator: short, human-readable, unambiguous identifiers."""

import hashlib
import re
import secrets
from typing import Optional

REFERENCE_PREFIX = "LDR-"
# No I, O, 0 or 1: references get read out over the phone
REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERENCE_LENGTH = 8

_REFERENCE_PATTERN = re.compile(
    rf"^{re.escape(REFERENCE_PREFIX)}[{REFERENCE_ALPHABET}]{{{REFERENCE_LENGTH}}}$"
)


def generate_booking_reference(seed: Optional[str] = None) -> str:
    """
    Random reference such as "LDR-7KQ2MZXA".

    With a seed (the client's idempotency key) the reference is derived from
    its SHA-256, so a retried submission gets the same reference back.
    """
    if seed is None:
        body = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    else:
        digest = hashlib.sha256(f"booking:{seed}".encode()).digest()
        # 32 symbols divide 256 evenly, so the mapping stays uniform
        body = "".join(
            REFERENCE_ALPHABET[byte % len(REFERENCE_ALPHABET)]
            for byte in digest[:REFERENCE_LENGTH]
        )
    return f"{REFERENCE_PREFIX}{body}"


def is_booking_reference(value: object) -> bool:
    return isinstance(value, str) and bool(_REFERENCE_PATTERN.match(value))
