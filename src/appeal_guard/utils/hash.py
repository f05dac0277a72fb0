# src/appeal_guard/utils/hash.py
"""Hashing helpers used to derive compact request fingerprints and signatures."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from blake3 import blake3

FINGERPRINT_LENGTH = 32


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal BLAKE3 digest of the supplied data."""
    return blake3(data).hexdigest()


def digest_fields(fields: Iterable[str], length: int = FINGERPRINT_LENGTH) -> str:
    """Hash a tuple of string fields into a fixed-length hex token.

    Fields are joined with a separator that cannot appear in a decoded header
    value, so ``("a|b", "c")`` and ``("a", "b|c")`` do not collide.
    """
    joined = "\x1f".join(fields).encode("utf-8", errors="surrogateescape")
    return blake3_hexdigest(joined)[:length]


def canonical_json(value: Any) -> str:
    """Return a stable JSON rendering with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
