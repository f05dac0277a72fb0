# mypy: ignore-errors
"""Tests for hashing utilities."""

from __future__ import annotations

from appeal_guard.utils import hash as hash_utils

HEX_DIGEST_LENGTH = 64


def test_blake3_hexdigest() -> None:
    """Ensure hex digests return 64-character strings."""
    hexdigest = hash_utils.blake3_hexdigest(b"hex")
    assert isinstance(hexdigest, str)
    assert len(hexdigest) == HEX_DIGEST_LENGTH


def test_digest_fields_is_truncated_and_stable() -> None:
    first = hash_utils.digest_fields(["GET", "/api/appeals"])
    assert len(first) == hash_utils.FINGERPRINT_LENGTH
    assert first == hash_utils.digest_fields(("GET", "/api/appeals"))


def test_digest_fields_separator_prevents_collisions() -> None:
    assert hash_utils.digest_fields(["a|b", "c"]) != hash_utils.digest_fields(["a", "b|c"])
    assert hash_utils.digest_fields(["ab", "c"]) != hash_utils.digest_fields(["a", "bc"])


def test_canonical_json_sorts_keys() -> None:
    assert hash_utils.canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
