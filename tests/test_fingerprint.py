import hashlib
import uuid

import pytest

from referral_ledger.core.fingerprint import (
    canonical_ids,
    hash_client_value,
    sha256_hex,
    snapshot_fingerprint,
)


def test_sha256_hex_matches_hashlib():
    assert sha256_hex("hello") == hashlib.sha256(b"hello").hexdigest()
    assert sha256_hex(b"hello") == sha256_hex("hello")


def test_sha256_hex_is_64_lowercase_hex():
    digest = sha256_hex("")
    assert len(digest) == 64
    assert digest == digest.lower()
    assert digest == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_sha256_hex_rejects_other_types():
    with pytest.raises(TypeError):
        sha256_hex(12345)


def test_hash_client_value():
    assert hash_client_value("203.0.113.7") == hashlib.sha256(b"203.0.113.7").hexdigest()


def test_snapshot_fingerprint_is_order_independent():
    ids = [uuid.uuid4() for _ in range(5)]
    assert snapshot_fingerprint(ids) == snapshot_fingerprint(list(reversed(ids)))
    assert snapshot_fingerprint(ids) == snapshot_fingerprint([str(i) for i in ids])


def test_snapshot_fingerprint_is_sorted_comma_join():
    ids = ["c", "a", "b"]
    assert canonical_ids(ids) == ["a", "b", "c"]
    assert snapshot_fingerprint(ids) == hashlib.sha256(b"a,b,c").hexdigest()


def test_snapshot_fingerprint_changes_with_set():
    ids = [str(uuid.uuid4()) for _ in range(3)]
    assert snapshot_fingerprint(ids) != snapshot_fingerprint(ids[:2])


def test_empty_snapshot_fingerprint():
    assert snapshot_fingerprint([]) == sha256_hex("")
