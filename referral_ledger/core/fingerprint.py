"""SHA-256 fingerprints for client pseudonymization and payout snapshots."""

import hashlib
from typing import Iterable, List, Union


def sha256_hex(data: Union[bytes, str]) -> str:
    """Return the 64-char lowercase hex SHA-256 digest of `data`."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(f"sha256_hex expects bytes or str, got {type(data).__name__}")
    return hashlib.sha256(data).hexdigest()


def hash_client_value(value: str) -> str:
    """Pseudonymize an IP address or user-agent before it is stored."""
    return sha256_hex(value)


def canonical_ids(ids: Iterable) -> List[str]:
    """String form of the ids, sorted."""
    return sorted(str(i) for i in ids)


def snapshot_fingerprint(ids: Iterable) -> str:
    """sha256 of the sorted ids joined by commas."""
    return sha256_hex(",".join(canonical_ids(ids)))
