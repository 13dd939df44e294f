"""Identity hashing for sticky rollout buckets.

Maps (flag key, identity) to a bucket in [0, BUCKET_COUNT). The bucket only
depends on its inputs, so an identity keeps its bucket across processes and
releases, and a rising rollout percentage only ever adds identities.

Usage:
    from bitswitch.services.hashing import bucket, percentage_threshold

    included = bucket("new-checkout", "user-42") < percentage_threshold(30)
"""

from __future__ import annotations

import hashlib
from typing import Optional

# Number of buckets for consistent hashing (0-9999), 0.01% granularity
BUCKET_COUNT = 10000


def bucket(flag_key: str, identity: str, salt: Optional[str] = None) -> int:
    """Compute the stable bucket for an identity under a flag.

    Uses SHA-256 for uniform distribution across 10000 buckets.

    Args:
        flag_key: Feature flag key
        identity: Stable user identity (may be empty)
        salt: Optional salt so rule sub-rollouts and variation selection
            bucket independently of the flag-level rollout

    Returns:
        Bucket number (0-9999)
    """
    hash_input = f"{flag_key}:{identity}"
    if salt is not None:
        hash_input = f"{hash_input}:{salt}"

    hash_bytes = hashlib.sha256(hash_input.encode("utf-8")).digest()

    # Use first 4 bytes as unsigned int, then mod by bucket count
    hash_int = int.from_bytes(hash_bytes[:4], byteorder="big", signed=False)
    return hash_int % BUCKET_COUNT


def percentage_threshold(percentage: float) -> int:
    """Convert a 0-100 percentage to an exclusive bucket upper bound."""
    threshold = int(round(percentage * BUCKET_COUNT / 100))
    return max(0, min(BUCKET_COUNT, threshold))


def is_in_percentage(flag_key: str, identity: str, percentage: float, salt: Optional[str] = None) -> bool:
    """Check if an identity falls within the first ``percentage`` of buckets."""
    if percentage >= 100:
        return True
    if percentage <= 0:
        return False
    return bucket(flag_key, identity, salt) < percentage_threshold(percentage)
