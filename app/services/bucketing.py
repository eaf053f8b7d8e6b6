"""
Deterministic bucketing for experiment traffic and variation selection.

Buckets are derived from an MD5 digest of a composite key, so the same key
lands in the same bucket in every process and on every platform.
"""
import hashlib
from typing import Sequence, TypeVar

BUCKET_COUNT = 100

V = TypeVar("V")


def stable_hash(key: str) -> int:
    """Maps ``key`` to an integer in [0, 100)."""
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()
    # First 8 hex digits = 32-bit prefix of the digest
    return int(digest[:8], 16) % BUCKET_COUNT


def is_in_traffic(user_id: str, experiment_id: str, allocation_percent: int) -> bool:
    """
    Whether the user takes part in the experiment at all.

    Uses its own hash domain so that widening or narrowing the allocation only
    changes inclusion, never which variation an included user gets.
    """
    return stable_hash(f"{user_id}:{experiment_id}:traffic") < allocation_percent


def select_variation(user_id: str, salt: str, variations: Sequence[V]) -> V:
    """
    Picks the first variation whose cumulative weight exceeds the user's bucket.

    Variations are walked in the given order. When the weights add up to less
    than the bucket value, the first variation is returned.
    """
    if not variations:
        raise ValueError("Cannot select a variation from an empty list.")

    bucket = stable_hash(f"{user_id}:{salt}")

    cumulative_weight = 0
    for variation in variations:
        cumulative_weight += variation.weight
        if bucket < cumulative_weight:
            return variation

    return variations[0]
