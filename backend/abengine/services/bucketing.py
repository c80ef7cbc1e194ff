"""Deterministic hash bucketing for percentage rollouts and flag variations.

A unit (user or session) always lands in the same bucket for the same scope,
on every instance and across restarts.
"""
import hashlib
from typing import Optional, Sequence

BUCKET_COUNT = 10000

ROLLOUT_SEED = 0
VARIATION_SEED = 1


def hash_key(key: str, seed: int = ROLLOUT_SEED) -> int:
    """32-bit hash of ``key`` from the first 8 hex chars of SHA-256."""
    digest = hashlib.sha256(f"{seed}:{key}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def bucket(scope_id: str, unit_id: str, seed: int = ROLLOUT_SEED) -> int:
    """Bucket in [0, 10000) for a unit within a flag or experiment."""
    return hash_key(f"{scope_id}-{unit_id}", seed) % BUCKET_COUNT


def is_in_rollout(scope_id: str, unit_id: str, percentage: Optional[float]) -> bool:
    """
    True when the unit falls inside the first ``percentage`` percent of buckets.

    Example:
        >>> is_in_rollout("new_checkout", "user_123", 25)  # same answer every call
    """
    if percentage is None or percentage >= 100:
        return True
    if percentage <= 0:
        return False
    return bucket(scope_id, unit_id) < percentage * BUCKET_COUNT / 100


def select_variation(scope_id: str, unit_id: str, variations: Sequence[str]) -> Optional[str]:
    """Pick one of ``variations`` using a hash independent from the rollout hash."""
    if not variations:
        return None
    index = hash_key(f"{scope_id}-{unit_id}", VARIATION_SEED) % len(variations)
    return variations[index]
