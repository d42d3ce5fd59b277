"""
Rollout selector — deterministic, sticky percentage bucketing.

    bucket   = stable_hash(identifier) mod 100
    selected = bucket < percentage

The hash is a 64-bit fingerprint (first 8 bytes of SHA-256) of the UTF-8
identifier: no process seed, no clock, so the same identifier lands in the
same bucket on every device boot and every interpreter. Because the bucket
is fixed, raising the percentage only ever adds identifiers.

Stickiness is a property of the identifier the caller supplies: a persistent
device/install id gives a sticky assignment, a per-session id does not.
"""

from __future__ import annotations

import hashlib

from pinguard.domain.models import RolloutRule

BUCKETS = 100


def stable_hash(identifier: str) -> int:
    """64-bit unsigned fingerprint of `identifier`."""
    return int.from_bytes(hashlib.sha256(identifier.encode("utf-8")).digest()[:8], "big")


def bucket_for(identifier: str) -> int:
    """Bucket in [0, 100) for `identifier`."""
    return stable_hash(identifier) % BUCKETS


def is_selected(identifier: str, rule: RolloutRule) -> bool:
    # Edges short-circuit so 0% and 100% never depend on the hash.
    if rule.percentage <= 0:
        return False
    if rule.percentage >= BUCKETS:
        return True
    return bucket_for(identifier) < rule.percentage
