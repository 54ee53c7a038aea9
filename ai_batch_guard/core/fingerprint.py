"""
Deterministic batch fingerprints.

A fingerprint identifies a logically-equivalent submission and doubles as the
externally visible batch id.
"""

import hashlib
import json
from typing import Sequence

from .items import BatchItem


def generate_batch_id(user_id: str, items: Sequence[BatchItem]) -> str:
    """Compute the SHA-256 fingerprint of a user's item set.

    Items are sorted by scene id (then prompt and variant count) and
    serialized canonically, so submission order never changes the result.

    Args:
        user_id: Submitting user
        items: Batch items (empty lists are rejected before this point)

    Returns:
        64-character lowercase hex digest

    Raises:
        ValueError: If user_id is empty
    """
    if not user_id:
        raise ValueError("user_id is required")

    canonical_items = sorted(
        ([item.scene_id, item.prompt, item.variants] for item in items),
        key=lambda entry: (entry[0], entry[1], entry[2]),
    )
    content = json.dumps(
        {"user_id": user_id, "items": canonical_items},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
