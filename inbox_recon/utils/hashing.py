from __future__ import annotations

import hashlib
import json
from typing import Any


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def payload_fingerprint(obj: Any) -> str:
    """sha256 of the canonical JSON form; equal payloads give equal fingerprints."""
    return hashlib.sha256(stable_json_dumps(obj).encode("utf-8")).hexdigest()


def token_bucket(token: str, dimensions: int) -> tuple[int, float]:
    """Map a token to a vector slot and a +1/-1 sign (feature hashing)."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    slot = int.from_bytes(digest[:4], "big") % dimensions
    return slot, 1.0 if digest[4] % 2 == 0 else -1.0
